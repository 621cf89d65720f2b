"""Background task tracking for fire-and-forget pipeline runs.

``TaskRegistry.submit`` returns a ``PipelineTask`` handle immediately; the
work runs as an asyncio task under a semaphore that caps how many case
pipelines talk to the gateway at once.  Callers poll ``get`` (or await
``wait``) instead of relying on side-channel events.
"""

import asyncio
import logging
import time
import uuid
from datetime import datetime
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

PENDING = "pending"
RUNNING = "running"
SUCCEEDED = "succeeded"
PARTIAL = "partial"
FAILED = "failed"

TERMINAL_STATUSES = frozenset({SUCCEEDED, PARTIAL, FAILED})

# Work function: receives its task handle, returns a result dict.
# A "status" key of "partial" marks a partial success.
TaskFactory = Callable[["PipelineTask"], Awaitable[dict]]


class PipelineTask:
    """Handle for one background run (processing, validation, quality)."""

    def __init__(self, case_id: str, kind: str):
        self.task_id = uuid.uuid4().hex[:12]
        self.case_id = case_id
        self.kind = kind
        self.status = PENDING
        self.created_at = datetime.now().isoformat()
        self.started_at: str | None = None
        self.finished_at: str | None = None
        self.finished_monotonic: float | None = None
        self.progress: list[dict] = []
        self.result: dict | None = None
        self.error: str | None = None
        self.error_code: str | None = None
        self._done = asyncio.Event()

    @property
    def done(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def _log(self, stage: str, message: str, detail: dict | None = None):
        entry = {
            "timestamp": datetime.now().isoformat(),
            "stage": stage,
            "message": message,
        }
        if detail:
            entry["detail"] = detail
        self.progress.append(entry)

    async def on_progress(self, stage: str, message: str, detail: dict) -> None:
        """Progress callback passed down to the pipeline stages."""
        self._log(stage, message, detail)

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "case_id": self.case_id,
            "kind": self.kind,
            "status": self.status,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "progress": self.progress,
            "result": self.result,
            "error": self.error,
            "error_code": self.error_code,
        }


class TaskRegistry:
    """In-memory registry of background tasks (lost on restart).

    Finished tasks stay pollable for ``retention_seconds``; beyond that, or
    once more than ``max_finished`` have piled up, the oldest are evicted
    the next time a task is submitted.  Unfinished tasks are never evicted.
    """

    def __init__(self, max_concurrent: int = 2, retention_seconds: float = 3600.0,
                 max_finished: int = 200):
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self.retention_seconds = retention_seconds
        self.max_finished = max_finished
        self._tasks: dict[str, PipelineTask] = {}
        self._handles: dict[str, asyncio.Task] = {}

    def submit(self, case_id: str, kind: str, factory: TaskFactory) -> PipelineTask:
        self.prune()
        task = PipelineTask(case_id, kind)
        self._tasks[task.task_id] = task
        handle = asyncio.create_task(self._run(task, factory))
        self._handles[task.task_id] = handle
        handle.add_done_callback(lambda _h, tid=task.task_id: self._handles.pop(tid, None))
        logger.info(f"Task {task.task_id} ({kind}) queued for case {case_id}")
        return task

    async def _run(self, task: PipelineTask, factory: TaskFactory) -> None:
        async with self._semaphore:
            task.status = RUNNING
            task.started_at = datetime.now().isoformat()
            task._log("start", f"{task.kind} started")
            try:
                result = await factory(task)
            except asyncio.CancelledError:
                task.status = FAILED
                task.error = "cancelled"
                raise
            except Exception as e:
                logger.exception(f"Task {task.task_id} ({task.kind}) failed for case {task.case_id}")
                task.status = FAILED
                task.error = str(e)
                task.error_code = getattr(e, "code", type(e).__name__)
                task._log("failed", str(e))
            else:
                task.result = result
                task.status = PARTIAL if (result or {}).get("status") == PARTIAL else SUCCEEDED
                task._log("done", (result or {}).get("message", f"{task.kind} finished"))
            finally:
                task.finished_at = datetime.now().isoformat()
                task.finished_monotonic = time.monotonic()
                task._done.set()

    def prune(self) -> int:
        """Evict expired finished tasks, then the oldest over the cap."""
        now = time.monotonic()
        finished = sorted(
            (t for t in self._tasks.values() if t.done and t.finished_monotonic is not None),
            key=lambda t: t.finished_monotonic,
        )
        expired = [t for t in finished if now - t.finished_monotonic > self.retention_seconds]
        kept = [t for t in finished if t not in expired]
        overflow = kept[:max(0, len(kept) - self.max_finished)]
        for task in expired + overflow:
            del self._tasks[task.task_id]
        if expired or overflow:
            logger.info(f"Evicted {len(expired) + len(overflow)} finished task(s)")
        return len(expired) + len(overflow)

    def get(self, task_id: str) -> PipelineTask:
        try:
            return self._tasks[task_id]
        except KeyError:
            raise FileNotFoundError(f"Task {task_id} not found") from None

    def list_for_case(self, case_id: str) -> list[PipelineTask]:
        return [t for t in self._tasks.values() if t.case_id == case_id]

    async def wait(self, task_id: str, timeout: float | None = None) -> PipelineTask:
        """Wait for a task to finish; returns the (possibly unfinished) task on timeout."""
        task = self.get(task_id)
        try:
            await asyncio.wait_for(task._done.wait(), timeout)
        except asyncio.TimeoutError:
            pass
        return task

    async def shutdown(self) -> None:
        handles = list(self._handles.values())
        for handle in handles:
            handle.cancel()
        if handles:
            await asyncio.gather(*handles, return_exceptions=True)
