"""Background task status endpoints with SSE progress streaming."""

import asyncio
import json
import logging

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from caseflow.api.deps import get_pipeline, http_error
from caseflow.pipeline.orchestrator import CasePipeline

router = APIRouter()
logger = logging.getLogger(__name__)

_STREAM_MAX_POLLS = 1800          # 30 min at 1 poll/sec
_HEARTBEAT_INTERVAL = 15


@router.get("/{task_id}")
async def get_task(task_id: str, pipeline: CasePipeline = Depends(get_pipeline)):
    try:
        task = pipeline.tasks.get(task_id)
    except FileNotFoundError as e:
        raise http_error(e) from e
    return task.to_dict()


@router.get("/{task_id}/stream")
async def stream_task(task_id: str, pipeline: CasePipeline = Depends(get_pipeline)):
    """SSE endpoint for streaming task progress."""
    try:
        task = pipeline.tasks.get(task_id)
    except FileNotFoundError as e:
        raise http_error(e) from e

    async def event_stream():
        sent = 0
        polls = 0
        while polls < _STREAM_MAX_POLLS:
            if len(task.progress) > sent:
                for entry in task.progress[sent:]:
                    yield f"data: {json.dumps(entry, default=str)}\n\n"
                sent = len(task.progress)
            elif polls % _HEARTBEAT_INTERVAL == 0 and polls > 0:
                yield f": heartbeat {polls}s\n\n"

            if task.done:
                final = {
                    "stage": "final",
                    "status": task.status,
                    "task_id": task.task_id,
                    "result": task.result,
                    "error": task.error,
                }
                yield f"data: {json.dumps(final, default=str)}\n\n"
                return

            await asyncio.sleep(1)
            polls += 1

        yield f"data: {json.dumps({'error': 'Timeout waiting for task'})}\n\n"

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
