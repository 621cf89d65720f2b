"""Pipeline orchestrator - sequences the case processing stages.

Flow for a document-set change:
  1. CLASSIFY     - tag documents (manual overrides are left alone)
  2. EXTRACT      - batch extraction, one Extraction row per good batch
  3. CONSOLIDATE  - rebuild the canonical CaseRecord from all Extractions
  4. STALE        - mark derived records and artifacts stale if it changed
  5. VALIDATE     - re-run the validation gate

Every stage persists its output, so later stages can be replayed alone
(``revalidate``, ``run_quality``).  Failures local to a document, batch or
check never abort the rest of the case; the result reports partial
success explicitly.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from caseflow.config import DERIVED_RECORDS, Settings
from caseflow.pipeline.classifier import classify, normalize_document_type
from caseflow.pipeline.consolidator import Consolidator
from caseflow.pipeline.errors import (
    ExtractionFailedError,
    MissingPrerequisiteError,
    PipelineError,
)
from caseflow.pipeline.extractors import BatchExtractor, ExtractionRun
from caseflow.pipeline.llm_client import GatewayClient, LLMProgressCallback, _noop_cb
from caseflow.pipeline.models import (
    REQUIRED_EXTRACTION_FIELDS,
    Artifact,
    Case,
    CaseRecord,
    Document,
    Extraction,
    PartialFieldMap,
    QualityReport,
    ValidationReport,
)
from caseflow.pipeline.quality import QualityLoop
from caseflow.pipeline.store import JsonCaseStore, LocalBlobStore
from caseflow.pipeline.tasks import PARTIAL, SUCCEEDED, PipelineTask, TaskRegistry
from caseflow.pipeline.validation import ValidationGate

logger = logging.getLogger(__name__)


@dataclass
class ProcessingResult:
    case_id: str
    total: int
    processed: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)     # document_id -> reason
    extraction_ids: list[str] = field(default_factory=list)
    record_changed: bool = False
    validation_score: float | None = None
    is_sufficient: bool | None = None
    validation_error: str | None = None
    file_names: dict[str, str] = field(default_factory=dict)

    @property
    def status(self) -> str:
        return PARTIAL if self.failed or self.validation_error else SUCCEEDED

    @property
    def message(self) -> str:
        text = f"{len(self.processed)} of {self.total} documents processed"
        if self.failed:
            names = ", ".join(
                f"{self.file_names.get(doc_id, doc_id)} ({reason})"
                for doc_id, reason in self.failed.items()
            )
            text += f"; {len(self.failed)} failed: {names}"
        if self.validation_error:
            text += f"; validation not run: {self.validation_error}"
        return text

    def to_dict(self) -> dict:
        return {
            "case_id": self.case_id,
            "status": self.status,
            "message": self.message,
            "total": self.total,
            "processed": self.processed,
            "failed": self.failed,
            "extraction_ids": self.extraction_ids,
            "record_changed": self.record_changed,
            "validation_score": self.validation_score,
            "is_sufficient": self.is_sufficient,
            "validation_error": self.validation_error,
        }


@dataclass
class Readiness:
    """Best-effort answer to "are these documents extracted yet?"."""

    ready: bool
    covered: list[str]
    expected: list[str]
    message: str

    def to_dict(self) -> dict:
        return {
            "ready": self.ready,
            "covered": self.covered,
            "expected": self.expected,
            "message": self.message,
        }


class CasePipeline:
    """Entry point for processing, re-validation and quality runs of a case."""

    def __init__(
        self,
        settings: Settings,
        store: JsonCaseStore,
        blobs: LocalBlobStore,
        gateway: GatewayClient,
        tasks: TaskRegistry | None = None,
    ):
        self.settings = settings
        self.store = store
        self.blobs = blobs
        self.gateway = gateway
        self.tasks = tasks or TaskRegistry(
            settings.max_concurrent_pipelines,
            retention_seconds=settings.task_retention_seconds,
            max_finished=settings.max_finished_tasks,
        )
        self.extractor = BatchExtractor(settings, gateway, blobs)
        self.consolidator = Consolidator(store)
        self.validator = ValidationGate(settings, store, gateway)
        self.quality = QualityLoop(settings, store, gateway)

    # ── Cases and documents ───────────────────────────

    def create_case(
        self,
        profile: str = "especial",
        event_type: str = "parto",
        event_date: str | None = None,
        city: str | None = None,
        uf: str | None = None,
    ) -> Case:
        case = Case(
            id=uuid.uuid4().hex[:12],
            profile=profile,
            event_type=event_type,
            event_date=event_date,
            city=city,
            uf=(uf or "").upper() or None,
            created_at=datetime.now(),
        )
        return self.store.save_case(case)

    def add_document(
        self,
        case_id: str,
        file_name: str,
        content: bytes,
        mime_type: str = "application/pdf",
        parent_document_id: str | None = None,
    ) -> Document:
        """Store the bytes and register a classified Document."""
        self.store.get_case(case_id)
        doc_id = uuid.uuid4().hex[:12]
        suffix = file_name.rsplit(".", 1)[-1].lower() if "." in file_name else "bin"
        path = self.blobs.upload(f"{case_id}/{doc_id}.{suffix}", content)
        document = Document(
            id=doc_id,
            case_id=case_id,
            file_name=file_name,
            file_path=path,
            mime_type=mime_type,
            document_type=classify(file_name),
            type_source="classifier",
            parent_document_id=parent_document_id,
            size=len(content),
            uploaded_at=datetime.now(),
        )
        self.store.save_document(document)
        logger.info(f"Case {case_id}: stored {file_name} as {document.document_type} ({len(content):,} bytes)")
        return document

    def override_document_type(self, case_id: str, document_id: str, label: str) -> Document:
        tag = normalize_document_type(label)
        logger.info(f"Case {case_id}: document {document_id} manually set to {tag}")
        return self.store.set_document_type(case_id, document_id, tag, "manual")

    def _classify(self, documents: list[Document]) -> list[Document]:
        classified = []
        for doc in documents:
            if doc.type_source == "manual":
                classified.append(doc)
                continue
            tag = classify(doc.file_name)
            if tag != doc.document_type or doc.type_source != "classifier":
                doc = self.store.set_document_type(doc.case_id, doc.id, tag, "classifier")
            classified.append(doc)
        return classified

    # ── Processing ────────────────────────────────────

    def start_processing(self, case_id: str, document_ids: list[str] | None = None) -> PipelineTask:
        """Fire-and-forget processing; returns the task handle at once."""
        self.store.get_case(case_id)

        async def work(task: PipelineTask) -> dict:
            result = await self.process_documents(case_id, document_ids, on_progress=task.on_progress)
            return result.to_dict()

        return self.tasks.submit(case_id, "process", work)

    def _select_documents(self, case_id: str, document_ids: list[str] | None) -> list[Document]:
        documents = self.store.list_documents(case_id)
        if document_ids is None:
            return documents
        by_id = {d.id: d for d in documents}
        unknown = [d for d in document_ids if d not in by_id]
        if unknown:
            raise FileNotFoundError(f"Unknown document(s) in case {case_id}: {', '.join(unknown)}")
        return [by_id[d] for d in dict.fromkeys(document_ids)]

    def _record_extractions(self, case_id: str, run: ExtractionRun) -> list[Extraction]:
        recorded = []
        last: datetime | None = None
        for outcome in run.successful:
            now = datetime.now()
            if last is not None and now <= last:
                # keep fold order equal to batch order
                now = last + timedelta(microseconds=1)
            last = now

            data = outcome.fields.model_dump(exclude_unset=True)
            periods = data.pop("ruralPeriods", None) or []
            observed = outcome.fields.observed()
            extraction = Extraction(
                id=uuid.uuid4().hex[:12],
                case_id=case_id,
                document_ids=outcome.document_ids,
                entities=PartialFieldMap.model_validate(data),
                rural_periods=periods,
                missing_fields=[f for f in REQUIRED_EXTRACTION_FIELDS if f not in observed],
                observations=list(outcome.fields.observations or []),
                extracted_at=now,
            )
            recorded.append(self.store.append_extraction(extraction))
        return recorded

    async def process_documents(
        self,
        case_id: str,
        document_ids: list[str] | None = None,
        on_progress: LLMProgressCallback | None = None,
    ) -> ProcessingResult:
        cb = on_progress or _noop_cb
        documents = self._select_documents(case_id, document_ids)
        if not documents:
            raise MissingPrerequisiteError(f"Case {case_id} has no documents to process")

        result = ProcessingResult(
            case_id=case_id,
            total=len(documents),
            file_names={d.id: d.file_name for d in documents},
        )

        # 1. Classify
        documents = self._classify(documents)
        await cb("classify", f"Classified {len(documents)} document(s)", {
            "types": {d.id: d.document_type for d in documents},
        })

        # 2. Extract
        run = await self.extractor.run(documents, on_progress=on_progress)
        extractions = self._record_extractions(case_id, run)
        result.extraction_ids = [e.id for e in extractions]
        result.failed = run.failed_documents()
        result.processed = [d.id for d in documents if d.id not in result.failed]
        if run.quota_error is not None:
            # batches that succeeded stay recorded and fold in on the next run
            logger.error(
                f"Case {case_id}: gateway quota exhausted after {len(extractions)} batch(es); "
                f"{len(result.failed)} document(s) not processed"
            )
            raise run.quota_error
        await cb("extract", result.message, {
            "extractions": len(extractions),
            "failed": result.failed,
        })
        if not extractions:
            logger.error(f"Case {case_id}: no extraction succeeded ({result.message})")
            raise ExtractionFailedError(result.message, result.failed)

        # 3. Consolidate
        before = self.store.get_case_record(case_id)
        record = self.consolidator.consolidate(case_id)
        result.record_changed = _record_changed(before, record)
        await cb("consolidate", "Case record rebuilt", {"changed": result.record_changed})

        # 4. Stale flags
        if result.record_changed:
            self.publish_stale(case_id)

        # 5. Validate
        try:
            report = await self.validator.validate(case_id, on_progress=on_progress)
        except PipelineError as e:
            logger.warning(f"Case {case_id}: validation skipped after processing ({e.code}): {e}")
            result.validation_error = f"{e.code}: {e}"
        else:
            result.validation_score = report.score
            result.is_sufficient = report.is_sufficient

        logger.info(f"Case {case_id}: {result.message}")
        return result

    def publish_stale(self, case_id: str) -> None:
        self.store.set_stale_flags(case_id, DERIVED_RECORDS, stale=True)
        count = self.store.mark_artifacts_stale(case_id)
        logger.info(
            f"Case {case_id}: record changed; marked {', '.join(DERIVED_RECORDS)} "
            f"and {count} artifact(s) stale"
        )

    # ── Replays ───────────────────────────────────────

    async def revalidate(
        self,
        case_id: str,
        on_progress: LLMProgressCallback | None = None,
    ) -> ValidationReport:
        return await self.validator.validate(case_id, on_progress=on_progress)

    def save_artifact(
        self,
        case_id: str,
        artifact_id: str,
        content: str,
        expected_version: int | None = None,
    ) -> Artifact:
        self.store.get_case(case_id)
        return self.store.save_artifact(case_id, artifact_id, content, expected_version)

    async def run_quality(
        self,
        case_id: str,
        artifact_id: str,
        on_progress: LLMProgressCallback | None = None,
    ) -> QualityReport:
        return await self.quality.run(case_id, artifact_id, on_progress=on_progress)

    # ── Readiness ─────────────────────────────────────

    async def wait_for_extractions(
        self,
        case_id: str,
        document_ids: list[str] | None = None,
        timeout: float | None = None,
    ) -> Readiness:
        """Poll until every document has an extraction, or give up at *timeout*.

        Never blocks past the timeout: the answer is then "not ready,
        continue anyway" rather than an error.
        """
        expected = (
            list(dict.fromkeys(document_ids))
            if document_ids is not None
            else [d.id for d in self.store.list_documents(case_id)]
        )
        timeout = self.settings.readiness_timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            extracted = {
                doc_id
                for extraction in self.store.list_extractions(case_id)
                for doc_id in extraction.document_ids
            }
            covered = [d for d in expected if d in extracted]
            if len(covered) == len(expected):
                return Readiness(True, covered, expected, f"All {len(expected)} document(s) extracted")

            remaining = deadline - loop.time()
            if remaining <= 0:
                message = (
                    f"{len(covered)} of {len(expected)} document(s) extracted after "
                    f"{timeout:.0f}s; continue anyway"
                )
                logger.warning(f"Case {case_id}: {message}")
                return Readiness(False, covered, expected, message)
            await asyncio.sleep(min(self.settings.readiness_poll_interval, remaining))


# bookkeeping only, not case content
_RECORD_META_FIELDS = {"source_extraction_count", "last_extraction_at"}


def _record_changed(before: CaseRecord | None, after: CaseRecord) -> bool:
    if before is None:
        return True
    return (
        before.model_dump(mode="json", exclude=_RECORD_META_FIELDS)
        != after.model_dump(mode="json", exclude=_RECORD_META_FIELDS)
    )
