"""Base extractor interface and batch input/outcome types."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from caseflow.pipeline.errors import QuotaExhaustedError
from caseflow.pipeline.llm_client import LLMProgressCallback
from caseflow.pipeline.models import Document, PartialFieldMap


@dataclass
class DocumentInput:
    """A document with its bytes already downloaded."""

    document: Document
    content: bytes

    @property
    def size(self) -> int:
        return len(self.content)


@dataclass
class BatchOutcome:
    """Result of one batch: a field-map on success, a reason on failure."""

    document_ids: list[str]
    fields: PartialFieldMap | None = None
    error: str | None = None
    error_code: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.fields is not None


@dataclass
class ExtractionRun:
    """All batch outcomes of one run plus documents skipped before batching."""

    outcomes: list[BatchOutcome] = field(default_factory=list)
    skipped: dict[str, str] = field(default_factory=dict)   # document_id -> reason
    quota_error: QuotaExhaustedError | None = None   # set when the run stopped early

    @property
    def successful(self) -> list[BatchOutcome]:
        return [o for o in self.outcomes if o.succeeded]

    def failed_documents(self) -> dict[str, str]:
        failed = dict(self.skipped)
        for outcome in self.outcomes:
            if not outcome.succeeded:
                for doc_id in outcome.document_ids:
                    failed[doc_id] = outcome.error or "extraction failed"
        return failed


class BaseExtractor(ABC):
    """Abstract base for extractors that turn documents into field-maps."""

    @abstractmethod
    async def extract(
        self,
        batch: list[DocumentInput],
        on_progress: LLMProgressCallback | None = None,
    ) -> PartialFieldMap:
        """Extract one flat field-map covering every document in *batch*.

        Fields not found are left unset, never defaulted.
        """
