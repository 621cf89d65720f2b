"""Batch extractor - sends small batches of case documents to the gateway.

Documents are downloaded, size-checked and grouped into batches of
``extraction_batch_size``.  Each batch becomes ONE gateway request with a
type-specific instruction block and the encoded content per document; the
structured response is a single flat field-map for the whole batch.

Batches run strictly one after another.  A batch that fails (transport
error, malformed response) is reported and skipped; the run moves on to
the next batch.  Exhausted quota stops the run: the remaining batches
are not sent.
"""

import base64
import logging

from pydantic import ValidationError

from caseflow.config import Settings
from caseflow.pipeline.errors import (
    MalformedResponseError,
    OversizedInputError,
    PipelineError,
    QuotaExhaustedError,
)
from caseflow.pipeline.extractors.base import (
    BaseExtractor,
    BatchOutcome,
    DocumentInput,
    ExtractionRun,
)
from caseflow.pipeline.extractors.prompts import (
    build_document_instruction,
    build_system_prompt,
)
from caseflow.pipeline.llm_client import (
    Attachment,
    GatewayClient,
    LLMProgressCallback,
    _noop_cb,
)
from caseflow.pipeline.models import Document, PartialFieldMap
from caseflow.pipeline.schemas import EXTRACT_CASE_SCHEMA
from caseflow.pipeline.store import LocalBlobStore

logger = logging.getLogger(__name__)

EXTRACTION_PROMPT = (
    "Analyze ALL the documents above and return one JSON object with every "
    "field you can read. Omit keys you cannot find."
)


def chunk(items: list, size: int) -> list[list]:
    return [items[i:i + size] for i in range(0, len(items), size)]


class BatchExtractor(BaseExtractor):
    """Extracts partial field-maps from documents in fixed-size batches."""

    def __init__(self, settings: Settings, gateway: GatewayClient, blobs: LocalBlobStore):
        self.settings = settings
        self.gateway = gateway
        self.blobs = blobs

    def _load(self, document: Document) -> DocumentInput:
        """Download one document, refusing anything over the size ceiling."""
        if document.size and document.size > self.settings.max_document_bytes:
            raise OversizedInputError(document.id, document.size, self.settings.max_document_bytes)
        content = self.blobs.download(document.file_path)
        if len(content) > self.settings.max_document_bytes:
            raise OversizedInputError(document.id, len(content), self.settings.max_document_bytes)
        return DocumentInput(document=document, content=content)

    async def run(
        self,
        documents: list[Document],
        on_progress: LLMProgressCallback | None = None,
    ) -> ExtractionRun:
        cb = on_progress or _noop_cb
        result = ExtractionRun()

        loaded: list[DocumentInput] = []
        for document in documents:
            try:
                loaded.append(self._load(document))
            except OversizedInputError as e:
                logger.warning(f"Skipping {document.file_name}: {e}")
                result.skipped[document.id] = str(e)
            except (FileNotFoundError, ValueError, OSError) as e:
                logger.warning(f"Skipping {document.file_name}: could not download ({e})")
                result.skipped[document.id] = f"download failed: {e}"

        batches = chunk(loaded, self.settings.extraction_batch_size)
        for index, batch in enumerate(batches, start=1):
            doc_ids = [item.document.id for item in batch]
            await cb("extraction", f"Batch {index}/{len(batches)} ({len(batch)} document(s))", {
                "type": "batch_start",
                "batch": index,
                "total_batches": len(batches),
                "document_ids": doc_ids,
            })
            try:
                fields = await self.extract(batch, on_progress=on_progress)
            except QuotaExhaustedError as e:
                # every later call would fail the same way
                remaining = [item.document.id for later in batches[index - 1:] for item in later]
                logger.error(
                    f"Batch {index}/{len(batches)}: gateway quota exhausted; "
                    f"stopping with {len(remaining)} document(s) unprocessed"
                )
                result.outcomes.append(
                    BatchOutcome(document_ids=remaining, error=str(e), error_code=e.code)
                )
                result.quota_error = e
                await cb("extraction", f"Batch {index} failed: {e.code}; stopping", {
                    "type": "batch_failed",
                    "batch": index,
                    "code": e.code,
                })
                break
            except PipelineError as e:
                code = getattr(e, "code", "PIPELINE_ERROR")
                logger.warning(f"Batch {index}/{len(batches)} failed ({code}): {e}")
                result.outcomes.append(
                    BatchOutcome(document_ids=doc_ids, error=str(e), error_code=code)
                )
                await cb("extraction", f"Batch {index} failed: {code}", {
                    "type": "batch_failed",
                    "batch": index,
                    "code": code,
                })
                continue

            result.outcomes.append(BatchOutcome(document_ids=doc_ids, fields=fields))
            logger.info(
                f"Batch {index}/{len(batches)}: {len(fields.observed())} field(s) observed "
                f"from {len(batch)} document(s)"
            )

        return result

    async def extract(
        self,
        batch: list[DocumentInput],
        on_progress: LLMProgressCallback | None = None,
    ) -> PartialFieldMap:
        types = [item.document.document_type for item in batch]
        attachments = [
            Attachment(
                instruction=build_document_instruction(
                    item.document.file_name, item.document.document_type
                ),
                data_b64=base64.b64encode(item.content).decode("ascii"),
                mime_type=item.document.mime_type,
            )
            for item in batch
        ]
        data = await self.gateway.call(
            prompt=EXTRACTION_PROMPT,
            system_prompt=build_system_prompt(types),
            expect_json=EXTRACT_CASE_SCHEMA,
            task_label=f"Extract {len(batch)} document(s): {', '.join(sorted(set(types)))}",
            on_progress=on_progress,
            attachments=attachments,
            timeout=self.settings.gateway_timeout,
        )
        try:
            return PartialFieldMap.model_validate(data)
        except ValidationError as e:
            raise MalformedResponseError(
                f"Extraction response failed validation: {e.error_count()} error(s)"
            ) from e
