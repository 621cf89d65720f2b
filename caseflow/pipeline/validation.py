"""Validation gate - scores whether a case's documents are sufficient.

Steps:
  1. Look up the profile's required-document table (``checklist.py``)
  2. Mark each requirement on file / missing from the current document tags
  3. Ask the AI scorer to evaluate the consolidated record + documents
  4. Post-process: clamp the score, apply the fixed sufficiency cutoff,
     and drop every "missing document" that is already on file under a
     synonym or a file-name variant
  5. Replace the stored ValidationReport as a whole
"""

import json
import logging
from datetime import datetime

from pydantic import ValidationError

from caseflow.config import Settings
from caseflow.pipeline.checklist import annotate_requirements, format_requirements_for_prompt
from caseflow.pipeline.classifier import (
    DEFAULT_TAG,
    _stem,
    mentioned_document_types,
    normalize_document_type,
    normalize_text,
)
from caseflow.pipeline.errors import MalformedResponseError, MissingPrerequisiteError
from caseflow.pipeline.llm_client import GatewayClient, LLMProgressCallback
from caseflow.pipeline.models import (
    CaseRecord,
    ChecklistEntry,
    Document,
    MissingDocument,
    ValidationReport,
)
from caseflow.pipeline.schemas import VALIDATION_SCHEMA
from caseflow.pipeline.store import JsonCaseStore

logger = logging.getLogger(__name__)

VALIDATION_SYSTEM_PROMPT = """\
You are a specialist in Brazilian social-security law reviewing the evidence \
for a maternity-benefit (salário-maternidade) claim.
Score the evidence from 0 to 10 against the requirement list you are given.
Rules:
- Only request documents that are NOT already on file.
- Every missing_docs entry must name the document type, the reason it is needed, \
its importance (critical, high, medium) and the impact of its absence.
- Recommendations are short, practical next steps for the lawyer."""

# Fields summarised for the scorer
_RECORD_SUMMARY_FIELDS = [
    "author_name", "author_cpf", "author_birth_date", "author_address",
    "child_name", "child_birth_date", "land_owner_name", "land_ownership_type",
    "ra_protocol", "ra_denial_reason",
]


def _summarize_record(record: CaseRecord | None) -> dict:
    if record is None:
        return {"status": "no consolidated data yet"}
    summary = {f: getattr(record, f) for f in _RECORD_SUMMARY_FIELDS if getattr(record, f)}
    summary["rural_periods"] = [p.model_dump() for p in record.rural_periods]
    summary["urban_periods"] = len(record.urban_periods)
    summary["family_members"] = len(record.family_members)
    summary["has_ra"] = record.has_ra
    if record.anomalies:
        summary["anomalies"] = record.anomalies
    return summary


def _clamp_score(value) -> float:
    try:
        score = float(value)
    except (TypeError, ValueError):
        return 0.0
    return max(0.0, min(10.0, score))


# File-name words that say nothing about which document it is
_GENERIC_STEM_WORDS = {
    "certidao", "documento", "documentos", "doc", "docs", "declaracao", "comprovante",
    "arquivo", "anexo", "copia", "scan", "digitalizacao", "imagem", "img", "foto", "pdf",
}


def _is_generic_stem(stem: str) -> bool:
    return all(word in _GENERIC_STEM_WORDS or word.isdigit() for word in stem.split())


def is_on_file(label: str, documents: list[Document]) -> bool:
    """True when *label* names a document type or file already uploaded."""
    uploaded_tags = {d.document_type for d in documents}
    if mentioned_document_types(label) & uploaded_tags:
        return True

    text = normalize_text(label)
    if not text:
        return False
    for doc in documents:
        stem = _stem(doc.file_name)
        if len(stem) < 4 or _is_generic_stem(stem):
            continue
        if stem in text or text in stem:
            return True
    return False


class ValidationGate:
    """Scores document sufficiency for one case and stores the report."""

    def __init__(self, settings: Settings, store: JsonCaseStore, gateway: GatewayClient):
        self.settings = settings
        self.store = store
        self.gateway = gateway

    def _build_prompt(self, case, documents, requirements, record) -> str:
        doc_lines = "\n".join(
            f"- {d.file_name} (type: {d.document_type})" for d in documents
        )
        return (
            f"CLAIMANT PROFILE: {case.profile}\n"
            f"EVENT: {case.event_type} {case.event_date or ''}\n\n"
            f"REQUIREMENTS:\n{format_requirements_for_prompt(requirements)}\n\n"
            f"DOCUMENTS ON FILE ({len(documents)}):\n{doc_lines}\n\n"
            f"CONSOLIDATED DATA:\n"
            f"{json.dumps(_summarize_record(record), ensure_ascii=False, indent=2)}\n\n"
            "Return the score, the checklist, the missing documents and recommendations."
        )

    async def validate(
        self,
        case_id: str,
        on_progress: LLMProgressCallback | None = None,
    ) -> ValidationReport:
        case = self.store.get_case(case_id)
        documents = self.store.list_documents(case_id)
        if not documents:
            raise MissingPrerequisiteError(
                f"Case {case_id} has no documents; upload documents before validating"
            )

        requirements = annotate_requirements(case.profile, documents)
        record = self.store.get_case_record(case_id)

        data = await self.gateway.call(
            prompt=self._build_prompt(case, documents, requirements, record),
            system_prompt=VALIDATION_SYSTEM_PROMPT,
            expect_json=VALIDATION_SCHEMA,
            task_label=f"Validate case {case_id}",
            on_progress=on_progress,
            timeout=self.settings.validation_timeout,
        )

        try:
            checklist = [ChecklistEntry.model_validate(c) for c in data.get("checklist") or []]
            missing = [MissingDocument.model_validate(m) for m in data.get("missing_docs") or []]
        except ValidationError as e:
            raise MalformedResponseError(f"Validation response failed validation: {e}") from e

        uploaded_tags = {d.document_type for d in documents}
        for entry in checklist:
            tag = entry.document_type or normalize_document_type(entry.item)
            if tag != DEFAULT_TAG and tag in uploaded_tags:
                entry.document_type = tag
                entry.already_on_file = True
                entry.status = "ok"

        kept: list[MissingDocument] = []
        suppressed: list[str] = []
        for item in missing:
            if is_on_file(item.doc_type, documents):
                suppressed.append(item.doc_type)
            else:
                kept.append(item)
        if suppressed:
            logger.info(
                f"Case {case_id}: suppressed {len(suppressed)} missing-document request(s) "
                f"already on file: {suppressed}"
            )

        score = _clamp_score(data.get("score"))
        report = ValidationReport(
            case_id=case_id,
            profile=case.profile,
            score=score,
            is_sufficient=score >= self.settings.sufficiency_threshold,
            can_proceed=bool(data.get("can_proceed", score >= self.settings.sufficiency_threshold)),
            checklist=checklist,
            requirements=requirements,
            missing_docs=kept,
            suppressed_missing_docs=suppressed,
            recommendations=[str(r) for r in data.get("recommendations") or [] if r],
            validated_at=datetime.now(),
        )
        self.store.replace_validation_report(report)
        logger.info(
            f"Case {case_id}: validation score {score:.1f} "
            f"(sufficient={report.is_sufficient}, missing={len(kept)})"
        )
        return report
