"""Persistence: an opaque blob store plus a JSON-file case store.

Layout under the case store root::

    <case_id>/case.json
    <case_id>/documents.json
    <case_id>/extractions/<extraction_id>.json   (append-only)
    <case_id>/case_record.json                    (replace-whole)
    <case_id>/validation_report.json              (replace-whole)
    <case_id>/artifacts/<artifact_id>.json        (versioned)
    <case_id>/quality/<artifact_id>.json          (replace-whole)
    <case_id>/corrections.json                    (append-only log)
    <case_id>/stale.json

Every write goes to a temp file in the target directory and is moved into
place with ``os.replace``, so readers never see half-written JSON.
"""

import json
import logging
import os
import re
import tempfile
from datetime import datetime
from pathlib import Path, PurePosixPath

from pydantic import BaseModel

from caseflow.pipeline.errors import StaleArtifactError
from caseflow.pipeline.models import (
    Artifact,
    Case,
    CaseRecord,
    CorrectionRecord,
    Document,
    Extraction,
    QualityReport,
    ValidationReport,
)

logger = logging.getLogger(__name__)

_SAFE_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.\-]{0,127}$")


def _check_id(value: str) -> str:
    if not _SAFE_ID.match(value or "") or ".." in value:
        raise ValueError(f"Invalid identifier: {value!r}")
    return value


def _atomic_write(path: Path, data: str) -> None:
    """Write *data* to *path* via temp file + os.replace()."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp", prefix=".w_")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp:
            tmp.write(data)
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _dump(model: BaseModel, **kwargs) -> str:
    return json.dumps(model.model_dump(mode="json", **kwargs), indent=2, ensure_ascii=False, sort_keys=True)


def _read_json(path: Path):
    return json.loads(path.read_text(encoding="utf-8"))


# ═══════════════════════════════════════════════════
# Blob store
# ═══════════════════════════════════════════════════

class LocalBlobStore:
    """Durable get/put of raw bytes addressed by a relative path."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, path: str) -> Path:
        rel = PurePosixPath(path.replace("\\", "/"))
        if rel.is_absolute() or ".." in rel.parts or not rel.parts:
            raise ValueError(f"Invalid blob path: {path!r}")
        return self.root.joinpath(*rel.parts)

    def download(self, path: str) -> bytes:
        target = self._resolve(path)
        if not target.is_file():
            raise FileNotFoundError(f"Blob {path} not found")
        return target.read_bytes()

    def upload(self, path: str, data: bytes) -> str:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(target.parent), suffix=".tmp", prefix=".b_")
        try:
            with os.fdopen(fd, "wb") as tmp:
                tmp.write(data)
            os.replace(tmp_path, str(target))
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise
        return path


# ═══════════════════════════════════════════════════
# Case store
# ═══════════════════════════════════════════════════

class JsonCaseStore:
    """Case store backed by one directory of JSON files per case."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _case_dir(self, case_id: str) -> Path:
        return self.root / _check_id(case_id)

    # ── Cases ──────────────────────────────────────────

    def save_case(self, case: Case) -> Case:
        _atomic_write(self._case_dir(case.id) / "case.json", _dump(case))
        return case

    def get_case(self, case_id: str) -> Case:
        path = self._case_dir(case_id) / "case.json"
        if not path.exists():
            raise FileNotFoundError(f"Case {case_id} not found")
        return Case.model_validate(_read_json(path))

    # ── Documents ──────────────────────────────────────

    def list_documents(self, case_id: str) -> list[Document]:
        path = self._case_dir(case_id) / "documents.json"
        if not path.exists():
            return []
        return [Document.model_validate(d) for d in _read_json(path)]

    def _write_documents(self, case_id: str, documents: list[Document]) -> None:
        payload = json.dumps(
            [d.model_dump(mode="json") for d in documents], indent=2, ensure_ascii=False
        )
        _atomic_write(self._case_dir(case_id) / "documents.json", payload)

    def save_document(self, document: Document) -> Document:
        documents = [d for d in self.list_documents(document.case_id) if d.id != document.id]
        documents.append(document)
        self._write_documents(document.case_id, documents)
        return document

    def get_document(self, case_id: str, document_id: str) -> Document:
        for doc in self.list_documents(case_id):
            if doc.id == document_id:
                return doc
        raise FileNotFoundError(f"Document {document_id} not found in case {case_id}")

    def set_document_type(self, case_id: str, document_id: str, tag: str, source: str) -> Document:
        doc = self.get_document(case_id, document_id)
        updated = doc.model_copy(update={"document_type": tag, "type_source": source})
        return self.save_document(updated)

    # ── Extractions (append-only) ──────────────────────

    def append_extraction(self, extraction: Extraction) -> Extraction:
        path = self._case_dir(extraction.case_id) / "extractions" / f"{_check_id(extraction.id)}.json"
        if path.exists():
            raise FileExistsError(f"Extraction {extraction.id} already recorded")
        # exclude_unset keeps "not observed" fields absent on reload
        _atomic_write(path, _dump(extraction, exclude_unset=True))
        return extraction

    def list_extractions(self, case_id: str) -> list[Extraction]:
        """Return extractions in no particular order (callers must sort)."""
        folder = self._case_dir(case_id) / "extractions"
        if not folder.exists():
            return []
        return [Extraction.model_validate(_read_json(p)) for p in folder.glob("*.json")]

    # ── Canonical record / validation (replace-whole) ──

    def get_case_record(self, case_id: str) -> CaseRecord | None:
        path = self._case_dir(case_id) / "case_record.json"
        if not path.exists():
            return None
        return CaseRecord.model_validate(_read_json(path))

    def case_record_path(self, case_id: str) -> Path:
        return self._case_dir(case_id) / "case_record.json"

    def replace_case_record(self, record: CaseRecord) -> CaseRecord:
        _atomic_write(self.case_record_path(record.case_id), _dump(record))
        return record

    def get_validation_report(self, case_id: str) -> ValidationReport | None:
        path = self._case_dir(case_id) / "validation_report.json"
        if not path.exists():
            return None
        return ValidationReport.model_validate(_read_json(path))

    def replace_validation_report(self, report: ValidationReport) -> ValidationReport:
        _atomic_write(self._case_dir(report.case_id) / "validation_report.json", _dump(report))
        return report

    # ── Artifacts (optimistic versioning) ──────────────

    def _artifact_path(self, case_id: str, artifact_id: str) -> Path:
        return self._case_dir(case_id) / "artifacts" / f"{_check_id(artifact_id)}.json"

    def get_artifact(self, case_id: str, artifact_id: str) -> Artifact:
        path = self._artifact_path(case_id, artifact_id)
        if not path.exists():
            raise FileNotFoundError(f"Artifact {artifact_id} not found in case {case_id}")
        return Artifact.model_validate(_read_json(path))

    def list_artifacts(self, case_id: str) -> list[Artifact]:
        folder = self._case_dir(case_id) / "artifacts"
        if not folder.exists():
            return []
        return [Artifact.model_validate(_read_json(p)) for p in sorted(folder.glob("*.json"))]

    def save_artifact(
        self,
        case_id: str,
        artifact_id: str,
        content: str,
        expected_version: int | None = None,
    ) -> Artifact:
        """Write a new artifact version.

        With *expected_version* set, the write is rejected with
        ``StaleArtifactError`` if someone else wrote in between.
        """
        path = self._artifact_path(case_id, artifact_id)
        current = Artifact.model_validate(_read_json(path)) if path.exists() else None
        current_version = current.version if current else 0
        if expected_version is not None and expected_version != current_version:
            raise StaleArtifactError(artifact_id, expected_version, current_version)
        artifact = Artifact(
            id=artifact_id,
            case_id=case_id,
            content=content,
            version=current_version + 1,
            is_stale=False,
            updated_at=datetime.now(),
        )
        _atomic_write(path, _dump(artifact))
        return artifact

    def mark_artifacts_stale(self, case_id: str) -> int:
        count = 0
        for artifact in self.list_artifacts(case_id):
            if artifact.is_stale:
                continue
            stale = artifact.model_copy(update={"is_stale": True})
            _atomic_write(self._artifact_path(case_id, artifact.id), _dump(stale))
            count += 1
        return count

    # ── Quality reports and correction history ─────────

    def get_quality_report(self, case_id: str, artifact_id: str) -> QualityReport | None:
        path = self._case_dir(case_id) / "quality" / f"{_check_id(artifact_id)}.json"
        if not path.exists():
            return None
        return QualityReport.model_validate(_read_json(path))

    def replace_quality_report(self, report: QualityReport) -> QualityReport:
        path = self._case_dir(report.case_id) / "quality" / f"{_check_id(report.artifact_id)}.json"
        _atomic_write(path, _dump(report))
        return report

    def list_corrections(self, case_id: str, artifact_id: str | None = None) -> list[CorrectionRecord]:
        path = self._case_dir(case_id) / "corrections.json"
        if not path.exists():
            return []
        records = [CorrectionRecord.model_validate(c) for c in _read_json(path)]
        if artifact_id is not None:
            records = [r for r in records if r.artifact_id == artifact_id]
        return records

    def append_corrections(self, case_id: str, records: list[CorrectionRecord]) -> None:
        if not records:
            return
        existing = self.list_corrections(case_id)
        payload = json.dumps(
            [r.model_dump(mode="json") for r in existing + list(records)],
            indent=2, ensure_ascii=False,
        )
        _atomic_write(self._case_dir(case_id) / "corrections.json", payload)

    # ── Stale flags for derived records ────────────────

    def get_stale_flags(self, case_id: str) -> dict[str, bool]:
        path = self._case_dir(case_id) / "stale.json"
        if not path.exists():
            return {}
        return _read_json(path)

    def set_stale_flags(self, case_id: str, names: list[str], stale: bool = True) -> dict[str, bool]:
        flags = self.get_stale_flags(case_id)
        for name in names:
            flags[name] = stale
        _atomic_write(self._case_dir(case_id) / "stale.json", json.dumps(flags, indent=2, sort_keys=True))
        return flags
