"""Document upload and type-override endpoints."""

import logging
from pathlib import Path, PurePosixPath

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from pydantic import BaseModel

from caseflow.api.deps import get_pipeline, http_error
from caseflow.pipeline.orchestrator import CasePipeline

router = APIRouter()
logger = logging.getLogger(__name__)

# Security constants
MAX_FILE_SIZE = 50 * 1024 * 1024  # 50 MB
MAX_FILES_PER_REQUEST = 20
PDF_MAGIC_BYTES = b"%PDF"

ALLOWED_TYPES = {
    ".pdf": "application/pdf",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".webp": "image/webp",
}


def _sanitize_filename(raw: str) -> str:
    """Strip path components and keep only the basename."""
    name = PurePosixPath(raw.replace("\\", "/")).name
    name = Path(name).name
    return name or "document.pdf"


class DocumentTypeOverride(BaseModel):
    document_type: str


@router.post("/{case_id}/documents")
async def upload_documents(
    case_id: str,
    files: list[UploadFile] = File(...),
    pipeline: CasePipeline = Depends(get_pipeline),
):
    """Upload case documents (PDF or images).

    Every file is validated before any is stored, so a rejected request
    leaves the case unchanged.  Files are classified by name on arrival;
    extraction runs only when processing is requested.
    """
    if not files:
        raise HTTPException(status_code=400, detail="No files uploaded")
    if len(files) > MAX_FILES_PER_REQUEST:
        raise HTTPException(status_code=400, detail=f"Maximum {MAX_FILES_PER_REQUEST} files per upload")
    try:
        pipeline.store.get_case(case_id)
    except (FileNotFoundError, ValueError) as e:
        raise http_error(e) from e

    # Pass 1: validate and read everything
    staged: list[tuple[str, bytes, str]] = []
    for file in files:
        if not file.filename:
            continue
        safe_name = _sanitize_filename(file.filename)
        suffix = Path(safe_name).suffix.lower()
        if suffix not in ALLOWED_TYPES:
            raise HTTPException(
                status_code=400,
                detail=f"Unsupported file type: {safe_name}. Allowed: {', '.join(sorted(ALLOWED_TYPES))}",
            )

        # Streaming read with size limit
        chunks: list[bytes] = []
        total = 0
        while True:
            chunk = await file.read(1024 * 1024)
            if not chunk:
                break
            total += len(chunk)
            if total > MAX_FILE_SIZE:
                raise HTTPException(
                    status_code=413,
                    detail=f"File too large: {safe_name} exceeds {MAX_FILE_SIZE // (1024 * 1024)} MB limit",
                )
            chunks.append(chunk)
        content = b"".join(chunks)

        if not content:
            raise HTTPException(status_code=400, detail=f"Empty file: {safe_name}")
        if suffix == ".pdf" and not content[:4].startswith(PDF_MAGIC_BYTES):
            raise HTTPException(status_code=400, detail=f"File does not appear to be a valid PDF: {safe_name}")
        staged.append((safe_name, content, ALLOWED_TYPES[suffix]))

    # Pass 2: store
    uploaded = []
    for safe_name, content, mime_type in staged:
        try:
            document = pipeline.add_document(case_id, safe_name, content, mime_type=mime_type)
        except (FileNotFoundError, ValueError) as e:
            raise http_error(e) from e
        uploaded.append(document.model_dump(mode="json"))
    logger.info(f"Case {case_id}: stored {len(uploaded)} uploaded document(s)")

    return {
        "uploaded": uploaded,
        "count": len(uploaded),
        "message": f"Successfully uploaded {len(uploaded)} document(s)",
    }


@router.get("/{case_id}/documents")
async def list_documents(case_id: str, pipeline: CasePipeline = Depends(get_pipeline)):
    try:
        pipeline.store.get_case(case_id)
    except (FileNotFoundError, ValueError) as e:
        raise http_error(e) from e
    documents = pipeline.store.list_documents(case_id)
    return {"documents": [d.model_dump(mode="json") for d in documents], "count": len(documents)}


@router.patch("/{case_id}/documents/{document_id}")
async def override_document_type(
    case_id: str,
    document_id: str,
    body: DocumentTypeOverride,
    pipeline: CasePipeline = Depends(get_pipeline),
):
    """Manually set a document's type; the classifier never overwrites it."""
    try:
        document = pipeline.override_document_type(case_id, document_id, body.document_type)
    except (FileNotFoundError, ValueError) as e:
        raise http_error(e) from e
    return document.model_dump(mode="json")
