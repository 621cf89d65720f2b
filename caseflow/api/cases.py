"""Case processing, validation, record and artifact-quality endpoints."""

import logging

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from caseflow.api.deps import get_pipeline, http_error
from caseflow.pipeline.errors import PipelineError
from caseflow.pipeline.models import EventType, ProfileName
from caseflow.pipeline.orchestrator import CasePipeline

router = APIRouter()
logger = logging.getLogger(__name__)

_HANDLED = (PipelineError, FileNotFoundError, ValueError)


class CreateCaseRequest(BaseModel):
    profile: ProfileName = "especial"
    event_type: EventType = "parto"
    event_date: str | None = None
    city: str | None = None
    uf: str | None = None


class ProcessRequest(BaseModel):
    document_ids: list[str] | None = None


class ArtifactRequest(BaseModel):
    content: str
    expected_version: int | None = None


@router.post("")
async def create_case(body: CreateCaseRequest, pipeline: CasePipeline = Depends(get_pipeline)):
    case = pipeline.create_case(
        profile=body.profile,
        event_type=body.event_type,
        event_date=body.event_date,
        city=body.city,
        uf=body.uf,
    )
    return case.model_dump(mode="json")


@router.get("/{case_id}")
async def get_case(case_id: str, pipeline: CasePipeline = Depends(get_pipeline)):
    try:
        case = pipeline.store.get_case(case_id)
    except _HANDLED as e:
        raise http_error(e) from e
    return {
        **case.model_dump(mode="json"),
        "stale": pipeline.store.get_stale_flags(case_id),
    }


@router.post("/{case_id}/process")
async def process_case(
    case_id: str,
    body: ProcessRequest | None = None,
    pipeline: CasePipeline = Depends(get_pipeline),
):
    """Start processing in the background. Returns a task id to poll.

    Use /api/tasks/{task_id} (or its /stream) for progress.
    """
    try:
        task = pipeline.start_processing(case_id, body.document_ids if body else None)
    except _HANDLED as e:
        raise http_error(e) from e
    return {
        "task_id": task.task_id,
        "status": task.status,
        "message": "Processing started",
    }


@router.get("/{case_id}/readiness")
async def get_readiness(
    case_id: str,
    document_ids: list[str] | None = Query(None),
    timeout: float = Query(0, ge=0, le=300),
    pipeline: CasePipeline = Depends(get_pipeline),
):
    """Bounded wait for extractions; ``ready: false`` means continue anyway."""
    try:
        pipeline.store.get_case(case_id)
        readiness = await pipeline.wait_for_extractions(case_id, document_ids, timeout=timeout)
    except _HANDLED as e:
        raise http_error(e) from e
    return readiness.to_dict()


@router.post("/{case_id}/validate")
async def validate_case(case_id: str, pipeline: CasePipeline = Depends(get_pipeline)):
    try:
        report = await pipeline.revalidate(case_id)
    except _HANDLED as e:
        logger.warning(f"Validation failed for case {case_id}: {e}")
        raise http_error(e) from e
    return report.model_dump(mode="json")


@router.get("/{case_id}/validation")
async def get_validation(case_id: str, pipeline: CasePipeline = Depends(get_pipeline)):
    try:
        report = pipeline.store.get_validation_report(case_id)
    except _HANDLED as e:
        raise http_error(e) from e
    if report is None:
        raise http_error(FileNotFoundError(f"Case {case_id} has not been validated yet"))
    return report.model_dump(mode="json")


@router.get("/{case_id}/record")
async def get_record(case_id: str, pipeline: CasePipeline = Depends(get_pipeline)):
    try:
        record = pipeline.store.get_case_record(case_id)
    except _HANDLED as e:
        raise http_error(e) from e
    if record is None:
        raise http_error(FileNotFoundError(f"Case {case_id} has no consolidated record yet"))
    return record.model_dump(mode="json")


@router.put("/{case_id}/artifacts/{artifact_id}")
async def put_artifact(
    case_id: str,
    artifact_id: str,
    body: ArtifactRequest,
    pipeline: CasePipeline = Depends(get_pipeline),
):
    """Store a generated artifact version (optimistic with expected_version)."""
    try:
        artifact = pipeline.save_artifact(case_id, artifact_id, body.content, body.expected_version)
    except _HANDLED as e:
        raise http_error(e) from e
    return artifact.model_dump(mode="json")


@router.post("/{case_id}/artifacts/{artifact_id}/quality")
async def run_quality(case_id: str, artifact_id: str, pipeline: CasePipeline = Depends(get_pipeline)):
    try:
        report = await pipeline.run_quality(case_id, artifact_id)
    except _HANDLED as e:
        raise http_error(e) from e
    return report.model_dump(mode="json")


@router.get("/{case_id}/corrections")
async def list_corrections(
    case_id: str,
    artifact_id: str | None = None,
    pipeline: CasePipeline = Depends(get_pipeline),
):
    try:
        pipeline.store.get_case(case_id)
        records = pipeline.store.list_corrections(case_id, artifact_id)
    except _HANDLED as e:
        raise http_error(e) from e
    return {"corrections": [r.model_dump(mode="json") for r in records], "count": len(records)}
