"""Shared API dependencies and error mapping."""

from fastapi import HTTPException, Request

from caseflow.pipeline.errors import (
    GatewayTimeoutError,
    MissingPrerequisiteError,
    PipelineError,
    QuotaExhaustedError,
    RateLimitError,
    StaleArtifactError,
)
from caseflow.pipeline.orchestrator import CasePipeline

# Checked in order: subclasses before their bases
_STATUS_BY_ERROR: list[tuple[type[Exception], int]] = [
    (FileNotFoundError, 404),
    (MissingPrerequisiteError, 400),
    (RateLimitError, 429),
    (QuotaExhaustedError, 402),
    (GatewayTimeoutError, 408),
    (StaleArtifactError, 409),
    (PipelineError, 502),
    (ValueError, 400),
]


def get_pipeline(request: Request) -> CasePipeline:
    return request.app.state.pipeline


def http_error(exc: Exception) -> HTTPException:
    """Translate a pipeline/storage exception into an HTTPException."""
    status = next((code for cls, code in _STATUS_BY_ERROR if isinstance(exc, cls)), 500)
    detail: dict = {"message": str(exc)}
    code = getattr(exc, "code", None)
    if code:
        detail["code"] = code
    headers = None
    if isinstance(exc, RateLimitError) and exc.retry_after:
        headers = {"Retry-After": str(int(exc.retry_after))}
    return HTTPException(status_code=status, detail=detail, headers=headers)
