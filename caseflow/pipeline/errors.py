"""Pipeline error taxonomy.

Every error carries a stable ``code`` so the API layer and callers can
distinguish rate limiting, exhausted quota and timeouts without parsing
messages.
"""


class PipelineError(Exception):
    code = "PIPELINE_ERROR"


class GatewayError(PipelineError):
    """Non-retryable AI gateway failure (unexpected 4xx, bad payload)."""

    code = "GATEWAY_ERROR"

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class TransientGatewayError(GatewayError):
    """Rate limit, timeout or 5xx: worth retrying at batch/check granularity."""

    code = "GATEWAY_UNAVAILABLE"


class RateLimitError(TransientGatewayError):
    code = "RATE_LIMIT"

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class GatewayTimeoutError(TransientGatewayError):
    code = "TIMEOUT"


class GatewayServerError(TransientGatewayError):
    code = "GATEWAY_UNAVAILABLE"


class QuotaExhaustedError(GatewayError):
    """Gateway credits exhausted (HTTP 402). Retrying will not help."""

    code = "NO_CREDITS"


class MalformedResponseError(PipelineError):
    """Structured response could not be parsed or failed schema validation."""

    code = "MALFORMED_RESPONSE"


class OversizedInputError(PipelineError):
    code = "OVERSIZED_INPUT"

    def __init__(self, document_id: str, size: int, limit: int):
        super().__init__(
            f"Document {document_id} is {size:,} bytes (limit {limit:,})"
        )
        self.document_id = document_id
        self.size = size
        self.limit = limit


class MissingPrerequisiteError(PipelineError):
    """A stage was invoked before its inputs exist (e.g. no documents yet)."""

    code = "MISSING_PREREQUISITE"


class StaleArtifactError(PipelineError):
    """An artifact changed between read and write (optimistic concurrency)."""

    code = "STALE_ARTIFACT"

    def __init__(self, artifact_id: str, expected: int, actual: int):
        super().__init__(
            f"Artifact {artifact_id} is at version {actual}, expected {expected}"
        )
        self.artifact_id = artifact_id
        self.expected = expected
        self.actual = actual


class CheckNotEvaluatedError(PipelineError):
    """A quality check lacks the inputs it needs to give a verdict."""

    code = "NOT_EVALUATED"


class ExtractionFailedError(PipelineError):
    """No batch of a newly submitted document set produced an extraction."""

    code = "EXTRACTION_FAILED"

    def __init__(self, message: str, failed: dict[str, str]):
        super().__init__(message)
        self.failed = failed
