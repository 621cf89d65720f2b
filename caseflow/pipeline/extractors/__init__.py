"""Document extractors."""

from caseflow.pipeline.extractors.base import (
    BaseExtractor,
    BatchOutcome,
    DocumentInput,
    ExtractionRun,
)
from caseflow.pipeline.extractors.batch import BatchExtractor

__all__ = [
    "BaseExtractor",
    "BatchExtractor",
    "BatchOutcome",
    "DocumentInput",
    "ExtractionRun",
]
