"""Consolidator - rebuilds a case's canonical record from its extractions.

Pure fold: load every Extraction for the case, sort by timestamp (storage
order is never trusted), merge each one into an all-null CaseRecord, and
replace the stored record as a whole.  Extractions are only read, never
modified, so running it twice on the same set yields identical output.
"""

import logging

from caseflow.pipeline.merge import merge
from caseflow.pipeline.models import CaseRecord, Extraction, PartialFieldMap
from caseflow.pipeline.store import JsonCaseStore

logger = logging.getLogger(__name__)


def _incoming_for(extraction: Extraction) -> PartialFieldMap:
    """Combine an extraction's entities with its separate rural-period list."""
    if not extraction.rural_periods:
        return extraction.entities
    data = extraction.entities.model_dump(exclude_unset=True)
    data["ruralPeriods"] = list(data.get("ruralPeriods") or []) + [
        p.model_dump() for p in extraction.rural_periods
    ]
    return PartialFieldMap.model_validate(data)


def fold_extractions(case_id: str, extractions: list[Extraction]) -> CaseRecord:
    """Fold *extractions* (any order) into a fresh CaseRecord."""
    ordered = sorted(extractions, key=lambda e: (e.extracted_at, e.id))
    record = CaseRecord(case_id=case_id)
    for extraction in ordered:
        record = merge(record, _incoming_for(extraction))
    if ordered:
        record = record.model_copy(update={
            "source_extraction_count": len(ordered),
            "last_extraction_at": ordered[-1].extracted_at,
        })
    return record


class Consolidator:
    """Load → fold → replace for one case."""

    def __init__(self, store: JsonCaseStore):
        self.store = store

    def consolidate(self, case_id: str) -> CaseRecord:
        extractions = self.store.list_extractions(case_id)
        record = fold_extractions(case_id, extractions)
        self.store.replace_case_record(record)
        logger.info(
            f"Case {case_id}: consolidated {len(extractions)} extraction(s) "
            f"({len(record.rural_periods)} rural period(s), anomalies={record.anomalies})"
        )
        return record
