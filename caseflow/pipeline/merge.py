"""Field merge engine - folds partial field-maps into the canonical record.

All merge rules live in ``FIELD_POLICIES``, one entry per extraction key:

  - source:  key in the extraction's PartialFieldMap
  - target:  field on CaseRecord
  - policy:  first_non_null | append | append_dedup | shallow_merge | monotonic_or
  - key:     (append_dedup only) function returning the dedup key of an item

Scalars keep the first non-empty value, so feeding extractions in
ascending timestamp order yields "earliest source wins".  Collections
accumulate; dedup keeps the first occurrence of each key.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from caseflow.pipeline.classifier import normalize_text
from caseflow.pipeline.models import (
    SCALAR_FIELDS,
    CaseRecord,
    FamilyMember,
    PartialFieldMap,
    PriorBenefit,
    RuralPeriod,
    SchoolRecord,
    UrbanPeriod,
)

logger = logging.getLogger(__name__)

FIRST_NON_NULL = "first_non_null"
APPEND = "append"
APPEND_DEDUP = "append_dedup"
SHALLOW_MERGE = "shallow_merge"
MONOTONIC_OR = "monotonic_or"

CHILD_NAME_ANOMALY = "child_name_equals_mother_name"


# ───────────────────────────────────────────────────────
# Dedup keys
# ───────────────────────────────────────────────────────

def _clean(value: Any) -> str:
    return normalize_text(str(value)) if value is not None else ""


def period_key(item: RuralPeriod | UrbanPeriod) -> tuple[str, str]:
    return (_clean(item.start_date), _clean(item.end_date))


def family_key(item: FamilyMember) -> str:
    digits = "".join(ch for ch in item.cpf or "" if ch.isdigit())
    return f"cpf:{digits}" if digits else f"name:{_clean(item.name)}"


def benefit_key(item: PriorBenefit) -> str:
    return f"nb:{_clean(item.nb)}" if item.nb else f"type:{_clean(item.benefit_type)}"


def school_key(item: SchoolRecord) -> tuple[str, str]:
    return (_clean(item.institution), _clean(item.period_start))


def _text_key(item: str) -> str:
    return _clean(item)


# ───────────────────────────────────────────────────────
# Policy table
# ───────────────────────────────────────────────────────

FIELD_POLICIES: list[dict[str, Any]] = [
    *(
        {"source": source, "target": target, "policy": FIRST_NON_NULL}
        for source, target in SCALAR_FIELDS.items()
    ),
    {"source": "raProtocol", "target": "has_ra", "policy": MONOTONIC_OR},
    {"source": "ruralPeriods", "target": "rural_periods", "policy": APPEND_DEDUP, "key": period_key},
    {"source": "urbanPeriods", "target": "urban_periods", "policy": APPEND_DEDUP, "key": period_key},
    {"source": "familyMembers", "target": "family_members", "policy": APPEND_DEDUP, "key": family_key},
    {"source": "manualBenefits", "target": "manual_benefits", "policy": APPEND_DEDUP, "key": benefit_key},
    {"source": "schoolHistory", "target": "school_history", "policy": APPEND_DEDUP, "key": school_key},
    {"source": "observations", "target": "observations", "policy": APPEND},
    {"source": "healthDeclarationUbs", "target": "health_declaration_ubs", "policy": SHALLOW_MERGE},
    {"source": "extra", "target": "extra", "policy": SHALLOW_MERGE},
]

POLICY_BY_SOURCE: dict[str, list[dict[str, Any]]] = {}
for _entry in FIELD_POLICIES:
    POLICY_BY_SOURCE.setdefault(_entry["source"], []).append(_entry)


def _has_value(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, dict)):
        return bool(value)
    return True


def _first_non_null(current: Any, incoming: Any) -> Any:
    if _has_value(current):
        return current
    if isinstance(incoming, str):
        incoming = incoming.strip()
    return incoming if _has_value(incoming) else current


def _append_dedup(current: list, incoming: list, key: Callable[[Any], Any]) -> list:
    seen = {key(item) for item in current}
    merged = list(current)
    for item in incoming:
        k = key(item)
        if k in seen:
            continue
        seen.add(k)
        merged.append(item)
    return merged


def _shallow_merge(current: dict, incoming: dict) -> dict:
    merged = dict(current)
    for k, v in incoming.items():
        if k not in merged or not _has_value(merged[k]):
            merged[k] = v
    return merged


def _apply_policy(entry: dict[str, Any], current: Any, incoming: Any) -> Any:
    policy = entry["policy"]
    if policy == FIRST_NON_NULL:
        return _first_non_null(current, incoming)
    if policy == MONOTONIC_OR:
        return bool(current) or _has_value(incoming)
    if policy == APPEND:
        return list(current) + [i for i in incoming if _has_value(i)]
    if policy == APPEND_DEDUP:
        return _append_dedup(current, incoming, entry["key"])
    if policy == SHALLOW_MERGE:
        return _shallow_merge(current, incoming)
    raise ValueError(f"Unknown merge policy: {policy}")


def _start_sort_key(period: RuralPeriod) -> tuple[int, str]:
    # undated periods sort last
    return (0, period.start_date) if period.start_date else (1, "")


def _same_person(a: str | None, b: str | None) -> bool:
    return bool(a and b) and normalize_text(a) == normalize_text(b)


def _guard_child_name(record: CaseRecord) -> CaseRecord:
    """Null out a child name that merely repeats the mother's name."""
    if not _same_person(record.child_name, record.author_name):
        return record
    logger.warning(
        f"Case {record.case_id}: child name equals mother name "
        f"({record.child_name!r}), discarding child name"
    )
    anomalies = list(record.anomalies)
    if CHILD_NAME_ANOMALY not in anomalies:
        anomalies.append(CHILD_NAME_ANOMALY)
    return record.model_copy(update={"child_name": None, "anomalies": anomalies})


def merge(existing: CaseRecord, incoming: PartialFieldMap) -> CaseRecord:
    """Merge one partial field-map into *existing* and return a new record.

    Only fields the extractor actually observed take part; a key that is
    absent from *incoming* never overwrites or clears anything.
    """
    observed = incoming.observed()
    updates: dict[str, Any] = {}
    for source, value in observed.items():
        for entry in POLICY_BY_SOURCE.get(source, []):
            target = entry["target"]
            current = updates.get(target, getattr(existing, target))
            updates[target] = _apply_policy(entry, current, value)

    if "rural_periods" in updates:
        updates["rural_periods"] = sorted(updates["rural_periods"], key=_start_sort_key)

    merged = existing.model_copy(update=updates)
    return _guard_child_name(merged)
