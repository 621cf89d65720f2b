"""Quality checks and targeted fixes for generated artifacts.

Each check defines:
  - code / flag / severity: identity, the QualityReport field it sets,
    and the severity of the issue it raises
  - check: async (content, ctx) -> CheckResult; read-only
  - fix: async (content, ctx, result) -> FixResult; idempotent, applied
    at most once per correction pass
  - confidence: confidence score recorded for an applied fix

A check that cannot reach a verdict (gateway failure, no reference data)
raises instead of returning; the loop records it as not evaluated.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from caseflow.config import Settings
from caseflow.pipeline.classifier import normalize_text
from caseflow.pipeline.errors import CheckNotEvaluatedError
from caseflow.pipeline.jurisdiction import Jurisdiction
from caseflow.pipeline.llm_client import GatewayClient
from caseflow.pipeline.minimum_wage import (
    claim_value,
    event_year,
    format_brl,
    parse_brl,
)
from caseflow.pipeline.models import Case, CaseRecord
from caseflow.pipeline.schemas import CITATIONS_SCHEMA, GRAMMAR_SCHEMA

logger = logging.getLogger(__name__)


@dataclass
class CheckContext:
    case: Case
    record: CaseRecord | None
    jurisdiction: Jurisdiction
    gateway: GatewayClient
    settings: Settings

    @property
    def claim_reference(self) -> float | None:
        date = (self.record.child_birth_date if self.record else None) or self.case.event_date
        year = event_year(date)
        return claim_value(year) if year else None


@dataclass
class CheckResult:
    passed: bool
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class FixResult:
    content: str
    summary: str
    confidence: int | None = None


# ───────────────────────────────────────────────────────
# Addressing / jurisdiction
# ───────────────────────────────────────────────────────

ADDRESSING_RE = re.compile(
    r"EXCELENTÍSSIMO\s+SENHOR\s+DOUTOR\s+JUIZ\s+FEDERAL\s+DO\s+JUIZADO\s+ESPECIAL\s+"
    r"FEDERAL\s+DE\s+([^\n/]+?)\s*\/\s*([A-Z]{2})\b",
    re.IGNORECASE,
)
ADDRESSING_TEMPLATE = "EXCELENTÍSSIMO SENHOR DOUTOR JUIZ FEDERAL DO JUIZADO ESPECIAL FEDERAL DE {city}/{uf}"


def find_addressing(content: str) -> list[tuple[str, str]]:
    return [(m.group(1).strip(), m.group(2).upper()) for m in ADDRESSING_RE.finditer(content)]


def rewrite_addressing(content: str, subsecao: str, uf: str) -> tuple[str, bool]:
    """Replace every court header (or prepend one). Returns (content, found)."""
    header = ADDRESSING_TEMPLATE.format(city=subsecao.upper(), uf=uf.upper())
    rewritten, count = ADDRESSING_RE.subn(lambda _m: header, content)
    if count:
        return rewritten, True
    return f"{header}\n\n{content}", False


def _target_court(ctx: CheckContext) -> tuple[str, str]:
    j = ctx.jurisdiction
    if not j.subsecao or not j.uf:
        raise CheckNotEvaluatedError("claimant city/UF unknown")
    return j.subsecao, j.uf


async def check_addressing(content: str, ctx: CheckContext) -> CheckResult:
    headers = find_addressing(content)
    if not headers:
        return CheckResult(False, "Court addressing header missing or malformed")
    expected_uf = ctx.jurisdiction.uf
    wrong = [f"{city}/{uf}" for city, uf in headers if expected_uf and uf != expected_uf]
    if wrong:
        return CheckResult(
            False,
            f"Addressed to the wrong state: {', '.join(wrong)} (expected {expected_uf})",
            {"found": wrong},
        )
    return CheckResult(True)


async def fix_addressing(content: str, ctx: CheckContext, result: CheckResult) -> FixResult:
    subsecao, uf = _target_court(ctx)
    fixed, found = rewrite_addressing(content, subsecao, uf)
    action = "replaced" if found else "inserted"
    return FixResult(fixed, f"Addressing {action}: {subsecao.upper()}/{uf.upper()}")


async def check_jurisdiction(content: str, ctx: CheckContext) -> CheckResult:
    j = ctx.jurisdiction
    if not j.evaluated:
        raise CheckNotEvaluatedError(f"jurisdiction unresolved ({j.note or 'no lookup'})")
    headers = find_addressing(content)
    if not headers:
        return CheckResult(False, f"No court header; expected {j.subsecao}/{j.uf}")
    expected = (normalize_text(j.subsecao), (j.uf or "").upper())
    wrong = [f"{city}/{uf}" for city, uf in headers if (normalize_text(city), uf) != expected]
    if wrong:
        return CheckResult(
            False,
            f"Wrong jurisdiction {', '.join(wrong)}; expected {j.subsecao}/{j.uf}",
            {"found": wrong},
        )
    return CheckResult(True)


async def fix_jurisdiction(content: str, ctx: CheckContext, result: CheckResult) -> FixResult:
    j = ctx.jurisdiction
    subsecao, uf = _target_court(ctx)
    fixed, _ = rewrite_addressing(content, subsecao, uf)
    return FixResult(
        fixed,
        f"Jurisdiction set to {subsecao}/{uf} (confidence {j.confidence})",
        confidence=95 if j.confidence == "alta" else 80,
    )


# ───────────────────────────────────────────────────────
# Value of the claim
# ───────────────────────────────────────────────────────

CLAIM_VALUE_RE = re.compile(
    r"(valor\s+da\s+causa[^\n]{0,80}?R\$\s*)(\d{1,3}(?:\.\d{3})*,\d{2}|\d+,\d{2})",
    re.IGNORECASE,
)


async def check_value_of_claim(content: str, ctx: CheckContext) -> CheckResult:
    expected = ctx.claim_reference
    if expected is None:
        raise CheckNotEvaluatedError("event date unknown")
    amounts = [parse_brl(m.group(2)) for m in CLAIM_VALUE_RE.finditer(content)]
    if not amounts:
        return CheckResult(False, "Value of the claim not stated", {"expected": expected})
    wrong = [a for a in amounts if a is None or abs(a - expected) >= 0.01]
    if wrong:
        return CheckResult(
            False,
            f"Value of the claim R$ {format_brl(wrong[0] or 0)} differs from R$ {format_brl(expected)}",
            {"expected": expected, "found": wrong},
        )
    return CheckResult(True, details={"expected": expected})


async def fix_value_of_claim(content: str, ctx: CheckContext, result: CheckResult) -> FixResult:
    expected = ctx.claim_reference
    if expected is None:
        raise CheckNotEvaluatedError("event date unknown")
    amount = format_brl(expected)
    fixed, count = CLAIM_VALUE_RE.subn(lambda m: f"{m.group(1)}{amount}", content)
    if not count:
        fixed = f"{content.rstrip()}\n\nValor da causa: R$ {amount}.\n"
    return FixResult(fixed, f"Value of the claim recalculated: R$ {amount}")


# ───────────────────────────────────────────────────────
# Missing data (placeholders)
# ───────────────────────────────────────────────────────

PLACEHOLDER_RE = re.compile(r"\[([A-Z][A-Z0-9_]*)\]")


def find_placeholders(content: str) -> list[str]:
    return list(dict.fromkeys(PLACEHOLDER_RE.findall(content)))


def placeholder_value(name: str, ctx: CheckContext) -> str | None:
    key = name.lower()
    record = ctx.record
    for source, attr in ((record, f"author_{key}"), (record, key), (ctx.case, key)):
        if source is None:
            continue
        value = getattr(source, attr, None)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


async def check_data_complete(content: str, ctx: CheckContext) -> CheckResult:
    missing = find_placeholders(content)
    if missing:
        return CheckResult(
            False,
            f"{len(missing)} unfilled field(s): {', '.join(missing)}",
            {"missing_fields": missing},
        )
    return CheckResult(True)


async def fix_data_complete(content: str, ctx: CheckContext, result: CheckResult) -> FixResult:
    filled, unresolved = [], []
    for name in result.details.get("missing_fields") or find_placeholders(content):
        value = placeholder_value(name, ctx)
        if value is None:
            unresolved.append(name)
            continue
        content = re.sub(rf"\[{re.escape(name)}\]", lambda _m, v=value: v, content, flags=re.IGNORECASE)
        filled.append(name)
    summary = f"Filled: {', '.join(filled) or 'none'}"
    if unresolved:
        summary += f"; unresolved: {', '.join(unresolved)}"
    return FixResult(content, summary)


# ───────────────────────────────────────────────────────
# Gateway-backed checks
# ───────────────────────────────────────────────────────

GRAMMAR_SYSTEM_PROMPT = """\
You are a proofreader of Brazilian Portuguese legal documents.
Report only objective spelling, agreement and punctuation errors. For each one, \
give the exact excerpt as it appears and the corrected replacement text. \
Do not rewrite style or legal arguments."""

CITATIONS_SYSTEM_PROMPT = """\
You verify legal citations in Brazilian social-security petitions.
List citations of statutes, articles, súmulas or precedents that do not exist \
or are misquoted. Give the exact citation text and, when you know it, the \
correct citation."""

# Only the first part of long artifacts is sent for review
_REVIEW_CHARS = 12000


async def _review(ctx: CheckContext, content: str, system_prompt: str, schema: dict, label: str) -> dict:
    return await ctx.gateway.call(
        prompt=f"DOCUMENT:\n\n{content[:_REVIEW_CHARS]}",
        system_prompt=system_prompt,
        expect_json=schema,
        task_label=label,
        timeout=ctx.settings.gateway_timeout,
    )


def _apply_replacements(content: str, pairs: list[tuple[str, str]]) -> tuple[str, int]:
    applied = 0
    for before, after in pairs:
        if before and after and before != after and before in content:
            content = content.replace(before, after, 1)
            applied += 1
    return content, applied


async def check_grammar(content: str, ctx: CheckContext) -> CheckResult:
    data = await _review(ctx, content, GRAMMAR_SYSTEM_PROMPT, GRAMMAR_SCHEMA, "Grammar review")
    issues = [i for i in data.get("issues") or [] if isinstance(i, dict) and i.get("excerpt")]
    if issues:
        return CheckResult(False, f"{len(issues)} language issue(s)", {"issues": issues})
    return CheckResult(True)


async def fix_grammar(content: str, ctx: CheckContext, result: CheckResult) -> FixResult:
    pairs = [(i.get("excerpt", ""), i.get("suggestion", "")) for i in result.details.get("issues", [])]
    fixed, applied = _apply_replacements(content, pairs)
    return FixResult(fixed, f"{applied} of {len(pairs)} language issue(s) corrected")


async def check_citations(content: str, ctx: CheckContext) -> CheckResult:
    data = await _review(ctx, content, CITATIONS_SYSTEM_PROMPT, CITATIONS_SCHEMA, "Citation review")
    invalid = [c for c in data.get("invalid_citations") or [] if isinstance(c, dict) and c.get("citation")]
    if invalid:
        return CheckResult(False, f"{len(invalid)} invalid citation(s)", {"invalid_citations": invalid})
    return CheckResult(True)


async def fix_citations(content: str, ctx: CheckContext, result: CheckResult) -> FixResult:
    pairs = [
        (c.get("citation", ""), c.get("suggestion", ""))
        for c in result.details.get("invalid_citations", [])
    ]
    fixed, applied = _apply_replacements(content, pairs)
    return FixResult(fixed, f"{applied} of {len(pairs)} citation(s) corrected")


# ───────────────────────────────────────────────────────
# Check table (fixes are applied in this order)
# ───────────────────────────────────────────────────────

QUALITY_CHECKS: list[dict[str, Any]] = [
    {
        "code": "addressing",
        "flag": "addressing_ok",
        "severity": "critical",
        "check": check_addressing,
        "fix": fix_addressing,
        "confidence": 95,
    },
    {
        "code": "jurisdiction",
        "flag": "jurisdiction_ok",
        "severity": "critical",
        "check": check_jurisdiction,
        "fix": fix_jurisdiction,
        "confidence": 80,
    },
    {
        "code": "value_of_claim",
        "flag": "value_of_claim_validated",
        "severity": "high",
        "check": check_value_of_claim,
        "fix": fix_value_of_claim,
        "confidence": 100,
    },
    {
        "code": "data_complete",
        "flag": "data_complete",
        "severity": "high",
        "check": check_data_complete,
        "fix": fix_data_complete,
        "confidence": 85,
    },
    {
        "code": "grammar",
        "flag": "grammar_ok",
        "severity": "low",
        "check": check_grammar,
        "fix": fix_grammar,
        "confidence": 75,
    },
    {
        "code": "citations",
        "flag": "citations_validated",
        "severity": "medium",
        "check": check_citations,
        "fix": fix_citations,
        "confidence": 70,
    },
]

CHECKS_BY_CODE: dict[str, dict[str, Any]] = {c["code"]: c for c in QUALITY_CHECKS}
