"""Quality-report auto-fix loop for generated artifacts.

State machine over one artifact version:

    Generated ──all evaluated checks pass──► Approved
        │
        └─any check fails──► Correcting ──► AutoCorrected | ApprovedWithWarnings

Checks run concurrently (they only read the content).  The correcting
state applies each failed check's fix once, re-runs only the failed
checks, and always terminates: there is exactly one correction pass.

The corrected content is written with the version read at the start.  If
a newer version appeared meanwhile, the pass is discarded and the loop
restarts against the newer version (bounded by ``quality_max_restarts``).
"""

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Any

from caseflow.config import Settings
from caseflow.pipeline.errors import PipelineError, StaleArtifactError
from caseflow.pipeline.jurisdiction import JurisdictionResolver
from caseflow.pipeline.llm_client import GatewayClient, LLMProgressCallback, _noop_cb
from caseflow.pipeline.models import CorrectionRecord, QualityIssue, QualityReport
from caseflow.pipeline.quality_checks import (
    CHECKS_BY_CODE,
    QUALITY_CHECKS,
    CheckContext,
    CheckResult,
)
from caseflow.pipeline.store import JsonCaseStore

logger = logging.getLogger(__name__)

EXCERPT_CHARS = 500


class QualityLoop:
    """Runs quality checks over an artifact and applies one bounded correction pass."""

    def __init__(
        self,
        settings: Settings,
        store: JsonCaseStore,
        gateway: GatewayClient,
        resolver: JurisdictionResolver | None = None,
    ):
        self.settings = settings
        self.store = store
        self.gateway = gateway
        self.resolver = resolver or JurisdictionResolver(settings, gateway)

    async def _evaluate(self, entry: dict[str, Any], content: str, ctx: CheckContext) -> CheckResult | None:
        try:
            return await entry["check"](content, ctx)
        except PipelineError as e:
            logger.warning(f"Quality check '{entry['code']}' not evaluated ({e.code}): {e}")
            return None

    async def _run_checks(
        self,
        entries: list[dict[str, Any]],
        content: str,
        ctx: CheckContext,
    ) -> dict[str, CheckResult | None]:
        results = await asyncio.gather(*(self._evaluate(e, content, ctx) for e in entries))
        return {entry["code"]: result for entry, result in zip(entries, results)}

    async def run(
        self,
        case_id: str,
        artifact_id: str,
        on_progress: LLMProgressCallback | None = None,
    ) -> QualityReport:
        cb = on_progress or _noop_cb
        restarts = 0
        while True:
            artifact = self.store.get_artifact(case_id, artifact_id)
            case = self.store.get_case(case_id)
            record = self.store.get_case_record(case_id)
            jurisdiction = await self.resolver.resolve(case, record, on_progress=on_progress)
            ctx = CheckContext(
                case=case,
                record=record,
                jurisdiction=jurisdiction,
                gateway=self.gateway,
                settings=self.settings,
            )

            await cb("quality", f"Checking {artifact_id} v{artifact.version}", {
                "type": "quality_checks", "artifact_version": artifact.version,
            })
            initial = await self._run_checks(QUALITY_CHECKS, artifact.content, ctx)
            failed = [code for code, r in initial.items() if r is not None and not r.passed]

            if not failed:
                report = self._build_report(
                    case_id, artifact_id, artifact.version, ctx, initial, {}, failed, restarts,
                )
                self.store.replace_quality_report(report)
                logger.info(f"Case {case_id}: artifact {artifact_id} v{artifact.version} approved")
                return report

            # ── Correcting: one pass, table order ──
            await cb("quality", f"Correcting {len(failed)} issue(s)", {
                "type": "quality_correcting", "failed": failed,
            })
            content = artifact.content
            corrections: list[CorrectionRecord] = []
            for entry in QUALITY_CHECKS:
                code = entry["code"]
                if code not in failed:
                    continue
                try:
                    fix = await entry["fix"](content, ctx, initial[code])
                except PipelineError as e:
                    logger.warning(f"Fix for '{code}' could not be applied ({e.code}): {e}")
                    continue
                if fix.content != content:
                    corrections.append(CorrectionRecord(
                        id=uuid.uuid4().hex[:12],
                        case_id=case_id,
                        artifact_id=artifact_id,
                        correction_type=code,
                        before_content=content[:EXCERPT_CHARS],
                        after_content=fix.content[:EXCERPT_CHARS],
                        changes_summary=fix.summary,
                        auto_applied=True,
                        confidence_score=fix.confidence or entry["confidence"],
                        created_at=datetime.now(),
                    ))
                    content = fix.content

            rechecks = await self._run_checks([CHECKS_BY_CODE[c] for c in failed], content, ctx)

            version = artifact.version
            if content != artifact.content:
                try:
                    saved = self.store.save_artifact(
                        case_id, artifact_id, content, expected_version=artifact.version,
                    )
                except StaleArtifactError as e:
                    if restarts >= self.settings.quality_max_restarts:
                        logger.error(f"Case {case_id}: giving up on {artifact_id} after {restarts} restart(s)")
                        raise
                    restarts += 1
                    logger.warning(
                        f"Case {case_id}: {e}; discarding {len(corrections)} correction(s) "
                        f"and restarting ({restarts}/{self.settings.quality_max_restarts})"
                    )
                    continue
                version = saved.version
                self.store.append_corrections(case_id, corrections)

            report = self._build_report(
                case_id, artifact_id, version, ctx, initial, rechecks, failed, restarts,
            )
            self.store.replace_quality_report(report)
            logger.info(
                f"Case {case_id}: artifact {artifact_id} -> {report.status} "
                f"({len(corrections)} correction(s), not evaluated: {report.not_evaluated})"
            )
            return report

    def _build_report(
        self,
        case_id: str,
        artifact_id: str,
        version: int,
        ctx: CheckContext,
        initial: dict[str, CheckResult | None],
        rechecks: dict[str, CheckResult | None],
        failed: list[str],
        restarts: int,
    ) -> QualityReport:
        flags: dict[str, bool | None] = {}
        issues: list[QualityIssue] = []
        not_evaluated: list[str] = []
        unresolved: list[str] = []
        missing_fields: list[str] = []

        for entry in QUALITY_CHECKS:
            code = entry["code"]
            first = initial.get(code)
            if first is None:
                not_evaluated.append(code)
                flags[entry["flag"]] = None
                continue
            if code not in failed:
                flags[entry["flag"]] = True
                continue
            # a re-check that could not run leaves the failure standing
            final = rechecks.get(code)
            resolved = final is not None and final.passed
            flags[entry["flag"]] = resolved
            if not resolved:
                unresolved.append(code)
                if code == "data_complete":
                    source = final or first
                    missing_fields = list(source.details.get("missing_fields", []))
            issues.append(QualityIssue(
                check=code,
                severity=entry["severity"],
                message=first.message,
                resolved=resolved,
            ))

        if not failed:
            status = "approved"
        elif unresolved:
            status = "approved_with_warnings"
        else:
            status = "auto_corrected"

        return QualityReport(
            case_id=case_id,
            artifact_id=artifact_id,
            artifact_version=version,
            **flags,
            issues=issues,
            not_evaluated=not_evaluated,
            missing_fields=missing_fields,
            value_of_claim_reference=ctx.claim_reference,
            jurisdiction_confidence=ctx.jurisdiction.confidence if ctx.jurisdiction.evaluated else None,
            status=status,
            correction_passes=1 if failed else 0,
            restarts=restarts,
            generated_at=datetime.now(),
        )
