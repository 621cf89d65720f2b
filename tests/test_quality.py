"""Tests for the quality-report auto-fix loop.

Tests cover:
  - caseflow/pipeline/minimum_wage.py: wage table and BRL formatting
  - caseflow/pipeline/jurisdiction.py: lookup, fallback, confidence
  - caseflow/pipeline/quality_checks.py: individual checks and fixes
  - caseflow/pipeline/quality.py: one bounded correction pass, not-evaluated
    checks, optimistic-version restarts and the correction history
"""

import pytest

from caseflow.pipeline.errors import (
    CheckNotEvaluatedError,
    GatewayServerError,
    GatewayTimeoutError,
    StaleArtifactError,
)
from caseflow.pipeline.jurisdiction import Jurisdiction, JurisdictionResolver
from caseflow.pipeline.minimum_wage import (
    DEFAULT_MINIMUM_WAGE,
    claim_value,
    event_year,
    format_brl,
    minimum_wage_for,
    parse_brl,
)
from caseflow.pipeline.models import CaseRecord
from caseflow.pipeline.quality import EXCERPT_CHARS, QualityLoop
from caseflow.pipeline.quality_checks import (
    CheckContext,
    CheckResult,
    check_addressing,
    check_value_of_claim,
    fix_data_complete,
    fix_value_of_claim,
    find_addressing,
    rewrite_addressing,
)

from conftest import PETITION_OK

JI_PARANA = {"subsecao": "Ji-Paraná", "uf": "RO", "confianca": "alta", "observacao": ""}


@pytest.fixture
def reviews(gateway):
    """Jurisdiction lookup plus clean grammar / citation reviews."""
    gateway.on("Jurisdiction", JI_PARANA)
    gateway.on("Grammar", {"issues": []})
    gateway.on("Citation", {"invalid_citations": []})
    return gateway


@pytest.fixture
def record(store, case):
    return store.replace_case_record(CaseRecord(
        case_id=case.id,
        author_name="Maria da Silva",
        author_cpf="12345678901",
        child_birth_date="2023-05-10",
    ))


@pytest.fixture
def loop(settings, store, gateway):
    return QualityLoop(settings, store, gateway)


def _ctx(case, settings, gateway, record=None, jurisdiction=None):
    return CheckContext(
        case=case,
        record=record,
        jurisdiction=jurisdiction or Jurisdiction("Ji-Paraná", "RO", "alta", evaluated=True),
        gateway=gateway,
        settings=settings,
    )


# ═══════════════════════════════════════════════════
# Minimum wage
# ═══════════════════════════════════════════════════

class TestMinimumWage:

    def test_known_and_unknown_years(self):
        assert minimum_wage_for(2023) == 1320.00
        assert minimum_wage_for(1999) == DEFAULT_MINIMUM_WAGE

    def test_claim_value_is_four_wages(self):
        assert claim_value(2023) == 5280.00
        assert claim_value(2019) == 3992.00

    @pytest.mark.parametrize("text, year", [
        ("2023-05-10", 2023), ("10/05/2023", 2023), ("1/2/2021", 2021),
        ("maio de 2023", None), ("", None), (None, None),
    ])
    def test_event_year(self, text, year):
        assert event_year(text) == year

    def test_brl(self):
        assert format_brl(5280) == "5.280,00"
        assert format_brl(1234.5) == "1.234,50"
        assert format_brl(998) == "998,00"
        assert parse_brl("5.280,00") == 5280.00
        assert parse_brl("abc") is None


# ═══════════════════════════════════════════════════
# Jurisdiction
# ═══════════════════════════════════════════════════

class TestJurisdictionResolver:

    @pytest.mark.asyncio
    async def test_lookup(self, settings, gateway, case):
        gateway.on("Jurisdiction", {**JI_PARANA, "confianca": "MEDIA"})
        result = await JurisdictionResolver(settings, gateway).resolve(case)
        assert (result.subsecao, result.uf, result.confidence) == ("Ji-Paraná", "RO", "media")
        assert result.evaluated is True
        assert gateway.calls_for("Jurisdiction")[0]["task_label"] == "Jurisdiction Porto Velho/RO"

    @pytest.mark.asyncio
    async def test_gateway_failure_falls_back_to_city(self, settings, gateway, case):
        gateway.on("Jurisdiction", GatewayTimeoutError("slow"))
        result = await JurisdictionResolver(settings, gateway).resolve(case)
        assert (result.subsecao, result.uf) == ("Porto Velho", "RO")
        assert result.evaluated is False

    @pytest.mark.asyncio
    async def test_city_from_record(self, settings, gateway, case):
        gateway.on("Jurisdiction", {**JI_PARANA, "confianca": "certain"})
        case = case.model_copy(update={"city": None, "uf": None})
        record = CaseRecord(case_id=case.id, land_municipality="Ouro Preto do Oeste", birth_state="ro")

        result = await JurisdictionResolver(settings, gateway).resolve(case, record)

        assert result.confidence == "baixa"
        assert "Ouro Preto do Oeste" in gateway.calls_for("Jurisdiction")[0]["prompt"]

    @pytest.mark.asyncio
    async def test_unknown_city(self, settings, gateway, case):
        case = case.model_copy(update={"city": None})
        result = await JurisdictionResolver(settings, gateway).resolve(case)
        assert result.subsecao is None
        assert gateway.calls == []


# ═══════════════════════════════════════════════════
# Individual checks and fixes
# ═══════════════════════════════════════════════════

class TestChecksAndFixes:

    def test_rewrite_addressing_prepends_when_missing(self):
        content, found = rewrite_addressing("Corpo da petição", "Ji-Paraná", "ro")
        assert found is False
        assert content.startswith(
            "EXCELENTÍSSIMO SENHOR DOUTOR JUIZ FEDERAL DO JUIZADO ESPECIAL FEDERAL DE JI-PARANÁ/RO"
        )

    def test_addressing_with_apostrophe_city(self):
        content = PETITION_OK.replace("JI-PARANÁ/RO", "MIRASSOL D'OESTE/MT")
        assert find_addressing(content) == [("MIRASSOL D'OESTE", "MT")]

        rewritten, found = rewrite_addressing(content, "Herval d'Oeste", "sc")
        assert found is True
        assert find_addressing(rewritten) == [("HERVAL D'OESTE", "SC")]
        assert rewritten.count("EXCELENTÍSSIMO") == 1

    @pytest.mark.asyncio
    async def test_addressing_wrong_state(self, case, settings, gateway):
        content = PETITION_OK.replace("JI-PARANÁ/RO", "RIO BRANCO/AC")
        result = await check_addressing(content, _ctx(case, settings, gateway))
        assert result.passed is False
        assert "AC" in result.message

    @pytest.mark.asyncio
    async def test_value_of_claim_needs_event_date(self, case, settings, gateway):
        case = case.model_copy(update={"event_date": None})
        with pytest.raises(CheckNotEvaluatedError):
            await check_value_of_claim(PETITION_OK, _ctx(case, settings, gateway))

    @pytest.mark.asyncio
    async def test_value_of_claim_uses_child_birth_year(self, case, settings, gateway):
        record = CaseRecord(case_id=case.id, child_birth_date="2024-02-01")
        result = await check_value_of_claim(PETITION_OK, _ctx(case, settings, gateway, record))
        assert result.passed is False
        assert result.details["expected"] == 5648.00

    @pytest.mark.asyncio
    async def test_fix_value_appends_when_missing(self, case, settings, gateway):
        fix = await fix_value_of_claim("Petição sem valor.", _ctx(case, settings, gateway), CheckResult(False))
        assert fix.content.endswith("Valor da causa: R$ 5.280,00.\n")

    @pytest.mark.asyncio
    async def test_fix_data_complete_reports_unresolved(self, case, settings, gateway):
        record = CaseRecord(case_id=case.id, author_cpf="12345678901")
        content = "CPF [CPF], NIT [NIT], cidade [CITY]"
        result = CheckResult(False, details={"missing_fields": ["CPF", "NIT", "CITY"]})

        fix = await fix_data_complete(content, _ctx(case, settings, gateway, record), result)

        assert fix.content == "CPF 12345678901, NIT [NIT], cidade Porto Velho"
        assert "unresolved: NIT" in fix.summary


# ═══════════════════════════════════════════════════
# Quality loop
# ═══════════════════════════════════════════════════

class TestQualityLoop:

    @pytest.mark.asyncio
    async def test_clean_artifact_approved_without_correction(self, loop, reviews, store, case, record):
        store.save_artifact(case.id, "petition", PETITION_OK)

        report = await loop.run(case.id, "petition")

        assert report.status == "approved"
        assert report.correction_passes == 0
        assert report.issues == []
        assert report.value_of_claim_reference == 5280.00
        assert report.jurisdiction_confidence == "alta"
        assert store.get_artifact(case.id, "petition").version == 1
        assert store.list_corrections(case.id) == []

    @pytest.mark.asyncio
    async def test_three_defects_fixed_in_one_pass(self, loop, reviews, store, case, record):
        content = (
            PETITION_OK
            .replace("JI-PARANÁ/RO", "PORTO VELHO/RO")
            .replace("5.280,00", "4.000,00")
            .replace("CPF 12345678901", "CPF [CPF]")
        )
        store.save_artifact(case.id, "petition", content)

        report = await loop.run(case.id, "petition")

        assert report.status == "auto_corrected"
        assert report.correction_passes == 1
        assert report.artifact_version == 2
        assert [i.check for i in report.issues] == ["jurisdiction", "value_of_claim", "data_complete"]
        assert all(i.resolved for i in report.issues)
        assert report.addressing_ok is True

        corrected = store.get_artifact(case.id, "petition").content
        assert "JI-PARANÁ/RO" in corrected
        assert "R$ 5.280,00" in corrected
        assert "CPF 12345678901" in corrected

        history = store.list_corrections(case.id, "petition")
        assert [c.correction_type for c in history] == [
            "jurisdiction", "value_of_claim", "data_complete",
        ]
        assert [c.confidence_score for c in history] == [95, 100, 85]
        # passing checks are not re-run
        assert len(reviews.calls_for("Grammar")) == 1

    @pytest.mark.asyncio
    async def test_unreachable_review_is_not_evaluated(self, loop, gateway, store, case, record):
        gateway.on("Jurisdiction", JI_PARANA)
        gateway.on("Grammar", GatewayServerError("down", status_code=503))
        gateway.on("Citation", {"invalid_citations": []})
        store.save_artifact(case.id, "petition", PETITION_OK)

        report = await loop.run(case.id, "petition")

        assert report.grammar_ok is None
        assert report.not_evaluated == ["grammar"]
        assert report.status == "approved"

    @pytest.mark.asyncio
    async def test_failed_lookup_leaves_jurisdiction_unevaluated(self, loop, gateway, store, case, record):
        gateway.on("Jurisdiction", GatewayTimeoutError("slow"))
        gateway.on("Grammar", {"issues": []})
        gateway.on("Citation", {"invalid_citations": []})
        store.save_artifact(case.id, "petition", PETITION_OK)

        report = await loop.run(case.id, "petition")

        assert report.jurisdiction_ok is None
        assert report.addressing_ok is True
        assert report.jurisdiction_confidence is None
        assert "jurisdiction" in report.not_evaluated

    @pytest.mark.asyncio
    async def test_unfixable_placeholder_approved_with_warnings(self, loop, reviews, store, case, record):
        store.save_artifact(case.id, "petition", PETITION_OK + "\nNIT: [NIT]\n")

        report = await loop.run(case.id, "petition")

        assert report.status == "approved_with_warnings"
        assert report.data_complete is False
        assert report.missing_fields == ["NIT"]
        assert report.issues[0].resolved is False
        # nothing changed, so nothing was written
        assert store.get_artifact(case.id, "petition").version == 1
        assert store.list_corrections(case.id) == []

    @pytest.mark.asyncio
    async def test_grammar_fix_applied(self, loop, gateway, store, case, record):
        gateway.on("Jurisdiction", JI_PARANA)
        gateway.on(
            "Grammar",
            {"issues": [{"excerpt": "vem propor", "suggestion": "vem propor a presente", "type": "style"}]},
            {"issues": []},
        )
        gateway.on("Citation", {"invalid_citations": []})
        store.save_artifact(case.id, "petition", PETITION_OK)

        report = await loop.run(case.id, "petition")

        assert report.status == "auto_corrected"
        assert report.grammar_ok is True
        assert "vem propor a presente" in store.get_artifact(case.id, "petition").content

    @pytest.mark.asyncio
    async def test_excerpts_are_truncated(self, loop, reviews, store, case, record):
        long_body = PETITION_OK.replace("5.280,00", "1,00") + ("x" * 2000)
        store.save_artifact(case.id, "petition", long_body)

        await loop.run(case.id, "petition")

        (correction,) = store.list_corrections(case.id)
        assert len(correction.before_content) == EXCERPT_CHARS
        assert len(correction.after_content) == EXCERPT_CHARS

    @pytest.mark.asyncio
    async def test_concurrent_edit_restarts_against_new_version(self, loop, gateway, store, case, record):
        defective = PETITION_OK.replace("5.280,00", "4.000,00")
        store.save_artifact(case.id, "petition", defective)
        edits = []

        def citation_review(**call):
            # another writer saves a new version while checks run
            if not edits:
                edits.append(store.save_artifact(case.id, "petition", defective + "\nAdendo.\n"))
            return {"invalid_citations": []}

        gateway.on("Jurisdiction", JI_PARANA)
        gateway.on("Grammar", {"issues": []})
        gateway.on("Citation", citation_review)

        report = await loop.run(case.id, "petition")

        assert report.restarts == 1
        assert report.artifact_version == 3
        final = store.get_artifact(case.id, "petition").content
        assert "Adendo." in final
        assert "R$ 5.280,00" in final
        assert len(store.list_corrections(case.id)) == 1

    @pytest.mark.asyncio
    async def test_restart_budget_exhausted(self, loop, gateway, store, case, record):
        loop.settings.quality_max_restarts = 0
        defective = PETITION_OK.replace("5.280,00", "4.000,00")
        store.save_artifact(case.id, "petition", defective)

        def citation_review(**call):
            store.save_artifact(case.id, "petition", defective)
            return {"invalid_citations": []}

        gateway.on("Jurisdiction", JI_PARANA)
        gateway.on("Grammar", {"issues": []})
        gateway.on("Citation", citation_review)

        with pytest.raises(StaleArtifactError):
            await loop.run(case.id, "petition")
        assert store.list_corrections(case.id) == []
        assert store.get_quality_report(case.id, "petition") is None

    @pytest.mark.asyncio
    async def test_repeat_run_keeps_single_header(self, loop, gateway, store, case, record):
        gateway.on("Jurisdiction", {"subsecao": "Mirassol D'Oeste", "uf": "MT", "confianca": "alta"})
        gateway.on("Grammar", {"issues": []})
        gateway.on("Citation", {"invalid_citations": []})
        store.save_artifact(case.id, "petition", PETITION_OK.replace("JI-PARANÁ/RO", "PORTO VELHO/RO"))

        first = await loop.run(case.id, "petition")
        second = await loop.run(case.id, "petition")

        assert first.status == "auto_corrected"
        assert second.status == "approved"
        assert second.correction_passes == 0
        artifact = store.get_artifact(case.id, "petition")
        assert artifact.version == 2
        assert artifact.content.count("EXCELENTÍSSIMO") == 1
        assert "FEDERAL DE MIRASSOL D'OESTE/MT" in artifact.content
