"""Tests for caseflow/pipeline/orchestrator.py - end-to-end case processing.

Tests cover:
  - classify → extract → consolidate → stale → validate sequencing
  - explicit partial success ("N of M documents processed")
  - extraction failing for every batch
  - stale flags only when the consolidated record changes
  - manual type overrides, readiness polling, background tasks
"""

import asyncio

import pytest

from caseflow.config import DERIVED_RECORDS
from caseflow.pipeline.errors import (
    ExtractionFailedError,
    GatewayServerError,
    MissingPrerequisiteError,
    QuotaExhaustedError,
    RateLimitError,
)
from caseflow.pipeline.merge import CHILD_NAME_ANOMALY
from caseflow.pipeline.tasks import PARTIAL, SUCCEEDED

VALIDATION_OK = {
    "score": 8.0,
    "can_proceed": True,
    "checklist": [],
    "missing_docs": [],
    "recommendations": ["Protocolar a petição"],
}

MOTHER = {"motherName": "Maria da Silva", "motherCpf": "12345678901"}


@pytest.fixture
def uploaded(pipeline, case):
    """Three documents uploaded through the pipeline (one batch)."""
    return [
        pipeline.add_document(case.id, "procuracao.pdf", b"%PDF-1.4 proc"),
        pipeline.add_document(case.id, "certidao_nascimento.pdf", b"%PDF-1.4 cert"),
        pipeline.add_document(case.id, "aut1.pdf", b"%PDF-1.4 aut"),
    ]


# ═══════════════════════════════════════════════════
# Documents
# ═══════════════════════════════════════════════════

class TestDocuments:

    def test_add_document_classifies(self, pipeline, store, case):
        doc = pipeline.add_document(case.id, "Certidão de Nascimento.jpg", b"\xff\xd8", "image/jpeg")
        assert doc.document_type == "certidao_nascimento"
        assert doc.type_source == "classifier"
        assert doc.file_path == f"{case.id}/{doc.id}.jpg"
        assert pipeline.blobs.download(doc.file_path) == b"\xff\xd8"
        assert store.get_document(case.id, doc.id) == doc

    def test_add_document_unknown_case(self, pipeline):
        with pytest.raises(FileNotFoundError):
            pipeline.add_document("missing", "rg.pdf", b"x")

    def test_override_uses_label_mapping(self, pipeline, case):
        doc = pipeline.add_document(case.id, "scan_0001.pdf", b"x")
        updated = pipeline.override_document_type(case.id, doc.id, "Extrato CNIS")
        assert (updated.document_type, updated.type_source) == ("cnis", "manual")

    def test_create_case(self, pipeline, store):
        case = pipeline.create_case("urbana", "adocao", "2024-03-01", "Cacoal", "ro")
        assert store.get_case(case.id).uf == "RO"


# ═══════════════════════════════════════════════════
# Processing
# ═══════════════════════════════════════════════════

class TestProcessDocuments:

    @pytest.mark.asyncio
    async def test_full_run(self, pipeline, gateway, store, case, uploaded):
        gateway.on("Extract", {**MOTHER, "childName": "Ana", "childBirthDate": "2023-05-10"})
        gateway.on("Validate", VALIDATION_OK)

        result = await pipeline.process_documents(case.id)

        assert result.status == SUCCEEDED
        assert result.message == "3 of 3 documents processed"
        assert len(result.extraction_ids) == 1
        assert result.validation_score == 8.0
        assert result.is_sufficient is True

        record = store.get_case_record(case.id)
        assert record.author_name == "Maria da Silva"
        assert record.child_name == "Ana"
        assert store.get_validation_report(case.id).score == 8.0

    @pytest.mark.asyncio
    async def test_partial_success_names_failed_documents(self, pipeline, gateway, case, uploaded):
        extra = pipeline.add_document(case.id, "cnis.pdf", b"%PDF-1.4 cnis")
        gateway.on("Extract", MOTHER, RateLimitError("slow down"))
        gateway.on("Validate", VALIDATION_OK)

        result = await pipeline.process_documents(case.id)

        assert result.status == PARTIAL
        assert result.failed == {extra.id: "slow down"}
        assert result.message == "3 of 4 documents processed; 1 failed: cnis.pdf (slow down)"
        assert result.to_dict()["status"] == "partial"

    @pytest.mark.asyncio
    async def test_every_batch_failing_raises(self, pipeline, gateway, store, case, uploaded):
        gateway.on("Extract", GatewayServerError("down", status_code=503))

        with pytest.raises(ExtractionFailedError) as exc:
            await pipeline.process_documents(case.id)

        assert set(exc.value.failed) == {d.id for d in uploaded}
        assert store.list_extractions(case.id) == []
        assert store.get_case_record(case.id) is None
        assert gateway.calls_for("Validate") == []

    @pytest.mark.asyncio
    async def test_quota_exhaustion_stops_remaining_batches(self, pipeline, gateway, store, case, uploaded):
        for name in ("rg.pdf", "cnis.pdf", "ter1.pdf"):
            pipeline.add_document(case.id, name, b"%PDF-1.4 more")
        gateway.on("Extract", QuotaExhaustedError("credits exhausted", status_code=402))

        with pytest.raises(QuotaExhaustedError):
            await pipeline.process_documents(case.id)

        assert len(gateway.calls_for("Extract")) == 1
        assert gateway.calls_for("Validate") == []

    @pytest.mark.asyncio
    async def test_quota_exhaustion_keeps_earlier_batches(self, pipeline, gateway, store, case, uploaded):
        pipeline.add_document(case.id, "cnis.pdf", b"%PDF-1.4 cnis")
        gateway.on("Extract", MOTHER, QuotaExhaustedError("credits exhausted", status_code=402))

        with pytest.raises(QuotaExhaustedError):
            await pipeline.process_documents(case.id)

        (extraction,) = store.list_extractions(case.id)
        assert extraction.document_ids == [d.id for d in uploaded]
        assert store.get_case_record(case.id) is None

    @pytest.mark.asyncio
    async def test_no_documents(self, pipeline, case):
        with pytest.raises(MissingPrerequisiteError):
            await pipeline.process_documents(case.id)

    @pytest.mark.asyncio
    async def test_unknown_document_ids(self, pipeline, case, uploaded):
        with pytest.raises(FileNotFoundError):
            await pipeline.process_documents(case.id, ["nope"])

    @pytest.mark.asyncio
    async def test_subset_of_documents(self, pipeline, gateway, store, case, uploaded):
        gateway.on("Extract", MOTHER)
        gateway.on("Validate", VALIDATION_OK)

        result = await pipeline.process_documents(case.id, [uploaded[2].id])

        assert result.total == 1
        (extraction,) = store.list_extractions(case.id)
        assert extraction.document_ids == [uploaded[2].id]

    @pytest.mark.asyncio
    async def test_validation_failure_is_partial(self, pipeline, gateway, store, case, uploaded):
        gateway.on("Extract", MOTHER)
        gateway.on("Validate", GatewayServerError("down", status_code=503))

        result = await pipeline.process_documents(case.id)

        assert result.status == PARTIAL
        assert "validation not run: GATEWAY_UNAVAILABLE" in result.message
        assert store.get_case_record(case.id).author_name == "Maria da Silva"

    @pytest.mark.asyncio
    async def test_extraction_rows(self, pipeline, gateway, store, case, uploaded):
        gateway.on("Extract", {
            "motherName": "Maria",
            "ruralPeriods": [{"startDate": "2015-01-01", "endDate": "2020-12-31", "location": "Sítio"}],
            "observations": "assinatura ilegível",
        })
        gateway.on("Validate", VALIDATION_OK)

        await pipeline.process_documents(case.id)

        (extraction,) = store.list_extractions(case.id)
        assert "ruralPeriods" not in extraction.entities.model_fields_set
        assert extraction.rural_periods[0].location == "Sítio"
        assert extraction.missing_fields == ["motherCpf", "childName", "childBirthDate"]
        assert extraction.observations == ["assinatura ilegível"]
        assert store.get_case_record(case.id).rural_periods[0].start_date == "2015-01-01"

    @pytest.mark.asyncio
    async def test_batches_fold_in_submission_order(self, pipeline, gateway, store, case, uploaded):
        pipeline.add_document(case.id, "cnis.pdf", b"%PDF-1.4 cnis")
        gateway.on(
            "Extract",
            {"motherName": "Maria da Silva", "childName": "Maria da Silva"},
            {"motherName": "Maria S.", "childName": "Ana Clara"},
        )
        gateway.on("Validate", VALIDATION_OK)

        await pipeline.process_documents(case.id)

        stamps = sorted(e.extracted_at for e in store.list_extractions(case.id))
        assert stamps[0] < stamps[1]
        record = store.get_case_record(case.id)
        assert record.author_name == "Maria da Silva"
        assert record.child_name == "Ana Clara"
        assert CHILD_NAME_ANOMALY in record.anomalies

    @pytest.mark.asyncio
    async def test_manual_override_survives_processing(self, pipeline, gateway, store, case):
        doc = pipeline.add_document(case.id, "scan_0001.pdf", b"x")
        pipeline.override_document_type(case.id, doc.id, "cnis")
        gateway.on("Extract", MOTHER)
        gateway.on("Validate", VALIDATION_OK)

        await pipeline.process_documents(case.id)

        assert store.get_document(case.id, doc.id).document_type == "cnis"
        assert gateway.calls_for("Extract")[0]["task_label"] == "Extract 1 document(s): cnis"

    @pytest.mark.asyncio
    async def test_progress_stages(self, pipeline, gateway, case, uploaded):
        gateway.on("Extract", MOTHER)
        gateway.on("Validate", VALIDATION_OK)
        stages = []

        async def on_progress(stage, message, detail):
            stages.append(stage)

        await pipeline.process_documents(case.id, on_progress=on_progress)
        assert stages == ["classify", "extraction", "extract", "consolidate"]


# ═══════════════════════════════════════════════════
# Stale propagation
# ═══════════════════════════════════════════════════

class TestStalePropagation:

    @pytest.mark.asyncio
    async def test_changed_record_marks_derived_stale(self, pipeline, gateway, store, case, uploaded):
        gateway.on("Extract", MOTHER)
        gateway.on("Validate", VALIDATION_OK)
        pipeline.save_artifact(case.id, "petition", "draft")

        result = await pipeline.process_documents(case.id)

        assert result.record_changed is True
        assert store.get_stale_flags(case.id) == {name: True for name in DERIVED_RECORDS}
        assert store.get_artifact(case.id, "petition").is_stale is True

    @pytest.mark.asyncio
    async def test_unchanged_record_leaves_artifacts_fresh(self, pipeline, gateway, store, case, uploaded):
        gateway.on("Extract", MOTHER)
        gateway.on("Validate", VALIDATION_OK)
        await pipeline.process_documents(case.id)

        pipeline.save_artifact(case.id, "petition", "regenerated")
        result = await pipeline.process_documents(case.id)

        assert result.record_changed is False
        assert store.get_artifact(case.id, "petition").is_stale is False
        assert len(store.list_extractions(case.id)) == 2


# ═══════════════════════════════════════════════════
# Readiness and background tasks
# ═══════════════════════════════════════════════════

class TestReadiness:

    @pytest.mark.asyncio
    async def test_ready_after_processing(self, pipeline, gateway, case, uploaded):
        gateway.on("Extract", MOTHER)
        gateway.on("Validate", VALIDATION_OK)
        await pipeline.process_documents(case.id)

        readiness = await pipeline.wait_for_extractions(case.id)

        assert readiness.ready is True
        assert readiness.covered == [d.id for d in uploaded]

    @pytest.mark.asyncio
    async def test_times_out_without_error(self, pipeline, case, uploaded):
        loop = asyncio.get_running_loop()
        started = loop.time()

        readiness = await pipeline.wait_for_extractions(case.id, timeout=0.05)

        assert readiness.ready is False
        assert readiness.covered == []
        assert readiness.message.endswith("continue anyway")
        assert loop.time() - started < 1.0

    @pytest.mark.asyncio
    async def test_becomes_ready_while_polling(self, pipeline, gateway, case, uploaded):
        gateway.on("Extract", MOTHER)
        gateway.on("Validate", VALIDATION_OK)

        task = pipeline.start_processing(case.id)
        readiness = await pipeline.wait_for_extractions(case.id, timeout=2)
        await pipeline.tasks.wait(task.task_id, timeout=2)

        assert readiness.ready is True
        assert task.status == SUCCEEDED


class TestBackgroundProcessing:

    @pytest.mark.asyncio
    async def test_start_processing_returns_task(self, pipeline, gateway, case, uploaded):
        gateway.on("Extract", MOTHER)
        gateway.on("Validate", VALIDATION_OK)

        task = pipeline.start_processing(case.id)
        assert task.kind == "process"
        await pipeline.tasks.wait(task.task_id, timeout=2)

        assert task.status == SUCCEEDED
        assert task.result["message"] == "3 of 3 documents processed"
        assert any(p["stage"] == "extraction" for p in task.progress)

    @pytest.mark.asyncio
    async def test_failure_recorded_on_task(self, pipeline, gateway, case, uploaded):
        gateway.on("Extract", QuotaExhaustedError("credits exhausted", status_code=402))

        task = pipeline.start_processing(case.id)
        await pipeline.tasks.wait(task.task_id, timeout=2)

        assert task.status == "failed"
        assert task.error_code == "NO_CREDITS"

    def test_unknown_case(self, pipeline):
        with pytest.raises(FileNotFoundError):
            pipeline.start_processing("missing")
