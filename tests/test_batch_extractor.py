"""Tests for caseflow/pipeline/extractors - batch extraction.

Tests cover:
  - batching: fixed-size batches, strictly sequential
  - oversized / missing documents skipped and reported, never truncated
  - failed batches reported and skipped without aborting the run
  - unset fields stay unset ("not observed" vs "observed empty")
  - per-type instruction blocks in the combined request
"""

import base64

import pytest

from caseflow.pipeline.errors import (
    MalformedResponseError,
    QuotaExhaustedError,
    RateLimitError,
)
from caseflow.pipeline.extractors import BatchExtractor
from caseflow.pipeline.extractors.base import DocumentInput
from caseflow.pipeline.extractors.batch import chunk
from caseflow.pipeline.extractors.prompts import build_document_instruction, build_system_prompt

from conftest import make_document


def _upload(blobs, doc, content: bytes = b"%PDF-1.4 test"):
    blobs.upload(doc.file_path, content)
    return doc


def _docs(blobs, count: int, document_type: str = "procuracao"):
    return [
        _upload(blobs, make_document("case-001", f"d{i}", f"doc{i}.pdf", document_type))
        for i in range(1, count + 1)
    ]


# ═══════════════════════════════════════════════════
# Batching
# ═══════════════════════════════════════════════════

class TestBatching:

    def test_chunk(self):
        assert chunk([1, 2, 3, 4, 5, 6, 7], 3) == [[1, 2, 3], [4, 5, 6], [7]]
        assert chunk([], 3) == []

    @pytest.mark.asyncio
    async def test_seven_documents_make_three_batches(self, settings, blobs, gateway):
        gateway.on("Extract", {"motherName": "Maria"})
        extractor = BatchExtractor(settings, gateway, blobs)

        run = await extractor.run(_docs(blobs, 7))

        assert [o.document_ids for o in run.outcomes] == [
            ["d1", "d2", "d3"], ["d4", "d5", "d6"], ["d7"],
        ]
        assert len(gateway.calls_for("Extract")) == 3
        assert all(o.succeeded for o in run.outcomes)

    @pytest.mark.asyncio
    async def test_one_request_per_batch_with_each_document(self, settings, blobs, gateway):
        gateway.on("Extract", {})
        extractor = BatchExtractor(settings, gateway, blobs)
        docs = _docs(blobs, 2)

        await extractor.run(docs)

        call = gateway.calls_for("Extract")[0]
        assert len(call["attachments"]) == 2
        assert call["attachments"][0].data_b64 == base64.b64encode(b"%PDF-1.4 test").decode()
        assert "doc1.pdf" in call["attachments"][0].instruction
        assert call["timeout"] == settings.gateway_timeout


# ═══════════════════════════════════════════════════
# Skips and failures
# ═══════════════════════════════════════════════════

class TestFailureSemantics:

    @pytest.mark.asyncio
    async def test_oversized_document_skipped(self, settings, blobs, gateway):
        settings.max_document_bytes = 100
        gateway.on("Extract", {"motherName": "Maria"})
        small = _upload(blobs, make_document("case-001", "small", "rg.pdf"), b"x" * 50)
        big = _upload(blobs, make_document("case-001", "big", "cnis.pdf"), b"x" * 500)

        run = await BatchExtractor(settings, gateway, blobs).run([small, big])

        assert "big" in run.skipped
        assert "500" in run.skipped["big"]
        assert [o.document_ids for o in run.outcomes] == [["small"]]
        # the big document's bytes never reached the gateway
        assert len(gateway.calls_for("Extract")[0]["attachments"]) == 1

    @pytest.mark.asyncio
    async def test_declared_size_checked_before_download(self, settings, blobs, gateway):
        settings.max_document_bytes = 100
        doc = make_document("case-001", "huge", "huge.pdf", size=10_000)   # no blob uploaded

        run = await BatchExtractor(settings, gateway, blobs).run([doc])

        assert "limit" in run.skipped["huge"]
        assert run.outcomes == []

    @pytest.mark.asyncio
    async def test_missing_blob_skipped(self, settings, blobs, gateway):
        gateway.on("Extract", {})
        present = _docs(blobs, 1)[0]
        missing = make_document("case-001", "gone", "gone.pdf")

        run = await BatchExtractor(settings, gateway, blobs).run([present, missing])

        assert run.skipped["gone"].startswith("download failed")
        assert run.failed_documents() == {"gone": run.skipped["gone"]}

    @pytest.mark.asyncio
    async def test_failed_batch_does_not_abort_run(self, settings, blobs, gateway):
        gateway.on(
            "Extract",
            {"motherName": "Maria"},
            RateLimitError("slow down"),
            {"childName": "Ana"},
        )
        run = await BatchExtractor(settings, gateway, blobs).run(_docs(blobs, 7))

        assert [o.succeeded for o in run.outcomes] == [True, False, True]
        assert run.outcomes[1].error_code == "RATE_LIMIT"
        assert set(run.failed_documents()) == {"d4", "d5", "d6"}
        assert len(run.successful) == 2

    @pytest.mark.asyncio
    async def test_quota_exhausted_stops_the_run(self, settings, blobs, gateway):
        gateway.on("Extract", QuotaExhaustedError("no credits", status_code=402))
        run = await BatchExtractor(settings, gateway, blobs).run(_docs(blobs, 6))

        assert len(gateway.calls_for("Extract")) == 1
        assert isinstance(run.quota_error, QuotaExhaustedError)
        (outcome,) = run.outcomes
        assert outcome.error_code == "NO_CREDITS"
        assert outcome.document_ids == ["d1", "d2", "d3", "d4", "d5", "d6"]
        assert set(run.failed_documents()) == {"d1", "d2", "d3", "d4", "d5", "d6"}

    @pytest.mark.asyncio
    async def test_schema_violation_is_malformed(self, settings, blobs, gateway):
        gateway.on("Extract", {"ruralPeriods": "from 2010 to 2012"})
        extractor = BatchExtractor(settings, gateway, blobs)
        batch = [DocumentInput(document=make_document("case-001", "d1", "a.pdf"), content=b"x")]

        with pytest.raises(MalformedResponseError):
            await extractor.extract(batch)


# ═══════════════════════════════════════════════════
# Output shape
# ═══════════════════════════════════════════════════

class TestPartialFieldMap:

    @pytest.mark.asyncio
    async def test_absent_fields_stay_unset(self, settings, blobs, gateway):
        gateway.on("Extract", {"motherName": "Maria", "childName": None, "_meta": {"t": 1}})
        extractor = BatchExtractor(settings, gateway, blobs)
        batch = [DocumentInput(document=make_document("case-001", "d1", "a.pdf"), content=b"x")]

        fields = await extractor.extract(batch)

        assert fields.observed() == {"motherName": "Maria"}
        assert "childName" in fields.model_fields_set      # observed as null
        assert "motherCpf" not in fields.model_fields_set  # never observed
        assert fields.extra == {}

    @pytest.mark.asyncio
    async def test_unknown_keys_kept_in_extra(self, settings, blobs, gateway):
        gateway.on("Extract", {"motherName": "Maria", "bolsaFamilia": "sim", "nis": 123})
        extractor = BatchExtractor(settings, gateway, blobs)
        batch = [DocumentInput(document=make_document("case-001", "d1", "a.pdf"), content=b"x")]

        fields = await extractor.extract(batch)

        assert fields.extra == {"bolsaFamilia": "sim", "nis": 123}

    def test_rural_declaration_gets_emphatic_block(self):
        text = build_document_instruction("aut1.pdf", "autodeclaracao_rural")
        assert "RURAL SELF-DECLARATION DETECTED" in text
        assert "aut1.pdf" in text
        assert "DETECTED" not in build_document_instruction("rg.pdf", "identificacao")

    def test_system_prompt_lists_only_present_types(self):
        prompt = build_system_prompt(["identificacao", "cnis", "identificacao"])
        assert prompt.count("IDENTITY DOCUMENT") == 1
        assert "CNIS:" in prompt
        assert "BIRTH CERTIFICATE" not in prompt
