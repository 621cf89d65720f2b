"""Shared fixtures for the caseflow test suite."""

import copy
from datetime import datetime, timedelta

import pytest

from caseflow.config import Settings
from caseflow.pipeline.models import (
    Case,
    Document,
    Extraction,
    PartialFieldMap,
)
from caseflow.pipeline.orchestrator import CasePipeline
from caseflow.pipeline.store import JsonCaseStore, LocalBlobStore
from caseflow.pipeline.tasks import TaskRegistry


# ═══════════════════════════════════════════════════
# Scripted gateway
# ═══════════════════════════════════════════════════

class FakeGateway:
    """Stand-in for GatewayClient that answers by task-label prefix.

    ``on(prefix, *responses)`` queues responses; the last one repeats.
    A response may be a dict, an exception instance (raised) or a
    callable receiving the call kwargs.
    """

    def __init__(self):
        self.handlers: dict[str, list] = {}
        self.calls: list[dict] = []

    def on(self, prefix: str, *responses) -> "FakeGateway":
        self.handlers.setdefault(prefix, []).extend(responses)
        return self

    def calls_for(self, prefix: str) -> list[dict]:
        return [c for c in self.calls if c["task_label"].startswith(prefix)]

    async def call(self, prompt, system_prompt="", expect_json=True, task_label="", **kwargs):
        call = {
            "prompt": prompt,
            "system_prompt": system_prompt,
            "expect_json": expect_json,
            "task_label": task_label,
            **kwargs,
        }
        self.calls.append(call)
        for prefix, queue in self.handlers.items():
            if not task_label.startswith(prefix):
                continue
            if not queue:
                raise AssertionError(f"No scripted response for {task_label!r}")
            response = queue.pop(0) if len(queue) > 1 else queue[0]
            if isinstance(response, Exception):
                raise response
            if callable(response):
                return response(**call)
            return copy.deepcopy(response)
        raise AssertionError(f"Unexpected gateway call: {task_label!r}")


# ═══════════════════════════════════════════════════
# Settings / stores / pipeline
# ═══════════════════════════════════════════════════

@pytest.fixture
def settings(tmp_path):
    return Settings(
        gateway_base_url="http://gateway.test",
        gateway_model="test-model",
        data_dir=tmp_path / "data",
        readiness_timeout=0.2,
        readiness_poll_interval=0.01,
    )


@pytest.fixture
def store(settings):
    return JsonCaseStore(settings.cases_dir)


@pytest.fixture
def blobs(settings):
    return LocalBlobStore(settings.blobs_dir)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def pipeline(settings, store, blobs, gateway):
    return CasePipeline(settings, store, blobs, gateway, tasks=TaskRegistry(2))


# ═══════════════════════════════════════════════════
# Domain fixtures
# ═══════════════════════════════════════════════════

@pytest.fixture
def case(store):
    """Rural (especial) case: birth in 2023, claimant in Porto Velho/RO."""
    return store.save_case(Case(
        id="case-001",
        profile="especial",
        event_type="parto",
        event_date="2023-05-10",
        city="Porto Velho",
        uf="RO",
        created_at=datetime(2024, 1, 10, 9, 0),
    ))


def make_document(case_id: str, doc_id: str, file_name: str, document_type: str = "outro",
                  type_source: str = "unset", size: int = 0) -> Document:
    return Document(
        id=doc_id,
        case_id=case_id,
        file_name=file_name,
        file_path=f"{case_id}/{doc_id}.pdf",
        document_type=document_type,
        type_source=type_source,
        size=size,
        uploaded_at=datetime(2024, 1, 10, 9, 30),
    )


def make_extraction(extraction_id: str, minutes: int, case_id: str = "case-001",
                    document_ids: list[str] | None = None, **fields) -> Extraction:
    """Extraction at 2024-01-10 10:00 + *minutes* carrying camelCase *fields*."""
    return Extraction(
        id=extraction_id,
        case_id=case_id,
        document_ids=document_ids or [f"doc-{extraction_id}"],
        entities=PartialFieldMap.model_validate(fields),
        extracted_at=datetime(2024, 1, 10, 10, 0) + timedelta(minutes=minutes),
    )


PETITION_OK = """\
EXCELENTÍSSIMO SENHOR DOUTOR JUIZ FEDERAL DO JUIZADO ESPECIAL FEDERAL DE JI-PARANÁ/RO

MARIA DA SILVA, brasileira, segurada especial, CPF 12345678901, vem propor
AÇÃO DE CONCESSÃO DE SALÁRIO-MATERNIDADE em face do INSS, com fundamento
no art. 71 da Lei 8.213/91.

Valor da causa: R$ 5.280,00.
"""
