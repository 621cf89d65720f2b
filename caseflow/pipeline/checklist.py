"""Required-document checklist, one table per legal profile.

Each requirement defines:
  - id / label: identity shown in the validation report
  - document_types: accepted tags (OR); any one on file satisfies it
  - importance: critical | high | medium
  - required: False for recommended-only items

The table is looked up, never generated: the scorer receives it as input
and cannot add or drop requirements.
"""

from __future__ import annotations
from typing import Any

from caseflow.pipeline.models import Document, RequirementStatus

# ───────────────────────────────────────────────────────
# Requirement definitions
# ───────────────────────────────────────────────────────

_IDENTIFICATION = {
    "id": "rg_cpf_mae",
    "label": "RG e CPF da mãe",
    "document_types": ["identificacao", "procuracao"],
    "importance": "critical",
    "required": True,
}

_BIRTH_CERTIFICATE = {
    "id": "certidao_nascimento_filho",
    "label": "Certidão de nascimento da criança",
    "document_types": ["certidao_nascimento"],
    "importance": "critical",
    "required": True,
}

_PROOF_OF_RESIDENCE = {
    "id": "comprovante_residencia",
    "label": "Comprovante de residência",
    "document_types": ["comprovante_residencia"],
    "importance": "high",
    "required": True,
}

REQUIREMENTS_BY_PROFILE: dict[str, list[dict[str, Any]]] = {
    "especial": [
        _IDENTIFICATION,
        _BIRTH_CERTIFICATE,
        {
            "id": "autodeclaracao",
            "label": "Autodeclaração de atividade rural",
            "document_types": ["autodeclaracao_rural"],
            "importance": "critical",
            "required": True,
        },
        _PROOF_OF_RESIDENCE,
        {
            "id": "documento_terra",
            "label": "Documento da terra (ITR, CCIR, contrato de comodato)",
            "document_types": ["documento_terra"],
            "importance": "high",
            "required": False,
        },
        {
            "id": "processo_administrativo",
            "label": "Processo administrativo / indeferimento do INSS",
            "document_types": ["processo_administrativo"],
            "importance": "high",
            "required": False,
        },
        {
            "id": "prova_material_rural",
            "label": "Início de prova material rural (ficha, UBS, escola, pescador)",
            "document_types": [
                "ficha_atendimento", "declaracao_saude_ubs",
                "historico_escolar", "carteira_pescador",
            ],
            "importance": "medium",
            "required": False,
        },
        {
            "id": "cnis",
            "label": "Extrato CNIS",
            "document_types": ["cnis"],
            "importance": "medium",
            "required": False,
        },
    ],
    "urbana": [
        _IDENTIFICATION,
        _BIRTH_CERTIFICATE,
        _PROOF_OF_RESIDENCE,
        {
            "id": "cnis",
            "label": "Extrato CNIS",
            "document_types": ["cnis"],
            "importance": "critical",
            "required": True,
        },
        {
            "id": "processo_administrativo",
            "label": "Processo administrativo / indeferimento do INSS",
            "document_types": ["processo_administrativo"],
            "importance": "high",
            "required": False,
        },
    ],
}


def requirements_for(profile: str) -> list[dict[str, Any]]:
    if profile not in REQUIREMENTS_BY_PROFILE:
        raise ValueError(f"Unknown profile: {profile!r}")
    return REQUIREMENTS_BY_PROFILE[profile]


def annotate_requirements(profile: str, documents: list[Document]) -> list[RequirementStatus]:
    """Mark each requirement as on file (with matching document ids) or not."""
    statuses = []
    for req in requirements_for(profile):
        matched = [d.id for d in documents if d.document_type in req["document_types"]]
        statuses.append(RequirementStatus(
            id=req["id"],
            label=req["label"],
            required=req["required"],
            importance=req["importance"],
            document_types=list(req["document_types"]),
            on_file=bool(matched),
            matched_documents=matched,
        ))
    return statuses


def format_requirements_for_prompt(statuses: list[RequirementStatus]) -> str:
    lines = []
    for status in statuses:
        kind = "REQUIRED" if status.required else "recommended"
        state = "ON FILE" if status.on_file else "not uploaded"
        lines.append(
            f"- [{status.importance}] {status.label} ({kind}; accepted types: "
            f"{', '.join(status.document_types)}) -> {state}"
        )
    return "\n".join(lines)
