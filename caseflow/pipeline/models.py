"""Typed records passed between pipeline stages.

The extraction gateway returns camelCase keys; the canonical case record
uses snake_case.  ``SCALAR_FIELDS`` is the single mapping between the two
for scalar identity fields and is consumed by the merge policy table.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

ProfileName = Literal["especial", "urbana"]
EventType = Literal["parto", "adocao", "guarda"]
Importance = Literal["critical", "high", "medium"]
QualityStatus = Literal["approved", "auto_corrected", "approved_with_warnings"]

# extraction key -> case record field
SCALAR_FIELDS: dict[str, str] = {
    "motherName": "author_name",
    "motherCpf": "author_cpf",
    "motherRg": "author_rg",
    "motherBirthDate": "author_birth_date",
    "motherAddress": "author_address",
    "motherPhone": "author_phone",
    "motherWhatsapp": "author_whatsapp",
    "maritalStatus": "author_marital_status",
    "childName": "child_name",
    "childBirthDate": "child_birth_date",
    "childBirthPlace": "child_birth_place",
    "fatherName": "father_name",
    "fatherCpf": "father_cpf",
    "spouseName": "spouse_name",
    "spouseCpf": "spouse_cpf",
    "marriageDate": "marriage_date",
    "nit": "nit",
    "birthCity": "birth_city",
    "birthState": "birth_state",
    "landOwnerName": "land_owner_name",
    "landOwnerCpf": "land_owner_cpf",
    "landOwnerRg": "land_owner_rg",
    "landOwnershipType": "land_ownership_type",
    "landArea": "land_area",
    "landTotalArea": "land_total_area",
    "landExploitedArea": "land_exploited_area",
    "landITR": "land_itr",
    "landPropertyName": "land_property_name",
    "landMunicipality": "land_municipality",
    "landCessionType": "land_cession_type",
    "ruralActivitiesPlanting": "rural_activities_planting",
    "ruralActivitiesBreeding": "rural_activities_breeding",
    "raProtocol": "ra_protocol",
    "raRequestDate": "ra_request_date",
    "raDenialDate": "ra_denial_date",
    "raDenialReason": "ra_denial_reason",
}

# Fields whose absence after a batch is reported as "could not fill"
REQUIRED_EXTRACTION_FIELDS = ["motherName", "motherCpf", "childName", "childBirthDate"]


def _alias(*names: str) -> AliasChoices:
    return AliasChoices(*names)


# ═══════════════════════════════════════════════════
# Collection items
# ═══════════════════════════════════════════════════

class _Item(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True, extra="ignore")


class RuralPeriod(_Item):
    """One stretch of rural activity: dedup key is (start_date, end_date)."""

    start_date: str | None = Field(None, validation_alias=_alias("start_date", "startDate", "data_inicio"))
    end_date: str | None = Field(None, validation_alias=_alias("end_date", "endDate", "data_fim"))
    location: str | None = Field(None, validation_alias=_alias("location", "local"))
    cohabitants: str | None = Field(None, validation_alias=_alias("cohabitants", "withWhom", "com_quem"))
    activities: str | None = Field(None, validation_alias=_alias("activities", "atividades"))


class UrbanPeriod(_Item):
    start_date: str | None = Field(None, validation_alias=_alias("start_date", "startDate", "data_inicio"))
    end_date: str | None = Field(None, validation_alias=_alias("end_date", "endDate", "data_fim"))
    details: str | None = Field(None, validation_alias=_alias("details", "detalhes"))


class FamilyMember(_Item):
    name: str | None = Field(None, validation_alias=_alias("name", "nome"))
    relationship: str | None = Field(None, validation_alias=_alias("relationship", "parentesco"))
    cpf: str | None = None


class PriorBenefit(_Item):
    nb: str | None = Field(None, validation_alias=_alias("nb", "benefitNumber", "numero_beneficio"))
    benefit_type: str | None = Field(None, validation_alias=_alias("benefit_type", "benefitType", "tipo"))
    start_date: str | None = Field(None, validation_alias=_alias("start_date", "startDate", "data_inicio"))
    end_date: str | None = Field(None, validation_alias=_alias("end_date", "endDate", "data_fim"))
    status: str | None = None


class SchoolRecord(_Item):
    institution: str | None = Field(None, validation_alias=_alias("institution", "instituicao", "school"))
    period_start: str | None = Field(None, validation_alias=_alias("period_start", "periodo_inicio", "startDate"))
    period_end: str | None = Field(None, validation_alias=_alias("period_end", "periodo_fim", "endDate"))
    grade: str | None = Field(None, validation_alias=_alias("grade", "serie"))
    location: str | None = Field(None, validation_alias=_alias("location", "localizacao"))


# ═══════════════════════════════════════════════════
# Extraction output
# ═══════════════════════════════════════════════════

class PartialFieldMap(BaseModel):
    """Fields observed across one extraction batch.

    Keys the model did not return stay unset, which lets the merge engine
    tell "not observed" apart from "observed empty".  Unknown keys are
    moved into ``extra`` instead of being dropped.
    """

    model_config = ConfigDict(coerce_numbers_to_str=True)

    motherName: str | None = None
    motherCpf: str | None = None
    motherRg: str | None = None
    motherBirthDate: str | None = None
    motherAddress: str | None = None
    motherPhone: str | None = None
    motherWhatsapp: str | None = None
    maritalStatus: str | None = None
    childName: str | None = None
    childBirthDate: str | None = None
    childBirthPlace: str | None = None
    fatherName: str | None = None
    fatherCpf: str | None = None
    spouseName: str | None = None
    spouseCpf: str | None = None
    marriageDate: str | None = None
    nit: str | None = None
    birthCity: str | None = None
    birthState: str | None = None
    landOwnerName: str | None = None
    landOwnerCpf: str | None = None
    landOwnerRg: str | None = None
    landOwnershipType: str | None = None
    landArea: str | None = None
    landTotalArea: str | None = None
    landExploitedArea: str | None = None
    landITR: str | None = None
    landPropertyName: str | None = None
    landMunicipality: str | None = None
    landCessionType: str | None = None
    ruralActivitiesPlanting: str | None = None
    ruralActivitiesBreeding: str | None = None
    raProtocol: str | None = None
    raRequestDate: str | None = None
    raDenialDate: str | None = None
    raDenialReason: str | None = None
    ruralPeriods: list[RuralPeriod] | None = None
    urbanPeriods: list[UrbanPeriod] | None = None
    familyMembers: list[FamilyMember] | None = None
    manualBenefits: list[PriorBenefit] | None = None
    schoolHistory: list[SchoolRecord] | None = None
    healthDeclarationUbs: dict[str, Any] | None = None
    observations: list[str] | None = None
    extra: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _collect_unknown_keys(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        known = set(cls.model_fields)
        extra = dict(data.get("extra") or {})
        cleaned: dict[str, Any] = {}
        for key, value in data.items():
            if key == "extra":
                continue
            if key.startswith("_"):
                # gateway metadata, never a document fact
                continue
            if key in known:
                cleaned[key] = value
            else:
                extra[key] = value
        if extra:
            cleaned["extra"] = extra
        return cleaned

    @field_validator("observations", mode="before")
    @classmethod
    def _observations_as_list(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [value] if value.strip() else []
        return value

    def observed(self) -> dict[str, Any]:
        """Return only the keys the extractor actually produced."""
        return {
            name: getattr(self, name)
            for name in type(self).model_fields
            if name in self.model_fields_set and getattr(self, name) is not None
        }


# ═══════════════════════════════════════════════════
# Stored entities
# ═══════════════════════════════════════════════════

class Case(BaseModel):
    id: str
    profile: ProfileName = "especial"
    event_type: EventType = "parto"
    event_date: str | None = None
    city: str | None = None
    uf: str | None = None
    created_at: datetime


class Document(BaseModel):
    id: str
    case_id: str
    file_name: str
    file_path: str
    mime_type: str = "application/pdf"
    document_type: str = "outro"
    type_source: Literal["unset", "classifier", "manual"] = "unset"
    parent_document_id: str | None = None
    size: int = 0
    uploaded_at: datetime


class Extraction(BaseModel):
    """One immutable extraction result for a batch of documents."""

    model_config = ConfigDict(frozen=True)

    id: str
    case_id: str
    document_ids: list[str]
    entities: PartialFieldMap
    rural_periods: list[RuralPeriod] = Field(default_factory=list)
    missing_fields: list[str] = Field(default_factory=list)
    observations: list[str] = Field(default_factory=list)
    extracted_at: datetime


class CaseRecord(BaseModel):
    """Canonical projection of every extraction for a case."""

    case_id: str

    author_name: str | None = None
    author_cpf: str | None = None
    author_rg: str | None = None
    author_birth_date: str | None = None
    author_address: str | None = None
    author_phone: str | None = None
    author_whatsapp: str | None = None
    author_marital_status: str | None = None
    child_name: str | None = None
    child_birth_date: str | None = None
    child_birth_place: str | None = None
    father_name: str | None = None
    father_cpf: str | None = None
    spouse_name: str | None = None
    spouse_cpf: str | None = None
    marriage_date: str | None = None
    nit: str | None = None
    birth_city: str | None = None
    birth_state: str | None = None
    land_owner_name: str | None = None
    land_owner_cpf: str | None = None
    land_owner_rg: str | None = None
    land_ownership_type: str | None = None
    land_area: str | None = None
    land_total_area: str | None = None
    land_exploited_area: str | None = None
    land_itr: str | None = None
    land_property_name: str | None = None
    land_municipality: str | None = None
    land_cession_type: str | None = None
    rural_activities_planting: str | None = None
    rural_activities_breeding: str | None = None
    ra_protocol: str | None = None
    ra_request_date: str | None = None
    ra_denial_date: str | None = None
    ra_denial_reason: str | None = None

    has_ra: bool = False

    rural_periods: list[RuralPeriod] = Field(default_factory=list)
    urban_periods: list[UrbanPeriod] = Field(default_factory=list)
    family_members: list[FamilyMember] = Field(default_factory=list)
    manual_benefits: list[PriorBenefit] = Field(default_factory=list)
    school_history: list[SchoolRecord] = Field(default_factory=list)
    health_declaration_ubs: dict[str, Any] = Field(default_factory=dict)
    observations: list[str] = Field(default_factory=list)
    extra: dict[str, Any] = Field(default_factory=dict)

    anomalies: list[str] = Field(default_factory=list)
    source_extraction_count: int = 0
    last_extraction_at: datetime | None = None


# ═══════════════════════════════════════════════════
# Validation
# ═══════════════════════════════════════════════════

def _coerce_choice(value: Any, allowed: tuple[str, ...], default: str) -> str:
    text = str(value or "").strip().lower()
    return text if text in allowed else default


class ChecklistEntry(BaseModel):
    item: str
    status: Literal["ok", "missing", "incomplete"] = "missing"
    importance: Importance = "medium"
    document_type: str | None = None
    already_on_file: bool = False

    @field_validator("status", mode="before")
    @classmethod
    def _status(cls, value: Any) -> str:
        return _coerce_choice(value, ("ok", "missing", "incomplete"), "incomplete")

    @field_validator("importance", mode="before")
    @classmethod
    def _importance(cls, value: Any) -> str:
        return _coerce_choice(value, ("critical", "high", "medium"), "medium")


class MissingDocument(BaseModel):
    doc_type: str
    reason: str = ""
    importance: Importance = "medium"
    impact: str = ""

    @field_validator("importance", mode="before")
    @classmethod
    def _importance(cls, value: Any) -> str:
        return _coerce_choice(value, ("critical", "high", "medium"), "medium")


class RequirementStatus(BaseModel):
    id: str
    label: str
    required: bool
    importance: Importance
    document_types: list[str]
    on_file: bool = False
    matched_documents: list[str] = Field(default_factory=list)


class ValidationReport(BaseModel):
    case_id: str
    profile: ProfileName
    score: float
    is_sufficient: bool
    can_proceed: bool
    checklist: list[ChecklistEntry] = Field(default_factory=list)
    requirements: list[RequirementStatus] = Field(default_factory=list)
    missing_docs: list[MissingDocument] = Field(default_factory=list)
    suppressed_missing_docs: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    validated_at: datetime


# ═══════════════════════════════════════════════════
# Quality loop
# ═══════════════════════════════════════════════════

class Artifact(BaseModel):
    """A generated downstream document (e.g. the initial petition)."""

    id: str
    case_id: str
    content: str
    version: int = 0
    is_stale: bool = False
    updated_at: datetime


class QualityIssue(BaseModel):
    check: str
    severity: Literal["critical", "high", "medium", "low"] = "medium"
    message: str
    resolved: bool = False


class QualityReport(BaseModel):
    case_id: str
    artifact_id: str
    artifact_version: int
    addressing_ok: bool | None = None
    jurisdiction_ok: bool | None = None
    value_of_claim_validated: bool | None = None
    data_complete: bool | None = None
    grammar_ok: bool | None = None
    citations_validated: bool | None = None
    issues: list[QualityIssue] = Field(default_factory=list)
    not_evaluated: list[str] = Field(default_factory=list)
    missing_fields: list[str] = Field(default_factory=list)
    value_of_claim_reference: float | None = None
    jurisdiction_confidence: str | None = None
    status: QualityStatus
    correction_passes: int = 0
    restarts: int = 0
    generated_at: datetime


class CorrectionRecord(BaseModel):
    """Append-only audit entry for one automatically applied correction."""

    id: str
    case_id: str
    artifact_id: str
    correction_type: str
    module: str = "quality_report"
    before_content: str
    after_content: str
    changes_summary: str
    auto_applied: bool = True
    confidence_score: int
    created_at: datetime
