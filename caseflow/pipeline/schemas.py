"""JSON Schema definitions for gateway structured outputs.

Each schema pins exact field names and enums at the API level, passed via
the gateway's ``format: { JSON Schema }`` parameter.  Responses are still
validated again on our side (pydantic models in ``models.py``).
"""

# ═══════════════════════════════════════════════════
# EXTRACTION
# ═══════════════════════════════════════════════════

_STRING = {"type": "string"}

_RURAL_PERIOD_SCHEMA = {
    "type": "object",
    "properties": {
        "startDate": {"type": "string", "description": "Start date YYYY-MM-DD"},
        "endDate": {"type": "string", "description": "End date YYYY-MM-DD"},
        "location": {"type": "string", "description": "Full location (farm, village, municipality)"},
        "withWhom": {"type": "string", "description": "Who the claimant lived with"},
        "activities": {"type": "string", "description": "Activities performed"},
    },
    "required": ["startDate", "location"],
}

_URBAN_PERIOD_SCHEMA = {
    "type": "object",
    "properties": {
        "startDate": _STRING,
        "endDate": _STRING,
        "details": _STRING,
    },
}

_FAMILY_MEMBER_SCHEMA = {
    "type": "object",
    "properties": {
        "name": _STRING,
        "relationship": _STRING,
        "cpf": _STRING,
    },
}

_BENEFIT_SCHEMA = {
    "type": "object",
    "properties": {
        "nb": {"type": "string", "description": "Benefit number (NB)"},
        "benefitType": _STRING,
        "startDate": _STRING,
        "endDate": _STRING,
        "status": _STRING,
    },
}

_SCHOOL_SCHEMA = {
    "type": "object",
    "properties": {
        "instituicao": {"type": "string", "description": "School name"},
        "periodo_inicio": _STRING,
        "periodo_fim": _STRING,
        "serie": _STRING,
        "localizacao": {"type": "string", "description": "Rural or urban location of the school"},
    },
}

EXTRACT_CASE_SCHEMA = {
    "type": "object",
    "properties": {
        # Claimant (mother)
        "motherName": {"type": "string", "description": "Full name of the mother/claimant"},
        "motherCpf": {"type": "string", "description": "CPF, 11 digits only"},
        "motherRg": {"type": "string", "description": "RG with issuing body"},
        "motherBirthDate": {"type": "string", "description": "YYYY-MM-DD"},
        "motherAddress": {"type": "string", "description": "Full address incl. city, UF and CEP"},
        "motherPhone": _STRING,
        "motherWhatsapp": _STRING,
        "maritalStatus": _STRING,
        # Child / father / spouse
        "childName": {"type": "string", "description": "Full name of the child"},
        "childBirthDate": {"type": "string", "description": "YYYY-MM-DD"},
        "childBirthPlace": _STRING,
        "fatherName": _STRING,
        "fatherCpf": _STRING,
        "spouseName": _STRING,
        "spouseCpf": _STRING,
        "marriageDate": _STRING,
        "nit": {"type": "string", "description": "NIT/PIS/PASEP number"},
        "birthCity": _STRING,
        "birthState": _STRING,
        # Land
        "landOwnerName": _STRING,
        "landOwnerCpf": _STRING,
        "landOwnerRg": _STRING,
        "landOwnershipType": {"type": "string", "description": "Relationship with the land"},
        "landArea": _STRING,
        "landTotalArea": _STRING,
        "landExploitedArea": _STRING,
        "landITR": _STRING,
        "landPropertyName": _STRING,
        "landMunicipality": _STRING,
        "landCessionType": _STRING,
        "ruralActivitiesPlanting": _STRING,
        "ruralActivitiesBreeding": _STRING,
        # Prior administrative request
        "raProtocol": {"type": "string", "description": "Protocol / NB number"},
        "raRequestDate": {"type": "string", "description": "YYYY-MM-DD"},
        "raDenialDate": {"type": "string", "description": "YYYY-MM-DD"},
        "raDenialReason": {"type": "string", "description": "Denial reason, copied verbatim"},
        # Collections
        "ruralPeriods": {"type": "array", "items": _RURAL_PERIOD_SCHEMA},
        "urbanPeriods": {"type": "array", "items": _URBAN_PERIOD_SCHEMA},
        "familyMembers": {"type": "array", "items": _FAMILY_MEMBER_SCHEMA},
        "manualBenefits": {"type": "array", "items": _BENEFIT_SCHEMA},
        "schoolHistory": {"type": "array", "items": _SCHOOL_SCHEMA},
        "healthDeclarationUbs": {"type": "object"},
        "observations": {"type": "array", "items": _STRING},
    },
    "required": [],
}

# ═══════════════════════════════════════════════════
# VALIDATION SCORER
# ═══════════════════════════════════════════════════

_IMPORTANCE = {"type": "string", "enum": ["critical", "high", "medium"]}

VALIDATION_SCHEMA = {
    "type": "object",
    "properties": {
        "score": {"type": "number", "minimum": 0, "maximum": 10},
        "is_sufficient": {"type": "boolean"},
        "can_proceed": {"type": "boolean"},
        "checklist": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "item": _STRING,
                    "status": {"type": "string", "enum": ["ok", "missing", "incomplete"]},
                    "importance": _IMPORTANCE,
                    "document_type": _STRING,
                },
                "required": ["item", "status", "importance"],
            },
        },
        "missing_docs": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "doc_type": _STRING,
                    "reason": _STRING,
                    "importance": _IMPORTANCE,
                    "impact": _STRING,
                },
                "required": ["doc_type", "reason", "importance"],
            },
        },
        "recommendations": {"type": "array", "items": _STRING},
    },
    "required": ["score", "is_sufficient", "can_proceed", "checklist", "missing_docs", "recommendations"],
}

# ═══════════════════════════════════════════════════
# QUALITY LOOP
# ═══════════════════════════════════════════════════

JURISDICTION_SCHEMA = {
    "type": "object",
    "properties": {
        "subsecao": {"type": "string", "description": "Federal judicial subsection city"},
        "uf": {"type": "string", "minLength": 2, "maxLength": 2},
        "confianca": {"type": "string", "enum": ["alta", "media", "baixa"]},
        "observacao": _STRING,
    },
    "required": ["subsecao", "uf", "confianca"],
}

GRAMMAR_SCHEMA = {
    "type": "object",
    "properties": {
        "ok": {"type": "boolean"},
        "issues": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "excerpt": {"type": "string", "description": "Exact text as it appears"},
                    "suggestion": {"type": "string", "description": "Corrected replacement text"},
                    "explanation": _STRING,
                },
                "required": ["excerpt", "suggestion"],
            },
            "maxItems": 20,
        },
    },
    "required": ["ok", "issues"],
}

CITATIONS_SCHEMA = {
    "type": "object",
    "properties": {
        "ok": {"type": "boolean"},
        "invalid_citations": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "citation": {"type": "string", "description": "Exact citation text as it appears"},
                    "suggestion": {"type": "string", "description": "Correct citation, empty if unknown"},
                    "reason": _STRING,
                },
                "required": ["citation", "reason"],
            },
            "maxItems": 20,
        },
    },
    "required": ["ok", "invalid_citations"],
}
