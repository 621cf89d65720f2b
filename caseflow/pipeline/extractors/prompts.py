"""Type-specific instruction blocks for the batch extraction prompt."""

EXTRACTION_SYSTEM_PROMPT = """\
You are an OCR and data-extraction specialist for Brazilian social-security \
(previdenciário) case documents supporting a maternity-benefit claim.
Extract EVERY visible piece of information with maximum precision and return \
it through the provided JSON structure.

ABSOLUTE RULES:
1. Read all text, including handwriting, stamps and signatures.
2. If a field is visible, extract it. If it is not visible, OMIT the key. \
Never invent values and never fill keys with placeholders.
3. Dates: always YYYY-MM-DD.
4. CPF: digits only (11 numbers).
5. Names: copy exactly as written.
6. Addresses: always complete (street, number, district, city, UF, CEP).
7. Denial reasons: copy literally, word for word.

DOCUMENT-SPECIFIC INSTRUCTIONS:
"""

TYPE_INSTRUCTIONS: dict[str, str] = {
    "procuracao": (
        "POWER OF ATTORNEY (procuração): usually the most complete source for the "
        "claimant. Extract full name of the grantor (the mother), CPF, RG, the complete "
        "address and any phone number."
    ),
    "certidao_nascimento": (
        "BIRTH CERTIFICATE: read the 'DADOS DA MÃE' and 'DADOS DO PAI' sections. "
        "Extract the child's full name (childName), birth date (childBirthDate), birth "
        "place, the mother's full name and birth date, and the father's full name. "
        "The child's name is the main name on the certificate, never the mother's."
    ),
    "identificacao": (
        "IDENTITY DOCUMENT (RG/CPF/CNH): full name exactly as printed, CPF, RG with "
        "issuing body, birth date, filiation and address when present."
    ),
    "comprovante_residencia": (
        "PROOF OF RESIDENCE: complete address and the account holder's name."
    ),
    "autodeclaracao_rural": (
        "RURAL SELF-DECLARATION: extract EVERY rural activity period as a separate "
        "ruralPeriods entry (startDate, endDate, location, withWhom, activities). Never "
        "merge different periods. Also extract urban periods (urbanPeriods), the family "
        "members currently living together, and land details (owner, area, cession type)."
    ),
    "documento_terra": (
        "LAND DOCUMENT (ITR, CCIR, deed, lease, comodato): owner name, CPF, RG, "
        "relationship with the land, property name, municipality, total and exploited "
        "area, ITR number."
    ),
    "processo_administrativo": (
        "ADMINISTRATIVE PROCESS / DENIAL: complete protocol or NB number (raProtocol), "
        "request date, denial date, and the COMPLETE denial reason copied literally."
    ),
    "cnis": (
        "CNIS: list prior benefits (manualBenefits: nb, benefitType, startDate, endDate, "
        "status) and any urban employment periods (urbanPeriods)."
    ),
    "historico_escolar": (
        "SCHOOL HISTORY: each school attended (schoolHistory: instituicao, periodo_inicio, "
        "periodo_fim, serie, localizacao) noting whether the school is rural."
    ),
    "declaracao_saude_ubs": (
        "HEALTH UNIT DECLARATION: put the unit name, address, dates of care and any "
        "statement about rural residence into healthDeclarationUbs."
    ),
    "ficha_atendimento": (
        "HEALTH SERVICE RECORD: patient name, address, dates and rural-residence notes."
    ),
    "carteira_pescador": (
        "FISHER CARD: holder name, CPF, registration number and validity (observations)."
    ),
    "outro": (
        "OTHER DOCUMENT: extract any field from the structure that is visible; put "
        "anything relevant that does not fit into observations."
    ),
}

# Sent as the per-document instruction for rural self-declarations
RURAL_SELF_DECLARATION_INSTRUCTION = """\
RURAL SELF-DECLARATION DETECTED. This is the most important document for rural periods.
1. Read every paragraph carefully.
2. Identify ALL periods mentioned (e.g. "lived from 1990 to 2000", "working since 2001").
3. ruralPeriods must never be empty for this document.
4. Create a separate object for EACH period.
5. When exact dates are missing, infer them from context and say so in observations.
Document: {file_name}
Type: {document_type}"""

DOCUMENT_INSTRUCTION = """\
Document: {file_name}
Classified type: {document_type}
Extract every visible field from this document."""


def build_system_prompt(document_types: list[str]) -> str:
    """System prompt with one instruction block per type present in the batch."""
    blocks = []
    for doc_type in dict.fromkeys(document_types):
        text = TYPE_INSTRUCTIONS.get(doc_type, TYPE_INSTRUCTIONS["outro"])
        blocks.append(f"- {text}")
    return EXTRACTION_SYSTEM_PROMPT + "\n".join(blocks)


def build_document_instruction(file_name: str, document_type: str) -> str:
    template = (
        RURAL_SELF_DECLARATION_INSTRUCTION
        if document_type == "autodeclaracao_rural"
        else DOCUMENT_INSTRUCTION
    )
    return template.format(file_name=file_name, document_type=document_type)
