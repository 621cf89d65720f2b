"""Document classifier - maps a file name to a document-type tag.

Deterministic and pure: an ordered list of filename patterns where the
first (most specific) match wins, falling back to ``outro``.  Persisting
the tag onto the Document is the caller's job.

Scanned uploads usually carry short, abbreviated names ("cer1.pdf",
"autodec~2.jpg", "ITR 2019.pdf"), so the patterns match prefixes followed
by a digit or "~" as well as whole words.
"""

import logging
import re
import unicodedata
from pathlib import PurePosixPath

from caseflow.config import DOCUMENT_TYPES

logger = logging.getLogger(__name__)

DEFAULT_TAG = "outro"


# ── Filename rules (ordered: most specific first) ─────────────────
# School history and health declaration come before the broader
# "histor" (CNIS) and "dec[0-9]" (self-declaration) prefixes.
_FILENAME_RULES: list[tuple[str, re.Pattern]] = [
    ("historico_escolar", re.compile(
        r"(?:hist\w*\s*escol|escolar|boletim|\bescola\b)")),
    ("declaracao_saude_ubs", re.compile(
        r"(?:\bubs\b|saude|posto\s*de\s*saude|unidade\s*basica)")),
    ("procuracao", re.compile(
        r"(?:pro\s?[0-9~]|procur)")),
    ("certidao_nascimento", re.compile(
        r"(?:cer\s?[0-9~]|cert|nasc)")),
    ("identificacao", re.compile(
        r"(?:ide\s?[0-9~]|\brg\b|\bcpf\b|\bcnh\b|identid|carteira\s*de\s*identidade|carteira(?!\s*(?:de\s*)?pesca))")),
    ("autodeclaracao_rural", re.compile(
        r"(?:aut\s?[0-9~]|autodec|dec\s?[0-9~]|declaracao\s*rural)")),
    ("cnis", re.compile(
        r"(?:cni\s?[0-9~]|cnis|his\s?[0-9~]|histor)")),
    ("documento_terra", re.compile(
        r"(?:ter\s?[0-9~]|terra|doc\s?[0-9~]|\bitr\b|ccir|propriedade|comodato|fazenda|sitio|escritura|matricula)")),
    ("processo_administrativo", re.compile(
        r"(?:indeferim|ind\s?[0-9~]|admini|proces\w*\s*adm|requerimento)")),
    ("comprovante_residencia", re.compile(
        r"(?:com\s?[0-9~]|compr|end\s?[0-9~]|endereco|residencia|\bconta\b)")),
    ("ficha_atendimento", re.compile(
        r"(?:fic\s?[0-9~]|ficha|ate\s?[0-9~]|atend)")),
    ("carteira_pescador", re.compile(
        r"(?:pes\s?[0-9~]|pesca)")),
]

# Descriptive labels (AI output, checklist wording, manual entry) → tag
_SYNONYMS: dict[str, str] = {
    "rg da autora": "identificacao",
    "rg": "identificacao",
    "cpf da autora": "identificacao",
    "cpf": "identificacao",
    "rg e cpf": "identificacao",
    "rg e cpf da mae": "identificacao",
    "identidade": "identificacao",
    "identificacao": "identificacao",
    "certidao de nascimento da crianca": "certidao_nascimento",
    "certidao de nascimento do filho": "certidao_nascimento",
    "certidao de nascimento": "certidao_nascimento",
    "nascimento": "certidao_nascimento",
    "autodeclaracao rural": "autodeclaracao_rural",
    "autodeclaracao": "autodeclaracao_rural",
    "declaracao rural": "autodeclaracao_rural",
    "declaracao de atividade rural": "autodeclaracao_rural",
    "documento da terra": "documento_terra",
    "documentos da terra": "documento_terra",
    "documentos de propriedade": "documento_terra",
    "propriedade": "documento_terra",
    "itr": "documento_terra",
    "ccir": "documento_terra",
    "processo administrativo": "processo_administrativo",
    "requerimento administrativo": "processo_administrativo",
    "indeferimento": "processo_administrativo",
    "comprovante de residencia": "comprovante_residencia",
    "comprovante de endereco": "comprovante_residencia",
    "comprovante": "comprovante_residencia",
    "procuracao": "procuracao",
    "cnis": "cnis",
    "extrato cnis": "cnis",
    "ficha de atendimento": "ficha_atendimento",
    "carteira de pescador": "carteira_pescador",
    "historico escolar": "historico_escolar",
    "boletim": "historico_escolar",
    "declaracao escolar": "historico_escolar",
    "escola": "historico_escolar",
    "declaracao de saude": "declaracao_saude_ubs",
    "declaracao ubs": "declaracao_saude_ubs",
    "ubs": "declaracao_saude_ubs",
    "posto de saude": "declaracao_saude_ubs",
    "unidade basica": "declaracao_saude_ubs",
    "saude": "declaracao_saude_ubs",
}

# Keywords found inside longer labels ("Certidão de casamento dos pais").
# Longest keyword wins, so sibling documents such as marriage or death
# certificates never collapse onto the birth certificate.  Tags outside
# DOCUMENT_TYPES name documents we never collect.
_LABEL_KEYWORDS: dict[str, str] = {
    "processo administrativo": "processo_administrativo",
    "requerimento administrativo": "processo_administrativo",
    "indeferimento": "processo_administrativo",
    "cnis": "cnis",
    "certidao de nascimento": "certidao_nascimento",
    "certidao de casamento": "certidao_casamento",
    "certidao de obito": "certidao_obito",
    "rg": "identificacao",
    "cpf": "identificacao",
    "identidade": "identificacao",
    "comprovante de residencia": "comprovante_residencia",
    "comprovante de endereco": "comprovante_residencia",
    "autodeclaracao": "autodeclaracao_rural",
    "declaracao rural": "autodeclaracao_rural",
    "declaracao de atividade rural": "autodeclaracao_rural",
    "sindicato": "declaracao_sindicato_rural",
    "sindicato rural": "declaracao_sindicato_rural",
    "ubs": "declaracao_saude_ubs",
    "unidade basica de saude": "declaracao_saude_ubs",
    "unidade de saude": "declaracao_saude_ubs",
    "posto de saude": "declaracao_saude_ubs",
    "historico escolar": "historico_escolar",
    "escola": "historico_escolar",
    "nota fiscal": "nota_fiscal_produtor_rural",
    "produtor rural": "nota_fiscal_produtor_rural",
    "itr": "documento_terra",
    "ccir": "documento_terra",
    "documento de terra": "documento_terra",
    "documento da terra": "documento_terra",
    "escritura": "documento_terra",
    "contrato de arrendamento": "documento_terra",
    "contrato de parceria": "documento_terra",
    "comodato": "documento_terra",
    "procuracao": "procuracao",
    "ficha de atendimento": "ficha_atendimento",
    "carteira de pescador": "carteira_pescador",
    "prontuario": "prontuario_medico_parto",
    "prontuario medico": "prontuario_medico_parto",
    "fotos da propriedade": "fotos_propriedade",
    "cartao de vacina": "cartao_vacina",
}
_KEYWORDS_LONGEST_FIRST = sorted(_LABEL_KEYWORDS.items(), key=lambda kv: len(kv[0]), reverse=True)


def normalize_text(value: str) -> str:
    """Lower-case, strip accents, and turn separators into single spaces."""
    decomposed = unicodedata.normalize("NFKD", value or "")
    ascii_text = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    ascii_text = ascii_text.lower().replace("_", " ").replace("-", " ")
    return re.sub(r"\s+", " ", ascii_text).strip()


def _stem(file_name: str) -> str:
    name = PurePosixPath((file_name or "").replace("\\", "/")).name
    if "." in name:
        name = name.rsplit(".", 1)[0]
    return normalize_text(name)


def classify(file_name: str) -> str:
    """Return the document-type tag for *file_name* (total, pure)."""
    stem = _stem(file_name)
    for tag, pattern in _FILENAME_RULES:
        if pattern.search(stem):
            return tag
    return DEFAULT_TAG


def detect_document_type(label: str) -> str | None:
    """Tag named by the longest keyword inside *label*, if any.

    May return a tag outside ``DOCUMENT_TYPES`` ("certidao_casamento"):
    the label then names a document we never collect.
    """
    text = normalize_text(label)
    for keyword, tag in _KEYWORDS_LONGEST_FIRST:
        if re.search(rf"\b{re.escape(keyword)}\b", text):
            return tag
    return None


def _label_tag(text: str) -> str | None:
    if text in _SYNONYMS:
        return _SYNONYMS[text]
    as_tag = text.replace(" ", "_")
    if as_tag in DOCUMENT_TYPES:
        return as_tag
    return detect_document_type(text)


def normalize_document_type(label: str) -> str:
    """Map a free-text document label to a tag.

    Exact synonym first, then an exact tag name, then the longest keyword
    inside the label, and only then the filename rules applied to the
    label itself.
    """
    text = normalize_text(label)
    if not text:
        return DEFAULT_TAG
    tag = _label_tag(text)
    if tag is not None:
        return tag if tag in DOCUMENT_TYPES else DEFAULT_TAG
    for tag, pattern in _FILENAME_RULES:
        if pattern.search(text):
            return tag
    return DEFAULT_TAG


def mentioned_document_types(label: str) -> set[str]:
    """All known tags a free-text label refers to.

    Built from the synonym table and the keyword table only; the filename
    prefix rules are too broad for labels ("cert" matches every
    certificate).  Multi-word synonyms inside the label count as well
    ("declaracao de atividade rural assinada" mentions
    ``autodeclaracao_rural``).
    """
    text = normalize_text(label)
    tags = set()
    if not text:
        return tags
    direct = _label_tag(text)
    if direct in DOCUMENT_TYPES and direct != DEFAULT_TAG:
        tags.add(direct)
    for phrase, tag in _SYNONYMS.items():
        if " " in phrase and re.search(rf"\b{re.escape(phrase)}\b", text):
            tags.add(tag)
    return tags
