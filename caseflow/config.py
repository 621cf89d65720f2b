"""Application configuration.

Values come from the process environment (and an optional ``.env`` file)
exactly once, when ``Settings.from_env()`` builds the settings object.
Every pipeline component receives that object at construction, so tests
can build ``Settings(...)`` directly without touching the environment.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from dotenv import load_dotenv

# Base paths
BASE_DIR = Path(__file__).resolve().parent.parent

# Load .env from project root (before any os.getenv calls)
load_dotenv(BASE_DIR / ".env")

# Document types
DOCUMENT_TYPES = [
    "procuracao",               # Power of attorney
    "certidao_nascimento",      # Child's birth certificate
    "identificacao",            # RG / CPF / CNH
    "autodeclaracao_rural",     # Rural self-declaration
    "cnis",                     # Social-security contribution history
    "documento_terra",          # Land title, ITR, CCIR, lease/comodato
    "processo_administrativo",  # Prior INSS request / denial
    "comprovante_residencia",   # Proof of residence
    "ficha_atendimento",        # Health-service record
    "carteira_pescador",        # Artisanal fisher card
    "historico_escolar",        # School history
    "declaracao_saude_ubs",     # Basic health unit declaration
    "outro",
]

# Legal profiles of the claimant
PROFILES = ["especial", "urbana"]

# Derived records that go stale whenever the case record changes
DERIVED_RECORDS = ["case_analysis", "jurisprudence", "theses"]


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    return int(raw) if raw else default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    return float(raw) if raw else default


@dataclass
class Settings:
    """Explicit configuration injected into every pipeline component."""

    # AI gateway (Ollama-compatible /api/chat)
    gateway_base_url: str = "http://localhost:11434"
    gateway_model: str = "qwen2.5vl:32b"
    gateway_api_key: str = ""
    gateway_timeout: float = 30.0        # seconds per extraction / check call
    validation_timeout: float = 45.0     # scoring prompts carry the whole case
    gateway_max_attempts: int = 3
    gateway_backoff_cap: float = 30.0

    # Extraction
    extraction_batch_size: int = 3
    max_document_bytes: int = 4 * 1024 * 1024

    # Validation
    sufficiency_threshold: float = 7.0   # on the scorer's 0-10 scale

    # Quality loop
    quality_max_restarts: int = 2

    # Orchestration
    readiness_timeout: float = 60.0
    readiness_poll_interval: float = 2.0
    max_concurrent_pipelines: int = 2
    task_retention_seconds: float = 3600.0   # finished tasks stay pollable this long
    max_finished_tasks: int = 200

    # Storage / HTTP
    data_dir: Path = field(default_factory=lambda: BASE_DIR / "data")
    cors_origins: list[str] = field(
        default_factory=lambda: ["http://localhost:5173", "http://localhost:3000"]
    )

    def __post_init__(self):
        self.data_dir = Path(self.data_dir)
        if self.extraction_batch_size < 1:
            raise ValueError("extraction_batch_size must be at least 1")
        if self.max_document_bytes < 1:
            raise ValueError("max_document_bytes must be positive")
        if self.gateway_max_attempts < 1:
            raise ValueError("gateway_max_attempts must be at least 1")
        if self.gateway_timeout <= 0 or self.validation_timeout <= 0:
            raise ValueError("gateway timeouts must be positive")
        if not 0 <= self.sufficiency_threshold <= 10:
            raise ValueError("sufficiency_threshold must be within 0-10")
        if self.quality_max_restarts < 0:
            raise ValueError("quality_max_restarts cannot be negative")
        if self.task_retention_seconds < 0 or self.max_finished_tasks < 0:
            raise ValueError("task retention settings cannot be negative")

    @property
    def blobs_dir(self) -> Path:
        return self.data_dir / "blobs"

    @property
    def cases_dir(self) -> Path:
        return self.data_dir / "cases"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables (read once)."""
        defaults = cls()
        origins = os.getenv("CORS_ORIGINS", "").strip()
        return cls(
            gateway_base_url=os.getenv("AI_GATEWAY_URL", defaults.gateway_base_url),
            gateway_model=os.getenv("AI_GATEWAY_MODEL", defaults.gateway_model),
            gateway_api_key=os.getenv("AI_GATEWAY_API_KEY", ""),
            gateway_timeout=_env_float("AI_GATEWAY_TIMEOUT", defaults.gateway_timeout),
            validation_timeout=_env_float("AI_VALIDATION_TIMEOUT", defaults.validation_timeout),
            gateway_max_attempts=_env_int("AI_GATEWAY_MAX_ATTEMPTS", defaults.gateway_max_attempts),
            extraction_batch_size=_env_int("EXTRACTION_BATCH_SIZE", defaults.extraction_batch_size),
            max_document_bytes=_env_int("MAX_DOCUMENT_BYTES", defaults.max_document_bytes),
            sufficiency_threshold=_env_float(
                "VALIDATION_SUFFICIENCY_THRESHOLD", defaults.sufficiency_threshold
            ),
            quality_max_restarts=_env_int("QUALITY_MAX_RESTARTS", defaults.quality_max_restarts),
            readiness_timeout=_env_float("READINESS_TIMEOUT", defaults.readiness_timeout),
            readiness_poll_interval=_env_float(
                "READINESS_POLL_INTERVAL", defaults.readiness_poll_interval
            ),
            max_concurrent_pipelines=_env_int(
                "MAX_CONCURRENT_PIPELINES", defaults.max_concurrent_pipelines
            ),
            task_retention_seconds=_env_float(
                "TASK_RETENTION_SECONDS", defaults.task_retention_seconds
            ),
            max_finished_tasks=_env_int("MAX_FINISHED_TASKS", defaults.max_finished_tasks),
            data_dir=Path(os.getenv("CASEFLOW_DATA_DIR", str(defaults.data_dir))),
            cors_origins=(
                [o.strip() for o in origins.split(",") if o.strip()]
                if origins else defaults.cors_origins
            ),
        )
