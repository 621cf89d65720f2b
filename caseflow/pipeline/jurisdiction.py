"""Federal court jurisdiction lookup for the claimant's municipality."""

import logging
from dataclasses import dataclass

from caseflow.config import Settings
from caseflow.pipeline.errors import PipelineError
from caseflow.pipeline.llm_client import GatewayClient, LLMProgressCallback
from caseflow.pipeline.models import Case, CaseRecord
from caseflow.pipeline.schemas import JURISDICTION_SCHEMA

logger = logging.getLogger(__name__)

JURISDICTION_SYSTEM_PROMPT = """\
You are an expert on the territorial organisation of the Brazilian Federal Courts.
Identify the federal judicial subsection (subseção judiciária) whose special \
federal court (JEF) has jurisdiction over the given municipality. If the \
municipality has no court of its own, name the subsection that serves it.
Report your confidence as alta, media or baixa."""


@dataclass
class Jurisdiction:
    subsecao: str | None
    uf: str | None
    confidence: str = "baixa"
    evaluated: bool = False
    note: str = ""


class JurisdictionResolver:
    def __init__(self, settings: Settings, gateway: GatewayClient):
        self.settings = settings
        self.gateway = gateway

    @staticmethod
    def _location(case: Case, record: CaseRecord | None) -> tuple[str | None, str | None]:
        city, uf = case.city, case.uf
        if record is not None:
            city = city or record.land_municipality or record.birth_city
            uf = uf or record.birth_state
        return city, (uf or "").upper() or None

    async def resolve(
        self,
        case: Case,
        record: CaseRecord | None = None,
        on_progress: LLMProgressCallback | None = None,
    ) -> Jurisdiction:
        """Ask the gateway for the subsection; fall back to the city itself.

        The fallback is never marked as evaluated, so checks that need a
        confirmed subsection report themselves as not evaluated.
        """
        city, uf = self._location(case, record)
        if not city:
            return Jurisdiction(subsecao=None, uf=uf, note="claimant city unknown")

        address = record.author_address if record is not None else None
        prompt = f"Municipality: {city}\nUF: {uf or 'unknown'}\n"
        if address:
            prompt += f"Full address: {address}\n"

        try:
            data = await self.gateway.call(
                prompt=prompt,
                system_prompt=JURISDICTION_SYSTEM_PROMPT,
                expect_json=JURISDICTION_SCHEMA,
                task_label=f"Jurisdiction {city}/{uf}",
                on_progress=on_progress,
                timeout=self.settings.gateway_timeout,
            )
        except PipelineError as e:
            logger.warning(f"Jurisdiction lookup for {city}/{uf} failed ({e.code}); using city as fallback")
            return Jurisdiction(subsecao=city, uf=uf, note=f"lookup failed: {e.code}")

        subsecao = str(data.get("subsecao") or "").strip()
        if not subsecao:
            logger.warning(f"Jurisdiction lookup for {city}/{uf} returned no subsection")
            return Jurisdiction(subsecao=city, uf=uf, note="empty lookup result")

        confidence = str(data.get("confianca") or "baixa").lower()
        if confidence not in ("alta", "media", "baixa"):
            confidence = "baixa"
        return Jurisdiction(
            subsecao=subsecao,
            uf=(str(data.get("uf") or uf or "")).upper()[:2] or None,
            confidence=confidence,
            evaluated=True,
            note=str(data.get("observacao") or ""),
        )
