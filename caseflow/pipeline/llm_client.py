"""AI gateway client for extraction, scoring and quality checks.

Speaks the Ollama-style ``/api/chat`` protocol:
  - Structured outputs via JSON Schema (``format: { schema }``)
  - Document payloads as base64 ``images`` on per-document user messages
  - Bounded per-call timeout, retries with exponential backoff + jitter
    for transient failures only (rate limit, timeout, 5xx)

Failures surface as the typed errors in ``errors.py`` so callers can tell
rate limiting, exhausted quota and timeouts apart.
"""

import asyncio
import json
import logging
import random
import re
import time
from typing import Awaitable, Callable, NamedTuple

import httpx

from caseflow.config import Settings
from caseflow.pipeline.errors import (
    GatewayError,
    GatewayServerError,
    GatewayTimeoutError,
    MalformedResponseError,
    QuotaExhaustedError,
    RateLimitError,
    TransientGatewayError,
)

logger = logging.getLogger(__name__)

# Type for progress callback: async fn(stage, message, details_dict)
LLMProgressCallback = Callable[[str, str, dict], Awaitable[None]]


# No-op callback default
async def _noop_cb(stage: str, message: str, details: dict) -> None:
    pass


class Attachment(NamedTuple):
    """One document sent alongside the prompt."""

    instruction: str
    data_b64: str
    mime_type: str = "application/pdf"


class GatewayClient:
    """Single request/response client for the AI gateway.

    Usage:
        gateway = GatewayClient(settings)
        data = await gateway.call(prompt, expect_json=SCHEMA, task_label="...")
    """

    def __init__(
        self,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings
        self._transport = transport

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.settings.gateway_api_key:
            headers["Authorization"] = f"Bearer {self.settings.gateway_api_key}"
        return headers

    def _build_messages(
        self,
        prompt: str,
        system_prompt: str,
        attachments: list[Attachment] | None,
    ) -> list[dict]:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        for att in attachments or []:
            messages.append({
                "role": "user",
                "content": att.instruction,
                "images": [att.data_b64],
            })
        messages.append({"role": "user", "content": prompt})
        return messages

    async def call(
        self,
        prompt: str,
        system_prompt: str = "",
        temperature: float = 0.1,
        expect_json: bool | dict = True,
        task_label: str = "",
        on_progress: LLMProgressCallback | None = None,
        attachments: list[Attachment] | None = None,
        timeout: float | None = None,
        max_tokens: int | None = None,
    ) -> dict | str:
        """Call the gateway and return parsed JSON (or raw text).

        Args:
            prompt: User prompt text
            system_prompt: System prompt for role/context
            temperature: Sampling temperature (low = deterministic)
            expect_json: True for basic JSON mode, or a JSON Schema dict for
                         structured outputs.  False for free-text response.
            task_label: Human-readable label for logs and progress events
            on_progress: Async callback for progress updates
            attachments: Documents to embed, one user message each
            timeout: Per-attempt timeout in seconds (defaults to settings)
            max_tokens: Output token budget

        Raises:
            TransientGatewayError: after all attempts failed on rate limit,
                timeout or 5xx (the last error is re-raised)
            QuotaExhaustedError, GatewayError: immediately, not retried
            MalformedResponseError: immediately, not retried
        """
        cb = on_progress or _noop_cb
        label = task_label or "Gateway call"
        call_timeout = timeout or self.settings.gateway_timeout
        max_attempts = self.settings.gateway_max_attempts

        if expect_json:
            format_param = expect_json if isinstance(expect_json, dict) else "json"
        else:
            format_param = ""

        body = {
            "model": self.settings.gateway_model,
            "messages": self._build_messages(prompt, system_prompt, attachments),
            "stream": False,
            "format": format_param,
            "options": {"temperature": temperature},
        }
        if max_tokens:
            body["options"]["num_predict"] = max_tokens

        await cb("llm_start", label, {
            "type": "llm_start",
            "task": label,
            "prompt_chars": len(prompt) + len(system_prompt),
            "attachments": len(attachments or []),
            "schema_enforced": isinstance(expect_json, dict),
        })

        last_error: TransientGatewayError | None = None
        for attempt in range(max_attempts):
            if attempt > 0:
                backoff = min(2 ** attempt + random.uniform(0, 1), self.settings.gateway_backoff_cap)
                if isinstance(last_error, RateLimitError) and last_error.retry_after:
                    backoff = min(max(backoff, last_error.retry_after), self.settings.gateway_backoff_cap)
                await cb("llm_retry", f"{label} — Retry {attempt}/{max_attempts - 1}", {
                    "type": "llm_retry",
                    "task": label,
                    "attempt": attempt + 1,
                    "reason": str(last_error),
                    "backoff_seconds": round(backoff, 2),
                })
                await asyncio.sleep(backoff)

            t0 = time.time()
            try:
                content = await self._post(body, call_timeout)
            except TransientGatewayError as e:
                last_error = e
                logger.warning(
                    f"[{label}] attempt {attempt + 1}/{max_attempts} failed: {e.code}: {e}"
                )
                continue

            elapsed = time.time() - t0
            await cb("llm_response", f"{label} — {len(content)} chars in {elapsed:.1f}s", {
                "type": "llm_response",
                "task": label,
                "elapsed_seconds": round(elapsed, 2),
                "response_chars": len(content),
            })

            if not expect_json:
                await cb("llm_done", f"✓ {label} — Complete", {"type": "llm_done", "task": label})
                return content

            try:
                parsed = _parse_json_response(content)
            except (json.JSONDecodeError, ValueError) as e:
                logger.warning(
                    f"[{label}] Unparseable response (first 500 chars): {content[:500]!r}"
                )
                raise MalformedResponseError(f"{label}: {e}") from e
            if not isinstance(parsed, dict):
                raise MalformedResponseError(
                    f"{label}: expected a JSON object, got {type(parsed).__name__}"
                )

            await cb("llm_done", f"✓ {label} — Complete", {
                "type": "llm_done",
                "task": label,
                "total_seconds": round(elapsed, 2),
            })
            return parsed

        await cb("llm_failed", f"{label} — Failed after {max_attempts} attempts", {
            "type": "llm_failed",
            "task": label,
            "error": str(last_error),
            "code": last_error.code if last_error else None,
        })
        logger.error(f"[{label}] Giving up after {max_attempts} attempts: {last_error}")
        raise last_error

    async def _post(self, body: dict, timeout: float) -> str:
        """Send one request and map transport/status failures to typed errors."""
        url = f"{self.settings.gateway_base_url.rstrip('/')}/api/chat"
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(timeout, connect=min(timeout, 10.0)),
                transport=self._transport,
            ) as client:
                response = await client.post(url, json=body, headers=self._headers())
        except httpx.TimeoutException as e:
            raise GatewayTimeoutError(f"Gateway timed out after {timeout:.0f}s") from e
        except httpx.TransportError as e:
            raise GatewayServerError(f"Gateway unreachable: {e}") from e

        status = response.status_code
        if status == 429:
            raise RateLimitError(
                "Gateway rate limit reached",
                retry_after=_parse_retry_after(response.headers.get("Retry-After")),
            )
        if status == 402:
            raise QuotaExhaustedError("Gateway credits exhausted", status_code=402)
        if status == 408 or status == 504:
            raise GatewayTimeoutError(f"Gateway reported timeout ({status})", status_code=status)
        if status >= 500:
            raise GatewayServerError(f"Gateway error {status}", status_code=status)
        if status >= 400:
            raise GatewayError(f"Gateway rejected request ({status}): {response.text[:200]}", status_code=status)

        try:
            result = response.json()
            return result["message"].get("content", "") or ""
        except (json.JSONDecodeError, KeyError, TypeError, AttributeError) as e:
            raise MalformedResponseError(f"Unexpected gateway envelope: {e}") from e


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


def _parse_json_response(text: str) -> dict:
    """Extract and parse JSON from model response text.

    Attempts, in order:
      1. Direct parse
      2. Markdown code block extraction
      3. Outermost brace scanning (first "{" to last "}")
      4. Repair of trailing commas / unclosed brackets
    """
    if not text or not text.strip():
        raise json.JSONDecodeError("Empty response", "", 0)

    text = re.sub(r'<think>.*?</think>', '', text.strip(), flags=re.DOTALL).strip()
    if not text:
        raise json.JSONDecodeError("Empty response after stripping think blocks", "", 0)

    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    for match in re.finditer(r'```(?:json)?\s*\n?(.*?)```', text, re.DOTALL):
        block = match.group(1).strip()
        if block.startswith("{"):
            try:
                return json.loads(block)
            except json.JSONDecodeError:
                continue

    first, last = text.find("{"), text.rfind("}")
    if 0 <= first < last:
        try:
            return json.loads(text[first:last + 1])
        except json.JSONDecodeError:
            pass

    repaired = _attempt_json_repair(text)
    if repaired is not None:
        return repaired

    raise json.JSONDecodeError("No valid JSON found in response", text[:200], 0)


def _attempt_json_repair(text: str) -> dict | None:
    """Repair common model JSON defects; None when the text is beyond repair.

    Fixes trailing commas before } or ], and appends closers for unbalanced
    braces/brackets (truncated output).
    """
    first_brace = text.find("{")
    if first_brace < 0:
        return None
    candidate = text[first_brace:]

    candidate = re.sub(r",\s*}", "}", candidate)
    candidate = re.sub(r",\s*]", "]", candidate)
    try:
        return json.loads(candidate)
    except json.JSONDecodeError:
        pass

    stack: list[str] = []
    in_string = False
    escape = False
    for ch in candidate:
        if escape:
            escape = False
            continue
        if ch == "\\":
            escape = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch in "{[":
            stack.append("}" if ch == "{" else "]")
        elif ch in "}]" and stack:
            stack.pop()

    if in_string:
        candidate += '"'
    if stack:
        candidate = candidate.rstrip().rstrip(",") + "".join(reversed(stack))
        candidate = re.sub(r",\s*}", "}", candidate)
        candidate = re.sub(r",\s*]", "]", candidate)
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            pass

    return None
