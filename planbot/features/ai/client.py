"""
Language model client (Gemini generateContent over REST).

Text in, text out, optionally with one inline attachment. Each attempt is
bounded by a timeout; 429/503 responses are retried with truncated
exponential backoff. Anything else surfaces as LLMError.
"""
from __future__ import annotations

import base64
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Protocol

import httpx

from planbot.core.config import settings
from planbot.core.errors import LLMError


logger = logging.getLogger("planbot.llm")

RETRY_STATUSES = {429, 503}


@dataclass(frozen=True)
class Attachment:
    data: bytes
    mime_type: str
    filename: Optional[str] = None


class LanguageModel(Protocol):
    def generate(self, prompt: str, attachment: Optional[Attachment] = None) -> str: ...


def _retry_after_seconds(response: httpx.Response) -> Optional[float]:
    raw = response.headers.get("retry-after")
    if raw is None:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        return None


def extract_text(data: Dict[str, Any]) -> str:
    candidates = data.get("candidates") or []
    if not candidates:
        return ""
    parts = ((candidates[0] or {}).get("content") or {}).get("parts") or []
    return "".join(p.get("text", "") for p in parts if isinstance(p, dict))


class GeminiClient:
    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        *,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        backoff_base: Optional[float] = None,
        backoff_max: Optional[float] = None,
        temperature: Optional[float] = None,
        http_client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.api_key = api_key if api_key is not None else settings.GEMINI_API_KEY
        self.model = model or settings.GEMINI_MODEL
        self.base_url = (base_url or settings.GEMINI_BASE_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.LLM_TIMEOUT_SECONDS
        self.max_retries = max_retries if max_retries is not None else settings.LLM_MAX_RETRIES
        self.backoff_base = backoff_base if backoff_base is not None else settings.LLM_BACKOFF_BASE_SECONDS
        self.backoff_max = backoff_max if backoff_max is not None else settings.LLM_BACKOFF_MAX_SECONDS
        self.temperature = temperature if temperature is not None else settings.LLM_TEMPERATURE
        self._http = http_client
        self._sleep = sleep

    def backoff_delay(self, attempt: int, retry_after: Optional[float] = None) -> float:
        delay = min(self.backoff_base * (2 ** attempt), self.backoff_max)
        if retry_after is not None:
            delay = min(max(delay, retry_after), self.backoff_max)
        return delay

    def _body(self, prompt: str, attachment: Optional[Attachment]) -> Dict[str, Any]:
        parts: list = [{"text": prompt}]
        if attachment is not None:
            parts.append({
                "inline_data": {
                    "mime_type": attachment.mime_type,
                    "data": base64.b64encode(attachment.data).decode("ascii"),
                }
            })
        return {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": {"temperature": self.temperature},
        }

    def _post(self, client: httpx.Client, body: Dict[str, Any]) -> httpx.Response:
        url = f"{self.base_url}/models/{self.model}:generateContent"
        return client.post(url, params={"key": self.api_key}, json=body, timeout=self.timeout)

    def generate(self, prompt: str, attachment: Optional[Attachment] = None) -> str:
        if not self.api_key:
            raise LLMError("Language model is not configured", code="ai_unavailable", status_code=503)

        body = self._body(prompt, attachment)
        owns_client = self._http is None
        client = self._http or httpx.Client()
        try:
            attempt = 0
            while True:
                try:
                    response = self._post(client, body)
                except httpx.TimeoutException:
                    logger.warning("llm.timeout", extra={"attempt": attempt, "model": self.model})
                    raise LLMError("Language model timed out", code="ai_timeout")
                except httpx.HTTPError as e:
                    logger.warning("llm.transport_error", extra={"attempt": attempt, "error_message": str(e)})
                    raise LLMError("Language model unreachable")

                if response.status_code in RETRY_STATUSES and attempt < self.max_retries:
                    delay = self.backoff_delay(attempt, _retry_after_seconds(response))
                    logger.info(
                        "llm.retry",
                        extra={"attempt": attempt, "status": response.status_code, "delay_s": delay},
                    )
                    self._sleep(delay)
                    attempt += 1
                    continue

                if response.status_code != 200:
                    logger.error(
                        "llm.upstream_error",
                        extra={"status": response.status_code, "attempts": attempt + 1, "model": self.model},
                    )
                    raise LLMError(f"Language model returned HTTP {response.status_code}")

                try:
                    data = response.json()
                except ValueError:
                    raise LLMError("Language model returned invalid JSON")
                text = extract_text(data)
                if not text.strip():
                    raise LLMError("Language model returned an empty answer")
                return text
        finally:
            if owns_client:
                client.close()


def get_language_model() -> LanguageModel:
    """FastAPI dependency; tests override it with a fake."""
    return GeminiClient()
