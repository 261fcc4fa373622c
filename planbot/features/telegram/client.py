"""Minimal Telegram Bot API client (payments only)."""
from __future__ import annotations

import hmac
from typing import Any, Dict, Optional

import httpx

from planbot.core.config import settings
from planbot.core.errors import ServiceUnavailableError


BOT_API_TIMEOUT_SECONDS = 10


class TelegramAPIError(Exception):
    """Bot API answered with ok=false or an HTTP error."""


def verify_secret_token(header_value: Optional[str], expected: Optional[str] = None) -> bool:
    """Check X-Telegram-Bot-Api-Secret-Token. No configured secret means no check."""
    expected = expected if expected is not None else settings.TELEGRAM_WEBHOOK_SECRET
    if not expected:
        return True
    if not header_value:
        return False
    return hmac.compare_digest(header_value, expected)


class TelegramClient:
    def __init__(
        self,
        token: Optional[str] = None,
        *,
        api_base: Optional[str] = None,
        http_client: Optional[httpx.Client] = None,
    ):
        self.token = token if token is not None else settings.TELEGRAM_BOT_TOKEN
        self.api_base = (api_base or settings.TELEGRAM_API_BASE).rstrip("/")
        self._http = http_client

    @property
    def enabled(self) -> bool:
        return bool(self.token)

    def call(self, method: str, payload: Dict[str, Any]) -> Any:
        if not self.token:
            raise ServiceUnavailableError("Telegram bot token is not configured")
        url = f"{self.api_base}/bot{self.token}/{method}"
        owns_client = self._http is None
        client = self._http or httpx.Client()
        try:
            response = client.post(url, json=payload, timeout=BOT_API_TIMEOUT_SECONDS)
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise TelegramAPIError(f"{method} failed: {e}") from e
        finally:
            if owns_client:
                client.close()
        if not data.get("ok"):
            raise TelegramAPIError(f"{method} rejected: {data.get('description')}")
        return data.get("result")

    def answer_pre_checkout_query(self, query_id: str, ok: bool, error_message: Optional[str] = None) -> None:
        payload: Dict[str, Any] = {"pre_checkout_query_id": query_id, "ok": ok}
        if not ok:
            payload["error_message"] = error_message or "Payment cannot be processed."
        self.call("answerPreCheckoutQuery", payload)

    def create_invoice_link(self, invoice: Dict[str, Any]) -> str:
        return self.call("createInvoiceLink", invoice)


def get_telegram_client() -> TelegramClient:
    """FastAPI dependency; tests override it with a mock."""
    return TelegramClient()
