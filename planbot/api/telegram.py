"""
Telegram webhook.

Always answers 200. Failures are logged and reported as {"ok": false}.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from starlette.concurrency import run_in_threadpool

from planbot.features.telegram.client import TelegramClient, get_telegram_client, verify_secret_token
from planbot.features.telegram.webhook import process_update

logger = logging.getLogger("planbot.telegram")

router = APIRouter(prefix="/telegram", tags=["telegram"])


@router.post("/webhook")
async def telegram_webhook(
    request: Request,
    x_telegram_bot_api_secret_token: Optional[str] = Header(None),
    telegram: TelegramClient = Depends(get_telegram_client),
):
    if not verify_secret_token(x_telegram_bot_api_secret_token):
        logger.warning("telegram.webhook.bad_secret")
        return {"ok": False}

    try:
        update = await request.json()
    except ValueError:
        logger.warning("telegram.webhook.bad_json")
        return {"ok": False}
    if not isinstance(update, dict):
        return {"ok": False}

    try:
        result = await run_in_threadpool(process_update, update, telegram)
    except Exception:
        logger.exception("telegram.webhook.failed", extra={"update_id": update.get("update_id")})
        return {"ok": False}

    return {"ok": result.get("reason") != "error"}
