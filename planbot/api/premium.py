"""
Premium purchase routes.

- POST /api/premium/invoice: Telegram Stars invoice link for a plan
"""
import logging
from typing import Literal

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from planbot.core.errors import ServiceUnavailableError
from planbot.features.subscriptions.service import build_invoice
from planbot.features.telegram.client import TelegramAPIError, TelegramClient, get_telegram_client

logger = logging.getLogger("planbot.subscriptions")

router = APIRouter(prefix="/api/premium", tags=["premium"])


class InvoiceRequest(BaseModel):
    tg_id: int
    plan: Literal["month", "year"]


class InvoiceResponse(BaseModel):
    invoice_link: str
    plan: str
    amount: int
    currency: str


@router.post("/invoice", response_model=InvoiceResponse)
def create_invoice(body: InvoiceRequest, telegram: TelegramClient = Depends(get_telegram_client)):
    """
    Create a createInvoiceLink URL for the mini-app.

    Errors:
        400: unknown plan or bad tg_id
        503: bot token not configured, or Bot API refused the request
    """
    invoice = build_invoice(body.tg_id, body.plan)
    if not telegram.enabled:
        raise ServiceUnavailableError("Payments are not configured", code="payments_disabled")
    try:
        link = telegram.create_invoice_link(invoice)
    except TelegramAPIError as e:
        logger.error("invoice.create_failed", extra={"tg_id": body.tg_id, "error_message": str(e)})
        raise ServiceUnavailableError("Could not create invoice", code="invoice_failed")

    return {
        "invoice_link": link,
        "plan": body.plan,
        "amount": invoice["prices"][0]["amount"],
        "currency": invoice["currency"],
    }
