"""
planbot/models/payment.py

Payment ledger value objects.
"""

from typing import Literal, Optional
from pydantic import BaseModel, ConfigDict

from planbot.models.user import QuotaUser

PlanId = Literal["month", "year"]


class InvoicePayload(BaseModel):
    """Decoded invoice_payload carried through Telegram's payment flow."""
    model_config = ConfigDict(frozen=True)

    tg_id: int
    plan: PlanId


class PaymentRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_new: bool


class PaymentOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_new: bool
    user: QuotaUser


class PreCheckoutDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    ok: bool
    error_message: Optional[str] = None
    tg_id: Optional[int] = None
    plan: Optional[PlanId] = None
