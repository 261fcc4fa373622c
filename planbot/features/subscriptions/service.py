"""
Subscription ledger.

Pure-ish business logic that coordinates:
- Payment recording behind the (tg_id, provider_charge_id) unique constraint
- Premium activation / extension
- Pre-checkout validation of invoice payloads
- Invoice construction for Telegram Stars

All Telegram HTTP calls live in features/telegram/client.py.
"""
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import insert, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from planbot.core.config import settings
from planbot.core.database import get_db_session, payments, users
from planbot.core.errors import ValidationError
from planbot.features.quota.clock import next_reset_at, normalize_now
from planbot.features.quota.service import (
    ensure_user,
    load_user,
    require_tg_id,
    resolve_in_session,
    stored_counter,
    tier_limits,
)
from planbot.models.payment import (
    InvoicePayload,
    PaymentOutcome,
    PaymentRecord,
    PreCheckoutDecision,
)
from planbot.models.user import QuotaUser, TIER_DEVELOPER, TIER_PREMIUM


logger = logging.getLogger("planbot.subscriptions")

STARS_CURRENCY = "XTR"

PLAN_TITLES = {
    "month": "Premium: 1 month",
    "year": "Premium: 1 year",
}


def plan_duration(plan: str) -> timedelta:
    durations = {
        "month": settings.PLAN_MONTH_DAYS,
        "year": settings.PLAN_YEAR_DAYS,
    }
    if plan not in durations:
        raise ValidationError(f"Unknown plan: {plan}", code="unknown_plan")
    return timedelta(days=durations[plan])


def plan_price(plan: str) -> int:
    prices = {
        "month": settings.PRICE_MONTH_STARS,
        "year": settings.PRICE_YEAR_STARS,
    }
    if plan not in prices:
        raise ValidationError(f"Unknown plan: {plan}", code="unknown_plan")
    return prices[plan]


def parse_invoice_payload(raw: Any) -> InvoicePayload:
    """Decode invoice_payload JSON: {"tg_id": int, "plan": "month"|"year"}."""
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            raise ValidationError("invoice payload is not JSON", code="bad_invoice_payload")
    if not isinstance(raw, dict):
        raise ValidationError("invoice payload must be an object", code="bad_invoice_payload")
    try:
        payload = InvoicePayload.model_validate(raw)
    except PydanticValidationError:
        raise ValidationError("invoice payload is missing tg_id or plan", code="bad_invoice_payload")
    require_tg_id(payload.tg_id)
    return payload


def build_invoice(tg_id: Any, plan: str) -> Dict[str, Any]:
    """Arguments for Bot API createInvoiceLink (Telegram Stars, no provider token)."""
    tg_id = require_tg_id(tg_id)
    price = plan_price(plan)
    days = plan_duration(plan).days
    return {
        "title": PLAN_TITLES[plan],
        "description": f"Premium planner limits for {days} days",
        "payload": json.dumps({"tg_id": tg_id, "plan": plan}, separators=(",", ":")),
        "currency": STARS_CURRENCY,
        "prices": [{"label": PLAN_TITLES[plan], "amount": price}],
    }


def record_payment(
    session: Session,
    tg_id: int,
    charge_id: str,
    currency: str,
    amount: int,
    plan: str,
    telegram_charge_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> PaymentRecord:
    """
    Insert the payment row (idempotent).

    A unique-constraint conflict means this charge was already processed
    (webhook retry); the caller must then skip activation.
    """
    if not charge_id:
        raise ValidationError("provider charge id is required", code="charge_id_required")
    plan_duration(plan)
    try:
        with session.begin_nested():
            session.execute(
                insert(payments).values(
                    tg_id=tg_id,
                    provider_charge_id=charge_id,
                    telegram_charge_id=telegram_charge_id,
                    currency=currency,
                    amount=int(amount),
                    plan=plan,
                    created_at=normalize_now(now),
                )
            )
    except IntegrityError:
        logger.info("payment.duplicate", extra={"tg_id": tg_id, "charge_id": charge_id})
        return PaymentRecord(is_new=False)
    return PaymentRecord(is_new=True)


def activate_premium(session: Session, tg_id: int, plan: str, now: Optional[datetime] = None) -> QuotaUser:
    """
    Extend premium by the plan duration.

    New expiry = max(current expiry, now) + duration, so stacked purchases
    extend rather than reset. Counters jump to premium limits immediately.
    """
    now = normalize_now(now)
    duration = plan_duration(plan)
    ensure_user(session, tg_id, now)
    current = load_user(session, tg_id, for_update=True)

    base = now
    if current.premium_until is not None and current.premium_until > now:
        base = current.premium_until
    premium_until = base + duration

    limits = tier_limits(TIER_PREMIUM)
    stored_tier = TIER_DEVELOPER if current.tier == TIER_DEVELOPER else TIER_PREMIUM
    session.execute(
        update(users)
        .where(users.c.tg_id == tg_id)
        .values(
            tier=stored_tier,
            premium_until=premium_until,
            plans_left=current.plans_left if limits.is_unbounded("plans") else stored_counter(limits, "plans"),
            media_left=current.media_left if limits.is_unbounded("media") else stored_counter(limits, "media"),
            quota_next_reset_at=next_reset_at(now),
            updated_at=now,
        )
    )
    logger.info(
        "premium.activated",
        extra={"tg_id": tg_id, "plan": plan, "premium_until": premium_until.isoformat()},
    )
    return load_user(session, tg_id)


def apply_successful_payment(
    tg_id: Any,
    charge_id: str,
    currency: str,
    amount: int,
    plan: str,
    telegram_charge_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> PaymentOutcome:
    """
    Record the payment and, only when it is new, activate premium.

    Both writes share one transaction: a crash between them leaves neither.
    """
    tg_id = require_tg_id(tg_id)
    now = normalize_now(now)
    with get_db_session() as session:
        resolve_in_session(session, tg_id, now)
        record = record_payment(
            session,
            tg_id,
            charge_id,
            currency,
            amount,
            plan,
            telegram_charge_id=telegram_charge_id,
            now=now,
        )
        if record.is_new:
            user = activate_premium(session, tg_id, plan, now)
        else:
            user = load_user(session, tg_id)
    return PaymentOutcome(is_new=record.is_new, user=user)


def validate_pre_checkout(query: Dict[str, Any], now: Optional[datetime] = None) -> PreCheckoutDecision:
    """
    Structural gate before Telegram captures the payment.

    Accepts only a parseable payload naming a known plan whose tg_id matches
    the payer and whose amount/currency match the configured price. On accept
    the user row is ensured; nothing else is written.
    """
    try:
        payload = parse_invoice_payload(query.get("invoice_payload"))
        plan_duration(payload.plan)
    except ValidationError as e:
        logger.warning("pre_checkout.rejected", extra={"reason": e.code})
        return PreCheckoutDecision(ok=False, error_message="Invalid order, please try again.")

    payer_id = (query.get("from") or {}).get("id")
    if payer_id is not None and str(payer_id) != str(payload.tg_id):
        logger.warning("pre_checkout.rejected", extra={"reason": "payer_mismatch", "tg_id": payload.tg_id})
        return PreCheckoutDecision(ok=False, error_message="This order belongs to another account.")

    currency = query.get("currency")
    amount = query.get("total_amount")
    if currency is not None and currency != STARS_CURRENCY:
        return PreCheckoutDecision(ok=False, error_message="Unsupported currency.")
    if amount is not None and str(amount) != str(plan_price(payload.plan)):
        return PreCheckoutDecision(ok=False, error_message="Price has changed, please reopen the invoice.")

    with get_db_session() as session:
        ensure_user(session, payload.tg_id, normalize_now(now))
    return PreCheckoutDecision(ok=True, tg_id=payload.tg_id, plan=payload.plan)
