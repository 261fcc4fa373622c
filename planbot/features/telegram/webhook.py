"""
Telegram webhook update processing.

Pre-checkout queries are deduplicated by update_id and answered synchronously.
Successful payments are not claimed up front: the (tg_id, charge_id) payment
row, written in the same transaction as the activation, is their only barrier,
so a redelivery after a crash mid-processing still activates premium.
Nothing here raises to the HTTP layer: the endpoint always answers 200.
"""
from typing import Any, Dict, Optional

from planbot.core.idempotency import check_and_set, release_key
from planbot.core.logging import bind_tg_id, log_event, tg_id_ctx_var
from planbot.features.subscriptions.service import (
    apply_successful_payment,
    parse_invoice_payload,
    validate_pre_checkout,
)
from planbot.features.telegram.client import TelegramClient


def handle_pre_checkout(query: Dict[str, Any], telegram: TelegramClient) -> bool:
    decision = validate_pre_checkout(query)
    telegram.answer_pre_checkout_query(query.get("id"), decision.ok, decision.error_message)
    log_event(
        "info",
        "telegram.pre_checkout_answered",
        tg_id=decision.tg_id,
        event_type="pre_checkout_query",
        extra={"ok": decision.ok, "plan": decision.plan},
    )
    return decision.ok


def handle_successful_payment(message: Dict[str, Any]) -> bool:
    payment = message.get("successful_payment") or {}
    payload = parse_invoice_payload(payment.get("invoice_payload"))
    charge_id = payment.get("provider_payment_charge_id") or payment.get("telegram_payment_charge_id")
    outcome = apply_successful_payment(
        payload.tg_id,
        charge_id=charge_id,
        currency=payment.get("currency") or "",
        amount=payment.get("total_amount") or 0,
        plan=payload.plan,
        telegram_charge_id=payment.get("telegram_payment_charge_id"),
    )
    log_event(
        "info",
        "telegram.payment_applied" if outcome.is_new else "telegram.payment_duplicate",
        tg_id=payload.tg_id,
        event_type="successful_payment",
        extra={
            "plan": payload.plan,
            "premium_until": outcome.user.premium_until.isoformat() if outcome.user.premium_until else None,
        },
    )
    return outcome.is_new


def _sender_id(update: Dict[str, Any]) -> Optional[int]:
    source = update.get("pre_checkout_query") or update.get("message") or {}
    return (source.get("from") or {}).get("id")


def _is_payment(update: Dict[str, Any]) -> bool:
    return "successful_payment" in (update.get("message") or {})


def process_update(update: Dict[str, Any], telegram: TelegramClient) -> Dict[str, Any]:
    """Dispatch one update. Returns a small status dict for logging/tests."""
    update_id = update.get("update_id")
    key = None
    if update_id is not None and not _is_payment(update):
        key = f"telegram:update:{update_id}"
    if key is not None and check_and_set(key, scope="telegram_update"):
        return {"handled": False, "reason": "duplicate_update"}

    token = bind_tg_id(_sender_id(update))
    try:
        return _dispatch(update, telegram)
    except Exception as e:
        # A redelivery of this update must be processed again
        if key is not None:
            release_key(key)
        log_event("error", "telegram.update_failed", event_type="webhook", error_code=getattr(e, "code", type(e).__name__),
                  extra={"update_id": update_id, "error_message": str(e)})
        return {"handled": False, "reason": "error"}
    finally:
        tg_id_ctx_var.reset(token)


def _dispatch(update: Dict[str, Any], telegram: TelegramClient) -> Dict[str, Any]:
    if "pre_checkout_query" in update:
        ok = handle_pre_checkout(update["pre_checkout_query"], telegram)
        return {"handled": True, "kind": "pre_checkout_query", "ok": ok}

    message = update.get("message") or {}
    if "successful_payment" in message:
        is_new = handle_successful_payment(message)
        return {"handled": True, "kind": "successful_payment", "is_new": is_new}

    return {"handled": False, "reason": "ignored"}
