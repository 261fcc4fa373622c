"""
Subscription ledger: idempotent payments and premium activation.
"""
import json
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from planbot.core.database import get_db_session, payments
from planbot.core.errors import ValidationError
from planbot.features.quota.service import consume, resolve
from planbot.features.subscriptions.service import (
    apply_successful_payment,
    build_invoice,
    parse_invoice_payload,
    validate_pre_checkout,
)


def _payment_count(tg_id):
    with get_db_session() as session:
        return session.execute(
            select(func.count()).select_from(payments).where(payments.c.tg_id == tg_id)
        ).scalar()


def test_first_payment_activates_premium(now):
    outcome = apply_successful_payment(3001, "ch-1", "XTR", 250, "month", now=now)
    assert outcome.is_new
    assert outcome.user.tier == "premium"
    assert outcome.user.premium_until == now + timedelta(days=30)
    assert outcome.user.plans_left == 50
    assert outcome.user.media_left == 20


def test_stacked_purchases_extend_from_current_expiry(now):
    apply_successful_payment(3002, "ch-1", "XTR", 250, "month", now=now)
    outcome = apply_successful_payment(3002, "ch-2", "XTR", 2000, "year", now=now + timedelta(days=1))
    assert outcome.user.premium_until == now + timedelta(days=30 + 365)


def test_purchase_after_expiry_extends_from_now(now):
    apply_successful_payment(3003, "ch-1", "XTR", 250, "month", now=now)
    later = now + timedelta(days=45)
    outcome = apply_successful_payment(3003, "ch-2", "XTR", 250, "month", now=later)
    assert outcome.user.premium_until == later + timedelta(days=30)


def test_duplicate_charge_is_recorded_once_and_extends_once(now):
    first = apply_successful_payment(3004, "ch-dup", "XTR", 250, "month", now=now)
    second = apply_successful_payment(3004, "ch-dup", "XTR", 250, "month", now=now + timedelta(minutes=5))
    assert first.is_new
    assert not second.is_new
    assert second.user.premium_until == first.user.premium_until
    assert _payment_count(3004) == 1


def test_same_charge_id_for_different_users_is_not_a_duplicate(now):
    assert apply_successful_payment(3005, "ch-x", "XTR", 250, "month", now=now).is_new
    assert apply_successful_payment(3006, "ch-x", "XTR", 250, "month", now=now).is_new


def test_activation_restores_counters_immediately(now):
    for _ in range(3):
        consume(3007, "plans", now)
    assert resolve(3007, now).plans_left == 0
    outcome = apply_successful_payment(3007, "ch-1", "XTR", 250, "month", now=now)
    assert outcome.user.plans_left == 50


def test_developer_label_survives_purchase(now, monkeypatch):
    from planbot.core.config import settings

    monkeypatch.setattr(settings, "DEVELOPER_TG_IDS", "3008")
    outcome = apply_successful_payment(3008, "ch-1", "XTR", 250, "month", now=now)
    assert outcome.user.tier == "developer"
    assert outcome.user.premium_until == now + timedelta(days=30)


def test_unknown_plan_rolls_back_everything(now):
    with pytest.raises(ValidationError):
        apply_successful_payment(3009, "ch-1", "XTR", 250, "lifetime", now=now)
    assert _payment_count(3009) == 0


def test_missing_charge_id_is_rejected(now):
    with pytest.raises(ValidationError) as exc:
        apply_successful_payment(3010, "", "XTR", 250, "month", now=now)
    assert exc.value.code == "charge_id_required"


def test_parse_invoice_payload_accepts_json_string_and_dict():
    assert parse_invoice_payload('{"tg_id": 5, "plan": "year"}').plan == "year"
    assert parse_invoice_payload({"tg_id": "5", "plan": "month"}).tg_id == 5


@pytest.mark.parametrize("raw", ["not json", "[]", '{"tg_id": 5}', '{"tg_id": 5, "plan": "week"}', None])
def test_parse_invoice_payload_rejects_garbage(raw):
    with pytest.raises(ValidationError) as exc:
        parse_invoice_payload(raw)
    assert exc.value.code == "bad_invoice_payload"


def test_build_invoice_uses_stars():
    invoice = build_invoice(3011, "month")
    assert invoice["currency"] == "XTR"
    assert invoice["prices"] == [{"label": "Premium: 1 month", "amount": 250}]
    assert json.loads(invoice["payload"]) == {"tg_id": 3011, "plan": "month"}


def _query(tg_id=3012, payer=3012, plan="month", amount=250, currency="XTR"):
    return {
        "id": "q-1",
        "from": {"id": payer},
        "currency": currency,
        "total_amount": amount,
        "invoice_payload": json.dumps({"tg_id": tg_id, "plan": plan}),
    }


def test_pre_checkout_accepts_matching_order(now):
    decision = validate_pre_checkout(_query(), now)
    assert decision.ok
    assert decision.tg_id == 3012
    assert decision.plan == "month"
    # the user row now exists
    assert resolve(3012, now).tier == "free"


@pytest.mark.parametrize(
    "query",
    [
        _query(payer=9999),
        _query(amount=1),
        _query(currency="USD"),
        {"id": "q-2", "invoice_payload": "garbage"},
    ],
)
def test_pre_checkout_rejects_mismatches(query, now):
    decision = validate_pre_checkout(query, now)
    assert not decision.ok
    assert decision.error_message
    assert _payment_count(3012) == 0
