"""
planbot/features/quota/service.py

Quota & tier resolution.

Handles:
- First-contact user creation with free-tier defaults
- Lazy daily reset when the stored deadline has passed
- Atomic consumption of plans/media units
- Counter payloads for API responses
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional
import logging

from sqlalchemy import and_, case, select, update
from sqlalchemy.orm import Session

from planbot.core.config import settings
from planbot.core.database import as_utc, get_db_session, upsert, users
from planbot.core.errors import QuotaExhaustedError, ValidationError
from planbot.features.quota.clock import (
    humanize_seconds,
    next_reset_at,
    normalize_now,
    to_local_iso,
)
from planbot.models.user import QuotaUser, TIER_DEVELOPER, TIER_FREE, TIER_PREMIUM


logger = logging.getLogger("planbot.quota")

QUOTA_KINDS = ("plans", "media")
UNLIMITED = -1


@dataclass(frozen=True)
class TierLimits:
    plans: int
    media: int

    def for_kind(self, kind: str) -> int:
        return self.plans if kind == "plans" else self.media

    def is_unbounded(self, kind: str) -> bool:
        return self.for_kind(kind) == UNLIMITED


@dataclass(frozen=True)
class ResetInfo:
    reset_at: datetime
    reset_in_seconds: int
    reset_in_human: str
    reset_at_local: str


@dataclass(frozen=True)
class ConsumeResult:
    granted: bool
    kind: str
    user: QuotaUser
    reset_info: ResetInfo

    @property
    def error_code(self) -> Optional[str]:
        return None if self.granted else f"no_{self.kind}_left"


def tier_limits(tier: str) -> TierLimits:
    if tier == TIER_DEVELOPER:
        return TierLimits(plans=UNLIMITED, media=UNLIMITED)
    if tier == TIER_PREMIUM:
        return TierLimits(plans=settings.PREMIUM_PLANS_PER_DAY, media=settings.PREMIUM_MEDIA_PER_DAY)
    return TierLimits(plans=settings.FREE_PLANS_PER_DAY, media=settings.FREE_MEDIA_PER_DAY)


def stored_counter(limits: TierLimits, kind: str) -> int:
    """Value written to the counter column; unbounded kinds store 0 and are never consulted."""
    value = limits.for_kind(kind)
    return 0 if value == UNLIMITED else value


def require_tg_id(tg_id: Any) -> int:
    if isinstance(tg_id, bool):
        raise ValidationError("tg_id is required", code="tg_id_required")
    try:
        value = int(tg_id)
    except (TypeError, ValueError):
        raise ValidationError("tg_id is required", code="tg_id_required")
    if value <= 0:
        raise ValidationError("tg_id must be a positive integer", code="tg_id_required")
    return value


def _row_to_user(row) -> QuotaUser:
    return QuotaUser(
        tg_id=row.tg_id,
        tier=row.tier,
        premium_until=as_utc(row.premium_until),
        plans_left=row.plans_left,
        media_left=row.media_left,
        quota_next_reset_at=as_utc(row.quota_next_reset_at),
        current_plan=row.current_plan,
    )


def load_user(session: Session, tg_id: int, *, for_update: bool = False) -> Optional[QuotaUser]:
    stmt = select(users).where(users.c.tg_id == tg_id)
    if for_update:
        stmt = stmt.with_for_update()
    row = session.execute(stmt).first()
    return _row_to_user(row) if row else None


def ensure_user(session: Session, tg_id: int, now: datetime) -> None:
    """Insert the user row with free-tier defaults unless it already exists."""
    tier = TIER_DEVELOPER if tg_id in settings.developer_ids else TIER_FREE
    limits = tier_limits(tier)
    stmt = upsert(session, users).values(
        tg_id=tg_id,
        tier=tier,
        premium_until=None,
        plans_left=stored_counter(limits, "plans"),
        media_left=stored_counter(limits, "media"),
        quota_next_reset_at=next_reset_at(now),
        created_at=now,
        updated_at=now,
    ).on_conflict_do_nothing(index_elements=[users.c.tg_id])
    result = session.execute(stmt)
    if result.rowcount:
        logger.info("quota.user_created", extra={"tg_id": tg_id, "tier": tier})


def _reset_value(kind: str, is_developer, is_premium):
    column = users.c[f"{kind}_left"]

    def value(limit: int):
        return column if limit == UNLIMITED else limit

    return case(
        (is_developer, column),
        (is_premium, value(tier_limits(TIER_PREMIUM).for_kind(kind))),
        else_=value(tier_limits(TIER_FREE).for_kind(kind)),
    )


def reset_due_quotas(
    session: Session,
    now: Optional[datetime] = None,
    *,
    tg_id: Optional[int] = None,
    tier: Optional[str] = None,
) -> int:
    """Restore counters for every matching row whose reset deadline has passed.

    The single reset transition for both the per-request path and the sweep
    worker. Guarded by `quota_next_reset_at <= now`, so a second run in the
    same period matches nothing. Returns the number of rows reset.
    """
    now = normalize_now(now)
    is_developer = users.c.tier == TIER_DEVELOPER
    is_premium = and_(users.c.premium_until.isnot(None), users.c.premium_until > now)

    stmt = update(users).where(users.c.quota_next_reset_at <= now)
    if tg_id is not None:
        stmt = stmt.where(users.c.tg_id == tg_id)
    if tier is not None:
        stmt = stmt.where(users.c.tier == tier)

    result = session.execute(
        stmt.values(
            plans_left=_reset_value("plans", is_developer, is_premium),
            media_left=_reset_value("media", is_developer, is_premium),
            quota_next_reset_at=next_reset_at(now),
            updated_at=now,
        )
    )
    return result.rowcount or 0


def resolve_in_session(session: Session, tg_id: int, now: Optional[datetime] = None) -> QuotaUser:
    now = normalize_now(now)
    ensure_user(session, tg_id, now)
    if reset_due_quotas(session, now, tg_id=tg_id):
        logger.info("quota.reset", extra={"tg_id": tg_id, "trigger": "request"})
    user = load_user(session, tg_id)
    if user is None:
        raise RuntimeError(f"user {tg_id} missing after ensure_user")
    return user


def resolve(tg_id: Any, now: Optional[datetime] = None) -> QuotaUser:
    """Ensure the user exists and its counters reflect the current period."""
    tg_id = require_tg_id(tg_id)
    with get_db_session() as session:
        return resolve_in_session(session, tg_id, now)


def reset_info(user: QuotaUser, now: Optional[datetime] = None) -> ResetInfo:
    now = normalize_now(now)
    seconds = max(0, int((user.quota_next_reset_at - now).total_seconds()))
    return ResetInfo(
        reset_at=user.quota_next_reset_at,
        reset_in_seconds=seconds,
        reset_in_human=humanize_seconds(seconds),
        reset_at_local=to_local_iso(user.quota_next_reset_at),
    )


def consume(tg_id: Any, kind: str, now: Optional[datetime] = None) -> ConsumeResult:
    """Spend one unit of `kind`.

    Unbounded tiers are granted without touching the counter. Otherwise the
    decrement is one conditional UPDATE (`x > 0`), so concurrent requests can
    never both spend the last unit.
    """
    if kind not in QUOTA_KINDS:
        raise ValidationError(f"Unknown quota kind: {kind}")
    tg_id = require_tg_id(tg_id)
    now = normalize_now(now)

    with get_db_session() as session:
        user = resolve_in_session(session, tg_id, now)
        limits = tier_limits(user.effective_tier(now))
        if limits.is_unbounded(kind):
            granted = True
        else:
            column = users.c[f"{kind}_left"]
            result = session.execute(
                update(users)
                .where(users.c.tg_id == tg_id, column > 0)
                .values({column: column - 1, users.c.updated_at: now})
            )
            granted = result.rowcount == 1
            user = load_user(session, tg_id)

    if not granted:
        logger.info("quota.denied", extra={"tg_id": tg_id, "kind": kind})
    return ConsumeResult(granted=granted, kind=kind, user=user, reset_info=reset_info(user, now))


def require_quota(tg_id: Any, kind: str, now: Optional[datetime] = None) -> ConsumeResult:
    """consume() that raises QuotaExhaustedError instead of returning a denial."""
    result = consume(tg_id, kind, now)
    if not result.granted:
        info = result.reset_info
        raise QuotaExhaustedError(
            f"No {kind} left for today",
            code=result.error_code,
            extra={
                f"{kind}_left": result.user.remaining(kind),
                "quota_reset_at": info.reset_at.isoformat(),
                "quota_reset_in_human": info.reset_in_human,
                "quota_reset_at_local": info.reset_at_local,
            },
        )
    return result


def quota_payload(user: QuotaUser, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Counters block shared by every API response. None means unlimited."""
    now = normalize_now(now)
    tier = user.effective_tier(now)
    limits = tier_limits(tier)
    info = reset_info(user, now)
    return {
        "tg_id": user.tg_id,
        "tier": tier,
        "stored_tier": user.tier,
        "plans_left": None if limits.is_unbounded("plans") else user.plans_left,
        "media_left": None if limits.is_unbounded("media") else user.media_left,
        "limits": {
            kind: None if limits.is_unbounded(kind) else limits.for_kind(kind)
            for kind in QUOTA_KINDS
        },
        "premium_until": user.premium_until.isoformat() if user.premium_until else None,
        "quota_reset_at": info.reset_at.isoformat(),
        "quota_reset_in_human": info.reset_in_human,
        "quota_reset_at_local": info.reset_at_local,
    }


def user_payload(user: QuotaUser, now: Optional[datetime] = None) -> Dict[str, Any]:
    """quota_payload() plus the last generated plan, as returned by /api/user/init."""
    payload = quota_payload(user, now)
    payload["current_plan"] = user.current_plan
    return payload
