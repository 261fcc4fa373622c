"""
Claim-once keys stored in idempotency_keys.

The webhook claims `telegram:update:<update_id>` before answering a pre-checkout
query and releases it if processing fails, so Telegram's redelivery gets a second try.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import delete

from planbot.core.database import get_db_session, idempotency_keys, upsert


def check_and_set(key: str, scope: str = "generic", now: Optional[datetime] = None) -> bool:
    """Claim `key`. Returns True when someone already holds it (a duplicate)."""
    with get_db_session() as session:
        stmt = upsert(session, idempotency_keys).values(
            key=key,
            scope=scope,
            created_at=now or datetime.now(timezone.utc),
        ).on_conflict_do_nothing(index_elements=["key"])
        claimed = session.execute(stmt).rowcount == 1
    return not claimed


def release_key(key: str) -> None:
    with get_db_session() as session:
        session.execute(delete(idempotency_keys).where(idempotency_keys.c.key == key))


def purge_expired_keys(ttl_hours: int, now: Optional[datetime] = None) -> int:
    """Delete keys claimed more than `ttl_hours` ago; returns how many went."""
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(hours=ttl_hours)
    with get_db_session() as session:
        return session.execute(delete(idempotency_keys).where(idempotency_keys.c.created_at < cutoff)).rowcount
