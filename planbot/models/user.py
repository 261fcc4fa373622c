"""
planbot/models/user.py

QuotaUser: a read snapshot of one app_users row.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional
from pydantic import BaseModel, ConfigDict

StoredTier = Literal["free", "premium", "developer"]

TIER_FREE = "free"
TIER_PREMIUM = "premium"
TIER_DEVELOPER = "developer"


class QuotaUser(BaseModel):
    """
    Stored tier is a billing label; effective tier is what a request gets.

    A premium label with an expired premium_until behaves as free until the
    next purchase, without any migration rewriting the label.
    """
    model_config = ConfigDict(frozen=True)

    tg_id: int
    tier: StoredTier = TIER_FREE
    premium_until: Optional[datetime] = None
    plans_left: int = 0
    media_left: int = 0
    quota_next_reset_at: datetime
    current_plan: Optional[Dict[str, Any]] = None

    def effective_tier(self, now: Optional[datetime] = None) -> str:
        if self.tier == TIER_DEVELOPER:
            return TIER_DEVELOPER
        now = now or datetime.now(timezone.utc)
        if self.premium_until is not None and self.premium_until > now:
            return TIER_PREMIUM
        return TIER_FREE

    def remaining(self, kind: str) -> int:
        return self.plans_left if kind == "plans" else self.media_left
