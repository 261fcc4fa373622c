"""Periodic reset of quotas whose deadline has passed.

Reuses the same guarded reset as the request path, so running it next to live
traffic (or twice in one period) never double-applies a reset.
"""
from __future__ import annotations

import argparse
import asyncio
import logging
from datetime import datetime
from typing import Iterable, Optional

from planbot.core.config import settings
from planbot.core.database import get_db_session
from planbot.core.idempotency import purge_expired_keys
from planbot.features.quota.clock import normalize_now
from planbot.features.quota.service import reset_due_quotas
from planbot.models.user import TIER_DEVELOPER, TIER_FREE, TIER_PREMIUM

logger = logging.getLogger("planbot.workers.quota_sweep")

SWEEP_TIERS = (TIER_FREE, TIER_PREMIUM, TIER_DEVELOPER)


def sweep_expired_quotas(
    now: Optional[datetime] = None,
    tiers: Optional[Iterable[str]] = None,
) -> dict:
    """Reset every due user, one transaction per stored tier.

    A failing tier is logged and skipped; the remaining tiers still run.
    """
    now = normalize_now(now)
    report = {"reset": 0, "errors": 0}
    for tier in tiers or SWEEP_TIERS:
        try:
            with get_db_session() as session:
                report["reset"] += reset_due_quotas(session, now, tier=tier)
        except Exception:
            report["errors"] += 1
            logger.exception("quota_sweep.tier_failed", extra={"tier": tier})

    logger.info("quota_sweep.done", extra={"reset": report["reset"], "errors": report["errors"]})
    return report


class QuotaSweeper:
    """Background loop started from the app lifespan."""

    def __init__(self, interval_seconds: Optional[int] = None):
        self.interval_seconds = interval_seconds or settings.QUOTA_SWEEP_INTERVAL_SECONDS
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info("quota_sweep.started", extra={"interval_seconds": self.interval_seconds})

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("quota_sweep.stopped")

    def _purge_keys(self) -> None:
        try:
            purged = purge_expired_keys(settings.IDEMPOTENCY_KEY_TTL_HOURS)
        except Exception:
            logger.exception("idempotency.purge_failed")
            return
        if purged:
            logger.info("idempotency.purged", extra={"purged": purged})

    async def _run(self) -> None:
        while True:
            await asyncio.to_thread(sweep_expired_quotas)
            await asyncio.to_thread(self._purge_keys)
            await asyncio.sleep(self.interval_seconds)


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(description="Reset expired daily quotas")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--once", action="store_true", help="run a single sweep and exit (default)")
    mode.add_argument("--loop", action="store_true", help="sweep forever at QUOTA_SWEEP_INTERVAL_SECONDS")
    parser.add_argument("--interval", type=int, default=None, help="override the loop interval in seconds")
    args = parser.parse_args(argv)

    from planbot.core.logging import configure_logging

    configure_logging(settings.ENV)
    if args.loop:
        async def _forever():
            sweeper = QuotaSweeper(args.interval)
            sweeper.start()
            await sweeper._task

        asyncio.run(_forever())
        return 0

    result = sweep_expired_quotas()
    print(result)
    return 1 if result["errors"] else 0


if __name__ == "__main__":
    raise SystemExit(main())
