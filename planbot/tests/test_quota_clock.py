from datetime import datetime, timedelta, timezone

from planbot.features.quota.clock import (
    humanize_seconds,
    next_reset_at,
    normalize_now,
    to_local_iso,
)


UTC = timezone.utc


def test_next_reset_is_next_local_midnight():
    # 12:00 UTC == 15:00 at +3, so the boundary is 21:00 UTC the same day
    now = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)
    assert next_reset_at(now, 3) == datetime(2026, 3, 10, 21, 0, tzinfo=UTC)


def test_next_reset_after_local_midnight_rolls_to_following_day():
    # 22:30 UTC is already 01:30 next day at +3
    now = datetime(2026, 3, 10, 22, 30, tzinfo=UTC)
    assert next_reset_at(now, 3) == datetime(2026, 3, 11, 21, 0, tzinfo=UTC)


def test_next_reset_on_exact_boundary_is_strictly_after():
    boundary = datetime(2026, 3, 10, 21, 0, tzinfo=UTC)
    assert next_reset_at(boundary, 3) == boundary + timedelta(days=1)


def test_same_logical_day_gives_same_boundary():
    morning = datetime(2026, 3, 9, 21, 5, tzinfo=UTC)
    evening = datetime(2026, 3, 10, 20, 55, tzinfo=UTC)
    assert next_reset_at(morning, 3) == next_reset_at(evening, 3)


def test_negative_offset():
    now = datetime(2026, 3, 10, 3, 0, tzinfo=UTC)
    # 03:00 UTC is 22:00 the previous day at -5
    assert next_reset_at(now, -5) == datetime(2026, 3, 10, 5, 0, tzinfo=UTC)


def test_normalize_now_attaches_utc_to_naive():
    naive = datetime(2026, 1, 1, 8, 0)
    assert normalize_now(naive).tzinfo == UTC


def test_to_local_iso_uses_offset():
    value = datetime(2026, 3, 10, 21, 0, tzinfo=UTC)
    assert to_local_iso(value, 3) == "2026-03-11T00:00:00+03:00"


def test_humanize_seconds():
    assert humanize_seconds(0) == "<1m"
    assert humanize_seconds(59) == "<1m"
    assert humanize_seconds(12 * 60) == "12m"
    assert humanize_seconds(2 * 3600) == "2h"
    assert humanize_seconds(5 * 3600 + 12 * 60 + 30) == "5h 12m"
