import json
import logging

import pytest

from planbot.core.logging import (
    PlanbotFormatter,
    RequestIdFilter,
    bind_tg_id,
    latency_bucket_ms,
    request_id_ctx_var,
    tg_id_ctx_var,
)
from planbot.core.middleware.request_id import pick_request_id


@pytest.mark.parametrize(
    "latency,bucket",
    [(None, "unknown"), (3, "<10ms"), (10, "10-100ms"), (250, "100-500ms"), (999.9, "500-1000ms"), (4000, ">=1000ms")],
)
def test_latency_buckets(latency, bucket):
    assert latency_bucket_ms(latency) == bucket


def _record(**extra):
    record = logging.LogRecord("planbot", logging.INFO, __file__, 1, "quota.consumed", None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_filter_fills_context_ids():
    rid_token = request_id_ctx_var.set("rid-9")
    tg_token = bind_tg_id(42)
    try:
        record = _record()
        RequestIdFilter().filter(record)
    finally:
        tg_id_ctx_var.reset(tg_token)
        request_id_ctx_var.reset(rid_token)
    assert record.request_id == "rid-9"
    assert record.tg_id == 42


def test_explicit_tg_id_wins_over_context():
    token = bind_tg_id(42)
    try:
        record = _record(tg_id=7)
        RequestIdFilter().filter(record)
    finally:
        tg_id_ctx_var.reset(token)
    assert record.tg_id == 7


def test_json_formatter_carries_service_and_extras():
    record = _record(request_id="rid-1", tg_id=5, kind="plans")
    line = json.loads(PlanbotFormatter(as_json=True).format(record))
    assert line["service"] == "planbot"
    assert line["event"] == "quota.consumed"
    assert line["tg_id"] == 5
    assert line["kind"] == "plans"


def test_pretty_formatter_is_one_line():
    out = PlanbotFormatter().format(_record(request_id="rid-1", kind="plans"))
    assert "\n" not in out
    assert "quota.consumed | request_id=rid-1 kind=plans" in out


def test_unsafe_incoming_request_id_is_replaced():
    assert pick_request_id("rid-123") == "rid-123"
    replaced = pick_request_id("bad id\nwith newline")
    assert replaced != "bad id\nwith newline"
    assert len(replaced) == 32
    assert len(pick_request_id(None)) == 32
