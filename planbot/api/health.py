"""Liveness and readiness probes."""

import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import inspect, text

from planbot.core.database import get_engine, metadata

logger = logging.getLogger("planbot.health")

router = APIRouter(tags=["health"])


@router.get("/healthz")
def healthz():
    return {"status": "ok"}


def _database_check() -> str:
    engine = get_engine()
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    absent = sorted(name for name in metadata.tables if not inspect(engine).has_table(name))
    return "ok" if not absent else "missing: " + ", ".join(absent)


def _sweeper_check(request: Request) -> str:
    sweeper = getattr(request.app.state, "sweeper", None)
    if sweeper is None:
        return "off"
    return "running" if sweeper.running else "stopped"


@router.get("/readyz")
def readyz(request: Request):
    """Ready when the schema is in place and an enabled quota sweeper is alive."""
    try:
        database = _database_check()
    except Exception as e:
        logger.error("readyz.database_unreachable", extra={"error_message": str(e)})
        database = "unreachable"

    checks = {"database": database, "quota_sweep": _sweeper_check(request)}
    if database != "ok" or checks["quota_sweep"] == "stopped":
        logger.warning("readyz.not_ready", extra={"checks": checks})
        return JSONResponse(status_code=503, content={"status": "error", "checks": checks})
    return {"status": "ok", "checks": checks}
