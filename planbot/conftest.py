# planbot/conftest.py
import os
from datetime import datetime, timezone

import pytest

os.environ.setdefault("ENV", "test")
os.environ.setdefault("SKIP_ENV_VALIDATION", "1")

from planbot.core.config import settings  # noqa: E402
from planbot.core.database import create_all_tables, dispose_engine, init_engine  # noqa: E402
from planbot.tests.mocks import FakeLLM  # noqa: E402


# 12:00 UTC is 15:00 at the default +3 reset offset; next reset 21:00 UTC
FIXED_NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def quota_settings(monkeypatch):
    """Pin every setting the tests depend on, whatever the local .env says."""
    overrides = dict(
        FREE_PLANS_PER_DAY=3,
        FREE_MEDIA_PER_DAY=1,
        PREMIUM_PLANS_PER_DAY=50,
        PREMIUM_MEDIA_PER_DAY=20,
        QUOTA_RESET_UTC_OFFSET_HOURS=3,
        PLAN_MONTH_DAYS=30,
        PLAN_YEAR_DAYS=365,
        PRICE_MONTH_STARS=250,
        PRICE_YEAR_STARS=2000,
        DEVELOPER_TG_IDS="",
        TELEGRAM_WEBHOOK_SECRET=None,
        TELEGRAM_BOT_TOKEN=None,
        GEMINI_API_KEY=None,
        MAX_UPLOAD_BYTES=1024,
    )
    for key, value in overrides.items():
        monkeypatch.setattr(settings, key, value)
    return settings


@pytest.fixture(autouse=True)
def db(tmp_path):
    """Fresh SQLite file per test; a file (not :memory:) so threads share it."""
    url = f"sqlite:///{tmp_path / 'planbot.db'}"
    engine = init_engine(url)
    create_all_tables()
    yield engine
    dispose_engine()


@pytest.fixture
def now():
    return FIXED_NOW


@pytest.fixture
def fake_llm():
    return FakeLLM()


@pytest.fixture
def client(fake_llm):
    from fastapi.testclient import TestClient

    from planbot.features.ai.client import get_language_model
    from planbot.main import app

    app.dependency_overrides[get_language_model] = lambda: fake_llm
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()
