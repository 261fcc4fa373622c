import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import List, Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Language model (Gemini generateContent)
    GEMINI_API_KEY: Optional[str] = None
    GEMINI_MODEL: str = "gemini-2.0-flash"
    GEMINI_BASE_URL: str = "https://generativelanguage.googleapis.com/v1beta"
    LLM_TEMPERATURE: float = 0.4
    LLM_TIMEOUT_SECONDS: float = 30.0
    LLM_MAX_RETRIES: int = 3
    LLM_BACKOFF_BASE_SECONDS: float = 1.0
    LLM_BACKOFF_MAX_SECONDS: float = 8.0

    # Telegram
    TELEGRAM_BOT_TOKEN: Optional[str] = None
    TELEGRAM_WEBHOOK_SECRET: Optional[str] = None
    TELEGRAM_API_BASE: str = "https://api.telegram.org"

    # Daily limits per tier (-1 = unlimited)
    FREE_PLANS_PER_DAY: int = 3
    FREE_MEDIA_PER_DAY: int = 1
    PREMIUM_PLANS_PER_DAY: int = 50
    PREMIUM_MEDIA_PER_DAY: int = 20

    # Quota reset boundary is midnight in this fixed UTC offset
    QUOTA_RESET_UTC_OFFSET_HOURS: int = 3

    # Subscription plans
    PLAN_MONTH_DAYS: int = 30
    PLAN_YEAR_DAYS: int = 365
    PRICE_MONTH_STARS: int = 250
    PRICE_YEAR_STARS: int = 2000

    # Quota sweep worker
    QUOTA_SWEEP_ENABLED: bool = False
    QUOTA_SWEEP_INTERVAL_SECONDS: int = 300
    # Telegram stops redelivering an update after 24h
    IDEMPOTENCY_KEY_TTL_HOURS: int = 72

    # Comma-separated tg ids created with the developer tier
    DEVELOPER_TG_IDS: str = ""

    # Uploads
    MAX_UPLOAD_BYTES: int = 10 * 1024 * 1024

    # CORS (comma-separated, "*" allows all)
    CORS_ORIGINS: str = "*"

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def is_production(self) -> bool:
        return self.ENV.lower() == "production"

    @property
    def developer_ids(self) -> List[int]:
        ids = []
        for part in self.DEVELOPER_TG_IDS.split(","):
            part = part.strip()
            if part.isdigit():
                ids.append(int(part))
        return ids

    @property
    def cors_origins(self) -> List[str]:
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]


settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Report which of the keys planbot cannot serve without are unset.

    Names only, never values. Raises RuntimeError when strict (CONFIG_STRICT).
    """
    cfg = settings_obj or settings
    if strict is None:
        strict = getattr(cfg, "CONFIG_STRICT", False)

    unset = [key for key in ("DATABASE_URL", "GEMINI_API_KEY", "TELEGRAM_BOT_TOKEN") if not getattr(cfg, key, None)]
    if unset:
        message = "planbot is missing configuration: " + ", ".join(unset)
        if strict:
            raise RuntimeError(message)
        (logger or logging.getLogger("planbot.config")).warning(message)

    return True
