import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_PRICE_PRO: Optional[str] = None
    STRIPE_PRICE_TEAM: Optional[str] = None
    STRIPE_PRICE_ENTERPRISE: Optional[str] = None

    # Plan catalog
    PLAN_CATALOG_PATH: Optional[str] = None  # JSON file overriding the built-in table
    DEFAULT_PLAN_TIER: str = "PRO"  # applied to unmapped price ids

    # Gateway calls
    GATEWAY_TIMEOUT_SECONDS: float = 10.0
    WEBHOOK_TOLERANCE_SECONDS: int = 300

    # Reconciliation
    PROCESSED_EVENT_RETENTION_DAYS: int = 30
    STATE_WRITE_MAX_RETRIES: int = 5

    # App URLs
    FRONTEND_URL: str = "http://localhost:5173"

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("subsync")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
