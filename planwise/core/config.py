import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False
    ENVIRONMENT: str = "dev"  # "dev" | "test" | "prod"

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Paddle webhooks
    PADDLE_WEBHOOK_SECRET: Optional[str] = None
    PADDLE_WEBHOOK_TOLERANCE_SECONDS: int = 0  # 0 = no timestamp window

    # Paddle price ids (override the built-in catalog)
    PADDLE_PRICE_PRO_MONTHLY: Optional[str] = None
    PADDLE_PRICE_PRO_YEARLY: Optional[str] = None
    PADDLE_PRICE_PRO_PLUS_MONTHLY: Optional[str] = None
    PADDLE_PRICE_PRO_PLUS_YEARLY: Optional[str] = None

    # Quota conditional-write retries
    QUOTA_MAX_ATTEMPTS: int = 5
    QUOTA_RETRY_BACKOFF_MS: int = 20

    # Identity resolution
    IDENTITY_FALLBACK_ENABLED: bool = True

    # User auth (identity provider access tokens)
    AUTH_JWT_SECRET: Optional[str] = None
    AUTH_JWT_AUDIENCE: str = "authenticated"

    # Admin access
    ADMIN_KEY: Optional[str] = None

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
    log = logger or logging.getLogger("planwise")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "PADDLE_WEBHOOK_SECRET",
        "ADMIN_KEY",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    if not getattr(cfg, "PADDLE_WEBHOOK_SECRET", None):
        # Verification is unconditional, so every delivery will be rejected.
        log.warning("PADDLE_WEBHOOK_SECRET not set: all webhook deliveries will fail verification")

    return True
