import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Durable user store
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # RevenueCat (billing source of truth)
    REVENUECAT_API_KEY: Optional[str] = None
    REVENUECAT_BASE_URL: str = "https://api.revenuecat.com/v1"
    REVENUECAT_TIMEOUT_SECONDS: float = 10.0
    REVENUECAT_PLATFORM: str = "ios"

    # Store products
    PRODUCT_ID_PREFIX: str = "com.zthreesolutions.tolerancetracker"

    # Subscription lifecycle
    GRACE_PERIOD_DAYS: int = 14

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
    log = logger or logging.getLogger("roomkeeper")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "REVENUECAT_API_KEY",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    if cfg.GRACE_PERIOD_DAYS < 0:
        message = "GRACE_PERIOD_DAYS must not be negative"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
