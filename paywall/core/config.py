import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Dict, Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database & Cache
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None
    REDIS_URL: str = "redis://localhost:6379"

    # Entitlement cache
    ENTITLEMENT_STORE: str = "sql"  # sql | redis | memory
    ENTITLEMENT_ACTIVE_TTL_SECONDS: int = 300
    ENTITLEMENT_INACTIVE_TTL_SECONDS: int = 60

    # Stripe (single-tenant fallback; per-tenant keys live in STRIPE_TENANT_CREDENTIALS)
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_PUBLISHABLE_KEY: Optional[str] = None
    STRIPE_TENANT_CREDENTIALS: Dict[str, Dict[str, str]] = {}
    STRIPE_CLIENT_CACHE_TTL_SECONDS: int = 300
    STRIPE_CLIENT_CACHE_MAX_ENTRIES: int = 256

    # Webhooks
    WEBHOOK_AUDIT_TTL_DAYS: int = 30

    # Checkout
    DEFAULT_CHECKOUT_DOMAIN: str = "https://pay.example.com"
    PRODUCT_CALLBACK_TIMEOUT_SECONDS: float = 5.0

    # HTTP
    CORS_ALLOWED_ORIGINS: str = "*"  # comma-separated

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
    log = logger or logging.getLogger("paywall")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = []
    if cfg.ENTITLEMENT_STORE == "sql":
        required_keys.append("DATABASE_URL")
    elif cfg.ENTITLEMENT_STORE == "redis":
        required_keys.extend(["DATABASE_URL", "REDIS_URL"])
    elif cfg.ENTITLEMENT_STORE != "memory":
        message = f"Unknown ENTITLEMENT_STORE: {cfg.ENTITLEMENT_STORE}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if not cfg.STRIPE_SECRET_KEY and not cfg.STRIPE_TENANT_CREDENTIALS:
        missing.append("STRIPE_SECRET_KEY or STRIPE_TENANT_CREDENTIALS")
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    if cfg.ENTITLEMENT_INACTIVE_TTL_SECONDS > cfg.ENTITLEMENT_ACTIVE_TTL_SECONDS:
        log.warning(
            "Negative entitlement window is longer than the positive one",
            extra={
                "active_ttl": cfg.ENTITLEMENT_ACTIVE_TTL_SECONDS,
                "inactive_ttl": cfg.ENTITLEMENT_INACTIVE_TTL_SECONDS,
            },
        )

    return True
