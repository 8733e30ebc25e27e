import logging
from typing import Dict, List, Optional, Tuple

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """AgriLease runtime settings, read from the environment and `.env`."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    ENV: str = "development"
    CONFIG_STRICT: bool = False

    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    JWT_SECRET: Optional[str] = None
    JWT_ALGORITHM: str = "HS256"
    ALLOW_HEADER_AUTH: bool = True  # X-User-Id fallback, never honoured in production
    ADMIN_KEY: Optional[str] = None

    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_PUBLISHABLE_KEY: Optional[str] = None
    PROVIDER_TIMEOUT_SECONDS: float = 10.0
    PROVIDER_MAX_RETRIES: int = 1

    # Amounts are minor units (paise)
    CURRENCY: str = "INR"
    ESCROW_MIN_AMOUNT: int = 100
    PAYMENT_MIN_AMOUNT: int = 100

    # How long a claimed escrow or subscription row stays locked before another caller may take it over
    ESCROW_CLAIM_TTL_SECONDS: int = 120
    SUBSCRIPTION_CLAIM_TTL_SECONDS: int = 120

    SUBSCRIPTION_TRIAL_DAYS: int = 7
    PRICING_MODEL: str = "regional"  # regional | national

    ALLOWED_ORIGINS: str = "http://localhost:5173"  # comma-separated

    @property
    def is_production(self) -> bool:
        return self.ENV.lower() == "production"

    @property
    def cors_origins(self) -> List[str]:
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",") if origin.strip()]


settings = Settings()


# Capability -> settings it cannot run without
CAPABILITY_REQUIREMENTS: Dict[str, Tuple[str, ...]] = {
    "persistence": ("DATABASE_URL",),
    "bearer auth": ("JWT_SECRET",),
    "escrow and subscriptions": ("STRIPE_SECRET_KEY",),
    "provider webhooks": ("STRIPE_WEBHOOK_SECRET",),
}


def missing_capabilities(cfg) -> Dict[str, List[str]]:
    """Map each degraded capability to the unset keys it needs."""
    degraded = {}
    for capability, keys in CAPABILITY_REQUIREMENTS.items():
        unset = [key for key in keys if not getattr(cfg, key, None)]
        if unset:
            degraded[capability] = unset
    return degraded


def validate_config(strict: Optional[bool] = None, settings_obj=None, logger: Optional[logging.Logger] = None) -> bool:
    """Report capabilities that will not work with the current configuration.

    Strict mode raises RuntimeError instead of warning. Only key names are
    ever logged, never values.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("agrilease")
    if strict is None:
        strict = bool(getattr(cfg, "CONFIG_STRICT", False))

    degraded = missing_capabilities(cfg)
    if not degraded:
        return True

    if strict:
        keys = sorted({key for unset in degraded.values() for key in unset})
        raise RuntimeError(f"Missing required configuration: {', '.join(keys)}")
    for capability, unset in degraded.items():
        log.warning(f"{capability} unavailable: set {', '.join(unset)}")
    return True
