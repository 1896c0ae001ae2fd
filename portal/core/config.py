import logging
from typing import Optional

from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Identity provider (session JWT)
    AUTH_JWT_SECRET: Optional[str] = None
    AUTH_JWT_AUDIENCE: Optional[str] = None

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_METERED_PRICE_IDS: str = ""  # comma-separated

    # App URLs
    BASE_URL: str = "http://localhost:3000"

    # Email (Resend)
    RESEND_API_KEY: Optional[str] = None
    RESEND_FROM_EMAIL: str = "Hopsworks <no-reply@hopsworks.com>"

    # Ops alerts (Slack incoming webhook)
    SLACK_WEBHOOK_URL: Optional[str] = None

    # CRM (HubSpot)
    HUBSPOT_API_KEY: Optional[str] = None

    # Admin / cron access
    ADMIN_KEY: Optional[str] = None
    CRON_SECRET: Optional[str] = None

    # Hopsworks clusters
    HOPSWORKS_VERIFY_TLS: bool = True
    HOPSWORKS_TIMEOUT_SECONDS: float = 10.0
    ASSIGNMENT_MAX_ATTEMPTS: int = 3
    ASSIGNMENT_BASE_DELAY_SECONDS: float = 1.0

    # Usage rows that cannot be mapped to a user: log | alert | mark_reported
    USAGE_ORPHAN_POLICY: str = "alert"

    # Rate limiting (per client ip, production only)
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_PER_MINUTE_DEFAULT: int = 120
    RATE_LIMIT_BURST_DEFAULT: int = 30
    RATE_LIMIT_INVITES_PER_HOUR: int = 20
    RATE_LIMIT_INVITE_BURST: int = 5

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def is_production(self) -> bool:
        return self.ENV.lower() == "production"

    def metered_price_ids(self) -> list[str]:
        return [p.strip() for p in self.STRIPE_METERED_PRICE_IDS.split(",") if p.strip()]


settings = Settings()


ORPHAN_POLICIES = ("log", "alert", "mark_reported")

# Required in every environment
REQUIRED_KEYS = ("DATABASE_URL", "AUTH_JWT_SECRET", "STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET")
# Required in production only
PRODUCTION_KEYS = ("ADMIN_KEY", "CRON_SECRET", "RESEND_API_KEY")


def config_problems(cfg: Settings) -> list[str]:
    """Names of missing keys and invalid values; secrets themselves are never included."""
    keys = REQUIRED_KEYS + (PRODUCTION_KEYS if cfg.is_production else ())
    problems = [f"missing {key}" for key in keys if not getattr(cfg, key, None)]
    if cfg.USAGE_ORPHAN_POLICY not in ORPHAN_POLICIES:
        problems.append(f"USAGE_ORPHAN_POLICY must be one of {', '.join(ORPHAN_POLICIES)}")
    if cfg.STRIPE_SECRET_KEY and not cfg.metered_price_ids():
        problems.append("missing STRIPE_METERED_PRICE_IDS")
    return problems


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> list[str]:
    """Warn about configuration problems, or raise RuntimeError in strict mode."""
    cfg = settings_obj or settings
    log = logger or logging.getLogger("portal.config")
    strict_mode = cfg.CONFIG_STRICT if strict is None else strict

    problems = config_problems(cfg)
    if problems and strict_mode:
        raise RuntimeError(f"Invalid configuration: {'; '.join(problems)}")
    for problem in problems:
        log.warning("config.problem", extra={"problem": problem, "env": cfg.ENV})
    return problems
