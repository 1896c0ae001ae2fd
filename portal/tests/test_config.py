import logging

import pytest

from portal.core.config import Settings, config_problems, validate_config

COMPLETE = {
    "DATABASE_URL": "postgresql://portal@db/portal",
    "AUTH_JWT_SECRET": "jwt-secret",
    "STRIPE_SECRET_KEY": "sk_test",
    "STRIPE_WEBHOOK_SECRET": "whsec_test",
    "STRIPE_METERED_PRICE_IDS": "price_cpu, price_gpu",
}


def _settings(**overrides):
    values = {"ENV": "development", **COMPLETE, **overrides}
    return Settings(**values)


def test_complete_development_config_has_no_problems():
    assert config_problems(_settings()) == []
    assert _settings().metered_price_ids() == ["price_cpu", "price_gpu"]


def test_production_requires_admin_cron_and_email_keys():
    problems = config_problems(_settings(ENV="production"))
    assert problems == ["missing ADMIN_KEY", "missing CRON_SECRET", "missing RESEND_API_KEY"]


def test_invalid_orphan_policy_and_missing_prices():
    problems = config_problems(_settings(USAGE_ORPHAN_POLICY="ignore", STRIPE_METERED_PRICE_IDS=""))
    assert problems == [
        "USAGE_ORPHAN_POLICY must be one of log, alert, mark_reported",
        "missing STRIPE_METERED_PRICE_IDS",
    ]


def test_validate_config_warns_without_values(caplog):
    cfg = _settings(STRIPE_WEBHOOK_SECRET=None, AUTH_JWT_SECRET="super-secret-value")
    with caplog.at_level(logging.WARNING, logger="portal.config"):
        problems = validate_config(strict=False, settings_obj=cfg)

    assert problems == ["missing STRIPE_WEBHOOK_SECRET"]
    assert [r.problem for r in caplog.records] == ["missing STRIPE_WEBHOOK_SECRET"]
    assert "super-secret-value" not in caplog.text


def test_validate_config_strict_raises():
    with pytest.raises(RuntimeError, match="missing DATABASE_URL"):
        validate_config(strict=True, settings_obj=_settings(DATABASE_URL=None))
