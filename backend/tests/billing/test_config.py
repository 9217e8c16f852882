from datetime import timedelta
from decimal import Decimal

import pytest

from fitspace.billing.config import BillingConfig
from fitspace.billing.shared.exceptions import ConfigurationError

ENV_KEYS = (
    "TRIAL_PERIOD_DAYS",
    "GRACE_PERIOD_DAYS",
    "MAX_PAYMENT_RETRIES",
    "RETRY_INTERVALS_HOURS",
    "PLATFORM_COMMISSION_PERCENT",
    "SUPPORTED_CURRENCIES",
    "SWEEP_INTERVAL_SECONDS",
    "STRIPE_SECRET_KEY",
)


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    return tmp_path / "missing.env"


class TestBillingConfig:
    def test_defaults(self):
        config = BillingConfig()
        assert config.trial_period == timedelta(days=7)
        assert config.grace_period == timedelta(days=3)
        assert config.max_payment_retries == 3
        assert config.retry_intervals_hours == (24, 72, 168)
        assert config.platform_commission_percent == Decimal("11")
        assert config.supported_currencies == ("USD", "EUR", "NOK")

    def test_payment_retry_delay(self):
        config = BillingConfig()
        assert config.payment_retry_delay(1) == timedelta(hours=24)
        assert config.payment_retry_delay(3) == timedelta(hours=168)
        assert config.payment_retry_delay(4) is None
        assert config.payment_retry_delay(0) is None

    def test_currency_check_is_case_insensitive(self):
        config = BillingConfig(supported_currencies=("usd",))
        assert config.is_supported_currency("USD")
        assert config.is_supported_currency("usd")
        assert not config.is_supported_currency("GBP")
        assert not config.is_supported_currency(None)

    def test_retry_intervals_must_match_retry_count(self):
        with pytest.raises(ConfigurationError):
            BillingConfig(max_payment_retries=2, retry_intervals_hours=(24, 72, 168))

    @pytest.mark.parametrize("kwargs", [
        {"trial_period_days": 0},
        {"grace_period_days": -1},
        {"platform_commission_percent": Decimal("100.5")},
        {"supported_currencies": ()},
        {"recent_event_window": 0},
    ])
    def test_rejects_invalid_values(self, kwargs):
        with pytest.raises(ConfigurationError):
            BillingConfig(**kwargs)


class TestFromEnv:
    def test_reads_environment(self, monkeypatch, clean_env):
        monkeypatch.setenv("TRIAL_PERIOD_DAYS", "14")
        monkeypatch.setenv("GRACE_PERIOD_DAYS", "5")
        monkeypatch.setenv("MAX_PAYMENT_RETRIES", "2")
        monkeypatch.setenv("RETRY_INTERVALS_HOURS", "12, 48")
        monkeypatch.setenv("PLATFORM_COMMISSION_PERCENT", "9.5")
        monkeypatch.setenv("SUPPORTED_CURRENCIES", "usd,gbp")
        monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_123")

        config = BillingConfig.from_env(str(clean_env))

        assert config.trial_period_days == 14
        assert config.grace_period_days == 5
        assert config.retry_intervals_hours == (12, 48)
        assert config.platform_commission_percent == Decimal("9.5")
        assert config.supported_currencies == ("USD", "GBP")
        assert config.stripe_secret_key == "sk_test_123"

    def test_defaults_when_unset(self, clean_env):
        config = BillingConfig.from_env(str(clean_env))
        assert config.trial_period_days == 7
        assert config.sweep_interval_seconds == 300

    def test_non_integer_is_rejected(self, monkeypatch, clean_env):
        monkeypatch.setenv("GRACE_PERIOD_DAYS", "three")
        with pytest.raises(ConfigurationError):
            BillingConfig.from_env(str(clean_env))

    def test_secret_not_in_repr(self):
        assert "sk_live" not in repr(BillingConfig(stripe_secret_key="sk_live_abc"))
