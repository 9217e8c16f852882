import os
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import List, Optional, Tuple

from dotenv import load_dotenv

from .shared.exceptions import ConfigurationError

DEFAULT_TRIAL_PERIOD_DAYS = 7
DEFAULT_GRACE_PERIOD_DAYS = 3
DEFAULT_MAX_PAYMENT_RETRIES = 3
DEFAULT_RETRY_INTERVALS_HOURS = (24, 72, 168)
DEFAULT_PLATFORM_COMMISSION_PERCENT = Decimal("11")
DEFAULT_SUPPORTED_CURRENCIES = ("USD", "EUR", "NOK")


@dataclass
class BillingConfig:
    """Billing engine settings.

    Built once (usually through ``from_env``) and handed to every component;
    nothing below this object reads the environment.
    """

    trial_period_days: int = DEFAULT_TRIAL_PERIOD_DAYS
    grace_period_days: int = DEFAULT_GRACE_PERIOD_DAYS
    max_payment_retries: int = DEFAULT_MAX_PAYMENT_RETRIES
    retry_intervals_hours: Tuple[int, ...] = DEFAULT_RETRY_INTERVALS_HOURS
    platform_commission_percent: Decimal = DEFAULT_PLATFORM_COMMISSION_PERCENT
    supported_currencies: Tuple[str, ...] = DEFAULT_SUPPORTED_CURRENCIES

    # Event ingestion
    event_max_retries: int = 3
    event_retry_base_delay_seconds: float = 0.5
    event_retry_max_delay_seconds: float = 30.0
    recent_event_window: int = 50

    # Outbound provider calls
    provider_timeout_seconds: float = 10.0
    provider_max_retries: int = 2

    sweep_interval_seconds: int = 300

    stripe_secret_key: Optional[str] = field(default=None, repr=False)
    stripe_webhook_secret: Optional[str] = field(default=None, repr=False)
    database_url: Optional[str] = field(default=None, repr=False)
    redis_url: Optional[str] = field(default=None, repr=False)

    def __post_init__(self):
        self.retry_intervals_hours = tuple(self.retry_intervals_hours)
        self.supported_currencies = tuple(c.upper() for c in self.supported_currencies)
        self.platform_commission_percent = Decimal(str(self.platform_commission_percent))
        self.validate()

    def validate(self) -> None:
        if self.trial_period_days <= 0:
            raise ConfigurationError("TRIAL_PERIOD_DAYS must be positive")
        if self.grace_period_days <= 0:
            raise ConfigurationError("GRACE_PERIOD_DAYS must be positive")
        if self.max_payment_retries < 0:
            raise ConfigurationError("MAX_PAYMENT_RETRIES must not be negative")
        if len(self.retry_intervals_hours) != self.max_payment_retries:
            raise ConfigurationError(
                f"RETRY_INTERVALS_HOURS has {len(self.retry_intervals_hours)} entries, "
                f"expected {self.max_payment_retries} (one per payment retry)"
            )
        if any(hours <= 0 for hours in self.retry_intervals_hours):
            raise ConfigurationError("RETRY_INTERVALS_HOURS entries must be positive")
        if not Decimal("0") <= self.platform_commission_percent <= Decimal("100"):
            raise ConfigurationError("PLATFORM_COMMISSION_PERCENT must be between 0 and 100")
        if not self.supported_currencies:
            raise ConfigurationError("SUPPORTED_CURRENCIES must not be empty")
        if self.event_max_retries < 0 or self.provider_max_retries < 0:
            raise ConfigurationError("Retry counts must not be negative")
        if self.recent_event_window <= 0:
            raise ConfigurationError("RECENT_EVENT_WINDOW must be positive")

    @property
    def trial_period(self) -> timedelta:
        return timedelta(days=self.trial_period_days)

    @property
    def grace_period(self) -> timedelta:
        return timedelta(days=self.grace_period_days)

    def payment_retry_delay(self, failed_attempts: int) -> Optional[timedelta]:
        """Delay before the next provider retry after ``failed_attempts`` failures, None once exhausted."""
        if failed_attempts < 1 or failed_attempts > len(self.retry_intervals_hours):
            return None
        return timedelta(hours=self.retry_intervals_hours[failed_attempts - 1])

    def is_supported_currency(self, currency: Optional[str]) -> bool:
        return bool(currency) and currency.upper() in self.supported_currencies

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "BillingConfig":
        load_dotenv(env_file)
        return cls(
            trial_period_days=_get_int("TRIAL_PERIOD_DAYS", DEFAULT_TRIAL_PERIOD_DAYS),
            grace_period_days=_get_int("GRACE_PERIOD_DAYS", DEFAULT_GRACE_PERIOD_DAYS),
            max_payment_retries=_get_int("MAX_PAYMENT_RETRIES", DEFAULT_MAX_PAYMENT_RETRIES),
            retry_intervals_hours=tuple(
                _get_int_list("RETRY_INTERVALS_HOURS", list(DEFAULT_RETRY_INTERVALS_HOURS))
            ),
            platform_commission_percent=_get_decimal(
                "PLATFORM_COMMISSION_PERCENT", DEFAULT_PLATFORM_COMMISSION_PERCENT
            ),
            supported_currencies=tuple(
                _get_list("SUPPORTED_CURRENCIES", list(DEFAULT_SUPPORTED_CURRENCIES))
            ),
            event_max_retries=_get_int("EVENT_MAX_RETRIES", 3),
            event_retry_base_delay_seconds=_get_float("EVENT_RETRY_BASE_DELAY_SECONDS", 0.5),
            event_retry_max_delay_seconds=_get_float("EVENT_RETRY_MAX_DELAY_SECONDS", 30.0),
            recent_event_window=_get_int("RECENT_EVENT_WINDOW", 50),
            provider_timeout_seconds=_get_float("PROVIDER_TIMEOUT_SECONDS", 10.0),
            provider_max_retries=_get_int("PROVIDER_MAX_RETRIES", 2),
            sweep_interval_seconds=_get_int("SWEEP_INTERVAL_SECONDS", 300),
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY"),
            stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET"),
            database_url=os.getenv("DATABASE_URL"),
            redis_url=os.getenv("REDIS_URL"),
        )


def _get_int(key: str, default: int) -> int:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ConfigurationError(f"Environment variable {key} must be an integer") from exc


def _get_float(key: str, default: float) -> float:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError as exc:
        raise ConfigurationError(f"Environment variable {key} must be a number") from exc


def _get_decimal(key: str, default: Decimal) -> Decimal:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return Decimal(value.strip())
    except InvalidOperation as exc:
        raise ConfigurationError(f"Environment variable {key} must be a decimal number") from exc


def _get_list(key: str, default: List[str]) -> List[str]:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    return [item.strip() for item in value.split(",") if item.strip()]


def _get_int_list(key: str, default: List[int]) -> List[int]:
    try:
        return [int(item) for item in _get_list(key, [str(d) for d in default])]
    except ValueError as exc:
        raise ConfigurationError(f"Environment variable {key} must be a comma-separated list of integers") from exc
