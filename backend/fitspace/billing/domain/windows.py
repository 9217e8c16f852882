"""Trial, grace and billing-period arithmetic.

Pure functions over timezone-aware datetimes. Windows are half-open:
``start <= now < end``.
"""
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional, Tuple

from dateutil.relativedelta import relativedelta

from .entities import BillingInterval, Subscription, SubscriptionStatus

Clock = Callable[[], datetime]

SECONDS_PER_DAY = 86400


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def within(now: datetime, start: Optional[datetime], end: Optional[datetime]) -> bool:
    if start is not None and now < start:
        return False
    if end is not None and now >= end:
        return False
    return True


def add_interval(start: datetime, interval: BillingInterval, count: int = 1) -> datetime:
    # relativedelta clamps Jan 31 + 1 month to Feb 28/29
    if interval == BillingInterval.YEARLY:
        return start + relativedelta(years=count)
    return start + relativedelta(months=count)


def billing_period(start: datetime, interval: BillingInterval) -> Tuple[datetime, datetime]:
    return start, add_interval(start, interval)


def trial_end(trial_start: datetime, trial_period: timedelta) -> datetime:
    return trial_start + trial_period


def grace_end(grace_start: datetime, grace_period: timedelta) -> datetime:
    return grace_start + grace_period


def is_trial_running(sub: Subscription, now: datetime, trial_period: timedelta) -> bool:
    if not sub.is_trial_active or sub.trial_start is None:
        return False
    return within(now, sub.trial_start, trial_end(sub.trial_start, trial_period))


def is_in_grace(sub: Subscription, now: datetime, grace_period: timedelta) -> bool:
    if not sub.is_in_grace_period or sub.grace_start is None:
        return False
    return now < grace_end(sub.grace_start, grace_period)


def is_grace_elapsed(sub: Subscription, now: datetime, grace_period: timedelta) -> bool:
    if not sub.is_in_grace_period or sub.grace_start is None:
        return False
    return now >= grace_end(sub.grace_start, grace_period)


def is_period_over(sub: Subscription, now: datetime) -> bool:
    return sub.end_date is not None and now >= sub.end_date


def can_access(sub: Subscription, now: datetime, grace_period: timedelta) -> bool:
    """The single entitlement rule.

    Grace is an overlay on ACTIVE: while it is set, the grace window alone
    decides, whatever ``end_date`` says.
    """
    if sub.status == SubscriptionStatus.ACTIVE:
        if sub.is_in_grace_period and sub.grace_start is not None:
            return is_in_grace(sub, now, grace_period)
        return sub.end_date is None or now < sub.end_date
    if sub.status == SubscriptionStatus.CANCELLED_ACTIVE:
        return sub.end_date is not None and now < sub.end_date
    return False


def days_remaining(now: datetime, until: Optional[datetime]) -> int:
    if until is None:
        return 0
    return max(0, math.ceil((until - now).total_seconds() / SECONDS_PER_DAY))


class AccessStatus(str, Enum):
    NO_SUBSCRIPTION = "NO_SUBSCRIPTION"
    TRIAL = "TRIAL"
    GRACE_PERIOD = "GRACE_PERIOD"
    CANCELLED_ACTIVE = "CANCELLED_ACTIVE"
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"


@dataclass(frozen=True)
class AccessSummary:
    status: AccessStatus
    has_access: bool
    expires_at: Optional[datetime]
    days_remaining: int
    subscription_id: Optional[str] = None


def describe_access(
    sub: Optional[Subscription],
    now: datetime,
    trial_period: timedelta,
    grace_period: timedelta,
) -> AccessSummary:
    if sub is None:
        return AccessSummary(AccessStatus.NO_SUBSCRIPTION, False, None, 0)

    has_access = can_access(sub, now, grace_period)
    if not has_access:
        return AccessSummary(AccessStatus.EXPIRED, False, None, 0, sub.id)

    if sub.status == SubscriptionStatus.ACTIVE and sub.is_in_grace_period and sub.grace_start:
        expires_at = grace_end(sub.grace_start, grace_period)
        status = AccessStatus.GRACE_PERIOD
    elif sub.status == SubscriptionStatus.ACTIVE and is_trial_running(sub, now, trial_period):
        expires_at = trial_end(sub.trial_start, trial_period)
        status = AccessStatus.TRIAL
    elif sub.status == SubscriptionStatus.CANCELLED_ACTIVE:
        expires_at = sub.end_date
        status = AccessStatus.CANCELLED_ACTIVE
    else:
        expires_at = sub.end_date
        status = AccessStatus.ACTIVE

    return AccessSummary(status, True, expires_at, days_remaining(now, expires_at), sub.id)
