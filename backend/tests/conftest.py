"""Shared fixtures for the billing engine tests."""
from datetime import datetime, timedelta, timezone

import pytest

from fitspace.billing.config import BillingConfig
from fitspace.billing.domain.entities import BillingInterval, PackageTemplate
from fitspace.billing.events.dlq import DeadLetterQueue, InMemoryDeadLetterStore
from fitspace.billing.events.processor import EventProcessor
from fitspace.billing.payments.reconciliation import ReconciliationService
from fitspace.billing.repo.memory import InMemoryLedgerStore, InMemoryPackageCatalog
from fitspace.billing.shared.exceptions import TransientError
from fitspace.billing.subscriptions.state_machine import SubscriptionStateMachine
from fitspace.utils.retry import ExponentialBackoff


def pytest_configure(config):
    config.addinivalue_line("markers", "sql: Tests that need aiosqlite")


class FixedClock:
    """Test clock: returns ``now`` until told to move."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, value: datetime) -> datetime:
        self.now = value
        return self.now


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(utc(2024, 1, 1, 12, 0))


@pytest.fixture
def config() -> BillingConfig:
    return BillingConfig()


@pytest.fixture
def package() -> PackageTemplate:
    return PackageTemplate(
        id="pkg-strength",
        name="Strength Monthly",
        price=10000,
        currency="USD",
        duration=BillingInterval.MONTHLY,
        trainer_id="trainer-1",
    )


@pytest.fixture
def store() -> InMemoryLedgerStore:
    return InMemoryLedgerStore()


@pytest.fixture
def catalog(package) -> InMemoryPackageCatalog:
    return InMemoryPackageCatalog([
        package,
        PackageTemplate(id="pkg-yoga", name="Yoga Yearly", price=90000, currency="EUR",
                        duration=BillingInterval.YEARLY, trainer_id="trainer-2"),
    ])


@pytest.fixture
def state_machine(store, catalog, config, clock) -> SubscriptionStateMachine:
    return SubscriptionStateMachine(store, catalog, config, clock=clock)


@pytest.fixture
def dlq() -> DeadLetterQueue:
    return DeadLetterQueue(InMemoryDeadLetterStore())


@pytest.fixture
def processor(state_machine, store, config, dlq) -> EventProcessor:
    fast = ExponentialBackoff(base_delay=0, max_delay=0, max_attempts=3, jitter=0,
                              retryable_exceptions=(TransientError,))
    return EventProcessor(state_machine, store, config, dlq=dlq, retry_policy=fast)


@pytest.fixture
def reconciliation(state_machine, store, config, clock) -> ReconciliationService:
    return ReconciliationService(state_machine, store, config, clock=clock)


@pytest.fixture
def make_event(clock):
    counter = {"n": 0}

    def _make(type_, external_id="sub_ext_1", event_id=None, **payload):
        counter["n"] += 1
        return {
            "eventId": event_id or f"evt_{counter['n']}",
            "subscriptionExternalId": external_id,
            "type": type_,
            "occurredAt": clock().isoformat(),
            "payload": payload,
        }

    return _make


@pytest.fixture
async def active_sub(state_machine, package):
    """A paid ACTIVE subscription with no provider id, period 2024-01-01 12:00 -> 2024-02-01 12:00."""
    from fitspace.billing.domain.transitions import Activate

    sub = await state_machine.open_subscription("user-1", package.id)
    return await state_machine.apply_transition(sub.id, Activate(amount=10000, currency="USD",
                                                                 external_reference="ch_1"))
