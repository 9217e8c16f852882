import asyncio
import itertools
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional

from fitspace.utils.logger import logger
from ..domain.entities import (
    BillingRecord,
    PackageTemplate,
    ProviderAction,
    Subscription,
    SubscriptionStatus,
)
from ..shared.exceptions import ConcurrencyConflict, SubscriptionConflict, SubscriptionNotFound
from .interfaces import LedgerStore, PackageCatalog

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class InMemoryLedgerStore(LedgerStore):
    """Process-local LedgerStore for tests and single-node development."""

    def __init__(self):
        self._subscriptions: Dict[str, Subscription] = {}
        self._order: Dict[str, int] = {}
        self._records: Dict[str, List[BillingRecord]] = {}
        self._actions: Dict[str, ProviderAction] = {}
        self._counter = itertools.count()
        self._write_lock = asyncio.Lock()

    def _newest_first(self, rows: Iterable[Subscription]) -> List[Subscription]:
        ordered = sorted(
            rows,
            key=lambda s: (s.created_at or _EPOCH, self._order[s.id]),
            reverse=True,
        )
        return [s.copy() for s in ordered]

    async def get(self, subscription_id: str) -> Optional[Subscription]:
        sub = self._subscriptions.get(subscription_id)
        return sub.copy() if sub else None

    async def get_by_external_id(self, external_subscription_id: str) -> Optional[Subscription]:
        matches = [
            s for s in self._subscriptions.values()
            if s.external_subscription_id == external_subscription_id
        ]
        # a reactivated lineage may reuse the provider id; the newest row wins
        newest = self._newest_first(matches)
        return newest[0] if newest else None

    async def list_for_user_package(self, user_id: str, package_id: str) -> List[Subscription]:
        return self._newest_first(
            s for s in self._subscriptions.values()
            if s.user_id == user_id and s.package_id == package_id
        )

    async def list_for_user(self, user_id: str) -> List[Subscription]:
        return self._newest_first(s for s in self._subscriptions.values() if s.user_id == user_id)

    async def list_expirable(self, now: datetime, grace_period: timedelta) -> List[Subscription]:
        result = []
        for sub in self._subscriptions.values():
            if sub.status == SubscriptionStatus.CANCELLED_ACTIVE:
                if sub.end_date is not None and sub.end_date <= now:
                    result.append(sub.copy())
            elif sub.status == SubscriptionStatus.ACTIVE:
                if sub.is_in_grace_period:
                    if sub.grace_start is not None and sub.grace_start + grace_period <= now:
                        result.append(sub.copy())
                elif sub.external_subscription_id is None and sub.end_date is not None and sub.end_date <= now:
                    result.append(sub.copy())
        return result

    async def list_records(self, subscription_id: str) -> List[BillingRecord]:
        return list(self._records.get(subscription_id, []))

    async def insert(self, subscription: Subscription, record: BillingRecord) -> Subscription:
        async with self._write_lock:
            if subscription.id in self._subscriptions:
                raise ConcurrencyConflict(subscription.id, subscription.version)
            if subscription.is_live:
                for existing in self._subscriptions.values():
                    if (existing.user_id == subscription.user_id
                            and existing.package_id == subscription.package_id
                            and existing.is_live):
                        raise SubscriptionConflict(subscription.user_id, subscription.package_id, existing.id)
            stored = subscription.copy()
            stored.version = 1
            self._subscriptions[stored.id] = stored
            self._order[stored.id] = next(self._counter)
            self._records[stored.id] = [record]
            logger.debug(f"[LEDGER] Inserted subscription {stored.id} ({stored.status.value})")
            return stored.copy()

    async def commit(
        self,
        subscription: Subscription,
        record: BillingRecord,
        expected_version: int,
    ) -> Subscription:
        async with self._write_lock:
            current = self._subscriptions.get(subscription.id)
            if current is None:
                raise SubscriptionNotFound(subscription.id)
            if current.version != expected_version:
                raise ConcurrencyConflict(subscription.id, expected_version)
            stored = subscription.copy()
            stored.version = expected_version + 1
            self._subscriptions[stored.id] = stored
            self._records.setdefault(stored.id, []).append(record)
            logger.debug(f"[LEDGER] Committed subscription {stored.id} v{stored.version} ({stored.status.value})")
            return stored.copy()

    async def enqueue_provider_action(self, action: ProviderAction) -> None:
        self._actions[action.id] = action

    async def list_provider_actions(self, limit: int = 100) -> List[ProviderAction]:
        return list(self._actions.values())[:limit]

    async def record_provider_attempt(self, action_id: str, error: str) -> None:
        action = self._actions.get(action_id)
        if action:
            action.attempts += 1
            action.last_error = error

    async def complete_provider_action(self, action_id: str) -> None:
        self._actions.pop(action_id, None)


class InMemoryPackageCatalog(PackageCatalog):
    def __init__(self, packages: Iterable[PackageTemplate] = ()):
        self._packages: Dict[str, PackageTemplate] = {p.id: p for p in packages}

    def add(self, package: PackageTemplate) -> None:
        self._packages[package.id] = package

    async def get_package(self, package_id: str) -> Optional[PackageTemplate]:
        return self._packages.get(package_id)
