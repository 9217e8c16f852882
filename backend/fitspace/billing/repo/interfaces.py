from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import List, Optional

from ..domain.entities import (
    BillingRecord,
    PackageTemplate,
    ProviderAction,
    Subscription,
)


class LedgerStore(ABC):
    """Durable home of subscriptions, their billing trail and the provider outbox.

    Implementations return detached copies: mutating a returned Subscription
    never changes stored state until it is passed back to ``commit``.

    Guarantees every implementation must give:

    * ``insert`` and ``commit`` write the aggregate and its BillingRecord
      atomically.
    * ``commit`` is optimistic: it fails with ``ConcurrencyConflict`` unless
      the stored version equals ``expected_version``, and bumps the version.
    * At most one row per (user, package) is live; ``insert`` raises
      ``SubscriptionConflict`` otherwise.
    * Connectivity problems surface as ``TransientStoreError``.
    """

    @abstractmethod
    async def get(self, subscription_id: str) -> Optional[Subscription]:
        pass

    @abstractmethod
    async def get_by_external_id(self, external_subscription_id: str) -> Optional[Subscription]:
        pass

    @abstractmethod
    async def list_for_user_package(self, user_id: str, package_id: str) -> List[Subscription]:
        """All rows for the pair, newest first."""
        pass

    @abstractmethod
    async def list_for_user(self, user_id: str) -> List[Subscription]:
        """All rows for the user, newest first."""
        pass

    @abstractmethod
    async def list_expirable(self, now: datetime, grace_period: timedelta) -> List[Subscription]:
        """Rows the expiration sweep should look at.

        Soft-cancelled rows whose period ended, ACTIVE rows whose grace window
        elapsed, and ACTIVE one-time purchases (no provider subscription) whose
        period ended.
        """
        pass

    @abstractmethod
    async def list_records(self, subscription_id: str) -> List[BillingRecord]:
        """BillingRecords of one subscription, oldest first."""
        pass

    @abstractmethod
    async def insert(self, subscription: Subscription, record: BillingRecord) -> Subscription:
        pass

    @abstractmethod
    async def commit(
        self,
        subscription: Subscription,
        record: BillingRecord,
        expected_version: int,
    ) -> Subscription:
        pass

    @abstractmethod
    async def enqueue_provider_action(self, action: ProviderAction) -> None:
        pass

    @abstractmethod
    async def list_provider_actions(self, limit: int = 100) -> List[ProviderAction]:
        pass

    @abstractmethod
    async def record_provider_attempt(self, action_id: str, error: str) -> None:
        pass

    @abstractmethod
    async def complete_provider_action(self, action_id: str) -> None:
        pass

    async def find_live(self, user_id: str, package_id: str) -> Optional[Subscription]:
        for sub in await self.list_for_user_package(user_id, package_id):
            if sub.is_live:
                return sub
        return None


class PackageCatalog(ABC):
    """Read-only view of package templates owned by the marketplace."""

    @abstractmethod
    async def get_package(self, package_id: str) -> Optional[PackageTemplate]:
        pass
