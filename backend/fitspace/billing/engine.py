"""Wires the billing components together for one process."""
from dataclasses import dataclass
from typing import Optional

from fitspace.services.db import Database
from fitspace.services.redis import RedisClient
from fitspace.utils.keyed_lock import KeyedLock
from fitspace.utils.logger import logger
from .config import BillingConfig
from .domain import windows
from .events.dlq import DeadLetterQueue, InMemoryDeadLetterStore, RedisDeadLetterStore
from .events.processor import EventProcessor
from .external.interfaces import BillingProvider
from .external.stripe import StripeBillingProvider, StripeWebhookTranslator
from .payments.reconciliation import ExpirationSweeper, ReconciliationService
from .repo import (
    InMemoryLedgerStore,
    InMemoryPackageCatalog,
    LedgerStore,
    PackageCatalog,
    SqlLedgerStore,
    SqlPackageCatalog,
)
from .subscriptions.service import SubscriptionService
from .subscriptions.state_machine import SubscriptionStateMachine


@dataclass
class BillingEngine:
    config: BillingConfig
    store: LedgerStore
    catalog: PackageCatalog
    state_machine: SubscriptionStateMachine
    processor: EventProcessor
    reconciliation: ReconciliationService
    subscriptions: SubscriptionService
    sweeper: ExpirationSweeper
    webhooks: StripeWebhookTranslator
    dlq: DeadLetterQueue
    provider: Optional[BillingProvider] = None
    db: Optional[Database] = None
    redis: Optional[RedisClient] = None

    async def start(self, run_sweeper: bool = True) -> None:
        if self.db is not None:
            await self.db.init()
            if isinstance(self.store, SqlLedgerStore):
                await self.store.create_schema()
        if run_sweeper:
            await self.sweeper.start()
        logger.info(f"[ENGINE] Billing engine started (store={type(self.store).__name__})")

    async def close(self) -> None:
        await self.sweeper.stop()
        if self.redis is not None:
            await self.redis.close()
        if self.db is not None:
            await self.db.close()
        logger.info("[ENGINE] Billing engine stopped")


def build_engine(
    config: BillingConfig,
    store: Optional[LedgerStore] = None,
    catalog: Optional[PackageCatalog] = None,
    provider: Optional[BillingProvider] = None,
    dlq: Optional[DeadLetterQueue] = None,
    clock: windows.Clock = windows.utcnow,
) -> BillingEngine:
    """Build an engine from config; explicit arguments win over config-derived parts.

    ``DATABASE_URL`` selects the SQL store, ``REDIS_URL`` the Redis dead-letter
    stream and ``STRIPE_SECRET_KEY`` the Stripe provider. Without them the
    engine runs fully in memory.
    """
    db = None
    if store is None or catalog is None:
        if config.database_url:
            db = Database(config.database_url)
            store = store or SqlLedgerStore(db)
            catalog = catalog or SqlPackageCatalog(db)
        else:
            store = store or InMemoryLedgerStore()
            catalog = catalog or InMemoryPackageCatalog()

    redis = None
    if dlq is None:
        if config.redis_url:
            redis = RedisClient(config.redis_url)
            dlq = DeadLetterQueue(RedisDeadLetterStore(redis))
        else:
            dlq = DeadLetterQueue(InMemoryDeadLetterStore())

    if provider is None and config.stripe_secret_key:
        provider = StripeBillingProvider(config)

    locks = KeyedLock("billing")
    state_machine = SubscriptionStateMachine(store, catalog, config, locks=locks, clock=clock)
    processor = EventProcessor(state_machine, store, config, dlq=dlq, locks=locks)
    reconciliation = ReconciliationService(state_machine, store, config, provider=provider, clock=clock)
    subscriptions = SubscriptionService(state_machine, store, reconciliation, provider=provider)

    return BillingEngine(
        config=config,
        store=store,
        catalog=catalog,
        state_machine=state_machine,
        processor=processor,
        reconciliation=reconciliation,
        subscriptions=subscriptions,
        sweeper=ExpirationSweeper(reconciliation),
        webhooks=StripeWebhookTranslator(config.stripe_webhook_secret),
        dlq=dlq,
        provider=provider,
        db=db,
        redis=redis,
    )
