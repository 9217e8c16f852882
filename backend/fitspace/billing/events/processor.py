from typing import Any, Dict, Optional, Union

from fitspace.utils.keyed_lock import KeyedLock
from fitspace.utils.logger import log_context, logger
from fitspace.utils.retry import ExponentialBackoff, RetryPolicy, with_retry
from ..config import BillingConfig
from ..domain.entities import Subscription
from ..domain.transitions import Reactivate
from ..repo.interfaces import LedgerStore
from ..shared.exceptions import (
    BillingError,
    DuplicateEvent,
    InvalidTransition,
    StaleEvent,
    TransientError,
    ValidationError,
)
from ..subscriptions.state_machine import SubscriptionStateMachine
from .dlq import DeadLetterQueue
from .mapping import to_transition
from .models import EventType, ExternalEvent, IngestOutcome, IngestResult


class EventProcessor:
    """Single entry point for billing-provider events.

    Everything for one provider subscription runs under ``external:<id>``;
    the state machine additionally takes the local subscription lock, which
    is what serialises provider events against user actions and the sweep.
    """

    def __init__(
        self,
        state_machine: SubscriptionStateMachine,
        store: LedgerStore,
        config: BillingConfig,
        dlq: Optional[DeadLetterQueue] = None,
        locks: Optional[KeyedLock] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.state_machine = state_machine
        self.store = store
        self.config = config
        self.dlq = dlq or DeadLetterQueue()
        self.locks = locks or state_machine.locks
        self.retry_policy = retry_policy or ExponentialBackoff.retrying(
            config.event_max_retries,
            on=(TransientError,),
            base_delay=config.event_retry_base_delay_seconds,
            max_delay=config.event_retry_max_delay_seconds,
        )

    async def ingest(self, event: Union[ExternalEvent, Dict[str, Any]]) -> IngestResult:
        """Apply one event at most once.

        Duplicates, out-of-order events and unknown subscriptions come back as
        results rather than exceptions. Transient failures are retried and then
        dead-lettered. ``ValidationError`` and ``MoneyInvariantViolation``
        propagate.
        """
        if not isinstance(event, ExternalEvent):
            event = ExternalEvent.parse(event)
        self._validate(event)

        try:
            return await self._process_with_retry(event)
        except TransientError as e:
            await self.dlq.send(
                event_id=event.event_id,
                event_type=event.type.value,
                data=event.to_json_dict(),
                error=f"{type(e).__name__}: {e}",
                attempt_count=self.retry_policy.max_attempts,
            )
            return IngestResult(IngestOutcome.DEAD_LETTERED, event.event_id, detail=str(e))

    async def replay_dead_letters(self, limit: int = 100) -> Dict[str, int]:
        """Re-ingest dead-lettered events; entries that go through are removed."""
        replayed = failed = 0
        for entry in await self.dlq.get_entries(count=limit):
            try:
                event = ExternalEvent.parse(entry.data)
                result = await self._process_with_retry(event)
            except BillingError as e:
                failed += 1
                logger.warning(f"[DLQ] Replay of event {entry.event_id} failed: {type(e).__name__}: {e}")
                continue
            await self.dlq.delete_entry(entry.entry_id)
            replayed += 1
            logger.info(f"[DLQ] Replayed event {entry.event_id}: {result.outcome.value}")

        return {"replayed": replayed, "failed": failed}

    def _validate(self, event: ExternalEvent) -> None:
        currency = event.payload.currency
        if currency and not self.config.is_supported_currency(currency):
            raise ValidationError(f"Unsupported currency {currency} in event {event.event_id}")

    async def _process_with_retry(self, event: ExternalEvent) -> IngestResult:
        return await with_retry(
            self._process,
            self.retry_policy,
            event,
            operation_name=f"ingest {event.type.value} {event.event_id}",
        )

    async def _process(self, event: ExternalEvent) -> IngestResult:
        with log_context(event_id=event.event_id, event_type=event.type.value):
            return await self._process_locked(event)

    async def _process_locked(self, event: ExternalEvent) -> IngestResult:
        async with self.locks.hold(f"external:{event.subscription_external_id}"):
            sub = await self.store.get_by_external_id(event.subscription_external_id)
            created = False

            if sub is None:
                if not event.is_creation:
                    logger.warning(
                        f"[EVENTS] Dropping {event.type.value} {event.event_id}: "
                        f"no subscription for {event.subscription_external_id}"
                    )
                    return IngestResult(IngestOutcome.DROPPED, event.event_id, detail="unknown subscription")
                try:
                    sub = await self._create(event)
                except InvalidTransition as e:
                    logger.warning(f"[EVENTS] Dropping {event.type.value} {event.event_id}: {e}")
                    return IngestResult(IngestOutcome.DROPPED, event.event_id, detail=str(e))
                created = True
            elif sub.has_processed(event.event_id):
                logger.debug(f"[EVENTS] Duplicate event {event.event_id} for {sub.id}")
                return IngestResult(IngestOutcome.DUPLICATE, event.event_id, sub.id)

            records = await self.store.list_records(sub.id)
            request = to_transition(event, sub, records)
            if request is None:
                outcome = IngestOutcome.APPLIED if created else IngestOutcome.IGNORED
                logger.info(f"[EVENTS] {event.type.value} {event.event_id} for {sub.id}: {outcome.value}")
                return IngestResult(outcome, event.event_id, sub.id)

            try:
                updated = await self.state_machine.apply_transition(
                    sub.id,
                    request,
                    event_id=event.event_id,
                    occurred_at=event.occurred_at,
                    ordered=event.is_ordered,
                )
            except DuplicateEvent:
                return IngestResult(IngestOutcome.DUPLICATE, event.event_id, sub.id)
            except StaleEvent as e:
                logger.warning(f"[EVENTS] Dropping stale {event.type.value} {event.event_id} for {sub.id}")
                return IngestResult(IngestOutcome.DROPPED, event.event_id, sub.id, detail=str(e))
            except InvalidTransition as e:
                logger.warning(
                    f"[EVENTS] Dropping {event.type.value} {event.event_id} for {sub.id} "
                    f"({sub.status.value}): {e}"
                )
                return IngestResult(IngestOutcome.DROPPED, event.event_id, sub.id, detail=str(e))

            if event.type == EventType.CHARGE_DISPUTED:
                logger.critical(
                    f"[EVENTS] Dispute opened on subscription {sub.id} (user {sub.user_id}): "
                    f"{event.payload.amount or 0} {event.payload.currency or sub.currency} "
                    f"on charge {event.payload.charge_id}, reason {event.payload.reason}"
                )

        return IngestResult(IngestOutcome.APPLIED, event.event_id, updated.id)

    async def _create(self, event: ExternalEvent) -> Subscription:
        """First sighting of a provider subscription: open or reactivate a local row."""
        payload = event.payload
        external_id = event.subscription_external_id

        if payload.previous_subscription_id:
            previous = await self.store.get(payload.previous_subscription_id)
            if previous is not None:
                if payload.user_id and payload.user_id != previous.user_id:
                    raise ValidationError(
                        f"Event {event.event_id} reactivates {previous.id} for a different user"
                    )
                logger.info(f"[EVENTS] Reactivating {previous.id} from {event.type.value} {event.event_id}")
                return await self.state_machine.apply_transition(
                    previous.id,
                    Reactivate(reset_trial=False, external_subscription_id=external_id),
                    occurred_at=event.occurred_at,
                )
            logger.warning(
                f"[EVENTS] Previous subscription {payload.previous_subscription_id} not found, opening a new one"
            )

        if not payload.user_id or not payload.package_id:
            raise ValidationError(
                f"Creation event {event.event_id} needs userId and packageId to open a subscription"
            )
        return await self.state_machine.open_subscription(
            payload.user_id,
            payload.package_id,
            external_subscription_id=external_id,
            occurred_at=event.occurred_at,
        )
