"""The only writer of subscription status.

Every mutation runs under the per-subscription lock, loads the aggregate,
checks the transition is legal for the current status, and commits the new
aggregate together with exactly one BillingRecord. An illegal request raises
``InvalidTransition`` before anything is written.
"""
from datetime import datetime
from typing import List, Optional, Tuple

from fitspace.utils.keyed_lock import KeyedLock
from fitspace.utils.logger import logger
from ..config import BillingConfig
from ..domain import windows
from ..domain.entities import (
    BillingRecord,
    BillingStatus,
    PackageTemplate,
    Subscription,
    SubscriptionStatus,
    new_id,
)
from ..domain.transitions import (
    Activate,
    EnterGracePeriod,
    ExitGracePeriod,
    Expire,
    Reactivate,
    RecordDispute,
    RecordRefund,
    RefundLine,
    RequestCancellation,
    StartTrial,
    TransitionRequest,
    transition_name,
)
from ..repo.interfaces import LedgerStore, PackageCatalog
from ..shared.exceptions import (
    DuplicateEvent,
    InvalidTransition,
    MoneyInvariantViolation,
    StaleEvent,
    SubscriptionConflict,
    SubscriptionNotFound,
    TrialAlreadyUsed,
    ValidationError,
)

Change = Tuple[Subscription, BillingRecord]


def _pair_key(user_id: str, package_id: str) -> str:
    return f"pair:{user_id}:{package_id}"


class SubscriptionStateMachine:
    def __init__(
        self,
        store: LedgerStore,
        catalog: PackageCatalog,
        config: BillingConfig,
        locks: Optional[KeyedLock] = None,
        clock: windows.Clock = windows.utcnow,
    ):
        self.store = store
        self.catalog = catalog
        self.config = config
        self.locks = locks or KeyedLock("subscriptions")
        self.clock = clock
        self._handlers = {
            Activate: self._activate,
            StartTrial: self._start_trial,
            EnterGracePeriod: self._enter_grace_period,
            ExitGracePeriod: self._exit_grace_period,
            RequestCancellation: self._request_cancellation,
            Expire: self._expire,
            RecordRefund: self._record_refund,
            RecordDispute: self._record_dispute,
        }

    # ------------------------------------------------------------------ creation

    async def open_subscription(
        self,
        user_id: str,
        package_id: str,
        external_subscription_id: Optional[str] = None,
        event_id: Optional[str] = None,
        occurred_at: Optional[datetime] = None,
    ) -> Subscription:
        """Create a PENDING subscription for a first purchase of the pair."""
        return await self._open(
            user_id,
            package_id,
            external_subscription_id=external_subscription_id,
            event_id=event_id,
            occurred_at=occurred_at,
        )

    async def _open(
        self,
        user_id: str,
        package_id: str,
        external_subscription_id: Optional[str] = None,
        event_id: Optional[str] = None,
        occurred_at: Optional[datetime] = None,
        previous: Optional[Subscription] = None,
        carry_trial: bool = False,
    ) -> Subscription:
        if not user_id or not package_id:
            raise ValidationError("user_id and package_id are required to open a subscription")
        package = await self._package(package_id)

        async with self.locks.hold(_pair_key(user_id, package_id)):
            live = await self.store.find_live(user_id, package_id)
            if live is not None:
                raise SubscriptionConflict(user_id, package_id, live.id)

            now = self.clock()
            sub = Subscription(
                id=new_id(),
                user_id=user_id,
                package_id=package_id,
                status=SubscriptionStatus.PENDING,
                external_subscription_id=external_subscription_id,
                trainer_id=package.trainer_id,
                currency=package.currency,
                previous_subscription_id=previous.id if previous else None,
                created_at=now,
                updated_at=now,
            )
            if carry_trial and previous is not None:
                sub.is_trial_active = True
                sub.trial_start = previous.trial_start
            if event_id:
                sub.remember_event(event_id, occurred_at, self.config.recent_event_window)
            else:
                sub.note_event_time(occurred_at)

            description = "Reactivation checkout started" if previous else "Checkout started"
            record = BillingRecord.create(
                subscription_id=sub.id,
                amount=0,
                currency=sub.currency,
                status=BillingStatus.PENDING,
                description=description,
                created_at=now,
            )
            saved = await self.store.insert(sub, record)

        logger.info(
            f"[STATE] Opened subscription {saved.id} for user {user_id} package {package_id}"
            + (f" (reactivates {previous.id})" if previous else "")
        )
        return saved

    # --------------------------------------------------------------- transitions

    async def apply_transition(
        self,
        subscription_id: str,
        request: TransitionRequest,
        event_id: Optional[str] = None,
        occurred_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
        ordered: bool = False,
    ) -> Subscription:
        """Apply ``request`` to one subscription under its lock.

        Returns the committed aggregate. ``Reactivate`` returns the new PENDING
        row; the terminal row it was applied to is left untouched. ``now``
        overrides the clock, which the expiration sweep uses to evaluate a
        whole batch at one instant. With ``ordered`` an event older than the
        newest one already applied raises ``StaleEvent`` and nothing is written.
        """
        if not subscription_id:
            raise ValidationError("subscription_id is required")

        async with self.locks.hold(subscription_id):
            sub = await self.store.get(subscription_id)
            if sub is None:
                raise SubscriptionNotFound(subscription_id)
            if event_id and sub.has_processed(event_id):
                logger.debug(f"[STATE] Event {event_id} already applied to {subscription_id}")
                raise DuplicateEvent(event_id, subscription_id)
            if ordered and sub.is_stale(occurred_at):
                logger.warning(
                    f"[STATE] Event {event_id} from {occurred_at.isoformat()} predates "
                    f"{sub.last_event_at.isoformat()} on {subscription_id}, not applying it"
                )
                raise StaleEvent(event_id, subscription_id, occurred_at, sub.last_event_at)

            now = now or self.clock()
            name = transition_name(request)

            if isinstance(request, Reactivate):
                self._require(sub, request, now)
                history = await self.store.list_for_user_package(sub.user_id, sub.package_id)
                carry_trial = not request.reset_trial and trial_used(history)
                return await self._open(
                    sub.user_id,
                    sub.package_id,
                    external_subscription_id=request.external_subscription_id,
                    event_id=event_id,
                    occurred_at=occurred_at,
                    previous=sub,
                    carry_trial=carry_trial,
                )

            handler = self._handlers.get(type(request))
            if handler is None:
                raise ValidationError(f"Unsupported transition {name}")

            previous_status = sub.status
            updated, record = await handler(sub.copy(), request, now)
            updated.updated_at = now
            if event_id:
                updated.remember_event(event_id, occurred_at, self.config.recent_event_window)

            saved = await self.store.commit(updated, record, expected_version=sub.version)

        logger.info(
            f"[STATE] {name} applied to {subscription_id}: "
            f"{previous_status.value} -> {saved.status.value}"
            + (f" (event {event_id})" if event_id else "")
        )
        return saved

    def can_apply(self, sub: Subscription, request: TransitionRequest, now: Optional[datetime] = None) -> bool:
        """Status-level legality check. History-dependent rules (trial reuse,
        refund ceilings) are only checked by ``apply_transition``."""
        try:
            self._require(sub, request, now or self.clock())
        except InvalidTransition:
            return False
        return True

    def _require(self, sub: Subscription, request: TransitionRequest, now: datetime) -> None:
        status = sub.status

        if isinstance(request, (Activate, StartTrial)):
            legal = status == SubscriptionStatus.PENDING
        elif isinstance(request, EnterGracePeriod):
            legal = status == SubscriptionStatus.ACTIVE
        elif isinstance(request, ExitGracePeriod):
            legal = status == SubscriptionStatus.ACTIVE and (request.renewed or sub.is_in_grace_period)
        elif isinstance(request, RequestCancellation):
            legal = status == SubscriptionStatus.ACTIVE if not request.immediate else sub.is_live
        elif isinstance(request, Expire):
            legal = _is_expirable(sub, now, self.config)
        elif isinstance(request, (RecordRefund, RecordDispute)):
            legal = status != SubscriptionStatus.PENDING
        elif isinstance(request, Reactivate):
            legal = sub.is_terminal
        else:
            legal = False

        if not legal:
            raise InvalidTransition(sub.id, transition_name(request), status.value)

    async def _package(self, package_id: str) -> PackageTemplate:
        package = await self.catalog.get_package(package_id)
        if package is None:
            raise ValidationError(f"Unknown package {package_id}")
        return package

    # ------------------------------------------------------------------ handlers

    async def _activate(self, sub: Subscription, request: Activate, now: datetime) -> Change:
        self._require(sub, request, now)
        _require_amount(request.amount)
        package = await self._package(sub.package_id)

        start = request.period_start or now
        end = request.period_end or windows.add_interval(start, package.duration)
        sub.status = SubscriptionStatus.ACTIVE
        sub.start_date = start
        sub.end_date = end
        sub.currency = request.currency or sub.currency

        return sub, BillingRecord.create(
            subscription_id=sub.id,
            amount=request.amount,
            currency=sub.currency,
            status=BillingStatus.SUCCEEDED,
            description="Subscription activated",
            period_start=start,
            period_end=end,
            external_reference=request.external_reference,
            created_at=now,
        )

    async def _start_trial(self, sub: Subscription, request: StartTrial, now: datetime) -> Change:
        self._require(sub, request, now)
        history = await self.store.list_for_user_package(sub.user_id, sub.package_id)
        if trial_used(history):
            logger.info(f"[STATE] Trial already used for user {sub.user_id} package {sub.package_id}")
            raise TrialAlreadyUsed(sub.id, sub.user_id, sub.package_id)

        end = windows.trial_end(now, self.config.trial_period)
        sub.status = SubscriptionStatus.ACTIVE
        sub.is_trial_active = True
        sub.trial_start = now
        sub.start_date = now
        sub.end_date = end

        return sub, BillingRecord.create(
            subscription_id=sub.id,
            amount=0,
            currency=sub.currency,
            status=BillingStatus.SUCCEEDED,
            description=f"{self.config.trial_period_days}-day trial started",
            period_start=now,
            period_end=end,
            created_at=now,
        )

    async def _enter_grace_period(self, sub: Subscription, request: EnterGracePeriod, now: datetime) -> Change:
        self._require(sub, request, now)
        _require_amount(request.amount)

        if not sub.is_in_grace_period or sub.grace_start is None:
            sub.is_in_grace_period = True
            sub.grace_start = now
            sub.failed_payment_retries = 1
        else:
            sub.failed_payment_retries += 1

        delay = self.config.payment_retry_delay(sub.failed_payment_retries)
        sub.next_payment_retry_at = now + delay if delay else None
        if sub.failed_payment_retries >= self.config.max_payment_retries:
            logger.warning(
                f"[STATE] Subscription {sub.id} reached {sub.failed_payment_retries} failed payments; "
                f"access ends at {windows.grace_end(sub.grace_start, self.config.grace_period).isoformat()}"
            )

        return sub, BillingRecord.create(
            subscription_id=sub.id,
            amount=request.amount,
            currency=request.currency or sub.currency,
            status=BillingStatus.FAILED,
            description=f"Renewal payment failed (attempt {sub.failed_payment_retries})",
            failure_reason=request.reason or "payment_failed",
            external_reference=request.external_reference,
            created_at=now,
        )

    async def _exit_grace_period(self, sub: Subscription, request: ExitGracePeriod, now: datetime) -> Change:
        self._require(sub, request, now)

        if not request.renewed:
            sub.status = SubscriptionStatus.EXPIRED
            sub.is_in_grace_period = False
            sub.next_payment_retry_at = None
            return sub, BillingRecord.create(
                subscription_id=sub.id,
                amount=0,
                currency=sub.currency,
                status=BillingStatus.FAILED,
                description="Grace period ended without renewal",
                failure_reason="renewal_not_recovered",
                created_at=now,
            )

        _require_amount(request.amount)
        package = await self._package(sub.package_id)
        start = request.period_start or sub.end_date or now
        end = request.period_end or windows.add_interval(start, package.duration)
        if sub.end_date is not None and end < sub.end_date:
            end = sub.end_date

        sub.start_date = start
        sub.end_date = end
        sub.is_in_grace_period = False
        sub.grace_start = None
        sub.failed_payment_retries = 0
        sub.next_payment_retry_at = None
        sub.currency = request.currency or sub.currency

        return sub, BillingRecord.create(
            subscription_id=sub.id,
            amount=request.amount,
            currency=sub.currency,
            status=BillingStatus.SUCCEEDED,
            description="Subscription renewed",
            period_start=start,
            period_end=end,
            external_reference=request.external_reference,
            created_at=now,
        )

    async def _request_cancellation(self, sub: Subscription, request: RequestCancellation, now: datetime) -> Change:
        self._require(sub, request, now)
        sub.cancellation_reason = request.reason or sub.cancellation_reason

        if not request.immediate:
            sub.status = SubscriptionStatus.CANCELLED_ACTIVE
            until = sub.end_date.isoformat() if sub.end_date else "period end"
            return sub, BillingRecord.create(
                subscription_id=sub.id,
                amount=0,
                currency=sub.currency,
                status=BillingStatus.SUCCEEDED,
                description=f"Cancellation scheduled, access continues until {until}",
                created_at=now,
            )

        sub.status = SubscriptionStatus.CANCELLED
        if sub.end_date is None or sub.end_date > now:
            sub.end_date = now
        sub.is_in_grace_period = False
        sub.next_payment_retry_at = None

        if request.refund is not None:
            record = await self._refund_record(sub, request.refund, now, "Cancelled with refund")
            return sub, record

        return sub, BillingRecord.create(
            subscription_id=sub.id,
            amount=0,
            currency=sub.currency,
            status=BillingStatus.SUCCEEDED,
            description="Cancelled immediately",
            failure_reason=request.reason,
            created_at=now,
        )

    async def _expire(self, sub: Subscription, request: Expire, now: datetime) -> Change:
        self._require(sub, request, now)
        from_grace = sub.status == SubscriptionStatus.ACTIVE and sub.is_in_grace_period

        sub.status = SubscriptionStatus.EXPIRED
        sub.is_in_grace_period = False
        sub.next_payment_retry_at = None

        if from_grace:
            return sub, BillingRecord.create(
                subscription_id=sub.id,
                amount=0,
                currency=sub.currency,
                status=BillingStatus.FAILED,
                description="Expired after grace period",
                failure_reason="grace_period_elapsed",
                created_at=now,
            )
        return sub, BillingRecord.create(
            subscription_id=sub.id,
            amount=0,
            currency=sub.currency,
            status=BillingStatus.SUCCEEDED,
            description="Subscription period ended",
            period_end=sub.end_date,
            created_at=now,
        )

    async def _record_refund(self, sub: Subscription, request: RecordRefund, now: datetime) -> Change:
        self._require(sub, request, now)
        return sub, await self._refund_record(sub, request.refund, now, "Partial refund")

    async def _record_dispute(self, sub: Subscription, request: RecordDispute, now: datetime) -> Change:
        self._require(sub, request, now)
        _require_amount(request.amount)
        currency = request.currency or sub.currency

        # Funds stay on the books until the provider settles the dispute.
        return sub, BillingRecord.create(
            subscription_id=sub.id,
            amount=0,
            currency=currency,
            status=BillingStatus.PENDING,
            description=f"Charge disputed, {request.amount} {currency} under review",
            failure_reason=f"disputed: {request.reason or 'unspecified'}",
            external_reference=request.external_reference,
            created_at=now,
        )

    async def _refund_record(
        self,
        sub: Subscription,
        refund: RefundLine,
        now: datetime,
        description: str,
    ) -> BillingRecord:
        if isinstance(refund.amount, bool) or not isinstance(refund.amount, int) or refund.amount <= 0:
            raise ValidationError("Refund amount must be a positive integer in minor units")

        records = await self.store.list_records(sub.id)
        collected = sum(r.amount for r in records if r.status == BillingStatus.SUCCEEDED)
        if refund.amount > collected:
            logger.critical(
                f"[STATE] Refund of {refund.amount} exceeds net collected {collected} "
                f"on subscription {sub.id}; refusing to book it"
            )
            raise MoneyInvariantViolation(
                f"Refund {refund.amount} exceeds net collected amount {collected} for subscription {sub.id}"
            )

        return BillingRecord.create(
            subscription_id=sub.id,
            amount=-refund.amount,
            currency=refund.currency or sub.currency,
            status=BillingStatus.SUCCEEDED,
            description=description,
            failure_reason=refund.reason,
            external_reference=refund.external_reference,
            created_at=now,
        )


def trial_used(history: List[Subscription]) -> bool:
    return any(row.is_trial_active or row.trial_start is not None for row in history)


def _is_expirable(sub: Subscription, now: datetime, config: BillingConfig) -> bool:
    if sub.status == SubscriptionStatus.CANCELLED_ACTIVE:
        return windows.is_period_over(sub, now)
    if sub.status == SubscriptionStatus.ACTIVE:
        if sub.is_in_grace_period:
            return windows.is_grace_elapsed(sub, now, config.grace_period)
        return windows.is_period_over(sub, now)
    return False


def _require_amount(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
        raise ValidationError("Amounts must be non-negative integers in minor units")
