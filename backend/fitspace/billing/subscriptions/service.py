from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from fitspace.utils.logger import logger
from ..domain.entities import ProviderAction, ProviderActionType, Subscription, SubscriptionStatus
from ..domain.transitions import RequestCancellation
from ..external.interfaces import BillingProvider
from ..payments.reconciliation import EligibilityResult, ReconciliationService
from ..repo.interfaces import LedgerStore
from ..shared.exceptions import (
    InvalidTransition,
    ProviderError,
    SubscriptionNotFound,
    TransientError,
    ValidationError,
)
from .state_machine import SubscriptionStateMachine


@dataclass(frozen=True)
class CancellationResult:
    subscription_id: str
    status: SubscriptionStatus
    immediate: bool
    access_ends_at: Optional[datetime]
    provider_confirmed: bool
    message: str


@dataclass(frozen=True)
class ReactivationIntent:
    package_id: str
    can_reactivate: bool
    trial_eligible: bool
    message: str
    previous_subscription_id: Optional[str] = None
    blocking_subscription_id: Optional[str] = None


class SubscriptionService:
    """User-initiated subscription operations."""

    def __init__(
        self,
        state_machine: SubscriptionStateMachine,
        store: LedgerStore,
        reconciliation: ReconciliationService,
        provider: Optional[BillingProvider] = None,
    ):
        self.state_machine = state_machine
        self.store = store
        self.reconciliation = reconciliation
        self.provider = provider

    async def cancel_subscription(
        self,
        user_id: str,
        subscription_id: str,
        immediate: bool = False,
        reason: Optional[str] = None,
    ) -> CancellationResult:
        """Cancel at the provider, then record the cancellation locally.

        A provider failure does not block the user: the local transition is
        still applied and the provider call is queued for the sweep.
        """
        if not user_id or not subscription_id:
            raise ValidationError("user_id and subscription_id are required")

        sub = await self._owned(user_id, subscription_id)
        request = RequestCancellation(immediate=immediate, reason=reason)
        if not self.state_machine.can_apply(sub, request):
            raise InvalidTransition(sub.id, "RequestCancellation", sub.status.value, cannot_cancel_message(sub))

        logger.info(
            f"[CANCEL] User {user_id} cancelling {subscription_id} "
            f"({'immediately' if immediate else 'at period end'})"
        )

        provider_error = await self._cancel_at_provider(sub, immediate)
        try:
            saved = await self.state_machine.apply_transition(sub.id, request)
        except InvalidTransition:
            # A provider webhook got to the row first.
            current = await self._owned(user_id, subscription_id)
            logger.info(
                f"[CANCEL] {subscription_id} moved to {current.status.value} while cancelling, "
                "returning current state"
            )
            return CancellationResult(
                subscription_id=current.id,
                status=current.status,
                immediate=immediate,
                access_ends_at=current.end_date,
                provider_confirmed=provider_error is None,
                message=cannot_cancel_message(current),
            )

        if provider_error is not None:
            action = ProviderAction.create(
                subscription_id=sub.id,
                external_subscription_id=sub.external_subscription_id,
                action=ProviderActionType.CANCEL_IMMEDIATELY if immediate else ProviderActionType.CANCEL_AT_PERIOD_END,
                last_error=provider_error,
                created_at=saved.updated_at,
            )
            await self.store.enqueue_provider_action(action)
            logger.warning(f"[CANCEL] Provider cancel for {sub.id} queued for retry: {provider_error}")

        return CancellationResult(
            subscription_id=saved.id,
            status=saved.status,
            immediate=immediate,
            access_ends_at=saved.end_date,
            provider_confirmed=provider_error is None,
            message=_cancellation_message(saved, immediate, provider_error is None),
        )

    async def reactivate_subscription(self, user_id: str, package_id: str) -> ReactivationIntent:
        """Tell the caller whether a new checkout for the package is allowed.

        Nothing is created here; the new row appears when the provider reports
        the completed checkout.
        """
        eligibility = await self.reconciliation.check_reactivation_eligibility(user_id, package_id)
        if eligibility.can_reactivate:
            if eligibility.trial_eligible:
                message = "You can restart this package and your free trial still applies."
            else:
                message = "You can restart this package. Billing starts right away."
        elif eligibility.blocking_subscription_id:
            message = "You already have an active subscription for this package. Manage it instead."
        else:
            message = "You have no previous subscription for this package to reactivate."

        logger.info(
            f"[CANCEL] Reactivation check for user {user_id} package {package_id}: "
            f"can_reactivate={eligibility.can_reactivate} trial_eligible={eligibility.trial_eligible}"
        )
        return ReactivationIntent(
            package_id=package_id,
            can_reactivate=eligibility.can_reactivate,
            trial_eligible=eligibility.trial_eligible,
            message=message,
            previous_subscription_id=eligibility.previous_subscription_id,
            blocking_subscription_id=eligibility.blocking_subscription_id,
        )

    async def get_reactivation_eligibility(self, user_id: str) -> List[EligibilityResult]:
        return await self.reconciliation.list_reactivation_eligibility(user_id)

    async def _owned(self, user_id: str, subscription_id: str) -> Subscription:
        sub = await self.store.get(subscription_id)
        # Someone else's subscription looks exactly like a missing one.
        if sub is None or sub.user_id != user_id:
            raise SubscriptionNotFound(subscription_id)
        return sub

    async def _cancel_at_provider(self, sub: Subscription, immediate: bool) -> Optional[str]:
        if self.provider is None or not sub.external_subscription_id:
            return None
        try:
            await self.provider.cancel_subscription(sub.external_subscription_id, cancel_immediately=immediate)
        except (TransientError, ProviderError) as e:
            return f"{type(e).__name__}: {e}"
        return None


# User-facing cancellation copy. The API returns these verbatim, 409 details included.
CANCEL_MESSAGES = {
    "cancelled_now": "Your subscription has been cancelled and access ends now.",
    "cancelled_at_period_end": "Your subscription has been cancelled. Access continues until {until}.",
    "unconfirmed": "Your request has been accepted and will be confirmed shortly.",
    "already_cancelled_active": "This subscription was already cancelled. Access continues until {until}.",
    "already_cancelled": "This subscription was already cancelled and access has ended.",
    "already_ended": "This subscription has already ended.",
    "not_started": "This subscription has not started yet. Cancel it immediately instead.",
    "not_cancellable": "This subscription cannot be cancelled right now.",
}


def _until(sub: Subscription) -> str:
    return sub.end_date.strftime("%B %d, %Y") if sub.end_date else "the end of the current period"


def cannot_cancel_message(sub: Subscription) -> str:
    """Why ``sub`` cannot take a cancellation in its current status."""
    if sub.status == SubscriptionStatus.CANCELLED_ACTIVE:
        return CANCEL_MESSAGES["already_cancelled_active"].format(until=_until(sub))
    if sub.status == SubscriptionStatus.CANCELLED:
        return CANCEL_MESSAGES["already_cancelled"]
    if sub.is_terminal:
        return CANCEL_MESSAGES["already_ended"]
    if sub.status == SubscriptionStatus.PENDING:
        return CANCEL_MESSAGES["not_started"]
    return CANCEL_MESSAGES["not_cancellable"]


def _cancellation_message(sub: Subscription, immediate: bool, confirmed: bool) -> str:
    if immediate or sub.end_date is None:
        message = CANCEL_MESSAGES["cancelled_now"]
    else:
        message = CANCEL_MESSAGES["cancelled_at_period_end"].format(until=_until(sub))
    if not confirmed:
        message += " " + CANCEL_MESSAGES["unconfirmed"]
    return message
