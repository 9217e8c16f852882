"""Translate a normalised provider event into a state-machine request."""
from typing import Optional, Sequence

from ..domain.entities import BillingRecord, Subscription
from ..domain.transitions import (
    Activate,
    EnterGracePeriod,
    ExitGracePeriod,
    RecordDispute,
    RecordRefund,
    RefundLine,
    RequestCancellation,
    StartTrial,
    TransitionRequest,
)
from ..shared.exceptions import ValidationError
from .models import EventType, ExternalEvent


def activation_charge(records: Sequence[BillingRecord]) -> Optional[BillingRecord]:
    for record in records:
        if record.is_collected_charge:
            return record
    return None


def refunds_activation_charge(event: ExternalEvent, records: Sequence[BillingRecord]) -> bool:
    """Whether a refund targets the charge that activated the subscription.

    With a charge id the match is exact. Without one the refund is only
    attributed to activation when that is the only charge ever collected.
    """
    collected = [r for r in records if r.is_collected_charge]
    if not collected:
        return False
    charge_id = event.payload.charge_id
    if charge_id:
        return collected[0].external_reference == charge_id
    return len(collected) == 1


def to_transition(
    event: ExternalEvent,
    sub: Subscription,
    records: Sequence[BillingRecord],
) -> Optional[TransitionRequest]:
    """Return the request for ``event``, or None when it carries no state change."""
    payload = event.payload

    if event.type == EventType.SUBSCRIPTION_CREATED:
        return StartTrial() if payload.trial else None

    if event.type == EventType.CHECKOUT_COMPLETED:
        if payload.trial:
            return StartTrial()
        return Activate(
            amount=payload.amount or 0,
            currency=payload.currency,
            period_start=payload.period_start,
            period_end=payload.period_end,
            external_reference=payload.charge_id,
        )

    if event.type == EventType.SUBSCRIPTION_RENEWED:
        return ExitGracePeriod(
            renewed=True,
            amount=payload.amount or 0,
            currency=payload.currency,
            period_start=payload.period_start,
            period_end=payload.period_end,
            external_reference=payload.charge_id,
        )

    if event.type == EventType.PAYMENT_FAILED:
        return EnterGracePeriod(
            reason=payload.reason,
            amount=payload.amount or 0,
            currency=payload.currency,
            external_reference=payload.charge_id,
        )

    if event.type == EventType.SUBSCRIPTION_CANCELLED:
        immediate = True if payload.immediate is None else payload.immediate
        return RequestCancellation(immediate=immediate, reason=payload.reason)

    if event.type == EventType.CHECKOUT_EXPIRED:
        return RequestCancellation(immediate=True, reason=payload.reason or "checkout_expired")

    if event.type == EventType.CHARGE_REFUNDED:
        return _refund_transition(event, sub, records)

    if event.type == EventType.CHARGE_DISPUTED:
        return RecordDispute(
            amount=payload.amount or 0,
            currency=payload.currency,
            reason=payload.reason,
            external_reference=payload.charge_id,
        )

    if event.type == EventType.TRIAL_WILL_END:
        return None

    raise ValidationError(f"Unsupported event type {event.type}")


def _refund_transition(
    event: ExternalEvent,
    sub: Subscription,
    records: Sequence[BillingRecord],
) -> TransitionRequest:
    payload = event.payload
    is_activation = refunds_activation_charge(event, records)

    amount = payload.amount
    if amount is None:
        charge = activation_charge(records) if is_activation else None
        if charge is None:
            raise ValidationError(f"Refund event {event.event_id} carries no amount")
        amount = charge.amount

    refund = RefundLine(
        amount=amount,
        currency=payload.currency,
        external_reference=payload.charge_id,
        reason=payload.reason,
    )
    # terminal rows only get the ledger line
    if is_activation and sub.is_live:
        return RequestCancellation(immediate=True, reason=payload.reason or "refunded", refund=refund)
    return RecordRefund(refund=refund)
