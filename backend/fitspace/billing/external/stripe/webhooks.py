"""Stripe webhook verification and translation into ExternalEvent."""
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

import stripe

from fitspace.utils.logger import logger
from ...events.models import EventType, ExternalEvent
from ...shared.exceptions import ConfigurationError, ValidationError

StripePayload = Dict[str, Any]


def _ts(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _upper(value: Optional[str]) -> Optional[str]:
    return value.upper() if value else None


def _id(value: Any) -> Optional[str]:
    """Stripe references arrive either as an id string or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value


def _metadata(obj: StripePayload) -> Dict[str, str]:
    return obj.get("metadata") or {}


def _reactivates(metadata: Dict[str, str]) -> Optional[str]:
    if metadata.get("isReactivation") == "true":
        return metadata.get("previousSubscriptionId")
    return None


def _subscription_period(obj: StripePayload):
    start, end = obj.get("current_period_start"), obj.get("current_period_end")
    if start is None:
        items = (obj.get("items") or {}).get("data") or []
        if items:
            start, end = items[0].get("current_period_start"), items[0].get("current_period_end")
    return _ts(start), _ts(end)


def _invoice_subscription(invoice: StripePayload) -> Optional[str]:
    subscription = _id(invoice.get("subscription"))
    if subscription:
        return subscription
    parent = invoice.get("parent") or {}
    return _id((parent.get("subscription_details") or {}).get("subscription"))


def _invoice_period(invoice: StripePayload):
    lines = (invoice.get("lines") or {}).get("data") or []
    period = lines[0].get("period") if lines else None
    if period:
        return _ts(period.get("start")), _ts(period.get("end"))
    return _ts(invoice.get("period_start")), _ts(invoice.get("period_end"))


class StripeWebhookTranslator:
    RENEWAL_BILLING_REASONS = ("subscription_cycle",)

    def __init__(self, webhook_secret: Optional[str], tolerance: int = 300):
        self.webhook_secret = webhook_secret
        self.tolerance = tolerance

    def construct_event(self, payload: bytes, sig_header: Optional[str]) -> StripePayload:
        if not self.webhook_secret:
            raise ConfigurationError("STRIPE_WEBHOOK_SECRET is not configured")
        try:
            event = stripe.Webhook.construct_event(
                payload, sig_header, self.webhook_secret, tolerance=self.tolerance
            )
        except stripe.SignatureVerificationError as e:
            logger.warning("[WEBHOOK] Invalid Stripe signature")
            raise ValidationError("Invalid webhook signature") from e
        except ValueError as e:
            raise ValidationError("Invalid webhook payload") from e
        return event.to_dict() if hasattr(event, "to_dict") else dict(event)

    def translate(self, event: Union[StripePayload, Any]) -> Optional[ExternalEvent]:
        """Return the normalised event, or None for Stripe events this engine does not act on."""
        if not isinstance(event, dict):
            event = event.to_dict()
        event_type = event.get("type")
        obj = (event.get("data") or {}).get("object") or {}
        handler = getattr(self, "_" + str(event_type).replace(".", "_"), None)
        if handler is None:
            logger.debug(f"[WEBHOOK] Unhandled event type: {event_type}")
            return None

        fields = handler(obj, event)
        if fields is None:
            return None
        external_id, event_kind, payload = fields
        if not external_id:
            logger.warning(f"[WEBHOOK] {event_type} {event.get('id')} has no subscription reference")
            return None

        return ExternalEvent(
            event_id=event["id"],
            subscription_external_id=external_id,
            type=event_kind,
            occurred_at=_ts(event.get("created")) or datetime.now(timezone.utc),
            payload={k: v for k, v in payload.items() if v is not None},
        )

    def _checkout_session_completed(self, obj, event):
        metadata = _metadata(obj)
        return (
            _id(obj.get("subscription")) or obj.get("id"),
            EventType.CHECKOUT_COMPLETED,
            {
                "userId": metadata.get("userId") or obj.get("client_reference_id"),
                "packageId": metadata.get("packageId"),
                "trial": metadata.get("trial") == "true",
                "amount": obj.get("amount_total"),
                "currency": _upper(obj.get("currency")),
                "chargeId": _id(obj.get("payment_intent")) or _id(obj.get("invoice")),
                "previousSubscriptionId": _reactivates(metadata),
            },
        )

    def _checkout_session_expired(self, obj, event):
        return (
            _id(obj.get("subscription")) or obj.get("id"),
            EventType.CHECKOUT_EXPIRED,
            {"reason": "checkout_expired"},
        )

    def _customer_subscription_created(self, obj, event):
        metadata = _metadata(obj)
        start, end = _subscription_period(obj)
        return (
            obj.get("id"),
            EventType.SUBSCRIPTION_CREATED,
            {
                "userId": metadata.get("userId"),
                "packageId": metadata.get("packageId"),
                "trial": obj.get("status") == "trialing",
                "periodStart": start,
                "periodEnd": end,
                "currency": _upper(obj.get("currency")),
                "previousSubscriptionId": _reactivates(metadata),
            },
        )

    def _customer_subscription_updated(self, obj, event):
        previous = (event.get("data") or {}).get("previous_attributes") or {}
        if "cancel_at_period_end" not in previous or not obj.get("cancel_at_period_end"):
            return None
        details = obj.get("cancellation_details") or {}
        return (
            obj.get("id"),
            EventType.SUBSCRIPTION_CANCELLED,
            {"immediate": False, "reason": details.get("reason") or details.get("feedback")},
        )

    def _customer_subscription_deleted(self, obj, event):
        details = obj.get("cancellation_details") or {}
        return (
            obj.get("id"),
            EventType.SUBSCRIPTION_CANCELLED,
            {"immediate": True, "reason": details.get("reason")},
        )

    def _customer_subscription_trial_will_end(self, obj, event):
        return obj.get("id"), EventType.TRIAL_WILL_END, {}

    def _invoice_payment_succeeded(self, obj, event):
        if obj.get("billing_reason") not in self.RENEWAL_BILLING_REASONS:
            return None
        start, end = _invoice_period(obj)
        return (
            _invoice_subscription(obj),
            EventType.SUBSCRIPTION_RENEWED,
            {
                "amount": obj.get("amount_paid"),
                "currency": _upper(obj.get("currency")),
                "periodStart": start,
                "periodEnd": end,
                "chargeId": _id(obj.get("payment_intent")) or obj.get("id"),
            },
        )

    _invoice_paid = _invoice_payment_succeeded

    def _invoice_payment_failed(self, obj, event):
        error = obj.get("last_finalization_error") or {}
        return (
            _invoice_subscription(obj),
            EventType.PAYMENT_FAILED,
            {
                "amount": obj.get("amount_due"),
                "currency": _upper(obj.get("currency")),
                "reason": error.get("message") or f"Payment attempt {obj.get('attempt_count', 1)} failed",
                "chargeId": _id(obj.get("payment_intent")) or obj.get("id"),
            },
        )

    def _charge_refunded(self, obj, event):
        refunds = (obj.get("refunds") or {}).get("data") or []
        amount = refunds[0].get("amount") if refunds else obj.get("amount_refunded")
        return (
            _metadata(obj).get("subscriptionId"),
            EventType.CHARGE_REFUNDED,
            {
                "amount": amount,
                "currency": _upper(obj.get("currency")),
                "chargeId": _id(obj.get("payment_intent")) or obj.get("id"),
                "reason": (refunds[0].get("reason") if refunds else None) or "refunded",
            },
        )

    def _charge_dispute_created(self, obj, event):
        charge = obj.get("charge")
        charge_metadata = _metadata(charge) if isinstance(charge, dict) else {}
        return (
            _metadata(obj).get("subscriptionId") or charge_metadata.get("subscriptionId"),
            EventType.CHARGE_DISPUTED,
            {
                "amount": obj.get("amount"),
                "currency": _upper(obj.get("currency")),
                "chargeId": _id(obj.get("payment_intent")) or _id(charge),
                "reason": obj.get("reason") or "disputed",
                "disputeId": obj.get("id"),
            },
        )
