from typing import Optional


class BillingError(Exception):
    pass


class ConfigurationError(BillingError):
    pass


class ValidationError(BillingError):
    pass


class SubscriptionNotFound(ValidationError):
    def __init__(self, subscription_id: str):
        self.subscription_id = subscription_id
        super().__init__(f"Subscription {subscription_id} not found")


class InvalidTransition(BillingError):
    def __init__(self, subscription_id: Optional[str], transition: str, status: Optional[str], message: str = None):
        self.subscription_id = subscription_id
        self.transition = transition
        self.status = status
        if message is None:
            message = f"Cannot apply {transition} to subscription {subscription_id} in status {status}"
        super().__init__(message)


class TrialAlreadyUsed(InvalidTransition):
    def __init__(self, subscription_id: Optional[str], user_id: str, package_id: str):
        self.user_id = user_id
        self.package_id = package_id
        super().__init__(
            subscription_id,
            "StartTrial",
            None,
            f"Trial already used for user {user_id} on package {package_id}",
        )


class SubscriptionConflict(InvalidTransition):
    def __init__(self, user_id: str, package_id: str, existing_id: str):
        self.user_id = user_id
        self.package_id = package_id
        self.existing_id = existing_id
        super().__init__(
            existing_id,
            "open",
            None,
            f"User {user_id} already has a live subscription {existing_id} for package {package_id}",
        )


class DuplicateEvent(BillingError):
    """Raised when an event was already applied. Callers treat it as a no-op."""

    def __init__(self, event_id: str, subscription_id: str):
        self.event_id = event_id
        self.subscription_id = subscription_id
        super().__init__(f"Event {event_id} already processed for subscription {subscription_id}")


class StaleEvent(BillingError):
    """Raised when an event is older than the newest one applied to the subscription."""

    def __init__(self, event_id: str, subscription_id: str, occurred_at, last_event_at):
        self.event_id = event_id
        self.subscription_id = subscription_id
        self.occurred_at = occurred_at
        self.last_event_at = last_event_at
        super().__init__(
            f"Event {event_id} from {occurred_at.isoformat()} is older than the last event "
            f"applied to subscription {subscription_id} ({last_event_at.isoformat()})"
        )


class TransientError(BillingError):
    pass


class TransientStoreError(TransientError):
    pass


class TransientProviderError(TransientError):
    pass


class ConcurrencyConflict(TransientStoreError):
    def __init__(self, subscription_id: str, expected_version: int):
        self.subscription_id = subscription_id
        self.expected_version = expected_version
        super().__init__(
            f"Subscription {subscription_id} changed concurrently (expected version {expected_version})"
        )


class ProviderError(BillingError):
    pass


class MoneyInvariantViolation(BillingError):
    pass
