from .client import StripeBillingProvider, StripeCircuitBreaker, CircuitState, CircuitOpenError
from .webhooks import StripeWebhookTranslator

__all__ = [
    'StripeBillingProvider',
    'StripeCircuitBreaker',
    'CircuitState',
    'CircuitOpenError',
    'StripeWebhookTranslator',
]
