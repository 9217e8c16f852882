from .interfaces import BillingProvider, CircuitBreakerInterface

__all__ = ['BillingProvider', 'CircuitBreakerInterface']
