from abc import ABC, abstractmethod
from typing import Any, Dict


class BillingProvider(ABC):
    """Outbound calls to the billing provider."""

    @abstractmethod
    async def cancel_subscription(self, external_subscription_id: str, cancel_immediately: bool = True) -> None:
        """Cancel now, or flag the subscription to end at period end.

        Raises ``TransientProviderError`` when the call may succeed if retried
        and ``ProviderError`` when the provider rejected it.
        """
        pass


class CircuitBreakerInterface(ABC):

    @abstractmethod
    async def safe_call(self, func, *args, **kwargs) -> Any:
        pass

    @abstractmethod
    async def get_status(self) -> Dict:
        pass
