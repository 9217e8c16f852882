import asyncio
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional

import stripe

from fitspace.utils.logger import logger
from fitspace.utils.retry import ExponentialBackoff, with_retry
from ...config import BillingConfig
from ...shared.exceptions import ProviderError, TransientProviderError
from ..interfaces import BillingProvider, CircuitBreakerInterface

# Failures that say nothing about the request itself and may clear up on their own.
TRANSIENT_STRIPE_ERRORS = (
    stripe.APIConnectionError,
    stripe.RateLimitError,
    stripe.APIError,
    asyncio.TimeoutError,
)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(TransientProviderError):
    pass


class StripeCircuitBreaker(CircuitBreakerInterface):
    def __init__(
        self,
        circuit_name: str = "stripe_api",
        failure_threshold: int = 5,
        recovery_timeout: int = 60,
        expected_exception: tuple = TRANSIENT_STRIPE_ERRORS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.circuit_name = circuit_name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exception = expected_exception
        self.clock = clock
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_time: Optional[float] = None
        self._lock = asyncio.Lock()

    async def safe_call(self, func: Callable, *args, **kwargs) -> Any:
        async with self._lock:
            allowed = self._should_allow_request()
        if not allowed:
            logger.warning(f"[CIRCUIT BREAKER] Request blocked - circuit is {self.state.value}")
            raise CircuitOpenError(f"Circuit breaker is {self.state.value} - blocking request to Stripe API")

        try:
            result = await func(*args, **kwargs)
        except self.expected_exception as e:
            await self._record_failure(f"{type(e).__name__}: {e}")
            raise
        await self._record_success()
        return result

    async def get_status(self) -> Dict:
        return {
            "circuit_name": self.circuit_name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "failure_threshold": self.failure_threshold,
            "recovery_timeout": self.recovery_timeout,
        }

    def _should_allow_request(self) -> bool:
        if self.state == CircuitState.OPEN:
            if self.last_failure_time is not None and self.clock() - self.last_failure_time >= self.recovery_timeout:
                self.state = CircuitState.HALF_OPEN
                logger.info(f"[CIRCUIT BREAKER] {self.circuit_name} half-open, allowing a trial call")
                return True
            return False
        return True

    async def _record_success(self) -> None:
        async with self._lock:
            if self.state != CircuitState.CLOSED:
                logger.info(f"[CIRCUIT BREAKER] {self.circuit_name} closed again")
            self.state = CircuitState.CLOSED
            self.failure_count = 0
            self.last_failure_time = None

    async def _record_failure(self, error_message: str) -> None:
        async with self._lock:
            self.failure_count += 1
            self.last_failure_time = self.clock()
            if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.failure_threshold:
                self.state = CircuitState.OPEN
                logger.warning(
                    f"[CIRCUIT BREAKER] Circuit opened after {self.failure_count} failures: {error_message}"
                )
            else:
                logger.debug(f"[CIRCUIT BREAKER] Recorded failure #{self.failure_count} for {self.circuit_name}")


class StripeBillingProvider(BillingProvider):
    """Stripe calls behind a circuit breaker, a per-call timeout and bounded retries."""

    def __init__(self, config: BillingConfig, circuit_breaker: Optional[StripeCircuitBreaker] = None):
        if config.stripe_secret_key:
            stripe.api_key = config.stripe_secret_key
        self.timeout = config.provider_timeout_seconds
        self.circuit_breaker = circuit_breaker or StripeCircuitBreaker()
        self.retry_policy = ExponentialBackoff.retrying(
            config.provider_max_retries, on=(TransientProviderError,), max_delay=5.0
        )

    async def cancel_subscription(self, external_subscription_id: str, cancel_immediately: bool = True) -> None:
        mode = "immediately" if cancel_immediately else "at period end"
        await with_retry(
            self._cancel_once,
            self.retry_policy,
            external_subscription_id,
            cancel_immediately,
            operation_name=f"stripe cancel {external_subscription_id}",
        )
        logger.info(f"[STRIPE] Cancelled {external_subscription_id} {mode}")

    async def get_circuit_status(self) -> Dict:
        return await self.circuit_breaker.get_status()

    async def _cancel_once(self, external_subscription_id: str, cancel_immediately: bool) -> None:
        try:
            if cancel_immediately:
                await self._call(stripe.Subscription.cancel_async, external_subscription_id, prorate=True)
            else:
                await self._call(
                    stripe.Subscription.modify_async,
                    external_subscription_id,
                    cancel_at_period_end=True,
                )
        except TransientProviderError:
            raise
        except TRANSIENT_STRIPE_ERRORS as e:
            logger.warning(f"[STRIPE] Transient failure cancelling {external_subscription_id}: {type(e).__name__}")
            raise TransientProviderError(f"Stripe unavailable: {type(e).__name__}: {e}") from e
        except stripe.InvalidRequestError as e:
            if getattr(e, "code", None) == "resource_missing":
                logger.warning(f"[STRIPE] Subscription {external_subscription_id} no longer exists at Stripe")
                return
            raise ProviderError(f"Stripe rejected cancellation of {external_subscription_id}: {e}") from e
        except stripe.StripeError as e:
            raise ProviderError(f"Stripe error cancelling {external_subscription_id}: {e}") from e

    async def _call(self, func: Callable, *args, **kwargs) -> Any:
        return await self.circuit_breaker.safe_call(self._timed, func, *args, **kwargs)

    async def _timed(self, func: Callable, *args, **kwargs) -> Any:
        return await asyncio.wait_for(func(*args, **kwargs), timeout=self.timeout)
