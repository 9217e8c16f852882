"""Bounded retries for calls that can fail transiently (store, provider)."""
import asyncio
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TypeVar, Callable, Awaitable, Optional, Tuple, Type

from fitspace.utils.logger import logger

T = TypeVar("T")


class RetryPolicy(ABC):
    max_attempts: int

    @abstractmethod
    def get_delay(self, attempt: int) -> float:
        pass

    @abstractmethod
    def should_retry(self, attempt: int, error: Exception) -> bool:
        pass


@dataclass
class ExponentialBackoff(RetryPolicy):
    """Exponential backoff with proportional jitter.

    ``max_attempts`` counts every call, the first one included, so
    ``max_attempts=4`` means one call plus three retries.
    """
    base_delay: float = 0.5
    max_delay: float = 30.0
    max_attempts: int = 4
    jitter: float = 0.1
    retryable_exceptions: Tuple[Type[Exception], ...] = (
        ConnectionError,
        TimeoutError,
        asyncio.TimeoutError,
        OSError,
    )

    @classmethod
    def retrying(
        cls,
        retries: int,
        on: Tuple[Type[Exception], ...],
        base_delay: float = 0.5,
        max_delay: float = 30.0,
    ) -> "ExponentialBackoff":
        """Policy for ``retries`` extra attempts after the first call, only on ``on``."""
        return cls(base_delay=base_delay, max_delay=max_delay, max_attempts=retries + 1, retryable_exceptions=on)

    def get_delay(self, attempt: int) -> float:
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        return delay + delay * self.jitter * random.random()

    def should_retry(self, attempt: int, error: Exception) -> bool:
        return attempt < self.max_attempts and isinstance(error, self.retryable_exceptions)


async def with_retry(
    func: Callable[..., Awaitable[T]],
    policy: RetryPolicy,
    *args,
    on_retry: Optional[Callable[[int, Exception], Awaitable[None]]] = None,
    operation_name: Optional[str] = None,
    **kwargs,
) -> T:
    """Await ``func`` until it succeeds or ``policy`` gives up; the last error propagates."""
    name = operation_name or getattr(func, "__name__", "operation")
    attempt = 0

    while True:
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            attempt += 1
            if not policy.should_retry(attempt, e):
                if attempt > 1:
                    logger.warning(f"[RETRY] {name} gave up after {attempt} attempts: {type(e).__name__}")
                raise

            if on_retry:
                await on_retry(attempt, e)

            delay = policy.get_delay(attempt)
            logger.warning(
                f"[RETRY] {name} failed (attempt {attempt}/{policy.max_attempts}): "
                f"{type(e).__name__}. Retrying in {delay:.2f}s..."
            )
            await asyncio.sleep(delay)
