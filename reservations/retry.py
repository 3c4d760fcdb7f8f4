"""
Retry executor with exponential backoff and proportional jitter
"""

import asyncio
import random
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, Dict, Optional, TypeVar

from tenacity import AsyncRetrying, RetryError, retry_if_exception, stop_after_attempt
from tenacity.wait import wait_base

from .error_classifier import classify_error
from .error_models import ClassifiedError, OperationFailedError
from .metrics import retry_attempts_total
from .utils.logging import get_safe_logger

logger = get_safe_logger("reservations.retry")

T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for retry behavior (delays in seconds)"""

    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    jitter_ratio: float = 0.3
    operation: str = "operation"

    def for_operation(self, operation: str) -> "RetryConfig":
        return replace(self, operation=operation)


# Booking submission is not idempotent on the upstream side without the
# partner order id, so it gets a single retry.
DEFAULT_RETRY_CONFIGS: Dict[str, RetryConfig] = {
    "read": RetryConfig(max_retries=3, initial_delay=1.0, max_delay=10.0),
    "submit": RetryConfig(max_retries=1, initial_delay=1.0, max_delay=10.0),
}


def compute_backoff(attempt: int, config: RetryConfig, rng: Optional[random.Random] = None) -> float:
    """
    Delay before retry number `attempt` (1-based).

    initial_delay * 2^(attempt-1) plus up to jitter_ratio of that value,
    capped at max_delay.
    """
    rng = rng or random
    base = config.initial_delay * (2 ** (attempt - 1))
    jitter = rng.uniform(0, config.jitter_ratio * base)
    return min(base + jitter, config.max_delay)


class wait_backoff_with_jitter(wait_base):
    """Tenacity wait strategy wrapping compute_backoff"""

    def __init__(self, config: RetryConfig, rng: Optional[random.Random] = None):
        self.config = config
        self.rng = rng

    def __call__(self, retry_state) -> float:
        return compute_backoff(retry_state.attempt_number, self.config, self.rng)


class RetryExecutor:
    """
    Runs an operation and retries it while its failures classify as retryable.

    Holds no per-call state, so one executor can serve concurrent calls.
    """

    def __init__(
        self,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
        classifier: Callable[[BaseException], ClassifiedError] = classify_error,
    ):
        self._sleep = sleep
        self._rng = rng
        self._classify = classifier

    async def execute(self, operation: Callable[[], Awaitable[T]], config: RetryConfig) -> T:
        """
        Attempt `operation` up to config.max_retries + 1 times.

        Raises OperationFailedError wrapping the last failure when the failure
        is not retryable or the retry budget is spent.
        """
        attempts = 0
        retrying = AsyncRetrying(
            sleep=self._sleep,
            stop=stop_after_attempt(config.max_retries + 1),
            wait=wait_backoff_with_jitter(config, self._rng),
            retry=retry_if_exception(lambda exc: self._classify(exc).retryable),
            before_sleep=self._before_sleep(config),
            reraise=False,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    result = await operation()
                    if attempts > 1:
                        logger.info(
                            "retry_succeeded",
                            operation=config.operation,
                            retries=attempts - 1,
                        )
                    return result
        except RetryError as e:
            last_error = e.last_attempt.exception()
            classified = self._classify(last_error)
            logger.error(
                "retry_exhausted",
                operation=config.operation,
                retries=attempts - 1,
                category=classified.category.value,
                error=classified.message,
            )
            raise OperationFailedError(config.operation, attempts - 1, classified) from last_error
        except Exception as e:
            classified = self._classify(e)
            logger.warning(
                "non_retryable_failure",
                operation=config.operation,
                retries=attempts - 1,
                category=classified.category.value,
                code=classified.code,
                error=classified.message,
            )
            raise OperationFailedError(config.operation, attempts - 1, classified) from e

    def _before_sleep(self, config: RetryConfig):
        def log_retry_attempt(retry_state):
            exc = retry_state.outcome.exception()
            classified = self._classify(exc)
            retry_attempts_total.labels(
                operation=config.operation, category=classified.category.value
            ).inc()
            logger.warning(
                "retry_attempt",
                operation=config.operation,
                attempt=retry_state.attempt_number,
                max_retries=config.max_retries,
                category=classified.category.value,
                next_sleep=getattr(retry_state.next_action, "sleep", None),
                error=classified.message,
            )

        return log_retry_attempt
