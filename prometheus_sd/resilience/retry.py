"""
Retry with Exponential Backoff and Jitter

Redis may be briefly unreachable (deploys, failovers). Store operations are
retried with growing delays instead of crash-looping, but only up to a
ceiling: once the store has been unreachable for longer than max_elapsed the
operation fails with ConnectionTimeoutError.

Delays: 0.5s, 0.75s, 1.1s, ... (x1.5 per attempt, capped at 15 minutes),
each plus up to `jitter` random seconds.

Usage:
    connector = ResilientConnector(max_elapsed=600)

    await connector.call(store.upsert, entry)

    # Or as a decorator:
    @connector.wrap
    async def open_subscription():
        return await notifier.subscribe()

Every call starts with fresh backoff state, so a long-running process that
survives one outage gets the full budget again for the next one.
"""

import asyncio
import time
from functools import wraps
from typing import Any, Awaitable, Callable, Optional

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception_type,
    stop_after_delay,
    wait_exponential_jitter,
)

from prometheus_sd.exceptions import ConnectionTimeoutError, StoreError
from prometheus_sd.logging.logger import get_logger

logger = get_logger(__name__)


def _describe(func: Optional[Callable]) -> str:
    if func is None:
        return "operation"
    return getattr(func, "__qualname__", None) or repr(func)


class ResilientConnector:
    """Runs store operations under the shared exponential backoff policy"""

    def __init__(
        self,
        initial_interval: float = 0.5,
        multiplier: float = 1.5,
        max_interval: float = 15 * 60,
        jitter: float = 0.5,
        max_elapsed: float = 8 * 60 * 60,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.initial_interval = initial_interval
        self.multiplier = multiplier
        self.max_interval = max_interval
        self.jitter = jitter
        self.max_elapsed = max_elapsed
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings, **kwargs) -> "ResilientConnector":
        return cls(
            initial_interval=settings.BACKOFF_INITIAL_INTERVAL,
            multiplier=settings.BACKOFF_MULTIPLIER,
            max_interval=settings.BACKOFF_MAX_INTERVAL,
            jitter=settings.BACKOFF_JITTER,
            max_elapsed=settings.REDIS_TIMEOUT,
            **kwargs
        )

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            retry=retry_if_exception_type(StoreError),
            wait=wait_exponential_jitter(
                multiplier=self.initial_interval,
                max=self.max_interval,
                exp_base=self.multiplier,
                jitter=self.jitter,
            ),
            stop=stop_after_delay(self.max_elapsed),
            before_sleep=self._log_retry,
            sleep=self._sleep,
        )

    @staticmethod
    def _log_retry(retry_state: RetryCallState) -> None:
        logger.warning(
            "Store operation failed, retrying",
            operation=_describe(retry_state.fn),
            attempt=retry_state.attempt_number,
            error=str(retry_state.outcome.exception()),
            retry_in=round(retry_state.next_action.sleep, 2),
        )

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """
        Await func(*args, **kwargs), retrying on StoreError.

        Any other exception propagates unchanged on the first occurrence.

        Raises:
            ConnectionTimeoutError: still failing after max_elapsed seconds
        """
        retrying = self._retrying()
        started = time.monotonic()
        try:
            result = await retrying(func, *args, **kwargs)
        except RetryError as e:
            last_error = e.last_attempt.exception()
            attempts = e.last_attempt.attempt_number
            elapsed = time.monotonic() - started
            logger.error(
                "Giving up on store operation",
                operation=_describe(func),
                attempts=attempts,
                elapsed=round(elapsed, 1),
                error=str(last_error),
            )
            raise ConnectionTimeoutError(
                f"Store unreachable for {elapsed:.0f}s "
                f"(limit {self.max_elapsed:.0f}s): {last_error}",
                elapsed=elapsed,
                attempts=attempts,
            ) from last_error

        attempts = retrying.statistics.get("attempt_number", 1)
        if attempts > 1:
            logger.info(
                "Store operation succeeded after retries",
                operation=_describe(func),
                attempts=attempts,
            )
        return result

    def wrap(self, func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        """Decorator form of call()"""
        @wraps(func)
        async def wrapper(*args, **kwargs):
            return await self.call(func, *args, **kwargs)

        return wrapper
