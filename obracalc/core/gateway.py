"""Rate-limited gateway for completion, embedding and web-search calls.

Throttling responses are retried with exponential backoff (base delay doubling
per attempt, bounded retry count). Anything else propagates immediately as an
``ExternalServiceError`` so callers can fall back or log.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

import openai
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from obracalc.config import get_config
from obracalc.core.errors import ExternalServiceError, ObracalcError, RateLimitError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_THROTTLE_MARKERS = ("429", "resource_exhausted", "rate limit", "quota")


def is_throttling(exc: BaseException) -> bool:
    """Detect HTTP 429 or an equivalent throttling signal on any client error."""
    if isinstance(exc, (RateLimitError, openai.RateLimitError)):
        return True
    for attr in ("status_code", "status", "code"):
        if getattr(exc, attr, None) == 429:
            return True
    message = str(exc).lower()
    return any(marker in message for marker in _THROTTLE_MARKERS)


def classify_error(exc: BaseException, operation: str) -> ObracalcError:
    if isinstance(exc, ObracalcError) and not isinstance(exc, ExternalServiceError):
        return ExternalServiceError(f"{operation} failed: {exc}")
    if isinstance(exc, ExternalServiceError):
        return exc
    if is_throttling(exc):
        return RateLimitError(f"{operation} throttled: {exc}")
    return ExternalServiceError(f"{operation} failed: {exc}")


class RateLimitedGateway:
    """Wraps external calls with retry-with-backoff on throttling.

    Example:
        >>> gateway = RateLimitedGateway(base_delay=2.0, max_retries=3)
        >>> vector = await gateway.call("embed", lambda: embedder.embed("pintura"))
    """

    def __init__(
        self,
        base_delay: float | None = None,
        max_retries: int | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize gateway.

        Args:
            base_delay: First backoff delay in seconds (doubles each retry)
            max_retries: Retries after the first attempt before giving up
            sleep: Awaitable sleep, injectable for tests
        """
        if base_delay is None or max_retries is None:
            gateway_config = get_config().gateway
            base_delay = gateway_config.base_delay_seconds if base_delay is None else base_delay
            max_retries = gateway_config.max_retries if max_retries is None else max_retries

        self.base_delay = base_delay
        self.max_retries = max_retries
        self._sleep = sleep
        self.stats = {"calls": 0, "attempts": 0, "throttled": 0, "total_delay": 0.0}

    async def _record_sleep(self, seconds: float) -> None:
        self.stats["total_delay"] += seconds
        await self._sleep(seconds)

    def _log_retry(self, operation: str) -> Callable[[RetryCallState], None]:
        def before_sleep(retry_state: RetryCallState) -> None:
            delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            logger.warning(
                f"{operation} throttled (attempt {retry_state.attempt_number}/"
                f"{self.max_retries + 1}). Retrying in {delay:.1f}s"
            )

        return before_sleep

    async def call(self, operation: str, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn`` through the retry policy.

        Raises:
            RateLimitError: If throttling persists after ``max_retries`` retries
            ExternalServiceError: On any non-throttling failure (not retried)
        """
        self.stats["calls"] += 1

        retrying = AsyncRetrying(
            retry=retry_if_exception_type(RateLimitError),
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=self.base_delay, exp_base=2),
            sleep=self._record_sleep,
            before_sleep=self._log_retry(operation),
            reraise=True,
        )

        result: T
        async for attempt in retrying:
            with attempt:
                self.stats["attempts"] += 1
                try:
                    result = await fn()
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    error = classify_error(exc, operation)
                    if isinstance(error, RateLimitError):
                        self.stats["throttled"] += 1
                    if error is exc:
                        raise
                    raise error from exc
        return result
