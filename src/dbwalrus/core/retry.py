"""Bounded retry with exponential backoff for async store calls."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, TypeVar

from .exceptions import RetryExhausted, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class AttemptRecord:
    attempt: int  # 1-based
    duration: float  # seconds
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class RetryPolicy:
    """
    Run an async operation up to ``max_attempts`` times.

    After failed attempt ``i`` (0-based) the policy sleeps
    ``base_delay_ms * 2**i`` milliseconds, except after the last attempt.
    Every failure is retried the same way; ``should_retry`` is the hook for
    policies that want to classify errors.
    """

    max_attempts: int = 1
    base_delay_ms: int = 1000

    def __post_init__(self):
        if isinstance(self.max_attempts, bool) or not isinstance(self.max_attempts, int) or self.max_attempts < 1:
            raise ValidationError("max_attempts must be an integer >= 1")
        if isinstance(self.base_delay_ms, bool) or not isinstance(self.base_delay_ms, int) or self.base_delay_ms < 0:
            raise ValidationError("base_delay_ms must be an integer >= 0")

    def delay_for(self, attempt_index: int) -> float:
        """Seconds to wait after the failed attempt at ``attempt_index``."""
        return self.base_delay_ms * (2 ** attempt_index) / 1000.0

    def delays(self) -> List[float]:
        return [self.delay_for(i) for i in range(self.max_attempts - 1)]

    def should_retry(self, exc: BaseException) -> bool:
        return True

    async def _sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)

    async def run(
        self,
        op: Callable[[], Awaitable[T]],
        *,
        description: str = "operation",
        on_attempt: Optional[Callable[[AttemptRecord], None]] = None,
    ) -> T:
        last_error: Optional[BaseException] = None
        for i in range(self.max_attempts):
            started = time.monotonic()
            try:
                result = await op()
            except Exception as e:
                duration = time.monotonic() - started
                last_error = e
                logger.warning(
                    "%s attempt %d/%d failed after %.3fs: %s",
                    description, i + 1, self.max_attempts, duration, e,
                )
                if on_attempt is not None:
                    on_attempt(AttemptRecord(attempt=i + 1, duration=duration, error=e))
                if not self.should_retry(e):
                    raise
                if i < self.max_attempts - 1:
                    delay = self.delay_for(i)
                    logger.info("Retrying %s in %dms", description, int(delay * 1000))
                    await self._sleep(delay)
                continue

            duration = time.monotonic() - started
            logger.debug("%s attempt %d succeeded in %.3fs", description, i + 1, duration)
            if on_attempt is not None:
                on_attempt(AttemptRecord(attempt=i + 1, duration=duration))
            return result

        raise RetryExhausted(self.max_attempts, last_error) from last_error
