"""
Bounded exponential-backoff retry for AI completion calls.

Only exceptions listed in ``retry_on`` are retried (rate limiting by
default); everything else escalates on the first failure.

Usage:
    policy = RetryPolicy(max_retries=2, base_delay=2.0)
    text = await policy.execute(provider.complete, api_key, model, prompt, False)
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple, Type

from amzpilot.errors import RateLimitedError

logger = logging.getLogger("retry")

DEFAULT_MAX_RETRIES = 2
DEFAULT_BASE_DELAY = 2.0
DEFAULT_MAX_DELAY = 30.0
DEFAULT_EXPONENTIAL_BASE = 2.0


@dataclass
class RetryPolicy:
    """Retry *retry_on* failures up to *max_retries* times, doubling the wait.

    delay(attempt) = min(base_delay * exponential_base ** attempt, max_delay)
    """

    max_retries: int = DEFAULT_MAX_RETRIES
    base_delay: float = DEFAULT_BASE_DELAY
    max_delay: float = DEFAULT_MAX_DELAY
    exponential_base: float = DEFAULT_EXPONENTIAL_BASE
    jitter: bool = False
    retry_on: Tuple[Type[BaseException], ...] = (RateLimitedError,)
    name: str = "ai"

    async def execute(self, func: Callable, *args: Any, **kwargs: Any) -> Any:
        """Await ``func(*args, **kwargs)`` with retry.

        Raises:
            Exception: The first non-retryable error, or the last retryable
                one once retries are exhausted.
        """
        last_exception: Optional[BaseException] = None

        for attempt in range(self.max_retries + 1):
            try:
                result = await func(*args, **kwargs)
                if attempt > 0:
                    logger.info(
                        "Succeeded on attempt %d/%d for %s",
                        attempt + 1, self.max_retries + 1, self.name,
                    )
                return result
            except self.retry_on as exc:
                last_exception = exc
                if attempt >= self.max_retries:
                    logger.warning(
                        "Giving up on %s after %d attempts: %s",
                        self.name, attempt + 1, exc,
                    )
                    raise
                delay = self._calculate_delay(attempt)
                logger.info(
                    "Retry %d/%d for %s in %.1fs: %s",
                    attempt + 1, self.max_retries, self.name, delay, exc,
                )
                await asyncio.sleep(delay)

        if last_exception is not None:
            raise last_exception

    def _calculate_delay(self, attempt: int) -> float:
        delay = min(self.base_delay * (self.exponential_base ** attempt), self.max_delay)
        if self.jitter:
            delay *= 0.5 + random.random()
        return round(delay, 3)
