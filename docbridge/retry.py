"""Retry with exponential backoff for provider calls."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, FrozenSet, Optional, TypeVar

import httpx

from .errors import (
    ProviderConnectionError,
    ProviderQuotaExceeded,
    ProviderUnauthorized,
    ProviderUnsupportedLanguagePair,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_STATUSES: FrozenSet[int] = frozenset({408, 429, 500, 502, 503, 504})

Sleeper = Callable[[float], Awaitable[None]]
RetryCallback = Callable[[int, BaseException, float], None]


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget and backoff curve for one logical call."""

    max_attempts: int = 3
    initial_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 10.0
    retryable_statuses: FrozenSet[int] = RETRYABLE_STATUSES

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the given (1-based) failed attempt."""

        return min(self.initial_delay * self.multiplier ** (attempt - 1), self.max_delay)

    def is_retryable(self, exc: BaseException) -> bool:
        if isinstance(
            exc,
            (ProviderUnauthorized, ProviderQuotaExceeded, ProviderUnsupportedLanguagePair),
        ):
            return False
        if isinstance(exc, (ProviderConnectionError, httpx.TransportError)):
            return True
        status = getattr(exc, "status", None)
        if status is None:
            response = getattr(exc, "response", None)
            status = getattr(response, "status_code", None)
        return status in self.retryable_statuses


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    policy: Optional[RetryPolicy] = None,
    *,
    sleep: Sleeper = asyncio.sleep,
    on_retry: Optional[RetryCallback] = None,
    description: str = "provider call",
) -> T:
    """Await ``fn`` until it succeeds, a non-retryable error occurs, or attempts run out."""

    policy = policy or RetryPolicy()
    attempts = max(1, policy.max_attempts)
    attempt = 1
    while True:
        try:
            return await fn()
        except Exception as exc:
            if attempt >= attempts or not policy.is_retryable(exc):
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                "%s failed (attempt %d of %d: %s). Retrying in %.1fs...",
                description,
                attempt,
                attempts,
                exc,
                delay,
            )
            if on_retry is not None:
                on_retry(attempt, exc, delay)
            await sleep(delay)
            attempt += 1
