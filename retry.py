"""
retry.py — Bounded retry with backoff for upstream calls.

Only UpstreamServiceError(retryable=True) is retried. Anything else, and the
last retryable failure once attempts run out, propagates unchanged.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from errors import UpstreamServiceError

logger = logging.getLogger(__name__)

T = TypeVar('T')


async def with_retries(call: Callable[[], Awaitable[T]], *, max_retries: int,
                       base_delay: float, label: str) -> T:
    """Run call() up to max_retries + 1 times, doubling the delay between attempts."""
    attempt = 0
    while True:
        try:
            return await call()
        except UpstreamServiceError as exc:
            if not exc.retryable or attempt >= max_retries:
                if attempt:
                    logger.error('%s: giving up after %d attempt(s) — %s', label, attempt + 1, exc)
                raise
            delay = base_delay * (2 ** attempt)
            attempt += 1
            logger.warning('%s: retry %d/%d in %.1fs — %s', label, attempt, max_retries, delay, exc)
            await asyncio.sleep(delay)
