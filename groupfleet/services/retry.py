# groupfleet/services/retry.py
"""
Timeout and bounded-retry helpers for gateway calls.

Only ``TransientGatewayError`` (rate limit, timeout, 5xx) is retried. The delay
between attempts grows linearly with the attempt number, and a rate-limit
signal adds a larger backoff on top.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from groupfleet.core import config
from groupfleet.core.errors import GatewayTimeoutError, RateLimitError, TransientGatewayError

log = logging.getLogger("groupfleet.retry")

Sleep = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = config.SYNC_MAX_RETRIES
    retry_delay: float = config.SYNC_RETRY_DELAY
    rate_limit_backoff: float = config.SYNC_RATE_LIMIT_BACKOFF
    timeout: Optional[float] = config.GATEWAY_TIMEOUT

    def delay_for(self, attempt: int, error: Exception) -> float:
        delay = self.retry_delay * attempt
        if isinstance(error, RateLimitError):
            delay += self.rate_limit_backoff * attempt
        return delay


async def call_with_timeout(func: Callable[..., Awaitable[Any]], *args, timeout: Optional[float] = None, **kwargs):
    """Await ``func(*args, **kwargs)``; a timeout becomes a ``GatewayTimeoutError``."""
    if not timeout:
        return await func(*args, **kwargs)
    try:
        return await asyncio.wait_for(func(*args, **kwargs), timeout)
    except asyncio.TimeoutError:
        name = getattr(func, "__name__", "gateway call")
        raise GatewayTimeoutError(f"{name} timed out after {timeout:.0f}s")


async def call_with_retry(
    func: Callable[..., Awaitable[Any]],
    *args,
    policy: RetryPolicy,
    sleep: Sleep = asyncio.sleep,
    description: str = "",
    **kwargs,
):
    """
    Call ``func`` with up to ``policy.max_retries`` attempts.

    Permanent failures propagate on the first attempt. The last transient
    failure propagates once the attempts are exhausted.
    """
    attempts = max(1, policy.max_retries)
    label = description or getattr(func, "__name__", "gateway call")

    for attempt in range(1, attempts + 1):
        try:
            return await call_with_timeout(func, *args, timeout=policy.timeout, **kwargs)
        except TransientGatewayError as e:
            if attempt >= attempts:
                log.error(f"❌ {label} failed after {attempt} attempts: {e.message}")
                raise
            delay = policy.delay_for(attempt, e)
            log.warning(f"⚠️ {label} attempt {attempt}/{attempts} failed ({e.kind.value}), retrying in {delay:.1f}s")
            await sleep(delay)
