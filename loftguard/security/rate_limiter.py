"""Fixed-window rate limiter.

Algorithm: one counter per (endpoint, identifier) that resets at fixed window
boundaries. A client can therefore land up to ``2 * max_requests`` requests in
a short burst straddling a boundary (the end of one window plus the start of
the next). That is an accepted tradeoff for a single atomic store operation
per request; the boundary behaviour is pinned down in the tests.

Store failures fail open: the request is allowed, the error is logged and
returned on the result, and nothing is raised past this class.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Callable, Optional

import structlog

from loftguard.shared.log_colors import LogColors, short_id
from .config import RateLimitPolicy
from .stores import CounterStore, StoreUnavailable, call_store

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    # Unix seconds at which the current window closes
    reset_time: float
    total_hits: int
    limit: int
    error: Optional[StoreUnavailable] = None

    @property
    def failed_open(self) -> bool:
        return self.error is not None

    def retry_after(self, now: float) -> int:
        """Whole seconds until the window resets, at least 1."""
        return max(1, math.ceil(self.reset_time - now))


class RateLimiter:
    """Turns a policy and an identifier into an allow/deny decision."""

    def __init__(
        self,
        store: CounterStore,
        *,
        timeout_sec: float = 0.1,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.timeout_sec = timeout_sec
        self.clock = clock

    async def check_rate_limit(
        self,
        identifier: str,
        policy: RateLimitPolicy,
        endpoint: str = "default",
    ) -> RateLimitResult:
        now = self.clock()
        try:
            record = await call_store(
                self.store.increment(endpoint, identifier, policy.window_ms, policy.max_requests, now),
                timeout=self.timeout_sec,
                operation="counter.increment",
            )
        except StoreUnavailable as e:
            logger.warning(
                f"{LogColors.STORE_LABEL} rate_limit_fail_open",
                endpoint=endpoint,
                identifier=short_id(identifier),
                error=str(e),
            )
            return RateLimitResult(
                allowed=True,
                remaining=max(0, policy.max_requests - 1),
                reset_time=now + policy.window_sec,
                total_hits=0,
                limit=policy.max_requests,
                error=e,
            )

        allowed = record.hits <= policy.max_requests
        result = RateLimitResult(
            allowed=allowed,
            remaining=max(0, policy.max_requests - record.hits),
            reset_time=record.reset_time,
            total_hits=record.hits,
            limit=policy.max_requests,
        )

        if not allowed:
            logger.warning(
                f"{LogColors.CLIENT_LABEL} rate_limit_exceeded",
                endpoint=endpoint,
                identifier=short_id(identifier),
                hits=record.hits,
                limit=policy.max_requests,
                retry_after=result.retry_after(now),
            )

        return result

    async def refund(self, identifier: str, policy: RateLimitPolicy, endpoint: str = "default") -> bool:
        """Give back one hit in the current window (skip_successful / skip_failed).

        Returns False when the store could not be reached.
        """
        try:
            await call_store(
                self.store.decrement(endpoint, identifier, self.clock()),
                timeout=self.timeout_sec,
                operation="counter.decrement",
            )
            return True
        except StoreUnavailable as e:
            logger.warning(
                f"{LogColors.STORE_LABEL} rate_limit_refund_failed",
                endpoint=endpoint,
                identifier=short_id(identifier),
                error=str(e),
            )
            return False


__all__ = ["RateLimitResult", "RateLimiter"]
