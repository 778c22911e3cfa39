"""Fixed-window rate limiting for the submit endpoint.

Buckets live in this process only: they are created on first use, never
persisted, and reset with the process. Swapping in a shared store means
reimplementing `hit` behind the same signature.
"""

import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional


@dataclass
class RateBucket:
    count: int
    reset_at: float


@dataclass
class RateLimitResult:
    limited: bool
    retry_after_seconds: int = 0
    remaining: int = 0


class RateLimiter:
    """Per-key fixed-window counter; a request of cost N is admitted whole or not at all."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self._buckets: Dict[str, RateBucket] = {}

    def hit(self, key: str, max_requests: int, window_seconds: int, cost: int = 1) -> RateLimitResult:
        """
        Charge `cost` against `key`'s current window.

        Args:
            key: Bucket key (see rate_limit_key)
            max_requests: Capacity per window
            window_seconds: Window length
            cost: Units charged by this request

        Returns:
            RateLimitResult; nothing is charged when limited
        """
        now = self.clock()
        bucket = self._buckets.get(key)

        if bucket is None or now >= bucket.reset_at:
            if cost > max_requests:
                if bucket is not None:
                    retry_after = max(math.ceil(bucket.reset_at - now), 1)
                else:
                    retry_after = window_seconds
                return RateLimitResult(limited=True, retry_after_seconds=retry_after)

            self._buckets[key] = RateBucket(count=cost, reset_at=now + window_seconds)
            return RateLimitResult(limited=False, remaining=max_requests - cost)

        if bucket.count + cost > max_requests:
            return RateLimitResult(
                limited=True,
                retry_after_seconds=max(math.ceil(bucket.reset_at - now), 1),
                remaining=max(max_requests - bucket.count, 0),
            )

        bucket.count += cost
        return RateLimitResult(limited=False, remaining=max_requests - bucket.count)

    def reset(self, key: Optional[str] = None) -> None:
        if key is None:
            self._buckets.clear()
        else:
            self._buckets.pop(key, None)


def rate_limit_key(user_id: Optional[str], client_ip: Optional[str]) -> str:
    """Authenticated user, else client IP, else the shared anonymous bucket."""
    if user_id:
        return f"user:{user_id}"
    if client_ip:
        return f"ip:{client_ip}"
    return "anon"
