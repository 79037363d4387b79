"""
In-process token bucket rate limiter for the Gateway service.

Buckets refill greedily: tokens trickle back continuously in proportion to
elapsed time rather than in whole-window jumps. Each bucket serialises its own
refill+consume, so two callers racing for the last token cannot both win.
"""

import math
import threading
from dataclasses import dataclass
from typing import Dict, Any, Optional, Tuple

from shared.clock import system_clock
from shared.logging import get_logger

from .tiers import RateLimitTiers


class TokenBucket:
    """Single-key token bucket."""

    def __init__(self, capacity: int, refill_tokens: int, window_seconds: float, clock=system_clock):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.capacity = capacity
        self.refill_tokens = refill_tokens
        self.window_seconds = float(window_seconds)
        self._clock = clock
        self._tokens = float(capacity)
        self._last_refill = clock.monotonic()
        self._last_used = self._last_refill
        self._lock = threading.Lock()

    def _refill(self, now: float) -> None:
        # Caller holds self._lock
        elapsed = now - self._last_refill
        if elapsed > 0:
            grant = elapsed * self.refill_tokens / self.window_seconds
            self._tokens = min(float(self.capacity), self._tokens + grant)
            self._last_refill = now

    def try_consume(self, tokens: int = 1) -> bool:
        """Refill, then take ``tokens`` if they are all available."""
        with self._lock:
            now = self._clock.monotonic()
            self._refill(now)
            self._last_used = now
            if self._tokens >= tokens:
                self._tokens -= tokens
                return True
            return False

    def available(self) -> int:
        """Whole tokens currently available. Never consumes."""
        with self._lock:
            self._refill(self._clock.monotonic())
            return int(math.floor(self._tokens))

    def seconds_until_available(self, tokens: int = 1) -> float:
        """Time until ``tokens`` will be available, 0 if they already are."""
        with self._lock:
            self._refill(self._clock.monotonic())
            missing = tokens - self._tokens
            if missing <= 0:
                return 0.0
            if self.refill_tokens <= 0:
                return math.inf
            return missing * self.window_seconds / self.refill_tokens

    def idle_and_full(self, now: float, idle_seconds: float) -> bool:
        """True when the bucket has been untouched long enough to be full again."""
        with self._lock:
            if now - self._last_used < idle_seconds:
                return False
            self._refill(now)
            return self._tokens >= self.capacity


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of a single rate limit check."""
    allowed: bool
    limit: int
    remaining: int
    retry_after: int
    scope: str

    def headers(self) -> Dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
        return headers


class RateLimitRegistry:
    """Process-wide map of token buckets keyed by identity and scope."""

    def __init__(self, tiers: Optional[RateLimitTiers] = None, clock=system_clock,
                 idle_seconds: float = 600.0, sweep_interval_seconds: float = 60.0):
        self.tiers = tiers or RateLimitTiers()
        self.logger = get_logger("gateway.rate_limiter")
        self._clock = clock
        self._buckets: Dict[str, TokenBucket] = {}
        self._lock = threading.Lock()
        self.idle_seconds = idle_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self._last_sweep = clock.monotonic()

    def _get_or_create(self, key: str, capacity: int, window_seconds: float) -> TokenBucket:
        bucket = self._buckets.get(key)
        if bucket is not None:
            return bucket
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = TokenBucket(capacity, capacity, window_seconds, clock=self._clock)
                self._buckets[key] = bucket
            return bucket

    def resolve_bucket(self, key: str, role: Optional[str]) -> TokenBucket:
        """Role-scoped bucket: one global budget per caller and role.

        A caller whose role changes starts on a fresh bucket at the new tier.
        """
        return self._get_or_create(
            f"{key}:{self.tiers.normalise_role(role)}", self.tiers.role_limit(role), self.tiers.window_seconds
        )

    def resolve_endpoint_bucket(self, key: str, endpoint: str) -> TokenBucket:
        """Endpoint-scoped bucket, keyed separately from the role bucket.

        Paths of the same endpoint class share one bucket per caller.
        """
        scope = self.tiers.endpoint_class(endpoint) or endpoint
        return self._get_or_create(
            f"{key}:{scope}", self.tiers.endpoint_limit(endpoint), self.tiers.window_seconds
        )

    def resolve_custom_bucket(self, key: str, handler: str, capacity: int, window_seconds: float) -> TokenBucket:
        """Bucket for a route that declares its own capacity and window."""
        return self._get_or_create(f"{key}-{handler}", capacity, window_seconds)

    def allow(self, key: str, role: Optional[str]) -> RateLimitDecision:
        """Consume from the caller's role bucket."""
        bucket = self.resolve_bucket(key, role)
        return self._consume(bucket, key, f"role:{self.tiers.normalise_role(role)}")

    def allow_endpoint(self, key: str, endpoint: str) -> RateLimitDecision:
        """Consume from the endpoint bucket instead of the role bucket."""
        bucket = self.resolve_endpoint_bucket(key, endpoint)
        return self._consume(bucket, key, f"endpoint:{self.tiers.endpoint_class(endpoint)}")

    def allow_custom(self, key: str, handler: str, capacity: int, window_seconds: float) -> RateLimitDecision:
        bucket = self.resolve_custom_bucket(key, handler, capacity, window_seconds)
        return self._consume(bucket, key, f"handler:{handler}")

    def _consume(self, bucket: TokenBucket, key: str, scope: str) -> RateLimitDecision:
        self._maybe_sweep()
        allowed = bucket.try_consume(1)
        remaining = bucket.available()
        retry_after = 0 if allowed else int(math.ceil(bucket.seconds_until_available()))
        if not allowed:
            self.logger.warning(
                "Rate limit exceeded",
                client_id=key,
                scope=scope,
                limit=bucket.capacity
            )
        return RateLimitDecision(
            allowed=allowed,
            limit=bucket.capacity,
            remaining=remaining,
            retry_after=retry_after,
            scope=scope,
        )

    def remaining(self, key: str, role: Optional[str]) -> int:
        """Tokens left in the caller's role bucket, without consuming."""
        return self.resolve_bucket(key, role).available()

    def _maybe_sweep(self) -> None:
        now = self._clock.monotonic()
        if now - self._last_sweep < self.sweep_interval_seconds:
            return
        self.evict_idle()

    def evict_idle(self) -> int:
        """Drop buckets idle for ``idle_seconds`` that have refilled to capacity.

        A full idle bucket behaves exactly like a freshly created one, so
        evicting it cannot hand a caller extra tokens.
        """
        with self._lock:
            now = self._clock.monotonic()
            self._last_sweep = now
            stale = [
                key for key, bucket in self._buckets.items()
                if bucket.idle_and_full(now, self.idle_seconds)
            ]
            for key in stale:
                del self._buckets[key]
        if stale:
            self.logger.debug("Evicted idle rate limit buckets", count=len(stale))
        return len(stale)

    def clear_key(self, key: str) -> bool:
        """Reset a single bucket."""
        with self._lock:
            return self._buckets.pop(key, None) is not None

    def clear(self) -> None:
        """Reset every bucket."""
        with self._lock:
            self._buckets.clear()
        self.logger.info("Rate limit buckets cleared")

    def __len__(self) -> int:
        return len(self._buckets)

    def __contains__(self, key: str) -> bool:
        return key in self._buckets

    def stats(self) -> Dict[str, Any]:
        """Snapshot of registry state for diagnostics."""
        with self._lock:
            items: Tuple[Tuple[str, TokenBucket], ...] = tuple(self._buckets.items())
        return {
            "buckets": len(items),
            "idle_seconds": self.idle_seconds,
            "role_limits": dict(self.tiers.role_limits),
            "endpoint_limits": dict(self.tiers.endpoint_limits),
            "exhausted": sum(1 for _, bucket in items if bucket.available() == 0),
        }
