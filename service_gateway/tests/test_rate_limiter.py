"""
Unit tests for Gateway Rate Limiter.
"""

import threading

import pytest

from shared.clock import ManualClock
from service_gateway.app.ratelimit import RateLimitRegistry, RateLimitTiers, TokenBucket


class TestTokenBucket:
    """Test cases for TokenBucket."""

    @pytest.fixture
    def clock(self):
        """Manually advanced clock."""
        return ManualClock()

    def test_consumes_up_to_capacity(self, clock):
        """Test that a fresh bucket admits exactly capacity calls."""
        bucket = TokenBucket(5, 5, 60, clock=clock)

        results = [bucket.try_consume() for _ in range(6)]

        assert results == [True] * 5 + [False]

    def test_refill_is_proportional_to_elapsed_time(self, clock):
        """Test greedy refill: a sixth of the window returns a sixth of the tokens."""
        bucket = TokenBucket(60, 60, 60, clock=clock)
        for _ in range(60):
            assert bucket.try_consume()

        clock.advance(10)

        assert bucket.available() == 10

    def test_refill_never_exceeds_capacity(self, clock):
        """Test that long idle periods do not bank extra tokens."""
        bucket = TokenBucket(3, 3, 60, clock=clock)
        bucket.try_consume()

        clock.advance(3600)

        assert bucket.available() == 3

    def test_available_does_not_consume(self, clock):
        """Test that inspecting a bucket leaves its tokens alone."""
        bucket = TokenBucket(2, 2, 60, clock=clock)

        for _ in range(10):
            bucket.available()

        assert bucket.try_consume()
        assert bucket.try_consume()
        assert not bucket.try_consume()

    def test_seconds_until_available(self, clock):
        """Test wait time for the next token on an empty bucket."""
        bucket = TokenBucket(10, 10, 60, clock=clock)
        for _ in range(10):
            bucket.try_consume()

        assert bucket.seconds_until_available() == pytest.approx(6.0)

    def test_rejects_invalid_capacity(self, clock):
        """Test that a bucket needs a positive capacity and window."""
        with pytest.raises(ValueError):
            TokenBucket(0, 0, 60, clock=clock)
        with pytest.raises(ValueError):
            TokenBucket(1, 1, 0, clock=clock)


class TestRateLimitRegistry:
    """Test cases for RateLimitRegistry."""

    @pytest.fixture
    def clock(self):
        """Manually advanced clock."""
        return ManualClock()

    @pytest.fixture
    def registry(self, clock):
        """Registry with default tiers."""
        return RateLimitRegistry(RateLimitTiers(), clock=clock, idle_seconds=600, sweep_interval_seconds=60)

    def test_role_tier_limits(self, registry):
        """Test that each role gets its configured budget."""
        for role, limit in (("ANONYMOUS", 10), ("USER", 60), ("SHOP_ADMIN", 100), ("ADMIN", 500)):
            key = f"caller-{role}"
            decisions = [registry.allow(key, role) for _ in range(limit)]
            assert all(d.allowed for d in decisions)
            denied = registry.allow(key, role)
            assert not denied.allowed
            assert denied.limit == limit

    def test_unknown_role_uses_anonymous_tier(self, registry):
        """Test that an unrecognised role falls back to the anonymous budget."""
        decision = registry.allow("caller", "SUPERUSER")

        assert decision.limit == 10
        assert decision.scope == "role:ANONYMOUS"

    def test_denied_decision_headers(self, registry):
        """Test headers sent back on a rejected call."""
        for _ in range(10):
            registry.allow("anonymous:1.2.3.4", None)

        decision = registry.allow("anonymous:1.2.3.4", None)

        assert not decision.allowed
        assert decision.remaining == 0
        assert decision.retry_after == 6
        headers = decision.headers()
        assert headers["X-RateLimit-Limit"] == "10"
        assert headers["X-RateLimit-Remaining"] == "0"
        assert headers["Retry-After"] == "6"

    def test_allowed_decision_has_no_retry_after(self, registry):
        """Test that admitted calls report remaining budget only."""
        decision = registry.allow("user-1", "USER")

        assert decision.allowed
        assert decision.remaining == 59
        assert "Retry-After" not in decision.headers()

    def test_role_change_gets_new_bucket(self, registry):
        """Test that a promoted caller is rated at the new tier, not the spent one."""
        for _ in range(60):
            assert registry.allow("5", "USER").allowed
        assert not registry.allow("5", "USER").allowed

        promoted = registry.allow("5", "ADMIN")

        assert promoted.allowed
        assert promoted.limit == 500
        assert promoted.remaining == 499
        assert "5:USER" in registry
        assert "5:ADMIN" in registry

    def test_endpoint_bucket_is_separate_from_role_bucket(self, registry):
        """Test that endpoint tiers are counted under their own key."""
        for _ in range(5):
            assert registry.allow_endpoint("user-1", "/api/uploads").allowed

        assert not registry.allow_endpoint("user-1", "/api/uploads/avatar").allowed
        assert registry.allow("user-1", "USER").allowed
        assert "user-1:uploads" in registry
        assert "user-1:USER" in registry

    def test_endpoint_classes(self, registry):
        """Test endpoint class detection from the path."""
        tiers = registry.tiers

        assert tiers.endpoint_class("/api/uploads/image") == "uploads"
        assert tiers.endpoint_class("/api/auth/refresh") == "auth"
        assert tiers.endpoint_class("/api/messages/shop/1") == "messages"
        assert tiers.endpoint_class("/api/shops") is None
        assert tiers.endpoint_limit("/api/messages/shop/1") == 30
        assert tiers.applies_to("/api/uploads")
        assert not tiers.applies_to("/api/posts")

    def test_custom_bucket(self, registry):
        """Test route-declared capacity keyed by handler."""
        for _ in range(3):
            assert registry.allow_custom("user-1", "change-password", 3, 60).allowed

        decision = registry.allow_custom("user-1", "change-password", 3, 60)

        assert not decision.allowed
        assert decision.scope == "handler:change-password"
        assert "user-1-change-password" in registry

    def test_remaining_does_not_consume(self, registry):
        """Test that remaining() is a pure read."""
        registry.allow("user-1", "USER")

        assert registry.remaining("user-1", "USER") == 59
        assert registry.remaining("user-1", "USER") == 59

    def test_concurrent_callers_never_exceed_capacity(self, registry):
        """Test that racing threads cannot over-consume a shared bucket."""
        admitted = []
        admitted_lock = threading.Lock()
        barrier = threading.Barrier(20)

        def worker():
            barrier.wait()
            for _ in range(10):
                if registry.allow("shared-key", "USER").allowed:
                    with admitted_lock:
                        admitted.append(1)

        threads = [threading.Thread(target=worker) for _ in range(20)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(admitted) == 60
        assert len(registry) == 1

    def test_evict_idle_only_drops_full_buckets(self, registry, clock):
        """Test that eviction keeps buckets still refilling."""
        registry.allow("idle-user", "USER")
        for _ in range(500):
            registry.allow("busy-admin", "ADMIN")

        clock.advance(601)

        assert registry.evict_idle() == 2
        assert len(registry) == 0

    def test_evict_idle_keeps_recent_buckets(self, registry, clock):
        """Test that recently used buckets survive a sweep."""
        registry.allow("old", "USER")
        clock.advance(500)
        registry.allow("recent", "USER")
        clock.advance(200)

        assert registry.evict_idle() == 1
        assert "recent:USER" in registry
        assert "old:USER" not in registry

    def test_eviction_does_not_reset_exhausted_budget(self, clock):
        """Test that a bucket idle but not yet full is kept."""
        registry = RateLimitRegistry(RateLimitTiers(window_seconds=3600), clock=clock, idle_seconds=60)
        for _ in range(10):
            registry.allow("anon", None)

        clock.advance(120)

        assert registry.evict_idle() == 0
        assert registry.remaining("anon", None) == 0

    def test_sweep_runs_on_consume(self, registry, clock):
        """Test that consuming triggers a sweep once the interval has passed."""
        registry.allow("stale", "USER")
        clock.advance(700)

        registry.allow("fresh", "USER")

        assert "stale:USER" not in registry
        assert "fresh:USER" in registry

    def test_clear_and_clear_key(self, registry):
        """Test bucket reset operations."""
        registry.allow("a", "USER")
        registry.allow("b", "USER")

        assert registry.clear_key("a:USER")
        assert not registry.clear_key("a:USER")
        registry.clear()
        assert len(registry) == 0

    def test_stats(self, registry):
        """Test diagnostic snapshot."""
        for _ in range(10):
            registry.allow("anon", "ANONYMOUS")

        stats = registry.stats()

        assert stats["buckets"] == 1
        assert stats["exhausted"] == 1
        assert stats["role_limits"]["USER"] == 60
        assert stats["endpoint_limits"]["uploads"] == 5
