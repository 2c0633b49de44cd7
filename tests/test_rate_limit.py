"""Tests for fixed-window rate limiting and client address resolution."""

import asyncio

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from portalauth.config import RateLimit
from portalauth.service.errors import RateLimitedError, ServiceUnavailableError
from portalauth.service.rate_limit import (
    NAMESPACE_GENERAL,
    RateLimiter,
    TrustedProxies,
    client_ip,
    rate_limit_identifier,
)


class FakeCache:
    """Counts like the cache tier's INCR + EXPIRE pipeline."""

    def __init__(self):
        self.counts = {}
        self.keys = []

    async def incr_window(self, key, ttl_seconds):
        self.keys.append((key, ttl_seconds))
        self.counts[key] = self.counts.get(key, 0) + 1
        return self.counts[key]


class BrokenCache:
    async def incr_window(self, key, ttl_seconds):
        raise RedisConnectionError("connection refused")


class SlowCache:
    async def incr_window(self, key, ttl_seconds):
        await asyncio.sleep(5)
        return 1


class TestFixedWindow:
    async def test_allows_up_to_limit_then_blocks(self):
        limiter = RateLimiter(None)
        rate = RateLimit(3, 60)

        results = [await limiter.hit(NAMESPACE_GENERAL, "ip:1.2.3.4", rate, now=120) for _ in range(4)]

        assert [r.allowed for r in results] == [True, True, True, False]
        assert [r.remaining for r in results] == [2, 1, 0, 0]

    async def test_window_boundary_resets_count(self):
        limiter = RateLimiter(FakeCache())
        rate = RateLimit(1, 60)

        first = await limiter.hit(NAMESPACE_GENERAL, "ip:1.2.3.4", rate, now=119)
        second = await limiter.hit(NAMESPACE_GENERAL, "ip:1.2.3.4", rate, now=120)

        assert first.allowed and second.allowed
        assert first.reset_at == 120
        assert second.reset_at == 180

    async def test_key_layout_and_ttl(self):
        cache = FakeCache()
        limiter = RateLimiter(cache)

        await limiter.hit(NAMESPACE_GENERAL, "tenant:t1", RateLimit(10, 60), now=130)

        assert cache.keys == [("rl:general:tenant:t1:120", 50)]

    async def test_identifiers_are_independent(self):
        limiter = RateLimiter(None)
        rate = RateLimit(1, 60)

        a = await limiter.hit(NAMESPACE_GENERAL, "ip:1.1.1.1", rate, now=60)
        b = await limiter.hit(NAMESPACE_GENERAL, "ip:2.2.2.2", rate, now=60)

        assert a.allowed and b.allowed

    async def test_enforce_raises_with_headers(self):
        limiter = RateLimiter(None)
        rate = RateLimit(1, 60)
        await limiter.enforce(NAMESPACE_GENERAL, "ip:9.9.9.9", rate)

        with pytest.raises(RateLimitedError) as exc_info:
            await limiter.enforce(NAMESPACE_GENERAL, "ip:9.9.9.9", rate)

        headers = exc_info.value.headers
        assert exc_info.value.status_code == 429
        assert headers["X-RateLimit-Limit"] == "1"
        assert headers["X-RateLimit-Remaining"] == "0"
        assert int(headers["Retry-After"]) >= 1

    def test_headers_omit_retry_after_when_allowed(self):
        from portalauth.service.rate_limit import RateLimitResult

        headers = RateLimitResult(limit=5, remaining=4, reset_at=60, retry_after=30, allowed=True).headers()
        assert "Retry-After" not in headers


class TestFailClosed:
    async def test_cache_error_refuses_request(self):
        limiter = RateLimiter(BrokenCache())
        with pytest.raises(ServiceUnavailableError):
            await limiter.hit(NAMESPACE_GENERAL, "ip:1.2.3.4", RateLimit(10, 60))

    async def test_cache_timeout_refuses_request(self):
        limiter = RateLimiter(SlowCache(), timeout_ms=50)
        with pytest.raises(ServiceUnavailableError):
            await limiter.hit(NAMESPACE_GENERAL, "ip:1.2.3.4", RateLimit(10, 60))


class TestClientIp:
    def test_untrusted_peer_ignores_forwarding_headers(self):
        trusted = TrustedProxies([])
        headers = {"x-forwarded-for": "6.6.6.6", "x-real-ip": "7.7.7.7"}

        assert client_ip("203.0.113.9", headers, trusted) == "203.0.113.9"

    def test_trusted_proxy_uses_rightmost_untrusted_hop(self):
        trusted = TrustedProxies(["10.0.0.0/8"])
        headers = {"x-forwarded-for": "6.6.6.6, 198.51.100.7, 10.0.0.5"}

        assert client_ip("10.0.0.1:51234", headers, trusted) == "198.51.100.7"

    def test_trusted_proxy_falls_back_to_real_ip(self):
        trusted = TrustedProxies(["10.0.0.1"])

        assert client_ip("10.0.0.1", {"x-real-ip": "198.51.100.7"}, trusted) == "198.51.100.7"

    def test_trusted_proxy_without_headers_uses_peer(self):
        trusted = TrustedProxies(["10.0.0.1"])
        assert client_ip("10.0.0.1", {}, trusted) == "10.0.0.1"

    def test_ipv6_peer(self):
        trusted = TrustedProxies(["::1"])
        headers = {"x-forwarded-for": "2001:db8::1"}

        assert client_ip("[::1]:8080", headers, trusted) == "2001:db8::1"

    def test_invalid_proxy_entries_are_skipped(self):
        trusted = TrustedProxies(["not-an-ip", "10.0.0.1"])
        assert "10.0.0.1" in trusted
        assert "10.0.0.2" not in trusted

    def test_missing_peer(self):
        assert client_ip(None, {}, TrustedProxies([])) == "unknown"

    def test_identifier_prefers_tenant(self):
        assert rate_limit_identifier("t1", "1.2.3.4") == "tenant:t1"
        assert rate_limit_identifier(None, "1.2.3.4") == "ip:1.2.3.4"
