from __future__ import annotations

import asyncio
import ipaddress
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

from portalauth.config import RateLimit
from portalauth.logging import get_logger
from portalauth.service.errors import RateLimitedError, ServiceUnavailableError

logger = get_logger(__name__)

NAMESPACE_GENERAL = "rl:general"
NAMESPACE_LOGIN = "rl:login"


@dataclass(frozen=True)
class RateLimitResult:
    limit: int
    remaining: int
    reset_at: int
    retry_after: int
    allowed: bool

    def headers(self) -> Dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_at),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
        return headers


def _strip_port(value: str) -> str:
    value = value.strip()
    if value.startswith("["):
        end = value.find("]")
        return value[1:end] if end != -1 else value
    # A single colon means host:port; bare IPv6 has several
    if value.count(":") == 1:
        return value.split(":", 1)[0]
    return value


def _parse_ip(value: str) -> Optional[ipaddress._BaseAddress]:
    try:
        return ipaddress.ip_address(_strip_port(value))
    except ValueError:
        return None


class TrustedProxies:
    """Peer addresses or CIDR ranges whose forwarding headers are believed."""

    def __init__(self, entries: Iterable[str]) -> None:
        self.networks: List[ipaddress._BaseNetwork] = []
        for entry in entries or ():
            try:
                self.networks.append(ipaddress.ip_network(entry.strip(), strict=False))
            except ValueError:
                logger.warning("trusted_proxy_invalid", entry=entry)

    def __contains__(self, address: Optional[str]) -> bool:
        ip = _parse_ip(address) if address else None
        if ip is None:
            return False
        return any(ip in net for net in self.networks)


def client_ip(
    remote_addr: Optional[str],
    headers: Any,
    trusted: TrustedProxies,
) -> str:
    """Address used to identify an unauthenticated caller.

    Forwarding headers only count when the direct peer is a trusted proxy;
    the rightmost entry not belonging to a trusted proxy is the client.
    """
    peer = _strip_port(remote_addr or "") or "unknown"
    if peer not in trusted:
        return peer
    forwarded = headers.get("x-forwarded-for") if headers is not None else None
    if forwarded:
        for hop in reversed([h for h in forwarded.split(",") if h.strip()]):
            ip = _parse_ip(hop)
            if ip is None:
                continue
            if str(ip) not in trusted:
                return str(ip)
    real_ip = headers.get("x-real-ip") if headers is not None else None
    if real_ip:
        ip = _parse_ip(real_ip)
        if ip is not None:
            return str(ip)
    return peer


def rate_limit_identifier(tenant_id: Optional[str], ip: str) -> str:
    if tenant_id:
        return f"tenant:{tenant_id}"
    return f"ip:{ip}"


class RateLimiter:
    """Fixed-window counters in the cache tier.

    When a cache is configured and fails to answer in time the request is
    refused with 503. Without any cache (tests, local dev) counters live in
    process memory.
    """

    def __init__(self, cache: Any, *, timeout_ms: int = 500) -> None:
        self.cache = cache
        self.timeout = timeout_ms / 1000.0
        self._local_counts: Dict[str, Tuple[int, int]] = {}
        self._local_lock = asyncio.Lock()

    async def _increment(self, key: str, ttl: int, window_end: int, now: int) -> int:
        if self.cache is None:
            async with self._local_lock:
                for stale in [k for k, v in self._local_counts.items() if v[1] <= now]:
                    del self._local_counts[stale]
                count, expires = self._local_counts.get(key, (0, window_end))
                count += 1
                self._local_counts[key] = (count, expires)
                return count
        try:
            return await asyncio.wait_for(self.cache.incr_window(key, ttl), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            logger.error("rate_limit_cache_timeout", key=key, timeout_ms=int(self.timeout * 1000))
            raise ServiceUnavailableError("rate limiter unavailable") from exc
        except Exception as exc:
            logger.error("rate_limit_cache_error", key=key, error_type=type(exc).__name__, error=str(exc))
            raise ServiceUnavailableError("rate limiter unavailable") from exc

    async def hit(
        self,
        namespace: str,
        identifier: str,
        rate: RateLimit,
        *,
        now: Optional[float] = None,
    ) -> RateLimitResult:
        now_s = int(now if now is not None else time.time())
        window = max(1, rate.window_seconds)
        window_start = now_s - (now_s % window)
        window_end = window_start + window
        key = f"{namespace}:{identifier}:{window_start}"
        count = await self._increment(key, window_end - now_s, window_end, now_s)
        allowed = count <= rate.requests
        return RateLimitResult(
            limit=rate.requests,
            remaining=max(0, rate.requests - count),
            reset_at=window_end,
            retry_after=max(1, window_end - now_s),
            allowed=allowed,
        )

    async def enforce(self, namespace: str, identifier: str, rate: RateLimit) -> RateLimitResult:
        result = await self.hit(namespace, identifier, rate)
        if not result.allowed:
            logger.info("rate_limited", namespace=namespace, identifier=identifier)
            raise RateLimitedError("rate limit exceeded", headers=result.headers())
        return result
