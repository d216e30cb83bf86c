"""
Email provider profiles and per-provider throttling.

  provider    max sends / window   worker concurrency   native batch
  ──────────  ───────────────────  ───────────────────  ────────────
  smtp          3 / 4 s                  10                 no
  office365     2 / 4 s                  10                 no
  smtp2go      40 / 1 s                  20                 yes
  resend       10 / 1 s                  10                 yes

Exceeding a provider's ceiling gets sends bounced or rejected rather than
queued, so every send passes through that provider's RateLimiter. The
rolling window is a Redis sorted set shared by every email worker process,
and the email worker pool is sized from the concurrency column. Limits can
be overridden per tenant through tenant_settings.provider_limits:

    {"smtp2go": {"max": 20, "window_ms": 1000, "concurrency": 5}}
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, replace
from typing import Any, Mapping, Optional

from redis.asyncio import Redis

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderProfile:
    name:           str
    max_per_window: int
    window_ms:      int
    concurrency:    int
    supports_batch: bool = False

    def with_overrides(self, overrides: Optional[Mapping[str, Any]]) -> "ProviderProfile":
        if not overrides:
            return self
        return replace(
            self,
            max_per_window=int(overrides.get("max", self.max_per_window)),
            window_ms=int(overrides.get("window_ms", self.window_ms)),
            concurrency=int(overrides.get("concurrency", self.concurrency)),
        )


PROVIDERS: dict[str, ProviderProfile] = {
    "smtp":      ProviderProfile("smtp",      max_per_window=3,  window_ms=4000, concurrency=10),
    "office365": ProviderProfile("office365", max_per_window=2,  window_ms=4000, concurrency=10),
    "smtp2go":   ProviderProfile("smtp2go",   max_per_window=40, window_ms=1000, concurrency=20,
                                 supports_batch=True),
    "resend":    ProviderProfile("resend",    max_per_window=10, window_ms=1000, concurrency=10,
                                 supports_batch=True),
}


def get_provider_profile(name: str, overrides: Optional[Mapping[str, Any]] = None) -> ProviderProfile:
    try:
        profile = PROVIDERS[name]
    except KeyError:
        raise ValueError(f"Unknown email provider: {name!r}") from None
    return profile.with_overrides((overrides or {}).get(name))


def email_worker_concurrency(overrides: Optional[Mapping[str, Any]] = None) -> int:
    """Sum of every provider's concurrency; only one provider is active at a time."""
    return sum(get_provider_profile(name, overrides).concurrency for name in PROVIDERS)


# ---------------------------------------------------------------------------
# Rolling-window limiter
# ---------------------------------------------------------------------------

RATE_LIMIT_KEY_PREFIX = "docpipe:email-rate"


class RateLimiter:
    """
    At most `max_per_window` acquisitions in any `window_ms` span, counted
    across every process that shares the Redis store.

    Each acquisition is a sorted-set member scored with its timestamp. One
    MULTI/EXEC evicts expired members, adds the new one and counts; a caller
    that finds the set over the ceiling removes its own member again. Two
    racing callers can both be refused, never both admitted.

    Timestamps come from the wall clock because they are compared between
    processes.
    """

    def __init__(
        self,
        redis: Redis,
        key: str,
        max_per_window: int,
        window_ms: int,
        *,
        clock=time.time,
    ) -> None:
        if max_per_window < 1 or window_ms < 1:
            raise ValueError("max_per_window and window_ms must be >= 1")
        self.max_per_window = max_per_window
        self.window_ms = window_ms
        self.window = window_ms / 1000.0
        self.key = key
        self._redis = redis
        self._clock = clock

    async def try_acquire(self) -> float:
        """Take a slot and return 0.0, or return the seconds until one frees up."""
        now = self._clock()
        member = f"{now:.6f}:{uuid.uuid4().hex}"

        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.zremrangebyscore(self.key, "-inf", now - self.window)
            pipe.zadd(self.key, {member: now})
            pipe.zcard(self.key)
            pipe.zrange(self.key, 0, 0, withscores=True)
            pipe.pexpire(self.key, self.window_ms + 60_000)
            _, _, count, oldest, _ = await pipe.execute()

        if count <= self.max_per_window:
            return 0.0

        await self._redis.zrem(self.key, member)
        oldest_stamp = float(oldest[0][1]) if oldest else now
        return max(self.window - (now - oldest_stamp), 0.001)

    async def acquire(self) -> None:
        while True:
            delay = await self.try_acquire()
            if not delay:
                return
            logger.debug("Rate limit wait | key=%s delay=%.3fs", self.key, delay)
            await asyncio.sleep(delay)


# ---------------------------------------------------------------------------
# Shared store: one Redis client per process, injectable like the broker
# ---------------------------------------------------------------------------

_store: Optional[Redis] = None


def set_rate_limit_store(redis: Optional[Redis]) -> None:
    global _store
    _store = redis


def get_rate_limit_store() -> Redis:
    global _store
    if _store is None:
        from docpipe.core.config import settings

        _store = Redis.from_url(
            settings.rate_limit_redis_url or settings.celery_broker_url,
            socket_timeout=settings.broker_request_timeout,
            socket_connect_timeout=settings.broker_connect_timeout,
        )
    return _store


async def close_rate_limit_store() -> None:
    global _store
    if _store is not None:
        await _store.aclose()
        _store = None


def get_rate_limiter(profile: ProviderProfile, *, redis: Optional[Redis] = None) -> RateLimiter:
    """Limiter for the provider's window; every process sharing the store shares the count."""
    return RateLimiter(
        redis or get_rate_limit_store(),
        f"{RATE_LIMIT_KEY_PREFIX}:{profile.name}",
        profile.max_per_window,
        profile.window_ms,
    )
