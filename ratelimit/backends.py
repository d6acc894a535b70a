"""
ratelimit/backends.py -- Moving-window admission control on the limits library.

One contract, three implementations:

    check(identifier, limit, window_seconds, namespace=...) -> RateLimitResult

  RedisRateLimiter     Shared across instances. limits' RedisStorage runs the
                       moving-window count-and-add as one Lua script, so two
                       instances can never both read "4 of 5" and both admit.
  MemoryRateLimiter    limits' MemoryStorage. Correct for a single instance
                       only.
  AllowAllRateLimiter  Development mock. Admits everything.

Both real backends hand a RateLimitItemPerSecond(limit, window_seconds) to a
MovingWindowRateLimiter, keyed by namespace and identifier. The result is
adapted into RateLimitResult so routes never see a limits type.

build_rate_limiter(settings) picks one at startup from RATE_LIMIT_BACKEND:

  auto    Redis when RATE_LIMIT_REDIS_URL is set. Otherwise production refuses
          to start and development warns and admits everything.
  redis   Redis; RATE_LIMIT_REDIS_URL is required.
  memory  MemoryRateLimiter, an explicit single-instance choice.
  off     AllowAllRateLimiter; refused in production.

Redis outages: RedisStorage is built with wrap_exceptions=True, so any client
error surfaces as limits.errors.StorageError. RedisRateLimiter logs it and
answers from a local MemoryRateLimiter. Limits become per-instance for the
duration of the outage, which is weaker than shared limits but far better
than none.

Layer rule: no imports from api/ or auth/.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Protocol

from limits import RateLimitItem, RateLimitItemPerSecond
from limits.errors import StorageError
from limits.storage import MemoryStorage, RedisStorage, Storage
from limits.strategies import MovingWindowRateLimiter

from core.config import Settings
from core.errors import ConfigurationError

logger = logging.getLogger("tillgate.ratelimit")

_DEFAULT_NAMESPACE = "api_default"
_KEY_PREFIX = "ratelimit"


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of one admission check.

    reset_at is epoch seconds when the oldest counted request leaves the
    window. retry_after is 0 when allowed, otherwise whole seconds to wait.
    """

    allowed: bool
    limit: int
    remaining: int
    reset_at: int
    retry_after: int = 0

    def headers(self) -> dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_at),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
        return headers


class RateLimiter(Protocol):
    def check(
        self, identifier: str, limit: int, window_seconds: int, namespace: str = _DEFAULT_NAMESPACE
    ) -> RateLimitResult: ...

    def reset(
        self, identifier: str, limit: int, window_seconds: int, namespace: str = _DEFAULT_NAMESPACE
    ) -> None: ...


def _item(limit: int, window_seconds: int) -> RateLimitItem:
    return RateLimitItemPerSecond(limit, window_seconds, namespace=_KEY_PREFIX)


def _result(allowed: bool, limit: int, remaining: int, reset_at: float, now: float) -> RateLimitResult:
    return RateLimitResult(
        allowed=allowed,
        limit=limit,
        remaining=max(0, remaining),
        reset_at=math.ceil(reset_at),
        retry_after=0 if allowed else max(1, math.ceil(reset_at - now)),
    )


class _MovingWindowLimiter:
    """Shared hit-then-read logic over any limits storage with moving-window support."""

    def __init__(self, storage: Storage) -> None:
        self.storage = storage
        self._strategy = MovingWindowRateLimiter(storage)
        # Keeps hit and the stats read for one caller together.
        self._lock = threading.Lock()

    def _hit(self, item: RateLimitItem, namespace: str, identifier: str) -> RateLimitResult:
        with self._lock:
            allowed = self._strategy.hit(item, namespace, identifier)
            reset_time, remaining = self._strategy.get_window_stats(item, namespace, identifier)
        return _result(allowed, item.amount, remaining, reset_time, time.time())

    def _clear(self, item: RateLimitItem, namespace: str, identifier: str) -> None:
        with self._lock:
            self._strategy.clear(item, namespace, identifier)


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------


class MemoryRateLimiter(_MovingWindowLimiter):
    """Moving window on limits' MemoryStorage.

    Every key ever checked is remembered so it can be cleared later. When more
    than max_tracked keys are held, a sweep clears keys whose window is empty
    under their own limit and window length.
    """

    def __init__(self, max_tracked: int = 10_000, storage: MemoryStorage | None = None) -> None:
        super().__init__(storage if storage is not None else MemoryStorage())
        self._max_tracked = max_tracked
        self._tracked: dict[str, tuple[RateLimitItem, str, str]] = {}

    def __len__(self) -> int:
        return len(self._tracked)

    def check(
        self, identifier: str, limit: int, window_seconds: int, namespace: str = _DEFAULT_NAMESPACE
    ) -> RateLimitResult:
        item = _item(limit, window_seconds)
        result = self._hit(item, namespace, identifier)
        with self._lock:
            self._tracked[item.key_for(namespace, identifier)] = (item, namespace, identifier)
            if len(self._tracked) > self._max_tracked:
                self._sweep()
        return result

    def reset(
        self, identifier: str, limit: int, window_seconds: int, namespace: str = _DEFAULT_NAMESPACE
    ) -> None:
        item = _item(limit, window_seconds)
        self._clear(item, namespace, identifier)
        with self._lock:
            self._tracked.pop(item.key_for(namespace, identifier), None)

    def _sweep(self) -> None:
        # Caller holds the lock.
        for key, (item, namespace, identifier) in list(self._tracked.items()):
            _, remaining = self._strategy.get_window_stats(item, namespace, identifier)
            if remaining >= item.amount:
                self._strategy.clear(item, namespace, identifier)
                del self._tracked[key]


# ---------------------------------------------------------------------------
# Redis
# ---------------------------------------------------------------------------


class RedisRateLimiter(_MovingWindowLimiter):
    """Moving window on limits' RedisStorage.

    Key: ratelimit/<namespace>/<identifier>/<limit>/<window>/second, so a
    policy whose numbers change starts from an empty window.
    """

    def __init__(self, storage: RedisStorage, *, fallback: MemoryRateLimiter | None = None) -> None:
        super().__init__(storage)
        self._fallback = fallback if fallback is not None else MemoryRateLimiter()

    @classmethod
    def from_url(cls, url: str, token: str = "", *, socket_timeout: float = 2.0) -> RedisRateLimiter:
        options: dict = {"socket_timeout": socket_timeout, "socket_connect_timeout": socket_timeout}
        if token:
            options["password"] = token
        return cls(RedisStorage(url, wrap_exceptions=True, **options))

    def check(
        self, identifier: str, limit: int, window_seconds: int, namespace: str = _DEFAULT_NAMESPACE
    ) -> RateLimitResult:
        try:
            return self._hit(_item(limit, window_seconds), namespace, identifier)
        except StorageError as exc:
            logger.error("Redis rate limit check failed (%s); using in-process limiter", exc.storage_error)
            return self._fallback.check(identifier, limit, window_seconds, namespace)

    def reset(
        self, identifier: str, limit: int, window_seconds: int, namespace: str = _DEFAULT_NAMESPACE
    ) -> None:
        try:
            self._clear(_item(limit, window_seconds), namespace, identifier)
        except StorageError as exc:
            logger.error("Redis rate limit reset failed (%s)", exc.storage_error)
        self._fallback.reset(identifier, limit, window_seconds, namespace)


# ---------------------------------------------------------------------------
# Development mock
# ---------------------------------------------------------------------------


class AllowAllRateLimiter:
    def check(
        self, identifier: str, limit: int, window_seconds: int, namespace: str = _DEFAULT_NAMESPACE
    ) -> RateLimitResult:
        now = time.time()
        return _result(True, limit, limit, now + window_seconds, now)

    def reset(
        self, identifier: str, limit: int, window_seconds: int, namespace: str = _DEFAULT_NAMESPACE
    ) -> None:
        return None


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------


def build_rate_limiter(settings: Settings) -> RateLimiter:
    """Choose the limiter once at startup.

    Raises:
        ConfigurationError: production without a shared backend, "off" in
            production, or "redis" without RATE_LIMIT_REDIS_URL.
    """
    backend = settings.rate_limit_backend
    url = settings.rate_limit_redis_url

    if backend == "off":
        if settings.is_production:
            raise ConfigurationError("RATE_LIMIT_BACKEND=off is not allowed in production")
        logger.warning("Rate limiting disabled (RATE_LIMIT_BACKEND=off)")
        return AllowAllRateLimiter()

    if backend == "memory":
        if settings.is_production:
            logger.warning("In-memory rate limiting only protects a single instance")
        return MemoryRateLimiter(max_tracked=settings.rate_limit_memory_max_tracked)

    if backend == "redis" and not url:
        raise ConfigurationError("RATE_LIMIT_BACKEND=redis requires RATE_LIMIT_REDIS_URL")

    if url:
        logger.info("Rate limiting backed by Redis")
        return RedisRateLimiter.from_url(url, settings.rate_limit_redis_token)

    if settings.is_production:
        raise ConfigurationError(
            "No shared rate-limit backend configured. Set RATE_LIMIT_REDIS_URL, "
            "or RATE_LIMIT_BACKEND=memory for a single-instance deployment."
        )
    logger.warning("RATE_LIMIT_REDIS_URL not set -- rate limiting disabled in development")
    return AllowAllRateLimiter()
