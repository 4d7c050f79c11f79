"""
RATE LIMITER MODULE
===================

Token-bucket admission control per route and (optionally) per client IP.

BUCKETS:
  - Capacity = requests per minute. Tokens refill continuously
    (capacity / 60 per second) up to capacity, so a drained bucket is full
    again one minute later and partially usable before that.
  - One bucket per key: "<route prefix>:<client ip>" when the route limits per
    IP, otherwise just "<route prefix>".

BUCKET CACHE:
  - Buckets are created lazily, dropped after `idle_seconds` without use and
    capped at `max_buckets` (least recently used bucket goes first). Idle
    buckets are expired on every cache access, not only when their key returns.

WIRING:
  Routes opt in explicitly: `dependencies=[Depends(rate_limited(limiter, CHAT_LIMIT))]`.
  A rejected request raises RateLimitExceeded, which ragchat.main maps to 429.
  When the limiter is disabled every request is admitted without touching a bucket.
"""

import logging
import math
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Mapping, Optional, Tuple

from fastapi import Request

from ragchat.exceptions import RateLimitExceeded

logger = logging.getLogger("ragchat")

Clock = Callable[[], float]

REFILL_PERIOD_SECONDS = 60.0


@dataclass(frozen=True)
class RouteLimit:
    """Rate limit settings for one route, fixed when the route is declared."""
    requests_per_minute: int
    key_prefix: str
    per_ip: bool = True


# ==============================================================================
# TOKEN BUCKET
# ==============================================================================

class TokenBucket:
    """Greedy continuous-refill token bucket. try_consume() is atomic."""

    def __init__(self, capacity: int, refill_period: float = REFILL_PERIOD_SECONDS, clock: Clock = time.monotonic):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self.refill_period = refill_period
        self._clock = clock
        self._tokens = float(capacity)
        self._last_refill = clock()
        self._lock = threading.Lock()

    def _refill(self, now: float) -> None:
        elapsed = now - self._last_refill
        if elapsed > 0:
            self._tokens = min(self.capacity, self._tokens + elapsed * self.capacity / self.refill_period)
            self._last_refill = now

    def try_consume(self, tokens: int = 1) -> bool:
        with self._lock:
            self._refill(self._clock())
            if self._tokens >= tokens:
                self._tokens -= tokens
                return True
            return False

    def seconds_until_available(self, tokens: int = 1) -> float:
        with self._lock:
            self._refill(self._clock())
            missing = tokens - self._tokens
            if missing <= 0:
                return 0.0
            return missing * self.refill_period / self.capacity

    @property
    def available_tokens(self) -> float:
        with self._lock:
            self._refill(self._clock())
            return self._tokens


# ==============================================================================
# BUCKET CACHE
# ==============================================================================

class BucketCache:
    """
    key -> TokenBucket, ordered by last access. Idle entries expire, and the
    least recently used entry is evicted when the cache is full.
    """

    def __init__(self, idle_seconds: float = 600, max_size: int = 10_000, clock: Clock = time.monotonic):
        self.idle_seconds = idle_seconds
        self.max_size = max_size
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[TokenBucket, float]]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str, factory: Callable[[], TokenBucket]) -> TokenBucket:
        now = self._clock()
        with self._lock:
            self._expire_idle(now)
            entry = self._entries.get(key)
            if entry is not None:
                bucket = entry[0]
                self._entries.move_to_end(key)
            else:
                bucket = factory()
            self._entries[key] = (bucket, now)
            self._evict_overflow()
            return bucket

    def _expire_idle(self, now: float) -> None:
        # Entries are in access order, so idle ones sit at the head.
        while self._entries:
            key, (_, seen) = next(iter(self._entries.items()))
            if now - seen <= self.idle_seconds:
                return
            del self._entries[key]
            logger.debug("Expired idle rate-limit bucket: %s", key)

    def _evict_overflow(self) -> None:
        while len(self._entries) > self.max_size:
            key, _ = self._entries.popitem(last=False)
            logger.debug("Evicted rate-limit bucket: %s", key)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries


# ==============================================================================
# CLIENT IP
# ==============================================================================

def _usable(value: Optional[str]) -> bool:
    return bool(value) and value.strip().lower() != "unknown"


def client_ip(headers: Mapping[str, str], remote_addr: Optional[str]) -> str:
    """
    Best guess of the caller's address: first X-Forwarded-For entry, then
    X-Real-IP, then the connection address. "unknown" header values are skipped.
    """
    forwarded = headers.get("x-forwarded-for")
    if _usable(forwarded):
        return forwarded.split(",")[0].strip()
    real_ip = headers.get("x-real-ip")
    if _usable(real_ip):
        return real_ip.strip()
    return remote_addr or "unknown"


# ==============================================================================
# RATE LIMITER CLASS
# ==============================================================================

class RateLimiter:
    """Decides admit / reject for (route, client) keys."""

    def __init__(
        self,
        enabled: bool = True,
        idle_seconds: float = 600,
        max_buckets: int = 10_000,
        clock: Clock = time.monotonic,
    ):
        self.enabled = enabled
        self._clock = clock
        self.buckets = BucketCache(idle_seconds=idle_seconds, max_size=max_buckets, clock=clock)

    @staticmethod
    def build_key(route_key: str, client_key: Optional[str] = None) -> str:
        return f"{route_key}:{client_key}" if client_key else route_key

    def _bucket(self, key: str, requests_per_minute: int) -> TokenBucket:
        return self.buckets.get(key, lambda: TokenBucket(requests_per_minute, clock=self._clock))

    def try_admit(self, route_key: str, requests_per_minute: int, client_key: Optional[str] = None) -> bool:
        """Consume one token for the key. True when the request may proceed."""
        if not self.enabled:
            return True
        return self._bucket(self.build_key(route_key, client_key), requests_per_minute).try_consume()

    def check(self, limit: RouteLimit, ip: Optional[str] = None) -> None:
        """Admit or raise RateLimitExceeded for a route declared with `limit`."""
        if not self.enabled:
            return
        key = self.build_key(limit.key_prefix, ip if limit.per_ip else None)
        bucket = self._bucket(key, limit.requests_per_minute)
        if bucket.try_consume():
            return
        retry_after = max(1, math.ceil(bucket.seconds_until_available()))
        logger.warning("Request rate limited: key=%s", key)
        raise RateLimitExceeded("Too many requests, please try again later.", key=key, retry_after=retry_after)


def rate_limited(limiter_provider: Callable[[], Optional[RateLimiter]], limit: RouteLimit):
    """
    Build a FastAPI dependency that runs the admission check for `limit`.
    limiter_provider is called per request so the limiter can be created at startup.
    """
    def dependency(request: Request) -> None:
        limiter = limiter_provider()
        if limiter is None:
            return
        remote = request.client.host if request.client else None
        limiter.check(limit, client_ip(request.headers, remote))

    return dependency
