from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, ClassVar, Optional, Union

from ventaro.config import Settings
from ventaro.logging import get_logger
from ventaro.storage.memory import MemoryStore
from ventaro.storage.models import RateBucket
from ventaro.storage.redis_cache import RedisCache

logger = get_logger(__name__)

DEFAULT_WINDOW_SECONDS = 60


class RateLimitStrategy(str, Enum):
    FIXED_WINDOW = "fixed_window"
    SLIDING_WINDOW = "sliding_window"
    TOKEN_BUCKET = "token_bucket"


@dataclass(frozen=True)
class Allowed:
    allowed: ClassVar[bool] = True

    limit: int
    remaining: int
    reset_at: float

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, self.remaining)),
            "X-RateLimit-Reset": str(math.ceil(self.reset_at)),
        }


@dataclass(frozen=True)
class Rejected:
    allowed: ClassVar[bool] = False
    remaining: ClassVar[int] = 0

    limit: int
    reset_at: float
    retry_after: int

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": str(math.ceil(self.reset_at)),
            "Retry-After": str(max(1, self.retry_after)),
        }


RateLimitDecision = Union[Allowed, Rejected]


@dataclass(frozen=True)
class RateLimitTier:
    name: str
    limit: int
    window_seconds: int


def tier_for_path(path: str, settings: Settings) -> RateLimitTier:
    """Pick the quota for an API path: login/verification, admin, submission or default."""
    window = settings.rate_limit_window_seconds
    if "/login" in path or "/verify-" in path:
        return RateLimitTier("auth", settings.rate_limit_auth, window)
    if "/admin/" in path:
        return RateLimitTier("admin", settings.rate_limit_admin, window)
    if any(marker in path for marker in ("/outreach", "/submit", "/subscribe")):
        return RateLimitTier("sensitive", settings.rate_limit_sensitive, window)
    return RateLimitTier("default", settings.rate_limit_default, window)


class RateLimiter:
    """Per-identity request quotas with selectable counting strategies.

    ``check`` never raises for an exhausted quota; it returns ``Rejected``
    and leaves the response to the caller. Counter updates are atomic per key
    (store lock or Lua script) and are never rolled back.
    """

    def __init__(
        self,
        store: MemoryStore,
        cache: Optional[RedisCache] = None,
        *,
        max_buckets: int = 1000,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.max_buckets = max_buckets
        self._clock = clock or time.time

    def _now(self) -> float:
        return self._clock()

    async def check(
        self,
        identity: str,
        limit: int,
        window_seconds: float,
        *,
        strategy: RateLimitStrategy = RateLimitStrategy.FIXED_WINDOW,
        refill_rate: Optional[float] = None,
    ) -> RateLimitDecision:
        now = self._now()
        if limit <= 0:
            return Allowed(limit=limit, remaining=limit, reset_at=now)
        if window_seconds <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                identity=identity,
                window_seconds=window_seconds,
                message="Invalid rate limit window; defaulting to 60 seconds",
            )
            window_seconds = DEFAULT_WINDOW_SECONDS

        if strategy == RateLimitStrategy.TOKEN_BUCKET:
            rate = refill_rate if refill_rate and refill_rate > 0 else limit / window_seconds
            decision = await self._token_bucket(identity, limit, rate, now)
        elif strategy == RateLimitStrategy.SLIDING_WINDOW:
            decision = await self._window(f"sliding:{identity}", limit, window_seconds, now, now)
        else:
            index = math.floor(now / window_seconds)
            decision = await self._window(
                f"fixed:{identity}:{index}", limit, window_seconds, now, index * window_seconds
            )

        if not decision.allowed:
            logger.info(
                "rate_limit_exceeded",
                identity=identity,
                limit=limit,
                strategy=strategy.value,
            )
        if not self.cache and self.store.rate_bucket_count() > self.max_buckets:
            self.sweep()
        return decision

    async def _window(
        self,
        key: str,
        limit: int,
        window_seconds: float,
        now: float,
        fresh_start: float,
    ) -> RateLimitDecision:
        if self.cache:
            allowed, count, start = await self.cache.increment_window(
                key, limit, window_seconds, now, fresh_start
            )
        else:

            def mutate(bucket: Optional[RateBucket]):
                if bucket is None or now - bucket.window_start >= window_seconds:
                    bucket = RateBucket(count=0, window_start=fresh_start, window_seconds=window_seconds)
                if bucket.count >= limit:
                    return bucket, (False, int(bucket.count), bucket.window_start)
                bucket.count += 1
                return bucket, (True, int(bucket.count), bucket.window_start)

            allowed, count, start = self.store.mutate_rate_bucket(key, mutate)

        reset_at = start + window_seconds
        if allowed:
            return Allowed(limit=limit, remaining=limit - count, reset_at=reset_at)
        return Rejected(limit=limit, reset_at=reset_at, retry_after=math.ceil(reset_at - now))

    async def _token_bucket(
        self, identity: str, capacity: int, refill_rate: float, now: float
    ) -> RateLimitDecision:
        key = f"bucket:{identity}"
        if self.cache:
            allowed, tokens, retry_after = await self.cache.take_token(
                key, capacity, refill_rate, now
            )
        else:

            def mutate(bucket: Optional[RateBucket]):
                if bucket is None:
                    bucket = RateBucket(
                        count=float(capacity),
                        window_start=now,
                        window_seconds=capacity / refill_rate,
                    )
                elapsed = max(0.0, now - bucket.window_start)
                bucket.count = min(float(capacity), bucket.count + elapsed * refill_rate)
                bucket.window_start = now
                if bucket.count < 1:
                    return bucket, (False, bucket.count, math.ceil((1 - bucket.count) / refill_rate))
                bucket.count -= 1
                return bucket, (True, bucket.count, 0)

            allowed, tokens, retry_after = self.store.mutate_rate_bucket(key, mutate)

        if allowed:
            reset_at = now + (capacity - tokens) / refill_rate
            return Allowed(limit=capacity, remaining=int(tokens), reset_at=reset_at)
        return Rejected(limit=capacity, reset_at=now + retry_after, retry_after=retry_after)

    def sweep(self) -> int:
        """Drop buckets older than twice their window; Redis expires its own keys."""
        removed = self.store.sweep_rate_buckets(self._now())
        if removed:
            logger.debug("rate_limit_buckets_swept", removed=removed)
        return removed


class ProgressivePenaltyLimiter:
    """Shrink an identity's quota geometrically with each recorded violation.

    Effective limit is ``max(1, floor(base * factor ** violations))``. Violations
    are forgotten after an hour without a new one; reaching the block
    threshold within that hour rejects every request.
    """

    def __init__(
        self,
        limiter: RateLimiter,
        *,
        base_limit: int = 60,
        penalty_factor: float = 0.5,
        reset_seconds: float = 3600,
        block_threshold: int = 5,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.limiter = limiter
        self.base_limit = base_limit
        self.penalty_factor = penalty_factor
        self.reset_seconds = reset_seconds
        self.block_threshold = block_threshold
        self._clock = clock or limiter._clock
        self._violations: dict[str, tuple[int, float]] = {}  # identity -> (count, last)
        self._lock = threading.Lock()

    def _current(self, identity: str, now: float) -> int:
        entry = self._violations.get(identity)
        if entry is None:
            return 0
        count, last = entry
        if now - last > self.reset_seconds:
            del self._violations[identity]
            return 0
        return count

    def limit_for(self, identity: str, base_limit: Optional[int] = None) -> int:
        """Penalized quota for ``identity``, scaled from ``base_limit`` or the default."""
        base = self.base_limit if base_limit is None else base_limit
        with self._lock:
            violations = self._current(identity, self._clock())
        return max(1, math.floor(base * self.penalty_factor**violations))

    def record_violation(self, identity: str) -> int:
        now = self._clock()
        with self._lock:
            count = self._current(identity, now) + 1
            self._violations[identity] = (count, now)
        logger.warning("rate_limit_violation_recorded", identity=identity, violations=count)
        return count

    def is_blocked(self, identity: str) -> bool:
        return self.blocked(identity) is not None

    def blocked(self, identity: str) -> Optional[Rejected]:
        """Rejection lasting until the hour after the last violation, if blocked."""
        now = self._clock()
        with self._lock:
            violations = self._current(identity, now)
            last = self._violations[identity][1] if violations else now
        if violations < self.block_threshold:
            return None
        reset_at = last + self.reset_seconds
        return Rejected(limit=0, reset_at=reset_at, retry_after=math.ceil(reset_at - now))

    async def check(self, identity: str, window_seconds: float) -> RateLimitDecision:
        rejection = self.blocked(identity)
        if rejection is not None:
            return rejection
        decision = await self.limiter.check(
            f"penalty:{identity}", self.limit_for(identity), window_seconds
        )
        if not decision.allowed:
            self.record_violation(identity)
        return decision

    def sweep(self) -> int:
        now = self._clock()
        with self._lock:
            stale = [
                identity
                for identity, (_, last) in self._violations.items()
                if now - last > self.reset_seconds
            ]
            for identity in stale:
                del self._violations[identity]
        return len(stale)
