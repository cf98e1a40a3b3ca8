from __future__ import annotations

import asyncio
import threading
import time
from typing import Callable, Optional
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from ventaro.config import Environment, get_settings, reset_settings_cache
from ventaro.logging import get_logger
from ventaro.service.auth import AuthService, LoginThrottle, PasswordManager, SessionManager, TokenManager
from ventaro.service.csrf import CSRFManager
from ventaro.service.payments import PaymentClient
from ventaro.service.rate_limit import ProgressivePenaltyLimiter, RateLimiter
from ventaro.service.validation import InputValidator
from ventaro.storage.memory import MemoryStore
from ventaro.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Owns the shared state and the services built on it for the app's lifetime."""

    def __init__(self, *, clock: Optional[Callable[[], float]] = None):
        self.settings = get_settings()
        self.settings.validate_for_production()
        self.clock = clock or time.time

        self.store = MemoryStore()
        self.cache: Optional[RedisCache] = None
        if self.settings.use_redis:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except (RedisError, OSError) as exc:
                if self.settings.is_production:
                    raise RuntimeError(
                        "USE_REDIS is set but Redis is unreachable"
                    ) from exc
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                    message="Falling back to process-local state",
                )

        settings = self.settings
        self.validator = InputValidator()
        self.rate_limiter = RateLimiter(
            self.store,
            self.cache,
            max_buckets=settings.rate_limit_max_buckets,
            clock=self.clock,
        )
        self.penalty_limiter = ProgressivePenaltyLimiter(
            self.rate_limiter,
            base_limit=settings.rate_limit_default,
            clock=self.clock,
        )
        self.csrf = CSRFManager(
            self.store,
            settings.csrf_secret,
            cache=self.cache,
            ttl_seconds=settings.csrf_token_ttl_seconds,
            clock=self.clock,
        )
        self.tokens = TokenManager(settings, clock=self.clock)
        self.sessions = SessionManager(
            self.store,
            self.tokens,
            cache=self.cache,
            access_ttl_seconds=settings.access_token_ttl_seconds,
            refresh_ttl_seconds=settings.refresh_token_ttl_seconds,
            clock=self.clock,
        )
        self.login_throttle = LoginThrottle(
            self.store,
            cache=self.cache,
            max_attempts=settings.login_max_attempts,
            lockout_seconds=settings.login_lockout_seconds,
            window_seconds=settings.login_attempt_window_seconds,
            clock=self.clock,
        )
        self.auth = AuthService(
            settings,
            self.sessions,
            self.login_throttle,
            passwords=PasswordManager(),
            clock=self.clock,
        )
        self.payments = PaymentClient(
            settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
            api_base=settings.stripe_api_base,
            timeout=settings.payment_timeout_seconds,
            max_retries=settings.payment_max_retries,
            clock=self.clock,
        )
        logger.info(
            "runtime_initialized",
            environment=settings.environment.value,
            redis_enabled=self.cache is not None,
            payments_configured=self.payments.is_configured,
        )

    async def record_purchase(self, email: str, checkout_session_id: str) -> None:
        if self.cache:
            await self.cache.record_purchase(email, checkout_session_id)
        else:
            self.store.record_purchase(email, checkout_session_id)

    async def has_purchase(self, email: str) -> bool:
        if self.cache:
            return await self.cache.get_purchase(email) is not None
        return self.store.get_purchase(email) is not None

    def run_maintenance(self) -> dict[str, int]:
        """Sweep expired process-local state; Redis expires its own keys."""
        swept = {
            "sessions": self.sessions.cleanup_expired(),
            "csrf_tokens": self.csrf.sweep(),
            "rate_buckets": self.rate_limiter.sweep(),
            "penalties": self.penalty_limiter.sweep(),
            "login_attempts": self.login_throttle.sweep(),
        }
        if any(swept.values()):
            logger.info("maintenance_sweep_completed", **swept)
        return swept

    async def close(self) -> None:
        await self.payments.close()
        if self.cache is not None:
            await self.cache.close()
        self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton with double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(*, clock: Optional[Callable[[], float]] = None) -> Runtime:
    """Rebuild the runtime from the current environment for isolated tests."""
    global runtime

    with _runtime_lock:
        previous = runtime
        reset_settings_cache()
        settings = get_settings()
        if settings.environment != Environment.TEST:
            raise RuntimeError("runtime reset is only allowed when ENVIRONMENT=test")
        runtime = Runtime(clock=clock)
    if previous is not None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(previous.close())
        else:
            loop.create_task(previous.close())
    return runtime
