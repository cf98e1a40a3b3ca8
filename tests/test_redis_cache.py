"""Redis-backed state, exercised against mocked clients and scripts."""

import hashlib
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, create_autospec

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from ventaro.service.csrf import CSRFManager
from ventaro.service.rate_limit import RateLimiter
from ventaro.service.runtime import reset_runtime_for_tests
from ventaro.storage.memory import MemoryStore
from ventaro.storage.models import CSRFRecord, Role, SessionRecord
from ventaro.storage.redis_cache import RedisCache, _session_to_json


@pytest.fixture
def cache():
    instance = RedisCache("redis://localhost:6379/15")
    instance.client = MagicMock()
    return instance


def _record(now: datetime) -> SessionRecord:
    return SessionRecord(
        session_id="sid-1",
        user_id="1",
        username="admin",
        role=Role.ADMIN,
        permissions=frozenset({"admin:read"}),
        issued_at=now,
        expires_at=now + timedelta(hours=24),
        token_family="family-1",
        refresh_jti="jti-1",
        refresh_expires_at=now + timedelta(days=7),
    )


class TestCSRFStorage:
    async def test_pop_uses_getdel(self, cache):
        cache.client.getdel = AsyncMock(return_value=json.dumps({"issued_at": 12.5, "session_id": "s"}))
        record = await cache.pop_csrf_token("tok")
        cache.client.getdel.assert_awaited_once_with("csrf:tok")
        assert record == CSRFRecord(issued_at=12.5, session_id="s")

    async def test_pop_missing_or_corrupt(self, cache):
        cache.client.getdel = AsyncMock(return_value=None)
        assert await cache.pop_csrf_token("tok") is None
        cache.client.getdel = AsyncMock(return_value="{not json")
        assert await cache.pop_csrf_token("tok") is None

    async def test_put_sets_ttl(self, cache):
        cache.client.set = AsyncMock()
        await cache.put_csrf_token("tok", CSRFRecord(issued_at=1.0), 3601)
        cache.client.set.assert_awaited_once()
        args, kwargs = cache.client.set.call_args
        assert args[0] == "csrf:tok"
        assert kwargs["ex"] == 3601


class TestSessionStorage:
    async def test_get_session_round_trip(self, cache):
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        record = _record(now)
        cache.client.get = AsyncMock(return_value=_session_to_json(record))
        assert await cache.get_session("sid-1") == record
        cache.client.get.assert_awaited_once_with("auth:session:sid-1")

    async def test_corrupt_session_reads_as_missing(self, cache):
        cache.client.get = AsyncMock(return_value='{"session_id": "x"}')
        assert await cache.get_session("x") is None

    async def test_put_session_ttl_covers_refresh_lifetime(self, cache):
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[True, 1, True])
        cache.client.pipeline.return_value = pipe
        await cache.put_session(_record(now), now)
        _, kwargs = pipe.set.call_args
        assert kwargs["ex"] == 7 * 24 * 60 * 60
        pipe.sadd.assert_called_once_with("auth:family:family-1", "sid-1")

    async def test_rotate_session_reports_script_result(self, cache):
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        cache._rotate_session = AsyncMock(return_value=1)
        successor = _record(now)
        assert await cache.rotate_session("old", "jti-0", successor, 100, now) is True
        kwargs = cache._rotate_session.call_args.kwargs
        assert kwargs["keys"][:2] == ["auth:session:old", "auth:refresh:consumed:jti-0"]
        assert kwargs["args"][0] == "jti-0"
        cache._rotate_session = AsyncMock(return_value=0)
        assert await cache.rotate_session("old", "jti-0", successor, 100, now) is False

    async def test_revoke_family_deletes_members(self, cache):
        cache.client.smembers = AsyncMock(return_value={"a", "b"})
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[1, 1, 1])
        cache.client.pipeline.return_value = pipe
        assert await cache.revoke_family("family-1") == 2

    async def test_revoke_empty_family(self, cache):
        cache.client.smembers = AsyncMock(return_value=set())
        assert await cache.revoke_family("family-1") == 0


class TestCounters:
    async def test_take_token_parses_script_reply(self, cache):
        cache._token_bucket = AsyncMock(return_value=[1, "2.5", 0])
        assert await cache.take_token("ip", 3, 1.0, 100.0) == (True, 2.5, 0)
        keys = cache._token_bucket.call_args.kwargs["keys"]
        assert keys == [f"rate:{hashlib.sha256(b'ip').hexdigest()}"]

    async def test_increment_window_parses_script_reply(self, cache):
        cache._window_counter = AsyncMock(return_value=[0, 5, "60.0"])
        assert await cache.increment_window("ip", 5, 60, 100.0, 60.0) == (False, 5, 60.0)

    async def test_login_lockout_reply(self, cache):
        cache._login_failure = AsyncMock(return_value=[1, 5, 1_800_000])
        attempt = await cache.record_login_failure(
            "ip", 1000.0, max_attempts=5, window_seconds=900, lockout_seconds=1800
        )
        assert attempt.count == 5
        assert attempt.locked_until == 2800.0
        assert attempt.is_locked(1000.0)

    async def test_get_login_attempt_while_locked(self, cache):
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[5000, None, -2])
        cache.client.pipeline.return_value = pipe
        attempt = await cache.get_login_attempt("ip", 10.0)
        assert attempt.locked_until == 15.0

    async def test_get_login_attempt_without_record(self, cache):
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[-2, None, -2])
        cache.client.pipeline.return_value = pipe
        assert await cache.get_login_attempt("ip", 10.0) is None


class TestServicesUseCache:
    async def test_csrf_manager_goes_through_cache(self, clock):
        cache = create_autospec(RedisCache, instance=True)
        store = MemoryStore()
        manager = CSRFManager(store, "secret", cache=cache, clock=clock)
        issued = await manager.issue()
        cache.put_csrf_token.assert_awaited_once()
        assert cache.put_csrf_token.call_args.args[2] == 3601
        assert store.csrf_token_count() == 0

        cache.pop_csrf_token.return_value = CSRFRecord(issued_at=clock.now)
        assert await manager.validate(issued.token) is True
        cache.pop_csrf_token.return_value = None
        assert await manager.validate(issued.token) is False

    async def test_rate_limiter_goes_through_cache(self, clock):
        cache = create_autospec(RedisCache, instance=True)
        cache.increment_window.return_value = (False, 5, 1_699_999_980.0)
        limiter = RateLimiter(MemoryStore(), cache, clock=clock)
        decision = await limiter.check("ip", 5, 60)
        assert not decision.allowed
        assert decision.retry_after == 40
        assert limiter.store.rate_bucket_count() == 0


class TestRuntimeFallback:
    def test_unreachable_redis_falls_back_outside_production(self, monkeypatch):
        def refuse(self):
            raise RedisConnectionError("connection refused")

        monkeypatch.setattr(RedisCache, "verify_connection", refuse)
        monkeypatch.setenv("USE_REDIS", "true")
        runtime = reset_runtime_for_tests()
        assert runtime.cache is None
        assert runtime.settings.use_redis
