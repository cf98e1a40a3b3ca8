from __future__ import annotations

import hashlib
import json
from datetime import datetime, timezone
from typing import Any, Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis

from ventaro.storage.models import CSRFRecord, LoginAttempt, Purchase, Role, SessionRecord


def _session_to_json(record: SessionRecord) -> str:
    return json.dumps(
        {
            "session_id": record.session_id,
            "user_id": record.user_id,
            "username": record.username,
            "role": record.role.value,
            "permissions": sorted(record.permissions),
            "issued_at": record.issued_at.isoformat(),
            "expires_at": record.expires_at.isoformat(),
            "token_family": record.token_family,
            "refresh_jti": record.refresh_jti,
            "refresh_expires_at": record.refresh_expires_at.isoformat(),
        }
    )


def _session_from_json(raw: str) -> Optional[SessionRecord]:
    try:
        data = json.loads(raw)
        return SessionRecord(
            session_id=data["session_id"],
            user_id=data["user_id"],
            username=data["username"],
            role=Role(data["role"]),
            permissions=frozenset(data.get("permissions") or []),
            issued_at=datetime.fromisoformat(data["issued_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
            token_family=data["token_family"],
            refresh_jti=data["refresh_jti"],
            refresh_expires_at=datetime.fromisoformat(data["refresh_expires_at"]),
        )
    except (json.JSONDecodeError, KeyError, TypeError, ValueError):
        # Corrupted entries read as missing sessions
        return None


class RedisCache:
    """Redis-backed shared state for multi-process deployments.

    Mirrors the per-key atomicity of ``MemoryStore``: counters and lockouts
    run as Lua scripts, CSRF consumption uses GETDEL, and session rotation
    checks the current refresh id and swaps entries in one script. Expiry is
    left to Redis TTLs so no sweep is needed.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic refill + consume
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tostring(tokens), reset_after}
end

tokens = tokens - cost
redis.call('HSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tostring(tokens), 0}
"""

    # Counter that resets once its window start has aged out; never exceeds limit
    _WINDOW_COUNTER_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local start_hint = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'count', 'start')
local count = tonumber(data[1])
local start = tonumber(data[2])

if count == nil or start == nil or now - start >= window then
  count = 0
  start = start_hint
end

if count >= limit then
  return {0, count, tostring(start)}
end

count = count + 1
redis.call('HSET', key, 'count', count, 'start', start)
redis.call('EXPIRE', key, math.max(math.ceil(window * 2), 1))
return {1, count, tostring(start)}
"""

    _ROTATE_SESSION_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if not current then
  return 0
end
local decoded = cjson.decode(current)
if decoded['refresh_jti'] ~= ARGV[1] then
  return 0
end
redis.call('DEL', KEYS[1])
redis.call('SET', KEYS[2], decoded['token_family'], 'EX', ARGV[2])
redis.call('SET', KEYS[3], ARGV[3], 'EX', ARGV[4])
redis.call('SADD', KEYS[4], ARGV[5])
redis.call('EXPIRE', KEYS[4], ARGV[2])
return 1
"""

    _LOGIN_FAILURE_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
  return {1, -1, redis.call('PTTL', KEYS[1])}
end

local attempts = redis.call('INCR', KEYS[2])
if attempts == 1 then
  redis.call('EXPIRE', KEYS[2], ARGV[3])
end

if attempts >= tonumber(ARGV[1]) then
  redis.call('SET', KEYS[1], attempts, 'EX', ARGV[2])
  redis.call('DEL', KEYS[2])
  return {1, attempts, tonumber(ARGV[2]) * 1000}
end

return {0, attempts, redis.call('PTTL', KEYS[2])}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)
        self._window_counter = self.client.register_script(self._WINDOW_COUNTER_SCRIPT)
        self._rotate_session = self.client.register_script(self._ROTATE_SESSION_SCRIPT)
        self._login_failure = self.client.register_script(self._LOGIN_FAILURE_SCRIPT)

    @staticmethod
    def _ttl_seconds(expires_at: datetime, now: Optional[datetime] = None) -> int:
        """Seconds until ``expires_at``, clamped to at least one."""

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        reference = now or datetime.now(timezone.utc)
        return max(1, int((expires_at - reference).total_seconds()))

    @staticmethod
    def _rate_key(key: str) -> str:
        """Hash the identity so client-supplied text cannot collide with other keys."""

        return f"rate:{hashlib.sha256(key.encode()).hexdigest()}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before the runtime depends on it."""
        # A short-lived sync client avoids binding the async pool to a
        # temporary event loop during startup.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    async def take_token(
        self, key: str, capacity: float, refill_rate: float, now: float, cost: int = 1
    ) -> Tuple[bool, float, int]:
        allowed, tokens, reset_after = await self._token_bucket(
            keys=[self._rate_key(key)],
            args=[now, refill_rate, capacity, max(1, cost)],
        )
        return bool(int(allowed)), float(tokens), int(reset_after or 0)

    async def increment_window(
        self, key: str, limit: int, window_seconds: float, now: float, window_start: float
    ) -> Tuple[bool, int, float]:
        allowed, count, start = await self._window_counter(
            keys=[self._rate_key(key)],
            args=[now, window_seconds, limit, window_start],
        )
        return bool(int(allowed)), int(count), float(start)

    # ------------------------------------------------------------------
    # CSRF tokens
    # ------------------------------------------------------------------

    async def put_csrf_token(self, token: str, record: CSRFRecord, ttl_seconds: int) -> None:
        payload = {"issued_at": record.issued_at, "session_id": record.session_id}
        await self.client.set(f"csrf:{token}", json.dumps(payload), ex=max(1, ttl_seconds))

    async def pop_csrf_token(self, token: str) -> Optional[CSRFRecord]:
        """Atomically read and delete a token so two requests cannot both consume it."""
        cached = await self.client.getdel(f"csrf:{token}")
        if cached is None:
            return None
        try:
            data = json.loads(cached)
            return CSRFRecord(issued_at=float(data["issued_at"]), session_id=data.get("session_id"))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            # Already deleted by GETDEL; treat as unknown
            return None

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def put_session(self, record: SessionRecord, now: Optional[datetime] = None) -> None:
        ttl = self._ttl_seconds(max(record.expires_at, record.refresh_expires_at), now)
        family_ttl = self._ttl_seconds(record.refresh_expires_at, now)
        pipe = self.client.pipeline()
        pipe.set(f"auth:session:{record.session_id}", _session_to_json(record), ex=ttl)
        pipe.sadd(f"auth:family:{record.token_family}", record.session_id)
        pipe.expire(f"auth:family:{record.token_family}", family_ttl)
        await pipe.execute()

    async def get_session(self, session_id: str) -> Optional[SessionRecord]:
        raw = await self.client.get(f"auth:session:{session_id}")
        return _session_from_json(raw) if raw else None

    async def delete_session(self, session_id: str) -> None:
        await self.client.delete(f"auth:session:{session_id}")

    async def rotate_session(
        self,
        old_session_id: str,
        refresh_jti: str,
        new_record: SessionRecord,
        consumed_ttl: int,
        now: Optional[datetime] = None,
    ) -> bool:
        result = await self._rotate_session(
            keys=[
                f"auth:session:{old_session_id}",
                f"auth:refresh:consumed:{refresh_jti}",
                f"auth:session:{new_record.session_id}",
                f"auth:family:{new_record.token_family}",
            ],
            args=[
                refresh_jti,
                max(1, consumed_ttl),
                _session_to_json(new_record),
                self._ttl_seconds(
                    max(new_record.expires_at, new_record.refresh_expires_at), now
                ),
                new_record.session_id,
            ],
        )
        return bool(int(result))

    async def consumed_refresh_family(self, refresh_jti: str) -> Optional[str]:
        return await self.client.get(f"auth:refresh:consumed:{refresh_jti}")

    async def revoke_family(self, token_family: str) -> int:
        family_key = f"auth:family:{token_family}"
        session_ids = await self.client.smembers(family_key)
        if not session_ids:
            return 0
        pipe = self.client.pipeline()
        for session_id in session_ids:
            pipe.delete(f"auth:session:{session_id}")
        pipe.delete(family_key)
        results = await pipe.execute()
        return sum(int(r) for r in results[:-1])

    # ------------------------------------------------------------------
    # Login throttling
    # ------------------------------------------------------------------

    async def record_login_failure(
        self,
        identity: str,
        now: float,
        *,
        max_attempts: int,
        window_seconds: int,
        lockout_seconds: int,
    ) -> LoginAttempt:
        locked, attempts, ttl_ms = await self._login_failure(
            keys=[f"login:lockout:{identity}", f"login:attempts:{identity}"],
            args=[max_attempts, lockout_seconds, window_seconds],
        )
        remaining = max(0, int(ttl_ms)) / 1000.0
        if int(locked):
            return LoginAttempt(
                count=max(int(attempts), max_attempts),
                window_reset_at=now + remaining,
                locked_until=now + remaining,
            )
        return LoginAttempt(count=int(attempts), window_reset_at=now + remaining)

    async def get_login_attempt(self, identity: str, now: float) -> Optional[LoginAttempt]:
        pipe = self.client.pipeline()
        pipe.pttl(f"login:lockout:{identity}")
        pipe.get(f"login:attempts:{identity}")
        pipe.pttl(f"login:attempts:{identity}")
        lockout_ttl, attempts, attempts_ttl = await pipe.execute()
        if lockout_ttl is not None and int(lockout_ttl) > 0:
            until = now + int(lockout_ttl) / 1000.0
            return LoginAttempt(count=0, window_reset_at=until, locked_until=until)
        if attempts is None:
            return None
        return LoginAttempt(
            count=int(attempts),
            window_reset_at=now + max(0, int(attempts_ttl or 0)) / 1000.0,
        )

    async def clear_login_attempts(self, identity: str) -> None:
        await self.client.delete(f"login:attempts:{identity}", f"login:lockout:{identity}")

    # ------------------------------------------------------------------
    # Purchases
    # ------------------------------------------------------------------

    async def record_purchase(self, email: str, checkout_session_id: str) -> Purchase:
        purchase = Purchase(
            email=email.lower(),
            checkout_session_id=checkout_session_id,
            recorded_at=datetime.now(timezone.utc),
        )
        payload: dict[str, Any] = {
            "checkout_session_id": checkout_session_id,
            "recorded_at": purchase.recorded_at.isoformat(),
        }
        await self.client.set(f"purchase:{purchase.email}", json.dumps(payload))
        return purchase

    async def get_purchase(self, email: str) -> Optional[Purchase]:
        key = email.lower()
        raw = await self.client.get(f"purchase:{key}")
        if raw is None:
            return None
        try:
            data = json.loads(raw)
            return Purchase(
                email=key,
                checkout_session_id=data["checkout_session_id"],
                recorded_at=datetime.fromisoformat(data["recorded_at"]),
            )
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            return None

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting the runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
