from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import secrets
import time
from dataclasses import dataclass
from typing import Callable, Optional

from ventaro.logging import get_logger
from ventaro.storage.memory import MemoryStore
from ventaro.storage.models import CSRFRecord
from ventaro.storage.redis_cache import RedisCache

logger = get_logger(__name__)

CSRF_HEADER = "x-csrf-token"
CSRF_COOKIE = "__csrf-token"
NONCE_BYTES = 32


@dataclass(frozen=True)
class CSRFToken:
    token: str
    expires_at: float


def _sign(secret: str, data: str) -> str:
    return hmac.new(secret.encode(), data.encode(), hashlib.sha256).hexdigest()


class CSRFManager:
    """Issue and consume single-use anti-forgery tokens.

    Tokens have the shape ``nonce:timestamp_ms:session_id:signature`` where the
    signature is a hex HMAC-SHA256 over the first three fields. A token is
    removed from the store by the same atomic step that looks it up, so at
    most one request can ever be validated with it, whatever happens after.
    """

    def __init__(
        self,
        store: MemoryStore,
        secret: str,
        *,
        cache: Optional[RedisCache] = None,
        ttl_seconds: float = 3600,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self._secret = secret
        self.ttl_seconds = ttl_seconds
        self._clock = clock or time.time

    def _now(self) -> float:
        return self._clock()

    async def issue(self, session_id: Optional[str] = None) -> CSRFToken:
        now = self._now()
        data = f"{secrets.token_hex(NONCE_BYTES)}:{int(now * 1000)}:{session_id or ''}"
        token = f"{data}:{_sign(self._secret, data)}"
        record = CSRFRecord(issued_at=now, session_id=session_id)
        if self.cache:
            await self.cache.put_csrf_token(token, record, int(self.ttl_seconds) + 1)
        else:
            self.store.put_csrf_token(token, record)
            self.sweep()
        return CSRFToken(token=token, expires_at=now + self.ttl_seconds)

    async def validate(self, token: Optional[str], session_id: Optional[str] = None) -> bool:
        if not token:
            return False
        if self.cache:
            record = await self.cache.pop_csrf_token(token)
        else:
            record = self.store.pop_csrf_token(token)
        if record is None:
            logger.info("csrf_token_unknown")
            return False
        if self._now() - record.issued_at > self.ttl_seconds:
            logger.info("csrf_token_expired")
            return False
        parts = token.split(":")
        if len(parts) != 4:
            return False
        nonce, timestamp, bound_session, signature = parts
        expected = _sign(self._secret, f"{nonce}:{timestamp}:{bound_session}")
        if not hmac.compare_digest(expected.encode(), signature.encode()):
            logger.warning("csrf_signature_mismatch")
            return False
        if record.session_id and record.session_id != session_id:
            logger.warning("csrf_session_mismatch")
            return False
        return True

    def sweep(self) -> int:
        removed = self.store.sweep_csrf_tokens(self._now(), self.ttl_seconds)
        if removed:
            logger.debug("csrf_tokens_swept", removed=removed)
        return removed


class DoubleSubmitCSRF:
    """Stateless cookie + header pairing for deployments without a token store.

    The cookie holds ``base64(random:timestamp_ms)`` and the header an HMAC of
    that cookie value. Nothing is recorded server-side, so a pair stays
    replayable until it expires; prefer ``CSRFManager`` wherever a store exists.
    """

    cookie_name = CSRF_COOKIE
    header_name = CSRF_HEADER

    def __init__(
        self,
        secret: str,
        *,
        ttl_seconds: float = 3600,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self._secret = secret
        self.ttl_seconds = ttl_seconds
        self._clock = clock or time.time

    def generate_pair(self) -> tuple[str, str]:
        raw = f"{secrets.token_hex(NONCE_BYTES)}:{int(self._clock() * 1000)}"
        cookie_value = base64.b64encode(raw.encode()).decode()
        return cookie_value, _sign(self._secret, cookie_value)

    def validate_pair(self, cookie_value: Optional[str], header_value: Optional[str]) -> bool:
        if not cookie_value or not header_value:
            return False
        if not hmac.compare_digest(
            _sign(self._secret, cookie_value).encode(), header_value.encode()
        ):
            return False
        try:
            decoded = base64.b64decode(cookie_value, validate=True).decode()
        except (binascii.Error, UnicodeDecodeError):
            return False
        random_value, _, timestamp = decoded.partition(":")
        if not random_value or not timestamp.isdigit():
            return False
        return self._clock() - int(timestamp) / 1000 <= self.ttl_seconds
