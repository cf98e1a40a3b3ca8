from __future__ import annotations

import base64
import hashlib
import hmac
import json
import math
import re
import secrets
import string
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from ventaro.config import Settings
from ventaro.logging import get_logger
from ventaro.service.errors import AuthenticationError, AuthorizationError, RateLimitedError
from ventaro.storage.memory import MemoryStore
from ventaro.storage.models import ADMIN_PERMISSIONS, LoginAttempt, Role, SessionRecord, User
from ventaro.storage.redis_cache import RedisCache

logger = get_logger(__name__)

ACCESS_COOKIE = "admin-token"
REFRESH_COOKIE = "refresh-token"
REFRESH_COOKIE_PATH = "/api/admin/refresh"

_SPECIAL_CHARS_RE = re.compile(r"[!@#$%^&*(),.?\":{}|<>]")
_REPEATED_PATTERN_RE = re.compile(r"(..).*\1")


@dataclass(frozen=True)
class SessionData:
    session_id: str
    user_id: str
    username: str
    role: Role
    permissions: frozenset[str]
    issued_at: datetime
    expires_at: datetime

    @classmethod
    def from_record(cls, record: SessionRecord) -> "SessionData":
        return cls(
            session_id=record.session_id,
            user_id=record.user_id,
            username=record.username,
            role=record.role,
            permissions=record.permissions,
            issued_at=record.issued_at,
            expires_at=record.expires_at,
        )


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_at: datetime
    session_id: str


@dataclass
class PasswordStrength:
    score: int
    feedback: list[str] = field(default_factory=list)

    @property
    def is_strong(self) -> bool:
        return self.score >= 5


class PasswordManager:
    """argon2id hashing plus the strength scorer used when minting the admin hash."""

    MIN_LENGTH = 8

    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None

    def hash(self, password: str) -> str:
        if not password or len(password) < self.MIN_LENGTH:
            raise ValueError(f"Password must be at least {self.MIN_LENGTH} characters long")
        return self._hasher.hash(password)

    def verify(self, stored_hash: Optional[str], password: str) -> bool:
        if not stored_hash or not password:
            return False
        try:
            return self._hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def burn_verify(self, password: str) -> None:
        """Spend the same work as a real verify so unknown users cost as much as known ones."""
        if self._dummy_hash is None:
            self._dummy_hash = self._hasher.hash(secrets.token_hex(16))
        self.verify(self._dummy_hash, password or "x")

    def needs_rehash(self, stored_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(stored_hash)
        except InvalidHash:
            return True

    @staticmethod
    def generate_secure_password(length: int = 16) -> str:
        if length < 4:
            raise ValueError("length must be at least 4")
        specials = "!@#$%^&*"
        alphabet = string.ascii_letters + string.digits + specials
        chars = [
            secrets.choice(string.ascii_uppercase),
            secrets.choice(string.ascii_lowercase),
            secrets.choice(string.digits),
            secrets.choice(specials),
        ]
        chars.extend(secrets.choice(alphabet) for _ in range(length - len(chars)))
        secrets.SystemRandom().shuffle(chars)
        return "".join(chars)

    @staticmethod
    def check_strength(password: str) -> PasswordStrength:
        score = 0
        feedback: list[str] = []
        if len(password) >= 8:
            score += 1
        else:
            feedback.append("Password should be at least 8 characters long")
        if len(password) >= 12:
            score += 1
        if re.search(r"[a-z]", password):
            score += 1
        else:
            feedback.append("Add lowercase letters")
        if re.search(r"[A-Z]", password):
            score += 1
        else:
            feedback.append("Add uppercase letters")
        if re.search(r"\d", password):
            score += 1
        else:
            feedback.append("Add numbers")
        if _SPECIAL_CHARS_RE.search(password):
            score += 1
        else:
            feedback.append("Add special characters")
        if not _REPEATED_PATTERN_RE.search(password):
            score += 1
        else:
            feedback.append("Avoid repeated patterns")
        return PasswordStrength(score=score, feedback=feedback)


class TokenManager:
    """HS256 JWTs with separate secrets and audiences for access and refresh."""

    def __init__(self, settings: Settings, *, clock: Optional[Callable[[], float]] = None) -> None:
        self.settings = settings
        self._clock = clock or time.time

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _signature(self, secret: str, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode(self, payload: dict[str, Any], secret: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._signature(secret, signing_input)}"

    def _decode(
        self, token: str, secret: str, audience: str, token_type: str
    ) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None
        # Pin the algorithm so a forged header cannot downgrade verification
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None
        expected_sig = self._signature(secret, f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        if payload.get("aud") != audience:
            return None
        if payload.get("token_type") != token_type:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= self._clock():
            return None
        return payload

    def issue_access(self, record: SessionRecord) -> str:
        return self._encode(
            {
                "iss": self.settings.jwt_issuer,
                "aud": self.settings.jwt_access_audience,
                "sub": record.user_id,
                "sid": record.session_id,
                "username": record.username,
                "role": record.role.value,
                "permissions": sorted(record.permissions),
                "token_type": "access",
                "iat": int(record.issued_at.timestamp()),
                "exp": math.ceil(record.expires_at.timestamp()),
            },
            self.settings.jwt_secret,
        )

    def issue_refresh(self, record: SessionRecord) -> str:
        return self._encode(
            {
                "iss": self.settings.jwt_issuer,
                "aud": self.settings.jwt_refresh_audience,
                "sub": record.user_id,
                "sid": record.session_id,
                "family": record.token_family,
                "jti": record.refresh_jti,
                "token_type": "refresh",
                "iat": int(record.issued_at.timestamp()),
                "exp": math.ceil(record.refresh_expires_at.timestamp()),
            },
            self.settings.jwt_refresh_secret,
        )

    def decode_access(self, token: str) -> Optional[dict[str, Any]]:
        return self._decode(
            token, self.settings.jwt_secret, self.settings.jwt_access_audience, "access"
        )

    def decode_refresh(self, token: str) -> Optional[dict[str, Any]]:
        return self._decode(
            token, self.settings.jwt_refresh_secret, self.settings.jwt_refresh_audience, "refresh"
        )

    @staticmethod
    def extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        token = header.split(" ", 1)[1].strip()
        return token or None


class SessionManager:
    """Active-session registry backing stateless tokens.

    A token is honoured only while its session id is still registered, which
    is what makes revocation immediate. Refresh rotates: the old entry is
    swapped for a new session id in one atomic step and the used refresh id is
    remembered, so replaying it revokes every session in its family.
    """

    def __init__(
        self,
        store: MemoryStore,
        tokens: TokenManager,
        *,
        cache: Optional[RedisCache] = None,
        access_ttl_seconds: float = 24 * 60 * 60,
        refresh_ttl_seconds: float = 7 * 24 * 60 * 60,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.tokens = tokens
        self.access_ttl_seconds = access_ttl_seconds
        self.refresh_ttl_seconds = refresh_ttl_seconds
        self._clock = clock or time.time

    def _now(self) -> datetime:
        """Timezone-aware UTC helper driven by the injected clock."""

        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def _new_record(
        self,
        user_id: str,
        username: str,
        role: Role,
        permissions: frozenset[str],
        *,
        token_family: str,
        ttl_seconds: Optional[float] = None,
    ) -> SessionRecord:
        now = self._now()
        access_ttl = self.access_ttl_seconds if ttl_seconds is None else ttl_seconds
        return SessionRecord(
            session_id=str(uuid.uuid4()),
            user_id=user_id,
            username=username,
            role=role,
            permissions=frozenset(permissions),
            issued_at=now,
            expires_at=now + timedelta(seconds=access_ttl),
            token_family=token_family,
            refresh_jti=secrets.token_urlsafe(24),
            refresh_expires_at=now + timedelta(seconds=self.refresh_ttl_seconds),
        )

    def _pair(self, record: SessionRecord) -> TokenPair:
        return TokenPair(
            access_token=self.tokens.issue_access(record),
            refresh_token=self.tokens.issue_refresh(record),
            expires_at=record.expires_at,
            session_id=record.session_id,
        )

    async def create_session(self, user: User, *, ttl_seconds: Optional[float] = None) -> TokenPair:
        record = self._new_record(
            user.id,
            user.username,
            user.role,
            user.permissions,
            token_family=str(uuid.uuid4()),
            ttl_seconds=ttl_seconds,
        )
        if self.cache:
            await self.cache.put_session(record, self._now())
        else:
            self.store.put_session(record)
        logger.info("session_created", session_id=record.session_id, user_id=user.id)
        return self._pair(record)

    async def _get_record(self, session_id: str) -> Optional[SessionRecord]:
        if self.cache:
            return await self.cache.get_session(session_id)
        return self.store.get_session(session_id)

    async def validate_access_token(self, token: Optional[str]) -> Optional[SessionData]:
        if not token:
            return None
        payload = self.tokens.decode_access(token)
        if not payload:
            return None
        session_id = payload.get("sid")
        if not isinstance(session_id, str):
            return None
        record = await self._get_record(session_id)
        if record is None or record.is_expired(self._now()):
            return None
        return SessionData.from_record(record)

    async def refresh_session(self, refresh_token: Optional[str]) -> Optional[TokenPair]:
        if not refresh_token:
            return None
        payload = self.tokens.decode_refresh(refresh_token)
        if not payload:
            return None
        session_id, jti = payload.get("sid"), payload.get("jti")
        if not isinstance(session_id, str) or not isinstance(jti, str):
            return None
        record = await self._get_record(session_id)
        now = self._now()
        if record is None or record.refresh_jti != jti:
            await self._handle_refresh_reuse(jti)
            return None
        if now >= record.refresh_expires_at:
            return None

        successor = self._new_record(
            record.user_id,
            record.username,
            record.role,
            record.permissions,
            token_family=record.token_family,
        )
        consumed_ttl = max(1, int((record.refresh_expires_at - now).total_seconds()))
        if self.cache:
            rotated = await self.cache.rotate_session(
                session_id, jti, successor, consumed_ttl, now
            )
        else:
            rotated = self.store.rotate_session(
                session_id, jti, successor, record.refresh_expires_at.timestamp()
            )
        if not rotated:
            # A concurrent refresh with the same token won the swap
            logger.warning("session_refresh_race_lost", session_id=session_id)
            return None
        logger.info(
            "session_refreshed",
            old_session_id=session_id,
            session_id=successor.session_id,
        )
        return self._pair(successor)

    async def _handle_refresh_reuse(self, jti: str) -> None:
        if self.cache:
            family = await self.cache.consumed_refresh_family(jti)
        else:
            family = self.store.consumed_refresh_family(jti)
        if not family:
            return
        if self.cache:
            revoked = await self.cache.revoke_family(family)
        else:
            revoked = self.store.revoke_family(family)
        logger.warning("refresh_token_reuse_detected", token_family=family, revoked=revoked)

    async def invalidate_session(self, session_id: str) -> None:
        if self.cache:
            await self.cache.delete_session(session_id)
        else:
            self.store.delete_session(session_id)
        logger.info("session_invalidated", session_id=session_id)

    def cleanup_expired(self) -> int:
        """Sweep sessions no credential can use any more; Redis expires its own."""
        removed = self.store.sweep_sessions(self._now())
        if removed:
            logger.debug("sessions_swept", removed=removed)
        return removed


class LoginThrottle:
    """Lock an identity out after repeated failed logins.

    Independent of the request rate limiter: only failures count, and a
    successful login clears the record.
    """

    def __init__(
        self,
        store: MemoryStore,
        *,
        cache: Optional[RedisCache] = None,
        max_attempts: int = 5,
        lockout_seconds: int = 30 * 60,
        window_seconds: int = 15 * 60,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.max_attempts = max_attempts
        self.lockout_seconds = lockout_seconds
        self.window_seconds = window_seconds
        self._clock = clock or time.time

    async def locked_until(self, identity: str) -> Optional[float]:
        now = self._clock()
        if self.cache:
            attempt = await self.cache.get_login_attempt(identity, now)
        else:
            attempt = self.store.get_login_attempt(identity)
        if attempt is not None and attempt.is_locked(now):
            return attempt.locked_until
        return None

    async def record_failure(self, identity: str) -> LoginAttempt:
        now = self._clock()
        if self.cache:
            attempt = await self.cache.record_login_failure(
                identity,
                now,
                max_attempts=self.max_attempts,
                window_seconds=self.window_seconds,
                lockout_seconds=self.lockout_seconds,
            )
        else:
            attempt = self.store.record_login_failure(
                identity,
                now,
                max_attempts=self.max_attempts,
                window_seconds=self.window_seconds,
                lockout_seconds=self.lockout_seconds,
            )
        if attempt.is_locked(now):
            logger.warning("login_identity_locked", identity=identity, attempts=attempt.count)
        return attempt

    async def reset(self, identity: str) -> None:
        if self.cache:
            await self.cache.clear_login_attempts(identity)
        else:
            self.store.clear_login_attempts(identity)

    def sweep(self) -> int:
        return self.store.sweep_login_attempts(self._clock())


@dataclass(frozen=True)
class AdminLogin:
    user: User
    tokens: TokenPair
    password_strength: PasswordStrength


class AuthService:
    """Admin login, credential resolution and permission checks."""

    def __init__(
        self,
        settings: Settings,
        sessions: SessionManager,
        throttle: LoginThrottle,
        *,
        passwords: Optional[PasswordManager] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.settings = settings
        self.sessions = sessions
        self.throttle = throttle
        self.passwords = passwords or PasswordManager()
        self._clock = clock or time.time

    def admin_user(self) -> User:
        return User(
            id="1",
            username=self.settings.admin_username,
            role=Role.ADMIN,
            permissions=ADMIN_PERMISSIONS,
        )

    async def authenticate_admin(
        self, username: str, password: str, identity: str
    ) -> AdminLogin:
        locked_until = await self.throttle.locked_until(identity)
        if locked_until is not None:
            retry_after = max(1, math.ceil(locked_until - self._clock()))
            logger.warning("admin_login_locked_out", identity=identity, retry_after=retry_after)
            raise RateLimitedError(
                "login identity locked out",
                headers={"Retry-After": str(retry_after)},
                user_message="Too many login attempts. Please try again later.",
            )

        stored_hash = self.settings.admin_password_hash
        username_ok = hmac.compare_digest(
            username.encode(), self.settings.admin_username.encode()
        )
        if stored_hash and username_ok:
            password_ok = self.passwords.verify(stored_hash, password)
        else:
            if not stored_hash:
                logger.error("admin_password_hash_missing")
            self.passwords.burn_verify(password)
            password_ok = False

        if not password_ok:
            attempt = await self.throttle.record_failure(identity)
            logger.warning(
                "admin_login_failed",
                identity=identity,
                attempts=attempt.count,
            )
            raise AuthenticationError("invalid admin credentials")

        await self.throttle.reset(identity)
        if self.passwords.needs_rehash(stored_hash):
            logger.info("admin_password_hash_outdated")
        strength = self.passwords.check_strength(password)
        if not strength.is_strong:
            logger.warning("admin_password_weak", score=strength.score)
        user = self.admin_user()
        tokens = await self.sessions.create_session(user)
        logger.info("admin_login_succeeded", identity=identity, session_id=tokens.session_id)
        return AdminLogin(user=user, tokens=tokens, password_strength=strength)

    async def require_auth(
        self, authorization: Optional[str], cookie_token: Optional[str] = None
    ) -> SessionData:
        token = TokenManager.extract_bearer(authorization) or cookie_token
        if not token:
            raise AuthenticationError("missing credential")
        session = await self.sessions.validate_access_token(token)
        if session is None:
            raise AuthenticationError("invalid or expired session")
        return session

    @staticmethod
    def require_permission(session: SessionData, permission: str) -> bool:
        return permission in session.permissions

    def ensure_permission(self, session: SessionData, permission: str) -> None:
        if not self.require_permission(session, permission):
            logger.warning(
                "permission_denied",
                session_id=session.session_id,
                permission=permission,
            )
            raise AuthorizationError(f"missing permission {permission}")

    async def refresh(self, refresh_token: Optional[str]) -> TokenPair:
        if not refresh_token:
            raise AuthenticationError("no refresh token provided")
        tokens = await self.sessions.refresh_session(refresh_token)
        if tokens is None:
            raise AuthenticationError("invalid or expired refresh token")
        return tokens

    async def logout(self, session: SessionData) -> None:
        await self.sessions.invalidate_session(session.session_id)
