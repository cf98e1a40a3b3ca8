from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


class Role(str, Enum):
    ADMIN = "admin"
    USER = "user"


ADMIN_PERMISSIONS = frozenset(
    {"admin:read", "admin:write", "admin:delete", "seo:manage", "analytics:view"}
)


@dataclass
class User:
    id: str
    username: str
    role: Role = Role.USER
    permissions: frozenset[str] = field(default_factory=frozenset)


@dataclass
class SessionRecord:
    """Registry entry for an active session.

    ``refresh_jti`` identifies the only refresh token currently allowed to
    rotate this session; ``token_family`` is shared by every session minted
    from the same login.
    """

    session_id: str
    user_id: str
    username: str
    role: Role
    permissions: frozenset[str]
    issued_at: datetime
    expires_at: datetime
    token_family: str
    refresh_jti: str
    refresh_expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def is_reclaimable(self, now: datetime) -> bool:
        """True once neither the access nor the refresh credential can use it."""
        return now >= max(self.expires_at, self.refresh_expires_at)


@dataclass
class CSRFRecord:
    issued_at: float
    session_id: Optional[str] = None


@dataclass
class RateBucket:
    """Counter for one identity and window.

    For token buckets ``count`` holds the remaining tokens and
    ``window_start`` the last refill time.
    """

    count: float
    window_start: float
    window_seconds: float


@dataclass
class LoginAttempt:
    count: int
    window_reset_at: float
    locked_until: Optional[float] = None

    def is_locked(self, now: float) -> bool:
        return self.locked_until is not None and now < self.locked_until


@dataclass
class Purchase:
    email: str
    checkout_session_id: str
    recorded_at: datetime
