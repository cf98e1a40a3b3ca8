from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Callable, Optional, Tuple, TypeVar

from ventaro.logging import get_logger
from ventaro.storage.models import (
    CSRFRecord,
    LoginAttempt,
    Purchase,
    RateBucket,
    SessionRecord,
)

logger = get_logger(__name__)

T = TypeVar("T")

BucketMutator = Callable[[Optional[RateBucket]], Tuple[Optional[RateBucket], T]]


class MemoryStore:
    """Process-local owner of sessions, CSRF tokens, rate buckets and login state.

    Each map has its own lock and every read-modify-write on an entry happens
    inside it, so operations on a key are linearizable across threads and
    tasks. Sweeps take a snapshot of candidate keys under the lock and delete
    them in a second short critical section so they never hold a lock for the
    length of a full scan.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, SessionRecord] = {}
        self._consumed_refresh: dict[str, tuple[str, float]] = {}  # jti -> (family, exp)
        self._session_lock = threading.Lock()

        self._csrf_tokens: dict[str, CSRFRecord] = {}
        self._csrf_lock = threading.Lock()

        self._rate_buckets: dict[str, RateBucket] = {}
        self._rate_lock = threading.Lock()

        self._login_attempts: dict[str, LoginAttempt] = {}
        self._login_lock = threading.Lock()

        self._purchases: dict[str, Purchase] = {}
        self._purchase_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def put_session(self, record: SessionRecord) -> None:
        with self._session_lock:
            self._sessions[record.session_id] = record

    def get_session(self, session_id: str) -> Optional[SessionRecord]:
        with self._session_lock:
            return self._sessions.get(session_id)

    def delete_session(self, session_id: str) -> Optional[SessionRecord]:
        with self._session_lock:
            return self._sessions.pop(session_id, None)

    def rotate_session(
        self,
        old_session_id: str,
        refresh_jti: str,
        new_record: SessionRecord,
        consumed_until: float,
    ) -> bool:
        """Replace a session with its successor if ``refresh_jti`` is current.

        The check, the removal of the old entry, the consumed-token marker
        and the insert of the new entry happen under one lock acquisition.
        """
        with self._session_lock:
            current = self._sessions.get(old_session_id)
            if current is None or current.refresh_jti != refresh_jti:
                return False
            del self._sessions[old_session_id]
            self._consumed_refresh[refresh_jti] = (current.token_family, consumed_until)
            self._sessions[new_record.session_id] = new_record
            return True

    def consumed_refresh_family(self, refresh_jti: str) -> Optional[str]:
        with self._session_lock:
            entry = self._consumed_refresh.get(refresh_jti)
        return entry[0] if entry else None

    def revoke_family(self, token_family: str) -> int:
        with self._session_lock:
            doomed = [
                sid
                for sid, record in self._sessions.items()
                if record.token_family == token_family
            ]
            for sid in doomed:
                del self._sessions[sid]
        return len(doomed)

    def session_count(self) -> int:
        with self._session_lock:
            return len(self._sessions)

    def sweep_sessions(self, now: datetime) -> int:
        with self._session_lock:
            expired = [
                sid for sid, record in self._sessions.items() if record.is_reclaimable(now)
            ]
            stale_refresh = [
                jti
                for jti, (_, exp) in self._consumed_refresh.items()
                if exp <= now.timestamp()
            ]
        removed = 0
        with self._session_lock:
            for sid in expired:
                record = self._sessions.get(sid)
                if record is not None and record.is_reclaimable(now):
                    del self._sessions[sid]
                    removed += 1
            for jti in stale_refresh:
                self._consumed_refresh.pop(jti, None)
        return removed

    # ------------------------------------------------------------------
    # CSRF tokens
    # ------------------------------------------------------------------

    def put_csrf_token(self, token: str, record: CSRFRecord) -> None:
        with self._csrf_lock:
            self._csrf_tokens[token] = record

    def pop_csrf_token(self, token: str) -> Optional[CSRFRecord]:
        """Atomically remove and return a token; at most one caller wins."""
        with self._csrf_lock:
            return self._csrf_tokens.pop(token, None)

    def csrf_token_count(self) -> int:
        with self._csrf_lock:
            return len(self._csrf_tokens)

    def sweep_csrf_tokens(self, now: float, ttl_seconds: float) -> int:
        cutoff = now - ttl_seconds
        with self._csrf_lock:
            expired = [
                token
                for token, record in self._csrf_tokens.items()
                if record.issued_at < cutoff
            ]
        removed = 0
        with self._csrf_lock:
            for token in expired:
                record = self._csrf_tokens.get(token)
                if record is not None and record.issued_at < cutoff:
                    del self._csrf_tokens[token]
                    removed += 1
        return removed

    # ------------------------------------------------------------------
    # Rate limit buckets
    # ------------------------------------------------------------------

    def mutate_rate_bucket(self, key: str, mutator: BucketMutator[T]) -> T:
        """Apply ``mutator`` to the bucket for ``key`` atomically.

        The mutator receives the current bucket (or None) and returns the
        bucket to store (None deletes it) plus a result passed back to the
        caller.
        """
        with self._rate_lock:
            updated, result = mutator(self._rate_buckets.get(key))
            if updated is None:
                self._rate_buckets.pop(key, None)
            else:
                self._rate_buckets[key] = updated
            return result

    def rate_bucket_count(self) -> int:
        with self._rate_lock:
            return len(self._rate_buckets)

    def sweep_rate_buckets(self, now: float) -> int:
        """Drop buckets whose window started more than two windows ago."""
        with self._rate_lock:
            stale = [
                key
                for key, bucket in self._rate_buckets.items()
                if bucket.window_start < now - 2 * bucket.window_seconds
            ]
        removed = 0
        with self._rate_lock:
            for key in stale:
                bucket = self._rate_buckets.get(key)
                # A request may have restarted the window since the snapshot
                if bucket is not None and bucket.window_start < now - 2 * bucket.window_seconds:
                    del self._rate_buckets[key]
                    removed += 1
        return removed

    # ------------------------------------------------------------------
    # Login throttling
    # ------------------------------------------------------------------

    def get_login_attempt(self, identity: str) -> Optional[LoginAttempt]:
        with self._login_lock:
            return self._login_attempts.get(identity)

    def record_login_failure(
        self,
        identity: str,
        now: float,
        *,
        max_attempts: int,
        window_seconds: float,
        lockout_seconds: float,
    ) -> LoginAttempt:
        with self._login_lock:
            attempt = self._login_attempts.get(identity)
            if attempt is None or (
                now >= attempt.window_reset_at and not attempt.is_locked(now)
            ):
                attempt = LoginAttempt(count=0, window_reset_at=now + window_seconds)
            attempt.count += 1
            if attempt.count >= max_attempts:
                attempt.locked_until = now + lockout_seconds
            self._login_attempts[identity] = attempt
            return LoginAttempt(attempt.count, attempt.window_reset_at, attempt.locked_until)

    def clear_login_attempts(self, identity: str) -> None:
        with self._login_lock:
            self._login_attempts.pop(identity, None)

    def sweep_login_attempts(self, now: float) -> int:
        with self._login_lock:
            stale = [
                identity
                for identity, attempt in self._login_attempts.items()
                if now >= attempt.window_reset_at and not attempt.is_locked(now)
            ]
            for identity in stale:
                del self._login_attempts[identity]
        return len(stale)

    # ------------------------------------------------------------------
    # Purchases
    # ------------------------------------------------------------------

    def record_purchase(self, email: str, checkout_session_id: str) -> Purchase:
        purchase = Purchase(
            email=email.lower(),
            checkout_session_id=checkout_session_id,
            recorded_at=datetime.now(timezone.utc),
        )
        with self._purchase_lock:
            self._purchases[purchase.email] = purchase
        logger.info("purchase_recorded", checkout_session_id=checkout_session_id)
        return purchase

    def get_purchase(self, email: str) -> Optional[Purchase]:
        with self._purchase_lock:
            return self._purchases.get(email.lower())

    def close(self) -> None:
        """Drop all process state; called on shutdown."""
        with self._session_lock:
            self._sessions.clear()
            self._consumed_refresh.clear()
        with self._csrf_lock:
            self._csrf_tokens.clear()
        with self._rate_lock:
            self._rate_buckets.clear()
        with self._login_lock:
            self._login_attempts.clear()
