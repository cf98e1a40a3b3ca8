"""Unit tests for the auth service.

Tests for:
- Password hashing, verification and strength scoring
- JWT encoding, algorithm pinning and audience separation
- Session registry: expiry, revocation, refresh rotation and reuse
- Login throttling and admin authentication
"""

import base64
import json

import pytest

from ventaro.config import Settings
from ventaro.service.auth import (
    AuthService,
    LoginThrottle,
    PasswordManager,
    SessionManager,
    TokenManager,
)
from ventaro.service.errors import AuthenticationError, AuthorizationError, RateLimitedError
from ventaro.storage.memory import MemoryStore
from ventaro.storage.models import ADMIN_PERMISSIONS, Role, User

PASSWORD = "Str0ng!Passphrase"


@pytest.fixture(scope="module")
def passwords():
    return PasswordManager()


@pytest.fixture(scope="module")
def admin_hash(passwords):
    return passwords.hash(PASSWORD)


@pytest.fixture
def settings(admin_hash):
    return Settings(
        jwt_secret="unit-access-secret-0123456789abcdefghijklmnop",
        jwt_refresh_secret="unit-refresh-secret-0123456789abcdefghijklmno",
        admin_username="admin",
        admin_password_hash=admin_hash,
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def tokens(settings, clock):
    return TokenManager(settings, clock=clock)


@pytest.fixture
def sessions(store, tokens, clock):
    return SessionManager(store, tokens, clock=clock)


@pytest.fixture
def throttle(store, clock):
    return LoginThrottle(store, clock=clock)


@pytest.fixture
def auth(settings, sessions, throttle, passwords, clock):
    return AuthService(settings, sessions, throttle, passwords=passwords, clock=clock)


@pytest.fixture
def admin():
    return User(id="1", username="admin", role=Role.ADMIN, permissions=ADMIN_PERMISSIONS)


class TestPasswordManager:
    def test_hash_and_verify(self, passwords, admin_hash):
        assert admin_hash.startswith("$argon2id$")
        assert passwords.verify(admin_hash, PASSWORD)
        assert not passwords.verify(admin_hash, "wrong-password")

    def test_verify_tolerates_garbage(self, passwords):
        assert not passwords.verify("not-a-hash", PASSWORD)
        assert not passwords.verify(None, PASSWORD)
        assert not passwords.verify("", PASSWORD)

    def test_short_password_is_refused(self, passwords):
        with pytest.raises(ValueError):
            passwords.hash("short")

    def test_needs_rehash(self, passwords, admin_hash):
        assert not passwords.needs_rehash(admin_hash)
        assert passwords.needs_rehash("garbage")

    def test_generated_password_is_strong(self):
        generated = PasswordManager.generate_secure_password(16)
        assert len(generated) == 16
        assert PasswordManager.check_strength(generated).score >= 6

    def test_generated_password_minimum_length(self):
        with pytest.raises(ValueError):
            PasswordManager.generate_secure_password(3)

    def test_strength_scoring(self):
        strong = PasswordManager.check_strength("Xk9#mQ2$vL7!")
        assert strong.score == 7
        assert strong.is_strong
        assert strong.feedback == []

        weak = PasswordManager.check_strength("password")
        assert not weak.is_strong
        assert "Add uppercase letters" in weak.feedback
        assert "Add numbers" in weak.feedback
        assert "Add special characters" in weak.feedback

    def test_repeated_pattern_costs_a_point(self):
        result = PasswordManager.check_strength("abAB12!!abAB")
        assert "Avoid repeated patterns" in result.feedback


class TestTokenManager:
    def _segments(self, token):
        return token.split(".")

    async def test_access_token_claims(self, sessions, tokens, admin):
        pair = await sessions.create_session(admin)
        payload = tokens.decode_access(pair.access_token)
        assert payload["sid"] == pair.session_id
        assert payload["role"] == "admin"
        assert payload["aud"] == "ventaro-ai-users"
        assert payload["iss"] == "ventaro-ai"
        assert set(payload["permissions"]) == set(ADMIN_PERMISSIONS)

    async def test_refresh_and_access_are_not_interchangeable(self, sessions, tokens, admin):
        pair = await sessions.create_session(admin)
        assert tokens.decode_access(pair.refresh_token) is None
        assert tokens.decode_refresh(pair.access_token) is None
        assert await sessions.validate_access_token(pair.refresh_token) is None

    async def test_tampered_signature_is_rejected(self, sessions, tokens, admin):
        pair = await sessions.create_session(admin)
        header, payload, signature = self._segments(pair.access_token)
        flipped = ("A" if signature[0] != "A" else "B") + signature[1:]
        assert tokens.decode_access(f"{header}.{payload}.{flipped}") is None

    async def test_algorithm_none_is_rejected(self, sessions, tokens, admin):
        pair = await sessions.create_session(admin)
        _, payload, signature = self._segments(pair.access_token)
        none_header = base64.urlsafe_b64encode(
            json.dumps({"alg": "none", "typ": "JWT"}).encode()
        ).decode().rstrip("=")
        assert tokens.decode_access(f"{none_header}.{payload}.{signature}") is None
        assert tokens.decode_access(f"{none_header}.{payload}.") is None

    def test_malformed_tokens(self, tokens):
        assert tokens.decode_access("") is None
        assert tokens.decode_access("a.b") is None
        assert tokens.decode_access("a.b.c") is None

    @pytest.mark.parametrize(
        "header,expected",
        [
            ("Bearer abc", "abc"),
            ("bearer  abc ", "abc"),
            ("Basic abc", None),
            ("Bearer ", None),
            (None, None),
        ],
    )
    def test_extract_bearer(self, header, expected):
        assert TokenManager.extract_bearer(header) == expected


class TestSessionManager:
    async def test_valid_session_round_trip(self, sessions, admin):
        pair = await sessions.create_session(admin)
        session = await sessions.validate_access_token(pair.access_token)
        assert session.session_id == pair.session_id
        assert session.role == Role.ADMIN
        assert "admin:write" in session.permissions

    async def test_session_expiry(self, sessions, admin, clock):
        pair = await sessions.create_session(admin, ttl_seconds=60)
        clock.advance(59)
        assert await sessions.validate_access_token(pair.access_token) is not None
        clock.advance(1)
        assert await sessions.validate_access_token(pair.access_token) is None

    async def test_revocation_is_immediate(self, sessions, admin):
        pair = await sessions.create_session(admin)
        await sessions.invalidate_session(pair.session_id)
        assert await sessions.validate_access_token(pair.access_token) is None

    async def test_refresh_rotates_session(self, sessions, admin):
        original = await sessions.create_session(admin)
        rotated = await sessions.refresh_session(original.refresh_token)
        assert rotated is not None
        assert rotated.session_id != original.session_id
        assert await sessions.validate_access_token(original.access_token) is None
        assert await sessions.validate_access_token(rotated.access_token) is not None

    async def test_reused_refresh_token_is_invalid_and_revokes_family(self, sessions, admin, store):
        original = await sessions.create_session(admin)
        rotated = await sessions.refresh_session(original.refresh_token)
        assert await sessions.refresh_session(original.refresh_token) is None
        # Replay of a consumed token takes the whole family down
        assert await sessions.validate_access_token(rotated.access_token) is None
        assert await sessions.refresh_session(rotated.refresh_token) is None
        assert store.session_count() == 0

    async def test_reuse_leaves_other_families_alone(self, sessions, admin):
        first = await sessions.create_session(admin)
        second = await sessions.create_session(admin)
        await sessions.refresh_session(first.refresh_token)
        await sessions.refresh_session(first.refresh_token)
        assert await sessions.validate_access_token(second.access_token) is not None

    async def test_refresh_after_access_expiry(self, sessions, admin, clock):
        pair = await sessions.create_session(admin)
        clock.advance(2 * 24 * 60 * 60)
        assert await sessions.validate_access_token(pair.access_token) is None
        assert await sessions.refresh_session(pair.refresh_token) is not None

    async def test_refresh_token_expires(self, sessions, admin, clock):
        pair = await sessions.create_session(admin)
        clock.advance(7 * 24 * 60 * 60)
        assert await sessions.refresh_session(pair.refresh_token) is None

    async def test_cleanup_keeps_refreshable_sessions(self, sessions, admin, clock, store):
        await sessions.create_session(admin)
        clock.advance(2 * 24 * 60 * 60)
        assert sessions.cleanup_expired() == 0
        clock.advance(6 * 24 * 60 * 60)
        assert sessions.cleanup_expired() == 1
        assert store.session_count() == 0


class TestLoginThrottle:
    async def test_locks_after_max_attempts(self, throttle, clock):
        for _ in range(4):
            await throttle.record_failure("1.2.3.4")
        assert await throttle.locked_until("1.2.3.4") is None
        await throttle.record_failure("1.2.3.4")
        assert await throttle.locked_until("1.2.3.4") == clock.now + 30 * 60

    async def test_lock_expires(self, throttle, clock):
        for _ in range(5):
            await throttle.record_failure("1.2.3.4")
        clock.advance(30 * 60)
        assert await throttle.locked_until("1.2.3.4") is None

    async def test_window_resets_count(self, throttle, clock):
        for _ in range(4):
            await throttle.record_failure("1.2.3.4")
        clock.advance(15 * 60)
        attempt = await throttle.record_failure("1.2.3.4")
        assert attempt.count == 1

    async def test_reset_clears_failures(self, throttle):
        for _ in range(4):
            await throttle.record_failure("1.2.3.4")
        await throttle.reset("1.2.3.4")
        attempt = await throttle.record_failure("1.2.3.4")
        assert attempt.count == 1


class TestAuthService:
    async def test_successful_login(self, auth):
        login = await auth.authenticate_admin("admin", PASSWORD, "1.2.3.4")
        assert login.user.role == Role.ADMIN
        assert login.password_strength.is_strong
        session = await auth.require_auth(f"Bearer {login.tokens.access_token}")
        assert session.session_id == login.tokens.session_id

    async def test_wrong_password(self, auth):
        with pytest.raises(AuthenticationError):
            await auth.authenticate_admin("admin", "Wrong!Passw0rd", "1.2.3.4")

    async def test_wrong_username(self, auth):
        with pytest.raises(AuthenticationError):
            await auth.authenticate_admin("root", PASSWORD, "1.2.3.4")

    async def test_lockout_rejects_correct_credentials(self, auth, clock):
        for _ in range(5):
            with pytest.raises(AuthenticationError):
                await auth.authenticate_admin("admin", "Wrong!Passw0rd", "1.2.3.4")
        with pytest.raises(RateLimitedError) as excinfo:
            await auth.authenticate_admin("admin", PASSWORD, "1.2.3.4")
        assert excinfo.value.headers["Retry-After"] == str(30 * 60)
        assert excinfo.value.safe_message == "Too many login attempts. Please try again later."
        # Other identities are unaffected
        await auth.authenticate_admin("admin", PASSWORD, "5.6.7.8")
        clock.advance(30 * 60)
        await auth.authenticate_admin("admin", PASSWORD, "1.2.3.4")

    async def test_missing_hash_never_authenticates(self, settings, sessions, throttle, passwords):
        service = AuthService(
            settings.model_copy(update={"admin_password_hash": None}),
            sessions,
            throttle,
            passwords=passwords,
        )
        with pytest.raises(AuthenticationError):
            await service.authenticate_admin("admin", PASSWORD, "1.2.3.4")

    async def test_require_auth_cookie_fallback(self, auth):
        login = await auth.authenticate_admin("admin", PASSWORD, "1.2.3.4")
        session = await auth.require_auth(None, login.tokens.access_token)
        assert session.username == "admin"

    async def test_require_auth_without_credential(self, auth):
        with pytest.raises(AuthenticationError):
            await auth.require_auth(None, None)
        with pytest.raises(AuthenticationError):
            await auth.require_auth("Bearer not-a-token")

    async def test_permissions(self, auth, sessions):
        user = User(id="2", username="viewer", role=Role.USER, permissions=frozenset({"admin:read"}))
        pair = await sessions.create_session(user)
        session = await sessions.validate_access_token(pair.access_token)
        assert auth.require_permission(session, "admin:read")
        assert not auth.require_permission(session, "admin:write")
        with pytest.raises(AuthorizationError):
            auth.ensure_permission(session, "admin:write")

    async def test_refresh_and_logout(self, auth):
        login = await auth.authenticate_admin("admin", PASSWORD, "1.2.3.4")
        rotated = await auth.refresh(login.tokens.refresh_token)
        session = await auth.require_auth(f"Bearer {rotated.access_token}")
        await auth.logout(session)
        with pytest.raises(AuthenticationError):
            await auth.require_auth(f"Bearer {rotated.access_token}")
        with pytest.raises(AuthenticationError):
            await auth.refresh(None)
