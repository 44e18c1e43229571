"""Unit tests for the auth service.

Tests for:
- Password hashing and verification
- Signup and login issuing sessions
- Google OAuth state handling and account linking
"""

from datetime import timedelta

import httpx
import pytest

from novachat.config import Settings
from novachat.service.auth import (
    AUTH_FAILED,
    EMAIL_EXISTS,
    AuthService,
    GoogleIdentity,
    GoogleOAuthClient,
)
from novachat.service.errors import (
    AuthenticationError,
    OAuthFlowError,
    PersistenceError,
    ValidationError,
)
from novachat.service.realtime import LocalConnectionDirectory, RevocationNotifier
from novachat.service.sessions import CredentialCodec, CredentialIssuer, LivenessGate
from novachat.storage.errors import ConstraintViolation
from novachat.storage.memory import MemoryStore


@pytest.fixture
def settings():
    """Create test settings."""
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        google_client_id="client-id.apps.googleusercontent.com",
        google_client_secret="client-secret",
        google_redirect_uri="http://localhost:8000/v1/auth/google/callback",
    )


@pytest.fixture
def memory_store(tmp_path):
    """Create memory store for testing."""
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def codec(settings):
    return CredentialCodec(settings)


@pytest.fixture
def auth_service(memory_store, settings, codec):
    """Create auth service for testing."""
    notifier = RevocationNotifier(LocalConnectionDirectory())
    issuer = CredentialIssuer(memory_store, codec, notifier)
    return AuthService(memory_store, None, settings, issuer=issuer, codec=codec)


@pytest.fixture
def gate(memory_store, codec):
    return LivenessGate(memory_store, codec)


class TestPasswordHashing:
    """Tests for password hashing."""

    def test_hash_uses_argon2id(self, auth_service):
        pwd_hash, algo = auth_service._hash_password("TestPassword123!")

        assert algo == "argon2id"
        assert pwd_hash.startswith("$argon2id$")

    def test_same_password_produces_different_hashes(self, auth_service):
        """Salting makes every hash unique."""
        first, _ = auth_service._hash_password("TestPassword123!")
        second, _ = auth_service._hash_password("TestPassword123!")
        assert first != second

    def test_verify_password(self, auth_service, memory_store):
        user = memory_store.create_user("hash@example.com")
        auth_service.save_password(user.id, "TestPassword123!")

        assert auth_service.verify_password(user.id, "TestPassword123!") is True
        assert auth_service.verify_password(user.id, "wrong") is False

    def test_oauth_marker_never_verifies(self, auth_service, memory_store):
        user = memory_store.create_user("oauth@example.com")
        memory_store.save_password(user.id, "oauth", "oauth")
        assert auth_service.verify_password(user.id, "oauth") is False

    def test_missing_record(self, auth_service, memory_store):
        user = memory_store.create_user("nopass@example.com")
        assert auth_service.verify_password(user.id, "anything") is False


class TestSignupAndLogin:
    async def test_signup_issues_live_session(self, auth_service, gate):
        user, credential = await auth_service.signup(
            "new@example.com", "TestPassword123!", "New User"
        )

        assert user.full_name == "New User"
        assert gate.validate(credential.token).ok

    async def test_signup_duplicate_email(self, auth_service):
        await auth_service.signup("dup@example.com", "TestPassword123!", "Dup")
        with pytest.raises(ConstraintViolation):
            await auth_service.signup("dup@example.com", "TestPassword123!", "Dup")

    async def test_signup_write_failure_leaves_no_account(
        self, auth_service, memory_store, monkeypatch
    ):
        """A signup that cannot be persisted can simply be retried."""
        write = memory_store._snapshot

        def disk_full():
            raise RuntimeError("failed to write memory store snapshot: disk full")

        monkeypatch.setattr(memory_store, "_snapshot", disk_full)
        with pytest.raises(PersistenceError):
            await auth_service.signup("retry@example.com", "TestPassword123!", "Retry")
        assert memory_store.get_user_by_email("retry@example.com") is None

        monkeypatch.setattr(memory_store, "_snapshot", write)
        user, _ = await auth_service.signup("retry@example.com", "TestPassword123!", "Retry")
        assert auth_service.verify_password(user.id, "TestPassword123!")

    async def test_signup_stores_password_with_account(self, auth_service, memory_store):
        user, _ = await auth_service.signup("pair@example.com", "TestPassword123!", "Pair")
        assert memory_store.get_password_record(user.id)[1] == "argon2id"

    async def test_login_supersedes(self, auth_service, gate):
        _, first = await auth_service.signup("two@example.com", "TestPassword123!", "Two")
        user, second = await auth_service.login("two@example.com", "TestPassword123!")

        assert user is not None
        assert gate.validate(first.token).reason == "SESSION_SUPERSEDED"
        assert gate.validate(second.token).ok

    async def test_login_wrong_password(self, auth_service):
        await auth_service.signup("wrong@example.com", "TestPassword123!", "W")
        assert await auth_service.login("wrong@example.com", "nope") == (None, None)

    async def test_logout_with_garbage_token(self, auth_service):
        assert await auth_service.logout("garbage") is False
        assert await auth_service.logout(None) is False


class TestChangePassword:
    async def test_change_requires_current_password(self, auth_service, gate):
        user, credential = await auth_service.signup(
            "change@example.com", "TestPassword123!", "Change"
        )

        with pytest.raises(AuthenticationError):
            auth_service.change_password(user.id, "NewPassword456!", "wrong-password")
        with pytest.raises(AuthenticationError):
            auth_service.change_password(user.id, "NewPassword456!")

        auth_service.change_password(user.id, "NewPassword456!", "TestPassword123!")
        assert auth_service.verify_password(user.id, "NewPassword456!")
        assert not auth_service.verify_password(user.id, "TestPassword123!")
        # the session that changed the password stays signed in
        assert gate.validate(credential.token).ok

    async def test_google_account_sets_first_password(self, auth_service):
        start = await auth_service.start_google_oauth()
        auth_service.register_oauth_code("code", {"google_id": "g-9", "email": "g9@example.com"})
        user, _ = await auth_service.complete_google_oauth("code", start["state"])

        auth_service.change_password(user.id, "FirstPassword1!")

        user, credential = await auth_service.login("g9@example.com", "FirstPassword1!")
        assert credential is not None


class TestGoogleOAuth:
    async def test_start_requires_configuration(self, memory_store, codec):
        bare = Settings(jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!")
        service = AuthService(
            memory_store, None, bare, issuer=CredentialIssuer(memory_store, codec), codec=codec
        )
        with pytest.raises(ValidationError):
            await service.start_google_oauth()

    async def test_insecure_redirect_rejected(self, auth_service):
        auth_service.settings = auth_service.settings.model_copy(
            update={"google_redirect_uri": "http://evil.example.com/callback"}
        )
        with pytest.raises(ValidationError):
            await auth_service.start_google_oauth()

    async def test_start_builds_consent_url(self, auth_service):
        start = await auth_service.start_google_oauth()

        assert start["authorization_url"].startswith(
            "https://accounts.google.com/o/oauth2/v2/auth?"
        )
        assert f"state={start['state']}" in start["authorization_url"]

    async def test_unknown_state(self, auth_service):
        with pytest.raises(OAuthFlowError) as exc_info:
            await auth_service.complete_google_oauth("code", "unknown")
        assert exc_info.value.reason == AUTH_FAILED

    async def test_expired_state(self, auth_service):
        start = await auth_service.start_google_oauth()
        provider, expires_at = auth_service._oauth_states[start["state"]]
        auth_service._oauth_states[start["state"]] = (provider, expires_at - timedelta(hours=1))
        auth_service.register_oauth_code("code", {"google_id": "g", "email": "g@example.com"})

        with pytest.raises(OAuthFlowError) as exc_info:
            await auth_service.complete_google_oauth("code", start["state"])
        assert exc_info.value.reason == AUTH_FAILED

    async def test_new_google_user_defaults_name(self, auth_service, memory_store):
        """Without a display name the email local part is used."""
        start = await auth_service.start_google_oauth()
        auth_service.register_oauth_code(
            "code", {"google_id": "g-1", "email": "Grace@Example.com"}
        )

        user, credential = await auth_service.complete_google_oauth("code", start["state"])

        assert user.email == "grace@example.com"
        assert user.full_name == "grace"
        assert memory_store.get_password_record(user.id)[1] == "oauth"
        assert credential.user_id == user.id

    async def test_password_email_conflict(self, auth_service):
        await auth_service.signup("taken@example.com", "TestPassword123!", "Taken")
        start = await auth_service.start_google_oauth()
        auth_service.register_oauth_code(
            "code", {"google_id": "g-2", "email": "taken@example.com"}
        )

        with pytest.raises(OAuthFlowError) as exc_info:
            await auth_service.complete_google_oauth("code", start["state"])
        assert exc_info.value.reason == EMAIL_EXISTS
        assert exc_info.value.status_code == 401


def _google(handler):
    return GoogleOAuthClient(
        "client-id",
        "client-secret",
        "http://localhost:8000/v1/auth/google/callback",
        transport=httpx.MockTransport(handler),
    )


class TestGoogleOAuthClient:
    def test_identity_accepts_userinfo_shapes(self):
        by_id = GoogleIdentity.from_payload({"id": 42, "email": " Ada@Example.com "})
        by_sub = GoogleIdentity.from_payload({"sub": "s-1", "email": "b@example.com"})

        assert by_id == GoogleIdentity(google_id="42", email="ada@example.com")
        assert by_sub.google_id == "s-1"
        assert GoogleIdentity.from_payload({"id": "x"}) is None
        assert GoogleIdentity.from_payload(["not", "a", "dict"]) is None

    async def test_exchange_fetches_profile(self):
        seen = []

        def handler(request):
            seen.append(request)
            if request.url.path == "/token":
                return httpx.Response(200, json={"access_token": "at-1"})
            return httpx.Response(
                200, json={"id": "g-9", "email": "nina@example.com", "name": "Nina"}
            )

        identity = await _google(handler).exchange("code-9")

        assert identity == GoogleIdentity(google_id="g-9", email="nina@example.com", name="Nina")
        assert b"code=code-9" in seen[0].content
        assert seen[1].headers["Authorization"] == "Bearer at-1"

    async def test_exchange_rejected_code(self):
        def handler(request):
            return httpx.Response(400, json={"error": "invalid_grant"})

        assert await _google(handler).exchange("bad") is None

    async def test_exchange_without_access_token(self):
        def handler(request):
            return httpx.Response(200, json={"token_type": "Bearer"})

        assert await _google(handler).exchange("code") is None

    async def test_exchange_network_failure(self):
        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        assert await _google(handler).exchange("code") is None
