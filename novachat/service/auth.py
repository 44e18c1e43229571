from __future__ import annotations

import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Tuple
from urllib.parse import urlencode, urlparse

import httpx
from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from novachat.config import Settings
from novachat.logging import get_logger
from novachat.service.errors import (
    AuthenticationError,
    OAuthFlowError,
    PersistenceError,
    ValidationError,
)
from novachat.service.sessions import (
    Credential,
    CredentialCodec,
    CredentialIssuer,
    SessionStore,
)
from novachat.storage.errors import ConstraintViolation
from novachat.storage.models import User
from novachat.storage.redis_cache import RedisCache

EMAIL_EXISTS = "email_exists"
AUTH_FAILED = "auth_failed"

PASSWORD_ALGO = "argon2id"
# stored for Google-only accounts; never matches PASSWORD_ALGO so never verifies
OAUTH_MARKER_ALGO = "oauth"
OAUTH_STATE_TTL = timedelta(minutes=10)

logger = get_logger(__name__)


@dataclass
class GoogleIdentity:
    google_id: str
    email: str
    name: str = ""
    picture: str = ""

    @classmethod
    def from_payload(cls, payload: Any) -> Optional["GoogleIdentity"]:
        """Accept Google's userinfo shape (``id`` or ``sub``); ``None`` if unusable."""
        if not isinstance(payload, dict):
            return None
        google_id = payload.get("google_id") or payload.get("id") or payload.get("sub")
        email = payload.get("email")
        if not google_id or not email:
            return None
        return cls(
            google_id=str(google_id),
            email=str(email).strip().lower(),
            name=payload.get("name") or "",
            picture=payload.get("picture") or "",
        )


class GoogleOAuthClient:
    """Authorization-code flow against Google's endpoints over httpx."""

    AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
    TOKEN_URL = "https://oauth2.googleapis.com/token"
    USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
    SCOPE = "openid email profile"

    def __init__(
        self,
        client_id: str,
        client_secret: Optional[str],
        redirect_uri: str,
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.timeout = timeout
        self.transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> "GoogleOAuthClient":
        if not settings.google_client_id:
            raise ValidationError("Google sign-in is not configured")
        if not settings.google_redirect_uri:
            raise ValidationError("No OAuth redirect URI configured")
        redirect = urlparse(settings.google_redirect_uri)
        if not redirect.netloc or redirect.scheme not in ("http", "https"):
            raise ValidationError("OAuth redirect URI must be an absolute http(s) URL")
        if redirect.scheme == "http" and redirect.hostname not in ("localhost", "127.0.0.1"):
            raise ValidationError("Insecure redirect URI not allowed outside localhost")
        return cls(
            settings.google_client_id,
            settings.google_client_secret,
            settings.google_redirect_uri,
        )

    def authorization_url(self, state: str) -> str:
        query = urlencode(
            {
                "client_id": self.client_id,
                "redirect_uri": self.redirect_uri,
                "response_type": "code",
                "scope": self.SCOPE,
                "state": state,
                "access_type": "offline",
                "prompt": "consent",
            }
        )
        return f"{self.AUTH_URL}?{query}"

    async def exchange(self, code: str) -> Optional[GoogleIdentity]:
        """Trade ``code`` for an access token, then fetch the user's profile."""
        if not self.client_secret:
            logger.error("oauth_credentials_missing", provider="google")
            return None
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, follow_redirects=False, transport=self.transport
            ) as http:
                token = await http.post(
                    self.TOKEN_URL,
                    data={
                        "client_id": self.client_id,
                        "client_secret": self.client_secret,
                        "code": code,
                        "redirect_uri": self.redirect_uri,
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token.raise_for_status()
                access_token = (token.json() or {}).get("access_token")
                if not access_token:
                    logger.error("oauth_no_access_token", provider="google")
                    return None
                profile = await http.get(
                    self.USERINFO_URL,
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                profile.raise_for_status()
                payload = profile.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_exchange_http_error",
                provider="google",
                status_code=exc.response.status_code,
            )
            return None
        except (httpx.HTTPError, ValueError, AttributeError) as exc:
            logger.error("oauth_exchange_error", provider="google", error=str(exc))
            return None
        return GoogleIdentity.from_payload(payload)


class AuthService:
    """Signup, login, logout and Google sign-in; each success issues a new session."""

    def __init__(
        self,
        store: SessionStore,
        cache: Optional[RedisCache],
        settings: Settings,
        *,
        issuer: CredentialIssuer,
        codec: CredentialCodec,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.issuer = issuer
        self.codec = codec
        self.logger = logger
        self._hasher = PasswordHasher(type=Type.ID)
        # without Redis, pending OAuth states live here: state -> (provider, expires_at)
        self._oauth_states: dict[str, tuple[str, datetime]] = {}
        self._state_lock = threading.Lock()
        self._preset_identities: dict[str, GoogleIdentity] = {}

    def _create_account(self, email: str, full_name: str, **fields: Any) -> User:
        try:
            return self.store.create_user(email=email, full_name=full_name, **fields)
        except ConstraintViolation:
            raise
        except Exception as exc:
            self.logger.error("user_persist_failed", error=str(exc))
            raise PersistenceError("failed to create account") from exc

    async def signup(
        self, email: str, password: str, full_name: str = ""
    ) -> tuple[User, Credential]:
        user = self._create_account(
            email, full_name, password=self._hash_password(password)
        )
        credential = await self.issuer.issue(user)
        self.logger.info("signup_completed", user_id=user.id)
        return user, credential

    async def login(
        self, email: str, password: str
    ) -> tuple[Optional[User], Optional[Credential]]:
        user = self.store.get_user_by_email(email)
        if user is None or not self.verify_password(user.id, password):
            return None, None
        return user, await self.issuer.issue(user)

    async def logout(self, token: Optional[str]) -> bool:
        """Clear the user's session if ``token`` still names it; otherwise do nothing."""
        claims = self.codec.decode(token) if token else None
        if not claims:
            return False
        return await self.issuer.revoke(str(claims["sub"]), str(claims["sid"]))

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._hasher.hash(password), PASSWORD_ALGO

    def save_password(self, user_id: str, password: str) -> None:
        self.store.save_password(user_id, *self._hash_password(password))

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if record is None:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            return False
        try:
            return self._hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            self.logger.info("password_mismatch", user_id=user_id)
            return False

    def change_password(
        self, user_id: str, new_password: str, current_password: Optional[str] = None
    ) -> None:
        """Replace the password; accounts that already have one must prove it first.

        Google-only accounts may set a first password without ``current_password``.
        The current session stays valid.
        """
        record = self.store.get_password_record(user_id)
        has_password = record is not None and record[1] == PASSWORD_ALGO
        if has_password and not (
            current_password and self.verify_password(user_id, current_password)
        ):
            raise AuthenticationError("current password is incorrect")
        try:
            self.save_password(user_id, new_password)
        except ConstraintViolation:
            raise
        except Exception as exc:
            self.logger.error("password_persist_failed", user_id=user_id, error=str(exc))
            raise PersistenceError("failed to change password") from exc
        self.logger.info("password_changed", user_id=user_id)

    async def start_google_oauth(self) -> dict:
        google = GoogleOAuthClient.from_settings(self.settings)
        state = secrets.token_urlsafe(24)
        expires_at = datetime.now(timezone.utc) + OAUTH_STATE_TTL
        if self.cache is not None:
            await self.cache.set_oauth_state(state, "google", expires_at)
        else:
            with self._state_lock:
                self._oauth_states[state] = ("google", expires_at)
        return {"authorization_url": google.authorization_url(state), "state": state}

    def register_oauth_code(self, code: str, payload: dict) -> None:
        """Pre-resolve ``code`` to an identity so the callback skips Google (offline runs)."""
        identity = GoogleIdentity.from_payload(payload)
        if identity is None:
            raise ValueError("payload needs google_id and email")
        self._preset_identities[code] = identity

    async def _consume_state(self, state: str) -> bool:
        if self.cache is not None:
            try:
                pending = await self.cache.pop_oauth_state(state)
            except Exception as exc:
                # unknown outcome: treat the state as already used
                self.logger.error("pop_oauth_state_failed", error=str(exc))
                return False
        else:
            with self._state_lock:
                pending = self._oauth_states.pop(state, None)
        if pending is None:
            return False
        provider, expires_at = pending
        return provider == "google" and expires_at >= datetime.now(timezone.utc)

    async def _resolve_identity(self, code: str) -> Optional[GoogleIdentity]:
        preset = self._preset_identities.pop(code, None)
        if preset is not None:
            return preset
        try:
            google = GoogleOAuthClient.from_settings(self.settings)
        except ValidationError as exc:
            self.logger.error("oauth_not_configured", provider="google", error=exc.message)
            return None
        return await google.exchange(code)

    def _link_google_account(self, identity: GoogleIdentity) -> User:
        user = self.store.get_user_by_google_id(identity.google_id)
        if user is not None:
            return user
        if self.store.get_user_by_email(identity.email) is not None:
            self.logger.info("oauth_email_exists", provider="google")
            raise OAuthFlowError(
                EMAIL_EXISTS,
                "This email is already registered with a password. Please login instead.",
            )
        user = self._create_account(
            identity.email,
            identity.name or identity.email.split("@")[0],
            google_id=identity.google_id,
            profile_pic=identity.picture,
            password=(secrets.token_urlsafe(24), OAUTH_MARKER_ALGO),
        )
        self.logger.info("oauth_user_created", provider="google", user_id=user.id)
        return user

    async def complete_google_oauth(self, code: str, state: str) -> tuple[User, Credential]:
        if not await self._consume_state(state):
            self.logger.warning("oauth_state_invalid", provider="google")
            raise OAuthFlowError(AUTH_FAILED, "OAuth verification failed")
        identity = await self._resolve_identity(code)
        if identity is None:
            raise OAuthFlowError(AUTH_FAILED, "OAuth verification failed")
        user = self._link_google_account(identity)
        return user, await self.issuer.issue(user)
