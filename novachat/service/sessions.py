from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Optional, Protocol

from novachat.config import Settings
from novachat.logging import get_logger
from novachat.service.errors import (
    INVALID_CREDENTIAL,
    NO_CREDENTIAL,
    SESSION_SUPERSEDED,
    USER_NOT_FOUND,
    PersistenceError,
    rejection_for,
)
from novachat.storage.models import User

if TYPE_CHECKING:
    from novachat.service.realtime import RevocationNotifier

logger = get_logger(__name__)

ANOTHER_SESSION = "ANOTHER_SESSION"
ANOTHER_DEVICE_MESSAGE = "Logged in from another device"
LOGGED_OUT = "LOGGED_OUT"
LOGGED_OUT_MESSAGE = "Logged out"


class SessionStore(Protocol):
    def create_user(
        self,
        email: str,
        full_name: str = "",
        *,
        google_id: Optional[str] = None,
        profile_pic: str = "",
        is_admin: bool = False,
        password: Optional[tuple[str, str]] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_google_id(self, google_id: str) -> Optional[User]: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def set_current_session(
        self,
        user_id: str,
        session_id: Optional[str],
        *,
        last_login_at: Optional[datetime] = None,
    ) -> User: ...

    def clear_current_session(
        self, user_id: str, *, expected_session_id: Optional[str] = None
    ) -> bool: ...


@dataclass
class Credential:
    """A signed bearer credential bound to one session id."""

    token: str
    user_id: str
    session_id: str
    issued_at: datetime
    expires_at: datetime


@dataclass
class GateResult:
    ok: bool
    user: Optional[User] = None
    session_id: Optional[str] = None
    reason: Optional[str] = None


@dataclass
class AuthContext:
    user_id: str
    session_id: str
    is_admin: bool = False
    user: Optional[User] = None


class CredentialCodec:
    """HS256 JWT encoding with issuer, audience and expiry checks."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        # Allowance for small clock skew across nodes
        self._clock_skew_leeway = timedelta(seconds=120)

    @property
    def ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.credential_ttl_minutes)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )

    def mint(
        self, user_id: str, session_id: str, *, issued_at: Optional[datetime] = None
    ) -> Credential:
        issued = issued_at or datetime.now(timezone.utc)
        expires = issued + self.ttl
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user_id,
            "sid": session_id,
            "iat": int(issued.timestamp()),
            "exp": int(expires.timestamp()),
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return Credential(
            token=f"{signing_input}.{self._sign(signing_input)}",
            user_id=user_id,
            session_id=session_id,
            issued_at=issued,
            expires_at=expires,
        )

    def decode(self, token: str) -> Optional[dict[str, Any]]:
        """Return verified claims, or ``None`` for any malformed or expired token."""
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # reject anything but HS256 to avoid algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        signing_input = f"{header_b64}.{payload_b64}"
        if not hmac.compare_digest(self._sign(signing_input), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        valid_aud = False
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        if not valid_aud:
            return None
        if not payload.get("sub") or not payload.get("sid"):
            return None
        exp = payload.get("exp")
        if not exp:
            return None
        try:
            exp_ts = float(exp)
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            return None
        return payload


def extract_credential(
    authorization_header: Optional[str] = None,
    cookie_value: Optional[str] = None,
    explicit: Optional[str] = None,
) -> Optional[str]:
    """Pick the credential a caller presented: bearer header, then cookie, then payload."""
    if authorization_header:
        scheme, _, value = authorization_header.partition(" ")
        if scheme.lower() == "bearer" and value.strip():
            return value.strip()
    if cookie_value:
        return cookie_value
    if explicit:
        return explicit
    return None


class LivenessGate:
    """Decides whether a credential belongs to the user's current session.

    Validation is read-only; the same credential always yields the same
    result until the registry changes.
    """

    def __init__(self, store: SessionStore, codec: CredentialCodec) -> None:
        self.store = store
        self.codec = codec

    def validate(self, token: Optional[str]) -> GateResult:
        if not token:
            return GateResult(ok=False, reason=NO_CREDENTIAL)
        claims = self.codec.decode(token)
        if not claims:
            return GateResult(ok=False, reason=INVALID_CREDENTIAL)
        user_id = str(claims["sub"])
        session_id = str(claims["sid"])
        try:
            user = self.store.get_user(user_id)
        except Exception as exc:
            logger.error("session_lookup_failed", user_id=user_id, error=str(exc))
            raise PersistenceError("session registry unavailable") from exc
        if user is None:
            return GateResult(ok=False, session_id=session_id, reason=USER_NOT_FOUND)
        if user.current_session_id != session_id:
            logger.info(
                "session_superseded",
                user_id=user.id,
                presented_session_id=session_id,
            )
            return GateResult(
                ok=False, user=user, session_id=session_id, reason=SESSION_SUPERSEDED
            )
        return GateResult(ok=True, user=user, session_id=session_id)

    def require(self, token: Optional[str]) -> AuthContext:
        """Validate and raise the matching rejection error on failure."""
        result = self.validate(token)
        if not result.ok or result.user is None:
            raise rejection_for(result.reason or INVALID_CREDENTIAL)
        return AuthContext(
            user_id=result.user.id,
            session_id=result.session_id or "",
            is_admin=result.user.is_admin,
            user=result.user,
        )


class CredentialIssuer:
    """Mints a fresh session per login, superseding any earlier one."""

    def __init__(
        self,
        store: SessionStore,
        codec: CredentialCodec,
        notifier: Optional["RevocationNotifier"] = None,
    ) -> None:
        self.store = store
        self.codec = codec
        self.notifier = notifier

    async def issue(self, user: User) -> Credential:
        session_id = str(uuid.uuid4())
        now = datetime.now(timezone.utc)
        previous = user.current_session_id
        try:
            updated = self.store.set_current_session(
                user.id, session_id, last_login_at=now
            )
        except Exception as exc:
            logger.error("session_persist_failed", user_id=user.id, error=str(exc))
            raise PersistenceError("failed to record session") from exc
        user.current_session_id = updated.current_session_id
        user.last_login_at = updated.last_login_at
        if self.notifier is not None:
            # after the write no stale credential can register a new connection
            await self.notifier.notify(
                user.id,
                reason=ANOTHER_SESSION,
                message=ANOTHER_DEVICE_MESSAGE,
                keep_session_id=session_id,
            )
        credential = self.codec.mint(user.id, session_id, issued_at=now)
        logger.info(
            "session_issued",
            user_id=user.id,
            session_id=session_id,
            superseded_session_id=previous,
            expires_at=credential.expires_at.isoformat(),
        )
        return credential

    async def revoke(self, user_id: str, session_id: Optional[str]) -> bool:
        """Clear the registry when ``session_id`` is still the current session."""
        try:
            cleared = self.store.clear_current_session(
                user_id, expected_session_id=session_id
            )
        except Exception as exc:
            logger.error("session_clear_failed", user_id=user_id, error=str(exc))
            raise PersistenceError("failed to clear session") from exc
        logger.info(
            "session_revoked",
            user_id=user_id,
            session_id=session_id,
            cleared=cleared,
        )
        if cleared and self.notifier is not None:
            # the registry is empty now, so any live connection is stale
            await self.notifier.notify(
                user_id, reason=LOGGED_OUT, message=LOGGED_OUT_MESSAGE
            )
        return cleared
