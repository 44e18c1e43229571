from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Annotated, Any, List, Literal, Optional
from uuid import uuid4

from pydantic import AfterValidator, BaseModel, Field

from novachat.logging import get_correlation_id

ErrorCode = Literal[
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
]


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class ErrorBody(BaseModel):
    """Error half of the envelope; ``code`` is the stable part clients branch on."""

    code: ErrorCode
    message: str
    details: Optional[Any] = None


class Envelope(BaseModel):
    status: Literal["ok", "error"]
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


def _clean_text(value: str) -> str:
    """NFKC form without invisible format characters (zero-width, bidi overrides)."""
    visible = "".join(ch for ch in value if unicodedata.category(ch) != "Cf")
    return unicodedata.normalize("NFKC", visible)


_LOCAL_PART = re.compile(r"[a-z0-9.!#$%&'*+/=?^_`{|}~-]{1,64}")
_DOMAIN_LABEL = re.compile(r"[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?")


def _normalize_email(value: str) -> str:
    """Lowercase, clean and shape-check an address; the stored form is the result."""
    email = _clean_text(value.strip().lower())
    if not 3 <= len(email) <= 254:
        raise ValueError("email must be between 3 and 254 characters")
    local, _, domain = email.rpartition("@")
    labels = domain.split(".")
    if (
        not _LOCAL_PART.fullmatch(local)
        or len(labels) < 2
        or not all(_DOMAIN_LABEL.fullmatch(label) for label in labels)
    ):
        raise ValueError("invalid email address")
    return email


def _check_password(value: str) -> str:
    if not MIN_PASSWORD_LENGTH <= len(value) <= MAX_PASSWORD_LENGTH:
        raise ValueError(
            f"password must be {MIN_PASSWORD_LENGTH} to {MAX_PASSWORD_LENGTH} characters"
        )
    return value


def _clean_name(value: str) -> str:
    name = _clean_text(value).strip()
    if not name:
        raise ValueError("full_name is required")
    return name


MIN_PASSWORD_LENGTH = 6
MAX_PASSWORD_LENGTH = 128

Email = Annotated[str, AfterValidator(_normalize_email)]


class SignupRequest(BaseModel):
    email: Email
    full_name: Annotated[str, Field(min_length=1, max_length=120), AfterValidator(_clean_name)]
    password: Annotated[str, AfterValidator(_check_password)]


class LoginRequest(BaseModel):
    email: Email
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class ChangePasswordRequest(BaseModel):
    current_password: Optional[str] = Field(None, max_length=MAX_PASSWORD_LENGTH)
    new_password: Annotated[str, AfterValidator(_check_password)]


class AuthResponse(BaseModel):
    user_id: str
    session_id: str
    access_token: str
    token_type: str = "bearer"
    expires_at: datetime
    email: str
    full_name: str = ""
    profile_pic: str = ""


class UserResponse(BaseModel):
    id: str
    email: str
    full_name: str = ""
    profile_pic: str = ""
    is_admin: bool = False
    created_at: datetime
    last_login_at: Optional[datetime] = None


class OAuthStartResponse(BaseModel):
    authorization_url: str
    state: str


class OnlineUsersResponse(BaseModel):
    user_ids: List[str]
