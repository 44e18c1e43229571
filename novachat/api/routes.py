from __future__ import annotations

import json
from typing import Optional
from urllib.parse import urlencode

from fastapi import (
    APIRouter,
    Depends,
    Header,
    Query,
    Request,
    Response,
    WebSocket,
    WebSocketDisconnect,
)
from fastapi.responses import JSONResponse, RedirectResponse

from novachat.api.error_handling import error_envelope
from novachat.api.schemas import (
    AuthResponse,
    ChangePasswordRequest,
    Envelope,
    LoginRequest,
    OAuthStartResponse,
    OnlineUsersResponse,
    SignupRequest,
    UserResponse,
)
from novachat.logging import connection_context, get_logger
from novachat.service.errors import (
    NO_CREDENTIAL,
    AuthenticationError,
    ForbiddenError,
    OAuthFlowError,
    PersistenceError,
    RateLimitedError,
    rejection_message,
)
from novachat.service.realtime import (
    ONLINE_USERS,
    REVOKED_CLOSE_CODE,
    WebSocketConnection,
    broadcast_online_users,
)
from novachat.service.runtime import check_rate_limit, get_runtime
from novachat.service.sessions import AuthContext, Credential, extract_credential
from novachat.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


async def _enforce_rate_limit(runtime, key: str, limit: int, window_seconds: int) -> None:
    allowed, _, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    if not allowed:
        logger.warning("rate_limit_exceeded", key=key, limit=limit)
        raise RateLimitedError(
            "rate limit exceeded", detail={"retry_after": max(reset_seconds, 1)}
        )


def _client_address(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _presented_credential(request: Request, authorization: Optional[str]) -> Optional[str]:
    runtime = get_runtime()
    return extract_credential(
        authorization,
        request.cookies.get(runtime.settings.credential_cookie_name),
    )


async def get_user(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    """Liveness-gate dependency for protected routes."""
    runtime = get_runtime()
    return runtime.gate.require(_presented_credential(request, authorization))


def _apply_credential_cookie(response: Response, credential: Credential) -> None:
    settings = get_runtime().settings
    response.set_cookie(
        settings.credential_cookie_name,
        credential.token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite=settings.cookie_samesite,
        max_age=settings.credential_ttl_minutes * 60,
        path="/",
    )


def _clear_credential_cookie(response: Response) -> None:
    settings = get_runtime().settings
    response.delete_cookie(
        settings.credential_cookie_name,
        path="/",
        secure=settings.cookie_secure,
        httponly=True,
        samesite=settings.cookie_samesite,
    )


def _auth_response(user: User, credential: Credential) -> AuthResponse:
    return AuthResponse(
        user_id=user.id,
        session_id=credential.session_id,
        access_token=credential.token,
        expires_at=credential.expires_at,
        email=user.email,
        full_name=user.full_name,
        profile_pic=user.profile_pic,
    )


def _user_to_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        full_name=user.full_name,
        profile_pic=user.profile_pic,
        is_admin=user.is_admin,
        created_at=user.created_at,
        last_login_at=user.last_login_at,
    )


@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(body: SignupRequest, response: Response):
    """Create an account and start its first session.

    Raises:
        403: If signup is disabled in settings
        409: If the email is already registered
        429: If rate limit exceeded for this email
    """
    runtime = get_runtime()
    if not runtime.settings.allow_signup:
        raise ForbiddenError("signup disabled")
    await _enforce_rate_limit(
        runtime,
        f"signup:{body.email}",
        runtime.settings.signup_rate_limit_per_minute,
        60,
    )
    user, credential = await runtime.auth.signup(
        email=body.email, password=body.password, full_name=body.full_name
    )
    _apply_credential_cookie(response, credential)
    return Envelope(status="ok", data=_auth_response(user, credential))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Authenticate with email and password.

    A successful login supersedes any session the account already had; a
    device still connected on the realtime channel is told first.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        60,
    )
    user, credential = await runtime.auth.login(email=body.email, password=body.password)
    if not user or not credential:
        raise AuthenticationError("invalid credentials")
    _apply_credential_cookie(response, credential)
    return Envelope(status="ok", data=_auth_response(user, credential))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    authorization: Optional[str] = Header(None),
):
    runtime = get_runtime()
    cleared = await runtime.auth.logout(_presented_credential(request, authorization))
    _clear_credential_cookie(response)
    if cleared:
        await broadcast_online_users(runtime.directory)
    return Envelope(
        status="ok", data={"message": "Logged out successfully", "session_cleared": cleared}
    )


@router.put("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest, principal: AuthContext = Depends(get_user)
):
    """Set a new password for the signed-in account.

    Raises:
        401: If the current password does not match
        429: If rate limit exceeded for this account
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"change_password:{principal.user_id}",
        runtime.settings.login_rate_limit_per_minute,
        60,
    )
    runtime.auth.change_password(
        principal.user_id, body.new_password, current_password=body.current_password
    )
    return Envelope(status="ok", data={"message": "Password changed successfully"})


@router.get("/auth/check", response_model=Envelope, tags=["auth"])
async def check_auth(principal: AuthContext = Depends(get_user)):
    """Return the profile behind a credential that is still the live session."""
    return Envelope(status="ok", data=_user_to_response(principal.user))


@router.get("/users/online", response_model=Envelope, tags=["realtime"])
async def online_users(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    return Envelope(
        status="ok",
        data=OnlineUsersResponse(user_ids=runtime.directory.online_user_ids()),
    )


@router.get("/auth/google", tags=["auth"])
async def google_start(
    request: Request,
    response_format: Optional[str] = Query(None, alias="format", pattern="^json$"),
):
    """Begin Google sign-in; redirects to the consent screen unless ``format=json``."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"oauth:start:google:{_client_address(request)}", limit=20, window_seconds=60
    )
    start = await runtime.auth.start_google_oauth()
    if response_format == "json":
        return Envelope(
            status="ok",
            data=OAuthStartResponse(
                authorization_url=start["authorization_url"], state=start["state"]
            ),
        )
    return RedirectResponse(start["authorization_url"], status_code=307)


def _client_redirect(path: str, **params: str) -> Optional[str]:
    client_url = get_runtime().settings.client_url
    if not client_url:
        return None
    target = client_url.rstrip("/") + path
    if params:
        target = f"{target}?{urlencode(params)}"
    return target


@router.get("/auth/google/callback", tags=["auth"])
async def google_callback(
    request: Request,
    code: str = Query(..., max_length=512),
    state: str = Query(..., max_length=128),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"oauth:callback:google:{_client_address(request)}", limit=10, window_seconds=60
    )
    try:
        user, credential = await runtime.auth.complete_google_oauth(code, state)
    except OAuthFlowError as exc:
        failure_url = _client_redirect("/login", error=exc.reason)
        if failure_url is None:
            raise
        logger.info("oauth_redirect_failure", reason=exc.reason)
        return RedirectResponse(failure_url, status_code=302)

    success_url = _client_redirect("/")
    if success_url is not None:
        redirect = RedirectResponse(success_url, status_code=302)
        _apply_credential_cookie(redirect, credential)
        return redirect
    envelope = Envelope(status="ok", data=_auth_response(user, credential))
    json_response = JSONResponse(content=envelope.model_dump(mode="json"))
    _apply_credential_cookie(json_response, credential)
    return json_response


async def _reject_socket(ws: WebSocket, reason: str) -> None:
    envelope = error_envelope(
        rejection_message(reason),
        code="unauthorized",
        details={"reason": reason, "should_logout": True},
    )
    try:
        await ws.send_json(envelope.model_dump(mode="json"))
    finally:
        await ws.close(code=REVOKED_CLOSE_CODE)


@router.websocket("/ws")
async def realtime_channel(ws: WebSocket):
    """Presence channel; also where SESSION_REVOKED is delivered."""
    runtime = get_runtime()
    await ws.accept()
    token = extract_credential(
        ws.headers.get("authorization"),
        ws.cookies.get(runtime.settings.credential_cookie_name),
        ws.query_params.get("token"),
    )
    if not token:
        try:
            init = await ws.receive_json()
        except WebSocketDisconnect:
            return
        except json.JSONDecodeError:
            logger.warning("websocket_invalid_json", stage="auth")
            await _reject_socket(ws, NO_CREDENTIAL)
            return
        if isinstance(init, dict) and init.get("action") == "auth":
            presented = init.get("access_token")
            token = presented if isinstance(presented, str) else None

    try:
        result = runtime.gate.validate(token)
    except PersistenceError as exc:
        envelope = error_envelope(exc.message, code="server_error")
        await ws.send_json(envelope.model_dump(mode="json"))
        await ws.close(code=1011)
        return
    if not result.ok or result.user is None:
        logger.info("ws_rejected", reason=result.reason)
        await _reject_socket(ws, result.reason or NO_CREDENTIAL)
        return

    user = result.user
    handle = WebSocketConnection(ws, user.id, result.session_id or "")
    with connection_context(user_id=user.id, connection_id=handle.connection_id):
        runtime.directory.register(user.id, handle)
        logger.info("ws_connected", session_id=handle.session_id)
        await broadcast_online_users(runtime.directory)
        try:
            await _serve_connection(ws, handle, runtime.directory)
        except WebSocketDisconnect:
            pass
        finally:
            runtime.directory.unregister(user.id, handle)
            logger.info("ws_disconnected", revoked=handle.closed)
            await broadcast_online_users(runtime.directory)


async def _serve_connection(ws: WebSocket, handle: WebSocketConnection, directory) -> None:
    # a revocation closes the handle from another task; stop reading then
    while not handle.closed:
        try:
            message = await ws.receive_json()
        except json.JSONDecodeError:
            await ws.send_json(
                error_envelope("Invalid JSON", code="validation_error").model_dump(mode="json")
            )
            continue
        if handle.closed:
            return
        if directory.lookup(handle.user_id) is not handle:
            # revoked or replaced while this read was pending
            await handle.close(REVOKED_CLOSE_CODE)
            return
        action = message.get("action") if isinstance(message, dict) else None
        if action == "ping":
            await handle.send_event("pong")
        elif action == ONLINE_USERS:
            await handle.send_event(ONLINE_USERS, directory.online_user_ids())
        else:
            await ws.send_json(
                error_envelope(
                    "unsupported action", code="validation_error", details={"action": action}
                ).model_dump(mode="json")
            )
