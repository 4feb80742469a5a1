from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, Path, Query, Request, Response

from credcore.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    OAuthStartResponse,
    PasswordChangeRequest,
    PasswordForgotRequest,
    PasswordResetConfirm,
    RegisterRequest,
    ResetTokenStatusResponse,
    SessionListResponse,
    SessionResponse,
    TokenRefreshRequest,
    TwoFactorChallengeResponse,
    TwoFactorCodeRequest,
    TwoFactorLoginRequest,
    TwoFactorSetupResponse,
    TwoFactorStatusResponse,
    UserResponse,
)
from credcore.logging import get_logger
from credcore.service.auth import AuthContext, TwoFactorChallenge
from credcore.service.errors import AuthenticationError, NotFoundError
from credcore.service.rate_limit import RateLimitResult
from credcore.service.runtime import Runtime, get_runtime
from credcore.service.sessions import (
    SESSION_COOKIE_NAME,
    AuthResult,
    mask_ip_address,
)
from credcore.storage.models import Session, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _client_ip(request: Request, runtime: Runtime) -> Optional[str]:
    if runtime.settings.trust_forwarded_for:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
    return request.client.host if request.client else None


def _user_agent(request: Request) -> Optional[str]:
    agent = request.headers.get("User-Agent")
    return agent[:512] if agent else None


async def _enforce_rate_limit(
    runtime: Runtime,
    request: Request,
    endpoint_class: str,
    identifier: str,
    response: Response,
) -> RateLimitResult:
    """Count the request; raises 429 with ``Retry-After`` once over the limit.

    The result is kept on ``request.state`` so error responses raised later
    in the handler still carry the X-RateLimit-* headers.
    """
    result = await runtime.rate_limiter.enforce(identifier, endpoint_class)
    request.state.rate_limit = result
    for name, value in result.headers().items():
        response.headers[name] = value
    return result


def _user_to_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        name=user.name,
        role=user.role,
        created_at=user.created_at,
        is_active=user.is_active,
        email_verified=user.email_verified,
    )


def _auth_response(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        user=_user_to_response(result.user),
        session_id=result.session.id,
        session_expires_at=result.session.expires_at,
        access_token=result.tokens.access_token,
        refresh_token=result.tokens.refresh_token,
        token_type=result.tokens.token_type,
        expires_in=result.tokens.expires_in,
        created=result.created,
    )


def _apply_session_cookie(runtime: Runtime, response: Response, session: Session) -> None:
    response.set_cookie(**runtime.sessions.cookie_params(session))


def _clear_session_cookie(runtime: Runtime, response: Response) -> None:
    response.set_cookie(**runtime.sessions.clear_cookie_params())


async def get_user(
    request: Request,
    authorization: Optional[str] = Header(None),
    session_cookie: Optional[str] = Cookie(None, alias=SESSION_COOKIE_NAME),
) -> AuthContext:
    runtime = get_runtime()
    ctx = await runtime.auth.authenticate(
        authorization,
        session_cookie,
        ip_addr=_client_ip(request, runtime),
        user_agent=_user_agent(request),
    )
    if not ctx:
        raise AuthenticationError("invalid session")
    return ctx


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create a password account and sign it in.

    Raises:
        400: Invalid email, weak password or terms not accepted
        409: Email already registered
        429: Too many registrations from this client
    """
    runtime = get_runtime()
    client_ip = _client_ip(request, runtime)
    await _enforce_rate_limit(
        runtime, request, "register", client_ip or "unknown", response
    )
    result = await runtime.auth.register(
        body.email,
        body.password,
        name=body.name,
        accept_terms=body.accept_terms,
        ip_addr=client_ip,
        user_agent=_user_agent(request),
    )
    _apply_session_cookie(runtime, response, result.session)
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password.

    Accounts with two-factor enabled get ``requires_2fa`` and a challenge
    token instead of a session; finish with ``/auth/2fa/login``.

    Raises:
        401: Invalid credentials (identical for unknown email and wrong password)
        403: Account disabled or email unverified
        423: Account locked after repeated failures
        429: Too many attempts from this client
    """
    runtime = get_runtime()
    client_ip = _client_ip(request, runtime)
    await _enforce_rate_limit(runtime, request, "login", client_ip or "unknown", response)
    result = await runtime.auth.login(
        body.email,
        body.password,
        ip_addr=client_ip,
        user_agent=_user_agent(request),
    )
    if isinstance(result, TwoFactorChallenge):
        return Envelope(
            status="ok",
            data=TwoFactorChallengeResponse(
                challenge_token=result.challenge_token, expires_in=result.expires_in
            ),
        )
    _apply_session_cookie(runtime, response, result.session)
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/2fa/login", response_model=Envelope, tags=["auth"])
async def two_factor_login(body: TwoFactorLoginRequest, request: Request, response: Response):
    """Exchange a login challenge and a TOTP code for a session.

    Raises:
        401: Challenge invalid or expired, or wrong code
        423: Account locked after repeated failures
    """
    runtime = get_runtime()
    client_ip = _client_ip(request, runtime)
    await _enforce_rate_limit(
        runtime, request, "two_factor", client_ip or "unknown", response
    )
    result = await runtime.auth.complete_two_factor_login(
        body.challenge_token,
        body.code,
        ip_addr=client_ip,
        user_agent=_user_agent(request),
    )
    _apply_session_cookie(runtime, response, result.session)
    return Envelope(status="ok", data=_auth_response(result))


@router.get("/auth/oauth/authorize", response_model=Envelope, tags=["auth"])
async def oauth_authorize(
    request: Request,
    response: Response,
    provider: str = Query(..., max_length=32),
    redirect_uri: Optional[str] = Query(None, max_length=2048),
):
    """Return the provider URL the client should redirect the user to."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, request, "oauth_authorize", _client_ip(request, runtime) or "unknown", response
    )
    start = await runtime.oauth.build_authorization_request(
        provider, redirect_uri=redirect_uri
    )
    return Envelope(
        status="ok",
        data=OAuthStartResponse(
            authorization_url=start.authorization_url,
            state=start.state,
            provider=start.provider,
        ),
    )


@router.get("/auth/oauth/callback", response_model=Envelope, tags=["auth"])
async def oauth_callback(
    request: Request,
    response: Response,
    provider: str = Query(..., max_length=32),
    code: Optional[str] = Query(None, max_length=2048),
    state: Optional[str] = Query(None, max_length=128),
    redirect_uri: Optional[str] = Query(None, max_length=2048),
    error: Optional[str] = Query(None, max_length=256),
):
    """Complete the authorization-code flow and sign the user in."""
    runtime = get_runtime()
    client_ip = _client_ip(request, runtime)
    await _enforce_rate_limit(
        runtime, request, "oauth_callback", client_ip or "unknown", response
    )
    if error:
        logger.info("oauth_provider_denied", provider=provider, error=error)
        raise AuthenticationError(
            "authorization was denied at the provider",
            detail={"reason": "provider_denied"},
        )
    result = await runtime.oauth.handle_callback(
        provider,
        code,
        state,
        redirect_uri,
        ip_addr=client_ip,
        user_agent=_user_agent(request),
    )
    _apply_session_cookie(runtime, response, result.session)
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, request, "refresh", _client_ip(request, runtime) or "unknown", response
    )
    result = await runtime.auth.refresh_tokens(body.refresh_token, rotate=body.rotate)
    _apply_session_cookie(runtime, response, result.session)
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    authorization: Optional[str] = Header(None),
    session_cookie: Optional[str] = Cookie(None, alias=SESSION_COOKIE_NAME),
):
    runtime = get_runtime()
    revoked = False
    if authorization or session_cookie:
        ctx = await runtime.auth.authenticate(
            authorization,
            session_cookie,
            ip_addr=_client_ip(request, runtime),
            user_agent=_user_agent(request),
        )
        if ctx and ctx.session_id:
            revoked = await runtime.auth.logout(ctx.session_id)
    _clear_session_cookie(runtime, response)
    return Envelope(status="ok", data={"revoked": revoked})


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    items = [
        SessionResponse(
            id=sess.id,
            created_at=sess.created_at,
            last_activity_at=sess.last_activity_at,
            expires_at=sess.expires_at,
            ip_addr=mask_ip_address(sess.ip_addr),
            user_agent=sess.user_agent,
            current=sess.id == principal.session_id,
        )
        for sess in runtime.sessions.list_active(principal.user_id)
    ]
    return Envelope(status="ok", data=SessionListResponse(items=items))


@router.delete("/auth/sessions/{target_session_id}", response_model=Envelope, tags=["auth"])
async def revoke_session(
    response: Response,
    target_session_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    target = runtime.sessions.get(target_session_id)
    # Someone else's session is indistinguishable from a missing one
    if not target or target.user_id != principal.user_id:
        raise NotFoundError("session not found")
    await runtime.auth.logout(target_session_id)
    if target_session_id == principal.session_id:
        _clear_session_cookie(runtime, response)
    return Envelope(status="ok", data={"revoked": True})


@router.delete("/auth/sessions", response_model=Envelope, tags=["auth"])
async def revoke_other_sessions(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    count = await runtime.auth.logout_all(
        principal.user_id, except_session_id=principal.session_id
    )
    return Envelope(status="ok", data={"revoked": count})


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    request: Request,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    """Change the password; every other session is signed out."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, request, "password_change", principal.user_id, response
    )
    revoked, tokens = await runtime.auth.change_password(
        principal.user_id,
        body.current_password,
        body.new_password,
        session_id=principal.session_id,
    )
    data: dict = {"status": "changed", "revoked_sessions": revoked}
    if tokens is not None:
        data["tokens"] = tokens.as_response()
    return Envelope(status="ok", data=data)


@router.post("/auth/password/forgot", response_model=Envelope, tags=["auth"])
async def forgot_password(body: PasswordForgotRequest, request: Request, response: Response):
    """Start a password reset; the answer never reveals whether the email exists."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, request, "password_forgot", _client_ip(request, runtime) or "unknown", response
    )
    await runtime.auth.request_password_reset(body.email)
    return Envelope(status="ok", data={"status": "sent"})


@router.get("/auth/password/reset/verify", response_model=Envelope, tags=["auth"])
async def verify_reset_token(
    request: Request,
    response: Response,
    token: str = Query(..., min_length=1, max_length=256),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        request,
        "password_reset_verify",
        _client_ip(request, runtime) or "unknown",
        response,
    )
    expires_at = await runtime.auth.verify_reset_token(token)
    return Envelope(status="ok", data=ResetTokenStatusResponse(expires_at=expires_at))


@router.post("/auth/password/reset", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm, request: Request, response: Response):
    """Set a new password with a reset token; every session is signed out."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, request, "password_reset", _client_ip(request, runtime) or "unknown", response
    )
    revoked = await runtime.auth.reset_password(body.token, body.new_password)
    _clear_session_cookie(runtime, response)
    return Envelope(status="ok", data={"status": "reset", "revoked_sessions": revoked})


@router.get("/auth/2fa/status", response_model=Envelope, tags=["auth"])
async def two_factor_status(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    status = runtime.two_factor.status(principal.user_id)
    return Envelope(
        status="ok",
        data=TwoFactorStatusResponse(enabled=status.enabled, configured=status.configured),
    )


@router.post("/auth/2fa/setup", response_model=Envelope, tags=["auth"])
async def two_factor_setup(
    request: Request,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    """Generate a TOTP secret; it stays inactive until confirmed with a code."""
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, request, "two_factor", principal.user_id, response)
    user = runtime.store.get_user(principal.user_id)
    if not user:
        raise NotFoundError("user not found")
    setup = runtime.two_factor.begin_setup(user)
    return Envelope(
        status="ok",
        data=TwoFactorSetupResponse(secret=setup.secret, otpauth_uri=setup.otpauth_uri),
    )


@router.post("/auth/2fa/enable", response_model=Envelope, tags=["auth"])
async def two_factor_enable(
    body: TwoFactorCodeRequest,
    request: Request,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, request, "two_factor", principal.user_id, response)
    runtime.two_factor.enable(principal.user_id, body.code)
    return Envelope(status="ok", data={"enabled": True})


@router.post("/auth/2fa/disable", response_model=Envelope, tags=["auth"])
async def two_factor_disable(
    body: TwoFactorCodeRequest,
    request: Request,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    """Turn two-factor off with a current code; other sessions are signed out."""
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, request, "two_factor", principal.user_id, response)
    runtime.two_factor.disable(principal.user_id, body.code)
    revoked = await runtime.auth.logout_all(
        principal.user_id, except_session_id=principal.session_id
    )
    return Envelope(status="ok", data={"enabled": False, "revoked_sessions": revoked})


@router.get("/me", response_model=Envelope, tags=["auth"])
async def get_current_user(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.store.get_user(principal.user_id)
    if not user:
        raise NotFoundError("user not found")
    return Envelope(status="ok", data=_user_to_response(user))
