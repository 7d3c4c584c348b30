from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request

from rebelauth.api.schemas import (
    AuthResponse,
    EmailRequest,
    Envelope,
    LinkRequest,
    LoginMethodsResponse,
    LoginRequest,
    MessageResponse,
    OAuthCompleteRequest,
    OAuthStartResponse,
    PasswordResetConfirm,
    ProviderLoginRequest,
    ReferralEntry,
    ReferralSummaryResponse,
    RegisterRequest,
    RegisterResponse,
    SessionResponse,
    TokenRequest,
    UserResponse,
)
from rebelauth.logging import get_logger
from rebelauth.service.auth import AuthResult
from rebelauth.service.linking import login_methods
from rebelauth.service.runtime import check_rate_limit, get_runtime
from rebelauth.storage.models import Session, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


@dataclass
class Principal:
    user: User
    session: Session


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_principal(authorization: Optional[str] = Header(None)) -> Principal:
    token = _bearer_token(authorization)
    if not token:
        raise _http_error("unauthorized", "missing bearer token", status_code=401)
    user, session = await get_runtime().auth.resolve_session(token)
    return Principal(user=user, session=session)


def _user_response(user: User) -> UserResponse:
    return UserResponse.from_user(user, login_methods(user))


def _auth_envelope(result: AuthResult) -> Envelope:
    return Envelope(
        status="ok",
        data=AuthResponse(
            token=result.token,
            session_id=result.session_id,
            expires_at=result.expires_at,
            created=result.created,
            user=_user_response(result.user),
        ),
    )


def _origin(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


async def _enforce_rate_limit(
    scope: str, request: Request, limit: int, window_seconds: int
) -> None:
    """Per-client limit on an unauthenticated endpoint; 429 once the bucket is empty."""
    key = f"{scope}:{_origin(request) or 'unknown'}"
    allowed, _, retry_after = await check_rate_limit(get_runtime(), key, limit, window_seconds)
    if not allowed:
        logger.warning("rate_limited", scope=scope, origin=_origin(request))
        exc = _http_error(
            "rate_limited",
            "too many requests, please try again later",
            status_code=429,
            details={"retry_after_seconds": retry_after},
        )
        exc.headers = {"Retry-After": str(retry_after)}
        raise exc


@router.post("/auth/register", response_model=Envelope, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    settings = get_runtime().settings
    await _enforce_rate_limit(
        "signup", request, settings.signup_rate_limit, settings.signup_rate_limit_window_seconds
    )
    registration = await get_runtime().auth.register_with_password(
        body.email, body.password, body.display_name, referral_code=body.referral_code
    )
    return Envelope(
        status="ok",
        data=RegisterResponse(
            user_id=registration.user_id, email_sent=registration.email_sent
        ),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Email and password login.

    Raises:
        401 invalid_credentials: unknown email or wrong password
        403 account_blocked: the account is blocked
        429 account_locked: too many recent failures; details carry the wait
        429 rate_limited: too many login requests from this client
    """
    settings = get_runtime().settings
    await _enforce_rate_limit(
        "login", request, settings.login_rate_limit, settings.login_rate_limit_window_seconds
    )
    result = await get_runtime().auth.authenticate_via_password(
        body.email, body.password, origin=_origin(request)
    )
    return _auth_envelope(result)


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(principal: Principal = Depends(get_principal)):
    await get_runtime().auth.logout(principal.session.id)
    return Envelope(status="ok", data=MessageResponse(message="logged out"))


@router.get("/auth/session", response_model=Envelope, tags=["auth"])
async def current_session(principal: Principal = Depends(get_principal)):
    return Envelope(
        status="ok",
        data=SessionResponse(
            session_id=principal.session.id,
            expires_at=principal.session.expires_at,
            user=_user_response(principal.user),
        ),
    )


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: TokenRequest):
    result = await get_runtime().auth.verify_email(body.token)
    return _auth_envelope(result)


@router.post("/auth/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(body: EmailRequest, request: Request):
    settings = get_runtime().settings
    await _enforce_rate_limit(
        "resend", request, settings.reset_rate_limit, settings.reset_rate_limit_window_seconds
    )
    message = await get_runtime().auth.resend_verification(body.email)
    return Envelope(status="ok", data=MessageResponse(message=message))


@router.post("/auth/request-reset", response_model=Envelope, tags=["auth"])
async def request_reset(body: EmailRequest, request: Request):
    settings = get_runtime().settings
    await _enforce_rate_limit(
        "reset", request, settings.reset_rate_limit, settings.reset_rate_limit_window_seconds
    )
    # Same response whether or not the account exists
    message = await get_runtime().auth.request_password_reset(body.email)
    return Envelope(status="ok", data=MessageResponse(message=message))


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm):
    await get_runtime().auth.reset_password(body.token, body.new_password)
    return Envelope(
        status="ok", data=MessageResponse(message="password updated, please sign in again")
    )


@router.post("/auth/provider/{name}", response_model=Envelope, tags=["auth"])
async def provider_login(name: str, body: ProviderLoginRequest):
    result = await get_runtime().auth.login_with_provider(
        name, body.payload, referral_code=body.referral_code
    )
    return _auth_envelope(result)


@router.get("/auth/oauth/{name}/start", response_model=Envelope, tags=["auth"])
async def oauth_start(name: str):
    started = await get_runtime().auth.start_oauth(name)
    return Envelope(status="ok", data=OAuthStartResponse(**started))


@router.get("/auth/oauth/{name}/callback", response_model=Envelope, tags=["auth"])
async def oauth_callback(
    name: str,
    code: str = Query(..., min_length=1, max_length=2048),
    state: str = Query(..., min_length=1, max_length=512),
    referral_code: Optional[str] = Query(None, max_length=32),
):
    result = await get_runtime().auth.complete_oauth(
        name, code, state, referral_code=referral_code
    )
    return _auth_envelope(result)


@router.post("/auth/oauth/{name}/complete", response_model=Envelope, tags=["auth"])
async def oauth_complete(name: str, body: OAuthCompleteRequest):
    result = await get_runtime().auth.complete_oauth(
        name, body.code, body.state, referral_code=body.referral_code
    )
    return _auth_envelope(result)


@router.get("/auth/methods", response_model=Envelope, tags=["auth"])
async def list_methods(principal: Principal = Depends(get_principal)):
    return Envelope(
        status="ok", data=LoginMethodsResponse(methods=login_methods(principal.user))
    )


@router.post("/auth/link/{name}", response_model=Envelope, tags=["auth"])
async def link_provider(
    name: str, body: LinkRequest, principal: Principal = Depends(get_principal)
):
    auth = get_runtime().auth
    if body.payload is not None:
        user = await auth.link_with_provider(principal.user.id, name, body.payload)
    elif body.code and body.state:
        user = await auth.link_with_oauth(principal.user.id, name, body.code, body.state)
    else:
        raise _http_error(
            "validation_error", "payload or code and state are required", status_code=400
        )
    return Envelope(status="ok", data=_user_response(user))


@router.delete("/auth/link/{method}", response_model=Envelope, tags=["auth"])
async def unlink_provider(method: str, principal: Principal = Depends(get_principal)):
    user = await get_runtime().auth.unlink_provider(principal.user.id, method)
    return Envelope(status="ok", data=_user_response(user))


@router.get("/referrals/me", response_model=Envelope, tags=["referrals"])
async def my_referral_summary(principal: Principal = Depends(get_principal)):
    summary = get_runtime().referrals.referral_summary(principal.user.id)
    return Envelope(status="ok", data=ReferralSummaryResponse(**summary))


@router.get("/referrals/me/list", response_model=Envelope, tags=["referrals"])
async def my_referrals(principal: Principal = Depends(get_principal)):
    entries = get_runtime().referrals.list_referrals(principal.user.id)
    return Envelope(status="ok", data=[ReferralEntry(**entry) for entry in entries])
