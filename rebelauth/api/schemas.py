from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from rebelauth.service.validation import (
    validate_display_name,
    validate_email,
    validate_password,
)
from rebelauth.storage.models import User

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "invalid_credentials",
    "session_not_found",
    "session_expired",
    "provider_verification_failed",
    "account_blocked",
    "account_locked",
    "invalid_token",
    "token_expired",
    "last_auth_method",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable machine-readable code."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class RegisterRequest(BaseModel):
    email: str
    password: str
    display_name: str
    referral_code: Optional[str] = Field(default=None, max_length=32)

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        return validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return validate_password(value)

    @field_validator("display_name")
    @classmethod
    def _validate_display_name(cls, value: str) -> str:
        return validate_display_name(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        return validate_email(value)


class EmailRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        return validate_email(value)


class TokenRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return validate_password(value)


class ProviderLoginRequest(BaseModel):
    """Signed widget fields or bot ``init_data``, passed through verbatim."""

    payload: Dict[str, Any]
    referral_code: Optional[str] = Field(default=None, max_length=32)


class UserResponse(BaseModel):
    id: str
    display_name: str
    email: Optional[str] = None
    email_verified: bool
    is_admin: bool
    avatar_url: Optional[str] = None
    telegram_username: Optional[str] = None
    referral_code: str
    referrals_count: int
    login_methods: List[str]
    created_at: datetime

    @classmethod
    def from_user(cls, user: User, login_methods: List[str]) -> "UserResponse":
        return cls(
            id=user.id,
            display_name=user.display_name,
            email=user.email,
            email_verified=user.email_verified,
            is_admin=user.is_admin,
            avatar_url=user.avatar_url,
            telegram_username=user.telegram_username,
            referral_code=user.referral_code,
            referrals_count=user.referrals_count,
            login_methods=login_methods,
            created_at=user.created_at,
        )


class AuthResponse(BaseModel):
    token: str
    token_type: str = "bearer"
    session_id: str
    expires_at: datetime
    created: bool = False
    user: UserResponse


class RegisterResponse(BaseModel):
    user_id: str
    email_sent: bool


class SessionResponse(BaseModel):
    session_id: str
    expires_at: datetime
    user: UserResponse


class OAuthStartResponse(BaseModel):
    provider: str
    state: str
    authorization_url: str


class MessageResponse(BaseModel):
    message: str


class LoginMethodsResponse(BaseModel):
    methods: List[str]


class ReferralSummaryResponse(BaseModel):
    referral_code: str
    referrals_count: int


class ReferralEntry(BaseModel):
    user_id: str
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    created_at: datetime


class OAuthCompleteRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=2048)
    state: str = Field(..., min_length=1, max_length=512)
    referral_code: Optional[str] = Field(default=None, max_length=32)


class LinkRequest(BaseModel):
    """Either a signed widget/bot payload or an OAuth code/state pair."""

    payload: Optional[Dict[str, Any]] = None
    code: Optional[str] = Field(default=None, max_length=2048)
    state: Optional[str] = Field(default=None, max_length=512)
