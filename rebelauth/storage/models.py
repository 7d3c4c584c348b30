from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# External login providers and the user column holding their external id
PROVIDER_FIELDS = {
    "telegram": "telegram_id",
    "google": "google_id",
    "discord": "discord_id",
}
PASSWORD_METHOD = "password"
LOGIN_METHODS = (*PROVIDER_FIELDS, PASSWORD_METHOD)

# Prefix of avatars written by the upload handler before avatar_is_local existed
LOCAL_AVATAR_PREFIX = "/uploads/"

TOKEN_PURPOSE_VERIFY_EMAIL = "verify_email"
TOKEN_PURPOSE_PASSWORD_RESET = "password_reset"
TOKEN_PURPOSES = (TOKEN_PURPOSE_VERIFY_EMAIL, TOKEN_PURPOSE_PASSWORD_RESET)

NOTIFICATION_FRIEND_ACTIVITY = "friend_activity"


@dataclass
class User:
    id: str
    display_name: str
    referral_code: str
    email: Optional[str] = None
    telegram_id: Optional[str] = None
    telegram_username: Optional[str] = None
    google_id: Optional[str] = None
    discord_id: Optional[str] = None
    password_hash: Optional[str] = None
    email_verified: bool = False
    is_blocked: bool = False
    is_admin: bool = False
    avatar_url: Optional[str] = None
    avatar_is_local: bool = False
    auth_method: str = PASSWORD_METHOD
    referred_by: Optional[str] = None
    referrals_count: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def external_id(self, provider: str) -> Optional[str]:
        return getattr(self, PROVIDER_FIELDS[provider])

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)

    @property
    def has_local_avatar(self) -> bool:
        """True when the avatar was uploaded in-app and must survive provider refreshes."""
        if self.avatar_is_local:
            return True
        return bool(self.avatar_url and self.avatar_url.startswith(LOCAL_AVATAR_PREFIX))


@dataclass
class Session:
    id: str
    user_id: str
    token_hash: str
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())


@dataclass
class LoginAttempt:
    id: str
    identifier: str
    success: bool
    origin: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class AuthToken:
    """Single-use verification or password reset token (stored hashed)."""

    id: str
    user_id: str
    purpose: str
    token_hash: str
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())


@dataclass
class OAuthState:
    """Outstanding OAuth ``state``; deleted on first use (stored hashed)."""

    state_hash: str
    provider: str
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())


@dataclass
class Referral:
    id: str
    referrer_id: str
    referred_id: str
    code: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Friendship:
    user_id: str
    friend_id: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Notification:
    id: str
    user_id: str
    type: str
    content: str
    related_user_id: Optional[str] = None
    is_read: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class CanonicalProfile:
    """Provider-agnostic identity produced by a provider adapter."""

    provider: str
    external_id: str
    display_name: str
    email: Optional[str] = None
    avatar_url: Optional[str] = None
    email_verified: bool = False
    username: Optional[str] = None

    def __post_init__(self) -> None:
        if self.provider not in PROVIDER_FIELDS:
            raise ValueError(f"unknown provider {self.provider!r}")
        self.external_id = str(self.external_id)
        if self.email:
            self.email = self.email.strip().lower()
        else:
            self.email = None
