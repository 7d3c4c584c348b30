from __future__ import annotations

import hashlib
import secrets
import uuid
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from rebelauth.logging import get_logger
from rebelauth.service.errors import ExpiredTokenError, InvalidTokenError
from rebelauth.storage.models import (
    TOKEN_PURPOSE_PASSWORD_RESET,
    TOKEN_PURPOSE_VERIFY_EMAIL,
    TOKEN_PURPOSES,
    AuthToken,
    User,
    utcnow,
)
from rebelauth.storage.protocol import AuthStore

logger = get_logger(__name__)


def generate_secure_token(num_bytes: int = 32) -> str:
    return secrets.token_hex(num_bytes)


def hash_token(raw: str) -> str:
    """Digest stored in place of the raw token."""
    return hashlib.sha256(raw.encode()).hexdigest()


class TokenLifecycle:
    """Single-use, expiring tokens for email verification and password reset."""

    def __init__(
        self,
        store: AuthStore,
        *,
        ttls: Optional[Dict[str, timedelta]] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.ttls = {
            TOKEN_PURPOSE_VERIFY_EMAIL: timedelta(hours=24),
            TOKEN_PURPOSE_PASSWORD_RESET: timedelta(hours=1),
            **(ttls or {}),
        }
        self._clock = clock

    def issue(self, user_id: str, purpose: str, ttl: Optional[timedelta] = None) -> str:
        """Persist a new token and return its raw value (shown only once)."""

        if purpose not in TOKEN_PURPOSES:
            raise ValueError(f"unknown token purpose {purpose!r}")
        now = self._clock()
        swept = self.store.delete_expired_auth_tokens(now)
        if swept:
            logger.debug("auth_tokens_swept", count=swept)
        if purpose == TOKEN_PURPOSE_PASSWORD_RESET:
            # at most one live reset token per user
            self.store.delete_user_auth_tokens(user_id, purpose)

        raw = generate_secure_token()
        lifetime = ttl or self.ttls[purpose]
        self.store.create_auth_token(
            AuthToken(
                id=str(uuid.uuid4()),
                user_id=user_id,
                purpose=purpose,
                token_hash=hash_token(raw),
                created_at=now,
                expires_at=now + lifetime,
            )
        )
        logger.info("auth_token_issued", user_id=user_id, purpose=purpose)
        return raw

    def consume(self, raw: str, purpose: str) -> User:
        """Redeem a token. The row is deleted on success and on detected expiry."""

        if not raw:
            raise InvalidTokenError("token is invalid or has already been used")
        record = self.store.get_auth_token(hash_token(raw), purpose)
        if not record:
            raise InvalidTokenError("token is invalid or has already been used")

        if not self.store.delete_auth_token(record.id):
            # a concurrent request redeemed it first
            raise InvalidTokenError("token is invalid or has already been used")
        if record.is_expired(self._clock()):
            logger.info("auth_token_expired", user_id=record.user_id, purpose=purpose)
            raise ExpiredTokenError("token has expired, request a new one")

        user = self.store.get_user(record.user_id)
        if not user:
            raise InvalidTokenError("token is invalid or has already been used")
        logger.info("auth_token_consumed", user_id=user.id, purpose=purpose)
        return user

    def revoke_all(self, user_id: str, purpose: str) -> int:
        return self.store.delete_user_auth_tokens(user_id, purpose)
