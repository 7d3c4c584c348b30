from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Tuple

from rebelauth.logging import get_logger
from rebelauth.service.errors import (
    AccountBlockedError,
    SessionExpiredError,
    SessionNotFoundError,
)
from rebelauth.service.tokens import hash_token
from rebelauth.storage.models import Session, User, utcnow
from rebelauth.storage.protocol import AuthStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class IssuedSession:
    token: str
    session_id: str
    expires_at: datetime


class SessionManager:
    """Opaque, absolutely-expiring session credentials.

    The store is authoritative: a session exists exactly as long as its row
    does, so revocation is a delete and no denylist is kept.
    """

    def __init__(
        self,
        store: AuthStore,
        *,
        ttl: timedelta = timedelta(days=30),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.ttl = ttl
        self._clock = clock

    def issue(self, user_id: str) -> IssuedSession:
        now = self._clock()
        self.store.delete_expired_sessions(now, user_id=user_id)
        token = secrets.token_urlsafe(32)
        session = Session(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_hash=hash_token(token),
            created_at=now,
            expires_at=now + self.ttl,
        )
        self.store.create_session(session)
        logger.info("session_issued", user_id=user_id, session_id=session.id)
        return IssuedSession(token=token, session_id=session.id, expires_at=session.expires_at)

    def validate(self, token: str) -> Tuple[User, Session]:
        if not token:
            raise SessionNotFoundError("session not found")
        session = self.store.get_session_by_token_hash(hash_token(token))
        if not session:
            raise SessionNotFoundError("session not found")
        if session.is_expired(self._clock()):
            self.store.delete_session(session.id)
            logger.info("session_expired", session_id=session.id, user_id=session.user_id)
            raise SessionExpiredError("session expired")

        user = self.store.get_user(session.user_id)
        if not user:
            self.store.delete_session(session.id)
            raise SessionNotFoundError("session not found")
        if user.is_blocked:
            raise AccountBlockedError("account is blocked")
        return user, session

    def revoke(self, session_id: str) -> bool:
        removed = self.store.delete_session(session_id)
        if removed:
            logger.info("session_revoked", session_id=session_id)
        return removed

    def revoke_all(self, user_id: str) -> int:
        count = self.store.delete_user_sessions(user_id)
        logger.info("user_sessions_revoked", user_id=user_id, count=count)
        return count
