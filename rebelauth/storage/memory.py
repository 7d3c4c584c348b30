from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from rebelauth.logging import get_logger
from rebelauth.storage.errors import ConstraintViolation
from rebelauth.storage.models import (
    PASSWORD_METHOD,
    PROVIDER_FIELDS,
    AuthToken,
    Friendship,
    LoginAttempt,
    Notification,
    OAuthState,
    Referral,
    Session,
    User,
    utcnow,
)

# Columns callers may change through update_user
_UPDATABLE_USER_FIELDS = frozenset({
    "display_name",
    "email",
    "telegram_id",
    "telegram_username",
    "google_id",
    "discord_id",
    "password_hash",
    "email_verified",
    "is_blocked",
    "is_admin",
    "avatar_url",
    "avatar_is_local",
})
_UNIQUE_USER_FIELDS = ("email", "referral_code", *PROVIDER_FIELDS.values())


class MemoryStore:
    """In-memory backing store with the same uniqueness rules as PostgresStore.

    Records are copied on the way in and out so callers never mutate stored
    state without going through a store method.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.login_attempts: List[LoginAttempt] = []
        self.auth_tokens: Dict[str, AuthToken] = {}
        self.oauth_states: Dict[str, OAuthState] = {}
        self.referrals: Dict[str, Referral] = {}
        self.friendships: Dict[tuple[str, str], Friendship] = {}
        self.notifications: List[Notification] = []
        # RLock for all data operations to ensure thread safety
        self._data_lock = threading.RLock()

    # -- users ---------------------------------------------------------------

    def _check_unique(self, candidate: User, *, exclude_id: Optional[str] = None) -> None:
        for field_name in _UNIQUE_USER_FIELDS:
            value = getattr(candidate, field_name)
            if value is None:
                continue
            for existing in self.users.values():
                if existing.id == exclude_id:
                    continue
                if getattr(existing, field_name) == value:
                    raise ConstraintViolation(
                        f"{field_name} already exists", {"field": field_name}
                    )

    @staticmethod
    def _check_login_method(user: User) -> None:
        if not user.password_hash and not any(
            getattr(user, column) for column in PROVIDER_FIELDS.values()
        ):
            raise ConstraintViolation(
                "user requires at least one login method", {"field": "login_method"}
            )

    def create_user(
        self,
        *,
        display_name: str,
        referral_code: str,
        email: Optional[str] = None,
        telegram_id: Optional[str] = None,
        telegram_username: Optional[str] = None,
        google_id: Optional[str] = None,
        discord_id: Optional[str] = None,
        password_hash: Optional[str] = None,
        email_verified: bool = False,
        is_admin: bool = False,
        avatar_url: Optional[str] = None,
        auth_method: str = PASSWORD_METHOD,
    ) -> User:
        user = User(
            id=str(uuid.uuid4()),
            display_name=display_name,
            referral_code=referral_code,
            email=email.lower() if email else None,
            telegram_id=telegram_id,
            telegram_username=telegram_username,
            google_id=google_id,
            discord_id=discord_id,
            password_hash=password_hash,
            email_verified=email_verified,
            is_admin=is_admin,
            avatar_url=avatar_url,
            auth_method=auth_method,
        )
        self._check_login_method(user)
        with self._data_lock:
            self._check_unique(user)
            self.users[user.id] = user
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def _find_user(self, field_name: str, value: str) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                if getattr(user, field_name) == value:
                    return replace(user)
        return None

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._find_user("email", email.strip().lower())

    def get_user_by_external_id(self, provider: str, external_id: str) -> Optional[User]:
        return self._find_user(PROVIDER_FIELDS[provider], str(external_id))

    def get_user_by_referral_code(self, code: str) -> Optional[User]:
        return self._find_user("referral_code", code.strip().upper())

    def referral_code_exists(self, code: str) -> bool:
        return self.get_user_by_referral_code(code) is not None

    def update_user(self, user_id: str, **fields) -> Optional[User]:
        unknown = set(fields) - _UPDATABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"cannot update user fields: {sorted(unknown)}")
        if fields.get("email"):
            fields["email"] = fields["email"].lower()
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            updated = replace(user, **fields, updated_at=utcnow())
            self._check_login_method(updated)
            self._check_unique(updated, exclude_id=user_id)
            self.users[user_id] = updated
            return replace(updated)

    # -- sessions ------------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if any(s.token_hash == session.token_hash for s in self.sessions.values()):
                raise ConstraintViolation("session token already exists", {"field": "token_hash"})
            self.sessions[session.id] = replace(session)
            return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            session = self.sessions.get(session_id)
            return replace(session) if session else None

    def get_session_by_token_hash(self, token_hash: str) -> Optional[Session]:
        with self._data_lock:
            for session in self.sessions.values():
                if session.token_hash == token_hash:
                    return replace(session)
        return None

    def delete_session(self, session_id: str) -> bool:
        with self._data_lock:
            return self.sessions.pop(session_id, None) is not None

    def delete_user_sessions(self, user_id: str) -> int:
        with self._data_lock:
            doomed = [sid for sid, s in self.sessions.items() if s.user_id == user_id]
            for sid in doomed:
                del self.sessions[sid]
            return len(doomed)

    def delete_expired_sessions(self, now: datetime, user_id: Optional[str] = None) -> int:
        with self._data_lock:
            doomed = [
                sid
                for sid, s in self.sessions.items()
                if s.expires_at <= now and (user_id is None or s.user_id == user_id)
            ]
            for sid in doomed:
                del self.sessions[sid]
            return len(doomed)

    # -- login attempts ------------------------------------------------------

    def add_login_attempt(self, attempt: LoginAttempt) -> LoginAttempt:
        with self._data_lock:
            self.login_attempts.append(replace(attempt))
            return attempt

    def _failures(self, identifier: str, since: datetime) -> List[LoginAttempt]:
        return [
            a
            for a in self.login_attempts
            if a.identifier == identifier and not a.success and a.created_at > since
        ]

    def count_login_failures(self, identifier: str, since: datetime) -> int:
        with self._data_lock:
            return len(self._failures(identifier, since))

    def latest_login_failure(self, identifier: str, since: datetime) -> Optional[datetime]:
        with self._data_lock:
            failures = self._failures(identifier, since)
            return max((a.created_at for a in failures), default=None)

    def delete_login_failures(self, identifier: str) -> int:
        with self._data_lock:
            before = len(self.login_attempts)
            self.login_attempts = [
                a for a in self.login_attempts if a.identifier != identifier or a.success
            ]
            return before - len(self.login_attempts)

    def prune_login_attempts(self, before: datetime) -> int:
        with self._data_lock:
            count = len(self.login_attempts)
            self.login_attempts = [a for a in self.login_attempts if a.created_at >= before]
            return count - len(self.login_attempts)

    # -- single-use tokens ---------------------------------------------------

    def create_auth_token(self, token: AuthToken) -> AuthToken:
        with self._data_lock:
            if any(t.token_hash == token.token_hash for t in self.auth_tokens.values()):
                raise ConstraintViolation("token already exists", {"field": "token_hash"})
            self.auth_tokens[token.id] = replace(token)
            return token

    def get_auth_token(self, token_hash: str, purpose: str) -> Optional[AuthToken]:
        with self._data_lock:
            for token in self.auth_tokens.values():
                if token.token_hash == token_hash and token.purpose == purpose:
                    return replace(token)
        return None

    def delete_auth_token(self, token_id: str) -> bool:
        with self._data_lock:
            return self.auth_tokens.pop(token_id, None) is not None

    def delete_user_auth_tokens(self, user_id: str, purpose: str) -> int:
        with self._data_lock:
            doomed = [
                tid
                for tid, t in self.auth_tokens.items()
                if t.user_id == user_id and t.purpose == purpose
            ]
            for tid in doomed:
                del self.auth_tokens[tid]
            return len(doomed)

    def delete_expired_auth_tokens(self, now: datetime) -> int:
        with self._data_lock:
            doomed = [tid for tid, t in self.auth_tokens.items() if t.expires_at <= now]
            for tid in doomed:
                del self.auth_tokens[tid]
            return len(doomed)

    # -- oauth state ---------------------------------------------------------

    def create_oauth_state(self, state: OAuthState) -> OAuthState:
        with self._data_lock:
            if state.state_hash in self.oauth_states:
                raise ConstraintViolation("oauth state already exists", {"field": "state_hash"})
            self.oauth_states[state.state_hash] = replace(state)
            return state

    def pop_oauth_state(self, state_hash: str) -> Optional[OAuthState]:
        with self._data_lock:
            return self.oauth_states.pop(state_hash, None)

    def delete_expired_oauth_states(self, now: datetime) -> int:
        with self._data_lock:
            doomed = [key for key, s in self.oauth_states.items() if s.expires_at <= now]
            for key in doomed:
                del self.oauth_states[key]
            return len(doomed)

    # -- referrals, friendships, notifications -------------------------------

    def create_referral(self, referral: Referral) -> Referral:
        """Insert the referral, bump the referrer's count and set referred_by once."""
        with self._data_lock:
            if any(
                r.referrer_id == referral.referrer_id and r.referred_id == referral.referred_id
                for r in self.referrals.values()
            ):
                raise ConstraintViolation("referral already recorded", {"field": "referral"})
            referrer = self.users.get(referral.referrer_id)
            referred = self.users.get(referral.referred_id)
            if not referrer or not referred:
                raise ConstraintViolation("referral user missing", {"field": "user_id"})
            self.referrals[referral.id] = replace(referral)
            self.users[referrer.id] = replace(
                referrer, referrals_count=referrer.referrals_count + 1, updated_at=utcnow()
            )
            if referred.referred_by is None:
                self.users[referred.id] = replace(
                    referred, referred_by=referrer.id, updated_at=utcnow()
                )
            return referral

    def list_referrals(self, referrer_id: str) -> List[Referral]:
        with self._data_lock:
            rows = [replace(r) for r in self.referrals.values() if r.referrer_id == referrer_id]
        return sorted(rows, key=lambda r: r.created_at, reverse=True)

    def add_friendship(self, user_id: str, friend_id: str) -> bool:
        """Create the edge in both directions; returns False when both already existed."""
        with self._data_lock:
            created = False
            for pair in ((user_id, friend_id), (friend_id, user_id)):
                if pair not in self.friendships:
                    self.friendships[pair] = Friendship(user_id=pair[0], friend_id=pair[1])
                    created = True
            return created

    def list_friends(self, user_id: str) -> List[str]:
        with self._data_lock:
            return [friend for (owner, friend) in self.friendships if owner == user_id]

    def add_notification(self, notification: Notification) -> Notification:
        with self._data_lock:
            self.notifications.append(replace(notification))
            return notification

    def list_notifications(self, user_id: str) -> List[Notification]:
        with self._data_lock:
            rows = [replace(n) for n in self.notifications if n.user_id == user_id]
        return sorted(rows, key=lambda n: n.created_at, reverse=True)
