from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol

from rebelauth.storage.models import (
    AuthToken,
    LoginAttempt,
    Notification,
    OAuthState,
    Referral,
    Session,
    User,
)


class AuthStore(Protocol):
    """Persistence surface shared by MemoryStore and PostgresStore.

    Writes that collide with a unique column raise ``ConstraintViolation``
    with ``detail["field"]`` naming that column.
    """

    # users
    def create_user(self, *, display_name: str, referral_code: str, **fields) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_external_id(self, provider: str, external_id: str) -> Optional[User]: ...

    def get_user_by_referral_code(self, code: str) -> Optional[User]: ...

    def referral_code_exists(self, code: str) -> bool: ...

    def update_user(self, user_id: str, **fields) -> Optional[User]: ...

    # sessions
    def create_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def get_session_by_token_hash(self, token_hash: str) -> Optional[Session]: ...

    def delete_session(self, session_id: str) -> bool: ...

    def delete_user_sessions(self, user_id: str) -> int: ...

    def delete_expired_sessions(self, now: datetime, user_id: Optional[str] = None) -> int: ...

    # login attempts
    def add_login_attempt(self, attempt: LoginAttempt) -> LoginAttempt: ...

    def count_login_failures(self, identifier: str, since: datetime) -> int: ...

    def latest_login_failure(self, identifier: str, since: datetime) -> Optional[datetime]: ...

    def delete_login_failures(self, identifier: str) -> int: ...

    def prune_login_attempts(self, before: datetime) -> int: ...

    # single-use tokens
    def create_auth_token(self, token: AuthToken) -> AuthToken: ...

    def get_auth_token(self, token_hash: str, purpose: str) -> Optional[AuthToken]: ...

    def delete_auth_token(self, token_id: str) -> bool: ...

    def delete_user_auth_tokens(self, user_id: str, purpose: str) -> int: ...

    def delete_expired_auth_tokens(self, now: datetime) -> int: ...

    # oauth state
    def create_oauth_state(self, state: OAuthState) -> OAuthState: ...

    def pop_oauth_state(self, state_hash: str) -> Optional[OAuthState]: ...

    def delete_expired_oauth_states(self, now: datetime) -> int: ...

    # referrals, friendships, notifications
    def create_referral(self, referral: Referral) -> Referral: ...

    def list_referrals(self, referrer_id: str) -> List[Referral]: ...

    def add_friendship(self, user_id: str, friend_id: str) -> bool: ...

    def list_friends(self, user_id: str) -> List[str]: ...

    def add_notification(self, notification: Notification) -> Notification: ...

    def list_notifications(self, user_id: str) -> List[Notification]: ...
