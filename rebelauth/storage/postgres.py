from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from rebelauth.logging import get_logger
from rebelauth.storage.errors import ConstraintViolation
from rebelauth.storage.models import (
    PASSWORD_METHOD,
    PROVIDER_FIELDS,
    AuthToken,
    LoginAttempt,
    Notification,
    OAuthState,
    Referral,
    Session,
    User,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        display_name TEXT NOT NULL,
        email TEXT,
        telegram_id TEXT,
        telegram_username TEXT,
        google_id TEXT,
        discord_id TEXT,
        password_hash TEXT,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        is_blocked BOOLEAN NOT NULL DEFAULT FALSE,
        is_admin BOOLEAN NOT NULL DEFAULT FALSE,
        avatar_url TEXT,
        avatar_is_local BOOLEAN NOT NULL DEFAULT FALSE,
        auth_method TEXT NOT NULL,
        referral_code TEXT NOT NULL,
        referred_by UUID REFERENCES app_user(id) ON DELETE SET NULL,
        referrals_count INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT app_user_email_key UNIQUE (email),
        CONSTRAINT app_user_referral_code_key UNIQUE (referral_code),
        CONSTRAINT app_user_telegram_id_key UNIQUE (telegram_id),
        CONSTRAINT app_user_google_id_key UNIQUE (google_id),
        CONSTRAINT app_user_discord_id_key UNIQUE (discord_id),
        CONSTRAINT app_user_login_method_check CHECK (
            password_hash IS NOT NULL
            OR telegram_id IS NOT NULL
            OR google_id IS NOT NULL
            OR discord_id IS NOT NULL
        )
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_session (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        token_hash TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL,
        CONSTRAINT user_session_token_hash_key UNIQUE (token_hash)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS login_attempt (
        id UUID PRIMARY KEY,
        identifier TEXT NOT NULL,
        origin TEXT,
        success BOOLEAN NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS login_attempt_identifier_idx ON login_attempt (identifier, created_at)",
    """
    CREATE TABLE IF NOT EXISTS auth_token (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        purpose TEXT NOT NULL,
        token_hash TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL,
        CONSTRAINT auth_token_token_hash_key UNIQUE (token_hash)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS oauth_state (
        state_hash TEXT PRIMARY KEY,
        provider TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS referral (
        id UUID PRIMARY KEY,
        referrer_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        referred_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        code TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT referral_pair_key UNIQUE (referrer_id, referred_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS friendship (
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        friend_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (user_id, friend_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS notification (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        type TEXT NOT NULL,
        content TEXT NOT NULL,
        related_user_id UUID REFERENCES app_user(id) ON DELETE SET NULL,
        is_read BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)

# Constraint name -> field reported in ConstraintViolation.detail
_CONSTRAINT_FIELDS = {
    "app_user_email_key": "email",
    "app_user_referral_code_key": "referral_code",
    "app_user_telegram_id_key": "telegram_id",
    "app_user_google_id_key": "google_id",
    "app_user_discord_id_key": "discord_id",
    "app_user_login_method_check": "login_method",
    "user_session_token_hash_key": "token_hash",
    "auth_token_token_hash_key": "token_hash",
    "oauth_state_pkey": "state_hash",
    "referral_pair_key": "referral",
}

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

_USER_COLUMNS = (
    "id, display_name, email, telegram_id, telegram_username, google_id, discord_id, "
    "password_hash, email_verified, is_blocked, is_admin, avatar_url, avatar_is_local, "
    "auth_method, referral_code, referred_by, referrals_count, created_at, updated_at"
)


def _constraint_violation(exc: errors.IntegrityError) -> ConstraintViolation:
    constraint = getattr(exc.diag, "constraint_name", None) or ""
    field = _CONSTRAINT_FIELDS.get(constraint, constraint or "unknown")
    return ConstraintViolation(f"{field} already exists", {"field": field})


def _row_to_user(row: Dict[str, Any]) -> User:
    return User(
        id=str(row["id"]),
        display_name=row["display_name"],
        referral_code=row["referral_code"],
        email=row.get("email"),
        telegram_id=row.get("telegram_id"),
        telegram_username=row.get("telegram_username"),
        google_id=row.get("google_id"),
        discord_id=row.get("discord_id"),
        password_hash=row.get("password_hash"),
        email_verified=bool(row.get("email_verified")),
        is_blocked=bool(row.get("is_blocked")),
        is_admin=bool(row.get("is_admin")),
        avatar_url=row.get("avatar_url"),
        avatar_is_local=bool(row.get("avatar_is_local")),
        auth_method=row.get("auth_method") or PASSWORD_METHOD,
        referred_by=str(row["referred_by"]) if row.get("referred_by") else None,
        referrals_count=row.get("referrals_count") or 0,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_session(row: Dict[str, Any]) -> Session:
    return Session(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        token_hash=row["token_hash"],
        created_at=row["created_at"],
        expires_at=row["expires_at"],
    )


def _row_to_token(row: Dict[str, Any]) -> AuthToken:
    return AuthToken(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        purpose=row["purpose"],
        token_hash=row["token_hash"],
        created_at=row["created_at"],
        expires_at=row["expires_at"],
    )


def _row_to_oauth_state(row: Dict[str, Any]) -> OAuthState:
    return OAuthState(
        state_hash=row["state_hash"],
        provider=row["provider"],
        created_at=row["created_at"],
        expires_at=row["expires_at"],
    )


def _row_to_referral(row: Dict[str, Any]) -> Referral:
    return Referral(
        id=str(row["id"]),
        referrer_id=str(row["referrer_id"]),
        referred_id=str(row["referred_id"]),
        code=row["code"],
        created_at=row["created_at"],
    )


def _row_to_notification(row: Dict[str, Any]) -> Notification:
    return Notification(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        type=row["type"],
        content=row["content"],
        related_user_id=str(row["related_user_id"]) if row.get("related_user_id") else None,
        is_read=bool(row.get("is_read")),
        created_at=row["created_at"],
    )


class PostgresStore:
    """Postgres-backed store; every method is a single short transaction."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self.ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def ensure_schema(self) -> None:
        """Create the identity tables and their unique constraints if missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready")

    def close(self) -> None:
        self.pool.close()

    # -- users ---------------------------------------------------------------

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
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO app_user (
                        id, display_name, email, telegram_id, telegram_username, google_id,
                        discord_id, password_hash, email_verified, is_admin, avatar_url,
                        auth_method, referral_code
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_USER_COLUMNS}
                    """,
                    (
                        user_id,
                        display_name,
                        email.lower() if email else None,
                        telegram_id,
                        telegram_username,
                        google_id,
                        discord_id,
                        password_hash,
                        email_verified,
                        is_admin,
                        avatar_url,
                        auth_method,
                        referral_code,
                    ),
                ).fetchone()
        except (errors.UniqueViolation, errors.CheckViolation) as exc:
            raise _constraint_violation(exc) from exc
        return _row_to_user(row)

    def _fetch_user(self, where: str, value: Any) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE {where} = %s", (value,)
            ).fetchone()
        return _row_to_user(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        return self._fetch_user("id", user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._fetch_user("email", email.strip().lower())

    def get_user_by_external_id(self, provider: str, external_id: str) -> Optional[User]:
        # column name comes from a fixed mapping, never from input
        return self._fetch_user(PROVIDER_FIELDS[provider], str(external_id))

    def get_user_by_referral_code(self, code: str) -> Optional[User]:
        return self._fetch_user("referral_code", code.strip().upper())

    def referral_code_exists(self, code: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM app_user WHERE referral_code = %s", (code.strip().upper(),)
            ).fetchone()
        return row is not None

    def update_user(self, user_id: str, **fields) -> Optional[User]:
        unknown = set(fields) - _UPDATABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"cannot update user fields: {sorted(unknown)}")
        if not fields:
            return self.get_user(user_id)
        if fields.get("email"):
            fields["email"] = fields["email"].lower()
        assignments = ", ".join(f"{name} = %s" for name in fields)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE app_user SET {assignments}, updated_at = now() "
                    f"WHERE id = %s RETURNING {_USER_COLUMNS}",
                    (*fields.values(), user_id),
                ).fetchone()
        except (errors.UniqueViolation, errors.CheckViolation) as exc:
            raise _constraint_violation(exc) from exc
        return _row_to_user(row) if row else None

    # -- sessions ------------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_session (id, user_id, token_hash, created_at, expires_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.token_hash,
                        session.created_at,
                        session.expires_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise _constraint_violation(exc) from exc
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_session WHERE id = %s", (session_id,)
            ).fetchone()
        return _row_to_session(row) if row else None

    def get_session_by_token_hash(self, token_hash: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_session WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return _row_to_session(row) if row else None

    def delete_session(self, session_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM user_session WHERE id = %s", (session_id,))
            return cur.rowcount > 0

    def delete_user_sessions(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM user_session WHERE user_id = %s", (user_id,))
            return cur.rowcount

    def delete_expired_sessions(self, now: datetime, user_id: Optional[str] = None) -> int:
        with self._connect() as conn:
            if user_id is None:
                cur = conn.execute("DELETE FROM user_session WHERE expires_at <= %s", (now,))
            else:
                cur = conn.execute(
                    "DELETE FROM user_session WHERE expires_at <= %s AND user_id = %s",
                    (now, user_id),
                )
            return cur.rowcount

    # -- login attempts ------------------------------------------------------

    def add_login_attempt(self, attempt: LoginAttempt) -> LoginAttempt:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO login_attempt (id, identifier, origin, success, created_at)
                VALUES (%s, %s, %s, %s, %s)
                """,
                (
                    attempt.id,
                    attempt.identifier,
                    attempt.origin,
                    attempt.success,
                    attempt.created_at,
                ),
            )
        return attempt

    def count_login_failures(self, identifier: str, since: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS failures FROM login_attempt
                WHERE identifier = %s AND success = FALSE AND created_at > %s
                """,
                (identifier, since),
            ).fetchone()
        return int(row["failures"]) if row else 0

    def latest_login_failure(self, identifier: str, since: datetime) -> Optional[datetime]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT MAX(created_at) AS latest FROM login_attempt
                WHERE identifier = %s AND success = FALSE AND created_at > %s
                """,
                (identifier, since),
            ).fetchone()
        return row["latest"] if row else None

    def delete_login_failures(self, identifier: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM login_attempt WHERE identifier = %s AND success = FALSE",
                (identifier,),
            )
            return cur.rowcount

    def prune_login_attempts(self, before: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM login_attempt WHERE created_at < %s", (before,))
            return cur.rowcount

    # -- single-use tokens ---------------------------------------------------

    def create_auth_token(self, token: AuthToken) -> AuthToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_token (id, user_id, purpose, token_hash, created_at, expires_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        token.id,
                        token.user_id,
                        token.purpose,
                        token.token_hash,
                        token.created_at,
                        token.expires_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise _constraint_violation(exc) from exc
        return token

    def get_auth_token(self, token_hash: str, purpose: str) -> Optional[AuthToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_token WHERE token_hash = %s AND purpose = %s",
                (token_hash, purpose),
            ).fetchone()
        return _row_to_token(row) if row else None

    def delete_auth_token(self, token_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM auth_token WHERE id = %s", (token_id,))
            return cur.rowcount > 0

    def delete_user_auth_tokens(self, user_id: str, purpose: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM auth_token WHERE user_id = %s AND purpose = %s",
                (user_id, purpose),
            )
            return cur.rowcount

    def delete_expired_auth_tokens(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM auth_token WHERE expires_at <= %s", (now,))
            return cur.rowcount

    # -- oauth state ---------------------------------------------------------

    def create_oauth_state(self, state: OAuthState) -> OAuthState:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO oauth_state (state_hash, provider, created_at, expires_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (state.state_hash, state.provider, state.created_at, state.expires_at),
                )
        except errors.UniqueViolation as exc:
            raise _constraint_violation(exc) from exc
        return state

    def pop_oauth_state(self, state_hash: str) -> Optional[OAuthState]:
        """Delete and return in one statement so concurrent callbacks cannot both win."""
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM oauth_state WHERE state_hash = %s RETURNING *",
                (state_hash,),
            ).fetchone()
        return _row_to_oauth_state(row) if row else None

    def delete_expired_oauth_states(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM oauth_state WHERE expires_at <= %s", (now,))
            return cur.rowcount

    # -- referrals, friendships, notifications -------------------------------

    def create_referral(self, referral: Referral) -> Referral:
        """Insert the referral, bump the referrer's count and set referred_by once."""
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO referral (id, referrer_id, referred_id, code, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        referral.id,
                        referral.referrer_id,
                        referral.referred_id,
                        referral.code,
                        referral.created_at,
                    ),
                )
                conn.execute(
                    "UPDATE app_user SET referrals_count = referrals_count + 1, "
                    "updated_at = now() WHERE id = %s",
                    (referral.referrer_id,),
                )
                conn.execute(
                    "UPDATE app_user SET referred_by = %s, updated_at = now() "
                    "WHERE id = %s AND referred_by IS NULL",
                    (referral.referrer_id, referral.referred_id),
                )
        except (errors.UniqueViolation, errors.ForeignKeyViolation) as exc:
            raise _constraint_violation(exc) from exc
        return referral

    def list_referrals(self, referrer_id: str) -> List[Referral]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM referral WHERE referrer_id = %s ORDER BY created_at DESC",
                (referrer_id,),
            ).fetchall()
        return [_row_to_referral(row) for row in rows]

    def add_friendship(self, user_id: str, friend_id: str) -> bool:
        """Create the edge in both directions; returns False when both already existed."""
        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO friendship (user_id, friend_id)
                VALUES (%s, %s), (%s, %s)
                ON CONFLICT (user_id, friend_id) DO NOTHING
                """,
                (user_id, friend_id, friend_id, user_id),
            )
            return cur.rowcount > 0

    def list_friends(self, user_id: str) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT friend_id FROM friendship WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [str(row["friend_id"]) for row in rows]

    def add_notification(self, notification: Notification) -> Notification:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO notification (id, user_id, type, content, related_user_id, is_read, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    notification.id,
                    notification.user_id,
                    notification.type,
                    notification.content,
                    notification.related_user_id,
                    notification.is_read,
                    notification.created_at,
                ),
            )
        return notification

    def list_notifications(self, user_id: str) -> List[Notification]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM notification WHERE user_id = %s ORDER BY created_at DESC",
                (user_id,),
            ).fetchall()
        return [_row_to_notification(row) for row in rows]
