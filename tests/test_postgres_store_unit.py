from contextlib import contextmanager
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from rebelauth.storage.postgres import PostgresStore, _constraint_violation, _row_to_user


class FakeCursor:
    def __init__(self, row=None, rowcount=0):
        self._row = row
        self.rowcount = rowcount

    def fetchone(self):
        return self._row


class RecordingPool:
    """Captures SQL instead of talking to a database."""

    def __init__(self, cursor=None):
        self.statements = []
        self.cursor = cursor or FakeCursor()

    @contextmanager
    def connection(self):
        pool = self

        class _Conn:
            def execute(self, sql, params=None):
                pool.statements.append((" ".join(sql.split()), params))
                return pool.cursor

        yield _Conn()


def make_store(cursor=None) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://unused"
    store.pool = RecordingPool(cursor)
    store.logger = SimpleNamespace(info=lambda *a, **k: None, warning=lambda *a, **k: None)
    return store


def user_row(**overrides):
    now = datetime(2025, 1, 1, tzinfo=timezone.utc)
    row = {
        "id": "3f1c",
        "display_name": "Row User",
        "referral_code": "ROW00001",
        "email": "row@example.com",
        "telegram_id": None,
        "telegram_username": None,
        "google_id": "g-1",
        "discord_id": None,
        "password_hash": None,
        "email_verified": True,
        "is_blocked": False,
        "is_admin": False,
        "avatar_url": None,
        "avatar_is_local": None,
        "auth_method": "google",
        "referred_by": None,
        "referrals_count": None,
        "created_at": now,
        "updated_at": now,
    }
    row.update(overrides)
    return row


class TestConstraintMapping:
    @pytest.mark.parametrize(
        "constraint,field",
        [
            ("app_user_email_key", "email"),
            ("app_user_referral_code_key", "referral_code"),
            ("app_user_telegram_id_key", "telegram_id"),
            ("app_user_login_method_check", "login_method"),
            ("referral_pair_key", "referral"),
        ],
    )
    def test_named_constraints_map_to_fields(self, constraint, field):
        exc = SimpleNamespace(diag=SimpleNamespace(constraint_name=constraint))
        assert _constraint_violation(exc).field == field

    def test_unnamed_constraint(self):
        exc = SimpleNamespace(diag=SimpleNamespace(constraint_name=None))
        assert _constraint_violation(exc).field == "unknown"


class TestRowMapping:
    def test_nulls_become_defaults(self):
        user = _row_to_user(user_row())
        assert user.referrals_count == 0
        assert user.avatar_is_local is False
        assert user.google_id == "g-1"


class TestQueries:
    def test_update_user_rejects_unknown_fields_before_sql(self):
        store = make_store()
        with pytest.raises(ValueError):
            store.update_user("3f1c", referrals_count=5)
        assert store.pool.statements == []

    def test_update_user_lowercases_email(self):
        store = make_store(FakeCursor(row=user_row(email="new@example.com")))
        updated = store.update_user("3f1c", email="NEW@Example.com")

        sql, params = store.pool.statements[0]
        assert sql.startswith("UPDATE app_user SET email = %s, updated_at = now()")
        assert params == ("new@example.com", "3f1c")
        assert updated.email == "new@example.com"

    def test_delete_auth_token_reports_rowcount(self):
        assert make_store(FakeCursor(rowcount=1)).delete_auth_token("t1") is True
        assert make_store(FakeCursor(rowcount=0)).delete_auth_token("t1") is False

    def test_pop_oauth_state_deletes_and_returns_in_one_statement(self):
        now = datetime(2025, 1, 1, tzinfo=timezone.utc)
        row = {"state_hash": "abc", "provider": "google", "created_at": now, "expires_at": now}
        store = make_store(FakeCursor(row=row))

        popped = store.pop_oauth_state("abc")

        assert store.pool.statements == [
            ("DELETE FROM oauth_state WHERE state_hash = %s RETURNING *", ("abc",))
        ]
        assert popped.provider == "google"
        assert make_store().pop_oauth_state("abc") is None
