"""Unit tests for MemoryStore constraints and bookkeeping."""

from datetime import timedelta

import pytest

from rebelauth.storage.errors import ConstraintViolation
from rebelauth.storage.models import AuthToken, OAuthState, Referral, Session, utcnow


def make_user(store, **overrides):
    fields = dict(
        display_name="Store User",
        referral_code="STOR0001",
        email="store@example.com",
        password_hash="hash",
    )
    fields.update(overrides)
    return store.create_user(**fields)


class TestUserConstraints:
    def test_user_without_login_method_rejected(self, store):
        with pytest.raises(ConstraintViolation) as exc:
            make_user(store, password_hash=None)
        assert exc.value.field == "login_method"

    @pytest.mark.parametrize(
        "field,first,second",
        [
            ("email", {"email": "dup@example.com"}, {"email": "DUP@example.com"}),
            ("referral_code", {}, {"email": "other@example.com"}),
            (
                "telegram_id",
                {"telegram_id": "1"},
                {"telegram_id": "1", "email": "b@example.com", "referral_code": "STOR0002"},
            ),
        ],
    )
    def test_unique_columns(self, store, field, first, second):
        make_user(store, **first)
        with pytest.raises(ConstraintViolation) as exc:
            make_user(store, **second)
        assert exc.value.field == field

    def test_returned_records_are_copies(self, store):
        user = make_user(store)
        user.display_name = "Mutated"
        assert store.get_user(user.id).display_name == "Store User"

    def test_lookup_by_email_is_case_insensitive(self, store):
        user = make_user(store)
        assert store.get_user_by_email(" STORE@example.com ").id == user.id

    def test_unknown_update_field_rejected(self, store):
        user = make_user(store)
        with pytest.raises(ValueError):
            store.update_user(user.id, referrals_count=99)

    def test_update_missing_user_returns_none(self, store):
        assert store.update_user("missing", display_name="x") is None


class TestSessionsAndTokens:
    def test_expired_session_sweep_is_scoped_to_user(self, store):
        alice = make_user(store)
        bob = make_user(store, email="bob@example.com", referral_code="STOR0002")
        past = utcnow() - timedelta(days=1)
        for user, token_hash in ((alice, "h1"), (bob, "h2")):
            store.create_session(
                Session(
                    id=token_hash,
                    user_id=user.id,
                    token_hash=token_hash,
                    created_at=past - timedelta(days=30),
                    expires_at=past,
                )
            )

        assert store.delete_expired_sessions(utcnow(), user_id=alice.id) == 1
        assert store.get_session("h2") is not None

    def test_token_delete_reports_whether_it_won(self, store):
        user = make_user(store)
        now = utcnow()
        store.create_auth_token(
            AuthToken(
                id="t1",
                user_id=user.id,
                purpose="verify_email",
                token_hash="hash",
                created_at=now,
                expires_at=now + timedelta(hours=1),
            )
        )
        assert store.delete_auth_token("t1") is True
        assert store.delete_auth_token("t1") is False

    def test_oauth_state_pops_once_and_sweeps(self, store):
        now = utcnow()
        for key, expires_at in (("live", now + timedelta(minutes=10)), ("old", now)):
            store.create_oauth_state(
                OAuthState(state_hash=key, provider="google", created_at=now, expires_at=expires_at)
            )
        with pytest.raises(ConstraintViolation):
            store.create_oauth_state(
                OAuthState(state_hash="live", provider="google", created_at=now, expires_at=now)
            )

        assert store.delete_expired_oauth_states(now) == 1
        assert store.pop_oauth_state("live").provider == "google"
        assert store.pop_oauth_state("live") is None


class TestReferralBookkeeping:
    def test_create_referral_updates_counts_once(self, store):
        referrer = make_user(store)
        referred = make_user(store, email="new@example.com", referral_code="STOR0002")
        referral = Referral(id="r1", referrer_id=referrer.id, referred_id=referred.id, code="STOR0001")

        store.create_referral(referral)
        with pytest.raises(ConstraintViolation):
            store.create_referral(Referral(id="r2", referrer_id=referrer.id, referred_id=referred.id, code="STOR0001"))

        assert store.get_user(referrer.id).referrals_count == 1
        assert store.get_user(referred.id).referred_by == referrer.id
        assert [r.id for r in store.list_referrals(referrer.id)] == ["r1"]

    def test_friendship_is_bidirectional_and_idempotent(self, store):
        a = make_user(store)
        b = make_user(store, email="b@example.com", referral_code="STOR0002")

        assert store.add_friendship(a.id, b.id) is True
        assert store.add_friendship(b.id, a.id) is False
        assert store.list_friends(a.id) == [b.id]
        assert store.list_friends(b.id) == [a.id]
