"""Tests for single-use verification and reset tokens."""

import pytest

from rebelauth.service.errors import ExpiredTokenError, InvalidTokenError
from rebelauth.service.tokens import generate_secure_token, hash_token
from rebelauth.storage.models import TOKEN_PURPOSE_PASSWORD_RESET, TOKEN_PURPOSE_VERIFY_EMAIL


@pytest.fixture
def user(store):
    return store.create_user(
        display_name="Token User",
        referral_code="TOKN0001",
        email="token@example.com",
        password_hash="x",
    )


class TestTokenHelpers:
    def test_secure_token_is_64_hex_chars(self):
        token = generate_secure_token()
        assert len(token) == 64
        int(token, 16)

    def test_hash_is_deterministic(self):
        assert hash_token("abc") == hash_token("abc")
        assert hash_token("abc") != hash_token("abd")


class TestTokenLifecycle:
    def test_issue_then_consume_once(self, stack, user):
        raw = stack.tokens.issue(user.id, TOKEN_PURPOSE_VERIFY_EMAIL)

        assert stack.tokens.consume(raw, TOKEN_PURPOSE_VERIFY_EMAIL).id == user.id
        with pytest.raises(InvalidTokenError):
            stack.tokens.consume(raw, TOKEN_PURPOSE_VERIFY_EMAIL)

    def test_raw_token_is_never_stored(self, stack, user, store):
        raw = stack.tokens.issue(user.id, TOKEN_PURPOSE_VERIFY_EMAIL)

        stored = list(store.auth_tokens.values())
        assert [t.token_hash for t in stored] == [hash_token(raw)]

    def test_purpose_must_match(self, stack, user):
        raw = stack.tokens.issue(user.id, TOKEN_PURPOSE_VERIFY_EMAIL)

        with pytest.raises(InvalidTokenError):
            stack.tokens.consume(raw, TOKEN_PURPOSE_PASSWORD_RESET)

    def test_unknown_purpose_rejected(self, stack, user):
        with pytest.raises(ValueError):
            stack.tokens.issue(user.id, "magic_link")

    def test_expired_token_is_deleted_and_reported(self, stack, user, store, clock):
        raw = stack.tokens.issue(user.id, TOKEN_PURPOSE_PASSWORD_RESET)
        clock.advance(minutes=61)

        with pytest.raises(ExpiredTokenError):
            stack.tokens.consume(raw, TOKEN_PURPOSE_PASSWORD_RESET)
        assert store.auth_tokens == {}
        with pytest.raises(InvalidTokenError):
            stack.tokens.consume(raw, TOKEN_PURPOSE_PASSWORD_RESET)

    def test_verification_token_lives_24_hours(self, stack, user, clock):
        raw = stack.tokens.issue(user.id, TOKEN_PURPOSE_VERIFY_EMAIL)
        clock.advance(hours=23, minutes=59)

        assert stack.tokens.consume(raw, TOKEN_PURPOSE_VERIFY_EMAIL).id == user.id

    def test_new_reset_token_replaces_previous(self, stack, user):
        first = stack.tokens.issue(user.id, TOKEN_PURPOSE_PASSWORD_RESET)
        second = stack.tokens.issue(user.id, TOKEN_PURPOSE_PASSWORD_RESET)

        with pytest.raises(InvalidTokenError):
            stack.tokens.consume(first, TOKEN_PURPOSE_PASSWORD_RESET)
        assert stack.tokens.consume(second, TOKEN_PURPOSE_PASSWORD_RESET).id == user.id

    def test_issue_sweeps_expired_tokens(self, stack, user, store, clock):
        stack.tokens.issue(user.id, TOKEN_PURPOSE_VERIFY_EMAIL)
        clock.advance(days=2)
        stack.tokens.issue(user.id, TOKEN_PURPOSE_PASSWORD_RESET)

        purposes = [t.purpose for t in store.auth_tokens.values()]
        assert purposes == [TOKEN_PURPOSE_PASSWORD_RESET]

    def test_concurrent_redeem_loses(self, stack, user, store):
        raw = stack.tokens.issue(user.id, TOKEN_PURPOSE_VERIFY_EMAIL)
        record = store.get_auth_token(hash_token(raw), TOKEN_PURPOSE_VERIFY_EMAIL)

        original_get = store.get_auth_token

        def get_then_race(token_hash, purpose):
            found = original_get(token_hash, purpose)
            # another request deletes the row between lookup and delete
            store.delete_auth_token(record.id)
            return found

        store.get_auth_token = get_then_race
        with pytest.raises(InvalidTokenError):
            stack.tokens.consume(raw, TOKEN_PURPOSE_VERIFY_EMAIL)

    def test_revoke_all_by_purpose(self, stack, user):
        verify = stack.tokens.issue(user.id, TOKEN_PURPOSE_VERIFY_EMAIL)
        stack.tokens.issue(user.id, TOKEN_PURPOSE_PASSWORD_RESET)

        assert stack.tokens.revoke_all(user.id, TOKEN_PURPOSE_PASSWORD_RESET) == 1
        assert stack.tokens.consume(verify, TOKEN_PURPOSE_VERIFY_EMAIL).id == user.id
