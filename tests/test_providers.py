"""Tests for provider payload verification and profile normalization."""

import time
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from rebelauth.service.errors import ProviderVerificationError
from rebelauth.service.providers import (
    DiscordOAuthAdapter,
    GoogleOAuthAdapter,
    TelegramBotAdapter,
    TelegramWidgetAdapter,
    build_provider_registry,
    sign_oauth_state,
    verify_oauth_state,
    verify_telegram_init_data,
    verify_telegram_widget,
)

from conftest import BOT_TOKEN, sign_init_data, sign_widget_payload


def widget_fields(**overrides):
    fields = {
        "id": "555",
        "first_name": "Tele",
        "last_name": "Gram",
        "username": "telegram_user",
        "photo_url": "https://t.me/i/userpic/555.jpg",
        "auth_date": str(int(time.time())),
    }
    fields.update(overrides)
    return fields


def oauth_transport(userinfo, *, token_status=200, access_token="access-123"):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            if token_status != 200:
                return httpx.Response(token_status, json={"error": "invalid_grant"})
            return httpx.Response(200, json={"access_token": access_token})
        assert request.headers["Authorization"] == f"Bearer {access_token}"
        return httpx.Response(200, json=userinfo)

    return httpx.MockTransport(handler)


class TestTelegramWidget:
    def test_valid_signature_accepted(self):
        assert verify_telegram_widget(sign_widget_payload(widget_fields()), BOT_TOKEN)

    def test_tampered_field_rejected(self):
        payload = sign_widget_payload(widget_fields())
        payload["id"] = "556"
        assert not verify_telegram_widget(payload, BOT_TOKEN)

    def test_wrong_bot_token_rejected(self):
        payload = sign_widget_payload(widget_fields(), bot_token="999:other")
        assert not verify_telegram_widget(payload, BOT_TOKEN)

    def test_stale_auth_date_rejected(self):
        stale = str(int(time.time()) - 86400 - 60)
        payload = sign_widget_payload(widget_fields(auth_date=stale))
        assert not verify_telegram_widget(payload, BOT_TOKEN)

    def test_future_auth_date_rejected(self):
        future = str(int(time.time()) + 3600)
        payload = sign_widget_payload(widget_fields(auth_date=future))
        assert not verify_telegram_widget(payload, BOT_TOKEN)

    def test_missing_hash_rejected(self):
        assert not verify_telegram_widget(widget_fields(), BOT_TOKEN)

    @pytest.mark.parametrize("bad_hash", ["\u00e9", "\u00e9" * 64, "\ud800"])
    def test_non_ascii_hash_rejected(self, bad_hash):
        payload = widget_fields(hash=bad_hash)
        assert not verify_telegram_widget(payload, BOT_TOKEN)

    def test_non_ascii_field_values_still_verify(self):
        payload = sign_widget_payload(widget_fields(first_name="\u0418\u0432\u0430\u043d"))
        assert verify_telegram_widget(payload, BOT_TOKEN)

    def test_profile_extraction(self):
        adapter = TelegramWidgetAdapter(BOT_TOKEN)
        profile = adapter.extract_profile(sign_widget_payload(widget_fields()))

        assert profile.provider == "telegram"
        assert profile.external_id == "555"
        assert profile.display_name == "Tele Gram"
        assert profile.username == "telegram_user"
        assert profile.email is None

    def test_display_name_falls_back_to_username(self):
        adapter = TelegramWidgetAdapter(BOT_TOKEN)
        fields = widget_fields()
        del fields["first_name"], fields["last_name"]
        assert adapter.extract_profile(fields).display_name == "telegram_user"


class TestTelegramInitData:
    def test_valid_init_data_accepted(self):
        init_data = sign_init_data({"id": 42, "first_name": "Bot"}, int(time.time()))
        assert verify_telegram_init_data({"init_data": init_data}, BOT_TOKEN)

    def test_widget_key_does_not_verify_init_data(self):
        # same fields signed the widget way must not pass the bot check
        fields = {"auth_date": str(int(time.time())), "user": '{"id":42}'}
        payload = sign_widget_payload(fields)
        assert not verify_telegram_init_data(payload, BOT_TOKEN)

    def test_stale_init_data_rejected(self):
        init_data = sign_init_data({"id": 42}, int(time.time()) - 90000)
        assert not verify_telegram_init_data({"init_data": init_data}, BOT_TOKEN)

    def test_non_ascii_hash_rejected(self):
        fields = {"auth_date": str(int(time.time())), "user": '{"id":42}', "hash": "\u00e9"}
        assert not verify_telegram_init_data(fields, BOT_TOKEN)

    def test_profile_extraction(self):
        adapter = TelegramBotAdapter(BOT_TOKEN)
        init_data = sign_init_data(
            {"id": 42, "first_name": "Bot", "last_name": "User", "username": "botuser"},
            int(time.time()),
        )
        profile = adapter.extract_profile({"init_data": init_data})

        assert profile.external_id == "42"
        assert profile.display_name == "Bot User"
        assert profile.username == "botuser"


class TestOAuthState:
    def test_round_trip(self):
        state = sign_oauth_state("google", "secret")
        assert verify_oauth_state(state, "google", "secret")

    def test_state_is_bound_to_provider(self):
        state = sign_oauth_state("google", "secret")
        assert not verify_oauth_state(state, "discord", "secret")

    def test_expired_state_rejected(self):
        state = sign_oauth_state("google", "secret", now=time.time() - 601)
        assert not verify_oauth_state(state, "google", "secret")

    @pytest.mark.parametrize(
        "state",
        [None, "", "a.b", "a.b.c.d", "nonce.123.deadbeef", "x.1.\u00e9", "\u00e9.1.sig"],
    )
    def test_malformed_state_rejected(self, state):
        assert not verify_oauth_state(state, "google", "secret")


class TestOAuthAdapters:
    def _google(self, transport=None):
        return GoogleOAuthAdapter(
            "client", "secret", "http://localhost/cb", "state-secret", transport=transport
        )

    def _discord(self, transport=None):
        return DiscordOAuthAdapter(
            "client", "secret", "http://localhost/cb", "state-secret", transport=transport
        )

    def test_authorization_url_carries_state(self):
        adapter = self._google()
        state = adapter.new_state()
        query = parse_qs(urlparse(adapter.authorization_url(state)).query)

        assert query["state"] == [state]
        assert query["client_id"] == ["client"]
        assert query["response_type"] == ["code"]

    def test_verify_needs_code_and_valid_state(self):
        adapter = self._google()
        state = adapter.new_state()

        assert adapter.verify({"code": "abc", "state": state})
        assert not adapter.verify({"code": "", "state": state})
        assert not adapter.verify({"code": "abc", "state": "forged.1.sig"})

    async def test_fetch_userinfo_exchanges_code(self):
        adapter = self._google(oauth_transport({"sub": "g-1", "email": "a@example.com"}))
        userinfo = await adapter.fetch_userinfo("code-1")
        assert userinfo["sub"] == "g-1"

    async def test_rejected_code_raises(self):
        adapter = self._google(oauth_transport({}, token_status=400))
        with pytest.raises(ProviderVerificationError):
            await adapter.fetch_userinfo("bad-code")

    async def test_missing_access_token_raises(self):
        adapter = self._google(oauth_transport({}, access_token=""))
        with pytest.raises(ProviderVerificationError):
            await adapter.fetch_userinfo("code-1")

    def test_google_profile(self):
        profile = self._google().extract_profile(
            {
                "sub": "g-1",
                "email": "Person@Example.com",
                "email_verified": True,
                "name": "Person Name",
                "picture": "https://lh3.example/p.png",
            }
        )
        assert profile.external_id == "g-1"
        assert profile.email == "person@example.com"
        assert profile.email_verified
        assert profile.display_name == "Person Name"

    def test_google_profile_without_id_rejected(self):
        with pytest.raises(ProviderVerificationError):
            self._google().extract_profile({"email": "a@example.com"})

    def test_discord_legacy_tag_and_avatar(self):
        profile = self._discord().extract_profile(
            {
                "id": "99",
                "username": "gamer",
                "discriminator": "1234",
                "avatar": "abc",
                "email": "gamer@example.com",
                "verified": True,
            }
        )
        assert profile.username == "gamer#1234"
        assert profile.display_name == "gamer#1234"
        assert profile.avatar_url == "https://cdn.discordapp.com/avatars/99/abc.png"
        assert profile.email_verified

    def test_discord_migrated_username(self):
        profile = self._discord().extract_profile(
            {"id": "99", "username": "gamer", "discriminator": "0", "global_name": "Gamer"}
        )
        assert profile.username == "gamer"
        assert profile.display_name == "Gamer"
        assert profile.avatar_url is None


class TestRegistry:
    def test_only_configured_providers_registered(self, settings):
        assert sorted(build_provider_registry(settings)) == [
            "discord",
            "google",
            "telegram_bot",
            "telegram_widget",
        ]

    def test_unconfigured_settings_register_nothing(self):
        from rebelauth.config import Settings

        assert build_provider_registry(Settings()) == {}
