import pytest
from pydantic import ValidationError

from rebelauth.config import Settings
from rebelauth.logging import _redact_pii, mask_email


class TestSettings:
    def test_defaults_match_policy(self):
        settings = Settings()
        assert settings.session_ttl_days == 30
        assert settings.login_max_failures == 5
        assert settings.login_window_minutes == 15
        assert settings.login_lock_minutes == 30
        assert settings.reset_token_ttl_minutes == 60

    def test_from_env_reads_named_variables(self, monkeypatch):
        monkeypatch.setenv("LOGIN_MAX_FAILURES", "3")
        monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example")
        settings = Settings.from_env()

        assert settings.login_max_failures == 3
        assert settings.allowed_origins == ["https://a.example", "https://b.example"]

    def test_non_positive_policy_rejected(self):
        with pytest.raises(ValidationError):
            Settings(login_lock_minutes=0)

    def test_request_limits_default_per_client(self):
        settings = Settings()
        assert (settings.login_rate_limit, settings.login_rate_limit_window_seconds) == (5, 900)
        assert (settings.signup_rate_limit, settings.signup_rate_limit_window_seconds) == (3, 3600)
        assert (settings.reset_rate_limit, settings.reset_rate_limit_window_seconds) == (3, 3600)

    def test_zero_limit_allowed_but_negative_and_zero_window_rejected(self):
        assert Settings(reset_rate_limit=0).reset_rate_limit == 0
        with pytest.raises(ValidationError):
            Settings(reset_rate_limit=-1)
        with pytest.raises(ValidationError):
            Settings(login_rate_limit_window_seconds=0)

    def test_oauth_callback_url(self):
        settings = Settings(app_base_url="https://watch.example/")
        assert (
            settings.oauth_callback_url("google")
            == "https://watch.example/v1/auth/oauth/google/callback"
        )


class TestLogRedaction:
    def test_mask_email(self):
        assert mask_email("person@example.com").endswith("@example.com")
        assert not mask_email("person@example.com").startswith("person")

    def test_secrets_are_redacted(self):
        event = _redact_pii(
            None,
            "info",
            {"event": "x", "password": "hunter2", "token_hash": "abc", "email": "p@example.com"},
        )
        assert event["password"] != "hunter2"
        assert event["token_hash"] != "abc"
        assert event["email"] != "p@example.com"
        assert event["event"] == "x"


class TestServerEntryPoint:
    def test_main_serves_the_app_with_uvicorn(self, monkeypatch):
        from rebelauth import app as app_module
        from rebelauth.config import reset_settings_cache

        monkeypatch.setenv("HOST", "127.0.0.1")
        monkeypatch.setenv("PORT", "9100")
        reset_settings_cache()
        calls = []
        monkeypatch.setattr(
            app_module.uvicorn, "run", lambda target, **kwargs: calls.append((target, kwargs))
        )

        app_module.main()

        assert calls == [
            (
                "rebelauth.app:app",
                {"host": "127.0.0.1", "port": 9100, "proxy_headers": True, "reload": False},
            )
        ]
