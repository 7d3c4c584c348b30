import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Must be set before anything builds the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("TELEGRAM_BOT_TOKEN", "123456:TEST-bot-token")
os.environ.setdefault("TELEGRAM_ADMIN_ID", "1000")
os.environ.setdefault("OAUTH_GOOGLE_CLIENT_ID", "google-client")
os.environ.setdefault("OAUTH_GOOGLE_CLIENT_SECRET", "google-secret")
os.environ.setdefault("OAUTH_DISCORD_CLIENT_ID", "discord-client")
os.environ.setdefault("OAUTH_DISCORD_CLIENT_SECRET", "discord-secret")
os.environ.setdefault("OAUTH_STATE_SECRET", "state-secret-for-tests")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from rebelauth.service.runtime import reset_runtime_for_tests  # noqa: E402

BOT_TOKEN = os.environ["TELEGRAM_BOT_TOKEN"]


class FakeClock:
    """Manually advanced clock shared by the services under test."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")


class RecordingEmailService:
    """Captures outbound mail so tests can follow emailed links."""

    def __init__(self):
        self.sent = []

    def send_email_verification(self, to_email, display_name, token):
        self.sent.append(("verify", to_email, token))
        return True

    def send_password_reset(self, to_email, display_name, token):
        self.sent.append(("reset", to_email, token))
        return True

    def last_token(self, kind):
        for sent_kind, _, token in reversed(self.sent):
            if sent_kind == kind:
                return token
        return None


@pytest.fixture
def settings():
    from rebelauth.config import Settings

    return Settings(
        use_memory_store=True,
        test_mode=True,
        telegram_bot_token=BOT_TOKEN,
        telegram_admin_id="1000",
        oauth_google_client_id="google-client",
        oauth_google_client_secret="google-secret",
        oauth_discord_client_id="discord-client",
        oauth_discord_client_secret="discord-secret",
        oauth_state_secret="state-secret-for-tests",
    )


@pytest.fixture
def store():
    from rebelauth.storage.memory import MemoryStore

    return MemoryStore()


@pytest.fixture
def mailer():
    return RecordingEmailService()


@pytest.fixture
def stack(store, settings, clock, mailer):
    """Every auth component wired to one memory store and one fake clock."""
    from types import SimpleNamespace

    from argon2 import PasswordHasher, Type

    from rebelauth.service.attempts import AttemptGuard
    from rebelauth.service.auth import AuthService
    from rebelauth.service.identity import IdentityResolver
    from rebelauth.service.linking import AccountLinkGuard
    from rebelauth.service.notifications import StoreNotificationSink
    from rebelauth.service.providers import build_provider_registry
    from rebelauth.service.referrals import ReferralCodeGenerator
    from rebelauth.service.sessions import SessionManager
    from rebelauth.service.tokens import TokenLifecycle

    referrals = ReferralCodeGenerator(store, StoreNotificationSink(store))
    sessions = SessionManager(store, clock=clock)
    attempts = AttemptGuard(store, clock=clock)
    tokens = TokenLifecycle(store, clock=clock)
    identity = IdentityResolver(store, referrals, admin_telegram_id="1000")
    link_guard = AccountLinkGuard(store)
    auth = AuthService(
        store,
        settings,
        sessions=sessions,
        attempts=attempts,
        tokens=tokens,
        identity=identity,
        referrals=referrals,
        link_guard=link_guard,
        email=mailer,
        providers=build_provider_registry(settings),
        # cheap parameters keep the suite fast
        password_hasher=PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID),
    )
    return SimpleNamespace(
        store=store,
        clock=clock,
        mailer=mailer,
        referrals=referrals,
        sessions=sessions,
        attempts=attempts,
        tokens=tokens,
        identity=identity,
        link_guard=link_guard,
        auth=auth,
    )


def sign_widget_payload(fields, bot_token=BOT_TOKEN):
    """Return ``fields`` plus a valid Login Widget ``hash``."""
    import hashlib
    import hmac

    check = "\n".join(f"{key}={fields[key]}" for key in sorted(fields))
    secret = hashlib.sha256(bot_token.encode()).digest()
    signed = dict(fields)
    signed["hash"] = hmac.new(secret, check.encode(), hashlib.sha256).hexdigest()
    return signed


def sign_init_data(user, auth_date, bot_token=BOT_TOKEN):
    """Build a Mini App ``initData`` query string signed for ``bot_token``."""
    import hashlib
    import hmac
    import json
    from urllib.parse import urlencode

    fields = {
        "auth_date": str(auth_date),
        "query_id": "AAH-test",
        "user": json.dumps(user, separators=(",", ":")),
    }
    check = "\n".join(f"{key}={fields[key]}" for key in sorted(fields))
    secret = hmac.new(b"WebAppData", bot_token.encode(), hashlib.sha256).digest()
    fields["hash"] = hmac.new(secret, check.encode(), hashlib.sha256).hexdigest()
    return urlencode(fields)
