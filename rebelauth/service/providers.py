"""Provider adapters: verify third-party login payloads and normalize them.

Each adapter is built once from injected settings and registered under its
flow name. Core identity logic only ever sees the ``CanonicalProfile`` an
adapter produces.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import secrets
import time
from typing import Any, Dict, Mapping, Optional
from urllib.parse import parse_qsl, urlencode

import httpx

from rebelauth.config import Settings
from rebelauth.logging import get_logger
from rebelauth.service.errors import ProviderVerificationError
from rebelauth.storage.models import CanonicalProfile

logger = get_logger(__name__)

DISPLAY_NAME_MAX_LENGTH = 50
# Tolerated clock skew for provider-issued timestamps
_FUTURE_SKEW_SECONDS = 60


def _clean_display_name(*candidates: Optional[str], default: str) -> str:
    for candidate in candidates:
        if candidate and candidate.strip():
            return candidate.strip()[:DISPLAY_NAME_MAX_LENGTH]
    return default


def _data_check_string(payload: Mapping[str, Any]) -> str:
    return "\n".join(
        f"{key}={payload[key]}"
        for key in sorted(payload)
        if key != "hash" and payload[key] is not None
    )


def _signature_matches(expected: str, supplied: Any) -> bool:
    """Constant-time compare that tolerates non-ASCII input from the client."""
    return hmac.compare_digest(
        expected.encode(), str(supplied).encode("utf-8", "surrogatepass")
    )


def _fresh(auth_date: Any, max_age_seconds: int, now: Optional[float]) -> bool:
    try:
        issued = int(auth_date)
    except (TypeError, ValueError):
        return False
    current = time.time() if now is None else now
    if issued > current + _FUTURE_SKEW_SECONDS:
        return False
    return current - issued <= max_age_seconds


def verify_telegram_widget(
    payload: Mapping[str, Any],
    bot_token: str,
    *,
    max_age_seconds: int = 86400,
    now: Optional[float] = None,
) -> bool:
    """Check a Telegram Login Widget payload.

    The signing key is ``SHA256(bot_token)`` and the signature is the hex
    HMAC-SHA256 of the sorted ``key=value`` lines, excluding ``hash``.
    """
    if not bot_token or not all(payload.get(key) for key in ("hash", "id", "auth_date")):
        return False
    if not _fresh(payload["auth_date"], max_age_seconds, now):
        return False
    secret = hashlib.sha256(bot_token.encode()).digest()
    message = _data_check_string(payload).encode("utf-8", "surrogatepass")
    expected = hmac.new(secret, message, hashlib.sha256).hexdigest()
    return _signature_matches(expected, str(payload["hash"]).lower())


def parse_init_data(payload: Mapping[str, Any]) -> Dict[str, Any]:
    """Accept either a raw ``init_data`` query string or already-split fields."""
    raw = payload.get("init_data")
    if isinstance(raw, str):
        return dict(parse_qsl(raw, keep_blank_values=True))
    return dict(payload)


def verify_telegram_init_data(
    payload: Mapping[str, Any],
    bot_token: str,
    *,
    max_age_seconds: int = 86400,
    now: Optional[float] = None,
) -> bool:
    """Check bot-issued Mini App ``initData``.

    Same data-check string as the widget, but keyed with
    ``HMAC-SHA256("WebAppData", bot_token)``.
    """
    fields = parse_init_data(payload)
    if not bot_token or not fields.get("hash") or not fields.get("user"):
        return False
    if not _fresh(fields.get("auth_date"), max_age_seconds, now):
        return False
    if isinstance(fields["user"], Mapping):
        fields["user"] = json.dumps(fields["user"], separators=(",", ":"), ensure_ascii=False)
    secret = hmac.new(b"WebAppData", bot_token.encode(), hashlib.sha256).digest()
    message = _data_check_string(fields).encode("utf-8", "surrogatepass")
    expected = hmac.new(secret, message, hashlib.sha256).hexdigest()
    return _signature_matches(expected, str(fields["hash"]).lower())


def sign_oauth_state(provider: str, secret: str, *, now: Optional[float] = None) -> str:
    """Signed OAuth ``state``: nonce, issue time and an HMAC over both."""
    nonce = secrets.token_urlsafe(16)
    issued = int(time.time() if now is None else now)
    body = f"{nonce}.{issued}"
    signature = hmac.new(
        secret.encode(), f"{provider}:{body}".encode(), hashlib.sha256
    ).hexdigest()
    return f"{body}.{signature}"


def verify_oauth_state(
    state: Optional[str],
    provider: str,
    secret: str,
    *,
    max_age_seconds: int = 600,
    now: Optional[float] = None,
) -> bool:
    if not state or not secret:
        return False
    parts = state.split(".")
    if len(parts) != 3:
        return False
    nonce, issued, signature = parts
    message = f"{provider}:{nonce}.{issued}".encode("utf-8", "surrogatepass")
    expected = hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()
    if not _signature_matches(expected, signature):
        return False
    return _fresh(issued, max_age_seconds, now)


class ProviderAdapter:
    """Base adapter. ``provider`` names the external id column family."""

    name: str = ""
    provider: str = ""

    def verify(self, payload: Mapping[str, Any]) -> bool:
        raise NotImplementedError

    def extract_profile(self, payload: Mapping[str, Any]) -> CanonicalProfile:
        raise NotImplementedError


class TelegramWidgetAdapter(ProviderAdapter):
    name = "telegram_widget"
    provider = "telegram"

    def __init__(self, bot_token: str, *, max_age_seconds: int = 86400) -> None:
        self.bot_token = bot_token
        self.max_age_seconds = max_age_seconds

    def verify(self, payload: Mapping[str, Any]) -> bool:
        return verify_telegram_widget(
            payload, self.bot_token, max_age_seconds=self.max_age_seconds
        )

    def extract_profile(self, payload: Mapping[str, Any]) -> CanonicalProfile:
        full_name = " ".join(
            part for part in (payload.get("first_name"), payload.get("last_name")) if part
        )
        return CanonicalProfile(
            provider=self.provider,
            external_id=str(payload["id"]),
            display_name=_clean_display_name(
                full_name, payload.get("username"), default="Telegram user"
            ),
            avatar_url=payload.get("photo_url") or None,
            username=payload.get("username") or None,
        )


class TelegramBotAdapter(ProviderAdapter):
    """Login issued by the Telegram bot through a Mini App launch."""

    name = "telegram_bot"
    provider = "telegram"

    def __init__(self, bot_token: str, *, max_age_seconds: int = 86400) -> None:
        self.bot_token = bot_token
        self.max_age_seconds = max_age_seconds

    def verify(self, payload: Mapping[str, Any]) -> bool:
        return verify_telegram_init_data(
            payload, self.bot_token, max_age_seconds=self.max_age_seconds
        )

    def extract_profile(self, payload: Mapping[str, Any]) -> CanonicalProfile:
        user = parse_init_data(payload)["user"]
        if isinstance(user, str):
            user = json.loads(user)
        full_name = " ".join(
            part for part in (user.get("first_name"), user.get("last_name")) if part
        )
        return CanonicalProfile(
            provider=self.provider,
            external_id=str(user["id"]),
            display_name=_clean_display_name(
                full_name, user.get("username"), default="Telegram user"
            ),
            avatar_url=user.get("photo_url") or None,
            username=user.get("username") or None,
        )


class OAuthAdapter(ProviderAdapter):
    """Authorization-code flow; ``verify`` checks the signed ``state``."""

    auth_url: str = ""
    token_url: str = ""
    userinfo_url: str = ""
    scope: str = ""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        state_secret: str,
        *,
        state_ttl_seconds: int = 600,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.state_secret = state_secret
        self.state_ttl_seconds = state_ttl_seconds
        self._transport = transport

    def new_state(self) -> str:
        return sign_oauth_state(self.name, self.state_secret)

    def authorization_url(self, state: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": self.scope,
            "state": state,
        }
        params.update(self._extra_auth_params())
        return f"{self.auth_url}?{urlencode(params)}"

    def _extra_auth_params(self) -> Dict[str, str]:
        return {}

    def verify(self, payload: Mapping[str, Any]) -> bool:
        if not payload.get("code"):
            return False
        return verify_oauth_state(
            payload.get("state"),
            self.name,
            self.state_secret,
            max_age_seconds=self.state_ttl_seconds,
        )

    async def fetch_userinfo(self, code: str) -> Dict[str, Any]:
        """Exchange the authorization code and return the provider's userinfo."""
        try:
            async with httpx.AsyncClient(
                timeout=30.0, follow_redirects=False, transport=self._transport
            ) as client:
                token_response = await client.post(
                    self.token_url,
                    data={
                        "client_id": self.client_id,
                        "client_secret": self.client_secret,
                        "code": code,
                        "redirect_uri": self.redirect_uri,
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                access_token = token_response.json().get("access_token")
                if not access_token:
                    logger.error("oauth_no_access_token", provider=self.name)
                    raise ProviderVerificationError("provider did not return an access token")

                userinfo_response = await client.get(
                    self.userinfo_url,
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_exchange_http_error",
                provider=self.name,
                status_code=exc.response.status_code,
            )
            raise ProviderVerificationError("provider rejected the authorization code") from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("oauth_exchange_error", provider=self.name, error=str(exc))
            raise ProviderVerificationError("provider exchange failed") from exc

        if not isinstance(userinfo, dict):
            logger.error("oauth_userinfo_invalid_format", provider=self.name)
            raise ProviderVerificationError("provider returned an invalid profile")
        logger.info("oauth_exchange_success", provider=self.name)
        return userinfo


class GoogleOAuthAdapter(OAuthAdapter):
    name = "google"
    provider = "google"
    auth_url = "https://accounts.google.com/o/oauth2/v2/auth"
    token_url = "https://oauth2.googleapis.com/token"
    userinfo_url = "https://openidconnect.googleapis.com/v1/userinfo"
    scope = "openid email profile"

    def _extra_auth_params(self) -> Dict[str, str]:
        return {"prompt": "select_account"}

    def extract_profile(self, payload: Mapping[str, Any]) -> CanonicalProfile:
        external_id = payload.get("sub") or payload.get("id")
        if not external_id:
            raise ProviderVerificationError("provider profile has no id")
        email = payload.get("email")
        verified = payload.get("email_verified", payload.get("verified_email", False))
        return CanonicalProfile(
            provider=self.provider,
            external_id=str(external_id),
            display_name=_clean_display_name(
                payload.get("name"),
                email.split("@")[0] if email else None,
                default="Google user",
            ),
            email=email,
            avatar_url=payload.get("picture") or None,
            email_verified=bool(email) and verified in (True, "true"),
        )


class DiscordOAuthAdapter(OAuthAdapter):
    name = "discord"
    provider = "discord"
    auth_url = "https://discord.com/oauth2/authorize"
    token_url = "https://discord.com/api/oauth2/token"
    userinfo_url = "https://discord.com/api/users/@me"
    scope = "identify email"

    def extract_profile(self, payload: Mapping[str, Any]) -> CanonicalProfile:
        external_id = payload.get("id")
        if not external_id:
            raise ProviderVerificationError("provider profile has no id")
        username = payload.get("username")
        discriminator = payload.get("discriminator")
        # Legacy tags keep the #discriminator; migrated accounts report "0"
        if username and discriminator and discriminator != "0":
            username = f"{username}#{discriminator}"
        avatar = payload.get("avatar")
        email = payload.get("email")
        return CanonicalProfile(
            provider=self.provider,
            external_id=str(external_id),
            display_name=_clean_display_name(
                payload.get("global_name"), username, default="Discord user"
            ),
            email=email,
            avatar_url=(
                f"https://cdn.discordapp.com/avatars/{external_id}/{avatar}.png"
                if avatar
                else None
            ),
            email_verified=bool(email) and bool(payload.get("verified")),
            username=username,
        )


def build_provider_registry(
    settings: Settings, *, transport: Optional[httpx.AsyncBaseTransport] = None
) -> Dict[str, ProviderAdapter]:
    """Construct every adapter whose secrets are configured, keyed by flow name."""

    registry: Dict[str, ProviderAdapter] = {}
    if settings.telegram_bot_token:
        max_age = settings.telegram_auth_max_age_seconds
        registry["telegram_widget"] = TelegramWidgetAdapter(
            settings.telegram_bot_token, max_age_seconds=max_age
        )
        registry["telegram_bot"] = TelegramBotAdapter(
            settings.telegram_bot_token, max_age_seconds=max_age
        )

    oauth_clients = {
        "google": (
            GoogleOAuthAdapter,
            settings.oauth_google_client_id,
            settings.oauth_google_client_secret,
        ),
        "discord": (
            DiscordOAuthAdapter,
            settings.oauth_discord_client_id,
            settings.oauth_discord_client_secret,
        ),
    }
    for name, (adapter_cls, client_id, client_secret) in oauth_clients.items():
        if not client_id or not client_secret:
            continue
        state_secret = settings.oauth_state_secret or client_secret
        registry[name] = adapter_cls(
            client_id,
            client_secret,
            settings.oauth_callback_url(name),
            state_secret,
            state_ttl_seconds=settings.oauth_state_ttl_seconds,
            transport=transport,
        )

    logger.info("provider_registry_built", providers=sorted(registry))
    return registry
