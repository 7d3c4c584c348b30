from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from rebelauth.config import Settings
from rebelauth.logging import get_logger
from rebelauth.service.attempts import AttemptGuard
from rebelauth.service.email import EmailService
from rebelauth.service.errors import (
    AccountBlockedError,
    AccountLockedError,
    ConflictError,
    InvalidCredentialsError,
    LastAuthMethodError,
    NotFoundError,
    ProviderVerificationError,
    ValidationError,
)
from rebelauth.service.identity import IdentityResolver
from rebelauth.service.linking import AccountLinkGuard, login_methods
from rebelauth.service.providers import OAuthAdapter, ProviderAdapter
from rebelauth.service.referrals import ReferralCodeGenerator
from rebelauth.service.sessions import SessionManager
from rebelauth.service.tokens import TokenLifecycle, hash_token
from rebelauth.service.validation import (
    validate_display_name,
    validate_email,
    validate_password,
)
from rebelauth.storage.errors import ConstraintViolation
from rebelauth.storage.models import (
    PASSWORD_METHOD,
    PROVIDER_FIELDS,
    TOKEN_PURPOSE_PASSWORD_RESET,
    TOKEN_PURPOSE_VERIFY_EMAIL,
    CanonicalProfile,
    OAuthState,
    Session,
    User,
    utcnow,
)
from rebelauth.storage.protocol import AuthStore
from rebelauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)

GENERIC_RESET_MESSAGE = "If an account with that email exists, a reset link has been sent."
GENERIC_RESEND_MESSAGE = (
    "If an unverified account with that email exists, a new confirmation link has been sent."
)


@dataclass
class AuthResult:
    token: str
    session_id: str
    expires_at: datetime
    user: User
    created: bool = False


@dataclass
class Registration:
    user_id: str
    email_sent: bool


def _checked(validator, value: Any, field: str) -> Any:
    try:
        return validator(value)
    except ValueError as exc:
        raise ValidationError(str(exc), detail={"field": field}) from exc


class AuthService:
    """Entry point for every login, registration and recovery flow.

    Provider path: adapter -> IdentityResolver -> SessionManager.
    Password path: AttemptGuard gate -> credential check -> SessionManager,
    with the guard updated on every outcome.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        sessions: SessionManager,
        attempts: AttemptGuard,
        tokens: TokenLifecycle,
        identity: IdentityResolver,
        referrals: ReferralCodeGenerator,
        link_guard: AccountLinkGuard,
        email: EmailService,
        providers: Optional[Dict[str, ProviderAdapter]] = None,
        password_hasher: Optional[PasswordHasher] = None,
        cache: Optional[RedisCache] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.sessions = sessions
        self.attempts = attempts
        self.tokens = tokens
        self.identity = identity
        self.referrals = referrals
        self.link_guard = link_guard
        self.email = email
        self.providers: Dict[str, ProviderAdapter] = dict(providers or {})
        self.cache = cache
        self._pwd_hasher = password_hasher or PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None
        self.logger = logger

    # -- password helpers ----------------------------------------------------

    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _verify_password(self, stored_hash: Optional[str], password: str) -> bool:
        if not stored_hash:
            # Spend comparable time so unknown accounts are not distinguishable by latency
            if self._dummy_hash is None:
                self._dummy_hash = self._hash_password("unused-dummy-password")
            stored_hash = self._dummy_hash
            password = password + "\x00"
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def _start_session(self, user: User, *, created: bool = False) -> AuthResult:
        if user.is_blocked:
            raise AccountBlockedError("account is blocked")
        issued = self.sessions.issue(user.id)
        return AuthResult(
            token=issued.token,
            session_id=issued.session_id,
            expires_at=issued.expires_at,
            user=user,
            created=created,
        )

    def _provider(self, name: str) -> ProviderAdapter:
        adapter = self.providers.get(name)
        if not adapter:
            raise NotFoundError(f"login provider {name!r} is not available")
        return adapter

    # -- provider logins -----------------------------------------------------

    async def authenticate_via_provider(
        self, profile: CanonicalProfile, referral_code: Optional[str] = None
    ) -> AuthResult:
        resolution = self.identity.resolve(profile)
        if resolution.created and referral_code:
            self.referrals.apply_referral(resolution.user.id, referral_code)
        result = self._start_session(resolution.user, created=resolution.created)
        self.logger.info(
            "provider_login_success",
            user_id=resolution.user.id,
            provider=profile.provider,
            created=resolution.created,
            linked=resolution.linked,
        )
        return result

    def _verified_profile(self, name: str, payload: Mapping[str, Any]) -> CanonicalProfile:
        adapter = self._provider(name)
        if isinstance(adapter, OAuthAdapter):
            raise ValidationError(f"{name} uses the OAuth redirect flow")
        if not adapter.verify(payload):
            self.logger.warning("provider_payload_rejected", provider=name)
            raise ProviderVerificationError("login payload failed verification")
        try:
            return adapter.extract_profile(payload)
        except (KeyError, TypeError, ValueError) as exc:
            raise ProviderVerificationError("login payload is incomplete") from exc

    async def login_with_provider(
        self,
        name: str,
        payload: Mapping[str, Any],
        referral_code: Optional[str] = None,
    ) -> AuthResult:
        """Widget and bot flows: the signed payload arrives directly from the client."""
        profile = self._verified_profile(name, payload)
        return await self.authenticate_via_provider(profile, referral_code)

    def _oauth_adapter(self, name: str) -> OAuthAdapter:
        adapter = self._provider(name)
        if not isinstance(adapter, OAuthAdapter):
            raise ValidationError(f"{name} does not use the OAuth redirect flow")
        return adapter

    async def _remember_oauth_state(self, adapter: OAuthAdapter, state: str) -> None:
        ttl = adapter.state_ttl_seconds
        if self.cache:
            await self.cache.set_oauth_state(hash_token(state), adapter.name, ttl)
            return
        now = utcnow()
        self.store.delete_expired_oauth_states(now)
        self.store.create_oauth_state(
            OAuthState(
                state_hash=hash_token(state),
                provider=adapter.name,
                created_at=now,
                expires_at=now + timedelta(seconds=ttl),
            )
        )

    async def _consume_oauth_state(self, adapter: OAuthAdapter, state: str) -> bool:
        """Single use: the record is deleted before the code exchange, even on failure."""
        if self.cache:
            provider = await self.cache.pop_oauth_state(hash_token(state))
            return provider == adapter.name
        stored = self.store.pop_oauth_state(hash_token(state))
        return bool(stored and stored.provider == adapter.name and not stored.is_expired())

    async def start_oauth(self, name: str) -> Dict[str, str]:
        adapter = self._oauth_adapter(name)
        state = adapter.new_state()
        await self._remember_oauth_state(adapter, state)
        return {
            "provider": name,
            "state": state,
            "authorization_url": adapter.authorization_url(state),
        }

    async def _oauth_profile(self, name: str, code: str, state: str) -> CanonicalProfile:
        adapter = self._oauth_adapter(name)
        if not adapter.verify({"code": code, "state": state}):
            self.logger.warning("oauth_state_rejected", provider=name)
            raise ProviderVerificationError("invalid or expired OAuth state")
        if not await self._consume_oauth_state(adapter, state):
            self.logger.warning("oauth_state_replayed", provider=name)
            raise ProviderVerificationError("invalid or expired OAuth state")
        userinfo = await adapter.fetch_userinfo(code)
        return adapter.extract_profile(userinfo)

    async def complete_oauth(
        self,
        name: str,
        code: str,
        state: str,
        referral_code: Optional[str] = None,
    ) -> AuthResult:
        profile = await self._oauth_profile(name, code, state)
        return await self.authenticate_via_provider(profile, referral_code)

    # -- password logins -----------------------------------------------------

    async def authenticate_via_password(
        self, email: str, password: str, origin: Optional[str] = None
    ) -> AuthResult:
        email = _checked(validate_email, email, "email")
        if not isinstance(password, str) or not password:
            raise ValidationError("password is required", detail={"field": "password"})

        status = await self.attempts.check(email)
        if status.blocked:
            self.logger.warning(
                "login_locked", email=email, lock_remaining_minutes=status.lock_remaining_minutes
            )
            raise AccountLockedError(status.lock_remaining_minutes)

        user = self.store.get_user_by_email(email)
        if user and user.is_blocked:
            self.logger.warning("blocked_user_login_refused", user_id=user.id)
            raise AccountBlockedError("account is blocked")

        valid = self._verify_password(user.password_hash if user else None, password)
        if not user or not valid:
            await self.attempts.record(email, origin, False)
            raise InvalidCredentialsError("invalid email or password")

        await self.attempts.record(email, origin, True)
        await self.attempts.reset(email)
        result = self._start_session(user)
        self.logger.info("password_login_success", user_id=user.id)
        return result

    async def register_with_password(
        self,
        email: str,
        password: str,
        display_name: str,
        referral_code: Optional[str] = None,
    ) -> Registration:
        email = _checked(validate_email, email, "email")
        password = _checked(validate_password, password, "password")
        display_name = _checked(validate_display_name, display_name, "display_name")

        if self.store.get_user_by_email(email):
            raise ConflictError("an account with this email already exists", detail={"field": "email"})

        password_hash = self._hash_password(password)
        user = None
        for _ in range(self.settings.account_create_max_attempts):
            try:
                user = self.store.create_user(
                    display_name=display_name,
                    referral_code=self.referrals.generate_unique(),
                    email=email,
                    password_hash=password_hash,
                    auth_method=PASSWORD_METHOD,
                )
                break
            except ConstraintViolation as exc:
                if exc.field == "email":
                    raise ConflictError(
                        "an account with this email already exists", detail={"field": "email"}
                    ) from exc
                if exc.field != "referral_code":
                    raise
                self.logger.warning("referral_code_race", field=exc.field)
        if user is None:
            raise ConflictError("could not create the account, please retry")

        if referral_code:
            self.referrals.apply_referral(user.id, referral_code)
        token = self.tokens.issue(user.id, TOKEN_PURPOSE_VERIFY_EMAIL)
        email_sent = await asyncio.to_thread(
            self.email.send_email_verification, email, display_name, token
        )
        self.logger.info("user_registered", user_id=user.id, email_sent=email_sent)
        return Registration(user_id=user.id, email_sent=email_sent)

    async def verify_email(self, token: str) -> AuthResult:
        user = self.tokens.consume(token, TOKEN_PURPOSE_VERIFY_EMAIL)
        if not user.email_verified:
            user = self.store.update_user(user.id, email_verified=True) or user
        self.logger.info("email_verified", user_id=user.id)
        return self._start_session(user)

    async def resend_verification(self, email: str) -> str:
        email = _checked(validate_email, email, "email")
        user = self.store.get_user_by_email(email)
        if user and not user.email_verified and not user.is_blocked:
            self.tokens.revoke_all(user.id, TOKEN_PURPOSE_VERIFY_EMAIL)
            token = self.tokens.issue(user.id, TOKEN_PURPOSE_VERIFY_EMAIL)
            await asyncio.to_thread(
                self.email.send_email_verification, email, user.display_name, token
            )
        return GENERIC_RESEND_MESSAGE

    async def request_password_reset(self, email: str) -> str:
        email = _checked(validate_email, email, "email")
        user = self.store.get_user_by_email(email)
        if user and not user.is_blocked:
            token = self.tokens.issue(user.id, TOKEN_PURPOSE_PASSWORD_RESET)
            await asyncio.to_thread(
                self.email.send_password_reset, email, user.display_name, token
            )
            self.logger.info("password_reset_requested", user_id=user.id)
        return GENERIC_RESET_MESSAGE

    async def reset_password(self, token: str, new_password: str) -> User:
        new_password = _checked(validate_password, new_password, "password")
        user = self.tokens.consume(token, TOKEN_PURPOSE_PASSWORD_RESET)
        updated = self.store.update_user(
            user.id,
            password_hash=self._hash_password(new_password),
            # the reset link proves control of the mailbox
            email_verified=True,
        )
        revoked = self.sessions.revoke_all(user.id)
        if user.email:
            await self.attempts.reset(user.email)
        self.logger.info("password_reset_completed", user_id=user.id, sessions_revoked=revoked)
        return updated or user

    # -- sessions ------------------------------------------------------------

    async def resolve_session(self, token: str) -> Tuple[User, Session]:
        return self.sessions.validate(token)

    async def logout(self, session_id: str) -> bool:
        return self.sessions.revoke(session_id)

    # -- linking -------------------------------------------------------------

    def _require_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found")
        return user

    def list_login_methods(self, user_id: str) -> List[str]:
        return login_methods(self._require_user(user_id))

    async def link_provider(self, user_id: str, profile: CanonicalProfile) -> User:
        user = self._require_user(user_id)
        if not self.link_guard.ensure_can_link(user, profile.provider, profile.external_id):
            return user
        updates: Dict[str, Any] = {PROVIDER_FIELDS[profile.provider]: profile.external_id}
        if profile.provider == "telegram" and profile.username:
            updates["telegram_username"] = profile.username
        try:
            linked = self.store.update_user(user.id, **updates)
        except ConstraintViolation as exc:
            raise ConflictError(
                f"this {profile.provider} account is already linked to another user",
                detail={"provider": profile.provider},
            ) from exc
        self.logger.info("provider_linked", user_id=user.id, provider=profile.provider)
        return linked or user

    async def link_with_provider(
        self, user_id: str, name: str, payload: Mapping[str, Any]
    ) -> User:
        return await self.link_provider(user_id, self._verified_profile(name, payload))

    async def link_with_oauth(self, user_id: str, name: str, code: str, state: str) -> User:
        profile = await self._oauth_profile(name, code, state)
        return await self.link_provider(user_id, profile)

    async def unlink_provider(self, user_id: str, method: str) -> User:
        user = self._require_user(user_id)
        self.link_guard.can_unlink(user, method)
        if method == PASSWORD_METHOD:
            updates: Dict[str, Any] = {"password_hash": None}
        else:
            updates = {PROVIDER_FIELDS[method]: None}
            if method == "telegram":
                updates["telegram_username"] = None
        try:
            updated = self.store.update_user(user.id, **updates)
        except ConstraintViolation as exc:
            # a concurrent unlink removed the other method first
            raise LastAuthMethodError(
                "cannot remove the only login method on this account"
            ) from exc
        self.logger.info("login_method_unlinked", user_id=user.id, method=method)
        return updated or user
