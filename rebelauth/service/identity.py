from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from rebelauth.logging import get_logger
from rebelauth.service.errors import AccountBlockedError, ConflictError, ServerError
from rebelauth.service.referrals import ReferralCodeGenerator
from rebelauth.storage.errors import ConstraintViolation
from rebelauth.storage.models import PROVIDER_FIELDS, CanonicalProfile, User
from rebelauth.storage.protocol import AuthStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class Resolution:
    user: User
    created: bool
    linked: bool = False


class IdentityResolver:
    """Find-or-create the unified user behind a canonical provider profile.

    Lookup order is external id, then email (an account-link event, taken
    only when the provider vouches for the address), then a new account.
    Losing a creation race to a concurrent signup shows up as a
    ``ConstraintViolation``; the lookup is simply re-run, bounded by
    ``max_attempts``.
    """

    def __init__(
        self,
        store: AuthStore,
        referrals: ReferralCodeGenerator,
        *,
        admin_telegram_id: Optional[str] = None,
        max_attempts: int = 5,
    ) -> None:
        self.store = store
        self.referrals = referrals
        self.admin_telegram_id = admin_telegram_id
        self.max_attempts = max_attempts

    def resolve(self, profile: CanonicalProfile) -> Resolution:
        for attempt in range(1, self.max_attempts + 1):
            try:
                user = self.store.get_user_by_external_id(profile.provider, profile.external_id)
                if user:
                    return Resolution(self._refresh(user, profile), created=False)
                if profile.email:
                    existing = self.store.get_user_by_email(profile.email)
                    if existing and not profile.email_verified:
                        logger.warning(
                            "unverified_email_link_refused",
                            user_id=existing.id,
                            provider=profile.provider,
                        )
                        raise ConflictError(
                            "an account with this email already exists; sign in to it and "
                            f"link {profile.provider} from your account settings",
                            detail={"provider": profile.provider, "reason": "email_unverified"},
                        )
                    if existing:
                        return Resolution(
                            self._link(existing, profile), created=False, linked=True
                        )
                return Resolution(self._create(profile), created=True)
            except ConstraintViolation as exc:
                logger.warning(
                    "identity_resolve_conflict",
                    provider=profile.provider,
                    field=exc.field,
                    attempt=attempt,
                )
                if exc.field not in ("referral_code", "email", PROVIDER_FIELDS[profile.provider]):
                    raise
        logger.error("identity_resolve_exhausted", provider=profile.provider)
        raise ServerError("could not complete sign-in, please retry")

    def _refresh(self, user: User, profile: CanonicalProfile) -> User:
        if user.is_blocked:
            logger.warning("blocked_user_login_refused", user_id=user.id, provider=profile.provider)
            raise AccountBlockedError("account is blocked")
        # display_name is intentionally left alone: users may have edited it in-app
        updates = {}
        if (
            profile.avatar_url
            and not user.has_local_avatar
            and profile.avatar_url != user.avatar_url
        ):
            updates["avatar_url"] = profile.avatar_url
        if (
            profile.provider == "telegram"
            and profile.username
            and profile.username != user.telegram_username
        ):
            updates["telegram_username"] = profile.username
        if not updates:
            return user
        refreshed = self.store.update_user(user.id, **updates)
        logger.info("user_profile_refreshed", user_id=user.id, fields=sorted(updates))
        return refreshed or user

    def _link(self, user: User, profile: CanonicalProfile) -> User:
        if user.is_blocked:
            logger.warning("blocked_user_link_refused", user_id=user.id, provider=profile.provider)
            raise AccountBlockedError("account is blocked")
        current = user.external_id(profile.provider)
        if current and current != profile.external_id:
            raise ConflictError(
                f"this email already belongs to an account linked to a different "
                f"{profile.provider} login",
                detail={"provider": profile.provider},
            )
        updates = {PROVIDER_FIELDS[profile.provider]: profile.external_id}
        if profile.provider == "telegram" and profile.username:
            updates["telegram_username"] = profile.username
        if profile.email_verified and not user.email_verified:
            updates["email_verified"] = True
        if profile.avatar_url and not user.avatar_url:
            updates["avatar_url"] = profile.avatar_url
        linked = self.store.update_user(user.id, **updates)
        logger.info("provider_linked_by_email", user_id=user.id, provider=profile.provider)
        return linked or user

    def _create(self, profile: CanonicalProfile) -> User:
        is_admin = bool(
            profile.provider == "telegram"
            and self.admin_telegram_id
            and profile.external_id == str(self.admin_telegram_id)
        )
        user = self.store.create_user(
            display_name=profile.display_name,
            referral_code=self.referrals.generate_unique(),
            email=profile.email,
            email_verified=bool(profile.email and profile.email_verified),
            is_admin=is_admin,
            avatar_url=profile.avatar_url,
            telegram_username=profile.username if profile.provider == "telegram" else None,
            auth_method=profile.provider,
            **{PROVIDER_FIELDS[profile.provider]: profile.external_id},
        )
        logger.info(
            "user_created", user_id=user.id, provider=profile.provider, is_admin=is_admin
        )
        return user
