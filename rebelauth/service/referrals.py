from __future__ import annotations

import secrets
import uuid
from typing import Callable, List, Optional

from rebelauth.logging import get_logger
from rebelauth.service.errors import NotFoundError, ReferralCodeExhaustedError
from rebelauth.service.notifications import NotificationSink
from rebelauth.storage.errors import ConstraintViolation
from rebelauth.storage.models import NOTIFICATION_FRIEND_ACTIVITY, Referral, User
from rebelauth.storage.protocol import AuthStore

logger = get_logger(__name__)

REFERRAL_CODE_BYTES = 4


def random_referral_code() -> str:
    """Eight upper-case hex characters, e.g. ``AB12CD34``."""
    return secrets.token_hex(REFERRAL_CODE_BYTES).upper()


class ReferralCodeGenerator:
    """Draws unique referral codes and converts redeemed codes into friendships.

    The collision pre-check is optimistic; the store's unique constraint on
    ``referral_code`` is what actually guarantees uniqueness, and callers that
    hit it simply ask for another code.
    """

    def __init__(
        self,
        store: AuthStore,
        notifications: NotificationSink,
        *,
        max_attempts: int = 10,
        code_factory: Callable[[], str] = random_referral_code,
    ) -> None:
        self.store = store
        self.notifications = notifications
        self.max_attempts = max_attempts
        self._code_factory = code_factory

    def generate_unique(self) -> str:
        for attempt in range(1, self.max_attempts + 1):
            code = self._code_factory()
            if not self.store.referral_code_exists(code):
                return code
            logger.warning("referral_code_collision", attempt=attempt)
        logger.error("referral_code_exhausted", attempts=self.max_attempts)
        raise ReferralCodeExhaustedError("could not allocate a unique referral code")

    def apply_referral(self, new_user_id: str, code: Optional[str]) -> Optional[Referral]:
        """Link a fresh signup to its referrer. Unknown codes are ignored."""

        if not code or not code.strip():
            return None
        normalized = code.strip().upper()
        referrer = self.store.get_user_by_referral_code(normalized)
        new_user = self.store.get_user(new_user_id)
        if not referrer or not new_user:
            logger.info("referral_code_ignored", reason="unknown_code")
            return None
        if referrer.id == new_user.id:
            logger.info("referral_code_ignored", reason="self_referral")
            return None

        referral = Referral(
            id=str(uuid.uuid4()),
            referrer_id=referrer.id,
            referred_id=new_user.id,
            code=normalized,
        )
        try:
            self.store.create_referral(referral)
        except ConstraintViolation as exc:
            # Already converted (a retried signup); nothing left to do
            logger.info("referral_already_recorded", detail=exc.detail)
            return None

        self.store.add_friendship(referrer.id, new_user.id)
        self.notifications.enqueue(
            referrer.id,
            NOTIFICATION_FRIEND_ACTIVITY,
            f"{new_user.display_name} registered using your referral link "
            "and was added to your friends",
            new_user.id,
        )
        self.notifications.enqueue(
            new_user.id,
            NOTIFICATION_FRIEND_ACTIVITY,
            f"You were added as friends with {referrer.display_name}, who invited you",
            referrer.id,
        )
        logger.info(
            "referral_applied", referrer_id=referrer.id, referred_id=new_user.id
        )
        return referral

    def referral_summary(self, user_id: str) -> dict:
        user = self._require_user(user_id)
        return {
            "referral_code": user.referral_code,
            "referrals_count": user.referrals_count,
        }

    def list_referrals(self, user_id: str) -> List[dict]:
        self._require_user(user_id)
        results = []
        for referral in self.store.list_referrals(user_id):
            referred = self.store.get_user(referral.referred_id)
            results.append(
                {
                    "user_id": referral.referred_id,
                    "display_name": referred.display_name if referred else None,
                    "avatar_url": referred.avatar_url if referred else None,
                    "created_at": referral.created_at,
                }
            )
        return results

    def _require_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found")
        return user
