from __future__ import annotations

from typing import List

from rebelauth.service.errors import (
    ConflictError,
    LastAuthMethodError,
    NotFoundError,
    ValidationError,
)
from rebelauth.storage.models import LOGIN_METHODS, PASSWORD_METHOD, PROVIDER_FIELDS, User
from rebelauth.storage.protocol import AuthStore


def login_methods(user: User) -> List[str]:
    methods = [provider for provider in PROVIDER_FIELDS if user.external_id(provider)]
    if user.has_password:
        methods.append(PASSWORD_METHOD)
    return methods


class AccountLinkGuard:
    """Keeps every account reachable and every external id owned once."""

    def __init__(self, store: AuthStore) -> None:
        self.store = store

    def can_unlink(self, user: User, method: str) -> bool:
        if method not in LOGIN_METHODS:
            raise ValidationError(f"unknown login method {method!r}")
        methods = login_methods(user)
        if method not in methods:
            raise NotFoundError(f"{method} is not linked to this account")
        if len(methods) <= 1:
            raise LastAuthMethodError(
                "cannot remove the only login method on this account",
                detail={"method": method},
            )
        return True

    def ensure_can_link(self, user: User, provider: str, external_id: str) -> bool:
        """Return False when the id is already on this user (nothing to do)."""

        if provider not in PROVIDER_FIELDS:
            raise ValidationError(f"unknown provider {provider!r}")
        owner = self.store.get_user_by_external_id(provider, external_id)
        if owner and owner.id != user.id:
            raise ConflictError(
                f"this {provider} account is already linked to another user",
                detail={"provider": provider},
            )
        current = user.external_id(provider)
        if current and current != str(external_id):
            raise ConflictError(
                f"a different {provider} account is already linked",
                detail={"provider": provider},
            )
        return owner is None
