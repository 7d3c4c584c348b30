from __future__ import annotations

import uuid
from typing import Optional, Protocol

from rebelauth.logging import get_logger
from rebelauth.storage.models import Notification
from rebelauth.storage.protocol import AuthStore

logger = get_logger(__name__)


class NotificationSink(Protocol):
    def enqueue(
        self,
        user_id: str,
        type: str,
        content: str,
        related_user_id: Optional[str] = None,
    ) -> None: ...


class StoreNotificationSink:
    """Persist notifications as rows; delivery is handled elsewhere."""

    def __init__(self, store: AuthStore) -> None:
        self.store = store

    def enqueue(
        self,
        user_id: str,
        type: str,
        content: str,
        related_user_id: Optional[str] = None,
    ) -> None:
        self.store.add_notification(
            Notification(
                id=str(uuid.uuid4()),
                user_id=user_id,
                type=type,
                content=content,
                related_user_id=related_user_id,
            )
        )
        logger.info("notification_enqueued", user_id=user_id, type=type)
