from __future__ import annotations

import logging
from typing import Any, Dict

from ..db.base import BaseDBManager
from ..models.notification import (
    NotificationEvent,
    NotificationStatus,
    NotificationType,
)
from ..notifications.queue import AsyncNotificationQueue


logger = logging.getLogger(__name__)


class NotificationService:
    """
    Notification sink backed by the DB and a message queue.

    Each notification is stored as a `NotificationEvent` and then handed to
    the queue; the event id doubles as the consumer-side dedupe key.
    """

    def __init__(
        self,
        db: BaseDBManager,
        queue: AsyncNotificationQueue,
        low_credit_threshold: int = 0,
    ) -> None:
        self._db = db
        self._queue = queue
        self._low_credit_threshold = low_credit_threshold

    async def notify(self, recipient_id: str, event: str, payload: Dict[str, Any]) -> None:
        notification_type = NotificationType(event)
        record = NotificationEvent(
            recipient_id=recipient_id,
            notification_type=notification_type,
            payload=payload,
            status=NotificationStatus.PENDING,
        )
        record = await self._db.add_notification_event(record)

        await self._queue.enqueue(
            {
                "notification_id": record.id,
                "type": notification_type.value,
                "recipient_id": recipient_id,
                "payload": payload,
            }
        )
        logger.debug("Queued %s notification %s", notification_type.value, record.id)

        if (
            notification_type is NotificationType.CREDITS_REMOVED
            and payload.get("new_balance", self._low_credit_threshold + 1)
            <= self._low_credit_threshold
        ):
            await self.notify(
                recipient_id,
                NotificationType.LOW_CREDITS.value,
                {"available_credits": payload["new_balance"]},
            )
