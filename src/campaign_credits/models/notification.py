from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, Optional

from pydantic import Field

from .base import DBSerializableModel, utcnow


class NotificationType(str, Enum):
    CREDITS_ADDED = "credits_added"
    CREDITS_REMOVED = "credits_removed"
    PAYMENT_RECEIVED = "payment_received"
    CREDITS_EXPIRED = "credits_expired"
    EXPIRING_CREDITS = "expiring_credits"
    LOW_CREDITS = "low_credits"
    CAMPAIGN_COMPLETED = "campaign_completed"


class NotificationStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class NotificationEvent(DBSerializableModel):
    """
    Stored representation of notifications for auditing/monitoring.
    """

    collection_name: ClassVar[str] = "credit_notifications"

    id: Optional[str] = Field(default=None)
    recipient_id: str
    notification_type: NotificationType
    payload: Dict[str, Any] = Field(default_factory=dict)
    status: NotificationStatus = NotificationStatus.PENDING
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    sent_at: Optional[datetime] = None
