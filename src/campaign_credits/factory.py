from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from .cache.base import AsyncCacheBackend
from .cache.memory import InMemoryAsyncCache
from .collaborators import AuditSink
from .config import Settings, get_settings
from .db.base import BaseDBManager
from .db.memory import InMemoryDBManager
from .db.mongo import MongoDBManager
from .logging.ledger_logger import LedgerLogger
from .models.base import utcnow
from .notifications.queue import AsyncNotificationQueue, InMemoryNotificationQueue
from .services.account_service import AccountService
from .services.allocator import CreditAllocator
from .services.notification_service import NotificationService
from .services.pacing import CampaignPacingEngine
from .services.purchase_service import PurchaseService


logger = logging.getLogger(__name__)


@dataclass
class CreditServices:
    db: BaseDBManager
    cache: AsyncCacheBackend
    ledger: LedgerLogger
    queue: AsyncNotificationQueue
    notifications: NotificationService
    allocator: CreditAllocator
    pacing: CampaignPacingEngine
    accounts: AccountService
    purchases: PurchaseService


def create_db_manager(settings: Optional[Settings] = None) -> BaseDBManager:
    settings = settings or get_settings()
    if settings.mongo_uri:
        logger.info("Using MongoDB database %s", settings.mongo_db)
        return MongoDBManager.from_client_uri(settings.mongo_uri, settings.mongo_db)
    logger.info("No MongoDB URI configured; using the in-memory store")
    return InMemoryDBManager()


def build_services(
    settings: Optional[Settings] = None,
    db: Optional[BaseDBManager] = None,
    audit: Optional[AuditSink] = None,
    queue: Optional[AsyncNotificationQueue] = None,
    clock: Callable[[], datetime] = utcnow,
) -> CreditServices:
    """Wire the credit ledger services around one store, cache and ledger log."""
    settings = settings or get_settings()
    db = db or create_db_manager(settings)
    cache = InMemoryAsyncCache(default_ttl_seconds=settings.cache_ttl_seconds)
    ledger = LedgerLogger(file_path=settings.ledger_log_path)
    queue = queue or InMemoryNotificationQueue()
    notifications = NotificationService(
        db=db, queue=queue, low_credit_threshold=settings.low_credit_threshold
    )

    common = dict(
        db=db,
        ledger=ledger,
        audit=audit,
        notifier=notifications,
        cache=cache,
        clock=clock,
        cache_ttl_seconds=settings.cache_ttl_seconds,
    )
    return CreditServices(
        db=db,
        cache=cache,
        ledger=ledger,
        queue=queue,
        notifications=notifications,
        allocator=CreditAllocator(**common),
        pacing=CampaignPacingEngine(
            issues_rejection_ratio=settings.issues_rejection_ratio, **common
        ),
        accounts=AccountService(expiry_warning_days=settings.expiry_warning_days, **common),
        purchases=PurchaseService(
            default_validity_days=settings.default_validity_days,
            expiry_warning_days=settings.expiry_warning_days,
            **common,
        ),
    )
