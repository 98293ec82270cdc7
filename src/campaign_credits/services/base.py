from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from ..cache.base import AsyncCacheBackend
from ..collaborators import AuditSink, NotificationSink
from ..db.base import BaseDBManager
from ..errors import InvalidArgument, NotFound
from ..logging.ledger_logger import LedgerLogger
from ..models.account import AuthorCreditAccount
from ..models.base import utcnow
from ..models.campaign import Campaign
from ..models.ledger import LedgerEntry, LedgerEntryKind
from ..models.notification import NotificationType
from ..models.results import IdempotencyRecord, OperationResult


logger = logging.getLogger(__name__)


def require_positive(value: int, name: str) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise InvalidArgument(f"{name} must be a positive integer, got {value!r}")


def account_cache_key(account_id: str) -> str:
    return f"credit:account:{account_id}:snapshot"


class LedgerServiceBase:
    """
    Plumbing shared by the services that mutate credit state.

    Subclasses do all reads and writes of one business operation inside a
    single `db.transaction()` and call `_publish` / `_notify` only after the
    block has exited, i.e. after commit. Collaborator failures are logged and
    never propagate: the mutation they describe is already durable.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerLogger,
        audit: Optional[AuditSink] = None,
        notifier: Optional[NotificationSink] = None,
        cache: Optional[AsyncCacheBackend] = None,
        clock: Callable[[], datetime] = utcnow,
        cache_ttl_seconds: int = 300,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._audit = audit
        self._notifier = notifier
        self._cache = cache
        self._clock = clock
        self._cache_ttl_seconds = cache_ttl_seconds

    async def _load_account(
        self, account_id: str, for_update: bool = True
    ) -> AuthorCreditAccount:
        account = await self._db.get_account(account_id, for_update=for_update)
        if account is None:
            raise NotFound("Author credit account", account_id)
        return account

    async def _load_campaign(self, campaign_id: str, for_update: bool = True) -> Campaign:
        campaign = await self._db.get_campaign(campaign_id, for_update=for_update)
        if campaign is None:
            raise NotFound("Campaign", campaign_id)
        return campaign

    async def _append_entry(
        self,
        account: AuthorCreditAccount,
        amount: int,
        kind: LedgerEntryKind,
        now: datetime,
        actor: Optional[str] = None,
        reason: Optional[str] = None,
        notes: Optional[str] = None,
        campaign_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> LedgerEntry:
        """Append an entry; `account` must already carry the post-operation balance."""
        entry = LedgerEntry(
            account_id=account.id,
            campaign_id=campaign_id,
            amount=amount,
            kind=kind,
            balance_after=account.available_credits,
            performed_by=actor,
            reason=reason,
            notes=notes,
            correlation_id=correlation_id,
            created_at=now,
        )
        return await self._db.append_ledger_entry(entry)

    # Idempotency
    async def _replay(
        self, idempotency_key: Optional[str], operation: str
    ) -> Optional[OperationResult]:
        if idempotency_key is None:
            return None
        record = await self._db.get_idempotency_record(idempotency_key)
        if record is None:
            return None
        if record.operation != operation:
            raise InvalidArgument(
                f"idempotency key {idempotency_key!r} was already used for {record.operation}"
            )
        logger.info("Replaying %s for idempotency key %s", operation, idempotency_key)
        result = OperationResult.model_validate(record.result)
        return result.model_copy(update={"replayed": True})

    async def _remember(
        self, idempotency_key: Optional[str], result: OperationResult
    ) -> None:
        if idempotency_key is None:
            return
        await self._db.add_idempotency_record(
            IdempotencyRecord(
                key=idempotency_key,
                operation=result.operation,
                result=result.model_dump(mode="json"),
                created_at=self._clock(),
            )
        )

    # After-commit side effects
    async def _publish(
        self,
        result: OperationResult,
        action: str,
        entity_id: str,
        actor: Optional[str],
        reason: Optional[str],
        before: Dict[str, Any],
        after: Dict[str, Any],
        correlation_id: Optional[str] = None,
    ) -> None:
        if result.entries:
            self._ledger.log_entries(result.operation, result.entries, correlation_id)
        else:
            self._ledger.log_event(
                result.operation,
                {"entity_id": entity_id, "before": before, "after": after},
                account_id=result.account.id if result.account else None,
                correlation_id=correlation_id,
            )

        if result.account is not None:
            try:
                await self._refresh_account_cache(result.account)
            except Exception:
                logger.exception("Failed to refresh cached account %s", result.account.id)
                await self._evict_account_cache(result.account.id)

        if self._audit is None:
            return
        try:
            await self._audit.record(actor, action, entity_id, before, after, reason)
        except Exception:
            logger.exception("Audit sink failed for %s on %s", action, entity_id)

    async def _notify(
        self,
        account: AuthorCreditAccount,
        event: NotificationType,
        payload: Dict[str, Any],
    ) -> None:
        if self._notifier is None:
            return
        recipient = account.owner_id or account.id
        try:
            await self._notifier.notify(recipient, event.value, payload)
        except Exception:
            logger.exception("Failed to send %s notification to %s", event.value, recipient)

    async def _refresh_account_cache(self, account: AuthorCreditAccount) -> None:
        if not self._cache:
            return
        await self._cache.set(
            account_cache_key(account.id),
            account.model_dump(mode="json"),
            ttl_seconds=self._cache_ttl_seconds,
        )

    async def _evict_account_cache(self, account_id: str) -> None:
        # A stale snapshot must not outlive a failed refresh.
        try:
            await self._cache.delete(account_cache_key(account_id))
        except Exception:
            logger.exception("Failed to evict cached account %s", account_id)
