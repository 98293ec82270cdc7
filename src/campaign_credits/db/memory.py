from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, Iterable, List, Optional, Sequence, TypeVar

from .base import BaseDBManager
from ..models.account import AuthorCreditAccount
from ..models.base import DBSerializableModel
from ..models.campaign import Campaign, CampaignStatus
from ..models.ledger import LedgerEntry, LedgerEntryKind
from ..models.notification import NotificationEvent
from ..models.purchase import CreditPurchase
from ..models.results import IdempotencyRecord


TModel = TypeVar("TModel", bound=DBSerializableModel)


@dataclass
class _PendingWrites:
    accounts: Dict[str, AuthorCreditAccount] = field(default_factory=dict)
    campaigns: Dict[str, Campaign] = field(default_factory=dict)
    ledger: List[LedgerEntry] = field(default_factory=list)
    purchases: Dict[str, CreditPurchase] = field(default_factory=dict)
    idempotency: Dict[str, IdempotencyRecord] = field(default_factory=dict)
    notifications: List[NotificationEvent] = field(default_factory=list)


class InMemoryDBManager(BaseDBManager):
    """
    Simple in-memory implementation used for tests and local development.
    NOT suitable for production, but exercises the abstraction and services.

    Transactions are serialized by a single asyncio lock, which also gives
    `for_update` reads their locking semantics. Writes made inside a
    transaction are staged per task and applied in one step on commit, so
    readers outside the transaction never observe partial state, and a
    failing block leaves the store untouched. Every read returns a copy.
    """

    def __init__(self) -> None:
        self._accounts: Dict[str, AuthorCreditAccount] = {}
        self._campaigns: Dict[str, Campaign] = {}
        self._ledger: List[LedgerEntry] = []
        self._purchases: Dict[str, CreditPurchase] = {}
        self._idempotency: Dict[str, IdempotencyRecord] = {}
        self._notifications: List[NotificationEvent] = []
        self._id_counter: int = 0
        self._lock = asyncio.Lock()
        self._pending: ContextVar[Optional[_PendingWrites]] = ContextVar(
            f"in_memory_tx_{id(self)}", default=None
        )

    def _next_id(self) -> str:
        self._id_counter += 1
        return str(self._id_counter)

    @staticmethod
    def _copy(model: TModel) -> TModel:
        return model.model_copy(deep=True)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if self._pending.get() is not None:
            # Nested use joins the enclosing transaction.
            yield
            return

        async with self._lock:
            pending = _PendingWrites()
            token = self._pending.set(pending)
            try:
                yield
            finally:
                self._pending.reset(token)
            self._commit(pending)

    def _commit(self, pending: _PendingWrites) -> None:
        self._accounts.update(pending.accounts)
        self._campaigns.update(pending.campaigns)
        self._ledger.extend(pending.ledger)
        self._purchases.update(pending.purchases)
        self._idempotency.update(pending.idempotency)
        self._notifications.extend(pending.notifications)

    # Account operations
    async def add_account(self, account: AuthorCreditAccount) -> AuthorCreditAccount:
        if account.id is None:
            account.id = self._next_id()
        return await self.update_account(account)

    async def get_account(
        self, account_id: str, for_update: bool = False
    ) -> Optional[AuthorCreditAccount]:
        pending = self._pending.get()
        if pending is not None and account_id in pending.accounts:
            return self._copy(pending.accounts[account_id])
        account = self._accounts.get(account_id)
        return self._copy(account) if account is not None else None

    async def update_account(self, account: AuthorCreditAccount) -> AuthorCreditAccount:
        if account.id is None:
            raise ValueError("Account must have id to be updated")
        pending = self._pending.get()
        target = pending.accounts if pending is not None else self._accounts
        target[account.id] = self._copy(account)
        return account

    # Campaign operations
    async def add_campaign(self, campaign: Campaign) -> Campaign:
        if campaign.id is None:
            campaign.id = self._next_id()
        return await self.update_campaign(campaign)

    async def get_campaign(
        self, campaign_id: str, for_update: bool = False
    ) -> Optional[Campaign]:
        pending = self._pending.get()
        if pending is not None and campaign_id in pending.campaigns:
            return self._copy(pending.campaigns[campaign_id])
        campaign = self._campaigns.get(campaign_id)
        return self._copy(campaign) if campaign is not None else None

    async def update_campaign(self, campaign: Campaign) -> Campaign:
        if campaign.id is None:
            raise ValueError("Campaign must have id to be updated")
        pending = self._pending.get()
        target = pending.campaigns if pending is not None else self._campaigns
        target[campaign.id] = self._copy(campaign)
        return campaign

    async def list_campaigns(
        self,
        account_id: Optional[str] = None,
        statuses: Optional[Sequence[CampaignStatus]] = None,
    ) -> Iterable[Campaign]:
        merged = dict(self._campaigns)
        pending = self._pending.get()
        if pending is not None:
            merged.update(pending.campaigns)
        return [
            self._copy(c)
            for c in merged.values()
            if (account_id is None or c.account_id == account_id)
            and (statuses is None or c.pacing.status in statuses)
        ]

    # Ledger store
    def _entries_for(self, account_id: str) -> List[LedgerEntry]:
        entries = [e for e in self._ledger if e.account_id == account_id]
        pending = self._pending.get()
        if pending is not None:
            entries.extend(e for e in pending.ledger if e.account_id == account_id)
        return entries

    async def append_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        sequence = len(self._entries_for(entry.account_id)) + 1
        stored = entry.model_copy(
            update={"id": entry.id or self._next_id(), "sequence": sequence}
        )
        pending = self._pending.get()
        if pending is not None:
            pending.ledger.append(stored)
        else:
            self._ledger.append(stored)
        return stored

    async def get_ledger_entries(
        self,
        account_id: str,
        kinds: Optional[Sequence[LedgerEntryKind]] = None,
    ) -> List[LedgerEntry]:
        entries = self._entries_for(account_id)
        if kinds is not None:
            entries = [e for e in entries if e.kind in kinds]
        return sorted(entries, key=lambda e: e.sequence)

    # Purchases
    async def add_purchase(self, purchase: CreditPurchase) -> CreditPurchase:
        if purchase.id is None:
            purchase.id = self._next_id()
        return await self.update_purchase(purchase)

    async def update_purchase(self, purchase: CreditPurchase) -> CreditPurchase:
        if purchase.id is None:
            raise ValueError("Purchase must have id to be updated")
        pending = self._pending.get()
        target = pending.purchases if pending is not None else self._purchases
        target[purchase.id] = self._copy(purchase)
        return purchase

    def _merged_purchases(self) -> Dict[str, CreditPurchase]:
        merged = dict(self._purchases)
        pending = self._pending.get()
        if pending is not None:
            merged.update(pending.purchases)
        return merged

    async def get_purchase_by_reference(
        self, payment_reference: str
    ) -> Optional[CreditPurchase]:
        for purchase in self._merged_purchases().values():
            if purchase.payment_reference == payment_reference:
                return self._copy(purchase)
        return None

    async def get_purchases(
        self, account_id: Optional[str] = None
    ) -> List[CreditPurchase]:
        purchases = [
            self._copy(p)
            for p in self._merged_purchases().values()
            if account_id is None or p.account_id == account_id
        ]
        purchases.sort(key=lambda p: p.activation_window_expires_at)
        return purchases

    # Idempotency keys
    async def get_idempotency_record(self, key: str) -> Optional[IdempotencyRecord]:
        pending = self._pending.get()
        if pending is not None and key in pending.idempotency:
            return self._copy(pending.idempotency[key])
        record = self._idempotency.get(key)
        return self._copy(record) if record is not None else None

    async def add_idempotency_record(self, record: IdempotencyRecord) -> IdempotencyRecord:
        pending = self._pending.get()
        target = pending.idempotency if pending is not None else self._idempotency
        target[record.key] = self._copy(record)
        return record

    # Notifications
    async def add_notification_event(
        self, notification: NotificationEvent
    ) -> NotificationEvent:
        if notification.id is None:
            notification.id = self._next_id()
        pending = self._pending.get()
        if pending is not None:
            pending.notifications.append(self._copy(notification))
        else:
            self._notifications.append(self._copy(notification))
        return notification

    @property
    def notifications(self) -> List[NotificationEvent]:
        return list(self._notifications)
