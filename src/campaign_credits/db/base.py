from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator, Iterable, List, Optional, Sequence

from ..models.account import AuthorCreditAccount
from ..models.campaign import Campaign, CampaignStatus
from ..models.ledger import LedgerEntry, LedgerEntryKind
from ..models.notification import NotificationEvent
from ..models.purchase import CreditPurchase
from ..models.results import IdempotencyRecord


class BaseDBManager(ABC):
    """
    DB-agnostic async manager interface.

    Concrete implementations (in-memory, MongoDB, etc.) implement these
    methods. Every business operation runs inside one `transaction()`:
    writes issued inside it become visible together on commit and are all
    discarded if the block raises. Reads with `for_update=True` must lock the
    document until the transaction ends so that two concurrent operations on
    the same account or campaign cannot both pass a balance check.

    The ledger section is append-only: there is no update or
    delete for ledger entries.
    """

    @abstractmethod
    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """
        Provide an atomic transaction context.
        Must rollback on exception and commit on success.
        """
        yield

    # Author credit accounts
    @abstractmethod
    async def add_account(self, account: AuthorCreditAccount) -> AuthorCreditAccount: ...

    @abstractmethod
    async def get_account(
        self, account_id: str, for_update: bool = False
    ) -> Optional[AuthorCreditAccount]: ...

    @abstractmethod
    async def update_account(self, account: AuthorCreditAccount) -> AuthorCreditAccount: ...

    # Campaigns (credit pool + pacing state)
    @abstractmethod
    async def add_campaign(self, campaign: Campaign) -> Campaign: ...

    @abstractmethod
    async def get_campaign(
        self, campaign_id: str, for_update: bool = False
    ) -> Optional[Campaign]: ...

    @abstractmethod
    async def update_campaign(self, campaign: Campaign) -> Campaign: ...

    @abstractmethod
    async def list_campaigns(
        self,
        account_id: Optional[str] = None,
        statuses: Optional[Sequence[CampaignStatus]] = None,
    ) -> Iterable[Campaign]: ...

    # Ledger store
    @abstractmethod
    async def append_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        """
        Append an entry, assigning its id and the next per-account sequence
        number. Returns the stored entry.
        """
        ...

    @abstractmethod
    async def get_ledger_entries(
        self,
        account_id: str,
        kinds: Optional[Sequence[LedgerEntryKind]] = None,
    ) -> List[LedgerEntry]:
        """Entries of an account in ledger order (oldest first)."""
        ...

    # Purchases
    @abstractmethod
    async def add_purchase(self, purchase: CreditPurchase) -> CreditPurchase: ...

    @abstractmethod
    async def update_purchase(self, purchase: CreditPurchase) -> CreditPurchase: ...

    @abstractmethod
    async def get_purchase_by_reference(
        self, payment_reference: str
    ) -> Optional[CreditPurchase]: ...

    @abstractmethod
    async def get_purchases(
        self, account_id: Optional[str] = None
    ) -> List[CreditPurchase]: ...

    # Idempotency keys
    @abstractmethod
    async def get_idempotency_record(self, key: str) -> Optional[IdempotencyRecord]: ...

    @abstractmethod
    async def add_idempotency_record(self, record: IdempotencyRecord) -> IdempotencyRecord: ...

    # Notifications
    @abstractmethod
    async def add_notification_event(self, notification: NotificationEvent) -> NotificationEvent: ...
