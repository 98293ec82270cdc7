from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from ..errors import InvalidArgument
from ..models.account import AccountBalance, AuthorCreditAccount, LedgerReconciliation
from ..models.base import PaginatedResult
from ..models.campaign import Campaign, CampaignPacingState, CampaignStatus
from ..models.ledger import LedgerEntry, LedgerEntryKind
from .base import LedgerServiceBase, account_cache_key, require_positive


logger = logging.getLogger(__name__)


class AccountService(LedgerServiceBase):
    """Read side of the credit ledger plus account and campaign registration."""

    def __init__(self, *args, expiry_warning_days: int = 7, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._expiry_warning_days = expiry_warning_days

    async def create_account(
        self, owner_id: Optional[str] = None, account_id: Optional[str] = None
    ) -> AuthorCreditAccount:
        now = self._clock()
        account = AuthorCreditAccount(
            id=account_id, owner_id=owner_id, created_at=now, updated_at=now
        )
        async with self._db.transaction():
            if account_id is not None and await self._db.get_account(account_id) is not None:
                raise InvalidArgument(f"account {account_id} already exists")
            account = await self._db.add_account(account)
        logger.info("Created credit account %s for owner %s", account.id, owner_id)
        return account

    async def create_campaign(
        self,
        account_id: str,
        title: str,
        target_reviews: int,
        reviews_per_week: int = 1,
    ) -> Campaign:
        """Register a DRAFT campaign with an empty credit pool."""
        require_positive(target_reviews, "target_reviews")
        require_positive(reviews_per_week, "reviews_per_week")
        now = self._clock()
        async with self._db.transaction():
            await self._load_account(account_id, for_update=False)
            campaign = await self._db.add_campaign(
                Campaign(
                    account_id=account_id,
                    title=title,
                    pacing=CampaignPacingState(
                        target_reviews=target_reviews, reviews_per_week=reviews_per_week
                    ),
                    created_at=now,
                    updated_at=now,
                )
            )
        return campaign

    async def list_campaigns(
        self, account_id: str, statuses: Optional[Sequence[CampaignStatus]] = None
    ) -> List[Campaign]:
        await self._load_account(account_id, for_update=False)
        campaigns = list(await self._db.list_campaigns(account_id=account_id, statuses=statuses))
        campaigns.sort(key=lambda c: c.created_at)
        return campaigns

    async def get_account(self, account_id: str) -> AuthorCreditAccount:
        """
        Primary source: cache (refreshed after every committed mutation).
        Fallback: DB, which then repopulates the cache.
        """
        cache_key = account_cache_key(account_id)
        if self._cache:
            cached = await self._cache.get(cache_key)
            if isinstance(cached, dict):
                try:
                    return AuthorCreditAccount.model_validate(cached)
                except ValueError:
                    logger.warning("Dropping corrupted cache entry %s", cache_key)
                    await self._cache.delete(cache_key)

        account = await self._load_account(account_id, for_update=False)
        await self._refresh_account_cache(account)
        return account

    async def get_balance(
        self, account_id: str, now: Optional[datetime] = None
    ) -> AccountBalance:
        now = now or self._clock()
        account = await self._load_account(account_id, for_update=False)
        purchases = await self._db.get_purchases(account_id)

        lapsed = sum(p.credits for p in purchases if p.is_lapsed(now))
        cutoff = now + timedelta(days=self._expiry_warning_days)
        expiring = [
            p
            for p in purchases
            if not p.activated
            and not p.expired
            and now <= p.activation_window_expires_at <= cutoff
        ]
        return AccountBalance(
            account_id=account_id,
            available_credits=account.available_credits,
            total_credits_purchased=account.total_credits_purchased,
            total_credits_used=account.total_credits_used,
            spendable_credits=max(0, account.available_credits - lapsed),
            expiring_credits=sum(p.credits for p in expiring),
            next_expiration_date=expiring[0].activation_window_expires_at if expiring else None,
        )

    async def get_ledger(
        self,
        account_id: str,
        kinds: Optional[Sequence[LedgerEntryKind]] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> PaginatedResult[LedgerEntry]:
        """Ledger entries of an account, newest first."""
        require_positive(limit, "limit")
        if offset < 0:
            raise InvalidArgument("offset must not be negative")
        await self._load_account(account_id, for_update=False)

        entries = await self._db.get_ledger_entries(account_id, kinds=kinds)
        entries.reverse()
        return PaginatedResult[LedgerEntry](
            items=entries[offset : offset + limit],
            total=len(entries),
            limit=limit,
            offset=offset,
        )

    async def reconcile(self, account_id: str) -> LedgerReconciliation:
        """
        Check the account balance against its ledger.

        The balance should equal the sum of all entry amounts, and the last
        entry's `balance_after`. A mismatch is logged as an error for follow-up.
        """
        async with self._db.transaction():
            account = await self._load_account(account_id)
            entries = await self._db.get_ledger_entries(account_id)

        report = LedgerReconciliation(
            account_id=account_id,
            available_credits=account.available_credits,
            ledger_sum=sum(e.amount for e in entries),
            last_balance_after=entries[-1].balance_after if entries else None,
            entry_count=len(entries),
        )
        if not report.consistent:
            self._ledger.log_error(
                message="Ledger does not reconcile with account balance",
                details=report.model_dump(),
                account_id=account_id,
            )
        return report
