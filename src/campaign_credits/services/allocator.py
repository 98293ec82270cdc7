from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional

from ..errors import InsufficientBalance, InvalidArgument, InvalidState
from ..models.account import AuthorCreditAccount
from ..models.campaign import Campaign, CampaignStatus
from ..models.ledger import LedgerEntry, LedgerEntryKind
from ..models.notification import NotificationType
from ..models.results import OperationResult
from .base import LedgerServiceBase, require_positive


logger = logging.getLogger(__name__)


class RefundTarget(str, Enum):
    """Where the credit of a removed reader goes."""

    CAMPAIGN = "campaign"
    AUTHOR = "author"
    NONE = "none"


def _account_state(account: AuthorCreditAccount) -> dict:
    return {
        "available_credits": account.available_credits,
        "total_credits_purchased": account.total_credits_purchased,
        "total_credits_used": account.total_credits_used,
    }


def _pool_state(campaign: Campaign) -> dict:
    return {"status": campaign.pacing.status.value, **campaign.pool.model_dump()}


class CreditAllocator(LedgerServiceBase):
    """
    Moves credits between author accounts and campaign pools.

    Every method is one atomic unit: arguments are validated up front, the
    account and campaign documents are read for update inside a single
    transaction, all deltas are computed in memory and written together with
    their ledger entries. Business errors are raised before any write.

    Mutating methods accept an optional `idempotency_key`; a repeated key
    returns the stored result of the first call and writes nothing.
    """

    # Account-level adjustments
    async def add_credits(
        self,
        account_id: str,
        amount: int,
        actor: Optional[str],
        reason: Optional[str],
        notes: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> OperationResult:
        require_positive(amount, "amount")
        now = self._clock()

        async with self._db.transaction():
            replay = await self._replay(idempotency_key, "add_credits")
            if replay is not None:
                return replay

            account = await self._load_account(account_id)
            before = _account_state(account)
            account.available_credits += amount
            account.total_credits_purchased += amount
            account.updated_at = now

            entry = await self._append_entry(
                account,
                amount,
                LedgerEntryKind.MANUAL_ADJUSTMENT,
                now,
                actor=actor,
                reason=reason,
                notes=notes,
                correlation_id=correlation_id,
            )
            await self._db.update_account(account)
            result = OperationResult(
                operation="add_credits", credits=amount, account=account, entries=[entry]
            )
            await self._remember(idempotency_key, result)

        await self._publish(
            result, "credits.added", account_id, actor, reason,
            before, _account_state(account), correlation_id,
        )
        await self._notify(
            account,
            NotificationType.CREDITS_ADDED,
            {
                "credits_added": amount,
                "previous_balance": before["available_credits"],
                "new_balance": account.available_credits,
                "reason": reason,
            },
        )
        return result

    async def remove_credits(
        self,
        account_id: str,
        amount: int,
        actor: Optional[str],
        reason: Optional[str],
        notes: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> OperationResult:
        require_positive(amount, "amount")
        now = self._clock()

        async with self._db.transaction():
            replay = await self._replay(idempotency_key, "remove_credits")
            if replay is not None:
                return replay

            account = await self._load_account(account_id)
            if amount > account.available_credits:
                self._ledger.log_error(
                    message="Insufficient credits for removal",
                    details={"requested": amount, "available": account.available_credits},
                    account_id=account_id,
                    correlation_id=correlation_id,
                )
                raise InsufficientBalance(
                    "insufficient credits to remove", amount, account.available_credits
                )

            before = _account_state(account)
            account.available_credits -= amount
            account.updated_at = now

            entry = await self._append_entry(
                account,
                -amount,
                LedgerEntryKind.MANUAL_ADJUSTMENT,
                now,
                actor=actor,
                reason=reason,
                notes=notes,
                correlation_id=correlation_id,
            )
            await self._db.update_account(account)
            result = OperationResult(
                operation="remove_credits", credits=amount, account=account, entries=[entry]
            )
            await self._remember(idempotency_key, result)

        await self._publish(
            result, "credits.removed", account_id, actor, reason,
            before, _account_state(account), correlation_id,
        )
        await self._notify(
            account,
            NotificationType.CREDITS_REMOVED,
            {
                "credits_removed": amount,
                "previous_balance": before["available_credits"],
                "new_balance": account.available_credits,
                "reason": reason,
            },
        )
        return result

    async def grant_credits(
        self,
        account_id: str,
        amount: int,
        actor: Optional[str],
        reason: Optional[str],
        kind: LedgerEntryKind = LedgerEntryKind.BONUS,
        idempotency_key: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> OperationResult:
        """
        Credit a bonus or a subscription renewal. Unlike `add_credits` this
        does not count towards `total_credits_purchased`.
        """
        require_positive(amount, "amount")
        if kind not in (LedgerEntryKind.BONUS, LedgerEntryKind.SUBSCRIPTION_RENEWAL):
            raise InvalidArgument(f"cannot grant credits of kind {kind.value}")
        now = self._clock()

        async with self._db.transaction():
            replay = await self._replay(idempotency_key, "grant_credits")
            if replay is not None:
                return replay

            account = await self._load_account(account_id)
            before = _account_state(account)
            account.available_credits += amount
            account.updated_at = now
            entry = await self._append_entry(
                account, amount, kind, now,
                actor=actor, reason=reason, correlation_id=correlation_id,
            )
            await self._db.update_account(account)
            result = OperationResult(
                operation="grant_credits", credits=amount, account=account, entries=[entry]
            )
            await self._remember(idempotency_key, result)

        await self._publish(
            result, f"credits.{kind.value}", account_id, actor, reason,
            before, _account_state(account), correlation_id,
        )
        await self._notify(
            account,
            NotificationType.CREDITS_ADDED,
            {"credits_added": amount, "new_balance": account.available_credits, "reason": reason},
        )
        return result

    # Allocation
    async def allocate_to_campaign(
        self,
        account_id: str,
        campaign_id: str,
        amount: int,
        actor: Optional[str],
        reason: Optional[str],
        notes: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> OperationResult:
        require_positive(amount, "amount")
        now = self._clock()

        async with self._db.transaction():
            replay = await self._replay(idempotency_key, "allocate_to_campaign")
            if replay is not None:
                return replay

            account = await self._load_account(account_id)
            campaign = await self._load_campaign(campaign_id)
            before = {**_account_state(account), **_pool_state(campaign)}
            entry = await self._allocate(
                account, campaign, amount, now, actor, reason, notes, correlation_id
            )
            result = OperationResult(
                operation="allocate_to_campaign",
                credits=amount,
                account=account,
                campaigns=[campaign],
                entries=[entry],
            )
            await self._remember(idempotency_key, result)

        await self._publish(
            result, "credits.allocated", campaign_id, actor, reason,
            before, {**_account_state(account), **_pool_state(campaign)}, correlation_id,
        )
        return result

    async def activate_campaign(
        self,
        account_id: str,
        campaign_id: str,
        amount: int,
        actor: Optional[str],
        reason: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> OperationResult:
        """
        Fund a DRAFT or PENDING campaign and start it: the allocation and the
        transition to ACTIVE (start date, expected end date, week 1) commit
        together.
        """
        require_positive(amount, "amount")
        now = self._clock()

        async with self._db.transaction():
            replay = await self._replay(idempotency_key, "activate_campaign")
            if replay is not None:
                return replay

            account = await self._load_account(account_id)
            campaign = await self._load_campaign(campaign_id)
            if campaign.pacing.status not in (CampaignStatus.DRAFT, CampaignStatus.PENDING):
                raise InvalidState(
                    f"cannot activate a campaign in status {campaign.pacing.status.value}"
                )
            before = {**_account_state(account), **_pool_state(campaign)}

            pacing = campaign.pacing
            total_weeks = math.ceil(pacing.target_reviews / pacing.reviews_per_week)
            pacing.status = CampaignStatus.ACTIVE
            pacing.campaign_start_date = now
            pacing.expected_end_date = now + timedelta(days=total_weeks * 7)
            pacing.current_week = 1

            entry = await self._allocate(
                account, campaign, amount, now, actor,
                reason or f"Activated campaign: {campaign.title}", None, correlation_id,
            )
            result = OperationResult(
                operation="activate_campaign",
                credits=amount,
                account=account,
                campaigns=[campaign],
                entries=[entry],
            )
            await self._remember(idempotency_key, result)

        await self._publish(
            result, "campaign.activated", campaign_id, actor, reason,
            before, {**_account_state(account), **_pool_state(campaign)}, correlation_id,
        )
        return result

    async def _allocate(
        self,
        account: AuthorCreditAccount,
        campaign: Campaign,
        amount: int,
        now: datetime,
        actor: Optional[str],
        reason: Optional[str],
        notes: Optional[str],
        correlation_id: Optional[str],
    ) -> LedgerEntry:
        if campaign.account_id != account.id:
            raise InvalidArgument(
                f"campaign {campaign.id} does not belong to account {account.id}"
            )
        if campaign.pacing.status.is_terminal:
            raise InvalidState(
                f"cannot allocate credits to a {campaign.pacing.status.value} campaign"
            )

        purchases = await self._db.get_purchases(account.id)
        lapsed = sum(p.credits for p in purchases if p.is_lapsed(now))
        spendable = max(0, account.available_credits - lapsed)
        if spendable < amount:
            self._ledger.log_error(
                message="Insufficient credits for allocation",
                details={
                    "requested": amount,
                    "available": account.available_credits,
                    "lapsed_unprocessed": lapsed,
                    "campaign_id": campaign.id,
                },
                account_id=account.id,
                correlation_id=correlation_id,
            )
            if lapsed:
                message = (
                    f"insufficient valid credits: {account.available_credits} available, "
                    f"{lapsed} of them past their activation window, need {amount}"
                )
            else:
                message = (
                    f"insufficient credits: {account.available_credits} available, need {amount}"
                )
            raise InsufficientBalance(message, amount, spendable)

        account.available_credits -= amount
        account.total_credits_used += amount
        account.updated_at = now
        campaign.pool.credits_allocated += amount
        campaign.pool.credits_remaining += amount
        campaign.updated_at = now

        for purchase in purchases:
            if not purchase.activated and not purchase.expired and not purchase.is_lapsed(now):
                purchase.activated = True
                purchase.activated_at = now
                await self._db.update_purchase(purchase)

        entry = await self._append_entry(
            account,
            -amount,
            LedgerEntryKind.ALLOCATION,
            now,
            actor=actor,
            reason=reason,
            notes=notes,
            campaign_id=campaign.id,
            correlation_id=correlation_id,
        )
        await self._db.update_account(account)
        await self._db.update_campaign(campaign)
        return entry

    async def transfer_between_campaigns(
        self,
        from_campaign_id: str,
        to_campaign_id: str,
        amount: int,
        actor: Optional[str],
        reason: Optional[str],
        notes: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> OperationResult:
        """
        Move remaining credits from one campaign to another of the same
        author. Zero-sum across the two pools; the account balance does not
        move, so both ledger entries carry the unchanged balance.
        """
        require_positive(amount, "amount")
        if from_campaign_id == to_campaign_id:
            raise InvalidArgument("source and target campaign must differ")
        now = self._clock()

        async with self._db.transaction():
            replay = await self._replay(idempotency_key, "transfer_between_campaigns")
            if replay is not None:
                return replay

            # Lock in a stable order so two opposite transfers cannot deadlock.
            loaded = {}
            for campaign_id in sorted((from_campaign_id, to_campaign_id)):
                loaded[campaign_id] = await self._load_campaign(campaign_id)
            source = loaded[from_campaign_id]
            target = loaded[to_campaign_id]

            if source.account_id != target.account_id:
                raise InvalidArgument("both campaigns must belong to the same author")
            if target.pacing.status.is_terminal:
                raise InvalidState(
                    f"cannot transfer credits into a {target.pacing.status.value} campaign"
                )
            if source.pool.credits_remaining < amount:
                self._ledger.log_error(
                    message="Insufficient campaign credits for transfer",
                    details={
                        "requested": amount,
                        "remaining": source.pool.credits_remaining,
                        "from_campaign_id": from_campaign_id,
                        "to_campaign_id": to_campaign_id,
                    },
                    account_id=source.account_id,
                    correlation_id=correlation_id,
                )
                raise InsufficientBalance(
                    f"source campaign only has {source.pool.credits_remaining} credits remaining",
                    amount,
                    source.pool.credits_remaining,
                )

            account = await self._load_account(source.account_id)
            before = {"from": _pool_state(source), "to": _pool_state(target)}

            source.pool.credits_allocated -= amount
            source.pool.credits_remaining -= amount
            target.pool.credits_allocated += amount
            target.pool.credits_remaining += amount
            source.updated_at = target.updated_at = now

            entries = [
                await self._append_entry(
                    account, -amount, LedgerEntryKind.ALLOCATION, now,
                    actor=actor,
                    reason=f"Credits transferred to {target.title or target.id}. Reason: {reason}",
                    notes=notes,
                    campaign_id=source.id,
                    correlation_id=correlation_id,
                ),
                await self._append_entry(
                    account, amount, LedgerEntryKind.ALLOCATION, now,
                    actor=actor,
                    reason=f"Credits received from {source.title or source.id}. Reason: {reason}",
                    notes=notes,
                    campaign_id=target.id,
                    correlation_id=correlation_id,
                ),
            ]
            await self._db.update_campaign(source)
            await self._db.update_campaign(target)
            result = OperationResult(
                operation="transfer_between_campaigns",
                credits=amount,
                account=account,
                campaigns=[source, target],
                entries=entries,
            )
            await self._remember(idempotency_key, result)

        await self._publish(
            result, "credits.transferred", from_campaign_id, actor, reason,
            before, {"from": _pool_state(source), "to": _pool_state(target)}, correlation_id,
        )
        return result

    # Completion and per-reader credits
    async def refund_on_force_complete(
        self,
        campaign_id: str,
        actor: Optional[str],
        reason: Optional[str],
        refund_unused: bool = True,
        notes: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> OperationResult:
        """
        Complete a running (ACTIVE or PAUSED) campaign ahead of time.

        With `refund_unused`, the pool's remaining credits go back to the
        author's available balance. Refunded credits are also taken off
        `credits_allocated`, not only off `credits_remaining`, so a completed
        pool still satisfies allocated == used + remaining and its allocated
        figure matches what the author actually spent on it.
        """
        now = self._clock()

        async with self._db.transaction():
            replay = await self._replay(idempotency_key, "refund_on_force_complete")
            if replay is not None:
                return replay

            campaign = await self._load_campaign(campaign_id)
            if campaign.pacing.status not in (CampaignStatus.ACTIVE, CampaignStatus.PAUSED):
                raise InvalidState(
                    f"cannot force complete a {campaign.pacing.status.value} campaign"
                )

            account = await self._load_account(campaign.account_id)
            before = {**_account_state(account), **_pool_state(campaign)}
            entries = []
            refunded = 0
            if refund_unused and campaign.pool.credits_remaining > 0:
                refunded = campaign.pool.credits_remaining
                campaign.pool.credits_remaining = 0
                campaign.pool.credits_allocated -= refunded
                account.available_credits += refunded
                account.total_credits_used -= refunded
                account.updated_at = now
                entries.append(
                    await self._append_entry(
                        account, refunded, LedgerEntryKind.REFUND, now,
                        actor=actor,
                        reason=f"Force completion refund. Reason: {reason}",
                        notes=notes,
                        campaign_id=campaign.id,
                        correlation_id=correlation_id,
                    )
                )
                await self._db.update_account(account)

            campaign.pacing.status = CampaignStatus.COMPLETED
            campaign.pacing.campaign_end_date = now
            campaign.updated_at = now
            await self._db.update_campaign(campaign)
            result = OperationResult(
                operation="refund_on_force_complete",
                credits=refunded,
                account=account,
                campaigns=[campaign],
                entries=entries,
            )
            await self._remember(idempotency_key, result)

        logger.info("Campaign %s force completed by %s (%d credits refunded)", campaign_id, actor, refunded)
        await self._publish(
            result, "campaign.force_completed", campaign_id, actor, reason,
            before, {**_account_state(account), **_pool_state(campaign)}, correlation_id,
        )
        await self._notify(
            account,
            NotificationType.CAMPAIGN_COMPLETED,
            {"campaign_id": campaign_id, "credits_refunded": refunded, "reason": reason},
        )
        return result

    async def manual_grant(
        self,
        campaign_id: str,
        reader_id: str,
        actor: Optional[str],
        reason: Optional[str],
        idempotency_key: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> OperationResult:
        """Consume one remaining campaign credit for a manually granted reader."""
        now = self._clock()

        async with self._db.transaction():
            replay = await self._replay(idempotency_key, "manual_grant")
            if replay is not None:
                return replay

            campaign = await self._load_campaign(campaign_id)
            if campaign.pacing.status not in (CampaignStatus.ACTIVE, CampaignStatus.PAUSED):
                raise InvalidState("can only grant access to active or paused campaigns")
            if campaign.pool.credits_remaining < 1:
                raise InsufficientBalance("campaign has no remaining credits", 1, 0)

            before = _pool_state(campaign)
            campaign.pool.credits_remaining -= 1
            campaign.pool.credits_used += 1
            campaign.updated_at = now
            await self._db.update_campaign(campaign)
            result = OperationResult(operation="manual_grant", credits=1, campaigns=[campaign])
            await self._remember(idempotency_key, result)

        await self._publish(
            result, "campaign.manual_access_granted", campaign_id, actor, reason,
            {**before, "reader_id": reader_id}, _pool_state(campaign), correlation_id,
        )
        return result

    async def remove_reader_allocation(
        self,
        campaign_id: str,
        reader_id: str,
        actor: Optional[str],
        reason: Optional[str],
        refund_to: RefundTarget = RefundTarget.CAMPAIGN,
        idempotency_key: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> OperationResult:
        """
        Release the credit a removed reader consumed. By default it goes back
        to the campaign's remaining credits; `RefundTarget.AUTHOR` returns it
        to the author's available balance with a REFUND entry instead.
        A completed or cancelled campaign only accepts `RefundTarget.AUTHOR`.
        """
        refund_to = RefundTarget(refund_to)
        now = self._clock()

        async with self._db.transaction():
            replay = await self._replay(idempotency_key, "remove_reader_allocation")
            if replay is not None:
                return replay

            campaign = await self._load_campaign(campaign_id)
            before = {**_pool_state(campaign), "reader_id": reader_id}
            if campaign.pacing.status.is_terminal and refund_to is not RefundTarget.AUTHOR:
                raise InvalidState(
                    f"{campaign.pacing.status.value} campaign can only refund readers to the author"
                )
            if refund_to is not RefundTarget.NONE and campaign.pool.credits_used < 1:
                raise InvalidState("campaign has no consumed credit to release")

            account: Optional[AuthorCreditAccount] = None
            entries: List[LedgerEntry] = []
            if refund_to is RefundTarget.CAMPAIGN:
                campaign.pool.credits_used -= 1
                campaign.pool.credits_remaining += 1
            elif refund_to is RefundTarget.AUTHOR:
                account = await self._load_account(campaign.account_id)
                campaign.pool.credits_used -= 1
                campaign.pool.credits_allocated -= 1
                account.available_credits += 1
                account.total_credits_used -= 1
                account.updated_at = now
                entries.append(
                    await self._append_entry(
                        account, 1, LedgerEntryKind.REFUND, now,
                        actor=actor,
                        reason=f"Reader removed from campaign. Reason: {reason}",
                        campaign_id=campaign.id,
                        correlation_id=correlation_id,
                    )
                )
                await self._db.update_account(account)

            campaign.updated_at = now
            await self._db.update_campaign(campaign)
            result = OperationResult(
                operation="remove_reader_allocation",
                credits=0 if refund_to is RefundTarget.NONE else 1,
                account=account,
                campaigns=[campaign],
                entries=entries,
            )
            await self._remember(idempotency_key, result)

        await self._publish(
            result, "campaign.reader_removed", campaign_id, actor, reason,
            before, {**_pool_state(campaign), "refund_to": refund_to.value}, correlation_id,
        )
        return result
