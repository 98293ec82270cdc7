from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from ..errors import InvalidArgument
from ..models.ledger import LedgerEntryKind
from ..models.notification import NotificationType
from ..models.purchase import CreditPurchase
from ..models.results import OperationResult
from .base import LedgerServiceBase, require_positive


logger = logging.getLogger(__name__)


class PurchaseService(LedgerServiceBase):
    """
    Records confirmed credit purchases and expires the ones never activated.

    A purchase must be activated (used to fund a campaign) within its
    validity window; afterwards the expiry sweep removes its credits from the
    author's balance.
    """

    def __init__(
        self,
        *args,
        default_validity_days: int = 30,
        expiry_warning_days: int = 7,
        **kwargs,
    ) -> None:
        super().__init__(*args, **kwargs)
        self._default_validity_days = default_validity_days
        self._expiry_warning_days = expiry_warning_days

    async def record_purchase(
        self,
        account_id: str,
        credits: int,
        payment_reference: str,
        package_name: Optional[str] = None,
        amount_paid_minor: int = 0,
        currency: str = "USD",
        validity_days: Optional[int] = None,
        correlation_id: Optional[str] = None,
    ) -> OperationResult:
        """
        Credit a confirmed payment to the author's account.

        Payment providers redeliver confirmations; a second call with the same
        `payment_reference` returns the original result with `replayed` set.
        """
        require_positive(credits, "credits")
        validity_days = validity_days or self._default_validity_days
        require_positive(validity_days, "validity_days")
        if not payment_reference:
            raise InvalidArgument("payment_reference is required")
        now = self._clock()

        async with self._db.transaction():
            existing = await self._db.get_purchase_by_reference(payment_reference)
            if existing is not None:
                if existing.account_id != account_id:
                    raise InvalidArgument(
                        f"payment {payment_reference} was recorded for another account"
                    )
                logger.info("Ignoring duplicate payment confirmation %s", payment_reference)
                account = await self._load_account(account_id, for_update=False)
                return OperationResult(
                    operation="record_purchase",
                    credits=existing.credits,
                    account=account,
                    replayed=True,
                )

            account = await self._load_account(account_id)
            before = account.available_credits
            account.available_credits += credits
            account.total_credits_purchased += credits
            account.updated_at = now

            await self._db.add_purchase(
                CreditPurchase(
                    account_id=account_id,
                    payment_reference=payment_reference,
                    package_name=package_name,
                    credits=credits,
                    amount_paid_minor=amount_paid_minor,
                    currency=currency,
                    validity_days=validity_days,
                    activation_window_expires_at=now + timedelta(days=validity_days),
                    created_at=now,
                )
            )
            entry = await self._append_entry(
                account,
                credits,
                LedgerEntryKind.PURCHASE,
                now,
                reason=f"Purchased {package_name or 'credit package'}",
                notes=payment_reference,
                correlation_id=correlation_id,
            )
            await self._db.update_account(account)
            result = OperationResult(
                operation="record_purchase", credits=credits, account=account, entries=[entry]
            )

        await self._publish(
            result, "credits.purchased", account_id, None, "payment confirmed",
            {"available_credits": before},
            {"available_credits": account.available_credits},
            correlation_id,
        )
        await self._notify(
            account,
            NotificationType.PAYMENT_RECEIVED,
            {
                "credits": credits,
                "amount_paid_minor": amount_paid_minor,
                "currency": currency,
                "package_name": package_name,
                "payment_reference": payment_reference,
                "valid_until": (now + timedelta(days=validity_days)).isoformat(),
            },
        )
        return result

    async def expire_purchases(self, as_of: Optional[datetime] = None) -> List[OperationResult]:
        """
        Expire every purchase whose activation window has passed unused.

        Each purchase is processed in its own transaction so one failure does
        not block the rest of the sweep. Only what is still available can be
        taken back; the EXPIRATION entry records the amount actually removed.
        """
        as_of = as_of or self._clock()
        results: List[OperationResult] = []
        for candidate in await self._db.get_purchases():
            if not candidate.is_lapsed(as_of):
                continue
            try:
                result = await self._expire_one(candidate, as_of)
            except Exception:
                logger.exception("Failed to expire purchase %s", candidate.id)
                continue
            if result is not None:
                results.append(result)

        logger.info("Expiry sweep at %s expired %d purchases", as_of.isoformat(), len(results))
        return results

    async def _expire_one(
        self, candidate: CreditPurchase, as_of: datetime
    ) -> Optional[OperationResult]:
        async with self._db.transaction():
            account = await self._load_account(candidate.account_id)
            purchase = next(
                (p for p in await self._db.get_purchases(candidate.account_id) if p.id == candidate.id),
                None,
            )
            # Activated or swept by a concurrent run since the candidate list was read.
            if purchase is None or not purchase.is_lapsed(as_of):
                return None

            before = account.available_credits
            deducted = min(purchase.credits, account.available_credits)

            entries = []
            if deducted > 0:
                account.available_credits -= deducted
                account.updated_at = as_of
                entries.append(
                    await self._append_entry(
                        account,
                        -deducted,
                        LedgerEntryKind.EXPIRATION,
                        as_of,
                        reason="Credits expired - activation window passed",
                        notes=purchase.payment_reference,
                    )
                )
                await self._db.update_account(account)

            purchase.expired = True
            purchase.expired_at = as_of
            purchase.expired_credits = deducted
            await self._db.update_purchase(purchase)
            result = OperationResult(
                operation="expire_purchase", credits=deducted, account=account, entries=entries
            )

        await self._publish(
            result, "credits.expired", purchase.id, None, "activation window passed",
            {"available_credits": before},
            {"available_credits": account.available_credits},
        )
        if deducted > 0:
            await self._notify(
                account,
                NotificationType.CREDITS_EXPIRED,
                {
                    "credits_expired": deducted,
                    "purchase_id": purchase.id,
                    "package_name": purchase.package_name,
                    "new_balance": account.available_credits,
                },
            )
        return result

    async def expiring_purchases(
        self,
        account_id: Optional[str] = None,
        within_days: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> List[CreditPurchase]:
        """Unactivated purchases whose window closes within `within_days`, soonest first."""
        now = now or self._clock()
        within_days = within_days if within_days is not None else self._expiry_warning_days
        cutoff = now + timedelta(days=within_days)
        return [
            p
            for p in await self._db.get_purchases(account_id)
            if not p.activated
            and not p.expired
            and now <= p.activation_window_expires_at <= cutoff
        ]

    async def send_expiration_warnings(self, now: Optional[datetime] = None) -> int:
        """Notify each author with credits about to lapse. Returns the number of warnings sent."""
        now = now or self._clock()
        by_account: Dict[str, List[CreditPurchase]] = {}
        for purchase in await self.expiring_purchases(now=now):
            by_account.setdefault(purchase.account_id, []).append(purchase)

        sent = 0
        for account_id, purchases in by_account.items():
            account = await self._db.get_account(account_id)
            if account is None:
                logger.warning("Expiring purchases reference unknown account %s", account_id)
                continue
            await self._notify(
                account,
                NotificationType.EXPIRING_CREDITS,
                {
                    "expiring_credits": sum(p.credits for p in purchases),
                    "expires_at": purchases[0].activation_window_expires_at.isoformat(),
                    "purchase_ids": [p.id for p in purchases],
                },
            )
            sent += 1
        return sent
