from __future__ import annotations

from datetime import datetime
from typing import ClassVar, Optional, Tuple

from pydantic import BaseModel, Field

from .base import CheckSpec, DBSerializableModel, utcnow


class AuthorCreditAccount(DBSerializableModel):
    """
    An author's pool of purchased-but-unallocated credits.

    Mutated only by the credit allocator and the purchase service; never deleted.
    """

    collection_name: ClassVar[str] = "credit_accounts"
    checks: ClassVar[Tuple[CheckSpec, ...]] = (
        CheckSpec("available_non_negative", "available_credits", ">=", (0,)),
        CheckSpec("used_non_negative", "total_credits_used", ">=", (0,)),
    )

    id: Optional[str] = Field(default=None)
    owner_id: Optional[str] = Field(
        default=None,
        description="Reference to the author's user in the host system; used for notifications.",
    )
    available_credits: int = Field(default=0, ge=0)
    total_credits_purchased: int = Field(default=0, ge=0)
    total_credits_used: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class AccountBalance(BaseModel):
    account_id: str
    available_credits: int
    total_credits_purchased: int
    total_credits_used: int
    spendable_credits: int = Field(
        description="Available credits minus lapsed purchases the expiry sweep has not processed yet."
    )
    expiring_credits: int = 0
    next_expiration_date: Optional[datetime] = None


class LedgerReconciliation(BaseModel):
    account_id: str
    available_credits: int
    ledger_sum: int
    last_balance_after: Optional[int] = None
    entry_count: int

    @property
    def consistent(self) -> bool:
        if self.ledger_sum != self.available_credits:
            return False
        if self.last_balance_after is None:
            return self.available_credits == 0
        return self.last_balance_after == self.available_credits
