from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar, Optional, Tuple

from pydantic import ConfigDict, Field

from .base import CheckSpec, DBSerializableModel, IndexSpec, utcnow


class LedgerEntryKind(str, Enum):
    PURCHASE = "purchase"
    MANUAL_ADJUSTMENT = "manual_adjustment"
    ALLOCATION = "allocation"
    REFUND = "refund"
    SUBSCRIPTION_RENEWAL = "subscription_renewal"
    EXPIRATION = "expiration"
    BONUS = "bonus"


class LedgerEntry(DBSerializableModel):
    """
    One immutable signed delta applied to an author account.

    Entries of an account ordered by `sequence` form a running sum whose last
    value is the account's current available credits.
    """

    model_config = ConfigDict(frozen=True)

    collection_name: ClassVar[str] = "credit_ledger"
    indexes: ClassVar[Tuple[IndexSpec, ...]] = (
        IndexSpec(("account_id", "sequence"), unique=True),
        IndexSpec(("campaign_id",)),
    )
    checks: ClassVar[Tuple[CheckSpec, ...]] = (
        CheckSpec("sequence_positive", "sequence", ">=", (1,)),
        CheckSpec("balance_non_negative", "balance_after", ">=", (0,)),
    )

    id: Optional[str] = Field(default=None)
    account_id: str
    campaign_id: Optional[str] = None
    amount: int
    kind: LedgerEntryKind
    balance_after: int = Field(description="Account balance immediately after applying `amount`.")
    sequence: int = Field(default=0, description="Per-account position in the ledger.")
    performed_by: Optional[str] = None
    reason: Optional[str] = None
    notes: Optional[str] = None
    correlation_id: Optional[str] = Field(
        default=None,
        description="Correlation id for tracing a logical operation across components.",
    )
    created_at: datetime = Field(default_factory=utcnow)
