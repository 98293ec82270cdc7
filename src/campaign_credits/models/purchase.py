from __future__ import annotations

from datetime import datetime
from typing import ClassVar, Optional, Tuple

from pydantic import Field

from .base import CheckSpec, DBSerializableModel, IndexSpec, utcnow


class CreditPurchase(DBSerializableModel):
    """
    A confirmed credit purchase with its activation window.

    Credits of a purchase that is not activated (used to fund a campaign)
    before `activation_window_expires_at` are expired by the expiry sweep.
    """

    collection_name: ClassVar[str] = "credit_purchases"
    indexes: ClassVar[Tuple[IndexSpec, ...]] = (
        IndexSpec(("payment_reference",), unique=True),
        IndexSpec(("account_id",)),
    )
    checks: ClassVar[Tuple[CheckSpec, ...]] = (
        CheckSpec("credits_positive", "credits", ">", (0,)),
    )

    id: Optional[str] = Field(default=None)
    account_id: str
    payment_reference: str = Field(
        description="Payment provider reference; unique, used to drop duplicate confirmations."
    )
    package_name: Optional[str] = None
    credits: int = Field(gt=0)
    amount_paid_minor: int = Field(default=0, ge=0, description="Amount paid in minor units (cents).")
    currency: str = "USD"
    validity_days: int = Field(gt=0)
    activation_window_expires_at: datetime
    activated: bool = False
    activated_at: Optional[datetime] = None
    expired: bool = False
    expired_at: Optional[datetime] = None
    expired_credits: int = 0
    created_at: datetime = Field(default_factory=utcnow)

    def is_lapsed(self, as_of: datetime) -> bool:
        return (
            not self.activated
            and not self.expired
            and self.activation_window_expires_at < as_of
        )
