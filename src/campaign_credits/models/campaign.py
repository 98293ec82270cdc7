from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar, Optional, Tuple

from pydantic import BaseModel, Field

from .base import CheckSpec, DBSerializableModel, IndexSpec, utcnow


class CampaignStatus(str, Enum):
    DRAFT = "draft"
    PENDING = "pending"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (CampaignStatus.COMPLETED, CampaignStatus.CANCELLED)


class CampaignCreditPool(BaseModel):
    """
    Per-campaign credit budget, always funded from the owning author account.

    Invariant: credits_allocated == credits_used + credits_remaining.
    """

    credits_allocated: int = Field(default=0, ge=0)
    credits_used: int = Field(default=0, ge=0)
    credits_remaining: int = Field(default=0, ge=0)

    @property
    def balanced(self) -> bool:
        return self.credits_allocated == self.credits_used + self.credits_remaining


class CampaignPacingState(BaseModel):
    target_reviews: int = Field(default=1, gt=0)
    reviews_per_week: int = Field(default=1, gt=0)
    total_reviews_delivered: int = Field(default=0, ge=0)
    total_reviews_validated: int = Field(default=0, ge=0)
    total_reviews_rejected: int = Field(default=0, ge=0)
    total_reviews_expired: int = Field(default=0, ge=0)
    campaign_start_date: Optional[datetime] = None
    expected_end_date: Optional[datetime] = None
    campaign_end_date: Optional[datetime] = None
    current_week: Optional[int] = None
    distribution_paused_at: Optional[datetime] = None
    distribution_resumed_at: Optional[datetime] = None
    manual_distribution_override: bool = False
    over_booking_percent: int = Field(default=0, ge=0, le=100)
    over_booking_enabled: bool = False
    status: CampaignStatus = CampaignStatus.DRAFT


class Campaign(DBSerializableModel):
    """
    Campaign aggregate: the credit pool and the pacing state are stored in a
    single document so they are always written together.
    """

    collection_name: ClassVar[str] = "campaigns"
    indexes: ClassVar[Tuple[IndexSpec, ...]] = (IndexSpec(("account_id",)),)
    checks: ClassVar[Tuple[CheckSpec, ...]] = (
        CheckSpec(
            "pool_balanced",
            "pool.credits_allocated",
            "=",
            ("pool.credits_used", "pool.credits_remaining"),
        ),
        CheckSpec("pool_used_non_negative", "pool.credits_used", ">=", (0,)),
        CheckSpec("pool_remaining_non_negative", "pool.credits_remaining", ">=", (0,)),
    )

    id: Optional[str] = Field(default=None)
    account_id: str
    title: str = ""
    pool: CampaignCreditPool = Field(default_factory=CampaignCreditPool)
    pacing: CampaignPacingState = Field(default_factory=CampaignPacingState)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def status(self) -> CampaignStatus:
        return self.pacing.status
