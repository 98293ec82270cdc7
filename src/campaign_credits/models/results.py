from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional

from pydantic import BaseModel, Field

from .account import AuthorCreditAccount
from .base import DBSerializableModel, utcnow
from .campaign import Campaign, CampaignStatus
from .ledger import LedgerEntry


class OperationResult(BaseModel):
    """
    Committed state returned by every allocator operation: the account and
    campaign snapshots after the write, and the ledger entries it appended.
    """

    operation: str
    credits: int = 0
    account: Optional[AuthorCreditAccount] = None
    campaigns: List[Campaign] = Field(default_factory=list)
    entries: List[LedgerEntry] = Field(default_factory=list)
    replayed: bool = Field(
        default=False,
        description="True when the result was served from an earlier call with the same idempotency key.",
    )

    def campaign(self, campaign_id: str) -> Campaign:
        for campaign in self.campaigns:
            if campaign.id == campaign_id:
                return campaign
        raise KeyError(campaign_id)


class IdempotencyRecord(DBSerializableModel):
    collection_name: ClassVar[str] = "credit_idempotency_keys"
    primary_key: ClassVar[Optional[str]] = "key"

    key: str
    operation: str
    result: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class HealthStatus(str, Enum):
    ON_TRACK = "on-track"
    DELAYED = "delayed"
    ISSUES = "issues"
    AHEAD_OF_SCHEDULE = "ahead-of-schedule"


class CampaignHealth(BaseModel):
    status: HealthStatus
    completion_percentage: float
    weeks_elapsed: int
    total_planned_weeks: int
    reviews_delivered: int
    reviews_expected: int
    target_reviews: int
    variance: int
    projected_completion_date: datetime
    expected_completion_date: datetime
    days_off_schedule: int


class CatchUpResult(BaseModel):
    campaign: Campaign
    pause_duration_days: int
    missed_reviews: int
    previous_expected_end_date: Optional[datetime] = None
    new_expected_end_date: Optional[datetime] = None


class CampaignProgress(BaseModel):
    reviews_delivered: int
    reviews_validated: int
    reviews_rejected: int
    reviews_expired: int
    completion_percentage: float


class CampaignDistribution(BaseModel):
    reviews_per_week: int
    current_week: int
    total_weeks: int
    manual_override: bool
    over_booking_percent: int
    over_booking_enabled: bool


class CampaignPerformance(BaseModel):
    on_time_delivery_rate: float
    validation_rate: float


class CampaignTimeline(BaseModel):
    start_date: Optional[datetime] = None
    expected_end_date: Optional[datetime] = None
    projected_end_date: datetime


class CampaignAnalytics(BaseModel):
    campaign_id: str
    title: str
    status: CampaignStatus
    target_reviews: int
    credits_allocated: int
    credits_used: int
    credits_remaining: int
    health: CampaignHealth
    progress: CampaignProgress
    distribution: CampaignDistribution
    performance: CampaignPerformance
    timeline: CampaignTimeline
