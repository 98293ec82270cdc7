from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from ..errors import InvalidArgument, InvalidState
from ..models.campaign import Campaign, CampaignPacingState, CampaignStatus
from ..models.results import (
    CampaignAnalytics,
    CampaignDistribution,
    CampaignHealth,
    CampaignPerformance,
    CampaignProgress,
    CampaignTimeline,
    CatchUpResult,
    HealthStatus,
    OperationResult,
)
from .base import LedgerServiceBase, require_positive


logger = logging.getLogger(__name__)

WEEK = timedelta(days=7)
DAY = timedelta(days=1)


def _as_utc(value: datetime) -> datetime:
    # Backends may hand back naive datetimes; they are stored as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _ceil_div(numerator: int, denominator: int) -> int:
    return -(-numerator // denominator)


def compute_health(
    pacing: CampaignPacingState,
    now: datetime,
    issues_rejection_ratio: float = 0.10,
) -> CampaignHealth:
    """
    Compare actual review delivery with the weekly target.

    Pure function of its inputs. Classification order matters: a campaign
    more than one week's rate ahead or behind is reported as such even when
    it also has a high rejection count.
    """
    rate = pacing.reviews_per_week
    target = pacing.target_reviews
    if not rate or rate <= 0:
        raise InvalidArgument("reviews_per_week must be positive to compute pacing")
    if not target or target <= 0:
        raise InvalidArgument("target_reviews must be positive to compute pacing")

    now = _as_utc(now)
    start = _as_utc(pacing.campaign_start_date) if pacing.campaign_start_date else now
    expected_end = _as_utc(pacing.expected_end_date) if pacing.expected_end_date else now

    weeks_elapsed = max((now - start) // WEEK, 0)
    total_planned_weeks = _ceil_div(target, rate)
    reviews_expected = min(weeks_elapsed * rate, target)
    delivered = pacing.total_reviews_delivered
    variance = delivered - reviews_expected

    if variance > rate:
        status = HealthStatus.AHEAD_OF_SCHEDULE
    elif variance < -rate:
        status = HealthStatus.DELAYED
    elif pacing.total_reviews_rejected > target * issues_rejection_ratio:
        status = HealthStatus.ISSUES
    else:
        status = HealthStatus.ON_TRACK

    weeks_remaining = _ceil_div(max(target - delivered, 0), rate)
    projected = now + weeks_remaining * WEEK
    days_off_schedule = (projected - expected_end) // DAY

    return CampaignHealth(
        status=status,
        completion_percentage=delivered / target * 100,
        weeks_elapsed=weeks_elapsed,
        total_planned_weeks=total_planned_weeks,
        reviews_delivered=delivered,
        reviews_expected=reviews_expected,
        target_reviews=target,
        variance=variance,
        projected_completion_date=projected,
        expected_completion_date=expected_end,
        days_off_schedule=days_off_schedule,
    )


def _pacing_state(campaign: Campaign) -> Dict[str, Any]:
    return campaign.pacing.model_dump(mode="json")


class CampaignPacingEngine(LedgerServiceBase):
    """
    Campaign lifecycle and distribution controls.

    Reads (`get_health`, `get_analytics`) have no side effects. The status
    and date changes run in a storage transaction like the allocator's
    operations and are audited after commit.
    """

    def __init__(self, *args, issues_rejection_ratio: float = 0.10, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._issues_rejection_ratio = issues_rejection_ratio

    # Reads
    async def get_health(
        self, campaign_id: str, now: Optional[datetime] = None
    ) -> CampaignHealth:
        campaign = await self._load_campaign(campaign_id, for_update=False)
        return compute_health(
            campaign.pacing, now or self._clock(), self._issues_rejection_ratio
        )

    async def get_analytics(
        self, campaign_id: str, now: Optional[datetime] = None
    ) -> CampaignAnalytics:
        campaign = await self._load_campaign(campaign_id, for_update=False)
        pacing = campaign.pacing
        health = compute_health(pacing, now or self._clock(), self._issues_rejection_ratio)

        reviewed = pacing.total_reviews_validated + pacing.total_reviews_rejected
        validation_rate = (
            pacing.total_reviews_validated / reviewed * 100 if reviewed > 0 else 0.0
        )
        attempts = pacing.total_reviews_delivered + pacing.total_reviews_expired
        on_time_rate = (
            pacing.total_reviews_delivered / attempts * 100 if attempts > 0 else 0.0
        )

        return CampaignAnalytics(
            campaign_id=campaign.id,
            title=campaign.title,
            status=pacing.status,
            target_reviews=pacing.target_reviews,
            credits_allocated=campaign.pool.credits_allocated,
            credits_used=campaign.pool.credits_used,
            credits_remaining=campaign.pool.credits_remaining,
            health=health,
            progress=CampaignProgress(
                reviews_delivered=pacing.total_reviews_delivered,
                reviews_validated=pacing.total_reviews_validated,
                reviews_rejected=pacing.total_reviews_rejected,
                reviews_expired=pacing.total_reviews_expired,
                completion_percentage=health.completion_percentage,
            ),
            distribution=CampaignDistribution(
                reviews_per_week=pacing.reviews_per_week,
                current_week=pacing.current_week or 1,
                total_weeks=health.total_planned_weeks,
                manual_override=pacing.manual_distribution_override,
                over_booking_percent=pacing.over_booking_percent,
                over_booking_enabled=pacing.over_booking_enabled,
            ),
            performance=CampaignPerformance(
                on_time_delivery_rate=on_time_rate,
                validation_rate=validation_rate,
            ),
            timeline=CampaignTimeline(
                start_date=pacing.campaign_start_date,
                expected_end_date=pacing.expected_end_date,
                projected_end_date=health.projected_completion_date,
            ),
        )

    # Status transitions
    async def pause(
        self,
        campaign_id: str,
        actor: Optional[str],
        reason: Optional[str],
        now: Optional[datetime] = None,
    ) -> Campaign:
        now = now or self._clock()
        async with self._db.transaction():
            campaign = await self._load_campaign(campaign_id)
            if campaign.pacing.status is not CampaignStatus.ACTIVE:
                raise InvalidState("can only pause active campaigns")
            before = _pacing_state(campaign)
            campaign.pacing.status = CampaignStatus.PAUSED
            campaign.pacing.distribution_paused_at = now
            campaign.updated_at = now
            await self._db.update_campaign(campaign)

        await self._announce("pause", "campaign.paused", campaign, actor, reason, before)
        return campaign

    async def resume(
        self,
        campaign_id: str,
        actor: Optional[str],
        reason: Optional[str],
        now: Optional[datetime] = None,
    ) -> Campaign:
        """Resume distribution without moving the expected end date."""
        now = now or self._clock()
        async with self._db.transaction():
            campaign = await self._load_campaign(campaign_id)
            if campaign.pacing.status is not CampaignStatus.PAUSED:
                raise InvalidState("can only resume paused campaigns")
            before = _pacing_state(campaign)
            campaign.pacing.status = CampaignStatus.ACTIVE
            campaign.pacing.distribution_resumed_at = now
            campaign.updated_at = now
            await self._db.update_campaign(campaign)

        await self._announce("resume", "campaign.resumed", campaign, actor, reason, before)
        return campaign

    async def resume_with_catch_up(
        self,
        campaign_id: str,
        actor: Optional[str],
        reason: Optional[str],
        now: Optional[datetime] = None,
    ) -> CatchUpResult:
        """
        Resume a paused campaign and push its expected end date back by the
        number of whole days it was paused. `missed_reviews` is reported for
        information only; delivery counters are not touched.
        """
        now = now or self._clock()
        async with self._db.transaction():
            campaign = await self._load_campaign(campaign_id)
            pacing = campaign.pacing
            if pacing.status is not CampaignStatus.PAUSED:
                raise InvalidState("can only resume paused campaigns")
            before = _pacing_state(campaign)

            pause_days = 0
            if pacing.distribution_paused_at is not None:
                pause_days = max((_as_utc(now) - _as_utc(pacing.distribution_paused_at)) // DAY, 0)
            missed_reviews = pause_days * pacing.reviews_per_week // 7

            previous_end = pacing.expected_end_date
            if previous_end is not None and pause_days > 0:
                pacing.expected_end_date = previous_end + timedelta(days=pause_days)
                pacing.campaign_end_date = pacing.expected_end_date

            pacing.status = CampaignStatus.ACTIVE
            pacing.distribution_resumed_at = now
            campaign.updated_at = now
            await self._db.update_campaign(campaign)

        logger.info(
            "Campaign %s resumed with catch-up after %d days (~%d reviews missed)",
            campaign_id, pause_days, missed_reviews,
        )
        await self._announce(
            "resume_with_catch_up", "campaign.resumed_with_catchup", campaign, actor, reason,
            before, extra={"pause_duration_days": pause_days, "missed_reviews": missed_reviews},
        )
        return CatchUpResult(
            campaign=campaign,
            pause_duration_days=pause_days,
            missed_reviews=missed_reviews,
            previous_expected_end_date=previous_end,
            new_expected_end_date=pacing.expected_end_date,
        )

    async def cancel(
        self,
        campaign_id: str,
        actor: Optional[str],
        reason: Optional[str],
        now: Optional[datetime] = None,
    ) -> Campaign:
        now = now or self._clock()
        async with self._db.transaction():
            campaign = await self._load_campaign(campaign_id)
            if campaign.pacing.status.is_terminal:
                raise InvalidState(f"campaign is already {campaign.pacing.status.value}")
            before = _pacing_state(campaign)
            campaign.pacing.status = CampaignStatus.CANCELLED
            campaign.pacing.campaign_end_date = now
            campaign.updated_at = now
            await self._db.update_campaign(campaign)

        await self._announce("cancel", "campaign.cancelled", campaign, actor, reason, before)
        return campaign

    # Distribution settings
    async def adjust_distribution(
        self,
        campaign_id: str,
        reviews_per_week: int,
        actor: Optional[str],
        reason: Optional[str],
    ) -> Campaign:
        """
        Override the weekly rate. Only future health computations use the new
        rate; nothing already computed is revisited.
        """
        require_positive(reviews_per_week, "reviews_per_week")
        async with self._db.transaction():
            campaign = await self._load_campaign(campaign_id)
            self._require_open(campaign)
            before = _pacing_state(campaign)
            campaign.pacing.reviews_per_week = reviews_per_week
            campaign.pacing.manual_distribution_override = True
            campaign.updated_at = self._clock()
            await self._db.update_campaign(campaign)

        await self._announce(
            "adjust_distribution", "campaign.distribution_adjusted", campaign, actor, reason, before
        )
        return campaign

    async def adjust_overbooking(
        self,
        campaign_id: str,
        over_booking_percent: int,
        over_booking_enabled: bool,
        actor: Optional[str],
        reason: Optional[str],
    ) -> Campaign:
        if (
            isinstance(over_booking_percent, bool)
            or not isinstance(over_booking_percent, int)
            or not 0 <= over_booking_percent <= 100
        ):
            raise InvalidArgument(
                f"over_booking_percent must be between 0 and 100, got {over_booking_percent!r}"
            )
        async with self._db.transaction():
            campaign = await self._load_campaign(campaign_id)
            self._require_open(campaign)
            before = _pacing_state(campaign)
            campaign.pacing.over_booking_percent = over_booking_percent
            campaign.pacing.over_booking_enabled = over_booking_enabled
            campaign.updated_at = self._clock()
            await self._db.update_campaign(campaign)

        await self._announce(
            "adjust_overbooking", "campaign.overbooking_adjusted", campaign, actor, reason, before
        )
        return campaign

    async def update_settings(
        self,
        campaign_id: str,
        actor: Optional[str],
        reason: Optional[str],
        campaign_end_date: Optional[datetime] = None,
        target_reviews: Optional[int] = None,
        reviews_per_week: Optional[int] = None,
    ) -> Campaign:
        if campaign_end_date is None and target_reviews is None and reviews_per_week is None:
            raise InvalidArgument("no settings provided to update")
        if target_reviews is not None:
            require_positive(target_reviews, "target_reviews")
        if reviews_per_week is not None:
            require_positive(reviews_per_week, "reviews_per_week")

        async with self._db.transaction():
            campaign = await self._load_campaign(campaign_id)
            pacing = campaign.pacing
            if pacing.status not in (CampaignStatus.ACTIVE, CampaignStatus.PAUSED):
                raise InvalidState("can only update settings for active or paused campaigns")
            before = _pacing_state(campaign)
            if campaign_end_date is not None:
                pacing.campaign_end_date = campaign_end_date
                pacing.expected_end_date = campaign_end_date
            if target_reviews is not None:
                pacing.target_reviews = target_reviews
            if reviews_per_week is not None:
                pacing.reviews_per_week = reviews_per_week
                pacing.manual_distribution_override = True
            campaign.updated_at = self._clock()
            await self._db.update_campaign(campaign)

        await self._announce(
            "update_settings", "campaign.settings_updated", campaign, actor, reason, before
        )
        return campaign

    @staticmethod
    def _require_open(campaign: Campaign) -> None:
        if campaign.pacing.status.is_terminal:
            raise InvalidState(
                f"campaign {campaign.id} is {campaign.pacing.status.value}"
            )

    async def _announce(
        self,
        operation: str,
        action: str,
        campaign: Campaign,
        actor: Optional[str],
        reason: Optional[str],
        before: Dict[str, Any],
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        after = _pacing_state(campaign)
        if extra:
            after.update(extra)
        await self._publish(
            OperationResult(operation=operation, campaigns=[campaign]),
            action, campaign.id, actor, reason, before, after,
        )
