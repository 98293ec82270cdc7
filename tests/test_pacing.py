from __future__ import annotations

from datetime import timedelta

import pytest

from campaign_credits.errors import InvalidArgument, InvalidState
from campaign_credits.models.campaign import CampaignPacingState, CampaignStatus
from campaign_credits.models.results import HealthStatus
from campaign_credits.services.pacing import compute_health

from conftest import START, make_account, make_campaign


def _pacing(**overrides) -> CampaignPacingState:
    values = dict(
        target_reviews=100,
        reviews_per_week=20,
        campaign_start_date=START - timedelta(weeks=4),
        expected_end_date=START + timedelta(weeks=1),
        status=CampaignStatus.ACTIVE,
    )
    values.update(overrides)
    return CampaignPacingState(**values)


def test_health_reports_delay_beyond_one_week_of_reviews():
    health = compute_health(
        _pacing(total_reviews_delivered=54, total_reviews_rejected=2), START
    )

    assert health.weeks_elapsed == 4
    assert health.reviews_expected == 80
    assert health.variance == -26
    assert health.status is HealthStatus.DELAYED
    assert health.total_planned_weeks == 5
    assert health.completion_percentage == pytest.approx(54.0)
    # ceil(46 / 20) = 3 weeks left, expected end is 1 week away
    assert health.projected_completion_date == START + timedelta(weeks=3)
    assert health.days_off_schedule == 14


@pytest.mark.parametrize(
    "delivered, rejected, expected",
    [
        (59, 0, HealthStatus.DELAYED),
        (59, 50, HealthStatus.DELAYED),
        (60, 0, HealthStatus.ON_TRACK),  # variance -20 is not below -rate
        (60, 11, HealthStatus.ISSUES),
        (61, 0, HealthStatus.ON_TRACK),
        (100, 0, HealthStatus.ON_TRACK),  # variance +20 is not above rate
        (101, 0, HealthStatus.AHEAD_OF_SCHEDULE),
        (80, 10, HealthStatus.ON_TRACK),
        (80, 11, HealthStatus.ISSUES),
        (130, 50, HealthStatus.AHEAD_OF_SCHEDULE),
    ],
)
def test_health_classification_boundaries(delivered, rejected, expected):
    health = compute_health(
        _pacing(total_reviews_delivered=delivered, total_reviews_rejected=rejected), START
    )
    assert health.status is expected


def test_health_caps_expected_reviews_at_target():
    health = compute_health(
        _pacing(campaign_start_date=START - timedelta(weeks=10), total_reviews_delivered=100),
        START,
    )

    assert health.reviews_expected == 100
    assert health.variance == 0
    assert health.projected_completion_date == START


def test_health_without_dates_starts_now():
    health = compute_health(
        _pacing(campaign_start_date=None, expected_end_date=None), START
    )

    assert health.weeks_elapsed == 0
    assert health.reviews_expected == 0
    assert health.expected_completion_date == START
    assert health.days_off_schedule == 35


def test_health_rejects_zero_rate():
    pacing = _pacing().model_copy(update={"reviews_per_week": 0})
    with pytest.raises(InvalidArgument):
        compute_health(pacing, START)


@pytest.mark.asyncio
async def test_resume_with_catch_up_extends_end_date(services, db, clock, audit):
    account = await make_account(db, available=100)
    campaign = await make_campaign(db, account.id, target_reviews=70, reviews_per_week=14)
    await services.allocator.activate_campaign(account.id, campaign.id, 70, "author-1")
    original_end = (await db.get_campaign(campaign.id)).pacing.expected_end_date

    await services.pacing.pause(campaign.id, "admin", "holiday")
    clock.advance(days=10)
    result = await services.pacing.resume_with_catch_up(campaign.id, "admin", None)

    assert result.pause_duration_days == 10
    assert result.missed_reviews == 20
    assert result.previous_expected_end_date == original_end
    assert result.new_expected_end_date == original_end + timedelta(days=10)

    stored = await db.get_campaign(campaign.id)
    assert stored.status is CampaignStatus.ACTIVE
    assert stored.pacing.expected_end_date == original_end + timedelta(days=10)
    assert stored.pacing.campaign_end_date == stored.pacing.expected_end_date
    assert stored.pacing.distribution_resumed_at == clock.now
    assert stored.pacing.total_reviews_delivered == 0
    assert audit.actions()[-2:] == ["campaign.paused", "campaign.resumed_with_catchup"]


@pytest.mark.asyncio
async def test_plain_resume_keeps_dates(services, db, clock):
    account = await make_account(db, available=100)
    campaign = await make_campaign(db, account.id)
    await services.allocator.activate_campaign(account.id, campaign.id, 20, "author-1")
    end = (await db.get_campaign(campaign.id)).pacing.expected_end_date

    await services.pacing.pause(campaign.id, "admin", None)
    clock.advance(days=5)
    resumed = await services.pacing.resume(campaign.id, "admin", None)

    assert resumed.status is CampaignStatus.ACTIVE
    assert resumed.pacing.expected_end_date == end


@pytest.mark.asyncio
async def test_status_machine_rejects_illegal_transitions(services, db):
    account = await make_account(db, available=100)
    campaign = await make_campaign(db, account.id)

    with pytest.raises(InvalidState):
        await services.pacing.pause(campaign.id, "admin", None)
    with pytest.raises(InvalidState):
        await services.pacing.resume(campaign.id, "admin", None)
    with pytest.raises(InvalidState):
        await services.pacing.resume_with_catch_up(campaign.id, "admin", None)

    await services.pacing.cancel(campaign.id, "admin", "duplicate")
    assert (await db.get_campaign(campaign.id)).status is CampaignStatus.CANCELLED

    with pytest.raises(InvalidState):
        await services.pacing.cancel(campaign.id, "admin", None)
    with pytest.raises(InvalidState):
        await services.pacing.adjust_distribution(campaign.id, 5, "admin", None)
    with pytest.raises(InvalidState):
        await services.allocator.activate_campaign(account.id, campaign.id, 10, "author-1")


@pytest.mark.asyncio
async def test_adjust_distribution_sets_manual_override(services, db):
    account = await make_account(db, available=100)
    campaign = await make_campaign(db, account.id)

    with pytest.raises(InvalidArgument):
        await services.pacing.adjust_distribution(campaign.id, 0, "admin", None)

    updated = await services.pacing.adjust_distribution(campaign.id, 35, "admin", "boost")
    assert updated.pacing.reviews_per_week == 35
    assert updated.pacing.manual_distribution_override


@pytest.mark.asyncio
async def test_adjust_overbooking_validates_range(services, db):
    account = await make_account(db, available=100)
    campaign = await make_campaign(db, account.id)

    for percent in (-1, 101):
        with pytest.raises(InvalidArgument):
            await services.pacing.adjust_overbooking(campaign.id, percent, True, "admin", None)

    updated = await services.pacing.adjust_overbooking(campaign.id, 15, True, "admin", None)
    assert updated.pacing.over_booking_percent == 15
    assert updated.pacing.over_booking_enabled


@pytest.mark.asyncio
async def test_update_settings(services, db, clock):
    account = await make_account(db, available=100)
    campaign = await make_campaign(db, account.id)

    with pytest.raises(InvalidState):
        await services.pacing.update_settings(campaign.id, "admin", None, target_reviews=50)

    await services.allocator.activate_campaign(account.id, campaign.id, 20, "author-1")
    with pytest.raises(InvalidArgument):
        await services.pacing.update_settings(campaign.id, "admin", None)

    new_end = clock.now + timedelta(weeks=8)
    updated = await services.pacing.update_settings(
        campaign.id, "admin", None,
        campaign_end_date=new_end, target_reviews=150, reviews_per_week=25,
    )
    assert updated.pacing.target_reviews == 150
    assert updated.pacing.reviews_per_week == 25
    assert updated.pacing.expected_end_date == new_end
    assert updated.pacing.manual_distribution_override


@pytest.mark.asyncio
async def test_analytics_combines_pool_and_pacing(services, db):
    account = await make_account(db, available=100)
    campaign = await make_campaign(
        db,
        account.id,
        status=CampaignStatus.ACTIVE,
        campaign_start_date=START - timedelta(weeks=2),
        expected_end_date=START + timedelta(weeks=3),
        total_reviews_delivered=36,
        total_reviews_validated=30,
        total_reviews_rejected=6,
        total_reviews_expired=4,
    )
    await services.allocator.allocate_to_campaign(account.id, campaign.id, 50, "admin", None)

    analytics = await services.pacing.get_analytics(campaign.id, now=START)

    assert analytics.credits_allocated == 50
    assert analytics.health.status is HealthStatus.ON_TRACK
    assert analytics.progress.reviews_validated == 30
    assert analytics.performance.validation_rate == pytest.approx(30 / 36 * 100)
    assert analytics.performance.on_time_delivery_rate == pytest.approx(36 / 40 * 100)
    assert analytics.distribution.total_weeks == 5
    assert analytics.timeline.projected_end_date == START + timedelta(weeks=4)


@pytest.mark.asyncio
async def test_get_health_reads_stored_campaign(services, db, clock):
    account = await make_account(db, available=100)
    campaign = await make_campaign(db, account.id, target_reviews=40, reviews_per_week=10)
    await services.allocator.activate_campaign(account.id, campaign.id, 40, "author-1")

    clock.advance(weeks=2)
    health = await services.pacing.get_health(campaign.id)

    assert health.weeks_elapsed == 2
    assert health.reviews_expected == 20
    assert health.status is HealthStatus.DELAYED
    assert health.days_off_schedule == 14
