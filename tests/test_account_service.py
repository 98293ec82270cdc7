from __future__ import annotations

import pytest

from campaign_credits.errors import InvalidArgument, NotFound
from campaign_credits.models.campaign import CampaignStatus
from campaign_credits.models.ledger import LedgerEntryKind
from campaign_credits.services.base import account_cache_key

from conftest import make_account


@pytest.mark.asyncio
async def test_create_account_and_campaign(services):
    account = await services.accounts.create_account(owner_id="author-7")
    campaign = await services.accounts.create_campaign(
        account.id, "Spring launch", target_reviews=40, reviews_per_week=10
    )

    assert account.available_credits == 0
    assert campaign.status is CampaignStatus.DRAFT
    assert campaign.pool.credits_allocated == 0

    with pytest.raises(InvalidArgument):
        await services.accounts.create_account(account_id=account.id)
    with pytest.raises(NotFound):
        await services.accounts.create_campaign("missing", "x", target_reviews=1)


@pytest.mark.asyncio
async def test_get_account_prefers_cache_after_mutation(services, db):
    account = await make_account(db, available=10)

    await services.allocator.add_credits(account.id, 5, "admin", None)
    assert account_cache_key(account.id) in services.cache

    cached = await services.accounts.get_account(account.id)
    assert cached.available_credits == 15


@pytest.mark.asyncio
async def test_get_account_recovers_from_corrupted_cache(services, db):
    account = await make_account(db, available=10)
    await services.cache.set(account_cache_key(account.id), {"available_credits": "lots"})

    loaded = await services.accounts.get_account(account.id)

    assert loaded.available_credits == 10
    assert (await services.cache.get(account_cache_key(account.id)))["available_credits"] == 10


@pytest.mark.asyncio
async def test_ledger_is_paginated_newest_first(services, db):
    account = await make_account(db)
    for n in range(1, 6):
        await services.allocator.add_credits(account.id, n, "admin", None)
    await services.allocator.remove_credits(account.id, 2, "admin", None)

    page = await services.accounts.get_ledger(account.id, limit=2)
    assert page.total == 6
    assert [e.amount for e in page.items] == [-2, 5]

    second = await services.accounts.get_ledger(account.id, limit=2, offset=2)
    assert [e.amount for e in second.items] == [4, 3]

    filtered = await services.accounts.get_ledger(
        account.id, kinds=[LedgerEntryKind.ALLOCATION]
    )
    assert filtered.total == 0

    with pytest.raises(NotFound):
        await services.accounts.get_ledger("missing")


@pytest.mark.asyncio
async def test_reconcile_matches_running_balance(services, db):
    account = await services.accounts.create_account(owner_id="author-1")
    campaign = await services.accounts.create_campaign(account.id, "Launch", target_reviews=10)
    await services.purchases.record_purchase(account.id, 100, "pay_1")
    await services.allocator.activate_campaign(account.id, campaign.id, 40, "author-1")
    await services.allocator.remove_credits(account.id, 10, "admin", None)
    await services.allocator.refund_on_force_complete(campaign.id, "admin", None)

    report = await services.accounts.reconcile(account.id)

    assert report.available_credits == 90
    assert report.ledger_sum == 90
    assert report.last_balance_after == 90
    assert report.entry_count == 4
    assert report.consistent


@pytest.mark.asyncio
async def test_reconcile_flags_balance_without_ledger(services, db):
    account = await make_account(db, available=25)

    report = await services.accounts.reconcile(account.id)

    assert not report.consistent
    assert report.ledger_sum == 0


@pytest.mark.asyncio
async def test_list_campaigns_filters_by_status(services, clock):
    account = await services.accounts.create_account(owner_id="author-1")
    draft = await services.accounts.create_campaign(account.id, "Draft", target_reviews=10)
    clock.advance(minutes=1)
    running = await services.accounts.create_campaign(account.id, "Running", target_reviews=10)
    await services.purchases.record_purchase(account.id, 20, "pay_1")
    await services.allocator.activate_campaign(account.id, running.id, 10, "author-1")

    everything = await services.accounts.list_campaigns(account.id)
    active = await services.accounts.list_campaigns(account.id, [CampaignStatus.ACTIVE])

    assert [c.id for c in everything] == [draft.id, running.id]
    assert [c.id for c in active] == [running.id]


@pytest.mark.asyncio
async def test_notifications_are_stored_before_queueing(services, db):
    account = await make_account(db, available=5)

    await services.allocator.add_credits(account.id, 5, "admin", "goodwill")

    stored = db.notifications
    assert [n.notification_type.value for n in stored] == ["credits_added"]
    assert services.queue.messages[0]["notification_id"] == stored[0].id
