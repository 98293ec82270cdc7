from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from campaign_credits.collaborators import InMemoryAuditSink
from campaign_credits.config import Settings
from campaign_credits.db.memory import InMemoryDBManager
from campaign_credits.factory import CreditServices, build_services
from campaign_credits.models.account import AuthorCreditAccount
from campaign_credits.models.campaign import Campaign, CampaignPacingState


START = datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc)


class FrozenClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(START)


@pytest.fixture
def audit() -> InMemoryAuditSink:
    return InMemoryAuditSink()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        mongo_uri=None,
        ledger_log_path=tmp_path / "ledger.log",
        low_credit_threshold=10,
        default_validity_days=30,
        expiry_warning_days=7,
    )


@pytest.fixture
def db() -> InMemoryDBManager:
    return InMemoryDBManager()


@pytest.fixture
def services(settings, db, audit, clock) -> CreditServices:
    return build_services(settings=settings, db=db, audit=audit, clock=clock)


async def make_account(db, available: int = 0, owner_id: str = "author-1") -> AuthorCreditAccount:
    return await db.add_account(
        AuthorCreditAccount(
            owner_id=owner_id,
            available_credits=available,
            total_credits_purchased=available,
        )
    )


async def make_campaign(
    db,
    account_id: str,
    title: str = "Launch reviews",
    target_reviews: int = 100,
    reviews_per_week: int = 20,
    **pacing,
) -> Campaign:
    return await db.add_campaign(
        Campaign(
            account_id=account_id,
            title=title,
            pacing=CampaignPacingState(
                target_reviews=target_reviews, reviews_per_week=reviews_per_week, **pacing
            ),
        )
    )
