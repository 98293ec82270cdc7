from __future__ import annotations

from pathlib import Path

import pytest

from campaign_credits.config import Settings
from campaign_credits.factory import build_services

from conftest import make_account


def test_settings_read_prefixed_environment(monkeypatch):
    monkeypatch.setenv("CAMPAIGN_CREDITS_LEDGER_LOG_PATH", "/var/log/credits.log")
    monkeypatch.setenv("CAMPAIGN_CREDITS_LOW_CREDIT_THRESHOLD", "25")

    settings = Settings(_env_file=None)

    assert settings.ledger_log_path == Path("/var/log/credits.log")
    assert settings.low_credit_threshold == 25


@pytest.mark.parametrize("value", ["", "   "])
def test_blank_ledger_log_path_disables_the_mirror(monkeypatch, value):
    monkeypatch.setenv("CAMPAIGN_CREDITS_LEDGER_LOG_PATH", value)

    assert Settings(_env_file=None).ledger_log_path is None


@pytest.mark.asyncio
async def test_services_without_ledger_log_write_no_file(monkeypatch, tmp_path, db, clock):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("CAMPAIGN_CREDITS_LEDGER_LOG_PATH", "")
    services = build_services(settings=Settings(_env_file=None), db=db, clock=clock)
    account = await make_account(db, available=10)

    await services.allocator.add_credits(account.id, 5, "admin", None)

    assert list(tmp_path.iterdir()) == []
