from __future__ import annotations

import json

from campaign_credits.logging.ledger_logger import LedgerLogger
from campaign_credits.models.base import utcnow
from campaign_credits.models.ledger import LedgerEntry, LedgerEntryKind


def test_entries_are_written_as_json_lines(tmp_path):
    path = tmp_path / "logs" / "ledger.log"
    ledger = LedgerLogger(file_path=path)
    entry = LedgerEntry(
        id="7",
        account_id="acc-1",
        amount=-40,
        kind=LedgerEntryKind.ALLOCATION,
        balance_after=60,
        sequence=3,
        created_at=utcnow(),
    )

    ledger.log_entries("allocate_to_campaign", [entry], correlation_id="req-9")
    ledger.log_error("Insufficient credits", {"requested": 5}, account_id="acc-1")

    lines = [json.loads(line) for line in path.read_text().splitlines()]
    assert [line["event_type"] for line in lines] == ["transaction", "error"]
    assert lines[0]["details"]["amount"] == -40
    assert lines[0]["details"]["kind"] == "allocation"
    assert lines[0]["correlation_id"] == "req-9"
    assert lines[1]["account_id"] == "acc-1"


def test_unwritable_file_only_logs_a_warning(tmp_path, caplog):
    path = tmp_path / "ledger.log"
    path.mkdir()
    ledger = LedgerLogger(file_path=path)

    ledger.log_event("sweep finished", {"expired": 0})

    assert "Could not write ledger log line" in caplog.text
