from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Optional

from ..models.base import utcnow
from ..models.ledger import LedgerEntry


logger = logging.getLogger("campaign_credits.ledger")


class LedgerLogger:
    """
    Structured operation log for the credit ledger.

    Every committed ledger entry and every rejected operation is written as
    line-delimited JSON to `file_path` (for log aggregators) and to the
    `campaign_credits.ledger` logger. This is an observability mirror only:
    the ledger of record lives in the DB and is written inside the business
    transaction, so failures here never fail the operation.
    """

    def __init__(self, file_path: Optional[Path] = None) -> None:
        self._file_path = file_path
        if self._file_path is not None:
            self._file_path.parent.mkdir(parents=True, exist_ok=True)

    def log_entries(
        self,
        operation: str,
        entries: Iterable[LedgerEntry],
        correlation_id: Optional[str] = None,
    ) -> None:
        for entry in entries:
            self._log(
                "transaction",
                account_id=entry.account_id,
                message=operation,
                details=entry.model_dump(mode="json"),
                correlation_id=correlation_id or entry.correlation_id,
            )

    def log_event(
        self,
        message: str,
        details: dict[str, Any],
        account_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> None:
        self._log(
            "system",
            account_id=account_id,
            message=message,
            details=details,
            correlation_id=correlation_id,
        )

    def log_error(
        self,
        message: str,
        details: dict[str, Any],
        account_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> None:
        self._log(
            "error",
            account_id=account_id,
            message=message,
            details=details,
            correlation_id=correlation_id,
        )

    def _log(
        self,
        event_type: str,
        account_id: Optional[str],
        message: str,
        details: dict[str, Any],
        correlation_id: Optional[str],
    ) -> None:
        record = {
            "event_type": event_type,
            "account_id": account_id,
            "message": message,
            "details": details,
            "correlation_id": correlation_id,
            "created_at": utcnow(),
        }
        level = logging.WARNING if event_type == "error" else logging.INFO
        logger.log(level, "%s: %s", message, details, extra={"account_id": account_id})

        if self._file_path is None:
            return
        try:
            line = json.dumps(record, default=_json_default)
            with self._file_path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError as exc:
            logger.warning("Could not write ledger log line to %s: %s", self._file_path, exc)


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)
