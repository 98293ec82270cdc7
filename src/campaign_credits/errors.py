from __future__ import annotations

from typing import Optional


class CreditLedgerError(Exception):
    """Base class for every error raised by the credit ledger core."""


class NotFound(CreditLedgerError):
    def __init__(self, entity: str, entity_id: Optional[str]) -> None:
        super().__init__(f"{entity} not found: {entity_id}")
        self.entity = entity
        self.entity_id = entity_id


class InvalidArgument(CreditLedgerError, ValueError):
    pass


class InsufficientBalance(CreditLedgerError, ValueError):
    """
    Raised when an amount exceeds the funds it would be taken from
    (account available credits or a campaign's remaining credits).
    """

    def __init__(self, message: str, requested: int, available: int) -> None:
        super().__init__(message)
        self.requested = requested
        self.available = available


class InvalidState(CreditLedgerError):
    pass


class TransientStorageError(CreditLedgerError):
    """
    Storage transaction failed (deadlock, write conflict, timeout).

    Nothing was applied; the caller may retry the whole operation.
    """
