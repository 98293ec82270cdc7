from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol


class AuditSink(Protocol):
    """
    Receives one record per committed admin mutation.

    Called only after the storage transaction has committed; a failure here
    is logged by the caller and never undoes the mutation.
    """

    async def record(
        self,
        actor: Optional[str],
        action: str,
        entity_id: str,
        before: Dict[str, Any],
        after: Dict[str, Any],
        reason: Optional[str],
    ) -> None: ...


class NotificationSink(Protocol):
    async def notify(self, recipient_id: str, event: str, payload: Dict[str, Any]) -> None: ...


@dataclass
class AuditRecord:
    actor: Optional[str]
    action: str
    entity_id: str
    before: Dict[str, Any]
    after: Dict[str, Any]
    reason: Optional[str]


@dataclass
class InMemoryAuditSink:
    """Keeps audit records in a list; used for tests and local development."""

    records: List[AuditRecord] = field(default_factory=list)

    async def record(
        self,
        actor: Optional[str],
        action: str,
        entity_id: str,
        before: Dict[str, Any],
        after: Dict[str, Any],
        reason: Optional[str],
    ) -> None:
        self.records.append(AuditRecord(actor, action, entity_id, before, after, reason))

    def actions(self) -> List[str]:
        return [r.action for r in self.records]

