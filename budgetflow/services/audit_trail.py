"""
Audit Trail Service

Per-document timeline of every decision:
- Who approved, rejected or asked for information, and when
- Cancellations, closures and modifications with their reasons
- Ledger warnings raised while the document moved the budget

Events are written in the same transaction as the change they describe.
Events carrying an idempotency key are recorded once; replays return the
original event.
"""

import logging
import sqlite3
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from budgetflow.core.database import BudgetflowDB, get_db

logger = logging.getLogger(__name__)


class AuditEventType(Enum):
    """Types of timeline events."""
    # Lifecycle
    CREATED = "created"
    SUBMITTED = "submitted"
    MODIFIED = "modified"
    CLOSED = "closed"
    REOPENED = "reopened"
    CANCELLED = "cancelled"

    # Approval chain
    AUTO_APPROVED = "auto_approved"
    STEP_APPROVED = "step_approved"
    STEPS_SKIPPED = "steps_skipped"
    APPROVED = "approved"
    REJECTED = "rejected"
    INFO_REQUESTED = "info_requested"

    # Money
    POSTED = "posted"
    PAID = "paid"
    OVERDUE = "overdue"
    OVERSPEND_WARNING = "overspend_warning"
    LEDGER_UNDERFLOW = "ledger_underflow"


@dataclass
class AuditEvent:
    """A single event on a document's timeline."""
    event_id: str
    document_id: str
    event_type: AuditEventType
    timestamp: str
    actor_id: Optional[str]
    summary: str
    actor_name: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    # Set when record() hit an existing idempotency key
    replayed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "document_id": self.document_id,
            "event_type": self.event_type.value,
            "timestamp": self.timestamp,
            "actor_id": self.actor_id,
            "actor_name": self.actor_name,
            "summary": self.summary,
            "details": self.details,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "AuditEvent":
        return cls(
            event_id=row["id"],
            document_id=row["document_id"],
            event_type=AuditEventType(row["event_type"]),
            timestamp=row.get("ts") or "",
            actor_id=row.get("actor_id"),
            actor_name=row.get("actor_name"),
            summary=row.get("summary") or "",
            details=row.get("payload") or {},
            replayed=bool(row.get("replayed")),
        )


@dataclass
class DocumentTimeline:
    """All events for one document, oldest first."""
    document_id: str
    events: List[AuditEvent]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "document_id": self.document_id,
            "events": [e.to_dict() for e in self.events],
            "event_count": len(self.events),
        }


class AuditTrailService:
    """
    Records and reads document timelines.

    Usage:
        audit = AuditTrailService()
        with db.transaction() as conn:
            audit.record(conn, po, AuditEventType.REJECTED, "Rejected: over budget",
                         actor_id="u1", idempotency_key=f"reject:{po.document_id}:u1")
    """

    def __init__(self, db: Optional[BudgetflowDB] = None):
        self.db = db or get_db()

    def record(
        self,
        conn: Optional[sqlite3.Connection],
        document,
        event_type: AuditEventType,
        summary: str,
        actor_id: Optional[str] = None,
        actor_name: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> AuditEvent:
        row = self.db.append_audit_event(
            {
                "project_id": document.project_id,
                "document_id": document.document_id,
                "document_kind": document.kind.value,
                "event_type": event_type.value,
                "actor_id": actor_id,
                "actor_name": actor_name,
                "summary": summary,
                "payload": details or {},
                "idempotency_key": idempotency_key,
            },
            conn=conn,
        )
        event = AuditEvent.from_row(row)
        if event.replayed:
            logger.debug("Audit replay ignored: [%s] %s (%s)", document.document_id, event_type.value, idempotency_key)
        else:
            logger.info("Audit: [%s] %s: %s", document.document_id, event_type.value, summary)
        return event

    def get_timeline(self, document_id: str) -> DocumentTimeline:
        rows = self.db.list_audit_events(document_id)
        return DocumentTimeline(
            document_id=document_id,
            events=[AuditEvent.from_row(row) for row in rows],
        )

    def count_events(self, document_id: str, event_type: AuditEventType) -> int:
        return sum(1 for e in self.get_timeline(document_id).events if e.event_type is event_type)
