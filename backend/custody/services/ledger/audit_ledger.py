"""
Audit Ledger

Append-only chain-of-custody log.

Every authentication step, authorization denial and workflow transition
writes exactly one entry, in the same transaction as the state change it
describes, before the response is returned. There is no update or delete
path: the ORM rejects both at flush time.
"""
import hashlib
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional, Any
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy.orm import Session

from ...clock import utcnow
from ...models.db_models import AuditEntryDB, AuditAction, AuditOutcome, OperatorDB

logger = logging.getLogger(__name__)

HASHED_FIELDS = (
    "entry_id", "timestamp", "evidence_id", "case_id", "action", "outcome",
    "actor_id", "actor_role", "from_actor", "to_actor", "detail", "origin", "anchor_ref",
)


def compute_entry_hash(entry: AuditEntryDB) -> str:
    """SHA-256 over the canonical field values of an entry."""
    parts = []
    for name in HASHED_FIELDS:
        value = getattr(entry, name)
        if isinstance(value, datetime):
            value = value.isoformat()
        elif hasattr(value, "value"):
            value = value.value
        parts.append("" if value is None else str(value))
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()


class AuditLedger:
    """
    Writer and reader for AuditEntryDB rows.

    record() only adds and flushes; the caller commits as part of its own
    unit of work so the entry and the mutation it describes land together.
    """

    def __init__(self, db: Session, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock

    # =========================================================================
    # WRITE
    # =========================================================================

    def record(
        self,
        action: AuditAction,
        outcome: AuditOutcome = AuditOutcome.SUCCESS,
        actor: Optional[OperatorDB] = None,
        actor_id: Optional[str] = None,
        evidence_id: Optional[str] = None,
        case_id: Optional[str] = None,
        from_actor: Optional[str] = None,
        to_actor: Optional[str] = None,
        detail: Optional[str] = None,
        origin: Optional[str] = None,
        anchor_ref: Optional[str] = None,
    ) -> AuditEntryDB:
        """Append one entry and return it with its ledger position assigned."""
        entry = AuditEntryDB(
            entry_id=str(uuid4()),
            timestamp=self.clock(),
            evidence_id=evidence_id,
            case_id=case_id,
            action=action,
            outcome=outcome,
            actor_id=actor.id if actor is not None else actor_id,
            actor_role=actor.role.value if actor is not None else None,
            from_actor=from_actor,
            to_actor=to_actor,
            detail=detail,
            origin=origin,
            anchor_ref=anchor_ref,
        )
        entry.entry_hash = compute_entry_hash(entry)
        self.db.add(entry)
        self.db.flush()

        log = logger.info if outcome == AuditOutcome.SUCCESS else logger.warning
        log(
            "audit #%s %s/%s actor=%s case=%s evidence=%s %s",
            entry.position, action.value, outcome.value, entry.actor_id,
            case_id, evidence_id, detail or "",
        )
        return entry

    # =========================================================================
    # READ
    # =========================================================================

    def query(
        self,
        evidence_id: Optional[str] = None,
        case_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
        outcome: Optional[AuditOutcome] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: Optional[int] = 100,
        ascending: bool = False,
    ) -> List[AuditEntryDB]:
        """Entries matching all given filters, newest first unless ascending."""
        q = self.db.query(AuditEntryDB)
        if evidence_id is not None:
            q = q.filter(AuditEntryDB.evidence_id == evidence_id)
        if case_id is not None:
            q = q.filter(AuditEntryDB.case_id == case_id)
        if actor_id is not None:
            q = q.filter(AuditEntryDB.actor_id == actor_id)
        if action is not None:
            q = q.filter(AuditEntryDB.action == action)
        if outcome is not None:
            q = q.filter(AuditEntryDB.outcome == outcome)
        if since is not None:
            q = q.filter(AuditEntryDB.timestamp >= since)
        if until is not None:
            q = q.filter(AuditEntryDB.timestamp <= until)

        order = AuditEntryDB.position.asc() if ascending else AuditEntryDB.position.desc()
        q = q.order_by(order)
        if limit is not None:
            q = q.limit(limit)
        return q.all()

    def timeline(self, evidence_id: str) -> List[AuditEntryDB]:
        """Full ordered history of one evidence item, oldest first."""
        return self.query(evidence_id=evidence_id, limit=None, ascending=True)

    def get(self, position: int) -> Optional[AuditEntryDB]:
        return self.db.query(AuditEntryDB).filter(AuditEntryDB.position == position).first()

    def verify_entry(self, entry: AuditEntryDB) -> bool:
        """True if the stored hash still matches the entry's fields."""
        return compute_entry_hash(entry) == entry.entry_hash

    def stats(self, case_id: Optional[str] = None) -> Dict[str, Any]:
        """Totals by action plus the most recent entries."""
        q = self.db.query(AuditEntryDB.action, func.count(AuditEntryDB.position))
        if case_id is not None:
            q = q.filter(AuditEntryDB.case_id == case_id)
        by_action = {action.value: count for action, count in q.group_by(AuditEntryDB.action).all()}
        return {
            "total": sum(by_action.values()),
            "by_action": by_action,
            "recent": self.query(case_id=case_id, limit=10),
        }
