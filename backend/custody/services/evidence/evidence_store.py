"""
Evidence Store

Persistence for evidence records. Workflow fields are only changed
through compare_and_swap(), which succeeds for exactly one writer of a
given revision.
"""
import hashlib
import secrets
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from ...models.db_models import EvidenceDB, WorkflowStatus


def content_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def generate_evidence_id(now: datetime) -> str:
    millis = int(now.replace(tzinfo=timezone.utc).timestamp() * 1000)
    return f"EV-{millis}-{secrets.token_hex(4)}"


class EvidenceStore:

    def __init__(self, db: Session):
        self.db = db

    def get(self, evidence_id: str) -> Optional[EvidenceDB]:
        return self.db.query(EvidenceDB).filter(EvidenceDB.evidence_id == evidence_id).first()

    def get_by_hash(self, digest: str) -> Optional[EvidenceDB]:
        return self.db.query(EvidenceDB).filter(EvidenceDB.content_hash == digest).first()

    def list_for_case(self, case_id: str, statuses: Optional[List[WorkflowStatus]] = None) -> List[EvidenceDB]:
        q = self.db.query(EvidenceDB).filter(EvidenceDB.case_id == case_id)
        if statuses:
            q = q.filter(EvidenceDB.status.in_(statuses))
        return q.order_by(EvidenceDB.created_at.desc()).all()

    def count_for_case(self, case_id: str) -> int:
        return self.db.query(func.count(EvidenceDB.evidence_id)).filter(EvidenceDB.case_id == case_id).scalar()

    def add(self, evidence: EvidenceDB) -> EvidenceDB:
        self.db.add(evidence)
        self.db.flush()
        return evidence

    def compare_and_swap(self, evidence: EvidenceDB, **values) -> bool:
        """
        Apply `values` only if the row still has the status and revision
        this request read. Returns False when another writer got there first.
        """
        stmt = (
            update(EvidenceDB)
            .where(
                EvidenceDB.evidence_id == evidence.evidence_id,
                EvidenceDB.status == evidence.status,
                EvidenceDB.revision == evidence.revision,
            )
            .values(revision=EvidenceDB.revision + 1, **values)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1

    def record_verification(self, evidence_id: str, tampered: bool, now: datetime) -> None:
        """Count an integrity check. The tamper flag is set on mismatch and never cleared."""
        values = {
            "verification_count": EvidenceDB.verification_count + 1,
            "last_verified_at": now,
        }
        if tampered:
            values["is_tampered"] = True
        self.db.execute(
            update(EvidenceDB)
            .where(EvidenceDB.evidence_id == evidence_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    def refresh(self, evidence: EvidenceDB) -> EvidenceDB:
        self.db.refresh(evidence)
        return evidence
