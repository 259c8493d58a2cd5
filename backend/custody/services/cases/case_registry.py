"""
Case Registry

Investigation containers: creation, operator assignment, status changes
and the per-case timeline. Case identifiers are generated, never
operator-supplied. Closed and archived cases are inactive; the only way
out of them is an explicit admin reopen.
"""
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional, Any
from uuid import uuid4

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from ...clock import utcnow
from ...database import commit_or_raise
from ...errors import CaseInactive, CaseNotFound, InvalidRequest, InvalidState
from ...models.db_models import (
    CaseDB, CaseAssignmentDB, CaseTimelineDB, CaseStatus, EvidenceDB, OperatorDB,
    AccessLevel, AuditAction, Role,
)
from ..ledger.audit_ledger import AuditLedger
from ..security.access_control import AccessController, RequestContext
from ..security.credential_store import CredentialStore

logger = logging.getLogger(__name__)

INACTIVE_STATUSES = (CaseStatus.CLOSED, CaseStatus.ARCHIVED)


def generate_case_id() -> str:
    return f"CASE-{uuid4()}"


class CaseRegistry:

    def __init__(self, db: Session, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock
        self.ledger = AuditLedger(db, clock)
        self.access = AccessController(db, self.ledger)
        self.store = CredentialStore(db, clock)

    # =========================================================================
    # RECORD ACCESS (no authorization; used by other services)
    # =========================================================================

    def get_case_record(self, case_id: str) -> Optional[CaseDB]:
        return self.db.query(CaseDB).filter(CaseDB.case_id == case_id).first()

    def require_active(self, case_id: str) -> CaseDB:
        case = self.get_case_record(case_id)
        if case is None:
            raise CaseNotFound()
        if not case.is_active:
            raise CaseInactive()
        return case

    def append_timeline(self, case_id: str, action: str, actor_id: Optional[str], detail: str = "") -> CaseTimelineDB:
        entry = CaseTimelineDB(
            case_id=case_id,
            action=action,
            actor_id=actor_id,
            detail=detail,
            timestamp=self.clock(),
        )
        self.db.add(entry)
        return entry

    def reconcile_evidence_count(self, case_id: str) -> None:
        """Recount the case's evidence population; the cache never decreases."""
        population = (
            self.db.query(func.count(EvidenceDB.evidence_id))
            .filter(EvidenceDB.case_id == case_id)
            .scalar_subquery()
        )
        self.db.execute(
            update(CaseDB)
            .where(CaseDB.case_id == case_id, CaseDB.evidence_count < population)
            .values(evidence_count=population, updated_at=self.clock())
            .execution_options(synchronize_session=False)
        )

    # =========================================================================
    # ADMIN OPERATIONS
    # =========================================================================

    def create_case(
        self,
        context: RequestContext,
        case_number: str,
        name: str,
        description: Optional[str] = None,
        priority: str = "medium",
        jurisdiction: Optional[str] = None,
        category: Optional[str] = None,
    ) -> CaseDB:
        self.access.require_role(context, [Role.ADMIN], "cases.create")

        if self.db.query(CaseDB).filter(CaseDB.case_number == case_number).first() is not None:
            raise InvalidRequest(f"Case number {case_number} already exists")

        now = self.clock()
        case = CaseDB(
            case_id=generate_case_id(),
            case_number=case_number,
            name=name,
            description=description,
            status=CaseStatus.ACTIVE,
            priority=priority,
            jurisdiction=jurisdiction,
            category=category,
            created_by=context.operator.id,
            evidence_count=0,
            created_at=now,
            updated_at=now,
        )
        self.db.add(case)
        self.db.flush()
        self.append_timeline(case.case_id, "case_created", context.operator.id, f"Case {case_number} created")
        self.ledger.record(
            AuditAction.CASE_CREATED,
            actor=context.operator,
            case_id=case.case_id,
            detail=f"case_number={case_number}",
            origin=context.origin,
        )
        commit_or_raise(self.db)
        logger.info("Case %s (%s) created by %s", case.case_id, case_number, context.operator.id)
        return case

    def assign_operator(
        self,
        context: RequestContext,
        case_id: str,
        operator_id: str,
        access_level: AccessLevel = AccessLevel.READ,
    ) -> CaseAssignmentDB:
        """Grant an operator access to a case and record the assignment."""
        self.access.require_role(context, [Role.ADMIN], "cases.assign", case_id=case_id)
        case = self.get_case_record(case_id)
        if case is None:
            raise CaseNotFound()
        if not case.is_active:
            raise CaseInactive()
        if access_level == AccessLevel.NONE:
            raise InvalidRequest("Access level must be read, write or admin")

        operator = self.store.get_operator(operator_id)
        if operator is None:
            raise InvalidRequest("Operator not found")
        if self.store.get_grant(operator_id, case_id) is not None:
            raise InvalidRequest("Operator is already assigned to this case")

        now = self.clock()
        self.store.add_grant(operator_id, case_id, access_level, context.operator.id)
        assignment = CaseAssignmentDB(
            case_id=case_id,
            operator_id=operator_id,
            role=operator.role,
            assigned_at=now,
        )
        self.db.add(assignment)
        self.append_timeline(
            case_id, "operator_assigned", context.operator.id,
            f"{operator.username} ({operator.role.value}) assigned with {access_level.value} access",
        )
        self.ledger.record(
            AuditAction.OPERATOR_ASSIGNED,
            actor=context.operator,
            case_id=case_id,
            to_actor=operator_id,
            detail=f"access_level={access_level.value}",
            origin=context.origin,
        )
        case.updated_at = now
        commit_or_raise(self.db)
        return assignment

    def update_status(self, context: RequestContext, case_id: str, new_status: CaseStatus, reason: str = "") -> CaseDB:
        """
        Change a case's status.

        Closed and archived are terminal; only an admin reopen (back to
        active) leaves them.
        """
        self.access.require_role(context, [Role.ADMIN], "cases.status", case_id=case_id)
        case = self.get_case_record(case_id)
        if case is None:
            raise CaseNotFound()

        old_status = case.status
        if old_status == new_status:
            raise InvalidState(f"Case is already {new_status.value}")

        reopening = old_status in INACTIVE_STATUSES
        if reopening and new_status != CaseStatus.ACTIVE:
            raise InvalidState("A closed or archived case can only be reopened as active")

        case.status = new_status
        case.updated_at = self.clock()
        action = AuditAction.CASE_REOPENED if reopening else AuditAction.CASE_STATUS_CHANGED
        detail = f"{old_status.value} -> {new_status.value}"
        if reason:
            detail = f"{detail}: {reason}"
        self.append_timeline(case_id, "status_changed", context.operator.id, detail)
        self.ledger.record(action, actor=context.operator, case_id=case_id, detail=detail, origin=context.origin)
        commit_or_raise(self.db)
        logger.info("Case %s status %s", case_id, detail)
        return case

    # =========================================================================
    # READS
    # =========================================================================

    def get_case(self, context: RequestContext, case_id: str) -> CaseDB:
        self.access.require_case(context, case_id, AccessLevel.READ, "cases.get")
        case = self.get_case_record(case_id)
        if case is None:
            raise CaseNotFound()
        self.ledger.record(AuditAction.VIEW, actor=context.operator, case_id=case_id, detail="case", origin=context.origin)
        commit_or_raise(self.db)
        return case

    def my_cases(self, context: RequestContext) -> List[Dict[str, Any]]:
        """Cases visible to the operator with their access level. Admin sees all active cases."""
        operator = context.operator
        if operator.role == Role.ADMIN:
            cases = (
                self.db.query(CaseDB)
                .filter(CaseDB.status.in_([CaseStatus.ACTIVE, CaseStatus.PENDING]))
                .order_by(CaseDB.created_at.desc())
                .all()
            )
            return [{"case": c, "access_level": AccessLevel.ADMIN} for c in cases]

        result = []
        for grant in self.store.grants_for(operator.id):
            case = self.get_case_record(grant.case_id)
            if case is not None:
                result.append({"case": case, "access_level": grant.access_level})
        return result

    def case_operators(self, context: RequestContext, case_id: str) -> List[Dict[str, Any]]:
        self.access.require_case(context, case_id, AccessLevel.READ, "cases.operators")
        rows = (
            self.db.query(CaseAssignmentDB, OperatorDB)
            .join(OperatorDB, OperatorDB.id == CaseAssignmentDB.operator_id)
            .filter(CaseAssignmentDB.case_id == case_id)
            .order_by(CaseAssignmentDB.assigned_at)
            .all()
        )
        operators = []
        for assignment, operator in rows:
            grant = self.store.get_grant(operator.id, case_id)
            operators.append({
                "operator_id": operator.id,
                "username": operator.username,
                "full_name": operator.full_name,
                "role": operator.role,
                "access_level": grant.access_level if grant else AccessLevel.NONE,
                "assigned_at": assignment.assigned_at,
            })
        return operators

    def case_timeline(self, context: RequestContext, case_id: str) -> List[CaseTimelineDB]:
        self.access.require_case(context, case_id, AccessLevel.READ, "cases.timeline")
        return (
            self.db.query(CaseTimelineDB)
            .filter(CaseTimelineDB.case_id == case_id)
            .order_by(CaseTimelineDB.id)
            .all()
        )
