"""
Access Controller

Pure authorization predicates plus enforcing wrappers.

Every denial writes an unauthorized-access audit entry (with the attempted
action path and the operator's actual role) and commits it before the
error is raised. Denials never reveal whether the target exists.
"""
import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from ...database import commit_or_raise
from ...errors import Forbidden, NoCaseAccess
from ...models.db_models import (
    OperatorDB, EvidenceDB, AccessLevel, AuditAction, AuditOutcome, Role,
)
from ..ledger.audit_ledger import AuditLedger
from .credential_store import CredentialStore

logger = logging.getLogger(__name__)


@dataclass
class RequestContext:
    """An authenticated request: who, for which case, from where."""
    operator: OperatorDB
    case_id: str
    session_id: Optional[str] = None
    origin: Optional[str] = None
    user_agent: Optional[str] = None

    @property
    def role(self) -> Role:
        return self.operator.role


class AccessController:

    def __init__(self, db: Session, ledger: Optional[AuditLedger] = None):
        self.db = db
        self.store = CredentialStore(db)
        self.ledger = ledger or AuditLedger(db)

    # =========================================================================
    # PREDICATES
    # =========================================================================

    def access_level(self, operator: OperatorDB, case_id: str) -> AccessLevel:
        """admin role => ADMIN; otherwise the granted level, or NONE."""
        if operator.role == Role.ADMIN:
            return AccessLevel.ADMIN
        grant = self.store.get_grant(operator.id, case_id)
        return grant.access_level if grant is not None else AccessLevel.NONE

    def can_access_case(self, operator: OperatorDB, case_id: str) -> bool:
        return self.access_level(operator, case_id) != AccessLevel.NONE

    @staticmethod
    def role_can_view(operator: OperatorDB, evidence: EvidenceDB) -> bool:
        """Role-specific visibility rule, independent of case grants."""
        role = operator.role
        if role == Role.ADMIN:
            return True
        if role == Role.POLICE:
            return True
        if role == Role.CITIZEN:
            return evidence.uploaded_by == operator.id
        if role == Role.FORENSIC_EXPERT:
            return evidence.forensic_assignee == operator.id
        if role == Role.COURT_OFFICIAL:
            return Role.COURT_OFFICIAL.value in (evidence.visible_to or [])
        return False

    def can_view_evidence(self, operator: OperatorDB, evidence: EvidenceDB) -> bool:
        """Case access and the role rule must both hold."""
        return self.can_access_case(operator, evidence.case_id) and self.role_can_view(operator, evidence)

    # =========================================================================
    # ENFORCEMENT
    # =========================================================================

    def deny(
        self,
        context: RequestContext,
        action: AuditAction,
        action_path: str,
        case_id: Optional[str] = None,
        evidence_id: Optional[str] = None,
        reason: str = "",
    ) -> None:
        """Durably record an unauthorized-access attempt."""
        detail = f"path={action_path} role={context.role.value}"
        if reason:
            detail = f"{detail} reason={reason}"
        self.ledger.record(
            action,
            outcome=AuditOutcome.DENIED,
            actor=context.operator,
            case_id=case_id,
            evidence_id=evidence_id,
            detail=detail,
            origin=context.origin,
        )
        commit_or_raise(self.db)

    def require_case(
        self,
        context: RequestContext,
        case_id: str,
        min_level: AccessLevel = AccessLevel.READ,
        action_path: str = "",
        evidence_id: Optional[str] = None,
    ) -> AccessLevel:
        """
        Gate a case-scoped action.

        The session must be bound to this case and the operator must hold at
        least `min_level` on it.
        """
        if context.case_id != case_id:
            self.deny(context, AuditAction.UNAUTHORIZED_CASE_ACCESS, action_path,
                      case_id=case_id, evidence_id=evidence_id, reason="session_case_mismatch")
            raise NoCaseAccess()

        level = self.access_level(context.operator, case_id)
        if level == AccessLevel.NONE:
            self.deny(context, AuditAction.UNAUTHORIZED_CASE_ACCESS, action_path,
                      case_id=case_id, evidence_id=evidence_id, reason="no_grant")
            raise NoCaseAccess()

        if not level.satisfies(min_level):
            self.deny(context, AuditAction.UNAUTHORIZED_ROLE_ACCESS, action_path,
                      case_id=case_id, evidence_id=evidence_id,
                      reason=f"level={level.value} required={min_level.value}")
            raise Forbidden()
        return level

    def require_level(
        self,
        context: RequestContext,
        case_id: str,
        min_level: AccessLevel,
        action_path: str = "",
    ) -> AccessLevel:
        return self.require_case(context, case_id, min_level, action_path)

    def require_role(
        self,
        context: RequestContext,
        roles: Iterable[Role],
        action_path: str = "",
        case_id: Optional[str] = None,
        evidence_id: Optional[str] = None,
    ) -> None:
        allowed = set(roles)
        if context.role not in allowed:
            self.deny(context, AuditAction.UNAUTHORIZED_ROLE_ACCESS, action_path,
                      case_id=case_id, evidence_id=evidence_id,
                      reason="allowed=" + ",".join(sorted(r.value for r in allowed)))
            raise Forbidden()

    def require_evidence_visible(
        self,
        context: RequestContext,
        evidence: EvidenceDB,
        action_path: str = "",
    ) -> None:
        if not self.role_can_view(context.operator, evidence):
            self.deny(context, AuditAction.UNAUTHORIZED_ROLE_ACCESS, action_path,
                      case_id=evidence.case_id, evidence_id=evidence.evidence_id,
                      reason="not_visible_to_role")
            raise Forbidden()
