"""
Operator administration: KYC review, activation and lockout release.
Admin-only; every change is audited.
"""
import logging
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from ...clock import utcnow
from ...database import commit_or_raise
from ...errors import InvalidRequest, NotFound
from ...models.db_models import OperatorDB, KycStatus, Role, AuditAction
from ..ledger.audit_ledger import AuditLedger
from .access_control import AccessController, RequestContext
from .credential_store import CredentialStore

logger = logging.getLogger(__name__)


class OperatorAdministration:

    def __init__(self, db: Session, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock
        self.ledger = AuditLedger(db, clock)
        self.access = AccessController(db, self.ledger)
        self.store = CredentialStore(db, clock)

    def _target(self, operator_id: str) -> OperatorDB:
        operator = self.store.get_operator(operator_id)
        if operator is None:
            raise NotFound("Operator not found")
        return operator

    def list_operators(
        self,
        context: RequestContext,
        role: Optional[Role] = None,
        kyc_status: Optional[KycStatus] = None,
    ) -> List[OperatorDB]:
        self.access.require_role(context, [Role.ADMIN], "admin.operators.list")
        q = self.db.query(OperatorDB)
        if role is not None:
            q = q.filter(OperatorDB.role == role)
        if kyc_status is not None:
            q = q.filter(OperatorDB.kyc_status == kyc_status)
        return q.order_by(OperatorDB.created_at.desc()).all()

    def verify_kyc(self, context: RequestContext, operator_id: str, approved: bool, reason: Optional[str] = None) -> OperatorDB:
        self.access.require_role(context, [Role.ADMIN], "admin.operators.kyc")
        operator = self._target(operator_id)
        if not approved and not reason:
            raise InvalidRequest("A rejection reason is required")

        operator.kyc_status = KycStatus.VERIFIED if approved else KycStatus.REJECTED
        operator.kyc_verified_by = context.operator.id
        operator.kyc_verified_at = self.clock()
        operator.kyc_rejection_reason = None if approved else reason
        self.ledger.record(
            AuditAction.KYC_VERIFIED if approved else AuditAction.KYC_REJECTED,
            actor=context.operator,
            to_actor=operator.id,
            detail=reason or "",
            origin=context.origin,
        )
        commit_or_raise(self.db)
        logger.info("KYC for %s %s by %s", operator.username, operator.kyc_status.value, context.operator.id)
        return operator

    def set_active(self, context: RequestContext, operator_id: str, active: bool) -> OperatorDB:
        """Activate or block an operator. Blocking is terminal for login and revokes live sessions."""
        self.access.require_role(context, [Role.ADMIN], "admin.operators.activate")
        operator = self._target(operator_id)
        if operator.id == context.operator.id and not active:
            raise InvalidRequest("Administrators cannot deactivate themselves")

        operator.is_active = active
        revoked = 0 if active else self.store.revoke_all_sessions(operator.id)
        self.ledger.record(
            AuditAction.OPERATOR_ACTIVATED if active else AuditAction.OPERATOR_DEACTIVATED,
            actor=context.operator,
            to_actor=operator.id,
            detail="" if active else f"sessions_revoked={revoked}",
            origin=context.origin,
        )
        commit_or_raise(self.db)
        return operator

    def unlock(self, context: RequestContext, operator_id: str) -> OperatorDB:
        self.access.require_role(context, [Role.ADMIN], "admin.operators.unlock")
        operator = self._target(operator_id)
        self.store.reset_failed_logins(operator.id)
        self.ledger.record(
            AuditAction.OPERATOR_UNLOCKED,
            actor=context.operator,
            to_actor=operator.id,
            origin=context.origin,
        )
        commit_or_raise(self.db)
        return self.store.refresh(operator)
