"""
Evidence Workflow Engine

Table-driven state machine for evidence approval.

    uploaded -> pending_approval -> approved -> court_submitted
    uploaded | pending_approval -> rejected
    any non-terminal status -> closed

Transitions are not idempotent: re-applying one fails with InvalidState.
Status changes are compare-and-swap updates, so of two concurrent requests
exactly one succeeds. Visibility only grows. Status, visibility, case
timeline and the audit entry are committed together; notifications are
sent after commit and never affect the outcome.
"""
import logging
from collections import Counter
from datetime import datetime
from typing import Callable, Dict, Any, Iterable, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ...clock import utcnow
from ...database import commit_or_raise
from ...errors import (
    CaseInactive, DuplicateEvidence, Forbidden, InvalidRequest, InvalidState,
    NoCaseAccess, StorageError,
)
from ...models.db_models import (
    EvidenceDB, OperatorDB, AccessLevel, AuditAction, AuditOutcome,
    ForensicStatus, Role, WorkflowStatus, TERMINAL_STATUSES,
)
from ..cases.case_registry import CaseRegistry
from ..collaborators import Collaborators, best_effort, build_collaborators
from ..ledger.audit_ledger import AuditLedger
from ..security.access_control import AccessController, RequestContext
from ..security.credential_store import CredentialStore
from .evidence_store import EvidenceStore, content_hash, generate_evidence_id

logger = logging.getLogger(__name__)

NON_TERMINAL = [s for s in WorkflowStatus if s not in TERMINAL_STATUSES]


# =============================================================================
# TRANSITION TABLE
# =============================================================================
#
# roles:       who may trigger the transition
# from:        statuses the evidence must be in (None = any)
# to:          resulting status (None = status unchanged)
# visibility:  roles added to visible_to
#
# =============================================================================

TRANSITIONS = {
    "verify": {
        "action": AuditAction.VERIFY,
        "roles": [Role.POLICE],
        "from": [WorkflowStatus.UPLOADED, WorkflowStatus.PENDING_VERIFICATION],
        "to": WorkflowStatus.PENDING_APPROVAL,
        "visibility": [Role.POLICE],
    },
    "verify_reject": {
        "action": AuditAction.REJECT,
        "roles": [Role.POLICE],
        "from": [WorkflowStatus.UPLOADED, WorkflowStatus.PENDING_VERIFICATION],
        "to": WorkflowStatus.REJECTED,
        "visibility": [],
    },
    "assign_forensic": {
        "action": AuditAction.ASSIGN,
        "roles": [Role.POLICE],
        "from": NON_TERMINAL,
        "to": None,
        "visibility": [Role.FORENSIC_EXPERT],
    },
    "submit_analysis": {
        "action": AuditAction.SUBMIT_ANALYSIS,
        "roles": [Role.FORENSIC_EXPERT],
        "from": None,
        "to": None,
        "visibility": [],
    },
    "approve": {
        "action": AuditAction.APPROVE,
        "roles": [Role.ADMIN],
        "from": [WorkflowStatus.PENDING_APPROVAL],
        "to": WorkflowStatus.APPROVED,
        "visibility": [Role.COURT_OFFICIAL],
    },
    "approve_reject": {
        "action": AuditAction.REJECT,
        "roles": [Role.ADMIN],
        "from": [WorkflowStatus.PENDING_APPROVAL],
        "to": WorkflowStatus.REJECTED,
        "visibility": [],
    },
    "court_submit": {
        "action": AuditAction.COURT_SUBMIT,
        "roles": [Role.ADMIN],
        "from": [WorkflowStatus.APPROVED],
        "to": WorkflowStatus.COURT_SUBMITTED,
        "visibility": [],
    },
    "close": {
        "action": AuditAction.CLOSE,
        "roles": [Role.ADMIN],
        "from": NON_TERMINAL,
        "to": WorkflowStatus.CLOSED,
        "visibility": [],
    },
    "transfer": {
        "action": AuditAction.TRANSFER,
        "roles": list(Role),
        "from": None,
        "to": None,
        "visibility": [],
    },
}

INITIAL_VISIBILITY = [Role.CITIZEN.value, Role.ADMIN.value]
INTEGRITY_CHECK_ROLES = [Role.POLICE, Role.FORENSIC_EXPERT, Role.ADMIN]


def merge_visibility(current: Optional[Iterable[str]], added: Iterable[Role]) -> List[str]:
    """Union preserving order. Roles are never removed."""
    merged = list(current or [])
    for role in added:
        if role.value not in merged:
            merged.append(role.value)
    return merged


class WorkflowEngine:
    """
    Drives evidence through the approval workflow.

    Core Principles:
    - Guards are checked before any mutation
    - Every guard failure is audited and leaves the evidence untouched
    - A lost compare-and-swap is reported as InvalidState
    """

    def __init__(
        self,
        db: Session,
        collaborators: Optional[Collaborators] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.clock = clock
        self.collaborators = collaborators or build_collaborators()
        self.ledger = AuditLedger(db, clock)
        self.access = AccessController(db, self.ledger)
        self.cases = CaseRegistry(db, clock)
        self.store = EvidenceStore(db)
        self.operators = CredentialStore(db, clock)

    def can_transition(self, name: str, evidence: EvidenceDB) -> bool:
        allowed = TRANSITIONS[name]["from"]
        return allowed is None or evidence.status in allowed

    # =========================================================================
    # GUARDS
    # =========================================================================

    def _audit_failure(
        self,
        context: RequestContext,
        action: AuditAction,
        evidence_id: Optional[str],
        case_id: Optional[str],
        reason: str,
        error,
    ):
        self.ledger.record(
            action,
            outcome=AuditOutcome.FAILED,
            actor=context.operator,
            evidence_id=evidence_id,
            case_id=case_id,
            detail=reason,
            origin=context.origin,
        )
        commit_or_raise(self.db)
        raise error

    def _load(self, context: RequestContext, evidence_id: str, path: str, min_level: AccessLevel) -> EvidenceDB:
        """Fetch evidence through the case gate. Missing and foreign evidence look the same."""
        evidence = self.store.get(evidence_id)
        if evidence is None:
            self.access.deny(context, AuditAction.UNAUTHORIZED_CASE_ACCESS, path,
                             case_id=context.case_id, evidence_id=evidence_id, reason="evidence_unavailable")
            raise NoCaseAccess()
        self.access.require_case(context, evidence.case_id, min_level, path, evidence_id=evidence.evidence_id)
        return evidence

    def _prepare(self, context: RequestContext, evidence_id: str, name: str) -> EvidenceDB:
        """Role, case-write and case-active checks shared by every mutating transition."""
        transition = TRANSITIONS[name]
        path = f"workflow.{name}"
        evidence = self._load(context, evidence_id, path, AccessLevel.READ)
        self.access.require_role(context, transition["roles"], path,
                                 case_id=evidence.case_id, evidence_id=evidence.evidence_id)
        self.access.require_case(context, evidence.case_id, AccessLevel.WRITE, path,
                                 evidence_id=evidence.evidence_id)

        case = self.cases.get_case_record(evidence.case_id)
        if case is None or not case.is_active:
            self._audit_failure(context, transition["action"], evidence.evidence_id, evidence.case_id,
                                f"{name}: case_inactive", CaseInactive())
        if not self.can_transition(name, evidence):
            self._audit_failure(context, transition["action"], evidence.evidence_id, evidence.case_id,
                                f"{name}: invalid_state status={evidence.status.value}",
                                InvalidState(f"Cannot {name.replace('_', ' ')} evidence in status {evidence.status.value}"))
        return evidence

    # =========================================================================
    # TRANSITION EXECUTION
    # =========================================================================

    def _apply(
        self,
        context: RequestContext,
        evidence: EvidenceDB,
        name: str,
        values: Optional[Dict[str, Any]] = None,
        detail: str = "",
        from_actor: Optional[str] = None,
        to_actor: Optional[str] = None,
        timeline_action: Optional[str] = None,
    ) -> EvidenceDB:
        """Compare-and-swap the evidence row and commit it with its timeline and audit entries."""
        transition = TRANSITIONS[name]
        values = dict(values or {})
        previous = evidence.status
        if transition["to"] is not None:
            values["status"] = transition["to"]
        if transition["visibility"]:
            values["visible_to"] = merge_visibility(evidence.visible_to, transition["visibility"])

        evidence_id, case_id = evidence.evidence_id, evidence.case_id
        if not self.store.compare_and_swap(evidence, **values):
            self.db.rollback()
            self._audit_failure(context, transition["action"], evidence_id, case_id,
                                f"{name}: concurrent_modification",
                                InvalidState("Evidence was modified by another request"))

        new_status = transition["to"] or previous
        summary = f"{previous.value} -> {new_status.value}" if transition["to"] else previous.value
        if detail:
            summary = f"{summary}: {detail}"
        self.cases.append_timeline(case_id, timeline_action or name, context.operator.id,
                                   f"{evidence_id} {summary}")
        self.ledger.record(
            transition["action"],
            actor=context.operator,
            evidence_id=evidence_id,
            case_id=case_id,
            from_actor=from_actor,
            to_actor=to_actor,
            detail=summary,
            origin=context.origin,
        )
        commit_or_raise(self.db)
        logger.info("Evidence %s %s by %s (%s)", evidence_id, name, context.operator.id, summary)
        return self.store.refresh(evidence)

    def _notify(self, recipients: Iterable[OperatorDB], message: str) -> None:
        for operator in recipients:
            best_effort("notifier", self.collaborators.notifier.send, operator.email, message, fallback=False)

    # =========================================================================
    # UPLOAD
    # =========================================================================

    def upload(
        self,
        context: RequestContext,
        case_id: str,
        data: bytes,
        file_name: str,
        mime_type: Optional[str] = None,
        description: Optional[str] = None,
        tags: Optional[List[str]] = None,
        device_id: Optional[str] = None,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        address: Optional[str] = None,
    ) -> EvidenceDB:
        path = "evidence.upload"
        self.access.require_case(context, case_id, AccessLevel.READ, path)
        self.access.require_role(context, [Role.CITIZEN], path, case_id=case_id)
        self.access.require_case(context, case_id, AccessLevel.WRITE, path)

        case = self.cases.get_case_record(case_id)
        if case is None or not case.is_active:
            self._audit_failure(context, AuditAction.UPLOAD, None, case_id, "upload: case_inactive", CaseInactive())
        if not data:
            raise InvalidRequest("Evidence file is empty")

        digest = content_hash(data)
        existing = self.store.get_by_hash(digest)
        if existing is not None:
            self._audit_failure(context, AuditAction.UPLOAD, None, case_id,
                                f"upload: duplicate_content hash={digest}", DuplicateEvidence())

        now = self.clock()
        evidence_id = generate_evidence_id(now)
        case_number = case.case_number

        # Advisory collaborators run before the write and never block it
        category = best_effort("classifier", self.collaborators.classifier.classify,
                               file_name, mime_type, fallback="Other")
        storage_ref = best_effort("storage", self.collaborators.storage.publish, data, file_name)
        anchor_ref = best_effort("anchor", self.collaborators.anchor.anchor, evidence_id, digest, case_number)

        evidence = EvidenceDB(
            evidence_id=evidence_id,
            content_hash=digest,
            case_id=case_id,
            case_number=case_number,
            file_name=file_name,
            mime_type=mime_type,
            category=category,
            file_size=len(data),
            description=description,
            tags=list(tags or []),
            uploaded_by=context.operator.id,
            current_owner=context.operator.id,
            device_info={
                "origin": context.origin,
                "user_agent": context.user_agent,
                "device_id": device_id,
            },
            latitude=latitude,
            longitude=longitude,
            address=address,
            storage_ref=storage_ref,
            anchor_ref=anchor_ref,
            status=WorkflowStatus.UPLOADED,
            revision=0,
            forensic_status=ForensicStatus.NOT_ASSIGNED,
            is_tampered=False,
            verification_count=0,
            visible_to=list(INITIAL_VISIBILITY),
            created_at=now,
        )

        try:
            self.store.add(evidence)
            self.cases.reconcile_evidence_count(case_id)
            self.cases.append_timeline(case_id, "evidence_uploaded", context.operator.id,
                                       f"{evidence_id} {file_name}")
            self.ledger.record(
                AuditAction.UPLOAD,
                actor=context.operator,
                evidence_id=evidence_id,
                case_id=case_id,
                detail=f"file={file_name} size={len(data)} hash={digest}",
                origin=context.origin,
                anchor_ref=anchor_ref,
            )
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            if self.store.get_by_hash(digest) is not None:
                self._audit_failure(context, AuditAction.UPLOAD, None, case_id,
                                    f"upload: duplicate_content hash={digest}", DuplicateEvidence())
            logger.error("Evidence insert failed: %s", exc)
            raise StorageError() from exc
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error("Evidence insert failed: %s", exc)
            raise StorageError() from exc

        logger.info("Evidence %s uploaded to case %s by %s", evidence_id, case_id, context.operator.id)
        return self.store.refresh(evidence)

    # =========================================================================
    # VERIFICATION
    # =========================================================================

    def verify(self, context: RequestContext, evidence_id: str, accept: bool = True,
               reason: Optional[str] = None) -> EvidenceDB:
        name = "verify" if accept else "verify_reject"
        if not accept and not reason:
            raise InvalidRequest("A rejection reason is required")
        evidence = self._prepare(context, evidence_id, name)
        now = self.clock()

        if accept:
            # verified is recorded en route to pending_approval
            evidence = self._apply(context, evidence, name, {
                "verified_by": context.operator.id,
                "verified_at": now,
            }, detail="verified", timeline_action="status_changed")
            admins = self.operators.active_operators(Role.ADMIN)
            self._notify(admins, f"Evidence {evidence.evidence_id} verified and awaiting approval")
        else:
            evidence = self._apply(context, evidence, name, {
                "rejected_by": context.operator.id,
                "rejected_at": now,
                "rejection_reason": reason,
            }, detail=reason, timeline_action="status_changed")
            self._notify(self._operators(evidence.uploaded_by),
                         f"Evidence {evidence.evidence_id} was rejected: {reason}")
        return evidence

    # =========================================================================
    # FORENSIC ANALYSIS
    # =========================================================================

    def assign_forensic(self, context: RequestContext, evidence_id: str, assignee_id: str) -> EvidenceDB:
        name = "assign_forensic"
        evidence = self._prepare(context, evidence_id, name)
        action = TRANSITIONS[name]["action"]

        if evidence.forensic_status != ForensicStatus.NOT_ASSIGNED:
            self._audit_failure(context, action, evidence.evidence_id, evidence.case_id,
                                f"{name}: invalid_state forensic_status={evidence.forensic_status.value}",
                                InvalidState("Evidence already has a forensic assignment"))

        assignee = self.operators.get_operator(assignee_id)
        if (assignee is None or assignee.role != Role.FORENSIC_EXPERT or not assignee.is_active
                or not self.access.can_access_case(assignee, evidence.case_id)):
            self._audit_failure(context, action, evidence.evidence_id, evidence.case_id,
                                f"{name}: invalid_assignee {assignee_id}",
                                InvalidRequest("Assignee must be an active forensic expert with access to this case"))

        evidence = self._apply(context, evidence, name, {
            "forensic_status": ForensicStatus.IN_PROGRESS,
            "forensic_assignee": assignee.id,
            "forensic_assigned_at": self.clock(),
        }, detail=f"assigned to {assignee.username}", to_actor=assignee.id)
        self._notify([assignee], f"Evidence {evidence.evidence_id} has been assigned to you for analysis")
        return evidence

    def submit_analysis(self, context: RequestContext, evidence_id: str, findings: str,
                        report: Optional[str] = None) -> EvidenceDB:
        name = "submit_analysis"
        evidence = self._prepare(context, evidence_id, name)
        action = TRANSITIONS[name]["action"]

        if evidence.forensic_assignee != context.operator.id:
            self.access.deny(context, AuditAction.UNAUTHORIZED_ROLE_ACCESS, f"workflow.{name}",
                             case_id=evidence.case_id, evidence_id=evidence.evidence_id, reason="not_assignee")
            raise Forbidden("Only the assigned forensic expert can submit analysis")
        if evidence.forensic_status != ForensicStatus.IN_PROGRESS:
            self._audit_failure(context, action, evidence.evidence_id, evidence.case_id,
                                f"{name}: invalid_state forensic_status={evidence.forensic_status.value}",
                                InvalidState("Analysis is not in progress"))

        evidence = self._apply(context, evidence, name, {
            "forensic_status": ForensicStatus.COMPLETED,
            "forensic_findings": findings,
            "forensic_report": report,
            "forensic_completed_at": self.clock(),
        }, detail="analysis completed")
        police = self.operators.active_operators(Role.POLICE, case_id=evidence.case_id)
        self._notify(police, f"Forensic analysis completed for evidence {evidence.evidence_id}")
        return evidence

    # =========================================================================
    # APPROVAL AND TERMINAL TRANSITIONS
    # =========================================================================

    def approve(self, context: RequestContext, evidence_id: str, accept: bool = True,
                reason: Optional[str] = None) -> EvidenceDB:
        name = "approve" if accept else "approve_reject"
        if not accept and not reason:
            raise InvalidRequest("A rejection reason is required")
        evidence = self._prepare(context, evidence_id, name)
        now = self.clock()

        if accept:
            evidence = self._apply(context, evidence, name, {
                "approved_by": context.operator.id,
                "approved_at": now,
            }, timeline_action="status_changed")
            self._notify(self._operators(evidence.uploaded_by),
                         f"Evidence {evidence.evidence_id} has been approved")
        else:
            evidence = self._apply(context, evidence, name, {
                "rejected_by": context.operator.id,
                "rejected_at": now,
                "rejection_reason": reason,
            }, detail=reason, timeline_action="status_changed")
        return evidence

    def court_submit(self, context: RequestContext, evidence_id: str) -> EvidenceDB:
        evidence = self._prepare(context, evidence_id, "court_submit")
        return self._apply(context, evidence, "court_submit", {
            "court_submitted_by": context.operator.id,
            "court_submitted_at": self.clock(),
        }, timeline_action="status_changed")

    def close(self, context: RequestContext, evidence_id: str, reason: Optional[str] = None) -> EvidenceDB:
        evidence = self._prepare(context, evidence_id, "close")
        return self._apply(context, evidence, "close", {
            "closed_by": context.operator.id,
            "closed_at": self.clock(),
        }, detail=reason or "", timeline_action="status_changed")

    # =========================================================================
    # CUSTODY TRANSFER AND INTEGRITY
    # =========================================================================

    def transfer(self, context: RequestContext, evidence_id: str, to_operator_id: str,
                 reason: Optional[str] = None) -> EvidenceDB:
        """Move custody to another operator with access to the case."""
        name = "transfer"
        evidence = self._prepare(context, evidence_id, name)
        action = TRANSITIONS[name]["action"]

        if context.role != Role.ADMIN and evidence.current_owner != context.operator.id:
            self.access.deny(context, AuditAction.UNAUTHORIZED_ROLE_ACCESS, f"workflow.{name}",
                             case_id=evidence.case_id, evidence_id=evidence.evidence_id, reason="not_current_owner")
            raise Forbidden("Only the current custodian or an administrator can transfer custody")

        target = self.operators.get_operator(to_operator_id)
        if (target is None or not target.is_active or target.id == evidence.current_owner
                or not self.access.can_access_case(target, evidence.case_id)):
            self._audit_failure(context, action, evidence.evidence_id, evidence.case_id,
                                f"{name}: invalid_recipient {to_operator_id}",
                                InvalidRequest("Recipient must be another active operator with access to this case"))

        previous_owner = evidence.current_owner
        evidence = self._apply(context, evidence, name, {"current_owner": target.id},
                               detail=reason or f"custody to {target.username}",
                               from_actor=previous_owner, to_actor=target.id)
        self._notify([target], f"Custody of evidence {evidence.evidence_id} has been transferred to you")
        return evidence

    def integrity_check(self, context: RequestContext, evidence_id: str, data: bytes) -> Dict[str, Any]:
        """Recompute the content hash of supplied bytes against the recorded one."""
        path = "evidence.integrity_check"
        evidence = self._load(context, evidence_id, path, AccessLevel.READ)
        self.access.require_role(context, INTEGRITY_CHECK_ROLES, path,
                                 case_id=evidence.case_id, evidence_id=evidence.evidence_id)
        self.access.require_evidence_visible(context, evidence, path)

        digest = content_hash(data)
        intact = digest == evidence.content_hash
        now = self.clock()
        self.store.record_verification(evidence.evidence_id, tampered=not intact, now=now)
        self.ledger.record(
            AuditAction.INTEGRITY_CHECK,
            outcome=AuditOutcome.SUCCESS if intact else AuditOutcome.FAILED,
            actor=context.operator,
            evidence_id=evidence.evidence_id,
            case_id=evidence.case_id,
            detail="intact" if intact else f"tampered computed={digest}",
            origin=context.origin,
        )
        commit_or_raise(self.db)
        if not intact:
            logger.warning("Integrity mismatch on evidence %s", evidence.evidence_id)

        evidence = self.store.refresh(evidence)
        return {
            "evidence_id": evidence.evidence_id,
            "intact": intact,
            "recorded_hash": evidence.content_hash,
            "computed_hash": digest,
            "is_tampered": evidence.is_tampered,
            "verification_count": evidence.verification_count,
            "last_verified_at": evidence.last_verified_at,
        }

    # =========================================================================
    # READS
    # =========================================================================

    def view(self, context: RequestContext, evidence_id: str) -> EvidenceDB:
        path = "evidence.view"
        evidence = self._load(context, evidence_id, path, AccessLevel.READ)
        self.access.require_evidence_visible(context, evidence, path)
        self.ledger.record(
            AuditAction.VIEW,
            actor=context.operator,
            evidence_id=evidence.evidence_id,
            case_id=evidence.case_id,
            origin=context.origin,
        )
        commit_or_raise(self.db)
        return evidence

    def load_visible(self, context: RequestContext, evidence_id: str, path: str) -> EvidenceDB:
        """Case gate plus role visibility, without recording a view."""
        evidence = self._load(context, evidence_id, path, AccessLevel.READ)
        self.access.require_evidence_visible(context, evidence, path)
        return evidence

    def list_case_evidence(self, context: RequestContext, case_id: str) -> List[EvidenceDB]:
        self.access.require_case(context, case_id, AccessLevel.READ, "evidence.list")
        return [e for e in self.store.list_for_case(case_id) if self.access.role_can_view(context.operator, e)]

    def pending_verification(self, context: RequestContext) -> List[EvidenceDB]:
        self.access.require_role(context, [Role.POLICE], "workflow.pending_verification", case_id=context.case_id)
        self.access.require_case(context, context.case_id, AccessLevel.READ, "workflow.pending_verification")
        return self.store.list_for_case(
            context.case_id, [WorkflowStatus.UPLOADED, WorkflowStatus.PENDING_VERIFICATION]
        )

    def pending_approval(self, context: RequestContext) -> List[EvidenceDB]:
        self.access.require_role(context, [Role.ADMIN], "workflow.pending_approval", case_id=context.case_id)
        return self.store.list_for_case(context.case_id, [WorkflowStatus.PENDING_APPROVAL])

    def my_assignments(self, context: RequestContext) -> List[EvidenceDB]:
        self.access.require_role(context, [Role.FORENSIC_EXPERT], "workflow.my_assignments", case_id=context.case_id)
        self.access.require_case(context, context.case_id, AccessLevel.READ, "workflow.my_assignments")
        return [
            e for e in self.store.list_for_case(context.case_id)
            if e.forensic_assignee == context.operator.id
        ]

    def stats(self, context: RequestContext) -> Dict[str, Any]:
        """Evidence counts by status within the session's case, as visible to the caller."""
        visible = self.list_case_evidence(context, context.case_id)
        by_status = Counter(e.status.value for e in visible)
        return {
            "case_id": context.case_id,
            "total": len(visible),
            "by_status": {status.value: by_status.get(status.value, 0) for status in WorkflowStatus},
            "tampered": sum(1 for e in visible if e.is_tampered),
        }

    def _operators(self, *operator_ids: str) -> List[OperatorDB]:
        found = [self.operators.get_operator(op_id) for op_id in operator_ids if op_id]
        return [op for op in found if op is not None]
