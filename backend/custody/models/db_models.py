"""
Evidence Custody - SQLAlchemy ORM Models
Canonical operator, case, evidence and audit records.
"""
from enum import Enum

from sqlalchemy import (
    Column, String, Integer, Float, DateTime, Text, JSON, ForeignKey, Boolean,
    Enum as SQLEnum, UniqueConstraint, event,
)
from sqlalchemy.orm import relationship

from ..clock import utcnow
from ..database import Base


# =============================================================================
# ENUMS
# =============================================================================

class Role(str, Enum):
    """System-wide operator roles."""
    CITIZEN = "citizen"
    POLICE = "police"
    FORENSIC_EXPERT = "forensic_expert"
    COURT_OFFICIAL = "court_official"
    ADMIN = "admin"


class AccessLevel(str, Enum):
    """Per-case access level. Totally ordered: none < read < write < admin."""
    NONE = "none"
    READ = "read"
    WRITE = "write"
    ADMIN = "admin"

    @property
    def rank(self) -> int:
        return ACCESS_LEVEL_RANK[self]

    def satisfies(self, minimum: "AccessLevel") -> bool:
        return self.rank >= minimum.rank


ACCESS_LEVEL_RANK = {
    AccessLevel.NONE: 0,
    AccessLevel.READ: 1,
    AccessLevel.WRITE: 2,
    AccessLevel.ADMIN: 3,
}


class KycStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


class CaseStatus(str, Enum):
    ACTIVE = "active"
    PENDING = "pending"
    CLOSED = "closed"
    ARCHIVED = "archived"


class WorkflowStatus(str, Enum):
    """Position of an evidence item in the approval workflow."""
    UPLOADED = "uploaded"
    PENDING_VERIFICATION = "pending_verification"
    VERIFIED = "verified"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    COURT_SUBMITTED = "court_submitted"
    REJECTED = "rejected"
    CLOSED = "closed"


TERMINAL_STATUSES = frozenset({
    WorkflowStatus.REJECTED,
    WorkflowStatus.CLOSED,
    WorkflowStatus.COURT_SUBMITTED,
})


class ForensicStatus(str, Enum):
    NOT_ASSIGNED = "not_assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class AuditAction(str, Enum):
    """Fixed audit vocabulary. Extend by adding members, never by free text."""
    # Evidence custody
    UPLOAD = "upload"
    VIEW = "view"
    VERIFY = "verify"
    REJECT = "reject"
    ASSIGN = "assign"
    SUBMIT_ANALYSIS = "submit_analysis"
    APPROVE = "approve"
    COURT_SUBMIT = "court_submit"
    CLOSE = "close"
    TRANSFER = "transfer"
    INTEGRITY_CHECK = "integrity_check"
    # Authentication
    LOGIN_STEP1_SUCCESS = "login_step1_success"
    LOGIN_FAILED = "login_failed"
    OTP_FAILED = "otp_failed"
    OTP_RESENT = "otp_resent"
    LOGIN_SUCCESS = "login_success"
    LOGOUT = "logout"
    PASSWORD_CHANGED = "password_changed"
    # Intrusion signals
    UNAUTHORIZED_CASE_ACCESS = "unauthorized_case_access"
    UNAUTHORIZED_ROLE_ACCESS = "unauthorized_role_access"
    # Operator administration
    OPERATOR_REGISTERED = "operator_registered"
    KYC_VERIFIED = "kyc_verified"
    KYC_REJECTED = "kyc_rejected"
    OPERATOR_ACTIVATED = "operator_activated"
    OPERATOR_DEACTIVATED = "operator_deactivated"
    OPERATOR_UNLOCKED = "operator_unlocked"
    # Cases
    CASE_CREATED = "case_created"
    CASE_STATUS_CHANGED = "case_status_changed"
    CASE_REOPENED = "case_reopened"
    OPERATOR_ASSIGNED = "operator_assigned"


class AuditOutcome(str, Enum):
    SUCCESS = "success"
    DENIED = "denied"
    FAILED = "failed"


# Default capability set per role
ROLE_CAPABILITIES = {
    Role.CITIZEN: {"can_upload": True, "can_view": True},
    Role.POLICE: {"can_view": True, "can_verify": True, "can_transfer": True, "can_assign_forensic": True},
    Role.FORENSIC_EXPERT: {"can_view": True, "can_verify": True},
    Role.COURT_OFFICIAL: {"can_view": True},
    Role.ADMIN: {"can_view": True, "can_approve": True, "can_transfer": True, "can_manage_users": True},
}


# =============================================================================
# OPERATORS AND SECURITY STATE
# =============================================================================

class OperatorDB(Base):
    """Operator identity, KYC record and login security state."""
    __tablename__ = "operators"

    id = Column(String(36), primary_key=True)  # UUID
    username = Column(String(100), unique=True, nullable=False, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    phone = Column(String(20), unique=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    role = Column(SQLEnum(Role), nullable=False)
    is_active = Column(Boolean, nullable=False, default=False)

    # Profile (used by custody reports)
    full_name = Column(String(255), nullable=True)
    department = Column(String(255), nullable=True)
    badge_number = Column(String(50), nullable=True)

    # KYC
    kyc_status = Column(SQLEnum(KycStatus), nullable=False, default=KycStatus.PENDING)
    kyc_document_type = Column(String(50), nullable=True)
    kyc_document_ref = Column(String(255), nullable=True)
    kyc_verified_by = Column(String(36), nullable=True)
    kyc_verified_at = Column(DateTime, nullable=True)
    kyc_rejection_reason = Column(Text, nullable=True)

    # Lockout
    failed_login_count = Column(Integer, nullable=False, default=0)
    last_failed_login_at = Column(DateTime, nullable=True)
    locked_until = Column(DateTime, nullable=True)

    # Pending one-time code (stored as a keyed digest, never in clear)
    otp_code_hash = Column(String(64), nullable=True)
    otp_case_id = Column(String(64), nullable=True)
    otp_expires_at = Column(DateTime, nullable=True)
    otp_attempts = Column(Integer, nullable=False, default=0)
    otp_last_sent_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    last_login_at = Column(DateTime, nullable=True)
    last_login_case_id = Column(String(64), nullable=True)

    grants = relationship("CaseAccessGrantDB", back_populates="operator", order_by="CaseAccessGrantDB.granted_at")
    sessions = relationship("OperatorSessionDB", back_populates="operator")

    @property
    def capabilities(self) -> dict:
        return dict(ROLE_CAPABILITIES.get(self.role, {}))

    @property
    def display_name(self) -> str:
        return self.full_name or self.username


class CaseAccessGrantDB(Base):
    """Per-case access grant. Admin role does not need one."""
    __tablename__ = "case_access_grants"
    __table_args__ = (UniqueConstraint("operator_id", "case_id", name="uq_grant_operator_case"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    operator_id = Column(String(36), ForeignKey("operators.id", ondelete="CASCADE"), nullable=False, index=True)
    case_id = Column(String(64), ForeignKey("cases.case_id", ondelete="CASCADE"), nullable=False, index=True)
    access_level = Column(SQLEnum(AccessLevel), nullable=False)
    granted_at = Column(DateTime, default=utcnow)
    granted_by = Column(String(36), nullable=True)

    operator = relationship("OperatorDB", back_populates="grants")


class OperatorSessionDB(Base):
    """Server-side session record. A signed credential is only honoured while this row is live."""
    __tablename__ = "operator_sessions"

    id = Column(String(36), primary_key=True)  # UUID, carried as the `sid` claim
    operator_id = Column(String(36), ForeignKey("operators.id", ondelete="CASCADE"), nullable=False, index=True)
    case_id = Column(String(64), nullable=False)
    origin = Column(String(64), nullable=True)
    user_agent = Column(String(255), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    revoked_at = Column(DateTime, nullable=True)

    operator = relationship("OperatorDB", back_populates="sessions")


class LoginAttemptDB(Base):
    """Per-origin login attempts inside the rate-limit window."""
    __tablename__ = "login_attempts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    origin = Column(String(64), nullable=False, index=True)
    attempted_at = Column(DateTime, nullable=False, default=utcnow, index=True)


# =============================================================================
# CASES
# =============================================================================

class CaseDB(Base):
    """Investigation container scoping evidence and access grants."""
    __tablename__ = "cases"

    case_id = Column(String(64), primary_key=True)  # CASE-<uuid>
    case_number = Column(String(100), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    status = Column(SQLEnum(CaseStatus), nullable=False, default=CaseStatus.ACTIVE)
    priority = Column(String(20), nullable=True, default="medium")
    jurisdiction = Column(String(255), nullable=True)
    category = Column(String(100), nullable=True)
    created_by = Column(String(36), nullable=True)
    evidence_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow)

    assignments = relationship("CaseAssignmentDB", back_populates="case", order_by="CaseAssignmentDB.assigned_at")
    timeline = relationship("CaseTimelineDB", back_populates="case", order_by="CaseTimelineDB.id")

    @property
    def is_active(self) -> bool:
        return self.status in (CaseStatus.ACTIVE, CaseStatus.PENDING)


class CaseAssignmentDB(Base):
    __tablename__ = "case_assignments"
    __table_args__ = (UniqueConstraint("case_id", "operator_id", name="uq_assignment_case_operator"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    case_id = Column(String(64), ForeignKey("cases.case_id", ondelete="CASCADE"), nullable=False, index=True)
    operator_id = Column(String(36), ForeignKey("operators.id", ondelete="CASCADE"), nullable=False)
    role = Column(SQLEnum(Role), nullable=False)
    assigned_at = Column(DateTime, default=utcnow)

    case = relationship("CaseDB", back_populates="assignments")


class CaseTimelineDB(Base):
    """
    Per-case narrative.
    Append-only - distinct from, but feeding, the audit ledger.
    """
    __tablename__ = "case_timeline"

    id = Column(Integer, primary_key=True, autoincrement=True)
    case_id = Column(String(64), ForeignKey("cases.case_id", ondelete="CASCADE"), nullable=False, index=True)
    action = Column(String(50), nullable=False)
    actor_id = Column(String(36), nullable=True)
    detail = Column(Text, nullable=True)
    timestamp = Column(DateTime, nullable=False, default=utcnow)

    case = relationship("CaseDB", back_populates="timeline")


# =============================================================================
# EVIDENCE
# =============================================================================

class EvidenceDB(Base):
    """
    One content-hashed artifact.

    status, forensic_status and visible_to are only written by the
    workflow engine through compare-and-swap updates keyed on `revision`.
    """
    __tablename__ = "evidence"

    evidence_id = Column(String(64), primary_key=True)  # EV-<timestamp>-<hex>
    content_hash = Column(String(64), unique=True, nullable=False, index=True)
    case_id = Column(String(64), ForeignKey("cases.case_id"), nullable=False, index=True)
    case_number = Column(String(100), nullable=False)

    # Descriptive
    file_name = Column(String(500), nullable=False)
    mime_type = Column(String(255), nullable=True)
    category = Column(String(50), nullable=True)
    file_size = Column(Integer, nullable=False, default=0)
    description = Column(Text, nullable=True)
    tags = Column(JSON, nullable=True, default=list)

    # Provenance
    uploaded_by = Column(String(36), ForeignKey("operators.id"), nullable=False, index=True)
    current_owner = Column(String(36), ForeignKey("operators.id"), nullable=False)
    device_info = Column(JSON, nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    address = Column(String(500), nullable=True)

    # External references (advisory only)
    storage_ref = Column(String(255), nullable=True)
    anchor_ref = Column(String(255), nullable=True)

    # Workflow
    status = Column(SQLEnum(WorkflowStatus), nullable=False, default=WorkflowStatus.UPLOADED, index=True)
    revision = Column(Integer, nullable=False, default=0)
    verified_by = Column(String(36), nullable=True)
    verified_at = Column(DateTime, nullable=True)
    approved_by = Column(String(36), nullable=True)
    approved_at = Column(DateTime, nullable=True)
    rejected_by = Column(String(36), nullable=True)
    rejected_at = Column(DateTime, nullable=True)
    rejection_reason = Column(Text, nullable=True)
    court_submitted_by = Column(String(36), nullable=True)
    court_submitted_at = Column(DateTime, nullable=True)
    closed_by = Column(String(36), nullable=True)
    closed_at = Column(DateTime, nullable=True)

    # Forensic analysis
    forensic_status = Column(SQLEnum(ForensicStatus), nullable=False, default=ForensicStatus.NOT_ASSIGNED)
    forensic_assignee = Column(String(36), nullable=True, index=True)
    forensic_assigned_at = Column(DateTime, nullable=True)
    forensic_findings = Column(Text, nullable=True)
    forensic_report = Column(Text, nullable=True)
    forensic_completed_at = Column(DateTime, nullable=True)

    # Integrity
    is_tampered = Column(Boolean, nullable=False, default=False)
    verification_count = Column(Integer, nullable=False, default=0)
    last_verified_at = Column(DateTime, nullable=True)

    # Roles currently permitted to view; only ever grows
    visible_to = Column(JSON, nullable=False, default=list)

    created_at = Column(DateTime, default=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


# =============================================================================
# AUDIT LEDGER
# =============================================================================

class AuditEntryDB(Base):
    """
    Immutable chain-of-custody entry.
    Append-only - rows are never updated or deleted.
    """
    __tablename__ = "audit_entries"

    position = Column(Integer, primary_key=True, autoincrement=True)
    entry_id = Column(String(36), unique=True, nullable=False)
    timestamp = Column(DateTime, nullable=False, default=utcnow, index=True)

    # Subject (references only, never denormalized copies)
    evidence_id = Column(String(64), nullable=True, index=True)
    case_id = Column(String(64), nullable=True, index=True)

    action = Column(SQLEnum(AuditAction), nullable=False, index=True)
    outcome = Column(SQLEnum(AuditOutcome), nullable=False, default=AuditOutcome.SUCCESS)

    actor_id = Column(String(36), nullable=True, index=True)
    actor_role = Column(String(50), nullable=True)
    from_actor = Column(String(36), nullable=True)
    to_actor = Column(String(36), nullable=True)

    detail = Column(Text, nullable=True)
    origin = Column(String(64), nullable=True)
    anchor_ref = Column(String(255), nullable=True)

    entry_hash = Column(String(64), nullable=False)


class ImmutableRecordError(Exception):
    """Raised when code attempts to modify an append-only record."""


@event.listens_for(AuditEntryDB, "before_update")
def _reject_audit_update(mapper, connection, target):
    raise ImmutableRecordError("Audit entries cannot be modified")


@event.listens_for(AuditEntryDB, "before_delete")
def _reject_audit_delete(mapper, connection, target):
    raise ImmutableRecordError("Audit entries cannot be deleted")


@event.listens_for(CaseTimelineDB, "before_update")
def _reject_timeline_update(mapper, connection, target):
    raise ImmutableRecordError("Case timeline entries cannot be modified")
