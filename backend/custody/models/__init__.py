"""Evidence Custody - Data Models"""
from .db_models import (
    # Enums
    Role, AccessLevel, KycStatus, CaseStatus, WorkflowStatus, ForensicStatus,
    AuditAction, AuditOutcome, TERMINAL_STATUSES, ROLE_CAPABILITIES,
    # Tables
    OperatorDB, CaseAccessGrantDB, OperatorSessionDB, LoginAttemptDB,
    CaseDB, CaseAssignmentDB, CaseTimelineDB, EvidenceDB, AuditEntryDB,
    ImmutableRecordError,
)

__all__ = [
    "Role", "AccessLevel", "KycStatus", "CaseStatus", "WorkflowStatus", "ForensicStatus",
    "AuditAction", "AuditOutcome", "TERMINAL_STATUSES", "ROLE_CAPABILITIES",
    "OperatorDB", "CaseAccessGrantDB", "OperatorSessionDB", "LoginAttemptDB",
    "CaseDB", "CaseAssignmentDB", "CaseTimelineDB", "EvidenceDB", "AuditEntryDB",
    "ImmutableRecordError",
]
