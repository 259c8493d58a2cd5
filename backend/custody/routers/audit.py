"""
Evidence Custody - Audit Router
Ledger queries, per-evidence chain of custody and the court-facing report.
Read-only: the ledger has no update or delete endpoints.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..database import get_db
from ..dependencies import get_request_context
from ..errors import NotFound
from ..models.db_models import AuditAction, AuditOutcome, Role
from ..services.collaborators import Collaborators, get_collaborators
from ..services.evidence.workflow import WorkflowEngine
from ..services.ledger.audit_ledger import AuditLedger
from ..services.ledger.custody_report import CustodyReportBuilder
from ..services.security.access_control import AccessController, RequestContext

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/audit", tags=["audit"])

CUSTODY_REPORT_ROLES = [Role.ADMIN, Role.POLICE, Role.FORENSIC_EXPERT, Role.COURT_OFFICIAL]


# =============================================================================
# PYDANTIC MODELS
# =============================================================================

class AuditEntryResponse(BaseModel):
    position: int
    entry_id: str
    timestamp: datetime
    evidence_id: Optional[str] = None
    case_id: Optional[str] = None
    action: AuditAction
    outcome: AuditOutcome
    actor_id: Optional[str] = None
    actor_role: Optional[str] = None
    from_actor: Optional[str] = None
    to_actor: Optional[str] = None
    detail: Optional[str] = None
    origin: Optional[str] = None
    anchor_ref: Optional[str] = None
    entry_hash: str


class AuditStatsResponse(BaseModel):
    total: int
    by_action: Dict[str, int]
    recent: List[AuditEntryResponse]


class EntryVerificationResponse(BaseModel):
    position: int
    valid: bool


def entry_response(entry) -> AuditEntryResponse:
    return AuditEntryResponse(
        position=entry.position,
        entry_id=entry.entry_id,
        timestamp=entry.timestamp,
        evidence_id=entry.evidence_id,
        case_id=entry.case_id,
        action=entry.action,
        outcome=entry.outcome,
        actor_id=entry.actor_id,
        actor_role=entry.actor_role,
        from_actor=entry.from_actor,
        to_actor=entry.to_actor,
        detail=entry.detail,
        origin=entry.origin,
        anchor_ref=entry.anchor_ref,
        entry_hash=entry.entry_hash,
    )


# =============================================================================
# API ENDPOINTS
# =============================================================================

@router.get("", response_model=List[AuditEntryResponse])
async def query_audit(
    evidence_id: Optional[str] = None,
    case_id: Optional[str] = None,
    actor_id: Optional[str] = None,
    action: Optional[AuditAction] = None,
    outcome: Optional[AuditOutcome] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    limit: int = Query(100, ge=1, le=1000),
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
):
    """Filter the ledger (admin only). Newest entries first."""
    AccessController(db).require_role(context, [Role.ADMIN], "audit.query")
    entries = AuditLedger(db).query(
        evidence_id=evidence_id,
        case_id=case_id,
        actor_id=actor_id,
        action=action,
        outcome=outcome,
        since=since,
        until=until,
        limit=limit,
    )
    return [entry_response(e) for e in entries]


@router.get("/stats", response_model=AuditStatsResponse)
async def audit_stats(
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
):
    AccessController(db).require_role(context, [Role.ADMIN], "audit.stats")
    stats = AuditLedger(db).stats()
    return AuditStatsResponse(
        total=stats["total"],
        by_action=stats["by_action"],
        recent=[entry_response(e) for e in stats["recent"]],
    )


@router.get("/evidence/{evidence_id}", response_model=List[AuditEntryResponse])
async def evidence_history(
    evidence_id: str,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
    collaborators: Collaborators = Depends(get_collaborators),
):
    """Full chain of custody for one item, oldest first."""
    WorkflowEngine(db, collaborators).load_visible(context, evidence_id, "audit.evidence")
    return [entry_response(e) for e in AuditLedger(db).timeline(evidence_id)]


@router.get("/report/{evidence_id}")
async def custody_report(
    evidence_id: str,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
    collaborators: Collaborators = Depends(get_collaborators),
) -> Dict[str, Any]:
    """Court-facing custody report built from ledger entries and current snapshots."""
    engine = WorkflowEngine(db, collaborators)
    engine.access.require_role(context, CUSTODY_REPORT_ROLES, "audit.report")
    engine.load_visible(context, evidence_id, "audit.report")
    return CustodyReportBuilder(db).build(evidence_id)


@router.get("/entries/{position}/verify", response_model=EntryVerificationResponse)
async def verify_entry(
    position: int,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
):
    """Recompute an entry's hash to detect edits made outside the application."""
    AccessController(db).require_role(context, [Role.ADMIN], "audit.verify")
    ledger = AuditLedger(db)
    entry = ledger.get(position)
    if entry is None:
        raise NotFound("Audit entry not found")
    return EntryVerificationResponse(position=position, valid=ledger.verify_entry(entry))
