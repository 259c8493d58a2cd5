"""
Evidence Custody - Workflow Router
Verification, forensic assignment, approval, court submission and closure.
"""
from typing import Dict, List, Optional
import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..database import get_db
from ..dependencies import get_request_context
from ..services.collaborators import Collaborators, get_collaborators
from ..services.evidence.workflow import WorkflowEngine
from ..services.security.access_control import RequestContext
from .evidence import EvidenceResponse, evidence_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/workflow", tags=["workflow"])


# =============================================================================
# PYDANTIC MODELS
# =============================================================================

class DecisionRequest(BaseModel):
    """Accept or reject. A reason is required when rejecting."""
    accept: bool = True
    reason: Optional[str] = None


class AssignForensicRequest(BaseModel):
    assignee_id: str


class SubmitAnalysisRequest(BaseModel):
    findings: str
    report: Optional[str] = None


class CloseRequest(BaseModel):
    reason: Optional[str] = None


class WorkflowStatsResponse(BaseModel):
    case_id: str
    total: int
    by_status: Dict[str, int]
    tampered: int


def _engine(db: Session, collaborators: Collaborators) -> WorkflowEngine:
    return WorkflowEngine(db, collaborators)


# =============================================================================
# TRANSITIONS
# =============================================================================

@router.post("/{evidence_id}/verify", response_model=EvidenceResponse)
def verify_evidence(
    evidence_id: str,
    body: DecisionRequest,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
    collaborators: Collaborators = Depends(get_collaborators),
):
    """Police verification: accept moves to pending approval, reject is terminal."""
    evidence = _engine(db, collaborators).verify(context, evidence_id, body.accept, body.reason)
    return evidence_response(evidence)


@router.post("/{evidence_id}/assign-forensic", response_model=EvidenceResponse)
def assign_forensic(
    evidence_id: str,
    body: AssignForensicRequest,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
    collaborators: Collaborators = Depends(get_collaborators),
):
    evidence = _engine(db, collaborators).assign_forensic(context, evidence_id, body.assignee_id)
    return evidence_response(evidence)


@router.post("/{evidence_id}/submit-analysis", response_model=EvidenceResponse)
def submit_analysis(
    evidence_id: str,
    body: SubmitAnalysisRequest,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
    collaborators: Collaborators = Depends(get_collaborators),
):
    evidence = _engine(db, collaborators).submit_analysis(context, evidence_id, body.findings, body.report)
    return evidence_response(evidence)


@router.post("/{evidence_id}/approve", response_model=EvidenceResponse)
def approve_evidence(
    evidence_id: str,
    body: DecisionRequest,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
    collaborators: Collaborators = Depends(get_collaborators),
):
    """Admin approval: accept exposes the item to court officials, reject is terminal."""
    evidence = _engine(db, collaborators).approve(context, evidence_id, body.accept, body.reason)
    return evidence_response(evidence)


@router.post("/{evidence_id}/court-submit", response_model=EvidenceResponse)
def court_submit(
    evidence_id: str,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
    collaborators: Collaborators = Depends(get_collaborators),
):
    evidence = _engine(db, collaborators).court_submit(context, evidence_id)
    return evidence_response(evidence)


@router.post("/{evidence_id}/close", response_model=EvidenceResponse)
def close_evidence(
    evidence_id: str,
    body: CloseRequest,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
    collaborators: Collaborators = Depends(get_collaborators),
):
    evidence = _engine(db, collaborators).close(context, evidence_id, body.reason)
    return evidence_response(evidence)


# =============================================================================
# QUEUES AND STATS
# =============================================================================

@router.get("/pending-verification", response_model=List[EvidenceResponse])
async def pending_verification(
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
    collaborators: Collaborators = Depends(get_collaborators),
):
    return [evidence_response(e) for e in _engine(db, collaborators).pending_verification(context)]


@router.get("/pending-approval", response_model=List[EvidenceResponse])
async def pending_approval(
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
    collaborators: Collaborators = Depends(get_collaborators),
):
    return [evidence_response(e) for e in _engine(db, collaborators).pending_approval(context)]


@router.get("/my-assignments", response_model=List[EvidenceResponse])
async def my_assignments(
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
    collaborators: Collaborators = Depends(get_collaborators),
):
    return [evidence_response(e) for e in _engine(db, collaborators).my_assignments(context)]


@router.get("/stats", response_model=WorkflowStatsResponse)
async def workflow_stats(
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
    collaborators: Collaborators = Depends(get_collaborators),
):
    """Evidence counts by status in the session's case, scoped to what the caller can see."""
    return WorkflowStatsResponse(**_engine(db, collaborators).stats(context))
