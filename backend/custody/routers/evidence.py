"""
Evidence Custody - Evidence Router
Upload, listing, retrieval, custody transfer and integrity checks.
"""
from datetime import datetime
from typing import List, Optional
import logging

from fastapi import APIRouter, Depends, File, Form, UploadFile, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..database import get_db
from ..dependencies import get_request_context
from ..models.db_models import ForensicStatus, WorkflowStatus
from ..services.collaborators import Collaborators, get_collaborators
from ..services.evidence.workflow import WorkflowEngine
from ..services.security.access_control import RequestContext

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/evidence", tags=["evidence"])


# =============================================================================
# PYDANTIC MODELS
# =============================================================================

class EvidenceResponse(BaseModel):
    evidence_id: str
    case_id: str
    case_number: str
    content_hash: str
    file_name: str
    mime_type: Optional[str] = None
    category: Optional[str] = None
    file_size: int
    description: Optional[str] = None
    tags: List[str] = []

    uploaded_by: str
    current_owner: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    address: Optional[str] = None

    storage_ref: Optional[str] = None
    anchor_ref: Optional[str] = None

    status: WorkflowStatus
    verified_by: Optional[str] = None
    verified_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    court_submitted_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None

    forensic_status: ForensicStatus
    forensic_assignee: Optional[str] = None
    forensic_findings: Optional[str] = None
    forensic_completed_at: Optional[datetime] = None

    is_tampered: bool
    verification_count: int
    last_verified_at: Optional[datetime] = None
    visible_to: List[str] = []
    created_at: Optional[datetime] = None


class TransferRequest(BaseModel):
    to_operator_id: str
    reason: Optional[str] = None


class IntegrityCheckResponse(BaseModel):
    evidence_id: str
    intact: bool
    recorded_hash: str
    computed_hash: str
    is_tampered: bool
    verification_count: int
    last_verified_at: Optional[datetime] = None


def evidence_response(evidence) -> EvidenceResponse:
    return EvidenceResponse(
        evidence_id=evidence.evidence_id,
        case_id=evidence.case_id,
        case_number=evidence.case_number,
        content_hash=evidence.content_hash,
        file_name=evidence.file_name,
        mime_type=evidence.mime_type,
        category=evidence.category,
        file_size=evidence.file_size,
        description=evidence.description,
        tags=evidence.tags or [],
        uploaded_by=evidence.uploaded_by,
        current_owner=evidence.current_owner,
        latitude=evidence.latitude,
        longitude=evidence.longitude,
        address=evidence.address,
        storage_ref=evidence.storage_ref,
        anchor_ref=evidence.anchor_ref,
        status=evidence.status,
        verified_by=evidence.verified_by,
        verified_at=evidence.verified_at,
        approved_by=evidence.approved_by,
        approved_at=evidence.approved_at,
        rejected_by=evidence.rejected_by,
        rejected_at=evidence.rejected_at,
        rejection_reason=evidence.rejection_reason,
        court_submitted_at=evidence.court_submitted_at,
        closed_at=evidence.closed_at,
        forensic_status=evidence.forensic_status,
        forensic_assignee=evidence.forensic_assignee,
        forensic_findings=evidence.forensic_findings,
        forensic_completed_at=evidence.forensic_completed_at,
        is_tampered=evidence.is_tampered,
        verification_count=evidence.verification_count,
        last_verified_at=evidence.last_verified_at,
        visible_to=evidence.visible_to or [],
        created_at=evidence.created_at,
    )


def _parse_tags(tags: Optional[str]) -> List[str]:
    if not tags:
        return []
    return [t.strip() for t in tags.split(",") if t.strip()]


# =============================================================================
# API ENDPOINTS
# =============================================================================

@router.post("/upload", response_model=EvidenceResponse, status_code=status.HTTP_201_CREATED)
def upload_evidence(
    case_id: str = Form(...),
    file: UploadFile = File(...),
    description: Optional[str] = Form(None),
    tags: Optional[str] = Form(None),
    device_id: Optional[str] = Form(None),
    latitude: Optional[float] = Form(None),
    longitude: Optional[float] = Form(None),
    address: Optional[str] = Form(None),
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
    collaborators: Collaborators = Depends(get_collaborators),
):
    """
    Upload an evidence file to the session's case.

    The content hash is computed server-side; identical content already on
    record is rejected as a duplicate.
    """
    data = file.file.read()
    evidence = WorkflowEngine(db, collaborators).upload(
        context,
        case_id,
        data,
        file.filename or "evidence.bin",
        mime_type=file.content_type,
        description=description,
        tags=_parse_tags(tags),
        device_id=device_id,
        latitude=latitude,
        longitude=longitude,
        address=address,
    )
    return evidence_response(evidence)


@router.get("/case/{case_id}", response_model=List[EvidenceResponse])
async def list_case_evidence(
    case_id: str,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
    collaborators: Collaborators = Depends(get_collaborators),
):
    """Evidence in a case that the caller's role may see."""
    items = WorkflowEngine(db, collaborators).list_case_evidence(context, case_id)
    return [evidence_response(e) for e in items]


@router.get("/{evidence_id}", response_model=EvidenceResponse)
async def get_evidence(
    evidence_id: str,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
    collaborators: Collaborators = Depends(get_collaborators),
):
    evidence = WorkflowEngine(db, collaborators).view(context, evidence_id)
    return evidence_response(evidence)


@router.post("/{evidence_id}/transfer", response_model=EvidenceResponse)
def transfer_custody(
    evidence_id: str,
    body: TransferRequest,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
    collaborators: Collaborators = Depends(get_collaborators),
):
    """Hand custody to another operator with access to the case."""
    evidence = WorkflowEngine(db, collaborators).transfer(context, evidence_id, body.to_operator_id, body.reason)
    return evidence_response(evidence)


@router.post("/{evidence_id}/integrity-check", response_model=IntegrityCheckResponse)
async def integrity_check(
    evidence_id: str,
    file: UploadFile = File(...),
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
    collaborators: Collaborators = Depends(get_collaborators),
):
    """Compare a copy of the artifact against the recorded content hash."""
    data = await file.read()
    result = WorkflowEngine(db, collaborators).integrity_check(context, evidence_id, data)
    return IntegrityCheckResponse(**result)
