"""
Evidence Custody - Cases Router
Case creation, operator assignment, status changes and case reads.
"""
from datetime import datetime
from typing import List, Optional
import logging

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, field_validator
from sqlalchemy.orm import Session

from ..database import get_db
from ..dependencies import get_request_context
from ..models.db_models import AccessLevel, CaseStatus, Role
from ..services.cases.case_registry import CaseRegistry
from ..services.security.access_control import RequestContext

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cases", tags=["cases"])


# =============================================================================
# PYDANTIC MODELS
# =============================================================================

class CreateCaseRequest(BaseModel):
    case_number: str
    name: str
    description: Optional[str] = None
    priority: str = "medium"
    jurisdiction: Optional[str] = None
    category: Optional[str] = None

    @field_validator('priority')
    @classmethod
    def validate_priority(cls, v):
        valid = ['low', 'medium', 'high', 'critical']
        if v.lower() not in valid:
            raise ValueError(f'Invalid priority. Must be one of: {", ".join(valid)}')
        return v.lower()


class AssignOperatorRequest(BaseModel):
    operator_id: str
    access_level: AccessLevel = AccessLevel.READ


class UpdateStatusRequest(BaseModel):
    status: CaseStatus
    reason: Optional[str] = None


class CaseResponse(BaseModel):
    case_id: str
    case_number: str
    name: str
    description: Optional[str] = None
    status: CaseStatus
    is_active: bool
    priority: Optional[str] = None
    jurisdiction: Optional[str] = None
    category: Optional[str] = None
    evidence_count: int
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    access_level: Optional[AccessLevel] = None


class CaseOperatorResponse(BaseModel):
    operator_id: str
    username: str
    full_name: Optional[str] = None
    role: Role
    access_level: AccessLevel
    assigned_at: Optional[datetime] = None


class TimelineEntryResponse(BaseModel):
    action: str
    actor_id: Optional[str] = None
    detail: Optional[str] = None
    timestamp: datetime


def case_response(case, access_level: Optional[AccessLevel] = None) -> CaseResponse:
    return CaseResponse(
        case_id=case.case_id,
        case_number=case.case_number,
        name=case.name,
        description=case.description,
        status=case.status,
        is_active=case.is_active,
        priority=case.priority,
        jurisdiction=case.jurisdiction,
        category=case.category,
        evidence_count=case.evidence_count,
        created_by=case.created_by,
        created_at=case.created_at,
        updated_at=case.updated_at,
        access_level=access_level,
    )


# =============================================================================
# API ENDPOINTS
# =============================================================================

@router.post("", response_model=CaseResponse, status_code=status.HTTP_201_CREATED)
async def create_case(
    body: CreateCaseRequest,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
):
    """Create a case (admin only). The case identifier is generated."""
    case = CaseRegistry(db).create_case(
        context,
        case_number=body.case_number,
        name=body.name,
        description=body.description,
        priority=body.priority,
        jurisdiction=body.jurisdiction,
        category=body.category,
    )
    return case_response(case, AccessLevel.ADMIN)


@router.get("/mine", response_model=List[CaseResponse])
async def my_cases(
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
):
    """Cases the caller holds a grant for (all active cases for admins)."""
    rows = CaseRegistry(db).my_cases(context)
    return [case_response(row["case"], row["access_level"]) for row in rows]


@router.get("/{case_id}", response_model=CaseResponse)
async def get_case(
    case_id: str,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
):
    registry = CaseRegistry(db)
    case = registry.get_case(context, case_id)
    return case_response(case, registry.access.access_level(context.operator, case_id))


@router.post("/{case_id}/operators", response_model=CaseOperatorResponse, status_code=status.HTTP_201_CREATED)
async def assign_operator(
    case_id: str,
    body: AssignOperatorRequest,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
):
    """Grant an operator access to a case (admin only)."""
    registry = CaseRegistry(db)
    assignment = registry.assign_operator(context, case_id, body.operator_id, body.access_level)
    operator = registry.store.get_operator(body.operator_id)
    return CaseOperatorResponse(
        operator_id=operator.id,
        username=operator.username,
        full_name=operator.full_name,
        role=operator.role,
        access_level=body.access_level,
        assigned_at=assignment.assigned_at,
    )


@router.get("/{case_id}/operators", response_model=List[CaseOperatorResponse])
async def case_operators(
    case_id: str,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
):
    return [CaseOperatorResponse(**row) for row in CaseRegistry(db).case_operators(context, case_id)]


@router.put("/{case_id}/status", response_model=CaseResponse)
async def update_case_status(
    case_id: str,
    body: UpdateStatusRequest,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
):
    """Change case status (admin only). Closed and archived cases reopen only to active."""
    case = CaseRegistry(db).update_status(context, case_id, body.status, body.reason or "")
    return case_response(case)


@router.get("/{case_id}/timeline", response_model=List[TimelineEntryResponse])
async def case_timeline(
    case_id: str,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
):
    entries = CaseRegistry(db).case_timeline(context, case_id)
    return [
        TimelineEntryResponse(action=e.action, actor_id=e.actor_id, detail=e.detail, timestamp=e.timestamp)
        for e in entries
    ]
