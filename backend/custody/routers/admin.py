"""
Evidence Custody - Admin Router
Operator KYC review, activation and lockout release.
"""
from datetime import datetime
from typing import List, Optional
import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..database import get_db
from ..dependencies import get_request_context
from ..models.db_models import KycStatus, Role
from ..services.security.access_control import RequestContext
from ..services.security.operator_admin import OperatorAdministration

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin/operators", tags=["admin"])


# =============================================================================
# PYDANTIC MODELS
# =============================================================================

class OperatorAdminView(BaseModel):
    """Operator item for admin list view."""
    id: str
    username: str
    email: str
    phone: str
    role: Role
    is_active: bool
    full_name: Optional[str] = None
    department: Optional[str] = None
    badge_number: Optional[str] = None
    kyc_status: KycStatus
    kyc_document_type: Optional[str] = None
    kyc_document_ref: Optional[str] = None
    kyc_verified_at: Optional[datetime] = None
    failed_login_count: int
    locked_until: Optional[datetime] = None
    created_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None


class KycDecisionRequest(BaseModel):
    approved: bool
    reason: Optional[str] = None


class ActivationRequest(BaseModel):
    active: bool


def operator_view(operator) -> OperatorAdminView:
    return OperatorAdminView(
        id=operator.id,
        username=operator.username,
        email=operator.email,
        phone=operator.phone,
        role=operator.role,
        is_active=operator.is_active,
        full_name=operator.full_name,
        department=operator.department,
        badge_number=operator.badge_number,
        kyc_status=operator.kyc_status,
        kyc_document_type=operator.kyc_document_type,
        kyc_document_ref=operator.kyc_document_ref,
        kyc_verified_at=operator.kyc_verified_at,
        failed_login_count=operator.failed_login_count,
        locked_until=operator.locked_until,
        created_at=operator.created_at,
        last_login_at=operator.last_login_at,
    )


# =============================================================================
# API ENDPOINTS
# =============================================================================

@router.get("", response_model=List[OperatorAdminView])
async def list_operators(
    role: Optional[Role] = None,
    kyc_status: Optional[KycStatus] = None,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
):
    operators = OperatorAdministration(db).list_operators(context, role=role, kyc_status=kyc_status)
    return [operator_view(op) for op in operators]


@router.post("/{operator_id}/kyc", response_model=OperatorAdminView)
async def review_kyc(
    operator_id: str,
    body: KycDecisionRequest,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
):
    """Approve or reject an operator's identity documents."""
    operator = OperatorAdministration(db).verify_kyc(context, operator_id, body.approved, body.reason)
    return operator_view(operator)


@router.post("/{operator_id}/activate", response_model=OperatorAdminView)
async def set_active(
    operator_id: str,
    body: ActivationRequest,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
):
    operator = OperatorAdministration(db).set_active(context, operator_id, body.active)
    return operator_view(operator)


@router.post("/{operator_id}/unlock", response_model=OperatorAdminView)
async def unlock_operator(
    operator_id: str,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
):
    operator = OperatorAdministration(db).unlock(context, operator_id)
    return operator_view(operator)
