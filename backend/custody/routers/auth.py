"""
Evidence Custody - Authentication Router
Registration, two-step case-scoped login, code resend, logout and session info.
"""
from datetime import datetime
from typing import Optional
import logging
import re

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, EmailStr, field_validator
from sqlalchemy.orm import Session

from ..database import get_db
from ..dependencies import client_origin, get_notifier, get_request_context
from ..models.db_models import Role
from ..services.security.access_control import RequestContext
from ..services.security.authenticator import Authenticator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


# =============================================================================
# PYDANTIC MODELS
# =============================================================================

class RegisterRequest(BaseModel):
    username: str
    email: EmailStr
    phone: str
    password: str
    role: Role
    full_name: Optional[str] = None
    department: Optional[str] = None
    badge_number: Optional[str] = None
    kyc_document_type: Optional[str] = None
    kyc_document_ref: Optional[str] = None

    @field_validator('username')
    @classmethod
    def validate_username(cls, v):
        if not re.match(r'^[A-Za-z0-9_.-]{3,100}$', v):
            raise ValueError('Username must be 3-100 letters, digits, dots, dashes or underscores')
        return v

    @field_validator('phone')
    @classmethod
    def validate_phone(cls, v):
        if not re.match(r'^\+?\d{7,15}$', v):
            raise ValueError('Invalid phone number')
        return v

    @field_validator('password')
    @classmethod
    def validate_password_strength(cls, v):
        if len(v) < 8:
            raise ValueError('Password must be at least 8 characters')
        return v


class LoginStep1Request(BaseModel):
    username: str
    password: str
    case_id: str


class LoginStep2Request(BaseModel):
    pending_ref: str
    code: str
    case_id: str

    @field_validator('code')
    @classmethod
    def validate_code(cls, v):
        if not re.match(r'^\d{6}$', v):
            raise ValueError('Verification code must be 6 digits')
        return v


class ResendRequest(BaseModel):
    pending_ref: str


class PendingLoginResponse(BaseModel):
    pending_ref: str
    expires_at: datetime
    otp_channel: str
    message: str = "Verification code sent"


class OperatorSummary(BaseModel):
    id: str
    username: str
    email: str
    role: Role
    full_name: Optional[str] = None
    department: Optional[str] = None
    badge_number: Optional[str] = None


class SessionResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_at: datetime
    session_id: str
    case_id: str
    operator: OperatorSummary


class SessionInfoResponse(BaseModel):
    session_id: Optional[str]
    case_id: str
    operator: OperatorSummary
    capabilities: dict


class ChangePasswordRequest(BaseModel):
    """Request model for changing password."""
    current_password: str
    new_password: str
    confirm_password: str

    @field_validator('confirm_password')
    @classmethod
    def passwords_match(cls, v, info):
        if 'new_password' in info.data and v != info.data['new_password']:
            raise ValueError('Passwords do not match')
        return v


class MessageResponse(BaseModel):
    message: str


def operator_summary(operator) -> OperatorSummary:
    return OperatorSummary(
        id=operator.id,
        username=operator.username,
        email=operator.email,
        role=operator.role,
        full_name=operator.full_name,
        department=operator.department,
        badge_number=operator.badge_number,
    )


# =============================================================================
# API ENDPOINTS
# =============================================================================

@router.post("/register", response_model=OperatorSummary, status_code=status.HTTP_201_CREATED)
async def register(body: RegisterRequest, request: Request, db: Session = Depends(get_db)):
    """
    Register an operator. The account stays inactive until an
    administrator verifies KYC and activates it.
    """
    operator = Authenticator(db).register_operator(
        username=body.username,
        email=body.email,
        phone=body.phone,
        password=body.password,
        role=body.role,
        full_name=body.full_name,
        department=body.department,
        badge_number=body.badge_number,
        kyc_document_type=body.kyc_document_type,
        kyc_document_ref=body.kyc_document_ref,
        origin=client_origin(request),
    )
    return operator_summary(operator)


@router.post("/login/step1", response_model=PendingLoginResponse)
def login_step1(
    body: LoginStep1Request,
    request: Request,
    db: Session = Depends(get_db),
    notifier=Depends(get_notifier),
):
    """Validate credentials against a case and send a one-time code."""
    result = Authenticator(db, notifier=notifier).login_step1(
        body.username, body.password, body.case_id, origin=client_origin(request)
    )
    return PendingLoginResponse(**result)


@router.post("/login/step2", response_model=SessionResponse)
async def login_step2(body: LoginStep2Request, request: Request, db: Session = Depends(get_db)):
    """Exchange the one-time code for a case-bound session credential."""
    result = Authenticator(db).login_step2(
        body.pending_ref,
        body.code,
        body.case_id,
        origin=client_origin(request),
        user_agent=request.headers.get("user-agent"),
    )
    return SessionResponse(
        access_token=result["access_token"],
        expires_at=result["expires_at"],
        session_id=result["session_id"],
        case_id=result["case_id"],
        operator=operator_summary(result["operator"]),
    )


@router.post("/otp/resend", response_model=PendingLoginResponse)
def resend_otp(
    body: ResendRequest,
    request: Request,
    db: Session = Depends(get_db),
    notifier=Depends(get_notifier),
):
    result = Authenticator(db, notifier=notifier).resend_otp(body.pending_ref, origin=client_origin(request))
    return PendingLoginResponse(message="Verification code resent", **result)


@router.post("/logout", response_model=MessageResponse)
async def logout(
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
):
    Authenticator(db).logout(context)
    return MessageResponse(message="Logged out")


@router.get("/session", response_model=SessionInfoResponse)
async def session_info(context: RequestContext = Depends(get_request_context)):
    """Current operator, bound case and role capabilities."""
    return SessionInfoResponse(
        session_id=context.session_id,
        case_id=context.case_id,
        operator=operator_summary(context.operator),
        capabilities=context.operator.capabilities,
    )


@router.put("/password", response_model=MessageResponse)
async def change_password(
    body: ChangePasswordRequest,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
):
    revoked = Authenticator(db).change_password(context, body.current_password, body.new_password)
    logger.info(f"Password changed for operator {context.operator.id}")
    return MessageResponse(message=f"Password changed. {revoked} other session(s) signed out")
