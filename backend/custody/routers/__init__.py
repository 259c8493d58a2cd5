"""Evidence Custody - API Routers"""
from .auth import router as auth_router
from .cases import router as cases_router
from .evidence import router as evidence_router
from .workflow import router as workflow_router
from .audit import router as audit_router
from .admin import router as admin_router

__all__ = [
    "auth_router", "cases_router", "evidence_router",
    "workflow_router", "audit_router", "admin_router",
]
