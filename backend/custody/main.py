"""
Evidence Custody - FastAPI Application

Main entry point for the evidence custody backend.

Architecture:
- Authenticator: two-step, case-scoped login -> session credential
- AccessController: role, case grant and visibility gate on every request
- WorkflowEngine: evidence state machine (upload -> verify -> approve -> court)
- AuditLedger: append-only chain of custody, written before each response
"""
from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import config
from .database import init_db
from .errors import register_error_handlers
from .routers import (
    auth_router, cases_router, evidence_router,
    workflow_router, audit_router, admin_router,
)

logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database on startup."""
    init_db()
    yield

# Create FastAPI app
app = FastAPI(
    lifespan=lifespan,
    title="Evidence Custody",
    description="""
    Evidence Custody - Chain-of-Custody and Access-Control Core

    Authenticates operators against a specific case, enforces role and
    case-access permissions over evidence as it moves through a fixed
    approval workflow, and keeps an immutable, ordered audit trail.

    ## Workflow
    1. **Upload**: citizen submits content-hashed evidence to a case
    2. **Verify**: police accept (pending approval) or reject
    3. **Forensics**: police assign an expert, who submits analysis
    4. **Approve**: admin approves (visible to court) or rejects
    5. **Court / Close**: admin submits to court or closes

    ## Key Principles
    - Sessions are bound to one case
    - Transitions are compare-and-swap; re-applying one fails
    - Visibility only grows
    - Every decision is audited before the response
    """,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_error_handlers(app)

# Include routers
app.include_router(auth_router)
app.include_router(cases_router)
app.include_router(evidence_router)
app.include_router(workflow_router)
app.include_router(audit_router)
app.include_router(admin_router)


@app.get("/")
async def root():
    """Root endpoint - API information."""
    return {
        "name": "Evidence Custody",
        "version": "1.0.0",
        "description": "Chain-of-custody and access-control core",
        "docs": "/docs",
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy", "version": "1.0.0"}


# For running with: python -m custody.main
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
