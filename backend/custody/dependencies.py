"""
Evidence Custody - Request Dependencies
Session validation and request metadata for route handlers.
"""
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from .database import get_db
from .errors import SessionInvalid
from .services.collaborators import Collaborators, get_collaborators
from .services.security.access_control import RequestContext
from .services.security.authenticator import Authenticator

# Bearer token security
security = HTTPBearer(auto_error=False)


def client_origin(request: Request) -> str:
    """Network address of the caller."""
    return request.client.host if request.client else "unknown"


async def get_request_context(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db),
) -> RequestContext:
    """
    Dependency to get the authenticated, case-bound request context.
    Checks the credential signature and expiry, then the stored session.
    """
    if credentials is None:
        raise SessionInvalid("Not authenticated")
    return Authenticator(db).validate_session(
        credentials.credentials,
        origin=client_origin(request),
        user_agent=request.headers.get("user-agent"),
    )


def get_notifier(collaborators: Collaborators = Depends(get_collaborators)):
    return collaborators.notifier
