"""
Evidence Custody - Error Taxonomy

Every rejected request maps to one stable error kind. Routers never build
HTTPExceptions for domain failures; they let these propagate to the
application handler, which renders a uniform JSON body.
"""
import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


# =============================================================================
# BASE ERROR
# =============================================================================

class CustodyError(Exception):
    """Base class for custody domain errors."""

    status_code = 400
    default_message = "Request rejected"

    def __init__(self, message: Optional[str] = None, retry_after: Optional[int] = None):
        self.message = message or self.default_message
        self.retry_after = retry_after
        super().__init__(self.message)

    @property
    def kind(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict:
        body = {"error": self.kind, "message": self.message}
        if self.retry_after is not None:
            body["retry_after"] = self.retry_after
        return body


# =============================================================================
# AUTHENTICATION
# =============================================================================

class InvalidCredentials(CustodyError):
    status_code = 401
    default_message = "Invalid username or password"


class AccountLocked(CustodyError):
    status_code = 423
    default_message = "Account is temporarily locked"


class AccountInactive(CustodyError):
    status_code = 403
    default_message = "Account is not active"


class KycPending(CustodyError):
    status_code = 403
    default_message = "Identity verification has not been completed"


class OtpExpired(CustodyError):
    status_code = 401
    default_message = "Verification code has expired"


class OtpAttemptsExceeded(CustodyError):
    status_code = 401
    default_message = "Too many verification attempts. Request a new code"


class OtpMismatch(CustodyError):
    status_code = 401
    default_message = "Verification code is incorrect"


class SessionExpired(CustodyError):
    status_code = 401
    default_message = "Session has expired"


class SessionInvalid(CustodyError):
    status_code = 401
    default_message = "Session is not valid"


class RateLimited(CustodyError):
    status_code = 429
    default_message = "Too many login attempts from this address"


class TooSoon(CustodyError):
    status_code = 429
    default_message = "A code was sent recently. Please wait before requesting another"


# =============================================================================
# CASES AND AUTHORIZATION
# =============================================================================

class CaseNotFound(CustodyError):
    status_code = 404
    default_message = "Case not found"


class CaseInactive(CustodyError):
    status_code = 409
    default_message = "Case is not active"


class NoCaseAccess(CustodyError):
    status_code = 403
    default_message = "You do not have access to this case"


class Forbidden(CustodyError):
    status_code = 403
    default_message = "You are not permitted to perform this action"


class NotFound(CustodyError):
    status_code = 404
    default_message = "Resource not found"


class InvalidRequest(CustodyError):
    status_code = 400
    default_message = "Invalid request"


# =============================================================================
# WORKFLOW AND PERSISTENCE
# =============================================================================

class InvalidState(CustodyError):
    status_code = 409
    default_message = "Evidence is not in a state that allows this action"


class DuplicateEvidence(CustodyError):
    status_code = 409
    default_message = "Evidence with identical content has already been submitted"


class StorageError(CustodyError):
    status_code = 503
    default_message = "Storage failure. Please retry"

    def __init__(self, message: Optional[str] = None, retry_after: Optional[int] = 1):
        super().__init__(message, retry_after)


class CollaboratorUnavailable(CustodyError):
    """Raised by external collaborators; always downgraded to a warning."""
    status_code = 502
    default_message = "External service unavailable"


# =============================================================================
# EXCEPTION HANDLER
# =============================================================================

async def custody_error_handler(request: Request, exc: CustodyError) -> JSONResponse:
    """Render a CustodyError as a stable JSON body."""
    logger.warning("%s on %s %s: %s", exc.kind, request.method, request.url.path, exc.message)
    headers = {}
    if exc.retry_after is not None:
        headers["Retry-After"] = str(exc.retry_after)
    if exc.status_code == 401:
        headers["WWW-Authenticate"] = "Bearer"
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(CustodyError, custody_error_handler)
