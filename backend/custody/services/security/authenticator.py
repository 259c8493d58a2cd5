"""
Authenticator

Two-step, case-scoped login.

Step 1 validates identity and case context and issues a one-time code.
Step 2 proves possession of the code and opens a session bound to the
case. Every step, success or failure, writes exactly one audit entry
before returning.

Policy: a login for an unknown username does not touch any failed-login
counter. Password, case and case-access failures count towards lockout.
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, Any, Optional
from uuid import uuid4

from sqlalchemy.orm import Session

from ... import config
from ...auth import (
    hash_password, verify_password, generate_otp, hash_otp, otp_matches,
    create_session_token, create_pending_login_token, decode_token,
    SESSION_TOKEN, PENDING_LOGIN_TOKEN,
)
from ...clock import utcnow
from ...database import commit_or_raise
from ...errors import (
    CustodyError, InvalidCredentials, AccountLocked, AccountInactive, KycPending,
    CaseNotFound, CaseInactive, NoCaseAccess, OtpExpired, OtpAttemptsExceeded,
    OtpMismatch, SessionExpired, SessionInvalid, RateLimited, TooSoon, InvalidRequest,
)
from ...models.db_models import (
    OperatorDB, KycStatus, Role, AuditAction, AuditOutcome,
)
from ..cases.case_registry import CaseRegistry
from ..collaborators import LoggingNotifier, best_effort
from ..ledger.audit_ledger import AuditLedger
from .access_control import RequestContext
from .credential_store import CredentialStore

logger = logging.getLogger(__name__)


def _seconds_until(moment: datetime, now: datetime) -> int:
    return max(1, int((moment - now).total_seconds() + 0.999))


class Authenticator:

    def __init__(self, db: Session, notifier=None, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock
        self.notifier = notifier or LoggingNotifier()
        self.store = CredentialStore(db, clock)
        self.ledger = AuditLedger(db, clock)
        self.cases = CaseRegistry(db, clock)

    # =========================================================================
    # FAILURE HELPERS
    # =========================================================================

    def _fail(
        self,
        error: CustodyError,
        action: AuditAction,
        operator: Optional[OperatorDB],
        case_id: Optional[str],
        origin: Optional[str],
        reason: str,
        outcome: AuditOutcome = AuditOutcome.FAILED,
    ):
        self.ledger.record(
            action,
            outcome=outcome,
            actor=operator,
            case_id=case_id,
            detail=reason,
            origin=origin,
        )
        commit_or_raise(self.db)
        raise error

    def _count_failure(
        self,
        operator: OperatorDB,
        case_id: str,
        origin: Optional[str],
        reason: str,
        error: CustodyError,
        action: AuditAction = AuditAction.LOGIN_FAILED,
    ):
        """Count a failure towards lockout; the threshold-reaching failure already reports the lock."""
        count = self.store.increment_failed_logins(operator.id)
        if count >= config.MAX_FAILED_LOGINS:
            until = self.clock() + timedelta(minutes=config.LOCKOUT_MINUTES)
            self.store.lock(operator.id, until)
            reason = f"{reason} failed_count={count} locked"
            error = AccountLocked(
                f"Account locked after {count} failed attempts",
                retry_after=config.LOCKOUT_MINUTES * 60,
            )
        else:
            reason = f"{reason} failed_count={count}"
        outcome = AuditOutcome.DENIED if action == AuditAction.UNAUTHORIZED_CASE_ACCESS else AuditOutcome.FAILED
        self._fail(error, action, operator, case_id, origin, reason, outcome)

    def _check_rate_limit(self, origin: str, username: str, case_id: str) -> None:
        now = self.clock()
        window_start = now - timedelta(minutes=config.LOGIN_RATE_WINDOW_MINUTES)
        self.store.prune_attempts(window_start)
        if self.store.attempts_since(origin, window_start) >= config.LOGIN_RATE_LIMIT:
            oldest = self.store.oldest_attempt_since(origin, window_start)
            retry_after = _seconds_until(oldest + timedelta(minutes=config.LOGIN_RATE_WINDOW_MINUTES), now)
            self._fail(
                RateLimited(retry_after=retry_after), AuditAction.LOGIN_FAILED, None, case_id, origin,
                f"rate_limited username={username}",
            )
        self.store.record_attempt(origin)

    def _dispatch_code(self, operator: OperatorDB, code: str) -> None:
        message = (
            f"Your evidence custody verification code is {code}. "
            f"It expires in {config.OTP_TTL_MINUTES} minutes."
        )
        best_effort("notifier", self.notifier.send, operator.phone or operator.email, message, fallback=False)

    def _issue_code(self, operator: OperatorDB, case_id: str) -> Dict[str, Any]:
        now = self.clock()
        code = generate_otp()
        expires_at = now + timedelta(minutes=config.OTP_TTL_MINUTES)
        self.store.store_otp(operator.id, hash_otp(code), case_id, expires_at)
        pending_ref = create_pending_login_token(
            operator.id, case_id, now + timedelta(minutes=config.PENDING_LOGIN_TTL_MINUTES)
        )
        return {"code": code, "expires_at": expires_at, "pending_ref": pending_ref}

    # =========================================================================
    # STEP 1: IDENTITY + CASE CONTEXT
    # =========================================================================

    def login_step1(self, username: str, password: str, case_id: str, origin: str = "unknown") -> Dict[str, Any]:
        """
        Validate credentials and case context, then issue a one-time code.

        Checks short-circuit in order: rate limit, operator exists, not
        locked, active, KYC verified, password, case exists and is active,
        case grant (or admin).
        """
        self._check_rate_limit(origin, username, case_id)

        operator = self.store.get_by_username(username)
        if operator is None:
            self._fail(InvalidCredentials(), AuditAction.LOGIN_FAILED, None, case_id, origin,
                       f"unknown_operator username={username}")

        now = self.clock()
        if operator.locked_until is not None:
            if operator.locked_until > now:
                self._fail(
                    AccountLocked(retry_after=_seconds_until(operator.locked_until, now)),
                    AuditAction.LOGIN_FAILED, operator, case_id, origin, "account_locked",
                )
            self.store.reset_failed_logins(operator.id)

        if not operator.is_active:
            self._fail(AccountInactive(), AuditAction.LOGIN_FAILED, operator, case_id, origin, "account_inactive")
        if operator.kyc_status != KycStatus.VERIFIED:
            self._fail(KycPending(), AuditAction.LOGIN_FAILED, operator, case_id, origin,
                       f"kyc_{operator.kyc_status.value}")

        if not verify_password(password, operator.password_hash):
            self._count_failure(operator, case_id, origin, "bad_password", InvalidCredentials())

        case = self.cases.get_case_record(case_id)
        if case is None:
            self._count_failure(operator, case_id, origin, "case_not_found", CaseNotFound())
        if not case.is_active:
            self._count_failure(operator, case_id, origin, f"case_{case.status.value}", CaseInactive())

        if operator.role != Role.ADMIN and self.store.get_grant(operator.id, case_id) is None:
            self._count_failure(
                operator, case_id, origin, "no_case_grant path=auth.login", NoCaseAccess(),
                action=AuditAction.UNAUTHORIZED_CASE_ACCESS,
            )

        issued = self._issue_code(operator, case_id)
        self.ledger.record(
            AuditAction.LOGIN_STEP1_SUCCESS,
            actor=operator,
            case_id=case_id,
            detail="otp_issued",
            origin=origin,
        )
        commit_or_raise(self.db)
        self._dispatch_code(operator, issued["code"])

        return {
            "pending_ref": issued["pending_ref"],
            "expires_at": issued["expires_at"],
            "otp_channel": "sms" if operator.phone else "email",
        }

    # =========================================================================
    # STEP 2: POSSESSION PROOF
    # =========================================================================

    def _pending_operator(self, pending_ref: str, case_id: Optional[str], origin: Optional[str]) -> OperatorDB:
        try:
            claims = decode_token(pending_ref, PENDING_LOGIN_TOKEN)
        except (SessionInvalid, SessionExpired) as error:
            self._fail(error, AuditAction.OTP_FAILED, None, case_id, origin, "invalid_pending_ref")
        operator = self.store.get_operator(claims["sub"])
        if operator is None:
            self._fail(SessionInvalid(), AuditAction.OTP_FAILED, None, claims["case_id"], origin, "unknown_operator")
        if case_id is not None and claims["case_id"] != case_id:
            self._fail(SessionInvalid(), AuditAction.OTP_FAILED, operator, case_id, origin, "case_mismatch")
        if operator.otp_expires_at is None or operator.otp_case_id != claims["case_id"]:
            self._fail(SessionInvalid("No pending login. Start again"), AuditAction.OTP_FAILED,
                       operator, claims["case_id"], origin, "no_pending_code")
        return operator

    def login_step2(
        self,
        pending_ref: str,
        code: str,
        case_id: str,
        origin: str = "unknown",
        user_agent: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Check the one-time code and open a case-bound session."""
        operator = self._pending_operator(pending_ref, case_id, origin)
        now = self.clock()

        if operator.locked_until is not None and operator.locked_until > now:
            self._fail(AccountLocked(retry_after=_seconds_until(operator.locked_until, now)), AuditAction.OTP_FAILED,
                       operator, case_id, origin, "account_locked")

        if now > operator.otp_expires_at:
            self._fail(OtpExpired(), AuditAction.OTP_FAILED, operator, case_id, origin, "otp_expired")

        cooldown_left = None
        if operator.otp_last_sent_at is not None:
            resend_at = operator.otp_last_sent_at + timedelta(seconds=config.OTP_RESEND_COOLDOWN_SECONDS)
            cooldown_left = _seconds_until(resend_at, now) if resend_at > now else 0

        if operator.otp_code_hash is None or operator.otp_attempts >= config.OTP_MAX_ATTEMPTS:
            self.store.invalidate_otp(operator.id)
            self._fail(OtpAttemptsExceeded(retry_after=cooldown_left), AuditAction.OTP_FAILED,
                       operator, case_id, origin, "otp_attempts_exceeded")

        attempt = self.store.consume_otp_attempt(operator.id, config.OTP_MAX_ATTEMPTS)
        if attempt is None:
            self._fail(OtpAttemptsExceeded(retry_after=cooldown_left), AuditAction.OTP_FAILED,
                       operator, case_id, origin, "otp_attempts_exceeded")

        if not otp_matches(code, operator.otp_code_hash):
            remaining = config.OTP_MAX_ATTEMPTS - attempt
            if remaining <= 0:
                self.store.invalidate_otp(operator.id)
            self._fail(
                OtpMismatch(f"Verification code is incorrect. {remaining} attempt(s) remaining"),
                AuditAction.OTP_FAILED, operator, case_id, origin, f"otp_mismatch attempt={attempt}",
            )

        return self._open_session(operator, case_id, origin, user_agent)

    def _open_session(self, operator: OperatorDB, case_id: str, origin: Optional[str], user_agent: Optional[str]):
        self.store.clear_otp(operator.id)
        self.store.reset_failed_logins(operator.id)
        # Serialize session-list mutation across concurrent logins of one operator
        operator = self.store.lock_operator_row(operator.id)

        now = self.clock()
        expires_at = now + timedelta(minutes=config.SESSION_TTL_MINUTES)
        session = self.store.create_session(operator.id, case_id, expires_at, origin, user_agent)
        self.store.evict_sessions(operator.id, config.MAX_ACTIVE_SESSIONS)

        operator.last_login_at = now
        operator.last_login_case_id = case_id
        self.ledger.record(
            AuditAction.LOGIN_SUCCESS,
            actor=operator,
            case_id=case_id,
            detail=f"session={session.id}",
            origin=origin,
        )
        commit_or_raise(self.db)
        logger.info("Operator %s logged in to case %s", operator.id, case_id)

        token = create_session_token(operator.id, operator.role.value, case_id, session.id, expires_at)
        return {
            "access_token": token,
            "token_type": "bearer",
            "expires_at": expires_at,
            "session_id": session.id,
            "case_id": case_id,
            "operator": operator,
        }

    def resend_otp(self, pending_ref: str, origin: str = "unknown") -> Dict[str, Any]:
        """Regenerate and redispatch the code, respecting the resend cooldown."""
        operator = self._pending_operator(pending_ref, None, origin)
        case_id = operator.otp_case_id
        now = self.clock()

        if operator.otp_last_sent_at is not None:
            resend_at = operator.otp_last_sent_at + timedelta(seconds=config.OTP_RESEND_COOLDOWN_SECONDS)
            if resend_at > now:
                self._fail(TooSoon(retry_after=_seconds_until(resend_at, now)), AuditAction.OTP_FAILED,
                           operator, case_id, origin, "resend_too_soon")

        if operator.locked_until is not None and operator.locked_until > now:
            self._fail(AccountLocked(retry_after=_seconds_until(operator.locked_until, now)), AuditAction.OTP_FAILED,
                       operator, case_id, origin, "account_locked")
        if not operator.is_active:
            self._fail(AccountInactive(), AuditAction.OTP_FAILED, operator, case_id, origin, "account_inactive")

        issued = self._issue_code(operator, case_id)
        self.ledger.record(AuditAction.OTP_RESENT, actor=operator, case_id=case_id, detail="otp_reissued", origin=origin)
        commit_or_raise(self.db)
        self._dispatch_code(operator, issued["code"])
        return {
            "pending_ref": issued["pending_ref"],
            "expires_at": issued["expires_at"],
            "otp_channel": "sms" if operator.phone else "email",
        }

    # =========================================================================
    # SESSIONS
    # =========================================================================

    def validate_session(
        self,
        token: str,
        origin: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> RequestContext:
        """
        Signature/expiry check, then liveness against the stored session.
        A structurally valid credential may have been revoked server-side.
        """
        claims = decode_token(token, SESSION_TOKEN)
        session = self.store.get_session(claims.get("sid", ""))
        if session is None or session.operator_id != claims["sub"] or session.case_id != claims["case_id"]:
            raise SessionInvalid()
        if not session.is_active:
            raise SessionInvalid("Session has been revoked")
        if session.expires_at <= self.clock():
            raise SessionExpired()

        operator = self.store.get_operator(session.operator_id)
        if operator is None or not operator.is_active or operator.kyc_status != KycStatus.VERIFIED:
            raise SessionInvalid()

        return RequestContext(
            operator=operator,
            case_id=session.case_id,
            session_id=session.id,
            origin=origin,
            user_agent=user_agent,
        )

    def logout(self, context: RequestContext) -> bool:
        """Invalidate the caller's session. Idempotent."""
        revoked = self.store.revoke_session(context.session_id)
        self.ledger.record(
            AuditAction.LOGOUT,
            actor=context.operator,
            case_id=context.case_id,
            detail="session_revoked" if revoked else "session_already_inactive",
            origin=context.origin,
        )
        commit_or_raise(self.db)
        return revoked

    # =========================================================================
    # ACCOUNT LIFECYCLE
    # =========================================================================

    def register_operator(
        self,
        username: str,
        email: str,
        phone: str,
        password: str,
        role: Role,
        full_name: Optional[str] = None,
        department: Optional[str] = None,
        badge_number: Optional[str] = None,
        kyc_document_type: Optional[str] = None,
        kyc_document_ref: Optional[str] = None,
        origin: str = "unknown",
    ) -> OperatorDB:
        """Create an operator pending KYC review and admin activation."""
        if role == Role.ADMIN:
            raise InvalidRequest("Administrators cannot self-register")
        if len(password) < config.MIN_PASSWORD_LENGTH:
            raise InvalidRequest(f"Password must be at least {config.MIN_PASSWORD_LENGTH} characters")
        if self.store.find_conflict(username, email, phone) is not None:
            raise InvalidRequest("Username, email or phone is already registered")

        operator = OperatorDB(
            id=str(uuid4()),
            username=username,
            email=email,
            phone=phone,
            password_hash=hash_password(password),
            role=role,
            is_active=False,
            full_name=full_name,
            department=department,
            badge_number=badge_number,
            kyc_status=KycStatus.PENDING,
            kyc_document_type=kyc_document_type,
            kyc_document_ref=kyc_document_ref,
            failed_login_count=0,
            otp_attempts=0,
            created_at=self.clock(),
        )
        self.db.add(operator)
        self.db.flush()
        self.ledger.record(
            AuditAction.OPERATOR_REGISTERED,
            actor=operator,
            detail=f"role={role.value}",
            origin=origin,
        )
        commit_or_raise(self.db)
        logger.info("Registered operator %s (%s), pending KYC", username, role.value)
        return operator

    def change_password(self, context: RequestContext, current_password: str, new_password: str) -> int:
        """Replace the password and revoke every other session. Returns the number revoked."""
        operator = context.operator
        if not verify_password(current_password, operator.password_hash):
            self._fail(InvalidCredentials("Current password is incorrect"), AuditAction.PASSWORD_CHANGED,
                       operator, context.case_id, context.origin, "bad_current_password")
        if len(new_password) < config.MIN_PASSWORD_LENGTH:
            raise InvalidRequest(f"Password must be at least {config.MIN_PASSWORD_LENGTH} characters")

        operator.password_hash = hash_password(new_password)
        revoked = self.store.revoke_all_sessions(operator.id, except_session_id=context.session_id)
        self.ledger.record(
            AuditAction.PASSWORD_CHANGED,
            actor=operator,
            case_id=context.case_id,
            detail=f"other_sessions_revoked={revoked}",
            origin=context.origin,
        )
        commit_or_raise(self.db)
        return revoked
