"""
Credential Store

Persistence for operator identity, case-access grants, sessions and the
login security state (failed-login counter, lockout, one-time code,
per-origin rate-limit window).

Counters are changed with SQL-side increments so concurrent logins for
the same operator never lose an update.
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional
from uuid import uuid4

from sqlalchemy import func, or_, update
from sqlalchemy.orm import Session

from ...clock import utcnow
from ...models.db_models import (
    OperatorDB, CaseAccessGrantDB, OperatorSessionDB, LoginAttemptDB,
    AccessLevel, Role,
)

logger = logging.getLogger(__name__)


class CredentialStore:

    def __init__(self, db: Session, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock

    def _update(self, *where, **values) -> int:
        stmt = (
            update(OperatorDB)
            .where(*where)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount

    # =========================================================================
    # OPERATORS
    # =========================================================================

    def get_operator(self, operator_id: str) -> Optional[OperatorDB]:
        return self.db.query(OperatorDB).filter(OperatorDB.id == operator_id).first()

    def get_by_username(self, username: str) -> Optional[OperatorDB]:
        return self.db.query(OperatorDB).filter(OperatorDB.username == username).first()

    def find_conflict(self, username: str, email: str, phone: str) -> Optional[OperatorDB]:
        return self.db.query(OperatorDB).filter(
            or_(OperatorDB.username == username, OperatorDB.email == email, OperatorDB.phone == phone)
        ).first()

    def lock_operator_row(self, operator_id: str) -> Optional[OperatorDB]:
        """Re-read an operator under a row lock (no-op on SQLite)."""
        return (
            self.db.query(OperatorDB)
            .filter(OperatorDB.id == operator_id)
            .populate_existing()
            .with_for_update()
            .first()
        )

    def refresh(self, operator: OperatorDB) -> OperatorDB:
        self.db.refresh(operator)
        return operator

    def active_operators(self, role: Role, case_id: Optional[str] = None) -> List[OperatorDB]:
        """Active operators of a role, optionally only those granted access to a case."""
        q = self.db.query(OperatorDB).filter(OperatorDB.role == role, OperatorDB.is_active.is_(True))
        if case_id is not None and role != Role.ADMIN:
            q = q.join(CaseAccessGrantDB, CaseAccessGrantDB.operator_id == OperatorDB.id).filter(
                CaseAccessGrantDB.case_id == case_id
            )
        return q.all()

    # =========================================================================
    # GRANTS
    # =========================================================================

    def get_grant(self, operator_id: str, case_id: str) -> Optional[CaseAccessGrantDB]:
        return self.db.query(CaseAccessGrantDB).filter(
            CaseAccessGrantDB.operator_id == operator_id,
            CaseAccessGrantDB.case_id == case_id,
        ).first()

    def grants_for(self, operator_id: str) -> List[CaseAccessGrantDB]:
        return (
            self.db.query(CaseAccessGrantDB)
            .filter(CaseAccessGrantDB.operator_id == operator_id)
            .order_by(CaseAccessGrantDB.granted_at, CaseAccessGrantDB.id)
            .all()
        )

    def add_grant(self, operator_id: str, case_id: str, level: AccessLevel, granted_by: Optional[str]) -> CaseAccessGrantDB:
        grant = CaseAccessGrantDB(
            operator_id=operator_id,
            case_id=case_id,
            access_level=level,
            granted_at=self.clock(),
            granted_by=granted_by,
        )
        self.db.add(grant)
        self.db.flush()
        return grant

    # =========================================================================
    # FAILED LOGINS AND LOCKOUT
    # =========================================================================

    def increment_failed_logins(self, operator_id: str) -> int:
        """Atomically add one failure and return the new count."""
        self._update(
            OperatorDB.id == operator_id,
            failed_login_count=OperatorDB.failed_login_count + 1,
            last_failed_login_at=self.clock(),
        )
        return self.db.query(OperatorDB.failed_login_count).filter(OperatorDB.id == operator_id).scalar()

    def lock(self, operator_id: str, until: datetime) -> None:
        self._update(OperatorDB.id == operator_id, locked_until=until)
        logger.warning("Operator %s locked until %s", operator_id, until.isoformat())

    def reset_failed_logins(self, operator_id: str) -> None:
        self._update(OperatorDB.id == operator_id, failed_login_count=0, locked_until=None)

    # =========================================================================
    # ONE-TIME CODES
    # =========================================================================

    def store_otp(self, operator_id: str, code_hash: str, case_id: str, expires_at: datetime) -> None:
        self._update(
            OperatorDB.id == operator_id,
            otp_code_hash=code_hash,
            otp_case_id=case_id,
            otp_expires_at=expires_at,
            otp_attempts=0,
            otp_last_sent_at=self.clock(),
        )

    def consume_otp_attempt(self, operator_id: str, max_attempts: int) -> Optional[int]:
        """
        Atomically claim one attempt against the pending code.
        Returns the attempt number, or None when no attempt is left.
        """
        claimed = self._update(
            OperatorDB.id == operator_id,
            OperatorDB.otp_code_hash.isnot(None),
            OperatorDB.otp_attempts < max_attempts,
            otp_attempts=OperatorDB.otp_attempts + 1,
        )
        if claimed != 1:
            return None
        return self.db.query(OperatorDB.otp_attempts).filter(OperatorDB.id == operator_id).scalar()

    def invalidate_otp(self, operator_id: str) -> None:
        """Drop the code but keep expiry and attempt count, forcing a resend."""
        self._update(OperatorDB.id == operator_id, otp_code_hash=None)

    def clear_otp(self, operator_id: str) -> None:
        self._update(
            OperatorDB.id == operator_id,
            otp_code_hash=None,
            otp_case_id=None,
            otp_expires_at=None,
            otp_attempts=0,
        )

    # =========================================================================
    # SESSIONS
    # =========================================================================

    def create_session(
        self,
        operator_id: str,
        case_id: str,
        expires_at: datetime,
        origin: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> OperatorSessionDB:
        session = OperatorSessionDB(
            id=str(uuid4()),
            operator_id=operator_id,
            case_id=case_id,
            origin=origin,
            user_agent=(user_agent or "")[:255] or None,
            created_at=self.clock(),
            expires_at=expires_at,
            is_active=True,
        )
        self.db.add(session)
        self.db.flush()
        return session

    def evict_sessions(self, operator_id: str, keep: int) -> int:
        """Deactivate all but the newest `keep` active sessions. Returns the number evicted."""
        active = (
            self.db.query(OperatorSessionDB)
            .filter(OperatorSessionDB.operator_id == operator_id, OperatorSessionDB.is_active.is_(True))
            .order_by(OperatorSessionDB.created_at.desc(), OperatorSessionDB.id.desc())
            .all()
        )
        evicted = active[keep:]
        now = self.clock()
        for session in evicted:
            session.is_active = False
            session.revoked_at = now
        if evicted:
            logger.info("Evicted %d session(s) for operator %s", len(evicted), operator_id)
        return len(evicted)

    def get_session(self, session_id: str) -> Optional[OperatorSessionDB]:
        return self.db.query(OperatorSessionDB).filter(OperatorSessionDB.id == session_id).first()

    def active_sessions(self, operator_id: str) -> List[OperatorSessionDB]:
        return (
            self.db.query(OperatorSessionDB)
            .filter(OperatorSessionDB.operator_id == operator_id, OperatorSessionDB.is_active.is_(True))
            .order_by(OperatorSessionDB.created_at.desc())
            .all()
        )

    def revoke_session(self, session_id: str) -> bool:
        """Deactivate one session. Returns False if it was already inactive."""
        session = self.get_session(session_id)
        if session is None or not session.is_active:
            return False
        session.is_active = False
        session.revoked_at = self.clock()
        return True

    def revoke_all_sessions(self, operator_id: str, except_session_id: Optional[str] = None) -> int:
        count = 0
        for session in self.active_sessions(operator_id):
            if session.id == except_session_id:
                continue
            session.is_active = False
            session.revoked_at = self.clock()
            count += 1
        return count

    # =========================================================================
    # PER-ORIGIN RATE LIMIT
    # =========================================================================

    def attempts_since(self, origin: str, since: datetime) -> int:
        return self.db.query(func.count(LoginAttemptDB.id)).filter(
            LoginAttemptDB.origin == origin,
            LoginAttemptDB.attempted_at >= since,
        ).scalar()

    def oldest_attempt_since(self, origin: str, since: datetime) -> Optional[datetime]:
        return self.db.query(func.min(LoginAttemptDB.attempted_at)).filter(
            LoginAttemptDB.origin == origin,
            LoginAttemptDB.attempted_at >= since,
        ).scalar()

    def record_attempt(self, origin: str) -> None:
        self.db.add(LoginAttemptDB(origin=origin, attempted_at=self.clock()))
        self.db.flush()

    def prune_attempts(self, before: datetime) -> None:
        self.db.query(LoginAttemptDB).filter(LoginAttemptDB.attempted_at < before).delete(
            synchronize_session=False
        )
