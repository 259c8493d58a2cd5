"""
Shared fixtures: a throwaway SQLite database per test, a controllable
clock, operators with grants on a case, and mocked collaborators.
"""
import itertools
import os
import re
from datetime import datetime, timedelta
from unittest.mock import MagicMock
from uuid import uuid4

# Must be set before custody.database creates its engine
os.environ["DATABASE_URL"] = "sqlite://"

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from custody.auth import hash_password
from custody.clock import utcnow
from custody.database import Base
from custody.models.db_models import (
    OperatorDB, CaseDB, CaseAccessGrantDB, AccessLevel, CaseStatus, KycStatus, Role,
)
from custody.services.collaborators import Collaborators, ExtensionClassifier
from custody.services.security.access_control import RequestContext

PASSWORD = "password123"
# bcrypt is slow by design; hash the shared password once
PASSWORD_HASH = hash_password(PASSWORD)

CODE_PATTERN = re.compile(r"code is (\d{6})")
_phones = itertools.count(5550000)


class FakeClock:
    """Callable clock whose time only moves when a test says so."""

    def __init__(self, now: datetime = None):
        self.now = now or utcnow().replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def sent_code(notifier: MagicMock) -> str:
    """The one-time code carried by the most recent notification."""
    contact, message = notifier.send.call_args[0]
    return CODE_PATTERN.search(message).group(1)


# =============================================================================
# DATABASE
# =============================================================================

@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'custody.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FakeClock()


# =============================================================================
# COLLABORATORS
# =============================================================================

@pytest.fixture
def notifier():
    mock = MagicMock()
    mock.send.return_value = True
    return mock


@pytest.fixture
def collaborators(notifier):
    storage = MagicMock()
    storage.publish.return_value = "bafytestcontentid"
    anchor = MagicMock()
    anchor.anchor.return_value = "0xanchored"
    return Collaborators(
        notifier=notifier,
        storage=storage,
        anchor=anchor,
        classifier=ExtensionClassifier(),
    )


# =============================================================================
# OPERATORS, CASES, GRANTS
# =============================================================================

def make_operator(db, username, role, is_active=True, kyc_status=KycStatus.VERIFIED, **fields):
    operator = OperatorDB(
        id=str(uuid4()),
        username=username,
        email=f"{username}@custody.test",
        phone=fields.pop("phone", f"+1{next(_phones)}"),
        password_hash=PASSWORD_HASH,
        role=role,
        is_active=is_active,
        kyc_status=kyc_status,
        failed_login_count=0,
        otp_attempts=0,
        **fields,
    )
    db.add(operator)
    db.commit()
    return operator


def make_case(db, case_number, status=CaseStatus.ACTIVE):
    case = CaseDB(
        case_id=f"CASE-{uuid4()}",
        case_number=case_number,
        name=f"Case {case_number}",
        status=status,
        evidence_count=0,
    )
    db.add(case)
    db.commit()
    return case


def grant(db, operator, case, level=AccessLevel.WRITE):
    db.add(CaseAccessGrantDB(operator_id=operator.id, case_id=case.case_id, access_level=level))
    db.commit()


def context_for(operator, case, session_id=None):
    case_id = case if isinstance(case, str) else case.case_id
    return RequestContext(operator=operator, case_id=case_id, session_id=session_id, origin="10.0.0.1")


@pytest.fixture
def case(db):
    return make_case(db, "CASE-2024-001")


@pytest.fixture
def other_case(db):
    return make_case(db, "CASE-2024-002")


@pytest.fixture
def admin(db):
    return make_operator(db, "admin", Role.ADMIN)


@pytest.fixture
def citizen(db, case):
    operator = make_operator(db, "carol", Role.CITIZEN)
    grant(db, operator, case, AccessLevel.WRITE)
    return operator


@pytest.fixture
def police(db, case):
    operator = make_operator(db, "alice", Role.POLICE)
    grant(db, operator, case, AccessLevel.WRITE)
    return operator


@pytest.fixture
def outsider_police(db, other_case):
    """Police officer granted only on the other case."""
    operator = make_operator(db, "bob", Role.POLICE)
    grant(db, operator, other_case, AccessLevel.WRITE)
    return operator


@pytest.fixture
def forensic(db, case):
    operator = make_operator(db, "frank", Role.FORENSIC_EXPERT)
    grant(db, operator, case, AccessLevel.WRITE)
    return operator


@pytest.fixture
def court(db, case):
    operator = make_operator(db, "judy", Role.COURT_OFFICIAL)
    grant(db, operator, case, AccessLevel.READ)
    return operator
