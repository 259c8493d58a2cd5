"""
Test Suite: Case Registry and Operator Administration

Covers:
1. Case creation, assignment and status changes (admin only)
2. Case reads gated by the session's case binding
3. KYC review, activation and unlock
"""
import pytest

from conftest import PASSWORD, make_operator, context_for, sent_code
from custody import config
from custody.errors import (
    AccountLocked, CaseInactive, Forbidden, InvalidCredentials, InvalidRequest, InvalidState,
    NoCaseAccess, SessionInvalid,
)
from custody.models.db_models import (
    AccessLevel, AuditAction, CaseStatus, KycStatus, OperatorDB, Role,
)
from custody.services.cases.case_registry import CaseRegistry
from custody.services.ledger.audit_ledger import AuditLedger
from custody.services.security.authenticator import Authenticator
from custody.services.security.operator_admin import OperatorAdministration


@pytest.fixture
def registry(db, clock):
    return CaseRegistry(db, clock)


# =============================================================================
# CASE LIFECYCLE
# =============================================================================

class TestCaseLifecycle:
    """Tests for admin case management"""

    def test_create_case_generates_identifier(self, db, registry, admin, case):
        created = registry.create_case(context_for(admin, case), "CASE-2024-100", "Warehouse fire", priority="high")

        assert created.case_id.startswith("CASE-")
        assert created.case_id != "CASE-2024-100"
        assert created.status == CaseStatus.ACTIVE
        assert created.created_by == admin.id
        assert AuditLedger(db).query(action=AuditAction.CASE_CREATED)[0].case_id == created.case_id
        assert [t.action for t in registry.case_timeline(context_for(admin, created), created.case_id)] == ["case_created"]

    def test_duplicate_case_number(self, registry, admin, case):
        with pytest.raises(InvalidRequest):
            registry.create_case(context_for(admin, case), case.case_number, "Again")

    def test_non_admin_cannot_create(self, db, registry, police, case):
        with pytest.raises(Forbidden):
            registry.create_case(context_for(police, case), "CASE-2024-101", "Nope")
        assert AuditLedger(db).query(action=AuditAction.UNAUTHORIZED_ROLE_ACCESS)

    def test_assign_operator_grants_access(self, db, registry, admin, case):
        officer = make_operator(db, "oscar", Role.POLICE)
        registry.assign_operator(context_for(admin, case), case.case_id, officer.id, AccessLevel.WRITE)

        assert registry.access.access_level(officer, case.case_id) == AccessLevel.WRITE
        operators = registry.case_operators(context_for(admin, case), case.case_id)
        assert [(o["username"], o["access_level"]) for o in operators] == [("oscar", AccessLevel.WRITE)]
        entry = AuditLedger(db).query(action=AuditAction.OPERATOR_ASSIGNED)[0]
        assert entry.to_actor == officer.id

    def test_assign_twice_rejected(self, db, registry, admin, case):
        officer = make_operator(db, "oscar", Role.POLICE)
        registry.assign_operator(context_for(admin, case), case.case_id, officer.id)
        with pytest.raises(InvalidRequest):
            registry.assign_operator(context_for(admin, case), case.case_id, officer.id)

    def test_close_and_reopen(self, db, registry, admin, case):
        context = context_for(admin, case)
        closed = registry.update_status(context, case.case_id, CaseStatus.CLOSED, reason="solved")
        assert closed.status == CaseStatus.CLOSED

        with pytest.raises(InvalidState):
            registry.update_status(context, case.case_id, CaseStatus.PENDING)

        reopened = registry.update_status(context, case.case_id, CaseStatus.ACTIVE)
        assert reopened.status == CaseStatus.ACTIVE
        assert AuditLedger(db).query(action=AuditAction.CASE_REOPENED)

    def test_same_status_rejected(self, registry, admin, case):
        with pytest.raises(InvalidState):
            registry.update_status(context_for(admin, case), case.case_id, CaseStatus.ACTIVE)

    def test_assignment_to_closed_case(self, db, registry, admin, case):
        registry.update_status(context_for(admin, case), case.case_id, CaseStatus.CLOSED)
        officer = make_operator(db, "oscar", Role.POLICE)
        with pytest.raises(CaseInactive):
            registry.assign_operator(context_for(admin, case), case.case_id, officer.id)


# =============================================================================
# READS
# =============================================================================

class TestCaseReads:
    """Tests for case-scoped reads"""

    def test_get_case_is_audited(self, db, registry, police, case):
        assert registry.get_case(context_for(police, case), case.case_id).case_id == case.case_id
        assert AuditLedger(db).query(action=AuditAction.VIEW)[0].actor_id == police.id

    def test_get_other_case_is_denied(self, db, registry, police, case, other_case):
        with pytest.raises(NoCaseAccess):
            registry.get_case(context_for(police, case), other_case.case_id)

    def test_my_cases_lists_grants(self, db, registry, police, case):
        cases = registry.my_cases(context_for(police, case))
        assert [(c["case"].case_id, c["access_level"]) for c in cases] == [(case.case_id, AccessLevel.WRITE)]

    def test_admin_sees_active_cases(self, db, registry, admin, case, other_case):
        registry.update_status(context_for(admin, case), other_case.case_id, CaseStatus.ARCHIVED)
        cases = registry.my_cases(context_for(admin, case))
        assert [c["case"].case_id for c in cases] == [case.case_id]
        assert cases[0]["access_level"] == AccessLevel.ADMIN


# =============================================================================
# OPERATOR ADMINISTRATION
# =============================================================================

class TestOperatorAdministration:
    """Tests for KYC review and account state changes"""

    def test_kyc_approval_allows_login(self, db, clock, notifier, admin, case):
        auth = Authenticator(db, notifier=notifier, clock=clock)
        operator = auth.register_operator("dana", "dana@custody.test", "+15551234567", PASSWORD, Role.POLICE)
        registry = CaseRegistry(db, clock)
        registry.assign_operator(context_for(admin, case), case.case_id, operator.id, AccessLevel.WRITE)

        admin_ops = OperatorAdministration(db, clock)
        admin_ops.verify_kyc(context_for(admin, case), operator.id, approved=True)
        admin_ops.set_active(context_for(admin, case), operator.id, True)

        pending = auth.login_step1("dana", PASSWORD, case.case_id)
        session = auth.login_step2(pending["pending_ref"], sent_code(notifier), case.case_id)
        assert session["operator"].id == operator.id

    def test_kyc_rejection_needs_reason(self, db, admin, police, case):
        with pytest.raises(InvalidRequest):
            OperatorAdministration(db).verify_kyc(context_for(admin, case), police.id, approved=False)

        rejected = OperatorAdministration(db).verify_kyc(context_for(admin, case), police.id, False, "forged ID")
        assert rejected.kyc_status == KycStatus.REJECTED
        assert rejected.kyc_rejection_reason == "forged ID"

    def test_deactivation_revokes_sessions(self, db, clock, notifier, admin, police, case):
        auth = Authenticator(db, notifier=notifier, clock=clock)
        pending = auth.login_step1("alice", PASSWORD, case.case_id)
        session = auth.login_step2(pending["pending_ref"], sent_code(notifier), case.case_id)

        OperatorAdministration(db, clock).set_active(context_for(admin, case), police.id, False)

        with pytest.raises(SessionInvalid):
            auth.validate_session(session["access_token"])

    def test_admin_cannot_deactivate_self(self, db, admin, case):
        with pytest.raises(InvalidRequest):
            OperatorAdministration(db).set_active(context_for(admin, case), admin.id, False)

    def test_unlock_clears_lockout(self, db, clock, notifier, admin, police, case):
        auth = Authenticator(db, notifier=notifier, clock=clock)
        for _ in range(config.MAX_FAILED_LOGINS):
            with pytest.raises((InvalidCredentials, AccountLocked)):
                auth.login_step1("alice", "wrong-password", case.case_id)
        with pytest.raises(AccountLocked):
            auth.login_step1("alice", PASSWORD, case.case_id)

        unlocked = OperatorAdministration(db, clock).unlock(context_for(admin, case), police.id)
        assert unlocked.failed_login_count == 0
        assert unlocked.locked_until is None
        assert auth.login_step1("alice", PASSWORD, case.case_id)["pending_ref"]

    def test_non_admin_cannot_administer(self, db, police, citizen, case):
        with pytest.raises(Forbidden):
            OperatorAdministration(db).list_operators(context_for(police, case))
        with pytest.raises(Forbidden):
            OperatorAdministration(db).set_active(context_for(police, case), citizen.id, False)
        db.expire_all()
        assert db.get(OperatorDB, citizen.id).is_active is True
