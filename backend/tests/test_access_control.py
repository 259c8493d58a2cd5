"""
Test Suite: Access Controller

Covers:
1. Access level resolution from case grants (admin implicit)
2. Role visibility rules for evidence
3. Enforcement wrappers and the denial audit trail
"""
import itertools

import pytest

from conftest import make_operator, make_case, grant, context_for
from custody.errors import Forbidden, NoCaseAccess
from custody.models.db_models import (
    AccessLevel, AuditAction, AuditOutcome, EvidenceDB, Role,
)
from custody.services.ledger.audit_ledger import AuditLedger
from custody.services.security.access_control import AccessController


def evidence_stub(case_id, uploaded_by="op-citizen", assignee=None, visible_to=None):
    return EvidenceDB(
        evidence_id="EV-1-abcdef01",
        case_id=case_id,
        uploaded_by=uploaded_by,
        forensic_assignee=assignee,
        visible_to=visible_to if visible_to is not None else ["citizen", "admin"],
    )


# =============================================================================
# ACCESS LEVELS
# =============================================================================

class TestAccessLevel:
    """Tests for grant-based access resolution"""

    def test_levels_are_totally_ordered(self):
        ordered = [AccessLevel.NONE, AccessLevel.READ, AccessLevel.WRITE, AccessLevel.ADMIN]
        for lower, higher in itertools.combinations(ordered, 2):
            assert higher.satisfies(lower)
            assert not lower.satisfies(higher)

    def test_admin_role_has_admin_level_without_grant(self, db, admin, case):
        access = AccessController(db)
        assert access.access_level(admin, case.case_id) == AccessLevel.ADMIN
        assert access.can_access_case(admin, case.case_id)

    def test_grant_level_is_returned(self, db, police, court, case):
        access = AccessController(db)
        assert access.access_level(police, case.case_id) == AccessLevel.WRITE
        assert access.access_level(court, case.case_id) == AccessLevel.READ

    def test_no_grant_means_no_access(self, db, outsider_police, case, other_case):
        access = AccessController(db)
        assert access.access_level(outsider_police, case.case_id) == AccessLevel.NONE
        assert not access.can_access_case(outsider_police, case.case_id)
        assert access.can_access_case(outsider_police, other_case.case_id)

    def test_access_follows_grants_for_every_case(self, db):
        """can_access_case holds exactly for the cases a non-admin is granted."""
        cases = [make_case(db, f"CASE-PROP-{i}") for i in range(4)]
        for role in [Role.CITIZEN, Role.POLICE, Role.FORENSIC_EXPERT, Role.COURT_OFFICIAL]:
            for granted in [set(), {0}, {1, 3}, {0, 1, 2, 3}]:
                operator = make_operator(db, f"{role.value}-{'-'.join(map(str, sorted(granted))) or 'none'}", role)
                for index in granted:
                    grant(db, operator, cases[index], AccessLevel.READ)
                access = AccessController(db)
                for index, case in enumerate(cases):
                    assert access.can_access_case(operator, case.case_id) == (index in granted)


# =============================================================================
# VISIBILITY
# =============================================================================

class TestRoleVisibility:
    """Tests for per-role evidence visibility"""

    def test_admin_and_police_see_all(self, db, admin, police, case):
        evidence = evidence_stub(case.case_id)
        assert AccessController.role_can_view(admin, evidence)
        assert AccessController.role_can_view(police, evidence)

    def test_citizen_sees_only_own_uploads(self, db, citizen, case):
        assert AccessController.role_can_view(citizen, evidence_stub(case.case_id, uploaded_by=citizen.id))
        assert not AccessController.role_can_view(citizen, evidence_stub(case.case_id, uploaded_by="someone-else"))

    def test_forensic_sees_only_assignments(self, db, forensic, case):
        assert AccessController.role_can_view(forensic, evidence_stub(case.case_id, assignee=forensic.id))
        assert not AccessController.role_can_view(forensic, evidence_stub(case.case_id))

    def test_court_needs_visibility_entry(self, db, court, case):
        assert not AccessController.role_can_view(court, evidence_stub(case.case_id))
        approved = evidence_stub(case.case_id, visible_to=["citizen", "admin", "police", "court_official"])
        assert AccessController.role_can_view(court, approved)

    def test_view_requires_case_access_too(self, db, outsider_police, case):
        """Police see everything only within cases they are granted."""
        access = AccessController(db)
        assert AccessController.role_can_view(outsider_police, evidence_stub(case.case_id))
        assert not access.can_view_evidence(outsider_police, evidence_stub(case.case_id))


# =============================================================================
# ENFORCEMENT AND AUDIT
# =============================================================================

class TestEnforcement:
    """Tests for require_* wrappers"""

    def test_session_case_mismatch_is_denied_and_audited(self, db, police, case, other_case):
        grant(db, police, other_case, AccessLevel.WRITE)
        access = AccessController(db)
        context = context_for(police, case)

        with pytest.raises(NoCaseAccess):
            access.require_case(context, other_case.case_id, AccessLevel.READ, "evidence.list")

        entries = AuditLedger(db).query(actor_id=police.id)
        assert len(entries) == 1
        assert entries[0].action == AuditAction.UNAUTHORIZED_CASE_ACCESS
        assert entries[0].outcome == AuditOutcome.DENIED
        assert "path=evidence.list" in entries[0].detail
        assert "role=police" in entries[0].detail
        assert "session_case_mismatch" in entries[0].detail

    def test_missing_grant_is_denied(self, db, outsider_police, case):
        access = AccessController(db)
        with pytest.raises(NoCaseAccess):
            access.require_case(context_for(outsider_police, case), case.case_id, AccessLevel.READ, "cases.get")
        entry = AuditLedger(db).query(actor_id=outsider_police.id)[0]
        assert entry.action == AuditAction.UNAUTHORIZED_CASE_ACCESS
        assert entry.case_id == case.case_id

    def test_insufficient_level_is_forbidden(self, db, court, case):
        access = AccessController(db)
        with pytest.raises(Forbidden):
            access.require_level(context_for(court, case), case.case_id, AccessLevel.WRITE, "workflow.verify")
        entry = AuditLedger(db).query(actor_id=court.id)[0]
        assert entry.action == AuditAction.UNAUTHORIZED_ROLE_ACCESS
        assert "level=read required=write" in entry.detail

    def test_sufficient_level_passes_without_audit(self, db, police, case):
        access = AccessController(db)
        level = access.require_case(context_for(police, case), case.case_id, AccessLevel.WRITE, "workflow.verify")
        assert level == AccessLevel.WRITE
        assert AuditLedger(db).query() == []

    def test_require_role(self, db, citizen, case):
        access = AccessController(db)
        with pytest.raises(Forbidden):
            access.require_role(context_for(citizen, case), [Role.ADMIN], "audit.query")
        entry = AuditLedger(db).query()[0]
        assert entry.action == AuditAction.UNAUTHORIZED_ROLE_ACCESS
        assert entry.actor_role == "citizen"
        assert "allowed=admin" in entry.detail

    def test_denial_is_committed(self, db, session_factory, outsider_police, case):
        """The denial entry survives even if the caller's work is rolled back."""
        access = AccessController(db)
        with pytest.raises(NoCaseAccess):
            access.require_case(context_for(outsider_police, case), case.case_id)
        db.rollback()

        other = session_factory()
        try:
            assert len(AuditLedger(other).query(action=AuditAction.UNAUTHORIZED_CASE_ACCESS)) == 1
        finally:
            other.close()
