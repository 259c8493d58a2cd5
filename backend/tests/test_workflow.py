"""
Test Suite: Evidence Workflow Engine

Tests the evidence state machine to ensure:
1. Every transition is guarded by role, case grant and current status
2. Re-applying or racing a transition leaves exactly one success
3. Visibility only grows along any path
4. Every decision, allowed or denied, lands in the audit ledger
5. Collaborator failures never change the outcome
"""
import pytest
from sqlalchemy.exc import OperationalError

from conftest import make_operator, grant, context_for
from custody.errors import (
    CaseInactive, CollaboratorUnavailable, DuplicateEvidence, Forbidden,
    InvalidRequest, InvalidState, NoCaseAccess, StorageError,
)
from custody.models.db_models import (
    AccessLevel, AuditAction, AuditOutcome, CaseDB, CaseStatus, EvidenceDB,
    ForensicStatus, OperatorDB, Role, WorkflowStatus,
)
from custody.services.evidence.evidence_store import EvidenceStore, content_hash
from custody.services.evidence.workflow import (
    TRANSITIONS, WorkflowEngine, merge_visibility,
)
from custody.services.ledger.audit_ledger import AuditLedger


@pytest.fixture
def workflow(db, collaborators, clock):
    return WorkflowEngine(db, collaborators, clock)


def upload(workflow, citizen, case, data=b"photo of the scene", file_name="scene.jpg"):
    return workflow.upload(context_for(citizen, case), case.case_id, data, file_name, mime_type="image/jpeg")


def entries(db, **filters):
    return AuditLedger(db).query(limit=None, ascending=True, **filters)


# =============================================================================
# TRANSITION TABLE
# =============================================================================

class TestTransitionTable:
    """Tests for the static transition definitions"""

    def test_terminal_statuses_have_no_exit(self):
        for name, transition in TRANSITIONS.items():
            if transition["from"] is None:
                continue
            for status in (WorkflowStatus.REJECTED, WorkflowStatus.CLOSED, WorkflowStatus.COURT_SUBMITTED):
                assert status not in transition["from"], name

    def test_merge_visibility_never_removes(self):
        merged = merge_visibility(["citizen", "admin"], [Role.POLICE, Role.ADMIN])
        assert merged == ["citizen", "admin", "police"]
        assert merge_visibility(None, []) == []


# =============================================================================
# UPLOAD
# =============================================================================

class TestUpload:
    """Tests for evidence intake"""

    def test_upload_records_evidence(self, db, workflow, collaborators, citizen, case):
        evidence = upload(workflow, citizen, case)

        assert evidence.evidence_id.startswith("EV-")
        assert evidence.status == WorkflowStatus.UPLOADED
        assert evidence.content_hash == content_hash(b"photo of the scene")
        assert evidence.uploaded_by == citizen.id
        assert evidence.current_owner == citizen.id
        assert evidence.category == "Image"
        assert evidence.storage_ref == "bafytestcontentid"
        assert evidence.anchor_ref == "0xanchored"
        assert set(evidence.visible_to) == {"citizen", "admin"}

        upload_entry = entries(db, action=AuditAction.UPLOAD)[0]
        assert upload_entry.outcome == AuditOutcome.SUCCESS
        assert upload_entry.evidence_id == evidence.evidence_id
        assert upload_entry.anchor_ref == "0xanchored"

        db.expire_all()
        assert db.get(CaseDB, case.case_id).evidence_count == 1

    def test_duplicate_content_is_rejected(self, db, workflow, citizen, case):
        """A second upload of identical bytes fails and changes nothing."""
        first = upload(workflow, citizen, case)
        with pytest.raises(DuplicateEvidence):
            upload(workflow, citizen, case, file_name="copy.jpg")

        db.expire_all()
        assert db.get(CaseDB, case.case_id).evidence_count == 1
        assert db.query(EvidenceDB).count() == 1
        assert db.get(EvidenceDB, first.evidence_id).status == WorkflowStatus.UPLOADED
        failed = entries(db, action=AuditAction.UPLOAD, outcome=AuditOutcome.FAILED)
        assert len(failed) == 1
        assert "duplicate_content" in failed[0].detail

    def test_duplicate_content_in_another_case(self, db, workflow, citizen, case, other_case):
        """Content identity is global: the same bytes cannot enter a second case."""
        grant(db, citizen, other_case)
        first = upload(workflow, citizen, case)
        with pytest.raises(DuplicateEvidence):
            upload(workflow, citizen, other_case, file_name="copy.jpg")

        db.expire_all()
        assert db.get(CaseDB, case.case_id).evidence_count == 1
        assert db.get(CaseDB, other_case.case_id).evidence_count == 0
        assert db.query(EvidenceDB).one().evidence_id == first.evidence_id
        failed = entries(db, action=AuditAction.UPLOAD, outcome=AuditOutcome.FAILED)
        assert [e.case_id for e in failed] == [other_case.case_id]

    def test_only_citizens_upload(self, db, workflow, police, case):
        with pytest.raises(Forbidden):
            workflow.upload(context_for(police, case), case.case_id, b"bytes", "notes.txt")
        assert entries(db, action=AuditAction.UNAUTHORIZED_ROLE_ACCESS)

    def test_upload_needs_write_grant(self, db, workflow, case):
        reader = make_operator(db, "reader", Role.CITIZEN)
        grant(db, reader, case, AccessLevel.READ)
        with pytest.raises(Forbidden):
            workflow.upload(context_for(reader, case), case.case_id, b"bytes", "notes.txt")

    def test_upload_to_other_case_is_denied(self, db, workflow, citizen, case, other_case):
        with pytest.raises(NoCaseAccess):
            workflow.upload(context_for(citizen, case), other_case.case_id, b"bytes", "notes.txt")

    def test_upload_to_inactive_case(self, db, workflow, citizen, case):
        case.status = CaseStatus.CLOSED
        db.commit()
        with pytest.raises(CaseInactive):
            upload(workflow, citizen, case)

    def test_empty_file_rejected(self, workflow, citizen, case):
        with pytest.raises(InvalidRequest):
            upload(workflow, citizen, case, data=b"")

    def test_collaborator_failures_do_not_block(self, db, workflow, collaborators, citizen, case):
        collaborators.storage.publish.side_effect = CollaboratorUnavailable("content storage: timeout")
        collaborators.anchor.anchor.side_effect = RuntimeError("gateway down")

        evidence = upload(workflow, citizen, case)

        assert evidence.status == WorkflowStatus.UPLOADED
        assert evidence.storage_ref is None
        assert evidence.anchor_ref is None
        assert entries(db, action=AuditAction.UPLOAD)[0].outcome == AuditOutcome.SUCCESS


# =============================================================================
# VERIFICATION AND CASE ISOLATION
# =============================================================================

class TestVerification:
    """Tests for police verification"""

    def test_police_verify_moves_to_pending_approval(self, db, workflow, notifier, citizen, police, admin, case):
        evidence = upload(workflow, citizen, case)
        verified = workflow.verify(context_for(police, case), evidence.evidence_id)

        assert verified.status == WorkflowStatus.PENDING_APPROVAL
        assert verified.verified_by == police.id
        assert "police" in verified.visible_to

        entry = entries(db, action=AuditAction.VERIFY)[-1]
        assert entry.outcome == AuditOutcome.SUCCESS
        assert entry.actor_id == police.id
        assert entry.evidence_id == evidence.evidence_id
        assert "uploaded -> pending_approval" in entry.detail

        notified = [c[0][0] for c in notifier.send.call_args_list]
        assert admin.email in notified

    def test_officer_from_other_case_is_denied(self, db, workflow, citizen, outsider_police, case, other_case):
        """A session bound to another case cannot touch this case's evidence."""
        evidence = upload(workflow, citizen, case)

        with pytest.raises(NoCaseAccess):
            workflow.verify(context_for(outsider_police, other_case), evidence.evidence_id)

        db.expire_all()
        assert db.get(EvidenceDB, evidence.evidence_id).status == WorkflowStatus.UPLOADED
        denial = entries(db, actor_id=outsider_police.id)[-1]
        assert denial.action == AuditAction.UNAUTHORIZED_CASE_ACCESS
        assert denial.outcome == AuditOutcome.DENIED
        assert denial.evidence_id == evidence.evidence_id
        assert "path=workflow.verify" in denial.detail

    def test_officer_without_grant_is_denied(self, db, workflow, citizen, outsider_police, case):
        evidence = upload(workflow, citizen, case)
        with pytest.raises(NoCaseAccess):
            workflow.verify(context_for(outsider_police, case), evidence.evidence_id)

    def test_missing_evidence_looks_like_no_access(self, db, workflow, police, case):
        with pytest.raises(NoCaseAccess):
            workflow.verify(context_for(police, case), "EV-0-00000000")
        assert entries(db, action=AuditAction.UNAUTHORIZED_CASE_ACCESS)

    def test_citizen_cannot_verify(self, db, workflow, citizen, case):
        evidence = upload(workflow, citizen, case)
        with pytest.raises(Forbidden):
            workflow.verify(context_for(citizen, case), evidence.evidence_id)
        denial = entries(db, action=AuditAction.UNAUTHORIZED_ROLE_ACCESS)[-1]
        assert denial.actor_role == "citizen"

    def test_reject_is_terminal(self, db, workflow, citizen, police, admin, case):
        evidence = upload(workflow, citizen, case)
        rejected = workflow.verify(context_for(police, case), evidence.evidence_id, accept=False, reason="blurred")

        assert rejected.status == WorkflowStatus.REJECTED
        assert rejected.rejection_reason == "blurred"
        with pytest.raises(InvalidState):
            workflow.verify(context_for(police, case), evidence.evidence_id)
        with pytest.raises(InvalidState):
            workflow.close(context_for(admin, case), evidence.evidence_id)

    def test_reject_needs_reason(self, workflow, citizen, police, case):
        evidence = upload(workflow, citizen, case)
        with pytest.raises(InvalidRequest):
            workflow.verify(context_for(police, case), evidence.evidence_id, accept=False)

    def test_inactive_case_blocks_transition(self, db, workflow, citizen, police, case):
        evidence = upload(workflow, citizen, case)
        case.status = CaseStatus.ARCHIVED
        db.commit()

        with pytest.raises(CaseInactive):
            workflow.verify(context_for(police, case), evidence.evidence_id)
        failure = entries(db, action=AuditAction.VERIFY)[-1]
        assert failure.outcome == AuditOutcome.FAILED
        assert "case_inactive" in failure.detail


# =============================================================================
# NON-IDEMPOTENCE AND CONCURRENCY
# =============================================================================

class TestSingleSuccess:
    """Tests that a transition succeeds at most once"""

    def test_second_approve_fails(self, db, workflow, citizen, police, admin, case):
        evidence = upload(workflow, citizen, case)
        workflow.verify(context_for(police, case), evidence.evidence_id)
        workflow.approve(context_for(admin, case), evidence.evidence_id)

        with pytest.raises(InvalidState):
            workflow.approve(context_for(admin, case), evidence.evidence_id)

        approvals = entries(db, action=AuditAction.APPROVE)
        assert [e.outcome for e in approvals] == [AuditOutcome.SUCCESS, AuditOutcome.FAILED]

    def test_stale_concurrent_verify_loses(self, db, session_factory, collaborators, clock, workflow,
                                           citizen, police, case):
        """Two officers read the same revision; only the first write lands."""
        evidence = upload(workflow, citizen, case)
        evidence_id = evidence.evidence_id

        other = session_factory()
        try:
            # Second request reads before the first one writes
            other_police = other.get(OperatorDB, police.id)
            stale = EvidenceStore(other).get(evidence_id)
            assert stale.status == WorkflowStatus.UPLOADED

            workflow.verify(context_for(police, case), evidence_id)

            with pytest.raises(InvalidState):
                WorkflowEngine(other, collaborators, clock).verify(context_for(other_police, case), evidence_id)
        finally:
            other.close()

        db.expire_all()
        current = db.get(EvidenceDB, evidence_id)
        assert current.status == WorkflowStatus.PENDING_APPROVAL
        assert current.revision == 1

        verifications = entries(db, action=AuditAction.VERIFY)
        assert [e.outcome for e in verifications] == [AuditOutcome.SUCCESS, AuditOutcome.FAILED]
        assert "concurrent_modification" in verifications[-1].detail

    def test_failed_commit_applies_nothing(self, db, session_factory, workflow, citizen, police, case, monkeypatch):
        evidence = upload(workflow, citizen, case)

        def broken_commit():
            raise OperationalError("COMMIT", {}, Exception("disk I/O error"))

        monkeypatch.setattr(db, "commit", broken_commit)
        with pytest.raises(StorageError) as exc_info:
            workflow.verify(context_for(police, case), evidence.evidence_id)
        monkeypatch.undo()
        assert exc_info.value.retry_after == 1

        check = session_factory()
        try:
            assert check.get(EvidenceDB, evidence.evidence_id).status == WorkflowStatus.UPLOADED
            assert AuditLedger(check).query(action=AuditAction.VERIFY) == []
        finally:
            check.close()


# =============================================================================
# FORENSICS, APPROVAL, COURT
# =============================================================================

class TestFullWorkflow:
    """Tests for the remaining transitions and visibility growth"""

    def test_visibility_only_grows(self, db, workflow, citizen, police, forensic, admin, case):
        evidence = upload(workflow, citizen, case)
        seen = [set(evidence.visible_to)]

        steps = [
            lambda: workflow.verify(context_for(police, case), evidence.evidence_id),
            lambda: workflow.assign_forensic(context_for(police, case), evidence.evidence_id, forensic.id),
            lambda: workflow.submit_analysis(context_for(forensic, case), evidence.evidence_id, "No edits found"),
            lambda: workflow.approve(context_for(admin, case), evidence.evidence_id),
            lambda: workflow.court_submit(context_for(admin, case), evidence.evidence_id),
        ]
        for step in steps:
            seen.append(set(step().visible_to))

        for before, after in zip(seen, seen[1:]):
            assert before <= after
        assert seen[-1] == {"citizen", "admin", "police", "forensic_expert", "court_official"}

    def test_forensic_assignment_and_analysis(self, db, workflow, notifier, citizen, police, forensic, case):
        evidence = upload(workflow, citizen, case)
        assigned = workflow.assign_forensic(context_for(police, case), evidence.evidence_id, forensic.id)

        assert assigned.forensic_status == ForensicStatus.IN_PROGRESS
        assert assigned.forensic_assignee == forensic.id
        assert assigned.status == WorkflowStatus.UPLOADED
        assert notifier.send.call_args[0][0] == forensic.email
        assert entries(db, action=AuditAction.ASSIGN)[-1].to_actor == forensic.id

        done = workflow.submit_analysis(context_for(forensic, case), evidence.evidence_id, "EXIF intact", "report-1")
        assert done.forensic_status == ForensicStatus.COMPLETED
        assert done.forensic_findings == "EXIF intact"

    def test_only_assignee_submits_analysis(self, db, workflow, citizen, police, forensic, case):
        evidence = upload(workflow, citizen, case)
        workflow.assign_forensic(context_for(police, case), evidence.evidence_id, forensic.id)
        stranger = make_operator(db, "fiona", Role.FORENSIC_EXPERT)
        grant(db, stranger, case, AccessLevel.WRITE)

        with pytest.raises(Forbidden):
            workflow.submit_analysis(context_for(stranger, case), evidence.evidence_id, "n/a")

    def test_assign_twice_fails(self, db, workflow, citizen, police, forensic, case):
        evidence = upload(workflow, citizen, case)
        workflow.assign_forensic(context_for(police, case), evidence.evidence_id, forensic.id)
        with pytest.raises(InvalidState):
            workflow.assign_forensic(context_for(police, case), evidence.evidence_id, forensic.id)

    def test_assignee_must_hold_case_grant(self, db, workflow, citizen, police, case):
        evidence = upload(workflow, citizen, case)
        ungranted = make_operator(db, "gil", Role.FORENSIC_EXPERT)
        with pytest.raises(InvalidRequest):
            workflow.assign_forensic(context_for(police, case), evidence.evidence_id, ungranted.id)

    def test_court_sees_evidence_only_after_approval(self, db, workflow, citizen, police, admin, court, case):
        evidence = upload(workflow, citizen, case)
        workflow.verify(context_for(police, case), evidence.evidence_id)

        with pytest.raises(Forbidden):
            workflow.view(context_for(court, case), evidence.evidence_id)

        workflow.approve(context_for(admin, case), evidence.evidence_id)
        assert workflow.view(context_for(court, case), evidence.evidence_id).evidence_id == evidence.evidence_id
        assert entries(db, action=AuditAction.VIEW, actor_id=court.id)

    def test_admin_rejects_at_approval(self, db, workflow, citizen, police, admin, case):
        evidence = upload(workflow, citizen, case)
        workflow.verify(context_for(police, case), evidence.evidence_id)
        rejected = workflow.approve(context_for(admin, case), evidence.evidence_id, accept=False, reason="chain broken")
        assert rejected.status == WorkflowStatus.REJECTED
        assert "court_official" not in rejected.visible_to

    def test_court_submit_requires_approval(self, db, workflow, citizen, admin, case):
        evidence = upload(workflow, citizen, case)
        with pytest.raises(InvalidState):
            workflow.court_submit(context_for(admin, case), evidence.evidence_id)

    def test_close_from_any_open_status(self, db, workflow, citizen, admin, case):
        evidence = upload(workflow, citizen, case)
        closed = workflow.close(context_for(admin, case), evidence.evidence_id, reason="withdrawn")
        assert closed.status == WorkflowStatus.CLOSED
        assert closed.closed_by == admin.id
        with pytest.raises(InvalidState):
            workflow.close(context_for(admin, case), evidence.evidence_id)

    def test_transitions_feed_case_timeline(self, db, workflow, citizen, police, case):
        evidence = upload(workflow, citizen, case)
        workflow.verify(context_for(police, case), evidence.evidence_id)
        db.expire_all()
        actions = [t.action for t in db.get(CaseDB, case.case_id).timeline]
        assert actions == ["evidence_uploaded", "status_changed"]


# =============================================================================
# CUSTODY TRANSFER AND INTEGRITY
# =============================================================================

class TestCustody:
    """Tests for custody transfer and integrity checks"""

    def test_owner_transfers_custody(self, db, workflow, citizen, police, case):
        evidence = upload(workflow, citizen, case)
        moved = workflow.transfer(context_for(citizen, case), evidence.evidence_id, police.id, reason="handover")

        assert moved.current_owner == police.id
        entry = entries(db, action=AuditAction.TRANSFER)[-1]
        assert entry.from_actor == citizen.id
        assert entry.to_actor == police.id

        # Former owner no longer holds custody
        with pytest.raises(Forbidden):
            workflow.transfer(context_for(citizen, case), evidence.evidence_id, citizen.id)

    def test_transfer_to_operator_without_access(self, db, workflow, citizen, outsider_police, case):
        evidence = upload(workflow, citizen, case)
        with pytest.raises(InvalidRequest):
            workflow.transfer(context_for(citizen, case), evidence.evidence_id, outsider_police.id)

    def test_integrity_check_detects_tampering(self, db, workflow, citizen, police, case):
        original = b"photo of the scene"
        evidence = upload(workflow, citizen, case, data=original)
        context = context_for(police, case)

        assert workflow.integrity_check(context, evidence.evidence_id, original)["intact"] is True
        result = workflow.integrity_check(context, evidence.evidence_id, b"photo of the scene, edited")
        assert result["intact"] is False
        assert result["is_tampered"] is True

        # The tamper flag is sticky
        again = workflow.integrity_check(context, evidence.evidence_id, original)
        assert again["is_tampered"] is True
        assert again["verification_count"] == 3

        outcomes = [e.outcome for e in entries(db, action=AuditAction.INTEGRITY_CHECK)]
        assert outcomes == [AuditOutcome.SUCCESS, AuditOutcome.FAILED, AuditOutcome.SUCCESS]

    def test_citizen_cannot_run_integrity_check(self, workflow, citizen, case):
        evidence = upload(workflow, citizen, case)
        with pytest.raises(Forbidden):
            workflow.integrity_check(context_for(citizen, case), evidence.evidence_id, b"photo of the scene")


# =============================================================================
# READS
# =============================================================================

class TestReads:
    """Tests for role-filtered listings"""

    def test_citizen_lists_only_own_uploads(self, db, workflow, citizen, case):
        neighbour = make_operator(db, "nina", Role.CITIZEN)
        grant(db, neighbour, case, AccessLevel.WRITE)
        upload(workflow, citizen, case, data=b"one")
        upload(workflow, citizen, case, data=b"two", file_name="two.jpg")
        upload(workflow, neighbour, case, data=b"three", file_name="three.jpg")

        mine = workflow.list_case_evidence(context_for(citizen, case), case.case_id)
        assert len(mine) == 2
        assert all(e.uploaded_by == citizen.id for e in mine)
        assert workflow.stats(context_for(citizen, case))["total"] == 2

    def test_police_queue(self, db, workflow, citizen, police, case):
        first = upload(workflow, citizen, case, data=b"one")
        upload(workflow, citizen, case, data=b"two", file_name="two.jpg")
        workflow.verify(context_for(police, case), first.evidence_id)

        queue = workflow.pending_verification(context_for(police, case))
        assert len(queue) == 1
        assert queue[0].evidence_id != first.evidence_id

    def test_admin_approval_queue(self, db, workflow, citizen, police, admin, case):
        evidence = upload(workflow, citizen, case)
        workflow.verify(context_for(police, case), evidence.evidence_id)
        queue = workflow.pending_approval(context_for(admin, case))
        assert [e.evidence_id for e in queue] == [evidence.evidence_id]

    def test_my_assignments(self, db, workflow, citizen, police, forensic, case):
        evidence = upload(workflow, citizen, case)
        assert workflow.my_assignments(context_for(forensic, case)) == []
        workflow.assign_forensic(context_for(police, case), evidence.evidence_id, forensic.id)
        assert [e.evidence_id for e in workflow.my_assignments(context_for(forensic, case))] == [evidence.evidence_id]
