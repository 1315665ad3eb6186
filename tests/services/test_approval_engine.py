"""
ApprovalEngine scenarios against a real (SQLite) database.

Covers sequential and agreement orders, double approval, rejection,
requester cancel, delegation, the submission balance check, and the
approved-but-not-deducted path.  Every scenario checks that a terminal
document has no current step and a pending one has.
"""

from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, select, update

from leave_kernel.domain.approval import (
    ApprovalMode,
    DocumentStatus,
    NotificationKind,
    StepStatus,
)
from leave_kernel.exceptions import (
    AuthorizationError,
    DocumentNotFoundError,
    InsufficientBalanceError,
    InvalidAmountError,
    InvalidApprovalLineError,
    PreconditionFailed,
    UnknownDocumentTypeError,
)
from leave_kernel.models.approval import ApprovalStepModel, DocumentModel, StepAuditModel
from leave_kernel.models.audit_event import AuditAction, AuditEvent

from tests.conftest import TEST_ACTOR_ID


@pytest.fixture
def requester(issue_grant):
    subject_id = uuid4()
    issue_grant(subject_id, "10")
    return subject_id


def _steps_by_approver(engine, document_id):
    return {s.approver_id: s for s in engine.get_steps(document_id)}


class TestSubmit:

    def test_submit_creates_pending_document_with_first_order_active(
        self, approval_engine, requester, line,
    ):
        a, b = uuid4(), uuid4()
        doc = approval_engine.submit("annual_leave", requester, line((a, 1), (b, 2)), "2")

        assert doc.status == DocumentStatus.PENDING
        assert doc.current_step == 1
        assert doc.entitlement_amount == Decimal("2.00")
        assert doc.is_consistent

        steps = _steps_by_approver(approval_engine, doc.document_id)
        assert steps[a].status == StepStatus.PENDING
        assert steps[b].status == StepStatus.WAITING
        assert steps[b].is_last and not steps[a].is_last

    def test_submit_queues_notifications(self, approval_engine, requester, line):
        a = uuid4()
        doc = approval_engine.submit("annual_leave", requester, line((a, 1)), "1")

        kinds = [(n.kind, n.recipient_ids) for n in approval_engine.drain_notifications()]
        assert kinds == [
            (NotificationKind.SUBMITTED, (requester,)),
            (NotificationKind.STEP_ACTIVATED, (a,)),
        ]
        assert approval_engine.drain_notifications() == ()
        assert doc.document_id is not None

    def test_costed_submit_beyond_balance_persists_nothing(
        self, approval_engine, session, requester, line,
    ):
        with pytest.raises(InsufficientBalanceError) as exc_info:
            approval_engine.submit("annual_leave", requester, line((uuid4(), 1)), "10.5")

        assert exc_info.value.available == "10.00"
        count = session.execute(select(func.count()).select_from(DocumentModel)).scalar()
        assert count == 0

    def test_non_costed_type_skips_balance_check(self, approval_engine, line):
        doc = approval_engine.submit("business_trip", uuid4(), line((uuid4(), 1)))

        assert doc.entitlement_amount == Decimal("0.00")

    def test_unknown_type_rejected(self, approval_engine, requester, line):
        with pytest.raises(UnknownDocumentTypeError) as exc_info:
            approval_engine.submit("sabbatical", requester, line((uuid4(), 1)), "1")

        assert "annual_leave" in exc_info.value.known_types

    def test_off_grid_amount_rejected(self, approval_engine, requester, line):
        with pytest.raises(InvalidAmountError):
            approval_engine.submit("annual_leave", requester, line((uuid4(), 1)), "0.3")

    def test_empty_line_rejected(self, approval_engine, requester):
        with pytest.raises(InvalidApprovalLineError):
            approval_engine.submit("annual_leave", requester, [], "1")


class TestSequentialApproval:

    def test_two_orders_approve_and_deduct(self, approval_engine, ledger, requester, line):
        a, b = uuid4(), uuid4()
        doc = approval_engine.submit("annual_leave", requester, line((a, 1), (b, 2)), "2")

        first = approval_engine.approve(doc.document_id, a)
        assert first.status == DocumentStatus.PENDING
        assert first.current_step == 2
        assert first.activated_approvers == (b,)
        assert not first.is_final

        final = approval_engine.approve(doc.document_id, b, comment="enjoy")
        assert final.is_final
        assert final.status == DocumentStatus.APPROVED
        assert final.current_step is None
        assert final.deduction is not None
        assert final.deduction.amount == Decimal("2.00")
        assert final.deduction_error is None

        view = approval_engine.get_document(doc.document_id)
        assert view.is_consistent
        assert view.approved_at is not None
        assert ledger.get_balance(requester).remaining == Decimal("8.00")

    def test_later_order_cannot_act_early(self, approval_engine, requester, line):
        a, b = uuid4(), uuid4()
        doc = approval_engine.submit("annual_leave", requester, line((a, 1), (b, 2)), "1")

        with pytest.raises(AuthorizationError):
            approval_engine.approve(doc.document_id, b)

    def test_stranger_cannot_approve(self, approval_engine, requester, line):
        doc = approval_engine.submit("annual_leave", requester, line((uuid4(), 1)), "1")

        with pytest.raises(AuthorizationError):
            approval_engine.approve(doc.document_id, uuid4())

    def test_double_approval_by_same_actor_refused(self, approval_engine, requester, line):
        a, b = uuid4(), uuid4()
        doc = approval_engine.submit("annual_leave", requester, line((a, 1), (b, 2)), "1")
        approval_engine.approve(doc.document_id, a)

        with pytest.raises(PreconditionFailed):
            approval_engine.approve(doc.document_id, a)

        view = approval_engine.get_document(doc.document_id)
        assert view.current_step == 2
        steps = _steps_by_approver(approval_engine, doc.document_id)
        assert steps[b].status == StepStatus.PENDING

    def test_step_resolved_between_read_and_update(
        self, approval_engine, session, requester, line, monkeypatch,
    ):
        a = uuid4()
        doc = approval_engine.submit("annual_leave", requester, line((a, 1)), "1")
        audit_count = select(func.count()).select_from(StepAuditModel).where(
            StepAuditModel.document_id == doc.document_id,
        )
        before = session.execute(audit_count).scalar()
        load_step = approval_engine._actionable_step

        def load_then_resolve_elsewhere(document, actor_id, action):
            step = load_step(document, actor_id, action)
            # A concurrent approver commits first
            session.execute(
                update(ApprovalStepModel)
                .where(ApprovalStepModel.id == step.id)
                .values(status=StepStatus.APPROVED.value)
            )
            return step

        monkeypatch.setattr(approval_engine, "_actionable_step", load_then_resolve_elsewhere)

        with pytest.raises(PreconditionFailed) as exc_info:
            approval_engine.approve(doc.document_id, a)

        assert exc_info.value.actual == "already resolved"
        assert session.execute(audit_count).scalar() == before

    def test_approve_after_final_approval_is_precondition_failure(
        self, approval_engine, requester, line,
    ):
        a = uuid4()
        doc = approval_engine.submit("annual_leave", requester, line((a, 1)), "1")
        approval_engine.approve(doc.document_id, a)

        with pytest.raises(PreconditionFailed):
            approval_engine.approve(doc.document_id, a)

    def test_gap_in_orders_advances_to_next_existing(self, approval_engine, requester, line):
        a, b = uuid4(), uuid4()
        doc = approval_engine.submit("annual_leave", requester, line((a, 1), (b, 4)), "1")

        assert approval_engine.approve(doc.document_id, a).current_step == 4

    def test_step_audit_rows_written(self, approval_engine, session, requester, line):
        a = uuid4()
        doc = approval_engine.submit("annual_leave", requester, line((a, 1)), "1")
        approval_engine.approve(doc.document_id, a, comment="ok")

        rows = session.execute(
            select(StepAuditModel).where(StepAuditModel.document_id == doc.document_id)
        ).scalars().all()
        assert [(r.action, r.old_status, r.new_status, r.comment) for r in rows] == [
            ("approved", "pending", "approved", "ok"),
        ]

    def test_unknown_document(self, approval_engine):
        with pytest.raises(DocumentNotFoundError):
            approval_engine.approve(uuid4(), uuid4())


class TestAgreementOrder:

    def test_order_resolves_only_when_all_agree(self, approval_engine, requester, line):
        a, b, c = uuid4(), uuid4(), uuid4()
        doc = approval_engine.submit(
            "annual_leave", requester, line((a, 1), (b, 2), (c, 2)), "1",
        )
        activated = approval_engine.approve(doc.document_id, a)
        assert set(activated.activated_approvers) == {b, c}

        partial = approval_engine.approve(doc.document_id, b)
        assert partial.waiting_for_agreement
        assert partial.status == DocumentStatus.PENDING
        assert partial.current_step == 2

        final = approval_engine.approve(doc.document_id, c)
        assert final.is_final
        assert final.status == DocumentStatus.APPROVED

        steps = _steps_by_approver(approval_engine, doc.document_id)
        assert {s.mode for s in (steps[b], steps[c])} == {ApprovalMode.AGREEMENT}
        assert all(s.status == StepStatus.APPROVED for s in steps.values())

    def test_agreement_order_not_last_activates_next(self, approval_engine, requester, line):
        a, b, c = uuid4(), uuid4(), uuid4()
        doc = approval_engine.submit(
            "annual_leave", requester, line((a, 1), (b, 1), (c, 2)), "1",
        )
        approval_engine.approve(doc.document_id, b)
        outcome = approval_engine.approve(doc.document_id, a)

        assert outcome.current_step == 2
        assert outcome.activated_approvers == (c,)

    def test_second_approval_while_peer_outstanding_refused(
        self, approval_engine, session, requester, line,
    ):
        a, b = uuid4(), uuid4()
        doc = approval_engine.submit("annual_leave", requester, line((a, 1), (b, 1)), "1")
        approval_engine.approve(doc.document_id, a)
        audit_count = select(func.count()).select_from(StepAuditModel).where(
            StepAuditModel.document_id == doc.document_id,
        )
        before = session.execute(audit_count).scalar()

        with pytest.raises(PreconditionFailed):
            approval_engine.approve(doc.document_id, a)

        assert session.execute(audit_count).scalar() == before
        steps = _steps_by_approver(approval_engine, doc.document_id)
        assert steps[a].status == StepStatus.APPROVED
        assert steps[b].status == StepStatus.PENDING
        assert approval_engine.get_document(doc.document_id).status == DocumentStatus.PENDING


class TestReject:

    def test_reject_is_terminal_and_skips_deduction(
        self, approval_engine, ledger, requester, line,
    ):
        a, b = uuid4(), uuid4()
        doc = approval_engine.submit("annual_leave", requester, line((a, 1), (b, 2)), "3")
        approval_engine.drain_notifications()

        outcome = approval_engine.reject(doc.document_id, a, "team offsite that week")

        assert outcome.is_final
        assert outcome.status == DocumentStatus.REJECTED
        view = approval_engine.get_document(doc.document_id)
        assert view.rejection_reason == "team offsite that week"
        assert view.is_consistent
        assert _steps_by_approver(approval_engine, doc.document_id)[b].status == StepStatus.WAITING
        assert ledger.get_balance(requester).remaining == Decimal("10.00")

        (notification,) = approval_engine.drain_notifications()
        assert notification.kind == NotificationKind.REJECTED
        assert notification.recipient_ids == (requester,)

    def test_no_action_after_rejection(self, approval_engine, requester, line):
        a, b = uuid4(), uuid4()
        doc = approval_engine.submit("annual_leave", requester, line((a, 1), (b, 2)), "1")
        approval_engine.reject(doc.document_id, a, "no")

        with pytest.raises(PreconditionFailed):
            approval_engine.approve(doc.document_id, b)
        with pytest.raises(PreconditionFailed):
            approval_engine.reject(doc.document_id, a, "again")


class TestCancel:

    def test_requester_cancels_pending_document(self, approval_engine, requester, line):
        a = uuid4()
        doc = approval_engine.submit("annual_leave", requester, line((a, 1)), "1")
        approval_engine.drain_notifications()

        view = approval_engine.cancel(doc.document_id, requester, "plans changed")

        assert view.status == DocumentStatus.CANCELLED
        assert view.current_step is None
        assert view.is_consistent
        (notification,) = approval_engine.drain_notifications()
        assert notification.kind == NotificationKind.CANCELLED
        assert notification.recipient_ids == (a,)

    def test_only_requester_may_cancel(self, approval_engine, requester, line):
        a = uuid4()
        doc = approval_engine.submit("annual_leave", requester, line((a, 1)), "1")

        with pytest.raises(AuthorizationError):
            approval_engine.cancel(doc.document_id, a)

    def test_cannot_cancel_approved_document(self, approval_engine, requester, line):
        a = uuid4()
        doc = approval_engine.submit("annual_leave", requester, line((a, 1)), "1")
        approval_engine.approve(doc.document_id, a)

        with pytest.raises(PreconditionFailed):
            approval_engine.cancel(doc.document_id, requester)


class TestDelegate:

    def test_only_delegate_acts_after_delegation(self, approval_engine, requester, line):
        a, d = uuid4(), uuid4()
        doc = approval_engine.submit("annual_leave", requester, line((a, 1)), "1")

        step = approval_engine.delegate(doc.document_id, a, d)
        assert step.delegate_id == d
        assert step.approver_id == a
        assert step.effective_actor == d
        assert [s.step_id for s in approval_engine.list_pending_for_approver(d)] == [step.step_id]
        assert approval_engine.list_pending_for_approver(a) == ()

        with pytest.raises(AuthorizationError):
            approval_engine.approve(doc.document_id, a)

        outcome = approval_engine.approve(doc.document_id, d)
        assert outcome.is_final
        (acted,) = approval_engine.get_steps(doc.document_id)
        assert acted.acted_by_id == d

    def test_delegation_notifies_delegate(self, approval_engine, requester, line):
        a, d = uuid4(), uuid4()
        doc = approval_engine.submit("annual_leave", requester, line((a, 1)), "1")
        approval_engine.drain_notifications()

        approval_engine.delegate(doc.document_id, a, d)

        (notification,) = approval_engine.drain_notifications()
        assert notification.kind == NotificationKind.DELEGATED
        assert notification.recipient_ids == (d,)

    def test_cannot_delegate_to_self_or_peer(self, approval_engine, requester, line):
        a, b = uuid4(), uuid4()
        doc = approval_engine.submit("annual_leave", requester, line((a, 1), (b, 1)), "1")

        with pytest.raises(PreconditionFailed):
            approval_engine.delegate(doc.document_id, a, a)
        with pytest.raises(PreconditionFailed):
            approval_engine.delegate(doc.document_id, a, b)

    def test_approver_of_record_cannot_redelegate(self, approval_engine, requester, line):
        a, d, other = uuid4(), uuid4(), uuid4()
        doc = approval_engine.submit("annual_leave", requester, line((a, 1)), "1")
        approval_engine.delegate(doc.document_id, a, d)

        with pytest.raises(AuthorizationError):
            approval_engine.delegate(doc.document_id, a, other)

        (step,) = approval_engine.get_steps(doc.document_id)
        assert step.delegate_id == d
        assert approval_engine.list_pending_for_approver(other) == ()

    def test_waiting_step_cannot_be_delegated(self, approval_engine, requester, line):
        a, b = uuid4(), uuid4()
        doc = approval_engine.submit("annual_leave", requester, line((a, 1), (b, 2)), "1")

        with pytest.raises(AuthorizationError):
            approval_engine.delegate(doc.document_id, b, uuid4())


class TestDeductionFailureOnFinalApproval:

    def test_approval_stands_and_failure_is_audited(
        self, approval_engine, ledger, session, issue_grant, line,
    ):
        requester = uuid4()
        issue_grant(requester, "2")
        a = uuid4()
        doc = approval_engine.submit("annual_leave", requester, line((a, 1)), "2")
        # Balance drops below the requested amount while the document is pending
        ledger.deduct_manual(requester, "1", "correction", TEST_ACTOR_ID)

        outcome = approval_engine.approve(doc.document_id, a)

        assert outcome.status == DocumentStatus.APPROVED
        assert outcome.deduction is None
        assert outcome.deduction_error is not None
        assert approval_engine.get_document(doc.document_id).status == DocumentStatus.APPROVED
        assert ledger.get_balance(requester).remaining == Decimal("1.00")

        failures = session.execute(
            select(AuditEvent).where(AuditEvent.action == AuditAction.DEDUCTION_FAILED.value)
        ).scalars().all()
        assert [f.entity_id for f in failures] == [doc.document_id]
        assert failures[0].payload["requested"] == "2.00"

    def test_non_costed_type_never_deducts(self, approval_engine, line):
        a = uuid4()
        doc = approval_engine.submit("expense", uuid4(), line((a, 1)))

        outcome = approval_engine.approve(doc.document_id, a)

        assert outcome.is_final
        assert outcome.deduction is None
        assert outcome.deduction_error is None
