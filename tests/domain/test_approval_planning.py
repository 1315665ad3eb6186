"""
Pure approval-line planning: stages, planned steps and order advancement.

No database.  Covers grouping by order, agreement detection, the
waiting/pending split, and rejection of malformed lines.
"""

from uuid import uuid4

import pytest

from leave_kernel.domain.approval import (
    AgreementStage,
    ApprovalMode,
    ApproverSpec,
    DocumentStatus,
    SingleStage,
    StepStatus,
    build_stages,
    is_valid_document_transition,
    is_valid_step_transition,
    next_order,
    plan_steps,
)
from leave_kernel.exceptions import InvalidApprovalLineError


class TestBuildStages:

    def test_single_approvers_become_single_stages_in_order(self):
        a, b = uuid4(), uuid4()
        stages = build_stages([ApproverSpec(b, 2), ApproverSpec(a, 1)])

        assert stages == (SingleStage(order=1, approver_id=a), SingleStage(order=2, approver_id=b))

    def test_shared_order_is_agreement(self):
        a, b, c = uuid4(), uuid4(), uuid4()
        stages = build_stages([ApproverSpec(a, 1), ApproverSpec(b, 2), ApproverSpec(c, 2)])

        assert isinstance(stages[1], AgreementStage)
        assert stages[1].approver_ids == (b, c)
        assert stages[1].mode == ApprovalMode.AGREEMENT

    def test_declared_agreement_with_one_approver(self):
        a = uuid4()
        stages = build_stages([ApproverSpec(a, 1, ApprovalMode.AGREEMENT)])

        assert stages == (AgreementStage(order=1, approver_ids=(a,)),)

    def test_gaps_in_orders_are_allowed(self):
        a, b = uuid4(), uuid4()
        stages = build_stages([ApproverSpec(a, 1), ApproverSpec(b, 5)])

        assert [s.order for s in stages] == [1, 5]

    def test_empty_line_rejected(self):
        with pytest.raises(InvalidApprovalLineError):
            build_stages([])

    def test_order_below_one_rejected(self):
        with pytest.raises(InvalidApprovalLineError, match="order must be >= 1"):
            build_stages([ApproverSpec(uuid4(), 0)])

    def test_duplicate_approver_at_one_order_rejected(self):
        a = uuid4()
        with pytest.raises(InvalidApprovalLineError, match="more than once"):
            build_stages([ApproverSpec(a, 1), ApproverSpec(a, 1)])

    def test_single_declared_on_shared_order_rejected(self):
        with pytest.raises(InvalidApprovalLineError, match="marked single"):
            build_stages([
                ApproverSpec(uuid4(), 1, ApprovalMode.SINGLE),
                ApproverSpec(uuid4(), 1),
            ])

    def test_same_approver_at_two_orders_is_fine(self):
        a = uuid4()
        stages = build_stages([ApproverSpec(a, 1), ApproverSpec(a, 2)])

        assert len(stages) == 2


class TestPlanSteps:

    def test_first_order_pending_rest_waiting(self):
        a, b, c = uuid4(), uuid4(), uuid4()
        planned = plan_steps(build_stages([
            ApproverSpec(a, 1), ApproverSpec(b, 2), ApproverSpec(c, 2),
        ]))

        assert [(p.approver_id, p.status) for p in planned] == [
            (a, StepStatus.PENDING),
            (b, StepStatus.WAITING),
            (c, StepStatus.WAITING),
        ]

    def test_is_last_marks_every_step_at_max_order(self):
        a, b, c = uuid4(), uuid4(), uuid4()
        planned = plan_steps(build_stages([
            ApproverSpec(a, 1), ApproverSpec(b, 3), ApproverSpec(c, 3),
        ]))

        assert [p.is_last for p in planned] == [False, True, True]

    def test_single_step_line_is_pending_and_last(self):
        (step,) = plan_steps(build_stages([ApproverSpec(uuid4(), 1)]))

        assert step.status == StepStatus.PENDING
        assert step.is_last
        assert step.mode == ApprovalMode.SINGLE


class TestTransitions:

    def test_next_order_skips_gaps(self):
        assert next_order([1, 5, 3, 3], 1) == 3
        assert next_order([1, 5, 3], 3) == 5
        assert next_order([1, 5, 3], 5) is None

    @pytest.mark.parametrize("target", [
        DocumentStatus.APPROVED, DocumentStatus.REJECTED, DocumentStatus.CANCELLED,
    ])
    def test_pending_document_can_resolve(self, target):
        assert is_valid_document_transition(DocumentStatus.PENDING, target)

    @pytest.mark.parametrize("terminal", [
        DocumentStatus.APPROVED, DocumentStatus.REJECTED, DocumentStatus.CANCELLED,
    ])
    def test_terminal_documents_are_final(self, terminal):
        assert not any(
            is_valid_document_transition(terminal, target) for target in DocumentStatus
        )

    def test_step_cannot_skip_pending(self):
        assert is_valid_step_transition(StepStatus.WAITING, StepStatus.PENDING)
        assert not is_valid_step_transition(StepStatus.WAITING, StepStatus.APPROVED)
        assert not is_valid_step_transition(StepStatus.APPROVED, StepStatus.REJECTED)
