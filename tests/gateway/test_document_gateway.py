"""
DocumentGateway: one committed transaction per call, notifications after
commit, and privilege checks on administrative adjustments.
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from leave_kernel.domain.approval import DocumentStatus, NotificationKind, StepStatus
from leave_kernel.domain.ledger import GrantType
from leave_kernel.exceptions import (
    AuthorizationError,
    InsufficientBalanceError,
    MalformedGrantError,
)
from leave_services.directory import StaticSubjectDirectory
from leave_services.gateway import DocumentGateway, to_approver_spec

from tests.conftest import DOCUMENT_TYPES


@pytest.fixture
def admin(directory):
    actor = uuid4()
    directory.set_privilege_level(actor, 5)
    return actor


@pytest.fixture
def requester(gateway, admin):
    subject = uuid4()
    gateway.grant_manual(subject, "10", "opening balance", admin)
    return subject


class TestApproverInput:

    def test_tuple_and_mapping_entries(self):
        first, second = uuid4(), uuid4()

        by_tuple = to_approver_spec((first, 1))
        by_mapping = to_approver_spec(
            {"approver_id": str(second), "order": "2", "mode": "agreement"}
        )

        assert (by_tuple.approver_id, by_tuple.order, by_tuple.mode) == (first, 1, None)
        assert by_mapping.approver_id == second
        assert by_mapping.order == 2
        assert by_mapping.mode.value == "agreement"


class TestWorkflow:

    def test_two_stage_approval_deducts_balance(self, gateway, requester, notifier):
        manager, director = uuid4(), uuid4()

        document_id = gateway.submit(
            "annual_leave",
            requester,
            [(manager, 1), {"approver_id": director, "order": 2}],
            entitlement_amount="2",
        )
        assert [s.document_id for s in gateway.pending_for(manager)] == [document_id]
        assert gateway.pending_for(director) == ()

        gateway.approve(document_id, manager)
        outcome = gateway.approve(document_id, director, comment="enjoy")

        assert outcome.is_final
        assert outcome.deduction.amount == Decimal("2.00")
        assert gateway.document(document_id).status == DocumentStatus.APPROVED
        assert [s.status for s in gateway.steps(document_id)] == [StepStatus.APPROVED] * 2
        assert gateway.balance(requester).remaining == Decimal("8.00")
        assert [n.kind for n in notifier.sent] == [
            NotificationKind.SUBMITTED,
            NotificationKind.STEP_ACTIVATED,
            NotificationKind.STEP_ACTIVATED,
            NotificationKind.APPROVED,
        ]

    def test_reject_and_cancel(self, gateway, requester):
        approver = uuid4()
        rejected = gateway.submit("business_trip", requester, [(approver, 1)])
        cancelled = gateway.submit("business_trip", requester, [(approver, 1)])

        gateway.reject(rejected, approver, "budget freeze")
        view = gateway.cancel(cancelled, requester, "plans changed")

        assert gateway.document(rejected).rejection_reason == "budget freeze"
        assert view.status == DocumentStatus.CANCELLED

    def test_delegated_step_acted_on_by_delegate(self, gateway, requester):
        approver, deputy = uuid4(), uuid4()
        document_id = gateway.submit("expense", requester, [(approver, 1)])

        step = gateway.delegate(document_id, approver, deputy)
        gateway.approve(document_id, deputy)

        assert step.delegate_id == deputy
        assert gateway.steps(document_id)[0].acted_by_id == deputy


class TestNotificationTiming:

    def test_dispatch_sees_committed_document(self, session_factory, directory, clock, requester):
        seen = []

        class ReadingDispatcher:
            def dispatch(self, notification):
                seen.append(gateway.document(notification.document_id).status)

        gateway = DocumentGateway(
            session_factory=session_factory,
            dispatcher=ReadingDispatcher(),
            privileges=directory,
            document_types=DOCUMENT_TYPES,
            clock=clock,
        )

        gateway.submit("expense", requester, [(uuid4(), 1)])

        assert seen == [DocumentStatus.PENDING, DocumentStatus.PENDING]

    def test_rolled_back_call_sends_nothing(self, gateway, requester, notifier):
        with pytest.raises(InsufficientBalanceError):
            gateway.submit("annual_leave", requester, [(uuid4(), 1)], entitlement_amount="11")

        assert notifier.sent == ()
        assert gateway.pending_for(requester) == ()

    def test_failed_dispatch_logged_not_raised(
        self, session_factory, directory, clock, requester, captured_logs,
    ):
        class BrokenDispatcher:
            def dispatch(self, notification):
                raise ConnectionError("mail relay down")

        gateway = DocumentGateway(
            session_factory=session_factory,
            dispatcher=BrokenDispatcher(),
            privileges=directory,
            document_types=DOCUMENT_TYPES,
            clock=clock,
        )

        document_id = gateway.submit("expense", requester, [(uuid4(), 1)])

        assert gateway.document(document_id).status == DocumentStatus.PENDING
        failures = [r for r in captured_logs() if r["message"] == "notification_dispatch_failed"]
        assert len(failures) == 2
        assert failures[0]["exc_message"] == "mail relay down"


class TestAdministrativeAdjustments:

    def test_unprivileged_actor_refused(self, gateway, requester, directory):
        clerk = uuid4()
        directory.set_privilege_level(clerk, 4)

        with pytest.raises(AuthorizationError) as exc_info:
            gateway.deduct_manual(requester, "1", "correction", clerk)
        with pytest.raises(AuthorizationError):
            gateway.grant_manual(requester, "1", "bonus", clerk)

        assert exc_info.value.action == "deduct_manual"
        assert gateway.balance(requester).remaining == Decimal("10.00")

    def test_manual_deduction(self, gateway, requester, admin):
        result = gateway.deduct_manual(requester, "1.5", "payroll correction", admin)

        assert result.amount == Decimal("1.50")
        assert gateway.balance(requester).remaining == Decimal("8.50")

    def test_manual_grant_expires_at_year_end(self, gateway, admin):
        result = gateway.grant_manual(uuid4(), "2", "welcome", admin)

        assert result.grant.granted_date == date(2025, 3, 10)
        assert result.grant.expiration_date == date(2025, 12, 31)

    def test_one_year_validity(self, session_factory, notifier, directory, clock, admin):
        gateway = DocumentGateway(
            session_factory=session_factory,
            dispatcher=notifier,
            privileges=directory,
            document_types=DOCUMENT_TYPES,
            clock=clock,
            manual_grant_validity="one_year",
        )

        result = gateway.grant_manual(uuid4(), "1", "welcome", admin)

        assert result.grant.expiration_date == date(2026, 3, 10)

    def test_overtime_award(self, gateway, admin):
        result = gateway.grant_manual(
            uuid4(), "0.5", "weekend release", admin, grant_type=GrantType.OVERTIME_AWARD,
        )

        assert result.grant.grant_type == GrantType.OVERTIME_AWARD
        assert result.grant.expiration_date == date(2026, 3, 10)

    def test_scheduled_grant_types_refused(self, gateway, admin):
        with pytest.raises(MalformedGrantError, match="scheduled jobs"):
            gateway.grant_manual(uuid4(), "1", "x", admin, grant_type=GrantType.MONTHLY)

    def test_idempotency_key_honoured(self, gateway, admin):
        subject = uuid4()

        first = gateway.grant_manual(subject, "1", "x", admin, idempotency_key="ticket-42")
        second = gateway.grant_manual(subject, "1", "x", admin, idempotency_key="ticket-42")

        assert first.created and not second.created
        assert gateway.balance(subject).total == Decimal("1.00")


class TestRoster:

    def test_roster_loaded_from_yaml(self, tmp_path):
        subject = uuid4()
        roster = tmp_path / "roster.yaml"
        roster.write_text(
            "subjects:\n"
            f"  - id: {subject}\n"
            "    name: Kim\n"
            "    hire_date: 2024-03-15\n"
            "    privilege_level: 5\n"
            "    worked_days: [2025-01-06, 2025-01-07]\n"
            "    late_days: [2025-01-07]\n"
            f"  - id: {uuid4()}\n"
            "    hire_date: 2020-01-01\n"
            "    active: false\n"
        )

        directory = StaticSubjectDirectory.from_yaml(roster)

        (active,) = directory.list_active_subjects()
        assert active.subject_id == subject
        assert active.hire_date == date(2024, 3, 15)
        assert directory.privilege_level(subject) == 5
        summary = directory.attendance_summary(subject, date(2025, 1, 1), date(2025, 1, 31))
        assert (summary.worked_days, summary.late_days) == (2, 1)
