"""
Batch tasks: scheduled leave grants.

Three producers feeding the ledger:

* ``leave.monthly_grant`` -- one day on each hire-anniversary day during the
  first year, gated on late arrivals in the prior anniversary month.
* ``leave.fiscal_annual_grant`` -- prorated annual grant on 1 January.
* ``leave.attendance_award`` -- one day for a clean prior quarter.

Every grant carries the key ``subject:grant_type:period`` so that a rerun,
or an overlapping invocation, inserts nothing new.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import date
from uuid import UUID

from leave_kernel.domain.collaborators import SubjectDirectory
from leave_kernel.domain.entitlement import (
    AttendanceAwardPolicy,
    EntitlementDecision,
    FiscalAnnualPolicy,
    MonthlyGrantPolicy,
    evaluate_attendance_award,
    evaluate_fiscal_annual,
    evaluate_monthly,
    evaluated_quarter,
    monthly_attendance_window,
    monthly_grant_due,
    quarter_bounds,
)
from leave_kernel.domain.ledger import GrantType
from leave_kernel.exceptions import DataIntegrityError
from leave_kernel.services.ledger_service import LedgerService
from leave_kernel.utils.idempotency import grant_idempotency_key

from leave_batch.domain.types import BatchItemStatus
from leave_batch.tasks.base import BatchItemInput, BatchTaskResult


class _GrantTask(ABC):
    """Shared subject listing and grant insertion for the grant tasks."""

    grant_type: GrantType

    @property
    @abstractmethod
    def task_type(self) -> str:
        ...

    @property
    @abstractmethod
    def description(self) -> str:
        ...

    def prepare_items(
        self,
        directory: SubjectDirectory,
        business_date: date,
    ) -> tuple[BatchItemInput, ...]:
        subjects = directory.list_active_subjects()
        return tuple(
            BatchItemInput(
                item_index=i,
                item_key=str(subject.subject_id),
                payload={
                    "hire_date": (
                        subject.hire_date.isoformat() if subject.hire_date else None
                    ),
                },
            )
            for i, subject in enumerate(subjects)
        )

    def execute_item(
        self,
        item: BatchItemInput,
        decision: EntitlementDecision,
        ledger: LedgerService,
        actor_id: UUID,
    ) -> BatchTaskResult:
        if not decision.eligible:
            return BatchTaskResult(
                status=BatchItemStatus.SKIPPED,
                result_data={"reason": decision.reason},
            )

        key = grant_idempotency_key(
            item.subject_id,
            self.grant_type.value,
            decision.period or decision.granted_date,
        )
        result = ledger.issue_grant(
            subject_id=item.subject_id,
            grant_type=self.grant_type,
            amount=decision.amount,
            granted_date=decision.granted_date,
            expiration_date=decision.expiration_date,
            actor_id=actor_id,
            calculation_basis=decision.basis,
            reason=self.description,
            idempotency_key=key,
        )
        if not result.created:
            return BatchTaskResult(
                status=BatchItemStatus.SKIPPED,
                result_data={
                    "reason": "already_granted",
                    "grant_id": str(result.grant.grant_id),
                },
            )
        return BatchTaskResult(
            status=BatchItemStatus.SUCCEEDED,
            result_data={
                "grant_id": str(result.grant.grant_id),
                "amount": str(result.grant.amount),
                "expiration_date": result.grant.expiration_date.isoformat(),
                "idempotency_key": key,
            },
        )


def _hire_date(item: BatchItemInput) -> date:
    raw = item.payload.get("hire_date")
    if not raw:
        raise DataIntegrityError(f"Subject {item.item_key} has no hire date")
    try:
        return date.fromisoformat(raw)
    except ValueError as exc:
        raise DataIntegrityError(
            f"Subject {item.item_key} has malformed hire date {raw!r}"
        ) from exc


class MonthlyGrantTask(_GrantTask):
    """Anniversary-day grant for subjects in their first year."""

    grant_type = GrantType.MONTHLY

    def __init__(self, policy: MonthlyGrantPolicy | None = None):
        self._policy = policy or MonthlyGrantPolicy()

    @property
    def task_type(self) -> str:
        return "leave.monthly_grant"

    @property
    def description(self) -> str:
        return "Monthly anniversary leave grant"

    def evaluate_item(
        self,
        item: BatchItemInput,
        directory: SubjectDirectory,
        business_date: date,
    ) -> EntitlementDecision:
        hire_date = _hire_date(item)
        late_arrivals = 0
        if monthly_grant_due(hire_date, business_date, self._policy):
            start, end = monthly_attendance_window(hire_date, business_date)
            late_arrivals = directory.attendance_summary(
                item.subject_id, start, end,
            ).late_days
        return evaluate_monthly(hire_date, business_date, late_arrivals, self._policy)


class FiscalAnnualGrantTask(_GrantTask):
    """Prorated annual grant for the fiscal year of the business date."""

    grant_type = GrantType.FISCAL_ANNUAL

    def __init__(self, policy: FiscalAnnualPolicy | None = None):
        self._policy = policy or FiscalAnnualPolicy()

    @property
    def task_type(self) -> str:
        return "leave.fiscal_annual_grant"

    @property
    def description(self) -> str:
        return "Fiscal-year annual leave grant"

    def evaluate_item(
        self,
        item: BatchItemInput,
        directory: SubjectDirectory,
        business_date: date,
    ) -> EntitlementDecision:
        return evaluate_fiscal_annual(_hire_date(item), business_date, self._policy)


class AttendanceAwardTask(_GrantTask):
    """One day for zero late arrivals over the previous quarter."""

    grant_type = GrantType.ATTENDANCE_AWARD

    def __init__(self, policy: AttendanceAwardPolicy | None = None):
        self._policy = policy or AttendanceAwardPolicy()

    @property
    def task_type(self) -> str:
        return "leave.attendance_award"

    @property
    def description(self) -> str:
        return "Quarterly attendance award"

    def evaluate_item(
        self,
        item: BatchItemInput,
        directory: SubjectDirectory,
        business_date: date,
    ) -> EntitlementDecision:
        start, end = quarter_bounds(*evaluated_quarter(business_date))
        summary = directory.attendance_summary(item.subject_id, start, end)
        return evaluate_attendance_award(
            business_date, summary.worked_days, summary.late_days, self._policy,
        )
