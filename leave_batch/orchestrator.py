"""
BatchOrchestrator -- wiring and entry points for the grant jobs.

Contract:
    Wires the TaskRegistry with the three grant tasks, builds a
    BatchExecutor per unit of work, and exposes one argument-free entry
    point per job.  Each entry point owns its transactions and commits.

Architecture: leave_batch (top-level).  This is the canonical entry point
    for running grant jobs; ``scripts/run_grant_job.py`` wraps it for an
    external scheduler.

Invariants enforced:
    - Clock injection: every service receives the same Clock, and the
      business date is ``clock.today()``.
    - The RUNNING attempt is committed before any subject is processed, so
      an overlapping invocation sees it and is refused.
    - A run that crashes after starting is marked FAILED in a fresh
      transaction.
"""

from __future__ import annotations

from datetime import date
from typing import TYPE_CHECKING, Callable
from uuid import UUID

from sqlalchemy.orm import Session

from leave_kernel.db.engine import session_scope
from leave_kernel.domain.clock import Clock, SystemClock
from leave_kernel.domain.collaborators import SubjectDirectory
from leave_kernel.domain.entitlement import (
    AttendanceAwardPolicy,
    FiscalAnnualPolicy,
    MonthlyGrantPolicy,
)
from leave_kernel.logging_config import get_logger
from leave_kernel.services.auditor_service import AuditorService
from leave_kernel.services.ledger_service import LedgerService
from leave_kernel.services.sequence_service import SequenceService

from leave_batch.domain.types import BatchRunResult
from leave_batch.services.executor import BatchExecutor
from leave_batch.tasks.base import TaskRegistry
from leave_batch.tasks.grant_tasks import (
    AttendanceAwardTask,
    FiscalAnnualGrantTask,
    MonthlyGrantTask,
)

if TYPE_CHECKING:
    from leave_config.schema import LeaveConfig

logger = get_logger("batch.orchestrator")

# Actor recorded on grants and audit events written by scheduled runs
SYSTEM_ACTOR_ID = UUID(int=0)

MONTHLY_GRANT = "leave.monthly_grant"
FISCAL_ANNUAL_GRANT = "leave.fiscal_annual_grant"
ATTENDANCE_AWARD = "leave.attendance_award"


def default_task_registry(
    monthly: MonthlyGrantPolicy | None = None,
    fiscal_annual: FiscalAnnualPolicy | None = None,
    attendance_award: AttendanceAwardPolicy | None = None,
) -> TaskRegistry:
    """Create a TaskRegistry pre-loaded with the three grant tasks."""
    registry = TaskRegistry()
    registry.register(MonthlyGrantTask(monthly))
    registry.register(FiscalAnnualGrantTask(fiscal_annual))
    registry.register(AttendanceAwardTask(attendance_award))
    return registry


class BatchOrchestrator:
    """Composition root and entry points for the grant jobs.

    Contract:
        - ``from_config()`` builds an orchestrator from a ``LeaveConfig``.
        - ``run_monthly_grant()``, ``run_fiscal_annual_grant()`` and
          ``run_attendance_award()`` run one job for today and commit.
        - ``create_executor()`` returns a BatchExecutor bound to a session.

    Non-goals:
        - Does NOT schedule anything -- an external scheduler (cron) calls
          the entry points.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        directory: SubjectDirectory,
        task_registry: TaskRegistry | None = None,
        clock: Clock | None = None,
        actor_id: UUID | None = None,
        batch_size: int = 50,
        max_workers: int = 8,
        expiring_soon_days: int = 30,
    ) -> None:
        self._session_factory = session_factory
        self._directory = directory
        self._task_registry = (
            task_registry if task_registry is not None else default_task_registry()
        )
        self._clock = clock or SystemClock()
        self._actor_id = actor_id or SYSTEM_ACTOR_ID
        self._batch_size = batch_size
        self._max_workers = max_workers
        self._expiring_soon_days = expiring_soon_days

    # -------------------------------------------------------------------------
    # Factory
    # -------------------------------------------------------------------------

    @classmethod
    def from_config(
        cls,
        config: LeaveConfig,
        session_factory: Callable[[], Session],
        directory: SubjectDirectory,
        clock: Clock | None = None,
    ) -> BatchOrchestrator:
        """Build an orchestrator whose tasks follow the configured policies."""
        entitlements = config.entitlements
        registry = default_task_registry(
            monthly=MonthlyGrantPolicy(
                days=entitlements.monthly.days,
                max_late_arrivals=entitlements.monthly.max_late_arrivals,
                min_tenure_months=entitlements.monthly.min_tenure_months,
                max_tenure_months=entitlements.monthly.max_tenure_months,
            ),
            fiscal_annual=FiscalAnnualPolicy(
                base_days=entitlements.fiscal_annual.base_days,
                days_in_year=entitlements.fiscal_annual.days_in_year,
            ),
            attendance_award=AttendanceAwardPolicy(
                days=entitlements.attendance_award.days,
                max_late_arrivals=entitlements.attendance_award.max_late_arrivals,
                min_worked_days=entitlements.attendance_award.min_worked_days,
            ),
        )
        return cls(
            session_factory=session_factory,
            directory=directory,
            task_registry=registry,
            clock=clock,
            batch_size=config.batch.batch_size,
            max_workers=config.batch.max_workers,
            expiring_soon_days=config.ledger.expiring_soon_days,
        )

    # -------------------------------------------------------------------------
    # Executor
    # -------------------------------------------------------------------------

    def create_executor(self, session: Session) -> BatchExecutor:
        """Create a BatchExecutor wired to ``session``."""
        auditor = AuditorService(session=session, clock=self._clock)
        ledger = LedgerService(
            session=session,
            auditor=auditor,
            clock=self._clock,
            expiring_soon_days=self._expiring_soon_days,
        )
        return BatchExecutor(
            session=session,
            task_registry=self._task_registry,
            ledger=ledger,
            directory=self._directory,
            clock=self._clock,
            auditor_service=auditor,
            sequence_service=SequenceService(session),
            batch_size=self._batch_size,
            max_workers=self._max_workers,
        )

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    def run(self, task_type: str, business_date: date | None = None) -> BatchRunResult:
        """Start and execute one run of ``task_type``, committing both steps.

        Raises:
            TaskNotRegisteredError: Unknown task type.
            BatchAlreadyRunningError: A run for the same day is still RUNNING.
        """
        business_date = business_date or self._clock.today()

        with session_scope(self._session_factory) as session:
            job = self.create_executor(session).start_job(
                task_type, business_date, self._actor_id,
            )

        try:
            with session_scope(self._session_factory) as session:
                return self.create_executor(session).execute_job(
                    job.job_id, self._actor_id,
                )
        except Exception as exc:
            logger.exception(
                "batch_job_crashed",
                extra={"job_id": str(job.job_id), "task_type": task_type},
            )
            with session_scope(self._session_factory) as session:
                self.create_executor(session).fail_job(
                    job.job_id, self._actor_id, f"{type(exc).__name__}: {exc}",
                )
            raise

    def run_monthly_grant(self) -> BatchRunResult:
        return self.run(MONTHLY_GRANT)

    def run_fiscal_annual_grant(self) -> BatchRunResult:
        return self.run(FISCAL_ANNUAL_GRANT)

    def run_attendance_award(self) -> BatchRunResult:
        return self.run(ATTENDANCE_AWARD)

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def task_registry(self) -> TaskRegistry:
        return self._task_registry

    @property
    def actor_id(self) -> UUID:
        return self._actor_id
