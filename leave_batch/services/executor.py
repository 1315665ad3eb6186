"""
BatchExecutor -- run records, parallel evaluation, SAVEPOINT-per-subject insertion.

Contract:
    Orchestrates one run of a grant task: start (new attempt, concurrency
    guard), execute (bounded chunks, evaluation on a worker pool, insertion
    per subject in its own SAVEPOINT), fail, query.

Architecture: leave_batch/services.  Imports from leave_batch.domain,
    leave_batch.models, leave_batch.tasks, and kernel services.

Invariants enforced:
    - SAVEPOINT isolation per subject (one failure doesn't abort the run).
    - At most one RUNNING attempt per (task_type, business_date); the latest
      attempt row is locked FOR UPDATE while checking.
    - Evaluation threads never touch the session; all writes happen on the
      calling thread.
    - All timestamps from the injected Clock.
    - One summary audit event per run.
"""

from __future__ import annotations

import time
from collections.abc import Iterator, Sequence
from concurrent.futures import ThreadPoolExecutor
from datetime import date
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from leave_kernel.domain.clock import Clock, SystemClock
from leave_kernel.domain.collaborators import SubjectDirectory
from leave_kernel.domain.entitlement import EntitlementDecision
from leave_kernel.exceptions import BatchAlreadyRunningError, BatchJobNotFoundError
from leave_kernel.logging_config import LogContext, get_logger
from leave_kernel.services.auditor_service import AuditorService
from leave_kernel.services.ledger_service import LedgerService
from leave_kernel.services.sequence_service import SequenceService
from leave_kernel.utils.idempotency import job_idempotency_key

from leave_batch.domain.types import (
    BatchItemResult,
    BatchItemStatus,
    BatchJob,
    BatchJobStatus,
    BatchRunResult,
)
from leave_batch.models.batch import BatchItemModel, BatchJobModel
from leave_batch.tasks.base import BatchItemInput, BatchTask, TaskRegistry

logger = get_logger("batch.executor")


def chunked(items: Sequence[BatchItemInput], size: int) -> Iterator[Sequence[BatchItemInput]]:
    """Consecutive slices of at most ``size`` items."""
    for start in range(0, len(items), size):
        yield items[start:start + size]


class BatchExecutor:
    """Grant job executor.

    Contract:
        - ``start_job()`` creates the next RUNNING attempt for a task and date.
        - ``execute_job()`` runs the subjects of a RUNNING attempt.
        - ``fail_job()`` marks a RUNNING attempt FAILED.
        - ``get_job()`` / ``get_job_items()`` / ``latest_job()`` for queries.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
        - Does NOT schedule anything -- an external scheduler invokes the
          orchestrator entry points.
    """

    def __init__(
        self,
        session: Session,
        task_registry: TaskRegistry,
        ledger: LedgerService,
        directory: SubjectDirectory,
        clock: Clock | None = None,
        auditor_service: AuditorService | None = None,
        sequence_service: SequenceService | None = None,
        batch_size: int = 50,
        max_workers: int = 8,
    ):
        if batch_size < 1 or max_workers < 1:
            raise ValueError("batch_size and max_workers must be >= 1")
        self._session = session
        self._task_registry = task_registry
        self._ledger = ledger
        self._directory = directory
        self._clock = clock or SystemClock()
        self._auditor = auditor_service or AuditorService(session, self._clock)
        self._sequence = sequence_service or SequenceService(session)
        self._batch_size = batch_size
        self._max_workers = max_workers

    # -------------------------------------------------------------------------
    # Start
    # -------------------------------------------------------------------------

    def start_job(
        self,
        task_type: str,
        business_date: date,
        actor_id: UUID,
    ) -> BatchJob:
        """Create the next RUNNING attempt for ``task_type`` on ``business_date``.

        Raises:
            TaskNotRegisteredError: If task_type is not in the registry.
            BatchAlreadyRunningError: If the latest attempt is still RUNNING,
                or another invocation created the same attempt first.
        """
        self._task_registry.get(task_type)

        latest = self._session.execute(
            select(BatchJobModel)
            .where(
                BatchJobModel.task_type == task_type,
                BatchJobModel.business_date == business_date,
            )
            .order_by(BatchJobModel.attempt.desc())
            .limit(1)
            .with_for_update()
        ).scalar_one_or_none()

        if latest is not None and latest.status == BatchJobStatus.RUNNING.value:
            raise BatchAlreadyRunningError(task_type, business_date.isoformat())

        attempt = latest.attempt + 1 if latest is not None else 1
        now = self._clock.now()
        dto = BatchJob(
            job_id=uuid4(),
            task_type=task_type,
            business_date=business_date,
            attempt=attempt,
            status=BatchJobStatus.RUNNING,
            idempotency_key=job_idempotency_key(task_type, business_date, attempt),
            started_at=now,
            created_by=actor_id,
            seq=self._sequence.next_value(SequenceService.BATCH_JOB),
        )

        model = BatchJobModel.from_dto(dto, created_by_id=actor_id)
        model.created_at = now
        savepoint = self._session.begin_nested()
        try:
            self._session.add(model)
            self._session.flush()
            savepoint.commit()
        except IntegrityError:
            savepoint.rollback()
            raise BatchAlreadyRunningError(task_type, business_date.isoformat()) from None

        logger.info(
            "batch_job_started",
            extra={
                "job_id": str(dto.job_id),
                "task_type": task_type,
                "business_date": business_date.isoformat(),
                "attempt": attempt,
            },
        )
        return dto

    # -------------------------------------------------------------------------
    # Execute
    # -------------------------------------------------------------------------

    def execute_job(self, job_id: UUID, actor_id: UUID) -> BatchRunResult:
        """Run every subject of a RUNNING attempt.

        Raises:
            BatchJobNotFoundError: If job_id does not exist.
            BatchAlreadyRunningError: If the job is not RUNNING (it already
                finished).
        """
        start_time = time.monotonic()
        job_model = self._lock_job(job_id)
        if job_model.status != BatchJobStatus.RUNNING.value:
            raise BatchAlreadyRunningError(
                job_model.task_type, job_model.business_date.isoformat(),
            )

        task = self._task_registry.get(job_model.task_type)
        business_date = job_model.business_date

        with LogContext.bind(job_name=task.task_type):
            try:
                items = task.prepare_items(self._directory, business_date)
            except Exception as exc:
                logger.error(
                    "batch_prepare_failed",
                    extra={"job_id": str(job_id), "error": str(exc)},
                )
                return self.fail_job(
                    job_id, actor_id, f"prepare_items failed: {exc}",
                    start_time=start_time,
                )

            job_model.total_items = len(items)
            self._session.flush()

            item_results: list[BatchItemResult] = []
            for chunk in chunked(items, self._batch_size):
                decisions = self._evaluate_chunk(task, chunk, business_date)
                for item in chunk:
                    item_result = self._execute_item(
                        task, item, decisions[item.item_index], actor_id,
                    )
                    item_results.append(item_result)
                    item_model = BatchItemModel.from_dto(
                        item_result, job_id=job_id, created_by_id=actor_id,
                    )
                    item_model.created_at = self._clock.now()
                    self._session.add(item_model)
                self._session.flush()

            return self._complete_job(job_model, item_results, actor_id, start_time)

    def _evaluate_chunk(
        self,
        task: BatchTask,
        chunk: Sequence[BatchItemInput],
        business_date: date,
    ) -> dict[int, EntitlementDecision | BaseException]:
        """Evaluate eligibility for a chunk on the worker pool.

        Each entry is the decision, or the exception its evaluation raised.
        """
        workers = min(self._max_workers, len(chunk))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {
                item.item_index: pool.submit(
                    task.evaluate_item, item, self._directory, business_date,
                )
                for item in chunk
            }
            outcomes: dict[int, EntitlementDecision | BaseException] = {}
            for index, future in futures.items():
                error = future.exception()
                outcomes[index] = error if error is not None else future.result()
        return outcomes

    def _execute_item(
        self,
        task: BatchTask,
        item: BatchItemInput,
        decision: EntitlementDecision | BaseException,
        actor_id: UUID,
    ) -> BatchItemResult:
        item_start = time.monotonic()
        started_at = self._clock.now()

        if isinstance(decision, BaseException):
            return self._failed_item(item, decision, started_at, item_start)

        savepoint = self._session.begin_nested()
        try:
            result = task.execute_item(item, decision, self._ledger, actor_id)
            if result.status == BatchItemStatus.SUCCEEDED:
                savepoint.commit()
            else:
                savepoint.rollback()
        except Exception as exc:
            savepoint.rollback()
            return self._failed_item(item, exc, started_at, item_start)

        if result.status == BatchItemStatus.FAILED:
            logger.warning(
                "batch_item_failed",
                extra={
                    "item_key": item.item_key,
                    "error_code": result.error_code,
                    "error": result.error_message,
                },
            )

        return BatchItemResult(
            item_index=item.item_index,
            item_key=item.item_key,
            status=result.status,
            error_code=result.error_code,
            error_message=result.error_message,
            result_data=result.result_data,
            duration_ms=int((time.monotonic() - item_start) * 1000),
            started_at=started_at,
            completed_at=self._clock.now(),
        )

    def _failed_item(
        self,
        item: BatchItemInput,
        exc: BaseException,
        started_at,
        item_start: float,
    ) -> BatchItemResult:
        error_code = getattr(exc, "code", "UNHANDLED_EXCEPTION")
        logger.warning(
            "batch_item_failed",
            extra={
                "item_key": item.item_key,
                "error_code": error_code,
                "error": str(exc),
            },
        )
        return BatchItemResult(
            item_index=item.item_index,
            item_key=item.item_key,
            status=BatchItemStatus.FAILED,
            error_code=error_code,
            error_message=str(exc),
            duration_ms=int((time.monotonic() - item_start) * 1000),
            started_at=started_at,
            completed_at=self._clock.now(),
        )

    def _complete_job(
        self,
        job_model: BatchJobModel,
        item_results: list[BatchItemResult],
        actor_id: UUID,
        start_time: float,
    ) -> BatchRunResult:
        granted = sum(1 for r in item_results if r.status == BatchItemStatus.SUCCEEDED)
        skipped = sum(1 for r in item_results if r.status == BatchItemStatus.SKIPPED)
        failed = sum(1 for r in item_results if r.status == BatchItemStatus.FAILED)

        job_model.granted_items = granted
        job_model.skipped_items = skipped
        job_model.failed_items = failed
        job_model.status = (
            BatchJobStatus.COMPLETED.value
            if failed == 0
            else BatchJobStatus.PARTIALLY_COMPLETED.value
        )
        if failed:
            job_model.error_summary = f"{failed} subject(s) failed"
        completed_at = self._clock.now()
        job_model.completed_at = completed_at
        self._session.flush()

        total_duration = int((time.monotonic() - start_time) * 1000)
        self._auditor.record_batch_job_completed(
            job_id=job_model.id,
            task_type=job_model.task_type,
            business_date=job_model.business_date,
            granted=granted,
            skipped=skipped,
            failed=failed,
            duration_ms=total_duration,
            actor_id=actor_id,
        )
        logger.info(
            "batch_job_completed",
            extra={
                "job_id": str(job_model.id),
                "task_type": job_model.task_type,
                "business_date": job_model.business_date.isoformat(),
                "attempt": job_model.attempt,
                "granted": granted,
                "skipped": skipped,
                "failed": failed,
                "duration_ms": total_duration,
            },
        )

        return BatchRunResult(
            job_id=job_model.id,
            task_type=job_model.task_type,
            business_date=job_model.business_date,
            attempt=job_model.attempt,
            status=BatchJobStatus(job_model.status),
            total_items=len(item_results),
            granted=granted,
            skipped=skipped,
            failed=failed,
            item_results=tuple(item_results),
            started_at=job_model.started_at,
            completed_at=completed_at,
            duration_ms=total_duration,
            error_summary=job_model.error_summary,
        )

    # -------------------------------------------------------------------------
    # Fail
    # -------------------------------------------------------------------------

    def fail_job(
        self,
        job_id: UUID,
        actor_id: UUID,
        error_summary: str,
        start_time: float | None = None,
    ) -> BatchRunResult:
        """Mark a RUNNING job FAILED and return its result.

        Raises:
            BatchJobNotFoundError: If job_id does not exist.
        """
        job_model = self._lock_job(job_id)
        job_model.status = BatchJobStatus.FAILED.value
        job_model.completed_at = self._clock.now()
        job_model.error_summary = error_summary
        self._session.flush()

        total_duration = (
            int((time.monotonic() - start_time) * 1000) if start_time is not None else 0
        )
        self._auditor.record_batch_job_failed(
            job_id=job_model.id,
            task_type=job_model.task_type,
            business_date=job_model.business_date,
            error_summary=error_summary,
            actor_id=actor_id,
        )
        logger.error(
            "batch_job_failed",
            extra={
                "job_id": str(job_model.id),
                "task_type": job_model.task_type,
                "business_date": job_model.business_date.isoformat(),
                "error_summary": error_summary,
            },
        )

        return BatchRunResult(
            job_id=job_model.id,
            task_type=job_model.task_type,
            business_date=job_model.business_date,
            attempt=job_model.attempt,
            status=BatchJobStatus.FAILED,
            total_items=0,
            granted=0,
            skipped=0,
            failed=0,
            started_at=job_model.started_at,
            completed_at=job_model.completed_at,
            duration_ms=total_duration,
            error_summary=error_summary,
        )

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_job(self, job_id: UUID) -> BatchJob:
        """Get a run record by ID.

        Raises:
            BatchJobNotFoundError: If job_id does not exist.
        """
        model = self._session.get(BatchJobModel, job_id)
        if model is None:
            raise BatchJobNotFoundError(str(job_id))
        return model.to_dto()

    def get_job_items(self, job_id: UUID) -> tuple[BatchItemResult, ...]:
        """Get all per-subject outcomes for a run."""
        models = self._session.execute(
            select(BatchItemModel)
            .where(BatchItemModel.job_id == job_id)
            .order_by(BatchItemModel.item_index)
        ).scalars().all()
        return tuple(m.to_dto() for m in models)

    def latest_job(self, task_type: str, business_date: date) -> BatchJob | None:
        model = self._session.execute(
            select(BatchJobModel)
            .where(
                BatchJobModel.task_type == task_type,
                BatchJobModel.business_date == business_date,
            )
            .order_by(BatchJobModel.attempt.desc())
            .limit(1)
        ).scalar_one_or_none()
        return model.to_dto() if model is not None else None

    def _lock_job(self, job_id: UUID) -> BatchJobModel:
        job_model = self._session.execute(
            select(BatchJobModel)
            .where(BatchJobModel.id == job_id)
            .with_for_update()
        ).scalar_one_or_none()
        if job_model is None:
            raise BatchJobNotFoundError(str(job_id))
        return job_model
