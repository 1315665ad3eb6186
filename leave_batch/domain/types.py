"""
leave_batch.domain.types -- Pure frozen dataclasses for the grant jobs.

ZERO I/O.  Frozen dataclasses with enum status fields and tuples for
immutable collections.

Invariants enforced:
    - All DTOs are frozen (immutable).
    - BatchJob carries (task_type, business_date, attempt) and the matching
      idempotency key.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any
from uuid import UUID


# =============================================================================
# Status enums
# =============================================================================


class BatchJobStatus(str, Enum):
    """Job-level lifecycle status."""

    RUNNING = "running"  # Execution in progress
    COMPLETED = "completed"  # Every subject granted or skipped
    PARTIALLY_COMPLETED = "partially_completed"  # Some subjects failed
    FAILED = "failed"  # Subject list could not be read, or the run crashed


class BatchItemStatus(str, Enum):
    """Per-subject outcome within a run."""

    SUCCEEDED = "succeeded"  # Grant inserted
    SKIPPED = "skipped"  # Not eligible, or already granted
    FAILED = "failed"  # Error recorded against the subject


# =============================================================================
# Job DTOs
# =============================================================================


@dataclass(frozen=True)
class BatchJob:
    """Immutable snapshot of one run of a grant job."""

    job_id: UUID
    task_type: str  # Registered task key (e.g., "leave.monthly_grant")
    business_date: date
    attempt: int
    status: BatchJobStatus
    idempotency_key: str  # task_type:business_date:attempt, UNIQUE
    total_items: int = 0
    granted_items: int = 0
    skipped_items: int = 0
    failed_items: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_by: UUID | None = None
    error_summary: str | None = None
    seq: int | None = None

    @property
    def is_running(self) -> bool:
        return self.status == BatchJobStatus.RUNNING


@dataclass(frozen=True)
class BatchItemResult:
    """Outcome for one subject.

    ``item_key`` is the subject id.  ``result_data`` holds the grant id on
    success and the skip reason otherwise.
    """

    item_index: int
    item_key: str
    status: BatchItemStatus
    error_code: str | None = None
    error_message: str | None = None
    result_data: dict[str, Any] | None = None
    duration_ms: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass(frozen=True)
class BatchRunResult:
    """Immutable result of executing one run.

    Returned by ``BatchExecutor.execute_job()`` and the orchestrator entry
    points.
    """

    job_id: UUID
    task_type: str
    business_date: date
    attempt: int
    status: BatchJobStatus
    total_items: int
    granted: int
    skipped: int
    failed: int
    item_results: tuple[BatchItemResult, ...] = ()
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int = 0
    error_summary: str | None = None

    def items_with_status(self, status: BatchItemStatus) -> tuple[BatchItemResult, ...]:
        return tuple(r for r in self.item_results if r.status == status)
