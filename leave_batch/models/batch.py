"""
ORM models for grant job run records.

Contract:
    BatchJobModel and BatchItemModel persist run state and per-subject
    outcomes.  Each has ``to_dto()`` / ``from_dto()`` round-trip methods.

Architecture: leave_batch/models.  Imports from leave_kernel.db.base only.

Invariants enforced:
    - (task_type, business_date, attempt) is UNIQUE on BatchJobModel, and so
      is the derived ``idempotency_key``.
    - ``seq`` allocated via SequenceService (not set by ORM).
"""

from __future__ import annotations

from datetime import date, datetime
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import (
    JSON,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from leave_kernel.db.base import TrackedBase, UUIDString

if TYPE_CHECKING:
    from leave_batch.domain.types import BatchItemResult, BatchJob


class BatchJobModel(TrackedBase):
    """Persistent record of one run of a grant job."""

    __tablename__ = "batch_jobs"

    __table_args__ = (
        UniqueConstraint(
            "task_type", "business_date", "attempt",
            name="uq_batch_jobs_task_date_attempt",
        ),
        Index("ix_batch_jobs_status", "status"),
        Index("ix_batch_jobs_task_date", "task_type", "business_date"),
    )

    task_type: Mapped[str] = mapped_column(String(100), nullable=False)
    business_date: Mapped[date] = mapped_column(Date, nullable=False)
    attempt: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    idempotency_key: Mapped[str] = mapped_column(
        String(200), nullable=False, unique=True,
    )
    total_items: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    granted_items: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    skipped_items: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed_items: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    seq: Mapped[int | None] = mapped_column(nullable=True, unique=True)
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    error_summary: Mapped[str | None] = mapped_column(Text, nullable=True)

    items: Mapped[list["BatchItemModel"]] = relationship(
        "BatchItemModel",
        back_populates="job",
        foreign_keys="BatchItemModel.job_id",
        order_by="BatchItemModel.item_index",
    )

    def to_dto(self) -> BatchJob:
        from leave_batch.domain.types import BatchJob, BatchJobStatus

        return BatchJob(
            job_id=self.id,
            task_type=self.task_type,
            business_date=self.business_date,
            attempt=self.attempt,
            status=BatchJobStatus(self.status),
            idempotency_key=self.idempotency_key,
            total_items=self.total_items,
            granted_items=self.granted_items,
            skipped_items=self.skipped_items,
            failed_items=self.failed_items,
            started_at=self.started_at,
            completed_at=self.completed_at,
            created_by=self.created_by_id,
            error_summary=self.error_summary,
            seq=self.seq,
        )

    @classmethod
    def from_dto(cls, dto: BatchJob, created_by_id: UUID) -> BatchJobModel:
        return cls(
            id=dto.job_id,
            task_type=dto.task_type,
            business_date=dto.business_date,
            attempt=dto.attempt,
            status=dto.status.value,
            idempotency_key=dto.idempotency_key,
            total_items=dto.total_items,
            granted_items=dto.granted_items,
            skipped_items=dto.skipped_items,
            failed_items=dto.failed_items,
            seq=dto.seq,
            started_at=dto.started_at,
            completed_at=dto.completed_at,
            error_summary=dto.error_summary,
            created_by_id=created_by_id,
        )


class BatchItemModel(TrackedBase):
    """Outcome for one subject within a run."""

    __tablename__ = "batch_items"

    __table_args__ = (
        Index("ix_batch_items_job_status", "job_id", "status"),
        Index("ix_batch_items_item_key", "item_key"),
    )

    job_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("batch_jobs.id", ondelete="CASCADE"),
        nullable=False,
    )
    item_index: Mapped[int] = mapped_column(Integer, nullable=False)
    item_key: Mapped[str] = mapped_column(String(200), nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    error_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    result_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    duration_ms: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    job: Mapped["BatchJobModel"] = relationship(
        "BatchJobModel",
        back_populates="items",
        foreign_keys=[job_id],
    )

    def to_dto(self) -> BatchItemResult:
        from leave_batch.domain.types import BatchItemResult, BatchItemStatus

        return BatchItemResult(
            item_index=self.item_index,
            item_key=self.item_key,
            status=BatchItemStatus(self.status),
            error_code=self.error_code,
            error_message=self.error_message,
            result_data=self.result_data,
            duration_ms=self.duration_ms,
            started_at=self.started_at,
            completed_at=self.completed_at,
        )

    @classmethod
    def from_dto(
        cls, dto: BatchItemResult, job_id: UUID, created_by_id: UUID,
    ) -> BatchItemModel:
        return cls(
            job_id=job_id,
            item_index=dto.item_index,
            item_key=dto.item_key,
            status=dto.status.value,
            error_code=dto.error_code,
            error_message=dto.error_message,
            result_data=dto.result_data,
            duration_ms=dto.duration_ms,
            started_at=dto.started_at,
            completed_at=dto.completed_at,
            created_by_id=created_by_id,
        )
