"""
Module: leave_kernel.models.approval
Responsibility: ORM persistence for documents, their approval steps, and the
    per-step audit rows.

Architecture position: Kernel > Models.  May import from db/ and domain/ only.

Invariants enforced:
    - Document status is one of the lifecycle values (check constraint).
    - Terminal status <=> current_step IS NULL (check constraint).
    - One step per (document, order, approver) (unique constraint).
    - Resolved steps and terminal documents are never updated (ORM listeners).
    - Step audit rows are append-only (ORM listeners).

Failure modes:
    - IntegrityError on a constraint violation.
    - ImmutabilityViolationError on UPDATE of a resolved step or terminal
      document, or on any UPDATE/DELETE of a step audit row.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
    inspect,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from leave_kernel.db.base import TrackedBase, UUIDString
from leave_kernel.domain.approval import (
    ApprovalMode,
    DocumentStatus,
    DocumentView,
    StepStatus,
    StepView,
    TERMINAL_DOCUMENT_STATUSES,
)
from leave_kernel.exceptions import ImmutabilityViolationError

_TERMINAL_SQL = ", ".join(f"'{s.value}'" for s in sorted(TERMINAL_DOCUMENT_STATUSES))
_DOCUMENT_STATUS_SQL = ", ".join(f"'{s.value}'" for s in DocumentStatus)
_STEP_STATUS_SQL = ", ".join(f"'{s.value}'" for s in StepStatus)
_MODE_SQL = ", ".join(f"'{m.value}'" for m in ApprovalMode)


class DocumentModel(TrackedBase):
    """An approvable request (leave, overtime, business trip...)."""

    __tablename__ = "documents"

    __table_args__ = (
        CheckConstraint(
            f"status IN ({_DOCUMENT_STATUS_SQL})",
            name="ck_documents_status",
        ),
        CheckConstraint(
            f"(status IN ({_TERMINAL_SQL}) AND current_step IS NULL)"
            " OR (status = 'pending' AND current_step IS NOT NULL)"
            " OR status = 'draft'",
            name="ck_documents_terminal_step",
        ),
        CheckConstraint("entitlement_amount >= 0", name="ck_documents_amount"),
        Index("ix_documents_subject_status", "subject_id", "status"),
    )

    subject_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    document_type: Mapped[str] = mapped_column(String(50), nullable=False)
    title: Mapped[str | None] = mapped_column(String(200), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    current_step: Mapped[int | None] = mapped_column(Integer, nullable=True)
    entitlement_amount: Mapped[Decimal] = mapped_column(nullable=False)
    approved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    resolved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    steps: Mapped[list[ApprovalStepModel]] = relationship(
        "ApprovalStepModel",
        back_populates="document",
        order_by="ApprovalStepModel.step_order",
    )

    def to_dto(self) -> DocumentView:
        return DocumentView(
            document_id=self.id,
            subject_id=self.subject_id,
            document_type=self.document_type,
            status=DocumentStatus(self.status),
            current_step=self.current_step,
            entitlement_amount=self.entitlement_amount,
            title=self.title,
            created_at=self.created_at,
            approved_at=self.approved_at,
            resolved_at=self.resolved_at,
            rejection_reason=self.rejection_reason,
        )


class ApprovalStepModel(TrackedBase):
    """One approver's checkpoint on a document."""

    __tablename__ = "approval_steps"

    __table_args__ = (
        UniqueConstraint(
            "document_id", "step_order", "approver_id",
            name="uq_approval_steps_order_approver",
        ),
        CheckConstraint(
            f"status IN ({_STEP_STATUS_SQL})", name="ck_approval_steps_status",
        ),
        CheckConstraint(f"mode IN ({_MODE_SQL})", name="ck_approval_steps_mode"),
        CheckConstraint("step_order >= 1", name="ck_approval_steps_order"),
        Index("ix_approval_steps_document_order", "document_id", "step_order"),
        Index("ix_approval_steps_approver_status", "approver_id", "status"),
        Index("ix_approval_steps_delegate_status", "delegate_id", "status"),
    )

    document_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("documents.id"), nullable=False,
    )
    step_order: Mapped[int] = mapped_column(Integer, nullable=False)
    approver_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    mode: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    is_last: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    approved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    delegate_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    acted_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    document: Mapped[DocumentModel] = relationship(
        "DocumentModel", back_populates="steps",
    )

    def to_dto(self) -> StepView:
        return StepView(
            step_id=self.id,
            document_id=self.document_id,
            order=self.step_order,
            approver_id=self.approver_id,
            mode=ApprovalMode(self.mode),
            status=StepStatus(self.status),
            is_last=self.is_last,
            approved_at=self.approved_at,
            delegate_id=self.delegate_id,
            acted_by_id=self.acted_by_id,
        )


class StepAuditModel(TrackedBase):
    """Append-only record of one step transition (actor, old/new status)."""

    __tablename__ = "approval_step_audits"

    __table_args__ = (
        Index("ix_step_audits_document", "document_id"),
        Index("ix_step_audits_step", "step_id"),
    )

    step_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("approval_steps.id"), nullable=False,
    )
    document_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("documents.id"), nullable=False,
    )
    action: Mapped[str] = mapped_column(String(30), nullable=False)
    actor_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    old_status: Mapped[str] = mapped_column(String(20), nullable=False)
    new_status: Mapped[str] = mapped_column(String(20), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False,
    )
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)


# =========================================================================
# Immutability listeners
# =========================================================================


def _previous_value(target, attribute: str):
    history = inspect(target).attrs[attribute].history
    previous = history.deleted or history.unchanged
    return previous[0] if previous else None


@event.listens_for(DocumentModel, "before_update")
def prevent_terminal_document_update(mapper, connection, target):
    """A document that reached a terminal status is frozen."""
    previous = _previous_value(target, "status")
    if previous in {s.value for s in TERMINAL_DOCUMENT_STATUSES}:
        raise ImmutabilityViolationError(
            entity_type="Document",
            entity_id=str(target.id),
            reason=f"Document is {previous} -- cannot modify",
        )


@event.listens_for(DocumentModel, "before_delete")
def prevent_document_delete(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type="Document",
        entity_id=str(target.id),
        reason="Documents are superseded by status transitions, never deleted",
    )


@event.listens_for(ApprovalStepModel, "before_update")
def prevent_resolved_step_update(mapper, connection, target):
    """An approved or rejected step is frozen."""
    previous = _previous_value(target, "status")
    if previous in (StepStatus.APPROVED.value, StepStatus.REJECTED.value):
        raise ImmutabilityViolationError(
            entity_type="ApprovalStep",
            entity_id=str(target.id),
            reason=f"Step is {previous} -- cannot modify",
        )


@event.listens_for(ApprovalStepModel, "before_delete")
def prevent_step_delete(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type="ApprovalStep",
        entity_id=str(target.id),
        reason="Approval steps cannot be deleted",
    )


@event.listens_for(StepAuditModel, "before_update")
def prevent_step_audit_update(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type="StepAudit",
        entity_id=str(target.id),
        reason="Step audit rows are append-only -- cannot modify",
    )


@event.listens_for(StepAuditModel, "before_delete")
def prevent_step_audit_delete(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type="StepAudit",
        entity_id=str(target.id),
        reason="Step audit rows are append-only -- cannot delete",
    )
