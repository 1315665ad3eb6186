"""
Module: leave_kernel.models.ledger
Responsibility: ORM persistence for leave grants, deduction headers, usage
    postings, and the cached per-subject balance.

Architecture position: Kernel > Models.  May import from db/ and domain/ only.

Invariants enforced:
    - Grant amount > 0 and expiration_date >= granted_date (check constraints).
    - Grant idempotency_key is UNIQUE (NULLs allowed for ad-hoc grants).
    - One deduction header per document id (UNIQUE document_id) -- the
      idempotency key of ``LedgerService.deduct``.
    - One usage row per (document, grant) (unique constraint).
    - Grants, deductions and usages are append-only (ORM listeners).
    - The balance row is a cache and may be rewritten freely.

Failure modes:
    - IntegrityError on duplicate idempotency key / document id.
    - ImmutabilityViolationError on UPDATE/DELETE of an append-only row.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column

from leave_kernel.db.base import Base, TrackedBase, UUIDString
from leave_kernel.domain.ledger import (
    Balance,
    DeductionKind,
    GrantApprovalStatus,
    GrantRecord,
    GrantType,
    UsageRecord,
)
from leave_kernel.exceptions import ImmutabilityViolationError

_GRANT_TYPE_SQL = ", ".join(f"'{t.value}'" for t in GrantType)
_DEDUCTION_KIND_SQL = ", ".join(f"'{k.value}'" for k in DeductionKind)


class GrantModel(TrackedBase):
    """A time-bounded entitlement credit of leave days."""

    __tablename__ = "leave_grants"

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_leave_grants_amount_positive"),
        CheckConstraint(
            "expiration_date >= granted_date", name="ck_leave_grants_expiry",
        ),
        CheckConstraint(
            f"grant_type IN ({_GRANT_TYPE_SQL})", name="ck_leave_grants_type",
        ),
        Index("ix_leave_grants_subject_expiry", "subject_id", "expiration_date"),
    )

    subject_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    grant_type: Mapped[str] = mapped_column(String(30), nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    granted_date: Mapped[date] = mapped_column(Date, nullable=False)
    expiration_date: Mapped[date] = mapped_column(Date, nullable=False)
    approval_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=GrantApprovalStatus.APPROVED.value,
    )
    calculation_basis: Mapped[dict[str, Any] | None] = mapped_column(
        JSON, nullable=True,
    )
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(
        String(200), nullable=True, unique=True,
    )
    # Insertion order; FIFO tie-break for grants expiring the same day
    seq: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)

    def to_dto(self) -> GrantRecord:
        return GrantRecord(
            grant_id=self.id,
            subject_id=self.subject_id,
            grant_type=GrantType(self.grant_type),
            amount=self.amount,
            granted_date=self.granted_date,
            expiration_date=self.expiration_date,
            seq=self.seq,
            approval_status=GrantApprovalStatus(self.approval_status),
            calculation_basis=dict(self.calculation_basis or {}),
            reason=self.reason,
            idempotency_key=self.idempotency_key,
        )


class DeductionModel(TrackedBase):
    """Header of one deduction; its document id is the idempotency key."""

    __tablename__ = "leave_deductions"

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_leave_deductions_amount_positive"),
        CheckConstraint(
            f"kind IN ({_DEDUCTION_KIND_SQL})", name="ck_leave_deductions_kind",
        ),
        Index("ix_leave_deductions_subject", "subject_id"),
    )

    document_id: Mapped[UUID] = mapped_column(
        UUIDString(), nullable=False, unique=True,
    )
    subject_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    used_date: Mapped[date] = mapped_column(Date, nullable=False)
    posted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False,
    )


class UsageModel(TrackedBase):
    """A posting that consumes part of one grant."""

    __tablename__ = "leave_usages"

    __table_args__ = (
        UniqueConstraint("document_id", "grant_id", name="uq_leave_usages_document_grant"),
        CheckConstraint("amount > 0", name="ck_leave_usages_amount_positive"),
        Index("ix_leave_usages_grant", "grant_id"),
        Index("ix_leave_usages_subject", "subject_id"),
    )

    deduction_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("leave_deductions.id"), nullable=False,
    )
    document_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    grant_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("leave_grants.id"), nullable=False,
    )
    subject_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    used_date: Mapped[date] = mapped_column(Date, nullable=False)

    def to_dto(self) -> UsageRecord:
        return UsageRecord(
            usage_id=self.id,
            document_id=self.document_id,
            grant_id=self.grant_id,
            amount=self.amount,
            used_date=self.used_date,
        )


class BalanceModel(Base):
    """Read cache of a subject's balance.  Never the source of truth."""

    __tablename__ = "leave_balances"

    subject_id: Mapped[UUID] = mapped_column(
        UUIDString(), nullable=False, unique=True,
    )
    total_days: Mapped[Decimal] = mapped_column(nullable=False)
    used_days: Mapped[Decimal] = mapped_column(nullable=False)
    remaining_days: Mapped[Decimal] = mapped_column(nullable=False)
    expiring_soon_days: Mapped[Decimal] = mapped_column(nullable=False)
    as_of: Mapped[date] = mapped_column(Date, nullable=False)
    recomputed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False,
    )

    def to_dto(self) -> Balance:
        return Balance(
            subject_id=self.subject_id,
            total=self.total_days,
            used=self.used_days,
            remaining=self.remaining_days,
            expiring_soon=self.expiring_soon_days,
            as_of=self.as_of,
        )


# =========================================================================
# Append-only listeners
# =========================================================================


def _append_only(model: type, entity_type: str) -> None:
    @event.listens_for(model, "before_update")
    def _prevent_update(mapper, connection, target):
        raise ImmutabilityViolationError(
            entity_type=entity_type,
            entity_id=str(target.id),
            reason=f"{entity_type} rows are append-only -- cannot modify",
        )

    @event.listens_for(model, "before_delete")
    def _prevent_delete(mapper, connection, target):
        raise ImmutabilityViolationError(
            entity_type=entity_type,
            entity_id=str(target.id),
            reason=f"{entity_type} rows are append-only -- cannot delete",
        )


_append_only(GrantModel, "Grant")
_append_only(DeductionModel, "Deduction")
_append_only(UsageModel, "Usage")
