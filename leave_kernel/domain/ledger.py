"""
Ledger domain types (``leave_kernel.domain.ledger``).

Responsibility
--------------
Pure value objects and calculations for the leave ledger: grant types, the
FIFO allocation of a deduction across grants, and balance arithmetic.  The
LedgerService feeds these functions rows it read under lock and persists
what they return.

Architecture position
---------------------
**Kernel domain layer** -- ZERO I/O.

Invariants enforced
-------------------
* FIFO -- ``allocate_fifo`` consumes the soonest-expiring grant first,
  ties broken by insertion sequence.
* No overdraw -- an allocation never exceeds a grant's available amount;
  any remainder is reported as ``shortfall`` and nothing is partially
  applied by the caller.
* Decimal only -- every amount is ``Decimal``.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

ZERO = Decimal("0")


class GrantType(str, Enum):
    """Where a grant came from."""

    MONTHLY = "monthly"
    FISCAL_ANNUAL = "fiscal-annual"
    ATTENDANCE_AWARD = "attendance-award"
    OVERTIME_AWARD = "overtime-award"
    MANUAL = "manual"


class GrantApprovalStatus(str, Enum):
    """Grants are not separately approved; every inserted grant is approved."""

    APPROVED = "approved"


class DeductionKind(str, Enum):
    """What caused a deduction."""

    DOCUMENT = "document"
    MANUAL = "manual"


# =========================================================================
# Records
# =========================================================================


@dataclass(frozen=True)
class GrantRecord:
    """Immutable snapshot of a grant row."""

    grant_id: UUID
    subject_id: UUID
    grant_type: GrantType
    amount: Decimal
    granted_date: date
    expiration_date: date
    seq: int
    approval_status: GrantApprovalStatus = GrantApprovalStatus.APPROVED
    calculation_basis: dict[str, Any] = field(default_factory=dict)
    reason: str | None = None
    idempotency_key: str | None = None

    def is_active(self, as_of: date) -> bool:
        return (
            self.approval_status == GrantApprovalStatus.APPROVED
            and self.expiration_date >= as_of
        )


@dataclass(frozen=True)
class UsageRecord:
    """Immutable snapshot of one usage posting."""

    usage_id: UUID
    document_id: UUID
    grant_id: UUID
    amount: Decimal
    used_date: date


@dataclass(frozen=True)
class GrantResult:
    """Outcome of ``LedgerService.issue_grant``.

    ``created`` is False when the idempotency key matched an existing grant;
    ``grant`` is then the existing row.
    """

    grant: GrantRecord
    created: bool


# =========================================================================
# FIFO allocation
# =========================================================================


@dataclass(frozen=True)
class GrantSlice:
    """A grant as seen by the allocator: what is still available on it."""

    grant_id: UUID
    expiration_date: date
    seq: int
    available: Decimal

    @property
    def fifo_key(self) -> tuple[date, int]:
        return (self.expiration_date, self.seq)


@dataclass(frozen=True)
class Allocation:
    """Amount taken from one grant."""

    grant_id: UUID
    amount: Decimal


@dataclass(frozen=True)
class AllocationPlan:
    allocations: tuple[Allocation, ...]
    shortfall: Decimal

    @property
    def is_complete(self) -> bool:
        return self.shortfall == ZERO

    @property
    def allocated(self) -> Decimal:
        return sum((a.amount for a in self.allocations), ZERO)


def allocate_fifo(candidates: Iterable[GrantSlice], amount: Decimal) -> AllocationPlan:
    """Greedily consume ``amount`` from grants in FIFO order.

    Slices with nothing available are skipped.  If the candidates cannot
    cover ``amount`` the plan reports the uncovered remainder as
    ``shortfall``; it is the caller's job to refuse to post such a plan.
    """
    remaining = amount
    allocations: list[Allocation] = []
    for candidate in sorted(candidates, key=lambda c: c.fifo_key):
        if remaining <= ZERO:
            break
        if candidate.available <= ZERO:
            continue
        take = min(remaining, candidate.available)
        allocations.append(Allocation(grant_id=candidate.grant_id, amount=take))
        remaining -= take
    return AllocationPlan(allocations=tuple(allocations), shortfall=max(remaining, ZERO))


# =========================================================================
# Deduction and balance
# =========================================================================


@dataclass(frozen=True)
class DeductionResult:
    """Outcome of a deduction.

    ``already_posted`` is True when the document had been deducted before;
    ``allocations`` then describes the earlier posting and nothing new was
    written.
    """

    document_id: UUID
    subject_id: UUID
    amount: Decimal
    allocations: tuple[Allocation, ...]
    already_posted: bool
    remaining: Decimal
    kind: DeductionKind = DeductionKind.DOCUMENT


@dataclass(frozen=True)
class Balance:
    """Total/used/remaining days over the grants active on ``as_of``."""

    subject_id: UUID
    total: Decimal
    used: Decimal
    remaining: Decimal
    expiring_soon: Decimal
    as_of: date

    def as_dict(self) -> dict[str, Any]:
        return {
            "subject_id": str(self.subject_id),
            "total": self.total,
            "used": self.used,
            "remaining": self.remaining,
            "expiring_soon": self.expiring_soon,
            "as_of": self.as_of.isoformat(),
        }


def compute_balance(
    subject_id: UUID,
    grants: Sequence[GrantRecord],
    used_by_grant: dict[UUID, Decimal],
    as_of: date,
    expiring_soon_days: int = 30,
) -> Balance:
    """Derive a balance from grant rows and per-grant usage sums.

    Expired grants, and the usage against them, drop out of all three
    figures.  ``expiring_soon`` is the unused part of active grants that
    expire within ``expiring_soon_days`` of ``as_of``.
    """
    horizon = as_of + timedelta(days=expiring_soon_days)
    total = used = expiring = ZERO
    for grant in grants:
        if not grant.is_active(as_of):
            continue
        grant_used = used_by_grant.get(grant.grant_id, ZERO)
        total += grant.amount
        used += grant_used
        if grant.expiration_date <= horizon:
            expiring += max(grant.amount - grant_used, ZERO)
    return Balance(
        subject_id=subject_id,
        total=total,
        used=used,
        remaining=total - used,
        expiring_soon=expiring,
        as_of=as_of,
    )
