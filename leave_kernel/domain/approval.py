"""
Approval domain types (``leave_kernel.domain.approval``).

Responsibility
--------------
Pure value objects for the document approval engine.  Defines the document
and step lifecycle state machines, the tagged approval-stage model, the
planner that flattens an approver line into persisted steps, and the DTOs
returned to callers.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports from
``db/``, ``models/``, ``services/`` or outer packages.

Invariants enforced
-------------------
* Document lifecycle -- ``DOCUMENT_TRANSITIONS`` defines the only valid
  status transitions.  Terminal states have no outgoing edges.
* Step lifecycle -- ``STEP_TRANSITIONS``: waiting -> pending -> approved |
  rejected.
* Terminal <=> no current step -- ``DocumentView.is_consistent``.
* Stage shape -- an order holding several approvers is an agreement stage;
  an approver appears at most once per order.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from leave_kernel.domain.ledger import DeductionResult
from leave_kernel.exceptions import InvalidApprovalLineError


# =========================================================================
# Lifecycles
# =========================================================================


class DocumentStatus(str, Enum):
    """Document lifecycle states."""

    DRAFT = "draft"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


DOCUMENT_TRANSITIONS: dict[DocumentStatus, frozenset[DocumentStatus]] = {
    DocumentStatus.DRAFT: frozenset({
        DocumentStatus.PENDING,
        DocumentStatus.CANCELLED,
    }),
    DocumentStatus.PENDING: frozenset({
        DocumentStatus.APPROVED,
        DocumentStatus.REJECTED,
        DocumentStatus.CANCELLED,
    }),
    DocumentStatus.APPROVED: frozenset(),
    DocumentStatus.REJECTED: frozenset(),
    DocumentStatus.CANCELLED: frozenset(),
}

TERMINAL_DOCUMENT_STATUSES: frozenset[DocumentStatus] = frozenset({
    DocumentStatus.APPROVED,
    DocumentStatus.REJECTED,
    DocumentStatus.CANCELLED,
})


class StepStatus(str, Enum):
    """Approval step states."""

    WAITING = "waiting"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


STEP_TRANSITIONS: dict[StepStatus, frozenset[StepStatus]] = {
    StepStatus.WAITING: frozenset({StepStatus.PENDING}),
    StepStatus.PENDING: frozenset({StepStatus.APPROVED, StepStatus.REJECTED}),
    StepStatus.APPROVED: frozenset(),
    StepStatus.REJECTED: frozenset(),
}


class ApprovalMode(str, Enum):
    """How the approvers at one order resolve it."""

    SINGLE = "single"
    AGREEMENT = "agreement"


def is_valid_document_transition(
    current: DocumentStatus, target: DocumentStatus,
) -> bool:
    return target in DOCUMENT_TRANSITIONS.get(current, frozenset())


def is_valid_step_transition(current: StepStatus, target: StepStatus) -> bool:
    return target in STEP_TRANSITIONS.get(current, frozenset())


# =========================================================================
# Approval line -> stages -> planned steps
# =========================================================================


@dataclass(frozen=True)
class ApproverSpec:
    """One entry of the approver line supplied at submission.

    ``mode`` may be omitted; an order with several approvers is always an
    agreement order.
    """

    approver_id: UUID
    order: int
    mode: ApprovalMode | None = None


@dataclass(frozen=True)
class SingleStage:
    """An order resolved by one approver."""

    order: int
    approver_id: UUID

    @property
    def mode(self) -> ApprovalMode:
        return ApprovalMode.SINGLE

    @property
    def approver_ids(self) -> tuple[UUID, ...]:
        return (self.approver_id,)


@dataclass(frozen=True)
class AgreementStage:
    """An order resolved only when every listed approver has approved."""

    order: int
    approver_ids: tuple[UUID, ...]

    @property
    def mode(self) -> ApprovalMode:
        return ApprovalMode.AGREEMENT


ApprovalStage = SingleStage | AgreementStage


@dataclass(frozen=True)
class PlannedStep:
    """A step row as it will be persisted at submission."""

    order: int
    approver_id: UUID
    mode: ApprovalMode
    status: StepStatus
    is_last: bool


def build_stages(approver_line: Sequence[ApproverSpec]) -> tuple[ApprovalStage, ...]:
    """Group an approver line into ordered stages.

    Raises:
        InvalidApprovalLineError: empty line, order < 1, an approver listed
            twice at one order, or ``single`` declared on a shared order.
    """
    if not approver_line:
        raise InvalidApprovalLineError("at least one approver is required")

    by_order: dict[int, list[ApproverSpec]] = {}
    for spec in approver_line:
        if spec.order < 1:
            raise InvalidApprovalLineError(f"order must be >= 1, got {spec.order}")
        by_order.setdefault(spec.order, []).append(spec)

    stages: list[ApprovalStage] = []
    for order in sorted(by_order):
        specs = by_order[order]
        approver_ids = tuple(s.approver_id for s in specs)
        if len(set(approver_ids)) != len(approver_ids):
            raise InvalidApprovalLineError(
                f"approver listed more than once at order {order}"
            )
        declared = {s.mode for s in specs if s.mode is not None}
        if len(specs) > 1 and ApprovalMode.SINGLE in declared:
            raise InvalidApprovalLineError(
                f"order {order} has {len(specs)} approvers but is marked single"
            )
        if len(specs) == 1 and ApprovalMode.AGREEMENT not in declared:
            stages.append(SingleStage(order=order, approver_id=approver_ids[0]))
        else:
            stages.append(AgreementStage(order=order, approver_ids=approver_ids))
    return tuple(stages)


def plan_steps(stages: Sequence[ApprovalStage]) -> tuple[PlannedStep, ...]:
    """Flatten stages into one step per approver.

    The lowest order starts ``pending``; every other order starts
    ``waiting``.  ``is_last`` marks the steps at the maximum order.
    """
    first = min(s.order for s in stages)
    last = max(s.order for s in stages)
    return tuple(
        PlannedStep(
            order=stage.order,
            approver_id=approver_id,
            mode=stage.mode,
            status=StepStatus.PENDING if stage.order == first else StepStatus.WAITING,
            is_last=stage.order == last,
        )
        for stage in stages
        for approver_id in stage.approver_ids
    )


def next_order(orders: Iterable[int], current: int) -> int | None:
    """Smallest existing order strictly greater than ``current``."""
    later = [o for o in orders if o > current]
    return min(later) if later else None


# =========================================================================
# DTOs
# =========================================================================


@dataclass(frozen=True)
class DocumentView:
    """Immutable snapshot of a document."""

    document_id: UUID
    subject_id: UUID
    document_type: str
    status: DocumentStatus
    current_step: int | None
    entitlement_amount: Decimal
    title: str | None = None
    created_at: datetime | None = None
    approved_at: datetime | None = None
    resolved_at: datetime | None = None
    rejection_reason: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_DOCUMENT_STATUSES

    @property
    def is_consistent(self) -> bool:
        """Terminal status iff no current step."""
        return self.is_terminal == (self.current_step is None)


@dataclass(frozen=True)
class StepView:
    """Immutable snapshot of one approval step."""

    step_id: UUID
    document_id: UUID
    order: int
    approver_id: UUID
    mode: ApprovalMode
    status: StepStatus
    is_last: bool
    approved_at: datetime | None = None
    delegate_id: UUID | None = None
    acted_by_id: UUID | None = None

    @property
    def effective_actor(self) -> UUID:
        """Whoever may currently act on this step."""
        return self.delegate_id or self.approver_id


@dataclass(frozen=True)
class ApprovalOutcome:
    """Result of an approve or reject call.

    ``is_final`` is True when the call moved the document to a terminal
    state.  ``deduction_error`` is set when the document was approved but
    the ledger could not cover the entitlement amount; the approval stands.
    """

    document_id: UUID
    status: DocumentStatus
    current_step: int | None
    is_final: bool
    step_order: int
    waiting_for_agreement: bool = False
    activated_approvers: tuple[UUID, ...] = ()
    deduction: DeductionResult | None = None
    deduction_error: str | None = None


class NotificationKind(str, Enum):
    """Events the notification collaborator is told about."""

    SUBMITTED = "submitted"
    STEP_ACTIVATED = "step_activated"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    DELEGATED = "delegated"


@dataclass(frozen=True)
class Notification:
    """Fire-and-forget message produced by an engine transition."""

    kind: NotificationKind
    document_id: UUID
    recipient_ids: tuple[UUID, ...]
    payload: dict = field(default_factory=dict)
