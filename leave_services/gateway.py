"""
leave_services.gateway -- DocumentGateway, the caller-facing facade.

Responsibility:
    One method per caller operation (submit, approve, reject, cancel,
    delegate, balance lookups, administrative adjustments).  Each call runs
    in its own transaction, builds the kernel services for that session,
    and dispatches the notifications the ApprovalEngine collected only after
    the transaction commits.

Architecture position:
    Services -- composition over the kernel.  Imports kernel services and
    domain types; the kernel never imports from here.

Invariants enforced:
    - No notification for an operation that rolled back.
    - Manual ledger adjustments require a privilege level at or above
      ``manual_adjustment_min_level``; the check runs before the
      transaction opens.
    - Dispatcher failures are logged and never surface to the caller.

Failure modes:
    Every kernel exception propagates unchanged after the rollback.
    - AuthorizationError -- insufficient privilege for a manual adjustment.
    - MalformedGrantError -- manual grant of a type issued by jobs only.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Callable
from uuid import UUID, uuid4

from sqlalchemy.orm import Session

from leave_kernel.db.engine import session_scope
from leave_kernel.domain.approval import (
    ApprovalMode,
    ApprovalOutcome,
    ApproverSpec,
    DocumentView,
    Notification,
    StepView,
)
from leave_kernel.domain.clock import Clock, SystemClock
from leave_kernel.domain.collaborators import NotificationDispatcher, PrivilegeDirectory
from leave_kernel.domain.entitlement import add_years
from leave_kernel.domain.ledger import Balance, DeductionResult, GrantResult, GrantType
from leave_kernel.exceptions import AuthorizationError, MalformedGrantError
from leave_kernel.logging_config import LogContext, get_logger
from leave_kernel.services.approval_service import ApprovalEngine
from leave_kernel.services.auditor_service import AuditorService
from leave_kernel.services.ledger_service import LedgerService

if TYPE_CHECKING:
    from leave_config.schema import LeaveConfig

logger = get_logger("services.gateway")

ApproverInput = ApproverSpec | tuple | Mapping[str, Any]


@dataclass
class _UnitOfWork:
    session: Session
    auditor: AuditorService
    ledger: LedgerService
    engine: ApprovalEngine


def to_approver_spec(entry: ApproverInput) -> ApproverSpec:
    """Coerce a caller approver entry into an ApproverSpec.

    Accepts an ApproverSpec, an ``(approver_id, order[, mode])`` tuple, or a
    mapping with ``approver_id``, ``order`` and optional ``mode`` keys.
    """
    if isinstance(entry, ApproverSpec):
        return entry
    if isinstance(entry, Mapping):
        approver_id, order, mode = entry["approver_id"], entry["order"], entry.get("mode")
    else:
        approver_id, order, *rest = entry
        mode = rest[0] if rest else None
    return ApproverSpec(
        approver_id=approver_id if isinstance(approver_id, UUID) else UUID(str(approver_id)),
        order=int(order),
        mode=ApprovalMode(mode) if mode is not None else None,
    )


class DocumentGateway:
    """Transaction-per-call facade over the approval engine and the ledger."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        dispatcher: NotificationDispatcher,
        privileges: PrivilegeDirectory,
        document_types: Mapping[str, bool],
        clock: Clock | None = None,
        manual_adjustment_min_level: int = 5,
        manual_grant_validity: str = "end_of_year",
        overtime_validity_years: int = 1,
        expiring_soon_days: int = 30,
    ) -> None:
        self._session_factory = session_factory
        self._dispatcher = dispatcher
        self._privileges = privileges
        self._document_types = dict(document_types)
        self._clock = clock or SystemClock()
        self._min_level = manual_adjustment_min_level
        self._manual_validity = manual_grant_validity
        self._overtime_validity_years = overtime_validity_years
        self._expiring_soon_days = expiring_soon_days

    @classmethod
    def from_config(
        cls,
        config: LeaveConfig,
        session_factory: Callable[[], Session],
        dispatcher: NotificationDispatcher,
        privileges: PrivilegeDirectory,
        clock: Clock | None = None,
    ) -> DocumentGateway:
        return cls(
            session_factory=session_factory,
            dispatcher=dispatcher,
            privileges=privileges,
            document_types=config.approval.entitlement_map(),
            clock=clock,
            manual_adjustment_min_level=config.ledger.manual_adjustment_min_level,
            manual_grant_validity=config.ledger.manual_grant_validity,
            overtime_validity_years=config.entitlements.overtime_award.validity_years,
            expiring_soon_days=config.ledger.expiring_soon_days,
        )

    # -------------------------------------------------------------------------
    # Transaction plumbing
    # -------------------------------------------------------------------------

    @contextmanager
    def _unit_of_work(self) -> Iterator[_UnitOfWork]:
        """Commit on success, then dispatch what the engine collected."""
        with session_scope(self._session_factory) as session:
            auditor = AuditorService(session=session, clock=self._clock)
            ledger = LedgerService(
                session=session,
                auditor=auditor,
                clock=self._clock,
                expiring_soon_days=self._expiring_soon_days,
            )
            engine = ApprovalEngine(
                session=session,
                auditor=auditor,
                ledger=ledger,
                clock=self._clock,
                document_types=self._document_types,
            )
            yield _UnitOfWork(session, auditor, ledger, engine)
            pending = engine.drain_notifications()
        self._dispatch(pending)

    def _dispatch(self, notifications: Sequence[Notification]) -> None:
        for notification in notifications:
            try:
                self._dispatcher.dispatch(notification)
            except Exception:
                logger.warning(
                    "notification_dispatch_failed",
                    extra={
                        "kind": notification.kind.value,
                        "document_id": str(notification.document_id),
                    },
                    exc_info=True,
                )

    def _require_privilege(self, actor_id: UUID, action: str) -> None:
        level = self._privileges.privilege_level(actor_id)
        if level < self._min_level:
            logger.warning(
                "manual_adjustment_denied",
                extra={"actor_id": str(actor_id), "action": action, "level": level},
            )
            raise AuthorizationError(
                str(actor_id),
                action,
                f"privilege level {level} is below {self._min_level}",
            )

    @staticmethod
    def _bind(actor_id: UUID, document_id: UUID | None = None) -> Any:
        return LogContext.bind(
            correlation_id=str(uuid4()),
            actor_id=str(actor_id),
            document_id=str(document_id) if document_id else None,
        )

    # -------------------------------------------------------------------------
    # Approval workflow
    # -------------------------------------------------------------------------

    def submit(
        self,
        document_type: str,
        requester_id: UUID,
        approvers: Sequence[ApproverInput],
        entitlement_amount: Decimal | int | str = 0,
        title: str | None = None,
    ) -> UUID:
        """Submit a document and return its id."""
        line = [to_approver_spec(entry) for entry in approvers]
        with self._bind(requester_id), self._unit_of_work() as uow:
            view = uow.engine.submit(
                document_type,
                requester_id,
                line,
                entitlement_amount=entitlement_amount,
                title=title,
            )
        return view.document_id

    def approve(
        self, document_id: UUID, approver_id: UUID, comment: str = "",
    ) -> ApprovalOutcome:
        with self._bind(approver_id, document_id), self._unit_of_work() as uow:
            return uow.engine.approve(document_id, approver_id, comment)

    def reject(
        self, document_id: UUID, approver_id: UUID, reason: str,
    ) -> ApprovalOutcome:
        with self._bind(approver_id, document_id), self._unit_of_work() as uow:
            return uow.engine.reject(document_id, approver_id, reason)

    def cancel(
        self, document_id: UUID, requester_id: UUID, reason: str = "",
    ) -> DocumentView:
        with self._bind(requester_id, document_id), self._unit_of_work() as uow:
            return uow.engine.cancel(document_id, requester_id, reason)

    def delegate(
        self, document_id: UUID, approver_id: UUID, delegate_id: UUID,
    ) -> StepView:
        with self._bind(approver_id, document_id), self._unit_of_work() as uow:
            return uow.engine.delegate(document_id, approver_id, delegate_id)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def document(self, document_id: UUID) -> DocumentView:
        with self._unit_of_work() as uow:
            return uow.engine.get_document(document_id)

    def steps(self, document_id: UUID) -> tuple[StepView, ...]:
        with self._unit_of_work() as uow:
            return uow.engine.get_steps(document_id)

    def pending_for(self, approver_id: UUID) -> tuple[StepView, ...]:
        with self._unit_of_work() as uow:
            return uow.engine.list_pending_for_approver(approver_id)

    def balance(self, subject_id: UUID, as_of: date | None = None) -> Balance:
        with self._unit_of_work() as uow:
            return uow.ledger.get_balance(subject_id, as_of)

    # -------------------------------------------------------------------------
    # Administrative adjustments
    # -------------------------------------------------------------------------

    def deduct_manual(
        self,
        subject_id: UUID,
        amount: Decimal | int | str,
        reason: str,
        actor_id: UUID,
    ) -> DeductionResult:
        """Post an administrative deduction outside any document.

        Raises:
            AuthorizationError: Actor privilege below the minimum level.
            InsufficientBalanceError: Not enough balance; nothing posted.
        """
        self._require_privilege(actor_id, "deduct_manual")
        with self._bind(actor_id), self._unit_of_work() as uow:
            return uow.ledger.deduct_manual(subject_id, amount, reason, actor_id)

    def grant_manual(
        self,
        subject_id: UUID,
        amount: Decimal | int | str,
        reason: str,
        actor_id: UUID,
        grant_type: GrantType = GrantType.MANUAL,
        idempotency_key: str | None = None,
    ) -> GrantResult:
        """Issue an administrative grant dated today.

        MANUAL grants expire per ``manual_grant_validity``; OVERTIME_AWARD
        grants after ``overtime_validity_years``.

        Raises:
            AuthorizationError: Actor privilege below the minimum level.
            MalformedGrantError: Grant type issued only by scheduled jobs,
                or an amount off the half-day grid.
        """
        self._require_privilege(actor_id, "grant_manual")
        today = self._clock.today()
        expiration = self._manual_expiration(subject_id, grant_type, today)
        with self._bind(actor_id), self._unit_of_work() as uow:
            return uow.ledger.issue_grant(
                subject_id=subject_id,
                grant_type=grant_type,
                amount=amount,
                granted_date=today,
                expiration_date=expiration,
                actor_id=actor_id,
                calculation_basis={"issued_by": str(actor_id)},
                reason=reason,
                idempotency_key=idempotency_key,
            )

    def _manual_expiration(
        self, subject_id: UUID, grant_type: GrantType, today: date,
    ) -> date:
        if grant_type == GrantType.OVERTIME_AWARD:
            return add_years(today, self._overtime_validity_years)
        if grant_type != GrantType.MANUAL:
            raise MalformedGrantError(
                str(subject_id),
                f"{grant_type.value} grants are issued by scheduled jobs only",
            )
        if self._manual_validity == "one_year":
            return add_years(today, 1)
        return date(today.year, 12, 31)
