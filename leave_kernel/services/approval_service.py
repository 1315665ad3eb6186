"""
ApprovalEngine -- document approval state machine.

Responsibility:
    Advances a Document through its ordered approval Steps: submission,
    approval (single and agreement orders), rejection, requester cancel and
    delegation.  On the final approval of a document type that consumes
    entitlement, asks the Ledger to post the deduction.

Architecture position:
    Kernel > Services -- imperative shell around the pure lifecycle rules in
    ``domain/approval.py``.  Called by the DocumentGateway, which owns the
    transaction and dispatches the collected notifications after commit.

Invariants enforced:
    - Terminal status <=> current_step IS NULL (model check constraint, and
      every transition below sets both together).
    - Only the steps at the current order are pending; an order resolves
      only when every step at it is approved.
    - Double approval: the document row is locked FOR UPDATE and the step
      update is conditional on ``status = 'pending'``; zero rows updated
      raises PreconditionFailed.
    - Every step transition appends a StepAudit row and an AuditEvent.

Failure modes:
    - DocumentNotFoundError: unknown document id.
    - UnknownDocumentTypeError: document type not configured.
    - InvalidApprovalLineError: malformed approver line.
    - InsufficientBalanceError: submission of a costed document beyond the
      available balance (nothing persisted).
    - AuthorizationError: the actor holds no step on the document, or a
      non-requester cancel.
    - PreconditionFailed: document or step no longer in the expected state,
      including a second approval of the actor's already resolved step.

Audit relevance:
    An approved document whose deduction fails stays approved.  The failure
    is logged at ERROR and recorded as a ``deduction_failed`` audit event,
    which is the work-list for administrative reconciliation.
"""

from collections.abc import Mapping, Sequence
from decimal import Decimal
from uuid import UUID

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from leave_kernel.db.types import to_days
from leave_kernel.domain.approval import (
    ApprovalOutcome,
    ApproverSpec,
    DocumentStatus,
    DocumentView,
    Notification,
    NotificationKind,
    StepStatus,
    StepView,
    build_stages,
    is_valid_document_transition,
    next_order,
    plan_steps,
)
from leave_kernel.domain.clock import Clock, SystemClock
from leave_kernel.domain.ledger import DeductionResult
from leave_kernel.exceptions import (
    AuthorizationError,
    DocumentNotFoundError,
    InsufficientBalanceError,
    PreconditionFailed,
    UnknownDocumentTypeError,
)
from leave_kernel.logging_config import get_logger
from leave_kernel.models.approval import (
    ApprovalStepModel,
    DocumentModel,
    StepAuditModel,
)
from leave_kernel.services.auditor_service import AuditorService
from leave_kernel.services.ledger_service import LedgerService

logger = get_logger("services.approval")


class ApprovalEngine:
    """
    Approval workflow over persisted documents and steps.

    ``document_types`` maps each configured type name to whether its final
    approval consumes leave entitlement.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
        - Does NOT deliver notifications; they are queued and handed out by
          ``drain_notifications()``.
        - Never retries a failed transition.
    """

    def __init__(
        self,
        session: Session,
        auditor: AuditorService,
        ledger: LedgerService,
        clock: Clock | None = None,
        document_types: Mapping[str, bool] | None = None,
    ):
        self._session = session
        self._auditor = auditor
        self._ledger = ledger
        self._clock = clock or SystemClock()
        self._document_types = dict(document_types or {})
        self._outbox: list[Notification] = []

    # -------------------------------------------------------------------------
    # Submission
    # -------------------------------------------------------------------------

    def submit(
        self,
        document_type: str,
        requester_id: UUID,
        approver_line: Sequence[ApproverSpec],
        entitlement_amount: Decimal | int | str = 0,
        title: str | None = None,
    ) -> DocumentView:
        """Create a pending document and its steps.

        Raises:
            UnknownDocumentTypeError: type not configured.
            InvalidApprovalLineError: empty or inconsistent approver line.
            InvalidAmountError: amount not on the half-day grid.
            InsufficientBalanceError: costed type beyond available balance.
        """
        consumes = self._consumes_entitlement(document_type)
        planned = plan_steps(build_stages(approver_line))

        if consumes:
            amount = to_days(entitlement_amount)
            available = self._ledger.available_balance(requester_id, self._clock.today())
            if available < amount:
                logger.warning(
                    "document_submit_insufficient_balance",
                    extra={
                        "subject_id": str(requester_id),
                        "document_type": document_type,
                        "requested": str(amount),
                        "available": str(available),
                    },
                )
                raise InsufficientBalanceError(
                    str(requester_id), str(amount), str(available),
                )
        else:
            amount = to_days(entitlement_amount, allow_zero=True)

        now = self._clock.now()
        first_order = min(p.order for p in planned)

        document = DocumentModel(
            subject_id=requester_id,
            document_type=document_type,
            title=title,
            status=DocumentStatus.PENDING.value,
            current_step=first_order,
            entitlement_amount=amount,
            created_by_id=requester_id,
        )
        document.created_at = now
        self._session.add(document)
        self._session.flush()

        for step in planned:
            self._session.add(
                ApprovalStepModel(
                    document_id=document.id,
                    step_order=step.order,
                    approver_id=step.approver_id,
                    mode=step.mode.value,
                    status=step.status.value,
                    is_last=step.is_last,
                    created_by_id=requester_id,
                )
            )
        self._session.flush()

        self._auditor.record_document_submitted(
            document_id=document.id,
            actor_id=requester_id,
            document_type=document_type,
            entitlement_amount=amount,
            step_count=len(planned),
        )

        first_approvers = tuple(p.approver_id for p in planned if p.order == first_order)
        self._notify(NotificationKind.SUBMITTED, document.id, (requester_id,))
        self._notify(
            NotificationKind.STEP_ACTIVATED, document.id, first_approvers,
            step_order=first_order,
        )

        logger.info(
            "document_submitted",
            extra={
                "document_id": str(document.id),
                "subject_id": str(requester_id),
                "document_type": document_type,
                "entitlement_amount": str(amount),
                "step_count": len(planned),
            },
        )
        return document.to_dto()

    def _consumes_entitlement(self, document_type: str) -> bool:
        if document_type not in self._document_types:
            raise UnknownDocumentTypeError(
                document_type, tuple(sorted(self._document_types)),
            )
        return self._document_types[document_type]

    # -------------------------------------------------------------------------
    # Approve / reject
    # -------------------------------------------------------------------------

    def approve(
        self,
        document_id: UUID,
        actor_id: UUID,
        comment: str = "",
    ) -> ApprovalOutcome:
        """Approve the actor's pending step on the document.

        Raises:
            DocumentNotFoundError, PreconditionFailed, AuthorizationError.
        """
        document = self._lock_pending_document(document_id)
        step = self._actionable_step(document, actor_id, "approve")
        order = step.step_order
        now = self._clock.now()

        self._resolve_step(step, StepStatus.APPROVED, actor_id, now, comment)
        self._auditor.record_step_approved(
            document_id=document_id,
            actor_id=actor_id,
            step_order=order,
            approver_id=step.approver_id,
        )
        logger.info(
            "step_approved",
            extra={
                "document_id": str(document_id),
                "step_order": order,
                "approver_id": str(step.approver_id),
                "actor_id": str(actor_id),
            },
        )

        siblings = self._steps_at(document_id, order)
        if any(s.status != StepStatus.APPROVED.value for s in siblings):
            logger.info(
                "step_awaiting_agreement",
                extra={
                    "document_id": str(document_id),
                    "step_order": order,
                    "outstanding": sum(
                        1 for s in siblings if s.status != StepStatus.APPROVED.value
                    ),
                },
            )
            return ApprovalOutcome(
                document_id=document_id,
                status=DocumentStatus.PENDING,
                current_step=order,
                is_final=False,
                step_order=order,
                waiting_for_agreement=True,
            )

        if step.is_last:
            return self._finalize_approval(document, actor_id, order, now)

        return self._activate_next(document, order)

    def _finalize_approval(
        self,
        document: DocumentModel,
        actor_id: UUID,
        order: int,
        now,
    ) -> ApprovalOutcome:
        self._transition(document, DocumentStatus.APPROVED)
        document.current_step = None
        document.approved_at = now
        document.resolved_at = now
        self._session.flush()

        self._auditor.record_document_approved(
            document_id=document.id,
            actor_id=actor_id,
            entitlement_amount=document.entitlement_amount,
        )
        logger.info(
            "document_approved",
            extra={
                "document_id": str(document.id),
                "subject_id": str(document.subject_id),
                "document_type": document.document_type,
            },
        )
        self._notify(NotificationKind.APPROVED, document.id, (document.subject_id,))

        deduction: DeductionResult | None = None
        deduction_error: str | None = None
        if self._document_types.get(document.document_type, False):
            try:
                with self._session.begin_nested():
                    deduction = self._ledger.deduct(
                        document_id=document.id,
                        subject_id=document.subject_id,
                        amount=document.entitlement_amount,
                        actor_id=actor_id,
                    )
            except InsufficientBalanceError as exc:
                # The approval stands; the shortfall is reconciled by hand
                logger.error(
                    "deduction_failed",
                    extra={
                        "document_id": str(document.id),
                        "subject_id": str(document.subject_id),
                        "requested": exc.requested,
                        "available": exc.available,
                    },
                )
                self._auditor.record_deduction_failed(
                    document_id=document.id,
                    subject_id=document.subject_id,
                    requested=exc.requested,
                    available=exc.available,
                    actor_id=actor_id,
                )
                deduction_error = str(exc)

        return ApprovalOutcome(
            document_id=document.id,
            status=DocumentStatus.APPROVED,
            current_step=None,
            is_final=True,
            step_order=order,
            deduction=deduction,
            deduction_error=deduction_error,
        )

    def _activate_next(self, document: DocumentModel, order: int) -> ApprovalOutcome:
        orders = self._session.execute(
            select(ApprovalStepModel.step_order)
            .where(ApprovalStepModel.document_id == document.id)
            .distinct()
        ).scalars().all()
        following = next_order(orders, order)
        if following is None:
            # is_last was not set on the highest order
            raise PreconditionFailed(
                str(document.id), f"an order after {order}", "none",
            )

        activated = []
        for step in self._steps_at(document.id, following):
            if step.status == StepStatus.WAITING.value:
                step.status = StepStatus.PENDING.value
                activated.append(step.approver_id)
        document.current_step = following
        self._session.flush()

        self._notify(
            NotificationKind.STEP_ACTIVATED, document.id, tuple(activated),
            step_order=following,
        )
        logger.info(
            "step_activated",
            extra={
                "document_id": str(document.id),
                "step_order": following,
                "approver_count": len(activated),
            },
        )
        return ApprovalOutcome(
            document_id=document.id,
            status=DocumentStatus.PENDING,
            current_step=following,
            is_final=False,
            step_order=order,
            activated_approvers=tuple(activated),
        )

    def reject(
        self,
        document_id: UUID,
        actor_id: UUID,
        reason: str,
    ) -> ApprovalOutcome:
        """Reject the document through the actor's pending step.

        Other steps are left as they are.
        """
        document = self._lock_pending_document(document_id)
        step = self._actionable_step(document, actor_id, "reject")
        order = step.step_order
        now = self._clock.now()

        self._resolve_step(step, StepStatus.REJECTED, actor_id, now, reason)

        self._transition(document, DocumentStatus.REJECTED)
        document.current_step = None
        document.resolved_at = now
        document.rejection_reason = reason
        self._session.flush()

        self._auditor.record_document_rejected(
            document_id=document_id,
            actor_id=actor_id,
            step_order=order,
            reason=reason,
        )
        self._notify(
            NotificationKind.REJECTED, document_id, (document.subject_id,),
            reason=reason,
        )
        logger.info(
            "document_rejected",
            extra={
                "document_id": str(document_id),
                "step_order": order,
                "actor_id": str(actor_id),
            },
        )
        return ApprovalOutcome(
            document_id=document_id,
            status=DocumentStatus.REJECTED,
            current_step=None,
            is_final=True,
            step_order=order,
        )

    # -------------------------------------------------------------------------
    # Cancel / delegate
    # -------------------------------------------------------------------------

    def cancel(self, document_id: UUID, actor_id: UUID, reason: str = "") -> DocumentView:
        """Withdraw a pending document.  Only the requester may cancel."""
        document = self._lock_document(document_id)
        if document.subject_id != actor_id:
            raise AuthorizationError(
                str(actor_id), "cancel", f"not the requester of document {document_id}",
            )
        if document.status != DocumentStatus.PENDING.value:
            raise PreconditionFailed(
                str(document_id), DocumentStatus.PENDING.value, document.status,
            )

        waiting_on = tuple(
            s.effective_actor
            for s in (m.to_dto() for m in self._steps_at(document_id, document.current_step))
            if s.status == StepStatus.PENDING
        )

        self._transition(document, DocumentStatus.CANCELLED)
        document.current_step = None
        document.resolved_at = self._clock.now()
        self._session.flush()

        self._auditor.record_document_cancelled(
            document_id=document_id, actor_id=actor_id, reason=reason,
        )
        self._notify(NotificationKind.CANCELLED, document_id, waiting_on, reason=reason)
        logger.info(
            "document_cancelled",
            extra={"document_id": str(document_id), "actor_id": str(actor_id)},
        )
        return document.to_dto()

    def delegate(self, document_id: UUID, actor_id: UUID, delegate_id: UUID) -> StepView:
        """Hand the approver of record's pending step to ``delegate_id``.

        Order, status and approver of record are unchanged.  Only the
        delegate may act on the step afterwards.
        """
        document = self._lock_pending_document(document_id)
        step = self._session.execute(
            select(ApprovalStepModel).where(
                ApprovalStepModel.document_id == document_id,
                ApprovalStepModel.step_order == document.current_step,
                ApprovalStepModel.status == StepStatus.PENDING.value,
                ApprovalStepModel.approver_id == actor_id,
                ApprovalStepModel.delegate_id.is_(None),
            )
        ).scalar_one_or_none()
        if step is None:
            raise AuthorizationError(
                str(actor_id), "delegate", f"no pending step on document {document_id}",
            )

        peers = {s.approver_id for s in self._steps_at(document_id, step.step_order)}
        if delegate_id == actor_id or delegate_id in peers:
            raise PreconditionFailed(
                str(step.id), "delegate outside this order", str(delegate_id),
            )

        step.delegate_id = delegate_id
        self._session.add(
            self._step_audit(step, "delegated", actor_id, StepStatus.PENDING, None)
        )
        self._session.flush()

        self._auditor.record_step_delegated(
            document_id=document_id,
            actor_id=actor_id,
            step_order=step.step_order,
            delegate_id=delegate_id,
        )
        self._notify(
            NotificationKind.DELEGATED, document_id, (delegate_id,),
            step_order=step.step_order,
        )
        logger.info(
            "step_delegated",
            extra={
                "document_id": str(document_id),
                "step_order": step.step_order,
                "delegate_id": str(delegate_id),
            },
        )
        return step.to_dto()

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_document(self, document_id: UUID) -> DocumentView:
        document = self._session.get(DocumentModel, document_id)
        if document is None:
            raise DocumentNotFoundError(str(document_id))
        return document.to_dto()

    def get_steps(self, document_id: UUID) -> tuple[StepView, ...]:
        rows = self._session.execute(
            select(ApprovalStepModel)
            .where(ApprovalStepModel.document_id == document_id)
            .order_by(ApprovalStepModel.step_order, ApprovalStepModel.created_at)
        ).scalars().all()
        return tuple(row.to_dto() for row in rows)

    def list_pending_for_approver(self, actor_id: UUID) -> tuple[StepView, ...]:
        """Steps the actor can act on now, oldest document first."""
        rows = self._session.execute(
            select(ApprovalStepModel)
            .join(DocumentModel, DocumentModel.id == ApprovalStepModel.document_id)
            .where(
                DocumentModel.status == DocumentStatus.PENDING.value,
                DocumentModel.current_step == ApprovalStepModel.step_order,
                ApprovalStepModel.status == StepStatus.PENDING.value,
                _addressed_to(actor_id),
            )
            .order_by(DocumentModel.created_at)
        ).scalars().all()
        return tuple(row.to_dto() for row in rows)

    def drain_notifications(self) -> tuple[Notification, ...]:
        """Hand out and clear the notifications queued so far."""
        pending = tuple(self._outbox)
        self._outbox.clear()
        return pending

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _lock_document(self, document_id: UUID) -> DocumentModel:
        document = self._session.execute(
            select(DocumentModel)
            .where(DocumentModel.id == document_id)
            .with_for_update()
        ).scalar_one_or_none()
        if document is None:
            raise DocumentNotFoundError(str(document_id))
        return document

    def _lock_pending_document(self, document_id: UUID) -> DocumentModel:
        document = self._lock_document(document_id)
        if document.status != DocumentStatus.PENDING.value:
            raise PreconditionFailed(
                str(document_id), DocumentStatus.PENDING.value, document.status,
            )
        return document

    def _actionable_step(
        self, document: DocumentModel, actor_id: UUID, action: str,
    ) -> ApprovalStepModel:
        step = self._session.execute(
            select(ApprovalStepModel).where(
                ApprovalStepModel.document_id == document.id,
                ApprovalStepModel.step_order == document.current_step,
                ApprovalStepModel.status == StepStatus.PENDING.value,
                _addressed_to(actor_id),
            )
        ).scalars().first()
        if step is not None:
            return step

        resolved = self._session.execute(
            select(ApprovalStepModel)
            .where(
                ApprovalStepModel.document_id == document.id,
                ApprovalStepModel.status.in_(
                    (StepStatus.APPROVED.value, StepStatus.REJECTED.value)
                ),
                _addressed_to(actor_id),
            )
            .order_by(ApprovalStepModel.step_order.desc())
        ).scalars().first()
        if resolved is not None:
            # The actor's own step was already acted on
            raise PreconditionFailed(
                str(resolved.id), StepStatus.PENDING.value, resolved.status,
            )
        raise AuthorizationError(
            str(actor_id), action, f"no pending step on document {document.id}",
        )

    def _steps_at(self, document_id: UUID, order: int | None) -> list[ApprovalStepModel]:
        return list(
            self._session.execute(
                select(ApprovalStepModel).where(
                    ApprovalStepModel.document_id == document_id,
                    ApprovalStepModel.step_order == order,
                )
            ).scalars().all()
        )

    def _resolve_step(
        self,
        step: ApprovalStepModel,
        target: StepStatus,
        actor_id: UUID,
        now,
        comment: str | None,
    ) -> None:
        values = {"status": target.value, "acted_by_id": actor_id}
        if target == StepStatus.APPROVED:
            values["approved_at"] = now
        result = self._session.execute(
            update(ApprovalStepModel)
            .where(
                ApprovalStepModel.id == step.id,
                ApprovalStepModel.status == StepStatus.PENDING.value,
            )
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount == 0:
            raise PreconditionFailed(
                str(step.id), StepStatus.PENDING.value, "already resolved",
            )
        self._session.add(
            self._step_audit(step, target.value, actor_id, StepStatus.PENDING, comment, target)
        )
        self._session.flush()

    def _step_audit(
        self,
        step: ApprovalStepModel,
        action: str,
        actor_id: UUID,
        old: StepStatus,
        comment: str | None,
        new: StepStatus | None = None,
    ) -> StepAuditModel:
        return StepAuditModel(
            step_id=step.id,
            document_id=step.document_id,
            action=action,
            actor_id=actor_id,
            old_status=old.value,
            new_status=(new or old).value,
            occurred_at=self._clock.now(),
            comment=comment or None,
            created_by_id=actor_id,
        )

    def _transition(self, document: DocumentModel, target: DocumentStatus) -> None:
        current = DocumentStatus(document.status)
        if not is_valid_document_transition(current, target):
            raise PreconditionFailed(str(document.id), f"not {current.value}", target.value)
        document.status = target.value

    def _notify(
        self,
        kind: NotificationKind,
        document_id: UUID,
        recipients: tuple[UUID, ...],
        **payload,
    ) -> None:
        if recipients:
            self._outbox.append(
                Notification(
                    kind=kind,
                    document_id=document_id,
                    recipient_ids=recipients,
                    payload=payload,
                )
            )


def _addressed_to(actor_id: UUID):
    """Steps the actor may act on: their own undelegated ones, or delegated to them."""
    return or_(
        (ApprovalStepModel.approver_id == actor_id)
        & ApprovalStepModel.delegate_id.is_(None),
        ApprovalStepModel.delegate_id == actor_id,
    )
