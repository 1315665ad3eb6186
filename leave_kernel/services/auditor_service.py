"""
AuditorService -- tamper-evident audit trail and hash chain maintenance.

Responsibility:
    Creates immutable, hash-chained audit events for every significant state
    change: document submission and resolution, step approval and
    delegation, grant issuance, deduction posting and failure, and batch run
    summaries.  Provides chain validation and per-entity traces.

Architecture position:
    Kernel > Services -- imperative shell, called by ApprovalEngine,
    LedgerService and the batch executor.

Invariants enforced:
    - Sequence monotonicity via SequenceService (never raw SQL max+1).
    - Chain integrity: ``hash = H(entity_type | entity_id | action |
      payload_hash | prev_hash)``.
    - Append-only: audit events are never modified or deleted.

Failure modes:
    - AuditChainBrokenError: recomputed hash does not match stored hash, or
      prev_hash does not match the predecessor's hash.
"""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from leave_kernel.domain.clock import Clock, SystemClock
from leave_kernel.exceptions import AuditChainBrokenError
from leave_kernel.logging_config import get_logger
from leave_kernel.models.audit_event import AuditAction, AuditEvent
from leave_kernel.services.sequence_service import SequenceService
from leave_kernel.utils.hashing import hash_audit_event, hash_payload, to_json_safe

logger = get_logger("services.auditor")


@dataclass(frozen=True)
class AuditTraceEntry:
    """A single entry in an audit trace."""

    seq: int
    action: AuditAction
    occurred_at: datetime
    actor_id: UUID
    payload: dict[str, Any]
    hash: str


@dataclass(frozen=True)
class AuditTrace:
    """All audit events for one entity, in chain order."""

    entity_type: str
    entity_id: UUID
    entries: tuple[AuditTraceEntry, ...]

    @property
    def actions(self) -> tuple[AuditAction, ...]:
        return tuple(e.action for e in self.entries)

    @property
    def last_action(self) -> AuditAction | None:
        return self.entries[-1].action if self.entries else None


class AuditorService:
    """
    Service for creating and validating tamper-evident audit events.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._sequence_service = SequenceService(session)

    def _get_last_hash(self) -> str | None:
        return self._session.execute(
            select(AuditEvent.hash).order_by(AuditEvent.seq.desc()).limit(1)
        ).scalar_one_or_none()

    def _create_audit_event(
        self,
        entity_type: str,
        entity_id: UUID,
        action: AuditAction,
        actor_id: UUID,
        payload: dict[str, Any] | None = None,
    ) -> AuditEvent:
        """
        Create a new audit event with hash chain linkage.

        Public callers use the domain-specific ``record_*`` methods.

        Postconditions:
            - A new ``AuditEvent`` row is flushed with a monotonically
              increasing ``seq`` and a valid chain link.
        """
        seq = self._sequence_service.next_value(SequenceService.AUDIT_EVENT)
        prev_hash = self._get_last_hash()

        payload_data = to_json_safe(payload or {})
        computed_payload_hash = hash_payload(payload_data)

        event_hash = hash_audit_event(
            entity_type=entity_type,
            entity_id=str(entity_id),
            action=action.value,
            payload_hash=computed_payload_hash,
            prev_hash=prev_hash,
        )

        audit_event = AuditEvent(
            seq=seq,
            entity_type=entity_type,
            entity_id=entity_id,
            action=action.value,
            actor_id=actor_id,
            occurred_at=self._clock.now(),
            payload=payload_data,
            payload_hash=computed_payload_hash,
            prev_hash=prev_hash,
            hash=event_hash,
        )

        self._session.add(audit_event)
        self._session.flush()

        logger.info(
            "audit_event_created",
            extra={
                "entity_type": entity_type,
                "entity_id": str(entity_id),
                "action": action.value,
                "seq": seq,
            },
        )

        return audit_event

    # Document lifecycle

    def record_document_submitted(
        self,
        document_id: UUID,
        actor_id: UUID,
        document_type: str,
        entitlement_amount: Decimal,
        step_count: int,
    ) -> AuditEvent:
        return self._create_audit_event(
            entity_type="Document",
            entity_id=document_id,
            action=AuditAction.DOCUMENT_SUBMITTED,
            actor_id=actor_id,
            payload={
                "document_type": document_type,
                "entitlement_amount": entitlement_amount,
                "step_count": step_count,
            },
        )

    def record_step_approved(
        self,
        document_id: UUID,
        actor_id: UUID,
        step_order: int,
        approver_id: UUID,
    ) -> AuditEvent:
        """Record one approver's approval.  ``approver_id`` is the approver
        of record; ``actor_id`` differs from it when a delegate acted."""
        return self._create_audit_event(
            entity_type="Document",
            entity_id=document_id,
            action=AuditAction.STEP_APPROVED,
            actor_id=actor_id,
            payload={"step_order": step_order, "approver_id": approver_id},
        )

    def record_step_delegated(
        self,
        document_id: UUID,
        actor_id: UUID,
        step_order: int,
        delegate_id: UUID,
    ) -> AuditEvent:
        return self._create_audit_event(
            entity_type="Document",
            entity_id=document_id,
            action=AuditAction.STEP_DELEGATED,
            actor_id=actor_id,
            payload={"step_order": step_order, "delegate_id": delegate_id},
        )

    def record_document_approved(
        self,
        document_id: UUID,
        actor_id: UUID,
        entitlement_amount: Decimal,
    ) -> AuditEvent:
        return self._create_audit_event(
            entity_type="Document",
            entity_id=document_id,
            action=AuditAction.DOCUMENT_APPROVED,
            actor_id=actor_id,
            payload={"entitlement_amount": entitlement_amount},
        )

    def record_document_rejected(
        self,
        document_id: UUID,
        actor_id: UUID,
        step_order: int,
        reason: str,
    ) -> AuditEvent:
        return self._create_audit_event(
            entity_type="Document",
            entity_id=document_id,
            action=AuditAction.DOCUMENT_REJECTED,
            actor_id=actor_id,
            payload={"step_order": step_order, "reason": reason},
        )

    def record_document_cancelled(
        self,
        document_id: UUID,
        actor_id: UUID,
        reason: str,
    ) -> AuditEvent:
        return self._create_audit_event(
            entity_type="Document",
            entity_id=document_id,
            action=AuditAction.DOCUMENT_CANCELLED,
            actor_id=actor_id,
            payload={"reason": reason},
        )

    # Ledger

    def record_grant_issued(
        self,
        grant_id: UUID,
        subject_id: UUID,
        grant_type: str,
        amount: Decimal,
        expiration_date: date,
        actor_id: UUID,
        idempotency_key: str | None = None,
    ) -> AuditEvent:
        return self._create_audit_event(
            entity_type="Grant",
            entity_id=grant_id,
            action=AuditAction.GRANT_ISSUED,
            actor_id=actor_id,
            payload={
                "subject_id": subject_id,
                "grant_type": grant_type,
                "amount": amount,
                "expiration_date": expiration_date,
                "idempotency_key": idempotency_key,
            },
        )

    def record_deduction_posted(
        self,
        document_id: UUID,
        subject_id: UUID,
        amount: Decimal,
        allocations: list[dict[str, Any]],
        actor_id: UUID,
    ) -> AuditEvent:
        """Deductions are traced under their document id."""
        return self._create_audit_event(
            entity_type="Deduction",
            entity_id=document_id,
            action=AuditAction.DEDUCTION_POSTED,
            actor_id=actor_id,
            payload={
                "subject_id": subject_id,
                "amount": amount,
                "allocations": allocations,
            },
        )

    def record_deduction_failed(
        self,
        document_id: UUID,
        subject_id: UUID,
        requested: Decimal | str,
        available: Decimal | str,
        actor_id: UUID,
    ) -> AuditEvent:
        """An approved document whose entitlement could not be deducted.

        This record is the reconciliation work-list for administrators.
        """
        return self._create_audit_event(
            entity_type="Deduction",
            entity_id=document_id,
            action=AuditAction.DEDUCTION_FAILED,
            actor_id=actor_id,
            payload={
                "subject_id": subject_id,
                "requested": str(requested),
                "available": str(available),
            },
        )

    # Grant jobs

    def record_batch_job_completed(
        self,
        job_id: UUID,
        task_type: str,
        business_date: date,
        granted: int,
        skipped: int,
        failed: int,
        duration_ms: int,
        actor_id: UUID,
    ) -> AuditEvent:
        return self._create_audit_event(
            entity_type="BatchJob",
            entity_id=job_id,
            action=AuditAction.BATCH_JOB_COMPLETED,
            actor_id=actor_id,
            payload={
                "task_type": task_type,
                "business_date": business_date,
                "granted": granted,
                "skipped": skipped,
                "failed": failed,
                "duration_ms": duration_ms,
            },
        )

    def record_batch_job_failed(
        self,
        job_id: UUID,
        task_type: str,
        business_date: date,
        error_summary: str,
        actor_id: UUID,
    ) -> AuditEvent:
        return self._create_audit_event(
            entity_type="BatchJob",
            entity_id=job_id,
            action=AuditAction.BATCH_JOB_FAILED,
            actor_id=actor_id,
            payload={
                "task_type": task_type,
                "business_date": business_date,
                "error_summary": error_summary,
            },
        )

    # Validation and queries

    def validate_chain(self) -> bool:
        """
        Validate the entire audit chain.

        Raises:
            AuditChainBrokenError: If chain validation fails at any point.
        """
        events = self._session.execute(
            select(AuditEvent).order_by(AuditEvent.seq)
        ).scalars().all()

        if not events:
            return True

        if events[0].prev_hash is not None:
            logger.critical("audit_chain_broken", extra={"seq": events[0].seq})
            raise AuditChainBrokenError(str(events[0].id), "None", events[0].prev_hash)

        for i, event in enumerate(events):
            expected_hash = hash_audit_event(
                entity_type=event.entity_type,
                entity_id=str(event.entity_id),
                action=event.action,
                payload_hash=hash_payload(event.payload or {}),
                prev_hash=event.prev_hash,
            )
            if event.hash != expected_hash:
                logger.critical("audit_chain_broken", extra={"seq": event.seq})
                raise AuditChainBrokenError(str(event.id), expected_hash, event.hash)

            if i > 0 and event.prev_hash != events[i - 1].hash:
                logger.critical("audit_chain_broken", extra={"seq": event.seq})
                raise AuditChainBrokenError(
                    str(event.id), events[i - 1].hash, event.prev_hash or "None",
                )

        logger.info("audit_chain_valid", extra={"event_count": len(events)})
        return True

    def get_trace(self, entity_type: str, entity_id: UUID) -> AuditTrace:
        """All audit events for one entity, in chain order."""
        events = self._session.execute(
            select(AuditEvent)
            .where(
                AuditEvent.entity_type == entity_type,
                AuditEvent.entity_id == entity_id,
            )
            .order_by(AuditEvent.seq)
        ).scalars().all()

        return AuditTrace(
            entity_type=entity_type,
            entity_id=entity_id,
            entries=tuple(
                AuditTraceEntry(
                    seq=event.seq,
                    action=AuditAction(event.action),
                    occurred_at=event.occurred_at,
                    actor_id=event.actor_id,
                    payload=event.payload or {},
                    hash=event.hash,
                )
                for event in events
            ),
        )
