"""
LedgerService -- expiration-aware, idempotent leave accounting.

Responsibility:
    Holds the grants and usage postings of each subject.  Issues grants,
    computes available balance, and posts deductions that consume grants in
    FIFO order (soonest expiry first).  Keeps the cached balance row in step
    after every insertion.

Architecture position:
    Kernel > Services -- imperative shell around the pure allocator in
    ``domain/ledger.py``.  Called by ApprovalEngine (final approval), the
    grant batch tasks, and the gateway (manual adjustments).

Invariants enforced:
    - Idempotent deduction: one deduction header per document id.  A repeat
      call, or a concurrent duplicate caught by the UNIQUE constraint,
      returns the earlier posting.
    - Idempotent grants: one grant per idempotency key.
    - No overdraw: the sum of usage against a grant never exceeds its amount.
    - All-or-nothing: a deduction that cannot be covered posts nothing.
    - Half-day Decimal amounts only.
    - The balance cache is recomputed after every grant or usage insertion.

Failure modes:
    - InsufficientBalanceError: active grants cannot cover the amount.
    - InvalidAmountError: amount is not a positive half-day multiple.
    - MalformedGrantError: grant amount or dates are invalid.

Audit relevance:
    Every grant and every posted deduction produces an AuditEvent.
"""

from datetime import date
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from leave_kernel.db.types import to_days
from leave_kernel.domain.clock import Clock, SystemClock
from leave_kernel.domain.ledger import (
    Allocation,
    Balance,
    DeductionKind,
    DeductionResult,
    GrantApprovalStatus,
    GrantRecord,
    GrantResult,
    GrantSlice,
    GrantType,
    UsageRecord,
    ZERO,
    allocate_fifo,
    compute_balance,
)
from leave_kernel.exceptions import (
    InsufficientBalanceError,
    InvalidAmountError,
    MalformedGrantError,
)
from leave_kernel.logging_config import get_logger
from leave_kernel.models.ledger import (
    BalanceModel,
    DeductionModel,
    GrantModel,
    UsageModel,
)
from leave_kernel.services.auditor_service import AuditorService
from leave_kernel.services.sequence_service import SequenceService
from leave_kernel.utils.hashing import to_json_safe

logger = get_logger("services.ledger")


class LedgerService:
    """
    Grants, usage postings and balances for leave days.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
        - Does NOT check privilege for manual adjustments; the caller
          boundary does.
    """

    def __init__(
        self,
        session: Session,
        auditor: AuditorService,
        clock: Clock | None = None,
        expiring_soon_days: int = 30,
    ):
        self._session = session
        self._auditor = auditor
        self._clock = clock or SystemClock()
        self._sequence = SequenceService(session)
        self._expiring_soon_days = expiring_soon_days

    # -------------------------------------------------------------------------
    # Grants
    # -------------------------------------------------------------------------

    def issue_grant(
        self,
        subject_id: UUID,
        grant_type: GrantType,
        amount: Decimal | int | str,
        granted_date: date,
        expiration_date: date,
        actor_id: UUID,
        calculation_basis: dict[str, Any] | None = None,
        reason: str | None = None,
        idempotency_key: str | None = None,
    ) -> GrantResult:
        """Insert a grant, or return the existing one for the same key.

        Raises:
            MalformedGrantError: amount not a positive half-day multiple,
                or expiration before granted date.
        """
        try:
            days = to_days(amount)
        except InvalidAmountError as exc:
            raise MalformedGrantError(str(subject_id), exc.reason) from exc
        if expiration_date < granted_date:
            raise MalformedGrantError(
                str(subject_id),
                f"expiration {expiration_date} precedes granted date {granted_date}",
            )

        if idempotency_key is not None:
            existing = self._grant_by_key(idempotency_key)
            if existing is not None:
                logger.info(
                    "grant_already_issued",
                    extra={
                        "subject_id": str(subject_id),
                        "idempotency_key": idempotency_key,
                    },
                )
                return GrantResult(grant=existing.to_dto(), created=False)

        model = GrantModel(
            subject_id=subject_id,
            grant_type=grant_type.value,
            amount=days,
            granted_date=granted_date,
            expiration_date=expiration_date,
            approval_status=GrantApprovalStatus.APPROVED.value,
            calculation_basis=to_json_safe(calculation_basis or {}),
            reason=reason,
            idempotency_key=idempotency_key,
            seq=self._sequence.next_value(SequenceService.LEAVE_GRANT),
            created_by_id=actor_id,
        )
        model.created_at = self._clock.now()

        savepoint = self._session.begin_nested()
        try:
            self._session.add(model)
            self._session.flush()
            savepoint.commit()
        except IntegrityError:
            # Overlapping job invocation inserted the same key first
            savepoint.rollback()
            existing = self._grant_by_key(idempotency_key) if idempotency_key else None
            if existing is None:
                raise
            return GrantResult(grant=existing.to_dto(), created=False)

        self._auditor.record_grant_issued(
            grant_id=model.id,
            subject_id=subject_id,
            grant_type=grant_type.value,
            amount=days,
            expiration_date=expiration_date,
            actor_id=actor_id,
            idempotency_key=idempotency_key,
        )
        self.recompute_balance(subject_id)

        logger.info(
            "grant_issued",
            extra={
                "grant_id": str(model.id),
                "subject_id": str(subject_id),
                "grant_type": grant_type.value,
                "amount": str(days),
                "expiration_date": expiration_date.isoformat(),
            },
        )
        return GrantResult(grant=model.to_dto(), created=True)

    def _grant_by_key(self, idempotency_key: str) -> GrantModel | None:
        return self._session.execute(
            select(GrantModel).where(GrantModel.idempotency_key == idempotency_key)
        ).scalar_one_or_none()

    def list_grants(self, subject_id: UUID) -> tuple[GrantRecord, ...]:
        """All grants of a subject, expired ones included, in FIFO order."""
        rows = self._session.execute(
            select(GrantModel)
            .where(GrantModel.subject_id == subject_id)
            .order_by(GrantModel.expiration_date, GrantModel.seq)
        ).scalars().all()
        return tuple(row.to_dto() for row in rows)

    def list_usages(self, subject_id: UUID) -> tuple[UsageRecord, ...]:
        rows = self._session.execute(
            select(UsageModel)
            .where(UsageModel.subject_id == subject_id)
            .order_by(UsageModel.used_date, UsageModel.created_at)
        ).scalars().all()
        return tuple(row.to_dto() for row in rows)

    # -------------------------------------------------------------------------
    # Balance
    # -------------------------------------------------------------------------

    def _used_by_grant(self, grant_ids: list[UUID]) -> dict[UUID, Decimal]:
        if not grant_ids:
            return {}
        used: dict[UUID, Decimal] = {}
        rows = self._session.execute(
            select(UsageModel.grant_id, UsageModel.amount)
            .where(UsageModel.grant_id.in_(grant_ids))
        ).all()
        for grant_id, amount in rows:
            used[grant_id] = used.get(grant_id, ZERO) + amount
        return used

    def get_balance(self, subject_id: UUID, as_of: date | None = None) -> Balance:
        """Balance computed from grant and usage rows (the source of truth)."""
        as_of = as_of or self._clock.today()
        grants = self.list_grants(subject_id)
        used = self._used_by_grant([g.grant_id for g in grants])
        return compute_balance(
            subject_id, grants, used, as_of, self._expiring_soon_days,
        )

    def available_balance(self, subject_id: UUID, as_of: date | None = None) -> Decimal:
        """Unused days on grants still valid on ``as_of``.  No side effects."""
        return self.get_balance(subject_id, as_of).remaining

    def get_cached_balance(self, subject_id: UUID) -> Balance | None:
        row = self._session.execute(
            select(BalanceModel).where(BalanceModel.subject_id == subject_id)
        ).scalar_one_or_none()
        return row.to_dto() if row is not None else None

    def recompute_balance(self, subject_id: UUID, as_of: date | None = None) -> Balance:
        """Recompute the balance and write it to the cache row."""
        balance = self.get_balance(subject_id, as_of)
        now = self._clock.now()

        row = self._session.execute(
            select(BalanceModel)
            .where(BalanceModel.subject_id == subject_id)
            .with_for_update()
        ).scalar_one_or_none()

        if row is None:
            savepoint = self._session.begin_nested()
            try:
                row = BalanceModel(subject_id=subject_id)
                self._apply_balance(row, balance, now)
                self._session.add(row)
                self._session.flush()
                savepoint.commit()
                return balance
            except IntegrityError:
                savepoint.rollback()
                row = self._session.execute(
                    select(BalanceModel)
                    .where(BalanceModel.subject_id == subject_id)
                    .with_for_update()
                ).scalar_one()

        self._apply_balance(row, balance, now)
        self._session.flush()
        return balance

    @staticmethod
    def _apply_balance(row: BalanceModel, balance: Balance, now) -> None:
        row.total_days = balance.total
        row.used_days = balance.used
        row.remaining_days = balance.remaining
        row.expiring_soon_days = balance.expiring_soon
        row.as_of = balance.as_of
        row.recomputed_at = now

    # -------------------------------------------------------------------------
    # Deductions
    # -------------------------------------------------------------------------

    def deduct(
        self,
        document_id: UUID,
        subject_id: UUID,
        amount: Decimal | int | str,
        actor_id: UUID,
        used_date: date | None = None,
    ) -> DeductionResult:
        """Consume ``amount`` days for an approved document, FIFO by expiry.

        Calling twice with the same document id posts once; the second call
        returns the first posting with ``already_posted=True``.

        Raises:
            InsufficientBalanceError: nothing is posted.
        """
        return self._post(
            document_id=document_id,
            subject_id=subject_id,
            amount=amount,
            actor_id=actor_id,
            used_date=used_date,
            kind=DeductionKind.DOCUMENT,
            reason=None,
        )

    def deduct_manual(
        self,
        subject_id: UUID,
        amount: Decimal | int | str,
        reason: str,
        actor_id: UUID,
        used_date: date | None = None,
    ) -> DeductionResult:
        """Administrative deduction under a fresh synthetic document id."""
        return self._post(
            document_id=uuid4(),
            subject_id=subject_id,
            amount=amount,
            actor_id=actor_id,
            used_date=used_date,
            kind=DeductionKind.MANUAL,
            reason=reason,
        )

    def _post(
        self,
        document_id: UUID,
        subject_id: UUID,
        amount: Decimal | int | str,
        actor_id: UUID,
        used_date: date | None,
        kind: DeductionKind,
        reason: str | None,
    ) -> DeductionResult:
        days = to_days(amount)
        used_date = used_date or self._clock.today()

        existing = self._deduction_for(document_id)
        if existing is not None:
            logger.info(
                "deduction_already_posted",
                extra={"document_id": str(document_id), "subject_id": str(subject_id)},
            )
            return self._existing_result(existing)

        # Lock the candidate grants so concurrent deductions serialize
        grants = self._session.execute(
            select(GrantModel)
            .where(
                GrantModel.subject_id == subject_id,
                GrantModel.approval_status == GrantApprovalStatus.APPROVED.value,
                GrantModel.expiration_date >= used_date,
            )
            .order_by(GrantModel.expiration_date, GrantModel.seq)
            .with_for_update()
        ).scalars().all()
        used = self._used_by_grant([g.id for g in grants])

        plan = allocate_fifo(
            (
                GrantSlice(
                    grant_id=g.id,
                    expiration_date=g.expiration_date,
                    seq=g.seq,
                    available=g.amount - used.get(g.id, ZERO),
                )
                for g in grants
            ),
            days,
        )
        if not plan.is_complete:
            available = plan.allocated
            logger.warning(
                "deduction_insufficient_balance",
                extra={
                    "document_id": str(document_id),
                    "subject_id": str(subject_id),
                    "requested": str(days),
                    "available": str(available),
                },
            )
            raise InsufficientBalanceError(str(subject_id), str(days), str(available))

        now = self._clock.now()
        savepoint = self._session.begin_nested()
        try:
            header = DeductionModel(
                document_id=document_id,
                subject_id=subject_id,
                amount=days,
                kind=kind.value,
                reason=reason,
                used_date=used_date,
                posted_at=now,
                created_by_id=actor_id,
            )
            self._session.add(header)
            self._session.flush()
            for allocation in plan.allocations:
                self._session.add(
                    UsageModel(
                        deduction_id=header.id,
                        document_id=document_id,
                        grant_id=allocation.grant_id,
                        subject_id=subject_id,
                        amount=allocation.amount,
                        used_date=used_date,
                        created_by_id=actor_id,
                    )
                )
            self._session.flush()
            savepoint.commit()
        except IntegrityError:
            # A concurrent call posted this document first
            savepoint.rollback()
            existing = self._deduction_for(document_id)
            if existing is None:
                raise
            return self._existing_result(existing)

        self._auditor.record_deduction_posted(
            document_id=document_id,
            subject_id=subject_id,
            amount=days,
            allocations=[
                {"grant_id": a.grant_id, "amount": a.amount} for a in plan.allocations
            ],
            actor_id=actor_id,
        )
        balance = self.recompute_balance(subject_id, used_date)

        logger.info(
            "deduction_posted",
            extra={
                "document_id": str(document_id),
                "subject_id": str(subject_id),
                "amount": str(days),
                "kind": kind.value,
                "grant_count": len(plan.allocations),
                "remaining": str(balance.remaining),
            },
        )
        return DeductionResult(
            document_id=document_id,
            subject_id=subject_id,
            amount=days,
            allocations=plan.allocations,
            already_posted=False,
            remaining=balance.remaining,
            kind=kind,
        )

    def _deduction_for(self, document_id: UUID) -> DeductionModel | None:
        return self._session.execute(
            select(DeductionModel).where(DeductionModel.document_id == document_id)
        ).scalar_one_or_none()

    def _existing_result(self, header: DeductionModel) -> DeductionResult:
        usages = self._session.execute(
            select(UsageModel).where(UsageModel.deduction_id == header.id)
        ).scalars().all()
        return DeductionResult(
            document_id=header.document_id,
            subject_id=header.subject_id,
            amount=header.amount,
            allocations=tuple(
                Allocation(grant_id=u.grant_id, amount=u.amount) for u in usages
            ),
            already_posted=True,
            remaining=self.available_balance(header.subject_id),
            kind=DeductionKind(header.kind),
        )
