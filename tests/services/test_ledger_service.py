"""
LedgerService: grants, FIFO deductions, idempotency and balance caching.
"""

from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from leave_kernel.domain.ledger import DeductionKind, GrantType
from leave_kernel.exceptions import (
    ImmutabilityViolationError,
    InsufficientBalanceError,
    InvalidAmountError,
    MalformedGrantError,
)
from leave_kernel.models.ledger import DeductionModel, GrantModel, UsageModel

from tests.conftest import TEST_ACTOR_ID


class TestIssueGrant:

    def test_grant_is_recorded_with_sequence(self, ledger, issue_grant):
        subject = uuid4()
        first = issue_grant(subject, "5")
        second = issue_grant(subject, "1.5")

        assert first.amount == Decimal("5.00")
        assert second.seq > first.seq
        assert ledger.get_balance(subject).total == Decimal("6.50")

    def test_idempotency_key_returns_existing_grant(self, ledger, clock):
        subject = uuid4()
        kwargs = dict(
            subject_id=subject,
            grant_type=GrantType.MONTHLY,
            amount="1",
            granted_date=clock.today(),
            expiration_date=clock.today() + timedelta(days=365),
            actor_id=TEST_ACTOR_ID,
            idempotency_key=f"{subject}:monthly:2025-03-10",
        )
        first = ledger.issue_grant(**kwargs)
        second = ledger.issue_grant(**kwargs)

        assert first.created and not second.created
        assert second.grant.grant_id == first.grant.grant_id
        assert len(ledger.list_grants(subject)) == 1

    @pytest.mark.parametrize("amount", ["0", "-1", "0.25", 1.5])
    def test_bad_amount_is_malformed_grant(self, ledger, clock, amount):
        with pytest.raises(MalformedGrantError):
            ledger.issue_grant(
                subject_id=uuid4(),
                grant_type=GrantType.MANUAL,
                amount=amount,
                granted_date=clock.today(),
                expiration_date=clock.today() + timedelta(days=1),
                actor_id=TEST_ACTOR_ID,
            )

    def test_expiration_before_grant_date_rejected(self, ledger, clock):
        with pytest.raises(MalformedGrantError, match="precedes"):
            ledger.issue_grant(
                subject_id=uuid4(),
                grant_type=GrantType.MANUAL,
                amount="1",
                granted_date=clock.today(),
                expiration_date=clock.today() - timedelta(days=1),
                actor_id=TEST_ACTOR_ID,
            )

    def test_grants_are_immutable(self, ledger, session, issue_grant):
        grant = issue_grant(uuid4(), "2")
        row = session.get(GrantModel, grant.grant_id)
        row.amount = Decimal("20")

        with pytest.raises(ImmutabilityViolationError):
            session.flush()


class TestDeduct:

    def test_fifo_takes_soonest_expiring_grant_first(self, ledger, issue_grant):
        subject = uuid4()
        a = issue_grant(subject, "5", expires_in=10)
        b = issue_grant(subject, "5", expires_in=40)

        result = ledger.deduct(uuid4(), subject, "7", TEST_ACTOR_ID)

        assert [(x.grant_id, x.amount) for x in result.allocations] == [
            (a.grant_id, Decimal("5.00")),
            (b.grant_id, Decimal("2.00")),
        ]
        assert result.remaining == Decimal("3.00")
        assert not result.already_posted
        assert ledger.get_balance(subject).remaining == Decimal("3.00")
        assert {(u.grant_id, u.amount) for u in ledger.list_usages(subject)} == {
            (a.grant_id, Decimal("5.00")),
            (b.grant_id, Decimal("2.00")),
        }

    def test_same_document_posts_once(self, ledger, session, issue_grant):
        subject = uuid4()
        issue_grant(subject, "5")
        document_id = uuid4()

        first = ledger.deduct(document_id, subject, "2", TEST_ACTOR_ID)
        second = ledger.deduct(document_id, subject, "2", TEST_ACTOR_ID)

        assert second.already_posted
        assert second.allocations == first.allocations
        assert ledger.get_balance(subject).remaining == Decimal("3.00")
        headers = session.execute(
            select(func.count()).select_from(DeductionModel)
            .where(DeductionModel.document_id == document_id)
        ).scalar()
        assert headers == 1

    def test_concurrent_post_of_same_document_yields_existing(
        self, ledger, session, issue_grant, monkeypatch,
    ):
        subject = uuid4()
        issue_grant(subject, "5")
        document_id = uuid4()
        winner = ledger.deduct(document_id, subject, "2", TEST_ACTOR_ID)
        usage_count = select(func.count()).select_from(UsageModel).where(
            UsageModel.document_id == document_id,
        )
        usages_before = session.execute(usage_count).scalar()

        # The losing call read before the winner's header existed
        lookup = ledger._deduction_for
        reads = []

        def stale_first_read(doc_id):
            reads.append(doc_id)
            return None if len(reads) == 1 else lookup(doc_id)

        monkeypatch.setattr(ledger, "_deduction_for", stale_first_read)

        loser = ledger.deduct(document_id, subject, "2", TEST_ACTOR_ID)

        assert loser.already_posted
        assert loser.allocations == winner.allocations
        assert len(reads) == 2
        assert session.execute(usage_count).scalar() == usages_before
        assert ledger.get_balance(subject).remaining == Decimal("3.00")

    def test_insufficient_balance_posts_nothing(self, ledger, session, issue_grant):
        subject = uuid4()
        issue_grant(subject, "1", expires_in=5)
        issue_grant(subject, "1.5", expires_in=50)

        with pytest.raises(InsufficientBalanceError) as exc_info:
            ledger.deduct(uuid4(), subject, "3", TEST_ACTOR_ID)

        assert exc_info.value.requested == "3.00"
        assert Decimal(exc_info.value.available) == Decimal("2.5")
        assert session.execute(select(func.count()).select_from(UsageModel)).scalar() == 0
        assert ledger.get_balance(subject).remaining == Decimal("2.50")

    def test_expired_grants_are_not_consumed(self, ledger, clock, issue_grant):
        subject = uuid4()
        issue_grant(subject, "5", expires_in=-1, granted_date=clock.today() - timedelta(days=30))
        fresh = issue_grant(subject, "2", expires_in=30)

        result = ledger.deduct(uuid4(), subject, "2", TEST_ACTOR_ID)

        assert [a.grant_id for a in result.allocations] == [fresh.grant_id]
        with pytest.raises(InsufficientBalanceError):
            ledger.deduct(uuid4(), subject, "0.5", TEST_ACTOR_ID)

    def test_half_day_deduction(self, ledger, issue_grant):
        subject = uuid4()
        issue_grant(subject, "1")

        result = ledger.deduct(uuid4(), subject, "0.5", TEST_ACTOR_ID)

        assert result.remaining == Decimal("0.50")

    def test_off_grid_deduction_rejected(self, ledger, issue_grant):
        subject = uuid4()
        issue_grant(subject, "1")

        with pytest.raises(InvalidAmountError):
            ledger.deduct(uuid4(), subject, "0.3", TEST_ACTOR_ID)

    def test_usage_never_exceeds_grant(self, ledger, session, issue_grant):
        subject = uuid4()
        grants = [issue_grant(subject, "1.5", expires_in=d) for d in (5, 6, 7)]
        for _ in range(4):
            ledger.deduct(uuid4(), subject, "1", TEST_ACTOR_ID)

        for grant in grants:
            used = session.execute(
                select(func.coalesce(func.sum(UsageModel.amount), 0))
                .where(UsageModel.grant_id == grant.grant_id)
            ).scalar()
            assert Decimal(str(used)) <= grant.amount
        assert ledger.get_balance(subject).remaining == Decimal("0.50")


class TestManualDeduction:

    def test_manual_deduction_uses_synthetic_document(self, ledger, issue_grant):
        subject = uuid4()
        issue_grant(subject, "3")

        first = ledger.deduct_manual(subject, "1", "payroll correction", TEST_ACTOR_ID)
        second = ledger.deduct_manual(subject, "1", "payroll correction", TEST_ACTOR_ID)

        assert first.kind == DeductionKind.MANUAL
        assert first.document_id != second.document_id
        assert ledger.get_balance(subject).remaining == Decimal("1.00")


class TestBalanceCache:

    def test_cache_follows_every_insertion(self, ledger, issue_grant):
        subject = uuid4()
        assert ledger.get_cached_balance(subject) is None

        issue_grant(subject, "4", expires_in=10)
        assert ledger.get_cached_balance(subject).remaining == Decimal("4.00")

        ledger.deduct(uuid4(), subject, "1.5", TEST_ACTOR_ID)
        cached = ledger.get_cached_balance(subject)
        assert cached.used == Decimal("1.50")
        assert cached.remaining == Decimal("2.50")
        assert cached.expiring_soon == Decimal("2.50")

    def test_recompute_matches_source_rows(self, ledger, issue_grant):
        subject = uuid4()
        issue_grant(subject, "2")
        ledger.deduct(uuid4(), subject, "1", TEST_ACTOR_ID)

        assert ledger.recompute_balance(subject) == ledger.get_balance(subject)
