"""
FIFO allocation and balance computation (pure, no database).

The property tests drive ``allocate_fifo`` with random grant sets to check
that it never overdraws a grant, allocates exactly what it reports, and
always drains sooner-expiring grants first.
"""

from datetime import date, timedelta
from decimal import Decimal
from uuid import uuid4

from hypothesis import given, settings
from hypothesis import strategies as st

from leave_kernel.domain.ledger import (
    GrantRecord,
    GrantSlice,
    GrantType,
    allocate_fifo,
    compute_balance,
)

TODAY = date(2025, 3, 10)


def _slice(available: str, expires_in: int, seq: int) -> GrantSlice:
    return GrantSlice(
        grant_id=uuid4(),
        expiration_date=TODAY + timedelta(days=expires_in),
        seq=seq,
        available=Decimal(available),
    )


def _grant(amount: str, expires_in: int, seq: int = 1) -> GrantRecord:
    return GrantRecord(
        grant_id=uuid4(),
        subject_id=uuid4(),
        grant_type=GrantType.MANUAL,
        amount=Decimal(amount),
        granted_date=TODAY - timedelta(days=10),
        expiration_date=TODAY + timedelta(days=expires_in),
        seq=seq,
    )


class TestAllocateFifo:

    def test_soonest_expiry_consumed_first(self):
        a = _slice("5", 10, seq=2)
        b = _slice("5", 40, seq=1)
        plan = allocate_fifo([b, a], Decimal("7"))

        assert plan.is_complete
        assert [(x.grant_id, x.amount) for x in plan.allocations] == [
            (a.grant_id, Decimal("5")),
            (b.grant_id, Decimal("2")),
        ]

    def test_seq_breaks_expiry_ties(self):
        later = _slice("2", 30, seq=9)
        earlier = _slice("2", 30, seq=3)
        plan = allocate_fifo([later, earlier], Decimal("1"))

        assert plan.allocations[0].grant_id == earlier.grant_id

    def test_exhausted_grants_skipped(self):
        empty = _slice("0", 5, seq=1)
        full = _slice("3", 50, seq=2)
        plan = allocate_fifo([empty, full], Decimal("1.5"))

        assert [a.grant_id for a in plan.allocations] == [full.grant_id]

    def test_shortfall_reported(self):
        plan = allocate_fifo([_slice("1", 5, 1), _slice("0.5", 6, 2)], Decimal("3"))

        assert not plan.is_complete
        assert plan.shortfall == Decimal("1.5")
        assert plan.allocated == Decimal("1.5")

    def test_no_candidates(self):
        plan = allocate_fifo([], Decimal("1"))

        assert plan.allocations == ()
        assert plan.shortfall == Decimal("1")


half_days = st.integers(min_value=0, max_value=40).map(lambda n: Decimal(n) / 2)
slices = st.lists(
    st.tuples(half_days, st.integers(min_value=0, max_value=400)),
    max_size=8,
)


class TestAllocateFifoProperties:

    @settings(max_examples=200, deadline=None)
    @given(slices, st.integers(min_value=1, max_value=60).map(lambda n: Decimal(n) / 2))
    def test_allocation_is_bounded_and_exact(self, raw, amount):
        candidates = [
            GrantSlice(uuid4(), TODAY + timedelta(days=d), i, avail)
            for i, (avail, d) in enumerate(raw)
        ]
        by_id = {c.grant_id: c for c in candidates}
        plan = allocate_fifo(candidates, amount)

        for allocation in plan.allocations:
            assert Decimal("0") < allocation.amount <= by_id[allocation.grant_id].available
        assert plan.allocated + plan.shortfall == amount
        total_available = sum((c.available for c in candidates), Decimal("0"))
        assert plan.is_complete == (total_available >= amount)

    @settings(max_examples=200, deadline=None)
    @given(slices, st.integers(min_value=1, max_value=60).map(lambda n: Decimal(n) / 2))
    def test_only_the_last_allocation_is_partial(self, raw, amount):
        candidates = [
            GrantSlice(uuid4(), TODAY + timedelta(days=d), i, avail)
            for i, (avail, d) in enumerate(raw)
        ]
        by_id = {c.grant_id: c for c in candidates}
        plan = allocate_fifo(candidates, amount)

        keys = [by_id[a.grant_id].fifo_key for a in plan.allocations]
        assert keys == sorted(keys)
        for allocation in plan.allocations[:-1]:
            assert allocation.amount == by_id[allocation.grant_id].available


class TestComputeBalance:

    def test_expired_grants_and_their_usage_drop_out(self):
        active = _grant("10", 100)
        expired = _grant("5", -1)
        used = {active.grant_id: Decimal("2"), expired.grant_id: Decimal("5")}

        balance = compute_balance(uuid4(), [active, expired], used, TODAY)

        assert balance.total == Decimal("10")
        assert balance.used == Decimal("2")
        assert balance.remaining == Decimal("8")

    def test_grant_expiring_today_still_counts(self):
        balance = compute_balance(uuid4(), [_grant("3", 0)], {}, TODAY)

        assert balance.remaining == Decimal("3")

    def test_expiring_soon_is_unused_part_within_horizon(self):
        soon = _grant("5", 10)
        later = _grant("5", 90)
        used = {soon.grant_id: Decimal("1.5")}

        balance = compute_balance(uuid4(), [soon, later], used, TODAY, expiring_soon_days=30)

        assert balance.expiring_soon == Decimal("3.5")
        assert balance.remaining == Decimal("8.5")
