"""
Entitlement calculators (``leave_kernel.domain.entitlement``).

Responsibility
--------------
Pure date arithmetic and eligibility rules behind the three grant jobs:
monthly anniversary grants, fiscal-year proration, and quarterly
attendance awards.  Each ``evaluate_*`` function takes a subject's hire
date and attendance figures and returns an ``EntitlementDecision``; the
batch tasks turn eligible decisions into ledger grants.

Architecture position
---------------------
**Kernel domain layer** -- ZERO I/O.  Attendance figures are fetched by
the caller through the subject directory.
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass, field, replace
from datetime import date, timedelta
from decimal import Decimal
from typing import Any

ZERO = Decimal("0")


@dataclass(frozen=True)
class MonthlyGrantPolicy:
    days: Decimal = Decimal("1")
    max_late_arrivals: int = 2
    min_tenure_months: int = 1
    max_tenure_months: int = 12


@dataclass(frozen=True)
class FiscalAnnualPolicy:
    base_days: int = 15
    days_in_year: int = 365


@dataclass(frozen=True)
class AttendanceAwardPolicy:
    days: Decimal = Decimal("1")
    max_late_arrivals: int = 0
    min_worked_days: int = 1


@dataclass(frozen=True)
class EntitlementDecision:
    """What a grant job should do for one subject.

    When ``eligible`` is False, ``reason`` says why and the amount is zero.
    ``period`` names the evaluated period where the grant's idempotency key
    depends on it (attendance awards).
    """

    eligible: bool
    amount: Decimal
    granted_date: date
    expiration_date: date | None
    basis: dict[str, Any] = field(default_factory=dict)
    reason: str | None = None
    period: str | None = None


def _skip(today: date, reason: str, **basis: Any) -> EntitlementDecision:
    return EntitlementDecision(
        eligible=False,
        amount=ZERO,
        granted_date=today,
        expiration_date=None,
        basis=basis,
        reason=reason,
    )


# =========================================================================
# Calendar helpers
# =========================================================================


def last_day_of_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def add_months(d: date, months: int) -> date:
    """Shift by whole months, clamping the day to the target month's end."""
    index = d.year * 12 + (d.month - 1) + months
    year, month = divmod(index, 12)
    month += 1
    return date(year, month, min(d.day, last_day_of_month(year, month)))


def add_years(d: date, years: int) -> date:
    """Shift by whole years; 29 February becomes 28 February."""
    return add_months(d, years * 12)


def anniversary_day_matches(hire_date: date, today: date) -> bool:
    """True when ``today`` is this month's hire-anniversary day.

    Hire days past the end of a short month fall on its last day.
    """
    last = last_day_of_month(today.year, today.month)
    return today.day == min(hire_date.day, last)


def months_of_tenure(hire_date: date, today: date) -> int:
    """Whole months elapsed from ``hire_date`` to ``today``."""
    months = (today.year - hire_date.year) * 12 + (today.month - hire_date.month)
    if months > 0 and add_months(hire_date, months) > today:
        months -= 1
    return max(months, 0)


def quarter_of(d: date) -> tuple[int, int]:
    return d.year, (d.month - 1) // 3 + 1


def quarter_bounds(year: int, quarter: int) -> tuple[date, date]:
    first_month = (quarter - 1) * 3 + 1
    last_month = first_month + 2
    return (
        date(year, first_month, 1),
        date(year, last_month, last_day_of_month(year, last_month)),
    )


def shift_quarter(year: int, quarter: int, delta: int) -> tuple[int, int]:
    index = year * 4 + (quarter - 1) + delta
    return index // 4, index % 4 + 1


def quarter_label(year: int, quarter: int) -> str:
    return f"{year}-Q{quarter}"


# =========================================================================
# Monthly grant
# =========================================================================


def monthly_attendance_window(hire_date: date, today: date) -> tuple[date, date]:
    """The prior hire-anniversary month: previous anniversary to yesterday."""
    tenure = months_of_tenure(hire_date, today)
    start = add_months(hire_date, max(tenure - 1, 0))
    return start, today - timedelta(days=1)


def monthly_grant_due(
    hire_date: date,
    today: date,
    policy: MonthlyGrantPolicy = MonthlyGrantPolicy(),
) -> bool:
    """Anniversary day and tenure gates only; attendance is checked later."""
    if not anniversary_day_matches(hire_date, today):
        return False
    tenure = months_of_tenure(hire_date, today)
    return policy.min_tenure_months <= tenure <= policy.max_tenure_months


def evaluate_monthly(
    hire_date: date,
    today: date,
    late_arrivals: int,
    policy: MonthlyGrantPolicy = MonthlyGrantPolicy(),
) -> EntitlementDecision:
    """Monthly anniversary grant for employees in their first year."""
    if not anniversary_day_matches(hire_date, today):
        return _skip(today, "not_anniversary_day", hire_date=hire_date.isoformat())

    tenure = months_of_tenure(hire_date, today)
    if not policy.min_tenure_months <= tenure <= policy.max_tenure_months:
        return _skip(today, "tenure_out_of_range", tenure_months=tenure)

    window_start, window_end = monthly_attendance_window(hire_date, today)
    basis = {
        "hire_date": hire_date.isoformat(),
        "tenure_months": tenure,
        "window_start": window_start.isoformat(),
        "window_end": window_end.isoformat(),
        "late_arrivals": late_arrivals,
        "max_late_arrivals": policy.max_late_arrivals,
    }
    if late_arrivals > policy.max_late_arrivals:
        return _skip(today, "attendance_gate_failed", **basis)

    return EntitlementDecision(
        eligible=True,
        amount=policy.days,
        granted_date=today,
        expiration_date=add_years(hire_date, 1),
        basis=basis,
    )


# =========================================================================
# Fiscal-annual grant
# =========================================================================


def prior_year_days_employed(hire_date: date, fiscal_year: int) -> int:
    """Days employed during ``fiscal_year - 1``.

    Hired before that year counts as a full 365-day year; hired during it
    counts from the hire date through 31 December inclusive; hired later
    counts zero.
    """
    prior_start = date(fiscal_year - 1, 1, 1)
    prior_end = date(fiscal_year - 1, 12, 31)
    if hire_date < prior_start:
        return 365
    if hire_date > prior_end:
        return 0
    return (prior_end - hire_date).days + 1


def evaluate_fiscal_annual(
    hire_date: date,
    today: date,
    policy: FiscalAnnualPolicy = FiscalAnnualPolicy(),
) -> EntitlementDecision:
    """Prorated annual grant for the fiscal year containing ``today``."""
    fiscal_start = date(today.year, 1, 1)
    fiscal_end = date(today.year, 12, 31)
    worked = prior_year_days_employed(hire_date, today.year)
    if worked == 0:
        return _skip(fiscal_start, "hired_after_prior_year", hire_date=hire_date.isoformat())

    amount = min(worked * policy.base_days // policy.days_in_year, policy.base_days)
    basis = {
        "hire_date": hire_date.isoformat(),
        "prior_year": today.year - 1,
        "days_employed": worked,
        "base_days": policy.base_days,
        "days_in_year": policy.days_in_year,
    }
    if amount == 0:
        return _skip(fiscal_start, "prorated_to_zero", **basis)

    return EntitlementDecision(
        eligible=True,
        amount=Decimal(amount),
        granted_date=fiscal_start,
        expiration_date=fiscal_end,
        basis=basis,
    )


# =========================================================================
# Attendance award
# =========================================================================


def evaluated_quarter(today: date) -> tuple[int, int]:
    """The quarter before the one containing ``today``."""
    year, quarter = quarter_of(today)
    return shift_quarter(year, quarter, -1)


def evaluate_attendance_award(
    today: date,
    worked_days: int,
    late_arrivals: int,
    policy: AttendanceAwardPolicy = AttendanceAwardPolicy(),
) -> EntitlementDecision:
    """Quarterly award for a clean attendance record in the prior quarter."""
    year, quarter = evaluated_quarter(today)
    start, end = quarter_bounds(year, quarter)
    next_year, next_quarter = shift_quarter(year, quarter, 1)
    period = quarter_label(year, quarter)
    basis = {
        "period": period,
        "period_start": start.isoformat(),
        "period_end": end.isoformat(),
        "worked_days": worked_days,
        "late_arrivals": late_arrivals,
    }
    if worked_days < policy.min_worked_days:
        decision = _skip(today, "no_worked_days", **basis)
    elif late_arrivals > policy.max_late_arrivals:
        decision = _skip(today, "late_arrivals_recorded", **basis)
    else:
        decision = EntitlementDecision(
            eligible=True,
            amount=policy.days,
            granted_date=today,
            expiration_date=quarter_bounds(next_year, next_quarter)[1],
            basis=basis,
        )
    return replace(decision, period=period)
