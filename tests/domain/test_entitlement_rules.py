"""
Entitlement calculators: calendar helpers, monthly anniversary grants,
fiscal-year proration and quarterly attendance awards.
"""

from datetime import date
from decimal import Decimal

import pytest

from leave_kernel.domain.entitlement import (
    FiscalAnnualPolicy,
    MonthlyGrantPolicy,
    add_months,
    add_years,
    anniversary_day_matches,
    evaluate_attendance_award,
    evaluate_fiscal_annual,
    evaluate_monthly,
    evaluated_quarter,
    monthly_attendance_window,
    monthly_grant_due,
    months_of_tenure,
    prior_year_days_employed,
    quarter_bounds,
    quarter_label,
)


class TestCalendarHelpers:

    @pytest.mark.parametrize("start, months, expected", [
        (date(2024, 1, 31), 1, date(2024, 2, 29)),
        (date(2023, 1, 31), 1, date(2023, 2, 28)),
        (date(2024, 11, 15), 3, date(2025, 2, 15)),
        (date(2024, 3, 31), -1, date(2024, 2, 29)),
    ])
    def test_add_months_clamps_to_month_end(self, start, months, expected):
        assert add_months(start, months) == expected

    def test_add_years_from_leap_day(self):
        assert add_years(date(2024, 2, 29), 1) == date(2025, 2, 28)

    def test_anniversary_falls_on_last_day_of_short_month(self):
        assert anniversary_day_matches(date(2024, 1, 31), date(2024, 2, 29))
        assert anniversary_day_matches(date(2024, 1, 30), date(2024, 4, 30))
        assert not anniversary_day_matches(date(2024, 1, 30), date(2024, 3, 31))

    def test_months_of_tenure_counts_whole_months(self):
        assert months_of_tenure(date(2024, 1, 31), date(2024, 3, 30)) == 1
        assert months_of_tenure(date(2024, 1, 31), date(2024, 3, 31)) == 2
        assert months_of_tenure(date(2024, 6, 15), date(2024, 6, 20)) == 0

    def test_quarter_helpers(self):
        assert quarter_bounds(2024, 1) == (date(2024, 1, 1), date(2024, 3, 31))
        assert quarter_bounds(2024, 4) == (date(2024, 10, 1), date(2024, 12, 31))
        assert evaluated_quarter(date(2025, 1, 15)) == (2024, 4)
        assert quarter_label(2025, 2) == "2025-Q2"


class TestMonthlyGrant:

    HIRE = date(2024, 6, 15)

    def test_first_anniversary_month_grants_one_day(self):
        decision = evaluate_monthly(self.HIRE, date(2024, 7, 15), late_arrivals=0)

        assert decision.eligible
        assert decision.amount == Decimal("1")
        assert decision.granted_date == date(2024, 7, 15)
        assert decision.expiration_date == date(2025, 6, 15)
        assert decision.basis["tenure_months"] == 1

    def test_not_anniversary_day(self):
        decision = evaluate_monthly(self.HIRE, date(2024, 7, 14), late_arrivals=0)

        assert not decision.eligible
        assert decision.reason == "not_anniversary_day"
        assert decision.amount == Decimal("0")

    def test_tenure_beyond_first_year(self):
        decision = evaluate_monthly(self.HIRE, date(2025, 7, 15), late_arrivals=0)

        assert decision.reason == "tenure_out_of_range"

    def test_hire_day_itself_is_out_of_range(self):
        assert evaluate_monthly(self.HIRE, self.HIRE, 0).reason == "tenure_out_of_range"

    def test_late_arrival_gate(self):
        assert evaluate_monthly(self.HIRE, date(2024, 8, 15), late_arrivals=2).eligible
        decision = evaluate_monthly(self.HIRE, date(2024, 8, 15), late_arrivals=3)

        assert decision.reason == "attendance_gate_failed"
        assert decision.basis["late_arrivals"] == 3

    def test_twelfth_month_still_grants(self):
        assert evaluate_monthly(self.HIRE, date(2025, 6, 15), late_arrivals=0).eligible

    def test_attendance_window_is_previous_anniversary_to_yesterday(self):
        assert monthly_attendance_window(self.HIRE, date(2024, 8, 15)) == (
            date(2024, 7, 15), date(2024, 8, 14),
        )

    def test_due_check_uses_policy(self):
        policy = MonthlyGrantPolicy(min_tenure_months=2)

        assert monthly_grant_due(self.HIRE, date(2024, 7, 15))
        assert not monthly_grant_due(self.HIRE, date(2024, 7, 15), policy)
        assert not monthly_grant_due(self.HIRE, date(2024, 7, 16))


class TestFiscalAnnualGrant:

    TODAY = date(2025, 1, 1)

    def test_full_year_gets_base_days(self):
        decision = evaluate_fiscal_annual(date(2020, 5, 1), self.TODAY)

        assert decision.eligible
        assert decision.amount == Decimal("15")
        assert decision.granted_date == date(2025, 1, 1)
        assert decision.expiration_date == date(2025, 12, 31)

    def test_mid_year_hire_prorated_and_floored(self):
        decision = evaluate_fiscal_annual(date(2024, 7, 1), self.TODAY)

        assert decision.basis["days_employed"] == 184
        assert decision.amount == Decimal("7")

    def test_leap_year_hire_on_jan_first_capped_at_base(self):
        assert prior_year_days_employed(date(2024, 1, 1), 2025) == 366
        assert evaluate_fiscal_annual(date(2024, 1, 1), self.TODAY).amount == Decimal("15")

    def test_hired_this_year_skipped(self):
        decision = evaluate_fiscal_annual(date(2025, 1, 1), self.TODAY)

        assert decision.reason == "hired_after_prior_year"

    def test_prorated_to_zero_skipped(self):
        decision = evaluate_fiscal_annual(date(2024, 12, 20), self.TODAY)

        assert not decision.eligible
        assert decision.reason == "prorated_to_zero"

    def test_policy_base_days(self):
        policy = FiscalAnnualPolicy(base_days=20)

        assert evaluate_fiscal_annual(date(2020, 1, 1), self.TODAY, policy).amount == Decimal("20")


class TestAttendanceAward:

    def test_clean_quarter_awards_one_day_until_end_of_next_quarter(self):
        decision = evaluate_attendance_award(date(2025, 4, 1), worked_days=60, late_arrivals=0)

        assert decision.eligible
        assert decision.amount == Decimal("1")
        assert decision.period == "2025-Q1"
        assert decision.expiration_date == date(2025, 6, 30)

    def test_january_run_evaluates_previous_year_q4(self):
        decision = evaluate_attendance_award(date(2025, 1, 15), worked_days=50, late_arrivals=0)

        assert decision.period == "2024-Q4"
        assert decision.expiration_date == date(2025, 3, 31)

    def test_any_late_arrival_disqualifies(self):
        decision = evaluate_attendance_award(date(2025, 4, 1), worked_days=60, late_arrivals=1)

        assert decision.reason == "late_arrivals_recorded"
        assert decision.period == "2025-Q1"

    def test_no_worked_days_disqualifies(self):
        decision = evaluate_attendance_award(date(2025, 4, 1), worked_days=0, late_arrivals=0)

        assert decision.reason == "no_worked_days"
