"""
Test suite for amortization module

Tests the EMI formula, per-period rounding and the guarantees every schedule
must satisfy: principal components sum exactly to the principal and the
balance ends at zero. All financial math must be precise.
"""

import pytest
from decimal import Decimal
from datetime import date

from employee_loans.amortization import AmortizationEngine, add_months, monthly_rate
from employee_loans.currency import Money, Currency
from employee_loans.errors import PolicyError, ValidationError


@pytest.fixture
def engine():
    return AmortizationEngine()


def usd(value):
    return Money(Decimal(value), Currency.USD)


class TestInstallment:
    """Test the level payment"""

    def test_reference_installment(self, engine):
        """10,000 over 12 months at 12% is 888.49 a month"""
        installment = engine.compute_installment(usd('10000'), Decimal('12'), 12)
        assert installment == usd('888.49')

    def test_zero_rate_is_principal_over_term(self, engine):
        assert engine.compute_installment(usd('1200'), Decimal('0'), 12) == usd('100.00')

    def test_monthly_rate(self):
        assert monthly_rate(Decimal('12')) == Decimal('0.01')

    def test_invalid_inputs(self, engine):
        with pytest.raises(ValidationError) as exc_info:
            engine.compute_installment(usd('0'), Decimal('5'), 6)
        assert exc_info.value.code == "ErrInvalidAmount"

        with pytest.raises(ValidationError) as exc_info:
            engine.compute_installment(usd('100'), Decimal('5'), 0)
        assert exc_info.value.code == "ErrInvalidTerm"

        with pytest.raises(ValidationError) as exc_info:
            engine.compute_installment(usd('100'), Decimal('-1'), 6)
        assert exc_info.value.code == "ErrInvalidRate"


class TestSchedule:
    """Test full schedule generation"""

    def test_reference_schedule(self, engine):
        schedule = engine.compute_schedule(usd('10000'), Decimal('12'), 12)

        assert schedule.installment == usd('888.49')
        assert len(schedule.lines) == 12
        first = schedule.lines[0]
        assert first.interest_amount == usd('100.00')
        assert first.principal_amount == usd('788.49')
        assert first.remaining_balance == usd('9211.51')
        assert schedule.lines[-1].remaining_balance == usd('0.00')

    @pytest.mark.parametrize("principal,rate,term", [
        ('10000', '12', 12),
        ('2500', '5', 6),
        ('1499.99', '5', 5),
        ('25000', '7.25', 24),
        ('333.33', '18', 3),
    ])
    def test_principal_sums_and_balance_reaches_zero(self, engine, principal, rate, term):
        schedule = engine.compute_schedule(usd(principal), Decimal(rate), term)

        assert schedule.total_principal == usd(principal)
        assert schedule.lines[-1].remaining_balance.is_zero()
        assert schedule.total_payment == schedule.total_principal + schedule.total_interest

        balances = [line.remaining_balance.amount for line in schedule.lines]
        assert all(a > b for a, b in zip(balances, balances[1:]))

    def test_zero_rate_last_period_absorbs_remainder(self, engine):
        schedule = engine.compute_schedule(usd('1000'), Decimal('0'), 3)

        assert [line.principal_amount for line in schedule.lines] == [
            usd('333.33'), usd('333.33'), usd('333.34')
        ]
        assert schedule.total_interest.is_zero()

    def test_due_dates_step_monthly_with_month_end_clamp(self, engine):
        schedule = engine.compute_schedule(usd('600'), Decimal('5'), 3, first_due_date=date(2024, 1, 31))

        assert [line.due_date for line in schedule.lines] == [
            date(2024, 1, 31), date(2024, 2, 29), date(2024, 3, 31)
        ]

    def test_anchor_date_does_not_carry_the_clamp_forward(self, engine):
        schedule = engine.compute_schedule(usd('600'), Decimal('5'), 4, anchor_date=date(2024, 1, 31))

        assert [line.due_date for line in schedule.lines] == [
            date(2024, 2, 29), date(2024, 3, 31), date(2024, 4, 30), date(2024, 5, 31)
        ]

    def test_no_due_dates_without_start(self, engine):
        schedule = engine.compute_schedule(usd('600'), Decimal('5'), 3)
        assert all(line.due_date is None for line in schedule.lines)

    def test_installment_rounding_to_zero_is_infeasible(self, engine):
        with pytest.raises(PolicyError) as exc_info:
            engine.compute_schedule(usd('0.05'), Decimal('0'), 12)
        assert exc_info.value.code == "ErrScheduleInfeasible"

    def test_schedule_paid_off_early_is_infeasible(self, engine):
        """0.10 over six months pays 0.02 a month and is exhausted after five"""
        with pytest.raises(PolicyError) as exc_info:
            engine.compute_schedule(usd('0.10'), Decimal('0'), 6)
        assert exc_info.value.code == "ErrScheduleInfeasible"


class TestAddMonths:

    def test_add_months(self):
        assert add_months(date(2024, 1, 15), 1) == date(2024, 2, 15)
        assert add_months(date(2024, 11, 30), 3) == date(2025, 2, 28)
        assert add_months(date(2024, 12, 1), 12) == date(2025, 12, 1)
