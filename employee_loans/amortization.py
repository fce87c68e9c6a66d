"""
Amortization Module

Fixed-payment (EMI) amortization for employee loans. Pure functions over
Decimal Money: the same inputs always produce the same schedule, so the
estimate shown at submission and the authoritative schedule generated at
disbursement agree to the currency's minor unit.
"""

from decimal import Decimal, ROUND_HALF_UP
from datetime import date
from dataclasses import dataclass
from typing import List, Optional
import calendar

from .currency import Money
from .errors import PolicyError, ValidationError


@dataclass(frozen=True)
class ScheduleLine:
    """Single period of an amortization schedule"""
    month_number: int
    due_date: Optional[date]
    opening_balance: Money
    principal_amount: Money
    interest_amount: Money
    total_amount: Money
    remaining_balance: Money


@dataclass(frozen=True)
class RepaymentSchedule:
    """Full period-by-period breakdown of a loan"""
    principal: Money
    annual_rate_percent: Decimal
    term_months: int
    installment: Money
    lines: List[ScheduleLine]

    @property
    def total_interest(self) -> Money:
        total = Money.zero(self.principal.currency)
        for line in self.lines:
            total = total + line.interest_amount
        return total

    @property
    def total_payment(self) -> Money:
        total = Money.zero(self.principal.currency)
        for line in self.lines:
            total = total + line.total_amount
        return total

    @property
    def total_principal(self) -> Money:
        total = Money.zero(self.principal.currency)
        for line in self.lines:
            total = total + line.principal_amount
        return total


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def monthly_rate(annual_rate_percent: Decimal) -> Decimal:
    """Periodic rate r = annual% / 100 / 12"""
    return Decimal(str(annual_rate_percent)) / Decimal('100') / Decimal('12')


class AmortizationEngine:
    """Computes EMIs and amortization schedules"""

    def _validate(self, principal: Money, annual_rate_percent: Decimal, term_months: int) -> None:
        if not principal.is_positive():
            raise ValidationError("Principal must be positive", code="ErrInvalidAmount")
        if not isinstance(term_months, int) or isinstance(term_months, bool) or term_months < 1:
            raise ValidationError("Term must be a positive number of months", code="ErrInvalidTerm")
        if Decimal(str(annual_rate_percent)) < 0:
            raise ValidationError("Interest rate cannot be negative", code="ErrInvalidRate")

    def _level_payment(self, principal: Money, rate: Decimal, term_months: int) -> Decimal:
        """Unrounded level payment P"""
        amount = principal.amount
        if rate == 0:
            return amount / Decimal(term_months)
        # P = principal * r / (1 - (1 + r)^-n)
        discount = (Decimal('1') + rate) ** -term_months
        return amount * rate / (Decimal('1') - discount)

    def compute_installment(self, principal: Money, annual_rate_percent: Decimal,
                            term_months: int) -> Money:
        """
        Equated monthly installment rounded to the currency's minor unit.

        This is the figure cached on a request at submission as
        ``estimated_monthly_installment``.
        """
        self._validate(principal, annual_rate_percent, term_months)
        rate = monthly_rate(annual_rate_percent)
        return Money(self._level_payment(principal, rate, term_months), principal.currency)

    def compute_schedule(self, principal: Money, annual_rate_percent: Decimal,
                         term_months: int, first_due_date: Optional[date] = None,
                         anchor_date: Optional[date] = None) -> RepaymentSchedule:
        """
        Generate the full amortization schedule.

        Interest is rounded per period; the final period absorbs whatever
        balance remains so the schedule always ends at exactly zero and the
        principal components sum to the original principal.

        Args:
            principal: Amount borrowed
            annual_rate_percent: Annual interest rate, e.g. Decimal('12') for 12%
            term_months: Number of monthly installments
            first_due_date: Due date of month 1; later months step by one month
            anchor_date: Start of the loan; month k falls due k months after it.
                Takes precedence over first_due_date

        Returns:
            RepaymentSchedule

        Raises:
            ValidationError: Non-positive principal or term, negative rate
            PolicyError: The rate/term combination cannot amortize the principal
        """
        self._validate(principal, annual_rate_percent, term_months)

        currency = principal.currency
        unit = currency.minor_unit
        rate = monthly_rate(annual_rate_percent)
        installment = Money(self._level_payment(principal, rate, term_months), currency)

        if not installment.is_positive():
            raise PolicyError(
                f"Installment rounds to {installment.to_string()}; term too long for the principal",
                code="ErrScheduleInfeasible",
                details={'principal': str(principal.amount), 'term_months': term_months}
            )

        lines: List[ScheduleLine] = []
        balance = principal.amount

        for month in range(1, term_months + 1):
            interest = (balance * rate).quantize(unit, rounding=ROUND_HALF_UP)

            if month == term_months:
                principal_part = balance
            else:
                principal_part = installment.amount - interest

            closing = balance - principal_part

            if principal_part <= 0 or closing < 0:
                raise PolicyError(
                    f"Schedule cannot amortize {principal.to_string()} over {term_months} months "
                    f"at {annual_rate_percent}%",
                    code="ErrScheduleInfeasible",
                    details={'month_number': month}
                )

            if anchor_date:
                due = add_months(anchor_date, month)
            elif first_due_date:
                due = add_months(first_due_date, month - 1)
            else:
                due = None
            lines.append(ScheduleLine(
                month_number=month,
                due_date=due,
                opening_balance=Money(balance, currency),
                principal_amount=Money(principal_part, currency),
                interest_amount=Money(interest, currency),
                total_amount=Money(principal_part + interest, currency),
                remaining_balance=Money(closing, currency),
            ))
            balance = closing

        return RepaymentSchedule(
            principal=principal,
            annual_rate_percent=Decimal(str(annual_rate_percent)),
            term_months=term_months,
            installment=installment,
            lines=lines,
        )
