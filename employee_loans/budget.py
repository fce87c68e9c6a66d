"""
Disbursement Budget Module

Monthly ceiling on loan capital. HR sets a budget per calendar month and
each disbursement draws it down; months without a budget are unconstrained.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Optional

from .audit import AuditTrail, AuditEventType
from .currency import Money
from .errors import PolicyError, ValidationError
from .models import RecordCodec
from .storage import StorageRecord, StorageInterface


@dataclass
class DisbursementBudget(RecordCodec, StorageRecord):
    """Capital available for disbursement in one month"""
    year: int
    month: int
    total_budget: Money
    allocated_amount: Money
    set_by: str
    notes: str = ""
    version: int = 0

    money_fields = ('total_budget', 'allocated_amount')

    @property
    def remaining(self) -> Money:
        return self.total_budget - self.allocated_amount


def budget_id(year: int, month: int) -> str:
    return f"{year:04d}-{month:02d}"


class BudgetTracker:
    """Stores monthly budgets and allocates disbursements against them"""

    def __init__(self, storage: StorageInterface, audit_trail: Optional[AuditTrail] = None):
        self.storage = storage
        self.audit_trail = audit_trail
        self.budgets_table = "disbursement_budgets"

    @staticmethod
    def _check_period(year: int, month: int) -> None:
        if not 1 <= month <= 12:
            raise ValidationError(f"Month must be 1-12, got {month}", code="ErrValidationFailed")
        if year < 1:
            raise ValidationError(f"Invalid year {year}", code="ErrValidationFailed")

    def get_budget(self, year: int, month: int) -> Optional[DisbursementBudget]:
        data = self.storage.load(self.budgets_table, budget_id(year, month))
        return DisbursementBudget.from_dict(data) if data else None

    def set_budget(self, year: int, month: int, total: Money, set_by: str,
                   notes: str = "") -> DisbursementBudget:
        """
        Create or replace the month's ceiling, keeping what is already allocated.

        Raises:
            ValidationError: Bad period, negative total, or a total below
                the amount already allocated
        """
        self._check_period(year, month)
        if total.is_negative():
            raise ValidationError("Budget cannot be negative", code="ErrInvalidAmount")

        now = datetime.now(timezone.utc)
        with self.storage.atomic():
            existing = self.get_budget(year, month)
            allocated = existing.allocated_amount if existing else Money.zero(total.currency)
            if allocated.currency != total.currency:
                raise ValidationError("Budget currency cannot change", code="ErrValidationFailed")
            if total < allocated:
                raise ValidationError(
                    f"Budget {total.to_string()} is below the {allocated.to_string()} already allocated",
                    code="ErrValidationFailed"
                )

            budget = DisbursementBudget(
                id=budget_id(year, month),
                created_at=existing.created_at if existing else now,
                updated_at=now,
                year=year,
                month=month,
                total_budget=total,
                allocated_amount=allocated,
                set_by=set_by,
                notes=notes,
                version=(existing.version if existing else 0) + 1,
            )
            self.storage.save_versioned(self.budgets_table, budget.id, budget.to_dict(),
                                        existing.version if existing else 0)

            if self.audit_trail:
                self.audit_trail.log_event(
                    AuditEventType.BUDGET_SET,
                    'disbursement_budget',
                    budget.id,
                    {'total_budget': total.to_string(), 'notes': notes},
                    set_by
                )
        return budget

    def available(self, year: int, month: int) -> Optional[Money]:
        """Remaining capacity, or None when the month has no budget"""
        budget = self.get_budget(year, month)
        return budget.remaining if budget else None

    def allocate(self, year: int, month: int, amount: Money) -> Optional[DisbursementBudget]:
        """
        Draw a disbursement from the month's budget.

        Call inside the disbursing transaction so a failed disbursement
        releases the allocation.

        Raises:
            PolicyError: Remaining capacity is less than the amount
        """
        self._check_period(year, month)
        with self.storage.atomic():
            budget = self.get_budget(year, month)
            if budget is None:
                return None
            if amount > budget.remaining:
                raise PolicyError(
                    f"Disbursing {amount.to_string()} exceeds the {budget.remaining.to_string()} "
                    f"left in the {budget.id} budget",
                    code="ErrBudgetExceeded",
                    details={'remaining': str(budget.remaining.amount), 'period': budget.id}
                )
            expected = budget.version
            budget.allocated_amount = budget.allocated_amount + amount
            budget.version = expected + 1
            budget.updated_at = datetime.now(timezone.utc)
            self.storage.save_versioned(self.budgets_table, budget.id, budget.to_dict(), expected)
        return budget
