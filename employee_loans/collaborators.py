"""
External Collaborators Module

Abstract interfaces for the systems the loan workflow consumes but does not
own (identity, employee directory, payroll), with in-memory implementations
for tests and single-process deployments.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional
import threading

from .currency import Money, Currency
from .models import Role, RepaymentEntry


@dataclass(frozen=True)
class Actor:
    """Authenticated caller: opaque id plus assigned role"""
    id: str
    role: Role


@dataclass(frozen=True)
class EmployeeProfile:
    """What the loan workflow needs to know about an employee"""
    employee_id: str
    position_level: str
    prior_outstanding_amount: Money
    employment_type: str = "full_time"
    probation_completed: bool = True
    status: str = "active"
    hire_date: Optional[date] = None


class IdentityProvider(ABC):
    """Resolves the actor behind the current call"""

    @abstractmethod
    def current_actor(self) -> Actor:
        pass


class EmployeeDirectory(ABC):
    """Employee master data lookup"""

    @abstractmethod
    def get(self, employee_id: str) -> Optional[EmployeeProfile]:
        """Profile for the employee, or None if unknown"""
        pass


class InMemoryEmployeeDirectory(EmployeeDirectory):
    """Dictionary-backed directory"""

    def __init__(self, profiles: Optional[List[EmployeeProfile]] = None):
        self._profiles: Dict[str, EmployeeProfile] = {}
        for profile in profiles or []:
            self.add(profile)

    def add(self, profile: EmployeeProfile) -> None:
        self._profiles[profile.employee_id] = profile

    def add_employee(self, employee_id: str, position_level: str,
                     currency: Currency = Currency.USD,
                     prior_outstanding: Decimal = Decimal('0'), **kwargs) -> EmployeeProfile:
        profile = EmployeeProfile(
            employee_id=employee_id,
            position_level=position_level,
            prior_outstanding_amount=Money(prior_outstanding, currency),
            **kwargs
        )
        self.add(profile)
        return profile

    def get(self, employee_id: str) -> Optional[EmployeeProfile]:
        return self._profiles.get(employee_id)


class PayrollDeductionSink(ABC):
    """Informs payroll that a deduction is expected for a repayment entry"""

    @abstractmethod
    def schedule(self, repayment_entry: RepaymentEntry) -> None:
        pass


class InMemoryPayrollSink(PayrollDeductionSink):
    """Collects scheduled deductions; payroll reports outcomes back separately"""

    def __init__(self):
        self.scheduled: List[RepaymentEntry] = []
        self._lock = threading.Lock()

    def schedule(self, repayment_entry: RepaymentEntry) -> None:
        with self._lock:
            self.scheduled.append(repayment_entry)

    def for_loan(self, loan_request_id: str) -> List[RepaymentEntry]:
        return [e for e in self.scheduled if e.loan_request_id == loan_request_id]
