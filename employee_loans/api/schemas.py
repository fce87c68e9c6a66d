"""
Pydantic schemas for API requests
"""

from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from ..currency import Money, Currency
from ..errors import ValidationError
from ..models import ChainKind
from ..policy import LoanPolicy


def _money(value: str, currency: Currency, label: str) -> Money:
    try:
        return Money(Decimal(value), currency)
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid {label}: {value!r}", code="ErrInvalidAmount")


class MoneyModel(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    currency: str = Field(..., description="Currency code (USD, EUR, etc.)")

    @classmethod
    def from_money(cls, money: Money) -> 'MoneyModel':
        return cls(amount=str(money.amount), currency=money.currency.code)


# Loan request schemas
class SubmitLoanRequest(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    term_months: int
    reason_type: str = Field(..., description="medical, emergency, urgent or general")
    reason_details: str = ""
    auto_deduction_consent: bool
    e_signature: str


class DecisionRequest(BaseModel):
    decision: str = Field(..., description="approved, rejected or deferred")
    notes: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict, description="Step-specific fields")

    def to_payload(self) -> Dict[str, Any]:
        payload = dict(self.details)
        if self.notes is not None:
            payload['notes'] = self.notes
        return payload


class WaitingRejectionRequest(BaseModel):
    notes: Optional[str] = None


class DisburseRequest(BaseModel):
    disbursement_date: str = Field(..., description="ISO date")


class StartRepaymentRequest(BaseModel):
    as_of: Optional[str] = Field(None, description="ISO date; defaults to today")


class RepaymentOutcomeRequest(BaseModel):
    outcome: str = Field(..., description="deducted or missed")


# Administration schemas
class PolicyRequest(BaseModel):
    max_loan_amount: str
    min_loan_amount: Optional[str] = None
    allowed_terms_months: List[int]
    annual_interest_rate_percent: str
    approval_chain: str = ChainKind.STANDARD.value
    executive_review_threshold: Optional[str] = None
    currency: str = "USD"

    def to_policy(self, position_level: str) -> LoanPolicy:
        try:
            currency = Currency[self.currency]
        except KeyError:
            raise ValidationError(f"Unknown currency '{self.currency}'", code="ErrValidationFailed")
        try:
            chain = ChainKind(self.approval_chain)
            rate = Decimal(self.annual_interest_rate_percent)
        except (ValueError, InvalidOperation):
            raise ValidationError("Invalid approval chain or interest rate", code="ErrValidationFailed")

        try:
            return LoanPolicy(
                position_level=position_level,
                max_loan_amount=_money(self.max_loan_amount, currency, "maximum amount"),
                min_loan_amount=(
                    _money(self.min_loan_amount, currency, "minimum amount")
                    if self.min_loan_amount is not None else None
                ),
                allowed_terms_months=frozenset(self.allowed_terms_months),
                annual_interest_rate_percent=rate,
                approval_chain=chain,
                executive_review_threshold=(
                    _money(self.executive_review_threshold, currency, "executive review threshold")
                    if self.executive_review_threshold is not None else None
                ),
            )
        except ValidationError:
            raise
        except ValueError as e:
            raise ValidationError(str(e), code="ErrInvalidPolicy")


class BudgetRequest(BaseModel):
    total_budget: str = Field(..., description="Decimal amount as string")
    notes: str = ""


class EmployeeProfileRequest(BaseModel):
    position_level: str
    prior_outstanding_amount: str = "0"
    employment_type: str = "full_time"
    probation_completed: bool = True
    status: str = "active"


class CalculatorRequest(BaseModel):
    principal: str = Field(..., description="Decimal amount as string")
    annual_interest_rate_percent: str
    term_months: int
    currency: str = "USD"
    first_due_date: Optional[str] = Field(None, description="ISO date of the first installment")
