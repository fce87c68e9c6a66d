"""
Policy, budget, employee directory and calculator endpoints
"""

from datetime import date
from decimal import Decimal, InvalidOperation

from fastapi import APIRouter, Depends

from .dependencies import LoanSystem, get_loan_system, get_current_actor, require_role
from .schemas import PolicyRequest, BudgetRequest, EmployeeProfileRequest, CalculatorRequest, MoneyModel
from ..collaborators import Actor, EmployeeProfile, InMemoryEmployeeDirectory
from ..currency import Currency
from ..errors import NotFoundError, ValidationError
from ..models import Role


router = APIRouter()

ADMIN_ROLES = (Role.HR, Role.ADMIN)


@router.get("/policies/{position_level}")
async def get_policy(
    position_level: str,
    actor: Actor = Depends(get_current_actor),
    system: LoanSystem = Depends(get_loan_system)
):
    policy = system.policy_resolver.resolve(position_level)
    if policy is None:
        raise NotFoundError(f"No loan policy for position level '{position_level}'",
                            code="ErrPolicyNotFound")
    return policy.to_dict()


@router.put("/policies/{position_level}")
async def save_policy(
    position_level: str,
    request: PolicyRequest,
    actor: Actor = Depends(get_current_actor),
    system: LoanSystem = Depends(get_loan_system)
):
    """Store a new policy revision; submitted requests keep their snapshot"""
    policy = request.to_policy(position_level)
    stored = system.service.save_policy(policy, actor.id, actor.role).unwrap()
    return stored.to_dict()


@router.put("/budgets/{year}/{month}")
async def set_budget(
    year: int,
    month: int,
    request: BudgetRequest,
    actor: Actor = Depends(get_current_actor),
    system: LoanSystem = Depends(get_loan_system)
):
    """Set the month's disbursement ceiling"""
    budget = system.service.set_budget(
        year, month, request.total_budget, actor.id, actor.role, request.notes
    ).unwrap()
    result = budget.to_dict()
    result["remaining"] = MoneyModel.from_money(budget.remaining).model_dump()
    return result


@router.put("/employees/{employee_id}")
async def register_employee(
    employee_id: str,
    request: EmployeeProfileRequest,
    actor: Actor = Depends(get_current_actor),
    system: LoanSystem = Depends(get_loan_system)
):
    """Sync an employee profile into the built-in directory"""
    require_role(actor, ADMIN_ROLES)
    if not isinstance(system.directory, InMemoryEmployeeDirectory):
        raise ValidationError("The employee directory is managed externally",
                              code="ErrDirectoryReadOnly")
    try:
        outstanding = Decimal(request.prior_outstanding_amount)
    except InvalidOperation:
        raise ValidationError("Invalid prior outstanding amount", code="ErrInvalidAmount")

    profile = system.directory.add_employee(
        employee_id,
        request.position_level,
        currency=system.currency,
        prior_outstanding=outstanding,
        employment_type=request.employment_type,
        probation_completed=request.probation_completed,
        status=request.status,
    )
    return _profile_dict(profile)


def _profile_dict(profile: EmployeeProfile) -> dict:
    return {
        "employee_id": profile.employee_id,
        "position_level": profile.position_level,
        "prior_outstanding_amount": MoneyModel.from_money(profile.prior_outstanding_amount).model_dump(),
        "employment_type": profile.employment_type,
        "probation_completed": profile.probation_completed,
        "status": profile.status,
    }


@router.post("/calculator")
async def calculate_installment(
    request: CalculatorRequest,
    system: LoanSystem = Depends(get_loan_system)
):
    """EMI preview for arbitrary inputs; nothing is stored"""
    try:
        currency = Currency[request.currency]
        first_due = date.fromisoformat(request.first_due_date) if request.first_due_date else None
    except (KeyError, ValueError):
        raise ValidationError("Invalid currency or first due date", code="ErrValidationFailed")

    schedule = system.service.preview_schedule(
        request.principal, request.annual_interest_rate_percent, request.term_months,
        currency=currency, first_due_date=first_due
    ).unwrap()

    return {
        "principal": MoneyModel.from_money(schedule.principal).model_dump(),
        "annual_interest_rate_percent": str(schedule.annual_rate_percent),
        "term_months": schedule.term_months,
        "monthly_installment": MoneyModel.from_money(schedule.installment).model_dump(),
        "total_interest": MoneyModel.from_money(schedule.total_interest).model_dump(),
        "total_payment": MoneyModel.from_money(schedule.total_payment).model_dump(),
        "schedule": [
            {
                "month_number": line.month_number,
                "due_date": line.due_date.isoformat() if line.due_date else None,
                "opening_balance": str(line.opening_balance.amount),
                "principal_amount": str(line.principal_amount.amount),
                "interest_amount": str(line.interest_amount.amount),
                "total_amount": str(line.total_amount.amount),
                "remaining_balance": str(line.remaining_balance.amount),
            }
            for line in schedule.lines
        ],
    }
