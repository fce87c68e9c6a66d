"""
Loan request endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, status

from .dependencies import LoanSystem, get_loan_system, get_current_actor, require_role
from .schemas import (
    SubmitLoanRequest, DecisionRequest, DisburseRequest, StartRepaymentRequest, MoneyModel
)
from ..collaborators import Actor
from ..models import Role


router = APIRouter()

DISBURSING_ROLES = (Role.VP, Role.CEO, Role.HR, Role.ADMIN)
PAYROLL_ROLES = (Role.HR, Role.ADMIN)


@router.post("", status_code=status.HTTP_201_CREATED)
async def submit_loan(
    request: SubmitLoanRequest,
    actor: Actor = Depends(get_current_actor),
    system: LoanSystem = Depends(get_loan_system)
):
    """Submit a loan request for the calling employee"""
    loan = system.service.submit(
        employee_id=actor.id,
        amount=request.amount,
        term_months=request.term_months,
        reason_type=request.reason_type,
        reason_details=request.reason_details,
        consent=request.auto_deduction_consent,
        signature=request.e_signature,
    ).unwrap()
    return loan.to_dict()


@router.get("")
async def list_loans(
    status: Optional[str] = None,
    actor: Actor = Depends(get_current_actor),
    system: LoanSystem = Depends(get_loan_system)
):
    """List loan requests, optionally filtered by status"""
    if status is None:
        result = system.service.list_all()
    else:
        result = system.service.list_by_status(status)
    loans = result.unwrap()
    return {"loans": [loan.to_dict() for loan in loans]}


@router.get("/employee/{employee_id}")
async def list_employee_loans(
    employee_id: str,
    actor: Actor = Depends(get_current_actor),
    system: LoanSystem = Depends(get_loan_system)
):
    loans = system.service.list_by_employee(employee_id).unwrap()
    return {"loans": [loan.to_dict() for loan in loans]}


@router.get("/queue/{role}")
async def review_queue(
    role: str,
    actor: Actor = Depends(get_current_actor),
    system: LoanSystem = Depends(get_loan_system)
):
    """Requests waiting on a decision by the given role"""
    loans = system.service.list_pending_for_role(role).unwrap()
    return {"role": role, "loans": [loan.to_dict() for loan in loans]}


@router.get("/{loan_id}")
async def get_loan(
    loan_id: str,
    actor: Actor = Depends(get_current_actor),
    system: LoanSystem = Depends(get_loan_system)
):
    loan = system.service.get_request(loan_id).unwrap()
    outstanding = system.service.outstanding_balance(loan_id).unwrap()
    result = loan.to_dict()
    result["outstanding_balance"] = MoneyModel.from_money(outstanding).model_dump()
    return result


@router.post("/{loan_id}/decisions")
async def decide_loan(
    loan_id: str,
    request: DecisionRequest,
    actor: Actor = Depends(get_current_actor),
    system: LoanSystem = Depends(get_loan_system)
):
    """Approve, reject or defer at the request's current review stage"""
    outcome = system.service.decide(
        loan_id, actor.id, actor.role, request.decision, request.to_payload()
    ).unwrap()
    return {
        "loan": outcome.request.to_dict(),
        "approval_record": outcome.record.to_dict(),
        "waiting_entry": outcome.waiting_entry.to_dict() if outcome.waiting_entry else None,
    }


@router.post("/{loan_id}/disburse")
async def disburse_loan(
    loan_id: str,
    request: DisburseRequest,
    actor: Actor = Depends(get_current_actor),
    system: LoanSystem = Depends(get_loan_system)
):
    """Disburse an approved loan and generate its repayment entries"""
    require_role(actor, DISBURSING_ROLES)
    result = system.service.disburse(loan_id, request.disbursement_date, actor.id).unwrap()
    return {
        "loan": result.request.to_dict(),
        "repayment_entries": [entry.to_dict() for entry in result.entries],
    }


@router.post("/{loan_id}/start-repayment")
async def start_repayment(
    loan_id: str,
    request: StartRepaymentRequest,
    actor: Actor = Depends(get_current_actor),
    system: LoanSystem = Depends(get_loan_system)
):
    require_role(actor, PAYROLL_ROLES)
    loan = system.service.start_repayment(loan_id, request.as_of).unwrap()
    return loan.to_dict()


@router.get("/{loan_id}/history")
async def approval_history(
    loan_id: str,
    actor: Actor = Depends(get_current_actor),
    system: LoanSystem = Depends(get_loan_system)
):
    """Approval records ordered by decision time"""
    records = system.service.get_approval_history(loan_id).unwrap()
    return {"loan_id": loan_id, "history": [record.to_dict() for record in records]}


@router.get("/{loan_id}/schedule")
async def repayment_schedule(
    loan_id: str,
    actor: Actor = Depends(get_current_actor),
    system: LoanSystem = Depends(get_loan_system)
):
    entries = system.service.get_repayment_schedule(loan_id).unwrap()
    return {"loan_id": loan_id, "entries": [entry.to_dict() for entry in entries]}
