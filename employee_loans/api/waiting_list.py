"""
Waiting list and repayment outcome endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends

from .dependencies import LoanSystem, get_loan_system, get_current_actor, require_role
from .schemas import RepaymentOutcomeRequest, WaitingRejectionRequest
from ..collaborators import Actor
from ..models import Role


router = APIRouter()
repayments_router = APIRouter()


@router.get("")
async def list_waiting(
    actor: Actor = Depends(get_current_actor),
    system: LoanSystem = Depends(get_loan_system)
):
    """Active entries, highest priority first"""
    entries = system.service.list_waiting().unwrap()
    return {"entries": [entry.to_dict() for entry in entries]}


@router.post("/{entry_id}/promote")
async def promote_entry(
    entry_id: str,
    actor: Actor = Depends(get_current_actor),
    system: LoanSystem = Depends(get_loan_system)
):
    """Send a deferred request back to HR review"""
    loan = system.service.promote_from_waiting_list(entry_id, actor.id, actor.role).unwrap()
    return loan.to_dict()


@router.post("/{entry_id}/reconfirm")
async def reconfirm_entry(
    entry_id: str,
    actor: Actor = Depends(get_current_actor),
    system: LoanSystem = Depends(get_loan_system)
):
    entry = system.service.reconfirm_waiting_entry(entry_id, actor.id).unwrap()
    return entry.to_dict()


@router.post("/{entry_id}/reject")
async def reject_entry(
    entry_id: str,
    request: Optional[WaitingRejectionRequest] = None,
    actor: Actor = Depends(get_current_actor),
    system: LoanSystem = Depends(get_loan_system)
):
    """HR closes out a deferred request, including one whose entry has expired"""
    notes = request.notes if request else None
    loan = system.service.reject_waiting_entry(entry_id, actor.id, actor.role, notes).unwrap()
    return loan.to_dict()


@repayments_router.post("/{entry_id}/outcome")
async def record_outcome(
    entry_id: str,
    request: RepaymentOutcomeRequest,
    actor: Actor = Depends(get_current_actor),
    system: LoanSystem = Depends(get_loan_system)
):
    """Payroll reports a deduction as deducted or missed"""
    require_role(actor, (Role.HR, Role.ADMIN))
    outcome = system.service.record_repayment_outcome(entry_id, request.outcome).unwrap()
    return {
        "repayment_entry": outcome.entry.to_dict(),
        "loan": outcome.request.to_dict(),
    }
