"""
Loan State Machine Module

Fixed, role-gated transition table for loan requests. Review stages come
from the approval chain chosen at submission; every reviewer decision yields
exactly one ApprovalRecord. Pure: nothing here touches storage.
"""

from datetime import datetime, date
from dataclasses import dataclass, replace
from typing import Any, Dict, Optional, Tuple
import uuid

from .errors import TransitionError, ValidationError
from .models import (
    LoanRequest, ApprovalRecord, LoanStatus, Role, Decision, ChainKind
)


@dataclass(frozen=True)
class ChainStage:
    """One review stage and the only role allowed to decide at it"""
    status: LoanStatus
    required_role: Role


@dataclass(frozen=True)
class ApprovalChain:
    """Ordered review stages a request passes through before approval"""
    kind: ChainKind
    stages: Tuple[ChainStage, ...]

    @property
    def first_status(self) -> LoanStatus:
        return self.stages[0].status

    @property
    def statuses(self) -> Tuple[LoanStatus, ...]:
        return tuple(stage.status for stage in self.stages)

    def stage_for(self, status: LoanStatus) -> Optional[ChainStage]:
        for stage in self.stages:
            if stage.status == status:
                return stage
        return None

    def next_status(self, status: LoanStatus) -> LoanStatus:
        """Status after an approval at ``status``"""
        index = self.statuses.index(status)
        if index + 1 < len(self.stages):
            return self.stages[index + 1].status
        return LoanStatus.APPROVED


STANDARD_CHAIN = ApprovalChain(ChainKind.STANDARD, (
    ChainStage(LoanStatus.HR_REVIEW, Role.HR),
    ChainStage(LoanStatus.MANAGER_REVIEW, Role.MANAGER),
    ChainStage(LoanStatus.VP_REVIEW, Role.VP),
))

EXECUTIVE_CHAIN = ApprovalChain(ChainKind.EXECUTIVE, (
    ChainStage(LoanStatus.HR_REVIEW, Role.HR),
    ChainStage(LoanStatus.CEO_REVIEW, Role.CEO),
))

CHAINS = {
    ChainKind.STANDARD: STANDARD_CHAIN,
    ChainKind.EXECUTIVE: EXECUTIVE_CHAIN,
}


def chain_for(kind: ChainKind) -> ApprovalChain:
    return CHAINS[kind]


DEFERRABLE_STATUSES = frozenset({
    LoanStatus.HR_REVIEW, LoanStatus.MANAGER_REVIEW, LoanStatus.VP_REVIEW,
})

COMMENT_REQUIRED_STATUSES = frozenset({
    LoanStatus.MANAGER_REVIEW, LoanStatus.VP_REVIEW,
})

HR_CHECKLIST = (
    'eligibility_verified',
    'position_verified',
    'outstanding_checked',
    'repayment_finalized',
    'prioritization_applied',
)

# Step-specific payload fields beyond 'notes'
STEP_FIELDS = {
    LoanStatus.HR_REVIEW: HR_CHECKLIST + ('hr_recommendation',),
    LoanStatus.MANAGER_REVIEW: (),
    LoanStatus.VP_REVIEW: ('disbursement_date', 'auto_payroll'),
    LoanStatus.CEO_REVIEW: ('ceo_decision_notes',),
}

# Non-review transitions: disbursement, repayment and leaving the waiting list
LIFECYCLE_TRANSITIONS = {
    LoanStatus.APPROVED: frozenset({LoanStatus.DISBURSED}),
    LoanStatus.DISBURSED: frozenset({LoanStatus.REPAYING}),
    LoanStatus.REPAYING: frozenset({LoanStatus.CLOSED}),
    LoanStatus.DEFERRED: frozenset({LoanStatus.HR_REVIEW, LoanStatus.REJECTED}),
}


@dataclass(frozen=True)
class TransitionOutcome:
    """Updated request plus the decision record to persist with it"""
    request: LoanRequest
    record: ApprovalRecord
    previous_status: LoanStatus


class LoanStateMachine:
    """Validates and applies loan status transitions"""

    def transition(self, request: LoanRequest, actor_id: str, actor_role: Role,
                   decision: Decision, payload: Optional[Dict[str, Any]],
                   now: datetime) -> TransitionOutcome:
        """
        Apply a reviewer decision.

        Raises:
            TransitionError: Self-approval, no review pending, wrong role,
                or a decision the current stage does not accept
            ValidationError: Missing or malformed payload
        """
        payload = dict(payload or {})
        self._guard_self_action(request, actor_id)

        chain = chain_for(request.approval_chain)
        stage = chain.stage_for(request.status)
        if stage is None:
            raise TransitionError(
                f"Loan {request.id} is {request.status.value}; no review decision is pending",
                code="ErrInvalidTransition",
                details={'status': request.status.value}
            )

        if actor_role != stage.required_role:
            raise TransitionError(
                f"Role '{actor_role.value}' cannot decide at {stage.status.value}; "
                f"requires '{stage.required_role.value}'",
                code="ErrUnauthorizedTransition",
                details={'status': stage.status.value, 'required_role': stage.required_role.value}
            )

        if decision == Decision.DEFERRED and stage.status not in DEFERRABLE_STATUSES:
            raise TransitionError(
                f"Requests cannot be deferred at {stage.status.value}",
                code="ErrInvalidTransition",
                details={'status': stage.status.value}
            )

        notes, details = self._validate_payload(stage.status, payload)

        if decision == Decision.APPROVED:
            new_status = chain.next_status(stage.status)
        elif decision == Decision.REJECTED:
            new_status = LoanStatus.REJECTED
        else:
            new_status = LoanStatus.DEFERRED

        changes: Dict[str, Any] = {'status': new_status, 'updated_at': now}
        if stage.status == LoanStatus.VP_REVIEW and decision == Decision.APPROVED:
            if 'disbursement_date' in details:
                changes['planned_disbursement_date'] = date.fromisoformat(details['disbursement_date'])
            if 'auto_payroll' in details:
                changes['auto_payroll_deduction'] = details['auto_payroll']

        record = ApprovalRecord(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_request_id=request.id,
            approval_step=stage.status,
            decision=decision,
            actor_id=actor_id,
            actor_role=actor_role,
            notes=notes,
            decided_at=now,
            details=details,
        )

        return TransitionOutcome(
            request=replace(request, **changes),
            record=record,
            previous_status=request.status,
        )

    def promote(self, request: LoanRequest, actor_id: str, actor_role: Role,
                now: datetime) -> LoanRequest:
        """Move a deferred request back into HR review"""
        self._guard_self_action(request, actor_id)
        if actor_role != Role.HR:
            raise TransitionError(
                f"Role '{actor_role.value}' cannot promote from the waiting list; requires 'hr'",
                code="ErrUnauthorizedTransition",
                details={'required_role': Role.HR.value}
            )
        return self.advance(request, chain_for(request.approval_chain).first_status, now)

    def reject_deferred(self, request: LoanRequest, actor_id: str, actor_role: Role,
                        now: datetime) -> LoanRequest:
        """Close out a deferred request that will not be funded"""
        self._guard_self_action(request, actor_id)
        if actor_role != Role.HR:
            raise TransitionError(
                f"Role '{actor_role.value}' cannot reject from the waiting list; requires 'hr'",
                code="ErrUnauthorizedTransition",
                details={'required_role': Role.HR.value}
            )
        return self.advance(request, LoanStatus.REJECTED, now)

    def mark_disbursed(self, request: LoanRequest, disbursement_date: date,
                       now: datetime) -> LoanRequest:
        return self.advance(request, LoanStatus.DISBURSED, now,
                            disbursement_date=disbursement_date)

    def start_repayment(self, request: LoanRequest, now: datetime) -> LoanRequest:
        return self.advance(request, LoanStatus.REPAYING, now)

    def close(self, request: LoanRequest, now: datetime) -> LoanRequest:
        return self.advance(request, LoanStatus.CLOSED, now, closed_at=now)

    def advance(self, request: LoanRequest, target: LoanStatus, now: datetime,
                **changes: Any) -> LoanRequest:
        """Apply a non-review lifecycle transition (disburse, repay, close, re-entry)"""
        allowed = LIFECYCLE_TRANSITIONS.get(request.status, frozenset())
        if target not in allowed:
            raise TransitionError(
                f"Loan {request.id} cannot move from {request.status.value} to {target.value}",
                code="ErrInvalidTransition",
                details={'status': request.status.value, 'target': target.value}
            )
        return replace(request, status=target, updated_at=now, **changes)

    @staticmethod
    def _guard_self_action(request: LoanRequest, actor_id: str) -> None:
        if actor_id == request.employee_id:
            raise TransitionError(
                "Employees cannot act on their own loan request",
                code="ErrSelfApproval",
                details={'employee_id': request.employee_id}
            )

    @staticmethod
    def _validate_payload(status: LoanStatus, payload: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        notes = payload.pop('notes', None) or ''
        if not isinstance(notes, str):
            raise ValidationError("Notes must be text", code="ErrValidationFailed")
        notes = notes.strip()

        if status in COMMENT_REQUIRED_STATUSES and not notes:
            raise ValidationError(
                f"A comment is required for decisions at {status.value}",
                code="ErrValidationFailed",
                details={'field': 'notes'}
            )

        allowed = STEP_FIELDS.get(status, ())
        unexpected = sorted(set(payload) - set(allowed))
        if unexpected:
            raise ValidationError(
                f"Unexpected fields for {status.value}: {', '.join(unexpected)}",
                code="ErrValidationFailed",
                details={'fields': unexpected}
            )

        details: Dict[str, Any] = {}
        for key, value in payload.items():
            if value is None:
                continue
            if key in HR_CHECKLIST or key == 'auto_payroll':
                if not isinstance(value, bool):
                    raise ValidationError(f"'{key}' must be true or false", code="ErrValidationFailed")
                details[key] = value
            elif key == 'disbursement_date':
                if isinstance(value, date):
                    value = value.isoformat()
                try:
                    date.fromisoformat(value)
                except (TypeError, ValueError):
                    raise ValidationError(
                        f"'disbursement_date' must be an ISO date, got {value!r}",
                        code="ErrValidationFailed"
                    )
                details[key] = value
            else:
                if not isinstance(value, str):
                    raise ValidationError(f"'{key}' must be text", code="ErrValidationFailed")
                details[key] = value.strip()

        return notes, details
