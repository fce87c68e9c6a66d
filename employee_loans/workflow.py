"""
Loan Workflow Service Module

Orchestrates the employee loan lifecycle: submission against the resolved
policy, role-gated review decisions, the waiting list, disbursement with a
persisted repayment schedule, and payroll-reported repayment outcomes.

This is the only component with side effects. Every mutation runs under the
loan's lock and inside one storage transaction together with its audit
events; domain failures come back as WorkflowResult.failure rather than
exceptions.
"""

from decimal import Decimal
from datetime import datetime, date, timezone
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional, Union
import uuid

from .amortization import AmortizationEngine, RepaymentSchedule
from .audit import AuditTrail, AuditEventType
from .budget import BudgetTracker, DisbursementBudget
from .collaborators import EmployeeDirectory, PayrollDeductionSink
from .currency import Money, Currency, to_money
from .errors import (
    LoanError, ValidationError, PolicyError, TransitionError,
    ConcurrencyError, NotFoundError, WorkflowResult
)
from .locking import LoanLockRegistry
from .logging_config import get_logger, log_action
from .models import (
    LoanRequest, ApprovalRecord, RepaymentEntry, WaitingListEntry,
    LoanStatus, Role, Decision, ReasonType, RepaymentStatus, WaitingStatus
)
from .policy import PolicyResolver, LoanPolicy
from .repository import LoanRepository
from .state_machine import LoanStateMachine, chain_for
from .storage import VersionConflictError
from .waiting_list import WaitingListPrioritizer


# Outcome moves payroll may report for a repayment entry
REPAYMENT_OUTCOME_MOVES = {
    (RepaymentStatus.PENDING, RepaymentStatus.DEDUCTED),
    (RepaymentStatus.PENDING, RepaymentStatus.MISSED),
    (RepaymentStatus.MISSED, RepaymentStatus.DEDUCTED),
}

ADMIN_ROLES = frozenset({Role.HR, Role.ADMIN})


@dataclass(frozen=True)
class DecisionResult:
    """Stored request after a decision, its ApprovalRecord, and any waiting entry"""
    request: LoanRequest
    record: ApprovalRecord
    waiting_entry: Optional[WaitingListEntry] = None


@dataclass(frozen=True)
class DisbursementResult:
    request: LoanRequest
    entries: List[RepaymentEntry]
    budget: Optional[DisbursementBudget] = None


@dataclass(frozen=True)
class RepaymentOutcome:
    entry: RepaymentEntry
    request: LoanRequest


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_enum(enum_type, value, code: str, label: str):
    if isinstance(value, enum_type):
        return value
    try:
        return enum_type(value)
    except ValueError:
        raise ValidationError(f"Invalid {label}: {value!r}", code=code)


def _coerce_date(value: Union[date, str], label: str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(value)
    except (TypeError, ValueError):
        raise ValidationError(f"'{label}' must be an ISO date, got {value!r}",
                              code="ErrValidationFailed")


class LoanWorkflowService:
    """
    Entry point for every loan lifecycle operation.

    Collaborators are injected so tests can run against InMemoryStorage and
    in-memory directory and payroll implementations.
    """

    def __init__(
        self,
        repository: LoanRepository,
        policy_resolver: PolicyResolver,
        directory: EmployeeDirectory,
        audit_trail: Optional[AuditTrail] = None,
        payroll_sink: Optional[PayrollDeductionSink] = None,
        budget_tracker: Optional[BudgetTracker] = None,
        prioritizer: Optional[WaitingListPrioritizer] = None,
        lock_registry: Optional[LoanLockRegistry] = None,
        amortization: Optional[AmortizationEngine] = None,
        state_machine: Optional[LoanStateMachine] = None,
        clock: Optional[Callable[[], datetime]] = None,
        currency: Currency = Currency.USD
    ):
        self.repository = repository
        self.storage = repository.storage
        self.policy_resolver = policy_resolver
        self.directory = directory
        self.audit_trail = audit_trail
        self.payroll_sink = payroll_sink
        self.budget_tracker = budget_tracker
        self.prioritizer = prioritizer or WaitingListPrioritizer()
        self.locks = lock_registry or LoanLockRegistry()
        self.amortization = amortization or AmortizationEngine()
        self.state_machine = state_machine or LoanStateMachine()
        self._clock = clock or _utcnow
        self.currency = currency
        self.logger = get_logger("employee_loans.workflow")

    # Plumbing

    def _execute(self, action: str, resource: str, actor_id: Optional[str],
                 operation: Callable[[], Any]) -> WorkflowResult:
        """Run an operation, converting domain failures into a failed result"""
        try:
            return WorkflowResult.success(operation())
        except VersionConflictError as e:
            error = ConcurrencyError(
                f"{resource} was modified concurrently; reload and retry",
                code="ErrVersionConflict",
                details={'expected_version': e.expected, 'actual_version': e.actual}
            )
        except LoanError as e:
            error = e

        log_action(
            self.logger, "warning", f"{action} failed: {error.message}",
            user_id=actor_id, action=action, resource=resource,
            extra=error.to_dict()
        )
        return WorkflowResult.failure(error)

    def _audit(self, event_type: AuditEventType, entity_type: str, entity_id: str,
               metadata: Dict[str, Any], user_id: Optional[str]) -> None:
        if self.audit_trail:
            self.audit_trail.log_event(event_type, entity_type, entity_id, metadata, user_id)

    def _load_request(self, loan_id: str) -> LoanRequest:
        request = self.repository.get_request(loan_id)
        if request is None:
            raise NotFoundError(f"Loan request {loan_id} not found", code="ErrLoanNotFound",
                                details={'loan_id': loan_id})
        return request

    def _load_repayment_entry(self, entry_id: str) -> RepaymentEntry:
        entry = self.repository.get_repayment_entry(entry_id)
        if entry is None:
            raise NotFoundError(f"Repayment entry {entry_id} not found",
                                code="ErrRepaymentEntryNotFound", details={'entry_id': entry_id})
        return entry

    def _load_waiting_entry(self, entry_id: str) -> WaitingListEntry:
        entry = self.repository.get_waiting_entry(entry_id)
        if entry is None:
            raise NotFoundError(f"Waiting list entry {entry_id} not found",
                                code="ErrWaitingEntryNotFound", details={'entry_id': entry_id})
        return entry

    # Submission

    def submit(self, employee_id: str, amount: Union[Money, Decimal, str, int],
               term_months: int, reason_type: Union[ReasonType, str],
               reason_details: str, consent: bool, signature: str) -> WorkflowResult[LoanRequest]:
        """
        Validate and create a loan request directly in HR review.

        Policy limits, the interest rate and the approval chain are
        snapshotted onto the request.
        """
        return self._execute(
            "submit_loan", f"employee:{employee_id}", employee_id,
            lambda: self._submit(employee_id, amount, term_months, reason_type,
                                 reason_details, consent, signature)
        )

    def _submit(self, employee_id, amount, term_months, reason_type,
                reason_details, consent, signature) -> LoanRequest:
        profile = self.directory.get(employee_id)
        if profile is None:
            raise NotFoundError(f"Employee {employee_id} not found", code="ErrEmployeeNotFound",
                                details={'employee_id': employee_id})

        eligibility = self.policy_resolver.check_eligibility(profile)
        if not eligibility.eligible:
            raise PolicyError(
                f"Employee {employee_id} is not eligible: {'; '.join(eligibility.reasons)}",
                code="ErrNotEligible",
                details={'reasons': eligibility.reasons}
            )

        policy = self.policy_resolver.require(profile.position_level)

        try:
            money = to_money(amount, policy.currency)
        except (ValueError, ArithmeticError):
            raise ValidationError(f"Invalid amount: {amount!r}", code="ErrInvalidAmount")
        if not money.is_positive():
            raise ValidationError("Amount must be greater than zero", code="ErrInvalidAmount")

        if not isinstance(term_months, int) or isinstance(term_months, bool) or term_months < 1:
            raise ValidationError("Term must be a positive number of months", code="ErrInvalidTerm")

        if consent is not True:
            raise ValidationError("Consent to payroll deduction is required",
                                  code="ErrConsentRequired")

        signature = signature.strip() if isinstance(signature, str) else ""
        if not signature:
            raise ValidationError("An e-signature is required", code="ErrValidationFailed",
                                  details={'field': 'e_signature'})

        reason = _coerce_enum(ReasonType, reason_type, "ErrInvalidReasonType", "reason type")
        reason_details = (reason_details or "").strip()
        if reason == ReasonType.MEDICAL and not reason_details:
            raise ValidationError("Medical requests must describe the reason",
                                  code="ErrReasonDetailsRequired")

        self.policy_resolver.validate_request(policy, money, term_months)
        schedule = self.amortization.compute_schedule(
            money, policy.annual_interest_rate_percent, term_months
        )

        now = self._clock()
        chain = self.policy_resolver.select_chain(policy, money)
        request = LoanRequest(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            employee_id=employee_id,
            amount=money,
            term_months=term_months,
            reason_type=reason,
            reason_details=reason_details,
            auto_deduction_consent=True,
            e_signature=signature,
            status=chain_for(chain).first_status,
            submitted_at=now,
            position_level_snapshot=profile.position_level,
            prior_outstanding_amount=profile.prior_outstanding_amount,
            max_eligible_amount=policy.max_loan_amount,
            allowed_terms_snapshot=sorted(policy.allowed_terms_months),
            annual_interest_rate_percent=policy.annual_interest_rate_percent,
            policy_revision=policy.revision,
            approval_chain=chain,
            estimated_monthly_installment=schedule.installment,
            signed_at=now,
        )

        with self.storage.atomic():
            stored = self.repository.save_request(request)
            self._audit(AuditEventType.LOAN_SUBMITTED, 'loan_request', stored.id, {
                'amount': money.to_string(),
                'term_months': term_months,
                'reason_type': reason.value,
                'position_level': profile.position_level,
                'policy_revision': policy.revision,
                'approval_chain': chain.value,
            }, employee_id)

        log_action(
            self.logger, "info", f"Loan request submitted: {money.to_string()}",
            user_id=employee_id, action="submit_loan", resource=f"loan:{stored.id}",
            extra={
                'amount': money.to_string(),
                'term_months': term_months,
                'approval_chain': chain.value,
                'estimated_monthly_installment': schedule.installment.to_string(),
            }
        )
        return stored

    # Review decisions

    def decide(self, loan_id: str, actor_id: str, actor_role: Union[Role, str],
               decision: Union[Decision, str],
               payload: Optional[Dict[str, Any]] = None) -> WorkflowResult[DecisionResult]:
        """Record a reviewer decision at the request's current stage"""
        return self._execute(
            "decide_loan", f"loan:{loan_id}", actor_id,
            lambda: self._decide(loan_id, actor_id, actor_role, decision, payload)
        )

    def _decide(self, loan_id, actor_id, actor_role, decision, payload) -> DecisionResult:
        role = _coerce_enum(Role, actor_role, "ErrInvalidRole", "role")
        verdict = _coerce_enum(Decision, decision, "ErrInvalidDecision", "decision")

        self._load_request(loan_id)
        with self.locks.acquire(loan_id):
            with self.storage.atomic():
                request = self._load_request(loan_id)
                now = self._clock()
                outcome = self.state_machine.transition(request, actor_id, role, verdict, payload, now)

                updated = outcome.request
                if updated.status == LoanStatus.APPROVED:
                    schedule = self.amortization.compute_schedule(
                        updated.amount, updated.annual_interest_rate_percent, updated.term_months
                    )
                    updated = replace(updated, finalized_installment=schedule.installment)

                stored = self.repository.save_request(updated)
                record = self.repository.append_approval(outcome.record)

                waiting_entry = None
                if stored.status == LoanStatus.DEFERRED:
                    waiting_entry = self._enqueue(stored, now)

                if stored.status == LoanStatus.APPROVED:
                    event_type = AuditEventType.LOAN_APPROVED
                elif stored.status == LoanStatus.REJECTED:
                    event_type = AuditEventType.LOAN_REJECTED
                elif stored.status == LoanStatus.DEFERRED:
                    event_type = AuditEventType.LOAN_DEFERRED
                else:
                    event_type = AuditEventType.LOAN_DECIDED

                self._audit(event_type, 'loan_request', loan_id, {
                    'from_status': outcome.previous_status.value,
                    'to_status': stored.status.value,
                    'decision': verdict.value,
                    'approval_record_id': record.id,
                    'actor_role': role.value,
                }, actor_id)

        log_action(
            self.logger, "info",
            f"Loan decision {verdict.value} at {outcome.previous_status.value}",
            user_id=actor_id, action="decide_loan", resource=f"loan:{loan_id}",
            extra={'from_status': outcome.previous_status.value, 'to_status': stored.status.value}
        )
        return DecisionResult(request=stored, record=record, waiting_entry=waiting_entry)

    def _enqueue(self, request: LoanRequest, now: datetime) -> WaitingListEntry:
        """At most one active entry per request; a re-deferral re-scores the existing one"""
        fresh = self.prioritizer.create_entry(request, now)
        existing = self.repository.active_waiting_entry_for(request.id)
        if existing is not None:
            fresh = replace(fresh, id=existing.id, created_at=existing.created_at,
                            version=existing.version)
        return self.repository.save_waiting_entry(fresh)

    # Waiting list

    def promote_from_waiting_list(self, waiting_entry_id: str, actor_id: str,
                                  actor_role: Union[Role, str]) -> WorkflowResult[LoanRequest]:
        """Return a deferred request to HR review"""
        return self._execute(
            "promote_waiting_entry", f"waiting_entry:{waiting_entry_id}", actor_id,
            lambda: self._promote(waiting_entry_id, actor_id, actor_role)
        )

    def _promote(self, waiting_entry_id, actor_id, actor_role) -> LoanRequest:
        role = _coerce_enum(Role, actor_role, "ErrInvalidRole", "role")
        loan_id = self._load_waiting_entry(waiting_entry_id).loan_request_id

        with self.locks.acquire(loan_id):
            with self.storage.atomic():
                now = self._clock()
                request = self._load_request(loan_id)
                promoted = self.state_machine.promote(request, actor_id, role, now)

                entry = self.prioritizer.refresh(self._load_waiting_entry(waiting_entry_id), now)
                if not entry.is_active:
                    raise TransitionError(
                        f"Waiting list entry {waiting_entry_id} is {entry.status.value}",
                        code="ErrInvalidTransition",
                        details={'status': entry.status.value}
                    )
                if entry.reconfirm_required:
                    raise TransitionError(
                        "The employee must reconfirm this request before it can be promoted",
                        code="ErrReconfirmationPending",
                        details={'queued_since': entry.queued_since.isoformat()}
                    )

                stored = self.repository.save_request(promoted)
                self.repository.save_waiting_entry(replace(
                    entry, status=WaitingStatus.PROMOTED, promoted_at=now, updated_at=now
                ))
                self._audit(AuditEventType.WAITING_LIST_PROMOTED, 'loan_request', loan_id, {
                    'waiting_entry_id': waiting_entry_id,
                    'priority_score': entry.priority_score,
                    'to_status': stored.status.value,
                }, actor_id)

        log_action(
            self.logger, "info", "Loan request promoted from waiting list",
            user_id=actor_id, action="promote_waiting_entry", resource=f"loan:{loan_id}",
            extra={'waiting_entry_id': waiting_entry_id, 'priority_score': entry.priority_score}
        )
        return stored

    def reconfirm_waiting_entry(self, waiting_entry_id: str,
                                employee_id: str) -> WorkflowResult[WaitingListEntry]:
        """The requesting employee confirms they still need the loan"""
        return self._execute(
            "reconfirm_waiting_entry", f"waiting_entry:{waiting_entry_id}", employee_id,
            lambda: self._reconfirm(waiting_entry_id, employee_id)
        )

    def _reconfirm(self, waiting_entry_id, employee_id) -> WaitingListEntry:
        loan_id = self._load_waiting_entry(waiting_entry_id).loan_request_id

        with self.locks.acquire(loan_id):
            with self.storage.atomic():
                now = self._clock()
                entry = self.prioritizer.refresh(self._load_waiting_entry(waiting_entry_id), now)
                if entry.employee_id != employee_id:
                    raise TransitionError(
                        "Only the requesting employee can reconfirm a waiting request",
                        code="ErrUnauthorizedTransition",
                        details={'employee_id': employee_id}
                    )
                if not entry.is_active:
                    raise TransitionError(
                        f"Waiting list entry {waiting_entry_id} is {entry.status.value}",
                        code="ErrInvalidTransition",
                        details={'status': entry.status.value}
                    )

                stored = self.repository.save_waiting_entry(self.prioritizer.reconfirm(entry, now))
                self._audit(AuditEventType.WAITING_LIST_RECONFIRMED, 'waiting_list_entry',
                            waiting_entry_id, {'loan_request_id': loan_id}, employee_id)

        log_action(
            self.logger, "info", "Waiting list entry reconfirmed",
            user_id=employee_id, action="reconfirm_waiting_entry",
            resource=f"waiting_entry:{waiting_entry_id}", loan_id=loan_id
        )
        return stored

    def reject_waiting_entry(self, waiting_entry_id: str, actor_id: str,
                             actor_role: Union[Role, str],
                             notes: Optional[str] = None) -> WorkflowResult[LoanRequest]:
        """
        Reject a deferred request from the waiting list.

        Works on waiting and expired entries alike; an expired entry can no
        longer be promoted, so this is how its request leaves ``deferred``.
        The entry is kept as expired.
        """
        return self._execute(
            "reject_waiting_entry", f"waiting_entry:{waiting_entry_id}", actor_id,
            lambda: self._reject_waiting(waiting_entry_id, actor_id, actor_role, notes)
        )

    def _reject_waiting(self, waiting_entry_id, actor_id, actor_role, notes) -> LoanRequest:
        role = _coerce_enum(Role, actor_role, "ErrInvalidRole", "role")
        loan_id = self._load_waiting_entry(waiting_entry_id).loan_request_id

        with self.locks.acquire(loan_id):
            with self.storage.atomic():
                now = self._clock()
                request = self._load_request(loan_id)
                rejected = self.state_machine.reject_deferred(request, actor_id, role, now)

                entry = self.prioritizer.refresh(self._load_waiting_entry(waiting_entry_id), now)
                if entry.status == WaitingStatus.PROMOTED:
                    raise TransitionError(
                        f"Waiting list entry {waiting_entry_id} is {entry.status.value}",
                        code="ErrInvalidTransition",
                        details={'status': entry.status.value}
                    )

                stored = self.repository.save_request(rejected)
                self.repository.save_waiting_entry(replace(
                    entry, status=WaitingStatus.EXPIRED,
                    expired_at=entry.expired_at or now, updated_at=now
                ))
                self._audit(AuditEventType.LOAN_REJECTED, 'loan_request', loan_id, {
                    'waiting_entry_id': waiting_entry_id,
                    'from_status': LoanStatus.DEFERRED.value,
                    'notes': (notes or '').strip(),
                }, actor_id)

        log_action(
            self.logger, "info", "Deferred loan request rejected",
            user_id=actor_id, action="reject_waiting_entry", resource=f"loan:{loan_id}",
            extra={'waiting_entry_id': waiting_entry_id}
        )
        return stored

    # Disbursement and repayment

    def disburse(self, loan_id: str, disbursement_date: Union[date, str],
                 actor_id: str) -> WorkflowResult[DisbursementResult]:
        """
        Pay out an approved loan and persist its repayment schedule.

        The first installment falls due one month after disbursement. The
        payroll sink hears about each entry only after the transaction
        commits.
        """
        return self._execute(
            "disburse_loan", f"loan:{loan_id}", actor_id,
            lambda: self._disburse(loan_id, disbursement_date, actor_id)
        )

    def _disburse(self, loan_id, disbursement_date, actor_id) -> DisbursementResult:
        paid_on = _coerce_date(disbursement_date, 'disbursement_date')

        self._load_request(loan_id)
        with self.locks.acquire(loan_id):
            with self.storage.atomic():
                now = self._clock()
                request = self._load_request(loan_id)
                disbursed = self.state_machine.mark_disbursed(request, paid_on, now)

                budget = None
                if self.budget_tracker:
                    budget = self.budget_tracker.allocate(paid_on.year, paid_on.month, request.amount)

                schedule = self.amortization.compute_schedule(
                    request.amount, request.annual_interest_rate_percent, request.term_months,
                    anchor_date=paid_on
                )
                entries = []
                for line in schedule.lines:
                    entries.append(self.repository.save_repayment_entry(RepaymentEntry(
                        id=str(uuid.uuid4()),
                        created_at=now,
                        updated_at=now,
                        loan_request_id=loan_id,
                        employee_id=request.employee_id,
                        month_number=line.month_number,
                        due_date=line.due_date,
                        principal_amount=line.principal_amount,
                        interest_amount=line.interest_amount,
                        total_amount=line.total_amount,
                        remaining_balance=line.remaining_balance,
                    )))

                stored = self.repository.save_request(
                    replace(disbursed, finalized_installment=schedule.installment)
                )
                self._audit(AuditEventType.LOAN_DISBURSED, 'loan_request', loan_id, {
                    'amount': request.amount.to_string(),
                    'disbursement_date': paid_on.isoformat(),
                    'installment': schedule.installment.to_string(),
                    'entries': len(entries),
                }, actor_id)

        if stored.auto_payroll_deduction and self.payroll_sink:
            for entry in entries:
                self.payroll_sink.schedule(entry)

        log_action(
            self.logger, "info", f"Loan disbursed: {request.amount.to_string()}",
            user_id=actor_id, action="disburse_loan", resource=f"loan:{loan_id}",
            extra={'disbursement_date': paid_on.isoformat(), 'entries': len(entries)}
        )
        return DisbursementResult(request=stored, entries=entries, budget=budget)

    def start_repayment(self, loan_id: str,
                        as_of: Optional[Union[date, str]] = None) -> WorkflowResult[LoanRequest]:
        """Move a disbursed loan to repaying once its first installment is due"""
        return self._execute(
            "start_repayment", f"loan:{loan_id}", None,
            lambda: self._start_repayment(loan_id, as_of)
        )

    def _start_repayment(self, loan_id, as_of) -> LoanRequest:
        self._load_request(loan_id)

        with self.locks.acquire(loan_id):
            with self.storage.atomic():
                now = self._clock()
                as_of = _coerce_date(as_of, 'as_of') if as_of is not None else now.date()
                request = self._load_request(loan_id)
                repaying = self.state_machine.start_repayment(request, now)

                entries = self.repository.repayment_entries_for(loan_id)
                first_due = entries[0].due_date if entries else None
                if first_due is None or as_of < first_due:
                    raise TransitionError(
                        f"Repayment for loan {loan_id} starts on {first_due}",
                        code="ErrRepaymentNotStarted",
                        details={'first_due_date': first_due.isoformat() if first_due else None}
                    )

                stored = self.repository.save_request(repaying)
                self._audit(AuditEventType.REPAYMENT_STARTED, 'loan_request', loan_id,
                            {'as_of': as_of.isoformat()}, None)

        log_action(
            self.logger, "info", "Loan repayment started",
            action="start_repayment", resource=f"loan:{loan_id}"
        )
        return stored

    def record_repayment_outcome(self, repayment_entry_id: str,
                                 outcome: Union[RepaymentStatus, str],
                                 as_of: Optional[datetime] = None) -> WorkflowResult[RepaymentOutcome]:
        """
        Apply a payroll-reported deduction result to one entry.

        The loan closes when every entry has been deducted.
        """
        return self._execute(
            "record_repayment_outcome", f"repayment_entry:{repayment_entry_id}", None,
            lambda: self._record_outcome(repayment_entry_id, outcome, as_of)
        )

    def _record_outcome(self, repayment_entry_id, outcome, as_of) -> RepaymentOutcome:
        result = _coerce_enum(RepaymentStatus, outcome, "ErrInvalidOutcome", "repayment outcome")
        if result == RepaymentStatus.PENDING:
            raise ValidationError("Outcome must be 'deducted' or 'missed'", code="ErrInvalidOutcome")

        loan_id = self._load_repayment_entry(repayment_entry_id).loan_request_id

        with self.locks.acquire(loan_id):
            with self.storage.atomic():
                now = as_of or self._clock()
                entry = self._load_repayment_entry(repayment_entry_id)
                if (entry.status, result) not in REPAYMENT_OUTCOME_MOVES:
                    raise TransitionError(
                        f"Repayment entry {repayment_entry_id} cannot move from "
                        f"{entry.status.value} to {result.value}",
                        code="ErrInvalidTransition",
                        details={'status': entry.status.value, 'outcome': result.value}
                    )

                request = self._load_request(loan_id)
                original_status = request.status
                if request.status == LoanStatus.DISBURSED:
                    request = self.state_machine.start_repayment(request, now)
                    self._audit(AuditEventType.REPAYMENT_STARTED, 'loan_request', loan_id,
                                {'triggered_by': repayment_entry_id}, None)
                elif request.status != LoanStatus.REPAYING:
                    raise TransitionError(
                        f"Loan {loan_id} is {request.status.value}; repayments cannot be recorded",
                        code="ErrInvalidTransition",
                        details={'status': request.status.value}
                    )

                stored_entry = self.repository.save_repayment_entry(replace(
                    entry,
                    status=result,
                    deducted_at=now if result == RepaymentStatus.DEDUCTED else entry.deducted_at,
                    outcome_recorded_at=now,
                    updated_at=now,
                ))
                self._audit(
                    AuditEventType.REPAYMENT_DEDUCTED if result == RepaymentStatus.DEDUCTED
                    else AuditEventType.REPAYMENT_MISSED,
                    'repayment_entry', repayment_entry_id,
                    {'loan_request_id': loan_id, 'month_number': entry.month_number,
                     'total_amount': entry.total_amount.to_string()},
                    None
                )

                entries = self.repository.repayment_entries_for(loan_id)
                if all(e.status == RepaymentStatus.DEDUCTED for e in entries):
                    request = self.state_machine.close(request, now)
                    self._audit(AuditEventType.LOAN_CLOSED, 'loan_request', loan_id,
                                {'closed_at': now.isoformat()}, None)

                stored_request = request
                if request.status != original_status:
                    stored_request = self.repository.save_request(request)

        log_action(
            self.logger, "info", f"Repayment {result.value} for month {entry.month_number}",
            action="record_repayment_outcome", resource=f"loan:{loan_id}",
            extra={'entry_id': repayment_entry_id, 'loan_status': stored_request.status.value}
        )
        return RepaymentOutcome(entry=stored_entry, request=stored_request)

    # Administration

    def save_policy(self, policy: LoanPolicy, actor_id: str,
                    actor_role: Union[Role, str]) -> WorkflowResult[LoanPolicy]:
        def operation():
            self._require_admin(actor_role)
            return self.policy_resolver.save_policy(policy, actor_id)
        return self._execute("save_policy", f"policy:{policy.position_level}", actor_id, operation)

    def set_budget(self, year: int, month: int, total: Union[Money, Decimal, str],
                   actor_id: str, actor_role: Union[Role, str],
                   notes: str = "") -> WorkflowResult[DisbursementBudget]:
        def operation():
            self._require_admin(actor_role)
            if self.budget_tracker is None:
                raise PolicyError("Disbursement budgets are not enabled", code="ErrBudgetDisabled")
            try:
                money = to_money(total, self.currency)
            except (ValueError, ArithmeticError):
                raise ValidationError(f"Invalid amount: {total!r}", code="ErrInvalidAmount")
            return self.budget_tracker.set_budget(year, month, money, actor_id, notes)
        return self._execute("set_budget", f"budget:{year:04d}-{month:02d}", actor_id, operation)

    @staticmethod
    def _require_admin(actor_role: Union[Role, str]) -> None:
        role = _coerce_enum(Role, actor_role, "ErrInvalidRole", "role")
        if role not in ADMIN_ROLES:
            raise TransitionError(
                f"Role '{role.value}' cannot change loan administration settings",
                code="ErrUnauthorized",
                details={'required_roles': sorted(r.value for r in ADMIN_ROLES)}
            )

    # Reads

    def preview_schedule(self, principal: Union[Money, Decimal, str], annual_rate_percent: Decimal,
                         term_months: int, currency: Optional[Currency] = None,
                         first_due_date: Optional[date] = None) -> WorkflowResult[RepaymentSchedule]:
        """EMI calculator: schedule for arbitrary inputs without touching storage"""
        def operation():
            try:
                money = to_money(principal, currency or self.currency)
                rate = Decimal(str(annual_rate_percent))
            except (ValueError, ArithmeticError):
                raise ValidationError("Principal and rate must be numbers", code="ErrValidationFailed")
            return self.amortization.compute_schedule(money, rate, term_months, first_due_date)
        return self._execute("preview_schedule", "calculator", None, operation)

    def get_request(self, loan_id: str) -> WorkflowResult[LoanRequest]:
        return self._execute("get_request", f"loan:{loan_id}", None,
                             lambda: self._load_request(loan_id))

    def list_all(self) -> WorkflowResult[List[LoanRequest]]:
        return self._execute("list_all", "loans", None, self.repository.find_requests)

    def list_by_status(self, status: Union[LoanStatus, str]) -> WorkflowResult[List[LoanRequest]]:
        def operation():
            wanted = _coerce_enum(LoanStatus, status, "ErrInvalidStatus", "status")
            return self.repository.find_requests(status=wanted)
        return self._execute("list_by_status", "loans", None, operation)

    def list_by_employee(self, employee_id: str) -> WorkflowResult[List[LoanRequest]]:
        return self._execute("list_by_employee", f"employee:{employee_id}", None,
                             lambda: self.repository.find_requests(employee_id=employee_id))

    def list_pending_for_role(self, role: Union[Role, str]) -> WorkflowResult[List[LoanRequest]]:
        """Requests currently waiting on a decision by this role"""
        def operation():
            wanted = _coerce_enum(Role, role, "ErrInvalidRole", "role")
            pending = []
            for request in self.repository.find_requests():
                stage = chain_for(request.approval_chain).stage_for(request.status)
                if stage is not None and stage.required_role == wanted:
                    pending.append(request)
            return pending
        return self._execute("list_pending_for_role", f"queue:{role}", None, operation)

    def list_waiting(self) -> WorkflowResult[List[WaitingListEntry]]:
        """Active waiting-list entries, freshly scored, highest priority first"""
        def operation():
            now = self._clock()
            refreshed = [self.prioritizer.refresh(e, now) for e in self.repository.waiting_entries()]
            return self.prioritizer.ordered(e for e in refreshed if e.is_active)
        return self._execute("list_waiting", "waiting_list", None, operation)

    def get_approval_history(self, loan_id: str) -> WorkflowResult[List[ApprovalRecord]]:
        def operation():
            self._load_request(loan_id)
            return self.repository.approvals_for(loan_id)
        return self._execute("get_approval_history", f"loan:{loan_id}", None, operation)

    def get_repayment_schedule(self, loan_id: str) -> WorkflowResult[List[RepaymentEntry]]:
        """Persisted entries; empty until the loan is disbursed"""
        def operation():
            self._load_request(loan_id)
            return self.repository.repayment_entries_for(loan_id)
        return self._execute("get_repayment_schedule", f"loan:{loan_id}", None, operation)

    def outstanding_balance(self, loan_id: str) -> WorkflowResult[Money]:
        """Principal not yet deducted through payroll"""
        def operation():
            request = self._load_request(loan_id)
            balance = Money.zero(request.amount.currency)
            for entry in self.repository.repayment_entries_for(loan_id):
                if entry.status != RepaymentStatus.DEDUCTED:
                    balance = balance + entry.principal_amount
            return balance
        return self._execute("outstanding_balance", f"loan:{loan_id}", None, operation)
