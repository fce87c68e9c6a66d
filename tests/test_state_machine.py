"""
Test suite for the loan state machine

Tests role gating, chain ordering, self-approval, payload validation and
the lifecycle transitions after approval.
"""

import pytest
from decimal import Decimal
from datetime import datetime, date, timezone

from employee_loans.currency import Money, Currency
from employee_loans.errors import TransitionError, ValidationError
from employee_loans.models import (
    LoanRequest, LoanStatus, Role, Decision, ReasonType, ChainKind
)
from employee_loans.state_machine import (
    LoanStateMachine, STANDARD_CHAIN, EXECUTIVE_CHAIN, chain_for
)


NOW = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)

HR_CHECKLIST = {
    'eligibility_verified': True,
    'position_verified': True,
    'outstanding_checked': True,
    'repayment_finalized': True,
    'prioritization_applied': False,
    'hr_recommendation': 'Recommend approval',
}


def usd(value):
    return Money(Decimal(value), Currency.USD)


def make_request(status=LoanStatus.HR_REVIEW, chain=ChainKind.STANDARD, employee_id='emp-1'):
    return LoanRequest(
        id='loan-1', created_at=NOW, updated_at=NOW,
        employee_id=employee_id, amount=usd('1200'), term_months=6,
        reason_type=ReasonType.URGENT, reason_details='Car repair',
        auto_deduction_consent=True, e_signature='Emp One', status=status,
        submitted_at=NOW, position_level_snapshot='mid',
        prior_outstanding_amount=usd('0'), max_eligible_amount=usd('1500'),
        allowed_terms_snapshot=[1, 2, 3, 4, 5, 6],
        annual_interest_rate_percent=Decimal('5'), policy_revision=1,
        approval_chain=chain, estimated_monthly_installment=usd('202.63'),
    )


@pytest.fixture
def machine():
    return LoanStateMachine()


class TestApprovalChains:

    def test_standard_chain(self):
        assert STANDARD_CHAIN.statuses == (
            LoanStatus.HR_REVIEW, LoanStatus.MANAGER_REVIEW, LoanStatus.VP_REVIEW
        )
        assert STANDARD_CHAIN.next_status(LoanStatus.VP_REVIEW) == LoanStatus.APPROVED

    def test_executive_chain(self):
        assert EXECUTIVE_CHAIN.next_status(LoanStatus.HR_REVIEW) == LoanStatus.CEO_REVIEW
        assert EXECUTIVE_CHAIN.stage_for(LoanStatus.MANAGER_REVIEW) is None
        assert chain_for(ChainKind.EXECUTIVE) is EXECUTIVE_CHAIN


class TestTransition:
    """Review decisions"""

    def test_standard_chain_walkthrough(self, machine):
        request = make_request()

        outcome = machine.transition(request, 'hr-1', Role.HR, Decision.APPROVED, HR_CHECKLIST, NOW)
        assert outcome.request.status == LoanStatus.MANAGER_REVIEW
        assert outcome.record.approval_step == LoanStatus.HR_REVIEW
        assert outcome.record.details['eligibility_verified'] is True

        outcome = machine.transition(outcome.request, 'mgr-1', Role.MANAGER, Decision.APPROVED,
                                     {'notes': 'Fine by me'}, NOW)
        assert outcome.request.status == LoanStatus.VP_REVIEW

        outcome = machine.transition(outcome.request, 'vp-1', Role.VP, Decision.APPROVED,
                                     {'notes': 'Approved', 'disbursement_date': '2024-05-15',
                                      'auto_payroll': False}, NOW)
        assert outcome.request.status == LoanStatus.APPROVED
        assert outcome.request.planned_disbursement_date == date(2024, 5, 15)
        assert outcome.request.auto_payroll_deduction is False

    def test_executive_chain_goes_to_ceo(self, machine):
        request = make_request(chain=ChainKind.EXECUTIVE)
        outcome = machine.transition(request, 'hr-1', Role.HR, Decision.APPROVED, {}, NOW)
        assert outcome.request.status == LoanStatus.CEO_REVIEW

        outcome = machine.transition(outcome.request, 'ceo-1', Role.CEO, Decision.APPROVED,
                                     {'ceo_decision_notes': 'Go ahead'}, NOW)
        assert outcome.request.status == LoanStatus.APPROVED

    def test_self_approval_checked_before_role(self, machine):
        request = make_request(employee_id='hr-1')
        with pytest.raises(TransitionError) as exc_info:
            machine.transition(request, 'hr-1', Role.HR, Decision.APPROVED, {}, NOW)
        assert exc_info.value.code == "ErrSelfApproval"

        with pytest.raises(TransitionError) as exc_info:
            machine.transition(request, 'hr-1', Role.VP, Decision.APPROVED, {}, NOW)
        assert exc_info.value.code == "ErrSelfApproval"

    def test_no_stage_skipping(self, machine):
        """A VP cannot decide while the request is still with HR"""
        with pytest.raises(TransitionError) as exc_info:
            machine.transition(make_request(), 'vp-1', Role.VP, Decision.APPROVED, {'notes': 'x'}, NOW)
        assert exc_info.value.code == "ErrUnauthorizedTransition"

    def test_wrong_chain_role(self, machine):
        request = make_request(status=LoanStatus.CEO_REVIEW, chain=ChainKind.EXECUTIVE)
        with pytest.raises(TransitionError) as exc_info:
            machine.transition(request, 'vp-1', Role.VP, Decision.APPROVED, {'notes': 'x'}, NOW)
        assert exc_info.value.code == "ErrUnauthorizedTransition"

    @pytest.mark.parametrize("status", [
        LoanStatus.REJECTED, LoanStatus.CLOSED, LoanStatus.APPROVED,
        LoanStatus.DEFERRED, LoanStatus.DISBURSED,
    ])
    def test_no_decisions_outside_review(self, machine, status):
        for role in (Role.HR, Role.MANAGER, Role.VP, Role.CEO, Role.ADMIN):
            with pytest.raises(TransitionError) as exc_info:
                machine.transition(make_request(status=status), 'x-1', role, Decision.APPROVED,
                                   {'notes': 'x'}, NOW)
            assert exc_info.value.code == "ErrInvalidTransition"

    def test_ceo_cannot_defer(self, machine):
        request = make_request(status=LoanStatus.CEO_REVIEW, chain=ChainKind.EXECUTIVE)
        with pytest.raises(TransitionError) as exc_info:
            machine.transition(request, 'ceo-1', Role.CEO, Decision.DEFERRED, {}, NOW)
        assert exc_info.value.code == "ErrInvalidTransition"

    def test_reject_and_defer(self, machine):
        rejected = machine.transition(make_request(), 'hr-1', Role.HR, Decision.REJECTED, {}, NOW)
        assert rejected.request.status == LoanStatus.REJECTED
        assert rejected.record.decision == Decision.REJECTED

        deferred = machine.transition(make_request(status=LoanStatus.MANAGER_REVIEW), 'mgr-1',
                                      Role.MANAGER, Decision.DEFERRED, {'notes': 'No budget'}, NOW)
        assert deferred.request.status == LoanStatus.DEFERRED

    def test_input_request_is_unchanged(self, machine):
        request = make_request()
        machine.transition(request, 'hr-1', Role.HR, Decision.APPROVED, {}, NOW)
        assert request.status == LoanStatus.HR_REVIEW


class TestPayloadValidation:

    def test_manager_comment_required(self, machine):
        request = make_request(status=LoanStatus.MANAGER_REVIEW)
        with pytest.raises(ValidationError) as exc_info:
            machine.transition(request, 'mgr-1', Role.MANAGER, Decision.REJECTED, {'notes': '  '}, NOW)
        assert exc_info.value.code == "ErrValidationFailed"
        assert exc_info.value.details == {'field': 'notes'}

    def test_hr_checklist_must_be_boolean(self, machine):
        with pytest.raises(ValidationError) as exc_info:
            machine.transition(make_request(), 'hr-1', Role.HR, Decision.APPROVED,
                               {'eligibility_verified': 'yes'}, NOW)
        assert exc_info.value.code == "ErrValidationFailed"

    def test_vp_disbursement_date_must_be_iso(self, machine):
        request = make_request(status=LoanStatus.VP_REVIEW)
        with pytest.raises(ValidationError):
            machine.transition(request, 'vp-1', Role.VP, Decision.APPROVED,
                               {'notes': 'ok', 'disbursement_date': '15/05/2024'}, NOW)

    def test_fields_from_other_steps_rejected(self, machine):
        with pytest.raises(ValidationError) as exc_info:
            machine.transition(make_request(), 'hr-1', Role.HR, Decision.APPROVED,
                               {'ceo_decision_notes': 'sneaky'}, NOW)
        assert exc_info.value.details['fields'] == ['ceo_decision_notes']


class TestLifecycle:
    """Transitions after approval"""

    def test_disburse_repay_close(self, machine):
        approved = make_request(status=LoanStatus.APPROVED)

        disbursed = machine.mark_disbursed(approved, date(2024, 6, 1), NOW)
        assert disbursed.status == LoanStatus.DISBURSED
        assert disbursed.disbursement_date == date(2024, 6, 1)

        repaying = machine.start_repayment(disbursed, NOW)
        assert repaying.status == LoanStatus.REPAYING

        closed = machine.close(repaying, NOW)
        assert closed.status == LoanStatus.CLOSED
        assert closed.closed_at == NOW

    def test_disbursed_cannot_skip_to_closed(self, machine):
        with pytest.raises(TransitionError):
            machine.close(make_request(status=LoanStatus.DISBURSED), NOW)

    def test_cannot_disburse_before_approval(self, machine):
        with pytest.raises(TransitionError):
            machine.mark_disbursed(make_request(status=LoanStatus.VP_REVIEW), date(2024, 6, 1), NOW)

    def test_promote_requires_hr(self, machine):
        deferred = make_request(status=LoanStatus.DEFERRED)

        with pytest.raises(TransitionError) as exc_info:
            machine.promote(deferred, 'mgr-1', Role.MANAGER, NOW)
        assert exc_info.value.code == "ErrUnauthorizedTransition"

        assert machine.promote(deferred, 'hr-1', Role.HR, NOW).status == LoanStatus.HR_REVIEW

    def test_reject_deferred(self, machine):
        deferred = make_request(status=LoanStatus.DEFERRED)

        with pytest.raises(TransitionError) as exc_info:
            machine.reject_deferred(deferred, 'vp-1', Role.VP, NOW)
        assert exc_info.value.code == "ErrUnauthorizedTransition"

        with pytest.raises(TransitionError) as exc_info:
            machine.reject_deferred(deferred, deferred.employee_id, Role.HR, NOW)
        assert exc_info.value.code == "ErrSelfApproval"

        with pytest.raises(TransitionError) as exc_info:
            machine.reject_deferred(make_request(status=LoanStatus.HR_REVIEW), 'hr-1', Role.HR, NOW)
        assert exc_info.value.code == "ErrInvalidTransition"

        assert machine.reject_deferred(deferred, 'hr-1', Role.HR, NOW).status == LoanStatus.REJECTED
