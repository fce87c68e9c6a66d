"""
Test suite for policy module

Tests storage-backed policy lookup, revisions, eligibility and the amount
and term checks applied at submission.
"""

import pytest
from decimal import Decimal

from employee_loans.audit import AuditTrail, AuditEventType
from employee_loans.collaborators import EmployeeProfile
from employee_loans.currency import Money, Currency
from employee_loans.errors import PolicyError
from employee_loans.models import ChainKind
from employee_loans.policy import LoanPolicy, PolicyResolver, default_policies
from employee_loans.storage import InMemoryStorage


def usd(value):
    return Money(Decimal(value), Currency.USD)


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def resolver(storage):
    resolver = PolicyResolver(storage, AuditTrail(storage))
    resolver.seed_defaults()
    return resolver


class TestLoanPolicy:
    """Test policy construction rules"""

    def test_minimum_defaults_to_zero(self):
        policy = LoanPolicy('entry', usd('500'), {1, 2, 3}, Decimal('5'))
        assert policy.min_loan_amount == usd('0')
        assert policy.allowed_terms_months == frozenset({1, 2, 3})

    @pytest.mark.parametrize("kwargs", [
        {'max_loan_amount': usd('0')},
        {'allowed_terms_months': set()},
        {'allowed_terms_months': {0, 3}},
        {'annual_interest_rate_percent': Decimal('-1')},
        {'min_loan_amount': usd('600')},
    ])
    def test_invalid_policies(self, kwargs):
        base = dict(position_level='entry', max_loan_amount=usd('500'),
                    allowed_terms_months={1, 2}, annual_interest_rate_percent=Decimal('5'))
        base.update(kwargs)
        with pytest.raises(ValueError):
            LoanPolicy(**base)

    def test_dict_round_trip(self):
        policy = LoanPolicy('senior', usd('2500'), {3, 6}, Decimal('5.5'),
                            min_loan_amount=usd('1500'),
                            executive_review_threshold=usd('2000'), revision=3)
        assert LoanPolicy.from_dict(policy.to_dict()) == policy


class TestPolicyResolver:
    """Test lookup and revisions"""

    def test_default_caps(self, resolver):
        caps = {p.position_level: (p.min_loan_amount, p.max_loan_amount) for p in resolver.list_policies()}
        assert caps == {
            'entry': (usd('0'), usd('500')),
            'mid': (usd('500'), usd('1500')),
            'senior': (usd('1500'), usd('2500')),
            'management': (usd('1500'), usd('2500')),
        }
        assert resolver.resolve('management').approval_chain == ChainKind.EXECUTIVE

    def test_unknown_level(self, resolver):
        assert resolver.resolve('intern') is None
        with pytest.raises(PolicyError) as exc_info:
            resolver.require('intern')
        assert exc_info.value.code == "ErrPolicyNotFound"

    def test_save_bumps_revision_and_audits(self, resolver, storage):
        updated = LoanPolicy('mid', usd('3000'), {6, 12}, Decimal('4'))
        stored = resolver.save_policy(updated, saved_by='hr-1')

        assert stored.revision == 2
        assert resolver.resolve('mid').max_loan_amount == usd('3000')
        events = AuditTrail(storage).get_events_for_entity('loan_policy', 'mid')
        assert [e.event_type for e in events] == [AuditEventType.POLICY_SAVED] * 2
        assert events[-1].user_id == 'hr-1'

    def test_seed_does_not_overwrite(self, resolver):
        resolver.save_policy(LoanPolicy('entry', usd('800'), {1}, Decimal('3')))
        assert resolver.seed_defaults() == 0
        assert resolver.resolve('entry').max_loan_amount == usd('800')

    def test_default_policies_in_other_currency(self):
        policies = default_policies(Currency.NPR)
        assert all(p.currency == Currency.NPR for p in policies)


class TestRequestChecks:
    """Test eligibility and amount/term validation"""

    def test_eligible_employee(self):
        profile = EmployeeProfile('e1', 'mid', usd('0'))
        assert PolicyResolver.check_eligibility(profile).eligible

    def test_ineligible_employee_lists_every_reason(self):
        profile = EmployeeProfile('e1', 'mid', usd('0'), employment_type='contract',
                                  probation_completed=False, status='suspended')
        result = PolicyResolver.check_eligibility(profile)
        assert not result.eligible
        assert len(result.reasons) == 3

    def test_amount_limits(self, resolver):
        policy = resolver.require('mid')

        PolicyResolver.validate_request(policy, usd('1500'), 6)
        PolicyResolver.validate_request(policy, usd('500'), 1)

        with pytest.raises(PolicyError) as exc_info:
            PolicyResolver.validate_request(policy, usd('1500.01'), 6)
        assert exc_info.value.code == "ErrAmountExceedsPolicy"

        with pytest.raises(PolicyError) as exc_info:
            PolicyResolver.validate_request(policy, usd('499.99'), 6)
        assert exc_info.value.code == "ErrAmountBelowPolicy"

    def test_term_not_allowed(self, resolver):
        with pytest.raises(PolicyError) as exc_info:
            PolicyResolver.validate_request(resolver.require('mid'), usd('1000'), 7)
        assert exc_info.value.code == "ErrTermNotAllowed"

    def test_chain_selection(self):
        policy = LoanPolicy('senior', usd('5000'), {6}, Decimal('5'),
                            executive_review_threshold=usd('3000'))
        assert PolicyResolver.select_chain(policy, usd('2999.99')) == ChainKind.STANDARD
        assert PolicyResolver.select_chain(policy, usd('3000')) == ChainKind.EXECUTIVE
