"""
Loan Policy Module

Per-position-level eligibility rules (amount range, allowed terms, interest
rate, approval chain) stored in the repository rather than hardcoded, plus
the employee eligibility checks applied before a request is accepted.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional

from .audit import AuditTrail, AuditEventType
from .collaborators import EmployeeProfile
from .currency import Money, Currency
from .errors import PolicyError
from .models import ChainKind
from .storage import StorageInterface


@dataclass(frozen=True)
class LoanPolicy:
    """Eligibility rule set for one position level"""
    position_level: str
    max_loan_amount: Money
    allowed_terms_months: FrozenSet[int]
    annual_interest_rate_percent: Decimal
    min_loan_amount: Optional[Money] = None
    approval_chain: ChainKind = ChainKind.STANDARD
    executive_review_threshold: Optional[Money] = None
    revision: int = 1

    def __post_init__(self):
        object.__setattr__(self, 'allowed_terms_months', frozenset(self.allowed_terms_months))
        object.__setattr__(self, 'annual_interest_rate_percent',
                           Decimal(str(self.annual_interest_rate_percent)))
        if self.min_loan_amount is None:
            object.__setattr__(self, 'min_loan_amount', Money.zero(self.max_loan_amount.currency))

        if not self.position_level:
            raise ValueError("Position level is required")
        if not self.max_loan_amount.is_positive():
            raise ValueError("Maximum loan amount must be positive")
        if self.min_loan_amount.currency != self.max_loan_amount.currency:
            raise ValueError("Minimum and maximum amounts must share a currency")
        if self.min_loan_amount > self.max_loan_amount:
            raise ValueError("Minimum loan amount exceeds maximum")
        if not self.allowed_terms_months:
            raise ValueError("At least one term must be allowed")
        if any(not isinstance(t, int) or t < 1 for t in self.allowed_terms_months):
            raise ValueError("Allowed terms must be positive integers")
        if self.annual_interest_rate_percent < 0:
            raise ValueError("Interest rate cannot be negative")
        if self.executive_review_threshold is not None and \
                self.executive_review_threshold.currency != self.max_loan_amount.currency:
            raise ValueError("Executive review threshold currency must match")

    @property
    def currency(self) -> Currency:
        return self.max_loan_amount.currency

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.position_level,
            'position_level': self.position_level,
            'max_loan_amount': self.max_loan_amount.to_dict(),
            'min_loan_amount': self.min_loan_amount.to_dict(),
            'allowed_terms_months': sorted(self.allowed_terms_months),
            'annual_interest_rate_percent': str(self.annual_interest_rate_percent),
            'approval_chain': self.approval_chain.value,
            'executive_review_threshold': (
                self.executive_review_threshold.to_dict()
                if self.executive_review_threshold else None
            ),
            'revision': self.revision,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanPolicy':
        threshold = data.get('executive_review_threshold')
        return cls(
            position_level=data['position_level'],
            max_loan_amount=Money.from_dict(data['max_loan_amount']),
            min_loan_amount=Money.from_dict(data['min_loan_amount']),
            allowed_terms_months=frozenset(data['allowed_terms_months']),
            annual_interest_rate_percent=Decimal(data['annual_interest_rate_percent']),
            approval_chain=ChainKind(data.get('approval_chain', ChainKind.STANDARD.value)),
            executive_review_threshold=Money.from_dict(threshold) if threshold else None,
            revision=data.get('revision', 1),
        )


@dataclass
class EligibilityResult:
    eligible: bool
    reasons: List[str] = field(default_factory=list)


def default_policies(currency: Currency = Currency.USD) -> List[LoanPolicy]:
    """Starting policy table: 5% over one to six months, capped by level"""
    terms = frozenset(range(1, 7))
    rate = Decimal('5')

    def money(value: str) -> Money:
        return Money(Decimal(value), currency)

    return [
        LoanPolicy('entry', money('500'), terms, rate, min_loan_amount=money('0')),
        LoanPolicy('mid', money('1500'), terms, rate, min_loan_amount=money('500')),
        LoanPolicy('senior', money('2500'), terms, rate, min_loan_amount=money('1500')),
        LoanPolicy('management', money('2500'), terms, rate, min_loan_amount=money('1500'),
                   approval_chain=ChainKind.EXECUTIVE),
    ]


class PolicyResolver:
    """Looks up the LoanPolicy for a position level"""

    def __init__(self, storage: StorageInterface, audit_trail: Optional[AuditTrail] = None):
        self.storage = storage
        self.audit_trail = audit_trail
        self.policies_table = "loan_policies"

    def resolve(self, position_level: str) -> Optional[LoanPolicy]:
        """Policy for the level, or None when the level has no policy"""
        if not position_level:
            return None
        data = self.storage.load(self.policies_table, position_level)
        if not data:
            return None
        return LoanPolicy.from_dict(data)

    def require(self, position_level: str) -> LoanPolicy:
        policy = self.resolve(position_level)
        if policy is None:
            raise PolicyError(
                f"No loan policy for position level '{position_level}'",
                code="ErrPolicyNotFound",
                details={'position_level': position_level}
            )
        return policy

    def list_policies(self) -> List[LoanPolicy]:
        policies = [LoanPolicy.from_dict(d) for d in self.storage.load_all(self.policies_table)]
        return sorted(policies, key=lambda p: p.position_level)

    def save_policy(self, policy: LoanPolicy, saved_by: str = "system") -> LoanPolicy:
        """
        Store a policy as the next revision for its level.

        Requests already submitted keep the snapshot taken at submission.
        """
        existing = self.resolve(policy.position_level)
        revision = existing.revision + 1 if existing else 1
        stored = LoanPolicy(
            position_level=policy.position_level,
            max_loan_amount=policy.max_loan_amount,
            min_loan_amount=policy.min_loan_amount,
            allowed_terms_months=policy.allowed_terms_months,
            annual_interest_rate_percent=policy.annual_interest_rate_percent,
            approval_chain=policy.approval_chain,
            executive_review_threshold=policy.executive_review_threshold,
            revision=revision,
        )
        data = stored.to_dict()
        data['saved_at'] = datetime.now(timezone.utc).isoformat()
        data['saved_by'] = saved_by
        self.storage.save(self.policies_table, stored.position_level, data)

        if self.audit_trail:
            self.audit_trail.log_event(
                AuditEventType.POLICY_SAVED,
                'loan_policy',
                stored.position_level,
                {'revision': revision, 'max_loan_amount': stored.max_loan_amount.to_string()},
                saved_by
            )
        return stored

    def seed_defaults(self, currency: Currency = Currency.USD) -> int:
        """Store the default policies for levels that have none; returns how many were added"""
        added = 0
        for policy in default_policies(currency):
            if self.resolve(policy.position_level) is None:
                self.save_policy(policy)
                added += 1
        return added

    @staticmethod
    def check_eligibility(employee: EmployeeProfile) -> EligibilityResult:
        """Employment conditions an employee must meet before borrowing"""
        reasons = []
        if employee.employment_type != 'full_time':
            reasons.append('Must be a full-time employee')
        if not employee.probation_completed:
            reasons.append('Probation period must be completed')
        if employee.status != 'active':
            reasons.append('Employee must be active')
        return EligibilityResult(eligible=not reasons, reasons=reasons)

    @staticmethod
    def validate_request(policy: LoanPolicy, amount: Money, term_months: int) -> None:
        """
        Raises:
            PolicyError: Amount outside the policy range or term not allowed
        """
        if amount > policy.max_loan_amount:
            raise PolicyError(
                f"Amount {amount.to_string()} exceeds the maximum "
                f"{policy.max_loan_amount.to_string()} for level '{policy.position_level}'",
                code="ErrAmountExceedsPolicy",
                details={'max_loan_amount': str(policy.max_loan_amount.amount)}
            )
        if amount < policy.min_loan_amount:
            raise PolicyError(
                f"Amount {amount.to_string()} is below the minimum "
                f"{policy.min_loan_amount.to_string()} for level '{policy.position_level}'",
                code="ErrAmountBelowPolicy",
                details={'min_loan_amount': str(policy.min_loan_amount.amount)}
            )
        if term_months not in policy.allowed_terms_months:
            raise PolicyError(
                f"Term of {term_months} months is not allowed for level '{policy.position_level}'",
                code="ErrTermNotAllowed",
                details={'allowed_terms_months': sorted(policy.allowed_terms_months)}
            )

    @staticmethod
    def select_chain(policy: LoanPolicy, amount: Money) -> ChainKind:
        """Executive chain for executive policies or amounts at the review threshold"""
        if policy.approval_chain == ChainKind.EXECUTIVE:
            return ChainKind.EXECUTIVE
        if policy.executive_review_threshold is not None and amount >= policy.executive_review_threshold:
            return ChainKind.EXECUTIVE
        return ChainKind.STANDARD
