"""
Loan Records Module

Vocabulary enums and the persisted records of the loan lifecycle: the
LoanRequest aggregate, append-only ApprovalRecords, RepaymentEntries and
WaitingListEntries.
"""

from decimal import Decimal
from datetime import datetime, date
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional
from enum import Enum

from .currency import Money
from .storage import StorageRecord


class LoanStatus(Enum):
    """Loan request lifecycle states"""
    DRAFT = "draft"
    SUBMITTED = "submitted"
    HR_REVIEW = "hr_review"
    MANAGER_REVIEW = "manager_review"
    VP_REVIEW = "vp_review"
    CEO_REVIEW = "ceo_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    DEFERRED = "deferred"
    DISBURSED = "disbursed"
    REPAYING = "repaying"
    CLOSED = "closed"

    @property
    def is_terminal(self) -> bool:
        return self in (LoanStatus.REJECTED, LoanStatus.CLOSED)


class Role(Enum):
    """Actor roles supplied by the identity provider"""
    EMPLOYEE = "employee"
    HR = "hr"
    MANAGER = "manager"
    VP = "vp"
    CEO = "ceo"
    ADMIN = "admin"


class Decision(Enum):
    """Reviewer decisions"""
    APPROVED = "approved"
    REJECTED = "rejected"
    DEFERRED = "deferred"


class ReasonType(Enum):
    """Why the employee is borrowing"""
    MEDICAL = "medical"
    EMERGENCY = "emergency"
    URGENT = "urgent"
    GENERAL = "general"


class ChainKind(Enum):
    """Approval chain selected at submission"""
    STANDARD = "standard"    # hr -> manager -> vp
    EXECUTIVE = "executive"  # hr -> ceo


class RepaymentStatus(Enum):
    PENDING = "pending"
    DEDUCTED = "deducted"
    MISSED = "missed"


class WaitingStatus(Enum):
    WAITING = "waiting"
    PROMOTED = "promoted"
    EXPIRED = "expired"


def _encode(value: Any) -> Any:
    if isinstance(value, Money):
        return value.to_dict()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, dict):
        return {k: _encode(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_encode(v) for v in value]
    return value


class RecordCodec:
    """
    Dict conversion for records holding Money, enums, dates and Decimals.

    Subclasses list which fields need decoding; everything else passes
    through as stored.
    """
    money_fields: tuple = ()
    enum_fields: Dict[str, type] = {}
    date_fields: tuple = ()
    datetime_fields: tuple = ('created_at', 'updated_at')
    decimal_fields: tuple = ()

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: _encode(getattr(self, f.name)) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        data = dict(data)
        for name in cls.money_fields:
            if data.get(name) is not None:
                data[name] = Money.from_dict(data[name])
        for name, enum_type in cls.enum_fields.items():
            if data.get(name) is not None:
                data[name] = enum_type(data[name])
        for name in cls.date_fields:
            if data.get(name):
                data[name] = date.fromisoformat(data[name])
        for name in cls.datetime_fields:
            if data.get(name):
                data[name] = datetime.fromisoformat(data[name])
        for name in cls.decimal_fields:
            if data.get(name) is not None:
                data[name] = Decimal(data[name])
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class LoanRequest(RecordCodec, StorageRecord):
    """
    Loan request aggregate root.

    Policy constraints are snapshotted at submission so later policy edits
    cannot alter an in-flight or historical request.
    """
    employee_id: str
    amount: Money
    term_months: int
    reason_type: ReasonType
    reason_details: str
    auto_deduction_consent: bool
    e_signature: str
    status: LoanStatus
    submitted_at: datetime
    position_level_snapshot: str
    prior_outstanding_amount: Money
    max_eligible_amount: Money
    allowed_terms_snapshot: List[int]
    annual_interest_rate_percent: Decimal
    policy_revision: int
    approval_chain: ChainKind
    estimated_monthly_installment: Money
    signed_at: Optional[datetime] = None
    finalized_installment: Optional[Money] = None
    planned_disbursement_date: Optional[date] = None
    auto_payroll_deduction: bool = True
    disbursement_date: Optional[date] = None
    closed_at: Optional[datetime] = None
    version: int = 0

    money_fields = ('amount', 'prior_outstanding_amount', 'max_eligible_amount',
                    'estimated_monthly_installment', 'finalized_installment')
    enum_fields = {'reason_type': ReasonType, 'status': LoanStatus, 'approval_chain': ChainKind}
    date_fields = ('planned_disbursement_date', 'disbursement_date')
    datetime_fields = ('created_at', 'updated_at', 'submitted_at', 'signed_at', 'closed_at')
    decimal_fields = ('annual_interest_rate_percent',)


@dataclass
class ApprovalRecord(RecordCodec, StorageRecord):
    """One decision event; append-only"""
    loan_request_id: str
    approval_step: LoanStatus
    decision: Decision
    actor_id: str
    actor_role: Role
    notes: str
    decided_at: datetime
    details: Dict[str, Any] = field(default_factory=dict)

    enum_fields = {'approval_step': LoanStatus, 'decision': Decision, 'actor_role': Role}
    datetime_fields = ('created_at', 'updated_at', 'decided_at')


@dataclass
class RepaymentEntry(RecordCodec, StorageRecord):
    """One amortization period of a disbursed loan"""
    loan_request_id: str
    employee_id: str
    month_number: int
    due_date: date
    principal_amount: Money
    interest_amount: Money
    total_amount: Money
    remaining_balance: Money
    status: RepaymentStatus = RepaymentStatus.PENDING
    deducted_at: Optional[datetime] = None
    outcome_recorded_at: Optional[datetime] = None
    version: int = 0

    money_fields = ('principal_amount', 'interest_amount', 'total_amount', 'remaining_balance')
    enum_fields = {'status': RepaymentStatus}
    date_fields = ('due_date',)
    datetime_fields = ('created_at', 'updated_at', 'deducted_at', 'outcome_recorded_at')


@dataclass
class WaitingListEntry(RecordCodec, StorageRecord):
    """A deferred request waiting for disbursement capacity"""
    loan_request_id: str
    employee_id: str
    reason_type: ReasonType
    priority_score: int
    reason_component: int
    amount_component: int
    status: WaitingStatus
    reconfirm_required: bool
    submitted_at: datetime
    queued_since: datetime
    deferred_at: datetime
    reconfirmed_at: Optional[datetime] = None
    promoted_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None
    version: int = 0

    enum_fields = {'reason_type': ReasonType, 'status': WaitingStatus}
    datetime_fields = ('created_at', 'updated_at', 'submitted_at', 'queued_since',
                       'deferred_at', 'reconfirmed_at', 'promoted_at', 'expired_at')

    @property
    def is_active(self) -> bool:
        return self.status == WaitingStatus.WAITING
