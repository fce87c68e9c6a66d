"""
Waiting List Module

Priority scoring for deferred loan requests. The score combines a reason
weight, a small bonus for smaller requests and a per-day age bonus; entries
left in the queue past the staleness window must be reconfirmed by the
employee before HR can promote them.
"""

from decimal import Decimal, ROUND_HALF_UP
from datetime import datetime, timedelta
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Optional
import uuid

from .models import LoanRequest, ReasonType, WaitingListEntry, WaitingStatus


@dataclass(frozen=True)
class PriorityWeights:
    """Tunable weights for the waiting-list score"""
    reason_weights: Dict[str, int] = field(default_factory=lambda: {
        ReasonType.MEDICAL.value: 300,
        ReasonType.EMERGENCY.value: 300,
        ReasonType.URGENT.value: 200,
        ReasonType.GENERAL.value: 100,
    })
    default_reason_weight: int = 50
    amount_points: int = 50
    age_points_per_day: int = 1

    @classmethod
    def from_config(cls, config) -> 'PriorityWeights':
        return cls(
            reason_weights=dict(config.priority_reason_weights),
            default_reason_weight=config.priority_default_reason_weight,
            amount_points=config.priority_amount_points,
            age_points_per_day=config.priority_age_points_per_day,
        )

    def reason_weight(self, reason_type: ReasonType) -> int:
        return self.reason_weights.get(reason_type.value, self.default_reason_weight)


class WaitingListPrioritizer:
    """Creates, scores and orders waiting-list entries"""

    def __init__(self, weights: Optional[PriorityWeights] = None,
                 staleness_window: timedelta = timedelta(days=30),
                 expiry_window: Optional[timedelta] = None):
        self.weights = weights or PriorityWeights()
        self.staleness_window = staleness_window
        self.expiry_window = expiry_window

    def amount_component(self, request: LoanRequest) -> int:
        """Up to amount_points for requests well under the employee's ceiling"""
        points = self.weights.amount_points
        ceiling = request.max_eligible_amount.amount
        if ceiling <= 0:
            return 0
        ratio = request.amount.amount / ceiling
        value = (Decimal(points) * (Decimal('1') - ratio)).quantize(Decimal('1'), rounding=ROUND_HALF_UP)
        return max(0, min(points, int(value)))

    def age_component(self, entry: WaitingListEntry, now: datetime) -> int:
        days = (now - entry.queued_since).days
        return max(0, days) * self.weights.age_points_per_day

    def score(self, entry: WaitingListEntry, now: datetime) -> int:
        return entry.reason_component + entry.amount_component + self.age_component(entry, now)

    def create_entry(self, request: LoanRequest, now: datetime) -> WaitingListEntry:
        """New active entry for a request that was just deferred"""
        reason = self.weights.reason_weight(request.reason_type)
        amount = self.amount_component(request)
        return WaitingListEntry(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_request_id=request.id,
            employee_id=request.employee_id,
            reason_type=request.reason_type,
            priority_score=reason + amount,
            reason_component=reason,
            amount_component=amount,
            status=WaitingStatus.WAITING,
            reconfirm_required=False,
            submitted_at=request.submitted_at,
            queued_since=now,
            deferred_at=now,
        )

    def is_stale(self, entry: WaitingListEntry, now: datetime) -> bool:
        return now - entry.queued_since > self.staleness_window

    def refresh(self, entry: WaitingListEntry, now: datetime) -> WaitingListEntry:
        """
        Recompute the score and apply staleness and expiry.

        Only active entries change. Staleness is sticky: once set, only
        reconfirm() clears it.
        """
        if not entry.is_active:
            return entry

        if self.expiry_window is not None and now - entry.deferred_at > self.expiry_window:
            return replace(entry, status=WaitingStatus.EXPIRED, expired_at=now, updated_at=now)

        return replace(
            entry,
            priority_score=self.score(entry, now),
            reconfirm_required=entry.reconfirm_required or self.is_stale(entry, now),
        )

    def reconfirm(self, entry: WaitingListEntry, now: datetime) -> WaitingListEntry:
        """Restart the queue-age clock; reason and amount components are kept"""
        reconfirmed = replace(
            entry,
            reconfirm_required=False,
            queued_since=now,
            reconfirmed_at=now,
            updated_at=now,
        )
        return replace(reconfirmed, priority_score=self.score(reconfirmed, now))

    @staticmethod
    def ordered(entries: Iterable[WaitingListEntry]) -> List[WaitingListEntry]:
        """Highest score first; ties go to the earliest submission"""
        return sorted(entries, key=lambda e: (-e.priority_score, e.submitted_at))
