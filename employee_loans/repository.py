"""
Loan Repository Module

Typed persistence for loan records on top of a StorageInterface. Versioned
records go through optimistic version checks; approval records are insert
only. Nothing is ever deleted.
"""

from dataclasses import replace
from typing import List, Optional, TypeVar

from .models import (
    LoanRequest, ApprovalRecord, RepaymentEntry, WaitingListEntry,
    LoanStatus, WaitingStatus
)
from .storage import StorageInterface


R = TypeVar('R', LoanRequest, RepaymentEntry, WaitingListEntry)


class LoanRepository:
    """Create, read and version-checked update of loan records"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.requests_table = "loan_requests"
        self.approvals_table = "approval_records"
        self.repayments_table = "repayment_entries"
        self.waiting_table = "waiting_list_entries"

    def _save_versioned(self, table: str, record: R) -> R:
        """
        Persist the record if nobody wrote it since it was read.

        Returns the stored copy with its version bumped.

        Raises:
            VersionConflictError: Stored version differs from record.version
        """
        expected = record.version
        stored = replace(record, version=expected + 1)
        self.storage.save_versioned(table, stored.id, stored.to_dict(), expected)
        return stored

    # Loan requests

    def get_request(self, loan_id: str) -> Optional[LoanRequest]:
        data = self.storage.load(self.requests_table, loan_id)
        return LoanRequest.from_dict(data) if data else None

    def save_request(self, request: LoanRequest) -> LoanRequest:
        return self._save_versioned(self.requests_table, request)

    def find_requests(self, status: Optional[LoanStatus] = None,
                      employee_id: Optional[str] = None) -> List[LoanRequest]:
        filters = {}
        if status is not None:
            filters['status'] = status.value
        if employee_id is not None:
            filters['employee_id'] = employee_id
        requests = [LoanRequest.from_dict(d) for d in self.storage.find(self.requests_table, filters)]
        return sorted(requests, key=lambda r: r.submitted_at)

    # Approval records

    def append_approval(self, record: ApprovalRecord) -> ApprovalRecord:
        self.storage.insert(self.approvals_table, record.id, record.to_dict())
        return record

    def approvals_for(self, loan_id: str) -> List[ApprovalRecord]:
        records = [
            ApprovalRecord.from_dict(d)
            for d in self.storage.find(self.approvals_table, {'loan_request_id': loan_id})
        ]
        return sorted(records, key=lambda r: r.decided_at)

    # Repayment entries

    def save_repayment_entry(self, entry: RepaymentEntry) -> RepaymentEntry:
        return self._save_versioned(self.repayments_table, entry)

    def get_repayment_entry(self, entry_id: str) -> Optional[RepaymentEntry]:
        data = self.storage.load(self.repayments_table, entry_id)
        return RepaymentEntry.from_dict(data) if data else None

    def repayment_entries_for(self, loan_id: str) -> List[RepaymentEntry]:
        entries = [
            RepaymentEntry.from_dict(d)
            for d in self.storage.find(self.repayments_table, {'loan_request_id': loan_id})
        ]
        return sorted(entries, key=lambda e: e.month_number)

    # Waiting list

    def save_waiting_entry(self, entry: WaitingListEntry) -> WaitingListEntry:
        return self._save_versioned(self.waiting_table, entry)

    def get_waiting_entry(self, entry_id: str) -> Optional[WaitingListEntry]:
        data = self.storage.load(self.waiting_table, entry_id)
        return WaitingListEntry.from_dict(data) if data else None

    def waiting_entries(self, status: Optional[WaitingStatus] = WaitingStatus.WAITING) -> List[WaitingListEntry]:
        filters = {'status': status.value} if status is not None else {}
        return [WaitingListEntry.from_dict(d) for d in self.storage.find(self.waiting_table, filters)]

    def active_waiting_entry_for(self, loan_id: str) -> Optional[WaitingListEntry]:
        matches = self.storage.find(self.waiting_table, {
            'loan_request_id': loan_id,
            'status': WaitingStatus.WAITING.value,
        })
        return WaitingListEntry.from_dict(matches[0]) if matches else None
