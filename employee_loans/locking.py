"""
Per-Loan Locking Module

Serializes mutations of a single loan request. Waits are bounded; a caller
that cannot get the lock in time gets a retryable ConcurrencyError instead
of queueing.
"""

from contextlib import contextmanager
from typing import Dict
import threading

from .errors import ConcurrencyError


class _LoanLock:
    """Exclusive lock plus the number of callers holding or waiting on it"""

    __slots__ = ('lock', 'users')

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


class LoanLockRegistry:
    """
    One exclusive lock per loan id.

    A loan's lock exists only while some caller holds or waits on it, so the
    registry stays as large as the number of loans currently in flight.
    """

    def __init__(self, timeout_seconds: float = 0.5):
        self.timeout_seconds = timeout_seconds
        self._locks: Dict[str, _LoanLock] = {}
        self._registry_lock = threading.Lock()

    def _checkout(self, loan_id: str) -> _LoanLock:
        with self._registry_lock:
            entry = self._locks.get(loan_id)
            if entry is None:
                entry = _LoanLock()
                self._locks[loan_id] = entry
            entry.users += 1
            return entry

    def _checkin(self, loan_id: str, entry: _LoanLock) -> None:
        with self._registry_lock:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[loan_id]

    @contextmanager
    def acquire(self, loan_id: str):
        """
        Hold the loan's lock for the duration of the block.

        Raises:
            ConcurrencyError: Lock not obtained within timeout_seconds
        """
        entry = self._checkout(loan_id)
        try:
            if not entry.lock.acquire(timeout=self.timeout_seconds):
                raise ConcurrencyError(
                    f"Loan {loan_id} is being modified by another request",
                    code="ErrLockUnavailable",
                    details={'loan_id': loan_id}
                )
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            self._checkin(loan_id, entry)

    def is_locked(self, loan_id: str) -> bool:
        with self._registry_lock:
            entry = self._locks.get(loan_id)
            return entry is not None and entry.lock.locked()

    def active_count(self) -> int:
        """Loans with a caller currently holding or waiting on their lock"""
        with self._registry_lock:
            return len(self._locks)
