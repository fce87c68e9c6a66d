"""
Error Taxonomy Module

Typed loan workflow errors with stable codes, and the WorkflowResult wrapper
returned across the service boundary so callers can render precise messages
without catching exceptions.
"""

from dataclasses import dataclass
from typing import Any, Dict, Generic, Optional, TypeVar


class LoanError(Exception):
    """Base exception for all loan workflow errors"""

    category = "loan_error"
    default_code = "ErrLoan"

    def __init__(self, message: str, code: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'code': self.code,
            'category': self.category,
            'message': self.message,
        }
        if self.details:
            result['details'] = self.details
        return result


class ValidationError(LoanError, ValueError):
    """Bad input shape: amount, term, consent, signature, payload"""
    category = "validation"
    default_code = "ErrValidationFailed"


class PolicyError(LoanError):
    """No policy for the position level, or request outside policy"""
    category = "policy"
    default_code = "ErrPolicyViolation"


class TransitionError(LoanError):
    """Wrong role, wrong current state or self-approval"""
    category = "transition"
    default_code = "ErrInvalidTransition"


class ConcurrencyError(LoanError):
    """Lock or version conflict; the only kind callers should retry"""
    category = "concurrency"
    default_code = "ErrVersionConflict"


class NotFoundError(LoanError):
    """Unknown id"""
    category = "not_found"
    default_code = "ErrNotFound"


T = TypeVar('T')


@dataclass
class WorkflowResult(Generic[T]):
    """Outcome of a service operation: either a value or a LoanError"""
    value: Optional[T] = None
    error: Optional[LoanError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def retryable(self) -> bool:
        return isinstance(self.error, ConcurrencyError)

    @property
    def code(self) -> Optional[str]:
        return self.error.code if self.error else None

    def unwrap(self) -> T:
        """Return the value or raise the carried error"""
        if self.error is not None:
            raise self.error
        return self.value

    @classmethod
    def success(cls, value: T) -> 'WorkflowResult[T]':
        return cls(value=value)

    @classmethod
    def failure(cls, error: LoanError) -> 'WorkflowResult[T]':
        return cls(error=error)
