"""
Service wiring and request dependencies
"""

from datetime import datetime
from typing import Callable, Iterable, Optional

from fastapi import Depends, Header, HTTPException

from ..audit import AuditTrail
from ..budget import BudgetTracker
from ..collaborators import (
    Actor, IdentityProvider, EmployeeDirectory, InMemoryEmployeeDirectory,
    PayrollDeductionSink, InMemoryPayrollSink
)
from ..config import LoanConfig, get_config
from ..currency import Currency
from ..errors import TransitionError
from ..locking import LoanLockRegistry
from ..models import Role
from ..policy import PolicyResolver
from ..repository import LoanRepository
from ..storage import StorageInterface, create_storage
from ..waiting_list import PriorityWeights, WaitingListPrioritizer
from ..workflow import LoanWorkflowService


class LoanSystem:
    """Employee loan system with all components initialized"""

    def __init__(
        self,
        config: Optional[LoanConfig] = None,
        storage: Optional[StorageInterface] = None,
        directory: Optional[EmployeeDirectory] = None,
        payroll_sink: Optional[PayrollDeductionSink] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.config = config or get_config()
        self.currency = Currency[self.config.currency]

        # Initialize storage
        self.storage = storage or create_storage(self.config.database_url)
        self.audit_trail = AuditTrail(self.storage) if self.config.enable_audit_logging else None

        # Initialize components
        self.policy_resolver = PolicyResolver(self.storage, self.audit_trail)
        if self.config.seed_default_policies:
            self.policy_resolver.seed_defaults(self.currency)

        self.directory = directory or InMemoryEmployeeDirectory()
        self.payroll_sink = payroll_sink or InMemoryPayrollSink()
        self.budget_tracker = BudgetTracker(self.storage, self.audit_trail)
        self.repository = LoanRepository(self.storage)
        self.prioritizer = WaitingListPrioritizer(
            weights=PriorityWeights.from_config(self.config),
            staleness_window=self.config.staleness_window,
            expiry_window=self.config.expiry_window,
        )

        self.service = LoanWorkflowService(
            repository=self.repository,
            policy_resolver=self.policy_resolver,
            directory=self.directory,
            audit_trail=self.audit_trail,
            payroll_sink=self.payroll_sink,
            budget_tracker=self.budget_tracker,
            prioritizer=self.prioritizer,
            lock_registry=LoanLockRegistry(self.config.lock_timeout_seconds),
            clock=clock,
            currency=self.currency,
        )


_loan_system: Optional[LoanSystem] = None


def get_loan_system() -> LoanSystem:
    """Dependency returning the process-wide system, built on first use"""
    global _loan_system
    if _loan_system is None:
        _loan_system = LoanSystem()
    return _loan_system


class HeaderIdentityProvider(IdentityProvider):
    """Identity asserted by the upstream gateway in X-Actor-* headers"""

    def __init__(self, actor_id: str, role: str):
        self.actor_id = actor_id.strip()
        self.role = role.strip().lower()

    def current_actor(self) -> Actor:
        if not self.actor_id:
            raise HTTPException(status_code=401, detail="Missing actor id")
        try:
            return Actor(self.actor_id, Role(self.role))
        except ValueError:
            raise HTTPException(status_code=403, detail=f"Unknown role '{self.role}'")


def get_identity_provider(
    x_actor_id: str = Header(...),
    x_actor_role: str = Header(...)
) -> IdentityProvider:
    return HeaderIdentityProvider(x_actor_id, x_actor_role)


def get_current_actor(identity: IdentityProvider = Depends(get_identity_provider)) -> Actor:
    return identity.current_actor()


def require_role(actor: Actor, roles: Iterable[Role]) -> None:
    """Raise ErrUnauthorized unless the actor holds one of the roles"""
    allowed = frozenset(roles)
    if actor.role not in allowed:
        raise TransitionError(
            f"Role '{actor.role.value}' is not allowed to perform this action",
            code="ErrUnauthorized",
            details={'required_roles': sorted(r.value for r in allowed)}
        )
