"""
Test suite for configuration, structured logging and per-loan locking
"""

import json
import logging
import threading
from datetime import timedelta

import pytest

from employee_loans.api.dependencies import LoanSystem
from employee_loans.config import LoanConfig, reload_config, get_config
from employee_loans.errors import ConcurrencyError
from employee_loans.locking import LoanLockRegistry
from employee_loans.logging_config import JSONFormatter, TextFormatter, setup_logging, log_action
from employee_loans.models import ReasonType
from employee_loans.storage import InMemoryStorage
from employee_loans.waiting_list import PriorityWeights


class TestLoanConfig:

    def test_defaults(self):
        config = LoanConfig()
        assert config.currency == "USD"
        assert config.staleness_window == timedelta(days=30)
        assert config.expiry_window is None
        assert config.priority_reason_weights["medical"] == 300

    def test_environment_prefix(self, monkeypatch):
        monkeypatch.setenv("LOANS_WAITING_LIST_STALENESS_DAYS", "14")
        monkeypatch.setenv("LOANS_WAITING_LIST_EXPIRY_DAYS", "90")
        monkeypatch.setenv("LOANS_LOCK_TIMEOUT_SECONDS", "2.5")

        config = reload_config()
        try:
            assert get_config() is config
            assert config.staleness_window == timedelta(days=14)
            assert config.expiry_window == timedelta(days=90)
            assert config.lock_timeout_seconds == 2.5
        finally:
            monkeypatch.undo()
            reload_config()

    def test_priority_weights_from_config(self):
        config = LoanConfig(priority_reason_weights={"general": 7}, priority_amount_points=0)
        weights = PriorityWeights.from_config(config)
        assert weights.reason_weight(ReasonType.GENERAL) == 7
        assert weights.reason_weight(ReasonType.MEDICAL) == config.priority_default_reason_weight
        assert weights.amount_points == 0

    def test_audit_can_be_disabled(self):
        system = LoanSystem(
            config=LoanConfig(database_url="memory://", enable_audit_logging=False),
            storage=InMemoryStorage(),
        )
        assert system.audit_trail is None
        assert system.policy_resolver.resolve("mid") is not None

    def test_seeding_can_be_disabled(self):
        system = LoanSystem(
            config=LoanConfig(database_url="memory://", seed_default_policies=False),
            storage=InMemoryStorage(),
        )
        assert system.policy_resolver.list_policies() == []


class TestLogging:
    """Test structured log output"""

    def _record(self, **attrs):
        record = logging.LogRecord("employee_loans.workflow", logging.WARNING, __file__, 1,
                                   "decide_loan failed", (), None)
        for key, value in attrs.items():
            setattr(record, key, value)
        return record

    def test_json_formatter_drops_empty_fields(self):
        entry = json.loads(JSONFormatter().format(self._record(user_id="hr-1")))
        assert entry["level"] == "WARNING"
        assert entry["message"] == "decide_loan failed"
        assert entry["user_id"] == "hr-1"
        assert "correlation_id" not in entry

    def test_log_action_attaches_context(self):
        logger = setup_logging("DEBUG", logger_name="employee_loans.test_config")
        captured = []

        class Capture(logging.Handler):
            def emit(self, record):
                captured.append(record)

        logger.addHandler(Capture())
        log_action(logger, "info", "Loan disbursed", user_id="vp-1", action="disburse_loan",
                   resource="loan:1", extra={"entries": 6})

        assert len(captured) == 1
        assert captured[0].action == "disburse_loan"
        assert captured[0].extra == {"entries": 6}

    def test_log_action_respects_level(self):
        logger = setup_logging("ERROR", logger_name="employee_loans.test_config_quiet")
        captured = []

        class Capture(logging.Handler):
            def emit(self, record):
                captured.append(record)

        logger.addHandler(Capture())
        log_action(logger, "info", "ignored")
        assert captured == []

    def test_loan_resource_sets_loan_id(self):
        logger = setup_logging("DEBUG", logger_name="employee_loans.test_config_loans")
        captured = []

        class Capture(logging.Handler):
            def emit(self, record):
                captured.append(record)

        logger.addHandler(Capture())
        log_action(logger, "info", "Loan submitted", action="submit_loan", resource="loan:abc")
        log_action(logger, "info", "Entry reconfirmed", resource="waiting_entry:w-1", loan_id="abc")
        log_action(logger, "info", "Policy saved", resource="policy:mid")

        assert [getattr(r, 'loan_id', None) for r in captured] == ["abc", "abc", None]
        entry = json.loads(JSONFormatter().format(captured[1]))
        assert entry["loan_id"] == "abc"
        assert entry["resource"] == "waiting_entry:w-1"

    def test_text_formatter_tags_loan(self):
        line = TextFormatter().format(self._record(loan_id="abc"))
        assert line.endswith("decide_loan failed [loan=abc]")
        assert "[loan=" not in TextFormatter().format(self._record())


class TestLoanLockRegistry:

    def test_lock_released_after_block(self):
        registry = LoanLockRegistry(timeout_seconds=0.05)
        with registry.acquire("loan-1"):
            assert registry.is_locked("loan-1")
        assert not registry.is_locked("loan-1")

    def test_timeout_raises_retryable_error(self):
        registry = LoanLockRegistry(timeout_seconds=0.05)
        held = threading.Event()
        release = threading.Event()

        def holder():
            with registry.acquire("loan-1"):
                held.set()
                release.wait(2)

        thread = threading.Thread(target=holder)
        thread.start()
        held.wait(2)
        try:
            with pytest.raises(ConcurrencyError) as exc_info:
                with registry.acquire("loan-1"):
                    pass
            assert exc_info.value.code == "ErrLockUnavailable"
        finally:
            release.set()
            thread.join()

    def test_locks_are_per_loan(self):
        registry = LoanLockRegistry(timeout_seconds=0.05)
        with registry.acquire("loan-1"):
            with registry.acquire("loan-2"):
                assert registry.is_locked("loan-2")

    def test_registry_forgets_released_locks(self):
        registry = LoanLockRegistry(timeout_seconds=0.05)
        for n in range(100):
            with registry.acquire(f"loan-{n}"):
                assert registry.active_count() == 1
        assert registry.active_count() == 0
        assert not registry.is_locked("loan-1")

    def test_timed_out_waiter_does_not_leave_lock_behind(self):
        registry = LoanLockRegistry(timeout_seconds=0.05)
        held = threading.Event()
        release = threading.Event()

        def holder():
            with registry.acquire("loan-1"):
                held.set()
                release.wait(2)

        thread = threading.Thread(target=holder)
        thread.start()
        held.wait(2)
        try:
            with pytest.raises(ConcurrencyError):
                with registry.acquire("loan-1"):
                    pass
            assert registry.active_count() == 1
        finally:
            release.set()
            thread.join()
        assert registry.active_count() == 0
