"""
Test suite for audit module

Tests hash chaining, tamper detection and per-entity queries.
"""

import pytest
import threading
from datetime import datetime, timezone
from decimal import Decimal

from employee_loans.storage import InMemoryStorage
from employee_loans.audit import AuditTrail, AuditEvent, AuditEventType


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def audit_trail(storage):
    return AuditTrail(storage)


class TestAuditEvent:
    """Test audit event hashing"""

    def test_metadata_serialized(self):
        now = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
        event = AuditEvent(
            id="E1", created_at=now, updated_at=now,
            event_type=AuditEventType.LOAN_SUBMITTED,
            entity_type="loan_request", entity_id="L1",
            previous_hash="", current_hash="",
            metadata={"amount": Decimal("1500.00"), "at": now, "kind": AuditEventType.LOAN_CLOSED}
        )

        assert event.metadata == {
            "amount": "1500.00",
            "at": now.isoformat(),
            "kind": "loan_closed",
        }

    def test_hash_covers_metadata(self):
        now = datetime.now(timezone.utc)
        event = AuditEvent(
            id="E1", created_at=now, updated_at=now,
            event_type=AuditEventType.LOAN_DECIDED,
            entity_type="loan_request", entity_id="L1",
            previous_hash="", current_hash="",
            metadata={"decision": "approved"}
        )
        event.current_hash = event.calculate_hash()
        assert event.verify_hash()

        event.metadata["decision"] = "rejected"
        assert not event.verify_hash()


class TestAuditTrail:
    """Test the hash-chained trail"""

    def test_events_chain(self, audit_trail):
        first = audit_trail.log_event(AuditEventType.LOAN_SUBMITTED, "loan_request", "L1", {}, "emp-1")
        second = audit_trail.log_event(AuditEventType.LOAN_DECIDED, "loan_request", "L1", {}, "hr-1")

        assert first.previous_hash == ""
        assert second.previous_hash == first.current_hash

    def test_events_for_entity_in_order(self, audit_trail):
        audit_trail.log_event(AuditEventType.LOAN_SUBMITTED, "loan_request", "L1")
        audit_trail.log_event(AuditEventType.LOAN_SUBMITTED, "loan_request", "L2")
        audit_trail.log_event(AuditEventType.LOAN_APPROVED, "loan_request", "L1")

        events = audit_trail.get_events_for_entity("loan_request", "L1")
        assert [e.event_type for e in events] == [
            AuditEventType.LOAN_SUBMITTED, AuditEventType.LOAN_APPROVED
        ]
        assert len(audit_trail.get_events_by_type(AuditEventType.LOAN_SUBMITTED)) == 2

    def test_verify_integrity_valid_chain(self, audit_trail):
        for i in range(5):
            audit_trail.log_event(AuditEventType.REPAYMENT_DEDUCTED, "repayment_entry", f"R{i}")

        result = audit_trail.verify_integrity()
        assert result["valid"]
        assert result["total_events"] == 5

    def test_verify_integrity_detects_tampering(self, audit_trail, storage):
        event = audit_trail.log_event(AuditEventType.LOAN_DISBURSED, "loan_request", "L1",
                                      {"amount": "USD 1,500.00"})
        audit_trail.log_event(AuditEventType.LOAN_CLOSED, "loan_request", "L1")

        data = storage.load(audit_trail.table_name, event.id)
        data["metadata"]["amount"] = "USD 15,000.00"
        storage.save(audit_trail.table_name, event.id, data)

        result = audit_trail.verify_integrity()
        assert not result["valid"]
        assert result["hash_errors"][0]["event_id"] == event.id

    def test_rolled_back_events_leave_chain_intact(self, audit_trail, storage):
        audit_trail.log_event(AuditEventType.LOAN_SUBMITTED, "loan_request", "L1")

        with pytest.raises(RuntimeError):
            with storage.atomic():
                audit_trail.log_event(AuditEventType.LOAN_APPROVED, "loan_request", "L1")
                raise RuntimeError("decision failed")

        audit_trail.log_event(AuditEventType.LOAN_REJECTED, "loan_request", "L1")

        result = audit_trail.verify_integrity()
        assert result["valid"]
        assert result["total_events"] == 2

    def test_concurrent_logging_keeps_chain(self, audit_trail):
        def worker(n):
            for i in range(10):
                audit_trail.log_event(AuditEventType.REPAYMENT_DEDUCTED, "repayment_entry", f"{n}-{i}")

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        result = audit_trail.verify_integrity()
        assert result["valid"]
        assert result["total_events"] == 40
