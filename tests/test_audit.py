"""
Test suite for audit module

Tests hash-chained audit trail, tamper detection and integrity verification.
"""

import pytest
from datetime import date, datetime, timezone
from decimal import Decimal

from core_lending.storage import InMemoryStorage
from core_lending.audit import AuditTrail, AuditEvent, AuditEventType


class TestAuditEvent:
    """Test AuditEvent functionality"""

    def test_metadata_serialization(self):
        now = datetime.now(timezone.utc)
        event = AuditEvent(
            id="AUDIT001",
            created_at=now,
            updated_at=now,
            sequence=1,
            event_type=AuditEventType.LOAN_REPAYMENT,
            entity_type="loan",
            entity_id="L1",
            previous_hash="",
            current_hash="",
            metadata={
                "amount": Decimal('8884.88'),
                "payment_date": date(2024, 2, 29),
                "event": AuditEventType.LOAN_CLOSED,
                "nested": {"outstanding": Decimal('0.00')}
            }
        )

        assert event.metadata == {
            "amount": "8884.88",
            "payment_date": "2024-02-29",
            "event": "loan_closed",
            "nested": {"outstanding": "0.00"}
        }

    def test_hash_is_deterministic(self):
        now = datetime.now(timezone.utc)
        kwargs = dict(
            id="AUDIT001", created_at=now, updated_at=now, sequence=1,
            event_type=AuditEventType.LOAN_APPLIED, entity_type="loan", entity_id="L1",
            previous_hash="", current_hash="", metadata={"principal": "100000.00"}
        )
        first = AuditEvent(**kwargs)
        second = AuditEvent(**kwargs)

        assert first.calculate_hash() == second.calculate_hash()
        assert len(first.calculate_hash()) == 64

        second.metadata["principal"] = "100000.01"
        assert first.calculate_hash() != second.calculate_hash()


class TestAuditTrail:
    """Test hash-chained trail"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)

    def _log_three(self):
        self.audit_trail.log_event(AuditEventType.LOAN_APPLIED, "loan", "L1", {"principal": "100000.00"}, "officer")
        self.audit_trail.log_event(AuditEventType.LOAN_APPROVED, "loan", "L1", {"approved_amount": "100000.00"}, "manager")
        self.audit_trail.log_event(AuditEventType.LOAN_APPLIED, "loan", "L2", None, "officer")

    def test_events_are_chained(self):
        self._log_three()
        events = self.audit_trail.get_all_events()

        assert [e.sequence for e in events] == [1, 2, 3]
        assert events[0].previous_hash == ""
        assert events[1].previous_hash == events[0].current_hash
        assert events[2].previous_hash == events[1].current_hash
        assert all(e.verify_hash() for e in events)

    def test_queries(self):
        self._log_three()

        assert self.audit_trail.count_events() == 3
        assert [e.event_type for e in self.audit_trail.get_events_for_entity("loan", "L1")] == [
            AuditEventType.LOAN_APPLIED, AuditEventType.LOAN_APPROVED
        ]
        assert [e.entity_id for e in self.audit_trail.get_events_by_type(AuditEventType.LOAN_APPLIED)] == ["L1", "L2"]

    def test_clean_chain_verifies(self):
        self._log_three()
        result = self.audit_trail.verify_integrity()

        assert result['valid']
        assert result['total_events'] == 3
        assert result['hash_errors'] == []
        assert result['chain_breaks'] == []

    def test_tampered_metadata_is_detected(self):
        self._log_three()
        second = self.audit_trail.get_all_events()[1]

        record = self.storage.load("audit_events", second.id)
        record['metadata']['approved_amount'] = "999999.00"
        self.storage.save("audit_events", second.id, record)

        result = self.audit_trail.verify_integrity()
        assert not result['valid']
        assert [e['event_id'] for e in result['hash_errors']] == [second.id]

    def test_deleted_event_breaks_chain(self):
        self._log_three()
        second = self.audit_trail.get_all_events()[1]
        self.storage.delete("audit_events", second.id)

        result = self.audit_trail.verify_integrity()
        assert not result['valid']
        assert len(result['chain_breaks']) == 1

    def test_disabled_trail_records_nothing(self):
        trail = AuditTrail(self.storage, enabled=False)

        assert trail.log_event(AuditEventType.LOAN_APPLIED, "loan", "L1") is None
        assert trail.count_events() == 0
