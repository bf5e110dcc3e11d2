"""
Test suite for audit module

Tests the hash-chained audit trail, tamper detection and integrity
verification over payment lifecycle events.
"""

import pytest
from datetime import datetime, timezone
from decimal import Decimal

from core_lending.storage import InMemoryStorage, SQLiteStorage
from core_lending.audit import AuditTrail, AuditEvent, AuditEventType


class TestAuditEvent:
    """Test AuditEvent functionality"""

    def _event(self, **overrides):
        now = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
        params = dict(
            id="AUDIT001",
            created_at=now,
            updated_at=now,
            event_type=AuditEventType.TRANSACTION_STATUS_CHANGED,
            entity_type="transaction",
            entity_id="TXN001",
            previous_hash="",
            current_hash="",
            metadata={"from": "initiated", "to": "authorized"}
        )
        params.update(overrides)
        return AuditEvent(**params)

    def test_metadata_serialization(self):
        """Decimals, datetimes and enums are stored as plain values"""
        now = datetime.now(timezone.utc)
        event = self._event(metadata={
            "amount": Decimal('250.00'),
            "at": now,
            "type": AuditEventType.LOAN_ACTIVATED,
            "nested": {"balance": Decimal('1.10')},
            "slots": (1, Decimal('2.5'))
        })

        assert event.metadata["amount"] == "250.00"
        assert event.metadata["at"] == now.isoformat()
        assert event.metadata["type"] == "loan_activated"
        assert event.metadata["nested"] == {"balance": "1.10"}
        assert event.metadata["slots"] == [1, "2.5"]

    def test_hash_is_deterministic(self):
        first = self._event()
        second = self._event()
        assert first.calculate_hash() == second.calculate_hash()
        assert len(first.calculate_hash()) == 64

    def test_hash_covers_content(self):
        base = self._event().calculate_hash()
        assert self._event(entity_id="TXN002").calculate_hash() != base
        assert self._event(metadata={"to": "failed"}).calculate_hash() != base
        assert self._event(previous_hash="abc").calculate_hash() != base

    def test_verify_hash(self):
        event = self._event()
        event.current_hash = event.calculate_hash()
        assert event.verify_hash()

        event.metadata["to"] = "completed"
        assert not event.verify_hash()


class TestAuditTrail:
    """Test AuditTrail chaining and verification"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit = AuditTrail(self.storage)

    def _log(self, entity_id="TXN001", event_type=AuditEventType.TRANSACTION_CREATED, **metadata):
        return self.audit.log_event(
            event_type=event_type,
            entity_type="transaction",
            entity_id=entity_id,
            metadata=metadata,
            user_id="ops"
        )

    def test_first_event_starts_chain(self):
        event = self._log(amount=Decimal('100.00'))
        assert event.previous_hash == ""
        assert event.verify_hash()
        assert event.user_id == "ops"

    def test_events_are_chained(self):
        first = self._log()
        second = self._log(event_type=AuditEventType.TRANSACTION_STATUS_CHANGED)
        third = self._log(entity_id="TXN002")

        assert second.previous_hash == first.current_hash
        assert third.previous_hash == second.current_hash

    def test_queries_are_ordered(self):
        self._log()
        self._log(event_type=AuditEventType.TRANSACTION_STATUS_CHANGED, to="initiated")
        self._log(entity_id="TXN002")
        self._log(event_type=AuditEventType.TRANSACTION_STATUS_CHANGED, to="authorized")

        events = self.audit.get_events_for_entity("transaction", "TXN001")
        assert [e.event_type for e in events] == [
            AuditEventType.TRANSACTION_CREATED,
            AuditEventType.TRANSACTION_STATUS_CHANGED,
            AuditEventType.TRANSACTION_STATUS_CHANGED,
        ]
        assert events[-1].metadata["to"] == "authorized"

        latest = self.audit.get_events_for_entity("transaction", "TXN001", limit=1)
        assert [e.metadata["to"] for e in latest] == ["authorized"]

        changes = self.audit.get_events_by_type(AuditEventType.TRANSACTION_STATUS_CHANGED)
        assert [e.metadata["to"] for e in changes] == ["initiated", "authorized"]

    def test_integrity_of_untouched_chain(self):
        for i in range(5):
            self._log(entity_id=f"TXN{i}")

        result = self.audit.verify_integrity()
        assert result["valid"]
        assert result["total_events"] == 5
        assert result["hash_errors"] == []
        assert result["chain_breaks"] == []

    def test_tampered_metadata_detected(self):
        self._log()
        target = self._log(event_type=AuditEventType.TRANSACTION_STATUS_CHANGED, error_code="905")
        self._log()

        record = self.storage.load("audit_events", target.id)
        record["metadata"] = {"error_code": "R01"}
        self.storage.save("audit_events", target.id, record)

        result = self.audit.verify_integrity()
        assert not result["valid"]
        assert [e["event_id"] for e in result["hash_errors"]] == [target.id]

    def test_deleted_event_breaks_chain(self):
        self._log()
        middle = self._log()
        last = self._log()

        self.storage.delete("audit_events", middle.id)

        result = self.audit.verify_integrity()
        assert not result["valid"]
        assert result["chain_breaks"][0]["event_id"] == last.id

    def test_append_reads_only_the_head(self, monkeypatch):
        self._log()

        def full_scan(table):
            raise AssertionError(f"append scanned {table}")

        monkeypatch.setattr(self.storage, "load_all", full_scan)
        second = self._log()
        third = self._log()

        assert third.previous_hash == second.current_hash
        head = self.storage.load("audit_events_head", AuditTrail.HEAD_ID)
        assert head["sequence"] == 3
        assert head["current_hash"] == third.current_hash

    def test_rolled_back_append_leaves_head(self):
        first = self._log()

        with pytest.raises(RuntimeError):
            with self.storage.atomic():
                self._log(entity_id="TXN002")
                raise RuntimeError("transition failed")

        second = self._log()
        assert second.previous_hash == first.current_hash
        assert self.audit.verify_integrity()["valid"]

    def test_chain_without_head_record_continues(self):
        self._log()
        last = self._log()
        self.storage.delete("audit_events_head", AuditTrail.HEAD_ID)

        following = self._log()

        assert following.previous_hash == last.current_hash
        result = self.audit.verify_integrity()
        assert result["valid"]
        assert result["total_events"] == 3

    def test_disabled_trail(self):
        audit = AuditTrail(self.storage, enabled=False)
        assert audit.log_event(AuditEventType.TRANSACTION_CREATED, "transaction", "TXN001") is None
        assert self.storage.count("audit_events") == 0

    def test_sqlite_chain(self):
        storage = SQLiteStorage(":memory:")
        try:
            audit = AuditTrail(storage)
            first = audit.log_event(AuditEventType.LOAN_CREATED, "loan", "L1",
                                    metadata={"principal_amount": Decimal('500.00')})
            second = audit.log_event(AuditEventType.LOAN_ACTIVATED, "loan", "L1")

            assert second.previous_hash == first.current_hash
            assert audit.verify_integrity()["valid"]
            assert audit.get_events_for_entity("loan", "L1")[0].metadata["principal_amount"] == "500.00"
        finally:
            storage.close()
