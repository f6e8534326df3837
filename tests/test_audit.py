"""
Test suite for the audit trail module

Tests hash chaining, tamper detection, redaction of sensitive metadata
and chain continuity across rolled-back scopes.
"""

import pytest

from banking_ledger.audit import AuditEventType, AuditTrail
from banking_ledger.logging_config import REDACTED
from banking_ledger.storage import InMemoryStorage


class TestAuditTrail:

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit = AuditTrail(self.storage)

    def test_first_event_starts_chain(self):
        event = self.audit.log_event(AuditEventType.SYSTEM_START, "system", "ledger")
        assert event.sequence == 1
        assert event.previous_hash == ""
        assert event.verify_hash()

    def test_events_are_chained(self):
        first = self.audit.log_event(AuditEventType.USER_CREATED, "user", "u1")
        second = self.audit.log_event(AuditEventType.ACCOUNT_CREATED, "account", "a1")
        assert second.previous_hash == first.current_hash
        assert second.sequence == 2
        assert self.audit.get_latest_hash() == second.current_hash

    def test_integrity_of_untouched_chain(self):
        for n in range(5):
            self.audit.log_event(AuditEventType.BALANCE_ADJUSTED, "account", f"a{n}", {"amount": "1.00"})
        result = self.audit.verify_integrity()
        assert result["valid"] is True
        assert result["total_events"] == 5

    def test_modified_metadata_detected(self):
        self.audit.log_event(AuditEventType.BALANCE_ADJUSTED, "account", "a1", {"amount": "10.00"})
        event = self.audit.log_event(AuditEventType.BALANCE_ADJUSTED, "account", "a1", {"amount": "20.00"})

        data = self.storage.load("audit_events", event.id)
        data["metadata"]["amount"] = "20000.00"
        self.storage.save("audit_events", event.id, data)

        result = self.audit.verify_integrity()
        assert result["valid"] is False
        assert [e["event_id"] for e in result["hash_errors"]] == [event.id]

    def test_deleted_event_breaks_chain(self):
        self.audit.log_event(AuditEventType.USER_CREATED, "user", "u1")
        middle = self.audit.log_event(AuditEventType.USER_UPDATED, "user", "u1")
        self.audit.log_event(AuditEventType.USER_VERIFIED, "user", "u1")

        self.storage.delete("audit_events", middle.id)
        result = self.audit.verify_integrity()
        assert result["valid"] is False
        assert len(result["chain_breaks"]) == 1

    def test_sensitive_metadata_redacted(self):
        event = self.audit.log_event(
            AuditEventType.PIN_CHANGED, "user", "u1",
            {"pin": "4826", "nested": {"verification_token": "abc"}, "reason": "user request"}
        )
        stored = self.storage.load("audit_events", event.id)["metadata"]
        assert stored["pin"] == REDACTED
        assert stored["nested"]["verification_token"] == REDACTED
        assert stored["reason"] == "user request"
        assert self.audit.verify_integrity()["valid"] is True

    def test_rolled_back_event_leaves_no_gap(self):
        self.audit.log_event(AuditEventType.USER_CREATED, "user", "u1")
        with pytest.raises(RuntimeError):
            with self.storage.atomic():
                self.audit.log_event(AuditEventType.USER_UPDATED, "user", "u1")
                raise RuntimeError("rolled back")
        event = self.audit.log_event(AuditEventType.USER_VERIFIED, "user", "u1")

        assert event.sequence == 2
        assert self.audit.count_events() == 2
        assert self.audit.verify_integrity()["valid"] is True

    def test_queries(self):
        self.audit.log_event(AuditEventType.USER_CREATED, "user", "u1")
        self.audit.log_event(AuditEventType.USER_CREATED, "user", "u2")
        self.audit.log_event(AuditEventType.USER_VERIFIED, "user", "u1")

        assert len(self.audit.get_events_for_entity("user", "u1")) == 2
        assert len(self.audit.get_events_by_type(AuditEventType.USER_CREATED)) == 2
        assert [e.sequence for e in self.audit.get_all_events(limit=2)] == [2, 3]
