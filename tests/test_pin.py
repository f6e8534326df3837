"""
Test suite for the transfer PIN gate

Tests PIN storage, verification with lockout, and the single-use
verification tokens that protected operations consume.
"""

import json
from datetime import datetime, timezone

import pytest

from banking_ledger.audit import AuditEventType
from banking_ledger.config import LedgerConfig
from banking_ledger.errors import AuthenticationError, ValidationError
from banking_ledger.pin import PinPurpose, is_weak_pin
from banking_ledger.system import BankingSystem


def build_system(**overrides):
    settings = {"database_url": "memory", "log_level": "WARNING"}
    settings.update(overrides)
    return BankingSystem(LedgerConfig(_env_file=None, **settings))


class TestPinStorage:

    def setup_method(self):
        self.system = build_system()
        self.admin = self.system.create_admin("admin", "admin@bank.test", "Bank Admin")
        self.user, _ = self.system.create_customer(
            self.admin.id, "alice", "alice@example.com", "Alice Smith", pin="4826"
        )

    def test_pin_is_hashed(self):
        stored = self.system.storage.load("users", self.user.id)
        assert stored["pin_hash"]
        assert stored["pin_salt"]
        assert "4826" not in json.dumps(stored)

    def test_public_profile_hides_pin_material(self):
        public = self.system.users.require_user(self.user.id).to_public_dict()
        assert "pin_hash" not in public
        assert "pin_salt" not in public

    @pytest.mark.parametrize("pin", ["123", "12345", "12a4", "", "    "])
    def test_malformed_pin_rejected(self, pin):
        with pytest.raises(ValidationError):
            self.system.pin_gate.set_pin(self.user.id, pin)

    def test_audit_event_never_holds_pin(self):
        events = self.system.audit_trail.get_events_by_type(AuditEventType.PIN_SET)
        assert len(events) == 1
        assert "4826" not in json.dumps(events[0].to_dict())


class TestPinVerification:

    def setup_method(self):
        self.system = build_system()
        self.admin = self.system.create_admin("admin", "admin@bank.test", "Bank Admin")
        self.user, _ = self.system.create_customer(
            self.admin.id, "alice", "alice@example.com", "Alice Smith", pin="4826"
        )
        self.gate = self.system.pin_gate

    def test_correct_pin_issues_token(self):
        issued = self.gate.verify_pin("alice", "4826")
        assert issued.user_id == self.user.id
        assert issued.purpose == PinPurpose.TRANSFER
        assert issued.expires_at > datetime.now(timezone.utc)
        assert issued.token

    def test_identity_by_email_case_insensitive(self):
        issued = self.gate.verify_pin("ALICE@example.com", "4826")
        assert issued.user_id == self.user.id

    def test_token_is_not_stored_in_clear(self):
        issued = self.gate.verify_pin("alice", "4826")
        for record in self.system.storage.load_all("pin_tokens"):
            assert issued.token not in json.dumps(record)

    @pytest.mark.parametrize("pin", ["0000", "4825", "48260", "", "abcd", 4826, None, b"4826", ["4826"]])
    def test_wrong_pin_never_verifies(self, pin):
        with pytest.raises(AuthenticationError) as exc_info:
            self.gate.verify_pin("alice", pin)
        assert exc_info.value.message == "Invalid credentials"

    def test_unknown_identity_looks_like_wrong_pin(self):
        with pytest.raises(AuthenticationError) as unknown:
            self.gate.verify_pin("mallory", "4826")
        with pytest.raises(AuthenticationError) as wrong:
            self.gate.verify_pin("alice", "0000")
        assert unknown.value.message == wrong.value.message

    @pytest.mark.parametrize("identity", [None, 42, ["alice"]])
    def test_non_text_identity(self, identity):
        with pytest.raises(AuthenticationError) as exc_info:
            self.gate.verify_pin(identity, "4826")
        assert exc_info.value.message == "Invalid credentials"

    def test_user_without_pin_cannot_verify(self):
        self.system.create_customer(self.admin.id, "bob", "bob@example.com", "Bob Jones")
        with pytest.raises(AuthenticationError):
            self.gate.verify_pin("bob", "4826")

    def test_lockout_after_max_attempts(self):
        for _ in range(5):
            with pytest.raises(AuthenticationError):
                self.gate.verify_pin("alice", "0000")

        user = self.system.users.require_user(self.user.id)
        assert self.gate.is_locked(user)
        assert user.failed_pin_attempts == 0

        with pytest.raises(AuthenticationError):
            self.gate.verify_pin("alice", "4826")
        assert self.system.audit_trail.get_events_by_type(AuditEventType.PIN_LOCKED)

    def test_success_resets_failed_attempts(self):
        for _ in range(3):
            with pytest.raises(AuthenticationError):
                self.gate.verify_pin("alice", "0000")
        self.gate.verify_pin("alice", "4826")
        assert self.system.users.require_user(self.user.id).failed_pin_attempts == 0

    def test_admin_reset_clears_lockout(self):
        for _ in range(5):
            with pytest.raises(AuthenticationError):
                self.gate.verify_pin("alice", "0000")
        self.gate.set_pin(self.user.id, "7391", actor_id=self.admin.id)
        assert self.gate.verify_pin("alice", "7391").user_id == self.user.id


class TestVerificationTokens:

    def setup_method(self):
        self.system = build_system()
        self.admin = self.system.create_admin("admin", "admin@bank.test", "Bank Admin")
        self.user, _ = self.system.create_customer(
            self.admin.id, "alice", "alice@example.com", "Alice Smith", pin="4826"
        )
        self.other, _ = self.system.create_customer(
            self.admin.id, "bob", "bob@example.com", "Bob Jones", pin="5173"
        )
        self.gate = self.system.pin_gate

    def test_token_is_single_use(self):
        issued = self.gate.verify_pin("alice", "4826")
        record = self.gate.consume_token(issued.token, self.user.id, PinPurpose.TRANSFER)
        assert record.consumed_at is not None

        with pytest.raises(AuthenticationError):
            self.gate.consume_token(issued.token, self.user.id, PinPurpose.TRANSFER)

    def test_missing_token(self):
        with pytest.raises(AuthenticationError) as exc_info:
            self.gate.consume_token(None, self.user.id, PinPurpose.TRANSFER)
        assert exc_info.value.message == "PIN verification required"

    def test_unknown_token(self):
        with pytest.raises(AuthenticationError):
            self.gate.consume_token("not-a-real-token", self.user.id, PinPurpose.TRANSFER)

    def test_token_bound_to_user(self):
        issued = self.gate.verify_pin("alice", "4826")
        with pytest.raises(AuthenticationError):
            self.gate.consume_token(issued.token, self.other.id, PinPurpose.TRANSFER)

    def test_token_bound_to_purpose(self):
        issued = self.gate.verify_pin("alice", "4826", PinPurpose.CARD_LOCK)
        with pytest.raises(AuthenticationError):
            self.gate.consume_token(issued.token, self.user.id, PinPurpose.TRANSFER)
        assert self.gate.consume_token(issued.token, self.user.id, PinPurpose.CARD_LOCK)

    def test_expired_token(self):
        system = build_system(pin_token_ttl_seconds=0)
        admin = system.create_admin("admin", "admin@bank.test", "Bank Admin")
        user, _ = system.create_customer(admin.id, "alice", "alice@example.com", "Alice Smith", pin="4826")

        issued = system.pin_gate.verify_pin("alice", "4826")
        with pytest.raises(AuthenticationError):
            system.pin_gate.consume_token(issued.token, user.id, PinPurpose.TRANSFER)


class TestChangePin:

    def setup_method(self):
        self.system = build_system()
        self.admin = self.system.create_admin("admin", "admin@bank.test", "Bank Admin")
        self.user, _ = self.system.create_customer(
            self.admin.id, "alice", "alice@example.com", "Alice Smith", pin="4826"
        )
        self.gate = self.system.pin_gate

    def test_change_pin(self):
        self.gate.change_pin(self.user.id, "4826", "7391")

        assert self.gate.verify_pin("alice", "7391").user_id == self.user.id
        with pytest.raises(AuthenticationError):
            self.gate.verify_pin("alice", "4826")

    def test_wrong_current_pin(self):
        with pytest.raises(AuthenticationError):
            self.gate.change_pin(self.user.id, "0000", "7391")
        assert self.gate.verify_pin("alice", "4826")

    @pytest.mark.parametrize("current_pin", [4826, None, "48"])
    def test_malformed_current_pin(self, current_pin):
        with pytest.raises(ValidationError) as exc_info:
            self.gate.change_pin(self.user.id, current_pin, "7391")
        assert "current_pin" in exc_info.value.errors
        assert self.gate.verify_pin("alice", "4826")

    @pytest.mark.parametrize("new_pin", ["1111", "1234", "9876"])
    def test_weak_pin_rejected(self, new_pin):
        with pytest.raises(ValidationError) as exc_info:
            self.gate.change_pin(self.user.id, "4826", new_pin)
        assert "new_pin" in exc_info.value.errors

    def test_unchanged_pin_rejected(self):
        with pytest.raises(ValidationError):
            self.gate.change_pin(self.user.id, "4826", "4826")


class TestWeakPins:

    @pytest.mark.parametrize("pin,weak", [
        ("0000", True),
        ("7777", True),
        ("0123", True),
        ("6789", True),
        ("4321", True),
        ("4826", False),
        ("1243", False),
        ("1357", False),
    ])
    def test_is_weak_pin(self, pin, weak):
        assert is_weak_pin(pin) is weak
