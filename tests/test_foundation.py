"""
Test suite for currency handling, transaction states, configuration and
structured logging
"""

import json
import logging
from decimal import Decimal

import pytest

from banking_ledger.config import LedgerConfig, get_config, reload_config
from banking_ledger.currency import Currency, Money, quantize, to_decimal
from banking_ledger.errors import InvalidStateError
from banking_ledger.logging_config import REDACTED, log_action, redact, setup_logging
from banking_ledger.storage import InMemoryStorage
from banking_ledger.transactions import (
    TransactionStatus, TransactionStore, TransactionType, generate_reference,
)


class TestCurrency:

    def test_money_rounds_half_up(self):
        assert Money(Decimal("10.005"), Currency.USD).amount == Decimal("10.01")
        assert Money(Decimal("10.5"), Currency.JPY).amount == Decimal("11")

    def test_money_arithmetic(self):
        total = Money(Decimal("10.10"), Currency.USD) + Money(Decimal("0.95"), Currency.USD)
        assert total.amount == Decimal("11.05")
        assert (-total).is_negative()
        assert total.to_string() == "USD 11.05"

    def test_currency_mismatch(self):
        with pytest.raises(ValueError):
            Money(Decimal("1"), Currency.USD) + Money(Decimal("1"), Currency.EUR)

    def test_floats_refused(self):
        with pytest.raises(TypeError):
            to_decimal(0.1)

    @pytest.mark.parametrize("value", ["abc", "NaN", "Infinity"])
    def test_garbage_refused(self, value):
        with pytest.raises(ValueError):
            to_decimal(value)

    def test_from_code(self):
        assert Currency.from_code(" gbp ") == Currency.GBP
        with pytest.raises(ValueError):
            Currency.from_code("XYZ")

    def test_quantize(self):
        assert quantize(Decimal("2.675"), Currency.USD) == Decimal("2.68")


class TestTransactionStates:

    def setup_method(self):
        self.store = TransactionStore(InMemoryStorage())

    def new(self, status):
        return self.store.new_transaction(
            user_id="u1",
            amount=Decimal("10.00"),
            currency=Currency.USD,
            transaction_type=TransactionType.TRANSFER,
            status=status
        )

    @pytest.mark.parametrize("start,target", [
        (TransactionStatus.PENDING, TransactionStatus.COMPLETED),
        (TransactionStatus.PENDING, TransactionStatus.FAILED),
        (TransactionStatus.PENDING_APPROVAL, TransactionStatus.COMPLETED),
        (TransactionStatus.PENDING_APPROVAL, TransactionStatus.REJECTED),
    ])
    def test_allowed_transitions(self, start, target):
        transaction = self.new(start)
        transaction.transition_to(target)
        assert transaction.status == target

    @pytest.mark.parametrize("start,target", [
        (TransactionStatus.PENDING, TransactionStatus.REJECTED),
        (TransactionStatus.PENDING_APPROVAL, TransactionStatus.FAILED),
        (TransactionStatus.COMPLETED, TransactionStatus.COMPLETED),
        (TransactionStatus.COMPLETED, TransactionStatus.REJECTED),
        (TransactionStatus.REJECTED, TransactionStatus.COMPLETED),
        (TransactionStatus.FAILED, TransactionStatus.PENDING),
    ])
    def test_forbidden_transitions(self, start, target):
        transaction = self.new(start)
        with pytest.raises(InvalidStateError):
            transaction.transition_to(target)
        assert transaction.status == start

    def test_terminal_statuses(self):
        assert TransactionStatus.COMPLETED.is_terminal
        assert TransactionStatus.REJECTED.is_terminal
        assert TransactionStatus.FAILED.is_terminal
        assert not TransactionStatus.PENDING_APPROVAL.is_terminal

    def test_reference_format(self):
        reference = generate_reference()
        prefix, millis, suffix = reference.split("-")
        assert prefix == "WB"
        assert millis.isdigit()
        assert len(suffix) == 6

    def test_round_trip_through_store(self):
        transaction = self.new(TransactionStatus.PENDING)
        self.store.save(transaction)
        loaded = self.store.require(transaction.id)
        assert loaded.amount == Decimal("10.00")
        assert loaded.status == TransactionStatus.PENDING
        assert self.store.list_by_status(TransactionStatus.PENDING)[0].id == transaction.id


class TestConfig:

    def test_defaults(self):
        config = LedgerConfig(_env_file=None)
        assert config.approval_threshold == Decimal("10000.00")
        assert config.pin_max_attempts == 5
        assert config.api_port == 8090

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("LEDGER_APPROVAL_THRESHOLD", "2500.50")
        monkeypatch.setenv("LEDGER_DATABASE_URL", "memory")
        config = reload_config()
        try:
            assert config.approval_threshold == Decimal("2500.50")
            assert get_config() is config
        finally:
            monkeypatch.delenv("LEDGER_APPROVAL_THRESHOLD")
            monkeypatch.delenv("LEDGER_DATABASE_URL")
            reload_config()


class TestStructuredLogging:

    def test_redact(self):
        data = {"PIN": "1234", "items": [{"token": "abc"}], "amount": "5.00"}
        assert redact(data) == {"PIN": REDACTED, "items": [{"token": REDACTED}], "amount": "5.00"}

    def test_json_log_line(self, tmp_path):
        log_file = tmp_path / "ledger.log"
        logger = setup_logging("INFO", logger_name="banking_ledger_test", log_file=str(log_file))
        try:
            log_action(
                logger, "info", "PIN verified", user_id="u1", action="verify_pin",
                resource="user:u1", correlation_id="req-1",
                extra={"pin": "4826", "purpose": "transfer"}
            )
        finally:
            for handler in logger.handlers[:]:
                handler.close()
                logger.removeHandler(handler)

        entry = json.loads(log_file.read_text().strip())
        assert entry["message"] == "PIN verified"
        assert entry["level"] == "INFO"
        assert entry["user_id"] == "u1"
        assert entry["correlation_id"] == "req-1"
        assert entry["extra"] == {"pin": REDACTED, "purpose": "transfer"}
        assert "4826" not in log_file.read_text()

    def test_level_filtering(self, tmp_path):
        log_file = tmp_path / "quiet.log"
        logger = setup_logging("WARNING", logger_name="banking_ledger_quiet", log_file=str(log_file))
        try:
            log_action(logger, "info", "ignored")
            logger.warning("kept")
        finally:
            for handler in logger.handlers[:]:
                handler.close()
                logger.removeHandler(handler)

        lines = log_file.read_text().strip().splitlines()
        assert [json.loads(line)["message"] for line in lines] == ["kept"]
        assert logging.getLogger("banking_ledger_quiet").propagate is False
