"""
Test suite for admin fund management

Tests balance adjustments and account funding by administrators.
"""

import threading
from decimal import Decimal

import pytest

from banking_ledger.admin_actions import AdminActionType
from banking_ledger.config import LedgerConfig
from banking_ledger.errors import (
    AuthorizationError, InsufficientFundsError, InvalidStateError, NotFoundError, ValidationError,
)
from banking_ledger.funds import ADJUSTMENT_CATEGORY
from banking_ledger.system import BankingSystem
from banking_ledger.transactions import TransactionStatus, TransactionType


def build_system(**overrides):
    settings = {"database_url": "memory", "log_level": "WARNING"}
    settings.update(overrides)
    return BankingSystem(LedgerConfig(_env_file=None, **settings))


class TestAdjustCustomerBalance:

    def setup_method(self):
        self.system = build_system(max_adjustment_amount=Decimal("50000.00"))
        self.admin = self.system.create_admin("admin", "admin@bank.test", "Bank Admin")
        self.customer, self.account = self.system.create_customer(
            self.admin.id, "alice", "alice@example.com", "Alice Smith", opening_balance="100.00"
        )
        self.funds = self.system.funds

    def test_credit_adjustment(self):
        new_balance = self.funds.adjust_customer_balance(
            self.customer.id, "250.00", "Goodwill credit", self.admin.id
        )
        assert new_balance == Decimal("350.00")

        latest = self.system.transactions.list_for_user(self.customer.id)[0]
        assert latest.transaction_type == TransactionType.CREDIT
        assert latest.status == TransactionStatus.COMPLETED
        assert latest.category == ADJUSTMENT_CATEGORY
        assert latest.approved_by == self.admin.id

    def test_debit_adjustment(self):
        new_balance = self.funds.adjust_customer_balance(
            self.customer.id, "-40.00", "Fee correction", self.admin.id
        )
        assert new_balance == Decimal("60.00")
        latest = self.system.transactions.list_for_user(self.customer.id)[0]
        assert latest.transaction_type == TransactionType.DEBIT
        assert latest.amount == Decimal("40.00")

    def test_adjustment_recorded_as_admin_action(self):
        self.funds.adjust_customer_balance(self.customer.id, "10.00", "Goodwill credit", self.admin.id)
        actions = self.system.admin_actions.list_actions(action_type=AdminActionType.BALANCE_UPDATE)
        assert len(actions) == 1
        assert actions[0].target_id == self.account.id
        assert actions[0].metadata["balance_after"] == "110.00"

    def test_overdraw_rolls_back_everything(self):
        transactions_before = len(self.system.transactions.list_for_user(self.customer.id))
        with pytest.raises(InsufficientFundsError):
            self.funds.adjust_customer_balance(
                self.customer.id, "-100.01", "Fee correction", self.admin.id
            )
        assert self.system.accounts.require_account(self.account.id).balance == Decimal("100.00")
        assert len(self.system.transactions.list_for_user(self.customer.id)) == transactions_before
        assert self.system.admin_actions.list_actions(action_type=AdminActionType.BALANCE_UPDATE) == []

    @pytest.mark.parametrize("amount", ["0", "0.00", "abc", "50000.01", "-50000.01"])
    def test_invalid_amount(self, amount):
        with pytest.raises(ValidationError) as exc_info:
            self.funds.adjust_customer_balance(self.customer.id, amount, "Goodwill credit", self.admin.id)
        assert "amount" in exc_info.value.errors

    @pytest.mark.parametrize("description", [None, "", "fix", "    x   "])
    def test_reason_required(self, description):
        with pytest.raises(ValidationError) as exc_info:
            self.funds.adjust_customer_balance(self.customer.id, "10.00", description, self.admin.id)
        assert "description" in exc_info.value.errors

    def test_customer_cannot_adjust(self):
        with pytest.raises(AuthorizationError):
            self.funds.adjust_customer_balance(
                self.customer.id, "10.00", "Self service", self.customer.id
            )

    def test_admins_have_no_balance_to_adjust(self):
        with pytest.raises(ValidationError):
            self.funds.adjust_customer_balance(self.admin.id, "10.00", "Goodwill credit", self.admin.id)

    def test_unknown_customer(self):
        with pytest.raises(NotFoundError):
            self.funds.adjust_customer_balance("missing", "10.00", "Goodwill credit", self.admin.id)


class TestFundAccount:

    def setup_method(self):
        self.system = build_system()
        self.admin = self.system.create_admin("admin", "admin@bank.test", "Bank Admin")
        self.customer, self.account = self.system.create_customer(
            self.admin.id, "alice", "alice@example.com", "Alice Smith"
        )
        self.funds = self.system.funds

    def balance(self):
        return self.system.accounts.require_account(self.account.id).balance

    def test_credit_and_debit(self):
        credit = self.funds.fund_account(
            self.account.account_number, "credit", "500.00", "Wire received", self.admin.id
        )
        assert credit.to_account_id == self.account.id
        self.funds.fund_account(self.account.account_number, "debit", "120.00", "Wire returned", self.admin.id)
        assert self.balance() == Decimal("380.00")

        actions = self.system.admin_actions.list_actions(action_type=AdminActionType.FUND_ACCOUNT)
        assert len(actions) == 2

    def test_reference_makes_funding_idempotent(self):
        first = self.funds.fund_account(
            self.account.account_number, "credit", "500.00", "Wire received", self.admin.id,
            reference="WIRE-0001"
        )
        second = self.funds.fund_account(
            self.account.account_number, "credit", "500.00", "Wire received", self.admin.id,
            reference="WIRE-0001"
        )
        assert first.id == second.id
        assert self.balance() == Decimal("500.00")

    def test_reference_reused_for_another_account(self):
        other = self.system.accounts.create_account(self.customer.id)
        self.funds.fund_account(
            self.account.account_number, "credit", "100.00", "Wire received", self.admin.id,
            reference="REF-1"
        )
        with pytest.raises(InvalidStateError):
            self.funds.fund_account(
                other.account_number, "credit", "250.00", "Wire received", self.admin.id,
                reference="REF-1"
            )
        assert self.system.accounts.require_account(other.id).balance == Decimal("0.00")
        assert self.balance() == Decimal("100.00")

    def test_reference_reused_for_another_amount(self):
        self.funds.fund_account(
            self.account.account_number, "credit", "100.00", "Wire received", self.admin.id,
            reference="REF-2"
        )
        with pytest.raises(InvalidStateError):
            self.funds.fund_account(
                self.account.account_number, "credit", "100.01", "Wire received", self.admin.id,
                reference="REF-2"
            )
        assert self.balance() == Decimal("100.00")

    def test_reference_reused_for_another_operation(self):
        self.funds.fund_account(
            self.account.account_number, "credit", "100.00", "Wire received", self.admin.id,
            reference="REF-3"
        )
        with pytest.raises(InvalidStateError):
            self.funds.fund_account(
                self.account.account_number, "debit", "100.00", "Wire returned", self.admin.id,
                reference="REF-3"
            )
        assert self.balance() == Decimal("100.00")
        actions = self.system.admin_actions.list_actions(action_type=AdminActionType.FUND_ACCOUNT)
        assert len(actions) == 1

    def test_concurrent_fundings_with_one_reference_post_once(self):
        results = []

        def fund():
            results.append(self.funds.fund_account(
                self.account.account_number, "credit", "75.00", "Wire received", self.admin.id,
                reference="REF-RACE"
            ))

        threads = [threading.Thread(target=fund) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(results) == 8
        assert len({t.id for t in results}) == 1
        assert self.balance() == Decimal("75.00")
        assert self.system.mutator.reconcile(self.account.id)["balanced"] is True

    def test_negative_amount_refused(self):
        with pytest.raises(ValidationError):
            self.funds.fund_account(self.account.account_number, "credit", "-5.00", "Wire received", self.admin.id)

    def test_unknown_operation(self):
        with pytest.raises(ValidationError) as exc_info:
            self.funds.fund_account(self.account.account_number, "steal", "5.00", "Wire received", self.admin.id)
        assert "operation" in exc_info.value.errors

    def test_unknown_account(self):
        with pytest.raises(NotFoundError):
            self.funds.fund_account("0000000000", "credit", "5.00", "Wire received", self.admin.id)

    def test_balance_event_published(self):
        received = []
        self.system.events.subscribe_all(received.append)
        self.funds.fund_account(self.account.account_number, "credit", "5.00", "Wire received", self.admin.id)
        assert [e.data for e in received] == [{"amount": "5.00", "balance": "5.00"}]
