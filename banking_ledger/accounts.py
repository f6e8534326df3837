"""
Account Management Module

Customer accounts and the two system accounts (fee income and external
settlement). Account balances are authoritative; they are written only by
the balance mutator in ledger.py, which bumps ``version`` on every write.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional
from enum import Enum
import secrets
import uuid

from .currency import Currency, quantize
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .errors import NotFoundError, ValidationError


SYSTEM_USER_ID = "system"


class AccountType(Enum):
    CHECKING = "checking"
    SAVINGS = "savings"
    INVESTMENT = "investment"
    SYSTEM = "system"  # Internal GL account, never owned by a customer


class SystemAccountRole(Enum):
    FEE_INCOME = "fee_income"
    EXTERNAL_SETTLEMENT = "external_settlement"


@dataclass
class Account(StorageRecord):
    """
    Bank account holding an authoritative balance
    """
    user_id: str
    account_number: str
    account_type: AccountType
    name: str
    currency: Currency = Currency.USD
    balance: Decimal = Decimal('0')
    is_active: bool = True
    interest_rate: Optional[Decimal] = None
    minimum_balance: Optional[Decimal] = None
    system_role: Optional[SystemAccountRole] = None
    version: int = 0

    @property
    def is_system(self) -> bool:
        return self.account_type == AccountType.SYSTEM


class AccountManager:
    """
    Manages account lifecycle and lookup
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        default_minimum_balance: Decimal = Decimal('0'),
        fee_account_number: str = "GL-FEE-INCOME",
        settlement_account_number: str = "GL-EXT-SETTLEMENT"
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.table_name = "accounts"
        self.default_minimum_balance = default_minimum_balance
        self._system_numbers = {
            SystemAccountRole.FEE_INCOME: fee_account_number,
            SystemAccountRole.EXTERNAL_SETTLEMENT: settlement_account_number,
        }

    def create_account(
        self,
        user_id: str,
        account_type: AccountType = AccountType.CHECKING,
        currency: Currency = Currency.USD,
        name: Optional[str] = None,
        account_number: Optional[str] = None,
        interest_rate: Optional[Decimal] = None,
        minimum_balance: Optional[Decimal] = None,
        created_by: Optional[str] = None,
        system_role: Optional[SystemAccountRole] = None
    ) -> Account:
        """
        Create a new account with a zero balance.

        Opening balances are applied afterwards through the balance mutator
        so that every non-zero balance has ledger entries behind it.

        Args:
            user_id: ID of account owner
            account_type: checking, savings, investment or system
            currency: Account currency
            name: Account name (defaults to the type)
            account_number: Specific account number (generated if not provided)
            interest_rate: Annual interest rate (if applicable)
            minimum_balance: Floor below which debits are refused
            created_by: Admin who opened the account, if any
            system_role: Role of a system account

        Returns:
            Created Account object
        """
        if account_number and self.get_account_by_number(account_number):
            raise ValidationError.for_field("account_number", "Account number already in use")
        if minimum_balance is not None and minimum_balance < 0:
            raise ValidationError.for_field("minimum_balance", "Minimum balance cannot be negative")

        now = datetime.now(timezone.utc)
        account = Account(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            account_number=account_number or self._generate_account_number(),
            account_type=account_type,
            name=name or f"{account_type.value.capitalize()} Account",
            currency=currency,
            balance=quantize(Decimal('0'), currency),
            interest_rate=interest_rate,
            minimum_balance=minimum_balance,
            system_role=system_role
        )

        with self.storage.atomic():
            self.storage.save(self.table_name, account.id, account.to_dict())
            self.audit_trail.log_event(
                event_type=AuditEventType.ACCOUNT_CREATED,
                entity_type="account",
                entity_id=account.id,
                metadata={
                    "account_number": account.account_number,
                    "user_id": user_id,
                    "account_type": account_type.value,
                    "currency": currency.code
                },
                user_id=created_by
            )

        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        data = self.storage.load(self.table_name, account_id)
        if data:
            return Account.from_dict(data)
        return None

    def require_account(self, account_id: str) -> Account:
        account = self.get_account(account_id)
        if account is None:
            raise NotFoundError("account", account_id)
        return account

    def get_account_by_number(self, account_number: str) -> Optional[Account]:
        accounts = self.storage.find(self.table_name, {"account_number": account_number})
        if accounts:
            return Account.from_dict(accounts[0])
        return None

    def get_user_accounts(self, user_id: str) -> List[Account]:
        """Get all accounts for a user in opening order"""
        return [Account.from_dict(data) for data in self.storage.find(self.table_name, {"user_id": user_id})]

    def primary_account(self, user_id: str) -> Optional[Account]:
        """First active checking account, else the first active account"""
        accounts = [a for a in self.get_user_accounts(user_id) if a.is_active and not a.is_system]
        for account in accounts:
            if account.account_type == AccountType.CHECKING:
                return account
        return accounts[0] if accounts else None

    def total_balance(self, user_id: str, currency: Currency = Currency.USD) -> Decimal:
        """Sum of a user's account balances in one currency"""
        total = sum(
            (a.balance for a in self.get_user_accounts(user_id) if a.currency == currency),
            Decimal('0')
        )
        return quantize(total, currency)

    def effective_minimum_balance(self, account: Account) -> Decimal:
        if account.minimum_balance is not None:
            return account.minimum_balance
        return self.default_minimum_balance

    def system_account(self, role: SystemAccountRole, currency: Currency = Currency.USD) -> Account:
        """Get (creating on first use) the system account for a role and currency"""
        number = f"{self._system_numbers[role]}-{currency.code}"
        with self.storage.atomic():
            account = self.get_account_by_number(number)
            if account is None:
                account = self.create_account(
                    user_id=SYSTEM_USER_ID,
                    account_type=AccountType.SYSTEM,
                    currency=currency,
                    name=role.value.replace("_", " ").title(),
                    account_number=number,
                    system_role=role
                )
        return account

    def ensure_system_accounts(self, currency: Currency = Currency.USD) -> Dict[SystemAccountRole, Account]:
        return {role: self.system_account(role, currency) for role in SystemAccountRole}

    def write_balance(self, account: Account, new_balance: Decimal) -> Account:
        """
        Persist a new balance with an optimistic version check.

        Only the balance mutator calls this; raises
        ConcurrentModificationError when the stored version moved on.
        """
        expected_version = account.version
        account.balance = quantize(new_balance, account.currency)
        account.version = expected_version + 1
        account.touch()
        self.storage.save_versioned(self.table_name, account.id, account.to_dict(), expected_version)
        return account

    def set_active(self, account_id: str, active: bool) -> Account:
        with self.storage.atomic():
            account = self.require_account(account_id)
            account.is_active = active
            account.touch()
            self.storage.save(self.table_name, account.id, account.to_dict())
        return account

    def _generate_account_number(self) -> str:
        """Generate a unique 10-digit account number"""
        while True:
            number = f"{secrets.randbelow(9 * 10**9) + 10**9}"
            if not self.get_account_by_number(number):
                return number
