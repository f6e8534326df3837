"""
Component wiring for the banking ledger.
"""

from decimal import Decimal
from typing import Any, Optional, Tuple, Union

from .config import LedgerConfig, get_config
from .currency import Currency, to_decimal
from .storage import StorageInterface, create_storage
from .audit import AuditTrail
from .events import EventDispatcher
from .users import User, UserManager, UserRole
from .accounts import Account, AccountManager, AccountType
from .transactions import TransactionStore
from .ledger import BalanceMutator
from .admin_actions import AdminActionLog, AdminActionType
from .pin import PinGate
from .transfers import TransferService
from .support import SupportDesk
from .approvals import TransferApprovalWorkflow
from .funds import FundManager
from .cards import CardService
from .errors import AuthorizationError, ValidationError


class BankingSystem:
    """Ledger with all components initialized"""

    def __init__(self, config: Optional[LedgerConfig] = None,
                 storage: Optional[StorageInterface] = None):
        self.config = config or get_config()
        self.storage = storage or create_storage(self.config.database_url)

        self.events = EventDispatcher()
        self.audit_trail = AuditTrail(self.storage)
        self.admin_actions = AdminActionLog(self.storage)
        self.users = UserManager(self.storage, self.audit_trail, self.events)
        self.accounts = AccountManager(
            self.storage, self.audit_trail,
            default_minimum_balance=self.config.default_minimum_balance,
            fee_account_number=self.config.fee_account_number,
            settlement_account_number=self.config.settlement_account_number
        )
        self.transactions = TransactionStore(self.storage)
        self.mutator = BalanceMutator(self.storage, self.accounts, self.events)
        self.pin_gate = PinGate(
            self.storage, self.users, self.audit_trail,
            max_attempts=self.config.pin_max_attempts,
            lockout_minutes=self.config.pin_lockout_minutes,
            token_ttl_seconds=self.config.pin_token_ttl_seconds
        )
        self.support = SupportDesk(self.storage, self.audit_trail, self.events)
        self.transfers = TransferService(
            self.storage, self.users, self.accounts, self.transactions,
            self.mutator, self.pin_gate, self.audit_trail, self.events,
            approval_threshold=self.config.approval_threshold,
            min_transfer_amount=self.config.min_transfer_amount,
            max_transfer_amount=self.config.max_transfer_amount
        )
        self.approvals = TransferApprovalWorkflow(
            self.storage, self.users, self.transactions, self.transfers,
            self.admin_actions, self.audit_trail, self.support, self.events,
            cache_ttl_seconds=self.config.cache_ttl_seconds
        )
        self.funds = FundManager(
            self.storage, self.users, self.accounts, self.transactions,
            self.mutator, self.admin_actions, self.audit_trail, self.events,
            max_adjustment_amount=self.config.max_adjustment_amount
        )
        self.cards = CardService(
            self.storage, self.users, self.accounts, self.pin_gate,
            self.audit_trail, self.admin_actions, self.events
        )

        self.accounts.ensure_system_accounts(Currency.from_code(self.config.base_currency))

    def create_customer(
        self,
        admin_id: str,
        username: str,
        email: str,
        full_name: str,
        pin: Optional[str] = None,
        opening_balance: Union[str, int, Decimal, None] = None,
        account_type: AccountType = AccountType.CHECKING,
        currency: Currency = Currency.USD,
        verified: bool = False,
        **profile: Any
    ) -> Tuple[User, Account]:
        """
        Admin onboarding: user, primary account, optional PIN and opening
        deposit, as one unit.
        """
        admin = self.users.get_user(admin_id)
        if admin is None or not admin.is_admin:
            raise AuthorizationError("Administrator privileges required")

        opening = Decimal("0")
        if opening_balance is not None:
            try:
                opening = to_decimal(opening_balance)
            except (TypeError, ValueError):
                raise ValidationError.for_field("opening_balance", "A valid opening balance is required")
            if opening < 0:
                raise ValidationError.for_field("opening_balance", "Opening balance must not be negative")

        with self.storage.atomic():
            user = self.users.create_user(
                username, email, full_name, role=UserRole.CUSTOMER, created_by=admin_id, **profile
            )
            account = self.accounts.create_account(
                user.id, account_type=account_type, currency=currency, created_by=admin_id
            )
            if pin is not None:
                self.pin_gate.set_pin(user.id, pin, actor_id=admin_id)
            if verified:
                user = self.users.verify_customer(user.id, admin_id)
            self.admin_actions.record(
                admin_id=admin_id,
                action_type=AdminActionType.CREATE_CUSTOMER,
                target_type="user",
                target_id=user.id,
                description=f"Created customer {username} with account {account.account_number}"
            )
            if opening != 0:
                self.funds.fund_account(
                    account.account_number, "credit", opening, "Opening deposit", admin_id
                )

        return self.users.require_user(user.id), self.accounts.require_account(account.id)

    def verify_customer(self, customer_id: str, admin_id: str) -> User:
        admin = self.users.get_user(admin_id)
        if admin is None or not admin.is_admin:
            raise AuthorizationError("Administrator privileges required")
        with self.storage.atomic():
            user = self.users.verify_customer(customer_id, admin_id)
            self.admin_actions.record(
                admin_id=admin_id,
                action_type=AdminActionType.VERIFY_CUSTOMER,
                target_type="user",
                target_id=user.id,
                description=f"Verified customer {user.username}"
            )
        return user

    def create_admin(self, username: str, email: str, full_name: str) -> User:
        return self.users.create_user(username, email, full_name, role=UserRole.ADMIN)

    def close(self) -> None:
        self.storage.close()
