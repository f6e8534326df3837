"""
Admin Fund Management Module

Administrators credit or debit customer accounts directly. Every
adjustment is a completed credit/debit transaction applied through the
balance mutator and recorded as an AdminAction, all in one atomic unit.
"""

from decimal import Decimal
from datetime import datetime, timezone
from typing import Optional, Union
from enum import Enum

from .currency import quantize, to_decimal
from .storage import StorageInterface
from .users import UserManager, UserRole
from .accounts import Account, AccountManager
from .transactions import Transaction, TransactionStatus, TransactionStore, TransactionType
from .ledger import BalanceMutator
from .admin_actions import AdminActionLog, AdminActionType
from .audit import AuditTrail, AuditEventType
from .errors import AuthorizationError, InvalidStateError, NotFoundError, ValidationError
from .events import DomainEvent, EventDispatcher, EventPayload
from .logging_config import get_logger, log_action


ADJUSTMENT_CATEGORY = "admin_adjustment"
MIN_REASON_LENGTH = 5


class FundOperation(Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class FundManager:

    def __init__(
        self,
        storage: StorageInterface,
        user_manager: UserManager,
        account_manager: AccountManager,
        transaction_store: TransactionStore,
        balance_mutator: BalanceMutator,
        admin_actions: AdminActionLog,
        audit_trail: AuditTrail,
        event_dispatcher: Optional[EventDispatcher] = None,
        max_adjustment_amount: Decimal = Decimal("1000000.00")
    ):
        self.storage = storage
        self.users = user_manager
        self.accounts = account_manager
        self.transactions = transaction_store
        self.mutator = balance_mutator
        self.admin_actions = admin_actions
        self.audit_trail = audit_trail
        self._event_dispatcher = event_dispatcher
        self.max_adjustment_amount = max_adjustment_amount
        self.logger = get_logger("banking_ledger.funds")

    def adjust_customer_balance(self, customer_id: str, amount: Union[str, int, Decimal],
                                description: str, admin_id: str) -> Decimal:
        """
        Apply a signed adjustment to a customer's primary account.

        Args:
            customer_id: Customer whose balance changes
            amount: Positive to credit, negative to debit; never zero
            description: Reason, at least five characters
            admin_id: Administrator performing the change

        Returns:
            The new balance of the adjusted account
        """
        self._require_admin(admin_id)
        signed = self._parse_amount(amount, allow_negative=True)
        reason = self._check_reason(description)

        customer = self.users.require_user(customer_id)
        if customer.role != UserRole.CUSTOMER:
            raise ValidationError.for_field("customer_id", "Balance adjustments apply to customers only")
        account = self.accounts.primary_account(customer.id)
        if account is None:
            raise ValidationError.for_field("customer_id", "Customer has no active account")

        self._post(account, signed, reason, admin_id, AdminActionType.BALANCE_UPDATE)
        return self.accounts.require_account(account.id).balance

    def fund_account(
        self,
        account_number: str,
        operation: Union[str, FundOperation],
        amount: Union[str, int, Decimal],
        description: str,
        admin_id: str,
        reference: Optional[str] = None
    ) -> Transaction:
        """
        Credit or debit an account by number.

        A ``reference`` already used by an earlier funding of the same
        account, amount and operation returns that transaction instead of
        posting again; reusing it for anything else raises InvalidStateError.
        """
        self._require_admin(admin_id)
        try:
            operation = FundOperation(operation.value if isinstance(operation, FundOperation) else operation)
        except ValueError:
            raise ValidationError.for_field("operation", "Operation must be credit or debit")
        value = self._parse_amount(amount, allow_negative=False)
        reason = self._check_reason(description)

        account = self.accounts.get_account_by_number(account_number)
        if account is None:
            raise NotFoundError("account", account_number)
        signed = value if operation == FundOperation.CREDIT else -value
        return self._post(account, signed, reason, admin_id, AdminActionType.FUND_ACCOUNT, reference)

    def _post(self, account: Account, signed: Decimal, reason: str, admin_id: str,
              action_type: AdminActionType, reference: Optional[str] = None) -> Transaction:
        amount = quantize(abs(signed), account.currency)
        is_credit = signed > 0
        transaction_type = TransactionType.CREDIT if is_credit else TransactionType.DEBIT
        fields = {"reference": reference} if reference else {}

        with self.storage.atomic():
            if reference:
                earlier = self._find_by_reference(reference)
                if earlier is not None:
                    earlier_account = earlier.to_account_id if is_credit else earlier.from_account_id
                    if (earlier.transaction_type != transaction_type or earlier_account != account.id
                            or earlier.amount != amount):
                        raise InvalidStateError(
                            f"Reference {reference} already used for a different funding"
                        )
                    return earlier

            transaction = self.transactions.new_transaction(
                user_id=account.user_id,
                amount=amount,
                currency=account.currency,
                transaction_type=transaction_type,
                status=TransactionStatus.COMPLETED,
                from_account_id=None if is_credit else account.id,
                to_account_id=account.id if is_credit else None,
                total=amount,
                description=reason,
                category=ADJUSTMENT_CATEGORY,
                approved_by=admin_id,
                approved_at=datetime.now(timezone.utc),
                processed_at=datetime.now(timezone.utc),
                **fields
            )
            entry = self.mutator.apply(
                account.id, signed, reason, f"{transaction.id}:adjust",
                transaction_id=transaction.id, actor_id=admin_id
            )
            self.transactions.save(transaction)
            self.admin_actions.record(
                admin_id=admin_id,
                action_type=action_type,
                target_type="account",
                target_id=account.id,
                description=f"{'Credited' if is_credit else 'Debited'} {account.currency.code} "
                            f"{amount} on account {account.account_number}: {reason}",
                metadata={
                    "amount": signed,
                    "balance_before": entry.balance_before,
                    "balance_after": entry.balance_after,
                    "transaction_id": transaction.id
                }
            )
            self.audit_trail.log_event(
                event_type=AuditEventType.BALANCE_ADJUSTED,
                entity_type="account",
                entity_id=account.id,
                metadata={"amount": signed, "balance_after": entry.balance_after, "reason": reason},
                user_id=admin_id
            )

        log_action(
            self.logger, "info", "Account balance adjusted",
            user_id=admin_id, action=action_type.value, resource=f"account:{account.id}",
            extra={"amount": str(signed), "balance_after": str(entry.balance_after)}
        )
        if self._event_dispatcher:
            self._event_dispatcher.publish_on_commit(self.storage, EventPayload(
                event_type=DomainEvent.BALANCE_CHANGED,
                entity_type="account",
                entity_id=account.id,
                data={"amount": str(entry.amount), "balance": str(entry.balance_after)}
            ))
        return transaction

    def _find_by_reference(self, reference: str) -> Optional[Transaction]:
        existing = self.storage.find(self.transactions.table_name, {"reference": reference})
        if existing:
            return Transaction.from_dict(existing[0])
        return None

    def _parse_amount(self, amount, allow_negative: bool) -> Decimal:
        try:
            value = to_decimal(amount)
        except (TypeError, ValueError):
            raise ValidationError.for_field("amount", "A valid amount is required")
        if value == 0:
            raise ValidationError.for_field("amount", "Amount must be non-zero")
        if value < 0 and not allow_negative:
            raise ValidationError.for_field("amount", "Amount must be positive")
        if abs(value) > self.max_adjustment_amount:
            raise ValidationError.for_field("amount", f"Amount must not exceed {self.max_adjustment_amount}")
        return value

    @staticmethod
    def _check_reason(description: Optional[str]) -> str:
        reason = (description or "").strip()
        if len(reason) < MIN_REASON_LENGTH:
            raise ValidationError.for_field(
                "description", f"Reason must be at least {MIN_REASON_LENGTH} characters"
            )
        return reason

    def _require_admin(self, admin_id: str) -> None:
        admin = self.users.get_user(admin_id)
        if admin is None or not admin.is_admin or not admin.is_active:
            raise AuthorizationError("Administrator privileges required")
