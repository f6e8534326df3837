"""
Transaction Records Module

Transaction rows and the status state machine. A transaction's balance
effect is applied exactly once, when it enters ``completed``; terminal
statuses never change again.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Optional
from enum import Enum
import secrets
import time
import uuid

from .currency import Currency
from .storage import StorageInterface, StorageRecord
from .errors import InvalidStateError, NotFoundError


class TransactionType(Enum):
    CREDIT = "credit"
    DEBIT = "debit"
    TRANSFER = "transfer"


class TransactionStatus(Enum):
    PENDING = "pending"                    # Eligible for immediate settlement
    PENDING_APPROVAL = "pending_approval"  # Waiting on an administrator
    COMPLETED = "completed"
    REJECTED = "rejected"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: FrozenSet[TransactionStatus] = frozenset({
    TransactionStatus.COMPLETED,
    TransactionStatus.REJECTED,
    TransactionStatus.FAILED,
})

ALLOWED_TRANSITIONS: Dict[TransactionStatus, FrozenSet[TransactionStatus]] = {
    TransactionStatus.PENDING: frozenset({TransactionStatus.COMPLETED, TransactionStatus.FAILED}),
    TransactionStatus.PENDING_APPROVAL: frozenset({TransactionStatus.COMPLETED, TransactionStatus.REJECTED}),
}


@dataclass
class Transaction(StorageRecord):
    """
    A value movement. Transfers carry either an internal destination
    account or external recipient details.
    """
    user_id: str
    amount: Decimal
    currency: Currency
    transaction_type: TransactionType
    status: TransactionStatus
    from_account_id: Optional[str] = None
    to_account_id: Optional[str] = None

    # External recipient
    recipient_name: Optional[str] = None
    recipient_account: Optional[str] = None
    recipient_country: Optional[str] = None
    recipient_address: Optional[str] = None
    recipient_city: Optional[str] = None
    bank_name: Optional[str] = None
    bank_address: Optional[str] = None
    bank_city: Optional[str] = None
    bank_country: Optional[str] = None
    swift_code: Optional[str] = None
    routing_number: Optional[str] = None
    card_number: Optional[str] = None  # masked
    mobile_number: Optional[str] = None
    mobile_provider: Optional[str] = None

    transfer_method: Optional[str] = None
    fee: Decimal = Decimal('0')
    total: Decimal = Decimal('0')
    purpose: Optional[str] = None
    reference: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None

    # Decision trail
    admin_notes: Optional[str] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    rejected_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    error_message: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def is_external(self) -> bool:
        return self.transaction_type == TransactionType.TRANSFER and self.to_account_id is None

    def transition_to(self, new_status: TransactionStatus) -> None:
        """Move to a new status, refusing anything the state machine forbids"""
        allowed = ALLOWED_TRANSITIONS.get(self.status, frozenset())
        if new_status not in allowed:
            raise InvalidStateError(
                f"Transaction {self.id} cannot move from {self.status.value} to {new_status.value}"
            )
        self.status = new_status
        self.touch()


def generate_reference() -> str:
    """Customer-facing reference of the form WB-<millis>-<random>"""
    return f"WB-{int(time.time() * 1000)}-{secrets.token_hex(3).upper()}"


class TransactionStore:
    """
    Persistence and queries for transaction rows
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "transactions"

    def new_transaction(self, **fields) -> Transaction:
        now = datetime.now(timezone.utc)
        fields.setdefault("reference", generate_reference())
        return Transaction(id=str(uuid.uuid4()), created_at=now, updated_at=now, **fields)

    def save(self, transaction: Transaction) -> None:
        self.storage.save(self.table_name, transaction.id, transaction.to_dict())

    def get(self, transaction_id: str) -> Optional[Transaction]:
        data = self.storage.load(self.table_name, transaction_id)
        if data:
            return Transaction.from_dict(data)
        return None

    def require(self, transaction_id: str) -> Transaction:
        transaction = self.get(transaction_id)
        if transaction is None:
            raise NotFoundError("transaction", transaction_id)
        return transaction

    def list_for_user(self, user_id: str) -> List[Transaction]:
        """Newest first"""
        return self._newest_first(self.storage.find(self.table_name, {"user_id": user_id}))

    def list_for_account(self, account_id: str) -> List[Transaction]:
        rows = [
            data for data in self.storage.load_all(self.table_name)
            if account_id in (data.get("from_account_id"), data.get("to_account_id"))
        ]
        return self._newest_first(rows)

    def list_by_status(self, status: TransactionStatus) -> List[Transaction]:
        """Oldest first, so queues are worked in arrival order"""
        return [Transaction.from_dict(data) for data in self.storage.find(self.table_name, {"status": status.value})]

    @staticmethod
    def _newest_first(rows: List[dict]) -> List[Transaction]:
        return [Transaction.from_dict(data) for data in reversed(rows)]
