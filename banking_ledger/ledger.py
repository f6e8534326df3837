"""
Balance Mutation Engine

The single primitive that changes an account balance. Each mutation reads
the balance, applies a signed delta, enforces the account's minimum
balance, writes the new balance with a version check and appends an
immutable ledger entry, all inside one atomic scope. Mutations are keyed
by an idempotency key so a replay never applies twice.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union
import uuid

from .currency import Currency, quantize, to_decimal
from .storage import StorageInterface, StorageRecord
from .accounts import AccountManager
from .errors import InsufficientFundsError, InvalidStateError, ValidationError
from .events import DomainEvent, EventDispatcher, EventPayload
from .logging_config import get_logger, log_action


@dataclass
class LedgerEntry(StorageRecord):
    """
    One applied balance mutation. Immutable once written.
    """
    account_id: str
    amount: Decimal  # signed: credit > 0, debit < 0
    balance_before: Decimal
    balance_after: Decimal
    currency: Currency
    description: str
    idempotency_key: str
    transaction_id: Optional[str] = None
    actor_id: Optional[str] = None

    @property
    def is_credit(self) -> bool:
        return self.amount > 0


class BalanceMutator:
    """
    Atomic, idempotent balance mutation
    """

    def __init__(
        self,
        storage: StorageInterface,
        account_manager: AccountManager,
        event_dispatcher: Optional[EventDispatcher] = None
    ):
        self.storage = storage
        self.accounts = account_manager
        self.entries_table = "ledger_entries"
        self.keys_table = "ledger_idempotency_keys"
        self._event_dispatcher = event_dispatcher
        self.logger = get_logger("banking_ledger.ledger")

    def apply(
        self,
        account_id: str,
        signed_amount: Union[str, int, Decimal],
        description: str,
        idempotency_key: str,
        transaction_id: Optional[str] = None,
        actor_id: Optional[str] = None
    ) -> LedgerEntry:
        """
        Apply a signed delta to an account balance.

        Args:
            account_id: Account to mutate
            signed_amount: Positive to credit, negative to debit
            description: Human-readable reason, stored on the entry
            idempotency_key: Unique key; a replay returns the original entry
            transaction_id: Transaction this mutation belongs to, if any
            actor_id: User who caused the mutation

        Returns:
            The LedgerEntry recording the mutation

        Raises:
            ValidationError: zero amount or missing key
            InsufficientFundsError: debit would go below the minimum balance
            InvalidStateError: inactive account, or key reused for a different mutation
            ConcurrentModificationError: balance changed underneath the write
        """
        if not idempotency_key:
            raise ValidationError.for_field("idempotency_key", "Idempotency key is required")
        amount = to_decimal(signed_amount)

        outermost = not self.storage.in_transaction
        with self.storage.atomic():
            existing = self.find_by_idempotency_key(idempotency_key)
            if existing is not None:
                if existing.account_id != account_id or existing.amount != quantize(amount, existing.currency):
                    raise InvalidStateError(
                        f"Idempotency key {idempotency_key} already used for a different mutation"
                    )
                return existing

            with self.storage.record_lock(self.accounts.table_name, account_id):
                account = self.accounts.require_account(account_id)
                if not account.is_active:
                    raise InvalidStateError(f"Account {account.account_number} is not active")

                delta = quantize(amount, account.currency)
                if delta == 0:
                    raise ValidationError.for_field("amount", "Amount must be non-zero")

                balance_before = account.balance
                balance_after = balance_before + delta
                minimum = self.accounts.effective_minimum_balance(account)
                if delta < 0 and balance_after < minimum:
                    raise InsufficientFundsError(
                        account.id,
                        str(quantize(balance_before - minimum, account.currency)),
                        str(-delta)
                    )

                self.accounts.write_balance(account, balance_after)

                now = datetime.now(timezone.utc)
                entry = LedgerEntry(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    account_id=account.id,
                    amount=delta,
                    balance_before=balance_before,
                    balance_after=account.balance,
                    currency=account.currency,
                    description=description,
                    idempotency_key=idempotency_key,
                    transaction_id=transaction_id,
                    actor_id=actor_id
                )
                self.storage.save(self.entries_table, entry.id, entry.to_dict())
                self.storage.save(self.keys_table, idempotency_key, {"entry_id": entry.id})

        log_action(
            self.logger, "info", "Balance mutated",
            user_id=actor_id, action="apply_balance_mutation",
            resource=f"account:{account_id}",
            extra={
                "amount": str(entry.amount),
                "balance_after": str(entry.balance_after),
                "transaction_id": transaction_id,
                "idempotency_key": idempotency_key
            }
        )

        # Enclosing scopes publish their own events once they commit
        if outermost and self._event_dispatcher:
            self._event_dispatcher.publish(EventPayload(
                event_type=DomainEvent.BALANCE_CHANGED,
                entity_type="account",
                entity_id=account_id,
                data={"amount": str(entry.amount), "balance": str(entry.balance_after)}
            ))

        return entry

    def find_by_idempotency_key(self, idempotency_key: str) -> Optional[LedgerEntry]:
        key = self.storage.load(self.keys_table, idempotency_key)
        if key is None:
            return None
        data = self.storage.load(self.entries_table, key["entry_id"])
        return LedgerEntry.from_dict(data) if data else None

    def get_entries(self, account_id: str, limit: Optional[int] = None) -> List[LedgerEntry]:
        """Entries for an account, oldest first"""
        entries = [
            LedgerEntry.from_dict(data)
            for data in self.storage.find(self.entries_table, {"account_id": account_id})
        ]
        if limit:
            entries = entries[-limit:]
        return entries

    def get_transaction_entries(self, transaction_id: str) -> List[LedgerEntry]:
        return [
            LedgerEntry.from_dict(data)
            for data in self.storage.find(self.entries_table, {"transaction_id": transaction_id})
        ]

    def replay_balance(self, account_id: str) -> Decimal:
        """Recompute a balance from its ledger entries"""
        account = self.accounts.require_account(account_id)
        total = sum((entry.amount for entry in self.get_entries(account_id)), Decimal('0'))
        return quantize(total, account.currency)

    def reconcile(self, account_id: str) -> Dict[str, Any]:
        """Compare the stored balance with the replayed ledger"""
        account = self.accounts.require_account(account_id)
        replayed = self.replay_balance(account_id)
        return {
            "account_id": account_id,
            "stored_balance": str(account.balance),
            "ledger_balance": str(replayed),
            "balanced": account.balance == replayed
        }
