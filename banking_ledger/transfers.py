"""
Transfer Request Module

Validates and records outgoing transfers. A request is checked field by
field for its transfer method, priced with the fee schedule, checked
against the source balance, authorised by consuming a PIN verification
token, and only then persisted. Large transfers wait for an administrator
(``pending_approval``); the rest are ``pending`` and settle through the
same balance mutation path used by approvals.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, fields
from typing import Dict, List, Optional, Tuple, Union
from enum import Enum
import re

from .currency import Currency, quantize, to_decimal
from .storage import StorageInterface
from .users import UserManager
from .accounts import Account, AccountManager, SystemAccountRole
from .transactions import Transaction, TransactionStatus, TransactionStore, TransactionType
from .ledger import BalanceMutator
from .pin import PinGate, PinPurpose
from .audit import AuditTrail, AuditEventType
from .cards import CARD_NUMBER_PATTERN, mask_card_number, normalize_card_number
from .errors import (
    AuthorizationError, InsufficientFundsError, InvalidStateError,
    NotFoundError, ValidationError,
)
from .events import DomainEvent, EventDispatcher, create_transfer_event
from .logging_config import get_logger, log_action


SWIFT_PATTERN = re.compile(r"^[A-Z0-9]{8,11}$")
ROUTING_PATTERN = re.compile(r"^\d{9}$")
MOBILE_PATTERN = re.compile(r"^\+?\d{7,15}$")


class TransferMethod(Enum):
    INTERNATIONAL = "international"
    DOMESTIC = "domestic"
    CARD = "card"
    MOBILE = "mobile"
    INTERNAL = "internal"


REQUIRED_FIELDS: Dict[TransferMethod, Tuple[str, ...]] = {
    TransferMethod.INTERNATIONAL: (
        "recipient_country", "recipient_address", "recipient_city", "bank_name",
        "bank_address", "bank_city", "bank_country", "swift_code", "account_number",
    ),
    TransferMethod.DOMESTIC: ("routing_number", "account_number"),
    TransferMethod.CARD: ("card_number",),
    TransferMethod.MOBILE: ("mobile_number", "mobile_provider"),
    TransferMethod.INTERNAL: ("account_number",),
}


@dataclass
class TransferRequest:
    """Raw transfer input as submitted by the customer"""
    amount: Union[str, int, Decimal, None]
    transfer_method: str
    recipient_name: Optional[str] = None
    purpose: Optional[str] = None
    currency: str = "USD"
    from_account_id: Optional[str] = None
    account_number: Optional[str] = None
    recipient_country: Optional[str] = None
    recipient_address: Optional[str] = None
    recipient_city: Optional[str] = None
    bank_name: Optional[str] = None
    bank_address: Optional[str] = None
    bank_city: Optional[str] = None
    bank_country: Optional[str] = None
    swift_code: Optional[str] = None
    routing_number: Optional[str] = None
    card_number: Optional[str] = None
    mobile_number: Optional[str] = None
    mobile_provider: Optional[str] = None
    description: Optional[str] = None

    def cleaned(self) -> "TransferRequest":
        """Copy with surrounding whitespace stripped and blanks turned into None"""
        values = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, str):
                value = value.strip() or None
            values[f.name] = value
        if values["swift_code"]:
            values["swift_code"] = values["swift_code"].upper()
        return TransferRequest(**values)


@dataclass
class ValidatedTransfer:
    request: TransferRequest
    method: TransferMethod
    amount: Decimal
    currency: Currency
    fee: Decimal
    total: Decimal


def calculate_fee(method: TransferMethod, amount: Decimal, currency: Currency = Currency.USD) -> Decimal:
    """
    Fee charged on top of the transfer amount, rounded half-up.

    >>> calculate_fee(TransferMethod.INTERNATIONAL, Decimal("15000"))
    Decimal('50.00')
    """
    if method == TransferMethod.INTERNATIONAL:
        fee = max(Decimal("25"), min(Decimal("50"), amount * Decimal("0.01")))
    elif method == TransferMethod.DOMESTIC:
        fee = Decimal("15") if amount > Decimal("1000") else Decimal("0")
    elif method == TransferMethod.CARD:
        fee = amount * Decimal("0.025") + Decimal("5")
    elif method == TransferMethod.MOBILE:
        fee = max(Decimal("3"), min(Decimal("15"), amount * Decimal("0.015")))
    else:
        fee = Decimal("0")
    return quantize(fee, currency)


def validate_transfer_request(
    request: TransferRequest,
    min_amount: Decimal = Decimal("0.01"),
    max_amount: Decimal = Decimal("1000000.00")
) -> ValidatedTransfer:
    """
    Check every field for the request's method and price the transfer.

    Raises:
        ValidationError: with one message per offending field
    """
    request = request.cleaned()
    errors: Dict[str, str] = {}

    method = None
    try:
        method = TransferMethod((request.transfer_method or "").lower())
    except ValueError:
        errors["transfer_method"] = "Unsupported transfer method"

    currency = None
    try:
        currency = Currency.from_code(request.currency or "")
    except ValueError:
        errors["currency"] = "Unsupported currency"

    amount = None
    try:
        amount = to_decimal(request.amount) if request.amount is not None else None
    except (TypeError, ValueError):
        pass
    if amount is None:
        errors["amount"] = "A valid amount is required"
    elif amount <= 0:
        errors["amount"] = "Amount must be greater than zero"
    elif amount < min_amount:
        errors["amount"] = f"Amount must be at least {min_amount}"
    elif amount > max_amount:
        errors["amount"] = f"Amount must not exceed {max_amount}"
    elif currency is not None and amount != quantize(amount, currency):
        errors["amount"] = f"Amount has more than {currency.precision} decimal places"

    if not request.recipient_name:
        errors["recipient_name"] = "Recipient name is required"
    if not request.purpose:
        errors["purpose"] = "Purpose is required"

    if method is not None:
        for name in REQUIRED_FIELDS[method]:
            if not getattr(request, name):
                errors[name] = f"{name.replace('_', ' ').capitalize()} is required"

        if request.swift_code and method == TransferMethod.INTERNATIONAL \
                and not SWIFT_PATTERN.match(request.swift_code):
            errors["swift_code"] = "SWIFT code must be 8 to 11 letters or digits"
        if request.routing_number and method == TransferMethod.DOMESTIC \
                and not ROUTING_PATTERN.match(request.routing_number):
            errors["routing_number"] = "Routing number must be 9 digits"
        if request.card_number and method == TransferMethod.CARD \
                and not CARD_NUMBER_PATTERN.match(normalize_card_number(request.card_number)):
            errors["card_number"] = "Card number must be 13 to 19 digits"
        if request.mobile_number and method == TransferMethod.MOBILE \
                and not MOBILE_PATTERN.match(re.sub(r"[\s-]", "", request.mobile_number)):
            errors["mobile_number"] = "Invalid mobile number"

    if errors:
        raise ValidationError("Invalid transfer request", errors)

    fee = calculate_fee(method, amount, currency)
    amount = quantize(amount, currency)
    return ValidatedTransfer(
        request=request,
        method=method,
        amount=amount,
        currency=currency,
        fee=fee,
        total=amount + fee
    )


class TransferService:
    """
    Transfer submission, settlement of sub-threshold transfers, and the
    shared posting routine that moves the money
    """

    def __init__(
        self,
        storage: StorageInterface,
        user_manager: UserManager,
        account_manager: AccountManager,
        transaction_store: TransactionStore,
        balance_mutator: BalanceMutator,
        pin_gate: PinGate,
        audit_trail: AuditTrail,
        event_dispatcher: Optional[EventDispatcher] = None,
        approval_threshold: Decimal = Decimal("10000.00"),
        min_transfer_amount: Decimal = Decimal("0.01"),
        max_transfer_amount: Decimal = Decimal("1000000.00")
    ):
        self.storage = storage
        self.users = user_manager
        self.accounts = account_manager
        self.transactions = transaction_store
        self.mutator = balance_mutator
        self.pin_gate = pin_gate
        self.audit_trail = audit_trail
        self._event_dispatcher = event_dispatcher
        self.approval_threshold = approval_threshold
        self.min_transfer_amount = min_transfer_amount
        self.max_transfer_amount = max_transfer_amount
        self.logger = get_logger("banking_ledger.transfers")

    def submit_transfer(self, user_id: str, request: TransferRequest,
                        verification_token: Optional[str]) -> Transaction:
        """
        Validate, authorise and record a transfer.

        Args:
            user_id: Customer initiating the transfer
            request: Transfer details
            verification_token: Token from a successful PIN check

        Returns:
            The persisted Transaction (status pending or pending_approval)

        Raises:
            ValidationError: bad or missing fields; nothing is persisted
            InsufficientFundsError: source balance cannot cover amount + fee
            AuthenticationError: token missing, spent, expired or foreign
            AuthorizationError: user inactive or not yet verified
            PersistenceError: the store rejected the write
        """
        user = self.users.require_user(user_id)
        if not user.is_active or not user.is_verified:
            raise AuthorizationError("Account is not yet verified for transfers")

        validated = validate_transfer_request(request, self.min_transfer_amount, self.max_transfer_amount)
        source, destination = self._resolve_accounts(user_id, validated)

        available = source.balance - self.accounts.effective_minimum_balance(source)
        if validated.total > available:
            raise InsufficientFundsError(source.id, str(available), str(validated.total))

        self.pin_gate.consume_token(verification_token, user_id, PinPurpose.TRANSFER)

        status = (
            TransactionStatus.PENDING_APPROVAL
            if validated.amount >= self.approval_threshold
            else TransactionStatus.PENDING
        )
        req = validated.request
        transaction = self.transactions.new_transaction(
            user_id=user_id,
            amount=validated.amount,
            currency=validated.currency,
            transaction_type=TransactionType.TRANSFER,
            status=status,
            from_account_id=source.id,
            to_account_id=destination.id if destination else None,
            recipient_name=req.recipient_name,
            recipient_account=req.account_number,
            recipient_country=req.recipient_country,
            recipient_address=req.recipient_address,
            recipient_city=req.recipient_city,
            bank_name=req.bank_name,
            bank_address=req.bank_address,
            bank_city=req.bank_city,
            bank_country=req.bank_country,
            swift_code=req.swift_code,
            routing_number=req.routing_number,
            card_number=mask_card_number(req.card_number) if req.card_number else None,
            mobile_number=req.mobile_number,
            mobile_provider=req.mobile_provider,
            transfer_method=validated.method.value,
            fee=validated.fee,
            total=validated.total,
            purpose=req.purpose,
            description=req.description or f"{validated.method.value.capitalize()} transfer to {req.recipient_name}",
            category="transfer"
        )

        with self.storage.atomic():
            self.transactions.save(transaction)
            self.audit_trail.log_event(
                event_type=AuditEventType.TRANSFER_REQUESTED,
                entity_type="transaction",
                entity_id=transaction.id,
                metadata={
                    "amount": transaction.amount,
                    "fee": transaction.fee,
                    "total": transaction.total,
                    "method": transaction.transfer_method,
                    "status": status.value
                },
                user_id=user_id
            )

        log_action(
            self.logger, "info", "Transfer submitted",
            user_id=user_id, action="submit_transfer", resource=f"transaction:{transaction.id}",
            extra={
                "amount": str(transaction.amount),
                "fee": str(transaction.fee),
                "method": transaction.transfer_method,
                "status": status.value,
                "reference": transaction.reference
            }
        )
        self._publish(DomainEvent.TRANSFER_REQUESTED, transaction)
        return transaction

    def post_transfer(self, transaction: Transaction, actor_id: Optional[str] = None) -> None:
        """
        Move the money for a transfer: debit the source by the total,
        credit the destination (or external settlement) by the amount and
        the fee income account by the fee.

        Must run inside the caller's atomic scope alongside the status change.
        """
        if transaction.from_account_id is None:
            raise InvalidStateError(f"Transaction {transaction.id} has no source account")

        label = transaction.reference or transaction.id
        self.mutator.apply(
            transaction.from_account_id, -transaction.total,
            f"Transfer {label}", f"{transaction.id}:debit",
            transaction_id=transaction.id, actor_id=actor_id
        )

        if transaction.to_account_id:
            destination_id = transaction.to_account_id
        else:
            destination_id = self.accounts.system_account(
                SystemAccountRole.EXTERNAL_SETTLEMENT, transaction.currency
            ).id
        self.mutator.apply(
            destination_id, transaction.amount,
            f"Transfer {label}", f"{transaction.id}:credit",
            transaction_id=transaction.id, actor_id=actor_id
        )

        if transaction.fee > 0:
            fee_account = self.accounts.system_account(SystemAccountRole.FEE_INCOME, transaction.currency)
            self.mutator.apply(
                fee_account.id, transaction.fee,
                f"Transfer fee {label}", f"{transaction.id}:fee",
                transaction_id=transaction.id, actor_id=actor_id
            )

    def settle_pending(self, transaction_id: str, actor_id: Optional[str] = None) -> Transaction:
        """
        Settle a sub-threshold ``pending`` transfer.

        Completes it through the balance mutator; if the source can no
        longer cover the total the transfer is marked ``failed`` instead
        and no balance changes.
        """
        try:
            with self.storage.atomic():
                transaction = self.transactions.require(transaction_id)
                if transaction.status != TransactionStatus.PENDING:
                    raise InvalidStateError(
                        f"Transaction {transaction_id} is {transaction.status.value}, not pending"
                    )
                self.post_transfer(transaction, actor_id)
                transaction.transition_to(TransactionStatus.COMPLETED)
                transaction.processed_at = datetime.now(timezone.utc)
                self.transactions.save(transaction)
                self.audit_trail.log_event(
                    event_type=AuditEventType.TRANSFER_SETTLED,
                    entity_type="transaction",
                    entity_id=transaction.id,
                    metadata={"total": transaction.total},
                    user_id=actor_id
                )
        except InsufficientFundsError as e:
            with self.storage.atomic():
                transaction = self.transactions.require(transaction_id)
                transaction.transition_to(TransactionStatus.FAILED)
                transaction.processed_at = datetime.now(timezone.utc)
                transaction.error_message = e.message
                self.transactions.save(transaction)
                self.audit_trail.log_event(
                    event_type=AuditEventType.TRANSFER_FAILED,
                    entity_type="transaction",
                    entity_id=transaction.id,
                    metadata={"reason": "insufficient_funds"},
                    user_id=actor_id
                )
            log_action(
                self.logger, "warning", "Transfer settlement failed",
                user_id=transaction.user_id, action="settle_transfer",
                resource=f"transaction:{transaction.id}", extra={"reason": "insufficient_funds"}
            )
            self._publish(DomainEvent.TRANSFER_FAILED, transaction)
            return transaction

        log_action(
            self.logger, "info", "Transfer settled",
            user_id=transaction.user_id, action="settle_transfer",
            resource=f"transaction:{transaction.id}"
        )
        self._publish(DomainEvent.TRANSFER_SETTLED, transaction)
        return transaction

    def get_transfer(self, transaction_id: str, user_id: Optional[str] = None) -> Transaction:
        """Fetch a transfer; with ``user_id`` only the owner's transfers are visible"""
        transaction = self.transactions.require(transaction_id)
        if user_id is not None and transaction.user_id != user_id:
            raise NotFoundError("transaction", transaction_id)
        return transaction

    def get_user_transfers(self, user_id: str,
                           status: Optional[TransactionStatus] = None) -> List[Transaction]:
        transfers = [
            t for t in self.transactions.list_for_user(user_id)
            if t.transaction_type == TransactionType.TRANSFER
        ]
        if status is not None:
            transfers = [t for t in transfers if t.status == status]
        return transfers

    def _resolve_accounts(self, user_id: str,
                          validated: ValidatedTransfer) -> Tuple[Account, Optional[Account]]:
        request = validated.request
        if request.from_account_id:
            source = self.accounts.get_account(request.from_account_id)
            if source is None or source.user_id != user_id:
                raise ValidationError.for_field("from_account_id", "Source account not found")
        else:
            source = self.accounts.primary_account(user_id)
            if source is None:
                raise ValidationError.for_field("from_account_id", "No active account to transfer from")
        if not source.is_active:
            raise ValidationError.for_field("from_account_id", "Source account is not active")
        if source.currency != validated.currency:
            raise ValidationError.for_field("currency", "Currency does not match the source account")

        destination = None
        if validated.method == TransferMethod.INTERNAL:
            destination = self.accounts.get_account_by_number(request.account_number)
            if destination is None or destination.is_system or not destination.is_active:
                raise ValidationError.for_field("account_number", "Destination account not found")
            if destination.id == source.id:
                raise ValidationError.for_field("account_number", "Cannot transfer to the same account")
            if destination.currency != source.currency:
                raise ValidationError.for_field("account_number", "Destination account uses a different currency")
        return source, destination

    def _publish(self, event_type: DomainEvent, transaction: Transaction) -> None:
        if self._event_dispatcher:
            self._event_dispatcher.publish_on_commit(
                self.storage, create_transfer_event(event_type, transaction)
            )
