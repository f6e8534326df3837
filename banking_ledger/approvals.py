"""
Transfer Approval Workflow

Administrators decide on transfers waiting in ``pending_approval``.
Approval moves the money and completes the transfer; rejection records a
mandatory reason, leaves every balance untouched and opens a support
ticket for the customer. Each decision is one atomic unit together with
its AdminAction row and audit event.
"""

from datetime import datetime, timezone
from typing import List, Optional
import threading
import time

from .storage import StorageInterface
from .users import User, UserManager
from .transactions import Transaction, TransactionStatus, TransactionStore
from .transfers import TransferService
from .admin_actions import AdminActionLog, AdminActionType
from .audit import AuditTrail, AuditEventType
from .support import SupportDesk, TicketCategory, TicketPriority
from .errors import AuthorizationError, InvalidStateError, ValidationError
from .events import DomainEvent, EventDispatcher, EventPayload, create_transfer_event
from .logging_config import get_logger, log_action


TRANSFER_EVENTS = (
    DomainEvent.TRANSFER_REQUESTED,
    DomainEvent.TRANSFER_APPROVED,
    DomainEvent.TRANSFER_REJECTED,
    DomainEvent.TRANSFER_SETTLED,
    DomainEvent.TRANSFER_FAILED,
)


class TransferApprovalWorkflow:

    def __init__(
        self,
        storage: StorageInterface,
        user_manager: UserManager,
        transaction_store: TransactionStore,
        transfer_service: TransferService,
        admin_actions: AdminActionLog,
        audit_trail: AuditTrail,
        support_desk: SupportDesk,
        event_dispatcher: Optional[EventDispatcher] = None,
        cache_ttl_seconds: int = 30
    ):
        self.storage = storage
        self.users = user_manager
        self.transactions = transaction_store
        self.transfers = transfer_service
        self.admin_actions = admin_actions
        self.audit_trail = audit_trail
        self.support_desk = support_desk
        self._event_dispatcher = event_dispatcher
        self.cache_ttl_seconds = cache_ttl_seconds
        self.logger = get_logger("banking_ledger.approvals")

        self._cache_lock = threading.Lock()
        self._pending_cache: Optional[List[Transaction]] = None
        self._cached_at = 0.0

        if event_dispatcher:
            for event_type in TRANSFER_EVENTS:
                event_dispatcher.subscribe(event_type, self.invalidate_cache)

    def approve(self, transaction_id: str, admin_id: str, notes: Optional[str] = None) -> Transaction:
        """
        Approve a pending_approval transfer and apply its balance effect.

        Raises:
            AuthorizationError: actor is not an administrator
            InvalidStateError: transfer is not pending_approval (including
                an already approved one, so a repeat never moves money twice)
            InsufficientFundsError: source can no longer cover the total;
                the transfer stays pending_approval
        """
        admin = self._require_admin(admin_id)

        with self.storage.atomic():
            transaction = self._require_pending(transaction_id, "approve")
            self.transfers.post_transfer(transaction, admin.id)

            now = datetime.now(timezone.utc)
            transaction.transition_to(TransactionStatus.COMPLETED)
            transaction.approved_by = admin.id
            transaction.approved_at = now
            transaction.processed_at = now
            if notes and notes.strip():
                transaction.admin_notes = notes.strip()
            self.transactions.save(transaction)

            self.admin_actions.record(
                admin_id=admin.id,
                action_type=AdminActionType.APPROVE_TRANSFER,
                target_type="transaction",
                target_id=transaction.id,
                description=f"Approved transfer {transaction.reference} of "
                            f"{transaction.currency.code} {transaction.amount}",
                metadata={"amount": transaction.amount, "fee": transaction.fee, "notes": transaction.admin_notes}
            )
            self.audit_trail.log_event(
                event_type=AuditEventType.TRANSFER_APPROVED,
                entity_type="transaction",
                entity_id=transaction.id,
                metadata={"total": transaction.total, "notes": transaction.admin_notes},
                user_id=admin.id
            )

        log_action(
            self.logger, "info", "Transfer approved",
            user_id=admin.id, action="approve_transfer", resource=f"transaction:{transaction.id}",
            extra={"amount": str(transaction.amount), "fee": str(transaction.fee)}
        )
        self._publish(DomainEvent.TRANSFER_APPROVED, transaction)
        return transaction

    def reject(self, transaction_id: str, admin_id: str, notes: Optional[str]) -> Transaction:
        """
        Reject a pending_approval transfer. A non-blank reason is required.

        Raises:
            ValidationError: notes missing or blank
            AuthorizationError: actor is not an administrator
            InvalidStateError: transfer is not pending_approval
        """
        admin = self._require_admin(admin_id)
        if not notes or not notes.strip():
            raise ValidationError.for_field("notes", "A reason is required to reject a transfer")
        reason = notes.strip()

        with self.storage.atomic():
            transaction = self._require_pending(transaction_id, "reject")

            transaction.transition_to(TransactionStatus.REJECTED)
            transaction.rejected_by = admin.id
            transaction.rejected_at = datetime.now(timezone.utc)
            transaction.admin_notes = reason
            self.transactions.save(transaction)

            self.admin_actions.record(
                admin_id=admin.id,
                action_type=AdminActionType.REJECT_TRANSFER,
                target_type="transaction",
                target_id=transaction.id,
                description=f"Rejected transfer {transaction.reference}",
                metadata={"reason": reason}
            )
            self.audit_trail.log_event(
                event_type=AuditEventType.TRANSFER_REJECTED,
                entity_type="transaction",
                entity_id=transaction.id,
                metadata={"reason": reason},
                user_id=admin.id
            )
            self.support_desk.create_ticket(
                user_id=transaction.user_id,
                subject=f"Transfer {transaction.reference} was rejected",
                description=reason,
                category=TicketCategory.TRANSFER,
                priority=TicketPriority.HIGH,
                related_transaction_id=transaction.id,
                created_by=admin.id
            )

        log_action(
            self.logger, "info", "Transfer rejected",
            user_id=admin.id, action="reject_transfer", resource=f"transaction:{transaction.id}"
        )
        self._publish(DomainEvent.TRANSFER_REJECTED, transaction)
        return transaction

    def list_pending(self) -> List[Transaction]:
        """Transfers awaiting a decision, oldest first"""
        with self._cache_lock:
            fresh = time.monotonic() - self._cached_at < self.cache_ttl_seconds
            if self._pending_cache is not None and fresh:
                return list(self._pending_cache)
            pending = self.transactions.list_by_status(TransactionStatus.PENDING_APPROVAL)
            self._pending_cache = pending
            self._cached_at = time.monotonic()
            return list(pending)

    def invalidate_cache(self, event: Optional[EventPayload] = None) -> None:
        with self._cache_lock:
            self._pending_cache = None

    def _require_admin(self, admin_id: str) -> User:
        admin = self.users.get_user(admin_id)
        if admin is None or not admin.is_admin or not admin.is_active:
            raise AuthorizationError("Administrator privileges required")
        return admin

    def _require_pending(self, transaction_id: str, verb: str) -> Transaction:
        transaction = self.transactions.require(transaction_id)
        if transaction.status != TransactionStatus.PENDING_APPROVAL:
            raise InvalidStateError(
                f"Cannot {verb} transaction {transaction_id}: status is {transaction.status.value}"
            )
        return transaction

    def _publish(self, event_type: DomainEvent, transaction: Transaction) -> None:
        if self._event_dispatcher:
            self._event_dispatcher.publish_on_commit(
                self.storage, create_transfer_event(event_type, transaction)
            )
        else:
            self.invalidate_cache()
