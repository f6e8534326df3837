"""
Event System Module

In-process publish/subscribe dispatcher standing in for the realtime change
feed. Subscribers (cache invalidation, notifications) see transfer and
balance events after the change has been committed.
"""

from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
import uuid
from threading import RLock

from .logging_config import get_logger
from .storage import StorageInterface


class DomainEvent(Enum):
    """Domain events that can occur in the ledger"""

    # Transfer events
    TRANSFER_REQUESTED = "transfer.requested"
    TRANSFER_APPROVED = "transfer.approved"
    TRANSFER_REJECTED = "transfer.rejected"
    TRANSFER_SETTLED = "transfer.settled"
    TRANSFER_FAILED = "transfer.failed"

    # Balance events
    BALANCE_CHANGED = "balance.changed"

    # Customer events
    CUSTOMER_CREATED = "customer.created"
    CUSTOMER_VERIFIED = "customer.verified"

    # Peripheral events
    SUPPORT_TICKET_CREATED = "support.ticket_created"
    CARD_LOCK_CHANGED = "card.lock_changed"


@dataclass
class EventPayload:
    """Payload for domain events"""
    event_type: DomainEvent
    entity_type: str
    entity_id: str
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'data': self.data,
            'timestamp': self.timestamp.isoformat(),
            'event_id': self.event_id
        }


def _handler_name(handler: Callable) -> str:
    return getattr(handler, '__name__', repr(handler))


class EventDispatcher:
    """Central event dispatcher, publish/subscribe pattern"""

    def __init__(self):
        self._handlers: Dict[DomainEvent, List[Callable]] = {}
        self._global_handlers: List[Callable] = []
        self._lock = RLock()
        self.logger = get_logger("banking_ledger.events")

    def subscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        """Subscribe to a specific event type"""
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)
            self.logger.debug(f"Subscribed handler {_handler_name(handler)} to {event_type.value}")

    def subscribe_all(self, handler: Callable) -> None:
        """Subscribe to ALL events"""
        with self._lock:
            self._global_handlers.append(handler)
            self.logger.debug(f"Subscribed global handler {_handler_name(handler)}")

    def unsubscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        with self._lock:
            try:
                self._handlers.get(event_type, []).remove(handler)
            except ValueError:
                self.logger.warning(
                    f"Handler {_handler_name(handler)} was not subscribed to {event_type.value}"
                )

    def publish(self, event: EventPayload) -> None:
        """
        Publish event to all subscribers.

        A failing subscriber is logged and skipped; it never breaks the
        operation that published the event.
        """
        with self._lock:
            handlers = list(self._handlers.get(event.event_type, [])) + list(self._global_handlers)

        self.logger.debug(
            f"Publishing event {event.event_type.value} for {event.entity_type}:{event.entity_id}"
        )
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                self.logger.exception(
                    f"Error in event handler {_handler_name(handler)} for {event.event_type.value}"
                )

    def publish_on_commit(self, storage: StorageInterface, event: EventPayload) -> None:
        """Publish ``event`` once the storage's open atomic scope commits"""
        storage.after_commit(lambda: self.publish(event))

    def clear(self) -> None:
        with self._lock:
            self._handlers.clear()
            self._global_handlers.clear()

    def get_handler_count(self, event_type: Optional[DomainEvent] = None) -> int:
        """Get count of handlers for a specific event type or all"""
        with self._lock:
            if event_type:
                return len(self._handlers.get(event_type, []))
            total = sum(len(handlers) for handlers in self._handlers.values())
            return total + len(self._global_handlers)


def create_transfer_event(event_type: DomainEvent, transaction) -> EventPayload:
    """Create a transfer-related event"""
    return EventPayload(
        event_type=event_type,
        entity_type="transaction",
        entity_id=transaction.id,
        data={
            "user_id": transaction.user_id,
            "amount": str(transaction.amount),
            "fee": str(transaction.fee),
            "total": str(transaction.total),
            "currency": transaction.currency.code,
            "status": transaction.status.value,
            "transfer_method": transaction.transfer_method,
            "reference": transaction.reference,
        }
    )
