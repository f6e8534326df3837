"""
Support Ticket Module

Customer support tickets. Rejected transfers open a ticket automatically so
the customer hears why.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from enum import Enum
import uuid

from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .errors import NotFoundError, ValidationError
from .events import DomainEvent, EventDispatcher, EventPayload


class TicketStatus(Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    CLOSED = "closed"


class TicketPriority(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class TicketCategory(Enum):
    TRANSFER = "transfer"
    ACCOUNT = "account"
    TECHNICAL = "technical"
    BILLING = "billing"


@dataclass
class SupportTicket(StorageRecord):
    user_id: str
    subject: str
    description: str
    priority: TicketPriority = TicketPriority.MEDIUM
    status: TicketStatus = TicketStatus.OPEN
    category: Optional[TicketCategory] = None
    assigned_to: Optional[str] = None
    admin_notes: Optional[str] = None
    resolution: Optional[str] = None
    resolved_at: Optional[datetime] = None
    related_transaction_id: Optional[str] = None


class SupportDesk:
    """
    Ticket creation, listing and updates
    """

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail,
                 event_dispatcher: Optional[EventDispatcher] = None):
        self.storage = storage
        self.audit_trail = audit_trail
        self.table_name = "support_tickets"
        self._event_dispatcher = event_dispatcher

    def create_ticket(
        self,
        user_id: str,
        subject: str,
        description: str,
        category: Optional[TicketCategory] = None,
        priority: TicketPriority = TicketPriority.MEDIUM,
        related_transaction_id: Optional[str] = None,
        created_by: Optional[str] = None
    ) -> SupportTicket:
        errors = {}
        if not (subject or "").strip():
            errors["subject"] = "Subject is required"
        if not (description or "").strip():
            errors["description"] = "Description is required"
        if errors:
            raise ValidationError("Invalid support ticket", errors)

        now = datetime.now(timezone.utc)
        ticket = SupportTicket(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            subject=subject.strip(),
            description=description.strip(),
            category=category,
            priority=priority,
            related_transaction_id=related_transaction_id
        )
        with self.storage.atomic():
            self.storage.save(self.table_name, ticket.id, ticket.to_dict())
            self.audit_trail.log_event(
                event_type=AuditEventType.SUPPORT_TICKET_CREATED,
                entity_type="support_ticket",
                entity_id=ticket.id,
                metadata={"subject": ticket.subject, "related_transaction_id": related_transaction_id},
                user_id=created_by or user_id
            )

        if self._event_dispatcher:
            self._event_dispatcher.publish_on_commit(self.storage, EventPayload(
                event_type=DomainEvent.SUPPORT_TICKET_CREATED,
                entity_type="support_ticket",
                entity_id=ticket.id,
                data={"user_id": user_id, "subject": ticket.subject}
            ))
        return ticket

    def get_ticket(self, ticket_id: str) -> Optional[SupportTicket]:
        data = self.storage.load(self.table_name, ticket_id)
        if data:
            return SupportTicket.from_dict(data)
        return None

    def list_tickets(self, status: Optional[TicketStatus] = None,
                     user_id: Optional[str] = None) -> List[SupportTicket]:
        """Newest first"""
        filters: Dict[str, Any] = {}
        if status:
            filters["status"] = status.value
        if user_id:
            filters["user_id"] = user_id
        tickets = [SupportTicket.from_dict(data) for data in self.storage.find(self.table_name, filters)]
        tickets.reverse()
        return tickets

    def update_ticket(
        self,
        ticket_id: str,
        updated_by: str,
        status: Optional[TicketStatus] = None,
        priority: Optional[TicketPriority] = None,
        assigned_to: Optional[str] = None,
        admin_notes: Optional[str] = None,
        resolution: Optional[str] = None
    ) -> SupportTicket:
        """
        Update a ticket. Moving to resolved stamps ``resolved_at``; a
        closed ticket accepts no further changes.
        """
        with self.storage.atomic():
            ticket = self.get_ticket(ticket_id)
            if ticket is None:
                raise NotFoundError("support ticket", ticket_id)
            if ticket.status == TicketStatus.CLOSED:
                raise ValidationError.for_field("status", "Closed tickets cannot be changed")

            changes: Dict[str, Any] = {}
            if status is not None and status != ticket.status:
                changes["status"] = status.value
                ticket.status = status
                if status in (TicketStatus.RESOLVED, TicketStatus.CLOSED) and ticket.resolved_at is None:
                    ticket.resolved_at = datetime.now(timezone.utc)
            if priority is not None:
                changes["priority"] = priority.value
                ticket.priority = priority
            if assigned_to is not None:
                changes["assigned_to"] = assigned_to
                ticket.assigned_to = assigned_to
            if admin_notes is not None:
                changes["admin_notes"] = admin_notes
                ticket.admin_notes = admin_notes
            if resolution is not None:
                changes["resolution"] = resolution
                ticket.resolution = resolution

            ticket.touch()
            self.storage.save(self.table_name, ticket.id, ticket.to_dict())
            self.audit_trail.log_event(
                event_type=AuditEventType.SUPPORT_TICKET_UPDATED,
                entity_type="support_ticket",
                entity_id=ticket.id,
                metadata=changes,
                user_id=updated_by
            )
        return ticket

    def respond(self, ticket_id: str, admin_id: str, message: str) -> SupportTicket:
        """Record an admin response and move an open ticket into progress"""
        if not (message or "").strip():
            raise ValidationError.for_field("message", "Response is required")
        ticket = self.get_ticket(ticket_id)
        if ticket is None:
            raise NotFoundError("support ticket", ticket_id)
        notes = f"{ticket.admin_notes}\n{message.strip()}" if ticket.admin_notes else message.strip()
        status = TicketStatus.IN_PROGRESS if ticket.status == TicketStatus.OPEN else None
        return self.update_ticket(ticket_id, admin_id, status=status, assigned_to=admin_id, admin_notes=notes)
