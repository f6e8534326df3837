"""
Payment Card Module

Debit cards linked to accounts. Only a masked number is ever stored.
Locking or unlocking a card requires a fresh PIN verification token from
the card holder.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import List, Optional
from enum import Enum
import re
import uuid

from .storage import StorageInterface, StorageRecord
from .users import UserManager
from .accounts import AccountManager
from .audit import AuditTrail, AuditEventType
from .admin_actions import AdminActionLog, AdminActionType
from .pin import PinGate, PinPurpose
from .errors import NotFoundError, ValidationError
from .events import DomainEvent, EventDispatcher, EventPayload


CARD_NUMBER_PATTERN = re.compile(r"^\d{13,19}$")


def normalize_card_number(card_number: str) -> str:
    """Strip spaces and dashes"""
    return re.sub(r"[\s-]", "", card_number or "")


def mask_card_number(card_number: str) -> str:
    """Keep only the last four digits"""
    digits = normalize_card_number(card_number)
    return f"**** **** **** {digits[-4:]}"


class CardType(Enum):
    DEBIT = "debit"
    CREDIT = "credit"


@dataclass
class Card(StorageRecord):
    user_id: str
    account_id: str
    card_number: str  # masked
    card_holder_name: str
    card_type: CardType = CardType.DEBIT
    is_locked: bool = False
    is_active: bool = True
    locked_at: Optional[datetime] = None


class CardService:

    def __init__(
        self,
        storage: StorageInterface,
        user_manager: UserManager,
        account_manager: AccountManager,
        pin_gate: PinGate,
        audit_trail: AuditTrail,
        admin_actions: AdminActionLog,
        event_dispatcher: Optional[EventDispatcher] = None
    ):
        self.storage = storage
        self.users = user_manager
        self.accounts = account_manager
        self.pin_gate = pin_gate
        self.audit_trail = audit_trail
        self.admin_actions = admin_actions
        self.table_name = "cards"
        self._event_dispatcher = event_dispatcher

    def issue_card(self, account_id: str, card_number: str,
                   card_type: CardType = CardType.DEBIT,
                   issued_by: Optional[str] = None) -> Card:
        digits = normalize_card_number(card_number)
        if not CARD_NUMBER_PATTERN.match(digits):
            raise ValidationError.for_field("card_number", "Card number must be 13 to 19 digits")
        account = self.accounts.require_account(account_id)
        if account.is_system:
            raise ValidationError.for_field("account_id", "Cards cannot be issued on system accounts")
        user = self.users.require_user(account.user_id)

        now = datetime.now(timezone.utc)
        card = Card(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=user.id,
            account_id=account.id,
            card_number=mask_card_number(digits),
            card_holder_name=user.full_name,
            card_type=card_type
        )
        with self.storage.atomic():
            self.storage.save(self.table_name, card.id, card.to_dict())
            self.audit_trail.log_event(
                event_type=AuditEventType.CARD_ISSUED,
                entity_type="card",
                entity_id=card.id,
                metadata={"account_id": account.id, "card_number": card.card_number},
                user_id=issued_by
            )
        return card

    def get_card(self, card_id: str) -> Optional[Card]:
        data = self.storage.load(self.table_name, card_id)
        if data:
            return Card.from_dict(data)
        return None

    def get_user_cards(self, user_id: str) -> List[Card]:
        return [Card.from_dict(data) for data in self.storage.find(self.table_name, {"user_id": user_id})]

    def set_lock(self, card_id: str, locked: bool, actor_id: str,
                 verification_token: Optional[str]) -> Card:
        """
        Lock or unlock a card.

        The actor is the card holder or an administrator; either way the
        token must come from the card holder's PIN check for ``card_lock``.
        """
        card = self.get_card(card_id)
        if card is None:
            raise NotFoundError("card", card_id)
        actor = self.users.require_user(actor_id)
        if actor.id != card.user_id and not actor.is_admin:
            # Other customers' cards do not exist as far as the caller knows
            raise NotFoundError("card", card_id)

        self.pin_gate.consume_token(verification_token, card.user_id, PinPurpose.CARD_LOCK)

        with self.storage.atomic():
            card = self.get_card(card_id)
            card.is_locked = locked
            card.locked_at = datetime.now(timezone.utc) if locked else None
            card.touch()
            self.storage.save(self.table_name, card.id, card.to_dict())
            self.audit_trail.log_event(
                event_type=AuditEventType.CARD_LOCKED if locked else AuditEventType.CARD_UNLOCKED,
                entity_type="card",
                entity_id=card.id,
                user_id=actor.id
            )
            if actor.is_admin and actor.id != card.user_id:
                self.admin_actions.record(
                    admin_id=actor.id,
                    action_type=AdminActionType.CARD_LOCK,
                    target_type="card",
                    target_id=card.id,
                    description=f"Card {'locked' if locked else 'unlocked'} for user {card.user_id}",
                    metadata={"locked": locked}
                )

        if self._event_dispatcher:
            self._event_dispatcher.publish_on_commit(self.storage, EventPayload(
                event_type=DomainEvent.CARD_LOCK_CHANGED,
                entity_type="card",
                entity_id=card.id,
                data={"locked": locked}
            ))
        return card
