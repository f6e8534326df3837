"""
Administrator action log.

One row per administrative decision (transfer approval, balance update,
customer verification, ...). Written inside the same atomic scope as the
change it describes.
"""

from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
import uuid

from .storage import StorageInterface, StorageRecord


class AdminActionType(Enum):
    APPROVE_TRANSFER = "approve_transfer"
    REJECT_TRANSFER = "reject_transfer"
    BALANCE_UPDATE = "balance_update"
    FUND_ACCOUNT = "fund_account"
    CREATE_CUSTOMER = "create_customer"
    VERIFY_CUSTOMER = "verify_customer"
    UPDATE_TICKET = "update_support_ticket"
    CARD_LOCK = "card_lock"


@dataclass
class AdminAction(StorageRecord):
    admin_id: str
    action_type: AdminActionType
    target_type: str
    target_id: str
    description: str
    metadata: Dict[str, Any] = field(default_factory=dict)


class AdminActionLog:

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "admin_actions"

    def record(
        self,
        admin_id: str,
        action_type: AdminActionType,
        target_type: str,
        target_id: str,
        description: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> AdminAction:
        now = datetime.now(timezone.utc)
        action = AdminAction(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            admin_id=admin_id,
            action_type=action_type,
            target_type=target_type,
            target_id=target_id,
            description=description,
            metadata=metadata or {}
        )
        self.storage.save(self.table_name, action.id, action.to_dict())
        return action

    def list_actions(
        self,
        admin_id: Optional[str] = None,
        target_id: Optional[str] = None,
        action_type: Optional[AdminActionType] = None,
        limit: Optional[int] = None
    ) -> List[AdminAction]:
        """Newest first"""
        filters: Dict[str, Any] = {}
        if admin_id:
            filters["admin_id"] = admin_id
        if target_id:
            filters["target_id"] = target_id
        if action_type:
            filters["action_type"] = action_type.value
        actions = [AdminAction.from_dict(data) for data in self.storage.find(self.table_name, filters)]
        actions.reverse()
        if limit:
            actions = actions[:limit]
        return actions
