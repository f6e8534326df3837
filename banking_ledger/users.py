"""
User Management Module

Customers and administrators with profile and KYC fields. Users are never
hard-deleted; deactivation flips ``is_active``. Balances live on accounts
only; a user's total is the sum of their accounts.
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


class UserRole(Enum):
    CUSTOMER = "customer"
    ADMIN = "admin"


PROFILE_FIELDS = (
    "full_name", "phone", "date_of_birth", "address", "city", "state",
    "country", "postal_code", "nationality", "profession", "id_type", "id_number",
)


@dataclass
class User(StorageRecord):
    """
    Ledger user. PIN material is stored only as a salted hash.
    """
    username: str
    email: str
    full_name: str
    role: UserRole = UserRole.CUSTOMER
    phone: Optional[str] = None

    # KYC profile
    date_of_birth: Optional[str] = None  # ISO date
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    postal_code: Optional[str] = None
    nationality: Optional[str] = None
    profession: Optional[str] = None
    id_type: Optional[str] = None
    id_number: Optional[str] = None

    is_verified: bool = False
    is_active: bool = True
    verified_by: Optional[str] = None
    verified_at: Optional[datetime] = None

    # Transfer PIN (see pin.py)
    pin_hash: Optional[str] = None
    pin_salt: Optional[str] = None
    failed_pin_attempts: int = 0
    pin_locked_until: Optional[datetime] = None
    pin_changed_at: Optional[datetime] = None

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    @property
    def has_pin(self) -> bool:
        return bool(self.pin_hash)

    def to_public_dict(self) -> Dict[str, Any]:
        """Profile view without PIN material"""
        data = self.to_dict()
        for key in ("pin_hash", "pin_salt", "failed_pin_attempts", "pin_locked_until"):
            data.pop(key, None)
        return data


class UserManager:
    """
    Manages user lifecycle and lookup
    """

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail,
                 event_dispatcher: Optional[EventDispatcher] = None):
        self.storage = storage
        self.audit_trail = audit_trail
        self.table_name = "users"
        self._event_dispatcher = event_dispatcher

    def create_user(
        self,
        username: str,
        email: str,
        full_name: str,
        role: UserRole = UserRole.CUSTOMER,
        created_by: Optional[str] = None,
        **profile: Any
    ) -> User:
        """
        Create a new user

        Args:
            username: Unique login name
            email: Unique email address
            full_name: Display name
            role: customer or admin
            created_by: Admin who created the user, if any
            **profile: Optional profile/KYC fields

        Returns:
            Created User object
        """
        errors = {}
        username = (username or "").strip()
        email = (email or "").strip().lower()
        if not username:
            errors["username"] = "Username is required"
        if "@" not in email:
            errors["email"] = "A valid email is required"
        if not (full_name or "").strip():
            errors["full_name"] = "Full name is required"
        unknown = set(profile) - set(PROFILE_FIELDS)
        for key in sorted(unknown):
            errors[key] = "Unknown profile field"
        if not errors:
            if self.find_by_identity(username):
                errors["username"] = "Username already taken"
            if self.find_by_identity(email):
                errors["email"] = "Email already registered"
        if errors:
            raise ValidationError("Invalid user details", errors)

        now = datetime.now(timezone.utc)
        user = User(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            username=username,
            email=email,
            full_name=full_name.strip(),
            role=role,
            is_verified=role == UserRole.ADMIN,
            **profile
        )

        with self.storage.atomic():
            self.save_user(user)
            self.audit_trail.log_event(
                event_type=AuditEventType.USER_CREATED,
                entity_type="user",
                entity_id=user.id,
                metadata={"username": username, "email": email, "role": role.value},
                user_id=created_by
            )

        if self._event_dispatcher and role == UserRole.CUSTOMER:
            self._event_dispatcher.publish_on_commit(self.storage, EventPayload(
                event_type=DomainEvent.CUSTOMER_CREATED,
                entity_type="user",
                entity_id=user.id,
                data={"username": username}
            ))

        return user

    def get_user(self, user_id: str) -> Optional[User]:
        data = self.storage.load(self.table_name, user_id)
        if data:
            return User.from_dict(data)
        return None

    def require_user(self, user_id: str) -> User:
        user = self.get_user(user_id)
        if user is None:
            raise NotFoundError("user", user_id)
        return user

    def find_by_identity(self, identity: str) -> Optional[User]:
        """Look up a user by username or email (case-insensitive)"""
        if not isinstance(identity, str):
            return None
        identity = identity.strip().lower()
        if not identity:
            return None
        for data in self.storage.load_all(self.table_name):
            if data.get("username", "").lower() == identity or data.get("email", "").lower() == identity:
                return User.from_dict(data)
        return None

    def list_customers(self, verified: Optional[bool] = None) -> List[User]:
        """List customers, optionally filtered by verification state"""
        filters: Dict[str, Any] = {"role": UserRole.CUSTOMER.value}
        if verified is not None:
            filters["is_verified"] = verified
        return [User.from_dict(data) for data in self.storage.find(self.table_name, filters)]

    def update_profile(self, user_id: str, updated_by: str, **changes: Any) -> User:
        """Update profile/KYC fields"""
        unknown = set(changes) - set(PROFILE_FIELDS)
        if unknown:
            raise ValidationError(
                "Invalid profile update",
                {key: "Field cannot be updated" for key in sorted(unknown)}
            )

        with self.storage.atomic():
            user = self.require_user(user_id)
            for key, value in changes.items():
                setattr(user, key, value)
            user.touch()
            self.save_user(user)
            self.audit_trail.log_event(
                event_type=AuditEventType.USER_UPDATED,
                entity_type="user",
                entity_id=user.id,
                metadata={"fields": sorted(changes)},
                user_id=updated_by
            )
        return user

    def verify_customer(self, user_id: str, admin_id: str) -> User:
        """Mark a customer as verified by an administrator"""
        with self.storage.atomic():
            user = self.require_user(user_id)
            if user.is_verified:
                return user
            user.is_verified = True
            user.verified_by = admin_id
            user.verified_at = datetime.now(timezone.utc)
            user.touch()
            self.save_user(user)
            self.audit_trail.log_event(
                event_type=AuditEventType.USER_VERIFIED,
                entity_type="user",
                entity_id=user.id,
                metadata={"verified_by": admin_id},
                user_id=admin_id
            )

        if self._event_dispatcher:
            self._event_dispatcher.publish_on_commit(self.storage, EventPayload(
                event_type=DomainEvent.CUSTOMER_VERIFIED,
                entity_type="user",
                entity_id=user.id,
                data={"verified_by": admin_id}
            ))
        return user

    def save_user(self, user: User) -> None:
        self.storage.save(self.table_name, user.id, user.to_dict())
