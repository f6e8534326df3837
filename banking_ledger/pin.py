"""
Transfer PIN Verification Gate

Users authorise transfers and card lock changes with a 4-digit PIN. PINs
are stored as salted scrypt hashes and compared in constant time; every
failure looks the same to the caller. A successful check yields a
short-lived, single-use verification token that the protected operation
consumes.
"""

from datetime import datetime, timedelta, timezone
from dataclasses import dataclass
from typing import Optional
from enum import Enum
import hashlib
import hmac
import re
import secrets

from .storage import StorageInterface, StorageRecord
from .users import User, UserManager
from .audit import AuditTrail, AuditEventType
from .errors import AuthenticationError, ValidationError
from .logging_config import get_logger, log_action


PIN_PATTERN = re.compile(r"^\d{4}$")

# Salt used to burn the same scrypt cost when the identity is unknown
_DUMMY_SALT = secrets.token_hex(16)


class PinPurpose(Enum):
    TRANSFER = "transfer"
    CARD_LOCK = "card_lock"


@dataclass
class PinVerificationToken(StorageRecord):
    """
    Stored record of an issued verification token. The id is the SHA-256
    of the token string; the token itself is never persisted.
    """
    user_id: str
    purpose: PinPurpose
    expires_at: datetime
    consumed_at: Optional[datetime] = None

    def is_usable(self, now: datetime) -> bool:
        return self.consumed_at is None and now < self.expires_at


@dataclass
class IssuedToken:
    """Returned to the caller after a successful PIN check"""
    token: str
    user_id: str
    purpose: PinPurpose
    expires_at: datetime


def is_weak_pin(pin: str) -> bool:
    """All-same digits or a straight run such as 1234 / 9876"""
    if len(set(pin)) == 1:
        return True
    steps = {int(b) - int(a) for a, b in zip(pin, pin[1:])}
    return steps in ({1}, {-1})


def _as_text(pin) -> str:
    return pin if isinstance(pin, str) else ""


def _token_id(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class PinGate:
    """
    PIN management, verification with lockout, and token issue/consume
    """

    def __init__(
        self,
        storage: StorageInterface,
        user_manager: UserManager,
        audit_trail: AuditTrail,
        max_attempts: int = 5,
        lockout_minutes: int = 15,
        token_ttl_seconds: int = 300
    ):
        self.storage = storage
        self.users = user_manager
        self.audit_trail = audit_trail
        self.max_attempts = max_attempts
        self.lockout = timedelta(minutes=lockout_minutes)
        self.token_ttl = timedelta(seconds=token_ttl_seconds)
        self.tokens_table = "pin_tokens"
        self.logger = get_logger("banking_ledger.pin")

    def set_pin(self, user_id: str, pin: str, actor_id: Optional[str] = None) -> None:
        """Set (or reset) a user's PIN and clear any lockout"""
        self._check_format(pin, "pin")
        with self.storage.atomic():
            user = self.users.require_user(user_id)
            self._store_pin(user, pin)
            self.audit_trail.log_event(
                event_type=AuditEventType.PIN_SET,
                entity_type="user",
                entity_id=user.id,
                user_id=actor_id or user.id
            )

    def change_pin(self, user_id: str, current_pin: str, new_pin: str) -> None:
        """
        Change a PIN after proving knowledge of the current one.

        Raises:
            AuthenticationError: current PIN wrong or locked
            ValidationError: either PIN malformed, or the new one weak or unchanged
        """
        self._check_format(current_pin, "current_pin")
        self._check_format(new_pin, "new_pin")
        if is_weak_pin(new_pin):
            raise ValidationError.for_field("new_pin", "PIN is too easy to guess")
        if hmac.compare_digest(current_pin.encode("utf-8"), new_pin.encode("utf-8")):
            raise ValidationError.for_field("new_pin", "New PIN must differ from the current PIN")

        user = self.users.require_user(user_id)
        self._authenticate(user, current_pin)

        with self.storage.atomic():
            user = self.users.require_user(user_id)
            self._store_pin(user, new_pin)
            self.audit_trail.log_event(
                event_type=AuditEventType.PIN_CHANGED,
                entity_type="user",
                entity_id=user.id,
                user_id=user.id
            )
        log_action(self.logger, "info", "PIN changed", user_id=user.id, action="change_pin")

    def verify_pin(self, identity: str, pin: str,
                   purpose: PinPurpose = PinPurpose.TRANSFER) -> IssuedToken:
        """
        Check a PIN for a username or email and issue a verification token.

        Raises:
            AuthenticationError: for any failure, always with the same message
        """
        pin = _as_text(pin)
        user = self.users.find_by_identity(identity)
        if user is None or not user.is_active or not user.has_pin:
            self._hash(pin or "", _DUMMY_SALT)
            self.audit_trail.log_event(
                event_type=AuditEventType.PIN_FAILED,
                entity_type="user",
                entity_id=user.id if user else "unknown",
                metadata={"reason": "unknown_identity" if user is None else "unavailable"}
            )
            log_action(self.logger, "warning", "PIN verification failed", action="verify_pin")
            raise AuthenticationError()

        self._authenticate(user, pin)

        now = datetime.now(timezone.utc)
        token = secrets.token_urlsafe(32)
        record = PinVerificationToken(
            id=_token_id(token),
            created_at=now,
            updated_at=now,
            user_id=user.id,
            purpose=purpose,
            expires_at=now + self.token_ttl
        )
        with self.storage.atomic():
            self.storage.save(self.tokens_table, record.id, record.to_dict())
            self.audit_trail.log_event(
                event_type=AuditEventType.PIN_VERIFIED,
                entity_type="user",
                entity_id=user.id,
                metadata={"purpose": purpose.value},
                user_id=user.id
            )
        log_action(
            self.logger, "info", "PIN verified", user_id=user.id, action="verify_pin",
            extra={"purpose": purpose.value}
        )
        return IssuedToken(token=token, user_id=user.id, purpose=purpose, expires_at=record.expires_at)

    def consume_token(self, token: Optional[str], user_id: str, purpose: PinPurpose) -> PinVerificationToken:
        """
        Redeem a verification token exactly once.

        Raises:
            AuthenticationError: unknown, expired, spent, or issued for a
                different user or purpose
        """
        if not token:
            raise AuthenticationError("PIN verification required")
        with self.storage.atomic():
            data = self.storage.load(self.tokens_table, _token_id(token))
            if data is None:
                raise AuthenticationError("PIN verification required")
            record = PinVerificationToken.from_dict(data)
            now = datetime.now(timezone.utc)
            if record.user_id != user_id or record.purpose != purpose or not record.is_usable(now):
                raise AuthenticationError("PIN verification required")
            record.consumed_at = now
            record.touch()
            self.storage.save(self.tokens_table, record.id, record.to_dict())
        return record

    def is_locked(self, user: User) -> bool:
        return bool(user.pin_locked_until and user.pin_locked_until > datetime.now(timezone.utc))

    def _authenticate(self, user: User, pin: str) -> None:
        """Compare a PIN, tracking failures and lockout; raise on any mismatch"""
        pin = _as_text(pin)
        if self.is_locked(user):
            self._hash(pin or "", user.pin_salt)
            self.audit_trail.log_event(
                event_type=AuditEventType.PIN_FAILED,
                entity_type="user",
                entity_id=user.id,
                metadata={"reason": "locked"}
            )
            raise AuthenticationError()

        if self._matches(user, pin):
            if user.failed_pin_attempts or user.pin_locked_until:
                with self.storage.atomic():
                    fresh = self.users.require_user(user.id)
                    fresh.failed_pin_attempts = 0
                    fresh.pin_locked_until = None
                    fresh.touch()
                    self.users.save_user(fresh)
            return

        with self.storage.atomic():
            fresh = self.users.require_user(user.id)
            fresh.failed_pin_attempts += 1
            locked = fresh.failed_pin_attempts >= self.max_attempts
            if locked:
                fresh.pin_locked_until = datetime.now(timezone.utc) + self.lockout
                fresh.failed_pin_attempts = 0
            fresh.touch()
            self.users.save_user(fresh)
            self.audit_trail.log_event(
                event_type=AuditEventType.PIN_LOCKED if locked else AuditEventType.PIN_FAILED,
                entity_type="user",
                entity_id=fresh.id,
                metadata={"reason": "mismatch"}
            )
        log_action(
            self.logger, "warning", "PIN verification failed",
            user_id=user.id, action="verify_pin", extra={"locked": locked}
        )
        raise AuthenticationError()

    def _matches(self, user: User, pin: str) -> bool:
        candidate = self._hash(pin or "", user.pin_salt or _DUMMY_SALT)
        if not user.pin_hash or not PIN_PATTERN.match(pin or ""):
            return False
        return hmac.compare_digest(candidate, user.pin_hash)

    def _store_pin(self, user: User, pin: str) -> None:
        user.pin_salt = secrets.token_hex(16)
        user.pin_hash = self._hash(pin, user.pin_salt)
        user.failed_pin_attempts = 0
        user.pin_locked_until = None
        user.pin_changed_at = datetime.now(timezone.utc)
        user.touch()
        self.users.save_user(user)

    @staticmethod
    def _hash(pin: str, salt: str) -> str:
        return hashlib.scrypt(pin.encode("utf-8"), salt=salt.encode("utf-8"), n=16384, r=8, p=1).hex()

    @staticmethod
    def _check_format(pin: str, field: str) -> None:
        if not isinstance(pin, str) or not PIN_PATTERN.match(pin):
            raise ValidationError.for_field(field, "PIN must be exactly 4 digits")
