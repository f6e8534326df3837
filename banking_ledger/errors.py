"""
Ledger Error Taxonomy

Typed failures raised by the ledger services. The HTTP layer maps each
class onto a status code; nothing here is fatal to the process.
"""

from typing import Dict, Optional


class LedgerError(Exception):
    """Base class for all ledger failures"""

    code = "ledger_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(LedgerError):
    """Bad or missing input, with field-level detail"""

    code = "validation_error"

    def __init__(self, message: str = "Validation failed", errors: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.errors: Dict[str, str] = dict(errors or {})

    @classmethod
    def for_field(cls, field: str, message: str) -> "ValidationError":
        return cls(message, {field: message})


class AuthenticationError(LedgerError):
    """Credential check failed; the message never says which part was wrong"""

    code = "authentication_failed"

    def __init__(self, message: str = "Invalid credentials"):
        super().__init__(message)


class AuthorizationError(LedgerError):
    code = "forbidden"


class NotFoundError(LedgerError):
    code = "not_found"

    def __init__(self, entity_type: str, entity_id: str):
        super().__init__(f"{entity_type.capitalize()} {entity_id} not found")
        self.entity_type = entity_type
        self.entity_id = entity_id


class InvalidStateError(LedgerError):
    """Illegal transaction status transition"""

    code = "invalid_state"


class PersistenceError(LedgerError):
    """Store unavailable or a write failed; the change was not recorded"""

    code = "persistence_error"


class ConcurrentModificationError(PersistenceError):
    """Optimistic version check failed on a record write"""

    code = "concurrent_modification"


class InsufficientFundsError(LedgerError):
    """A debit would take an account below its minimum balance"""

    code = "insufficient_funds"

    def __init__(self, account_id: str, available: str, requested: str):
        super().__init__(
            f"Insufficient funds in account {account_id}: "
            f"available {available}, requested {requested}"
        )
        self.account_id = account_id
        self.available = available
        self.requested = requested
