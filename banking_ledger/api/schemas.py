"""
Pydantic schemas for API requests and response helpers
"""

from typing import Any, Dict, Optional
from pydantic import BaseModel, Field

from ..errors import ValidationError
from ..transfers import TransferRequest


# PIN schemas
class VerifyPinRequest(BaseModel):
    identity: str = Field(..., description="Username or email of the PIN holder")
    pin: str
    purpose: str = "transfer"


class ChangePinRequest(BaseModel):
    current_pin: str
    new_pin: str


# Transfer schemas
class CreateTransferRequest(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    transfer_method: str = Field(..., description="international, domestic, card, mobile or internal")
    currency: str = "USD"
    recipient_name: Optional[str] = None
    purpose: Optional[str] = None
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
    verification_token: Optional[str] = Field(None, description="Token from POST /verify-pin")

    def to_transfer_request(self) -> TransferRequest:
        return TransferRequest(**self.model_dump(exclude={"verification_token"}))


class ApproveTransferRequest(BaseModel):
    notes: Optional[str] = None


class RejectTransferRequest(BaseModel):
    notes: Optional[str] = Field(None, description="Reason shown to the customer; required")


# Card schemas
class CardLockRequest(BaseModel):
    locked: bool
    verification_token: Optional[str] = None


# Support schemas
class CreateTicketRequest(BaseModel):
    subject: str
    description: str
    category: Optional[str] = None
    priority: str = "medium"


class UpdateTicketRequest(BaseModel):
    status: Optional[str] = None
    priority: Optional[str] = None
    assigned_to: Optional[str] = None
    admin_notes: Optional[str] = None
    resolution: Optional[str] = None


# Admin schemas
class CreateCustomerRequest(BaseModel):
    username: str
    email: str
    full_name: str
    phone: Optional[str] = None
    date_of_birth: Optional[str] = None  # ISO date string
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    postal_code: Optional[str] = None
    nationality: Optional[str] = None
    profession: Optional[str] = None
    id_type: Optional[str] = None
    id_number: Optional[str] = None
    pin: Optional[str] = None
    opening_balance: Optional[str] = None
    account_type: str = "checking"
    currency: str = "USD"
    verified: bool = False

    def profile(self) -> Dict[str, Any]:
        return self.model_dump(
            exclude_none=True,
            exclude={"username", "email", "full_name", "pin", "opening_balance",
                     "account_type", "currency", "verified"}
        )


class BalanceAdjustmentRequest(BaseModel):
    amount: str = Field(..., description="Signed decimal amount as string")
    description: str


class FundAccountRequest(BaseModel):
    account_number: str
    operation: str = Field(..., description="credit or debit")
    amount: str = Field(..., description="Positive decimal amount as string")
    description: str
    reference: Optional[str] = None


def parse_enum(enum_cls, value: Optional[str], field: str):
    """Map a request string onto an enum, reporting bad input as a field error"""
    if value is None:
        return None
    try:
        return enum_cls(value.strip().lower())
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError.for_field(field, f"Must be one of: {allowed}")
