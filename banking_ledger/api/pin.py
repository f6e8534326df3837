"""
PIN endpoints
"""

from fastapi import APIRouter, Depends

from .dependencies import get_banking_system, get_current_user
from .schemas import ChangePinRequest, VerifyPinRequest, parse_enum
from ..errors import AuthenticationError
from ..pin import PinPurpose
from ..system import BankingSystem
from ..users import User


router = APIRouter()


@router.post("/verify-pin")
async def verify_pin(
    request: VerifyPinRequest,
    user: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    """Check a transfer PIN and issue a single-use verification token"""
    purpose = parse_enum(PinPurpose, request.purpose, "purpose")

    # Customers may only verify their own PIN; admins verify on a holder's behalf
    if not user.is_admin:
        holder = system.users.find_by_identity(request.identity)
        if holder is None or holder.id != user.id:
            raise AuthenticationError()

    issued = system.pin_gate.verify_pin(request.identity, request.pin, purpose)
    return {
        "verified": True,
        "token": issued.token,
        "purpose": issued.purpose.value,
        "expires_at": issued.expires_at.isoformat()
    }


@router.post("/pin/change")
async def change_pin(
    request: ChangePinRequest,
    user: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    system.pin_gate.change_pin(user.id, request.current_pin, request.new_pin)
    return {"message": "PIN changed successfully"}
