"""
Transfer endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends

from .dependencies import get_banking_system, get_current_user
from .schemas import CreateTransferRequest, parse_enum
from ..system import BankingSystem
from ..transactions import TransactionStatus
from ..users import User


router = APIRouter()


@router.post("", status_code=201)
async def create_transfer(
    request: CreateTransferRequest,
    user: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    """Submit a transfer authorised by a PIN verification token"""
    transaction = system.transfers.submit_transfer(
        user.id, request.to_transfer_request(), request.verification_token
    )
    if transaction.status == TransactionStatus.PENDING and system.config.auto_settle_below_threshold:
        transaction = system.transfers.settle_pending(transaction.id)

    return {
        "transaction": transaction.to_dict(),
        "requires_approval": transaction.status == TransactionStatus.PENDING_APPROVAL,
        "message": "Transfer submitted"
    }


@router.get("")
async def list_transfers(
    status: Optional[str] = None,
    user: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    transfers = system.transfers.get_user_transfers(
        user.id, parse_enum(TransactionStatus, status, "status")
    )
    return {"transfers": [t.to_dict() for t in transfers], "count": len(transfers)}


@router.get("/{transaction_id}")
async def get_transfer(
    transaction_id: str,
    user: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    owner = None if user.is_admin else user.id
    return system.transfers.get_transfer(transaction_id, owner).to_dict()
