"""
Card endpoints
"""

from fastapi import APIRouter, Depends

from .dependencies import get_banking_system, get_current_user
from .schemas import CardLockRequest
from ..system import BankingSystem
from ..users import User


router = APIRouter()


@router.get("")
async def list_cards(
    user: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    return {"cards": [card.to_dict() for card in system.cards.get_user_cards(user.id)]}


@router.post("/{card_id}/lock")
async def set_card_lock(
    card_id: str,
    request: CardLockRequest,
    user: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    """Lock or unlock a card; needs a card_lock PIN verification token"""
    card = system.cards.set_lock(card_id, request.locked, user.id, request.verification_token)
    return {"card": card.to_dict(), "message": "Card locked" if card.is_locked else "Card unlocked"}
