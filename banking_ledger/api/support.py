"""
Customer support endpoints
"""

from fastapi import APIRouter, Depends

from .dependencies import get_banking_system, get_current_user
from .schemas import CreateTicketRequest, parse_enum
from ..support import TicketCategory, TicketPriority
from ..system import BankingSystem
from ..users import User


router = APIRouter()


@router.post("", status_code=201)
async def create_ticket(
    request: CreateTicketRequest,
    user: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    ticket = system.support.create_ticket(
        user_id=user.id,
        subject=request.subject,
        description=request.description,
        category=parse_enum(TicketCategory, request.category, "category"),
        priority=parse_enum(TicketPriority, request.priority, "priority")
    )
    return ticket.to_dict()


@router.get("")
async def list_my_tickets(
    user: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    return {"tickets": [t.to_dict() for t in system.support.list_tickets(user_id=user.id)]}
