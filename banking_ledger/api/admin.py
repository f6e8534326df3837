"""
Admin endpoints: transfer decisions, customers, funds, support, audit
"""

from typing import Optional

from fastapi import APIRouter, Depends

from .dependencies import get_banking_system, require_admin
from .schemas import (
    ApproveTransferRequest, BalanceAdjustmentRequest, CreateCustomerRequest,
    FundAccountRequest, RejectTransferRequest, UpdateTicketRequest, parse_enum,
)
from ..accounts import AccountType
from ..admin_actions import AdminActionType
from ..currency import Currency
from ..errors import ValidationError
from ..support import TicketPriority, TicketStatus
from ..system import BankingSystem
from ..users import User


router = APIRouter()


# Transfer approvals

@router.get("/transfers/pending")
async def list_pending_transfers(
    admin: User = Depends(require_admin),
    system: BankingSystem = Depends(get_banking_system)
):
    pending = system.approvals.list_pending()
    return {"transfers": [t.to_dict() for t in pending], "count": len(pending)}


@router.post("/transfers/{transaction_id}/approve")
async def approve_transfer(
    transaction_id: str,
    request: Optional[ApproveTransferRequest] = None,
    admin: User = Depends(require_admin),
    system: BankingSystem = Depends(get_banking_system)
):
    notes = request.notes if request else None
    transaction = system.approvals.approve(transaction_id, admin.id, notes)
    return {"transaction": transaction.to_dict(), "message": "Transfer approved"}


@router.post("/transfers/{transaction_id}/reject")
async def reject_transfer(
    transaction_id: str,
    request: RejectTransferRequest,
    admin: User = Depends(require_admin),
    system: BankingSystem = Depends(get_banking_system)
):
    transaction = system.approvals.reject(transaction_id, admin.id, request.notes)
    return {"transaction": transaction.to_dict(), "message": "Transfer rejected"}


# Customers

@router.post("/customers", status_code=201)
async def create_customer(
    request: CreateCustomerRequest,
    admin: User = Depends(require_admin),
    system: BankingSystem = Depends(get_banking_system)
):
    try:
        currency = Currency.from_code(request.currency)
    except ValueError:
        raise ValidationError.for_field("currency", "Unsupported currency")
    account_type = parse_enum(AccountType, request.account_type, "account_type")
    if account_type == AccountType.SYSTEM:
        raise ValidationError.for_field("account_type", "System accounts cannot be opened for customers")

    user, account = system.create_customer(
        admin.id,
        request.username,
        request.email,
        request.full_name,
        pin=request.pin,
        opening_balance=request.opening_balance,
        account_type=account_type,
        currency=currency,
        verified=request.verified,
        **request.profile()
    )
    return {"customer": user.to_public_dict(), "account": account.to_dict()}


@router.get("/customers")
async def list_customers(
    verified: Optional[bool] = None,
    admin: User = Depends(require_admin),
    system: BankingSystem = Depends(get_banking_system)
):
    customers = system.users.list_customers(verified)
    return {
        "customers": [
            {**c.to_public_dict(), "total_balance": str(system.accounts.total_balance(c.id))}
            for c in customers
        ],
        "count": len(customers)
    }


@router.post("/customers/{customer_id}/verify")
async def verify_customer(
    customer_id: str,
    admin: User = Depends(require_admin),
    system: BankingSystem = Depends(get_banking_system)
):
    user = system.verify_customer(customer_id, admin.id)
    return {"customer": user.to_public_dict(), "message": "Customer verified"}


# Funds

@router.post("/customers/{customer_id}/balance")
async def adjust_customer_balance(
    customer_id: str,
    request: BalanceAdjustmentRequest,
    admin: User = Depends(require_admin),
    system: BankingSystem = Depends(get_banking_system)
):
    new_balance = system.funds.adjust_customer_balance(
        customer_id, request.amount, request.description, admin.id
    )
    return {"customer_id": customer_id, "new_balance": str(new_balance)}


@router.post("/fund-account")
async def fund_account(
    request: FundAccountRequest,
    admin: User = Depends(require_admin),
    system: BankingSystem = Depends(get_banking_system)
):
    transaction = system.funds.fund_account(
        request.account_number, request.operation, request.amount,
        request.description, admin.id, request.reference
    )
    account = system.accounts.get_account_by_number(request.account_number)
    return {"transaction": transaction.to_dict(), "new_balance": str(account.balance)}


# Support tickets

@router.get("/support-tickets")
async def list_support_tickets(
    status: Optional[str] = None,
    admin: User = Depends(require_admin),
    system: BankingSystem = Depends(get_banking_system)
):
    tickets = system.support.list_tickets(parse_enum(TicketStatus, status, "status"))
    return {"tickets": [t.to_dict() for t in tickets], "count": len(tickets)}


@router.patch("/support-tickets/{ticket_id}")
async def update_support_ticket(
    ticket_id: str,
    request: UpdateTicketRequest,
    admin: User = Depends(require_admin),
    system: BankingSystem = Depends(get_banking_system)
):
    with system.storage.atomic():
        ticket = system.support.update_ticket(
            ticket_id,
            admin.id,
            status=parse_enum(TicketStatus, request.status, "status"),
            priority=parse_enum(TicketPriority, request.priority, "priority"),
            assigned_to=request.assigned_to,
            admin_notes=request.admin_notes,
            resolution=request.resolution
        )
        system.admin_actions.record(
            admin_id=admin.id,
            action_type=AdminActionType.UPDATE_TICKET,
            target_type="support_ticket",
            target_id=ticket.id,
            description=f"Updated support ticket: {ticket.subject}",
            metadata=request.model_dump(exclude_none=True)
        )
    return ticket.to_dict()


# Audit

@router.get("/actions")
async def list_admin_actions(
    limit: Optional[int] = 100,
    target_id: Optional[str] = None,
    admin: User = Depends(require_admin),
    system: BankingSystem = Depends(get_banking_system)
):
    actions = system.admin_actions.list_actions(target_id=target_id, limit=limit)
    return {"actions": [a.to_dict() for a in actions], "count": len(actions)}


@router.get("/audit/verify")
async def verify_audit_trail(
    admin: User = Depends(require_admin),
    system: BankingSystem = Depends(get_banking_system)
):
    return system.audit_trail.verify_integrity()
