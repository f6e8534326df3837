"""
Account endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends

from .dependencies import get_banking_system, get_current_user
from ..accounts import Account
from ..errors import NotFoundError
from ..system import BankingSystem
from ..users import User


router = APIRouter()


def _visible_account(system: BankingSystem, user: User, account_id: str) -> Account:
    account = system.accounts.get_account(account_id)
    if account is None or (account.user_id != user.id and not user.is_admin):
        raise NotFoundError("account", account_id)
    return account


@router.get("")
async def list_accounts(
    user: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    accounts = system.accounts.get_user_accounts(user.id)
    return {
        "accounts": [account.to_dict() for account in accounts],
        "total_balance": str(system.accounts.total_balance(user.id))
    }


@router.get("/{account_id}/transactions")
async def get_account_transactions(
    account_id: str,
    limit: Optional[int] = None,
    user: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    account = _visible_account(system, user, account_id)
    transactions = system.transactions.list_for_account(account.id)
    if limit:
        transactions = transactions[:limit]
    return {"account_id": account.id, "transactions": [t.to_dict() for t in transactions]}


@router.get("/{account_id}/ledger")
async def get_account_ledger(
    account_id: str,
    user: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    """Ledger entries plus a reconciliation of the stored balance"""
    account = _visible_account(system, user, account_id)
    return {
        "account_id": account.id,
        "entries": [entry.to_dict() for entry in system.mutator.get_entries(account.id)],
        "reconciliation": system.mutator.reconcile(account.id)
    }
