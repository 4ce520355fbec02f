from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_current_user
from database import get_db
from services import accounts
from services.amortization import round_money
from services.errors import AccountNotFound
from utils.dates import isoformat_or_none

router = APIRouter(prefix="/api/accounts", tags=["accounts"])


def _account_to_response(a) -> dict:
    return {
        "id": a.id,
        "accountNumber": a.account_number,
        "accountType": a.account_type,
        "balance": round_money(a.balance),
        "status": a.status,
        "createdAt": isoformat_or_none(a.created_at),
    }


def _transaction_to_response(t) -> dict:
    return {
        "id": t.id,
        "accountId": t.account_id,
        "type": t.type,
        "amount": round_money(t.amount),
        "balanceBefore": round_money(t.balance_before),
        "balanceAfter": round_money(t.balance_after),
        "description": t.description,
        "reference": t.reference,
        "status": t.status,
        "createdAt": isoformat_or_none(t.created_at),
    }


@router.get("")
async def list_accounts(user_id: str = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    return {"success": True, "accounts": [_account_to_response(a) for a in await accounts.get_accounts_by_user(db, user_id)]}


@router.get("/{account_id}/transactions")
async def list_transactions(
    account_id: str, user_id: str = Depends(get_current_user), db: AsyncSession = Depends(get_db)
):
    account = await accounts.get_account(db, account_id, user_id)
    if account is None:
        raise AccountNotFound(field="accountId")
    entries = await accounts.list_transactions(db, account_id)
    return {
        "success": True,
        "account": _account_to_response(account),
        "transactions": [_transaction_to_response(t) for t in entries],
    }
