"""
Account store used by the loan services. Debits and credits are single conditional UPDATEs so
a debit can never leave a negative balance, even under concurrent requests. Each one also writes
an AccountTransaction ledger row in the same transaction.
"""
from __future__ import annotations

import logging
import uuid
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from models import Account, AccountTransaction
from services.errors import AccountNotFound, InsufficientFunds
from utils.dates import utcnow

logger = logging.getLogger(__name__)


async def get_accounts_by_user(
    session: AsyncSession, user_id: str, status: Optional[str] = None
) -> list[Account]:
    """Oldest first, so the first entry is the applicant's default account."""
    query = select(Account).where(Account.user_id == user_id)
    if status is not None:
        query = query.where(Account.status == status)
    result = await session.execute(query.order_by(Account.created_at, Account.id))
    return list(result.scalars().all())


async def get_account(session: AsyncSession, account_id: str, user_id: Optional[str] = None) -> Optional[Account]:
    query = select(Account).where(Account.id == account_id).execution_options(populate_existing=True)
    if user_id is not None:
        query = query.where(Account.user_id == user_id)
    result = await session.execute(query)
    return result.scalar_one_or_none()


async def debit(
    session: AsyncSession,
    account_id: str,
    amount: float,
    *,
    user_id: str,
    description: Optional[str] = None,
    reference: Optional[str] = None,
) -> float:
    """
    Take `amount` from an active account owned by `user_id`. Returns the new balance.
    Raises AccountNotFound or InsufficientFunds without changing anything.
    """
    result = await session.execute(
        update(Account)
        .where(
            Account.id == account_id,
            Account.user_id == user_id,
            Account.status == "active",
            Account.balance >= amount,
        )
        .values(balance=Account.balance - amount, updated_at=utcnow())
        .returning(Account.balance)
        .execution_options(synchronize_session=False)
    )
    new_balance = result.scalar_one_or_none()
    if new_balance is not None:
        _record(session, account_id, user_id, "debit", amount, new_balance + amount, new_balance, description, reference)
        return new_balance

    account = await get_account(session, account_id, user_id)
    if account is None or account.status != "active":
        raise AccountNotFound(field="accountId")
    logger.warning("Insufficient funds on account %s: balance %.2f < %.2f", account_id, account.balance, amount)
    raise InsufficientFunds(
        field="amount",
        required=round(amount, 2),
        available=round(account.balance, 2),
    )


async def credit(
    session: AsyncSession,
    account_id: str,
    amount: float,
    *,
    description: Optional[str] = None,
    reference: Optional[str] = None,
) -> float:
    result = await session.execute(
        update(Account)
        .where(Account.id == account_id)
        .values(balance=Account.balance + amount, updated_at=utcnow())
        .returning(Account.balance, Account.user_id)
        .execution_options(synchronize_session=False)
    )
    row = result.one_or_none()
    if row is None:
        raise AccountNotFound(field="accountId")
    new_balance, user_id = row
    _record(session, account_id, user_id, "credit", amount, new_balance - amount, new_balance, description, reference)
    return new_balance


def _record(
    session: AsyncSession,
    account_id: str,
    user_id: str,
    type: str,
    amount: float,
    balance_before: float,
    balance_after: float,
    description: Optional[str],
    reference: Optional[str],
) -> AccountTransaction:
    entry = AccountTransaction(
        id=f"txn-{uuid.uuid4().hex[:12]}",
        account_id=account_id,
        user_id=user_id,
        type=type,
        amount=amount,
        balance_before=balance_before,
        balance_after=balance_after,
        description=description,
        reference=reference,
        status="completed",
        created_at=utcnow(),
    )
    session.add(entry)
    return entry


async def list_transactions(session: AsyncSession, account_id: str) -> list[AccountTransaction]:
    result = await session.execute(
        select(AccountTransaction)
        .where(AccountTransaction.account_id == account_id)
        .order_by(AccountTransaction.created_at.desc())
    )
    return list(result.scalars().all())
