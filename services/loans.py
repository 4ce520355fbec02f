"""Loan lookups shared by the applicant and back-office routes."""
from __future__ import annotations

import logging
from collections import defaultdict
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from models import DepositTransaction, Loan
from services.errors import LoanNotFound
from services.notifier import ChangeFeed
from services.serializers import loan_to_dict
from utils.locks import KeyedLock

logger = logging.getLogger(__name__)

# Serializes writers of the same loan within this process
loan_locks = KeyedLock()


async def get_loan(session: AsyncSession, loan_id: str, user_id: Optional[str] = None) -> Loan:
    """Fetch a loan, optionally scoped to its owner. Always reads fresh column values."""
    query = select(Loan).where(Loan.id == loan_id).execution_options(populate_existing=True)
    if user_id is not None:
        query = query.where(Loan.user_id == user_id)
    result = await session.execute(query)
    loan = result.scalar_one_or_none()
    if loan is None:
        raise LoanNotFound(field="loanId")
    return loan


async def list_user_loans(session: AsyncSession, user_id: str) -> list[Loan]:
    result = await session.execute(
        select(Loan).where(Loan.user_id == user_id).order_by(Loan.created_at.desc())
    )
    return list(result.scalars().all())


async def list_all_loans(session: AsyncSession, status: Optional[str] = None) -> list[Loan]:
    query = select(Loan)
    if status:
        query = query.where(Loan.status == status)
    result = await session.execute(query.order_by(Loan.created_at.desc()))
    return list(result.scalars().all())


async def deposit_transactions_for(
    session: AsyncSession, loan_ids: Iterable[str]
) -> dict[str, list[DepositTransaction]]:
    """
    Deposit transactions grouped by loan, newest first. Read path only: on a storage error the
    loans are shown without transactions instead of failing the whole view.
    """
    ids = list(loan_ids)
    grouped: dict[str, list[DepositTransaction]] = defaultdict(list)
    if not ids:
        return grouped
    try:
        result = await session.execute(
            select(DepositTransaction)
            .where(DepositTransaction.loan_id.in_(ids))
            .order_by(DepositTransaction.created_at.desc())
        )
    except SQLAlchemyError:
        logger.exception("Failed to load deposit transactions for %d loan(s)", len(ids))
        return grouped
    for tx in result.scalars().all():
        grouped[tx.loan_id].append(tx)
    return grouped


async def publish_committed(session: AsyncSession, loan: Loan, feed: ChangeFeed) -> Loan:
    """Reload a loan after its transaction committed and push it to subscribers."""
    await session.refresh(loan)
    transactions = (await deposit_transactions_for(session, [loan.id])).get(loan.id, [])
    feed.publish_loan(loan_to_dict(loan, transactions))
    return loan
