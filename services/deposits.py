"""
Security deposit settlement.

Balance path: claim the loan with a conditional UPDATE keyed on its deposit state, debit the
account with a conditional UPDATE keyed on its balance, record the transaction and move the loan
to under_review, all in one transaction. A second attempt finds nothing to claim and gets
DepositAlreadySettled; the account is never debited twice.

Crypto path: record a pending external payment. A back-office confirmation later completes it
and fires the same pending -> under_review transition.
"""
from __future__ import annotations

import logging
import uuid
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from database import unit_of_work
from models import DepositTransaction, Loan
from schemas.loan import DepositRequest
from services import accounts, loans, notifications
from services.deposit_tracker import DEPOSIT_COMPLETED, DEPOSIT_NONE, DEPOSIT_PENDING
from services.errors import (
    DepositAlreadySettled,
    DepositPendingConfirmation,
    DepositTransactionNotFound,
    InvalidDepositAmount,
    InvalidDepositMethod,
    InvalidStateTransition,
)
from services.notifier import ChangeFeed, change_feed
from services.state_machine import PENDING, UNDER_REVIEW
from utils.dates import utcnow

logger = logging.getLogger(__name__)

METHOD_BALANCE = "balance"
METHOD_CRYPTO = "crypto"

AMOUNT_TOLERANCE = 0.005


def deposit_reference(loan_id: str) -> str:
    """Stable per-loan reference for the balance debit."""
    return f"LOAN-DEP-{loan_id.removeprefix('loan-')[:8].upper()}"


def _check_amount(loan: Loan, amount: float) -> None:
    if amount is None or abs(amount - loan.deposit_required) > AMOUNT_TOLERANCE:
        raise InvalidDepositAmount(
            f"The required deposit for this loan is ${loan.deposit_required:,.2f}. Submit exactly that amount.",
            field="amount",
            required=loan.deposit_required,
        )


def _check_can_deposit(loan: Loan) -> None:
    if loan.deposit_paid or loan.deposit_status == DEPOSIT_COMPLETED:
        raise DepositAlreadySettled()
    if loan.status != PENDING:
        raise InvalidStateTransition(
            f"A deposit cannot be taken while the loan is {loan.status.replace('_', ' ')}.",
            field="status",
            current=loan.status,
        )


async def _raise_for_lost_claim(session: AsyncSession, loan_id: str) -> None:
    """The conditional update matched nothing: report why, based on the state that won."""
    loan = await loans.get_loan(session, loan_id)
    _check_can_deposit(loan)
    if loan.deposit_status == DEPOSIT_PENDING:
        raise DepositPendingConfirmation()
    raise InvalidStateTransition(field="depositStatus", current=loan.deposit_status)


async def process_deposit(
    session: AsyncSession, user_id: str, body: DepositRequest, feed: ChangeFeed = change_feed
) -> Loan:
    if body.method == METHOD_BALANCE:
        return await settle_from_balance(session, user_id, body.loan_id, body.account_id, body.amount, feed)
    if body.method == METHOD_CRYPTO:
        return await submit_crypto_deposit(
            session,
            user_id,
            body.loan_id,
            body.amount,
            crypto_type=body.crypto_type,
            network_type=body.network_type,
            reference=body.reference,
            feed=feed,
        )
    raise InvalidDepositMethod(field="depositMethod")


async def settle_from_balance(
    session: AsyncSession,
    user_id: str,
    loan_id: str,
    account_id: Optional[str],
    amount: float,
    feed: ChangeFeed = change_feed,
) -> Loan:
    async with loans.loan_locks.hold(loan_id):
        async with unit_of_work(session):
            loan = await loans.get_loan(session, loan_id, user_id)
            _check_can_deposit(loan)
            _check_amount(loan, amount)
            account_id = account_id or loan.account_id
            now = utcnow()

            claimed = await session.execute(
                update(Loan)
                .where(
                    Loan.id == loan_id,
                    Loan.status == PENDING,
                    Loan.deposit_paid.is_(False),
                    Loan.deposit_status != DEPOSIT_COMPLETED,
                )
                .values(
                    deposit_paid=True,
                    deposit_status=DEPOSIT_COMPLETED,
                    deposit_method=METHOD_BALANCE,
                    deposit_date=now,
                    status=UNDER_REVIEW,
                    version=Loan.version + 1,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount == 0:
                await _raise_for_lost_claim(session, loan_id)

            new_balance = await accounts.debit(
                session,
                account_id,
                loan.deposit_required,
                user_id=user_id,
                description=f"Loan deposit - {notifications.loan_type_label(loan.loan_type)} application",
                reference=deposit_reference(loan_id),
            )

            # A crypto payment that never got confirmed is superseded by this one
            await session.execute(
                update(DepositTransaction)
                .where(DepositTransaction.loan_id == loan_id, DepositTransaction.status == "pending")
                .values(status="cancelled")
                .execution_options(synchronize_session=False)
            )
            session.add(DepositTransaction(
                id=f"dep-{uuid.uuid4().hex[:12]}",
                loan_id=loan_id,
                user_id=user_id,
                method=METHOD_BALANCE,
                amount=loan.deposit_required,
                status="completed",
                account_id=account_id,
                reference=deposit_reference(loan_id),
                completed_at=now,
                created_at=now,
            ))
            notifications.add_notification(
                session,
                user_id,
                "Loan Deposit Received",
                f"Your deposit of ${loan.deposit_required:,.2f} has been received. "
                "Your loan application is now under review by our Loan Department.",
            )

    logger.info(
        "Deposit of $%.2f for loan %s settled from account %s (balance now %.2f); loan under review",
        loan.deposit_required, loan_id, account_id, new_balance,
    )
    await loans.publish_committed(session, loan, feed)
    await notifications.send_email(
        notifications.TEMPLATE_DEPOSIT_CONFIRMED,
        user_id,
        {"loan_id": loan_id, "deposit_amount": loan.deposit_required, "loan_type": loan.loan_type},
    )
    return loan


async def submit_crypto_deposit(
    session: AsyncSession,
    user_id: str,
    loan_id: str,
    amount: float,
    *,
    crypto_type: Optional[str] = None,
    network_type: Optional[str] = None,
    reference: Optional[str] = None,
    feed: ChangeFeed = change_feed,
) -> Loan:
    async with loans.loan_locks.hold(loan_id):
        async with unit_of_work(session):
            loan = await loans.get_loan(session, loan_id, user_id)
            _check_can_deposit(loan)
            if loan.deposit_status == DEPOSIT_PENDING:
                raise DepositPendingConfirmation()
            _check_amount(loan, amount)
            now = utcnow()

            claimed = await session.execute(
                update(Loan)
                .where(
                    Loan.id == loan_id,
                    Loan.status == PENDING,
                    Loan.deposit_paid.is_(False),
                    Loan.deposit_status == DEPOSIT_NONE,
                )
                .values(
                    deposit_status=DEPOSIT_PENDING,
                    deposit_method=METHOD_CRYPTO,
                    version=Loan.version + 1,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount == 0:
                await _raise_for_lost_claim(session, loan_id)

            session.add(DepositTransaction(
                id=f"dep-{uuid.uuid4().hex[:12]}",
                loan_id=loan_id,
                user_id=user_id,
                method=METHOD_CRYPTO,
                amount=loan.deposit_required,
                status="pending",
                crypto_type=crypto_type,
                network_type=network_type,
                reference=reference,
                created_at=now,
            ))
            notifications.add_notification(
                session,
                user_id,
                "Crypto Deposit Pending",
                f"Your crypto deposit of ${loan.deposit_required:,.2f} is awaiting confirmation. "
                "Your loan will be reviewed once it is verified.",
            )

    logger.info("Crypto deposit for loan %s submitted (ref=%s); awaiting confirmation", loan_id, reference)
    await loans.publish_committed(session, loan, feed)
    await notifications.send_email(
        notifications.TEMPLATE_CRYPTO_DEPOSIT_PENDING,
        user_id,
        {"loan_id": loan_id, "deposit_amount": loan.deposit_required, "crypto_type": crypto_type},
    )
    return loan


async def _pending_transaction(session: AsyncSession, loan_id: str, transaction_id: str) -> DepositTransaction:
    result = await session.execute(
        select(DepositTransaction)
        .where(DepositTransaction.id == transaction_id, DepositTransaction.loan_id == loan_id)
        .execution_options(populate_existing=True)
    )
    tx = result.scalar_one_or_none()
    if tx is None:
        raise DepositTransactionNotFound(field="transactionId")
    if tx.status == "completed":
        raise DepositAlreadySettled()
    if tx.status != "pending":
        raise DepositTransactionNotFound(
            f"Deposit transaction is {tx.status}, not awaiting confirmation.", field="transactionId"
        )
    return tx


async def confirm_crypto_deposit(
    session: AsyncSession, loan_id: str, transaction_id: str, feed: ChangeFeed = change_feed
) -> Loan:
    """Back-office: the external payment was verified; complete the deposit and start review."""
    async with loans.loan_locks.hold(loan_id):
        async with unit_of_work(session):
            loan = await loans.get_loan(session, loan_id)
            _check_can_deposit(loan)
            await _pending_transaction(session, loan_id, transaction_id)
            now = utcnow()

            claimed = await session.execute(
                update(Loan)
                .where(
                    Loan.id == loan_id,
                    Loan.status == PENDING,
                    Loan.deposit_paid.is_(False),
                    Loan.deposit_status == DEPOSIT_PENDING,
                )
                .values(
                    deposit_paid=True,
                    deposit_status=DEPOSIT_COMPLETED,
                    deposit_date=now,
                    status=UNDER_REVIEW,
                    version=Loan.version + 1,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount == 0:
                await _raise_for_lost_claim(session, loan_id)

            await session.execute(
                update(DepositTransaction)
                .where(DepositTransaction.id == transaction_id, DepositTransaction.status == "pending")
                .values(status="completed", completed_at=now)
                .execution_options(synchronize_session=False)
            )
            notifications.add_notification(
                session,
                loan.user_id,
                "Loan Deposit Received",
                f"Your crypto deposit of ${loan.deposit_required:,.2f} has been confirmed. "
                "Your loan application is now under review by our Loan Department.",
            )

    logger.info("Crypto deposit %s for loan %s confirmed; loan under review", transaction_id, loan_id)
    await loans.publish_committed(session, loan, feed)
    await notifications.send_email(
        notifications.TEMPLATE_DEPOSIT_CONFIRMED,
        loan.user_id,
        {"loan_id": loan_id, "deposit_amount": loan.deposit_required, "loan_type": loan.loan_type},
    )
    return loan


async def reject_crypto_deposit(
    session: AsyncSession,
    loan_id: str,
    transaction_id: str,
    reason: Optional[str] = None,
    feed: ChangeFeed = change_feed,
) -> Loan:
    """Back-office: the external payment could not be verified; the applicant may pay again."""
    async with loans.loan_locks.hold(loan_id):
        async with unit_of_work(session):
            loan = await loans.get_loan(session, loan_id)
            _check_can_deposit(loan)
            await _pending_transaction(session, loan_id, transaction_id)
            now = utcnow()

            await session.execute(
                update(DepositTransaction)
                .where(DepositTransaction.id == transaction_id, DepositTransaction.status == "pending")
                .values(status="rejected")
                .execution_options(synchronize_session=False)
            )
            await session.execute(
                update(Loan)
                .where(Loan.id == loan_id, Loan.deposit_paid.is_(False), Loan.deposit_status == DEPOSIT_PENDING)
                .values(
                    deposit_status=DEPOSIT_NONE,
                    deposit_method=None,
                    version=Loan.version + 1,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            notifications.add_notification(
                session,
                loan.user_id,
                "Loan Deposit Not Verified",
                "We could not verify your crypto deposit"
                + (f" ({reason})" if reason else "")
                + ". Please submit the deposit again or pay from your account balance.",
            )

    logger.warning("Crypto deposit %s for loan %s rejected: %s", transaction_id, loan_id, reason or "no reason given")
    return await loans.publish_committed(session, loan, feed)
