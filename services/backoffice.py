"""
Back-office decisions on a loan. Each one validates the move against the state machine, then
applies it with an UPDATE conditioned on the status it was validated against, so a decision
taken on stale state fails with InvalidStateTransition instead of half-applying.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import unit_of_work
from models import Loan
from services import accounts, loans, notifications
from services.errors import InvalidStateTransition
from services.notifier import ChangeFeed, change_feed
from services.state_machine import ACTIVE, APPROVED, CLOSED, REJECTED, UNDER_REVIEW, check_transition
from utils.dates import add_months, utcnow

logger = logging.getLogger(__name__)


async def _apply(session: AsyncSession, loan: Loan, expected_status: str, values: dict[str, Any], *extra_where) -> None:
    values = {"updated_at": utcnow(), **values, "version": Loan.version + 1}
    result = await session.execute(
        update(Loan)
        .where(Loan.id == loan.id, Loan.status == expected_status, *extra_where)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        current = await loans.get_loan(session, loan.id)
        raise InvalidStateTransition(field="status", current=current.status, expected=expected_status)


def _activation_values(loan: Loan, now) -> dict[str, Any]:
    return {
        "remaining_balance": loan.monthly_payment_amount * loan.term_months,
        "outstanding_principal": loan.principal,
        "start_date": now,
        "next_payment_date": add_months(now.date(), 1),
    }


async def _disburse(session: AsyncSession, loan: Loan) -> None:
    if loan.account_id is None:
        raise InvalidStateTransition("Loan has no disbursement account.", field="accountId")
    await accounts.credit(
        session,
        loan.account_id,
        loan.principal,
        description=f"Loan disbursement - {notifications.loan_type_label(loan.loan_type)} loan",
        reference=f"LOAN-DISB-{loan.id.removeprefix('loan-')[:8].upper()}",
    )


async def approve_loan(
    session: AsyncSession, loan_id: str, activate: bool = False, feed: ChangeFeed = change_feed
) -> Loan:
    """under_review -> approved; with `activate`, straight on to active in the same transaction."""
    async with loans.loan_locks.hold(loan_id):
        async with unit_of_work(session):
            loan = await loans.get_loan(session, loan_id)
            check_transition(loan, APPROVED)
            now = utcnow()
            values: dict[str, Any] = {"status": APPROVED, "approved_at": now, "updated_at": now}
            if activate:
                values.update(_activation_values(loan, now), status=ACTIVE)
            await _apply(session, loan, UNDER_REVIEW, values)
            if activate:
                await _disburse(session, loan)
            notifications.add_notification(
                session,
                loan.user_id,
                "Loan Approved!",
                f"Your {notifications.loan_type_label(loan.loan_type)} loan for ${loan.principal:,.2f} has been approved."
                + (" The funds have been credited to your account." if activate else ""),
            )

    logger.info("Loan %s approved%s", loan_id, " and activated" if activate else "")
    await loans.publish_committed(session, loan, feed)
    await notifications.send_email(
        notifications.TEMPLATE_LOAN_ACTIVATED if activate else notifications.TEMPLATE_LOAN_APPROVED,
        loan.user_id,
        {"loan_id": loan_id, "principal": loan.principal, "total_due": loan.remaining_balance},
    )
    return loan


async def activate_loan(session: AsyncSession, loan_id: str, feed: ChangeFeed = change_feed) -> Loan:
    """approved -> active: funds disbursed and the repayment obligation starts."""
    async with loans.loan_locks.hold(loan_id):
        async with unit_of_work(session):
            loan = await loans.get_loan(session, loan_id)
            check_transition(loan, ACTIVE)
            now = utcnow()
            values = {"status": ACTIVE, "updated_at": now, **_activation_values(loan, now)}
            if loan.approved_at is None:
                values["approved_at"] = now
            await _apply(session, loan, APPROVED, values)
            await _disburse(session, loan)
            notifications.add_notification(
                session,
                loan.user_id,
                "Loan Funds Disbursed",
                f"${loan.principal:,.2f} from your {notifications.loan_type_label(loan.loan_type)} loan "
                "has been credited to your account.",
            )

    logger.info("Loan %s activated; $%.2f disbursed to %s", loan_id, loan.principal, loan.account_id)
    await loans.publish_committed(session, loan, feed)
    await notifications.send_email(
        notifications.TEMPLATE_LOAN_ACTIVATED,
        loan.user_id,
        {"loan_id": loan_id, "principal": loan.principal, "total_due": loan.remaining_balance},
    )
    return loan


async def reject_loan(
    session: AsyncSession, loan_id: str, reason: Optional[str] = None, feed: ChangeFeed = change_feed
) -> Loan:
    async with loans.loan_locks.hold(loan_id):
        async with unit_of_work(session):
            loan = await loans.get_loan(session, loan_id)
            check_transition(loan, REJECTED)
            await _apply(session, loan, loan.status, {"status": REJECTED, "rejection_reason": reason})
            notifications.add_notification(
                session,
                loan.user_id,
                "Loan Application Update",
                f"Your {notifications.loan_type_label(loan.loan_type)} loan application has been reviewed. "
                "Please contact our loan department for more information.",
            )

    logger.info("Loan %s rejected: %s", loan_id, reason or "no reason given")
    await loans.publish_committed(session, loan, feed)
    await notifications.send_email(
        notifications.TEMPLATE_LOAN_REJECTED, loan.user_id, {"loan_id": loan_id, "loan_type": loan.loan_type}
    )
    return loan


async def close_loan(session: AsyncSession, loan_id: str, feed: ChangeFeed = change_feed) -> Loan:
    """active -> closed, only once the remaining balance is within the closure epsilon."""
    async with loans.loan_locks.hold(loan_id):
        async with unit_of_work(session):
            loan = await loans.get_loan(session, loan_id)
            check_transition(loan, CLOSED)
            now = utcnow()
            await _apply(
                session,
                loan,
                ACTIVE,
                {"status": CLOSED, "closed_at": now, "next_payment_date": None, "updated_at": now},
                Loan.remaining_balance <= settings.closure_epsilon,
            )
            notifications.add_notification(
                session,
                loan.user_id,
                "Loan Closed",
                f"Congratulations! Your {notifications.loan_type_label(loan.loan_type)} loan has been fully repaid and closed.",
            )

    logger.info("Loan %s closed", loan_id)
    await loans.publish_committed(session, loan, feed)
    await notifications.send_email(
        notifications.TEMPLATE_LOAN_CLOSED, loan.user_id, {"loan_id": loan_id, "loan_type": loan.loan_type}
    )
    return loan
