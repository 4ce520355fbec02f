"""
Repayment of active loans. Payments reduce remaining_balance (never below zero) but never close
a loan; closing stays a back-office confirmation even after the last payment.

Late fees are assessed by a caller-triggered run (back office or an external scheduler): every
active loan whose next payment date has passed is flagged late once, and the fee is added to
its remaining balance. Auto-payment settings are stored on the loan for that same kind of
external runner.
"""
from __future__ import annotations

import logging
import uuid
from datetime import date
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import unit_of_work
from models import Loan, LoanPayment
from services import accounts, loans, notifications
from services.amortization import monthly_rate, round_money
from services.errors import InvalidAutoPaymentSettings, InvalidPaymentAmount, InvalidStateTransition
from services.notifier import ChangeFeed, change_feed
from services.state_machine import ACTIVE
from utils.dates import add_months, utcnow

logger = logging.getLogger(__name__)

AMOUNT_TOLERANCE = 0.005
MIN_AUTO_PAYMENT_DAY = 1
MAX_AUTO_PAYMENT_DAY = 28


def payment_reference(loan_id: str) -> str:
    return f"LOAN-PAY-{loan_id.removeprefix('loan-')[:8].upper()}"


def _require_active(loan: Loan, action: str = "Payments") -> None:
    if loan.status != ACTIVE:
        raise InvalidStateTransition(
            f"{action} can only be made on active loans; this loan is {loan.status.replace('_', ' ')}.",
            field="status",
            current=loan.status,
        )


def split_payment(loan: Loan, amount: float) -> tuple[float, float]:
    """(principal, interest) parts of a payment: interest accrues monthly on outstanding principal."""
    outstanding = loan.outstanding_principal or 0.0
    interest = min(outstanding * monthly_rate(loan.interest_rate), amount)
    principal = min(max(0.0, amount - interest), outstanding)
    return principal, interest


def late_fee(loan: Loan) -> float:
    return max((loan.monthly_payment_amount or 0.0) * settings.late_fee_percentage, settings.min_late_fee)


def _next_payment_date(loan: Loan, payments_made: int, remaining: float):
    if remaining <= settings.closure_epsilon or loan.start_date is None:
        return None
    return add_months(loan.start_date.date(), payments_made + 1)


async def _apply_update(
    session: AsyncSession,
    loan: Loan,
    values: dict[str, Any],
) -> None:
    result = await session.execute(
        update(Loan)
        .where(Loan.id == loan.id, Loan.status == ACTIVE, Loan.version == loan.version)
        .values(**values, version=Loan.version + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise InvalidStateTransition(
            "The loan changed while this request was being processed. Refresh and try again.",
            field="version",
        )


async def make_payment(
    session: AsyncSession,
    user_id: str,
    loan_id: str,
    amount: float,
    account_id: Optional[str] = None,
    feed: ChangeFeed = change_feed,
) -> tuple[Loan, LoanPayment]:
    async with loans.loan_locks.hold(loan_id):
        async with unit_of_work(session):
            loan = await loans.get_loan(session, loan_id, user_id)
            _require_active(loan)
            remaining = loan.remaining_balance or 0.0
            if amount is None or amount <= 0 or amount > remaining + AMOUNT_TOLERANCE:
                raise InvalidPaymentAmount(
                    f"Payment must be between $0.01 and the remaining balance of ${remaining:,.2f}.",
                    field="amount",
                    remaining_balance=round_money(remaining),
                )
            account_id = account_id or loan.account_id
            await accounts.debit(
                session,
                account_id,
                amount,
                user_id=user_id,
                description=f"Loan payment for {notifications.loan_type_label(loan.loan_type)} loan",
                reference=payment_reference(loan_id),
            )

            principal_part, interest_part = split_payment(loan, amount)
            new_remaining = max(0.0, remaining - amount)
            monthly = loan.monthly_payment_amount or 0.0
            installments = max(1, int(amount // monthly)) if monthly > 0 else 1
            payments_made = min(loan.term_months, loan.payments_made + installments)
            now = utcnow()
            await _apply_update(session, loan, {
                "remaining_balance": new_remaining,
                "outstanding_principal": max(0.0, (loan.outstanding_principal or 0.0) - principal_part),
                "payments_made": payments_made,
                "last_payment_date": now,
                "next_payment_date": _next_payment_date(loan, payments_made, new_remaining),
                # Caught up; the next missed date can be assessed again
                "is_late": False,
                "updated_at": now,
            })
            payment = LoanPayment(
                id=f"pay-{uuid.uuid4().hex[:12]}",
                loan_id=loan_id,
                account_id=account_id,
                amount=amount,
                principal_amount=principal_part,
                interest_amount=interest_part,
                balance_after=new_remaining,
                payment_type="manual",
                status="completed",
                payment_date=now,
                created_at=now,
            )
            session.add(payment)
            message = f"Your payment of ${amount:,.2f} has been applied. Remaining balance: ${new_remaining:,.2f}."
            if new_remaining <= settings.closure_epsilon:
                message += " Your loan is fully repaid and will be closed by the Loan Department."
            notifications.add_notification(session, user_id, "Loan Payment Received", message)

    logger.info("Payment of $%.2f on loan %s; remaining %.2f", amount, loan_id, new_remaining)
    await loans.publish_committed(session, loan, feed)
    return loan, payment


def early_payoff_quote(loan: Loan) -> dict[str, float]:
    """Settle the outstanding principal at a discount; remaining scheduled interest is waived."""
    _require_active(loan, "Early payoff")
    outstanding = loan.outstanding_principal or 0.0
    remaining = loan.remaining_balance or 0.0
    discount = outstanding * settings.early_payoff_discount
    payoff = outstanding - discount
    return {
        "outstanding_principal": round_money(outstanding),
        "remaining_scheduled_balance": round_money(remaining),
        "discount_on_principal": round_money(discount),
        "early_payoff_amount": round_money(payoff),
        "interest_waived": round_money(max(0.0, remaining - outstanding)),
        "total_savings": round_money(max(0.0, remaining - payoff)),
        "discount_rate": settings.early_payoff_discount,
    }


async def execute_early_payoff(
    session: AsyncSession,
    user_id: str,
    loan_id: str,
    account_id: Optional[str] = None,
    feed: ChangeFeed = change_feed,
) -> tuple[Loan, LoanPayment]:
    async with loans.loan_locks.hold(loan_id):
        async with unit_of_work(session):
            loan = await loans.get_loan(session, loan_id, user_id)
            quote = early_payoff_quote(loan)
            amount = quote["early_payoff_amount"]
            account_id = account_id or loan.account_id
            await accounts.debit(
                session,
                account_id,
                amount,
                user_id=user_id,
                description=f"Early payoff of {notifications.loan_type_label(loan.loan_type)} loan",
                reference=payment_reference(loan_id),
            )
            now = utcnow()
            await _apply_update(session, loan, {
                "remaining_balance": 0.0,
                "outstanding_principal": 0.0,
                "last_payment_date": now,
                "next_payment_date": None,
                "is_late": False,
                "updated_at": now,
            })
            payment = LoanPayment(
                id=f"pay-{uuid.uuid4().hex[:12]}",
                loan_id=loan_id,
                account_id=account_id,
                amount=amount,
                principal_amount=amount,
                interest_amount=0.0,
                balance_after=0.0,
                payment_type="early_payoff",
                status="completed",
                payment_date=now,
                created_at=now,
            )
            session.add(payment)
            notifications.add_notification(
                session,
                user_id,
                "Loan Paid Off",
                f"Your early payoff of ${amount:,.2f} has been applied, saving you ${quote['total_savings']:,.2f}. "
                "Your loan will be closed by the Loan Department.",
            )

    logger.info("Early payoff of $%.2f on loan %s", amount, loan_id)
    await loans.publish_committed(session, loan, feed)
    return loan, payment


async def payment_history(session: AsyncSession, user_id: str, loan_id: str) -> tuple[Loan, list[LoanPayment], dict[str, Any]]:
    loan = await loans.get_loan(session, loan_id, user_id)
    result = await session.execute(
        select(LoanPayment).where(LoanPayment.loan_id == loan_id).order_by(LoanPayment.payment_date.desc())
    )
    payments = list(result.scalars().all())
    completed = [p for p in payments if p.status == "completed"]
    summary = {
        "total_payments": len(payments),
        "completed_payments": len(completed),
        "pending_payments": sum(1 for p in payments if p.status == "pending"),
        "total_paid": round_money(sum(p.amount for p in completed)),
        "total_principal_paid": round_money(sum(p.principal_amount for p in completed)),
        "total_interest_paid": round_money(sum(p.interest_amount for p in completed)),
        "total_late_fees": round_money(sum(p.amount for p in payments if p.payment_type == "late_fee")),
    }
    return loan, payments, summary


async def process_late_payments(
    session: AsyncSession, today: Optional[date] = None, feed: ChangeFeed = change_feed
) -> list[dict[str, Any]]:
    """
    Flag every active loan whose next payment date is before `today` and that is not already
    flagged. Each loan is assessed in its own transaction; returns what was charged.
    """
    today = today or utcnow().date()
    result = await session.execute(
        select(Loan.id).where(
            Loan.status == ACTIVE,
            Loan.next_payment_date.is_not(None),
            Loan.next_payment_date < today,
            Loan.is_late.is_(False),
        )
    )
    candidates = list(result.scalars().all())
    await session.commit()

    processed = []
    for loan_id in candidates:
        async with loans.loan_locks.hold(loan_id):
            async with unit_of_work(session):
                loan = await loans.get_loan(session, loan_id)
                if loan.status != ACTIVE or loan.is_late or loan.next_payment_date is None:
                    continue
                days_late = (today - loan.next_payment_date).days
                if days_late <= 0:
                    continue
                fee = late_fee(loan)
                new_remaining = (loan.remaining_balance or 0.0) + fee
                now = utcnow()
                await _apply_update(session, loan, {
                    "is_late": True,
                    "late_fee_amount": (loan.late_fee_amount or 0.0) + fee,
                    "remaining_balance": new_remaining,
                    "updated_at": now,
                })
                session.add(LoanPayment(
                    id=f"pay-{uuid.uuid4().hex[:12]}",
                    loan_id=loan_id,
                    account_id=None,
                    amount=fee,
                    principal_amount=0.0,
                    interest_amount=0.0,
                    balance_after=new_remaining,
                    payment_type="late_fee",
                    status="pending",
                    payment_date=now,
                    created_at=now,
                ))
                notifications.add_notification(
                    session,
                    loan.user_id,
                    "Late Payment Notice",
                    f"Your {notifications.loan_type_label(loan.loan_type)} loan payment is {days_late} days late. "
                    f"A late fee of ${fee:,.2f} has been added to your balance.",
                )

        logger.warning("Loan %s is %d days late; fee $%.2f assessed", loan_id, days_late, fee)
        await loans.publish_committed(session, loan, feed)
        processed.append({
            "loan_id": loan_id,
            "loan_type": loan.loan_type,
            "days_late": days_late,
            "late_fee": round_money(fee),
        })
    return processed


async def configure_auto_payment(
    session: AsyncSession,
    user_id: str,
    loan_id: str,
    enabled: bool,
    account_id: Optional[str] = None,
    payment_day: Optional[int] = None,
    feed: ChangeFeed = change_feed,
) -> Loan:
    """Store (or clear) the account and day of month an external runner should pay from."""
    async with loans.loan_locks.hold(loan_id):
        async with unit_of_work(session):
            loan = await loans.get_loan(session, loan_id, user_id)
            _require_active(loan, "Auto-payment settings")
            label = notifications.loan_type_label(loan.loan_type)
            if enabled:
                if not account_id:
                    raise InvalidAutoPaymentSettings(
                        "Choose the account auto-payments should be taken from.", field="accountId"
                    )
                account = await accounts.get_account(session, account_id, user_id)
                if account is None or account.status != "active":
                    raise InvalidAutoPaymentSettings(
                        "Auto-payments need an active account that you own. Choose another account.",
                        field="accountId",
                    )
                day = MIN_AUTO_PAYMENT_DAY if payment_day is None else payment_day
                if not MIN_AUTO_PAYMENT_DAY <= day <= MAX_AUTO_PAYMENT_DAY:
                    raise InvalidAutoPaymentSettings(
                        f"Payment day must be between {MIN_AUTO_PAYMENT_DAY} and {MAX_AUTO_PAYMENT_DAY}.",
                        field="paymentDay",
                    )
                values = {"auto_payment_enabled": True, "auto_payment_account_id": account_id, "auto_payment_day": day}
                title = "Auto-Payment Activated"
                message = f"Auto-payment has been enabled for your {label} loan. Payments will be processed on day {day} of each month."
            else:
                values = {"auto_payment_enabled": False, "auto_payment_account_id": None, "auto_payment_day": None}
                title = "Auto-Payment Deactivated"
                message = f"Auto-payment has been disabled for your {label} loan. You will need to make manual payments."
            await _apply_update(session, loan, {**values, "updated_at": utcnow()})
            notifications.add_notification(session, user_id, title, message)

    logger.info("Auto-payment %s for loan %s", "enabled" if enabled else "disabled", loan_id)
    return await loans.publish_committed(session, loan, feed)
