"""
Turns an accepted application into a pending loan.

The eligibility check and the insert run as one serialized unit per user: an in-process keyed
lock covers concurrent requests in this worker, and on PostgreSQL a transaction-scoped advisory
lock covers requests handled by other workers.
"""
from __future__ import annotations

import logging
import uuid

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import unit_of_work
from models import Loan
from schemas.loan import LoanApplyRequest
from services import amortization, eligibility, notifications
from services.deposit_tracker import DEPOSIT_NONE, required_deposit
from services.notifier import ChangeFeed, change_feed
from services.serializers import loan_to_dict
from services.state_machine import PENDING
from utils.dates import utcnow
from utils.locks import KeyedLock

logger = logging.getLogger(__name__)

user_locks = KeyedLock()


async def _advisory_lock(session: AsyncSession, key: str) -> None:
    if settings.is_postgresql:
        await session.execute(text("SELECT pg_advisory_xact_lock(hashtext(:key))"), {"key": key})


async def apply_for_loan(
    session: AsyncSession,
    user_id: str,
    body: LoanApplyRequest,
    feed: ChangeFeed = change_feed,
) -> Loan:
    # Reject malformed terms before touching the database
    amortization.monthly_payment(body.principal, body.interest_rate or 0.0, body.term_months)

    if user_id in user_locks:
        logger.debug("Waiting for another application by %s", user_id)
    async with user_locks.hold(user_id):
        async with unit_of_work(session):
            await _advisory_lock(session, f"loan-apply:{user_id}")
            result = await eligibility.check_eligibility(
                session,
                user_id,
                body.loan_type,
                body.principal,
                body.term_months,
                body.interest_rate,
            )
            rate = result.tier.rate
            payment = amortization.monthly_payment(body.principal, rate, body.term_months)
            now = utcnow()
            loan = Loan(
                id=f"loan-{uuid.uuid4().hex[:12]}",
                user_id=user_id,
                account_id=result.account_id,
                loan_type=result.product.code,
                principal=body.principal,
                term_months=body.term_months,
                interest_rate=rate,
                min_term_months=result.tier.min_term_months,
                max_term_months=result.tier.max_term_months,
                purpose=body.purpose,
                status=PENDING,
                deposit_required=required_deposit(body.principal),
                deposit_paid=False,
                deposit_status=DEPOSIT_NONE,
                deposit_method=None,
                deposit_date=None,
                monthly_payment_amount=payment,
                total_amount=payment * body.term_months,
                # The repayment obligation only starts at activation
                remaining_balance=None,
                outstanding_principal=None,
                payments_made=0,
                next_payment_date=None,
                last_payment_date=None,
                is_late=False,
                late_fee_amount=0.0,
                auto_payment_enabled=False,
                auto_payment_account_id=None,
                auto_payment_day=None,
                rejection_reason=None,
                approved_at=None,
                start_date=None,
                closed_at=None,
                collaterals=[c.model_dump(by_alias=False) for c in body.collaterals],
                id_document_refs=list(body.id_document_refs),
                version=1,
                created_at=now,
                updated_at=now,
            )
            session.add(loan)
            notifications.add_notification(
                session,
                user_id,
                "Loan Application Received",
                f"Your {notifications.loan_type_label(loan.loan_type)} loan application for "
                f"${loan.principal:,.2f} has been received. Pay the ${loan.deposit_required:,.2f} "
                "security deposit to send it for review.",
            )

    logger.info(
        "Loan %s created for user %s: %s $%.2f over %d months at %.2f%%",
        loan.id, user_id, loan.loan_type, loan.principal, loan.term_months, loan.interest_rate,
    )
    feed.publish_loan(loan_to_dict(loan, []))
    await notifications.send_email(
        notifications.TEMPLATE_APPLICATION_RECEIVED,
        user_id,
        {
            "loan_id": loan.id,
            "loan_type": loan.loan_type,
            "principal": loan.principal,
            "term_months": loan.term_months,
            "interest_rate": loan.interest_rate,
            "deposit_required": loan.deposit_required,
        },
    )
    return loan

