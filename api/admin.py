from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_feed, require_admin
from database import get_db
from schemas.loan import DepositDecisionRequest, LatePaymentCheckRequest, LoanActionRequest
from services import backoffice, deposits, loans, payments
from services.notifier import ChangeFeed
from services.serializers import loan_to_dict
from utils.case import dict_keys_to_camel

router = APIRouter(prefix="/api/admin/loans", tags=["admin"], dependencies=[Depends(require_admin)])


async def _respond(db: AsyncSession, loan, message: str) -> dict:
    transactions = await loans.deposit_transactions_for(db, [loan.id])
    return {"success": True, "message": message, "loan": loan_to_dict(loan, transactions.get(loan.id, []))}


@router.get("")
async def list_loans(status: Optional[str] = None, db: AsyncSession = Depends(get_db)):
    all_loans = await loans.list_all_loans(db, status)
    transactions = await loans.deposit_transactions_for(db, [l.id for l in all_loans])
    return {"success": True, "loans": [loan_to_dict(l, transactions.get(l.id, [])) for l in all_loans]}


@router.post("/approve")
async def approve(body: LoanActionRequest, db: AsyncSession = Depends(get_db), feed: ChangeFeed = Depends(get_feed)):
    loan = await backoffice.approve_loan(db, body.loan_id, activate=body.activate, feed=feed)
    message = "Loan approved and funds disbursed successfully" if body.activate else "Loan approved successfully"
    return await _respond(db, loan, message)


@router.post("/activate")
async def activate(body: LoanActionRequest, db: AsyncSession = Depends(get_db), feed: ChangeFeed = Depends(get_feed)):
    loan = await backoffice.activate_loan(db, body.loan_id, feed=feed)
    return await _respond(db, loan, "Loan activated and funds disbursed successfully")


@router.post("/reject")
async def reject(body: LoanActionRequest, db: AsyncSession = Depends(get_db), feed: ChangeFeed = Depends(get_feed)):
    loan = await backoffice.reject_loan(db, body.loan_id, reason=body.reason, feed=feed)
    return await _respond(db, loan, "Loan rejected successfully")


@router.post("/close")
async def close(body: LoanActionRequest, db: AsyncSession = Depends(get_db), feed: ChangeFeed = Depends(get_feed)):
    loan = await backoffice.close_loan(db, body.loan_id, feed=feed)
    return await _respond(db, loan, "Loan closed successfully")


@router.post("/confirm-deposit")
async def confirm_deposit(
    body: DepositDecisionRequest, db: AsyncSession = Depends(get_db), feed: ChangeFeed = Depends(get_feed)
):
    loan = await deposits.confirm_crypto_deposit(db, body.loan_id, body.transaction_id, feed=feed)
    return await _respond(db, loan, "Deposit confirmed; loan is under review")


@router.post("/reject-deposit")
async def reject_deposit(
    body: DepositDecisionRequest, db: AsyncSession = Depends(get_db), feed: ChangeFeed = Depends(get_feed)
):
    loan = await deposits.reject_crypto_deposit(db, body.loan_id, body.transaction_id, reason=body.reason, feed=feed)
    return await _respond(db, loan, "Deposit rejected; applicant may pay again")


@router.post("/late-payment-check")
async def late_payment_check(
    body: Optional[LatePaymentCheckRequest] = None,
    db: AsyncSession = Depends(get_db),
    feed: ChangeFeed = Depends(get_feed),
):
    as_of = body.as_of if body else None
    processed = await payments.process_late_payments(db, as_of, feed=feed)
    return {
        "success": True,
        "message": f"Processed {len(processed)} late payment(s)",
        "processed": len(processed),
        "loans": dict_keys_to_camel(processed),
    }
