from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_current_user, get_feed
from database import get_db
from schemas.loan import AutoPaymentRequest, DepositRequest, EarlyPayoffRequest, LoanApplyRequest, PaymentRequest
from services import amortization, applications, deposits, loans, payments
from services.notifier import ChangeFeed, Subscription, loan_topic, user_topic
from services.serializers import loan_to_dict, payment_to_dict
from utils.case import dict_keys_to_camel

router = APIRouter(prefix="/api/loan", tags=["loans"])

KEEPALIVE_SECONDS = 15.0


async def _loan_response(db: AsyncSession, loan) -> dict[str, Any]:
    transactions = await loans.deposit_transactions_for(db, [loan.id])
    return loan_to_dict(loan, transactions.get(loan.id, []))


@router.post("/apply", status_code=201)
async def apply(
    body: LoanApplyRequest,
    user_id: str = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    feed: ChangeFeed = Depends(get_feed),
):
    loan = await applications.apply_for_loan(db, user_id, body, feed)
    return {
        "success": True,
        "id": loan.id,
        "status": loan.status,
        "depositRequired": amortization.round_money(loan.deposit_required),
        "monthlyPayment": amortization.round_money(loan.monthly_payment_amount),
        "loan": loan_to_dict(loan, []),
    }


@router.post("/process-deposit")
async def process_deposit(
    body: DepositRequest,
    user_id: str = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    feed: ChangeFeed = Depends(get_feed),
):
    loan = await deposits.process_deposit(db, user_id, body, feed)
    out = await _loan_response(db, loan)
    return {"success": True, "status": loan.status, "depositStatus": loan.deposit_status, "loan": out}


@router.get("/get-loans")
async def get_loans(user_id: str = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    user_loans = await loans.list_user_loans(db, user_id)
    transactions = await loans.deposit_transactions_for(db, [l.id for l in user_loans])
    return {
        "success": True,
        "loans": [loan_to_dict(l, transactions.get(l.id, [])) for l in user_loans],
    }


async def _event_stream(request: Request, sub: Subscription, initial: list[dict[str, Any]]) -> AsyncIterator[str]:
    """Server-Sent Events: current state first, then every committed change."""
    try:
        for record in initial:
            yield f"event: loan\ndata: {json.dumps(record)}\n\n"
        while True:
            if await request.is_disconnected():
                break
            try:
                record = await sub.get(timeout=KEEPALIVE_SECONDS)
            except asyncio.TimeoutError:
                yield ": keep-alive\n\n"
                continue
            yield f"event: loan\ndata: {json.dumps(record)}\n\n"
    finally:
        sub.close()


@router.get("/stream")
async def stream_user_loans(
    request: Request,
    user_id: str = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    feed: ChangeFeed = Depends(get_feed),
):
    # Subscribe before the snapshot so no change committed in between is missed
    sub = feed.subscribe(user_topic(user_id))
    try:
        user_loans = await loans.list_user_loans(db, user_id)
        transactions = await loans.deposit_transactions_for(db, [l.id for l in user_loans])
        initial = [loan_to_dict(l, transactions.get(l.id, [])) for l in user_loans]
    except Exception:
        sub.close()
        raise
    return StreamingResponse(_event_stream(request, sub, initial), media_type="text/event-stream")


@router.post("/payment")
async def make_payment(
    body: PaymentRequest,
    user_id: str = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    feed: ChangeFeed = Depends(get_feed),
):
    loan, payment = await payments.make_payment(db, user_id, body.loan_id, body.amount, body.account_id, feed)
    return {"success": True, "payment": payment_to_dict(payment), "loan": await _loan_response(db, loan)}


@router.post("/auto-payment")
async def set_auto_payment(
    body: AutoPaymentRequest,
    user_id: str = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    feed: ChangeFeed = Depends(get_feed),
):
    loan = await payments.configure_auto_payment(
        db, user_id, body.loan_id, body.enabled, body.account_id, body.payment_day, feed
    )
    message = "Auto-payment enabled successfully" if body.enabled else "Auto-payment disabled successfully"
    return {"success": True, "message": message, "loan": await _loan_response(db, loan)}


@router.get("/{loan_id}")
async def get_loan(loan_id: str, user_id: str = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    loan = await loans.get_loan(db, loan_id, user_id)
    return await _loan_response(db, loan)


@router.get("/{loan_id}/stream")
async def stream_loan(
    loan_id: str,
    request: Request,
    user_id: str = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    feed: ChangeFeed = Depends(get_feed),
):
    loan = await loans.get_loan(db, loan_id, user_id)
    sub = feed.subscribe(loan_topic(loan_id))
    try:
        initial = [await _loan_response(db, loan)]
    except Exception:
        sub.close()
        raise
    return StreamingResponse(_event_stream(request, sub, initial), media_type="text/event-stream")


@router.get("/{loan_id}/amortization")
async def get_amortization(loan_id: str, user_id: str = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    loan = await loans.get_loan(db, loan_id, user_id)
    start = loan.start_date or loan.created_at
    plan = amortization.amortization_schedule(
        loan.principal,
        loan.interest_rate,
        loan.term_months,
        start_date=start.date() if start else None,
        payments_made=loan.payments_made,
    )
    return {
        "success": True,
        "loanDetails": {
            "loanId": loan.id,
            "loanType": loan.loan_type,
            "principal": loan.principal,
            "interestRate": loan.interest_rate,
            "termMonths": loan.term_months,
            "paymentsMade": loan.payments_made,
            "status": loan.status,
        },
        "schedule": dict_keys_to_camel(plan["schedule"]),
        "summary": dict_keys_to_camel(plan["summary"]),
    }


@router.get("/{loan_id}/payment-history")
async def get_payment_history(
    loan_id: str, user_id: str = Depends(get_current_user), db: AsyncSession = Depends(get_db)
):
    loan, history, summary = await payments.payment_history(db, user_id, loan_id)
    return {
        "success": True,
        "loanInfo": {
            "loanId": loan.id,
            "loanType": loan.loan_type,
            "principal": amortization.round_money(loan.principal),
            "remainingBalance": amortization.round_money(loan.remaining_balance or 0.0),
            "status": loan.status,
        },
        "paymentSummary": dict_keys_to_camel(summary),
        "payments": [payment_to_dict(p) for p in history],
    }


@router.get("/{loan_id}/early-payoff")
async def get_early_payoff(loan_id: str, user_id: str = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    loan = await loans.get_loan(db, loan_id, user_id)
    return {"success": True, "loanId": loan.id, "earlyPayoff": dict_keys_to_camel(payments.early_payoff_quote(loan))}


@router.post("/{loan_id}/early-payoff")
async def post_early_payoff(
    loan_id: str,
    body: EarlyPayoffRequest,
    user_id: str = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    feed: ChangeFeed = Depends(get_feed),
):
    loan, payment = await payments.execute_early_payoff(db, user_id, loan_id, body.account_id, feed)
    return {"success": True, "payment": payment_to_dict(payment), "loan": await _loan_response(db, loan)}
