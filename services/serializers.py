"""Loan, deposit and payment records as camelCase dicts for the API and the change feed."""
from __future__ import annotations

from typing import Any, Iterable, Optional

from models import DepositTransaction, Loan, LoanPayment
from services.amortization import round_money
from services.deposit_tracker import banner_message, deposit_banner
from utils.case import dict_keys_to_camel
from utils.dates import isoformat_or_none


def _money(value: Optional[float]) -> Optional[float]:
    return round_money(value) if value is not None else None


def deposit_transaction_to_dict(tx: DepositTransaction) -> dict[str, Any]:
    return {
        "id": tx.id,
        "loanId": tx.loan_id,
        "method": tx.method,
        "amount": _money(tx.amount),
        "status": tx.status,
        "accountId": tx.account_id,
        "cryptoType": tx.crypto_type,
        "networkType": tx.network_type,
        "reference": tx.reference,
        "completedAt": isoformat_or_none(tx.completed_at),
        "createdAt": isoformat_or_none(tx.created_at),
    }


def loan_to_dict(
    loan: Loan, deposit_transactions: Optional[Iterable[DepositTransaction]] = None
) -> dict[str, Any]:
    """
    Serialize a loan with its derived fields (display-rounded monthly payment, deposit banner).
    `version` lets subscribers discard deltas older than what they already show.
    """
    transactions = list(deposit_transactions or [])
    banner = deposit_banner(loan, transactions)
    return {
        "id": loan.id,
        "userId": loan.user_id,
        "accountId": loan.account_id,
        "loanType": loan.loan_type,
        "principal": _money(loan.principal),
        "termMonths": loan.term_months,
        "interestRate": loan.interest_rate,
        "purpose": loan.purpose,
        "status": loan.status,
        "depositRequired": _money(loan.deposit_required),
        "depositPaid": loan.deposit_paid,
        "depositStatus": loan.deposit_status,
        "depositMethod": loan.deposit_method,
        "depositDate": isoformat_or_none(loan.deposit_date),
        "depositBanner": banner,
        "depositBannerMessage": banner_message(banner),
        "monthlyPayment": _money(loan.monthly_payment_amount),
        "totalAmount": _money(loan.total_amount),
        "remainingBalance": _money(loan.remaining_balance),
        "paymentsMade": loan.payments_made,
        "nextPaymentDate": isoformat_or_none(loan.next_payment_date),
        "lastPaymentDate": isoformat_or_none(loan.last_payment_date),
        "isLate": bool(loan.is_late),
        "lateFeeAmount": _money(loan.late_fee_amount or 0.0),
        "autoPayment": {
            "enabled": bool(loan.auto_payment_enabled),
            "accountId": loan.auto_payment_account_id,
            "paymentDay": loan.auto_payment_day,
        },
        "collaterals": dict_keys_to_camel(loan.collaterals or []),
        "idDocumentRefs": list(loan.id_document_refs or []),
        "rejectionReason": loan.rejection_reason,
        "version": loan.version,
        "approvedAt": isoformat_or_none(loan.approved_at),
        "startDate": isoformat_or_none(loan.start_date),
        "closedAt": isoformat_or_none(loan.closed_at),
        "createdAt": isoformat_or_none(loan.created_at),
        "updatedAt": isoformat_or_none(loan.updated_at),
        "depositTransactions": [deposit_transaction_to_dict(tx) for tx in transactions],
    }


def payment_to_dict(p: LoanPayment) -> dict[str, Any]:
    return {
        "id": p.id,
        "loanId": p.loan_id,
        "accountId": p.account_id,
        "amount": _money(p.amount),
        "principalAmount": _money(p.principal_amount),
        "interestAmount": _money(p.interest_amount),
        "balanceAfter": _money(p.balance_after),
        "paymentType": p.payment_type,
        "status": p.status,
        "paymentDate": isoformat_or_none(p.payment_date),
    }
