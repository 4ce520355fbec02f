"""
Fixed-rate annuity math for loans.
Values are returned at full precision; only the display helpers round to cents, so obligation
tracking never accumulates rounding drift.
"""
from __future__ import annotations

from datetime import date
from typing import Any, Optional

from services.errors import InvalidLoanParameters, InvalidTerm
from utils.dates import add_months


def round_money(value: float) -> float:
    return round(value, 2)


def monthly_rate(annual_rate_percent: float) -> float:
    return annual_rate_percent / 100 / 12


def _validate(principal: float, annual_rate_percent: float, term_months: int) -> None:
    if isinstance(term_months, bool) or not isinstance(term_months, int) or term_months < 1:
        raise InvalidTerm(field="termMonths")
    if principal is None or principal <= 0:
        raise InvalidLoanParameters("Loan amount must be greater than zero.", field="principal")
    if annual_rate_percent is None or annual_rate_percent < 0:
        raise InvalidLoanParameters("Interest rate cannot be negative.", field="interestRate")


def monthly_payment(principal: float, annual_rate_percent: float, term_months: int) -> float:
    _validate(principal, annual_rate_percent, term_months)
    r = monthly_rate(annual_rate_percent)
    if r == 0:
        return principal / term_months
    growth = (1 + r) ** term_months
    return principal * r * growth / (growth - 1)


def total_obligation(principal: float, annual_rate_percent: float, term_months: int) -> float:
    return monthly_payment(principal, annual_rate_percent, term_months) * term_months


def amortization_schedule(
    principal: float,
    annual_rate_percent: float,
    term_months: int,
    start_date: Optional[date] = None,
    payments_made: int = 0,
) -> dict[str, Any]:
    """
    Build the month-by-month schedule: each row splits the fixed payment into interest on the
    balance carried into that month and the principal it retires.
    """
    payment = monthly_payment(principal, annual_rate_percent, term_months)
    r = monthly_rate(annual_rate_percent)
    balance = principal
    rows: list[dict[str, Any]] = []
    for n in range(1, term_months + 1):
        interest = balance * r
        principal_part = payment - interest
        balance = max(0.0, balance - principal_part)
        rows.append({
            "payment_number": n,
            "payment_date": add_months(start_date, n).isoformat() if start_date else None,
            "payment_amount": round_money(payment),
            "principal_amount": round_money(principal_part),
            "interest_amount": round_money(interest),
            "remaining_balance": round_money(balance),
            "is_paid": n <= payments_made,
        })
    total = payment * term_months
    return {
        "schedule": rows,
        "summary": {
            "monthly_payment": round_money(payment),
            "total_payments": round_money(total),
            "total_interest": round_money(total - principal),
        },
    }
