"""
Gate applied before any loan record is created. Checks run in a fixed order and the first
failure is raised; nothing is written.
"""
from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models import Loan
from schemas.loan import EligibilityResultSchema
from schemas.product import ProductSnapshot, RateTierSchema
from services import accounts, catalog
from services.errors import (
    MaxActiveLoansExceeded,
    NoActiveAccount,
    PrincipalOutOfRange,
    TermOutOfRange,
    UnknownLoanType,
    UnknownRateTier,
)
from services.state_machine import ACTIVE_STATUSES

logger = logging.getLogger(__name__)


async def count_active_loans(session: AsyncSession, user_id: str) -> int:
    result = await session.execute(
        select(func.count()).select_from(Loan).where(Loan.user_id == user_id, Loan.status.in_(ACTIVE_STATUSES))
    )
    return result.scalar_one()


def select_rate_tier(
    product: ProductSnapshot, term_months: int, interest_rate: Optional[float] = None
) -> RateTierSchema:
    """
    With an explicit APR, the tier offering exactly that rate. Otherwise the first tier whose
    term window covers the request, falling back to the first tier so the term error names it.
    """
    if not product.rates:
        raise UnknownRateTier(f"{product.name} has no published rates.", field="interestRate")
    if interest_rate is not None:
        for tier in product.rates:
            if abs(tier.rate - interest_rate) < 1e-9:
                return tier
        offered = ", ".join(f"{t.rate}%" for t in product.rates)
        raise UnknownRateTier(
            f"{interest_rate}% is not offered for {product.name}. Choose one of: {offered}.",
            field="interestRate",
        )
    for tier in product.rates:
        if tier.covers(term_months):
            return tier
    return product.rates[0]


async def check_eligibility(
    session: AsyncSession,
    user_id: str,
    loan_type: str,
    principal: float,
    term_months: int,
    interest_rate: Optional[float] = None,
) -> EligibilityResultSchema:
    active = await count_active_loans(session, user_id)
    if active >= settings.max_active_loans:
        logger.warning("User %s has %d open loans; application refused", user_id, active)
        raise MaxActiveLoansExceeded(active_loans=active, limit=settings.max_active_loans)

    product = await catalog.get_product(session, loan_type)
    if product is None:
        raise UnknownLoanType(field="loanType", loan_type=loan_type)

    if not (product.min_amount <= principal <= product.max_amount):
        raise PrincipalOutOfRange(
            f"{product.name} amounts must be between ${product.min_amount:,.0f} and ${product.max_amount:,.0f}. "
            "Adjust the amount.",
            field="principal",
            min_amount=product.min_amount,
            max_amount=product.max_amount,
        )

    tier = select_rate_tier(product, term_months, interest_rate)
    if not tier.covers(term_months):
        raise TermOutOfRange(
            f"At {tier.rate}% APR the term must be between {tier.min_term_months} and "
            f"{tier.max_term_months} months. Adjust the term.",
            field="termMonths",
            min_term_months=tier.min_term_months,
            max_term_months=tier.max_term_months,
        )

    active_accounts = await accounts.get_accounts_by_user(session, user_id, status="active")
    if not active_accounts:
        raise NoActiveAccount()

    return EligibilityResultSchema(product=product, tier=tier, account_id=active_accounts[0].id)
