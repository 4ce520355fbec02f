"""
Read-only access to the loan product catalog.
Applications take a ProductSnapshot once and copy the chosen rate tier into the loan, so later
catalog edits never reach existing loans.
"""
from __future__ import annotations

from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from models import LoanProduct, LoanRate
from schemas.product import ProductSnapshot, RateTierSchema

DEFAULT_PRODUCTS: list[dict[str, Any]] = [
    {
        "code": "personal",
        "name": "Personal Loan",
        "min_amount": 1_000,
        "max_amount": 50_000,
        "rates": [{"rate": 6.99, "min_term_months": 12, "max_term_months": 84}],
    },
    {
        "code": "home_mortgage",
        "name": "Home Mortgage",
        "min_amount": 50_000,
        "max_amount": 5_000_000,
        "rates": [{"rate": 7.25, "min_term_months": 180, "max_term_months": 360}],
    },
    {
        "code": "auto_loan",
        "name": "Auto Loan",
        "min_amount": 5_000,
        "max_amount": 100_000,
        "rates": [{"rate": 5.99, "min_term_months": 24, "max_term_months": 72}],
    },
    {
        "code": "business",
        "name": "Business Loan",
        "min_amount": 10_000,
        "max_amount": 500_000,
        "rates": [{"rate": 8.50, "min_term_months": 12, "max_term_months": 120}],
    },
    {
        "code": "student",
        "name": "Student Loan",
        "min_amount": 1_000,
        "max_amount": 100_000,
        "rates": [{"rate": 4.99, "min_term_months": 120, "max_term_months": 240}],
    },
    {
        "code": "home_equity",
        "name": "Home Equity Loan",
        "min_amount": 10_000,
        "max_amount": 500_000,
        "rates": [{"rate": 7.50, "min_term_months": 60, "max_term_months": 360}],
    },
]


def snapshot(product: LoanProduct) -> ProductSnapshot:
    return ProductSnapshot(
        id=product.id,
        code=product.code,
        name=product.name,
        min_amount=product.min_amount,
        max_amount=product.max_amount,
        rates=tuple(
            RateTierSchema(
                rate=r.rate,
                min_term_months=r.min_term_months,
                max_term_months=r.max_term_months,
            )
            for r in product.rates
        ),
    )


async def get_product(session: AsyncSession, code: str) -> Optional[ProductSnapshot]:
    result = await session.execute(
        select(LoanProduct).options(selectinload(LoanProduct.rates)).where(LoanProduct.code == code)
    )
    product = result.scalar_one_or_none()
    return snapshot(product) if product else None


async def list_products(session: AsyncSession) -> list[LoanProduct]:
    result = await session.execute(
        select(LoanProduct).options(selectinload(LoanProduct.rates)).order_by(LoanProduct.min_amount)
    )
    return list(result.scalars().all())


async def create_product(session: AsyncSession, data: dict[str, Any]) -> LoanProduct:
    """Insert a product with its rate tiers; `data` uses the snake_case keys of DEFAULT_PRODUCTS."""
    product_id = f"prod-{data['code']}"
    product = LoanProduct(
        id=product_id,
        code=data["code"],
        name=data["name"],
        description=data.get("description"),
        min_amount=float(data["min_amount"]),
        max_amount=float(data["max_amount"]),
    )
    product.rates = [
        LoanRate(
            id=f"{product_id}-{i}",
            position=i,
            rate=float(tier["rate"]),
            min_term_months=int(tier["min_term_months"]),
            max_term_months=int(tier["max_term_months"]),
        )
        for i, tier in enumerate(data["rates"])
    ]
    session.add(product)
    await session.flush()
    return product


async def ensure_default_products(session: AsyncSession) -> int:
    """Create any DEFAULT_PRODUCTS missing from the catalog. Returns how many were added."""
    existing = set((await session.execute(select(LoanProduct.code))).scalars().all())
    added = 0
    for data in DEFAULT_PRODUCTS:
        if data["code"] in existing:
            continue
        await create_product(session, data)
        added += 1
    return added
