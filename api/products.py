from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from api.deps import require_admin
from database import get_db
from models import LoanProduct, LoanRate
from schemas.product import ProductCreate, ProductUpdate, RateTierSchema
from services import catalog
from services.errors import ProductNotFound
from utils.dates import isoformat_or_none

router = APIRouter(prefix="/api/loan-products", tags=["loan-products"])


def _rate_to_response(r: LoanRate) -> dict[str, Any]:
    return {
        "id": r.id,
        "rate": r.rate,
        "minTermMonths": r.min_term_months,
        "maxTermMonths": r.max_term_months,
    }


def _product_to_response(p: LoanProduct) -> dict[str, Any]:
    return {
        "id": p.id,
        "code": p.code,
        "name": p.name,
        "description": p.description,
        "minAmount": p.min_amount,
        "maxAmount": p.max_amount,
        "rates": [_rate_to_response(r) for r in p.rates],
        "createdAt": isoformat_or_none(p.created_at),
        "updatedAt": isoformat_or_none(p.updated_at),
    }


async def _load(db: AsyncSession, code: str) -> LoanProduct:
    result = await db.execute(
        select(LoanProduct)
        .options(selectinload(LoanProduct.rates))
        .where(LoanProduct.code == code)
        .execution_options(populate_existing=True)
    )
    product = result.scalar_one_or_none()
    if not product:
        raise ProductNotFound(field="code")
    return product


@router.get("", response_model=list[dict])
async def list_products(db: AsyncSession = Depends(get_db)):
    return [_product_to_response(p) for p in await catalog.list_products(db)]


@router.get("/{code}", response_model=dict)
async def get_product(code: str, db: AsyncSession = Depends(get_db)):
    return _product_to_response(await _load(db, code))


@router.post("", response_model=dict, status_code=201, dependencies=[Depends(require_admin)])
async def create_product(body: ProductCreate, db: AsyncSession = Depends(get_db)):
    existing = await db.execute(select(LoanProduct.id).where(LoanProduct.code == body.code))
    if existing.scalar_one_or_none():
        raise HTTPException(status_code=400, detail="Product code already in use")
    await catalog.create_product(db, body.model_dump())
    return _product_to_response(await _load(db, body.code))


@router.patch("/{code}", response_model=dict, dependencies=[Depends(require_admin)])
async def update_product(code: str, body: ProductUpdate, db: AsyncSession = Depends(get_db)):
    product = await _load(db, code)
    if body.name is not None:
        product.name = body.name
    if body.description is not None:
        product.description = body.description
    if body.min_amount is not None:
        product.min_amount = body.min_amount
    if body.max_amount is not None:
        product.max_amount = body.max_amount
    if product.min_amount > product.max_amount:
        raise HTTPException(status_code=400, detail="minAmount must not exceed maxAmount")
    await db.flush()
    return _product_to_response(await _load(db, code))


@router.post("/{code}/rates", response_model=dict, status_code=201, dependencies=[Depends(require_admin)])
async def add_rate(code: str, body: RateTierSchema, db: AsyncSession = Depends(get_db)):
    product = await _load(db, code)
    position = len(product.rates)
    rate = LoanRate(
        id=f"{product.id}-{position}",
        product_id=product.id,
        position=position,
        rate=body.rate,
        min_term_months=body.min_term_months,
        max_term_months=body.max_term_months,
    )
    db.add(rate)
    await db.flush()
    return _rate_to_response(rate)
