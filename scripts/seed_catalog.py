"""
Seed the loan product catalog and a few demo accounts.
Run: python -m scripts.seed_catalog (from the project root).
"""
import asyncio
import os
import sys

# Add parent so we can import from the project root
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import select

from database import AsyncSessionLocal, init_db
from models import Account
from services.catalog import ensure_default_products
from utils.dates import utcnow


DEMO_ACCOUNTS = [
    {"id": "acct-demo-1", "user_id": "demo-user", "account_number": "100000001", "balance": 25_000.0},
    {"id": "acct-demo-2", "user_id": "demo-user", "account_number": "100000002", "balance": 500.0},
    {"id": "acct-demo-3", "user_id": "demo-borrower", "account_number": "100000003", "balance": 2_000.0},
]


async def seed():
    await init_db()
    async with AsyncSessionLocal() as session:
        added = await ensure_default_products(session)
        print(f"Seeded {added} loan product(s)")
        for data in DEMO_ACCOUNTS:
            existing = await session.execute(select(Account).where(Account.id == data["id"]))
            if existing.scalar_one_or_none():
                print(f"Account {data['id']} already exists, skipping")
                continue
            now = utcnow()
            session.add(Account(account_type="checking", status="active", created_at=now, updated_at=now, **data))
            print(f"Seeded account {data['account_number']} for {data['user_id']}")
        await session.commit()
    print("Seed complete.")


if __name__ == "__main__":
    asyncio.run(seed())
