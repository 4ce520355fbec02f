"""
Shared fixtures for the async test cases: a fresh in-memory SQLite database per test,
seeded with the default catalog, plus helpers to create accounts and loans.
"""
import unittest
import uuid

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import models  # noqa: F401  registers every table on Base.metadata
from database import Base
from models import Account
from schemas.loan import LoanApplyRequest
from services import applications, notifications
from services.catalog import ensure_default_products
from services.notifier import ChangeFeed
from utils.dates import utcnow


class RecordingEmailDispatcher:
    def __init__(self):
        self.sent = []

    async def send(self, template, recipient, data):
        self.sent.append((template, recipient, data))


class DatabaseTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.engine = create_async_engine(
            "sqlite+aiosqlite://",
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        self.session_factory = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
        )
        self.session = self.session_factory()
        await ensure_default_products(self.session)
        await self.session.commit()
        self.feed = ChangeFeed(queue_size=10)
        self.emails = RecordingEmailDispatcher()
        self._previous_dispatcher = notifications.email_dispatcher
        notifications.set_email_dispatcher(self.emails)

    async def asyncTearDown(self):
        notifications.set_email_dispatcher(self._previous_dispatcher)
        await self.session.close()
        await self.engine.dispose()

    async def add_account(self, user_id="user-1", balance=2_000.0, status="active", account_id=None):
        now = utcnow()
        account = Account(
            id=account_id or f"acct-{uuid.uuid4().hex[:8]}",
            user_id=user_id,
            account_number=uuid.uuid4().hex[:12],
            account_type="checking",
            balance=balance,
            status=status,
            created_at=now,
            updated_at=now,
        )
        # Own session: a rollback in self.session must not expire the returned instance
        async with self.session_factory() as s:
            s.add(account)
            await s.commit()
        return account

    async def balance_of(self, account_id):
        async with self.session_factory() as s:
            account = await s.get(Account, account_id)
            return account.balance

    async def apply(self, user_id="user-1", loan_type="personal", principal=10_000, term_months=36, **extra):
        body = LoanApplyRequest(loanType=loan_type, principal=principal, termMonths=term_months, **extra)
        return await applications.apply_for_loan(self.session, user_id, body, self.feed)
