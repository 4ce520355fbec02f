"""
Tests for the pre-application gate: check order and each refusal.
Run from project root: python -m pytest tests/test_eligibility.py -v
"""
import unittest

from schemas.product import ProductSnapshot, RateTierSchema
from services.eligibility import check_eligibility, count_active_loans, select_rate_tier
from services.errors import (
    MaxActiveLoansExceeded,
    NoActiveAccount,
    PrincipalOutOfRange,
    TermOutOfRange,
    UnknownLoanType,
    UnknownRateTier,
)
from tests.support import DatabaseTestCase


def _product(*tiers):
    return ProductSnapshot(
        id="prod-x",
        code="x",
        name="Test Loan",
        min_amount=1_000,
        max_amount=10_000,
        rates=tuple(RateTierSchema(rate=r, min_term_months=lo, max_term_months=hi) for r, lo, hi in tiers),
    )


class TestSelectRateTier(unittest.TestCase):
    def test_first_tier_covering_term(self):
        product = _product((9.0, 12, 24), (7.0, 36, 60))
        self.assertEqual(select_rate_tier(product, 48).rate, 7.0)

    def test_explicit_rate_must_be_offered(self):
        product = _product((9.0, 12, 24), (7.0, 36, 60))
        self.assertEqual(select_rate_tier(product, 12, 7.0).rate, 7.0)
        with self.assertRaises(UnknownRateTier):
            select_rate_tier(product, 12, 8.0)

    def test_falls_back_to_first_tier(self):
        product = _product((9.0, 12, 24))
        self.assertEqual(select_rate_tier(product, 120).rate, 9.0)


class TestCheckEligibility(DatabaseTestCase):
    async def test_eligible(self):
        account = await self.add_account()
        result = await check_eligibility(self.session, "user-1", "personal", 10_000, 36)
        self.assertEqual(result.product.code, "personal")
        self.assertEqual(result.tier.rate, 6.99)
        self.assertEqual(result.account_id, account.id)

    async def test_unknown_loan_type(self):
        await self.add_account()
        with self.assertRaises(UnknownLoanType):
            await check_eligibility(self.session, "user-1", "yacht", 10_000, 36)

    async def test_principal_out_of_range(self):
        await self.add_account()
        with self.assertRaises(PrincipalOutOfRange) as ctx:
            await check_eligibility(self.session, "user-1", "personal", 500, 36)
        self.assertEqual(ctx.exception.field, "principal")
        with self.assertRaises(PrincipalOutOfRange):
            await check_eligibility(self.session, "user-1", "personal", 50_001, 36)

    async def test_term_out_of_range(self):
        await self.add_account()
        with self.assertRaises(TermOutOfRange) as ctx:
            await check_eligibility(self.session, "user-1", "personal", 10_000, 6)
        self.assertEqual(ctx.exception.details["min_term_months"], 12)

    async def test_no_active_account(self):
        await self.add_account(status="frozen")
        with self.assertRaises(NoActiveAccount):
            await check_eligibility(self.session, "user-1", "personal", 10_000, 36)

    async def test_active_loan_limit_checked_first(self):
        await self.add_account(balance=0)
        await self.apply()
        await self.apply(principal=5_000)
        self.assertEqual(await count_active_loans(self.session, "user-1"), 2)
        # Unknown type would also fail, but the limit is reported first
        with self.assertRaises(MaxActiveLoansExceeded) as ctx:
            await check_eligibility(self.session, "user-1", "yacht", 10_000, 36)
        self.assertEqual(ctx.exception.status_code, 403)

    async def test_other_users_loans_do_not_count(self):
        await self.add_account(user_id="user-2")
        await self.apply(user_id="user-2")
        await self.apply(user_id="user-2")
        self.assertEqual(await count_active_loans(self.session, "user-1"), 0)


if __name__ == "__main__":
    unittest.main()
