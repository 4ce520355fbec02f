"""
End-to-end HTTP flows against the FastAPI app with an in-memory database.
Run from project root: python -m pytest tests/test_api.py -v
"""
import json
import unittest
from datetime import date, timedelta
from unittest import mock

import httpx
from sqlalchemy import update

from api.deps import get_feed
from api.loans import _event_stream
from config import settings
from database import get_db
from main import app
from models import LoanRate
from services import amortization
from services.notifier import ChangeFeed, loan_topic
from tests.support import DatabaseTestCase

USER = {"X-User-Id": "user-1"}
ADMIN = {"X-Admin-Key": settings.admin_api_key}


class ApiTestCase(DatabaseTestCase):
    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.account_id = (await self.add_account(balance=2_000.0)).id

        async def override_get_db():
            async with self.session_factory() as session:
                try:
                    yield session
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise

        app.dependency_overrides[get_db] = override_get_db
        app.dependency_overrides[get_feed] = lambda: self.feed
        self.client = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")

    async def asyncTearDown(self):
        await self.client.aclose()
        app.dependency_overrides.clear()
        await super().asyncTearDown()

    async def apply_personal(self, principal=10_000):
        return await self.client.post(
            "/api/loan/apply",
            json={"loanType": "personal", "principal": principal, "termMonths": 36, "interestRate": 6.99},
            headers=USER,
        )


class TestLoanFlow(ApiTestCase):
    async def test_apply_deposit_approve_activate(self):
        resp = await self.apply_personal()
        self.assertEqual(resp.status_code, 201)
        body = resp.json()
        loan_id = body["id"]
        self.assertEqual(body["status"], "pending")
        self.assertEqual(body["depositRequired"], 1_000.0)
        monthly = amortization.monthly_payment(10_000, 6.99, 36)
        self.assertEqual(body["monthlyPayment"], round(monthly, 2))
        self.assertEqual(body["loan"]["depositBanner"], "required")

        resp = await self.client.post(
            "/api/loan/process-deposit",
            json={"loanId": loan_id, "accountId": self.account_id, "amount": 1_000, "depositMethod": "balance"},
            headers=USER,
        )
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["status"], "under_review")
        self.assertEqual(await self.balance_of(self.account_id), 1_000.0)

        resp = await self.client.post(
            "/api/loan/process-deposit",
            json={"loanId": loan_id, "accountId": self.account_id, "amount": 1_000, "depositMethod": "balance"},
            headers=USER,
        )
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.json()["error"]["code"], "DepositAlreadySettled")
        self.assertEqual(await self.balance_of(self.account_id), 1_000.0)

        resp = await self.client.post("/api/admin/loans/approve", json={"loanId": loan_id, "activate": True}, headers=ADMIN)
        self.assertEqual(resp.status_code, 200)
        loan = resp.json()["loan"]
        self.assertEqual(loan["status"], "active")
        self.assertEqual(loan["remainingBalance"], round(monthly * 36, 2))
        self.assertEqual(await self.balance_of(self.account_id), 11_000.0)

        resp = await self.client.post("/api/admin/loans/close", json={"loanId": loan_id}, headers=ADMIN)
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.json()["error"]["code"], "InvalidStateTransition")

        resp = await self.client.get(f"/api/loan/{loan_id}/amortization", headers=USER)
        self.assertEqual(len(resp.json()["schedule"]), 36)
        self.assertIn("interestAmount", resp.json()["schedule"][0])

        resp = await self.client.get("/api/notifications", headers=USER)
        self.assertEqual(len(resp.json()), 3)

    async def test_crypto_deposit_confirmed_by_back_office(self):
        loan_id = (await self.apply_personal()).json()["id"]
        resp = await self.client.post(
            "/api/loan/process-deposit",
            json={"loanId": loan_id, "amount": 1_000, "depositMethod": "crypto", "cryptoType": "USDT", "txHash": "0xf00"},
            headers=USER,
        )
        loan = resp.json()["loan"]
        self.assertEqual(loan["depositBanner"], "submitted")
        tx_id = loan["depositTransactions"][0]["id"]

        resp = await self.client.post(
            "/api/admin/loans/confirm-deposit", json={"loanId": loan_id, "transactionId": tx_id}, headers=ADMIN
        )
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["loan"]["status"], "under_review")
        self.assertEqual(resp.json()["loan"]["depositBanner"], "verified")

    async def test_get_loans_lists_only_own_loans(self):
        await self.apply_personal()
        await self.add_account(user_id="user-2")
        await self.client.post(
            "/api/loan/apply",
            json={"loanType": "auto_loan", "principal": 20_000, "termMonths": 48},
            headers={"X-User-Id": "user-2"},
        )
        resp = await self.client.get("/api/loan/get-loans", headers=USER)
        self.assertEqual(len(resp.json()["loans"]), 1)
        resp = await self.client.get("/api/admin/loans", params={"status": "pending"}, headers=ADMIN)
        self.assertEqual(len(resp.json()["loans"]), 2)


class TestErrors(ApiTestCase):
    async def test_missing_identity(self):
        resp = await self.client.post(
            "/api/loan/apply", json={"loanType": "personal", "principal": 10_000, "termMonths": 36}
        )
        self.assertEqual(resp.status_code, 401)

    async def test_admin_key_required(self):
        resp = await self.client.post("/api/admin/loans/approve", json={"loanId": "loan-x"})
        self.assertEqual(resp.status_code, 403)
        resp = await self.client.post("/api/admin/loans/approve", json={"loanId": "loan-x"}, headers={"X-Admin-Key": "wrong"})
        self.assertEqual(resp.status_code, 403)

    async def test_policy_error_shape(self):
        resp = await self.apply_personal(principal=500)
        self.assertEqual(resp.status_code, 400)
        error = resp.json()["error"]
        self.assertEqual(error["code"], "PrincipalOutOfRange")
        self.assertEqual(error["category"], "validation")
        self.assertEqual(error["field"], "principal")

    async def test_limit_of_open_loans(self):
        await self.apply_personal()
        await self.apply_personal()
        resp = await self.apply_personal()
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(resp.json()["error"]["code"], "MaxActiveLoansExceeded")

    async def test_other_users_loan_is_not_found(self):
        loan_id = (await self.apply_personal()).json()["id"]
        resp = await self.client.get(f"/api/loan/{loan_id}", headers={"X-User-Id": "user-2"})
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.json()["error"]["code"], "LoanNotFound")

    async def test_products_are_public(self):
        resp = await self.client.get("/api/loan-products")
        self.assertEqual(resp.status_code, 200)
        codes = {p["code"] for p in resp.json()}
        self.assertIn("personal", codes)
        self.assertEqual(len(codes), 6)


class ActiveLoanApiTestCase(ApiTestCase):
    async def activate_personal(self):
        loan_id = (await self.apply_personal()).json()["id"]
        await self.client.post(
            "/api/loan/process-deposit",
            json={"loanId": loan_id, "accountId": self.account_id, "amount": 1_000, "depositMethod": "balance"},
            headers=USER,
        )
        resp = await self.client.post("/api/admin/loans/approve", json={"loanId": loan_id, "activate": True}, headers=ADMIN)
        return resp.json()["loan"]


class TestCryptoRejection(ApiTestCase):
    async def test_reject_deposit_lets_applicant_pay_again(self):
        loan_id = (await self.apply_personal()).json()["id"]
        resp = await self.client.post(
            "/api/loan/process-deposit",
            json={"loanId": loan_id, "amount": 1_000, "depositMethod": "crypto", "cryptoType": "USDT", "txHash": "0xbad"},
            headers=USER,
        )
        tx_id = resp.json()["loan"]["depositTransactions"][0]["id"]

        resp = await self.client.post(
            "/api/admin/loans/reject-deposit",
            json={"loanId": loan_id, "transactionId": tx_id, "reason": "hash not found"},
            headers=ADMIN,
        )
        self.assertEqual(resp.status_code, 200)
        loan = resp.json()["loan"]
        self.assertEqual(loan["status"], "pending")
        self.assertEqual(loan["depositStatus"], "none")
        self.assertEqual(loan["depositBanner"], "required")
        self.assertEqual(loan["depositTransactions"][0]["status"], "rejected")

        resp = await self.client.post(
            "/api/admin/loans/reject-deposit", json={"loanId": loan_id, "transactionId": tx_id}, headers=ADMIN
        )
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.json()["error"]["code"], "DepositTransactionNotFound")

        resp = await self.client.post(
            "/api/loan/process-deposit",
            json={"loanId": loan_id, "accountId": self.account_id, "amount": 1_000, "depositMethod": "balance"},
            headers=USER,
        )
        self.assertEqual(resp.json()["status"], "under_review")


class TestCatalogAdmin(ApiTestCase):
    async def test_create_patch_and_add_rate(self):
        product = {
            "code": "green_energy",
            "name": "Green Energy Loan",
            "minAmount": 2_000,
            "maxAmount": 40_000,
            "rates": [{"rate": 4.5, "minTermMonths": 12, "maxTermMonths": 120}],
        }
        resp = await self.client.post("/api/loan-products", json=product)
        self.assertEqual(resp.status_code, 403)
        resp = await self.client.post("/api/loan-products", json=product, headers=ADMIN)
        self.assertEqual(resp.status_code, 201)
        self.assertEqual(resp.json()["rates"][0]["rate"], 4.5)
        resp = await self.client.post("/api/loan-products", json=product, headers=ADMIN)
        self.assertEqual(resp.status_code, 400)

        resp = await self.client.patch("/api/loan-products/green_energy", json={"minAmount": 50_000}, headers=ADMIN)
        self.assertEqual(resp.status_code, 400)
        resp = await self.client.patch("/api/loan-products/green_energy", json={"maxAmount": 60_000}, headers=ADMIN)
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["maxAmount"], 60_000)

        resp = await self.client.post(
            "/api/loan-products/green_energy/rates",
            json={"rate": 5.25, "minTermMonths": 6, "maxTermMonths": 11},
            headers=ADMIN,
        )
        self.assertEqual(resp.status_code, 201)
        self.assertEqual(resp.json()["rate"], 5.25)
        resp = await self.client.get("/api/loan-products/green_energy")
        self.assertEqual([r["rate"] for r in resp.json()["rates"]], [4.5, 5.25])
        self.assertEqual(resp.json()["minAmount"], 2_000)

    async def test_unknown_product(self):
        resp = await self.client.patch("/api/loan-products/nope", json={"name": "x"}, headers=ADMIN)
        self.assertEqual(resp.status_code, 404)

    async def test_edits_never_touch_existing_loans(self):
        loan = (await self.apply_personal()).json()["loan"]
        await self.client.patch(
            "/api/loan-products/personal", json={"minAmount": 20_000, "maxAmount": 30_000}, headers=ADMIN
        )
        async with self.session_factory() as s:
            await s.execute(update(LoanRate).where(LoanRate.product_id == "prod-personal").values(rate=12.5))
            await s.commit()

        resp = await self.client.get(f"/api/loan/{loan['id']}", headers=USER)
        after = resp.json()
        self.assertEqual(after["interestRate"], 6.99)
        self.assertEqual(after["principal"], 10_000)
        self.assertEqual(after["monthlyPayment"], loan["monthlyPayment"])
        self.assertEqual(after["totalAmount"], loan["totalAmount"])
        self.assertEqual(after["version"], loan["version"])
        resp = await self.client.get(f"/api/loan/{loan['id']}/amortization", headers=USER)
        self.assertEqual(resp.json()["loanDetails"]["interestRate"], 6.99)

        # New applications see the edited catalog
        resp = await self.apply_personal()
        self.assertEqual(resp.json()["error"]["code"], "PrincipalOutOfRange")


class TestLateAndAutoPayments(ActiveLoanApiTestCase):
    async def test_late_payment_check(self):
        loan = await self.activate_personal()
        due = date.fromisoformat(loan["nextPaymentDate"])
        resp = await self.client.post("/api/admin/loans/late-payment-check", json={"asOf": str(due)}, headers=ADMIN)
        self.assertEqual(resp.json()["processed"], 0)

        as_of = due + timedelta(days=7)
        resp = await self.client.post("/api/admin/loans/late-payment-check", json={"asOf": str(as_of)}, headers=ADMIN)
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual(body["processed"], 1)
        self.assertEqual(body["loans"], [{"loanId": loan["id"], "loanType": "personal", "daysLate": 7, "lateFee": 25.0}])

        resp = await self.client.get(f"/api/loan/{loan['id']}", headers=USER)
        self.assertTrue(resp.json()["isLate"])
        self.assertAlmostEqual(resp.json()["remainingBalance"], loan["remainingBalance"] + 25.0, places=2)
        resp = await self.client.get(f"/api/loan/{loan['id']}/payment-history", headers=USER)
        self.assertEqual(resp.json()["paymentSummary"]["totalLateFees"], 25.0)

    async def test_late_payment_check_requires_admin(self):
        resp = await self.client.post("/api/admin/loans/late-payment-check", headers=USER)
        self.assertEqual(resp.status_code, 403)

    async def test_auto_payment_settings(self):
        loan = await self.activate_personal()
        resp = await self.client.post(
            "/api/loan/auto-payment",
            json={"loanId": loan["id"], "enabled": True, "accountId": self.account_id, "paymentDay": 10},
            headers=USER,
        )
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(
            resp.json()["loan"]["autoPayment"], {"enabled": True, "accountId": self.account_id, "paymentDay": 10}
        )

        resp = await self.client.post(
            "/api/loan/auto-payment",
            json={"loanId": loan["id"], "enabled": True, "accountId": self.account_id, "paymentDay": 30},
            headers=USER,
        )
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["error"]["code"], "InvalidAutoPaymentSettings")

        resp = await self.client.post(
            "/api/loan/auto-payment", json={"loanId": loan["id"], "enabled": False}, headers=USER
        )
        self.assertEqual(resp.json()["loan"]["autoPayment"]["enabled"], False)


class TestAccounts(ActiveLoanApiTestCase):
    async def test_ledger_lists_loan_movements(self):
        await self.activate_personal()
        resp = await self.client.get("/api/accounts", headers=USER)
        self.assertEqual(resp.json()["accounts"][0]["balance"], 11_000.0)

        resp = await self.client.get(f"/api/accounts/{self.account_id}/transactions", headers=USER)
        self.assertEqual(resp.status_code, 200)
        entries = resp.json()["transactions"]
        self.assertEqual(sorted(e["type"] for e in entries), ["credit", "debit"])
        self.assertEqual(sorted(e["balanceAfter"] for e in entries), [1_000.0, 11_000.0])

    async def test_other_users_account_is_not_found(self):
        resp = await self.client.get(f"/api/accounts/{self.account_id}/transactions", headers={"X-User-Id": "user-2"})
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.json()["error"]["code"], "AccountNotFound")


class FakeRequest:
    async def is_disconnected(self):
        return False


class TestEventStream(unittest.IsolatedAsyncioTestCase):
    async def test_snapshot_then_pushed_update(self):
        feed = ChangeFeed(queue_size=5)
        sub = feed.subscribe(loan_topic("loan-1"))
        snapshot = {"id": "loan-1", "userId": "user-1", "status": "pending", "version": 1}
        stream = _event_stream(FakeRequest(), sub, [snapshot])

        first = await stream.__anext__()
        self.assertEqual(first, f"event: loan\ndata: {json.dumps(snapshot)}\n\n")

        feed.publish_loan({**snapshot, "status": "under_review", "version": 2})
        second = await stream.__anext__()
        self.assertTrue(second.startswith("event: loan\ndata: "))
        self.assertEqual(json.loads(second.split("data: ", 1)[1])["status"], "under_review")

        await stream.aclose()
        self.assertTrue(sub.closed)
        self.assertEqual(feed.subscriber_count(loan_topic("loan-1")), 0)

    async def test_keepalive_when_idle(self):
        feed = ChangeFeed()
        sub = feed.subscribe(loan_topic("loan-1"))
        stream = _event_stream(FakeRequest(), sub, [])
        with mock.patch("api.loans.KEEPALIVE_SECONDS", 0.01):
            self.assertEqual(await stream.__anext__(), ": keep-alive\n\n")
        await stream.aclose()
        self.assertEqual(feed.subscriber_count(loan_topic("loan-1")), 0)


if __name__ == "__main__":
    unittest.main()
