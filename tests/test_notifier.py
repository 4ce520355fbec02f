"""
Tests for the in-process change feed and the subscriber-side view.
Run from project root: python -m pytest tests/test_notifier.py -v
"""
import asyncio
import unittest

from services.notifier import ChangeFeed, LoanView, loan_topic, user_topic


def _record(version, status="pending", loan_id="loan-1", user_id="user-1"):
    return {"id": loan_id, "userId": user_id, "status": status, "depositStatus": "none", "version": version}


class TestChangeFeed(unittest.IsolatedAsyncioTestCase):
    async def test_publish_reaches_both_topics(self):
        feed = ChangeFeed(queue_size=5)
        by_user = feed.subscribe(user_topic("user-1"))
        by_loan = feed.subscribe(loan_topic("loan-1"))
        self.assertEqual(feed.publish_loan(_record(1)), 2)
        self.assertEqual((await by_user.get(timeout=1))["version"], 1)
        self.assertEqual((await by_loan.get(timeout=1))["version"], 1)

    async def test_stale_versions_are_dropped(self):
        feed = ChangeFeed(queue_size=5)
        sub = feed.subscribe(loan_topic("loan-1"))
        feed.publish_loan(_record(3, status="under_review"))
        self.assertEqual(feed.publish_loan(_record(2)), 0)
        self.assertEqual(sub.queue.qsize(), 1)
        self.assertEqual((await sub.get(timeout=1))["status"], "under_review")

    async def test_full_queue_drops_oldest(self):
        feed = ChangeFeed(queue_size=2)
        sub = feed.subscribe(loan_topic("loan-1"))
        for version in (1, 2, 3):
            feed.publish_loan(_record(version))
        self.assertEqual([sub.queue.get_nowait()["version"] for _ in range(2)], [2, 3])

    async def test_no_subscribers(self):
        feed = ChangeFeed()
        self.assertEqual(feed.publish_loan(_record(1)), 0)

    async def test_close_unsubscribes(self):
        feed = ChangeFeed()
        with feed.subscribe(user_topic("user-1")):
            self.assertEqual(feed.subscriber_count(user_topic("user-1")), 1)
        self.assertEqual(feed.subscriber_count(user_topic("user-1")), 0)

    async def test_async_iteration(self):
        feed = ChangeFeed()
        sub = feed.subscribe(loan_topic("loan-1"))
        feed.publish_loan(_record(1))
        feed.publish_loan(_record(2, status="under_review"))
        seen = []
        async for record in sub:
            seen.append(record["version"])
            if len(seen) == 2:
                break
        sub.close()
        self.assertEqual(seen, [1, 2])
        self.assertEqual(feed.subscriber_count(loan_topic("loan-1")), 0)

    async def test_get_times_out(self):
        feed = ChangeFeed()
        sub = feed.subscribe(user_topic("user-1"))
        with self.assertRaises(asyncio.TimeoutError):
            await sub.get(timeout=0.01)
        sub.close()


class TestLoanView(unittest.TestCase):
    def test_keeps_newest_version(self):
        view = LoanView()
        self.assertTrue(view.apply(_record(2, status="under_review")))
        self.assertFalse(view.apply(_record(1, status="pending")))
        self.assertFalse(view.apply(_record(2, status="pending")))
        self.assertEqual(view.loans["loan-1"]["status"], "under_review")
        self.assertTrue(view.apply(_record(3, status="approved")))
        self.assertEqual(view.loans["loan-1"]["status"], "approved")
        self.assertNotIn("loan-2", view.loans)

    def test_refuses_status_that_cannot_follow(self):
        view = LoanView()
        self.assertTrue(view.apply(_record(4, status="active")))
        self.assertFalse(view.apply(_record(5, status="under_review")))
        self.assertEqual(view.loans["loan-1"]["status"], "active")
        self.assertTrue(view.apply(_record(6, status="closed")))
        self.assertEqual(view.loans["loan-1"]["version"], 6)


if __name__ == "__main__":
    unittest.main()
