"""
In-process change feed for loan updates.

Topics are "user:<user_id>" (every loan of a user, for the dashboard) and "loan:<loan_id>"
(one loan's detail view). Services publish only after their transaction has committed.
Records carry the loan's `version`; per topic the feed never delivers a version of a loan that
is not newer than the last one it delivered, and LoanView applies the same rule on the
receiving end, so a late delta can never overwrite newer state.
"""
from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any, AsyncIterator, Optional

from config import settings
from services.state_machine import is_forward

logger = logging.getLogger(__name__)


def user_topic(user_id: str) -> str:
    return f"user:{user_id}"


def loan_topic(loan_id: str) -> str:
    return f"loan:{loan_id}"


class Subscription:
    def __init__(self, feed: "ChangeFeed", topic: str, queue: asyncio.Queue):
        self._feed = feed
        self.topic = topic
        self.queue = queue
        self.closed = False

    async def get(self, timeout: Optional[float] = None) -> dict[str, Any]:
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout)

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._feed._unsubscribe(self)

    def __aiter__(self) -> AsyncIterator[dict[str, Any]]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[dict[str, Any]]:
        try:
            while not self.closed:
                yield await self.queue.get()
        finally:
            self.close()

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class ChangeFeed:
    def __init__(self, queue_size: Optional[int] = None):
        self._queue_size = queue_size or settings.stream_queue_size
        self._subscribers: dict[str, set[Subscription]] = defaultdict(set)
        # topic -> loan id -> last delivered version
        self._versions: dict[str, dict[str, int]] = defaultdict(dict)

    def subscribe(self, topic: str) -> Subscription:
        sub = Subscription(self, topic, asyncio.Queue(maxsize=self._queue_size))
        self._subscribers[topic].add(sub)
        logger.debug("Subscribed to %s (%d open)", topic, self.subscriber_count(topic))
        return sub

    def _unsubscribe(self, sub: Subscription) -> None:
        subs = self._subscribers.get(sub.topic)
        if not subs:
            return
        subs.discard(sub)
        logger.debug("Unsubscribed from %s (%d open)", sub.topic, self.subscriber_count(sub.topic))
        if not subs:
            del self._subscribers[sub.topic]
            self._versions.pop(sub.topic, None)

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscribers.get(topic, ()))

    def publish(self, topic: str, record: dict[str, Any]) -> int:
        """Deliver `record` to every subscriber of `topic`. Returns how many queues received it."""
        subs = self._subscribers.get(topic)
        if not subs:
            return 0
        loan_id = record.get("id")
        version = record.get("version")
        if loan_id is not None and version is not None:
            seen = self._versions[topic]
            last = seen.get(loan_id)
            if last is not None and version <= last:
                logger.debug("Dropping stale update for %s v%s on %s (have v%s)", loan_id, version, topic, last)
                return 0
            seen[loan_id] = version
        delivered = 0
        for sub in list(subs):
            if sub.queue.full():
                # Drop the oldest; every record is a full snapshot of the loan
                sub.queue.get_nowait()
            sub.queue.put_nowait(record)
            delivered += 1
        return delivered

    def publish_loan(self, record: dict[str, Any]) -> int:
        delivered = self.publish(user_topic(record["userId"]), record)
        delivered += self.publish(loan_topic(record["id"]), record)
        logger.info(
            "Published loan %s status=%s deposit=%s v%s to %d subscriber(s)",
            record["id"], record.get("status"), record.get("depositStatus"), record.get("version"), delivered,
        )
        return delivered


class LoanView:
    """
    Client-side state for open dashboards: keeps the newest version of each loan, and refuses a
    record whose status could not have followed the one already shown.
    """

    def __init__(self) -> None:
        self.loans: dict[str, dict[str, Any]] = {}

    def apply(self, record: dict[str, Any]) -> bool:
        current = self.loans.get(record["id"])
        if current is not None:
            if record["version"] <= current["version"]:
                return False
            if not is_forward(current["status"], record["status"]):
                logger.warning(
                    "Ignoring loan %s v%s: %s does not follow %s",
                    record["id"], record["version"], record["status"], current["status"],
                )
                return False
        self.loans[record["id"]] = record
        return True


change_feed = ChangeFeed()
