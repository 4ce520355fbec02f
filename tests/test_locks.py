"""
Tests for the per-key asyncio lock registry.
Run from project root: python -m pytest tests/test_locks.py -v
"""
import asyncio
import unittest

from utils.locks import KeyedLock


class TestKeyedLock(unittest.IsolatedAsyncioTestCase):
    async def test_same_key_is_serialized(self):
        locks = KeyedLock()
        order = []

        async def worker(name):
            async with locks.hold("loan-1"):
                order.append(f"{name}-start")
                await asyncio.sleep(0.01)
                order.append(f"{name}-end")

        await asyncio.gather(worker("a"), worker("b"))
        self.assertEqual(order, ["a-start", "a-end", "b-start", "b-end"])

    async def test_different_keys_do_not_block(self):
        locks = KeyedLock()
        async with locks.hold("loan-1"):
            await asyncio.wait_for(self._enter(locks, "loan-2"), timeout=1)

    async def test_entries_released_when_unused(self):
        locks = KeyedLock()
        async with locks.hold("user-1"):
            self.assertIn("user-1", locks)
        self.assertNotIn("user-1", locks)

    async def _enter(self, locks, key):
        async with locks.hold(key):
            return True


if __name__ == "__main__":
    unittest.main()
