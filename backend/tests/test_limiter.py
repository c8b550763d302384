"""
Tests for the page concurrency limiter.
"""

import asyncio
import pytest


class TestConcurrencyLimiter:
    """Test the bounded FIFO slot pool."""

    def test_never_exceeds_limit(self):
        from scrapers.limiter import ConcurrencyLimiter

        async def scenario():
            limiter = ConcurrencyLimiter(3)
            observed = []

            async def worker():
                async with limiter.slot():
                    observed.append(limiter.active)
                    await asyncio.sleep(0.01)

            await asyncio.gather(*(worker() for _ in range(5)))
            return limiter, observed

        limiter, observed = asyncio.run(scenario())

        assert max(observed) == 3
        assert limiter.peak_active == 3
        assert limiter.active == 0
        assert limiter.waiting == 0

    def test_fifo_order(self):
        from scrapers.limiter import ConcurrencyLimiter

        async def scenario():
            limiter = ConcurrencyLimiter(1)
            order = []
            await limiter.acquire()

            async def worker(n):
                async with limiter.slot():
                    order.append(n)

            tasks = []
            for n in range(4):
                tasks.append(asyncio.ensure_future(worker(n)))
                await asyncio.sleep(0)
            await asyncio.sleep(0.01)
            assert limiter.waiting == 4

            limiter.release()
            await asyncio.gather(*tasks)
            return order

        assert asyncio.run(scenario()) == [0, 1, 2, 3]

    def test_release_on_exception(self):
        from scrapers.limiter import ConcurrencyLimiter

        async def scenario():
            limiter = ConcurrencyLimiter(1)
            with pytest.raises(ValueError):
                async with limiter.slot():
                    raise ValueError("boom")
            return limiter

        assert asyncio.run(scenario()).active == 0

    def test_cancelled_waiter_is_dropped(self):
        """Test a cancelled waiter neither holds nor leaks a slot."""
        from scrapers.limiter import ConcurrencyLimiter

        async def scenario():
            limiter = ConcurrencyLimiter(1)
            await limiter.acquire()

            waiter = asyncio.ensure_future(limiter.acquire())
            await asyncio.sleep(0.01)
            assert limiter.waiting == 1

            waiter.cancel()
            with pytest.raises(asyncio.CancelledError):
                await waiter
            assert limiter.waiting == 0

            limiter.release()
            return limiter

        assert asyncio.run(scenario()).active == 0

    def test_release_without_acquire(self):
        from scrapers.limiter import ConcurrencyLimiter

        with pytest.raises(RuntimeError):
            ConcurrencyLimiter(2).release()

    def test_invalid_limit(self):
        from scrapers.limiter import ConcurrencyLimiter

        with pytest.raises(ValueError):
            ConcurrencyLimiter(0)

    def test_status(self):
        from scrapers.limiter import ConcurrencyLimiter

        status = ConcurrencyLimiter(3).get_status()

        assert status == {'limit': 3, 'active': 0, 'waiting': 0, 'peak_active': 0}
