"""Tests for per-key request budgets."""

import asyncio

import pytest

from samsync.rate_limiter import RateLimiter, TokenBucket, key_fingerprint

from conftest import FakeClock


class TestTokenBucket:
    """Rolling-window bucket behaviour."""

    def test_consumes_up_to_capacity(self, fake_clock: FakeClock) -> None:
        bucket = TokenBucket(3, 60.0, fake_clock)
        assert [bucket.try_consume() for _ in range(4)] == [True, True, True, False]
        assert bucket.tokens == 0

    def test_token_frees_when_oldest_grant_ages_out(self, fake_clock: FakeClock) -> None:
        bucket = TokenBucket(2, 60.0, fake_clock)
        bucket.try_consume()
        fake_clock.now += 30
        bucket.try_consume()

        assert bucket.reset_at == 1060.0
        fake_clock.now = 1059.9
        assert not bucket.try_consume()
        fake_clock.now = 1060.0
        assert bucket.try_consume()
        # The grant made at 1030 still occupies the window
        assert bucket.tokens == 0

    def test_reset_at_is_now_when_tokens_remain(self, fake_clock: FakeClock) -> None:
        bucket = TokenBucket(2, 60.0, fake_clock)
        bucket.try_consume()
        assert bucket.reset_at == fake_clock.now

    def test_rejects_bad_configuration(self, fake_clock: FakeClock) -> None:
        with pytest.raises(ValueError):
            TokenBucket(0, 60.0, fake_clock)
        with pytest.raises(ValueError):
            TokenBucket(1, 0, fake_clock)


class TestRateLimiter:
    """acquire() waits instead of failing."""

    @pytest.mark.asyncio
    async def test_acquire_within_budget_does_not_wait(
        self, fake_clock: FakeClock
    ) -> None:
        limiter = RateLimiter(2, 60.0, clock=fake_clock, sleep=fake_clock.sleep)
        await limiter.acquire("key-a")
        await limiter.acquire("key-a")
        assert fake_clock.sleeps == []

    @pytest.mark.asyncio
    async def test_acquire_waits_for_reset(self, fake_clock: FakeClock) -> None:
        limiter = RateLimiter(2, 60.0, clock=fake_clock, sleep=fake_clock.sleep)
        await limiter.acquire("key-a")
        fake_clock.now += 10
        await limiter.acquire("key-a")
        await limiter.acquire("key-a")

        assert fake_clock.sleeps == [50.0]
        assert fake_clock.now == 1060.0

    @pytest.mark.asyncio
    async def test_keys_have_independent_buckets(self, fake_clock: FakeClock) -> None:
        limiter = RateLimiter(1, 60.0, clock=fake_clock, sleep=fake_clock.sleep)
        await limiter.acquire("key-a")
        await limiter.acquire("key-b")
        assert fake_clock.sleeps == []
        assert limiter.bucket_for("key-a") is not limiter.bucket_for("key-b")

    @pytest.mark.asyncio
    async def test_proceeds_when_bucket_still_empty_after_wait(
        self, fake_clock: FakeClock
    ) -> None:
        async def sleep_without_advancing(seconds: float) -> None:
            fake_clock.sleeps.append(seconds)

        limiter = RateLimiter(1, 60.0, clock=fake_clock, sleep=sleep_without_advancing)
        await limiter.acquire("key-a")
        await limiter.acquire("key-a")

        assert fake_clock.sleeps == [60.0]
        assert limiter.bucket_for("key-a").tokens <= 0

    @pytest.mark.asyncio
    async def test_wait_on_one_key_does_not_block_another(
        self, fake_clock: FakeClock
    ) -> None:
        window_elapsed = asyncio.Event()
        order = []

        async def gated_sleep(seconds: float) -> None:
            order.append(("sleep", seconds))
            await window_elapsed.wait()
            fake_clock.now += seconds

        limiter = RateLimiter(1, 60.0, clock=fake_clock, sleep=gated_sleep)
        await limiter.acquire("key-a")

        async def take(api_key: str, label: str) -> None:
            await limiter.acquire(api_key)
            order.append(label)

        waiting = asyncio.create_task(take("key-a", "A-granted"))
        await asyncio.sleep(0)
        await take("key-b", "B-granted")
        window_elapsed.set()
        await waiting

        assert order == [("sleep", 60.0), "B-granted", "A-granted"]

    @pytest.mark.asyncio
    async def test_same_key_callers_share_one_budget(
        self, fake_clock: FakeClock
    ) -> None:
        limiter = RateLimiter(1, 60.0, clock=fake_clock, sleep=fake_clock.sleep)
        await asyncio.gather(*(limiter.acquire("key-a") for _ in range(3)))

        assert fake_clock.sleeps == [60.0, 60.0]
        assert fake_clock.now == 1120.0

    @pytest.mark.asyncio
    async def test_status_reports_remaining_budget(self, fake_clock: FakeClock) -> None:
        limiter = RateLimiter(5, 60.0, clock=fake_clock, sleep=fake_clock.sleep)
        await limiter.acquire("key-a")
        await limiter.acquire("key-a")

        status = limiter.status("key-a")
        assert status["remaining_requests"] == 3
        assert status["requests_per_window"] == 5
        assert status["reset_time"] is not None

    def test_fingerprint_hides_key(self) -> None:
        fingerprint = key_fingerprint("super-secret-key")
        assert "secret" not in fingerprint
        assert len(fingerprint) == 16
        assert fingerprint == key_fingerprint("super-secret-key")
