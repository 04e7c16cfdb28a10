"""Tests for the sliding window rate limiter."""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import patch

import pytest

from tenant_gate.auth.rate_limiter import (
    RATE_LIMIT_POLICIES,
    RateLimitPolicy,
    SlidingWindowRateLimiter,
    build_policies,
    sweep_periodically,
)


class FakeClock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def limiter(clock: FakeClock) -> SlidingWindowRateLimiter:
    return SlidingWindowRateLimiter(clock=clock)


AUTH = RATE_LIMIT_POLICIES["auth"]


class TestCheck:
    def test_admits_up_to_limit_then_rejects(
        self, limiter: SlidingWindowRateLimiter
    ) -> None:
        """Five requests in the auth window pass, the sixth is rejected."""
        for i in range(5):
            decision = limiter.check("ip:10.0.0.1", AUTH)
            assert decision.limited is False
            assert decision.usage.remaining == 4 - i

        decision = limiter.check("ip:10.0.0.1", AUTH)
        assert decision.limited is True
        assert decision.usage.remaining == 0
        assert decision.usage.limit == 5

    def test_rejected_request_not_recorded(
        self, limiter: SlidingWindowRateLimiter
    ) -> None:
        for _ in range(8):
            limiter.check("ip:10.0.0.1", AUTH)
        assert limiter.usage("ip:10.0.0.1", AUTH).count == 5

    def test_window_expires(
        self, limiter: SlidingWindowRateLimiter, clock: FakeClock
    ) -> None:
        """After the window passes, old requests are not counted."""
        for _ in range(5):
            limiter.check("ip:10.0.0.1", AUTH)
        assert limiter.should_limit("ip:10.0.0.1", AUTH) is True

        clock.advance(61)
        assert limiter.should_limit("ip:10.0.0.1", AUTH) is False

    def test_window_slides(
        self, limiter: SlidingWindowRateLimiter, clock: FakeClock
    ) -> None:
        """Only requests older than the window are forgotten."""
        policy = RateLimitPolicy("t", window_seconds=10, max_requests=2)
        limiter.check("k", policy)
        clock.advance(6)
        limiter.check("k", policy)
        clock.advance(5)
        # first request expired, second still counts
        assert limiter.usage("k", policy).count == 1
        assert limiter.should_limit("k", policy) is False
        assert limiter.should_limit("k", policy) is True

    def test_reset_at_and_retry_after(
        self, limiter: SlidingWindowRateLimiter, clock: FakeClock
    ) -> None:
        for _ in range(5):
            limiter.check("ip:10.0.0.1", AUTH)
        clock.advance(20)
        decision = limiter.check("ip:10.0.0.1", AUTH)
        assert decision.usage.reset_at == 1_060.0
        assert decision.usage.retry_after(clock()) == 40

    def test_retry_after_at_least_one(self, limiter: SlidingWindowRateLimiter) -> None:
        usage = limiter.usage("ip:10.0.0.1", AUTH)
        assert usage.retry_after(usage.reset_at + 5) == 1

    def test_identifiers_independent(self, limiter: SlidingWindowRateLimiter) -> None:
        for _ in range(5):
            limiter.check("ip:a", AUTH)
        assert limiter.should_limit("ip:a", AUTH) is True
        assert limiter.should_limit("ip:b", AUTH) is False

    def test_policies_independent(self, limiter: SlidingWindowRateLimiter) -> None:
        """The same identifier is counted separately per policy."""
        for _ in range(5):
            limiter.check("ip:a", AUTH)
        assert limiter.should_limit("ip:a", RATE_LIMIT_POLICIES["api"]) is False

    def test_rejection_logged_as_security_event(
        self, limiter: SlidingWindowRateLimiter
    ) -> None:
        with patch("tenant_gate.auth.rate_limiter.logger") as mock_logger:
            for _ in range(6):
                limiter.check("ip:a", AUTH)
        mock_logger.warning.assert_called_once()
        args, kwargs = mock_logger.warning.call_args
        assert args == ("security_event",)
        assert kwargs["kind"] == "rate_limit"
        assert kwargs["identifier"] == "auth:ip:a"

    def test_invalid_shard_count(self) -> None:
        with pytest.raises(ValueError, match="shards"):
            SlidingWindowRateLimiter(shards=0)


class TestConcurrency:
    BURST = RateLimitPolicy(name="burst", window_seconds=60, max_requests=50)

    def test_one_identifier_admits_exactly_the_limit(
        self, limiter: SlidingWindowRateLimiter
    ) -> None:
        with (
            patch("tenant_gate.auth.rate_limiter.logger"),
            ThreadPoolExecutor(max_workers=16) as pool,
        ):
            decisions = list(
                pool.map(lambda _: limiter.check("ip:10.0.0.1", self.BURST), range(500))
            )
        admitted = [d for d in decisions if not d.limited]
        assert len(admitted) == 50
        assert sorted(d.usage.remaining for d in admitted) == list(range(50))
        assert limiter.usage("ip:10.0.0.1", self.BURST).remaining == 0

    def test_identifiers_across_shards_admit_independently(
        self, limiter: SlidingWindowRateLimiter
    ) -> None:
        identifiers = [f"ip:10.0.0.{n}" for n in range(8)]
        with (
            patch("tenant_gate.auth.rate_limiter.logger"),
            ThreadPoolExecutor(max_workers=16) as pool,
        ):
            decisions = list(
                pool.map(
                    lambda n: (n % 8, limiter.check(identifiers[n % 8], self.BURST)),
                    range(800),
                )
            )
        for index in range(8):
            admitted = [d for i, d in decisions if i == index and not d.limited]
            assert len(admitted) == 50


class TestMaintenance:
    def test_usage_does_not_record(self, limiter: SlidingWindowRateLimiter) -> None:
        limiter.usage("ip:a", AUTH)
        assert limiter.stats() == {"total_keys": 0, "total_timestamps": 0}

    def test_reset(self, limiter: SlidingWindowRateLimiter) -> None:
        for _ in range(5):
            limiter.check("ip:a", AUTH)
        limiter.reset("ip:a", AUTH)
        assert limiter.should_limit("ip:a", AUTH) is False

    def test_stats(self, limiter: SlidingWindowRateLimiter) -> None:
        limiter.check("ip:a", AUTH)
        limiter.check("ip:a", AUTH)
        limiter.check("ip:b", AUTH)
        assert limiter.stats() == {"total_keys": 2, "total_timestamps": 3}

    def test_sweep_drops_old_keys(self, clock: FakeClock) -> None:
        limiter = SlidingWindowRateLimiter(clock=clock, retention_seconds=100)
        limiter.check("ip:old", AUTH)
        clock.advance(50)
        limiter.check("ip:new", AUTH)
        clock.advance(60)

        assert limiter.sweep() == 1
        assert limiter.stats() == {"total_keys": 1, "total_timestamps": 1}

    def test_sweep_nothing_to_do(self, limiter: SlidingWindowRateLimiter) -> None:
        limiter.check("ip:a", AUTH)
        assert limiter.sweep() == 0


class TestSweepPeriodically:
    async def test_runs_sweep_until_cancelled(self, clock: FakeClock) -> None:
        limiter = SlidingWindowRateLimiter(clock=clock, retention_seconds=1)
        limiter.check("ip:a", AUTH)
        clock.advance(10)

        task = asyncio.create_task(sweep_periodically(limiter, interval_seconds=0))
        for _ in range(20):
            await asyncio.sleep(0.01)
            if limiter.stats()["total_keys"] == 0:
                break
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert limiter.stats()["total_keys"] == 0

    async def test_sweep_error_does_not_stop_loop(self) -> None:
        limiter = SlidingWindowRateLimiter()
        calls = 0

        def failing_sweep() -> int:
            nonlocal calls
            calls += 1
            raise RuntimeError("boom")

        with (
            patch.object(limiter, "sweep", side_effect=failing_sweep),
            patch("tenant_gate.auth.rate_limiter.logger") as mock_logger,
        ):
            task = asyncio.create_task(
                sweep_periodically(limiter, interval_seconds=0)
            )
            for _ in range(50):
                await asyncio.sleep(0.01)
                if calls >= 2:
                    break
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        assert calls >= 2
        mock_logger.exception.assert_called_with("rate_limiter_sweep_error")


class TestBuildPolicies:
    def test_defaults(self) -> None:
        policies = build_policies()
        assert policies["api"].window_seconds == 900
        assert policies["api"].max_requests == 100
        assert policies["search"].max_requests == 10
        assert policies["auth"].max_requests == 5
        assert policies["public"].max_requests == 30

    def test_partial_override(self) -> None:
        policies = build_policies({"search": {"max_requests": 3}})
        assert policies["search"].max_requests == 3
        assert policies["search"].window_seconds == 60
        # defaults untouched
        assert RATE_LIMIT_POLICIES["search"].max_requests == 10

    def test_new_policy(self) -> None:
        policies = build_policies(
            {"export": {"window_seconds": 3600, "max_requests": 2}}
        )
        assert policies["export"] == RateLimitPolicy(
            "export", window_seconds=3600, max_requests=2
        )

    def test_new_policy_requires_both_values(self) -> None:
        with pytest.raises(KeyError):
            build_policies({"export": {"max_requests": 2}})
