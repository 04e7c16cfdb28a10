"""In-memory sliding window rate limiter."""

from __future__ import annotations

import asyncio
import math
import time
import zlib
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from enum import StrEnum
from threading import Lock

import structlog

logger = structlog.get_logger()

DEFAULT_RETENTION_SECONDS = 24 * 60 * 60
DEFAULT_SWEEP_INTERVAL_SECONDS = 300


@dataclass(frozen=True)
class RateLimitPolicy:
    """Window/threshold pair for one class of call sites."""

    name: str
    window_seconds: float
    max_requests: int


class RateLimitKey(StrEnum):
    """Which request signal identifies the caller for a policy."""

    IP = "ip"
    USER = "user"
    TENANT = "tenant"


RATE_LIMIT_POLICIES: dict[str, RateLimitPolicy] = {
    # General API endpoints
    "api": RateLimitPolicy("api", window_seconds=15 * 60, max_requests=100),
    # Search endpoints (more restrictive)
    "search": RateLimitPolicy("search", window_seconds=60, max_requests=10),
    # Authentication endpoints (very restrictive)
    "auth": RateLimitPolicy("auth", window_seconds=60, max_requests=5),
    # Public endpoints (more lenient)
    "public": RateLimitPolicy("public", window_seconds=60, max_requests=30),
    # Analytics ingestion
    "analytics": RateLimitPolicy("analytics", window_seconds=60, max_requests=20),
}


def build_policies(
    overrides: Mapping[str, Mapping[str, float]] | None = None,
) -> dict[str, RateLimitPolicy]:
    """Return the default policies with configured overrides applied.

    Unknown policy names in ``overrides`` declare new policies; both
    ``window_seconds`` and ``max_requests`` are then required.
    """
    policies = dict(RATE_LIMIT_POLICIES)
    for name, values in (overrides or {}).items():
        base = policies.get(name)
        if base is None:
            policies[name] = RateLimitPolicy(
                name,
                window_seconds=float(values["window_seconds"]),
                max_requests=int(values["max_requests"]),
            )
            continue
        policies[name] = replace(
            base,
            window_seconds=float(values.get("window_seconds", base.window_seconds)),
            max_requests=int(values.get("max_requests", base.max_requests)),
        )
    return policies


@dataclass(frozen=True)
class RateLimitUsage:
    """Usage snapshot of one identifier under one policy.

    ``reset_at`` is a unix timestamp: when the oldest request in the
    window expires (or a full window from now if there is none).
    """

    limit: int
    count: int
    remaining: int
    reset_at: float

    def retry_after(self, now: float) -> int:
        """Seconds until a slot frees up (at least 1)."""
        return max(1, math.ceil(self.reset_at - now))


@dataclass(frozen=True)
class RateLimitDecision:
    limited: bool
    usage: RateLimitUsage


@dataclass
class _Shard:
    lock: Lock = field(default_factory=Lock)
    entries: dict[str, list[float]] = field(default_factory=dict)


class SlidingWindowRateLimiter:
    """Sliding window rate limiter over per-key timestamp lists.

    State is partitioned into lock shards chosen by a stable hash of the
    key, so checks on unrelated identifiers do not contend on one lock.
    Thread-safe; single-process only. For multi-instance deployments:
    replace with a shared backend.
    """

    def __init__(
        self,
        *,
        shards: int = 16,
        retention_seconds: float = DEFAULT_RETENTION_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if shards < 1:
            msg = "shards must be >= 1"
            raise ValueError(msg)
        self._shards = [_Shard() for _ in range(shards)]
        self._retention = retention_seconds
        self._clock = clock

    def now(self) -> float:
        """Current time on the limiter's clock."""
        return self._clock()

    @staticmethod
    def _key(identifier: str, policy: RateLimitPolicy) -> str:
        return f"{policy.name}:{identifier}"

    def _shard(self, key: str) -> _Shard:
        return self._shards[zlib.crc32(key.encode()) % len(self._shards)]

    @staticmethod
    def _usage(
        timestamps: list[float], policy: RateLimitPolicy, now: float
    ) -> RateLimitUsage:
        count = len(timestamps)
        reset_at = (
            timestamps[0] + policy.window_seconds
            if timestamps
            else now + policy.window_seconds
        )
        return RateLimitUsage(
            limit=policy.max_requests,
            count=count,
            remaining=max(0, policy.max_requests - count),
            reset_at=reset_at,
        )

    def check(self, identifier: str, policy: RateLimitPolicy) -> RateLimitDecision:
        """Admit or reject one request, returning the resulting usage.

        A rejected request is not recorded, so a caller hammering a
        closed window does not extend it.
        """
        key = self._key(identifier, policy)
        shard = self._shard(key)
        now = self._clock()
        window_start = now - policy.window_seconds

        with shard.lock:
            timestamps = [t for t in shard.entries.get(key, ()) if t > window_start]
            limited = len(timestamps) >= policy.max_requests
            if not limited:
                timestamps.append(now)
            shard.entries[key] = timestamps
            usage = self._usage(timestamps, policy, now)

        if limited:
            logger.warning(
                "security_event",
                kind="rate_limit",
                identifier=key,
                request_count=usage.count,
                limit=policy.max_requests,
                window_seconds=policy.window_seconds,
            )
        return RateLimitDecision(limited=limited, usage=usage)

    def should_limit(self, identifier: str, policy: RateLimitPolicy) -> bool:
        """Return True if the request must be rejected."""
        return self.check(identifier, policy).limited

    def usage(self, identifier: str, policy: RateLimitPolicy) -> RateLimitUsage:
        """Current usage without recording a request."""
        key = self._key(identifier, policy)
        shard = self._shard(key)
        now = self._clock()
        window_start = now - policy.window_seconds

        with shard.lock:
            timestamps = [t for t in shard.entries.get(key, ()) if t > window_start]
        return self._usage(timestamps, policy, now)

    def reset(self, identifier: str, policy: RateLimitPolicy) -> None:
        """Forget all requests of an identifier (admin function)."""
        key = self._key(identifier, policy)
        shard = self._shard(key)
        with shard.lock:
            shard.entries.pop(key, None)

    def sweep(self) -> int:
        """Drop timestamps past the retention period. Call periodically.

        Returns:
            Number of keys removed.
        """
        cutoff = self._clock() - self._retention
        removed = 0
        for shard in self._shards:
            with shard.lock:
                empty_keys = []
                for key, timestamps in shard.entries.items():
                    shard.entries[key] = [t for t in timestamps if t > cutoff]
                    if not shard.entries[key]:
                        empty_keys.append(key)
                for key in empty_keys:
                    del shard.entries[key]
                removed += len(empty_keys)
        return removed

    def stats(self) -> dict[str, int]:
        """Storage statistics for monitoring."""
        total_keys = 0
        total_timestamps = 0
        for shard in self._shards:
            with shard.lock:
                total_keys += len(shard.entries)
                total_timestamps += sum(len(t) for t in shard.entries.values())
        return {"total_keys": total_keys, "total_timestamps": total_timestamps}


async def sweep_periodically(
    limiter: SlidingWindowRateLimiter,
    interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
) -> None:
    """Run ``limiter.sweep()`` forever, off the event loop thread.

    Intended to be started as a task at startup and cancelled at shutdown.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            removed = await asyncio.to_thread(limiter.sweep)
            if removed:
                logger.debug("rate_limiter_sweep", keys_removed=removed)
        except Exception:
            logger.exception("rate_limiter_sweep_error")
