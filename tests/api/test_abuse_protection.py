"""Unit tests for rate limiting and request deduplication."""

import pytest

from creator_chat.api.abuse_protection import (
    RateLimiter,
    RateLimitResult,
    RequestDeduplicator,
    request_fingerprint,
)
from creator_chat.api.config import RateLimitRule


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.mark.unit
class TestRateLimiter:
    """Test the sliding-window limiter."""

    @pytest.mark.asyncio
    async def test_allows_up_to_limit(self) -> None:
        limiter = RateLimiter(RateLimitRule(max_requests=3, window_seconds=60), clock=FakeClock())

        results = [await limiter.check("user:1") for _ in range(4)]

        assert [r.allowed for r in results] == [True, True, True, False]
        assert [r.remaining for r in results[:3]] == [2, 1, 0]
        assert results[3].retry_after == 60

    @pytest.mark.asyncio
    async def test_window_slides(self) -> None:
        clock = FakeClock()
        limiter = RateLimiter(RateLimitRule(max_requests=2, window_seconds=60), clock=clock)

        await limiter.check("user:1")
        clock.now += 30
        await limiter.check("user:1")
        assert not (await limiter.check("user:1")).allowed

        clock.now += 31
        result = await limiter.check("user:1")

        assert result.allowed
        assert result.remaining == 0

    @pytest.mark.asyncio
    async def test_keys_are_independent(self) -> None:
        limiter = RateLimiter(RateLimitRule(max_requests=1, window_seconds=60), clock=FakeClock())

        assert (await limiter.check("user:1")).allowed
        assert (await limiter.check("user:2")).allowed
        assert not (await limiter.check("user:1")).allowed

    def test_headers(self) -> None:
        headers = RateLimitResult(
            allowed=False, remaining=0, reset_seconds=12.5, retry_after=12.5
        ).to_headers()

        assert headers == {
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": "12",
            "Retry-After": "12",
        }


@pytest.mark.unit
class TestRequestDeduplicator:
    """Test replay of recent responses."""

    def test_fingerprint_ignores_key_order(self) -> None:
        first = request_fingerprint("key-1", {"query": "hi", "channel_id": "UC1"})
        second = request_fingerprint("key-1", {"channel_id": "UC1", "query": "hi"})
        assert first == second

    def test_fingerprint_depends_on_key_and_body(self) -> None:
        base = request_fingerprint("key-1", {"query": "hi"})
        assert request_fingerprint("key-2", {"query": "hi"}) != base
        assert request_fingerprint("key-1", {"query": "hello"}) != base

    def test_stored_response_is_replayed(self) -> None:
        dedup = RequestDeduplicator(ttl_seconds=600, clock=FakeClock())
        fingerprint = request_fingerprint("key-1", {"query": "hi"})

        assert dedup.get(fingerprint) is None
        dedup.store(fingerprint, {"answer": "hello"})

        assert dedup.get(fingerprint) == {"answer": "hello"}

    def test_entries_expire(self) -> None:
        clock = FakeClock()
        dedup = RequestDeduplicator(ttl_seconds=600, clock=clock)
        dedup.store("fp", {"answer": "hello"})

        clock.now += 601

        assert dedup.get("fp") is None

    @pytest.mark.asyncio
    async def test_second_claim_gets_owner_response(self) -> None:
        dedup = RequestDeduplicator(ttl_seconds=600, clock=FakeClock())

        assert dedup.claim("fp") is None
        pending = dedup.claim("fp")
        assert pending is not None

        dedup.store("fp", {"answer": "hello"})

        assert await pending == {"answer": "hello"}
        assert dedup.claim("fp") is None

    @pytest.mark.asyncio
    async def test_released_claim_resolves_to_none(self) -> None:
        dedup = RequestDeduplicator(ttl_seconds=600, clock=FakeClock())
        dedup.claim("fp")
        pending = dedup.claim("fp")

        dedup.release("fp")

        assert await pending is None
        assert dedup.get("fp") is None

    @pytest.mark.asyncio
    async def test_release_after_store_keeps_response(self) -> None:
        dedup = RequestDeduplicator(ttl_seconds=600, clock=FakeClock())
        dedup.claim("fp")
        dedup.store("fp", {"answer": "hello"})

        dedup.release("fp")

        assert dedup.get("fp") == {"answer": "hello"}
