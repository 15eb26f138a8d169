"""Per-identity rate limiting and request deduplication.

Both are in-process: they protect one API worker. Cross-worker exclusion for
pipeline runs is the database-backed ``OperationLock``.
"""

import asyncio
import hashlib
import json
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from creator_chat.utils.logging import get_logger

from .config import RateLimitRule

logger = get_logger(__name__)

# Bound on tracked identities per limiter
MAX_TRACKED_KEYS = 10000


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_seconds: float
    retry_after: float | None = None

    def to_headers(self) -> dict[str, str]:
        headers = {
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(self.reset_seconds)),
        }
        if self.retry_after is not None:
            headers["Retry-After"] = str(max(1, int(self.retry_after)))
        return headers


class RateLimiter:
    """Sliding-window limiter keyed by caller identity.

    Each key keeps the monotonic times of its requests inside the window; a
    request is allowed while fewer than ``max_requests`` remain.
    """

    def __init__(self, rule: RateLimitRule, clock: Callable[[], float] = time.monotonic):
        self.rule = rule
        self._clock = clock
        self._requests: dict[str, deque[float]] = {}
        self._lock = asyncio.Lock()

    async def check(self, key: str) -> RateLimitResult:
        """Record a request for ``key`` if it is within the limit."""
        async with self._lock:
            now = self._clock()
            window = self._requests.get(key)
            if window is None:
                if len(self._requests) >= MAX_TRACKED_KEYS:
                    self._evict(now)
                window = self._requests[key] = deque()

            while window and now - window[0] >= self.rule.window_seconds:
                window.popleft()

            if len(window) >= self.rule.max_requests:
                retry_after = self.rule.window_seconds - (now - window[0])
                logger.warning(
                    "rate_limit_exceeded",
                    key=key,
                    limit=self.rule.max_requests,
                    retry_after=round(retry_after, 1),
                )
                return RateLimitResult(
                    allowed=False,
                    remaining=0,
                    reset_seconds=retry_after,
                    retry_after=retry_after,
                )

            window.append(now)
            return RateLimitResult(
                allowed=True,
                remaining=self.rule.max_requests - len(window),
                reset_seconds=self.rule.window_seconds - (now - window[0]),
            )

    def _evict(self, now: float) -> None:
        stale = [
            key
            for key, window in self._requests.items()
            if not window or now - window[-1] >= self.rule.window_seconds
        ]
        for key in stale:
            del self._requests[key]
        if len(self._requests) >= MAX_TRACKED_KEYS:
            oldest = min(self._requests, key=lambda k: self._requests[k][-1])
            del self._requests[oldest]


def request_fingerprint(idempotency_key: str | None, body: dict[str, Any]) -> str:
    """Hash of the idempotency key plus the canonical JSON request body."""
    canonical = json.dumps(body, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(f"{idempotency_key or ''}:{canonical}".encode()).hexdigest()


class RequestDeduplicator:
    """Remembers responses to recent requests so retries replay them.

    A retried request with the same idempotency key and body gets the stored
    response back instead of charging quota or writing chat history again.
    A retry that arrives while the first request is still running waits for
    that request's response through the claim it registered.
    """

    def __init__(self, ttl_seconds: float = 600, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._responses: dict[str, tuple[float, Any]] = {}
        self._in_flight: dict[str, asyncio.Future] = {}

    def _purge(self, now: float) -> None:
        expired = [k for k, (at, _) in self._responses.items() if now - at >= self.ttl_seconds]
        for key in expired:
            del self._responses[key]

    def get(self, fingerprint: str) -> Any | None:
        now = self._clock()
        self._purge(now)
        entry = self._responses.get(fingerprint)
        if entry is None:
            return None
        logger.info("duplicate_request_replayed", fingerprint=fingerprint[:12])
        return entry[1]

    def claim(self, fingerprint: str) -> asyncio.Future | None:
        """Mark ``fingerprint`` as in flight.

        Returns:
            None when the caller now owns the request and must end it with
            ``store`` or ``release``; otherwise the future the current owner
            resolves with its response (None if it produced none).
        """
        pending = self._in_flight.get(fingerprint)
        if pending is not None:
            logger.info("duplicate_request_in_flight", fingerprint=fingerprint[:12])
            return pending
        self._in_flight[fingerprint] = asyncio.get_running_loop().create_future()
        return None

    def store(self, fingerprint: str, response: Any) -> None:
        now = self._clock()
        self._purge(now)
        if len(self._responses) >= MAX_TRACKED_KEYS:
            oldest = min(self._responses, key=lambda k: self._responses[k][0])
            del self._responses[oldest]
        self._responses[fingerprint] = (now, response)
        self._settle(fingerprint, response)

    def release(self, fingerprint: str) -> None:
        """End an in-flight claim without a stored response; no-op after ``store``."""
        self._settle(fingerprint, None)

    def _settle(self, fingerprint: str, response: Any) -> None:
        pending = self._in_flight.pop(fingerprint, None)
        if pending is not None and not pending.done():
            pending.set_result(response)
