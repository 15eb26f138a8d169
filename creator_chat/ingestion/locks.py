"""Named, time-bounded operation locks stored in the ``operation_locks`` table."""

import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta

from creator_chat.errors import OperationInProgressError
from creator_chat.utils.logging import get_logger

from .storage_service import StorageService

logger = get_logger(__name__)


def ingestion_lock_key(channel_reference: str) -> str:
    return f"ingest:{channel_reference.strip().lower()}"


class OperationLock:
    """Exclusive lease on a named operation.

    The unique ``lock_key`` column makes the insert the arbitration point;
    expired rows are deleted before each attempt so a crashed holder only
    blocks others until its lease lapses.
    """

    def __init__(self, storage: StorageService, ttl_seconds: int = 600):
        self.storage = storage
        self.ttl_seconds = ttl_seconds

    async def acquire(self, lock_key: str) -> str:
        """Take the lock.

        Returns:
            Holder token required to release it.

        Raises:
            OperationInProgressError: If another holder has a live lease.
        """
        holder = uuid.uuid4().hex
        expires_at = datetime.now(UTC) + timedelta(seconds=self.ttl_seconds)

        await self.storage.delete_expired_locks(lock_key)
        if await self.storage.insert_lock(lock_key, holder, expires_at):
            logger.info("lock_acquired", lock_key=lock_key, ttl_seconds=self.ttl_seconds)
            return holder

        existing = await self.storage.get_lock(lock_key)
        held_until = None
        if existing and existing.get("expires_at"):
            held_until = datetime.fromisoformat(str(existing["expires_at"]))
        logger.warning("lock_contended", lock_key=lock_key, expires_at=str(held_until))
        raise OperationInProgressError(lock_key, held_until)

    async def release(self, lock_key: str, holder: str) -> None:
        """Release the lock; failures are logged and the lease left to expire."""
        try:
            await self.storage.delete_lock(lock_key, holder)
            logger.info("lock_released", lock_key=lock_key)
        except Exception as e:
            logger.warning(
                "lock_release_failed",
                lock_key=lock_key,
                error_type=type(e).__name__,
            )

    @asynccontextmanager
    async def hold(self, lock_key: str) -> AsyncIterator[str]:
        holder = await self.acquire(lock_key)
        try:
            yield holder
        finally:
            await self.release(lock_key, holder)
