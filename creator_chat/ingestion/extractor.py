"""Transcript extraction stage: fetch captions for every video of a channel."""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from creator_chat.errors import NotFoundError
from creator_chat.utils.logging import get_logger

from .config import IngestionConfig
from .schemas import (
    ChannelStatus,
    ExtractionResult,
    ExtractionStats,
    ExtractionStatus,
    TranscriptResult,
)
from .storage_service import StorageService
from .transcript_service import TranscriptAPIService

logger = get_logger(__name__)

EMBED_STAGE = "embed"


class TranscriptExtractor:
    """Runs the captions provider over a channel's videos, one at a time.

    Each video ends up ``completed``, ``no_captions`` or ``failed``; provider
    problems never abort the loop. A fixed delay separates consecutive
    provider calls. When at least one transcript completed, an ``embed`` job
    is queued for the channel.
    """

    def __init__(
        self,
        config: IngestionConfig,
        storage: StorageService,
        transcripts: TranscriptAPIService,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config
        self.storage = storage
        self.transcripts = transcripts
        self._sleep = sleep

    async def extract_channel(self, channel_id: str) -> ExtractionResult:
        """Extract transcripts for every stored video of a channel.

        Args:
            channel_id: YouTube channel id.

        Returns:
            ExtractionResult with per-status counts and the channel's new status.

        Raises:
            NotFoundError: If the channel has no stored videos.
        """
        log = logger.bind(stage="extract", channel_id=channel_id)
        log.info("extraction_started")

        await self.storage.update_channel_state(
            channel_id, status=ChannelStatus.EXTRACTING, progress=0, error_message=None
        )

        videos = await self.storage.list_channel_videos(channel_id)
        if not videos:
            await self.storage.update_channel_state(
                channel_id,
                status=ChannelStatus.FAILED,
                progress=0,
                error_message="No videos found",
            )
            raise NotFoundError(f"No videos found for channel {channel_id}")

        stats = ExtractionStats(total=len(videos))

        for i, video in enumerate(videos):
            video_id = video["video_id"]
            status = await self._process_video(video_id, channel_id, log)

            await self.storage.update_video_transcript_status(
                video_id, status.to_video_status()
            )

            if status is ExtractionStatus.COMPLETED:
                stats.completed += 1
            elif status is ExtractionStatus.NO_CAPTIONS:
                stats.no_captions += 1
            else:
                stats.failed += 1

            await self.storage.update_channel_state(
                channel_id,
                status=ChannelStatus.EXTRACTING,
                progress=round((i + 1) / len(videos) * 100),
            )

            if i < len(videos) - 1:
                await self._sleep(self.config.transcript_request_delay_seconds)

        final_status, error_message = self._final_status(stats)
        await self.storage.update_channel_state(
            channel_id, status=final_status, progress=100, error_message=error_message
        )

        result = ExtractionResult(
            success=stats.completed > 0,
            status=final_status,
            stats=stats,
            error_message=error_message,
            ready_for_embedding=stats.completed > 0,
        )

        if stats.completed > 0:
            result.job_id = await self._enqueue_embedding(channel_id, log)

        log.info("extraction_completed", status=final_status.value, **stats.model_dump())
        return result

    async def _process_video(
        self, video_id: str, channel_id: str, log: structlog.stdlib.BoundLogger
    ) -> ExtractionStatus:
        existing = await self.storage.get_transcript_for_video(video_id)
        if (
            existing
            and existing.get("extraction_status") == ExtractionStatus.COMPLETED.value
            and existing.get("segments")
        ):
            log.info("transcript_already_extracted", video_id=video_id)
            return ExtractionStatus.COMPLETED

        result = await self.transcripts.fetch_transcript(video_id)

        try:
            await self.storage.save_transcript(video_id, channel_id, result)
        except Exception as e:
            log.warning(
                "transcript_persist_failed",
                video_id=video_id,
                error_type=type(e).__name__,
            )
            return ExtractionStatus.FAILED

        if result.status is not ExtractionStatus.COMPLETED:
            log.info(
                "transcript_unavailable",
                video_id=video_id,
                status=result.status.value,
                error=result.error_message,
                retryable=result.retryable,
            )
        return result.status

    @staticmethod
    def _final_status(stats: ExtractionStats) -> tuple[ChannelStatus, str | None]:
        if stats.completed > 0:
            return ChannelStatus.PROCESSING, None
        if stats.no_captions == stats.total:
            return (
                ChannelStatus.NO_CAPTIONS,
                "No captions available for any video in this channel.",
            )
        return (
            ChannelStatus.FAILED,
            f"Extraction failed. {stats.failed} failed, {stats.no_captions} no captions.",
        )

    async def _enqueue_embedding(
        self, channel_id: str, log: structlog.stdlib.BoundLogger
    ) -> str | None:
        try:
            job = await self.storage.enqueue_job(
                channel_id, EMBED_STAGE, {"channel_id": channel_id, "process_all": True}
            )
        except Exception as e:
            log.error("embedding_handoff_failed", error_type=type(e).__name__, error=str(e))
            return None
        return job.get("id")

    async def retry_video(self, video_id: str) -> dict[str, Any]:
        """Re-fetch the transcript of a single video.

        Raises:
            NotFoundError: If the video is not stored.
        """
        video = await self.storage.get_video(video_id)
        if not video:
            raise NotFoundError(f"Video not found: {video_id}")

        channel_id = video["channel_id"]
        log = logger.bind(stage="retry_video", channel_id=channel_id, video_id=video_id)
        log.info("video_retry_started")

        result: TranscriptResult = await self.transcripts.fetch_transcript(video_id)
        await self.storage.save_transcript(video_id, channel_id, result)
        video_status = result.status.to_video_status()
        await self.storage.update_video_transcript_status(video_id, video_status)

        job_id = None
        if result.status is ExtractionStatus.COMPLETED:
            job_id = await self._enqueue_embedding(channel_id, log)

        log.info("video_retry_completed", status=result.status.value)
        return {
            "success": result.status is ExtractionStatus.COMPLETED,
            "videoId": video_id,
            "status": video_status.value,
            "segments": len(result.segments),
            "error": result.error_message,
            "jobId": job_id,
        }
