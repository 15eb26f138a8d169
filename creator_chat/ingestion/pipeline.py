"""Pipeline orchestrators for channel ingestion and chunk embedding."""

from datetime import UTC, datetime
from typing import Any

import structlog

from creator_chat.errors import ChannelNotFoundError, InputError, QuotaExceededError
from creator_chat.utils.logging import get_logger

from .channel_resolver import ChannelReference, YouTubeDataService, parse_channel_reference
from .chunking_service import ChunkingService
from .config import IngestionConfig
from .content_filter import select_videos
from .embedding_service import EmbeddingService
from .locks import OperationLock, ingestion_lock_key
from .schemas import (
    ChannelInfo,
    ChannelStatus,
    ChunkWithEmbedding,
    ContentTypes,
    EmbeddingRunResult,
    ExtractionStatus,
    ImportMode,
    ImportSettings,
    IngestionResult,
    StoredTranscript,
    TranscriptProcessingResult,
)
from .storage_service import StorageService

logger = get_logger(__name__)

EXTRACT_STAGE = "extract"


def channel_summary(row: dict[str, Any]) -> dict[str, Any]:
    """Public view of a channel row returned to API callers."""
    keys = (
        "id",
        "channel_id",
        "channel_name",
        "avatar_url",
        "subscriber_count",
        "indexed_videos",
        "total_videos",
        "ingestion_status",
        "ingestion_progress",
        "error_message",
        "last_indexed_at",
    )
    return {key: row.get(key) for key in keys}


class ChannelIngestionService:
    """Resolves a channel reference, selects its videos and persists them.

    Resolution is read-only; everything after it runs under the channel's
    operation lock so concurrent calls for one channel cannot both create
    the channel row or double-count videos. Re-running for a known channel
    only adds videos not already stored.
    """

    def __init__(
        self,
        config: IngestionConfig,
        storage: StorageService,
        youtube: YouTubeDataService,
        lock: OperationLock,
    ):
        self.config = config
        self.storage = storage
        self.youtube = youtube
        self.lock = lock

    async def ingest(
        self,
        channel_url: str | None,
        user_id: str | None = None,
        content_types: ContentTypes | None = None,
        import_settings: ImportSettings | None = None,
        refresh: bool = False,
        channel_id: str | None = None,
    ) -> IngestionResult:
        """Resolve, list and persist a channel's videos.

        Args:
            channel_url: Channel URL, ``@handle`` or bare handle.
            user_id: User adding the channel; enables plan checks and linking.
            content_types: Which upload kinds to ingest.
            import_settings: Import mode and limit.
            refresh: Re-list an existing channel identified by ``channel_id``.
            channel_id: YouTube channel id for refreshes.

        Returns:
            IngestionResult with the channel summary and new-video count.

        Raises:
            InvalidChannelReference: If the reference cannot be parsed.
            ChannelNotFoundError: If the channel does not exist.
            OperationInProgressError: If another ingestion holds the lock.
            QuotaExceededError: If the user is at their creator limit.
        """
        if refresh and channel_id:
            if not await self.storage.get_channel(channel_id):
                raise ChannelNotFoundError(channel_id)
            reference = ChannelReference("channel", channel_id)
        elif channel_url:
            reference = parse_channel_reference(channel_url)
        else:
            raise InputError("Channel URL is required")

        info = await self.youtube.resolve_channel(reference)
        log = logger.bind(stage="ingest", channel_id=info.channel_id, user_id=user_id)
        log.info("ingestion_started", refresh=refresh)

        async with self.lock.hold(ingestion_lock_key(info.channel_id)):
            return await self._ingest_locked(
                info, channel_url, user_id, content_types, import_settings, log
            )

    async def _ingest_locked(
        self,
        info: ChannelInfo,
        channel_url: str | None,
        user_id: str | None,
        content_types: ContentTypes | None,
        import_settings: ImportSettings | None,
        log: structlog.stdlib.BoundLogger,
    ) -> IngestionResult:
        existing = await self.storage.get_channel(info.channel_id)

        plan_type = None
        if user_id:
            usage = await self.storage.get_usage(user_id)
            plan_type = usage["plan_type"]
            already_linked = bool(existing) and await self.storage.is_user_linked(
                user_id, existing["id"]
            )
            if not already_linked:
                await self._check_creator_limit(user_id, plan_type)
        limits = self.config.limits_for(plan_type)

        content_types = content_types or self._stored_content_types(existing)
        import_settings = import_settings or self._stored_import_settings(existing)

        listing = await self.youtube.list_channel_videos(info, self.config.listing_scan_limit)
        selected = select_videos(
            listing, content_types, import_settings, limits.max_videos_per_creator
        )
        known = await self.storage.list_video_ids(info.channel_id)
        new_videos = [video for video in selected if video.video_id not in known]

        channel_fields: dict[str, Any] = {
            "channel_id": info.channel_id,
            "channel_name": info.channel_name,
            "avatar_url": info.avatar_url,
            "subscriber_count": info.subscriber_count,
            "uploads_playlist_id": info.uploads_playlist_id,
            "youtube_video_count": info.total_video_count,
            "ingest_videos": content_types.videos,
            "ingest_shorts": content_types.shorts,
            "ingest_lives": content_types.lives,
            "video_import_mode": import_settings.mode.value,
            "video_import_limit": import_settings.limit,
        }

        if existing and not new_videos:
            channel = await self.storage.upsert_channel(channel_fields)
            new_creator = await self._link_user(user_id, channel)
            if user_id:
                await self.storage.increment_usage(user_id, new_creator=new_creator)
            log.info("channel_up_to_date")
            return IngestionResult(
                channel=channel_summary({**existing, **channel}),
                new_videos_count=0,
                up_to_date=True,
                message="Creator is up to date. No new videos found.",
            )

        if not existing:
            channel_fields["channel_url"] = channel_url
            channel_fields["indexed_videos"] = 0
        channel_fields.update(
            {
                "ingestion_status": ChannelStatus.PENDING.value,
                "ingestion_progress": 0,
                "error_message": None,
            }
        )
        channel = await self.storage.upsert_channel(channel_fields)

        await self.storage.upsert_videos(new_videos)
        total_videos = await self.storage.count_videos(info.channel_id)

        if total_videos == 0:
            await self.storage.update_channel_state(
                info.channel_id,
                status=ChannelStatus.COMPLETED,
                progress=100,
                error_message="Channel found but no videos available",
                total_videos=0,
                indexed_videos=0,
                new_run=True,
            )
        else:
            await self.storage.update_channel_state(
                info.channel_id, total_videos=total_videos, new_run=True
            )

        new_creator = await self._link_user(user_id, channel)
        if user_id:
            await self.storage.increment_usage(
                user_id, new_creator=new_creator, videos=len(new_videos)
            )

        job_id = None
        if new_videos:
            job_id = await self._enqueue_extraction(info.channel_id, log)

        channel = await self.storage.get_channel(info.channel_id) or channel
        log.info(
            "ingestion_completed",
            new_videos=len(new_videos),
            total_videos=total_videos,
            job_id=job_id,
        )
        return IngestionResult(
            channel=channel_summary(channel),
            new_videos_count=len(new_videos),
            up_to_date=False,
            message=(
                f"Found {len(new_videos)} new videos. Processing transcripts..."
                if new_videos
                else "Channel found but no videos available"
            ),
            job_id=job_id,
        )

    async def _check_creator_limit(self, user_id: str, plan_type: str | None) -> None:
        limits = self.config.limits_for(plan_type)
        current = await self.storage.count_user_creators(user_id)
        if current >= limits.max_creators:
            raise QuotaExceededError(
                f"You've reached your limit of {limits.max_creators} creators.",
                limit_type="creators",
                current=current,
                limit=limits.max_creators,
                plan_type=plan_type,
            )

    async def _link_user(self, user_id: str | None, channel: dict[str, Any]) -> bool:
        if not user_id or not channel.get("id"):
            return False
        return await self.storage.link_user_to_channel(user_id, channel["id"])

    async def _enqueue_extraction(
        self, channel_id: str, log: structlog.stdlib.BoundLogger
    ) -> str | None:
        try:
            job = await self.storage.enqueue_job(
                channel_id, EXTRACT_STAGE, {"channel_id": channel_id}
            )
        except Exception as e:
            log.error("extraction_handoff_failed", error_type=type(e).__name__, error=str(e))
            return None
        return job.get("id")

    @staticmethod
    def _stored_content_types(existing: dict[str, Any] | None) -> ContentTypes:
        if not existing:
            return ContentTypes()
        return ContentTypes(
            videos=existing.get("ingest_videos", True),
            shorts=existing.get("ingest_shorts", False),
            lives=existing.get("ingest_lives", False),
        )

    def _stored_import_settings(self, existing: dict[str, Any] | None) -> ImportSettings:
        if existing and existing.get("video_import_mode"):
            return ImportSettings(
                mode=ImportMode(existing["video_import_mode"]),
                limit=existing.get("video_import_limit"),
            )
        return ImportSettings(limit=self.config.default_video_limit)


class EmbeddingPipeline:
    """Chunks completed transcripts, embeds the chunks and stores them.

    Targets either explicit transcript ids or every completed transcript of
    a channel that has no embedded chunks yet, so repeated channel runs
    converge instead of re-embedding. A transcript's chunks are replaced as
    a whole; only chunks that received an embedding are stored.
    """

    def __init__(
        self,
        config: IngestionConfig,
        storage: StorageService,
        chunker: ChunkingService,
        embedder: EmbeddingService,
    ):
        self.config = config
        self.storage = storage
        self.chunker = chunker
        self.embedder = embedder

    async def run(
        self,
        channel_id: str | None = None,
        transcript_ids: list[str] | None = None,
        process_all: bool = False,
    ) -> EmbeddingRunResult:
        """Run chunking and embedding.

        Args:
            channel_id: Channel whose pending transcripts should be processed.
            transcript_ids: Explicit transcripts to (re-)process.
            process_all: Process every completed transcript of ``channel_id``
                that lacks embedded chunks. Implied when only ``channel_id``
                is given.

        Returns:
            EmbeddingRunResult aggregated over all targeted transcripts.

        Raises:
            InputError: If neither a channel nor transcript ids are given.
        """
        log = logger.bind(stage="embed", channel_id=channel_id)
        result = EmbeddingRunResult()

        if transcript_ids:
            transcripts = await self.storage.get_transcripts(transcript_ids)
            selected: list[StoredTranscript] = []
            for transcript in transcripts:
                if transcript.extraction_status is ExtractionStatus.COMPLETED:
                    selected.append(transcript)
                else:
                    result.add(
                        TranscriptProcessingResult(
                            transcript_id=transcript.id,
                            video_id=transcript.video_id,
                            success=False,
                            error=f"Transcript is {transcript.extraction_status.value}",
                        )
                    )
            channel_ids = {t.channel_id for t in transcripts}
        elif channel_id:
            completed = await self.storage.get_completed_transcripts(channel_id)
            embedded = await self.storage.video_ids_with_embedded_chunks(
                [t.video_id for t in completed]
            )
            selected = [t for t in completed if t.video_id not in embedded]
            channel_ids = {channel_id}
            log.info(
                "embedding_selection",
                process_all=process_all,
                completed=len(completed),
                already_embedded=len(embedded),
                selected=len(selected),
            )
        else:
            raise InputError("channel_id or transcript_ids is required")

        for cid in channel_ids:
            await self.storage.update_channel_state(
                cid, status=ChannelStatus.PROCESSING, progress=0
            )

        for i, transcript in enumerate(selected):
            item = await self._process_transcript(transcript, log)
            result.add(item)
            await self.storage.update_channel_state(
                transcript.channel_id,
                status=ChannelStatus.PROCESSING,
                progress=round((i + 1) / len(selected) * 100),
            )

        for cid in channel_ids:
            await self._finalize_channel(cid, result, log)

        log.info(
            "embedding_run_completed",
            processed=result.processed,
            chunks_created=result.chunks_created,
            failed=result.failed,
        )
        return result

    async def _process_transcript(
        self, transcript: StoredTranscript, log: structlog.stdlib.BoundLogger
    ) -> TranscriptProcessingResult:
        outcome = TranscriptProcessingResult(
            transcript_id=transcript.id, video_id=transcript.video_id, success=False
        )
        try:
            chunks = self.chunker.chunk_segments(transcript.segments, transcript.video_id)
            if not chunks:
                log.info("transcript_without_chunks", video_id=transcript.video_id)
                outcome.success = True
                outcome.skipped = True
                return outcome

            embeddings = await self.embedder.embed_batch([chunk.text for chunk in chunks])
            embedded = [
                ChunkWithEmbedding(**chunk.model_dump(), embedding=embedding)
                for chunk, embedding in zip(chunks, embeddings, strict=True)
                if embedding is not None
            ]
            if not embedded:
                outcome.error = "Embedding failed for every chunk"
                return outcome
            if len(embedded) < len(chunks):
                log.warning(
                    "partial_embedding",
                    video_id=transcript.video_id,
                    embedded=len(embedded),
                    chunks=len(chunks),
                )

            await self.storage.replace_chunks(transcript, embedded)

            outcome.success = True
            outcome.chunks_created = len(embedded)
            outcome.chunks_with_timestamps = sum(1 for c in embedded if c.has_timestamps)
            return outcome

        except Exception as e:
            log.exception(
                "transcript_processing_failed",
                video_id=transcript.video_id,
                error_type=type(e).__name__,
            )
            outcome.error = str(e) or type(e).__name__
            return outcome

    async def _finalize_channel(
        self,
        channel_id: str,
        result: EmbeddingRunResult,
        log: structlog.stdlib.BoundLogger,
    ) -> None:
        with_captions = await self.storage.count_transcripts(
            channel_id, ExtractionStatus.COMPLETED
        )
        embedded_chunks = await self.storage.count_chunks(channel_id, embedded_only=True)
        indexed_videos = await self.storage.count_indexed_videos(channel_id)

        if with_captions == 0:
            total = await self.storage.count_transcripts(channel_id)
            no_captions = await self.storage.count_transcripts(
                channel_id, ExtractionStatus.NO_CAPTIONS
            )
            if total > 0 and no_captions == total:
                status = ChannelStatus.NO_CAPTIONS
                message = "No captions available for any video in this channel."
            else:
                status = ChannelStatus.FAILED
                message = "No transcripts ready for processing."
        elif embedded_chunks == 0:
            status = ChannelStatus.FAILED
            message = "; ".join(result.errors) or "Transcripts found but no chunks created"
        elif indexed_videos < with_captions or result.failed > 0:
            status = ChannelStatus.PARTIAL
            message = f"{indexed_videos} of {with_captions} captioned videos indexed."
        else:
            status = ChannelStatus.COMPLETED
            message = None

        await self.storage.update_channel_state(
            channel_id,
            status=status,
            progress=100,
            error_message=message,
            indexed_videos=indexed_videos,
            last_indexed_at=datetime.now(UTC).isoformat(),
        )
        log.info(
            "channel_finalized",
            channel_id=channel_id,
            status=status.value,
            indexed_videos=indexed_videos,
            embedded_chunks=embedded_chunks,
        )
