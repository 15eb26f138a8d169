"""Storage service for channels, videos, transcripts and chunks in Supabase."""

from datetime import UTC, datetime
from typing import Any

from supabase import Client, create_client

from creator_chat.utils.logging import get_logger

from .config import DEFAULT_PLAN, IngestionConfig
from .schemas import (
    ChannelStatus,
    ChunkWithEmbedding,
    ExtractionStatus,
    StoredTranscript,
    TranscriptResult,
    VideoMetadata,
    VideoTranscriptStatus,
)

logger = get_logger(__name__)

UNIQUE_VIOLATION = "23505"
PUBLIC_LIMIT_ATTEMPTS = 3


def _now() -> str:
    return datetime.now(UTC).isoformat()


def is_unique_violation(error: Exception) -> bool:
    return getattr(error, "code", None) == UNIQUE_VIOLATION


class StorageService:
    """Typed access to the creator-chat tables and RPCs.

    Every stage receives one of these instead of a bare client so the table
    and column names live in one place. Write failures are logged and
    re-raised; the calling stage decides whether they fail an item or a run.
    """

    def __init__(self, config: IngestionConfig, client: Client | None = None):
        """Initialize storage service.

        Args:
            config: Configuration object with Supabase credentials.
            client: Pre-built client; one is created from config when omitted.
        """
        self.config = config
        self.client: Client = client or create_client(
            config.supabase_url,
            config.supabase_key,
        )
        logger.info("storage_service_initialized", supabase_url=config.supabase_url)

    # ------------------------------------------------------------------
    # Channels
    # ------------------------------------------------------------------

    async def get_channel(self, channel_id: str) -> dict[str, Any] | None:
        response = (
            self.client.table("channels")
            .select("*")
            .eq("channel_id", channel_id)
            .limit(1)
            .execute()
        )
        return response.data[0] if response.data else None

    async def upsert_channel(self, data: dict[str, Any]) -> dict[str, Any]:
        """Insert or update a channel keyed on its YouTube channel id."""
        try:
            response = (
                self.client.table("channels")
                .upsert({**data, "updated_at": _now()}, on_conflict="channel_id")
                .execute()
            )
            logger.info("channel_saved", channel_id=data.get("channel_id"))
            return response.data[0] if response.data else dict(data)

        except Exception as e:
            logger.exception(
                "channel_save_failed",
                channel_id=data.get("channel_id"),
                error_type=type(e).__name__,
            )
            raise

    async def update_channel_state(
        self,
        channel_id: str,
        status: ChannelStatus | None = None,
        progress: int | None = None,
        error_message: str | None = "",
        indexed_videos: int | None = None,
        total_videos: int | None = None,
        new_run: bool = False,
        **extra: Any,
    ) -> bool:
        """Persist channel ingestion state.

        Status changes that would move the channel back to an earlier stage
        are dropped unless ``new_run`` is set. ``indexed_videos`` is clamped
        to ``total_videos``.

        Args:
            channel_id: YouTube channel id.
            status: New ingestion status.
            progress: Progress percentage, clamped to 0..100.
            error_message: New error message; the default leaves it unchanged.
            indexed_videos: Videos ready for chat.
            total_videos: Videos selected for ingestion.
            new_run: Whether this update starts a fresh ingestion run.
            **extra: Additional columns to write.

        Returns:
            False when a status regression was rejected, True otherwise.
        """
        try:
            current = await self.get_channel(channel_id) or {}
            update: dict[str, Any] = dict(extra)
            accepted = True

            if status is not None:
                current_status = current.get("ingestion_status")
                if (
                    new_run
                    or current_status not in {s.value for s in ChannelStatus}
                    or ChannelStatus(current_status).can_advance_to(status)
                ):
                    update["ingestion_status"] = status.value
                else:
                    accepted = False
                    logger.warning(
                        "channel_status_regression_rejected",
                        channel_id=channel_id,
                        current_status=current_status,
                        requested_status=status.value,
                    )

            if progress is not None:
                update["ingestion_progress"] = max(0, min(100, progress))
            if error_message != "":
                update["error_message"] = error_message
            if total_videos is not None:
                update["total_videos"] = total_videos
            if indexed_videos is not None:
                ceiling = (
                    total_videos
                    if total_videos is not None
                    else current.get("total_videos")
                )
                update["indexed_videos"] = (
                    min(indexed_videos, ceiling) if ceiling is not None else indexed_videos
                )

            if not update:
                return accepted

            update["updated_at"] = _now()
            self.client.table("channels").update(update).eq(
                "channel_id", channel_id
            ).execute()
            logger.info(
                "channel_state_updated",
                channel_id=channel_id,
                status=update.get("ingestion_status"),
                progress=update.get("ingestion_progress"),
            )
            return accepted

        except Exception as e:
            logger.exception(
                "channel_state_update_failed",
                channel_id=channel_id,
                error_type=type(e).__name__,
            )
            raise

    # ------------------------------------------------------------------
    # Videos
    # ------------------------------------------------------------------

    async def list_video_ids(self, channel_id: str) -> set[str]:
        response = (
            self.client.table("videos")
            .select("video_id")
            .eq("channel_id", channel_id)
            .execute()
        )
        return {row["video_id"] for row in response.data or []}

    async def list_channel_videos(self, channel_id: str) -> list[dict[str, Any]]:
        response = (
            self.client.table("videos")
            .select("video_id, title, transcript_status")
            .eq("channel_id", channel_id)
            .order("published_at", desc=True)
            .execute()
        )
        return response.data or []

    async def get_video(self, video_id: str) -> dict[str, Any] | None:
        response = (
            self.client.table("videos")
            .select("*")
            .eq("video_id", video_id)
            .limit(1)
            .execute()
        )
        return response.data[0] if response.data else None

    async def upsert_videos(self, videos: list[VideoMetadata]) -> None:
        """Save or update video rows keyed on ``video_id``."""
        if not videos:
            return

        try:
            data = [
                {
                    "video_id": video.video_id,
                    "channel_id": video.channel_id,
                    "title": video.title,
                    "description": video.description,
                    "published_at": (
                        video.published_at.isoformat() if video.published_at else None
                    ),
                    "duration_seconds": video.duration_seconds,
                    "thumbnail_url": video.thumbnail_url,
                    "view_count": video.view_count,
                    "like_count": video.like_count,
                    "live_broadcast_content": video.live_broadcast_content,
                    "has_live_streaming_details": video.has_live_streaming_details,
                    "content_type": video.content_type.value if video.content_type else None,
                    "transcript_status": VideoTranscriptStatus.PENDING.value,
                }
                for video in videos
            ]
            self.client.table("videos").upsert(data, on_conflict="video_id").execute()
            logger.info(
                "videos_saved",
                count=len(videos),
                channel_id=videos[0].channel_id,
            )

        except Exception as e:
            logger.exception(
                "videos_save_failed",
                count=len(videos),
                error_type=type(e).__name__,
            )
            raise

    async def count_videos(self, channel_id: str) -> int:
        response = (
            self.client.table("videos")
            .select("video_id", count="exact")
            .eq("channel_id", channel_id)
            .execute()
        )
        return response.count or 0

    async def update_video_transcript_status(
        self, video_id: str, status: VideoTranscriptStatus
    ) -> None:
        try:
            self.client.table("videos").update(
                {"transcript_status": status.value, "updated_at": _now()}
            ).eq("video_id", video_id).execute()
            logger.debug("video_status_updated", video_id=video_id, status=status.value)

        except Exception as e:
            logger.exception(
                "video_status_update_failed",
                video_id=video_id,
                error_type=type(e).__name__,
            )
            raise

    async def get_video_details(self, video_ids: list[str]) -> dict[str, dict[str, Any]]:
        """Map video ids to ``{title, thumbnail_url}`` for citations."""
        if not video_ids:
            return {}
        response = (
            self.client.table("videos")
            .select("video_id, title, thumbnail_url")
            .in_("video_id", video_ids)
            .execute()
        )
        return {row["video_id"]: row for row in response.data or []}

    # ------------------------------------------------------------------
    # Transcripts
    # ------------------------------------------------------------------

    async def get_transcript_for_video(self, video_id: str) -> dict[str, Any] | None:
        response = (
            self.client.table("transcripts")
            .select("id, extraction_status, segments")
            .eq("video_id", video_id)
            .limit(1)
            .execute()
        )
        return response.data[0] if response.data else None

    async def save_transcript(
        self, video_id: str, channel_id: str, result: TranscriptResult
    ) -> None:
        """Upsert the extraction outcome for one video."""
        completed = result.status is ExtractionStatus.COMPLETED
        data = {
            "video_id": video_id,
            "channel_id": channel_id,
            "full_text": result.full_text if completed else None,
            "segments": [segment.model_dump() for segment in result.segments],
            "source_type": "caption" if completed else "none",
            "extraction_status": result.status.value,
            "error_message": result.error_message,
            "confidence": result.confidence,
            "updated_at": _now(),
        }
        try:
            self.client.table("transcripts").upsert(data, on_conflict="video_id").execute()
            logger.info(
                "transcript_saved",
                video_id=video_id,
                status=result.status.value,
                segments=len(result.segments),
            )

        except Exception as e:
            logger.exception(
                "transcript_save_failed",
                video_id=video_id,
                error_type=type(e).__name__,
            )
            raise

    async def get_transcripts(self, transcript_ids: list[str]) -> list[StoredTranscript]:
        response = (
            self.client.table("transcripts")
            .select("id, video_id, channel_id, segments, extraction_status")
            .in_("id", transcript_ids)
            .execute()
        )
        return [StoredTranscript(**row) for row in response.data or []]

    async def get_completed_transcripts(self, channel_id: str) -> list[StoredTranscript]:
        response = (
            self.client.table("transcripts")
            .select("id, video_id, channel_id, segments, extraction_status")
            .eq("channel_id", channel_id)
            .eq("extraction_status", ExtractionStatus.COMPLETED.value)
            .execute()
        )
        return [
            StoredTranscript(**row) for row in response.data or [] if row.get("segments")
        ]

    async def count_transcripts(
        self, channel_id: str, status: ExtractionStatus | None = None
    ) -> int:
        query = (
            self.client.table("transcripts")
            .select("id", count="exact")
            .eq("channel_id", channel_id)
        )
        if status is not None:
            query = query.eq("extraction_status", status.value)
        return query.execute().count or 0

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    async def video_ids_with_embedded_chunks(self, video_ids: list[str]) -> set[str]:
        """Return the subset of ``video_ids`` that already have completed chunks."""
        if not video_ids:
            return set()
        response = (
            self.client.table("transcript_chunks")
            .select("video_id")
            .in_("video_id", video_ids)
            .eq("embedding_status", "completed")
            .execute()
        )
        return {row["video_id"] for row in response.data or []}

    async def replace_chunks(
        self, transcript: StoredTranscript, chunks: list[ChunkWithEmbedding]
    ) -> None:
        """Swap a video's chunks for a new set.

        New rows are upserted on ``(video_id, chunk_index)`` before rows past
        the new last index are deleted, so a failed write leaves the previous
        chunks searchable.
        """
        try:
            if chunks:
                data = [
                    {
                        "transcript_id": transcript.id,
                        "video_id": transcript.video_id,
                        "channel_id": transcript.channel_id,
                        "chunk_index": chunk.chunk_index,
                        "text": chunk.text,
                        "start_time": chunk.start_time,
                        "end_time": chunk.end_time,
                        "has_timestamps": chunk.has_timestamps,
                        "token_count": chunk.token_count,
                        "embedding": chunk.embedding,
                        "embedding_status": "completed",
                    }
                    for chunk in chunks
                ]
                self.client.table("transcript_chunks").upsert(
                    data, on_conflict="video_id,chunk_index"
                ).execute()

            self.client.table("transcript_chunks").delete().eq(
                "video_id", transcript.video_id
            ).gte("chunk_index", len(chunks)).execute()

            logger.info(
                "chunks_saved",
                count=len(chunks),
                video_id=transcript.video_id,
            )

        except Exception as e:
            logger.exception(
                "chunks_save_failed",
                count=len(chunks),
                video_id=transcript.video_id,
                error_type=type(e).__name__,
            )
            raise

    async def count_chunks(self, channel_id: str, embedded_only: bool = False) -> int:
        query = (
            self.client.table("transcript_chunks")
            .select("id", count="exact")
            .eq("channel_id", channel_id)
        )
        if embedded_only:
            query = query.eq("embedding_status", "completed")
        return query.execute().count or 0

    async def count_indexed_videos(self, channel_id: str) -> int:
        response = (
            self.client.table("transcript_chunks")
            .select("video_id")
            .eq("channel_id", channel_id)
            .eq("embedding_status", "completed")
            .execute()
        )
        return len({row["video_id"] for row in response.data or []})

    async def get_index_status(self, channel_id: str | None) -> dict[str, int]:
        """Summarize how much of a channel is searchable."""
        query = self.client.table("transcript_chunks").select(
            "start_time, end_time, embedding_status"
        )
        if channel_id:
            query = query.eq("channel_id", channel_id)
        rows = query.execute().data or []

        return {
            "total_chunks": len(rows),
            "embedded_chunks": sum(
                1 for row in rows if row.get("embedding_status") == "completed"
            ),
            "chunks_with_timestamps": sum(
                1
                for row in rows
                if row.get("start_time") is not None
                and row.get("end_time") is not None
                and row["end_time"] > row["start_time"]
            ),
        }

    async def search_chunks(
        self,
        query_embedding: list[float],
        channel_id: str | None,
        match_count: int,
        match_threshold: float,
    ) -> list[dict[str, Any]]:
        """Vector similarity search over a channel's embedded chunks.

        Returns:
            Rows with ``id, video_id, channel_id, chunk_index, text,
            start_time, end_time, similarity`` ordered by similarity.
        """
        try:
            response = self.client.rpc(
                "search_transcript_chunks",
                {
                    "query_embedding": query_embedding,
                    "match_threshold": match_threshold,
                    "match_count": match_count,
                    "filter_channel_id": channel_id,
                },
            ).execute()

            results: list[dict[str, Any]] = response.data or []
            logger.info(
                "vector_search_completed",
                channel_id=channel_id,
                results=len(results),
                match_count=match_count,
                match_threshold=match_threshold,
            )
            return results

        except Exception as e:
            logger.exception(
                "vector_search_failed",
                channel_id=channel_id,
                error_type=type(e).__name__,
            )
            raise

    # ------------------------------------------------------------------
    # Users and usage
    # ------------------------------------------------------------------

    async def get_usage(self, user_id: str) -> dict[str, Any]:
        """Read plan and usage counters, defaulting to an empty free plan."""
        defaults = {
            "plan_type": DEFAULT_PLAN,
            "creators_added": 0,
            "videos_indexed": 0,
            "messages_sent_today": 0,
        }
        try:
            response = self.client.rpc(
                "get_usage_with_limits", {"p_user_id": user_id}
            ).execute()
        except Exception as e:
            logger.warning(
                "usage_lookup_failed",
                user_id=user_id,
                error_type=type(e).__name__,
            )
            return defaults

        if not response.data:
            return defaults
        row = response.data[0]
        return {key: row.get(key) or default for key, default in defaults.items()}

    async def count_user_creators(self, user_id: str) -> int:
        response = (
            self.client.table("user_creators")
            .select("id", count="exact")
            .eq("user_id", user_id)
            .execute()
        )
        return response.count or 0

    async def is_user_linked(self, user_id: str, channel_row_id: str) -> bool:
        response = (
            self.client.table("user_creators")
            .select("id")
            .eq("user_id", user_id)
            .eq("channel_id", channel_row_id)
            .limit(1)
            .execute()
        )
        return bool(response.data)

    async def link_user_to_channel(self, user_id: str, channel_row_id: str) -> bool:
        """Link a user to a channel.

        Returns:
            True when a new link was created, False when it already existed.
        """
        try:
            self.client.table("user_creators").insert(
                {"user_id": user_id, "channel_id": channel_row_id}
            ).execute()
            return True
        except Exception as e:
            if is_unique_violation(e):
                return False
            logger.exception(
                "user_link_failed",
                user_id=user_id,
                error_type=type(e).__name__,
            )
            raise

    async def increment_usage(
        self, user_id: str, new_creator: bool = False, videos: int = 0
    ) -> None:
        """Bump creator/video usage counters; failures are logged only."""
        try:
            if new_creator:
                self.client.rpc("increment_creator_count", {"p_user_id": user_id}).execute()
            if videos > 0:
                self.client.rpc(
                    "increment_videos_indexed", {"p_user_id": user_id, "p_count": videos}
                ).execute()
        except Exception as e:
            logger.error(
                "usage_increment_failed",
                user_id=user_id,
                error_type=type(e).__name__,
                error=str(e),
            )

    async def increment_message_count(self, user_id: str) -> None:
        try:
            self.client.rpc("increment_message_count", {"p_user_id": user_id}).execute()
        except Exception as e:
            logger.error(
                "message_count_increment_failed",
                user_id=user_id,
                error_type=type(e).__name__,
                error=str(e),
            )

    async def consume_public_message(
        self, identifier: str, channel_id: str, daily_limit: int
    ) -> tuple[bool, int]:
        """Count one anonymous message against a per-identifier daily limit.

        Every write is conditional on the row still holding the values it was
        read with; a request that loses the race re-reads and tries again, so
        concurrent requests cannot both take the last message of the day.
        When contention outlasts the retries the message is refused.

        Returns:
            ``(allowed, messages_today)`` after the attempt.
        """
        today = datetime.now(UTC).date().isoformat()
        current = daily_limit
        for _ in range(PUBLIC_LIMIT_ATTEMPTS):
            response = (
                self.client.table("public_chat_limits")
                .select("*")
                .eq("identifier", identifier)
                .eq("channel_id", channel_id)
                .limit(1)
                .execute()
            )
            existing = response.data[0] if response.data else None

            if existing is None:
                try:
                    self.client.table("public_chat_limits").insert(
                        {"identifier": identifier, "channel_id": channel_id, "messages_today": 1}
                    ).execute()
                except Exception as e:
                    if not is_unique_violation(e):
                        raise
                    continue
                return True, 1

            current = existing.get("messages_today") or 0
            last_reset = existing.get("last_reset_at")
            if str(last_reset or "")[:10] < today:
                new_count = 1
                changes = {"messages_today": 1, "last_reset_at": _now()}
            elif current >= daily_limit:
                return False, current
            else:
                new_count = current + 1
                changes = {"messages_today": new_count}

            query = (
                self.client.table("public_chat_limits")
                .update(changes)
                .eq("id", existing["id"])
                .eq("messages_today", current)
            )
            if last_reset is None:
                query = query.is_("last_reset_at", "null")
            else:
                query = query.eq("last_reset_at", last_reset)
            if query.execute().data:
                return True, new_count

            logger.info(
                "public_limit_write_conflict", identifier=identifier, channel_id=channel_id
            )

        logger.warning(
            "public_limit_contention_exhausted", identifier=identifier, channel_id=channel_id
        )
        return False, current

    # ------------------------------------------------------------------
    # Chat history
    # ------------------------------------------------------------------

    async def save_chat_message(
        self,
        session_id: str,
        role: str,
        content: str,
        sources: list[dict[str, Any]] | None = None,
    ) -> None:
        try:
            self.client.table("chat_messages").insert(
                {
                    "session_id": session_id,
                    "role": role,
                    "content": content,
                    "sources": sources or [],
                }
            ).execute()
            self.client.table("chat_sessions").update({"updated_at": _now()}).eq(
                "id", session_id
            ).execute()
        except Exception as e:
            logger.exception(
                "chat_message_save_failed",
                session_id=session_id,
                role=role,
                error_type=type(e).__name__,
            )
            raise

    # ------------------------------------------------------------------
    # Operation locks
    # ------------------------------------------------------------------

    async def delete_expired_locks(self, lock_key: str) -> None:
        self.client.table("operation_locks").delete().eq("lock_key", lock_key).lt(
            "expires_at", _now()
        ).execute()

    async def insert_lock(self, lock_key: str, holder: str, expires_at: datetime) -> bool:
        """Insert a lock row; False when another holder already has it."""
        try:
            self.client.table("operation_locks").insert(
                {
                    "lock_key": lock_key,
                    "holder": holder,
                    "expires_at": expires_at.isoformat(),
                }
            ).execute()
            return True
        except Exception as e:
            if is_unique_violation(e):
                return False
            raise

    async def get_lock(self, lock_key: str) -> dict[str, Any] | None:
        response = (
            self.client.table("operation_locks")
            .select("*")
            .eq("lock_key", lock_key)
            .limit(1)
            .execute()
        )
        return response.data[0] if response.data else None

    async def delete_lock(self, lock_key: str, holder: str) -> None:
        self.client.table("operation_locks").delete().eq("lock_key", lock_key).eq(
            "holder", holder
        ).execute()

    # ------------------------------------------------------------------
    # Pipeline jobs
    # ------------------------------------------------------------------

    async def enqueue_job(
        self, channel_id: str, stage: str, payload: dict[str, Any]
    ) -> dict[str, Any]:
        """Persist a pending unit of downstream work."""
        try:
            response = (
                self.client.table("pipeline_jobs")
                .insert(
                    {
                        "channel_id": channel_id,
                        "stage": stage,
                        "payload": payload,
                        "status": "pending",
                        "attempts": 0,
                    }
                )
                .execute()
            )
            job = response.data[0]
            logger.info("job_enqueued", job_id=job.get("id"), channel_id=channel_id, stage=stage)
            return job

        except Exception as e:
            logger.exception(
                "job_enqueue_failed",
                channel_id=channel_id,
                stage=stage,
                error_type=type(e).__name__,
            )
            raise

    async def claim_job(self, job_id: str) -> dict[str, Any] | None:
        """Move a pending job to running; None if someone else claimed it."""
        response = (
            self.client.table("pipeline_jobs")
            .update({"status": "running", "started_at": _now()})
            .eq("id", job_id)
            .eq("status", "pending")
            .execute()
        )
        return response.data[0] if response.data else None

    async def finish_job(
        self,
        job_id: str,
        succeeded: bool,
        result: dict[str, Any] | None = None,
        error: str | None = None,
        attempts: int = 1,
    ) -> None:
        self.client.table("pipeline_jobs").update(
            {
                "status": "completed" if succeeded else "failed",
                "result": result,
                "error_message": error,
                "attempts": attempts,
                "finished_at": _now(),
            }
        ).eq("id", job_id).execute()

    async def requeue_job(self, job_id: str) -> None:
        self.client.table("pipeline_jobs").update(
            {"status": "pending", "error_message": None}
        ).eq("id", job_id).execute()

    async def list_jobs(self, status: str, limit: int = 20) -> list[dict[str, Any]]:
        response = (
            self.client.table("pipeline_jobs")
            .select("*")
            .eq("status", status)
            .order("created_at")
            .limit(limit)
            .execute()
        )
        return response.data or []
