"""Pydantic schemas for the channel ingestion pipeline."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class ContentType(str, Enum):
    VIDEO = "video"
    SHORT = "short"
    LIVE = "live"


class ImportMode(str, Enum):
    LATEST = "latest"
    OLDEST = "oldest"
    ALL = "all"


class ChannelStatus(str, Enum):
    """Channel-level ingestion status.

    The first three values are in-flight pipeline stages; the rest are
    terminal outcomes of a run.
    """

    PENDING = "pending"
    EXTRACTING = "extracting"
    PROCESSING = "processing"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"
    NO_CAPTIONS = "no_captions"

    @property
    def stage(self) -> int:
        return _STATUS_STAGE[self]

    @property
    def is_terminal(self) -> bool:
        return self.stage == _TERMINAL_STAGE

    def can_advance_to(self, new_status: "ChannelStatus") -> bool:
        """Whether a run may move from this status to ``new_status``.

        Within one run status never moves back to an earlier stage. A
        terminal status ends the run, so anything may follow it.
        """
        return self.is_terminal or new_status.stage >= self.stage


_TERMINAL_STAGE = 3

_STATUS_STAGE = {
    ChannelStatus.PENDING: 0,
    ChannelStatus.EXTRACTING: 1,
    ChannelStatus.PROCESSING: 2,
    ChannelStatus.COMPLETED: 3,
    ChannelStatus.PARTIAL: 3,
    ChannelStatus.FAILED: 3,
    ChannelStatus.NO_CAPTIONS: 3,
}


class VideoTranscriptStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    NO_TRANSCRIPT = "no_transcript"


class ExtractionStatus(str, Enum):
    COMPLETED = "completed"
    NO_CAPTIONS = "no_captions"
    FAILED = "failed"

    def to_video_status(self) -> VideoTranscriptStatus:
        if self is ExtractionStatus.NO_CAPTIONS:
            return VideoTranscriptStatus.NO_TRANSCRIPT
        return VideoTranscriptStatus(self.value)


class ContentTypes(BaseModel):
    """Which kinds of uploads a channel ingests."""

    videos: bool = True
    shorts: bool = False
    lives: bool = False

    def allows(self, content_type: ContentType) -> bool:
        return {
            ContentType.VIDEO: self.videos,
            ContentType.SHORT: self.shorts,
            ContentType.LIVE: self.lives,
        }[content_type]


class ImportSettings(BaseModel):
    mode: ImportMode = ImportMode.LATEST
    limit: int | None = Field(default=20, ge=1)


class ChannelInfo(BaseModel):
    """Channel metadata as reported by the YouTube Data API."""

    channel_id: str
    channel_name: str
    avatar_url: str | None = None
    subscriber_count: int = 0
    uploads_playlist_id: str
    total_video_count: int = 0


class VideoMetadata(BaseModel):
    """YouTube video metadata used for filtering and persisted on the video row."""

    video_id: str
    channel_id: str
    title: str = ""
    description: str = ""
    published_at: datetime | None = None
    duration_seconds: int | None = None
    thumbnail_url: str | None = None
    view_count: int = 0
    like_count: int = 0
    live_broadcast_content: str | None = None
    has_live_streaming_details: bool = False
    # Provider-supplied type; when absent the duration heuristic applies
    content_type: ContentType | None = None


class TranscriptSegment(BaseModel):
    """Smallest provider-supplied unit of caption text, times in seconds."""

    text: str
    start: float
    end: float

    @property
    def has_valid_timing(self) -> bool:
        return self.end > self.start


class TranscriptResult(BaseModel):
    """Outcome of one captions-provider call for one video."""

    status: ExtractionStatus
    segments: list[TranscriptSegment] = Field(default_factory=list)
    error_message: str | None = None
    retryable: bool = False

    @property
    def full_text(self) -> str:
        return " ".join(segment.text for segment in self.segments)

    @property
    def confidence(self) -> float:
        return 0.95 if self.status is ExtractionStatus.COMPLETED else 0.0


class StoredTranscript(BaseModel):
    """Transcript row as read back from the data store."""

    id: str
    video_id: str
    channel_id: str
    segments: list[TranscriptSegment] = Field(default_factory=list)
    extraction_status: ExtractionStatus


class Chunk(BaseModel):
    """Token-budgeted span of consecutive transcript segments.

    ``start_time``/``end_time`` are both None when the source transcript had
    no valid segment timing.
    """

    chunk_index: int
    text: str
    start_time: float | None = None
    end_time: float | None = None
    token_count: int

    @property
    def has_timestamps(self) -> bool:
        return (
            self.start_time is not None
            and self.end_time is not None
            and self.end_time > self.start_time
            and self.start_time >= 0
        )


class ChunkWithEmbedding(Chunk):
    embedding: list[float]


class ExtractionStats(BaseModel):
    total: int = 0
    completed: int = 0
    no_captions: int = 0
    failed: int = 0


class ExtractionResult(BaseModel):
    """Summary of one transcript extraction run over a channel."""

    success: bool
    status: ChannelStatus
    stats: ExtractionStats
    error_message: str | None = Field(default=None, serialization_alias="errorMessage")
    ready_for_embedding: bool = Field(
        default=False, serialization_alias="readyForLayer2"
    )
    job_id: str | None = None


class TranscriptProcessingResult(BaseModel):
    transcript_id: str
    video_id: str
    success: bool
    chunks_created: int = 0
    chunks_with_timestamps: int = 0
    skipped: bool = False
    error: str | None = None


class EmbeddingRunResult(BaseModel):
    """Aggregated outcome of one chunk-and-embed run."""

    processed: int = 0
    chunks_created: int = Field(default=0, serialization_alias="chunksCreated")
    chunks_with_timestamps: int = Field(
        default=0, serialization_alias="chunksWithTimestamps"
    )
    failed: int = 0
    errors: list[str] = Field(default_factory=list)

    def add(self, item: TranscriptProcessingResult) -> None:
        if item.success:
            self.processed += 1
            self.chunks_created += item.chunks_created
            self.chunks_with_timestamps += item.chunks_with_timestamps
        else:
            self.failed += 1
            self.errors.append(f"{item.video_id}: {item.error or 'Unknown error'}")


class IngestionResult(BaseModel):
    """Result of resolving a channel and listing its videos."""

    success: bool = True
    channel: dict[str, Any]
    new_videos_count: int = 0
    up_to_date: bool = False
    message: str | None = None
    job_id: str | None = None
