"""Unit tests for the transcript extraction stage."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from creator_chat.errors import NotFoundError
from creator_chat.ingestion.config import IngestionConfig
from creator_chat.ingestion.extractor import EMBED_STAGE, TranscriptExtractor
from creator_chat.ingestion.schemas import (
    ChannelStatus,
    ExtractionStatus,
    TranscriptResult,
    TranscriptSegment,
    VideoTranscriptStatus,
)

CHANNEL_ID = "UCchannel"


def completed_result() -> TranscriptResult:
    return TranscriptResult(
        status=ExtractionStatus.COMPLETED,
        segments=[TranscriptSegment(text="Hello", start=0, end=2)],
    )


def no_captions_result() -> TranscriptResult:
    return TranscriptResult(
        status=ExtractionStatus.NO_CAPTIONS, error_message="No captions available for this video"
    )


def failed_result() -> TranscriptResult:
    return TranscriptResult(status=ExtractionStatus.FAILED, error_message="API error: 500")


@pytest.mark.unit
class TestTranscriptExtractor:
    """Test suite for TranscriptExtractor."""

    @pytest.fixture
    def storage(self) -> MagicMock:
        storage = MagicMock()
        storage.update_channel_state = AsyncMock(return_value=True)
        storage.list_channel_videos = AsyncMock(
            return_value=[{"video_id": "v1"}, {"video_id": "v2"}, {"video_id": "v3"}]
        )
        storage.get_transcript_for_video = AsyncMock(return_value=None)
        storage.save_transcript = AsyncMock()
        storage.update_video_transcript_status = AsyncMock()
        storage.enqueue_job = AsyncMock(return_value={"id": "job-embed"})
        storage.get_video = AsyncMock()
        return storage

    @pytest.fixture
    def transcripts(self) -> MagicMock:
        transcripts = MagicMock()
        transcripts.fetch_transcript = AsyncMock()
        return transcripts

    @pytest.fixture
    def sleep(self) -> AsyncMock:
        return AsyncMock()

    @pytest.fixture
    def extractor(
        self, storage: MagicMock, transcripts: MagicMock, sleep: AsyncMock
    ) -> TranscriptExtractor:
        config = IngestionConfig(transcript_request_delay_seconds=0.2)
        return TranscriptExtractor(config, storage, transcripts, sleep=sleep)

    @pytest.mark.asyncio
    async def test_partial_captions_move_channel_to_processing(
        self,
        extractor: TranscriptExtractor,
        storage: MagicMock,
        transcripts: MagicMock,
    ) -> None:
        transcripts.fetch_transcript.side_effect = [
            completed_result(),
            completed_result(),
            no_captions_result(),
        ]

        result = await extractor.extract_channel(CHANNEL_ID)

        assert result.stats.completed == 2
        assert result.stats.no_captions == 1
        assert result.stats.failed == 0
        assert result.status is ChannelStatus.PROCESSING
        assert result.success is True
        assert result.ready_for_embedding is True
        assert result.job_id == "job-embed"
        storage.enqueue_job.assert_awaited_once_with(
            CHANNEL_ID, EMBED_STAGE, {"channel_id": CHANNEL_ID, "process_all": True}
        )
        final_call = storage.update_channel_state.call_args_list[-1]
        assert final_call.kwargs["status"] is ChannelStatus.PROCESSING
        assert final_call.kwargs["progress"] == 100

    @pytest.mark.asyncio
    async def test_every_video_gets_a_status(
        self,
        extractor: TranscriptExtractor,
        storage: MagicMock,
        transcripts: MagicMock,
    ) -> None:
        transcripts.fetch_transcript.side_effect = [
            completed_result(),
            failed_result(),
            no_captions_result(),
        ]

        await extractor.extract_channel(CHANNEL_ID)

        statuses = [c.args[1] for c in storage.update_video_transcript_status.call_args_list]
        assert statuses == [
            VideoTranscriptStatus.COMPLETED,
            VideoTranscriptStatus.FAILED,
            VideoTranscriptStatus.NO_TRANSCRIPT,
        ]

    @pytest.mark.asyncio
    async def test_delay_between_provider_calls(
        self,
        extractor: TranscriptExtractor,
        transcripts: MagicMock,
        sleep: AsyncMock,
    ) -> None:
        transcripts.fetch_transcript.return_value = completed_result()

        await extractor.extract_channel(CHANNEL_ID)

        assert sleep.await_count == 2
        sleep.assert_awaited_with(0.2)

    @pytest.mark.asyncio
    async def test_all_no_captions(
        self,
        extractor: TranscriptExtractor,
        storage: MagicMock,
        transcripts: MagicMock,
    ) -> None:
        transcripts.fetch_transcript.return_value = no_captions_result()

        result = await extractor.extract_channel(CHANNEL_ID)

        assert result.status is ChannelStatus.NO_CAPTIONS
        assert result.success is False
        assert result.job_id is None
        storage.enqueue_job.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_all_failed(
        self,
        extractor: TranscriptExtractor,
        transcripts: MagicMock,
    ) -> None:
        transcripts.fetch_transcript.return_value = failed_result()

        result = await extractor.extract_channel(CHANNEL_ID)

        assert result.status is ChannelStatus.FAILED
        assert "3 failed" in result.error_message

    @pytest.mark.asyncio
    async def test_already_extracted_video_is_not_refetched(
        self,
        extractor: TranscriptExtractor,
        storage: MagicMock,
        transcripts: MagicMock,
    ) -> None:
        storage.list_channel_videos.return_value = [{"video_id": "v1"}]
        storage.get_transcript_for_video.return_value = {
            "extraction_status": "completed",
            "segments": [{"text": "Hello", "start": 0, "end": 2}],
        }

        result = await extractor.extract_channel(CHANNEL_ID)

        assert result.stats.completed == 1
        transcripts.fetch_transcript.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_persist_failure_counts_as_failed(
        self,
        extractor: TranscriptExtractor,
        storage: MagicMock,
        transcripts: MagicMock,
    ) -> None:
        storage.list_channel_videos.return_value = [{"video_id": "v1"}]
        storage.save_transcript.side_effect = RuntimeError("db down")
        transcripts.fetch_transcript.return_value = completed_result()

        result = await extractor.extract_channel(CHANNEL_ID)

        assert result.stats.failed == 1
        assert result.status is ChannelStatus.FAILED

    @pytest.mark.asyncio
    async def test_handoff_failure_is_not_fatal(
        self,
        extractor: TranscriptExtractor,
        storage: MagicMock,
        transcripts: MagicMock,
    ) -> None:
        storage.enqueue_job.side_effect = RuntimeError("queue unavailable")
        transcripts.fetch_transcript.return_value = completed_result()

        result = await extractor.extract_channel(CHANNEL_ID)

        assert result.success is True
        assert result.job_id is None

    @pytest.mark.asyncio
    async def test_channel_without_videos(
        self, extractor: TranscriptExtractor, storage: MagicMock
    ) -> None:
        storage.list_channel_videos.return_value = []

        with pytest.raises(NotFoundError):
            await extractor.extract_channel(CHANNEL_ID)

        final_call = storage.update_channel_state.call_args_list[-1]
        assert final_call.kwargs["status"] is ChannelStatus.FAILED

    @pytest.mark.asyncio
    async def test_retry_video(
        self,
        extractor: TranscriptExtractor,
        storage: MagicMock,
        transcripts: MagicMock,
    ) -> None:
        storage.get_video.return_value = {"video_id": "v1", "channel_id": CHANNEL_ID}
        transcripts.fetch_transcript.return_value = completed_result()

        result = await extractor.retry_video("v1")

        assert result["success"] is True
        assert result["status"] == "completed"
        assert result["jobId"] == "job-embed"
        storage.save_transcript.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_retry_unknown_video(
        self, extractor: TranscriptExtractor, storage: MagicMock
    ) -> None:
        storage.get_video.return_value = None

        with pytest.raises(NotFoundError):
            await extractor.retry_video("missing")
