"""Unit tests for the captions provider client."""

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from creator_chat.ingestion.config import IngestionConfig
from creator_chat.ingestion.schemas import ExtractionStatus
from creator_chat.ingestion.transcript_service import (
    TranscriptAPIService,
    normalize_segments,
)


@pytest.mark.unit
class TestNormalizeSegments:
    """Test provider item normalization."""

    def test_numeric_times(self) -> None:
        segments = normalize_segments([{"text": " Hello ", "start": 1.5, "duration": 2}])
        assert len(segments) == 1
        assert segments[0].text == "Hello"
        assert segments[0].start == 1.5
        assert segments[0].end == 3.5

    def test_string_times_are_parsed(self) -> None:
        segments = normalize_segments([{"text": "Hi", "start": "4.0", "duration": "1.5"}])
        assert segments[0].start == 4.0
        assert segments[0].end == 5.5

    def test_unparseable_duration_uses_default(self) -> None:
        segments = normalize_segments([{"text": "Hi", "start": 0, "duration": "abc"}])
        assert segments[0].start == 0
        assert segments[0].end == 2.0

    def test_empty_text_is_dropped(self) -> None:
        segments = normalize_segments(
            [{"text": "   ", "start": 0, "duration": 1}, {"text": "kept", "start": 1, "duration": 1}]
        )
        assert [s.text for s in segments] == ["kept"]


@pytest.mark.unit
class TestTranscriptAPIService:
    """Test response classification of a single provider call."""

    @pytest.fixture
    def config(self) -> IngestionConfig:
        return IngestionConfig(
            transcript_api_key="test-key",
            transcript_api_base_url="https://transcripts.test/api/v2",
        )

    def make_service(self, config: IngestionConfig, response=None, error=None):
        http_client = MagicMock()
        http_client.get = AsyncMock(return_value=response, side_effect=error)
        return TranscriptAPIService(config, http_client), http_client

    @pytest.mark.asyncio
    async def test_success_returns_segments(self, config: IngestionConfig) -> None:
        response = httpx.Response(
            200,
            json={
                "transcript": [
                    {"text": "Hello", "start": 0, "duration": 2},
                    {"text": "world", "start": 2, "duration": 2},
                ]
            },
        )
        service, http_client = self.make_service(config, response)

        result = await service.fetch_transcript("abc123")

        assert result.status is ExtractionStatus.COMPLETED
        assert result.full_text == "Hello world"
        assert result.confidence == 0.95
        http_client.get.assert_awaited_once()
        kwargs = http_client.get.call_args.kwargs
        assert kwargs["params"] == {"video_url": "abc123"}
        assert kwargs["headers"]["Authorization"] == "Bearer test-key"

    @pytest.mark.asyncio
    async def test_not_found_is_no_captions(self, config: IngestionConfig) -> None:
        service, _ = self.make_service(config, httpx.Response(404, text="not found"))
        result = await service.fetch_transcript("abc123")
        assert result.status is ExtractionStatus.NO_CAPTIONS
        assert result.retryable is False

    @pytest.mark.asyncio
    async def test_empty_transcript_is_no_captions(self, config: IngestionConfig) -> None:
        service, _ = self.make_service(config, httpx.Response(200, json={"transcript": []}))
        result = await service.fetch_transcript("abc123")
        assert result.status is ExtractionStatus.NO_CAPTIONS

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [401, 403])
    async def test_auth_error_is_failed(self, config: IngestionConfig, status_code: int) -> None:
        service, _ = self.make_service(config, httpx.Response(status_code))
        result = await service.fetch_transcript("abc123")
        assert result.status is ExtractionStatus.FAILED
        assert "key" in result.error_message

    @pytest.mark.asyncio
    async def test_rate_limit_is_retryable_failure(self, config: IngestionConfig) -> None:
        service, _ = self.make_service(config, httpx.Response(429))
        result = await service.fetch_transcript("abc123")
        assert result.status is ExtractionStatus.FAILED
        assert result.retryable is True

    @pytest.mark.asyncio
    async def test_malformed_payload_is_failed(self, config: IngestionConfig) -> None:
        service, _ = self.make_service(config, httpx.Response(200, json={"items": []}))
        result = await service.fetch_transcript("abc123")
        assert result.status is ExtractionStatus.FAILED
        assert result.error_message == "Unexpected API response format"

    @pytest.mark.asyncio
    async def test_transport_error_does_not_raise(self, config: IngestionConfig) -> None:
        service, _ = self.make_service(config, error=httpx.ConnectError("boom"))
        result = await service.fetch_transcript("abc123")
        assert result.status is ExtractionStatus.FAILED
        assert result.retryable is True
