"""Captions provider client (TranscriptAPI v2) with response classification."""

import math
from typing import Any

import httpx

from creator_chat.utils.logging import get_logger

from .config import IngestionConfig
from .schemas import ExtractionStatus, TranscriptResult, TranscriptSegment

logger = get_logger(__name__)

DEFAULT_SEGMENT_DURATION = 2.0


def _coerce_seconds(value: Any, default: float) -> float:
    """Coerce a numeric or numeric-string time value to float seconds.

    Numbers pass through unchanged. Strings that do not parse, or parse to
    zero, fall back to ``default``.
    """
    if isinstance(value, bool):
        return default
    if isinstance(value, int | float):
        return default if math.isnan(value) else float(value)
    if isinstance(value, str):
        try:
            parsed = float(value)
        except ValueError:
            return default
        if math.isnan(parsed) or parsed == 0:
            return default
        return parsed
    return default


def normalize_segments(items: list[Any]) -> list[TranscriptSegment]:
    """Convert provider items ``{text, start, duration}`` into segments.

    Segments whose trimmed text is empty are dropped.
    """
    segments: list[TranscriptSegment] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        text = str(item.get("text") or "").strip()
        if not text:
            continue
        start = _coerce_seconds(item.get("start"), 0.0)
        duration = _coerce_seconds(item.get("duration"), DEFAULT_SEGMENT_DURATION)
        segments.append(TranscriptSegment(text=text, start=start, end=start + duration))
    return segments


class TranscriptAPIService:
    """Fetches caption transcripts for single videos.

    Each call makes exactly one provider request and never raises for
    provider-side problems: every outcome is mapped onto a
    :class:`TranscriptResult` with status ``completed``, ``no_captions`` or
    ``failed``.
    """

    provider = "transcriptapi"

    def __init__(self, config: IngestionConfig, http_client: httpx.AsyncClient):
        self.config = config
        self.http_client = http_client

    async def fetch_transcript(self, video_id: str) -> TranscriptResult:
        """Fetch and classify the transcript for one video.

        Args:
            video_id: YouTube video id.

        Returns:
            TranscriptResult describing the outcome.
        """
        logger.info("transcript_fetch_started", video_id=video_id)

        try:
            response = await self.http_client.get(
                f"{self.config.transcript_api_base_url}/youtube/transcript",
                params={"video_url": video_id},
                headers={"Authorization": f"Bearer {self.config.transcript_api_key}"},
                timeout=self.config.http_timeout_seconds,
            )
        except httpx.HTTPError as e:
            logger.warning(
                "transcript_fetch_transport_error",
                video_id=video_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            return TranscriptResult(
                status=ExtractionStatus.FAILED,
                error_message=str(e) or type(e).__name__,
                retryable=True,
            )

        result = self._classify(response)
        logger.info(
            "transcript_fetch_completed",
            video_id=video_id,
            http_status=response.status_code,
            status=result.status.value,
            segments=len(result.segments),
        )
        return result

    def _classify(self, response: httpx.Response) -> TranscriptResult:
        status = response.status_code

        if status == 404:
            return TranscriptResult(
                status=ExtractionStatus.NO_CAPTIONS,
                error_message="No captions available for this video",
            )
        if status in (401, 403):
            logger.error("transcript_provider_auth_error", http_status=status)
            return TranscriptResult(
                status=ExtractionStatus.FAILED,
                error_message="Invalid or missing TranscriptAPI key",
            )
        if status == 429:
            return TranscriptResult(
                status=ExtractionStatus.FAILED,
                error_message="Rate limited - try again later",
                retryable=True,
            )
        if not response.is_success:
            return TranscriptResult(
                status=ExtractionStatus.FAILED,
                error_message=f"API error: {status} - {response.text[:100]}",
                retryable=status >= 500,
            )

        try:
            payload = response.json()
        except ValueError:
            payload = None

        items = payload.get("transcript") if isinstance(payload, dict) else None
        if not isinstance(items, list):
            return TranscriptResult(
                status=ExtractionStatus.FAILED,
                error_message="Unexpected API response format",
            )
        if not items:
            return TranscriptResult(
                status=ExtractionStatus.NO_CAPTIONS,
                error_message="No captions available for this video",
            )

        segments = normalize_segments(items)
        if not segments:
            return TranscriptResult(
                status=ExtractionStatus.NO_CAPTIONS,
                error_message="Transcript returned but no usable text",
            )

        return TranscriptResult(status=ExtractionStatus.COMPLETED, segments=segments)
