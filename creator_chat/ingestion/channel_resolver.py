"""Channel reference parsing and YouTube Data API v3 access."""

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from urllib.parse import urlparse

import httpx

from creator_chat.errors import ChannelNotFoundError, InvalidChannelReference, ProviderError
from creator_chat.utils.logging import get_logger

from .config import IngestionConfig
from .schemas import ChannelInfo, VideoMetadata

logger = get_logger(__name__)

PAGE_SIZE = 50

_CHANNEL_ID_RE = re.compile(r"^UC[\w-]{22}$")
_HANDLE_RE = re.compile(r"^@?[\w.\-]{3,100}$")
_DURATION_RE = re.compile(
    r"^P(?:(?P<days>\d+)D)?(?:T(?:(?P<hours>\d+)H)?(?:(?P<minutes>\d+)M)?(?:(?P<seconds>\d+)S)?)?$"
)


@dataclass(frozen=True)
class ChannelReference:
    """A parsed channel reference.

    ``kind`` is one of ``channel`` (stable id), ``handle``, ``custom`` or ``user``.
    """

    kind: str
    value: str


def parse_channel_reference(reference: str) -> ChannelReference:
    """Parse a channel URL, ``@handle`` URL, bare handle or bare channel id.

    Raises:
        InvalidChannelReference: If the string matches none of the forms.
    """
    raw = (reference or "").strip()
    if not raw:
        raise InvalidChannelReference(reference)

    looks_like_url = "://" in raw or "youtube.com" in raw.lower()
    if looks_like_url:
        parsed = urlparse(raw if "://" in raw else f"https://{raw}")
        host = (parsed.hostname or "").lower()
        if not (host == "youtube.com" or host.endswith(".youtube.com")):
            raise InvalidChannelReference(reference)

        parts = [p for p in parsed.path.split("/") if p]
        if parts and parts[0].startswith("@") and len(parts[0]) > 1:
            return ChannelReference("handle", parts[0][1:])
        if len(parts) >= 2 and parts[0] in ("channel", "c", "user"):
            kind = {"channel": "channel", "c": "custom", "user": "user"}[parts[0]]
            return ChannelReference(kind, parts[1])
        raise InvalidChannelReference(reference)

    if _CHANNEL_ID_RE.match(raw):
        return ChannelReference("channel", raw)
    if _HANDLE_RE.match(raw):
        return ChannelReference("handle", raw.lstrip("@"))

    raise InvalidChannelReference(reference)


def parse_iso8601_duration(value: str | None) -> int:
    """Convert an ISO-8601 duration such as ``PT1H2M3S`` to seconds."""
    match = _DURATION_RE.match(value or "")
    if not match:
        return 0
    parts = {k: int(v) for k, v in match.groupdict().items() if v}
    return (
        parts.get("days", 0) * 86400
        + parts.get("hours", 0) * 3600
        + parts.get("minutes", 0) * 60
        + parts.get("seconds", 0)
    )


class YouTubeDataService:
    """Thin client over the YouTube Data API v3 endpoints the resolver needs."""

    provider = "youtube"

    def __init__(self, config: IngestionConfig, http_client: httpx.AsyncClient):
        self.config = config
        self.http_client = http_client

    async def _get(self, resource: str, params: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self.http_client.get(
                f"{self.config.youtube_api_base_url}/{resource}",
                params={**params, "key": self.config.youtube_api_key},
                timeout=self.config.http_timeout_seconds,
            )
        except httpx.HTTPError as e:
            raise ProviderError(
                f"YouTube API request failed: {e}", provider=self.provider, retryable=True
            ) from e

        try:
            data = response.json()
        except ValueError:
            data = {}

        error = data.get("error") if isinstance(data, dict) else None
        if error or not response.is_success:
            reasons = [item.get("reason") for item in (error or {}).get("errors", [])]
            logger.error(
                "youtube_api_error",
                resource=resource,
                http_status=response.status_code,
                reasons=reasons,
            )
            if "quotaExceeded" in reasons:
                raise ProviderError(
                    "YouTube API quota exceeded",
                    provider=self.provider,
                    retryable=True,
                    status_code=response.status_code,
                )
            message = (error or {}).get("message") or response.text[:100]
            raise ProviderError(
                f"YouTube API error: {response.status_code} - {message}",
                provider=self.provider,
                retryable=response.status_code >= 500,
                status_code=response.status_code,
            )
        return data

    async def resolve_channel(self, reference: ChannelReference) -> ChannelInfo:
        """Resolve a parsed reference to the channel's stable id and metadata.

        Raises:
            ChannelNotFoundError: If YouTube has no matching channel.
            ProviderError: If the API call fails.
        """
        part = "snippet,contentDetails,statistics"

        if reference.kind == "channel":
            data = await self._get("channels", {"part": part, "id": reference.value})
        elif reference.kind == "handle":
            data = await self._get("channels", {"part": part, "forHandle": reference.value})
        else:
            search = await self._get(
                "search",
                {"part": "snippet", "type": "channel", "q": reference.value, "maxResults": 1},
            )
            items = search.get("items") or []
            if not items:
                raise ChannelNotFoundError(reference.value)
            channel_id = items[0]["id"]["channelId"]
            data = await self._get("channels", {"part": part, "id": channel_id})

        items = data.get("items") or []
        if not items:
            raise ChannelNotFoundError(reference.value)

        item = items[0]
        snippet = item.get("snippet", {})
        thumbnails = snippet.get("thumbnails", {})
        statistics = item.get("statistics", {})
        info = ChannelInfo(
            channel_id=item["id"],
            channel_name=snippet.get("title", ""),
            avatar_url=(thumbnails.get("high") or thumbnails.get("default") or {}).get("url"),
            subscriber_count=int(statistics.get("subscriberCount") or 0),
            uploads_playlist_id=item.get("contentDetails", {})
            .get("relatedPlaylists", {})
            .get("uploads", ""),
            total_video_count=int(statistics.get("videoCount") or 0),
        )
        logger.info(
            "channel_resolved",
            reference_kind=reference.kind,
            channel_id=info.channel_id,
        )
        return info

    async def list_upload_ids(self, playlist_id: str, max_results: int) -> list[str]:
        """Page through the uploads playlist, newest first, up to ``max_results``."""
        video_ids: list[str] = []
        page_token: str | None = None

        while len(video_ids) < max_results:
            params: dict[str, Any] = {
                "part": "contentDetails",
                "playlistId": playlist_id,
                "maxResults": PAGE_SIZE,
            }
            if page_token:
                params["pageToken"] = page_token

            data = await self._get("playlistItems", params)
            for item in data.get("items") or []:
                video_id = item.get("contentDetails", {}).get("videoId")
                if video_id:
                    video_ids.append(video_id)

            page_token = data.get("nextPageToken")
            if not page_token:
                break

        return video_ids[:max_results]

    async def fetch_video_metadata(
        self, video_ids: list[str], channel_id: str
    ) -> list[VideoMetadata]:
        """Fetch snippet, duration, statistics and live details in batches of 50."""
        videos: list[VideoMetadata] = []

        for offset in range(0, len(video_ids), PAGE_SIZE):
            batch = video_ids[offset : offset + PAGE_SIZE]
            data = await self._get(
                "videos",
                {
                    "part": "snippet,contentDetails,statistics,liveStreamingDetails",
                    "id": ",".join(batch),
                },
            )
            for item in data.get("items") or []:
                videos.append(self._to_video(item, channel_id))

        logger.info("video_metadata_fetched", channel_id=channel_id, count=len(videos))
        return videos

    @staticmethod
    def _to_video(item: dict[str, Any], channel_id: str) -> VideoMetadata:
        snippet = item.get("snippet", {})
        thumbnails = snippet.get("thumbnails", {})
        statistics = item.get("statistics", {})
        published = snippet.get("publishedAt")
        return VideoMetadata(
            video_id=item["id"],
            channel_id=channel_id,
            title=snippet.get("title", ""),
            description=snippet.get("description", ""),
            published_at=(
                datetime.fromisoformat(published.replace("Z", "+00:00")) if published else None
            ),
            duration_seconds=parse_iso8601_duration(
                item.get("contentDetails", {}).get("duration")
            ),
            thumbnail_url=(thumbnails.get("high") or thumbnails.get("default") or {}).get("url"),
            view_count=int(statistics.get("viewCount") or 0),
            like_count=int(statistics.get("likeCount") or 0),
            live_broadcast_content=snippet.get("liveBroadcastContent"),
            has_live_streaming_details=item.get("liveStreamingDetails") is not None,
        )

    async def list_channel_videos(
        self, channel: ChannelInfo, scan_limit: int
    ) -> list[VideoMetadata]:
        """List up to ``scan_limit`` uploads with full metadata."""
        video_ids = await self.list_upload_ids(channel.uploads_playlist_id, scan_limit)
        if not video_ids:
            return []
        return await self.fetch_video_metadata(video_ids, channel.channel_id)
