"""Content-type classification and import-mode selection for channel uploads."""

from datetime import UTC, datetime

from .schemas import ContentType, ContentTypes, ImportMode, ImportSettings, VideoMetadata

# Uploads at or under this length are treated as shorts when the provider
# does not say what they are.
SHORTS_MAX_DURATION_SECONDS = 60

_EPOCH = datetime.min.replace(tzinfo=UTC)


def get_video_content_type(video: VideoMetadata) -> ContentType:
    """Classify an upload as a regular video, a short or a live stream.

    Explicit provider metadata wins. Otherwise live-streaming details mark a
    live stream, and a positive duration of at most 60 seconds marks a short.
    """
    if video.content_type is not None:
        return video.content_type

    if video.has_live_streaming_details or video.live_broadcast_content in (
        "live",
        "upcoming",
    ):
        return ContentType.LIVE

    duration = video.duration_seconds or 0
    if 0 < duration <= SHORTS_MAX_DURATION_SECONDS:
        return ContentType.SHORT

    return ContentType.VIDEO


def filter_videos_by_content_type(
    videos: list[VideoMetadata], content_types: ContentTypes
) -> list[VideoMetadata]:
    return [v for v in videos if content_types.allows(get_video_content_type(v))]


def get_effective_video_limit(settings: ImportSettings, plan_max: int) -> int:
    """Number of videos to import for these settings under a plan ceiling.

    ``all`` ignores the per-request limit and uses the plan maximum.
    """
    if settings.mode is ImportMode.ALL or settings.limit is None:
        return plan_max
    return min(settings.limit, plan_max)


def _published(video: VideoMetadata) -> datetime:
    if video.published_at is None:
        return _EPOCH
    if video.published_at.tzinfo is None:
        return video.published_at.replace(tzinfo=UTC)
    return video.published_at


def select_videos(
    videos: list[VideoMetadata],
    content_types: ContentTypes,
    settings: ImportSettings,
    plan_max: int,
) -> list[VideoMetadata]:
    """Filter by content type, order by import mode and apply the limit.

    ``latest`` keeps the newest uploads and ``oldest`` the earliest ones;
    ``all`` keeps listing order and is capped only by the plan maximum.
    """
    selected = filter_videos_by_content_type(videos, content_types)

    if settings.mode is ImportMode.LATEST:
        selected = sorted(selected, key=_published, reverse=True)
    elif settings.mode is ImportMode.OLDEST:
        selected = sorted(selected, key=_published)

    for video in selected:
        video.content_type = get_video_content_type(video)

    return selected[: get_effective_video_limit(settings, plan_max)]
