"""Command-line interface for ingesting a creator channel end to end."""

import argparse
import asyncio

from creator_chat.errors import CreatorChatError
from creator_chat.utils.logging import get_logger

from .config import get_config
from .schemas import ContentTypes, ImportMode, ImportSettings
from .services import build_ingestion_services

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Creator chat ingestion - resolve a channel, extract and index transcripts",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Ingest the 20 latest videos of a channel
  python -m creator_chat.ingestion.cli https://www.youtube.com/@somecreator

  # Include shorts, import the 50 oldest uploads
  python -m creator_chat.ingestion.cli @somecreator --shorts --mode oldest --limit 50

  # Refresh a known channel and only list new videos
  python -m creator_chat.ingestion.cli UCxxxxxxxxxxxxxxxxxxxxxx --refresh --no-process
        """,
    )
    parser.add_argument("channel", help="Channel URL, @handle or channel id")
    parser.add_argument("--shorts", action="store_true", help="Also ingest shorts")
    parser.add_argument("--lives", action="store_true", help="Also ingest live streams")
    parser.add_argument(
        "--no-videos", action="store_true", help="Skip regular long-form videos"
    )
    parser.add_argument(
        "--mode",
        choices=[mode.value for mode in ImportMode],
        default=ImportMode.LATEST.value,
        help="Which uploads to import",
    )
    parser.add_argument("--limit", type=int, help="Maximum number of videos to import")
    parser.add_argument(
        "--refresh",
        action="store_true",
        help="Treat the argument as a stored channel id and only add new videos",
    )
    parser.add_argument(
        "--no-process",
        action="store_true",
        help="Only list and store videos; leave extraction jobs queued",
    )
    return parser


async def main(argv: list[str] | None = None) -> int:
    """CLI entry point for channel ingestion.

    Returns:
        Process exit code.
    """
    args = build_parser().parse_args(argv)
    config = get_config()

    content_types = ContentTypes(
        videos=not args.no_videos, shorts=args.shorts, lives=args.lives
    )
    settings = ImportSettings(
        mode=ImportMode(args.mode), limit=args.limit or config.default_video_limit
    )

    logger.info(
        "cli_started",
        channel=args.channel,
        mode=settings.mode.value,
        limit=settings.limit,
        refresh=args.refresh,
    )

    print("\n" + "=" * 60)
    print("Creator Chat Ingestion")
    print("=" * 60)
    print(f"Channel: {args.channel}")
    print(f"Import: {settings.mode.value} (limit {settings.limit})")
    print(
        f"Content: videos={content_types.videos} shorts={content_types.shorts} "
        f"lives={content_types.lives}"
    )
    print(f"Embedding model: {config.embedding_model}")
    print(f"Chunk size: {config.target_chunk_tokens} tokens, overlap {config.overlap_tokens}")
    print("=" * 60 + "\n")

    services = build_ingestion_services(config)
    try:
        result = await services.ingestion.ingest(
            None if args.refresh else args.channel,
            content_types=content_types,
            import_settings=settings,
            refresh=args.refresh,
            channel_id=args.channel if args.refresh else None,
        )
        print(f"✅ {result.message}")

        stage_results = []
        if result.job_id and not args.no_process:
            stage_results = await services.jobs.run_chain(result.job_id)
    except CreatorChatError as e:
        logger.error("cli_failed", error_type=type(e).__name__, error=str(e))
        print(f"\n❌ {e}")
        return 1
    finally:
        await services.aclose()

    channel = result.channel
    if stage_results:
        channel = await services.storage.get_channel(channel["channel_id"]) or channel

    print("\n" + "=" * 60)
    print("Ingestion Results")
    print("=" * 60)
    print(f"Channel: {channel.get('channel_name')} ({channel.get('channel_id')})")
    print(f"New videos: {result.new_videos_count}")
    print(f"Status: {channel.get('ingestion_status')}")
    print(f"Indexed videos: {channel.get('indexed_videos')} / {channel.get('total_videos')}")

    errors = [r["error"] for r in stage_results if r.get("error")]
    errors += [e for r in stage_results for e in r.get("errors", [])]
    if errors:
        print("\nErrors encountered:")
        for error in errors:
            print(f"  ❌ {error}")
    else:
        print("\n✅ No errors encountered")
    print("=" * 60 + "\n")

    logger.info(
        "cli_completed",
        channel_id=channel.get("channel_id"),
        new_videos=result.new_videos_count,
        status=channel.get("ingestion_status"),
    )
    return 0


def run() -> None:
    raise SystemExit(asyncio.run(main()))


if __name__ == "__main__":
    run()
