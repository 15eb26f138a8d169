"""Script to clear a channel's chunks and rebuild them from stored transcripts.

This script:
1. Deletes all transcript chunks of the channel
2. Re-chunks and re-embeds every completed transcript
3. Recomputes the channel's indexing status

Use it after changing chunking or embedding settings.
"""

import argparse
import asyncio

from creator_chat.ingestion.config import get_config
from creator_chat.ingestion.services import build_ingestion_services
from creator_chat.utils.logging import configure_logging


async def clear_and_reprocess(channel_id: str, assume_yes: bool = False) -> None:
    """Clear a channel's chunks and run the embedding stage over it again."""
    config = get_config()
    configure_logging()
    services = build_ingestion_services(config)
    storage = services.storage

    try:
        channel = await storage.get_channel(channel_id)
        if not channel:
            print(f"Channel not found: {channel_id}")
            return

        transcripts = await storage.get_completed_transcripts(channel_id)
        chunks = await storage.count_chunks(channel_id)

        print(f"Current state of {channel.get('channel_name') or channel_id}:")
        print(f"  Completed transcripts: {len(transcripts)}")
        print(f"  Chunks: {chunks}")

        print("\nThis will:")
        print("  1. DELETE all transcript chunks of this channel")
        print("  2. Re-chunk and re-embed every completed transcript")

        if not assume_yes:
            confirm = input("\nAre you sure? Type 'yes' to continue: ")
            if confirm.lower() != "yes":
                print("Aborted")
                return

        print("\nDeleting transcript chunks...")
        storage.client.table("transcript_chunks").delete().eq("channel_id", channel_id).execute()

        print("Re-embedding transcripts...")
        result = await services.embedding_pipeline.run(channel_id=channel_id, process_all=True)

        print("\nDone!")
        print(f"  Processed: {result.processed}")
        print(f"  Chunks created: {result.chunks_created}")
        print(f"  Chunks with timestamps: {result.chunks_with_timestamps}")
        print(f"  Failed: {result.failed}")
        for error in result.errors:
            print(f"    - {error}")
    finally:
        await services.aclose()


def main() -> None:
    parser = argparse.ArgumentParser(description="Rebuild a channel's transcript chunks")
    parser.add_argument("channel_id", help="YouTube channel ID (UC...)")
    parser.add_argument("--yes", action="store_true", help="Skip the confirmation prompt")
    args = parser.parse_args()
    asyncio.run(clear_and_reprocess(args.channel_id, assume_yes=args.yes))


if __name__ == "__main__":
    main()
