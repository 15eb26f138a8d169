"""Chunking service for segment-aware, token-budgeted transcript chunks."""

import math
from collections.abc import Callable, Sequence

from transformers import AutoTokenizer

from creator_chat.utils.logging import get_logger

from .config import IngestionConfig
from .schemas import Chunk, TranscriptSegment

logger = get_logger(__name__)


def estimate_tokens(text: str) -> int:
    """Approximate token count as one token per four characters."""
    return math.ceil(len(text) / 4)


def has_valid_timestamps(segments: Sequence[TranscriptSegment]) -> bool:
    """True when at least one segment spans a positive duration.

    The decision is made once per transcript: either every chunk carries
    times or none does.
    """
    return any(segment.has_valid_timing for segment in segments)


class ChunkingService:
    """Service for splitting transcripts into overlapping chunks.

    Consecutive segments are accumulated until the next one would push the
    running chunk over ``target_chunk_tokens``. The closed chunk's trailing
    segments, up to roughly ``overlap_tokens``, seed the next chunk so that
    context carries across boundaries. Chunk boundaries always fall between
    segments, and each chunk keeps the first segment's start and the last
    segment's end.
    """

    def __init__(
        self,
        config: IngestionConfig,
        token_counter: Callable[[str], int] | None = None,
    ):
        """Initialize chunking service.

        Args:
            config: Configuration with the token budget and overlap.
            token_counter: Optional replacement for the token estimate.
        """
        self.config = config
        self.count_tokens = token_counter or self._get_token_counter()
        logger.info(
            "chunking_service_initialized",
            target_tokens=config.target_chunk_tokens,
            overlap_tokens=config.overlap_tokens,
            token_counter=config.token_counter,
        )

    def _get_token_counter(self) -> Callable[[str], int]:
        if self.config.token_counter != "tokenizer":
            return estimate_tokens

        logger.info("loading_tokenizer", tokenizer=self.config.tokenizer_name)
        tokenizer = AutoTokenizer.from_pretrained(self.config.tokenizer_name)  # type: ignore

        def count(text: str) -> int:
            return len(tokenizer.encode(text, add_special_tokens=False))

        return count

    def chunk_segments(
        self, segments: Sequence[TranscriptSegment], video_id: str | None = None
    ) -> list[Chunk]:
        """Chunk a transcript's segment list.

        Args:
            segments: Ordered transcript segments.
            video_id: Used for logging only.

        Returns:
            Ordered chunks; empty for an empty segment list.
        """
        if not segments:
            return []

        if not has_valid_timestamps(segments):
            logger.warning(
                "chunking_without_timestamps",
                video_id=video_id,
                segments=len(segments),
            )
            return self.chunk_words(" ".join(segment.text for segment in segments))

        logger.info("chunking_started", video_id=video_id, segments=len(segments))

        chunks: list[Chunk] = []
        for start, end in self._group([segment.text for segment in segments]):
            window = segments[start:end]
            text = " ".join(segment.text for segment in window).strip()
            chunks.append(
                Chunk(
                    chunk_index=len(chunks),
                    text=text,
                    start_time=window[0].start,
                    end_time=window[-1].end,
                    token_count=self.count_tokens(text),
                )
            )

        logger.info("chunking_completed", video_id=video_id, chunks_created=len(chunks))
        return chunks

    def chunk_words(self, text: str) -> list[Chunk]:
        """Chunk plain text on word boundaries with no timestamps."""
        words = text.split()
        if not words:
            return []

        chunks: list[Chunk] = []
        for start, end in self._group(words):
            chunk_text = " ".join(words[start:end])
            chunks.append(
                Chunk(
                    chunk_index=len(chunks),
                    text=chunk_text,
                    token_count=self.count_tokens(chunk_text),
                )
            )
        return chunks

    def _group(self, texts: list[str]) -> list[tuple[int, int]]:
        """Greedily group texts into [start, end) index ranges.

        The overlap carried into the next range never includes the first
        element of the range just closed, so every range starts strictly
        after its predecessor.
        """
        token_counts = [self.count_tokens(text) for text in texts]
        ranges: list[tuple[int, int]] = []
        start = 0
        current_tokens = 0

        for i, tokens in enumerate(token_counts):
            if current_tokens + tokens > self.config.target_chunk_tokens and i > start:
                ranges.append((start, i))

                overlap_start = i
                overlap_tokens = 0
                while (
                    overlap_start - 1 > start
                    and overlap_tokens < self.config.overlap_tokens
                ):
                    overlap_start -= 1
                    overlap_tokens += token_counts[overlap_start]

                start = overlap_start
                current_tokens = overlap_tokens

            current_tokens += tokens

        ranges.append((start, len(texts)))
        return ranges
