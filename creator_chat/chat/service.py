"""Retrieval and answer composition for creator chat.

Flow per question: check the channel is indexed, classify the question,
expand vague follow-ups with recent context, embed with the ingestion
embedding model, search the channel's chunks at the type's minimum
threshold, grade confidence, then either refuse or generate a grounded
answer with citations.
"""

from collections.abc import AsyncIterator
from typing import Any

from creator_chat.ingestion.embedding_service import EmbeddingService
from creator_chat.ingestion.storage_service import StorageService
from creator_chat.utils.logging import get_logger

from .confidence import grade_confidence
from .config import Confidence, QuestionType, RagConfig
from .generator import AnswerGenerator
from .prompt_builder import (
    build_context_block,
    build_history_block,
    build_system_prompt,
    chunk_has_valid_timestamps,
    format_timestamp,
)
from .question_classifier import (
    classify_question,
    expand_follow_up_query,
    should_show_citations,
)
from .schemas import ChatResponse, Citation, Evidence, Retrieval

logger = get_logger(__name__)

NOT_INDEXED_ANSWER = (
    "I haven't been fully indexed yet. Please wait for the indexing process to complete."
)
NOT_COVERED_ANSWER = "I haven't covered that topic in my indexed videos."
MOMENT_NOT_FOUND_ANSWER = (
    "I couldn't find a specific moment where I discussed that in my indexed videos."
)
NO_TIMESTAMPS_ANSWER = (
    "I can't pinpoint the exact moment - timestamp data isn't available for this content."
)
DEFAULT_CREATOR_NAME = "the creator"


def build_citations(
    chunks: list[dict[str, Any]],
    video_details: dict[str, dict[str, Any]],
    max_citations: int,
    text_chars: int = 200,
    include_text: bool = False,
) -> list[Citation]:
    """Build at most ``max_citations`` citations, best similarity first.

    Chunks from the same video starting in the same second (or both
    untimed) collapse into one citation.
    """
    citations: dict[str, Citation] = {}

    for chunk in sorted(chunks, key=lambda c: c.get("similarity") or 0.0, reverse=True):
        if len(citations) >= max_citations:
            break

        timed = chunk_has_valid_timestamps(chunk)
        key = f"{chunk['video_id']}-{int(chunk['start_time']) if timed else 'no-ts'}"
        if key in citations:
            continue

        video = video_details.get(chunk["video_id"]) or {}
        text = None
        if include_text:
            text = chunk["text"][:text_chars] + ("..." if len(chunk["text"]) > text_chars else "")

        citations[key] = Citation(
            index=len(citations) + 1,
            chunk_id=chunk.get("id"),
            video_id=chunk["video_id"],
            video_title=video.get("title") or "Unknown Video",
            thumbnail_url=video.get("thumbnail_url"),
            start_time=chunk["start_time"] if timed else None,
            end_time=chunk["end_time"] if timed else None,
            timestamp=format_timestamp(chunk["start_time"]) if timed else None,
            has_timestamp=timed,
            similarity=chunk.get("similarity") or 0.0,
            text=text,
        )

    return list(citations.values())


class RagChatService:
    """Answers viewer questions from a channel's indexed transcripts.

    A refusal always carries zero citations and zero evidence; the model is
    never called for it.
    """

    def __init__(
        self,
        config: RagConfig,
        storage: StorageService,
        embedder: EmbeddingService,
        generator: AnswerGenerator,
    ):
        self.config = config
        self.storage = storage
        self.embedder = embedder
        self.generator = generator

    async def retrieve(
        self,
        query: str,
        channel_id: str | None,
        history: list[dict[str, Any]] | None = None,
        public_mode: bool = False,
    ) -> Retrieval:
        """Classify, embed and search; returns graded chunks for ``query``."""
        history = history or []
        question_type = classify_question(query, has_history=bool(history))
        params = self.config.retrieval_params(question_type, public_mode=public_mode)
        search_query = expand_follow_up_query(query, history, question_type)

        embedding = await self.embedder.embed_text(search_query)
        results = await self.storage.search_chunks(
            embedding,
            channel_id,
            match_count=params.match_count,
            match_threshold=params.min_threshold,
        )
        chunks = sorted(
            (r for r in results if (r.get("similarity") or 0.0) >= params.min_threshold),
            key=lambda r: r.get("similarity") or 0.0,
            reverse=True,
        )[: params.match_count]

        retrieval = Retrieval(
            question_type=question_type,
            params=params,
            search_query=search_query,
            chunks=chunks,
            confidence=grade_confidence(
                [c.get("similarity") or 0.0 for c in chunks], params, self.config
            ),
            has_timestamps=any(chunk_has_valid_timestamps(c) for c in chunks),
        )
        logger.info(
            "retrieval_completed",
            channel_id=channel_id,
            question_type=question_type.value,
            chunks=len(chunks),
            max_similarity=round(retrieval.max_similarity, 3),
            confidence=retrieval.confidence.value,
            expanded=search_query != query,
        )
        return retrieval

    async def is_indexed(self, channel_id: str | None) -> bool:
        status = await self.storage.get_index_status(channel_id)
        return status["total_chunks"] > 0 and status["embedded_chunks"] > 0

    def refusal_for(self, retrieval: Retrieval) -> str | None:
        """The refusal message for this retrieval, or None if it can be answered."""
        if retrieval.confidence is Confidence.NOT_COVERED:
            if retrieval.question_type is QuestionType.MOMENT:
                return MOMENT_NOT_FOUND_ANSWER
            return NOT_COVERED_ANSWER
        # A moment is only worth pointing to when the match is strong
        if (
            retrieval.question_type is QuestionType.MOMENT
            and retrieval.confidence is not Confidence.HIGH
        ):
            return MOMENT_NOT_FOUND_ANSWER
        if retrieval.params.requires_timestamp and not retrieval.has_timestamps:
            return NO_TIMESTAMPS_ANSWER
        return None

    def _refusal(self, answer: str, debug: dict[str, Any] | None = None) -> ChatResponse:
        return ChatResponse(
            answer=answer,
            citations=[],
            show_citations=False,
            confidence=Confidence.NOT_COVERED,
            evidence=Evidence(chunks_used=0, videos_referenced=0),
            is_refusal=True,
            debug=debug if self.config.show_debug else None,
        )

    async def _prepare(
        self,
        query: str,
        channel_id: str | None,
        history: list[dict[str, Any]],
        creator_name: str | None,
        public_mode: bool,
    ) -> tuple[ChatResponse, str | None]:
        """Run everything up to generation.

        Returns:
            The response skeleton and the system prompt; the prompt is None
            when the skeleton is already final (refusal or not indexed).
        """
        if not await self.is_indexed(channel_id):
            logger.info("channel_not_indexed", channel_id=channel_id)
            return self._refusal(NOT_INDEXED_ANSWER, {"reason": "not_indexed"}), None

        retrieval = await self.retrieve(query, channel_id, history, public_mode)
        debug = {
            "questionType": retrieval.question_type.value,
            "maxSimilarity": retrieval.max_similarity,
            "confidenceLevel": retrieval.confidence.value,
            "chunksFound": len(retrieval.chunks),
            "threshold": retrieval.params.min_threshold,
            "expandedQuery": retrieval.search_query if retrieval.search_query != query else None,
        }

        refusal = self.refusal_for(retrieval)
        if refusal:
            logger.info(
                "answer_refused",
                channel_id=channel_id,
                question_type=retrieval.question_type.value,
                reason=refusal,
            )
            return self._refusal(refusal, {**debug, "reason": "no_relevant_context"}), None

        video_ids = list(dict.fromkeys(c["video_id"] for c in retrieval.chunks))
        video_details = await self.storage.get_video_details(video_ids)
        creator_name = creator_name or await self._creator_name(channel_id)

        system_prompt = "\n\n".join(
            block
            for block in (
                build_system_prompt(
                    creator_name,
                    retrieval.question_type,
                    retrieval.has_timestamps,
                    retrieval.confidence,
                ),
                build_context_block(retrieval.chunks, video_details),
                build_history_block(history, self.config.max_history_messages),
            )
            if block
        )

        show_citations = should_show_citations(retrieval.question_type, query)
        citations = []
        if show_citations:
            citations = build_citations(
                retrieval.chunks,
                video_details,
                self.config.max_citations,
                self.config.citation_text_chars,
                include_text=self.config.show_debug,
            )

        skeleton = ChatResponse(
            answer="",
            citations=citations,
            show_citations=show_citations,
            confidence=retrieval.confidence,
            evidence=Evidence(
                chunks_used=len(retrieval.chunks), videos_referenced=len(video_ids)
            ),
            is_refusal=False,
            debug=debug if self.config.show_debug else None,
        )
        return skeleton, system_prompt

    async def _creator_name(self, channel_id: str | None) -> str:
        if not channel_id:
            return DEFAULT_CREATOR_NAME
        channel = await self.storage.get_channel(channel_id)
        return (channel or {}).get("channel_name") or DEFAULT_CREATOR_NAME

    async def answer(
        self,
        query: str,
        channel_id: str | None,
        history: list[dict[str, Any]] | None = None,
        creator_name: str | None = None,
        public_mode: bool = False,
    ) -> ChatResponse:
        """Answer a question in one response.

        Args:
            query: The viewer's question.
            channel_id: Channel whose chunks to search; None searches all.
            history: Prior ``{role, content}`` turns, oldest first.
            creator_name: Persona name; looked up from the channel when omitted.
            public_mode: Apply anonymous-caller retrieval limits.
        """
        response, system_prompt = await self._prepare(
            query, channel_id, history or [], creator_name, public_mode
        )
        if system_prompt is None:
            return response

        response.answer = await self.generator.generate(system_prompt, query)
        logger.info(
            "answer_generated",
            channel_id=channel_id,
            confidence=response.confidence.value,
            citations=len(response.citations),
        )
        return response

    async def stream(
        self,
        query: str,
        channel_id: str | None,
        history: list[dict[str, Any]] | None = None,
        creator_name: str | None = None,
        public_mode: bool = False,
    ) -> AsyncIterator[tuple[ChatResponse, bool]]:
        """Stream an answer as ``(response, done)`` pairs.

        Every partial response carries the cumulative answer so far; the
        last pair has ``done`` set. Refusals yield a single final pair.
        """
        response, system_prompt = await self._prepare(
            query, channel_id, history or [], creator_name, public_mode
        )
        if system_prompt is None:
            yield response, True
            return

        async for delta in self.generator.stream(system_prompt, query):
            response.answer += delta
            yield response, False

        logger.info(
            "answer_streamed",
            channel_id=channel_id,
            confidence=response.confidence.value,
            answer_chars=len(response.answer),
        )
        yield response, True
