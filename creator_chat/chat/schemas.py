"""Response schemas for creator chat, serialized with camelCase keys."""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .config import Confidence, QuestionType, RetrievalParams


class ChatMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Citation(_CamelModel):
    """A chunk surfaced to the viewer as the source of an answer.

    ``start_time``, ``end_time`` and ``timestamp`` are None whenever the chunk
    had no valid timing, so clients never render a clickable time for it.
    """

    index: int
    chunk_id: str | None = None
    video_id: str
    video_title: str
    thumbnail_url: str | None = None
    start_time: float | None = None
    end_time: float | None = None
    timestamp: str | None = None
    has_timestamp: bool = False
    similarity: float
    text: str | None = None


class Evidence(_CamelModel):
    chunks_used: int = 0
    videos_referenced: int = 0


class ChatResponse(_CamelModel):
    answer: str
    citations: list[Citation] = Field(default_factory=list)
    show_citations: bool = False
    confidence: Confidence
    evidence: Evidence = Field(default_factory=Evidence)
    is_refusal: bool = False
    debug: dict[str, Any] | None = None
    error: str | None = None

    def to_payload(self) -> dict[str, Any]:
        """JSON body for clients; unset optional fields are left out."""
        payload = self.model_dump(mode="json", by_alias=True)
        for key in ("debug", "error"):
            if payload[key] is None:
                del payload[key]
        for citation in payload["citations"]:
            if citation["text"] is None:
                del citation["text"]
        return payload


class Retrieval(BaseModel):
    """Chunks retrieved for one query and how they were graded."""

    question_type: QuestionType
    params: RetrievalParams
    search_query: str
    chunks: list[dict[str, Any]] = Field(default_factory=list)
    confidence: Confidence
    has_timestamps: bool = False

    @property
    def max_similarity(self) -> float:
        return max((c.get("similarity") or 0.0 for c in self.chunks), default=0.0)
