"""Retrieval, confidence and LLM configuration for creator chat.

Every threshold the confidence policy uses lives here so it can be tuned
through the environment without touching the chat service.
"""

import os
from enum import Enum

from dotenv import load_dotenv
from pydantic import BaseModel, Field
from pydantic_ai.models.openai import OpenAIChatModel
from pydantic_ai.providers.openai import OpenAIProvider

# Load environment variables from .env file
load_dotenv()


class QuestionType(str, Enum):
    GENERAL = "general"
    CONCEPTUAL = "conceptual"
    MOMENT = "moment"
    FOLLOW_UP = "followUp"
    CLARIFICATION = "clarification"


class Confidence(str, Enum):
    """Answer confidence, ordered ``not_covered < low < medium < high``."""

    NOT_COVERED = "not_covered"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return list(Confidence).index(self)


class RetrievalParams(BaseModel):
    """Similarity search settings for one question type."""

    match_count: int = Field(ge=1)
    min_threshold: float
    preferred_threshold: float
    requires_timestamp: bool = False


DEFAULT_RETRIEVAL: dict[QuestionType, RetrievalParams] = {
    QuestionType.GENERAL: RetrievalParams(
        match_count=10, min_threshold=0.25, preferred_threshold=0.35
    ),
    QuestionType.CONCEPTUAL: RetrievalParams(
        match_count=8, min_threshold=0.30, preferred_threshold=0.40
    ),
    QuestionType.MOMENT: RetrievalParams(
        match_count=5, min_threshold=0.35, preferred_threshold=0.45, requires_timestamp=True
    ),
    QuestionType.FOLLOW_UP: RetrievalParams(
        match_count=8, min_threshold=0.28, preferred_threshold=0.38
    ),
    QuestionType.CLARIFICATION: RetrievalParams(
        match_count=6, min_threshold=0.32, preferred_threshold=0.42
    ),
}

# Anonymous callers get fewer chunks and never a looser threshold
DEFAULT_PUBLIC_THRESHOLDS: dict[QuestionType, float] = {
    QuestionType.GENERAL: 0.22,
    QuestionType.FOLLOW_UP: 0.25,
    QuestionType.CONCEPTUAL: 0.35,
    QuestionType.CLARIFICATION: 0.35,
    QuestionType.MOMENT: 0.40,
}


class RagConfig(BaseModel):
    """Configuration for retrieval, confidence grading and answer generation."""

    retrieval: dict[QuestionType, RetrievalParams] = Field(
        default_factory=lambda: dict(DEFAULT_RETRIEVAL)
    )

    # Global similarity floors
    min_similarity_for_any_answer: float = Field(
        default_factory=lambda: float(os.getenv("RAG_MIN_SIMILARITY_ANY", "0.25"))
    )
    min_similarity_for_confident_answer: float = Field(
        default_factory=lambda: float(os.getenv("RAG_MIN_SIMILARITY_CONFIDENT", "0.40"))
    )

    max_history_messages: int = Field(
        default_factory=lambda: int(os.getenv("RAG_MAX_HISTORY_MESSAGES", "10"))
    )
    max_citations: int = Field(
        default_factory=lambda: int(os.getenv("RAG_MAX_CITATIONS", "4"))
    )
    citation_text_chars: int = 200
    show_debug: bool = Field(
        default_factory=lambda: os.getenv("RAG_SHOW_DEBUG", "false").lower() == "true"
    )

    # Public (anonymous) mode
    public_max_daily_messages: int = Field(
        default_factory=lambda: int(os.getenv("PUBLIC_MAX_DAILY_MESSAGES", "5"))
    )
    public_max_chunks: int = Field(
        default_factory=lambda: int(os.getenv("PUBLIC_MAX_CHUNKS", "6"))
    )
    public_thresholds: dict[QuestionType, float] = Field(
        default_factory=lambda: dict(DEFAULT_PUBLIC_THRESHOLDS)
    )

    # Answer generation
    llm_choice: str = Field(default_factory=lambda: os.getenv("LLM_CHOICE") or "gpt-4o-mini")
    llm_base_url: str = Field(
        default_factory=lambda: os.getenv("LLM_BASE_URL") or "https://api.openai.com/v1"
    )
    llm_api_key: str = Field(default_factory=lambda: os.getenv("LLM_API_KEY") or "ollama")
    temperature: float = 0.2
    max_tokens: int = 600

    def retrieval_params(
        self, question_type: QuestionType, public_mode: bool = False
    ) -> RetrievalParams:
        """Effective retrieval settings for a question type.

        Public mode caps the match count and raises (never lowers) both
        thresholds to the public minimum for the type.
        """
        base = self.retrieval.get(question_type) or self.retrieval[QuestionType.GENERAL]
        if not public_mode:
            return base

        public_threshold = self.public_thresholds.get(
            question_type, self.public_thresholds[QuestionType.GENERAL]
        )
        return base.model_copy(
            update={
                "match_count": min(base.match_count, self.public_max_chunks),
                "min_threshold": max(base.min_threshold, public_threshold),
                "preferred_threshold": max(base.preferred_threshold, public_threshold),
            }
        )


def get_rag_config() -> RagConfig:
    """Get validated chat configuration from the environment."""
    return RagConfig()


def get_model(config: RagConfig | None = None) -> OpenAIChatModel:
    """Get the configured LLM for answer generation.

    Reads ``LLM_CHOICE``, ``LLM_BASE_URL`` and ``LLM_API_KEY`` through
    ``RagConfig`` (defaults: gpt-4o-mini, OpenAI, ``ollama`` key for local use).

    Examples:
        >>> model = get_model()
        >>> # Uses gpt-4o-mini by default
    """
    config = config or get_rag_config()
    return OpenAIChatModel(
        config.llm_choice,
        provider=OpenAIProvider(base_url=config.llm_base_url, api_key=config.llm_api_key),
    )
