"""Configuration for the channel ingestion pipeline."""

import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field

# Load environment variables from .env file
load_dotenv()


class PlanLimits(BaseModel):
    """Per-plan usage ceilings consulted before ingesting or chatting."""

    max_creators: int
    max_videos_per_creator: int
    max_daily_messages: int


DEFAULT_PLAN = "free"

DEFAULT_PLAN_LIMITS: dict[str, PlanLimits] = {
    "free": PlanLimits(max_creators=2, max_videos_per_creator=10, max_daily_messages=18),
    "pro": PlanLimits(max_creators=25, max_videos_per_creator=100, max_daily_messages=500),
}


class IngestionConfig(BaseModel):
    """Configuration for resolving channels, extracting transcripts and embedding.

    Every field can be overridden through the environment or passed
    explicitly; stages receive this object instead of reading globals.
    """

    # Database settings
    supabase_url: str = Field(default_factory=lambda: os.getenv("SUPABASE_URL", ""))
    supabase_key: str = Field(
        default_factory=lambda: os.getenv("SUPABASE_SERVICE_KEY", "")
    )

    # YouTube Data API v3
    youtube_api_key: str = Field(
        default_factory=lambda: os.getenv("YOUTUBE_API_KEY", "")
    )
    youtube_api_base_url: str = Field(
        default_factory=lambda: os.getenv(
            "YOUTUBE_API_BASE_URL", "https://www.googleapis.com/youtube/v3"
        )
    )

    # Captions provider
    transcript_api_key: str = Field(
        default_factory=lambda: os.getenv("TRANSCRIPT_API_KEY", "")
    )
    transcript_api_base_url: str = Field(
        default_factory=lambda: os.getenv(
            "TRANSCRIPT_API_BASE_URL", "https://transcriptapi.com/api/v2"
        )
    )
    transcript_request_delay_seconds: float = Field(
        default_factory=lambda: float(
            os.getenv("TRANSCRIPT_REQUEST_DELAY_SECONDS", "0.2")
        )
    )
    http_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("HTTP_TIMEOUT_SECONDS", "30"))
    )

    # Chunking settings (approximate tokens, chars / 4)
    target_chunk_tokens: int = Field(
        default_factory=lambda: int(os.getenv("TARGET_CHUNK_TOKENS", "400"))
    )
    overlap_tokens: int = Field(
        default_factory=lambda: int(os.getenv("OVERLAP_TOKENS", "75"))
    )
    token_counter: str = Field(
        default_factory=lambda: os.getenv("TOKEN_COUNTER", "approximate")
    )
    tokenizer_name: str = Field(
        default_factory=lambda: os.getenv(
            "TOKENIZER_NAME", "sentence-transformers/all-MiniLM-L6-v2"
        )
    )

    # Embedding settings
    embedding_provider: str = Field(
        default_factory=lambda: os.getenv("EMBEDDING_PROVIDER", "openai")
    )
    embedding_base_url: str = Field(
        default_factory=lambda: os.getenv(
            "EMBEDDING_BASE_URL", "https://api.openai.com/v1"
        )
    )
    embedding_api_key: str = Field(
        default_factory=lambda: os.getenv("EMBEDDING_API_KEY", "")
    )
    embedding_model: str = Field(
        default_factory=lambda: os.getenv(
            "EMBEDDING_MODEL_CHOICE", "text-embedding-3-small"
        )
    )
    embedding_batch_size: int = Field(
        default_factory=lambda: int(os.getenv("EMBEDDING_BATCH_SIZE", "100")),
        ge=1,
        le=2048,
    )

    # Video selection
    default_video_limit: int = Field(
        default_factory=lambda: int(os.getenv("DEFAULT_VIDEO_LIMIT", "20"))
    )
    listing_scan_limit: int = Field(
        default_factory=lambda: int(os.getenv("LISTING_SCAN_LIMIT", "500"))
    )
    plan_limits: dict[str, PlanLimits] = Field(
        default_factory=lambda: dict(DEFAULT_PLAN_LIMITS)
    )

    # Concurrency
    lock_ttl_seconds: int = Field(
        default_factory=lambda: int(os.getenv("INGESTION_LOCK_TTL_SECONDS", "600"))
    )
    ingest_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("INGEST_TIMEOUT_SECONDS", "30"))
    )

    def limits_for(self, plan_type: str | None) -> PlanLimits:
        """Return the limits for a plan, falling back to the free plan."""
        return self.plan_limits.get(plan_type or DEFAULT_PLAN) or self.plan_limits[
            DEFAULT_PLAN
        ]


def get_config() -> IngestionConfig:
    """Get validated ingestion configuration.

    Returns:
        IngestionConfig built from the environment.

    Raises:
        ValidationError: If an environment variable holds an invalid value.
    """
    return IngestionConfig()
