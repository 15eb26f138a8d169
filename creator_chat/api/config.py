"""HTTP layer settings: rate limits, request deduplication and CORS."""

import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field

# Load environment variables from .env file
load_dotenv()


class RateLimitRule(BaseModel):
    max_requests: int = Field(ge=1)
    window_seconds: float = Field(gt=0)


class ApiConfig(BaseModel):
    """Abuse-protection ceilings per rolling window and other HTTP settings."""

    chat_authenticated_limit: RateLimitRule = Field(
        default_factory=lambda: RateLimitRule(
            max_requests=int(os.getenv("RATE_LIMIT_CHAT_AUTHENTICATED", "100")),
            window_seconds=3600,
        )
    )
    chat_public_limit: RateLimitRule = Field(
        default_factory=lambda: RateLimitRule(
            max_requests=int(os.getenv("RATE_LIMIT_CHAT_PUBLIC", "20")),
            window_seconds=3600,
        )
    )
    ingestion_limit: RateLimitRule = Field(
        default_factory=lambda: RateLimitRule(
            max_requests=int(os.getenv("RATE_LIMIT_INGESTION", "10")),
            window_seconds=3600,
        )
    )
    dedup_ttl_seconds: float = Field(
        default_factory=lambda: float(os.getenv("DEDUP_TTL_SECONDS", "600"))
    )
    cors_origins: list[str] = Field(
        default_factory=lambda: os.getenv("CORS_ORIGINS", "*").split(",")
    )


def get_api_config() -> ApiConfig:
    return ApiConfig()
