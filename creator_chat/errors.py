"""Exception hierarchy for creator-chat.

Hierarchy:
    CreatorChatError (base)
    ├── InputError
    │   └── InvalidChannelReference
    ├── NotFoundError
    │   └── ChannelNotFoundError
    ├── ProviderError
    ├── OperationInProgressError
    ├── QuotaExceededError
    └── ConfigurationError

Every class carries an HTTP ``status_code`` and a stable ``code`` so the API
layer can map it to a response without inspecting messages. Per-item provider
failures inside a stage loop are recorded as item statuses instead of being
raised; these exceptions describe failures of a whole request.
"""

from __future__ import annotations

from datetime import datetime


class CreatorChatError(Exception):
    """Base class for all creator-chat errors."""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"
    retryable: bool = False


class InputError(CreatorChatError):
    """Raised for malformed requests: missing fields, empty query, bad URL."""

    status_code = 400
    code = "INVALID_INPUT"


class InvalidChannelReference(InputError):
    """Raised when a string is not a recognizable channel URL, handle or id.

    Args:
        reference: The raw reference the caller supplied.
    """

    def __init__(self, reference: str) -> None:
        super().__init__(f"Invalid YouTube channel URL or handle: {reference!r}")
        self.reference = reference


class NotFoundError(CreatorChatError):
    status_code = 404
    code = "RESOURCE_NOT_FOUND"


class ChannelNotFoundError(NotFoundError):
    """Raised when a channel reference parses but the provider has no such channel."""

    def __init__(self, reference: str) -> None:
        super().__init__(f"Channel not found: {reference}")
        self.reference = reference


class ProviderError(CreatorChatError):
    """Raised when an external provider (YouTube, TranscriptAPI, embeddings) fails.

    Args:
        message: Human-readable error message.
        provider: Provider name, e.g. ``"youtube"`` or ``"transcriptapi"``.
        retryable: Whether the failure is transient.
        status_code: Upstream HTTP status when there was one.
    """

    status_code = 502
    code = "PROVIDER_ERROR"

    def __init__(
        self,
        message: str,
        provider: str,
        retryable: bool = False,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.retryable = retryable
        self.upstream_status = status_code
        if provider == "youtube" and "quota" in message.lower():
            self.code = "QUOTA_EXCEEDED"


class OperationInProgressError(CreatorChatError):
    """Raised when another run holds the operation lock for the same channel.

    Args:
        lock_key: Name of the held lock.
        expires_at: When the current holder's lease lapses, if known.
    """

    status_code = 409
    code = "OPERATION_IN_PROGRESS"
    retryable = True

    def __init__(self, lock_key: str, expires_at: datetime | None = None) -> None:
        super().__init__(f"Operation already in progress for {lock_key}")
        self.lock_key = lock_key
        self.expires_at = expires_at


class QuotaExceededError(CreatorChatError):
    """Raised when a user is over a plan limit (creators, videos, daily messages)."""

    status_code = 403
    code = "LIMIT_EXCEEDED"

    def __init__(
        self,
        message: str,
        limit_type: str,
        current: int,
        limit: int,
        plan_type: str | None = None,
    ) -> None:
        super().__init__(message)
        self.limit_type = limit_type
        self.current = current
        self.limit = limit
        self.plan_type = plan_type

    def to_dict(self) -> dict[str, object]:
        return {
            "error": str(self),
            "limit_exceeded": True,
            "limit_type": self.limit_type,
            "current": self.current,
            "limit": self.limit,
            "planType": self.plan_type,
            "message": str(self),
        }


class ConfigurationError(CreatorChatError):
    """Raised when a required setting (API key, Supabase URL) is missing."""
