"""FastAPI application for creator chat.

One endpoint per pipeline stage plus the chat endpoint. Stage endpoints
return JSON; chat returns JSON or an NDJSON stream. Every service is built
in the lifespan, kept on ``app.state.services`` and injected with
``Depends`` so tests can substitute it.
"""

import asyncio
import json
from collections.abc import AsyncIterator, Coroutine
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from fastapi import BackgroundTasks, Depends, FastAPI, Header, HTTPException, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from httpx import AsyncClient
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from creator_chat.chat.config import Confidence, RagConfig, get_rag_config
from creator_chat.chat.generator import AnswerGenerator
from creator_chat.chat.schemas import ChatMessage, ChatResponse
from creator_chat.chat.service import RagChatService
from creator_chat.errors import (
    CreatorChatError,
    OperationInProgressError,
    QuotaExceededError,
)
from creator_chat.ingestion.config import IngestionConfig, get_config
from creator_chat.ingestion.schemas import ContentTypes, ImportSettings
from creator_chat.ingestion.services import IngestionServices, build_ingestion_services
from creator_chat.utils.logging import get_logger

from .abuse_protection import RateLimiter, RateLimitResult, RequestDeduplicator, request_fingerprint
from .config import ApiConfig, get_api_config

logger = get_logger(__name__)

CHAT_FAILURE_ANSWER = (
    "Sorry, I ran into a problem while answering that. Please try again in a moment."
)


# ==============================================================================
# Service Container
# ==============================================================================


@dataclass
class AppServices:
    ingestion_config: IngestionConfig
    rag_config: RagConfig
    api_config: ApiConfig
    http_client: AsyncClient
    pipeline: IngestionServices
    chat: RagChatService
    chat_limiter: RateLimiter
    public_chat_limiter: RateLimiter
    ingestion_limiter: RateLimiter
    deduplicator: RequestDeduplicator
    tasks: set[asyncio.Task] = field(default_factory=set)

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        """Run ``coro`` in the background, keeping a reference until it ends."""
        task = asyncio.create_task(coro)
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)
        return task


def build_app_services() -> AppServices:
    ingestion_config = get_config()
    rag_config = get_rag_config()
    api_config = get_api_config()

    http_client = AsyncClient(timeout=ingestion_config.http_timeout_seconds)
    pipeline = build_ingestion_services(ingestion_config, http_client=http_client)
    chat = RagChatService(
        rag_config, pipeline.storage, pipeline.embedder, AnswerGenerator(rag_config)
    )

    return AppServices(
        ingestion_config=ingestion_config,
        rag_config=rag_config,
        api_config=api_config,
        http_client=http_client,
        pipeline=pipeline,
        chat=chat,
        chat_limiter=RateLimiter(api_config.chat_authenticated_limit),
        public_chat_limiter=RateLimiter(api_config.chat_public_limit),
        ingestion_limiter=RateLimiter(api_config.ingestion_limit),
        deduplicator=RequestDeduplicator(api_config.dedup_ttl_seconds),
    )


# ==============================================================================
# Lifespan Management
# ==============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build services on startup and close the shared HTTP client on shutdown."""
    logger.info("application_startup_started")

    try:
        app.state.services = build_app_services()
        logger.info("application_startup_completed")
    except Exception:
        logger.exception("application_startup_failed")
        raise

    yield

    logger.info("application_shutdown_started")
    services: AppServices = app.state.services
    for task in list(services.tasks):
        task.cancel()
    await services.http_client.aclose()
    logger.info("application_shutdown_completed")


# ==============================================================================
# FastAPI Application Setup
# ==============================================================================

app = FastAPI(
    title="Creator Chat API",
    description="YouTube channel ingestion and citation-backed chat over creator transcripts",
    version="1.0.0",
    lifespan=lifespan,
)

security = HTTPBearer(auto_error=False)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_api_config().cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_services(request: Request) -> AppServices:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Services not initialized")
    return services


def error_response(error: CreatorChatError) -> JSONResponse:
    """Map a domain error to its JSON response."""
    if isinstance(error, QuotaExceededError):
        return JSONResponse(
            status_code=error.status_code, content={**error.to_dict(), "code": error.code}
        )

    body: dict[str, Any] = {"error": str(error), "code": error.code}
    if isinstance(error, OperationInProgressError):
        body["retryable"] = True
        body["expires_at"] = error.expires_at.isoformat() if error.expires_at else None
    return JSONResponse(status_code=error.status_code, content=body)


def internal_error_response() -> JSONResponse:
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "code": "INTERNAL_ERROR"},
    )


@app.exception_handler(CreatorChatError)
async def creator_chat_error_handler(request: Request, exc: CreatorChatError) -> JSONResponse:
    logger.warning(
        "request_failed", path=request.url.path, error_type=type(exc).__name__, error=str(exc)
    )
    return error_response(exc)


# ==============================================================================
# Authentication
# ==============================================================================


async def _fetch_user(services: AppServices, token: str) -> dict[str, Any]:
    config = services.ingestion_config
    try:
        response = await services.http_client.get(
            f"{config.supabase_url}/auth/v1/user",
            headers={"Authorization": f"Bearer {token}", "apikey": config.supabase_key},
        )
    except Exception as e:
        logger.exception("auth_verification_error", error_type=type(e).__name__)
        raise HTTPException(status_code=401, detail="Authentication error") from e

    if response.status_code != 200:
        logger.warning(
            "auth_verification_failed",
            status_code=response.status_code,
            response_text=response.text[:200],
        )
        raise HTTPException(status_code=401, detail="Invalid authentication token")

    user_data = response.json()
    logger.info("auth_verification_completed", user_id=user_data.get("id"))
    return user_data


async def verify_token(
    credentials: HTTPAuthorizationCredentials | None = Security(security),
    services: AppServices = Depends(get_services),
) -> dict[str, Any]:
    """Verify the Supabase bearer token and return the user.

    Raises:
        HTTPException: 401 if the token is missing or invalid.
    """
    if credentials is None:
        raise HTTPException(status_code=401, detail="Missing authentication token")
    return await _fetch_user(services, credentials.credentials)


async def optional_user(
    credentials: HTTPAuthorizationCredentials | None = Security(security),
    services: AppServices = Depends(get_services),
) -> dict[str, Any] | None:
    """The authenticated user when a bearer token is sent, else None."""
    if credentials is None:
        return None
    return await _fetch_user(services, credentials.credentials)


def rate_limited_response(result: RateLimitResult) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content={
            "error": "Rate limit exceeded. Please try again later.",
            "code": "RATE_LIMITED",
            "retryAfter": int(result.retry_after or 0),
        },
        headers=result.to_headers(),
    )


# ==============================================================================
# Request Models
# ==============================================================================


class _CamelRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class IngestRequest(_CamelRequest):
    channel_url: str | None = None
    user_id: str | None = None
    content_types: ContentTypes | None = None
    import_settings: ImportSettings | None = None
    refresh: bool = False
    channel_id: str | None = None


class ExtractRequest(_CamelRequest):
    channel_id: str


class RunPipelineRequest(BaseModel):
    channel_id: str | None = None
    transcript_ids: list[str] | None = None
    process_all: bool = False


class RetryVideoRequest(_CamelRequest):
    video_id: str


class ProcessJobsRequest(BaseModel):
    limit: int = Field(default=10, ge=1, le=100)
    retry_failed: bool = False


class ChatRequest(BaseModel):
    query: str = ""
    channel_id: str | None = None
    creator_name: str | None = None
    conversation_history: list[ChatMessage] = Field(default_factory=list)
    user_id: str | None = None
    public_mode: bool = False
    client_identifier: str | None = None
    session_id: str | None = None
    stream: bool = False
    idempotency_key: str | None = None


# ==============================================================================
# API Endpoints
# ==============================================================================


@app.get("/health")
async def health_check():
    """Health check endpoint.

    Returns:
        Health status and timestamp.
    """
    services = getattr(app.state, "services", None)
    return {
        "status": "healthy",
        "timestamp": datetime.now(UTC).isoformat(),
        "services": {
            "storage": services is not None,
            "http_client": services is not None and not services.http_client.is_closed,
            "chat": services is not None,
            "background_tasks": len(services.tasks) if services else 0,
        },
    }


@app.options("/functions/v1/{path:path}")
async def preflight(path: str) -> Response:
    return Response(status_code=200)


@app.post("/functions/v1/ingest-youtube-channel")
async def ingest_channel_endpoint(
    request: IngestRequest,
    user: dict[str, Any] = Depends(verify_token),
    services: AppServices = Depends(get_services),
):
    """Resolve a channel and store its selected videos.

    The caller waits at most ``ingest_timeout_seconds``; on timeout a 504 is
    returned while ingestion continues in the background. New videos queue
    an extraction job that is run once ingestion finishes.
    """
    user_id = user.get("id")
    if request.user_id and request.user_id != user_id:
        logger.warning(
            "ingest_request_rejected",
            reason="user_id_mismatch",
            request_user_id=request.user_id,
            token_user_id=user_id,
        )
        return JSONResponse(
            status_code=403,
            content={"error": "User ID in request does not match authenticated user"},
        )

    limit = await services.ingestion_limiter.check(f"ingest:{user_id}")
    if not limit.allowed:
        return rate_limited_response(limit)

    async def run_ingestion():
        result = await services.pipeline.ingestion.ingest(
            request.channel_url,
            user_id=user_id,
            content_types=request.content_types,
            import_settings=request.import_settings,
            refresh=request.refresh,
            channel_id=request.channel_id,
        )
        if result.job_id:
            services.spawn(services.pipeline.jobs.run_chain(result.job_id))
        return result

    task = services.spawn(run_ingestion())
    try:
        result = await asyncio.wait_for(
            asyncio.shield(task), timeout=services.ingestion_config.ingest_timeout_seconds
        )
    except TimeoutError:
        logger.warning(
            "ingest_request_timeout",
            channel_url=request.channel_url,
            timeout_seconds=services.ingestion_config.ingest_timeout_seconds,
        )
        return JSONResponse(
            status_code=504,
            content={
                "error": "Channel ingestion is taking longer than expected. "
                "It will continue in the background.",
                "code": "TIMEOUT",
            },
        )
    except CreatorChatError as e:
        logger.warning("ingest_request_failed", error_type=type(e).__name__, error=str(e))
        return error_response(e)
    except Exception as e:
        logger.exception("ingest_request_failed", error_type=type(e).__name__)
        return internal_error_response()

    return result.model_dump(mode="json")


@app.post("/functions/v1/extract-transcripts")
async def extract_transcripts_endpoint(
    request: ExtractRequest,
    background_tasks: BackgroundTasks,
    services: AppServices = Depends(get_services),
):
    try:
        result = await services.pipeline.extractor.extract_channel(request.channel_id)
    except CreatorChatError as e:
        return error_response(e)
    except Exception as e:
        logger.exception(
            "extract_request_failed", channel_id=request.channel_id, error_type=type(e).__name__
        )
        return internal_error_response()

    if result.job_id:
        background_tasks.add_task(services.pipeline.jobs.run_chain, result.job_id)
    return result.model_dump(mode="json", by_alias=True)


@app.post("/functions/v1/run-pipeline")
async def run_pipeline_endpoint(
    request: RunPipelineRequest,
    services: AppServices = Depends(get_services),
):
    try:
        result = await services.pipeline.embedding_pipeline.run(
            channel_id=request.channel_id,
            transcript_ids=request.transcript_ids,
            process_all=request.process_all,
        )
    except CreatorChatError as e:
        return error_response(e)
    except Exception as e:
        logger.exception(
            "run_pipeline_request_failed",
            channel_id=request.channel_id,
            error_type=type(e).__name__,
        )
        return internal_error_response()

    return {"success": True, "results": result.model_dump(mode="json", by_alias=True)}


@app.post("/functions/v1/retry-video-processing")
async def retry_video_endpoint(
    request: RetryVideoRequest,
    background_tasks: BackgroundTasks,
    services: AppServices = Depends(get_services),
):
    try:
        result = await services.pipeline.extractor.retry_video(request.video_id)
    except CreatorChatError as e:
        return error_response(e)
    except Exception as e:
        logger.exception(
            "retry_video_request_failed", video_id=request.video_id, error_type=type(e).__name__
        )
        return internal_error_response()

    if result.get("jobId"):
        background_tasks.add_task(services.pipeline.jobs.run_chain, result["jobId"])
    return result


@app.post("/functions/v1/process-pending-jobs")
async def process_pending_jobs_endpoint(
    request: ProcessJobsRequest,
    services: AppServices = Depends(get_services),
):
    try:
        jobs = await services.pipeline.jobs.process_pending_jobs(
            limit=request.limit, retry_failed=request.retry_failed
        )
    except Exception as e:
        logger.exception("process_jobs_request_failed", error_type=type(e).__name__)
        return internal_error_response()
    return {"success": True, "jobs": jobs}


# ==============================================================================
# Chat
# ==============================================================================


def chat_failure_response() -> ChatResponse:
    return ChatResponse(
        answer=CHAT_FAILURE_ANSWER,
        confidence=Confidence.LOW,
        is_refusal=False,
        error="Internal server error",
    )


async def _check_chat_quota(
    request: ChatRequest, user_id: str | None, services: AppServices
) -> JSONResponse | None:
    """Charge the caller's daily message quota; a response when over it."""
    storage = services.pipeline.storage

    if request.public_mode:
        limit = services.rag_config.public_max_daily_messages
        allowed, current = await storage.consume_public_message(
            request.client_identifier, request.channel_id, limit
        )
        if allowed:
            return None
        logger.info(
            "public_limit_reached", client_identifier=request.client_identifier, current=current
        )
        return JSONResponse(
            status_code=403,
            content={
                "error": "Daily limit reached",
                "limit_exceeded": True,
                "limit_type": "public_messages",
                "current": current,
                "limit": limit,
                "message": f"You've reached your {limit} free questions for today. "
                "Sign up for unlimited access!",
            },
        )

    usage = await storage.get_usage(user_id)
    limits = services.ingestion_config.limits_for(usage["plan_type"])
    current = usage["messages_sent_today"]
    if current < limits.max_daily_messages:
        return None
    error = QuotaExceededError(
        "Daily message limit reached",
        limit_type="messages",
        current=current,
        limit=limits.max_daily_messages,
        plan_type=usage["plan_type"],
    )
    body = error.to_dict()
    body["message"] = (
        f"You've reached your daily limit of {limits.max_daily_messages} messages. "
        "Try again tomorrow or upgrade for more."
    )
    return JSONResponse(status_code=403, content=body)


async def _record_exchange(
    request: ChatRequest,
    user_id: str | None,
    response: ChatResponse,
    payload: dict[str, Any],
    services: AppServices,
) -> None:
    """Count the message and persist both turns; failures are logged only."""
    storage = services.pipeline.storage
    try:
        if user_id and not request.public_mode and not response.is_refusal and not response.error:
            await storage.increment_message_count(user_id)
        if user_id and request.session_id:
            await storage.save_chat_message(request.session_id, "user", request.query)
            await storage.save_chat_message(
                request.session_id, "assistant", response.answer, payload["citations"]
            )
    except Exception as e:
        logger.exception(
            "chat_exchange_record_failed",
            session_id=request.session_id,
            error_type=type(e).__name__,
        )


def _ndjson(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload).encode("utf-8") + b"\n"


def _replay_response(payload: dict[str, Any], stream: bool) -> Response:
    if stream:
        return StreamingResponse(
            iter([_ndjson({**payload, "done": True})]),
            media_type="application/x-ndjson",
        )
    return JSONResponse(content=payload)


@app.post("/functions/v1/rag-chat")
async def rag_chat_endpoint(
    request: ChatRequest,
    user: dict[str, Any] | None = Depends(optional_user),
    services: AppServices = Depends(get_services),
    idempotency_key: str | None = Header(default=None),
):
    """Answer a question about a channel, as JSON or an NDJSON stream.

    Streamed lines carry the response shape with the answer so far and
    ``done: false``; the last line is the complete payload with ``done: true``.
    A request repeating the idempotency key and body of a recent or running
    request gets that request's response instead of a new answer.
    """
    query = request.query.strip()
    if not query:
        return JSONResponse(status_code=400, content={"error": "Query is required"})

    user_id = user.get("id") if user else None
    if request.public_mode:
        if not request.client_identifier:
            return JSONResponse(
                status_code=400,
                content={"error": "Client identifier required for public mode"},
            )
        if not request.channel_id:
            return JSONResponse(
                status_code=400, content={"error": "Channel ID required for public mode"}
            )
        limit = await services.public_chat_limiter.check(f"public:{request.client_identifier}")
    else:
        if not user_id:
            return JSONResponse(status_code=401, content={"error": "Authentication required"})
        limit = await services.chat_limiter.check(f"user:{user_id}")

    if not limit.allowed:
        return rate_limited_response(limit)

    deduplicator = services.deduplicator
    key = idempotency_key or request.idempotency_key
    fingerprint = None
    if key:
        fingerprint = request_fingerprint(
            key, request.model_dump(exclude={"idempotency_key", "stream"})
        )
        replay = deduplicator.get(fingerprint)
        if replay is not None:
            return _replay_response(replay, request.stream)

        pending = deduplicator.claim(fingerprint)
        if pending is not None:
            replay = await asyncio.shield(pending)
            if replay is None:
                return JSONResponse(
                    status_code=409,
                    content={
                        "error": "A matching request did not complete. Please retry.",
                        "code": "DUPLICATE_REQUEST",
                        "retryable": True,
                    },
                )
            return _replay_response(replay, request.stream)

    def release_claim() -> None:
        if fingerprint:
            deduplicator.release(fingerprint)

    try:
        over_quota = await _check_chat_quota(request, user_id, services)
    except Exception as e:
        logger.exception("chat_quota_check_failed", error_type=type(e).__name__)
        over_quota = internal_error_response()
    if over_quota is not None:
        release_claim()
        return over_quota

    history = [m.model_dump() for m in request.conversation_history]
    log = logger.bind(channel_id=request.channel_id, user_id=user_id, public_mode=request.public_mode)
    log.info("chat_request_started", query_length=len(query), history=len(history))

    if not request.stream:
        try:
            try:
                response = await services.chat.answer(
                    query,
                    request.channel_id,
                    history,
                    creator_name=request.creator_name,
                    public_mode=request.public_mode,
                )
            except Exception as e:
                log.exception("chat_request_failed", error_type=type(e).__name__)
                response = chat_failure_response()

            payload = response.to_payload()
            await _record_exchange(request, user_id, response, payload, services)
            if fingerprint and not response.error:
                deduplicator.store(fingerprint, payload)
            return JSONResponse(content=payload)
        finally:
            release_claim()

    async def stream_response():
        response = None
        try:
            try:
                async for response, done in services.chat.stream(
                    query,
                    request.channel_id,
                    history,
                    creator_name=request.creator_name,
                    public_mode=request.public_mode,
                ):
                    if not done:
                        yield _ndjson({**response.to_payload(), "done": False})
            except Exception as e:
                log.exception("chat_stream_failed", error_type=type(e).__name__)
                response = chat_failure_response()

            if response is None:
                response = chat_failure_response()
            payload = response.to_payload()
            yield _ndjson({**payload, "done": True})

            await _record_exchange(request, user_id, response, payload, services)
            if fingerprint and not response.error:
                deduplicator.store(fingerprint, payload)
        finally:
            release_claim()

    return StreamingResponse(stream_response(), media_type="application/x-ndjson")
