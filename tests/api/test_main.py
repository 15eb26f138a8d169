"""Unit tests for FastAPI application endpoints.

Services are replaced through ``dependency_overrides``; the lifespan does
not run because the TestClient is not used as a context manager.
"""

import asyncio
import json
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock, Mock

import httpx
import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials
from fastapi.testclient import TestClient

from creator_chat.api.abuse_protection import RateLimiter, RequestDeduplicator
from creator_chat.api.config import ApiConfig, RateLimitRule
from creator_chat.api.main import (
    AppServices,
    app,
    get_services,
    optional_user,
    verify_token,
)
from creator_chat.chat.config import Confidence, RagConfig
from creator_chat.chat.schemas import ChatResponse, Citation, Evidence
from creator_chat.errors import NotFoundError, OperationInProgressError, QuotaExceededError
from creator_chat.ingestion.config import IngestionConfig
from creator_chat.ingestion.schemas import (
    ChannelStatus,
    EmbeddingRunResult,
    ExtractionResult,
    ExtractionStats,
    IngestionResult,
)

CHANNEL_ID = "UC" + "c" * 22


def answered_response() -> ChatResponse:
    return ChatResponse(
        answer="I talked about closures around 0:10.",
        citations=[
            Citation(
                index=1,
                chunk_id="c1",
                video_id="v1",
                video_title="Closures Explained",
                start_time=10,
                end_time=40,
                timestamp="0:10",
                has_timestamp=True,
                similarity=0.5,
            )
        ],
        show_citations=True,
        confidence=Confidence.HIGH,
        evidence=Evidence(chunks_used=1, videos_referenced=1),
    )


def refusal_response() -> ChatResponse:
    return ChatResponse(
        answer="I haven't covered that topic in my indexed videos.",
        confidence=Confidence.NOT_COVERED,
        is_refusal=True,
    )


def make_services(rate_limit: int = 100) -> AppServices:
    pipeline = MagicMock()
    pipeline.storage.get_usage = AsyncMock(
        return_value={
            "plan_type": "free",
            "creators_added": 1,
            "videos_indexed": 5,
            "messages_sent_today": 0,
        }
    )
    pipeline.storage.consume_public_message = AsyncMock(return_value=(True, 1))
    pipeline.storage.increment_message_count = AsyncMock()
    pipeline.storage.save_chat_message = AsyncMock()
    pipeline.ingestion.ingest = AsyncMock()
    pipeline.extractor.extract_channel = AsyncMock()
    pipeline.extractor.retry_video = AsyncMock()
    pipeline.embedding_pipeline.run = AsyncMock()
    pipeline.jobs.run_chain = AsyncMock(return_value=[])
    pipeline.jobs.process_pending_jobs = AsyncMock(return_value=[])

    chat = MagicMock()
    chat.answer = AsyncMock(return_value=answered_response())

    http_client = MagicMock()
    http_client.is_closed = False

    rule = RateLimitRule(max_requests=rate_limit, window_seconds=3600)
    return AppServices(
        ingestion_config=IngestionConfig(
            supabase_url="https://test.supabase.co",
            supabase_key="service-key",
            ingest_timeout_seconds=5,
        ),
        rag_config=RagConfig(public_max_daily_messages=5),
        api_config=ApiConfig(),
        http_client=http_client,
        pipeline=pipeline,
        chat=chat,
        chat_limiter=RateLimiter(rule),
        public_chat_limiter=RateLimiter(rule),
        ingestion_limiter=RateLimiter(rule),
        deduplicator=RequestDeduplicator(600),
    )


@pytest.fixture
def services() -> AppServices:
    return make_services()


@pytest.fixture
def client(services: AppServices):
    app.dependency_overrides[get_services] = lambda: services
    app.dependency_overrides[verify_token] = lambda: {"id": "user-1"}
    app.dependency_overrides[optional_user] = lambda: {"id": "user-1"}
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.mark.unit
class TestHealthEndpoint:
    """Test /health endpoint."""

    def test_health_check_returns_healthy_status(self) -> None:
        client = TestClient(app)
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert "services" in data

    def test_health_check_includes_timestamp(self) -> None:
        client = TestClient(app)
        data = client.get("/health").json()

        timestamp = datetime.fromisoformat(data["timestamp"].replace("Z", "+00:00"))
        assert isinstance(timestamp, datetime)


@pytest.mark.unit
class TestVerifyToken:
    """Test authentication token verification."""

    @pytest.mark.asyncio
    async def test_verify_token_success(self, services: AppServices) -> None:
        mock_response = Mock()
        mock_response.status_code = 200
        mock_response.json = Mock(return_value={"id": "user123", "email": "test@example.com"})
        services.http_client.get = AsyncMock(return_value=mock_response)
        credentials = HTTPAuthorizationCredentials(scheme="Bearer", credentials="valid-token")

        result = await verify_token(credentials, services)

        assert result["id"] == "user123"
        url = services.http_client.get.call_args.args[0]
        headers = services.http_client.get.call_args.kwargs["headers"]
        assert url == "https://test.supabase.co/auth/v1/user"
        assert headers == {"Authorization": "Bearer valid-token", "apikey": "service-key"}

    @pytest.mark.asyncio
    async def test_verify_token_invalid_token(self, services: AppServices) -> None:
        mock_response = Mock()
        mock_response.status_code = 401
        mock_response.text = "Invalid token"
        services.http_client.get = AsyncMock(return_value=mock_response)
        credentials = HTTPAuthorizationCredentials(scheme="Bearer", credentials="invalid-token")

        with pytest.raises(HTTPException) as exc_info:
            await verify_token(credentials, services)

        assert exc_info.value.status_code == 401
        assert "Invalid authentication token" in str(exc_info.value.detail)

    @pytest.mark.asyncio
    async def test_verify_token_missing_credentials(self, services: AppServices) -> None:
        with pytest.raises(HTTPException) as exc_info:
            await verify_token(None, services)

        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_verify_token_exception_handling(self, services: AppServices) -> None:
        services.http_client.get = AsyncMock(side_effect=Exception("Network error"))
        credentials = HTTPAuthorizationCredentials(scheme="Bearer", credentials="test-token")

        with pytest.raises(HTTPException) as exc_info:
            await verify_token(credentials, services)

        assert exc_info.value.status_code == 401
        assert "Authentication error" in str(exc_info.value.detail)

    @pytest.mark.asyncio
    async def test_optional_user_without_token(self, services: AppServices) -> None:
        assert await optional_user(None, services) is None

    def test_ingest_requires_token(self, services: AppServices) -> None:
        app.dependency_overrides[get_services] = lambda: services
        try:
            response = TestClient(app).post(
                "/functions/v1/ingest-youtube-channel", json={"channelUrl": "@someone"}
            )
        finally:
            app.dependency_overrides.clear()

        assert response.status_code == 401


@pytest.mark.unit
class TestIngestEndpoint:
    """Test /functions/v1/ingest-youtube-channel."""

    URL = "/functions/v1/ingest-youtube-channel"

    def test_successful_ingestion(self, client: TestClient, services: AppServices) -> None:
        services.pipeline.ingestion.ingest.return_value = IngestionResult(
            channel={"channel_id": CHANNEL_ID, "channel_name": "Some Creator"},
            new_videos_count=3,
            message="Found 3 new videos. Processing transcripts...",
            job_id="job-extract",
        )

        response = client.post(
            self.URL,
            json={"channelUrl": "https://www.youtube.com/@somecreator", "contentTypes": {"shorts": True}},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["new_videos_count"] == 3
        assert data["job_id"] == "job-extract"
        kwargs = services.pipeline.ingestion.ingest.call_args.kwargs
        assert kwargs["user_id"] == "user-1"
        assert kwargs["content_types"].shorts is True

    def test_user_id_mismatch_is_forbidden(
        self, client: TestClient, services: AppServices
    ) -> None:
        response = client.post(self.URL, json={"channelUrl": "@someone", "userId": "user-2"})

        assert response.status_code == 403
        services.pipeline.ingestion.ingest.assert_not_awaited()

    def test_quota_exceeded(self, client: TestClient, services: AppServices) -> None:
        services.pipeline.ingestion.ingest.side_effect = QuotaExceededError(
            "You've reached your limit of 2 creators.",
            limit_type="creators",
            current=2,
            limit=2,
            plan_type="free",
        )

        response = client.post(self.URL, json={"channelUrl": "@someone"})

        assert response.status_code == 403
        data = response.json()
        assert data["limit_exceeded"] is True
        assert data["limit_type"] == "creators"
        assert data["planType"] == "free"

    def test_lock_contention_is_conflict(
        self, client: TestClient, services: AppServices
    ) -> None:
        services.pipeline.ingestion.ingest.side_effect = OperationInProgressError("ingest:uc1")

        response = client.post(self.URL, json={"channelUrl": "@someone"})

        assert response.status_code == 409
        assert response.json()["code"] == "OPERATION_IN_PROGRESS"
        assert response.json()["retryable"] is True

    def test_unexpected_error_is_internal(
        self, client: TestClient, services: AppServices
    ) -> None:
        services.pipeline.ingestion.ingest.side_effect = RuntimeError("boom")

        response = client.post(self.URL, json={"channelUrl": "@someone"})

        assert response.status_code == 500
        assert response.json() == {"error": "Internal server error", "code": "INTERNAL_ERROR"}

    def test_slow_ingestion_times_out(self, client: TestClient, services: AppServices) -> None:
        services.ingestion_config.ingest_timeout_seconds = 0.01

        async def slow_ingest(*args, **kwargs):
            await asyncio.sleep(0.5)

        services.pipeline.ingestion.ingest.side_effect = slow_ingest

        response = client.post(self.URL, json={"channelUrl": "@someone"})

        assert response.status_code == 504
        assert response.json()["code"] == "TIMEOUT"

    def test_rate_limited(self) -> None:
        services = make_services(rate_limit=1)
        services.pipeline.ingestion.ingest.return_value = IngestionResult(
            channel={}, up_to_date=True
        )
        app.dependency_overrides[get_services] = lambda: services
        app.dependency_overrides[verify_token] = lambda: {"id": "user-1"}
        try:
            client = TestClient(app)
            first = client.post(self.URL, json={"channelUrl": "@someone"})
            second = client.post(self.URL, json={"channelUrl": "@someone"})
        finally:
            app.dependency_overrides.clear()

        assert first.status_code == 200
        assert second.status_code == 429
        assert "Retry-After" in second.headers
        assert second.json()["code"] == "RATE_LIMITED"


@pytest.mark.unit
class TestPipelineEndpoints:
    """Test the stage endpoints."""

    def test_extract_transcripts(self, client: TestClient, services: AppServices) -> None:
        services.pipeline.extractor.extract_channel.return_value = ExtractionResult(
            success=True,
            status=ChannelStatus.PROCESSING,
            stats=ExtractionStats(total=3, completed=2, no_captions=1),
            ready_for_embedding=True,
            job_id="job-embed",
        )

        response = client.post("/functions/v1/extract-transcripts", json={"channelId": CHANNEL_ID})

        assert response.status_code == 200
        data = response.json()
        assert data["readyForLayer2"] is True
        assert data["stats"] == {"total": 3, "completed": 2, "no_captions": 1, "failed": 0}
        services.pipeline.extractor.extract_channel.assert_awaited_once_with(CHANNEL_ID)
        services.pipeline.jobs.run_chain.assert_awaited_once_with("job-embed")

    def test_extract_unknown_channel(self, client: TestClient, services: AppServices) -> None:
        services.pipeline.extractor.extract_channel.side_effect = NotFoundError("No videos found")

        response = client.post("/functions/v1/extract-transcripts", json={"channelId": CHANNEL_ID})

        assert response.status_code == 404
        assert response.json()["code"] == "RESOURCE_NOT_FOUND"

    def test_run_pipeline(self, client: TestClient, services: AppServices) -> None:
        services.pipeline.embedding_pipeline.run.return_value = EmbeddingRunResult(
            processed=2, chunks_created=7, chunks_with_timestamps=7
        )

        response = client.post(
            "/functions/v1/run-pipeline", json={"channel_id": CHANNEL_ID, "process_all": True}
        )

        assert response.status_code == 200
        results = response.json()["results"]
        assert results["chunksCreated"] == 7
        assert results["chunksWithTimestamps"] == 7
        services.pipeline.embedding_pipeline.run.assert_awaited_once_with(
            channel_id=CHANNEL_ID, transcript_ids=None, process_all=True
        )

    def test_retry_video(self, client: TestClient, services: AppServices) -> None:
        services.pipeline.extractor.retry_video.return_value = {
            "success": True, "videoId": "v1", "status": "completed", "jobId": None,
        }

        response = client.post("/functions/v1/retry-video-processing", json={"videoId": "v1"})

        assert response.status_code == 200
        assert response.json()["success"] is True
        services.pipeline.jobs.run_chain.assert_not_awaited()

    def test_process_pending_jobs(self, client: TestClient, services: AppServices) -> None:
        response = client.post("/functions/v1/process-pending-jobs", json={"retry_failed": True})

        assert response.status_code == 200
        assert response.json() == {"success": True, "jobs": []}
        services.pipeline.jobs.process_pending_jobs.assert_awaited_once_with(
            limit=10, retry_failed=True
        )

    def test_preflight(self, client: TestClient) -> None:
        response = client.options("/functions/v1/rag-chat")
        assert response.status_code == 200


@pytest.mark.unit
class TestRagChatEndpoint:
    """Test /functions/v1/rag-chat."""

    URL = "/functions/v1/rag-chat"

    def test_empty_query(self, client: TestClient) -> None:
        response = client.post(self.URL, json={"query": "   ", "channel_id": CHANNEL_ID})

        assert response.status_code == 400
        assert response.json() == {"error": "Query is required"}

    def test_public_mode_requires_client_identifier(self, client: TestClient) -> None:
        response = client.post(
            self.URL, json={"query": "hi", "channel_id": CHANNEL_ID, "public_mode": True}
        )

        assert response.status_code == 400
        assert response.json()["error"] == "Client identifier required for public mode"

    def test_public_mode_requires_channel(self, client: TestClient) -> None:
        response = client.post(
            self.URL, json={"query": "hi", "public_mode": True, "client_identifier": "fp-1"}
        )

        assert response.status_code == 400
        assert response.json()["error"] == "Channel ID required for public mode"

    def test_public_daily_limit(self, client: TestClient, services: AppServices) -> None:
        services.pipeline.storage.consume_public_message.return_value = (False, 5)

        response = client.post(
            self.URL,
            json={"query": "hi", "channel_id": CHANNEL_ID, "public_mode": True,
                  "client_identifier": "fp-1"},
        )

        assert response.status_code == 403
        data = response.json()
        assert data["limit_type"] == "public_messages"
        assert data["limit"] == 5
        assert "5 free questions" in data["message"]
        services.chat.answer.assert_not_awaited()

    def test_public_answer_is_not_counted_against_user(
        self, client: TestClient, services: AppServices
    ) -> None:
        response = client.post(
            self.URL,
            json={"query": "Where did you mention closures?", "channel_id": CHANNEL_ID,
                  "public_mode": True, "client_identifier": "fp-1"},
        )

        assert response.status_code == 200
        assert services.chat.answer.call_args.kwargs["public_mode"] is True
        services.pipeline.storage.increment_message_count.assert_not_awaited()

    def test_authentication_required_outside_public_mode(
        self, client: TestClient, services: AppServices
    ) -> None:
        app.dependency_overrides[optional_user] = lambda: None

        response = client.post(self.URL, json={"query": "hi", "channel_id": CHANNEL_ID})

        assert response.status_code == 401

    def test_user_daily_limit(self, client: TestClient, services: AppServices) -> None:
        services.pipeline.storage.get_usage.return_value = {
            "plan_type": "free", "creators_added": 1, "videos_indexed": 5,
            "messages_sent_today": 18,
        }

        response = client.post(self.URL, json={"query": "hi", "channel_id": CHANNEL_ID})

        assert response.status_code == 403
        data = response.json()
        assert data["error"] == "Daily message limit reached"
        assert data["limit_type"] == "messages"
        assert data["planType"] == "free"
        assert data["message"] == (
            "You've reached your daily limit of 18 messages. "
            "Try again tomorrow or upgrade for more."
        )

    def test_answer_is_counted_and_persisted(
        self, client: TestClient, services: AppServices
    ) -> None:
        response = client.post(
            self.URL,
            json={"query": "Where did you mention closures?", "channel_id": CHANNEL_ID,
                  "session_id": "session-1",
                  "conversation_history": [{"role": "user", "content": "hello"}]},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["answer"] == "I talked about closures around 0:10."
        assert data["citations"][0]["hasTimestamp"] is True
        assert data["evidence"] == {"chunksUsed": 1, "videosReferenced": 1}
        services.pipeline.storage.increment_message_count.assert_awaited_once_with("user-1")
        calls = services.pipeline.storage.save_chat_message.call_args_list
        assert [c.args[1] for c in calls] == ["user", "assistant"]
        assert calls[1].args[3][0]["videoId"] == "v1"
        history = services.chat.answer.call_args.args[2]
        assert history == [{"role": "user", "content": "hello"}]

    def test_refusal_is_not_counted(self, client: TestClient, services: AppServices) -> None:
        services.chat.answer.return_value = refusal_response()

        response = client.post(self.URL, json={"query": "pizza?", "channel_id": CHANNEL_ID})

        assert response.status_code == 200
        assert response.json()["isRefusal"] is True
        assert response.json()["citations"] == []
        services.pipeline.storage.increment_message_count.assert_not_awaited()

    def test_failure_returns_assistant_message(
        self, client: TestClient, services: AppServices
    ) -> None:
        services.chat.answer.side_effect = RuntimeError("model down")

        response = client.post(self.URL, json={"query": "hi", "channel_id": CHANNEL_ID})

        assert response.status_code == 200
        data = response.json()
        assert data["error"]
        assert data["answer"]
        assert data["isRefusal"] is False
        services.pipeline.storage.increment_message_count.assert_not_awaited()

    def test_duplicate_request_is_replayed(
        self, client: TestClient, services: AppServices
    ) -> None:
        body = {"query": "Where did you mention closures?", "channel_id": CHANNEL_ID}
        headers = {"Idempotency-Key": "retry-123"}

        first = client.post(self.URL, json=body, headers=headers)
        second = client.post(self.URL, json=body, headers=headers)

        assert first.json() == second.json()
        services.chat.answer.assert_awaited_once()
        services.pipeline.storage.increment_message_count.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_concurrent_duplicate_waits_for_first_answer(
        self, client: TestClient, services: AppServices
    ) -> None:
        async def slow_answer(*args, **kwargs):
            await asyncio.sleep(0.2)
            return answered_response()

        services.chat.answer.side_effect = slow_answer
        body = {"query": "Where did you mention closures?", "channel_id": CHANNEL_ID,
                "session_id": "session-1"}
        headers = {"Idempotency-Key": "retry-123"}

        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
            first, second = await asyncio.gather(
                http.post(self.URL, json=body, headers=headers),
                http.post(self.URL, json=body, headers=headers),
            )

        assert first.status_code == second.status_code == 200
        assert first.json() == second.json()
        services.chat.answer.assert_awaited_once()
        services.pipeline.storage.increment_message_count.assert_awaited_once()
        assert services.pipeline.storage.save_chat_message.await_count == 2

    @pytest.mark.asyncio
    async def test_concurrent_duplicate_of_failed_request_is_conflict(
        self, client: TestClient, services: AppServices
    ) -> None:
        async def failing_answer(*args, **kwargs):
            await asyncio.sleep(0.2)
            raise RuntimeError("model down")

        services.chat.answer.side_effect = failing_answer
        body = {"query": "hi", "channel_id": CHANNEL_ID}
        headers = {"Idempotency-Key": "retry-456"}

        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
            first, second = await asyncio.gather(
                http.post(self.URL, json=body, headers=headers),
                http.post(self.URL, json=body, headers=headers),
            )

        owner, duplicate = sorted((first, second), key=lambda r: r.status_code)
        assert owner.status_code == 200
        assert owner.json()["error"]
        assert duplicate.status_code == 409
        assert duplicate.json()["code"] == "DUPLICATE_REQUEST"
        services.chat.answer.assert_awaited_once()

    def test_streaming_response(self, client: TestClient, services: AppServices) -> None:
        async def stream(*args, **kwargs):
            partial = answered_response()
            partial.answer = "I talked"
            yield partial, False
            yield answered_response(), True

        services.chat.stream = MagicMock(side_effect=stream)

        response = client.post(
            self.URL,
            json={"query": "Where did you mention closures?", "channel_id": CHANNEL_ID,
                  "stream": True},
        )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/x-ndjson")
        lines = [json.loads(line) for line in response.text.splitlines() if line]
        assert [line["done"] for line in lines] == [False, True]
        assert lines[0]["answer"] == "I talked"
        assert lines[-1]["answer"] == "I talked about closures around 0:10."
        services.pipeline.storage.increment_message_count.assert_awaited_once_with("user-1")

    def test_streaming_failure_ends_with_error_line(
        self, client: TestClient, services: AppServices
    ) -> None:
        async def stream(*args, **kwargs):
            raise RuntimeError("model down")
            yield

        services.chat.stream = MagicMock(side_effect=stream)

        response = client.post(
            self.URL, json={"query": "hi", "channel_id": CHANNEL_ID, "stream": True}
        )

        lines = [json.loads(line) for line in response.text.splitlines() if line]
        assert len(lines) == 1
        assert lines[0]["done"] is True
        assert lines[0]["error"]
