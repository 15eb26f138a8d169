"""Wiring of the ingestion stages into one object graph.

The CLI, the maintenance scripts and the API all build their stages here so
every entry point shares the same storage, HTTP client and lock settings.
"""

from dataclasses import dataclass

import httpx

from .channel_resolver import YouTubeDataService
from .chunking_service import ChunkingService
from .config import IngestionConfig
from .embedding_service import EmbeddingService
from .extractor import TranscriptExtractor
from .jobs import PipelineJobRunner
from .locks import OperationLock
from .pipeline import ChannelIngestionService, EmbeddingPipeline
from .storage_service import StorageService
from .transcript_service import TranscriptAPIService


@dataclass
class IngestionServices:
    config: IngestionConfig
    http_client: httpx.AsyncClient
    storage: StorageService
    embedder: EmbeddingService
    ingestion: ChannelIngestionService
    extractor: TranscriptExtractor
    embedding_pipeline: EmbeddingPipeline
    jobs: PipelineJobRunner

    async def aclose(self) -> None:
        await self.http_client.aclose()


def build_ingestion_services(
    config: IngestionConfig,
    http_client: httpx.AsyncClient | None = None,
    storage: StorageService | None = None,
) -> IngestionServices:
    """Create every ingestion stage from one configuration.

    Args:
        config: Ingestion configuration.
        http_client: Shared HTTP client for YouTube and the captions provider.
        storage: Pre-built storage service; created from config when omitted.
    """
    http_client = http_client or httpx.AsyncClient(timeout=config.http_timeout_seconds)
    storage = storage or StorageService(config)
    embedder = EmbeddingService(config)

    extractor = TranscriptExtractor(
        config, storage, TranscriptAPIService(config, http_client)
    )
    embedding_pipeline = EmbeddingPipeline(config, storage, ChunkingService(config), embedder)
    ingestion = ChannelIngestionService(
        config,
        storage,
        YouTubeDataService(config, http_client),
        OperationLock(storage, ttl_seconds=config.lock_ttl_seconds),
    )

    return IngestionServices(
        config=config,
        http_client=http_client,
        storage=storage,
        embedder=embedder,
        ingestion=ingestion,
        extractor=extractor,
        embedding_pipeline=embedding_pipeline,
        jobs=PipelineJobRunner(storage, extractor, embedding_pipeline),
    )
