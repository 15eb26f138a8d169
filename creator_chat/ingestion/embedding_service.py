"""Embedding service for generating text embeddings via OpenAI-compatible APIs."""

from openai import AsyncOpenAI

from creator_chat.utils.logging import get_logger

from .config import IngestionConfig

logger = get_logger(__name__)

# Hard ceiling on inputs per embeddings request
MAX_PROVIDER_BATCH = 2048


class EmbeddingService:
    """Service for generating text embeddings.

    Supports OpenAI, Ollama and other OpenAI-compatible providers. Queries and
    chunks are embedded with the same model so that similarity search compares
    vectors from one space.
    """

    def __init__(self, config: IngestionConfig, client: AsyncOpenAI | None = None):
        """Initialize embedding service with configuration.

        Args:
            config: Configuration object with embedding provider settings.
            client: Pre-built client; one is created from config when omitted.
        """
        self.config = config
        self.client = client or self._get_client()
        logger.info(
            "embedding_service_initialized",
            provider=config.embedding_provider,
            model=config.embedding_model,
            base_url=config.embedding_base_url,
        )

    def _get_client(self) -> AsyncOpenAI:
        if self.config.embedding_provider == "ollama":
            # Ollama doesn't require a real API key
            return AsyncOpenAI(
                base_url=self.config.embedding_base_url,
                api_key="ollama",
            )
        return AsyncOpenAI(
            base_url=self.config.embedding_base_url,
            api_key=self.config.embedding_api_key,
        )

    async def embed_text(self, text: str) -> list[float]:
        """Generate embedding for a single text.

        Raises:
            Exception: If embedding generation fails.
        """
        try:
            response = await self.client.embeddings.create(
                input=[text],
                model=self.config.embedding_model,
            )
            embedding = response.data[0].embedding
            logger.debug(
                "embedding_generated",
                text_length=len(text),
                embedding_dim=len(embedding),
            )
            return embedding

        except Exception as e:
            logger.exception(
                "embedding_failed",
                text_length=len(text),
                error_type=type(e).__name__,
            )
            raise

    async def embed_batch(
        self, texts: list[str], batch_size: int | None = None
    ) -> list[list[float] | None]:
        """Generate embeddings for many texts, one provider request per batch.

        A failed batch is logged and skipped; its positions in the result are
        None so callers can persist only what was embedded.

        Args:
            texts: Texts to embed.
            batch_size: Inputs per request, defaults to the configured size.

        Returns:
            One entry per input text, in input order.
        """
        size = min(batch_size or self.config.embedding_batch_size, MAX_PROVIDER_BATCH)
        logger.info("batch_embedding_started", count=len(texts), batch_size=size)

        embeddings: list[list[float] | None] = [None] * len(texts)
        failed_batches = 0

        for offset in range(0, len(texts), size):
            batch = texts[offset : offset + size]
            batch_num = offset // size + 1

            try:
                response = await self.client.embeddings.create(
                    input=batch,
                    model=self.config.embedding_model,
                )
                for item in response.data:
                    embeddings[offset + item.index] = item.embedding

                logger.debug("batch_completed", batch_num=batch_num, count=len(batch))

            except Exception as e:
                failed_batches += 1
                logger.exception(
                    "batch_embedding_failed",
                    batch_num=batch_num,
                    count=len(batch),
                    error_type=type(e).__name__,
                )

        logger.info(
            "batch_embedding_completed",
            total_embeddings=sum(1 for e in embeddings if e is not None),
            failed_batches=failed_batches,
        )
        return embeddings
