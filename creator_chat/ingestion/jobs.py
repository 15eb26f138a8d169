"""Runner for queued pipeline jobs (``pipeline_jobs`` table).

Each stage hands the next one a job row instead of calling it directly, so a
crash between stages leaves a visible, re-runnable record. The runner claims
a job, dispatches it to its stage and records the outcome. A completed job
that queued a follow-up job has that job run next.
"""

from typing import Any

from creator_chat.errors import InputError
from creator_chat.utils.logging import get_logger

from .extractor import EMBED_STAGE, TranscriptExtractor
from .pipeline import EXTRACT_STAGE, EmbeddingPipeline
from .storage_service import StorageService

logger = get_logger(__name__)

MAX_ATTEMPTS = 3


class PipelineJobRunner:
    def __init__(
        self,
        storage: StorageService,
        extractor: TranscriptExtractor,
        embedding_pipeline: EmbeddingPipeline,
    ):
        self.storage = storage
        self.extractor = extractor
        self.embedding_pipeline = embedding_pipeline

    async def run_job(self, job_id: str) -> dict[str, Any] | None:
        """Claim and run one job.

        Returns:
            The stage result as a dict, or None when the job was already
            claimed by another runner.
        """
        job = await self.storage.claim_job(job_id)
        if job is None:
            logger.info("job_already_claimed", job_id=job_id)
            return None

        log = logger.bind(job_id=job_id, stage=job["stage"], channel_id=job["channel_id"])
        attempts = (job.get("attempts") or 0) + 1
        log.info("job_started", attempts=attempts)

        try:
            result = await self._dispatch(job["stage"], job.get("payload") or {})
        except Exception as e:
            log.exception("job_failed", error_type=type(e).__name__)
            await self.storage.finish_job(
                job_id, succeeded=False, error=str(e) or type(e).__name__, attempts=attempts
            )
            return {"success": False, "error": str(e) or type(e).__name__}

        await self.storage.finish_job(job_id, succeeded=True, result=result, attempts=attempts)
        log.info("job_completed")
        return result

    async def run_chain(self, job_id: str | None) -> list[dict[str, Any]]:
        """Run a job and every follow-up job it queues."""
        results = []
        while job_id:
            result = await self.run_job(job_id)
            if result is None:
                break
            results.append(result)
            job_id = result.get("job_id")
        return results

    async def process_pending_jobs(
        self, limit: int = 10, retry_failed: bool = False
    ) -> list[dict[str, Any]]:
        """Run pending jobs, oldest first.

        Args:
            limit: Maximum number of jobs to run.
            retry_failed: Re-queue failed jobs that have attempts left first.
        """
        if retry_failed:
            for job in await self.storage.list_jobs("failed", limit):
                if (job.get("attempts") or 0) < MAX_ATTEMPTS:
                    await self.storage.requeue_job(job["id"])

        summaries = []
        for job in await self.storage.list_jobs("pending", limit):
            result = await self.run_job(job["id"])
            if result is not None:
                summaries.append({"job_id": job["id"], "stage": job["stage"], "result": result})

        logger.info("pending_jobs_processed", count=len(summaries))
        return summaries

    async def _dispatch(self, stage: str, payload: dict[str, Any]) -> dict[str, Any]:
        if stage == EXTRACT_STAGE:
            extraction = await self.extractor.extract_channel(payload["channel_id"])
            return extraction.model_dump(mode="json")
        if stage == EMBED_STAGE:
            run = await self.embedding_pipeline.run(
                channel_id=payload.get("channel_id"),
                transcript_ids=payload.get("transcript_ids"),
                process_all=payload.get("process_all", False),
            )
            return run.model_dump(mode="json")
        raise InputError(f"Unknown pipeline stage: {stage}")
