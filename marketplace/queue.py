"""
Delivery queue on top of ARQ.

Jobs are a function name plus arguments stored in Redis, so pending
deliveries and scheduled retries survive worker restarts. Handlers are
registered once in marketplace.worker.WorkerSettings.
"""
from arq import ArqRedis, create_pool
from arq.connections import RedisSettings

from marketplace.config import settings
from marketplace.logging_config import get_logger


log = get_logger(component="queue")


class JobQueue:
    """Enqueue jobs for the ARQ worker pool."""

    def __init__(self, pool: ArqRedis):
        self.pool = pool

    @classmethod
    async def connect(cls, redis_url: str | None = None) -> "JobQueue":
        pool = await create_pool(RedisSettings.from_dsn(redis_url or settings.REDIS_URL))
        return cls(pool)

    async def enqueue(
        self,
        function: str,
        *args,
        defer_by: float | None = None,
        job_id: str | None = None,
    ) -> bool:
        """
        Enqueue a job, optionally delayed.

        Returns False when a job with the same job_id is already queued,
        which makes re-enqueueing the same attempt a no-op.
        """
        job = await self.pool.enqueue_job(function, *args, _job_id=job_id, _defer_by=defer_by)
        if job is None:
            log.info("job_already_enqueued", function=function, job_id=job_id)
            return False
        log.debug("job_enqueued", function=function, job_id=job.job_id, defer_by=defer_by)
        return True

    async def close(self):
        await self.pool.aclose()
