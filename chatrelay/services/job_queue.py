"""
Job queue contract backed by ARQ (Redis).

Producers call ``add_job(queue_name, job_type, payload, options)``. The job
options travel with the job so the consumer can apply per-job attempts and
backoff itself: ARQ only knows per-function ``max_tries``, and webhooks each
carry their own retry count.
"""
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from typing import Any, Optional, Protocol

import structlog
from arq import ArqRedis, create_pool
from arq.connections import RedisSettings

from chatrelay.config import settings

logger = structlog.get_logger()

WEBHOOK_DELIVERY_QUEUE = "webhook-delivery"
MESSAGE_STATUS_QUEUE = "message-status"

# Hard ceiling on ARQ tries per function; per-job ``attempts`` must stay below it.
MAX_JOB_TRIES = 20


@dataclass
class BackoffOptions:
    """Retry delay schedule. ``delay`` is the base delay in milliseconds."""
    type: str = "exponential"
    delay: int = 2000

    def delay_for(self, attempt: int) -> int:
        """Delay in ms before the attempt following ``attempt`` (1-based)."""
        if self.type == "exponential":
            return self.delay * 2 ** (attempt - 1)
        return self.delay


@dataclass
class JobOptions:
    """
    Per-job delivery options.

    ``timeout`` and ``delay`` are in milliseconds; ``delay`` defers the first
    run of the job.
    """
    attempts: int = 1
    backoff: BackoffOptions = field(default_factory=BackoffOptions)
    timeout: Optional[int] = None
    delay: int = 0

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "JobOptions":
        data = dict(data or {})
        backoff = BackoffOptions(**(data.pop("backoff", None) or {}))
        return cls(backoff=backoff, **data)


class JobQueue(Protocol):
    """What the delivery core needs from a queue substrate."""

    async def add_job(
        self,
        queue_name: str,
        job_type: str,
        payload: dict[str, Any],
        options: Optional[JobOptions] = None,
    ) -> Optional[str]:
        ...


class ArqJobQueue:
    """``JobQueue`` implementation enqueueing ARQ jobs.

    ``job_type`` is the name of the worker function; the function receives
    ``(payload, options_dict)``.
    """

    def __init__(self, redis_url: str = None, pool: Optional[ArqRedis] = None):
        self.redis_url = redis_url or settings.REDIS_URL
        self._pool = pool
        self._owns_pool = pool is None

    async def get_pool(self) -> ArqRedis:
        if self._pool is None:
            self._pool = await create_pool(RedisSettings.from_dsn(self.redis_url))
        return self._pool

    async def add_job(
        self,
        queue_name: str,
        job_type: str,
        payload: dict[str, Any],
        options: Optional[JobOptions] = None,
    ) -> Optional[str]:
        """
        Enqueue a job.

        Returns:
            The ARQ job id, or None if ARQ refused a duplicate id.
        """
        options = options or JobOptions()
        pool = await self.get_pool()

        job = await pool.enqueue_job(
            job_type,
            payload,
            options.to_dict(),
            _queue_name=queue_name,
            _defer_by=timedelta(milliseconds=options.delay) if options.delay else None,
        )
        if job is None:
            logger.warning("job_not_enqueued", queue=queue_name, job_type=job_type)
            return None

        logger.debug("job_enqueued", queue=queue_name, job_type=job_type, job_id=job.job_id)
        return job.job_id

    async def close(self) -> None:
        if self._pool is not None and self._owns_pool:
            await self._pool.close()
        self._pool = None
