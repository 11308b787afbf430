"""
Redis Queue Service for the Fiction Weaver
Durable job queue for phase jobs plus the worker loop that drains it.
"""

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type

import redis.asyncio as redis

from models import JobPayload, utc_now

logger = logging.getLogger("weaver.queue")


class RedisQueueService:
    """Service for managing the Redis phase-job queues."""

    # Queue names
    QUEUE_PENDING = "weaver:jobs:pending"
    QUEUE_PROCESSING = "weaver:jobs:processing"
    QUEUE_COMPLETED = "weaver:jobs:completed"
    QUEUE_FAILED = "weaver:jobs:failed"

    # Pub/Sub channel for queue lifecycle events
    CHANNEL_JOBS = "weaver:events:jobs"

    RESULT_TTL_SECONDS = 86400

    def __init__(self, redis_url: str = "redis://localhost:6379"):
        self.redis_url = redis_url
        self._client: Optional[redis.Redis] = None

    async def connect(self) -> None:
        """Establish connection to Redis."""
        self._client = redis.from_url(self.redis_url, decode_responses=True)
        await self._client.ping()

    async def disconnect(self) -> None:
        """Close Redis connection."""
        if self._client:
            await self._client.close()

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            raise RuntimeError("Redis client not connected. Call connect() first.")
        return self._client

    # ========================================================================
    # Job Queue Operations
    # ========================================================================

    async def enqueue_job(self, job: JobPayload) -> str:
        """Add a job to the pending queue."""
        await self.client.lpush(self.QUEUE_PENDING, job.model_dump_json())

        await self.publish_event(
            {
                "type": "job_enqueued",
                "job_id": job.job_id,
                "plan_id": job.plan_id,
                "phase": job.phase.value,
                "timestamp": utc_now().isoformat(),
            }
        )

        return job.job_id

    async def dequeue_job(self, timeout: int = 0) -> Optional[JobPayload]:
        """Get a job from the pending queue (blocking)."""
        result = await self.client.brpoplpush(
            self.QUEUE_PENDING,
            self.QUEUE_PROCESSING,
            timeout=timeout,
        )

        if result:
            return JobPayload.model_validate_json(result)
        return None

    async def complete_job(self, job_id: str, result: Dict[str, Any]) -> None:
        """Mark a job as completed and store its result."""
        await self._remove_job_from_queue(self.QUEUE_PROCESSING, job_id)

        result_key = f"weaver:results:{job_id}"
        await self.client.setex(result_key, self.RESULT_TTL_SECONDS, json.dumps(result))

        completion_data = {
            "job_id": job_id,
            "completed_at": utc_now().isoformat(),
            "result_key": result_key,
        }
        await self.client.lpush(self.QUEUE_COMPLETED, json.dumps(completion_data))

        await self.publish_event(
            {
                "type": "job_completed",
                "job_id": job_id,
                "timestamp": utc_now().isoformat(),
            }
        )

    async def fail_job(self, job_id: str, error: str, retry: bool = True) -> None:
        """Mark a job as failed, re-enqueueing it while retries remain."""
        job_data = await self._get_job_from_queue(self.QUEUE_PROCESSING, job_id)
        if not job_data:
            logger.warning(f"Job {job_id} not found in processing queue")
            return

        job = JobPayload.model_validate_json(job_data)
        await self._remove_job_from_queue(self.QUEUE_PROCESSING, job_id)

        if retry and job.retry_count < job.max_retries:
            job.retry_count += 1
            await self.client.lpush(self.QUEUE_PENDING, job.model_dump_json())
            logger.info(f"Job {job_id} re-enqueued (retry {job.retry_count}/{job.max_retries})")

            await self.publish_event(
                {
                    "type": "job_retry",
                    "job_id": job_id,
                    "retry_count": job.retry_count,
                    "error": error,
                    "timestamp": utc_now().isoformat(),
                }
            )
            return

        failure_data = {
            "job_id": job_id,
            "plan_id": job.plan_id,
            "phase": job.phase.value,
            "error": error,
            "failed_at": utc_now().isoformat(),
            "retry_count": job.retry_count,
        }
        await self.client.lpush(self.QUEUE_FAILED, json.dumps(failure_data))
        logger.error(f"Job {job_id} failed permanently: {error}")

        await self.publish_event(
            {
                "type": "job_failed",
                "job_id": job_id,
                "error": error,
                "timestamp": utc_now().isoformat(),
            }
        )

    async def publish_event(self, event: Dict[str, Any]) -> None:
        """Publish a queue lifecycle event."""
        await self.client.publish(self.CHANNEL_JOBS, json.dumps(event))

    # ========================================================================
    # Helper Methods
    # ========================================================================

    async def _remove_job_from_queue(self, queue: str, job_id: str) -> None:
        """Remove a specific job from a queue."""
        item = await self._get_job_from_queue(queue, job_id)
        if item is not None:
            await self.client.lrem(queue, 1, item)

    async def _get_job_from_queue(self, queue: str, job_id: str) -> Optional[str]:
        """Get a specific job from a queue without removing it."""
        items = await self.client.lrange(queue, 0, -1)
        for item in items:
            try:
                job = JobPayload.model_validate_json(item)
            except ValueError:
                logger.warning(f"Skipping unreadable entry in {queue}")
                continue
            if job.job_id == job_id:
                return item
        return None


class RedisWorker:
    """Worker that processes phase jobs from the Redis queue."""

    def __init__(
        self,
        queue_service: RedisQueueService,
        job_handler: Callable[[JobPayload], Awaitable[Dict[str, Any]]],
        poll_timeout: int = 5,
        non_retryable: Tuple[Type[BaseException], ...] = (),
        concurrency: int = 1,
    ):
        self.queue_service = queue_service
        self.job_handler = job_handler
        self.poll_timeout = poll_timeout
        self.non_retryable = non_retryable
        self.concurrency = max(1, concurrency)
        self._running = False

    async def start(self) -> None:
        """Run ``concurrency`` polling loops until ``stop()`` is called."""
        self._running = True
        logger.info(f"Worker started with {self.concurrency} polling loop(s)")
        await asyncio.gather(*(self._poll() for _ in range(self.concurrency)))

    async def _poll(self) -> None:
        while self._running:
            try:
                job = await self.queue_service.dequeue_job(timeout=self.poll_timeout)
                if job:
                    await self.process(job)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Worker error: {e}", exc_info=True)
                await asyncio.sleep(1)

    async def process(self, job: JobPayload) -> None:
        """Run one job and record its outcome on the queue."""
        try:
            result = await self.job_handler(job)
        except asyncio.CancelledError:
            await self.queue_service.fail_job(job.job_id, "cancelled", retry=False)
            raise
        except Exception as e:
            logger.error(f"Job {job.job_id} ({job.phase.value}) failed: {e}")
            await self.queue_service.fail_job(job.job_id, str(e), retry=not isinstance(e, self.non_retryable))
            return
        await self.queue_service.complete_job(job.job_id, result)

    def stop(self) -> None:
        """Stop processing jobs."""
        self._running = False
