"""
Job enqueue interface for fiction weaver phases.

One method per phase kind. Every method builds a ``JobPayload``, pushes it
onto the Redis pending queue and returns the job id.
"""

import logging
from typing import Mapping, Optional

from models import JobPayload, PhaseKind

from .redis_queue import RedisQueueService

logger = logging.getLogger("weaver.jobs")


class FictionWeaverJobClient:
    """Enqueues phase jobs on the Redis queue."""

    def __init__(self, queue: RedisQueueService, max_retries: int = 3):
        self.queue = queue
        self.max_retries = max_retries

    async def _enqueue(
        self,
        phase: PhaseKind,
        plan_id: str,
        agent_id: str,
        conversation_id: str,
        provider_id: str,
        model_id: Optional[str],
        branch_slug: str,
        metadata: Optional[Mapping[str, str]],
        **targets,
    ) -> str:
        job = JobPayload(
            plan_id=plan_id,
            phase=phase,
            agent_id=agent_id,
            conversation_id=conversation_id,
            provider_id=provider_id,
            model_id=model_id,
            branch_slug=branch_slug or "main",
            metadata=dict(metadata or {}),
            max_retries=self.max_retries,
            **targets,
        )
        job_id = await self.queue.enqueue_job(job)
        logger.info(f"Enqueued {phase.value} job {job_id} for plan {plan_id} (branch={job.branch_slug})")
        return job_id

    async def enqueue_vision_planner(
        self,
        plan_id: str,
        agent_id: str,
        conversation_id: str,
        provider_id: str,
        model_id: Optional[str] = None,
        branch_slug: str = "main",
        metadata: Optional[Mapping[str, str]] = None,
    ) -> str:
        return await self._enqueue(
            PhaseKind.VISION_PLANNER, plan_id, agent_id, conversation_id,
            provider_id, model_id, branch_slug, metadata,
        )

    async def enqueue_world_bible_manager(
        self,
        plan_id: str,
        agent_id: str,
        conversation_id: str,
        provider_id: str,
        model_id: Optional[str] = None,
        branch_slug: str = "main",
        metadata: Optional[Mapping[str, str]] = None,
    ) -> str:
        return await self._enqueue(
            PhaseKind.WORLD_BIBLE_MANAGER, plan_id, agent_id, conversation_id,
            provider_id, model_id, branch_slug, metadata,
        )

    async def enqueue_iterative_planner(
        self,
        plan_id: str,
        agent_id: str,
        conversation_id: str,
        iteration_index: int,
        provider_id: str,
        model_id: Optional[str] = None,
        branch_slug: str = "main",
        metadata: Optional[Mapping[str, str]] = None,
    ) -> str:
        return await self._enqueue(
            PhaseKind.ITERATIVE_PLANNER, plan_id, agent_id, conversation_id,
            provider_id, model_id, branch_slug, metadata,
            iteration_index=iteration_index,
        )

    async def enqueue_chapter_architect(
        self,
        plan_id: str,
        agent_id: str,
        conversation_id: str,
        blueprint_id: str,
        provider_id: str,
        model_id: Optional[str] = None,
        branch_slug: str = "main",
        metadata: Optional[Mapping[str, str]] = None,
    ) -> str:
        return await self._enqueue(
            PhaseKind.CHAPTER_ARCHITECT, plan_id, agent_id, conversation_id,
            provider_id, model_id, branch_slug, metadata,
            chapter_blueprint_id=blueprint_id,
        )

    async def enqueue_scroll_refiner(
        self,
        plan_id: str,
        agent_id: str,
        conversation_id: str,
        scroll_id: str,
        provider_id: str,
        model_id: Optional[str] = None,
        branch_slug: str = "main",
        metadata: Optional[Mapping[str, str]] = None,
    ) -> str:
        return await self._enqueue(
            PhaseKind.SCROLL_REFINER, plan_id, agent_id, conversation_id,
            provider_id, model_id, branch_slug, metadata,
            chapter_scroll_id=scroll_id,
        )

    async def enqueue_scene_weaver(
        self,
        plan_id: str,
        agent_id: str,
        conversation_id: str,
        scene_id: str,
        provider_id: str,
        model_id: Optional[str] = None,
        branch_slug: str = "main",
        metadata: Optional[Mapping[str, str]] = None,
    ) -> str:
        return await self._enqueue(
            PhaseKind.SCENE_WEAVER, plan_id, agent_id, conversation_id,
            provider_id, model_id, branch_slug, metadata,
            chapter_scene_id=scene_id,
        )

    async def enqueue_lore_fulfillment(
        self,
        plan_id: str,
        requirement_id: str,
        agent_id: str,
        conversation_id: str,
        provider_id: str,
        model_id: Optional[str] = None,
        branch_slug: str = "main",
        metadata: Optional[Mapping[str, str]] = None,
    ) -> str:
        return await self._enqueue(
            PhaseKind.LORE_FULFILLMENT, plan_id, agent_id, conversation_id,
            provider_id, model_id, branch_slug, metadata,
            lore_requirement_id=requirement_id,
        )
