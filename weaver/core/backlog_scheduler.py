"""
Backlog Dependency Scheduler.

Called by the phase engine after every phase run. Each call:
1. Resumes backlog items stuck in progress past the resume threshold
2. Queues auto-fulfillment for lore requirements blocked past their SLA
3. Claims the first pending item whose inputs are all produced by
   completed items, creates the entities it targets and enqueues exactly
   one job for it
"""

import logging
import uuid
from datetime import timedelta
from typing import Any, Dict, Optional, Sequence

from config.settings import SchedulerOptions
from models import (
    DEFAULT_BRANCH,
    BacklogItem,
    BacklogStatus,
    ChapterBlueprint,
    ChapterScene,
    ChapterScroll,
    ChapterSection,
    ConversationTask,
    ConversationTaskStatus,
    LoreRequirementStatus,
    PhaseExecutionContext,
    PhaseKind,
    PhaseResult,
    Plan,
    PlanPass,
    WorldBible,
    merge_metadata,
    utc_now,
)

from .backlog_tokens import (
    MetadataKeys,
    backlog_title,
    get_backlog_output_value,
    normalize_slug,
    producers_of,
    resolve_dependency_value,
    resolve_phase,
    set_backlog_output_value,
)
from .errors import ConcurrencyConflictError
from .lore_metadata import (
    is_auto_fulfillment_requested,
    last_touched,
    resolve_branch_context,
    stamp_auto_fulfillment_request,
)

logger = logging.getLogger("weaver.scheduler")

WORKFLOW_BACKLOG_ACTION = "fiction.backlog.action"
WORKFLOW_LORE_FULFILLMENT = "fiction.lore.fulfillment"
WORLD_BIBLE_DOMAIN = "core"


def is_ready(item: BacklogItem, backlog: Sequence[BacklogItem]) -> bool:
    """
    A pending item is ready when every input is produced by at least one
    completed item other than itself. Items without inputs are ready.
    """
    if item.status != BacklogStatus.PENDING:
        return False
    for input_tag in item.inputs:
        if not input_tag or not input_tag.strip():
            continue
        producers = producers_of(input_tag, backlog, exclude=item)
        if not any(p.status == BacklogStatus.COMPLETE for p in producers):
            return False
    return True


def find_ready_item(backlog: Sequence[BacklogItem]) -> Optional[BacklogItem]:
    for item in backlog:
        if resolve_phase(item) is not None and is_ready(item, backlog):
            return item
    return None


class BacklogScheduler:
    """Chooses and enqueues the next backlog item for a plan."""

    def __init__(self, repository, job_client, workflow_log=None, options: Optional[SchedulerOptions] = None):
        self.repository = repository
        self.job_client = job_client
        self.workflow_log = workflow_log
        self.options = options or SchedulerOptions()

    async def schedule(
        self,
        plan: Plan,
        completed_phase: PhaseKind,
        result: PhaseResult,
        context: PhaseExecutionContext,
    ) -> None:
        backlog = await self.repository.list_backlog_items(plan.id)

        provider_id = context.provider_id
        if not provider_id:
            logger.warning(
                f"Skipping backlog scheduling for plan {plan.id} after {completed_phase.value}: no providerId"
            )
            return
        model_id = context.model_id
        branch = context.branch_slug or plan.primary_branch_slug or DEFAULT_BRANCH

        if self.options.backlog_auto_resume_enabled:
            await self._auto_resume_stale(plan, backlog, context, branch)
        await self._queue_lore_fulfillment(plan, context, branch, provider_id, model_id)

        candidate = find_ready_item(backlog)
        if candidate is None:
            logger.debug(f"No ready backlog items for plan {plan.id}")
            return

        if not await self._claim(candidate):
            return

        phase = resolve_phase(candidate)
        targets = await self._ensure_targets(plan, candidate, backlog, phase, branch)
        task = await self._claim_conversation_task(plan, candidate)

        metadata = merge_metadata(
            context.metadata,
            {
                MetadataKeys.BACKLOG_ITEM_ID: candidate.backlog_id,
                **targets,
                "providerId": provider_id,
                "modelId": model_id,
                "agentId": context.agent_id,
                "conversationId": context.conversation_id,
                "branchSlug": branch,
                "taskId": task.id if task else None,
                "conversationPlanId": plan.current_conversation_plan_id,
            },
        )
        await self._enqueue(plan, candidate, phase, targets, context, provider_id, model_id, branch, metadata)

    # ========================================================================
    # Auto-resume
    # ========================================================================

    async def _auto_resume_stale(
        self, plan: Plan, backlog: Sequence[BacklogItem], context: PhaseExecutionContext, branch: str
    ) -> None:
        now = utc_now()
        cutoff = now - timedelta(minutes=self.options.backlog_resume_threshold_minutes)
        for item in backlog:
            if item.status != BacklogStatus.IN_PROGRESS:
                continue
            started = item.in_progress_at or item.updated_at or item.created_at
            if started > cutoff:
                continue

            age_seconds = (now - started).total_seconds()
            item.status = BacklogStatus.PENDING
            item.in_progress_at = None
            item.completed_at = None
            item.updated_at = now
            try:
                await self.repository.save_backlog_item(item)
            except ConcurrencyConflictError as e:
                logger.info(f"Skipping auto-resume of {item.backlog_id}: {e}")
                continue

            task = await self._find_conversation_task(plan, item)
            if task is not None and task.status != ConversationTaskStatus.PENDING:
                task.status = ConversationTaskStatus.PENDING
                task.updated_at = now
                await self.repository.save_conversation_task(task)

            logger.warning(
                f"Auto-resumed backlog item {item.backlog_id} for plan {plan.id} "
                f"after {age_seconds:.0f}s in progress"
            )
            payload: Dict[str, Any] = {
                "planId": plan.id,
                "planName": plan.name,
                "backlogId": item.backlog_id,
                "description": item.description,
                "action": "auto-resume",
                "branch": branch,
                "status": item.status.value,
                "source": "automation",
                "conversationId": context.conversation_id,
                "agentId": context.agent_id,
                "ageSeconds": age_seconds,
            }
            optional = {
                "conversationPlanId": plan.current_conversation_plan_id,
                "providerId": context.provider_id,
                "modelId": context.model_id,
                "taskId": task.id if task else None,
            }
            payload.update({k: v for k, v in optional.items() if v})
            await self._log_workflow(context.conversation_id, WORKFLOW_BACKLOG_ACTION, payload)

    # ========================================================================
    # Lore auto-fulfillment
    # ========================================================================

    async def _queue_lore_fulfillment(
        self,
        plan: Plan,
        context: PhaseExecutionContext,
        branch: str,
        provider_id: str,
        model_id: Optional[str],
    ) -> None:
        if not self.options.lore_auto_fulfillment_enabled or not context.conversation_id:
            return

        sla_minutes = self.options.lore_auto_fulfillment_sla_minutes
        cutoff = utc_now() - timedelta(minutes=sla_minutes)
        branch_context = resolve_branch_context(branch)
        requirements = await self.repository.list_lore_requirements(plan.id, LoreRequirementStatus.BLOCKED)

        for requirement in requirements:
            if requirement.world_bible_entry_id:
                continue
            if is_auto_fulfillment_requested(requirement):
                continue
            if last_touched(requirement) > cutoff:
                continue

            stamp_auto_fulfillment_request(requirement, branch_context, context.conversation_id, context.agent_id)
            requirement.updated_at = utc_now()
            await self.repository.save_lore_requirement(requirement)

            job_id = await self.job_client.enqueue_lore_fulfillment(
                plan_id=plan.id,
                requirement_id=requirement.id,
                agent_id=context.agent_id,
                conversation_id=context.conversation_id,
                provider_id=provider_id,
                model_id=model_id,
                branch_slug=branch_context.slug,
                metadata={
                    "autoFulfillment": "true",
                    "requirementId": requirement.id,
                    "branchSlug": branch_context.slug,
                    "slaMinutes": f"{sla_minutes:g}",
                    "branchLineage": branch_context.lineage_csv,
                },
            )
            logger.info(
                f"Queued lore auto-fulfillment for requirement {requirement.requirement_slug} "
                f"on plan {plan.id} (job {job_id})"
            )
            await self._log_workflow(
                context.conversation_id,
                WORKFLOW_LORE_FULFILLMENT,
                {
                    "planId": plan.id,
                    "requirementId": requirement.id,
                    "requirementSlug": requirement.requirement_slug,
                    "title": requirement.title,
                    "action": "queued",
                    "jobId": job_id,
                    "branchSlug": branch_context.slug,
                    "branchLineage": list(branch_context.lineage),
                    "slaMinutes": sla_minutes,
                },
            )

    # ========================================================================
    # Claim and targets
    # ========================================================================

    async def _claim(self, item: BacklogItem) -> bool:
        if item.status != BacklogStatus.PENDING:
            return False
        now = utc_now()
        item.status = BacklogStatus.IN_PROGRESS
        if item.in_progress_at is None:
            item.in_progress_at = now
        item.updated_at = now
        try:
            await self.repository.save_backlog_item(item)
        except ConcurrencyConflictError as e:
            logger.info(f"Backlog item {item.backlog_id} was claimed elsewhere: {e}")
            return False
        logger.info(f"Claimed backlog item {item.backlog_id} for plan {item.plan_id}")
        return True

    async def _ensure_targets(
        self,
        plan: Plan,
        item: BacklogItem,
        backlog: Sequence[BacklogItem],
        phase: PhaseKind,
        branch: str,
    ) -> Dict[str, str]:
        """Create the entities ``item`` targets and record their ids on it."""
        before = list(item.outputs)
        if phase == PhaseKind.CHAPTER_ARCHITECT:
            await self._ensure_blueprint(plan, item)
        elif phase == PhaseKind.SCROLL_REFINER:
            await self._ensure_scroll(plan, item, backlog)
        elif phase == PhaseKind.SCENE_WEAVER:
            await self._ensure_scene(plan, item, backlog)
        elif phase == PhaseKind.WORLD_BIBLE_MANAGER:
            await self._ensure_world_bible(plan, item, branch)
        elif phase == PhaseKind.ITERATIVE_PLANNER:
            await self._ensure_iteration(plan, item)

        if item.outputs != before:
            await self.repository.save_backlog_item(item)

        targets = {}
        for key in (
            MetadataKeys.CHAPTER_BLUEPRINT_ID,
            MetadataKeys.CHAPTER_SCROLL_ID,
            MetadataKeys.CHAPTER_SECTION_ID,
            MetadataKeys.CHAPTER_SCENE_ID,
            MetadataKeys.WORLD_BIBLE_ID,
            MetadataKeys.ITERATION_INDEX,
        ):
            value = get_backlog_output_value(item, key)
            if value:
                targets[key] = value
        return targets

    async def _ensure_blueprint(self, plan: Plan, item: BacklogItem) -> str:
        existing = get_backlog_output_value(item, MetadataKeys.CHAPTER_BLUEPRINT_ID)
        if existing:
            return existing
        count = await self.repository.count_blueprints(plan.id)
        blueprint = await self.repository.save_blueprint(
            ChapterBlueprint(
                plan_id=plan.id,
                chapter_index=count + 1,
                chapter_slug=normalize_slug(item.backlog_id),
                title=backlog_title(item),
                synopsis=item.description or "",
            )
        )
        set_backlog_output_value(item, MetadataKeys.CHAPTER_BLUEPRINT_ID, blueprint.id)
        logger.info(f"Created chapter blueprint {blueprint.id} for backlog item {item.backlog_id}")
        return blueprint.id

    async def _ensure_scroll(self, plan: Plan, item: BacklogItem, backlog: Sequence[BacklogItem]) -> str:
        existing = get_backlog_output_value(item, MetadataKeys.CHAPTER_SCROLL_ID)
        if existing:
            return existing
        blueprint_id = resolve_dependency_value(item, backlog, MetadataKeys.CHAPTER_BLUEPRINT_ID)
        if not blueprint_id:
            blueprint_id = await self._ensure_blueprint(plan, item)

        slug = normalize_slug(item.backlog_id)
        scroll = await self.repository.save_scroll(
            ChapterScroll(
                blueprint_id=blueprint_id,
                version_index=1,
                scroll_slug=f"{slug}-{uuid.uuid4().hex}",
                title=backlog_title(item),
                synopsis=item.description or "",
            )
        )
        section = await self.repository.save_section(
            ChapterSection(
                scroll_id=scroll.id,
                section_index=1,
                section_slug=f"{scroll.scroll_slug}-section",
                title=backlog_title(item),
            )
        )
        set_backlog_output_value(item, MetadataKeys.CHAPTER_SCROLL_ID, scroll.id)
        set_backlog_output_value(item, MetadataKeys.CHAPTER_SECTION_ID, section.id)
        set_backlog_output_value(item, MetadataKeys.CHAPTER_BLUEPRINT_ID, blueprint_id)
        logger.info(f"Created chapter scroll {scroll.id} for backlog item {item.backlog_id}")
        return scroll.id

    async def _ensure_scene(self, plan: Plan, item: BacklogItem, backlog: Sequence[BacklogItem]) -> str:
        existing = get_backlog_output_value(item, MetadataKeys.CHAPTER_SCENE_ID)
        if existing:
            return existing

        scroll_id = resolve_dependency_value(item, backlog, MetadataKeys.CHAPTER_SCROLL_ID)
        section_id = None
        if scroll_id:
            section_id = resolve_dependency_value(item, backlog, MetadataKeys.CHAPTER_SECTION_ID)
        else:
            scroll_id = await self._ensure_scroll(plan, item, backlog)
            section_id = get_backlog_output_value(item, MetadataKeys.CHAPTER_SECTION_ID)

        slug = normalize_slug(item.backlog_id)
        if not section_id:
            section_count = await self.repository.count_sections(scroll_id)
            section = await self.repository.save_section(
                ChapterSection(
                    scroll_id=scroll_id,
                    section_index=section_count + 1,
                    section_slug=f"{slug}-section-{uuid.uuid4().hex}",
                    title=backlog_title(item),
                )
            )
            section_id = section.id

        scene_count = await self.repository.count_scenes(section_id)
        scene = await self.repository.save_scene(
            ChapterScene(
                section_id=section_id,
                scene_index=scene_count + 1,
                scene_slug=slug,
                title=backlog_title(item),
                description=item.description or None,
            )
        )
        set_backlog_output_value(item, MetadataKeys.CHAPTER_SCENE_ID, scene.id)
        set_backlog_output_value(item, MetadataKeys.CHAPTER_SCROLL_ID, scroll_id)
        set_backlog_output_value(item, MetadataKeys.CHAPTER_SECTION_ID, section_id)
        logger.info(f"Created chapter scene {scene.id} for backlog item {item.backlog_id}")
        return scene.id

    async def _ensure_world_bible(self, plan: Plan, item: BacklogItem, branch: str) -> str:
        existing = get_backlog_output_value(item, MetadataKeys.WORLD_BIBLE_ID)
        if existing:
            return existing

        is_default = branch.lower() == DEFAULT_BRANCH
        world_bible = None
        for candidate in await self.repository.list_world_bibles(plan.id, WORLD_BIBLE_DOMAIN):
            candidate_branch = candidate.branch_slug
            if candidate_branch is None and is_default:
                world_bible = candidate
                break
            if candidate_branch is not None and candidate_branch.lower() == branch.lower():
                world_bible = candidate
                break

        if world_bible is None:
            world_bible = await self.repository.save_world_bible(
                WorldBible(
                    plan_id=plan.id,
                    domain=WORLD_BIBLE_DOMAIN,
                    branch_slug=None if is_default else branch,
                )
            )
            logger.info(f"Created world bible {world_bible.id} for plan {plan.id} (branch={branch})")

        set_backlog_output_value(item, MetadataKeys.WORLD_BIBLE_ID, world_bible.id)
        return world_bible.id

    async def _ensure_iteration(self, plan: Plan, item: BacklogItem) -> int:
        existing = get_backlog_output_value(item, MetadataKeys.ITERATION_INDEX)
        if existing and existing.isdigit() and int(existing) > 0:
            return int(existing)
        current = await self.repository.max_pass_index(plan.id)
        index = (current or 0) + 1
        await self.repository.save_pass(PlanPass(plan_id=plan.id, pass_index=index, title=backlog_title(item)))
        set_backlog_output_value(item, MetadataKeys.ITERATION_INDEX, str(index))
        return index

    # ========================================================================
    # Conversation tasks, enqueue and audit
    # ========================================================================

    async def _find_conversation_task(self, plan: Plan, item: BacklogItem) -> Optional[ConversationTask]:
        if not plan.current_conversation_plan_id:
            return None
        tasks = await self.repository.list_conversation_tasks(plan.current_conversation_plan_id)
        for task in tasks:
            if task.backlog_item_id and task.backlog_item_id.lower() == item.backlog_id.lower():
                return task
        return None

    async def _claim_conversation_task(self, plan: Plan, item: BacklogItem) -> Optional[ConversationTask]:
        task = await self._find_conversation_task(plan, item)
        if task is not None and task.status != ConversationTaskStatus.IN_PROGRESS:
            task.status = ConversationTaskStatus.IN_PROGRESS
            task.updated_at = utc_now()
            await self.repository.save_conversation_task(task)
        return task

    async def _enqueue(
        self,
        plan: Plan,
        item: BacklogItem,
        phase: PhaseKind,
        targets: Dict[str, str],
        context: PhaseExecutionContext,
        provider_id: str,
        model_id: Optional[str],
        branch: str,
        metadata: Dict[str, str],
    ) -> Optional[str]:
        common = dict(
            plan_id=plan.id,
            agent_id=context.agent_id,
            conversation_id=context.conversation_id,
            provider_id=provider_id,
            model_id=model_id,
            branch_slug=branch,
            metadata=metadata,
        )

        if phase == PhaseKind.VISION_PLANNER:
            job_id = await self.job_client.enqueue_vision_planner(**common)
        elif phase == PhaseKind.WORLD_BIBLE_MANAGER:
            job_id = await self.job_client.enqueue_world_bible_manager(**common)
        elif phase == PhaseKind.ITERATIVE_PLANNER:
            index = targets.get(MetadataKeys.ITERATION_INDEX)
            job_id = await self.job_client.enqueue_iterative_planner(iteration_index=int(index or 1), **common)
        else:
            target_key = {
                PhaseKind.CHAPTER_ARCHITECT: MetadataKeys.CHAPTER_BLUEPRINT_ID,
                PhaseKind.SCROLL_REFINER: MetadataKeys.CHAPTER_SCROLL_ID,
                PhaseKind.SCENE_WEAVER: MetadataKeys.CHAPTER_SCENE_ID,
            }[phase]
            target_id = targets.get(target_key)
            if not target_id:
                logger.warning(
                    f"Backlog item {item.backlog_id} has no {target_key}; not enqueuing {phase.value}"
                )
                return None
            if phase == PhaseKind.CHAPTER_ARCHITECT:
                job_id = await self.job_client.enqueue_chapter_architect(blueprint_id=target_id, **common)
            elif phase == PhaseKind.SCROLL_REFINER:
                job_id = await self.job_client.enqueue_scroll_refiner(scroll_id=target_id, **common)
            else:
                job_id = await self.job_client.enqueue_scene_weaver(scene_id=target_id, **common)

        logger.info(f"Scheduled {phase.value} for backlog item {item.backlog_id} on plan {plan.id} (job {job_id})")
        return job_id

    async def _log_workflow(self, conversation_id: Optional[str], kind: str, payload: Dict[str, Any]) -> None:
        if self.workflow_log is not None:
            await self.workflow_log.log(conversation_id, kind, payload)


__all__ = ["BacklogScheduler", "find_ready_item", "is_ready"]