"""
Phase Execution Engine.

Runs one phase for one plan: resolves the runner, drives the phase
checkpoint through its lifecycle, keeps the paired backlog item in step,
publishes progress and hands completed work to the backlog scheduler.

Checkpoint lifecycle:
    Pending -> InProgress -> Complete | Pending | Cancelled
    Cancelled is sticky until a run carries the ``resume`` flag.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence

from models import (
    DEFAULT_BRANCH,
    BacklogItem,
    BacklogStatus,
    CheckpointStatus,
    ConversationTask,
    ConversationTaskStatus,
    PhaseCheckpoint,
    PhaseExecutionContext,
    PhaseKind,
    PhaseProgressEvent,
    PhaseResult,
    PhaseStatus,
    PhaseTranscriptRecord,
    Plan,
    PlanStatus,
    utc_now,
)

from .backlog_tokens import MetadataKeys, resolve_phase
from .errors import ConcurrencyConflictError, PlanNotFoundError
from .planner import PlannerBacklogItem

logger = logging.getLogger("weaver.engine")

CANCEL_FLAG = "cancel"
RESUME_FLAG = "resume"

STATUS_STARTED = "started"
STATUS_RESUMED = "resumed"
STATUS_CANCELLED = "cancelled"
STATUS_FAILED = "failed"

WORKFLOW_PHASE_PROGRESS = "fiction.phase.progress"
WORKFLOW_BACKLOG_TELEMETRY = "fiction.backlog.telemetry"
CONVERSATION_TOOL_PREFIX = "fiction.weaver."

TASK_STATUS_BY_PHASE_STATUS = {
    PhaseStatus.COMPLETED: ConversationTaskStatus.COMPLETED,
    PhaseStatus.CANCELLED: ConversationTaskStatus.CANCELLED,
    PhaseStatus.BLOCKED: ConversationTaskStatus.BLOCKED,
    PhaseStatus.FAILED: ConversationTaskStatus.FAILED,
}


def build_phase_key(phase: PhaseKind, context: PhaseExecutionContext) -> str:
    """
    Composite checkpoint key: ``{phase}|{branch}`` followed by the target
    segments that are set on the context.
    """
    segments = [phase.value, context.branch]
    if context.iteration_index is not None:
        segments.append(f"pass:{context.iteration_index}")
    if context.chapter_blueprint_id:
        segments.append(f"blueprint:{context.chapter_blueprint_id}")
    if context.chapter_scroll_id:
        segments.append(f"scroll:{context.chapter_scroll_id}")
    if context.chapter_scene_id:
        segments.append(f"scene:{context.chapter_scene_id}")
    if context.lore_requirement_id:
        segments.append(f"lore:{context.lore_requirement_id}")
    return "|".join(segments)


class PhaseExecutionEngine:
    """
    Executes phases against the repository.

    Collaborators other than the repository and registry are optional;
    a missing event bus, notifier, workflow log or scheduler is skipped.
    """

    def __init__(
        self,
        repository,
        registry,
        scheduler=None,
        event_bus=None,
        notifier=None,
        workflow_log=None,
    ):
        self.repository = repository
        self.registry = registry
        self.scheduler = scheduler
        self.event_bus = event_bus
        self.notifier = notifier
        self.workflow_log = workflow_log

    async def execute_phase(self, phase: PhaseKind, context: PhaseExecutionContext) -> PhaseResult:
        """
        Execute ``phase`` for the plan named by ``context``.

        Raises:
            RunnerNotRegisteredError: no runner is registered for ``phase``
            PlanNotFoundError: the plan does not exist
        """
        runner = self.registry.get(phase)

        plan = await self.repository.get_plan(context.plan_id)
        if plan is None:
            raise PlanNotFoundError(context.plan_id)

        branch = context.branch_slug or plan.primary_branch_slug or DEFAULT_BRANCH
        if context.branch_slug != branch:
            context = context.evolve(branch_slug=branch)

        if plan.status == PlanStatus.DRAFT:
            plan.status = PlanStatus.IN_PROGRESS
            plan.updated_at = utc_now()
            plan = await self.repository.save_plan(plan)
            logger.info(f"Plan {plan.id} moved to in_progress")

        phase_key = build_phase_key(phase, context)
        checkpoint = await self._get_or_create_checkpoint(plan, phase, phase_key, branch)
        backlog_item = await self._load_backlog_item(plan, context)

        if context.has_flag(CANCEL_FLAG):
            checkpoint.status = CheckpointStatus.CANCELLED
            checkpoint.clear_lock()
            checkpoint.updated_at = utc_now()
            summary = f"Phase {phase.value} cancelled before execution."
            checkpoint.progress = self._build_payload(plan, checkpoint, context, phase, STATUS_CANCELLED, summary)
            checkpoint = await self.repository.save_checkpoint(checkpoint)
            await self._set_backlog_status(
                plan, backlog_item, BacklogStatus.PENDING, phase, context, "cancel-requested"
            )
            await self._update_conversation_task(plan, context, ConversationTaskStatus.CANCELLED, error=summary)
            await self._publish(plan, checkpoint, context, phase, STATUS_CANCELLED, summary)
            logger.info(f"Phase {phase_key} cancelled for plan {plan.id}")
            return PhaseResult.cancelled(phase, summary)

        if checkpoint.status == CheckpointStatus.CANCELLED:
            if not context.has_flag(RESUME_FLAG):
                summary = f"Phase {phase.value} is cancelled; pass the resume flag to run it again."
                await self._set_backlog_status(
                    plan, backlog_item, BacklogStatus.PENDING, phase, context, "cancelled-checkpoint"
                )
                await self._update_conversation_task(plan, context, ConversationTaskStatus.CANCELLED, error=summary)
                await self._publish(plan, checkpoint, context, phase, STATUS_CANCELLED, summary)
                logger.info(f"Phase {phase_key} is cancelled, skipping run for plan {plan.id}")
                return PhaseResult.cancelled(phase, summary)
            checkpoint.status = CheckpointStatus.PENDING
            checkpoint.clear_lock()
            checkpoint.updated_at = utc_now()
            checkpoint = await self.repository.save_checkpoint(checkpoint)
            await self._publish(plan, checkpoint, context, phase, STATUS_RESUMED, f"Phase {phase.value} resumed.")
            logger.info(f"Phase {phase_key} resumed for plan {plan.id}")

        checkpoint.status = CheckpointStatus.IN_PROGRESS
        checkpoint.locked_by_agent_id = context.agent_id
        checkpoint.locked_by_conversation_id = context.conversation_id
        checkpoint.locked_at = utc_now()
        if checkpoint.completed_count is None:
            checkpoint.completed_count = 0
        if checkpoint.target_count is None:
            checkpoint.target_count = 1
        checkpoint.updated_at = utc_now()
        started_summary = f"Phase {phase.value} started."
        checkpoint.progress = self._build_payload(plan, checkpoint, context, phase, STATUS_STARTED, started_summary)
        checkpoint = await self.repository.save_checkpoint(checkpoint)

        try:
            await self._publish(plan, checkpoint, context, phase, STATUS_STARTED, started_summary)
            await self._set_backlog_status(
                plan, backlog_item, BacklogStatus.IN_PROGRESS, phase, context, "phase-start"
            )
            await self._update_conversation_task(plan, context, ConversationTaskStatus.IN_PROGRESS)
            result = await runner.run(context)

            handled_backlog = False
            if phase == PhaseKind.VISION_PLANNER and result.data.get("backlog") is not None:
                handled_backlog = await self._upsert_backlog(
                    plan, context, result.data["backlog"], backlog_item
                )
            if not handled_backlog:
                await self._set_backlog_status(
                    plan,
                    backlog_item,
                    BacklogStatus.COMPLETE if result.status == PhaseStatus.COMPLETED else BacklogStatus.PENDING,
                    phase,
                    context,
                    "phase-complete",
                )
            task_error = None
            if result.status in (PhaseStatus.CANCELLED, PhaseStatus.FAILED):
                task_error = result.exception or result.summary
            await self._update_conversation_task(
                plan,
                context,
                TASK_STATUS_BY_PHASE_STATUS.get(result.status, ConversationTaskStatus.PENDING),
                observation=result.summary,
                error=task_error,
            )

            await self._persist_transcripts(plan, checkpoint, context, phase, result)

            checkpoint.clear_lock()
            if result.status == PhaseStatus.COMPLETED:
                checkpoint.status = CheckpointStatus.COMPLETE
                checkpoint.target_count = checkpoint.target_count or 1
                checkpoint.completed_count = checkpoint.target_count
            elif result.status == PhaseStatus.CANCELLED:
                checkpoint.status = CheckpointStatus.CANCELLED
            else:
                checkpoint.status = CheckpointStatus.PENDING
            checkpoint.updated_at = utc_now()
            label = result.status.progress_label
            checkpoint.progress = self._build_payload(
                plan, checkpoint, context, phase, label, result.summary, result=result
            )
            checkpoint = await self.repository.save_checkpoint(checkpoint)

            plan = await self._touch_plan(plan)
            await self._publish(plan, checkpoint, context, phase, label, result.summary, result=result)
            logger.info(f"Phase {phase_key} finished with {label} for plan {plan.id}")
        except (Exception, asyncio.CancelledError) as e:
            cancelled = isinstance(e, asyncio.CancelledError)
            await self._handle_failure(plan, checkpoint, backlog_item, context, phase, e, cancelled)
            raise

        await self._run_scheduler(plan, phase, result, context)
        return result

    # ========================================================================
    # Checkpoints and backlog
    # ========================================================================

    async def _get_or_create_checkpoint(
        self, plan: Plan, phase: PhaseKind, phase_key: str, branch: str
    ) -> PhaseCheckpoint:
        checkpoint = await self.repository.get_checkpoint(plan.id, phase_key)
        if checkpoint is not None:
            return checkpoint
        checkpoint = PhaseCheckpoint(
            plan_id=plan.id,
            phase_key=phase_key,
            phase=phase,
            branch_slug=branch,
            status=CheckpointStatus.PENDING,
        )
        try:
            return await self.repository.save_checkpoint(checkpoint)
        except ConcurrencyConflictError:
            existing = await self.repository.get_checkpoint(plan.id, phase_key)
            if existing is None:
                raise
            return existing

    async def _load_backlog_item(self, plan: Plan, context: PhaseExecutionContext) -> Optional[BacklogItem]:
        backlog_id = context.backlog_item_id
        if not backlog_id:
            return None
        item = await self.repository.get_backlog_item(plan.id, backlog_id)
        if item is None:
            logger.warning(f"Backlog item {backlog_id} not found for plan {plan.id}")
        return item

    async def _set_backlog_status(
        self,
        plan: Plan,
        item: Optional[BacklogItem],
        status: BacklogStatus,
        phase: PhaseKind,
        context: PhaseExecutionContext,
        reason: str,
    ) -> None:
        if item is None:
            return
        previous = item.status
        now = utc_now()
        item.status = status
        if status == BacklogStatus.IN_PROGRESS:
            if item.in_progress_at is None:
                item.in_progress_at = now
            item.completed_at = None
        elif status == BacklogStatus.COMPLETE:
            item.completed_at = now
        else:
            item.in_progress_at = None
            item.completed_at = None
        item.updated_at = now
        await self.repository.save_backlog_item(item)
        await self._record_backlog_telemetry(plan, item.backlog_id, phase, status, previous, context, reason)

    async def _record_backlog_telemetry(
        self,
        plan: Plan,
        backlog_id: str,
        phase: PhaseKind,
        status: BacklogStatus,
        previous: Optional[BacklogStatus],
        context: PhaseExecutionContext,
        reason: str,
    ) -> None:
        previous_value = previous.value if previous is not None else None
        logger.info(
            f"Backlog {backlog_id} for plan {plan.id}: {previous_value or 'unknown'} -> {status.value} "
            f"({reason}, phase={phase.value}, branch={context.branch})"
        )
        if self.workflow_log is None:
            return
        await self.workflow_log.log(
            context.conversation_id,
            WORKFLOW_BACKLOG_TELEMETRY,
            {
                "planId": plan.id,
                "backlogId": backlog_id,
                "phase": phase.value,
                "status": status.value,
                "previousStatus": previous_value,
                "reason": reason,
                "branch": context.branch,
                "iteration": context.iteration_index,
                "chapterBlueprintId": context.chapter_blueprint_id,
                "chapterScrollId": context.chapter_scroll_id,
                "chapterSceneId": context.chapter_scene_id,
            },
        )

    async def _find_conversation_task(
        self, plan: Plan, context: PhaseExecutionContext
    ) -> Optional[ConversationTask]:
        """Task named by ``taskId`` metadata, else the one paired with the backlog item."""
        conversation_plan_id = plan.current_conversation_plan_id
        task_id = context.get("taskId")
        backlog_id = context.backlog_item_id
        if not conversation_plan_id or not (task_id or backlog_id):
            return None
        tasks = await self.repository.list_conversation_tasks(conversation_plan_id)
        if task_id:
            match = next((t for t in tasks if t.id == task_id), None)
            if match is not None:
                return match
        if backlog_id:
            lowered = backlog_id.lower()
            return next((t for t in tasks if t.backlog_item_id and t.backlog_item_id.lower() == lowered), None)
        return None

    async def _update_conversation_task(
        self,
        plan: Plan,
        context: PhaseExecutionContext,
        status: str,
        observation: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        try:
            task = await self._find_conversation_task(plan, context)
            if task is None:
                return
            task.status = status
            if observation is not None:
                task.observation = observation
            if error is not None:
                task.error = error
            task.updated_at = utc_now()
            await self.repository.save_conversation_task(task)
        except Exception as e:
            logger.warning(f"Failed to update conversation task for plan {plan.id}: {e}")

    async def _upsert_backlog(
        self,
        plan: Plan,
        context: PhaseExecutionContext,
        payload: Sequence[Any],
        current_item: Optional[BacklogItem],
    ) -> bool:
        """
        Replace the plan backlog with the planner's proposal.

        Returns True when ``current_item`` was part of the proposal.
        """
        proposed: List[PlannerBacklogItem] = []
        for entry in payload:
            item = entry if isinstance(entry, PlannerBacklogItem) else PlannerBacklogItem.from_dict(dict(entry))
            if item.id:
                proposed.append(item)

        existing = {item.backlog_id.lower(): item for item in await self.repository.list_backlog_items(plan.id)}
        seen = set()
        saved: List[BacklogItem] = []
        now = utc_now()
        for proposal in proposed:
            key = proposal.id.lower()
            if key in seen:
                continue
            seen.add(key)
            item = existing.get(key)
            previous: Optional[BacklogStatus] = None
            if item is None:
                item = BacklogItem(plan_id=plan.id, backlog_id=proposal.id)
                tokens: List[str] = []
            else:
                previous = item.status
                tokens = [o for o in item.outputs if "=" in o]
            item.description = proposal.description
            item.inputs = list(proposal.inputs)
            item.outputs = list(proposal.outputs) + [t for t in tokens if t not in proposal.outputs]
            if item.status != proposal.status:
                item.status = proposal.status
                item.in_progress_at = now if proposal.status == BacklogStatus.IN_PROGRESS else None
                item.completed_at = now if proposal.status == BacklogStatus.COMPLETE else None
            item.updated_at = now
            saved.append(await self.repository.save_backlog_item(item))
            if previous is not None and previous != item.status:
                await self._record_backlog_telemetry(
                    plan, item.backlog_id, PhaseKind.VISION_PLANNER, item.status, previous, context, "vision-sync"
                )

        current_key = current_item.backlog_id.lower() if current_item else None
        for key, item in existing.items():
            if key not in seen and key != current_key:
                await self.repository.delete_backlog_item(item)
                logger.info(f"Removed backlog item {item.backlog_id} from plan {plan.id}")

        await self._ensure_conversation_tasks(plan, context, saved)
        logger.info(f"Upserted {len(saved)} backlog items for plan {plan.id}")
        return current_key is not None and current_key in seen

    async def _ensure_conversation_tasks(
        self, plan: Plan, context: PhaseExecutionContext, items: Sequence[BacklogItem]
    ) -> None:
        conversation_plan_id = plan.current_conversation_plan_id
        if not conversation_plan_id:
            return
        tasks = await self.repository.list_conversation_tasks(conversation_plan_id)
        by_backlog = {t.backlog_item_id.lower(): t for t in tasks if t.backlog_item_id}
        next_step = max((t.step_number for t in tasks), default=0) + 1
        for item in items:
            if item.backlog_id.lower() in by_backlog:
                continue
            phase = resolve_phase(item)
            task = ConversationTask(
                conversation_plan_id=conversation_plan_id,
                backlog_item_id=item.backlog_id,
                step_number=next_step,
                tool_name=f"{CONVERSATION_TOOL_PREFIX}{phase.value}" if phase else None,
                provider_id=context.provider_id,
                model_id=context.model_id,
                agent_id=context.agent_id,
                args={"planId": plan.id, MetadataKeys.BACKLOG_ITEM_ID: item.backlog_id},
            )
            await self.repository.save_conversation_task(task)
            next_step += 1

    async def _persist_transcripts(
        self,
        plan: Plan,
        checkpoint: PhaseCheckpoint,
        context: PhaseExecutionContext,
        phase: PhaseKind,
        result: PhaseResult,
    ) -> None:
        if not result.transcripts:
            return
        records = []
        for transcript in result.transcripts:
            metadata = dict(transcript.metadata)
            metadata.setdefault("phaseKey", checkpoint.phase_key)
            metadata.setdefault("branchSlug", context.branch)
            if context.backlog_item_id:
                metadata.setdefault(MetadataKeys.BACKLOG_ITEM_ID, context.backlog_item_id)
            records.append(
                PhaseTranscriptRecord(
                    plan_id=plan.id,
                    checkpoint_id=checkpoint.id,
                    phase=phase,
                    phase_key=checkpoint.phase_key,
                    branch_slug=context.branch,
                    agent_id=transcript.agent_id or context.agent_id,
                    conversation_id=transcript.conversation_id or context.conversation_id,
                    chapter_blueprint_id=transcript.chapter_blueprint_id or context.chapter_blueprint_id,
                    chapter_scroll_id=transcript.chapter_scroll_id or context.chapter_scroll_id,
                    chapter_scene_id=transcript.chapter_scene_id or context.chapter_scene_id,
                    attempt=transcript.attempt,
                    is_retry=transcript.is_retry,
                    request_payload=transcript.request_payload,
                    response_payload=transcript.response_payload,
                    prompt_tokens=transcript.prompt_tokens,
                    completion_tokens=transcript.completion_tokens,
                    latency_ms=transcript.latency_ms,
                    validation_status=transcript.validation_status,
                    validation_details=transcript.validation_details,
                    metadata=metadata,
                )
            )
        await self.repository.save_phase_transcripts(records)

    async def _touch_plan(self, plan: Plan) -> Plan:
        latest = await self.repository.get_plan(plan.id) or plan
        latest.updated_at = utc_now()
        return await self.repository.save_plan(latest)

    async def _handle_failure(
        self,
        plan: Plan,
        checkpoint: PhaseCheckpoint,
        backlog_item: Optional[BacklogItem],
        context: PhaseExecutionContext,
        phase: PhaseKind,
        error: BaseException,
        cancelled: bool,
    ) -> None:
        label = STATUS_CANCELLED if cancelled else STATUS_FAILED
        summary = f"Phase {phase.value} {'was cancelled' if cancelled else 'failed'}: {error}"
        if cancelled:
            logger.warning(f"Phase {checkpoint.phase_key} cancelled for plan {plan.id}")
        else:
            logger.error(f"Phase {checkpoint.phase_key} failed for plan {plan.id}: {error}", exc_info=True)

        try:
            latest_item = None
            if backlog_item is not None:
                latest_item = await self.repository.get_backlog_item(plan.id, backlog_item.backlog_id)
            await self._set_backlog_status(plan, latest_item, BacklogStatus.PENDING, phase, context, "phase-failed")
        except Exception as revert_error:
            logger.warning(f"Failed to revert backlog item for {checkpoint.phase_key}: {revert_error}")
        await self._update_conversation_task(
            plan,
            context,
            ConversationTaskStatus.CANCELLED if cancelled else ConversationTaskStatus.FAILED,
            error=summary,
        )

        checkpoint.clear_lock()
        checkpoint.status = CheckpointStatus.CANCELLED if cancelled else CheckpointStatus.PENDING
        checkpoint.updated_at = utc_now()
        checkpoint.progress = self._build_payload(
            plan, checkpoint, context, phase, label, summary, exception=str(error) or type(error).__name__
        )
        try:
            await self.repository.save_checkpoint(checkpoint)
        except Exception as save_error:
            logger.warning(f"Failed to persist checkpoint {checkpoint.phase_key} after error: {save_error}")

        await self._publish(
            plan, checkpoint, context, phase, label, summary, exception=str(error) or type(error).__name__
        )

    async def _run_scheduler(
        self, plan: Plan, phase: PhaseKind, result: PhaseResult, context: PhaseExecutionContext
    ) -> None:
        if self.scheduler is None:
            return
        try:
            await self.scheduler.schedule(plan, phase, result, context)
        except Exception as e:
            logger.error(f"Backlog scheduling failed after {phase.value} for plan {plan.id}: {e}", exc_info=True)

    # ========================================================================
    # Progress
    # ========================================================================

    def _build_payload(
        self,
        plan: Plan,
        checkpoint: PhaseCheckpoint,
        context: PhaseExecutionContext,
        phase: PhaseKind,
        status: str,
        summary: Optional[str],
        result: Optional[PhaseResult] = None,
        exception: Optional[str] = None,
    ) -> Dict[str, Any]:
        return {
            "planId": plan.id,
            "checkpointId": checkpoint.id,
            "checkpointStatus": checkpoint.status.value,
            "jobId": context.invoked_by_job_id,
            "phase": phase.value,
            "branch": context.branch,
            "status": status,
            "summary": summary,
            "timestampUtc": utc_now().isoformat(),
            "agentId": context.agent_id,
            "conversationId": context.conversation_id,
            "backlogItemId": context.backlog_item_id,
            "iterationIndex": context.iteration_index,
            "chapterBlueprintId": context.chapter_blueprint_id,
            "chapterScrollId": context.chapter_scroll_id,
            "chapterSceneId": context.chapter_scene_id,
            "phaseStatus": result.status.value if result else None,
            "resultData": result.data if result else None,
            "exception": exception if exception is not None else (result.exception if result else None),
        }

    async def _publish(
        self,
        plan: Plan,
        checkpoint: PhaseCheckpoint,
        context: PhaseExecutionContext,
        phase: PhaseKind,
        status: str,
        summary: Optional[str],
        result: Optional[PhaseResult] = None,
        exception: Optional[str] = None,
    ) -> None:
        payload = self._build_payload(plan, checkpoint, context, phase, status, summary, result, exception)

        if self.event_bus is not None:
            try:
                await self.event_bus.publish_phase_progress(
                    PhaseProgressEvent(
                        plan_id=plan.id,
                        conversation_id=context.conversation_id,
                        agent_id=context.agent_id,
                        branch_slug=context.branch,
                        phase=phase.value,
                        status=status,
                        summary=summary,
                        payload=payload,
                    )
                )
            except Exception as e:
                logger.warning(f"Failed to publish {status} progress for {checkpoint.phase_key}: {e}")
        if self.notifier is not None:
            await self.notifier.notify_plan_progress(context.conversation_id, payload)
        if self.workflow_log is not None:
            await self.workflow_log.log(context.conversation_id, WORKFLOW_PHASE_PROGRESS, payload)
