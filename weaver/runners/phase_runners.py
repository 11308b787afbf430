"""
Concrete phase runners.

- ContentPhaseRunner: delegates creative work to a ContentGenerator
- PlannerPhaseRunner: adapts a PlannerBase into a phase runner
- LoreFulfillmentRunner: turns a blocked lore requirement into a world bible entry
"""

import json
import logging
from typing import Any, Callable, Dict, Optional

from core.backlog_tokens import normalize_slug
from core.lore_metadata import resolve_branch_context, stamp_auto_fulfillment_completed
from core.planner import PlannerBase, PlannerContext, PlannerOutcome, PlannerParameters, PlannerResult
from models import (
    DEFAULT_BRANCH,
    LoreRequirementStatus,
    PhaseExecutionContext,
    PhaseKind,
    PhaseResult,
    PhaseStatus,
    PhaseTranscript,
    WorldBible,
    WorldBibleEntry,
    utc_now,
)

from .base import ContentGenerator, PhaseRunner

logger = logging.getLogger("weaver.runners")

WORKFLOW_LORE_FULFILLMENT = "fiction.lore.fulfillment"


def _optional_number(value: Optional[str]):
    if value is None or not value.strip():
        return None
    try:
        return float(value) if "." in value else int(value)
    except ValueError:
        return None


class ContentPhaseRunner(PhaseRunner):
    """Runs a content phase through a ``ContentGenerator``."""

    def __init__(self, phase: PhaseKind, generator: ContentGenerator):
        self._phase = phase
        self.generator = generator

    @property
    def phase(self) -> PhaseKind:
        return self._phase

    async def run(self, context: PhaseExecutionContext) -> PhaseResult:
        output = await self.generator.generate(self._phase, context)
        status = PhaseStatus(output.get("status", PhaseStatus.COMPLETED.value))
        return self.build_result(
            context,
            status,
            output.get("summary") or f"{self._phase.value} {status.progress_label}",
            data=output.get("data"),
            transcripts=output.get("transcripts"),
        )


class PlannerPhaseRunner(PhaseRunner):
    """
    Runs a planner as a phase.

    Outcome mapping: success -> completed, partial -> pending,
    failed -> failed (blocked when the planner was quota-denied),
    cancelled -> cancelled. A planner backlog is exposed as
    ``data["backlog"]`` for the engine to upsert.
    """

    def __init__(
        self,
        phase: PhaseKind,
        planner: PlannerBase,
        parameters_factory: Optional[Callable[[PhaseExecutionContext], PlannerParameters]] = None,
        environment: Optional[str] = None,
    ):
        self._phase = phase
        self.planner = planner
        self.parameters_factory = parameters_factory
        self.environment = environment

    @property
    def phase(self) -> PhaseKind:
        return self._phase

    def build_planner_context(self, context: PhaseExecutionContext) -> PlannerContext:
        return PlannerContext(
            agent_id=context.agent_id,
            conversation_id=context.conversation_id,
            persona_id=context.get("personaId"),
            plan_id=context.plan_id,
            environment=self.environment,
            correlation_id=context.invoked_by_job_id,
            iteration_index=context.iteration_index,
            pending_jobs=_optional_number(context.get("pendingJobs")),
            requested_tokens=_optional_number(context.get("requestedTokens")),
            state={"branchSlug": context.branch},
        )

    async def run(self, context: PhaseExecutionContext) -> PhaseResult:
        if self.parameters_factory is not None:
            parameters = self.parameters_factory(context)
        else:
            parameters = PlannerParameters(dict(context.metadata))

        result = await self.planner.plan(self.build_planner_context(context), parameters)
        return self._to_phase_result(context, parameters, result)

    def _to_phase_result(
        self, context: PhaseExecutionContext, parameters: PlannerParameters, result: PlannerResult
    ) -> PhaseResult:
        planner_data = result.to_dict()
        data: Dict[str, Any] = {"planner": planner_data}
        if result.backlog:
            data["backlog"] = planner_data["backlog"]

        if result.outcome == PlannerOutcome.SUCCESS:
            status = PhaseStatus.COMPLETED
        elif result.outcome == PlannerOutcome.PARTIAL:
            status = PhaseStatus.PENDING
        elif result.outcome == PlannerOutcome.CANCELLED:
            status = PhaseStatus.CANCELLED
        elif "quotaLimit" in result.diagnostics:
            status = PhaseStatus.BLOCKED
        else:
            status = PhaseStatus.FAILED

        if status == PhaseStatus.BLOCKED:
            summary = f"Planner {self.planner.name} blocked by quota: {result.diagnostics.get('quotaReason', '')}"
        else:
            summary = f"Planner {self.planner.name} finished with outcome {result.outcome.value}"

        transcript = PhaseTranscript(
            agent_id=context.agent_id,
            conversation_id=context.conversation_id,
            chapter_blueprint_id=context.chapter_blueprint_id,
            chapter_scroll_id=context.chapter_scroll_id,
            chapter_scene_id=context.chapter_scene_id,
            request_payload=json.dumps(parameters.values, default=str),
            response_payload=json.dumps(planner_data, default=str),
            latency_ms=result.metrics.get("durationMs"),
            validation_status=result.outcome.value,
            metadata={"planner": self.planner.name},
        )
        return self.build_result(context, status, summary, data=data, transcripts=[transcript])


class LoreFulfillmentRunner(PhaseRunner):
    """
    Fulfills a lore requirement by writing a world bible entry for it on
    the requirement's branch.
    """

    def __init__(self, repository, workflow_log=None):
        self.repository = repository
        self.workflow_log = workflow_log

    @property
    def phase(self) -> PhaseKind:
        return PhaseKind.LORE_FULFILLMENT

    async def run(self, context: PhaseExecutionContext) -> PhaseResult:
        requirement_id = context.lore_requirement_id or context.get("requirementId")
        if not requirement_id:
            return self.build_result(context, PhaseStatus.FAILED, "No lore requirement id on the job.")

        requirement = await self.repository.get_lore_requirement(requirement_id)
        if requirement is None or requirement.plan_id != context.plan_id:
            return self.build_result(
                context, PhaseStatus.FAILED, f"Lore requirement {requirement_id} was not found."
            )

        if requirement.status == LoreRequirementStatus.READY and requirement.world_bible_entry_id:
            return self.build_result(
                context,
                PhaseStatus.SKIPPED,
                f"Lore requirement {requirement.requirement_slug} is already fulfilled.",
            )

        branch = resolve_branch_context(context.get("branchSlug") or context.branch)
        world_bible = await self._ensure_world_bible(context.plan_id, branch.slug)
        entry = await self.repository.save_world_bible_entry(
            WorldBibleEntry(
                world_bible_id=world_bible.id,
                entry_slug=normalize_slug(requirement.requirement_slug or requirement.title),
                entry_name=requirement.title,
                summary=requirement.description or "",
            )
        )

        requirement.status = LoreRequirementStatus.READY
        requirement.world_bible_entry_id = entry.id
        stamp_auto_fulfillment_completed(requirement)
        requirement.updated_at = utc_now()
        await self.repository.save_lore_requirement(requirement)
        logger.info(f"Fulfilled lore requirement {requirement.requirement_slug} with entry {entry.id}")

        if self.workflow_log is not None:
            await self.workflow_log.log(
                context.conversation_id,
                WORKFLOW_LORE_FULFILLMENT,
                {
                    "planId": context.plan_id,
                    "requirementId": requirement.id,
                    "requirementSlug": requirement.requirement_slug,
                    "worldBibleId": world_bible.id,
                    "worldBibleEntryId": entry.id,
                    "action": "fulfilled",
                    "branchSlug": branch.slug,
                    "branchLineage": list(branch.lineage),
                    "jobId": context.invoked_by_job_id,
                },
            )

        return self.build_result(
            context,
            PhaseStatus.COMPLETED,
            f"Lore requirement {requirement.requirement_slug} fulfilled.",
            data={"requirementId": requirement.id, "worldBibleEntryId": entry.id, "worldBibleId": world_bible.id},
        )

    async def _ensure_world_bible(self, plan_id: str, branch_slug: str) -> WorldBible:
        is_default = branch_slug.lower() == DEFAULT_BRANCH
        for candidate in await self.repository.list_world_bibles(plan_id, "core"):
            if candidate.branch_slug is None and is_default:
                return candidate
            if candidate.branch_slug is not None and candidate.branch_slug.lower() == branch_slug.lower():
                return candidate
        return await self.repository.save_world_bible(
            WorldBible(plan_id=plan_id, domain="core", branch_slug=None if is_default else branch_slug)
        )


class NotImplementedContentGenerator(ContentGenerator):
    """Placeholder generator used when no content backend is configured."""

    async def generate(self, phase: PhaseKind, context: PhaseExecutionContext) -> Dict[str, Any]:
        return {
            "status": PhaseStatus.NOT_IMPLEMENTED.value,
            "summary": f"Phase {phase.value} is not implemented yet.",
        }
