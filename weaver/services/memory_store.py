"""
In-memory WeaverRepository.

Used by the test suite and for local runs without Supabase. Records are
copied on the way in and out so callers never share state with the store,
the same way rows behave when read back from a database.
"""

from typing import Dict, List, Optional, TypeVar

from pydantic import BaseModel

from core.errors import ConcurrencyConflictError
from models import (
    BacklogItem,
    ChapterBlueprint,
    ChapterScene,
    ChapterScroll,
    ChapterSection,
    ConversationTask,
    LoreRequirement,
    LoreRequirementStatus,
    PhaseCheckpoint,
    PhaseTranscriptRecord,
    Plan,
    PlannerExecutionRecord,
    PlanPass,
    WorkflowEvent,
    WorldBible,
    WorldBibleEntry,
)

from .repository import WeaverRepository

ModelT = TypeVar("ModelT", bound=BaseModel)


class InMemoryWeaverRepository(WeaverRepository):
    """Dictionary-backed repository with per-row version checks."""

    def __init__(self):
        self.plans: Dict[str, Plan] = {}
        self.checkpoints: Dict[str, PhaseCheckpoint] = {}
        self.backlog_items: Dict[str, BacklogItem] = {}
        self.conversation_tasks: Dict[str, ConversationTask] = {}
        self.blueprints: Dict[str, ChapterBlueprint] = {}
        self.scrolls: Dict[str, ChapterScroll] = {}
        self.sections: Dict[str, ChapterSection] = {}
        self.scenes: Dict[str, ChapterScene] = {}
        self.world_bibles: Dict[str, WorldBible] = {}
        self.world_bible_entries: Dict[str, WorldBibleEntry] = {}
        self.passes: Dict[str, PlanPass] = {}
        self.lore_requirements: Dict[str, LoreRequirement] = {}
        self.phase_transcripts: List[PhaseTranscriptRecord] = []
        self.planner_executions: List[PlannerExecutionRecord] = []
        self.workflow_events: List[WorkflowEvent] = []

    # ========================================================================
    # Helpers
    # ========================================================================

    @staticmethod
    def _copy(model: ModelT) -> ModelT:
        return model.model_copy(deep=True)

    def _save_versioned(self, table: Dict[str, ModelT], entity: ModelT, name: str) -> ModelT:
        stored = table.get(entity.id)
        if stored is not None and stored.version != entity.version:
            raise ConcurrencyConflictError(name, entity.id, entity.version)
        entity.version += 1
        table[entity.id] = self._copy(entity)
        return entity

    def _upsert(self, table: Dict[str, ModelT], entity: ModelT) -> ModelT:
        table[entity.id] = self._copy(entity)
        return entity

    # ========================================================================
    # Plans and checkpoints
    # ========================================================================

    async def get_plan(self, plan_id: str) -> Optional[Plan]:
        plan = self.plans.get(plan_id)
        return self._copy(plan) if plan else None

    async def save_plan(self, plan: Plan) -> Plan:
        return self._save_versioned(self.plans, plan, "Plan")

    async def get_checkpoint(self, plan_id: str, phase_key: str) -> Optional[PhaseCheckpoint]:
        for checkpoint in self.checkpoints.values():
            if checkpoint.plan_id == plan_id and checkpoint.phase_key == phase_key:
                return self._copy(checkpoint)
        return None

    async def save_checkpoint(self, checkpoint: PhaseCheckpoint) -> PhaseCheckpoint:
        return self._save_versioned(self.checkpoints, checkpoint, "Checkpoint")

    # ========================================================================
    # Backlog and conversation tasks
    # ========================================================================

    async def list_backlog_items(self, plan_id: str) -> List[BacklogItem]:
        items = [item for item in self.backlog_items.values() if item.plan_id == plan_id]
        items.sort(key=lambda item: item.created_at)
        return [self._copy(item) for item in items]

    async def get_backlog_item(self, plan_id: str, backlog_id: str) -> Optional[BacklogItem]:
        for item in self.backlog_items.values():
            if item.plan_id == plan_id and item.backlog_id.lower() == backlog_id.lower():
                return self._copy(item)
        return None

    async def save_backlog_item(self, item: BacklogItem) -> BacklogItem:
        return self._save_versioned(self.backlog_items, item, "BacklogItem")

    async def delete_backlog_item(self, item: BacklogItem) -> None:
        self.backlog_items.pop(item.id, None)

    async def list_conversation_tasks(self, conversation_plan_id: str) -> List[ConversationTask]:
        return [
            self._copy(task)
            for task in self.conversation_tasks.values()
            if task.conversation_plan_id == conversation_plan_id
        ]

    async def save_conversation_task(self, task: ConversationTask) -> ConversationTask:
        return self._upsert(self.conversation_tasks, task)

    # ========================================================================
    # Downstream generation entities
    # ========================================================================

    async def count_blueprints(self, plan_id: str) -> int:
        return sum(1 for b in self.blueprints.values() if b.plan_id == plan_id)

    async def save_blueprint(self, blueprint: ChapterBlueprint) -> ChapterBlueprint:
        return self._upsert(self.blueprints, blueprint)

    async def save_scroll(self, scroll: ChapterScroll) -> ChapterScroll:
        return self._upsert(self.scrolls, scroll)

    async def count_sections(self, scroll_id: str) -> int:
        return sum(1 for s in self.sections.values() if s.scroll_id == scroll_id)

    async def save_section(self, section: ChapterSection) -> ChapterSection:
        return self._upsert(self.sections, section)

    async def count_scenes(self, section_id: str) -> int:
        return sum(1 for s in self.scenes.values() if s.section_id == section_id)

    async def save_scene(self, scene: ChapterScene) -> ChapterScene:
        return self._upsert(self.scenes, scene)

    async def list_world_bibles(self, plan_id: str, domain: str) -> List[WorldBible]:
        bibles = [
            wb for wb in self.world_bibles.values()
            if wb.plan_id == plan_id and wb.domain == domain
        ]
        bibles.sort(key=lambda wb: wb.created_at)
        return [self._copy(wb) for wb in bibles]

    async def save_world_bible(self, world_bible: WorldBible) -> WorldBible:
        return self._upsert(self.world_bibles, world_bible)

    async def save_world_bible_entry(self, entry: WorldBibleEntry) -> WorldBibleEntry:
        return self._upsert(self.world_bible_entries, entry)

    async def max_pass_index(self, plan_id: str) -> Optional[int]:
        indexes = [p.pass_index for p in self.passes.values() if p.plan_id == plan_id]
        return max(indexes) if indexes else None

    async def save_pass(self, plan_pass: PlanPass) -> PlanPass:
        return self._upsert(self.passes, plan_pass)

    async def list_lore_requirements(
        self,
        plan_id: str,
        status: Optional[LoreRequirementStatus] = None,
    ) -> List[LoreRequirement]:
        return [
            self._copy(r)
            for r in self.lore_requirements.values()
            if r.plan_id == plan_id and (status is None or r.status == status)
        ]

    async def get_lore_requirement(self, requirement_id: str) -> Optional[LoreRequirement]:
        requirement = self.lore_requirements.get(requirement_id)
        return self._copy(requirement) if requirement else None

    async def save_lore_requirement(self, requirement: LoreRequirement) -> LoreRequirement:
        return self._upsert(self.lore_requirements, requirement)

    # ========================================================================
    # Transcripts and audit
    # ========================================================================

    async def save_phase_transcripts(self, records: List[PhaseTranscriptRecord]) -> None:
        self.phase_transcripts.extend(self._copy(r) for r in records)

    async def save_planner_execution(self, record: PlannerExecutionRecord) -> None:
        self.planner_executions.append(self._copy(record))

    async def append_workflow_event(self, event: WorkflowEvent) -> None:
        self.workflow_events.append(self._copy(event))
