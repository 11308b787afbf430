"""
Persistence contract for the fiction weaver.

The orchestrator core talks to storage only through ``WeaverRepository``.
Plans, checkpoints and backlog items carry a ``version`` column; saving a
stale copy raises ``ConcurrencyConflictError``. Every other record is
upserted by id.
"""

from abc import ABC, abstractmethod
from typing import List, Optional

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


class WeaverRepository(ABC):
    """Abstract storage for plans, checkpoints, backlog and stub entities."""

    # ------------------------------------------------------------------
    # Plans and checkpoints
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_plan(self, plan_id: str) -> Optional[Plan]:
        pass

    @abstractmethod
    async def save_plan(self, plan: Plan) -> Plan:
        pass

    @abstractmethod
    async def get_checkpoint(self, plan_id: str, phase_key: str) -> Optional[PhaseCheckpoint]:
        pass

    @abstractmethod
    async def save_checkpoint(self, checkpoint: PhaseCheckpoint) -> PhaseCheckpoint:
        pass

    # ------------------------------------------------------------------
    # Backlog and conversation tasks
    # ------------------------------------------------------------------

    @abstractmethod
    async def list_backlog_items(self, plan_id: str) -> List[BacklogItem]:
        """Backlog items for the plan ordered by creation time."""
        pass

    @abstractmethod
    async def get_backlog_item(self, plan_id: str, backlog_id: str) -> Optional[BacklogItem]:
        pass

    @abstractmethod
    async def save_backlog_item(self, item: BacklogItem) -> BacklogItem:
        pass

    @abstractmethod
    async def delete_backlog_item(self, item: BacklogItem) -> None:
        pass

    @abstractmethod
    async def list_conversation_tasks(self, conversation_plan_id: str) -> List[ConversationTask]:
        pass

    @abstractmethod
    async def save_conversation_task(self, task: ConversationTask) -> ConversationTask:
        pass

    # ------------------------------------------------------------------
    # Downstream generation entities
    # ------------------------------------------------------------------

    @abstractmethod
    async def count_blueprints(self, plan_id: str) -> int:
        pass

    @abstractmethod
    async def save_blueprint(self, blueprint: ChapterBlueprint) -> ChapterBlueprint:
        pass

    @abstractmethod
    async def save_scroll(self, scroll: ChapterScroll) -> ChapterScroll:
        pass

    @abstractmethod
    async def count_sections(self, scroll_id: str) -> int:
        pass

    @abstractmethod
    async def save_section(self, section: ChapterSection) -> ChapterSection:
        pass

    @abstractmethod
    async def count_scenes(self, section_id: str) -> int:
        pass

    @abstractmethod
    async def save_scene(self, scene: ChapterScene) -> ChapterScene:
        pass

    @abstractmethod
    async def list_world_bibles(self, plan_id: str, domain: str) -> List[WorldBible]:
        pass

    @abstractmethod
    async def save_world_bible(self, world_bible: WorldBible) -> WorldBible:
        pass

    @abstractmethod
    async def save_world_bible_entry(self, entry: WorldBibleEntry) -> WorldBibleEntry:
        pass

    @abstractmethod
    async def max_pass_index(self, plan_id: str) -> Optional[int]:
        pass

    @abstractmethod
    async def save_pass(self, plan_pass: PlanPass) -> PlanPass:
        pass

    @abstractmethod
    async def list_lore_requirements(
        self,
        plan_id: str,
        status: Optional[LoreRequirementStatus] = None,
    ) -> List[LoreRequirement]:
        pass

    @abstractmethod
    async def get_lore_requirement(self, requirement_id: str) -> Optional[LoreRequirement]:
        pass

    @abstractmethod
    async def save_lore_requirement(self, requirement: LoreRequirement) -> LoreRequirement:
        pass

    # ------------------------------------------------------------------
    # Transcripts and audit
    # ------------------------------------------------------------------

    @abstractmethod
    async def save_phase_transcripts(self, records: List[PhaseTranscriptRecord]) -> None:
        pass

    @abstractmethod
    async def save_planner_execution(self, record: PlannerExecutionRecord) -> None:
        pass

    @abstractmethod
    async def append_workflow_event(self, event: WorkflowEvent) -> None:
        pass

