"""
Supabase Persistence Service for the Fiction Weaver

Stores plans, phase checkpoints, backlog items and the stub generation
entities in Supabase tables. Versioned rows are updated with a
``version`` equality filter so concurrent writers are detected.
"""

import logging
import os
from typing import Any, Dict, List, Optional, Type, TypeVar

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

logger = logging.getLogger("weaver.persistence")

ModelT = TypeVar("ModelT", bound=BaseModel)


class SupabaseWeaverRepository(WeaverRepository):
    """WeaverRepository backed by Supabase (PostgREST)."""

    TABLE_PLANS = "fiction_plans"
    TABLE_CHECKPOINTS = "fiction_phase_checkpoints"
    TABLE_BACKLOG = "fiction_backlog_items"
    TABLE_TASKS = "conversation_tasks"
    TABLE_BLUEPRINTS = "fiction_chapter_blueprints"
    TABLE_SCROLLS = "fiction_chapter_scrolls"
    TABLE_SECTIONS = "fiction_chapter_sections"
    TABLE_SCENES = "fiction_chapter_scenes"
    TABLE_WORLD_BIBLES = "fiction_world_bibles"
    TABLE_WORLD_BIBLE_ENTRIES = "fiction_world_bible_entries"
    TABLE_PASSES = "fiction_plan_passes"
    TABLE_LORE = "fiction_lore_requirements"
    TABLE_TRANSCRIPTS = "fiction_phase_transcripts"
    TABLE_PLANNER_EXECUTIONS = "planner_executions"
    TABLE_WORKFLOW_EVENTS = "workflow_events"

    def __init__(self, supabase_url: Optional[str] = None, supabase_key: Optional[str] = None):
        """
        Initialize the Supabase repository.

        Args:
            supabase_url: Supabase project URL
            supabase_key: Supabase service role key (for server-side operations)
        """
        self.supabase_url = supabase_url or os.getenv("SUPABASE_URL")
        self.supabase_key = supabase_key or os.getenv("SUPABASE_SERVICE_KEY")
        self._client = None
        self._connected = False

    async def connect(self) -> bool:
        """
        Connect to Supabase.

        Returns:
            True if connection successful, False otherwise
        """
        if not self.supabase_url or not self.supabase_key:
            logger.warning("Supabase URL or key not configured; persistence unavailable")
            return False

        try:
            from supabase import create_client
            self._client = create_client(self.supabase_url, self.supabase_key)
            self._connected = True
            return True
        except Exception as e:
            logger.error(f"Failed to connect to Supabase: {e}")
            self._connected = False
            return False

    @property
    def is_connected(self) -> bool:
        return self._connected and self._client is not None

    @property
    def client(self):
        if not self.is_connected:
            raise RuntimeError("Supabase client not connected. Call connect() first.")
        return self._client

    # ========================================================================
    # Row helpers
    # ========================================================================

    @staticmethod
    def _row(model: BaseModel) -> Dict[str, Any]:
        return model.model_dump(mode="json")

    @staticmethod
    def _parse(model_type: Type[ModelT], rows: Optional[List[Dict[str, Any]]]) -> List[ModelT]:
        return [model_type.model_validate(row) for row in rows or []]

    def _first(self, model_type: Type[ModelT], rows: Optional[List[Dict[str, Any]]]) -> Optional[ModelT]:
        parsed = self._parse(model_type, rows)
        return parsed[0] if parsed else None

    def _save_versioned(self, table: str, entity: ModelT, name: str) -> ModelT:
        expected = entity.version
        entity.version = expected + 1
        data = self._row(entity)
        if expected == 0:
            result = self.client.table(table).insert(data).execute()
        else:
            result = (
                self.client.table(table)
                .update(data)
                .eq("id", entity.id)
                .eq("version", expected)
                .execute()
            )
        if not result.data:
            entity.version = expected
            raise ConcurrencyConflictError(name, entity.id, expected)
        return entity

    def _upsert(self, table: str, entity: ModelT) -> ModelT:
        self.client.table(table).upsert(self._row(entity)).execute()
        return entity

    def _count(self, table: str, column: str, value: str) -> int:
        result = self.client.table(table).select("id", count="exact").eq(column, value).execute()
        return result.count or 0

    # ========================================================================
    # Plans and checkpoints
    # ========================================================================

    async def get_plan(self, plan_id: str) -> Optional[Plan]:
        result = self.client.table(self.TABLE_PLANS).select("*").eq("id", plan_id).limit(1).execute()
        return self._first(Plan, result.data)

    async def save_plan(self, plan: Plan) -> Plan:
        return self._save_versioned(self.TABLE_PLANS, plan, "Plan")

    async def get_checkpoint(self, plan_id: str, phase_key: str) -> Optional[PhaseCheckpoint]:
        result = (
            self.client.table(self.TABLE_CHECKPOINTS)
            .select("*")
            .eq("plan_id", plan_id)
            .eq("phase_key", phase_key)
            .limit(1)
            .execute()
        )
        return self._first(PhaseCheckpoint, result.data)

    async def save_checkpoint(self, checkpoint: PhaseCheckpoint) -> PhaseCheckpoint:
        return self._save_versioned(self.TABLE_CHECKPOINTS, checkpoint, "Checkpoint")

    # ========================================================================
    # Backlog and conversation tasks
    # ========================================================================

    async def list_backlog_items(self, plan_id: str) -> List[BacklogItem]:
        result = (
            self.client.table(self.TABLE_BACKLOG)
            .select("*")
            .eq("plan_id", plan_id)
            .order("created_at")
            .execute()
        )
        return self._parse(BacklogItem, result.data)

    async def get_backlog_item(self, plan_id: str, backlog_id: str) -> Optional[BacklogItem]:
        result = (
            self.client.table(self.TABLE_BACKLOG)
            .select("*")
            .eq("plan_id", plan_id)
            .ilike("backlog_id", backlog_id)
            .limit(1)
            .execute()
        )
        return self._first(BacklogItem, result.data)

    async def save_backlog_item(self, item: BacklogItem) -> BacklogItem:
        return self._save_versioned(self.TABLE_BACKLOG, item, "BacklogItem")

    async def delete_backlog_item(self, item: BacklogItem) -> None:
        self.client.table(self.TABLE_BACKLOG).delete().eq("id", item.id).execute()

    async def list_conversation_tasks(self, conversation_plan_id: str) -> List[ConversationTask]:
        result = (
            self.client.table(self.TABLE_TASKS)
            .select("*")
            .eq("conversation_plan_id", conversation_plan_id)
            .order("step_number")
            .execute()
        )
        return self._parse(ConversationTask, result.data)

    async def save_conversation_task(self, task: ConversationTask) -> ConversationTask:
        return self._upsert(self.TABLE_TASKS, task)

    # ========================================================================
    # Downstream generation entities
    # ========================================================================

    async def count_blueprints(self, plan_id: str) -> int:
        return self._count(self.TABLE_BLUEPRINTS, "plan_id", plan_id)

    async def save_blueprint(self, blueprint: ChapterBlueprint) -> ChapterBlueprint:
        return self._upsert(self.TABLE_BLUEPRINTS, blueprint)

    async def save_scroll(self, scroll: ChapterScroll) -> ChapterScroll:
        return self._upsert(self.TABLE_SCROLLS, scroll)

    async def count_sections(self, scroll_id: str) -> int:
        return self._count(self.TABLE_SECTIONS, "scroll_id", scroll_id)

    async def save_section(self, section: ChapterSection) -> ChapterSection:
        return self._upsert(self.TABLE_SECTIONS, section)

    async def count_scenes(self, section_id: str) -> int:
        return self._count(self.TABLE_SCENES, "section_id", section_id)

    async def save_scene(self, scene: ChapterScene) -> ChapterScene:
        return self._upsert(self.TABLE_SCENES, scene)

    async def list_world_bibles(self, plan_id: str, domain: str) -> List[WorldBible]:
        result = (
            self.client.table(self.TABLE_WORLD_BIBLES)
            .select("*")
            .eq("plan_id", plan_id)
            .eq("domain", domain)
            .order("created_at")
            .execute()
        )
        return self._parse(WorldBible, result.data)

    async def save_world_bible(self, world_bible: WorldBible) -> WorldBible:
        return self._upsert(self.TABLE_WORLD_BIBLES, world_bible)

    async def save_world_bible_entry(self, entry: WorldBibleEntry) -> WorldBibleEntry:
        return self._upsert(self.TABLE_WORLD_BIBLE_ENTRIES, entry)

    async def max_pass_index(self, plan_id: str) -> Optional[int]:
        result = (
            self.client.table(self.TABLE_PASSES)
            .select("pass_index")
            .eq("plan_id", plan_id)
            .order("pass_index", desc=True)
            .limit(1)
            .execute()
        )
        return result.data[0]["pass_index"] if result.data else None

    async def save_pass(self, plan_pass: PlanPass) -> PlanPass:
        return self._upsert(self.TABLE_PASSES, plan_pass)

    async def list_lore_requirements(
        self,
        plan_id: str,
        status: Optional[LoreRequirementStatus] = None,
    ) -> List[LoreRequirement]:
        query = self.client.table(self.TABLE_LORE).select("*").eq("plan_id", plan_id)
        if status is not None:
            query = query.eq("status", status.value)
        result = query.execute()
        return self._parse(LoreRequirement, result.data)

    async def get_lore_requirement(self, requirement_id: str) -> Optional[LoreRequirement]:
        result = self.client.table(self.TABLE_LORE).select("*").eq("id", requirement_id).limit(1).execute()
        return self._first(LoreRequirement, result.data)

    async def save_lore_requirement(self, requirement: LoreRequirement) -> LoreRequirement:
        return self._upsert(self.TABLE_LORE, requirement)

    # ========================================================================
    # Transcripts and audit
    # ========================================================================

    async def save_phase_transcripts(self, records: List[PhaseTranscriptRecord]) -> None:
        if not records:
            return
        self.client.table(self.TABLE_TRANSCRIPTS).insert([self._row(r) for r in records]).execute()

    async def save_planner_execution(self, record: PlannerExecutionRecord) -> None:
        self.client.table(self.TABLE_PLANNER_EXECUTIONS).insert(self._row(record)).execute()

    async def append_workflow_event(self, event: WorkflowEvent) -> None:
        self.client.table(self.TABLE_WORKFLOW_EVENTS).insert(self._row(event)).execute()
