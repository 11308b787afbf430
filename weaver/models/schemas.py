"""
Pydantic data models for the fiction weaver.
Persisted records for plans, checkpoints, backlog work and the stub
generation entities the scheduler materializes.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    """Timezone-aware UTC timestamp used for every persisted record."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


# ============================================================================
# Enums
# ============================================================================

class PlanStatus(str, Enum):
    """Lifecycle of a fiction plan."""
    DRAFT = "draft"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    CANCELLED = "cancelled"


class CheckpointStatus(str, Enum):
    """Execution state of one phase key."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    CANCELLED = "cancelled"


class BacklogStatus(str, Enum):
    """Backlog item lifecycle."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"

    @classmethod
    def parse(cls, value: Optional[str]) -> "BacklogStatus":
        """
        Parse the loose status strings planners emit.

        Accepts in_progress / in-progress / inprogress and complete / completed,
        anything else is treated as pending.
        """
        normalized = (value or "").strip().lower()
        if normalized in ("in_progress", "in-progress", "inprogress"):
            return cls.IN_PROGRESS
        if normalized in ("complete", "completed"):
            return cls.COMPLETE
        return cls.PENDING


class PhaseKind(str, Enum):
    """Named stages of the generation pipeline."""
    VISION_PLANNER = "vision_planner"
    WORLD_BIBLE_MANAGER = "world_bible_manager"
    ITERATIVE_PLANNER = "iterative_planner"
    CHAPTER_ARCHITECT = "chapter_architect"
    SCROLL_REFINER = "scroll_refiner"
    SCENE_WEAVER = "scene_weaver"
    LORE_FULFILLMENT = "lore_fulfillment"


class LoreRequirementStatus(str, Enum):
    """Readiness of a piece of lore a scene depends on."""
    PLANNED = "planned"
    BLOCKED = "blocked"
    READY = "ready"


class SceneStatus(str, Enum):
    PENDING = "pending"
    DRAFTED = "drafted"
    FINAL = "final"


# ============================================================================
# Plan, Checkpoint and Backlog Models
# ============================================================================

class Plan(BaseModel):
    """The unit of work being generated (one story)."""
    id: str = Field(default_factory=new_id)
    name: str = ""
    status: PlanStatus = PlanStatus.DRAFT
    primary_branch_slug: Optional[str] = None
    current_conversation_plan_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: Optional[datetime] = None
    version: int = 0


class PhaseCheckpoint(BaseModel):
    """
    Persisted execution state for one (plan, phase key).

    Lock fields are advisory observability data and are only populated
    while the checkpoint is in progress.
    """
    id: str = Field(default_factory=new_id)
    plan_id: str
    phase_key: str
    phase: PhaseKind
    branch_slug: str = "main"
    status: CheckpointStatus = CheckpointStatus.PENDING
    locked_by_agent_id: Optional[str] = None
    locked_by_conversation_id: Optional[str] = None
    locked_at: Optional[datetime] = None
    completed_count: Optional[int] = None
    target_count: Optional[int] = None
    progress: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: Optional[datetime] = None
    version: int = 0

    def clear_lock(self) -> None:
        self.locked_by_agent_id = None
        self.locked_by_conversation_id = None
        self.locked_at = None

    @property
    def is_locked(self) -> bool:
        return any(
            value is not None
            for value in (self.locked_by_agent_id, self.locked_by_conversation_id, self.locked_at)
        )


class BacklogItem(BaseModel):
    """
    One schedulable unit of generation work.

    ``outputs`` holds both semantic output tags (``chapter-blueprint``) and
    ``key=value`` tokens recording ids of entities produced for this item.
    Use ``core.backlog_tokens`` to read and write the tokens.
    """
    id: str = Field(default_factory=new_id)
    plan_id: str
    backlog_id: str
    description: str = ""
    status: BacklogStatus = BacklogStatus.PENDING
    inputs: List[str] = Field(default_factory=list)
    outputs: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    in_progress_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    version: int = 0


class ConversationTaskStatus:
    """Status strings stored on ``ConversationTask.status``."""
    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    BLOCKED = "Blocked"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


class ConversationTask(BaseModel):
    """Conversation-plan task paired with a backlog item."""
    id: str = Field(default_factory=new_id)
    conversation_plan_id: str
    backlog_item_id: Optional[str] = None
    step_number: int = 1
    tool_name: Optional[str] = None
    status: str = "Pending"
    provider_id: Optional[str] = None
    model_id: Optional[str] = None
    agent_id: Optional[str] = None
    args: Dict[str, Any] = Field(default_factory=dict)
    observation: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: Optional[datetime] = None


# ============================================================================
# Downstream Generation Entities
# ============================================================================

class ChapterBlueprint(BaseModel):
    id: str = Field(default_factory=new_id)
    plan_id: str
    chapter_index: int
    chapter_slug: str
    title: str = ""
    synopsis: str = ""
    created_at: datetime = Field(default_factory=utc_now)


class ChapterScroll(BaseModel):
    id: str = Field(default_factory=new_id)
    blueprint_id: str
    version_index: int = 1
    scroll_slug: str
    title: str = ""
    synopsis: str = ""
    created_at: datetime = Field(default_factory=utc_now)


class ChapterSection(BaseModel):
    id: str = Field(default_factory=new_id)
    scroll_id: str
    section_index: int
    section_slug: str
    title: str = ""
    description: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)


class ChapterScene(BaseModel):
    id: str = Field(default_factory=new_id)
    section_id: str
    scene_index: int
    scene_slug: str
    title: str = ""
    description: Optional[str] = None
    status: SceneStatus = SceneStatus.PENDING
    created_at: datetime = Field(default_factory=utc_now)


class WorldBible(BaseModel):
    """World bible per (plan, domain, branch). A null branch means the default branch."""
    id: str = Field(default_factory=new_id)
    plan_id: str
    domain: str = "core"
    branch_slug: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: Optional[datetime] = None


class WorldBibleEntry(BaseModel):
    id: str = Field(default_factory=new_id)
    world_bible_id: str
    entry_slug: str
    entry_name: str
    summary: str = ""
    created_at: datetime = Field(default_factory=utc_now)


class PlanPass(BaseModel):
    """One iterative planning pass."""
    id: str = Field(default_factory=new_id)
    plan_id: str
    pass_index: int
    title: str = ""
    created_at: datetime = Field(default_factory=utc_now)


class LoreRequirement(BaseModel):
    """A piece of lore a scene or scroll needs before it can be written."""
    id: str = Field(default_factory=new_id)
    plan_id: str
    requirement_slug: str
    title: str
    status: LoreRequirementStatus = LoreRequirementStatus.PLANNED
    description: Optional[str] = None
    notes: Optional[str] = None
    world_bible_entry_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: Optional[datetime] = None


# ============================================================================
# Transcript, Workflow and Event Models
# ============================================================================

class PhaseTranscriptRecord(BaseModel):
    """Persisted form of a runner transcript, stamped with checkpoint data."""
    id: str = Field(default_factory=new_id)
    plan_id: str
    checkpoint_id: str
    phase: PhaseKind
    phase_key: str
    branch_slug: str
    agent_id: Optional[str] = None
    conversation_id: Optional[str] = None
    chapter_blueprint_id: Optional[str] = None
    chapter_scroll_id: Optional[str] = None
    chapter_scene_id: Optional[str] = None
    attempt: int = 1
    is_retry: bool = False
    request_payload: Optional[str] = None
    response_payload: Optional[str] = None
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    latency_ms: Optional[float] = None
    validation_status: Optional[str] = None
    validation_details: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)


class PlannerExecutionRecord(BaseModel):
    """Transcript store record for one planner run."""
    id: str = Field(default_factory=new_id)
    planner_name: str
    outcome: str
    agent_id: Optional[str] = None
    conversation_id: Optional[str] = None
    artifacts: Dict[str, Any] = Field(default_factory=dict)
    metrics: Dict[str, float] = Field(default_factory=dict)
    diagnostics: Dict[str, str] = Field(default_factory=dict)
    transcript: List[Dict[str, Any]] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)


class WorkflowEvent(BaseModel):
    """Append-only audit record."""
    id: str = Field(default_factory=new_id)
    conversation_id: Optional[str] = None
    kind: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)


class PhaseProgressEvent(BaseModel):
    """Event bus message emitted for each phase-progress transition."""
    plan_id: str
    conversation_id: Optional[str] = None
    agent_id: Optional[str] = None
    branch_slug: str
    phase: str
    status: str
    summary: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)


class JobPayload(BaseModel):
    """Payload for the Redis job queue. One job runs one phase."""
    job_id: str = Field(default_factory=new_id)
    plan_id: str
    phase: PhaseKind
    agent_id: str
    conversation_id: str
    provider_id: str
    model_id: Optional[str] = None
    branch_slug: str = "main"
    chapter_blueprint_id: Optional[str] = None
    chapter_scroll_id: Optional[str] = None
    chapter_scene_id: Optional[str] = None
    lore_requirement_id: Optional[str] = None
    iteration_index: Optional[int] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    retry_count: int = 0
    max_retries: int = 3
