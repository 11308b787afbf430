"""
Fiction Weaver Data Models Module
Pydantic records and phase execution value objects.
"""

from .phases import (
    DEFAULT_BRANCH,
    PhaseExecutionContext,
    PhaseResult,
    PhaseStatus,
    PhaseTranscript,
    merge_metadata,
    metadata_lookup,
)
from .schemas import (
    # Backlog Models
    BacklogItem,
    BacklogStatus,
    # Downstream Entities
    ChapterBlueprint,
    ChapterScene,
    ChapterScroll,
    ChapterSection,
    CheckpointStatus,
    ConversationTask,
    ConversationTaskStatus,
    JobPayload,
    LoreRequirement,
    LoreRequirementStatus,
    PhaseCheckpoint,
    PhaseKind,
    PhaseProgressEvent,
    PhaseTranscriptRecord,
    # Plan Models
    Plan,
    PlannerExecutionRecord,
    PlanPass,
    PlanStatus,
    SceneStatus,
    WorkflowEvent,
    WorldBible,
    WorldBibleEntry,
    new_id,
    utc_now,
)

__all__ = [
    "DEFAULT_BRANCH",
    "PhaseExecutionContext",
    "PhaseResult",
    "PhaseStatus",
    "PhaseTranscript",
    "merge_metadata",
    "metadata_lookup",
    "BacklogItem",
    "BacklogStatus",
    "ChapterBlueprint",
    "ChapterScene",
    "ChapterScroll",
    "ChapterSection",
    "CheckpointStatus",
    "ConversationTask",
    "ConversationTaskStatus",
    "JobPayload",
    "LoreRequirement",
    "LoreRequirementStatus",
    "PhaseCheckpoint",
    "PhaseKind",
    "PhaseProgressEvent",
    "PhaseTranscriptRecord",
    "Plan",
    "PlannerExecutionRecord",
    "PlanPass",
    "PlanStatus",
    "SceneStatus",
    "WorkflowEvent",
    "WorldBible",
    "WorldBibleEntry",
    "new_id",
    "utc_now",
]
