"""
Phase execution value objects.

The execution context is immutable: it is built once per phase invocation
and passed explicitly down the call chain. Runners report back through
``PhaseResult``.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

from .schemas import PhaseKind

DEFAULT_BRANCH = "main"

_TRUTHY_FLAGS = ("true", "1", "yes")


class PhaseStatus(str, Enum):
    """Outcome a runner reports for one phase invocation."""
    COMPLETED = "completed"
    SKIPPED = "skipped"
    PENDING = "pending"
    NOT_IMPLEMENTED = "not_implemented"
    BLOCKED = "blocked"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def progress_label(self) -> str:
        """Status string used on progress events."""
        return self.value.replace("_", "-")


def metadata_lookup(metadata: Optional[Mapping[str, str]], key: str) -> Optional[str]:
    """Case-insensitive lookup in a string metadata bag."""
    if not metadata:
        return None
    if key in metadata:
        return metadata[key]
    lowered = key.lower()
    for candidate, value in metadata.items():
        if candidate.lower() == lowered:
            return value
    return None


def merge_metadata(
    base: Optional[Mapping[str, str]],
    overrides: Optional[Mapping[str, Any]],
) -> Dict[str, str]:
    """
    Merge two metadata bags case-insensitively.

    Keys from ``overrides`` replace keys in ``base`` regardless of casing and
    ``None`` values are dropped.
    """
    merged: Dict[str, str] = {}
    for source in (base, overrides):
        if not source:
            continue
        for key, value in source.items():
            if value is None:
                continue
            for existing in [k for k in merged if k.lower() == key.lower()]:
                del merged[existing]
            merged[key] = str(value)
    return merged


@dataclass(frozen=True)
class PhaseExecutionContext:
    """
    Describes one phase invocation.

    Attributes:
        plan_id: Plan the phase belongs to
        agent_id: Acting agent
        conversation_id: Conversation that owns the run
        branch_slug: Branch lineage; the engine fills in the plan default
        metadata: Read-only string bag (providerId, modelId, backlogItemId, taskId...)
        invoked_by_job_id: Queue job that triggered this invocation
    """
    plan_id: str
    agent_id: str
    conversation_id: str
    branch_slug: Optional[str] = None
    chapter_blueprint_id: Optional[str] = None
    chapter_scroll_id: Optional[str] = None
    chapter_scene_id: Optional[str] = None
    lore_requirement_id: Optional[str] = None
    iteration_index: Optional[int] = None
    metadata: Mapping[str, str] = field(default_factory=dict, hash=False)
    invoked_by_job_id: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata or {})))

    @property
    def branch(self) -> str:
        return self.branch_slug or DEFAULT_BRANCH

    def get(self, key: str) -> Optional[str]:
        return metadata_lookup(self.metadata, key)

    def has_flag(self, key: str) -> bool:
        value = self.get(key)
        return value is not None and value.strip().lower() in _TRUTHY_FLAGS

    @property
    def provider_id(self) -> Optional[str]:
        return self.get("providerId") or None

    @property
    def model_id(self) -> Optional[str]:
        return self.get("modelId") or None

    @property
    def backlog_item_id(self) -> Optional[str]:
        return self.get("backlogItemId") or None

    def evolve(self, **changes: Any) -> "PhaseExecutionContext":
        """Return a copy with ``changes`` applied."""
        return replace(self, **changes)

    def with_metadata(self, values: Mapping[str, Any]) -> "PhaseExecutionContext":
        return replace(self, metadata=merge_metadata(self.metadata, values))


@dataclass
class PhaseTranscript:
    """One request/response exchange a runner made while executing a phase."""
    agent_id: Optional[str] = None
    conversation_id: Optional[str] = None
    conversation_message_id: Optional[str] = None
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
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PhaseResult:
    """Result a phase runner hands back to the engine."""
    phase: PhaseKind
    status: PhaseStatus
    summary: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    exception: Optional[str] = None
    transcripts: List[PhaseTranscript] = field(default_factory=list)

    @classmethod
    def success(cls, phase: PhaseKind, summary: str, data: Optional[Dict[str, Any]] = None) -> "PhaseResult":
        return cls(phase=phase, status=PhaseStatus.COMPLETED, summary=summary, data=data or {})

    @classmethod
    def skipped(cls, phase: PhaseKind, summary: str) -> "PhaseResult":
        return cls(phase=phase, status=PhaseStatus.SKIPPED, summary=summary)

    @classmethod
    def pending(cls, phase: PhaseKind, summary: str) -> "PhaseResult":
        return cls(phase=phase, status=PhaseStatus.PENDING, summary=summary)

    @classmethod
    def not_implemented(cls, phase: PhaseKind) -> "PhaseResult":
        return cls(
            phase=phase,
            status=PhaseStatus.NOT_IMPLEMENTED,
            summary=f"Phase {phase.value} is not implemented yet.",
        )

    @classmethod
    def blocked(cls, phase: PhaseKind, summary: str, data: Optional[Dict[str, Any]] = None) -> "PhaseResult":
        return cls(phase=phase, status=PhaseStatus.BLOCKED, summary=summary, data=data or {})

    @classmethod
    def failed(cls, phase: PhaseKind, summary: str, exception: Optional[BaseException] = None) -> "PhaseResult":
        return cls(
            phase=phase,
            status=PhaseStatus.FAILED,
            summary=summary,
            exception=str(exception) if exception is not None else None,
        )

    @classmethod
    def cancelled(cls, phase: PhaseKind, summary: str) -> "PhaseResult":
        return cls(phase=phase, status=PhaseStatus.CANCELLED, summary=summary)
