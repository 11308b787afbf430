"""
Planner quota resolution and enforcement.

Limits are layered most-general first: global defaults, planner override,
persona defaults, persona+planner override. A layer only replaces the
fields it sets explicitly. A limit of zero or less means "no cap", so a
narrower scope can lift a broader cap by setting it to 0.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Union

from pydantic import BaseModel, Field

Number = Union[int, float]


def _normalize_limit(value: Optional[Number]) -> Optional[Number]:
    if value is None:
        return None
    return None if value <= 0 else value


def _lookup(mapping: Dict[str, "QuotaLimits"], key: str) -> Optional["QuotaLimits"]:
    if key in mapping:
        return mapping[key]
    lowered = key.lower()
    for candidate, value in mapping.items():
        if candidate.lower() == lowered:
            return value
    return None


class QuotaLimits(BaseModel):
    """Resource limits for planner runs. ``None`` means unset."""
    max_iterations: Optional[int] = None
    max_queued_jobs: Optional[int] = None
    max_tokens: Optional[float] = None

    def normalized(self) -> "QuotaLimits":
        return QuotaLimits(
            max_iterations=_normalize_limit(self.max_iterations),
            max_queued_jobs=_normalize_limit(self.max_queued_jobs),
            max_tokens=_normalize_limit(self.max_tokens),
        )

    def apply(self, other: Optional["QuotaLimits"]) -> "QuotaLimits":
        """Return a copy with the fields ``other`` explicitly sets layered on top."""
        if other is None:
            return self.model_copy()
        return QuotaLimits(
            max_iterations=(
                _normalize_limit(other.max_iterations)
                if other.max_iterations is not None else self.max_iterations
            ),
            max_queued_jobs=(
                _normalize_limit(other.max_queued_jobs)
                if other.max_queued_jobs is not None else self.max_queued_jobs
            ),
            max_tokens=(
                _normalize_limit(other.max_tokens)
                if other.max_tokens is not None else self.max_tokens
            ),
        )


class PersonaQuotaOptions(BaseModel):
    defaults: QuotaLimits = Field(default_factory=QuotaLimits)
    planners: Dict[str, QuotaLimits] = Field(default_factory=dict)


class QuotaOptions(BaseModel):
    """Quota configuration keyed by planner name and persona id."""
    defaults: QuotaLimits = Field(default_factory=QuotaLimits)
    planners: Dict[str, QuotaLimits] = Field(default_factory=dict)
    personas: Dict[str, PersonaQuotaOptions] = Field(default_factory=dict)

    def resolve(self, planner_key: str, persona_id: Optional[str] = None) -> QuotaLimits:
        """
        Resolve the effective limits for a planner and persona.

        Args:
            planner_key: Planner name (case-insensitive)
            persona_id: Persona the planner runs for, if any

        Returns:
            The most specific limits after layering every matching scope
        """
        resolved = self.defaults.normalized()

        if planner_key:
            resolved = resolved.apply(_lookup(self.planners, planner_key))

        persona = self.personas.get(persona_id) if persona_id else None
        if persona is not None:
            resolved = resolved.apply(persona.defaults)
            if planner_key:
                resolved = resolved.apply(_lookup(persona.planners, planner_key))

        return resolved


class QuotaLimitKind(str, Enum):
    MAX_ITERATIONS = "max_iterations"
    MAX_QUEUED_JOBS = "max_queued_jobs"
    MAX_TOKENS = "max_tokens"


@dataclass(frozen=True)
class QuotaContext:
    """The dimensions a caller wants checked. Unset dimensions are skipped."""
    iteration_index: Optional[int] = None
    pending_jobs: Optional[int] = None
    requested_tokens: Optional[float] = None


@dataclass(frozen=True)
class QuotaDecision:
    is_allowed: bool
    limit: Optional[QuotaLimitKind] = None
    limit_value: Optional[float] = None
    reason: Optional[str] = None

    @classmethod
    def allowed(cls) -> "QuotaDecision":
        return cls(is_allowed=True)

    @classmethod
    def blocked(cls, limit: QuotaLimitKind, value: Optional[Number], reason: str) -> "QuotaDecision":
        return cls(is_allowed=False, limit=limit, limit_value=value, reason=reason)


class QuotaService:
    """Evaluates planner requests against the configured quotas."""

    def __init__(self, options: Optional[QuotaOptions] = None):
        self.options = options or QuotaOptions()

    def evaluate(
        self,
        planner_key: str,
        context: Optional[QuotaContext] = None,
        persona_id: Optional[str] = None,
    ) -> QuotaDecision:
        if not planner_key or not planner_key.strip():
            return QuotaDecision.allowed()

        context = context or QuotaContext()
        limits = self.options.resolve(planner_key, persona_id)

        if limits.max_iterations is not None and context.iteration_index is not None:
            if context.iteration_index >= limits.max_iterations:
                return QuotaDecision.blocked(
                    QuotaLimitKind.MAX_ITERATIONS,
                    limits.max_iterations,
                    f"Iteration {context.iteration_index} exceeds limit {limits.max_iterations}.",
                )

        if limits.max_queued_jobs is not None and context.pending_jobs is not None:
            if context.pending_jobs >= limits.max_queued_jobs:
                return QuotaDecision.blocked(
                    QuotaLimitKind.MAX_QUEUED_JOBS,
                    limits.max_queued_jobs,
                    f"Pending jobs {context.pending_jobs} reach limit {limits.max_queued_jobs}.",
                )

        if limits.max_tokens is not None and context.requested_tokens is not None:
            if context.requested_tokens > limits.max_tokens:
                return QuotaDecision.blocked(
                    QuotaLimitKind.MAX_TOKENS,
                    limits.max_tokens,
                    f"Requested tokens {context.requested_tokens} exceed limit {limits.max_tokens}.",
                )

        return QuotaDecision.allowed()
