"""
Self-critique budgeting for planner runs.

A ``CritiqueBudgetManager`` lives for one planner execution. Each critique
pass asks for an attempt; counts are reserved when the attempt begins so
abandoned attempts still consume the count budget.
"""

import logging
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger("weaver.planner.critique")

UNKNOWN_STEP = "unknown-step"


class CritiqueBudget(BaseModel):
    """Critique ceilings. A limit applies when it is set and not negative."""
    max_total_critiques: Optional[int] = 0
    max_critiques_per_step: Optional[int] = 0
    max_total_critique_tokens: Optional[float] = 0

    def apply(self, other: Optional["CritiqueBudget"]) -> "CritiqueBudget":
        if other is None:
            return self.model_copy()
        return CritiqueBudget(
            max_total_critiques=(
                other.max_total_critiques if other.max_total_critiques is not None else self.max_total_critiques
            ),
            max_critiques_per_step=(
                other.max_critiques_per_step
                if other.max_critiques_per_step is not None else self.max_critiques_per_step
            ),
            max_total_critique_tokens=(
                other.max_total_critique_tokens
                if other.max_total_critique_tokens is not None else self.max_total_critique_tokens
            ),
        )


class PlannerCritiqueSettings(BaseModel):
    enabled: bool = False
    budget: Optional[CritiqueBudget] = None
    persona_allow_list: List[str] = Field(default_factory=list)


class CritiqueOptions(BaseModel):
    """Global critique switch, default budget and per-planner settings."""
    enabled: bool = False
    defaults: CritiqueBudget = Field(default_factory=CritiqueBudget)
    planner_overrides: Dict[str, CritiqueBudget] = Field(default_factory=dict)
    planner_settings: Dict[str, PlannerCritiqueSettings] = Field(default_factory=dict)

    def _settings_for(self, planner_name: str) -> Optional[PlannerCritiqueSettings]:
        lowered = (planner_name or "").lower()
        for name, settings in self.planner_settings.items():
            if name.lower() == lowered:
                return settings
        return None

    def resolve_budget(self, planner_name: str) -> CritiqueBudget:
        baseline = self.defaults.model_copy()
        if not planner_name:
            return baseline
        settings = self._settings_for(planner_name)
        if settings is not None and settings.budget is not None:
            return baseline.apply(settings.budget)
        for name, budget in self.planner_overrides.items():
            if name.lower() == planner_name.lower():
                return baseline.apply(budget)
        return baseline

    def is_planner_enabled(self, planner_name: str, persona_id: Optional[str], fallback: bool = False) -> bool:
        """
        Whether critique runs for ``planner_name`` and ``persona_id``.

        Planner settings win over ``fallback``; a non-empty allow-list limits
        critique to the listed personas.
        """
        if not self.enabled:
            return False
        settings = self._settings_for(planner_name) if planner_name else None
        if settings is None:
            return fallback
        if not settings.enabled:
            return False
        if settings.persona_allow_list:
            return persona_id is not None and persona_id in settings.persona_allow_list
        return True


class CritiqueBudgetStatus(str, Enum):
    ALLOWED = "allowed"
    DISABLED = "disabled"
    TOTAL_LIMIT_REACHED = "total_limit_reached"
    STEP_LIMIT_REACHED = "step_limit_reached"
    TOKEN_BUDGET_EXCEEDED = "token_budget_exceeded"


def _limit(value):
    return value if value is not None and value >= 0 else None


class CritiqueAttempt:
    """
    One critique pass. Call ``complete`` with the tokens spent, or
    ``dispose`` to release it; usable as a context manager.
    """

    def __init__(self, manager: "CritiqueBudgetManager", step_id: str, status: CritiqueBudgetStatus):
        self._manager = manager
        self.step_id = step_id
        self.status = status
        self._completed = False

    @property
    def allowed(self) -> bool:
        return self.status == CritiqueBudgetStatus.ALLOWED

    def complete(self, tokens_used: float) -> None:
        if not self.allowed or self._completed:
            return
        self._manager.record_tokens(tokens_used)
        self._completed = True

    def dispose(self) -> None:
        if self.allowed and not self._completed:
            self._manager.record_tokens(0)
            self._completed = True

    def __enter__(self) -> "CritiqueAttempt":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.dispose()


class CritiqueBudgetManager:
    """Tracks critique counts and tokens for a single planner run."""

    def __init__(self, enabled: bool, budget: Optional[CritiqueBudget] = None):
        self.enabled = enabled
        self.budget = budget or CritiqueBudget()
        self.total_critiques = 0
        self.total_tokens = 0.0
        self.denials: Dict[CritiqueBudgetStatus, int] = {}
        self._per_step: Dict[str, int] = {}
        self._token_budget_breached = False

    @classmethod
    def disabled(cls) -> "CritiqueBudgetManager":
        return cls(False, CritiqueBudget())

    def begin_critique(self, step_id: str, estimated_tokens: float = 0) -> CritiqueAttempt:
        step_id = step_id.strip() if step_id and step_id.strip() else UNKNOWN_STEP
        step_key = step_id.lower()

        if not self.enabled:
            return self._deny(step_id, CritiqueBudgetStatus.DISABLED)

        max_total = _limit(self.budget.max_total_critiques)
        if max_total is not None and self.total_critiques >= max_total:
            logger.info(f"Critique denied for step {step_id}: total critique limit reached ({max_total})")
            return self._deny(step_id, CritiqueBudgetStatus.TOTAL_LIMIT_REACHED)

        max_per_step = _limit(self.budget.max_critiques_per_step)
        if max_per_step is not None and self._per_step.get(step_key, 0) >= max_per_step:
            logger.info(f"Critique denied for step {step_id}: per-step critique limit reached ({max_per_step})")
            return self._deny(step_id, CritiqueBudgetStatus.STEP_LIMIT_REACHED)

        max_tokens = _limit(self.budget.max_total_critique_tokens)
        if max_tokens is not None and self.total_tokens + estimated_tokens > max_tokens:
            logger.info(f"Critique denied for step {step_id}: estimated tokens would exceed limit ({max_tokens})")
            return self._deny(step_id, CritiqueBudgetStatus.TOKEN_BUDGET_EXCEEDED)

        self.total_critiques += 1
        self._per_step[step_key] = self._per_step.get(step_key, 0) + 1
        return CritiqueAttempt(self, step_id, CritiqueBudgetStatus.ALLOWED)

    def _deny(self, step_id: str, status: CritiqueBudgetStatus) -> CritiqueAttempt:
        self.register_denial(status)
        return CritiqueAttempt(self, step_id, status)

    def register_denial(self, status: CritiqueBudgetStatus) -> None:
        self.denials[status] = self.denials.get(status, 0) + 1

    def record_tokens(self, tokens_used: float) -> None:
        if tokens_used <= 0:
            return
        self.total_tokens += tokens_used
        max_tokens = _limit(self.budget.max_total_critique_tokens)
        if max_tokens is not None and self.total_tokens > max_tokens:
            self._token_budget_breached = True

    @property
    def status(self) -> str:
        if not self.enabled:
            return "disabled"
        if self._token_budget_breached or CritiqueBudgetStatus.TOKEN_BUDGET_EXCEEDED in self.denials:
            return "token-exhausted"
        if (
            CritiqueBudgetStatus.TOTAL_LIMIT_REACHED in self.denials
            or CritiqueBudgetStatus.STEP_LIMIT_REACHED in self.denials
        ):
            return "count-exhausted"
        if self.total_critiques > 0:
            return "used"
        return "idle"

    def apply_metrics(self, result) -> None:
        """Write critique metrics and the ``critiqueStatus`` diagnostic onto a PlannerResult."""
        if not self.enabled:
            result.add_diagnostics("critiqueStatus", "disabled")
            return
        if self.total_critiques > 0:
            result.add_metric("critiqueCount", self.total_critiques)
        if self.total_tokens > 0:
            result.add_metric("critiqueTokens", self.total_tokens)
        if self.denials:
            result.add_metric("critiqueDenied", sum(self.denials.values()))
        result.add_diagnostics("critiqueStatus", self.status)
