"""
Planner Execution Framework.

Phases that are iterative LLM planning loops subclass ``PlannerBase``. The
base class owns everything around the planning algorithm itself: parameter
validation, template checks, quota enforcement, critique budgeting,
telemetry, timing and best-effort transcript persistence.
"""

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, Type, TypeVar

from models import BacklogStatus, PlannerExecutionRecord, utc_now

from .critique import CritiqueBudget, CritiqueBudgetManager, CritiqueOptions
from .errors import PlannerParameterError, PlannerTemplateMissingError
from .quota import QuotaContext, QuotaDecision, QuotaService

logger = logging.getLogger("weaver.planner")


# ============================================================================
# Contracts
# ============================================================================

class PlannerOutcome(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PlannerStepStatus(str, Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class PlannerStepDescriptor:
    id: str
    display_name: str
    template_id: Optional[str] = None


@dataclass(frozen=True)
class PlannerCritiqueProfile:
    """Critique policy a planner declares in its metadata."""
    enabled: bool = False
    budget: Optional[CritiqueBudget] = None
    persona_allow_list: tuple = ()

    def allows_persona(self, persona_id: Optional[str]) -> bool:
        if not self.enabled:
            return False
        if not self.persona_allow_list:
            return True
        return persona_id is not None and persona_id in self.persona_allow_list


@dataclass(frozen=True)
class PlannerMetadata:
    name: str
    description: str = ""
    capabilities: tuple = ()
    steps: tuple = ()
    default_settings: Dict[str, Any] = field(default_factory=dict, hash=False)
    telemetry_tags: Dict[str, str] = field(default_factory=dict, hash=False)
    critique_profile: PlannerCritiqueProfile = PlannerCritiqueProfile()


@dataclass(frozen=True)
class PlannerStepRecord:
    step_id: str
    status: PlannerStepStatus
    output: Dict[str, Any] = field(default_factory=dict, hash=False)
    duration_ms: float = 0.0


@dataclass(frozen=True)
class PlannerBacklogItem:
    """Backlog work a planner proposes (vision planning emits these)."""
    id: str
    description: str = ""
    status: BacklogStatus = BacklogStatus.PENDING
    inputs: tuple = ()
    outputs: tuple = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "status": self.status.value,
            "inputs": list(self.inputs),
            "outputs": list(self.outputs),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PlannerBacklogItem":
        lowered = {str(k).lower(): v for k, v in data.items()}
        return cls(
            id=str(lowered.get("id") or lowered.get("backlogid") or "").strip(),
            description=str(lowered.get("description") or ""),
            status=BacklogStatus.parse(lowered.get("status")),
            inputs=tuple(str(i) for i in lowered.get("inputs") or () if i),
            outputs=tuple(str(o) for o in lowered.get("outputs") or () if o),
        )


@dataclass(frozen=True)
class PlannerTranscriptEntry:
    role: str
    message: str
    metadata: Optional[Dict[str, Any]] = field(default=None, hash=False)
    timestamp: Any = field(default_factory=utc_now)


class PlannerResult:
    """
    Result of one planner execution.

    Only the builder methods mutate it. ``to_dict`` produces the
    JSON-friendly form used by transcripts and phase data.
    """

    def __init__(self, outcome: PlannerOutcome = PlannerOutcome.SUCCESS):
        self.outcome = outcome
        self._artifacts: Dict[str, Any] = {}
        self._steps: List[PlannerStepRecord] = []
        self._transcript: List[PlannerTranscriptEntry] = []
        self._metrics: Dict[str, float] = {}
        self._diagnostics: Dict[str, str] = {}
        self._backlog: List[PlannerBacklogItem] = []

    @classmethod
    def success(cls) -> "PlannerResult":
        return cls(PlannerOutcome.SUCCESS)

    @classmethod
    def from_outcome(cls, outcome: PlannerOutcome) -> "PlannerResult":
        return cls(outcome)

    @property
    def artifacts(self) -> Dict[str, Any]:
        return dict(self._artifacts)

    @property
    def steps(self) -> List[PlannerStepRecord]:
        return list(self._steps)

    @property
    def transcript(self) -> List[PlannerTranscriptEntry]:
        return list(self._transcript)

    @property
    def metrics(self) -> Dict[str, float]:
        return dict(self._metrics)

    @property
    def diagnostics(self) -> Dict[str, str]:
        return dict(self._diagnostics)

    @property
    def backlog(self) -> List[PlannerBacklogItem]:
        return list(self._backlog)

    def add_artifact(self, key: str, value: Any) -> "PlannerResult":
        self._artifacts[key] = value
        return self

    def add_step(self, step: PlannerStepRecord) -> "PlannerResult":
        self._steps.append(step)
        return self

    def add_transcript(self, *entries: PlannerTranscriptEntry) -> "PlannerResult":
        self._transcript.extend(entries)
        return self

    def add_metric(self, name: str, value: float) -> "PlannerResult":
        self._metrics[name] = float(value)
        return self

    def add_diagnostics(self, key: str, value: str) -> "PlannerResult":
        self._diagnostics[key] = value
        return self

    def set_backlog(self, items: List[PlannerBacklogItem]) -> "PlannerResult":
        self._backlog = list(items)
        return self

    def add_backlog(self, *items: PlannerBacklogItem) -> "PlannerResult":
        self._backlog.extend(items)
        return self

    def try_get_artifact(self, key: str, default: Any = None) -> Any:
        return self._artifacts.get(key, default)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "artifacts": dict(self._artifacts),
            "steps": [
                {
                    "id": s.step_id,
                    "status": s.status.value,
                    "durationMs": s.duration_ms,
                    "output": s.output,
                }
                for s in self._steps
            ],
            "transcript": [
                {
                    "timestampUtc": t.timestamp.isoformat(),
                    "role": t.role,
                    "message": t.message,
                    "metadata": t.metadata,
                }
                for t in self._transcript
            ],
            "metrics": dict(self._metrics),
            "diagnostics": dict(self._diagnostics),
            "backlog": [item.to_dict() for item in self._backlog],
        }


@dataclass(frozen=True)
class PlannerContext:
    """Who a planner runs for and which quota dimensions apply."""
    agent_id: Optional[str] = None
    conversation_id: Optional[str] = None
    persona_id: Optional[str] = None
    plan_id: Optional[str] = None
    environment: Optional[str] = None
    correlation_id: Optional[str] = None
    supports_self_critique: bool = False
    iteration_index: Optional[int] = None
    pending_jobs: Optional[int] = None
    requested_tokens: Optional[float] = None
    state: Dict[str, Any] = field(default_factory=dict, hash=False)

    @property
    def effective_persona_id(self) -> Optional[str]:
        """Persona that critique and quota rules key on, falling back to the agent."""
        return self.persona_id or self.agent_id


class PlannerParameters:
    """Loosely-typed parameter bag; subclasses add typed accessors."""

    def __init__(self, values: Optional[Dict[str, Any]] = None):
        self._values: Dict[str, Any] = dict(values or {})

    @property
    def values(self) -> Dict[str, Any]:
        return dict(self._values)

    def get(self, key: str, default: Any = None) -> Any:
        if key in self._values:
            return self._values[key]
        lowered = key.lower()
        for candidate, value in self._values.items():
            if candidate.lower() == lowered:
                return value
        return default

    def set(self, key: str, value: Any) -> "PlannerParameters":
        self._values[key] = value
        return self


# ============================================================================
# Telemetry
# ============================================================================

@dataclass(frozen=True)
class PlannerTelemetryContext:
    planner_name: str
    capabilities: tuple = ()
    agent_id: Optional[str] = None
    conversation_id: Optional[str] = None
    persona_id: Optional[str] = None
    environment: Optional[str] = None
    supports_self_critique: bool = False
    telemetry_tags: Dict[str, str] = field(default_factory=dict, hash=False)
    correlation_id: Optional[str] = None


class PlannerTelemetry(ABC):
    """Hooks fired around every planner execution."""

    @abstractmethod
    async def plan_started(self, context: PlannerTelemetryContext) -> None:
        pass

    @abstractmethod
    async def plan_completed(self, context: PlannerTelemetryContext, result: PlannerResult) -> None:
        pass

    @abstractmethod
    async def plan_failed(self, context: PlannerTelemetryContext, error: BaseException) -> None:
        pass

    @abstractmethod
    async def plan_cancelled(self, context: PlannerTelemetryContext) -> None:
        pass

    @abstractmethod
    async def plan_blocked(self, context: PlannerTelemetryContext, decision: QuotaDecision) -> None:
        pass


class LoggerPlannerTelemetry(PlannerTelemetry):
    """Writes planner telemetry events to the ``weaver.planner.telemetry`` logger."""

    def __init__(self, telemetry_logger: Optional[logging.Logger] = None):
        self._logger = telemetry_logger or logging.getLogger("weaver.planner.telemetry")

    def _log(self, name: str, context: PlannerTelemetryContext, **extra: Any) -> None:
        payload = {
            "planner": context.planner_name,
            "event": name,
            "agentId": context.agent_id,
            "conversationId": context.conversation_id,
            "personaId": context.persona_id,
            "environment": context.environment,
            "supportsSelfCritique": context.supports_self_critique,
            "capabilities": list(context.capabilities),
            "tags": context.telemetry_tags,
        }
        payload.update(extra)
        self._logger.info(f"{name} {json.dumps(payload, default=str)}")

    async def plan_started(self, context: PlannerTelemetryContext) -> None:
        self._log("planner.started", context)

    async def plan_completed(self, context: PlannerTelemetryContext, result: PlannerResult) -> None:
        self._log(
            "planner.completed",
            context,
            outcome=result.outcome.value,
            durationMs=result.metrics.get("durationMs", 0.0),
            metrics=result.metrics,
            diagnostics=result.diagnostics,
            steps=[
                {"id": s.step_id, "status": s.status.value, "durationMs": s.duration_ms}
                for s in result.steps
            ],
        )

    async def plan_failed(self, context: PlannerTelemetryContext, error: BaseException) -> None:
        self._log("planner.failed", context, error=str(error), exceptionType=type(error).__name__)

    async def plan_cancelled(self, context: PlannerTelemetryContext) -> None:
        self._log("planner.cancelled", context)

    async def plan_blocked(self, context: PlannerTelemetryContext, decision: QuotaDecision) -> None:
        self._log(
            "planner.quota_blocked",
            context,
            limit=decision.limit.value if decision.limit else None,
            limitValue=decision.limit_value,
            reason=decision.reason,
        )


class CompositePlannerTelemetry(PlannerTelemetry):
    """Fans every event out to several telemetry sinks."""

    def __init__(self, *sinks: PlannerTelemetry):
        self.sinks = list(sinks)

    async def plan_started(self, context):
        for sink in self.sinks:
            await sink.plan_started(context)

    async def plan_completed(self, context, result):
        for sink in self.sinks:
            await sink.plan_completed(context, result)

    async def plan_failed(self, context, error):
        for sink in self.sinks:
            await sink.plan_failed(context, error)

    async def plan_cancelled(self, context):
        for sink in self.sinks:
            await sink.plan_cancelled(context)

    async def plan_blocked(self, context, decision):
        for sink in self.sinks:
            await sink.plan_blocked(context, decision)


# ============================================================================
# Transcript store and templates
# ============================================================================

class PlannerTranscriptStore:
    """Persists a ``PlannerExecutionRecord`` for each planner run."""

    def __init__(self, repository):
        self.repository = repository

    async def store(self, context: PlannerContext, metadata: PlannerMetadata, result: PlannerResult) -> None:
        data = result.to_dict()
        record = PlannerExecutionRecord(
            planner_name=metadata.name,
            outcome=result.outcome.value,
            agent_id=context.agent_id,
            conversation_id=context.conversation_id,
            artifacts=data["artifacts"],
            metrics=data["metrics"],
            diagnostics=data["diagnostics"],
            transcript=data["transcript"],
        )
        await self.repository.save_planner_execution(record)


class NullPlannerTranscriptStore(PlannerTranscriptStore):
    def __init__(self):
        super().__init__(repository=None)

    async def store(self, context, metadata, result) -> None:
        return None


class PlannerTemplateRepository:
    """Prompt templates keyed by id. The template text itself is owned by the content layer."""

    def __init__(self, templates: Optional[Dict[str, str]] = None):
        self._templates = dict(templates or {})

    async def get_template(self, template_id: str) -> Optional[str]:
        return self._templates.get(template_id)


# ============================================================================
# Planner base
# ============================================================================

ParametersT = TypeVar("ParametersT", bound=PlannerParameters)


class PlannerBase(ABC, Generic[ParametersT]):
    """
    Base class for multi-step planners.

    Subclasses declare ``metadata`` and implement ``execute_plan``. Inside
    ``execute_plan`` the current critique budget is available as
    ``self.critique``.
    """

    parameters_type: Type[PlannerParameters] = PlannerParameters

    def __init__(
        self,
        telemetry: Optional[PlannerTelemetry] = None,
        transcript_store: Optional[PlannerTranscriptStore] = None,
        template_repository: Optional[PlannerTemplateRepository] = None,
        critique_options: Optional[CritiqueOptions] = None,
        quota_service: Optional[QuotaService] = None,
    ):
        self.telemetry = telemetry or LoggerPlannerTelemetry()
        self.transcript_store = transcript_store or NullPlannerTranscriptStore()
        self.template_repository = template_repository
        self.critique_options = critique_options or CritiqueOptions()
        self.quota_service = quota_service
        self._critique: Optional[CritiqueBudgetManager] = None

    @property
    @abstractmethod
    def metadata(self) -> PlannerMetadata:
        pass

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def critique(self) -> CritiqueBudgetManager:
        return self._critique or CritiqueBudgetManager.disabled()

    @abstractmethod
    async def execute_plan(self, context: PlannerContext, parameters: ParametersT) -> PlannerResult:
        pass

    def convert_parameters(self, parameters: PlannerParameters) -> ParametersT:
        if isinstance(parameters, self.parameters_type):
            return parameters
        return self.parameters_type(parameters.values)

    def validate_inputs(self, parameters: ParametersT) -> None:
        """Raise ``PlannerParameterError`` for invalid parameters."""
        pass

    async def plan(self, context: PlannerContext, parameters: Optional[PlannerParameters] = None) -> PlannerResult:
        """
        Run the planner.

        Args:
            context: Who the planner runs for
            parameters: Planner-specific parameters

        Returns:
            The planner result. A quota denial returns a Failed result
            carrying ``quota*`` diagnostics instead of raising.

        Raises:
            PlannerParameterError: parameters failed validation
            PlannerTemplateMissingError: a step template does not exist
        """
        typed_parameters = self.convert_parameters(parameters or PlannerParameters())
        logger.debug(f"Planner {self.name} validating {type(typed_parameters).__name__}")
        self.validate_inputs(typed_parameters)
        await self._ensure_required_templates()

        persona_id = context.effective_persona_id
        metadata_allows = self.metadata.critique_profile.allows_persona(persona_id)
        critique_enabled = self.critique_options.is_planner_enabled(self.name, persona_id, metadata_allows)

        telemetry_context = PlannerTelemetryContext(
            planner_name=self.name,
            capabilities=tuple(self.metadata.capabilities),
            agent_id=context.agent_id,
            conversation_id=context.conversation_id,
            persona_id=context.persona_id,
            environment=context.environment,
            supports_self_critique=critique_enabled,
            telemetry_tags=dict(self.metadata.telemetry_tags),
            correlation_id=context.correlation_id,
        )

        decision = self._evaluate_quota(context)
        if not decision.is_allowed:
            logger.warning(
                f"Planner quota exceeded for {self.name} "
                f"(limit={decision.limit.value}, value={decision.limit_value}) "
                f"conversation={context.conversation_id}"
            )
            await self.telemetry.plan_blocked(telemetry_context, decision)
            result = PlannerResult.from_outcome(PlannerOutcome.FAILED)
            result.add_diagnostics("quotaLimit", decision.limit.value)
            result.add_diagnostics("quotaValue", str(decision.limit_value))
            result.add_diagnostics("quotaReason", decision.reason or "")
            return result

        if context.supports_self_critique != critique_enabled:
            context = replace(context, supports_self_critique=critique_enabled)

        logger.info(
            f"Planner {self.name} starting (agent={context.agent_id}, conversation={context.conversation_id})"
        )
        await self.telemetry.plan_started(telemetry_context)
        started = time.perf_counter()
        self._critique = CritiqueBudgetManager(critique_enabled, self.critique_options.resolve_budget(self.name))
        try:
            result = await self.execute_plan(context, typed_parameters)
            self._critique.apply_metrics(result)
            duration_ms = (time.perf_counter() - started) * 1000
            result.add_metric("durationMs", duration_ms)
            try:
                await self.transcript_store.store(context, self.metadata, result)
            except Exception as e:
                logger.warning(f"Planner {self.name} transcript store failed: {e}", exc_info=True)
            logger.info(f"Planner {self.name} completed in {duration_ms:.0f}ms with outcome {result.outcome.value}")
            await self.telemetry.plan_completed(telemetry_context, result)
            return result
        except asyncio.CancelledError:
            duration_ms = (time.perf_counter() - started) * 1000
            logger.warning(f"Planner {self.name} cancelled after {duration_ms:.0f}ms")
            await self.telemetry.plan_cancelled(telemetry_context)
            raise
        except Exception as e:
            duration_ms = (time.perf_counter() - started) * 1000
            logger.error(f"Planner {self.name} failed after {duration_ms:.0f}ms: {e}", exc_info=True)
            await self.telemetry.plan_failed(telemetry_context, e)
            raise
        finally:
            self._critique = None

    def _evaluate_quota(self, context: PlannerContext) -> QuotaDecision:
        if self.quota_service is None:
            return QuotaDecision.allowed()
        return self.quota_service.evaluate(
            self.name,
            QuotaContext(
                iteration_index=context.iteration_index,
                pending_jobs=context.pending_jobs,
                requested_tokens=context.requested_tokens,
            ),
            context.effective_persona_id,
        )

    async def _ensure_required_templates(self) -> None:
        if not self.metadata.steps or self.template_repository is None:
            return
        checked = set()
        for step in self.metadata.steps:
            if not step.template_id or step.template_id.lower() in checked:
                continue
            checked.add(step.template_id.lower())
            template = await self.template_repository.get_template(step.template_id)
            if not template or not template.strip():
                raise PlannerTemplateMissingError(
                    f"Planner '{self.name}' requires template '{step.template_id}' "
                    f"for step '{step.id}', but it was not found."
                )


__all__ = [
    "CompositePlannerTelemetry",
    "LoggerPlannerTelemetry",
    "NullPlannerTranscriptStore",
    "PlannerBacklogItem",
    "PlannerBase",
    "PlannerContext",
    "PlannerCritiqueProfile",
    "PlannerMetadata",
    "PlannerOutcome",
    "PlannerParameterError",
    "PlannerParameters",
    "PlannerResult",
    "PlannerStepDescriptor",
    "PlannerStepRecord",
    "PlannerStepStatus",
    "PlannerTelemetry",
    "PlannerTelemetryContext",
    "PlannerTemplateRepository",
    "PlannerTranscriptEntry",
    "PlannerTranscriptStore",
]
