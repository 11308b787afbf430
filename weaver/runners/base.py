"""
Phase runner contracts and the runner registry.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional

from core.errors import ConfigurationError, RunnerNotRegisteredError
from models import PhaseExecutionContext, PhaseKind, PhaseResult, PhaseStatus, PhaseTranscript

logger = logging.getLogger("weaver.runners")


class PhaseRunner(ABC):
    """Executes one phase kind. Runners are stateless across invocations."""

    @property
    @abstractmethod
    def phase(self) -> PhaseKind:
        pass

    @abstractmethod
    async def run(self, context: PhaseExecutionContext) -> PhaseResult:
        """Run the phase for ``context``."""
        pass

    def build_result(
        self,
        context: PhaseExecutionContext,
        status: PhaseStatus,
        summary: Optional[str],
        data: Optional[Dict[str, Any]] = None,
        transcripts: Optional[List[PhaseTranscript]] = None,
        exception: Optional[str] = None,
    ) -> PhaseResult:
        """Build a result with transcript metadata stamped from ``context``."""
        stamped = []
        for transcript in transcripts or []:
            metadata = dict(transcript.metadata)
            metadata.setdefault("phase", self.phase.value)
            metadata.setdefault("branch", context.branch)
            if context.backlog_item_id:
                metadata.setdefault("backlogItemId", context.backlog_item_id)
            if context.iteration_index is not None:
                metadata.setdefault("iterationIndex", context.iteration_index)
            transcript.metadata = metadata
            stamped.append(transcript)
        return PhaseResult(
            phase=self.phase,
            status=status,
            summary=summary,
            data=data or {},
            exception=exception,
            transcripts=stamped,
        )


class ContentGenerator(ABC):
    """
    Produces the creative content for a phase (prompting, parsing and
    writing the generated text). Implementations live outside the
    orchestrator.
    """

    @abstractmethod
    async def generate(self, phase: PhaseKind, context: PhaseExecutionContext) -> Dict[str, Any]:
        """
        Generate content for ``phase``.

        Returns:
            A dict that may contain ``status`` (a PhaseStatus value),
            ``summary``, ``data`` and ``transcripts`` (PhaseTranscript list)
        """
        pass


class PhaseRunnerRegistry:
    """Phase to runner map, built once at startup."""

    def __init__(self, runners: Iterable[PhaseRunner]):
        self._runners: Dict[PhaseKind, PhaseRunner] = {}
        for runner in runners:
            if runner.phase in self._runners:
                raise ConfigurationError(f"Duplicate runner registered for phase {runner.phase.value}")
            self._runners[runner.phase] = runner

    def get(self, phase: PhaseKind) -> PhaseRunner:
        runner = self._runners.get(phase)
        if runner is None:
            raise RunnerNotRegisteredError(phase)
        return runner

    def has(self, phase: PhaseKind) -> bool:
        return phase in self._runners

    @property
    def phases(self) -> List[PhaseKind]:
        return list(self._runners)

    def require(self, phases: Iterable[PhaseKind]) -> None:
        """Raise ``ConfigurationError`` unless every phase in ``phases`` has a runner."""
        missing = [phase.value for phase in phases if phase not in self._runners]
        if missing:
            raise ConfigurationError(f"No runner registered for phases: {', '.join(missing)}")
        logger.info(f"Runner registry covers {len(self._runners)} phases")
