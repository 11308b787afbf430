"""
Langfuse tracing for planner runs.

One Langfuse trace per planner execution, keyed by correlation id (or
conversation id). Tracing is a no-op when keys are not configured.
"""

import logging
import os
from typing import Any, Dict, Optional

from langfuse import Langfuse

from core.planner import PlannerResult, PlannerTelemetry, PlannerTelemetryContext
from core.quota import QuotaDecision

logger = logging.getLogger("weaver.tracing")


class TracingService:
    """
    Thin wrapper over the Langfuse client.

    Provides:
    - Traces for planner runs
    - Events inside a trace (completion, failure, quota blocks)
    - Flush and shutdown
    """

    def __init__(self):
        self._client: Optional[Langfuse] = None
        self._enabled = False
        self._traces: Dict[str, Any] = {}

    def initialize(
        self,
        public_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        host: Optional[str] = None,
    ) -> bool:
        """
        Initialize the Langfuse client.

        Args:
            public_key: Langfuse public key (or LANGFUSE_PUBLIC_KEY env var)
            secret_key: Langfuse secret key (or LANGFUSE_SECRET_KEY env var)
            host: Langfuse host URL (or LANGFUSE_HOST env var)

        Returns:
            True if initialization successful, False otherwise
        """
        public_key = public_key or os.getenv("LANGFUSE_PUBLIC_KEY")
        secret_key = secret_key or os.getenv("LANGFUSE_SECRET_KEY")
        host = host or os.getenv("LANGFUSE_HOST", "https://cloud.langfuse.com")

        if not public_key or not secret_key:
            logger.info("Langfuse keys not configured. Tracing disabled.")
            return False

        try:
            self._client = Langfuse(public_key=public_key, secret_key=secret_key, host=host)
            self._enabled = True
            logger.info(f"Langfuse tracing initialized. Host: {host}")
            return True
        except Exception as e:
            logger.warning(f"Failed to initialize Langfuse: {e}")
            return False

    @property
    def enabled(self) -> bool:
        return self._enabled and self._client is not None

    def start_trace(
        self,
        run_id: str,
        name: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> Optional[Any]:
        if not self.enabled:
            return None
        try:
            trace = self._client.trace(
                id=run_id,
                name=name,
                metadata=metadata or {},
                user_id=user_id,
                session_id=session_id,
            )
            self._traces[run_id] = trace
            return trace
        except Exception as e:
            logger.warning(f"Failed to start trace: {e}")
            return None

    def end_trace(
        self,
        run_id: str,
        output: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        if not self.enabled:
            return
        trace = self._traces.pop(run_id, None)
        if trace:
            try:
                trace.update(output=output, metadata=metadata)
                self._client.flush()
            except Exception as e:
                logger.warning(f"Failed to end trace: {e}")

    def log_event(
        self,
        run_id: str,
        name: str,
        level: str = "DEFAULT",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Log an event within a trace.

        Args:
            run_id: Run identifier
            name: Event name
            level: Event level (DEFAULT, DEBUG, WARNING, ERROR)
            metadata: Additional metadata
        """
        if not self.enabled:
            return
        trace = self._traces.get(run_id)
        if not trace:
            return
        try:
            trace.event(name=name, level=level, metadata=metadata or {})
        except Exception as e:
            logger.warning(f"Failed to log event: {e}")

    def flush(self) -> None:
        if self.enabled and self._client:
            try:
                self._client.flush()
            except Exception as e:
                logger.warning(f"Failed to flush traces: {e}")

    def shutdown(self) -> None:
        self.flush()
        if self._client:
            try:
                self._client.shutdown()
            except Exception as e:
                logger.debug(f"Langfuse shutdown raised: {e}")
        self._client = None
        self._enabled = False
        self._traces.clear()


def _run_id(context: PlannerTelemetryContext) -> str:
    return context.correlation_id or f"{context.planner_name}:{context.conversation_id or 'none'}"


class LangfusePlannerTelemetry(PlannerTelemetry):
    """Planner telemetry sink that records each run as a Langfuse trace."""

    def __init__(self, tracing: TracingService):
        self.tracing = tracing

    async def plan_started(self, context: PlannerTelemetryContext) -> None:
        self.tracing.start_trace(
            run_id=_run_id(context),
            name=f"planner.{context.planner_name}",
            metadata={
                "capabilities": list(context.capabilities),
                "environment": context.environment,
                "supportsSelfCritique": context.supports_self_critique,
                "tags": context.telemetry_tags,
            },
            user_id=context.agent_id,
            session_id=context.conversation_id,
        )

    async def plan_completed(self, context: PlannerTelemetryContext, result: PlannerResult) -> None:
        run_id = _run_id(context)
        self.tracing.log_event(run_id, "planner.completed", metadata={"metrics": result.metrics})
        self.tracing.end_trace(
            run_id,
            output={"outcome": result.outcome.value, "diagnostics": result.diagnostics},
            metadata={"metrics": result.metrics},
        )

    async def plan_failed(self, context: PlannerTelemetryContext, error: BaseException) -> None:
        run_id = _run_id(context)
        self.tracing.log_event(
            run_id,
            "planner.failed",
            level="ERROR",
            metadata={"error": str(error), "exceptionType": type(error).__name__},
        )
        self.tracing.end_trace(run_id, output={"outcome": "failed"})

    async def plan_cancelled(self, context: PlannerTelemetryContext) -> None:
        run_id = _run_id(context)
        self.tracing.log_event(run_id, "planner.cancelled", level="WARNING")
        self.tracing.end_trace(run_id, output={"outcome": "cancelled"})

    async def plan_blocked(self, context: PlannerTelemetryContext, decision: QuotaDecision) -> None:
        # Blocked runs never reach plan_started, so the trace is opened here.
        run_id = _run_id(context)
        self.tracing.start_trace(run_id, f"planner.{context.planner_name}", session_id=context.conversation_id)
        self.tracing.log_event(
            run_id,
            "planner.quota_blocked",
            level="WARNING",
            metadata={
                "limit": decision.limit.value if decision.limit else None,
                "limitValue": decision.limit_value,
                "reason": decision.reason,
            },
        )
        self.tracing.end_trace(run_id, output={"outcome": "blocked"})
