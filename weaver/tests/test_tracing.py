"""
Unit tests for Langfuse planner telemetry.

The Langfuse client is replaced with a MagicMock.
"""

from unittest.mock import MagicMock

import pytest

from core.planner import PlannerResult, PlannerTelemetryContext
from core.quota import QuotaDecision, QuotaLimitKind
from services import LangfusePlannerTelemetry, TracingService


@pytest.fixture
def tracing():
    service = TracingService()
    service._client = MagicMock()
    service._enabled = True
    return service


def _context(**overrides):
    values = dict(planner_name="vision", agent_id="agent-1", conversation_id="c-1", correlation_id="job-1")
    values.update(overrides)
    return PlannerTelemetryContext(**values)


class TestTracingService:
    def test_disabled_without_keys(self, monkeypatch):
        monkeypatch.delenv("LANGFUSE_PUBLIC_KEY", raising=False)
        monkeypatch.delenv("LANGFUSE_SECRET_KEY", raising=False)
        service = TracingService()

        assert service.initialize() is False
        assert not service.enabled
        assert service.start_trace("run-1", "planner.vision") is None

    def test_end_trace_updates_and_flushes(self, tracing):
        trace = tracing.start_trace("run-1", "planner.vision")

        tracing.end_trace("run-1", output={"outcome": "success"})

        trace.update.assert_called_once_with(output={"outcome": "success"}, metadata=None)
        tracing._client.flush.assert_called_once()

    def test_shutdown_disables(self, tracing):
        client = tracing._client

        tracing.shutdown()

        client.shutdown.assert_called_once()
        assert not tracing.enabled


class TestLangfusePlannerTelemetry:
    @pytest.mark.asyncio
    async def test_completed_run(self, tracing):
        telemetry = LangfusePlannerTelemetry(tracing)
        result = PlannerResult.success().add_metric("durationMs", 12)

        await telemetry.plan_started(_context())
        await telemetry.plan_completed(_context(), result)

        tracing._client.trace.assert_called_once()
        assert tracing._client.trace.call_args.kwargs["id"] == "job-1"
        assert tracing._client.trace.call_args.kwargs["name"] == "planner.vision"
        trace = tracing._client.trace.return_value
        trace.event.assert_called_once_with(name="planner.completed", level="DEFAULT",
                                            metadata={"metrics": {"durationMs": 12.0}})

    @pytest.mark.asyncio
    async def test_run_id_without_correlation(self, tracing):
        telemetry = LangfusePlannerTelemetry(tracing)

        await telemetry.plan_started(_context(correlation_id=None))

        assert tracing._client.trace.call_args.kwargs["id"] == "vision:c-1"

    @pytest.mark.asyncio
    async def test_blocked_run_opens_and_closes_trace(self, tracing):
        telemetry = LangfusePlannerTelemetry(tracing)
        decision = QuotaDecision.blocked(QuotaLimitKind.MAX_TOKENS, 100, "too many tokens")

        await telemetry.plan_blocked(_context(), decision)

        trace = tracing._client.trace.return_value
        assert trace.event.call_args.kwargs["name"] == "planner.quota_blocked"
        assert trace.event.call_args.kwargs["metadata"]["limit"] == "max_tokens"
        trace.update.assert_called_once()
