"""
Pytest configuration and fixtures for weaver tests.

This module provides:
- Network blocking fixture to prevent accidental Redis/Supabase/Langfuse calls
- In-memory repository, plan and context fixtures
- Recording fakes for the job client and event sinks
"""

import socket
from typing import Any, Dict, List
from unittest.mock import patch

import pytest

from models import BacklogItem, BacklogStatus, PhaseExecutionContext, Plan
from services import InMemoryWeaverRepository, WorkflowEventLogger


class NetworkBlockedError(Exception):
    """Raised when a test attempts to make a network connection."""
    pass


def _block_socket_connect(*args, **kwargs):
    """Block all socket connections to prevent accidental service calls."""
    raise NetworkBlockedError(
        "Network access is blocked in unit tests. "
        "If you need to test network functionality, use mocks."
    )


@pytest.fixture(autouse=True)
def block_network():
    """
    Automatically block all network connections in tests.

    If a test needs to make real network calls (integration tests),
    it should be marked with @pytest.mark.integration and run separately.
    """
    with patch.object(socket.socket, 'connect', _block_socket_connect):
        with patch.object(socket, 'create_connection', _block_socket_connect):
            yield


class RecordingJobClient:
    """Job client double that records every enqueue call."""

    def __init__(self):
        self.calls: List[Dict[str, Any]] = []

    def _record(self, method: str, **kwargs) -> str:
        job_id = f"job-{len(self.calls) + 1}"
        self.calls.append({"method": method, "job_id": job_id, **kwargs})
        return job_id

    async def enqueue_vision_planner(self, **kwargs) -> str:
        return self._record("vision_planner", **kwargs)

    async def enqueue_world_bible_manager(self, **kwargs) -> str:
        return self._record("world_bible_manager", **kwargs)

    async def enqueue_iterative_planner(self, **kwargs) -> str:
        return self._record("iterative_planner", **kwargs)

    async def enqueue_chapter_architect(self, **kwargs) -> str:
        return self._record("chapter_architect", **kwargs)

    async def enqueue_scroll_refiner(self, **kwargs) -> str:
        return self._record("scroll_refiner", **kwargs)

    async def enqueue_scene_weaver(self, **kwargs) -> str:
        return self._record("scene_weaver", **kwargs)

    async def enqueue_lore_fulfillment(self, **kwargs) -> str:
        return self._record("lore_fulfillment", **kwargs)

    def methods(self) -> List[str]:
        return [call["method"] for call in self.calls]


class RecordingEventBus:
    def __init__(self):
        self.events = []

    async def publish_phase_progress(self, event):
        self.events.append(event)
        return f"{len(self.events)}-0"

    def statuses(self) -> List[str]:
        return [event.status for event in self.events]


@pytest.fixture
def repository():
    """Fresh in-memory repository."""
    return InMemoryWeaverRepository()


@pytest.fixture
def workflow_log(repository):
    return WorkflowEventLogger(repository)


@pytest.fixture
def job_client():
    return RecordingJobClient()


@pytest.fixture
def event_bus():
    return RecordingEventBus()


@pytest.fixture
def plan(repository):
    """A draft plan already stored in the repository."""
    stored = Plan(name="The Glass Orchard", version=1)
    repository.plans[stored.id] = stored.model_copy(deep=True)
    return stored


@pytest.fixture
def make_context(plan):
    """Factory for execution contexts bound to the ``plan`` fixture."""

    def _make(**overrides) -> PhaseExecutionContext:
        values = dict(
            plan_id=plan.id,
            agent_id="agent-1",
            conversation_id="conversation-1",
            metadata={"providerId": "openai", "modelId": "gpt-4o"},
        )
        values.update(overrides)
        return PhaseExecutionContext(**values)

    return _make


@pytest.fixture
def add_backlog_item(repository, plan):
    """Factory that stores a backlog item on the ``plan`` fixture."""

    async def _add(backlog_id, inputs=(), outputs=(), status=BacklogStatus.PENDING, **fields) -> BacklogItem:
        item = BacklogItem(
            plan_id=plan.id,
            backlog_id=backlog_id,
            description=fields.pop("description", f"Work for {backlog_id}"),
            status=status,
            inputs=list(inputs),
            outputs=list(outputs),
            **fields,
        )
        return await repository.save_backlog_item(item)

    return _add
