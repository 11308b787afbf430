"""
Unit tests for the repository implementations.

Tests cover:
- Optimistic version checks on plans, checkpoints and backlog items
- Copy semantics of the in-memory store
- Supabase query construction against a mocked client
"""

from unittest.mock import MagicMock

import pytest

from core.errors import ConcurrencyConflictError
from models import BacklogItem, CheckpointStatus, PhaseCheckpoint, PhaseKind, Plan
from services import InMemoryWeaverRepository, SupabaseWeaverRepository


class TestInMemoryWeaverRepository:
    @pytest.mark.asyncio
    async def test_stale_write_conflicts(self):
        repository = InMemoryWeaverRepository()
        plan = await repository.save_plan(Plan(name="Saltwind"))
        first = await repository.get_plan(plan.id)
        second = await repository.get_plan(plan.id)

        first.name = "Saltwind Revised"
        await repository.save_plan(first)

        with pytest.raises(ConcurrencyConflictError):
            await repository.save_plan(second)

    @pytest.mark.asyncio
    async def test_reads_are_copies(self):
        repository = InMemoryWeaverRepository()
        checkpoint = await repository.save_checkpoint(
            PhaseCheckpoint(plan_id="p", phase_key="vision_planner|main", phase=PhaseKind.VISION_PLANNER)
        )

        loaded = await repository.get_checkpoint("p", "vision_planner|main")
        loaded.status = CheckpointStatus.COMPLETE

        stored = await repository.get_checkpoint("p", "vision_planner|main")
        assert stored.status == CheckpointStatus.PENDING
        assert stored.id == checkpoint.id

    @pytest.mark.asyncio
    async def test_backlog_lookup_is_case_insensitive(self):
        repository = InMemoryWeaverRepository()
        await repository.save_backlog_item(BacklogItem(plan_id="p", backlog_id="Chapter-1"))

        assert await repository.get_backlog_item("p", "chapter-1") is not None
        assert await repository.get_backlog_item("other", "chapter-1") is None


def _connected_repository():
    repository = SupabaseWeaverRepository("https://example.supabase.co", "key")
    repository._client = MagicMock()
    repository._connected = True
    return repository


class TestSupabaseWeaverRepository:
    @pytest.mark.asyncio
    async def test_connect_without_config(self, monkeypatch):
        monkeypatch.delenv("SUPABASE_URL", raising=False)
        monkeypatch.delenv("SUPABASE_SERVICE_KEY", raising=False)
        repository = SupabaseWeaverRepository()

        assert await repository.connect() is False
        with pytest.raises(RuntimeError):
            repository.client

    @pytest.mark.asyncio
    async def test_first_save_inserts(self):
        repository = _connected_repository()
        table = repository.client.table.return_value
        table.insert.return_value.execute.return_value = MagicMock(data=[{"id": "x"}])
        plan = Plan(name="Saltwind")

        saved = await repository.save_plan(plan)

        repository.client.table.assert_called_with("fiction_plans")
        assert saved.version == 1
        assert table.insert.call_args.args[0]["version"] == 1

    @pytest.mark.asyncio
    async def test_update_filters_on_version(self):
        repository = _connected_repository()
        table = repository.client.table.return_value
        query = table.update.return_value.eq.return_value.eq.return_value
        query.execute.return_value = MagicMock(data=[{"id": "x"}])
        plan = Plan(name="Saltwind", version=3)

        await repository.save_plan(plan)

        table.update.return_value.eq.assert_called_with("id", plan.id)
        table.update.return_value.eq.return_value.eq.assert_called_with("version", 3)
        assert plan.version == 4

    @pytest.mark.asyncio
    async def test_update_without_rows_conflicts(self):
        repository = _connected_repository()
        table = repository.client.table.return_value
        query = table.update.return_value.eq.return_value.eq.return_value
        query.execute.return_value = MagicMock(data=[])
        item = BacklogItem(plan_id="p", backlog_id="ch-1", version=2)

        with pytest.raises(ConcurrencyConflictError):
            await repository.save_backlog_item(item)

        assert item.version == 2

    @pytest.mark.asyncio
    async def test_get_plan_parses_row(self):
        repository = _connected_repository()
        query = repository.client.table.return_value.select.return_value.eq.return_value.limit.return_value
        query.execute.return_value = MagicMock(data=[{"id": "plan-1", "name": "Saltwind", "status": "in_progress"}])

        plan = await repository.get_plan("plan-1")

        assert plan.name == "Saltwind"
        assert plan.status.value == "in_progress"

    @pytest.mark.asyncio
    async def test_max_pass_index(self):
        repository = _connected_repository()
        query = (
            repository.client.table.return_value.select.return_value.eq.return_value
            .order.return_value.limit.return_value
        )
        query.execute.return_value = MagicMock(data=[{"pass_index": 4}])

        assert await repository.max_pass_index("plan-1") == 4
