"""
Unit tests for the Backlog Dependency Scheduler.

Tests cover:
- Dependency readiness
- Entity creation for blueprint, scroll, scene, world bible and iteration items
- Claim idempotency and provider requirements
- Lore auto-fulfillment SLA handling
- Auto-resume of stale in-progress items
"""

from datetime import timedelta

import pytest

from config import SchedulerOptions
from core.backlog_scheduler import BacklogScheduler, find_ready_item, is_ready
from core.backlog_tokens import get_backlog_output_value
from core.phase_engine import PhaseExecutionEngine
from models import (
    BacklogItem,
    BacklogStatus,
    ChapterBlueprint,
    ChapterScroll,
    ChapterSection,
    ConversationTask,
    LoreRequirement,
    LoreRequirementStatus,
    PhaseKind,
    PhaseResult,
    PhaseStatus,
    PlanPass,
    WorldBible,
    utc_now,
)
from runners import PhaseRunner, PhaseRunnerRegistry


def _result(phase=PhaseKind.VISION_PLANNER):
    return PhaseResult.success(phase, "done")


def _item(backlog_id, inputs=(), outputs=(), status=BacklogStatus.PENDING):
    return BacklogItem(
        plan_id="plan-1", backlog_id=backlog_id, inputs=list(inputs), outputs=list(outputs), status=status
    )


@pytest.fixture
def scheduler(repository, job_client, workflow_log):
    return BacklogScheduler(repository, job_client, workflow_log)


class TestReadiness:
    """Tests for is_ready / find_ready_item."""

    def test_item_without_inputs_is_ready(self):
        item = _item("vision", outputs=["vision-plan"])

        assert is_ready(item, [item])

    def test_requires_complete_producer(self):
        producer = _item("vision", outputs=["vision-plan"], status=BacklogStatus.IN_PROGRESS)
        consumer = _item("ch-1", inputs=["vision-plan"], outputs=["chapter-blueprint"])

        assert not is_ready(consumer, [producer, consumer])

        producer.status = BacklogStatus.COMPLETE
        assert is_ready(consumer, [producer, consumer])

    def test_self_production_does_not_satisfy(self):
        item = _item("loop", inputs=["chapter-blueprint"], outputs=["chapter-blueprint"])

        assert not is_ready(item, [item])

    def test_blank_inputs_are_ignored(self):
        item = _item("ch-1", inputs=["", "  "], outputs=["chapter-blueprint"])

        assert is_ready(item, [item])

    def test_first_ready_item_in_order(self):
        done = _item("vision", outputs=["vision-plan"], status=BacklogStatus.COMPLETE)
        untagged = _item("notes", outputs=["marketing-copy"])
        first = _item("ch-1", inputs=["vision-plan"], outputs=["chapter-blueprint"])
        second = _item("ch-2", inputs=["vision-plan"], outputs=["chapter-blueprint"])

        assert find_ready_item([done, untagged, first, second]) is first


class TestScheduling:
    """Tests for BacklogScheduler.schedule."""

    @pytest.mark.asyncio
    async def test_blueprint_created_and_enqueued(self, repository, plan, make_context, add_backlog_item,
                                                  scheduler, job_client):
        await add_backlog_item("vision", outputs=["vision-plan"], status=BacklogStatus.COMPLETE)
        await add_backlog_item("Chapter 1", inputs=["vision-plan"], outputs=["chapter-blueprint"],
                               description="The orchard burns")

        await scheduler.schedule(plan, PhaseKind.VISION_PLANNER, _result(), make_context())

        assert job_client.methods() == ["chapter_architect"]
        blueprint = next(iter(repository.blueprints.values()))
        assert blueprint.chapter_index == 1
        assert blueprint.chapter_slug == "chapter-1"
        assert blueprint.title == "The orchard burns"
        call = job_client.calls[0]
        assert call["blueprint_id"] == blueprint.id
        assert call["provider_id"] == "openai"
        assert call["model_id"] == "gpt-4o"
        assert call["branch_slug"] == "main"
        assert call["metadata"]["backlogItemId"] == "Chapter 1"
        assert call["metadata"]["chapterBlueprintId"] == blueprint.id
        item = await repository.get_backlog_item(plan.id, "Chapter 1")
        assert item.status == BacklogStatus.IN_PROGRESS
        assert item.in_progress_at is not None
        assert get_backlog_output_value(item, "chapterBlueprintId") == blueprint.id

    @pytest.mark.asyncio
    async def test_scroll_uses_producer_blueprint(self, repository, plan, make_context, add_backlog_item,
                                                  scheduler, job_client):
        await add_backlog_item("bp", outputs=["chapter-blueprint", "chapterBlueprintId=bp-7"],
                               status=BacklogStatus.COMPLETE)
        await add_backlog_item("bp-scroll", inputs=["chapter-blueprint"], outputs=["scroll"])

        await scheduler.schedule(plan, PhaseKind.CHAPTER_ARCHITECT, _result(), make_context())

        scroll = next(iter(repository.scrolls.values()))
        section = next(iter(repository.sections.values()))
        assert scroll.blueprint_id == "bp-7"
        assert scroll.version_index == 1
        assert scroll.scroll_slug.startswith("bp-scroll-")
        assert section.scroll_id == scroll.id
        assert section.section_index == 1
        assert section.section_slug == f"{scroll.scroll_slug}-section"
        assert job_client.methods() == ["scroll_refiner"]
        assert job_client.calls[0]["scroll_id"] == scroll.id
        item = await repository.get_backlog_item(plan.id, "bp-scroll")
        assert get_backlog_output_value(item, "chapterScrollId") == scroll.id
        assert get_backlog_output_value(item, "chapterSectionId") == section.id
        assert get_backlog_output_value(item, "chapterBlueprintId") == "bp-7"

    @pytest.mark.asyncio
    async def test_scene_attaches_to_producer_section(self, repository, plan, make_context, add_backlog_item,
                                                      scheduler, job_client):
        await repository.save_scroll(ChapterScroll(id="sc-1", blueprint_id="bp-7", scroll_slug="s"))
        await repository.save_section(ChapterSection(id="sec-1", scroll_id="sc-1", section_index=1,
                                                     section_slug="s-section"))
        await add_backlog_item("scroll", outputs=["scroll", "chapterScrollId=sc-1", "chapterSectionId=sec-1"],
                               status=BacklogStatus.COMPLETE)
        await add_backlog_item("Opening Scene", inputs=["scroll"], outputs=["scene"])

        await scheduler.schedule(plan, PhaseKind.SCROLL_REFINER, _result(), make_context())

        scene = next(iter(repository.scenes.values()))
        assert scene.section_id == "sec-1"
        assert scene.scene_index == 1
        assert scene.scene_slug == "opening-scene"
        assert len(repository.sections) == 1
        assert job_client.methods() == ["scene_weaver"]
        assert job_client.calls[0]["scene_id"] == scene.id

    @pytest.mark.asyncio
    async def test_scene_without_section_creates_one(self, repository, plan, make_context, add_backlog_item,
                                                     scheduler):
        await add_backlog_item("scroll", outputs=["scroll", "chapterScrollId=sc-1"], status=BacklogStatus.COMPLETE)
        await add_backlog_item("scene-1", inputs=["scroll"], outputs=["scene-draft"])

        await scheduler.schedule(plan, PhaseKind.SCROLL_REFINER, _result(), make_context())

        section = next(iter(repository.sections.values()))
        assert section.scroll_id == "sc-1"
        assert section.section_slug.startswith("scene-1-section-")

    @pytest.mark.asyncio
    async def test_unready_item_is_not_enqueued(self, repository, plan, make_context, add_backlog_item,
                                                scheduler, job_client):
        await add_backlog_item("vision", outputs=["vision-plan"], status=BacklogStatus.IN_PROGRESS)
        await add_backlog_item("ch-1", inputs=["vision-plan"], outputs=["chapter-blueprint"])

        await scheduler.schedule(plan, PhaseKind.VISION_PLANNER, _result(), make_context())

        assert job_client.calls == []
        assert (await repository.get_backlog_item(plan.id, "ch-1")).status == BacklogStatus.PENDING

    @pytest.mark.asyncio
    async def test_repeated_schedule_enqueues_once(self, plan, make_context, add_backlog_item, scheduler,
                                                   job_client):
        await add_backlog_item("ch-1", outputs=["chapter-blueprint"])

        await scheduler.schedule(plan, PhaseKind.VISION_PLANNER, _result(), make_context())
        await scheduler.schedule(plan, PhaseKind.VISION_PLANNER, _result(), make_context())

        assert job_client.methods() == ["chapter_architect"]

    @pytest.mark.asyncio
    async def test_missing_provider_skips(self, repository, plan, make_context, add_backlog_item, scheduler,
                                          job_client):
        await add_backlog_item("ch-1", outputs=["chapter-blueprint"])

        await scheduler.schedule(plan, PhaseKind.VISION_PLANNER, _result(), make_context(metadata={}))

        assert job_client.calls == []
        assert repository.blueprints == {}

    @pytest.mark.asyncio
    async def test_existing_blueprint_token_is_reused(self, repository, plan, make_context, add_backlog_item,
                                                      scheduler, job_client):
        await add_backlog_item("ch-1", outputs=["chapter-blueprint", "chapterBlueprintId=bp-existing"])

        await scheduler.schedule(plan, PhaseKind.VISION_PLANNER, _result(), make_context())

        assert repository.blueprints == {}
        assert job_client.calls[0]["blueprint_id"] == "bp-existing"

    @pytest.mark.asyncio
    async def test_blueprint_index_follows_count(self, repository, plan, make_context, add_backlog_item,
                                                 scheduler):
        await repository.save_blueprint(ChapterBlueprint(plan_id=plan.id, chapter_index=1, chapter_slug="ch-1"))
        await add_backlog_item("ch-2", outputs=["chapter-blueprint"])

        await scheduler.schedule(plan, PhaseKind.CHAPTER_ARCHITECT, _result(), make_context())

        indexes = sorted(b.chapter_index for b in repository.blueprints.values())
        assert indexes == [1, 2]

    @pytest.mark.asyncio
    async def test_world_bible_reused_on_main(self, repository, plan, make_context, add_backlog_item, scheduler,
                                              job_client):
        await repository.save_world_bible(WorldBible(id="wb-main", plan_id=plan.id, domain="core"))
        await add_backlog_item("bible", outputs=["world-bible"])

        await scheduler.schedule(plan, PhaseKind.VISION_PLANNER, _result(), make_context())

        assert len(repository.world_bibles) == 1
        assert job_client.methods() == ["world_bible_manager"]
        assert job_client.calls[0]["metadata"]["worldBibleId"] == "wb-main"

    @pytest.mark.asyncio
    async def test_world_bible_created_for_branch(self, repository, plan, make_context, add_backlog_item,
                                                  scheduler, job_client):
        await repository.save_world_bible(WorldBible(id="wb-main", plan_id=plan.id, domain="core"))
        await add_backlog_item("bible", outputs=["world-bible"])

        await scheduler.schedule(plan, PhaseKind.VISION_PLANNER, _result(), make_context(branch_slug="noir"))

        created = [wb for wb in repository.world_bibles.values() if wb.id != "wb-main"]
        assert len(created) == 1
        assert created[0].branch_slug == "noir"
        assert job_client.calls[0]["branch_slug"] == "noir"

    @pytest.mark.asyncio
    async def test_iteration_index_is_next_pass(self, repository, plan, make_context, add_backlog_item,
                                                scheduler, job_client):
        await repository.save_pass(PlanPass(plan_id=plan.id, pass_index=2))
        await add_backlog_item("revise", outputs=["iteration-plan"])

        await scheduler.schedule(plan, PhaseKind.VISION_PLANNER, _result(), make_context())

        assert sorted(p.pass_index for p in repository.passes.values()) == [2, 3]
        assert job_client.calls[0]["iteration_index"] == 3

    @pytest.mark.asyncio
    async def test_conversation_task_is_claimed(self, repository, plan, make_context, add_backlog_item,
                                                scheduler, job_client):
        stored = await repository.get_plan(plan.id)
        stored.current_conversation_plan_id = "cp-1"
        await repository.save_plan(stored)
        task = await repository.save_conversation_task(
            ConversationTask(conversation_plan_id="cp-1", backlog_item_id="ch-1")
        )
        await add_backlog_item("ch-1", outputs=["chapter-blueprint"])

        await scheduler.schedule(stored, PhaseKind.VISION_PLANNER, _result(), make_context())

        claimed = repository.conversation_tasks[task.id]
        assert claimed.status == "InProgress"
        assert job_client.calls[0]["metadata"]["taskId"] == task.id
        assert job_client.calls[0]["metadata"]["conversationPlanId"] == "cp-1"


class TestLoreAutoFulfillment:
    """Tests for queuing lore requirements blocked past their SLA."""

    async def _requirement(self, repository, plan, age=timedelta(hours=2), **fields):
        requirement = LoreRequirement(
            plan_id=plan.id,
            requirement_slug="glass-trees",
            title="Glass trees",
            status=LoreRequirementStatus.BLOCKED,
            created_at=utc_now() - age,
            **fields,
        )
        return await repository.save_lore_requirement(requirement)

    @pytest.mark.asyncio
    async def test_overdue_requirement_is_queued_once(self, repository, plan, make_context, scheduler,
                                                      job_client):
        requirement = await self._requirement(repository, plan)

        await scheduler.schedule(plan, PhaseKind.SCENE_WEAVER, _result(), make_context())
        await scheduler.schedule(plan, PhaseKind.SCENE_WEAVER, _result(), make_context())

        assert job_client.methods() == ["lore_fulfillment"]
        call = job_client.calls[0]
        assert call["requirement_id"] == requirement.id
        assert call["metadata"] == {
            "autoFulfillment": "true",
            "requirementId": requirement.id,
            "branchSlug": "main",
            "slaMinutes": "30",
            "branchLineage": "main",
        }
        stored = await repository.get_lore_requirement(requirement.id)
        assert stored.metadata["autoFulfillmentRequestedUtc"]
        assert stored.metadata["branchLineage"] == ["main"]
        assert stored.metadata["autoFulfillmentConversationId"] == "conversation-1"
        events = [e for e in repository.workflow_events if e.kind == "fiction.lore.fulfillment"]
        assert len(events) == 1
        assert events[0].payload["action"] == "queued"

    @pytest.mark.asyncio
    async def test_branch_lineage(self, repository, plan, make_context, scheduler, job_client):
        await self._requirement(repository, plan)

        await scheduler.schedule(plan, PhaseKind.SCENE_WEAVER, _result(), make_context(branch_slug="noir"))

        assert job_client.calls[0]["metadata"]["branchLineage"] == "main,noir"

    @pytest.mark.asyncio
    async def test_recent_requirement_waits(self, repository, plan, make_context, scheduler, job_client):
        await self._requirement(repository, plan, age=timedelta(minutes=5))

        await scheduler.schedule(plan, PhaseKind.SCENE_WEAVER, _result(), make_context())

        assert job_client.calls == []

    @pytest.mark.asyncio
    async def test_requirement_with_entry_is_skipped(self, repository, plan, make_context, scheduler, job_client):
        await self._requirement(repository, plan, world_bible_entry_id="entry-1")

        await scheduler.schedule(plan, PhaseKind.SCENE_WEAVER, _result(), make_context())

        assert job_client.calls == []

    @pytest.mark.asyncio
    async def test_disabled_option(self, repository, plan, make_context, job_client, workflow_log):
        scheduler = BacklogScheduler(
            repository, job_client, workflow_log, SchedulerOptions(lore_auto_fulfillment_enabled=False)
        )
        await self._requirement(repository, plan)

        await scheduler.schedule(plan, PhaseKind.SCENE_WEAVER, _result(), make_context())

        assert job_client.calls == []


class TestAutoResume:
    """Tests for resetting backlog items stuck in progress."""

    @pytest.mark.asyncio
    async def test_stale_item_is_reset(self, repository, plan, make_context, add_backlog_item, scheduler,
                                       job_client):
        stored = await repository.get_plan(plan.id)
        stored.current_conversation_plan_id = "cp-1"
        await repository.save_plan(stored)
        task = await repository.save_conversation_task(
            ConversationTask(conversation_plan_id="cp-1", backlog_item_id="ch-1", status="InProgress")
        )
        await add_backlog_item(
            "ch-1",
            inputs=["vision-plan"],
            outputs=["chapter-blueprint"],
            status=BacklogStatus.IN_PROGRESS,
            in_progress_at=utc_now() - timedelta(hours=3),
        )

        await scheduler.schedule(stored, PhaseKind.VISION_PLANNER, _result(), make_context())

        item = await repository.get_backlog_item(plan.id, "ch-1")
        assert item.status == BacklogStatus.PENDING
        assert item.in_progress_at is None
        assert repository.conversation_tasks[task.id].status == "Pending"
        events = [e for e in repository.workflow_events if e.kind == "fiction.backlog.action"]
        assert len(events) == 1
        payload = events[0].payload
        assert payload["action"] == "auto-resume"
        assert payload["source"] == "automation"
        assert payload["status"] == "pending"
        assert payload["taskId"] == task.id
        assert payload["ageSeconds"] >= 3 * 3600
        assert job_client.calls == []

    @pytest.mark.asyncio
    async def test_recent_item_is_left_alone(self, repository, plan, make_context, add_backlog_item, scheduler):
        await add_backlog_item(
            "ch-1",
            outputs=["chapter-blueprint"],
            status=BacklogStatus.IN_PROGRESS,
            in_progress_at=utc_now() - timedelta(minutes=10),
        )

        await scheduler.schedule(plan, PhaseKind.VISION_PLANNER, _result(), make_context())

        item = await repository.get_backlog_item(plan.id, "ch-1")
        assert item.status == BacklogStatus.IN_PROGRESS
        assert repository.workflow_events == []


class ChapterArchitectRunner(PhaseRunner):
    phase = PhaseKind.CHAPTER_ARCHITECT

    async def run(self, context):
        return self.build_result(context, PhaseStatus.COMPLETED, "Blueprint drafted")


async def _task_statuses(repository, conversation_plan_id):
    return {t.backlog_item_id: t.status for t in await repository.list_conversation_tasks(conversation_plan_id)}


def _job_context(make_context, call):
    """Context a worker would build from a recorded enqueue call."""
    return make_context(
        chapter_blueprint_id=call.get("blueprint_id"),
        metadata=dict(call["metadata"]),
    )


class TestDependencyChain:
    """blueprint -> scroll -> scene chain driven one completion at a time."""

    async def _seed_chain(self, add_backlog_item):
        await add_backlog_item("A", outputs=["chapter-blueprint"])
        await add_backlog_item("B", inputs=["chapter-blueprint"], outputs=["chapter-scroll"])
        await add_backlog_item("C", inputs=["chapter-scroll"], outputs=["scene-draft"])

    @pytest.mark.asyncio
    async def test_chain_advances_one_item_per_completion(self, repository, plan, make_context,
                                                          add_backlog_item, scheduler, job_client):
        await self._seed_chain(add_backlog_item)
        stored = await repository.get_plan(plan.id)
        stored.current_conversation_plan_id = "cp-1"
        plan = await repository.save_plan(stored)
        await repository.save_conversation_task(
            ConversationTask(conversation_plan_id="cp-1", backlog_item_id="A", step_number=1)
        )

        await scheduler.schedule(plan, PhaseKind.VISION_PLANNER, _result(), make_context())

        assert job_client.methods() == ["chapter_architect"]
        assert (await repository.get_backlog_item(plan.id, "A")).status == BacklogStatus.IN_PROGRESS
        assert (await repository.get_backlog_item(plan.id, "B")).status == BacklogStatus.PENDING
        assert (await _task_statuses(repository, "cp-1"))["A"] == "InProgress"

        engine = PhaseExecutionEngine(
            repository, PhaseRunnerRegistry([ChapterArchitectRunner()]), scheduler=scheduler
        )
        result = await engine.execute_phase(
            PhaseKind.CHAPTER_ARCHITECT, _job_context(make_context, job_client.calls[0])
        )

        assert result.status == PhaseStatus.COMPLETED
        assert job_client.methods() == ["chapter_architect", "scroll_refiner"]
        assert len(repository.scrolls) == 1
        assert len(repository.sections) == 1
        assert (await repository.get_backlog_item(plan.id, "A")).status == BacklogStatus.COMPLETE
        assert (await repository.get_backlog_item(plan.id, "B")).status == BacklogStatus.IN_PROGRESS
        assert (await repository.get_backlog_item(plan.id, "C")).status == BacklogStatus.PENDING
        assert (await _task_statuses(repository, "cp-1"))["A"] == "Completed"

    @pytest.mark.asyncio
    async def test_scroll_reads_blueprint_written_by_scheduler(self, repository, plan, make_context,
                                                               add_backlog_item, scheduler, job_client):
        await self._seed_chain(add_backlog_item)

        await scheduler.schedule(plan, PhaseKind.VISION_PLANNER, _result(), make_context())

        blueprint_id = job_client.calls[0]["blueprint_id"]
        producer = await repository.get_backlog_item(plan.id, "A")
        assert get_backlog_output_value(producer, "chapterBlueprintId") == blueprint_id
        producer.status = BacklogStatus.COMPLETE
        await repository.save_backlog_item(producer)

        await scheduler.schedule(plan, PhaseKind.CHAPTER_ARCHITECT, _result(PhaseKind.CHAPTER_ARCHITECT),
                                 make_context())

        scroll = next(iter(repository.scrolls.values()))
        assert scroll.blueprint_id == blueprint_id
        consumer = await repository.get_backlog_item(plan.id, "B")
        assert get_backlog_output_value(consumer, "chapterBlueprintId") == blueprint_id
        assert job_client.calls[1]["scroll_id"] == scroll.id
        assert job_client.calls[1]["metadata"]["chapterBlueprintId"] == blueprint_id
