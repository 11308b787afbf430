"""
Unit tests for backlog output tags and the key=value token channel.

Tests cover:
- Reading and replacing tokens
- Phase resolution from output tags
- Dependency value resolution through producers
"""

from models import BacklogItem, BacklogStatus, PhaseKind
from core.backlog_tokens import (
    MetadataKeys,
    get_backlog_output_value,
    normalize_slug,
    output_tags,
    resolve_dependency_value,
    resolve_iteration_index,
    resolve_phase,
    set_backlog_output_value,
)


def _item(backlog_id, inputs=(), outputs=(), status=BacklogStatus.PENDING):
    return BacklogItem(
        plan_id="plan-1",
        backlog_id=backlog_id,
        inputs=list(inputs),
        outputs=list(outputs),
        status=status,
    )


class TestOutputTokens:
    """Tests for get/set of key=value tokens."""

    def test_set_then_get_returns_value(self):
        """A value written under a key is read back unchanged."""
        item = _item("ch-1", outputs=["chapter-blueprint"])

        set_backlog_output_value(item, MetadataKeys.CHAPTER_BLUEPRINT_ID, "bp-42")

        assert get_backlog_output_value(item, MetadataKeys.CHAPTER_BLUEPRINT_ID) == "bp-42"
        assert item.updated_at is not None

    def test_set_replaces_existing_value(self):
        """Writing the same key twice keeps a single token."""
        item = _item("ch-1", outputs=["chapter-blueprint", "chapterBlueprintId=old"])

        set_backlog_output_value(item, MetadataKeys.CHAPTER_BLUEPRINT_ID, "new")

        assert item.outputs == ["chapter-blueprint", "chapterBlueprintId=new"]

    def test_get_is_case_insensitive(self):
        item = _item("ch-1", outputs=["CHAPTERBLUEPRINTID=bp-1"])

        assert get_backlog_output_value(item, MetadataKeys.CHAPTER_BLUEPRINT_ID) == "bp-1"

    def test_missing_key_returns_none(self):
        item = _item("ch-1", outputs=["chapter-blueprint"])

        assert get_backlog_output_value(item, MetadataKeys.CHAPTER_SCROLL_ID) is None

    def test_value_tokens_are_not_tags(self):
        """key=value tokens are excluded from output tags."""
        item = _item("ch-1", outputs=["chapter-blueprint", "chapterBlueprintId=bp-1"])

        assert output_tags(item) == ["chapter-blueprint"]


class TestResolvePhase:
    """Tests for mapping output tags to phases."""

    def test_tag_table(self):
        assert resolve_phase(_item("a", outputs=["chapter-blueprint"])) == PhaseKind.CHAPTER_ARCHITECT
        assert resolve_phase(_item("b", outputs=["scroll"])) == PhaseKind.SCROLL_REFINER
        assert resolve_phase(_item("c", outputs=["scene-draft"])) == PhaseKind.SCENE_WEAVER
        assert resolve_phase(_item("d", outputs=["world-bible"])) == PhaseKind.WORLD_BIBLE_MANAGER
        assert resolve_phase(_item("e", outputs=["vision-plan"])) == PhaseKind.VISION_PLANNER
        assert resolve_phase(_item("f", outputs=["iteration-plan"])) == PhaseKind.ITERATIVE_PLANNER

    def test_priority_order(self):
        """Blueprint outranks scene when both tags are present."""
        item = _item("a", outputs=["scene", "chapter-blueprint"])

        assert resolve_phase(item) == PhaseKind.CHAPTER_ARCHITECT

    def test_only_value_tokens_has_no_phase(self):
        item = _item("a", outputs=["chapterBlueprintId=bp-1"])

        assert resolve_phase(item) is None

    def test_unknown_tag_has_no_phase(self):
        assert resolve_phase(_item("a", outputs=["marketing-copy"])) is None


class TestDependencyValues:
    """Tests for resolving ids through producing items."""

    def test_own_token_wins(self):
        producer = _item("bp", outputs=["chapter-blueprint", "chapterBlueprintId=from-producer"])
        consumer = _item(
            "sc", inputs=["chapter-blueprint"], outputs=["scroll", "chapterBlueprintId=own"]
        )

        value = resolve_dependency_value(consumer, [producer, consumer], MetadataKeys.CHAPTER_BLUEPRINT_ID)

        assert value == "own"

    def test_falls_back_to_producer(self):
        producer = _item("bp", outputs=["chapter-blueprint", "chapterBlueprintId=bp-7"])
        consumer = _item("sc", inputs=["Chapter-Blueprint"], outputs=["scroll"])

        value = resolve_dependency_value(consumer, [producer, consumer], MetadataKeys.CHAPTER_BLUEPRINT_ID)

        assert value == "bp-7"

    def test_unresolved_returns_none(self):
        consumer = _item("sc", inputs=["chapter-blueprint"], outputs=["scroll"])

        assert resolve_dependency_value(consumer, [consumer], MetadataKeys.CHAPTER_BLUEPRINT_ID) is None


class TestHelpers:
    def test_iteration_index_defaults_to_one(self):
        assert resolve_iteration_index(_item("it")) == 1
        assert resolve_iteration_index(_item("it", outputs=["iterationIndex=3"])) == 3
        assert resolve_iteration_index(_item("it", outputs=["iterationIndex=abc"])) == 1

    def test_normalize_slug(self):
        assert normalize_slug("Chapter One: The Fall!") == "chapter-one-the-fall"
        assert normalize_slug("   ") == "item"
