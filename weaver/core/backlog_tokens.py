"""
Backlog output tags and the ``key=value`` side channel.

A backlog item's ``outputs`` list carries two kinds of strings: semantic
output tags that other items depend on (``chapter-blueprint``) and
``key=value`` tokens recording ids of entities generated for the item
(``chapterBlueprintId=<id>``). All parsing of that list goes through this
module.
"""

import re
from typing import Iterable, List, Optional, Sequence

from models import BacklogItem, PhaseKind, utc_now


class MetadataKeys:
    """Token keys written into backlog outputs and job metadata."""
    BACKLOG_ITEM_ID = "backlogItemId"
    CHAPTER_BLUEPRINT_ID = "chapterBlueprintId"
    CHAPTER_SCROLL_ID = "chapterScrollId"
    CHAPTER_SECTION_ID = "chapterSectionId"
    CHAPTER_SCENE_ID = "chapterSceneId"
    WORLD_BIBLE_ID = "worldBibleId"
    ITERATION_INDEX = "iterationIndex"


# Output tags mapped to phases, checked in priority order.
BLUEPRINT_OUTPUTS = ("chapter-blueprint", "blueprint")
SCROLL_OUTPUTS = ("chapter-scroll", "scroll")
SCENE_OUTPUTS = ("scene-draft", "scene")
WORLD_BIBLE_OUTPUT = "world-bible"
VISION_PLAN_OUTPUT = "vision-plan"
ITERATION_PLAN_OUTPUT = "iteration-plan"

_PHASE_TABLE = (
    (BLUEPRINT_OUTPUTS, PhaseKind.CHAPTER_ARCHITECT),
    (SCROLL_OUTPUTS, PhaseKind.SCROLL_REFINER),
    (SCENE_OUTPUTS, PhaseKind.SCENE_WEAVER),
    ((WORLD_BIBLE_OUTPUT,), PhaseKind.WORLD_BIBLE_MANAGER),
    ((VISION_PLAN_OUTPUT,), PhaseKind.VISION_PLANNER),
    ((ITERATION_PLAN_OUTPUT,), PhaseKind.ITERATIVE_PLANNER),
)

_SLUG_INVALID = re.compile(r"[^a-z0-9]+")


def is_value_token(output: str) -> bool:
    return "=" in output


def output_tags(item: BacklogItem) -> List[str]:
    """Semantic output tags of ``item`` (``key=value`` tokens excluded)."""
    return [o for o in item.outputs if o and not is_value_token(o)]


def _contains(values: Iterable[str], target: str) -> bool:
    lowered = target.lower()
    return any(v.lower() == lowered for v in values if v)


def get_backlog_output_value(item: BacklogItem, key: str) -> Optional[str]:
    """Return the value recorded under ``key``, or None."""
    prefix = f"{key}=".lower()
    for output in item.outputs:
        if output.lower().startswith(prefix):
            return output[len(prefix):]
    return None


def set_backlog_output_value(item: BacklogItem, key: str, value: str) -> None:
    """Record ``key=value`` on ``item``, replacing any previous value for ``key``."""
    prefix = f"{key}="
    outputs = list(item.outputs)
    for index, output in enumerate(outputs):
        if output.lower().startswith(prefix.lower()):
            outputs[index] = prefix + value
            break
    else:
        outputs.append(prefix + value)
    item.outputs = outputs
    item.updated_at = utc_now()


def resolve_phase(item: BacklogItem) -> Optional[PhaseKind]:
    """Map a backlog item to the phase that produces its outputs."""
    tags = output_tags(item)
    if not tags:
        return None
    for candidates, phase in _PHASE_TABLE:
        if any(_contains(candidates, tag) for tag in tags):
            return phase
    return None


def producers_of(tag: str, backlog: Sequence[BacklogItem], exclude: Optional[BacklogItem] = None) -> List[BacklogItem]:
    """Items whose output tags include ``tag``."""
    return [
        candidate
        for candidate in backlog
        if candidate is not exclude and _contains(output_tags(candidate), tag)
    ]


def resolve_dependency_value(item: BacklogItem, backlog: Sequence[BacklogItem], key: str) -> Optional[str]:
    """
    Resolve ``key`` from the item's own tokens, then from the tokens of the
    items that produce its inputs.
    """
    value = get_backlog_output_value(item, key)
    if value:
        return value
    for input_tag in item.inputs:
        if not input_tag or not input_tag.strip():
            continue
        for dependency in producers_of(input_tag, backlog, exclude=item):
            dependency_value = get_backlog_output_value(dependency, key)
            if dependency_value:
                return dependency_value
    return None


def resolve_iteration_index(item: BacklogItem) -> int:
    raw = get_backlog_output_value(item, MetadataKeys.ITERATION_INDEX)
    try:
        parsed = int(raw) if raw is not None else 0
    except ValueError:
        parsed = 0
    return parsed if parsed > 0 else 1


def normalize_slug(value: str) -> str:
    """Lowercase slug with runs of non-alphanumerics collapsed to ``-``."""
    slug = _SLUG_INVALID.sub("-", (value or "").lower()).strip("-")
    return slug or "item"


def backlog_title(item: BacklogItem) -> str:
    return item.description.strip() if item.description and item.description.strip() else item.backlog_id
