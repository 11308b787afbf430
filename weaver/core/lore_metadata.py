"""
Lore requirement metadata keys and branch lineage helpers.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from models import DEFAULT_BRANCH, LoreRequirement, utc_now


class LoreRequirementMetadata:
    """Keys stamped into ``LoreRequirement.metadata`` by auto-fulfillment."""
    AUTO_FULFILLMENT_REQUESTED_UTC = "autoFulfillmentRequestedUtc"
    AUTO_FULFILLMENT_COMPLETED_UTC = "autoFulfillmentCompletedUtc"
    BRANCH_SLUG = "branchSlug"
    BRANCH_LINEAGE = "branchLineage"
    AUTO_FULFILLMENT_CONVERSATION_ID = "autoFulfillmentConversationId"
    AUTO_FULFILLMENT_AGENT_ID = "autoFulfillmentAgentId"


@dataclass(frozen=True)
class BranchContext:
    slug: str
    lineage: tuple

    @property
    def lineage_csv(self) -> str:
        return ",".join(self.lineage)


def resolve_branch_context(branch_slug: Optional[str]) -> BranchContext:
    """Lineage is ``[main, branch]`` for non-default branches, ``[main]`` otherwise."""
    slug = branch_slug.strip() if branch_slug and branch_slug.strip() else DEFAULT_BRANCH
    if slug.lower() == DEFAULT_BRANCH:
        return BranchContext(slug=slug, lineage=(DEFAULT_BRANCH,))
    return BranchContext(slug=slug, lineage=(DEFAULT_BRANCH, slug))


def is_auto_fulfillment_requested(requirement: LoreRequirement) -> bool:
    return bool(requirement.metadata.get(LoreRequirementMetadata.AUTO_FULFILLMENT_REQUESTED_UTC))


def last_touched(requirement: LoreRequirement) -> datetime:
    return requirement.updated_at or requirement.created_at


def stamp_auto_fulfillment_request(
    requirement: LoreRequirement,
    branch: BranchContext,
    conversation_id: str,
    agent_id: Optional[str],
    requested_at: Optional[datetime] = None,
) -> None:
    metadata: Dict[str, Any] = dict(requirement.metadata)
    metadata[LoreRequirementMetadata.AUTO_FULFILLMENT_REQUESTED_UTC] = (requested_at or utc_now()).isoformat()
    metadata[LoreRequirementMetadata.BRANCH_SLUG] = branch.slug
    metadata[LoreRequirementMetadata.BRANCH_LINEAGE] = list(branch.lineage)
    metadata[LoreRequirementMetadata.AUTO_FULFILLMENT_CONVERSATION_ID] = conversation_id
    if agent_id:
        metadata[LoreRequirementMetadata.AUTO_FULFILLMENT_AGENT_ID] = agent_id
    requirement.metadata = metadata


def stamp_auto_fulfillment_completed(requirement: LoreRequirement, completed_at: Optional[datetime] = None) -> None:
    metadata: Dict[str, Any] = dict(requirement.metadata)
    metadata[LoreRequirementMetadata.AUTO_FULFILLMENT_COMPLETED_UTC] = (completed_at or utc_now()).isoformat()
    requirement.metadata = metadata
