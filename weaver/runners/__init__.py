"""
Fiction Weaver Runners Module
Phase runners and the runner registry.
"""

from .base import ContentGenerator, PhaseRunner, PhaseRunnerRegistry
from .phase_runners import (
    ContentPhaseRunner,
    LoreFulfillmentRunner,
    NotImplementedContentGenerator,
    PlannerPhaseRunner,
)

__all__ = [
    "ContentGenerator",
    "ContentPhaseRunner",
    "LoreFulfillmentRunner",
    "NotImplementedContentGenerator",
    "PhaseRunner",
    "PhaseRunnerRegistry",
    "PlannerPhaseRunner",
]
