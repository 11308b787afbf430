"""
Exception types raised by the orchestrator core.

Blocked phases and quota/critique denials are not errors; they are returned
as statuses and decision objects.
"""


class WeaverError(Exception):
    """Base class for orchestrator errors."""
    pass


class ConfigurationError(WeaverError):
    """Raised when the orchestrator is wired incorrectly at startup."""
    pass


class RunnerNotRegisteredError(ConfigurationError):
    """Raised when no runner is registered for a phase."""

    def __init__(self, phase):
        self.phase = phase
        super().__init__(f"No phase runner registered for phase '{getattr(phase, 'value', phase)}'.")


class PlanNotFoundError(WeaverError):
    """Raised when a phase is invoked for a plan that does not exist."""

    def __init__(self, plan_id: str):
        self.plan_id = plan_id
        super().__init__(f"Fiction plan {plan_id} was not found.")


class ConcurrencyConflictError(WeaverError):
    """Raised when a row was modified since it was read."""

    def __init__(self, entity: str, entity_id: str, expected_version: int):
        self.entity = entity
        self.entity_id = entity_id
        self.expected_version = expected_version
        super().__init__(
            f"{entity} {entity_id} was modified concurrently (expected version {expected_version})."
        )


class PlannerParameterError(WeaverError):
    """Raised when planner parameters fail validation."""
    pass


class PlannerTemplateMissingError(WeaverError):
    """Raised when a planner step references a template that does not exist."""
    pass
