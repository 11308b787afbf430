"""
Unit tests for critique budgeting.

Tests cover:
- Denial ordering and reservation at begin
- Token accounting and status strings
- Metrics written onto planner results
- Option resolution per planner and persona
"""

from core.critique import (
    CritiqueBudget,
    CritiqueBudgetManager,
    CritiqueBudgetStatus,
    CritiqueOptions,
    PlannerCritiqueSettings,
)
from core.planner import PlannerResult


class TestCritiqueBudgetManager:
    """Tests for CritiqueBudgetManager."""

    def test_disabled_manager_denies(self):
        manager = CritiqueBudgetManager.disabled()

        attempt = manager.begin_critique("outline")

        assert not attempt.allowed
        assert attempt.status == CritiqueBudgetStatus.DISABLED
        assert manager.status == "disabled"

    def test_max_total_critiques_one(self):
        """With a total limit of 1 the second attempt is denied."""
        manager = CritiqueBudgetManager(True, CritiqueBudget(max_total_critiques=1, max_critiques_per_step=None,
                                                             max_total_critique_tokens=None))

        first = manager.begin_critique("outline")
        first.complete(120)
        second = manager.begin_critique("draft")

        assert first.allowed
        assert second.status == CritiqueBudgetStatus.TOTAL_LIMIT_REACHED
        assert manager.total_critiques == 1
        assert manager.total_tokens == 120
        assert manager.status == "count-exhausted"

    def test_per_step_limit(self):
        manager = CritiqueBudgetManager(
            True, CritiqueBudget(max_total_critiques=None, max_critiques_per_step=1, max_total_critique_tokens=None)
        )

        manager.begin_critique("Outline").dispose()
        attempt = manager.begin_critique("outline")

        assert attempt.status == CritiqueBudgetStatus.STEP_LIMIT_REACHED

    def test_estimated_tokens_over_budget(self):
        manager = CritiqueBudgetManager(
            True, CritiqueBudget(max_total_critiques=None, max_critiques_per_step=None, max_total_critique_tokens=100)
        )

        attempt = manager.begin_critique("outline", estimated_tokens=150)

        assert attempt.status == CritiqueBudgetStatus.TOKEN_BUDGET_EXCEEDED
        assert manager.status == "token-exhausted"

    def test_abandoned_attempt_still_counts(self):
        """Counts are reserved at begin, so a disposed attempt consumes budget."""
        manager = CritiqueBudgetManager(True, CritiqueBudget(max_total_critiques=1, max_critiques_per_step=None,
                                                             max_total_critique_tokens=None))

        with manager.begin_critique("outline"):
            pass

        assert not manager.begin_critique("outline").allowed
        assert manager.total_tokens == 0

    def test_empty_step_id(self):
        manager = CritiqueBudgetManager(True, CritiqueBudget(max_total_critiques=None, max_critiques_per_step=None,
                                                             max_total_critique_tokens=None))

        attempt = manager.begin_critique("  ")

        assert attempt.step_id == "unknown-step"

    def test_idle_then_used(self):
        manager = CritiqueBudgetManager(True, CritiqueBudget(max_total_critiques=None, max_critiques_per_step=None,
                                                             max_total_critique_tokens=None))
        assert manager.status == "idle"

        manager.begin_critique("outline").complete(10)

        assert manager.status == "used"


class TestApplyMetrics:
    def test_disabled_writes_only_diagnostic(self):
        result = PlannerResult.success()

        CritiqueBudgetManager.disabled().apply_metrics(result)

        assert result.metrics == {}
        assert result.diagnostics == {"critiqueStatus": "disabled"}

    def test_enabled_writes_counts(self):
        manager = CritiqueBudgetManager(True, CritiqueBudget(max_total_critiques=1, max_critiques_per_step=None,
                                                             max_total_critique_tokens=None))
        manager.begin_critique("a").complete(50)
        manager.begin_critique("b")
        result = PlannerResult.success()

        manager.apply_metrics(result)

        assert result.metrics == {"critiqueCount": 1.0, "critiqueTokens": 50.0, "critiqueDenied": 1.0}
        assert result.diagnostics["critiqueStatus"] == "count-exhausted"


class TestCritiqueOptions:
    def test_defaults_are_zero(self):
        budget = CritiqueOptions().resolve_budget("vision")

        assert budget.max_total_critiques == 0
        assert budget.max_critiques_per_step == 0
        assert budget.max_total_critique_tokens == 0

    def test_planner_settings_budget_overrides(self):
        options = CritiqueOptions(
            enabled=True,
            defaults=CritiqueBudget(max_total_critiques=2),
            planner_settings={"Vision": PlannerCritiqueSettings(enabled=True, budget=CritiqueBudget(
                max_total_critiques=5, max_critiques_per_step=None, max_total_critique_tokens=None))},
        )

        assert options.resolve_budget("vision").max_total_critiques == 5
        assert options.resolve_budget("other").max_total_critiques == 2

    def test_global_switch_off(self):
        options = CritiqueOptions(enabled=False)

        assert not options.is_planner_enabled("vision", "p1", fallback=True)

    def test_allow_list(self):
        options = CritiqueOptions(
            enabled=True,
            planner_settings={"vision": PlannerCritiqueSettings(enabled=True, persona_allow_list=["p1"])},
        )

        assert options.is_planner_enabled("vision", "p1")
        assert not options.is_planner_enabled("vision", "p2")
        assert options.is_planner_enabled("unlisted", None, fallback=True)
