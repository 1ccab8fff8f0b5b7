"""
Timeout Budget Tests
====================
"""

import pytest


class TestTimeoutBudget:
    """Tests for the per-call timeout budget."""

    def test_requested_timeout_used_when_it_fits(self, clock):
        """A requested timeout within the remaining budget is returned as is."""
        from midaz_core.timeout import create_budget

        budget = create_budget(10.0, clock=clock)

        assert budget.get_next_timeout(5.0) == 5.0
        assert budget.attempts == 1

    def test_timeout_shrinks_to_remaining_budget(self, clock):
        """A requested timeout larger than what is left is cut to remaining - buffer."""
        from midaz_core.timeout import create_budget

        budget = create_budget(10.0, clock=clock)
        clock.advance(8.0)

        assert budget.get_next_timeout(5.0) == pytest.approx(1.9)

    def test_floor_applies_above_buffer(self, clock):
        """Below the floor but above the buffer, the floor is returned."""
        from midaz_core.timeout import create_budget

        budget = create_budget(10.0, min_request_timeout=1.0, buffer_time=0.1, clock=clock)
        clock.advance(9.5)

        assert budget.get_next_timeout() == 1.0

    def test_exhausted_budget_returns_zero(self, clock):
        """Once remaining <= buffer, no further attempt may start."""
        from midaz_core.timeout import create_budget

        budget = create_budget(10.0, clock=clock)
        clock.advance(9.95)

        assert budget.get_next_timeout(5.0) == 0.0
        assert budget.attempts == 1

    def test_has_remaining_budget(self, clock):
        """True only while remaining exceeds floor + buffer."""
        from midaz_core.timeout import create_budget

        budget = create_budget(3.0, clock=clock)
        assert budget.has_remaining_budget() is True

        clock.advance(1.8)  # 1.2s left
        assert budget.has_remaining_budget() is True

        clock.advance(0.15)  # 1.05s left
        assert budget.has_remaining_budget() is False

    def test_remaining_never_negative(self, clock):
        from midaz_core.timeout import create_budget

        budget = create_budget(1.0, clock=clock)
        clock.advance(5.0)

        assert budget.remaining == 0.0
        assert budget.elapsed == 5.0

    def test_rejects_non_positive_total(self):
        from midaz_core.timeout import TimeoutBudget

        with pytest.raises(ValueError):
            TimeoutBudget(0)


class TestTimeoutBudgetManager:
    """Tests for keyed budgets."""

    def test_create_and_get(self, clock):
        from midaz_core.timeout import TimeoutBudgetManager

        manager = TimeoutBudgetManager(10.0, clock=clock)
        budget = manager.create_budget("create-account", total_timeout=5.0)

        assert manager.get_budget("create-account") is budget
        assert budget.total_timeout == 5.0
        assert manager.get_budget("missing") is None

    def test_cleanup_drops_spent_budgets(self, clock):
        """Budgets that cannot fund another attempt are removed."""
        from midaz_core.timeout import TimeoutBudgetManager

        manager = TimeoutBudgetManager(10.0, clock=clock)
        manager.create_budget("short", total_timeout=2.0)
        manager.create_budget("long", total_timeout=30.0)

        clock.advance(1.5)

        assert manager.cleanup() == 1
        assert set(manager.active_budgets()) == {"long"}

    def test_remove_and_clear(self):
        from midaz_core.timeout import TimeoutBudgetManager

        manager = TimeoutBudgetManager(10.0)
        manager.create_budget("a")
        manager.create_budget("b")

        manager.remove_budget("a")
        assert manager.get_budget("a") is None

        manager.clear()
        assert manager.active_budgets() == {}


class TestBudgetCancellation:
    """Tests for budget-driven cancellation tokens."""

    @pytest.mark.asyncio
    async def test_token_fires_when_budget_expires(self):
        """The budget token cancels once the remaining time elapses."""
        import asyncio
        from midaz_core.timeout import create_budget

        budget = create_budget(0.01)
        token = budget.create_cancellation_token()

        await asyncio.wait_for(token.wait(), timeout=1.0)

        assert token.is_cancelled()
        assert token.reason == "timeout"
