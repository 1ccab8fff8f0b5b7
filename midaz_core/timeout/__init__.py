"""
Timeout Budgeting
=================
Shrinking per-call time allowance shared by all retry attempts.
"""

from .budget import TimeoutBudget, TimeoutBudgetConfig, TimeoutBudgetManager, create_budget

__all__ = [
    "TimeoutBudget",
    "TimeoutBudgetConfig",
    "TimeoutBudgetManager",
    "create_budget",
]
