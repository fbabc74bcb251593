from __future__ import annotations


class AutopilotError(RuntimeError):
    """Raised when an engine operation is called in a state that cannot honor it."""


class PlanError(AutopilotError):
    """Raised when a plan payload cannot be parsed."""
