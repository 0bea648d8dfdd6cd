from __future__ import annotations

from collections.abc import Iterable
from typing import Any


class GraphError(ValueError):
    """Raised when a work plan's dependency graph is not a valid DAG."""

    def __init__(self, issues: Iterable[Any]) -> None:
        self.issues = list(issues)
        details = "; ".join(str(issue) for issue in self.issues) or "unknown graph error"
        super().__init__(f"Invalid dependency graph: {details}")


class StageFailure(RuntimeError):
    """A worker call failed entirely after its retries were exhausted."""

    def __init__(self, node_id: str, message: str) -> None:
        self.node_id = node_id
        super().__init__(f"{node_id}: {message}")


class PlanChangedError(ValueError):
    """Raised when resuming a run whose stored plan fingerprint differs from the current plan."""
