"""Dependency-graph validation and layering for work plans.

A layer is the set of units whose longest dependency chain has the same
length; every dependency of a unit in layer ``k`` sits in a layer below ``k``.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from .errors import GraphError
from .models import WorkPlan, WorkUnit

UNKNOWN_DEPENDENCY = "UnknownDependency"
CYCLE_DETECTED = "CycleDetected"
DUPLICATE_UNIT = "DuplicateUnit"


@dataclass(frozen=True)
class GraphIssue:
    kind: str
    unit_id: str
    dep: str | None = None

    def __str__(self) -> str:
        if self.kind == UNKNOWN_DEPENDENCY:
            return f"unit {self.unit_id!r} depends on unknown unit {self.dep!r}"
        if self.kind == CYCLE_DETECTED:
            return f"cycle detected at unit {self.unit_id!r} via dependency {self.dep!r}"
        if self.kind == DUPLICATE_UNIT:
            return f"duplicate unit id {self.unit_id!r}"
        return f"{self.kind}: {self.unit_id}"


@dataclass(frozen=True)
class DagValidation:
    valid: bool
    errors: tuple[GraphIssue, ...] = ()


def validate_dag(units: Sequence[WorkUnit]) -> DagValidation:
    """Check ids are unique, deps resolve, and the graph is acyclic.

    Every issue found is reported, not just the first one.
    """
    issues: list[GraphIssue] = []
    by_id: dict[str, WorkUnit] = {}
    for unit in units:
        if unit.id in by_id:
            issues.append(GraphIssue(DUPLICATE_UNIT, unit.id))
            continue
        by_id[unit.id] = unit

    for unit in units:
        for dep in unit.deps:
            if dep not in by_id:
                issues.append(GraphIssue(UNKNOWN_DEPENDENCY, unit.id, dep))

    issues.extend(_find_cycles(units, by_id))
    return DagValidation(valid=not issues, errors=tuple(issues))


def _find_cycles(units: Sequence[WorkUnit], by_id: dict[str, WorkUnit]) -> list[GraphIssue]:
    issues: list[GraphIssue] = []
    visited: set[str] = set()
    on_stack: set[str] = set()

    def visit(unit_id: str) -> bool:
        if unit_id in visited:
            return False
        visited.add(unit_id)
        on_stack.add(unit_id)
        try:
            unit = by_id.get(unit_id)
            if unit is None:
                return False
            for dep in unit.deps:
                if dep in on_stack:
                    issues.append(GraphIssue(CYCLE_DETECTED, unit_id, dep))
                    return True
                if visit(dep):
                    return True
            return False
        finally:
            on_stack.discard(unit_id)

    for unit in units:
        visit(unit.id)
    return issues


def compute_layers(units: Sequence[WorkUnit]) -> list[list[WorkUnit]]:
    """Group validated units by longest dependency chain.

    Units keep their plan order inside a layer. Dependencies that do not name a
    unit in ``units`` are ignored here; run :func:`validate_dag` first.
    """
    by_id = {unit.id: unit for unit in units}
    depth: dict[str, int] = {}
    resolving: set[str] = set()

    def layer_of(unit_id: str) -> int:
        if unit_id in depth:
            return depth[unit_id]
        if unit_id in resolving:
            raise GraphError([GraphIssue(CYCLE_DETECTED, unit_id, unit_id)])
        resolving.add(unit_id)
        deps = [dep for dep in by_id[unit_id].deps if dep in by_id]
        value = 1 + max(layer_of(dep) for dep in deps) if deps else 0
        resolving.discard(unit_id)
        depth[unit_id] = value
        return value

    layers: list[list[WorkUnit]] = []
    for unit in units:
        index = layer_of(unit.id)
        while len(layers) <= index:
            layers.append([])
        layers[index].append(unit)
    return layers


def build_layers(plan: WorkPlan) -> list[list[WorkUnit]]:
    """Validate the plan's graph and return its layers, or raise :class:`GraphError`."""
    validation = validate_dag(plan.units)
    if not validation.valid:
        raise GraphError(validation.errors)
    return compute_layers(plan.units)


def layer_index_map(layers: Sequence[Sequence[WorkUnit]]) -> dict[str, int]:
    return {unit.id: index for index, layer in enumerate(layers) for unit in layer}
