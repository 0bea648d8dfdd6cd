from __future__ import annotations

from pathlib import Path

from .models import CompletionReport, FailedUnit, TestRecord, WorkPlan, WorkUnit
from .output_store import OutputStore
from .projection import RunView, latest_test
from .stages import stage_node_id, stages_for

_EVICTION_PREVIEW_CHARS = 200


def last_stage(unit: WorkUnit, store: OutputStore) -> str:
    """Latest pipeline stage, in pipeline order, that has a record for the unit."""
    for stage in reversed(stages_for(unit.tier)):
        if store.latest(stage.output_kind, stage_node_id(unit.id, stage)) is not None:
            return stage.value
    return "not-started"


def failure_reason(unit: WorkUnit, view: RunView, store: OutputStore, *, max_passes: int) -> str:
    """Why a unit did not land. Failing tests outrank evictions, which outrank blocked deps."""
    unit_view = view.units[unit.id]
    test: TestRecord | None = latest_test(store, unit.id)
    if test is not None and not test.passed:
        return f"Tests failing: {test.failing_summary or 'build or tests did not pass'}"
    if unit_view.eviction is not None:
        return f"Evicted from landing: {unit_view.eviction.details[:_EVICTION_PREVIEW_CHARS]}"
    if unit_view.pending_deps:
        return f"Blocked on unlanded dependencies: {', '.join(unit_view.pending_deps)}"
    return f"Did not complete within {max_passes} passes"


def build_completion_report(
    plan: WorkPlan,
    view: RunView,
    store: OutputStore,
    *,
    max_passes: int,
    exhausted: bool,
) -> CompletionReport:
    landed = view.landed_ids
    failed = [
        FailedUnit(
            unit_id=unit.id,
            last_stage=last_stage(unit, store),
            reason=failure_reason(unit, view, store, max_passes=max_passes),
        )
        for unit in plan.units
        if not view.units[unit.id].landed
    ]
    total = len(plan.units)
    if not failed:
        summary = f"All {total} units landed in {view.passes_completed} pass(es)."
    else:
        summary = (
            f"{len(landed)} of {total} units landed in {view.passes_completed} pass(es); "
            f"{len(failed)} did not land."
        )
        if exhausted:
            summary += " Stopped after exhausting the pass budget."
    return CompletionReport(
        run_id=store.run_id,
        total_units=total,
        units_landed=landed,
        units_failed=failed,
        passes_used=view.passes_completed,
        exhausted=exhausted,
        summary=summary,
        next_steps=_next_steps(failed, run_id=store.run_id, db_path=store.db_path),
    )


def _next_steps(failed: list[FailedUnit], *, run_id: str, db_path: Path) -> list[str]:
    if not failed:
        return ["All units landed; nothing left to do."]
    steps = [f"{entry.unit_id}: {entry.reason} (last stage: {entry.last_stage})" for entry in failed]
    steps.append(f"Inspect stage records for run {run_id} in {db_path}.")
    steps.append("Fix the plan or the failing units, then start a new run with `dcode-scheduled run`.")
    return steps
