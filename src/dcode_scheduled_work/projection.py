"""Pure read-side projection of a run's output store.

Nothing here writes. Given the same store contents, :func:`derive_run_view`
always returns an equal :class:`RunView`.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from .models import (
    DepSummary,
    FinalReviewRecord,
    ImplementRecord,
    LandingRecord,
    PassRecord,
    ReviewFixRecord,
    ReviewRecord,
    TestRecord,
    Tier,
    WorkPlan,
    WorkUnit,
)
from .output_store import OutputStore
from .stages import LANDING_KIND, PASS_KIND, PASS_TRACKER_NODE, Stage, landing_node_id, stage_node_id


@dataclass(frozen=True)
class Eviction:
    pass_number: int
    reason: str
    details: str

    def render(self) -> str:
        return f"Evicted in pass {self.pass_number} ({self.reason}): {self.details}"


@dataclass(frozen=True)
class UnitView:
    unit_id: str
    layer: int
    landed: bool
    merge_commit: str | None
    eviction: Eviction | None
    tier_complete: bool
    fresh_test_after_eviction: bool
    deps_landed: bool
    pending_deps: tuple[str, ...] = ()

    @property
    def runnable(self) -> bool:
        return not self.landed and self.deps_landed

    @property
    def landing_candidate(self) -> bool:
        if self.landed or not self.tier_complete:
            return False
        return self.eviction is None or self.fresh_test_after_eviction


@dataclass(frozen=True)
class RunView:
    units: dict[str, UnitView]
    passes_completed: int

    @property
    def landed_ids(self) -> list[str]:
        return [unit_id for unit_id, view in self.units.items() if view.landed]

    @property
    def all_landed(self) -> bool:
        return all(view.landed for view in self.units.values())

    def runnable(self, units: Iterable[WorkUnit]) -> list[WorkUnit]:
        return [unit for unit in units if self.units[unit.id].runnable]

    def candidates(self, units: Iterable[WorkUnit]) -> list[WorkUnit]:
        return [unit for unit in units if self.units[unit.id].landing_candidate]


def latest_test(store: OutputStore, unit_id: str) -> TestRecord | None:
    return store.latest(Stage.TEST.output_kind, stage_node_id(unit_id, Stage.TEST))


def tier_complete(unit: WorkUnit, store: OutputStore) -> bool:
    """Whether the unit's latest records satisfy its tier's completion rule.

    The rules are cumulative: each tier adds to the one below it.
    """
    test: TestRecord | None = latest_test(store, unit.id)
    if test is None or not test.passed:
        return False
    if unit.tier == Tier.TRIVIAL:
        return True

    code: ReviewRecord | None = store.latest(Stage.CODE_REVIEW.output_kind, stage_node_id(unit.id, Stage.CODE_REVIEW))
    if unit.tier == Tier.SMALL:
        return bool(code and code.approved)

    prd: ReviewRecord | None = store.latest(Stage.PRD_REVIEW.output_kind, stage_node_id(unit.id, Stage.PRD_REVIEW))
    if not (prd and prd.approved and code and code.approved):
        fix: ReviewFixRecord | None = store.latest(
            Stage.REVIEW_FIX.output_kind, stage_node_id(unit.id, Stage.REVIEW_FIX)
        )
        if not (fix and fix.all_issues_resolved):
            return False
    if unit.tier == Tier.MEDIUM:
        return True

    final: FinalReviewRecord | None = store.latest(
        Stage.FINAL_REVIEW.output_kind, stage_node_id(unit.id, Stage.FINAL_REVIEW)
    )
    return bool(final and final.ready_to_move_on)


def landing_history(store: OutputStore, layer_index: int) -> list[tuple[int, LandingRecord]]:
    return [(entry.iteration, entry.record) for entry in store.history(LANDING_KIND, landing_node_id(layer_index))]


def _landing_state(
    unit_id: str, history: Sequence[tuple[int, LandingRecord]]
) -> tuple[bool, str | None, Eviction | None]:
    landed = False
    merge_commit: str | None = None
    eviction: Eviction | None = None
    for iteration, record in history:
        for entry in record.landed:
            if entry.unit_id == unit_id and not landed:
                landed = True
                merge_commit = entry.merge_commit
        for entry in record.evicted:
            if entry.unit_id == unit_id:
                eviction = Eviction(pass_number=iteration, reason=entry.reason_text, details=entry.details)
    return landed, merge_commit, eviction


def passes_completed(store: OutputStore) -> int:
    latest: PassRecord | None = store.latest(PASS_KIND, PASS_TRACKER_NODE)
    return latest.total_iterations if latest is not None else 0


def derive_run_view(plan: WorkPlan, layers: Sequence[Sequence[WorkUnit]], store: OutputStore) -> RunView:
    """Project the store into the current state of every unit.

    A unit counts as landed once any landing record for its layer lists it as
    landed; later records can never take that back.
    """
    layer_of = {unit.id: index for index, layer in enumerate(layers) for unit in layer}
    histories = {index: landing_history(store, index) for index in range(len(layers))}

    landed_state: dict[str, tuple[bool, str | None, Eviction | None]] = {
        unit.id: _landing_state(unit.id, histories[layer_of[unit.id]]) for unit in plan.units
    }

    views: dict[str, UnitView] = {}
    for unit in plan.units:
        landed, merge_commit, eviction = landed_state[unit.id]
        pending = tuple(dep for dep in unit.deps if not landed_state[dep][0])
        fresh = False
        if eviction is not None:
            entry = store.latest_entry(Stage.TEST.output_kind, stage_node_id(unit.id, Stage.TEST))
            fresh = entry is not None and entry.iteration > eviction.pass_number and entry.record.passed
        views[unit.id] = UnitView(
            unit_id=unit.id,
            layer=layer_of[unit.id],
            landed=landed,
            merge_commit=merge_commit,
            eviction=None if landed else eviction,
            tier_complete=False if landed else tier_complete(unit, store),
            fresh_test_after_eviction=fresh,
            deps_landed=not pending,
            pending_deps=pending,
        )
    return RunView(units=views, passes_completed=passes_completed(store))


def dep_summaries(unit: WorkUnit, store: OutputStore) -> tuple[DepSummary, ...]:
    """Summaries of each dependency's latest implement record, skipping deps with none."""
    summaries: list[DepSummary] = []
    for dep in unit.deps:
        record: ImplementRecord | None = store.latest(Stage.IMPLEMENT.output_kind, stage_node_id(dep, Stage.IMPLEMENT))
        if record is None:
            continue
        summaries.append(
            DepSummary(
                id=dep,
                what_was_done=record.what_was_done,
                files_created=tuple(record.files_created or ()),
                files_modified=tuple(record.files_modified or ()),
            )
        )
    return tuple(summaries)
