from __future__ import annotations

import logging
from collections.abc import Sequence

from .errors import StageFailure
from .llm import normalize_structured_output
from .models import LandingRecord, Priority, SkippedUnit, WorkPlan, WorkUnit
from .output_store import OutputStore
from .projection import landing_history
from .prompts import render_landing_prompt
from .stages import LANDING_KIND, Stage, landing_node_id, stage_node_id
from .workers import LandingCandidate, LandingRequest, LandingWorker, WorkerInvoker
from .workspace import WorkspaceManager

logger = logging.getLogger(__name__)

PRIORITY_RANK: dict[Priority, int] = {Priority.HIGH: 0, Priority.MEDIUM: 1, Priority.LOW: 2}

NOT_REPORTED = "not reported by landing worker"
NO_CANDIDATES = "No tier-complete candidates in this layer."
MAINLINE_BUSY = "a timed-out landing call is still running on the main branch"

# Every landing call integrates onto the same main branch, so they share one lane.
MAINLINE_LANE = "mainline"


def order_candidates(units: Sequence[WorkUnit]) -> list[WorkUnit]:
    """Highest priority first; plan order is kept within a priority."""
    return sorted(units, key=lambda unit: PRIORITY_RANK[unit.priority])


def _skip_all(candidate_ids: Sequence[str], reason: str, pass_number: int) -> LandingRecord:
    return LandingRecord(
        skipped=[SkippedUnit(unit_id=unit_id, reason=reason) for unit_id in candidate_ids],
        summary=f"Landing worker failed; nothing landed in pass {pass_number}.",
    )


def normalize_landing(raw: LandingRecord, candidate_ids: Sequence[str], *, node_id: str) -> LandingRecord:
    """Make the worker's report consistent with the candidates it was given.

    Each candidate ends up in exactly one list. A unit reported in several
    lists keeps the first of landed, evicted, skipped. Ids that were never
    offered are dropped and candidates the worker did not mention are skipped.
    """
    allowed = set(candidate_ids)
    seen: set[str] = set()
    unknown: list[str] = []

    def accept(unit_id: str) -> bool:
        if unit_id not in allowed:
            unknown.append(unit_id)
            return False
        if unit_id in seen:
            return False
        seen.add(unit_id)
        return True

    landed = [entry for entry in raw.landed if accept(entry.unit_id)]
    evicted = [entry for entry in raw.evicted if accept(entry.unit_id)]
    skipped = [entry for entry in raw.skipped if accept(entry.unit_id)]
    for unit_id in candidate_ids:
        if unit_id not in seen:
            skipped.append(SkippedUnit(unit_id=unit_id, reason=NOT_REPORTED))
            seen.add(unit_id)
    if unknown:
        logger.warning("%s: dropping ids that were not candidates: %s", node_id, ", ".join(sorted(set(unknown))))
    return LandingRecord(
        landed=landed,
        evicted=evicted,
        skipped=skipped,
        summary=raw.summary,
        next_actions=raw.next_actions,
    )


class LandingCoordinator:
    """Offers a layer's tier-complete units to the landing worker and records the outcome.

    Exactly one landing record is written per layer per pass, even when there
    is nothing to land or the worker fails. A landing call that times out may
    add one more record for its pass once its late result is reconciled.
    """

    def __init__(
        self,
        *,
        plan: WorkPlan,
        store: OutputStore,
        worker: LandingWorker,
        invoker: WorkerInvoker,
        workspaces: WorkspaceManager,
    ) -> None:
        self.plan = plan
        self.store = store
        self.worker = worker
        self.invoker = invoker
        self.workspaces = workspaces

    def _already_landed(self, layer_index: int) -> set[str]:
        return {unit_id for _, record in landing_history(self.store, layer_index) for unit_id in record.landed_ids()}

    def _candidate(self, unit: WorkUnit) -> LandingCandidate:
        implemented = self.store.latest(Stage.IMPLEMENT.output_kind, stage_node_id(unit.id, Stage.IMPLEMENT))
        return LandingCandidate(
            unit_id=unit.id,
            name=unit.name,
            tier=unit.tier.value,
            priority=unit.priority.value,
            branch=self.workspaces.branch_for(unit.id),
            worktree_path=str(self.workspaces.path_for(unit.id)),
            files_created=tuple(implemented.files_created or ()) if implemented else (),
            files_modified=tuple(implemented.files_modified or ()) if implemented else (),
        )

    def reconcile_late_landings(self) -> list[LandingRecord]:
        """Record the results of landing calls that finished after they timed out.

        Each late result is normalized against the candidates it was offered and
        appended under the pass that made the call, so anything it landed counts
        as landed from then on.
        """
        records: list[LandingRecord] = []
        for late in self.invoker.late_results(MAINLINE_LANE):
            request: LandingRequest = late.request
            node_id = landing_node_id(request.layer_index)
            if late.error is not None:
                logger.warning(
                    "%s: timed-out landing call from pass %d failed later: %s", node_id, request.pass_number, late.error
                )
                continue
            try:
                raw = normalize_structured_output(raw_output=late.output, schema=LandingRecord)
            except RuntimeError as exc:
                logger.warning(
                    "%s: unusable late landing result from pass %d: %s", node_id, request.pass_number, exc
                )
                continue
            record = normalize_landing(raw, [entry.unit_id for entry in request.candidates], node_id=node_id)
            record = record.model_copy(
                update={"summary": f"Late result of the pass {request.pass_number} landing call. {record.summary}".strip()},
            )
            self.store.append(LANDING_KIND, node_id, request.pass_number, record)
            logger.warning(
                "%s: late landing result from pass %d recorded: landed=%s evicted=%s",
                node_id,
                request.pass_number,
                record.landed_ids(),
                record.evicted_ids(),
            )
            records.append(record)
        return records

    def land_layer(self, layer_index: int, candidates: Sequence[WorkUnit], pass_number: int) -> LandingRecord:
        node_id = landing_node_id(layer_index)
        mainline_idle = self.invoker.wait_for_lane(MAINLINE_LANE)
        self.reconcile_late_landings()
        landed_before = self._already_landed(layer_index)
        repeat = [unit.id for unit in candidates if unit.id in landed_before]
        if repeat:
            logger.warning("%s: ignoring already-landed candidates %s", node_id, ", ".join(repeat))
        ordered = order_candidates([unit for unit in candidates if unit.id not in landed_before])

        if not ordered:
            record = LandingRecord(summary=NO_CANDIDATES)
        elif not mainline_idle:
            logger.error("%s: a timed-out landing call is still running, skipping every candidate", node_id)
            record = _skip_all([unit.id for unit in ordered], MAINLINE_BUSY, pass_number)
        else:
            record = self._invoke(layer_index, ordered, pass_number)

        self.store.append(LANDING_KIND, node_id, pass_number, record)
        logger.info(
            "%s pass %d: landed=%s evicted=%s skipped=%s",
            node_id,
            pass_number,
            record.landed_ids(),
            record.evicted_ids(),
            record.skipped_ids(),
        )
        return record

    def _invoke(self, layer_index: int, ordered: list[WorkUnit], pass_number: int) -> LandingRecord:
        node_id = landing_node_id(layer_index)
        candidate_ids = [unit.id for unit in ordered]
        entries = tuple(self._candidate(unit) for unit in ordered)
        post_land_checks = tuple(self.plan.verify_commands)
        request = LandingRequest(
            layer_index=layer_index,
            pass_number=pass_number,
            main_branch=self.workspaces.main_branch,
            repo_root=self.workspaces.repo_root,
            candidates=entries,
            post_land_checks=post_land_checks,
            prompt=render_landing_prompt(
                layer_index=layer_index,
                main_branch=self.workspaces.main_branch,
                candidates=[entry.as_dict() for entry in entries],
                post_land_checks=post_land_checks,
            ),
        )
        try:
            raw = self.invoker.call(
                self.worker.land, request, schema=LandingRecord, node_id=node_id, lane=MAINLINE_LANE
            )
        except StageFailure as exc:
            logger.error("%s: landing worker failed, skipping every candidate: %s", node_id, exc)
            return _skip_all(candidate_ids, f"landing worker failed: {exc}", pass_number)
        return normalize_landing(raw, candidate_ids, node_id=node_id)
