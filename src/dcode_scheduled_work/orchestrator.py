"""Pass loop over the layered work plan.

Graph shape::

    START -> begin_pass -> run_layer (once per layer) -> record_pass -> begin_pass ...
                      \\-> report -> END

Every node re-derives what it needs from the output store, so a crashed run
resumed with the same run id picks up where the store says it left off.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, TypedDict

from langgraph.graph import END, START, StateGraph

from .graph import build_layers
from .landing import LandingCoordinator
from .models import CompletionReport, PassRecord, WorkPlan, WorkUnit
from .output_store import OutputStore
from .pipeline import PipelineInput, PipelineResult, QualityPipeline
from .projection import RunView, dep_summaries, derive_run_view
from .report import build_completion_report
from .settings import RuntimeSettings
from .stages import COMPLETION_REPORT_NODE, PASS_KIND, PASS_TRACKER_NODE, REPORT_KIND
from .workers import LandingWorker, StageWorker, WorkerInvoker
from .workspace import WorkspaceManager

logger = logging.getLogger(__name__)


class SchedulerState(TypedDict, total=False):
    pass_number: int
    layer_cursor: int
    iterations: int
    done: bool
    exhausted: bool
    report: dict[str, Any]


class ScheduledWorkOrchestrator:
    """Drives passes until every unit has landed or the pass budget is spent."""

    def __init__(
        self,
        plan: WorkPlan,
        *,
        store: OutputStore,
        stage_worker: StageWorker,
        landing_worker: LandingWorker,
        workspaces: WorkspaceManager,
        settings: RuntimeSettings | None = None,
    ) -> None:
        self.plan = plan
        self.settings = settings if settings is not None else RuntimeSettings.from_env()
        self.store = store
        self.layers: list[list[WorkUnit]] = build_layers(plan)
        self.max_iterations = self.settings.iteration_ceiling(len(plan.units))
        self.pipeline = QualityPipeline(
            plan=plan,
            store=store,
            worker=stage_worker,
            invoker=WorkerInvoker(
                retries=self.settings.stage_retries,
                timeout_seconds=self.settings.stage_timeout_seconds,
            ),
            workspaces=workspaces,
            max_passes=self.settings.max_passes,
        )
        # Landing mutates the main branch, so a failed attempt is never retried blindly.
        self.landing = LandingCoordinator(
            plan=plan,
            store=store,
            worker=landing_worker,
            invoker=WorkerInvoker(retries=0, timeout_seconds=self.settings.stage_timeout_seconds, collect_late=True),
            workspaces=workspaces,
        )
        self.graph = self._build_graph().compile()

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(SchedulerState)
        graph.add_node("begin_pass", self._begin_pass_node)
        graph.add_node("run_layer", self._run_layer_node)
        graph.add_node("record_pass", self._record_pass_node)
        graph.add_node("report", self._report_node)

        graph.add_edge(START, "begin_pass")
        graph.add_conditional_edges(
            "begin_pass",
            self._begin_route,
            {
                "run_layer": "run_layer",
                "report": "report",
            },
        )
        graph.add_conditional_edges(
            "run_layer",
            self._layer_route,
            {
                "run_layer": "run_layer",
                "record_pass": "record_pass",
            },
        )
        graph.add_edge("record_pass", "begin_pass")
        graph.add_edge("report", END)
        return graph

    def view(self) -> RunView:
        return derive_run_view(self.plan, self.layers, self.store)

    # -- nodes --------------------------------------------------------------

    def _begin_pass_node(self, state: SchedulerState) -> dict[str, Any]:
        self.landing.reconcile_late_landings()
        view = self.view()
        iterations = int(state.get("iterations", 0)) + 1
        out_of_passes = view.passes_completed >= self.settings.max_passes
        ceiling_hit = iterations > self.max_iterations
        done = view.all_landed or out_of_passes or ceiling_hit
        if ceiling_hit and not (view.all_landed or out_of_passes):
            logger.error("Iteration ceiling %d reached; stopping", self.max_iterations)
        if not done:
            logger.info(
                "Starting pass %d of %d (%d/%d units landed)",
                view.passes_completed + 1,
                self.settings.max_passes,
                len(view.landed_ids),
                len(self.plan.units),
            )
        return {
            "pass_number": view.passes_completed + 1,
            "layer_cursor": 0,
            "iterations": iterations,
            "done": done,
            "exhausted": done and not view.all_landed,
        }

    def _begin_route(self, state: SchedulerState) -> str:
        return "report" if state.get("done") else "run_layer"

    def _run_layer_node(self, state: SchedulerState) -> dict[str, Any]:
        pass_number = state["pass_number"]
        layer_index = state["layer_cursor"]
        layer = self.layers[layer_index]

        self.landing.reconcile_late_landings()
        view = self.view()
        runnable = view.runnable(layer)
        blocked = [unit.id for unit in layer if not view.units[unit.id].landed and unit not in runnable]
        if blocked:
            logger.info("Layer %d: %s blocked on unlanded dependencies", layer_index, ", ".join(blocked))
        if runnable:
            self.run_pipelines(runnable, view, pass_number)

        # Phase 1 output is visible here, so units completed this pass can land this pass.
        candidates = self.view().candidates(layer)
        self.landing.land_layer(layer_index, candidates, pass_number)
        return {"layer_cursor": layer_index + 1}

    def _layer_route(self, state: SchedulerState) -> str:
        return "run_layer" if state["layer_cursor"] < len(self.layers) else "record_pass"

    def _record_pass_node(self, state: SchedulerState) -> dict[str, Any]:
        pass_number = state["pass_number"]
        view = self.view()
        landed = view.landed_ids
        remaining = [unit.id for unit in self.plan.units if not view.units[unit.id].landed]
        record = PassRecord(
            total_iterations=pass_number,
            units_run=remaining,
            units_complete=landed,
            summary=f"Pass {pass_number}: {len(landed)}/{len(self.plan.units)} units landed.",
        )
        self.store.append(PASS_KIND, PASS_TRACKER_NODE, pass_number, record)
        logger.info(record.summary)
        return {}

    def _report_node(self, state: SchedulerState) -> dict[str, Any]:
        self.landing.reconcile_late_landings()
        view = self.view()
        report = build_completion_report(
            self.plan,
            view,
            self.store,
            max_passes=self.settings.max_passes,
            exhausted=bool(state.get("exhausted")),
        )
        self.store.append(REPORT_KIND, COMPLETION_REPORT_NODE, view.passes_completed, report)
        if report.exhausted:
            logger.warning(report.summary)
        else:
            logger.info(report.summary)
        return {"report": report.model_dump(mode="json")}

    # -- phase 1 ------------------------------------------------------------

    def run_pipelines(self, units: list[WorkUnit], view: RunView, pass_number: int) -> list[PipelineResult]:
        """Run each unit's pipeline with at most ``max_concurrency`` in flight.

        One unit's failure never stops the others.
        """
        inputs = [
            PipelineInput(
                unit=unit,
                pass_number=pass_number,
                dep_summaries=dep_summaries(unit, self.store),
                eviction_context=view.units[unit.id].eviction.render() if view.units[unit.id].eviction else None,
            )
            for unit in units
        ]
        results: list[PipelineResult] = []
        workers = min(self.settings.max_concurrency, len(inputs))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="quality-pipeline") as pool:
            futures = {pool.submit(self.pipeline.run, item): item.unit.id for item in inputs}
            for future in as_completed(futures):
                unit_id = futures[future]
                try:
                    results.append(future.result())
                except Exception as exc:  # noqa: BLE001 - isolate one unit's crash from the rest of the layer.
                    logger.exception("Pipeline for %s crashed", unit_id)
                    results.append(PipelineResult(unit_id=unit_id, error=str(exc)))
        return results

    # -- entry point --------------------------------------------------------

    def run(self) -> CompletionReport:
        """Run to completion and return the report.

        The report is produced once per run; calling again returns the stored one.
        """
        existing: CompletionReport | None = self.store.latest(REPORT_KIND, COMPLETION_REPORT_NODE)
        if existing is not None:
            logger.info("Run %s already has a completion report", self.store.run_id)
            return existing
        result = self.graph.invoke(
            {"iterations": 0},
            config={"recursion_limit": self.max_iterations * (len(self.layers) + 2) + 10},
        )
        return CompletionReport.model_validate(result["report"])
