"""Per-unit quality pipeline.

Each tier compiles to its own LangGraph ``StateGraph``. Stages run in pipeline
order; the two reviews fan out in parallel after ``test`` and join before
``review_fix``. A failing review is recorded and the pipeline carries on; any
other failed stage ends the unit's pipeline for this pass.
"""

from __future__ import annotations

import logging
import operator
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Annotated, Any, TypedDict

from langgraph.graph import END, START, StateGraph

from .errors import StageFailure
from .models import (
    DepSummary,
    FinalReviewRecord,
    ImplementRecord,
    PlanRecord,
    ResearchRecord,
    ReviewFixRecord,
    ReviewRecord,
    TestRecord,
    Tier,
    WorkPlan,
    WorkUnit,
)
from .output_store import OutputStore
from .prompts import render_stage_prompt
from .stages import REVIEW_STAGES, Stage, stage_node_id, stages_for
from .workers import StageRequest, StageWorker, WorkerInvoker
from .workspace import WorkspaceError, WorkspaceManager

logger = logging.getLogger(__name__)

PREPARE_NODE = "prepare_workspace"
WORKSPACE_STEP = "workspace"


class PipelineState(TypedDict, total=False):
    unit_id: str
    pass_number: int
    eviction_context: str | None
    dep_summaries: tuple[DepSummary, ...]
    workspace: str
    completed: Annotated[list[str], operator.add]
    skipped: Annotated[list[str], operator.add]
    review_failures: Annotated[list[str], operator.add]
    failed_stage: str | None
    error: str | None


@dataclass(frozen=True)
class PipelineInput:
    unit: WorkUnit
    pass_number: int
    dep_summaries: tuple[DepSummary, ...] = ()
    eviction_context: str | None = None


@dataclass
class PipelineResult:
    unit_id: str
    completed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    review_failures: list[str] = field(default_factory=list)
    failed_stage: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.failed_stage is None and self.error is None


def default_context_file(unit_id: str) -> str:
    return f"docs/research/{unit_id}.md"


def default_plan_file(unit_id: str) -> str:
    return f"docs/plans/{unit_id}.md"


def _steps(stages: Sequence[Stage]) -> list[list[Stage]]:
    """Group a tier's stages into sequential steps; adjacent reviews share one step."""
    steps: list[list[Stage]] = []
    for stage in stages:
        if stage in REVIEW_STAGES and steps and steps[-1][0] in REVIEW_STAGES:
            steps[-1].append(stage)
        else:
            steps.append([stage])
    return steps


class QualityPipeline:
    """Runs one unit through its tier's stages for one pass."""

    def __init__(
        self,
        *,
        plan: WorkPlan,
        store: OutputStore,
        worker: StageWorker,
        invoker: WorkerInvoker,
        workspaces: WorkspaceManager,
        max_passes: int,
    ) -> None:
        self.plan = plan
        self.store = store
        self.worker = worker
        self.invoker = invoker
        self.workspaces = workspaces
        self.max_passes = max_passes
        self._graphs: dict[Tier, Any] = {}

    # -- graph construction -------------------------------------------------

    def graph_for(self, tier: Tier) -> Any:
        if tier not in self._graphs:
            self._graphs[tier] = self.build_graph(tier).compile()
        return self._graphs[tier]

    def build_graph(self, tier: Tier) -> StateGraph:
        steps = _steps(stages_for(tier))
        graph = StateGraph(PipelineState)
        graph.add_node(PREPARE_NODE, self._prepare_node)
        for step in steps:
            for stage in step:
                graph.add_node(stage.output_kind, self._stage_node(stage))

        graph.add_edge(START, PREPARE_NODE)
        previous: list[str] = [PREPARE_NODE]
        for step in steps:
            targets = [stage.output_kind for stage in step]
            self._connect(graph, previous, targets)
            previous = targets
        for source in previous:
            graph.add_edge(source, END)
        return graph

    def _connect(self, graph: StateGraph, sources: list[str], targets: list[str]) -> None:
        if len(sources) == 1:
            graph.add_conditional_edges(sources[0], self._continue_unless_failed(targets), [*targets, END])
            return
        # Parallel reviews never set failed_stage, so the join is unconditional.
        for target in targets:
            graph.add_edge(sources, target)

    @staticmethod
    def _continue_unless_failed(targets: list[str]) -> Callable[[PipelineState], str | list[str]]:
        def route(state: PipelineState) -> str | list[str]:
            if state.get("failed_stage"):
                return END
            return targets if len(targets) > 1 else targets[0]

        return route

    # -- nodes --------------------------------------------------------------

    def _prepare_node(self, state: PipelineState) -> dict[str, Any]:
        try:
            path = self.workspaces.ensure(state["unit_id"])
        except WorkspaceError as exc:
            logger.error("Workspace for %s unavailable: %s", state["unit_id"], exc)
            return {"failed_stage": WORKSPACE_STEP, "error": str(exc)}
        return {"workspace": str(path)}

    def _stage_node(self, stage: Stage) -> Callable[[PipelineState], dict[str, Any]]:
        def node(state: PipelineState) -> dict[str, Any]:
            unit = self.plan.unit(state["unit_id"])
            pass_number = state["pass_number"]
            node_id = stage_node_id(unit.id, stage)

            if stage == Stage.REVIEW_FIX and self._reviews_clean(unit.id, pass_number):
                logger.info("%s skipped: reviews for pass %d are clean", node_id, pass_number)
                return {"skipped": [stage.value]}

            context = self.build_context(stage, unit, state)
            request = StageRequest(
                unit=unit,
                stage=stage,
                pass_number=pass_number,
                workspace=Path(state["workspace"]),
                prompt=render_stage_prompt(stage, context),
                context=context,
            )
            try:
                record = self.invoker.call(
                    self.worker.run, request, schema=stage.schema, node_id=node_id, lane=unit.id
                )
            except StageFailure as exc:
                if stage in REVIEW_STAGES:
                    logger.warning("%s failed, continuing: %s", node_id, exc)
                    return {"review_failures": [stage.value]}
                logger.error("%s failed, stopping unit for this pass: %s", node_id, exc)
                return {"failed_stage": stage.value, "error": str(exc)}

            self.store.append(stage.output_kind, node_id, pass_number, record)
            logger.info("%s completed (pass %d)", node_id, pass_number)
            return {"completed": [stage.value]}

        return node

    def _reviews_clean(self, unit_id: str, pass_number: int) -> bool:
        for stage in (Stage.PRD_REVIEW, Stage.CODE_REVIEW):
            review: ReviewRecord | None = self.store.get(stage.output_kind, stage_node_id(unit_id, stage), pass_number)
            if review is None or not review.clean:
                return False
        return True

    # -- context ------------------------------------------------------------

    def _latest(self, unit_id: str, stage: Stage) -> Any:
        return self.store.latest(stage.output_kind, stage_node_id(unit_id, stage))

    def build_context(self, stage: Stage, unit: WorkUnit, state: PipelineState) -> dict[str, Any]:
        """Assemble the inputs a stage needs from the unit, the plan and earlier records."""
        context: dict[str, Any] = {
            "unit_id": unit.id,
            "unit_name": unit.name,
            "tier": unit.tier.value,
            "description": unit.description,
            "acceptance": list(unit.acceptance),
            "pass_number": state["pass_number"],
            "max_passes": self.max_passes,
            "build_cmds": dict(self.plan.repo.build_cmds),
            "test_cmds": dict(self.plan.repo.test_cmds),
        }
        research: ResearchRecord | None = self._latest(unit.id, Stage.RESEARCH)
        planned: PlanRecord | None = self._latest(unit.id, Stage.PLAN)
        implemented: ImplementRecord | None = self._latest(unit.id, Stage.IMPLEMENT)
        tested: TestRecord | None = self._latest(unit.id, Stage.TEST)
        eviction = state.get("eviction_context")
        context_file = research.context_file_path if research else default_context_file(unit.id)
        plan_file = planned.plan_file_path if planned else default_plan_file(unit.id)

        if stage == Stage.RESEARCH:
            context.update(
                rfc_source=self.plan.source,
                rfc_sections=list(unit.rfc_sections),
                context_file_path=context_file,
                eviction_context=eviction,
            )
        elif stage == Stage.PLAN:
            context.update(
                context_file_path=context_file,
                research_summary="\n".join(research.findings) if research and research.findings else None,
                plan_file_path=plan_file,
                eviction_context=eviction,
            )
        elif stage == Stage.IMPLEMENT:
            context.update(
                plan_file_path=plan_file,
                context_file_path=context_file,
                implementation_steps=list(planned.implementation_steps) if planned else None,
                previous_implementation=implemented.model_dump_json(indent=2) if implemented else None,
                failing_tests=None if tested is None or tested.passed else (tested.failing_summary or tested.test_output),
                review_feedback=self.review_feedback(unit.id),
                dep_summaries=[summary.model_dump() for summary in state.get("dep_summaries", ())],
                eviction_context=eviction,
            )
        elif stage == Stage.TEST:
            context.update(_implementation_fields(implemented))
        elif stage in REVIEW_STAGES:
            context.update(_implementation_fields(implemented))
            context["test_results"] = _render_test_results(tested)
        elif stage == Stage.REVIEW_FIX:
            prd: ReviewRecord | None = self._latest(unit.id, Stage.PRD_REVIEW)
            code: ReviewRecord | None = self._latest(unit.id, Stage.CODE_REVIEW)
            context.update(
                prd_severity=prd.severity.value if prd else None,
                prd_feedback=prd.feedback if prd else None,
                prd_issues=[issue.render() for issue in prd.issues or []] if prd else [],
                code_severity=code.severity.value if code else None,
                code_feedback=code.feedback if code else None,
                code_issues=[issue.render() for issue in code.issues or []] if code else [],
                validation_commands=self.plan.verify_commands,
            )
        elif stage == Stage.FINAL_REVIEW:
            prd = self._latest(unit.id, Stage.PRD_REVIEW)
            code = self._latest(unit.id, Stage.CODE_REVIEW)
            fix: ReviewFixRecord | None = self._latest(unit.id, Stage.REVIEW_FIX)
            context.update(
                impl_summary=implemented.summary if implemented else None,
                believes_complete=implemented.believes_complete if implemented else False,
                build_passed=tested.build_passed if tested else False,
                tests_pass_count=tested.tests_pass_count if tested else 0,
                tests_fail_count=tested.tests_fail_count if tested else 0,
                failing_summary=tested.failing_summary if tested else None,
                prd_severity=prd.severity.value if prd else None,
                prd_approved=prd.approved if prd else False,
                code_severity=code.severity.value if code else None,
                code_approved=code.approved if code else False,
                issues_resolved=fix.all_issues_resolved if fix else None,
            )
        return context

    def review_feedback(self, unit_id: str) -> str | None:
        """Combined reviewer feedback for the implementer, final review first."""
        parts: list[str] = []
        final: FinalReviewRecord | None = self._latest(unit_id, Stage.FINAL_REVIEW)
        if final is not None and not final.ready_to_move_on:
            parts.append(f"Final review (not ready to move on):\n{final.reasoning}")
        for stage, label in ((Stage.PRD_REVIEW, "Requirements review"), (Stage.CODE_REVIEW, "Code review")):
            review: ReviewRecord | None = self._latest(unit_id, stage)
            if review is not None and not review.approved:
                issues = "\n".join(f"- {issue.render()}" for issue in review.issues or [])
                parts.append(f"{label} ({review.severity.value}):\n{review.feedback}" + (f"\n{issues}" if issues else ""))
        fix: ReviewFixRecord | None = self._latest(unit_id, Stage.REVIEW_FIX)
        if fix is not None and not fix.all_issues_resolved:
            parts.append(f"Review fix (issues remain):\n{fix.summary}")
        return "\n\n".join(parts) if parts else None

    # -- entry point --------------------------------------------------------

    def run(self, item: PipelineInput) -> PipelineResult:
        unit = item.unit
        logger.info("Pass %d: running %s pipeline for %s", item.pass_number, unit.tier.value, unit.id)
        final_state = self.graph_for(unit.tier).invoke(
            {
                "unit_id": unit.id,
                "pass_number": item.pass_number,
                "eviction_context": item.eviction_context,
                "dep_summaries": item.dep_summaries,
            }
        )
        return PipelineResult(
            unit_id=unit.id,
            completed=list(final_state.get("completed", [])),
            skipped=list(final_state.get("skipped", [])),
            review_failures=list(final_state.get("review_failures", [])),
            failed_stage=final_state.get("failed_stage"),
            error=final_state.get("error"),
        )


def _implementation_fields(implemented: ImplementRecord | None) -> dict[str, Any]:
    if implemented is None:
        return {"what_was_done": None, "files_created": [], "files_modified": []}
    return {
        "what_was_done": implemented.what_was_done,
        "files_created": list(implemented.files_created or []),
        "files_modified": list(implemented.files_modified or []),
    }


def _render_test_results(tested: TestRecord | None) -> str | None:
    if tested is None:
        return None
    lines = [
        f"Build: {'PASS' if tested.build_passed else 'FAIL'}",
        f"Tests: {'PASS' if tested.tests_passed else 'FAIL'} "
        f"({tested.tests_pass_count} passed, {tested.tests_fail_count} failed)",
    ]
    if tested.failing_summary:
        lines.append(f"Failing: {tested.failing_summary}")
    return "\n".join(lines)
