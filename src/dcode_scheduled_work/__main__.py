"""Entry point for `python -m dcode_scheduled_work` and the `dcode-scheduled` CLI script."""

from __future__ import annotations

import argparse
import dataclasses
import json
import logging
from collections import Counter
from pathlib import Path

from dcode_scheduled_work.agent_runtime import RoleAgentRuntime
from dcode_scheduled_work.canonical import fingerprint
from dcode_scheduled_work.errors import PlanChangedError
from dcode_scheduled_work.graph import build_layers
from dcode_scheduled_work.models import Tier, WorkPlan
from dcode_scheduled_work.orchestrator import ScheduledWorkOrchestrator
from dcode_scheduled_work.output_store import OutputStore, new_run_id
from dcode_scheduled_work.projection import derive_run_view
from dcode_scheduled_work.settings import RuntimeSettings
from dcode_scheduled_work.stages import COMPLETION_REPORT_NODE, REPORT_KIND, stages_for
from dcode_scheduled_work.workers import DeepAgentLandingWorker, DeepAgentStageWorker
from dcode_scheduled_work.workspace import WorkspaceManager


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dcode-scheduled",
        description="Schedule a work plan's units through quality pipelines and land them on main",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    parser.add_argument("--repo-root", type=Path, default=None, help="Repository the plan applies to (default: cwd)")
    subcommands = parser.add_subparsers(dest="command", required=True)

    layers = subcommands.add_parser("layers", help="Validate a work plan and print its dependency layers")
    layers.add_argument("--plan", type=Path, default=None, help="Path to work-plan.json")

    run = subcommands.add_parser("run", help="Run (or resume) the scheduler until done")
    run.add_argument("--plan", type=Path, default=None, help="Path to work-plan.json")
    resume = run.add_mutually_exclusive_group()
    resume.add_argument("--run-id", default=None, help="Resume this run id (created if it does not exist)")
    resume.add_argument("--resume", action="store_true", help="Resume the most recent run")
    run.add_argument("--max-concurrency", type=int, default=None, help="Parallel pipelines per layer")
    run.add_argument("--max-passes", type=int, default=None, help="Pass budget for the run")
    run.add_argument("--no-worktrees", action="store_true", help="Use plain directories instead of git worktrees")

    status = subcommands.add_parser("status", help="Show landed units and the report for a run")
    status.add_argument("--plan", type=Path, default=None, help="Path to work-plan.json")
    status.add_argument("--run-id", default=None, help="Run to inspect (default: most recent)")
    return parser


def _resolve_plan(args: argparse.Namespace, settings: RuntimeSettings, repo_root: Path) -> WorkPlan:
    plan_path = args.plan if args.plan is not None else settings.plan_path(repo_root)
    return WorkPlan.load(plan_path)


def print_layers(plan: WorkPlan) -> None:
    layers = build_layers(plan)
    print(f"{plan.repo.project_name}: {len(plan.units)} units in {len(layers)} layers")
    tier_counts = Counter(unit.tier.value for unit in plan.units)
    print("Tiers: " + ", ".join(f"{tier.value}={tier_counts[tier.value]}" for tier in Tier))
    for index, layer in enumerate(layers):
        print(f"Layer {index}:")
        for unit in layer:
            deps = f" <- {', '.join(unit.deps)}" if unit.deps else ""
            stage_names = ", ".join(stage.value for stage in stages_for(unit.tier))
            print(f"  {unit.id} [{unit.tier.value}, {unit.priority.value}] {unit.name}{deps}")
            print(f"    stages: {stage_names}")


def cmd_layers(args: argparse.Namespace, settings: RuntimeSettings, repo_root: Path) -> int:
    try:
        plan = _resolve_plan(args, settings, repo_root)
        print_layers(plan)
    except (OSError, ValueError) as exc:
        logging.error("Invalid work plan: %s", exc)
        return 1
    return 0


def cmd_run(args: argparse.Namespace, settings: RuntimeSettings, repo_root: Path) -> int:
    overrides: dict[str, object] = {}
    if args.max_concurrency is not None:
        overrides["max_concurrency"] = args.max_concurrency
    if args.max_passes is not None:
        overrides["max_passes"] = args.max_passes
    if args.no_worktrees:
        overrides["use_git_worktrees"] = False
    try:
        settings = dataclasses.replace(settings, **overrides).normalized()
        plan = _resolve_plan(args, settings, repo_root)
        build_layers(plan)
    except (OSError, ValueError) as exc:
        logging.error("Unable to start run: %s", exc)
        return 1

    db_path = settings.output_db_path(repo_root)
    run_id = args.run_id
    if args.resume:
        run_id = OutputStore.latest_run_id(db_path)
        if run_id is None:
            logging.error("No run to resume in %s", db_path)
            return 1
    run_id = run_id or new_run_id()

    with OutputStore(db_path, run_id=run_id) as store:
        try:
            created = store.begin_run(fingerprint(plan))
        except PlanChangedError as exc:
            logging.error("%s", exc)
            return 1
        logging.info("%s run %s (store: %s)", "Starting" if created else "Resuming", run_id, db_path)

        runtime = RoleAgentRuntime(settings=settings)
        orchestrator = ScheduledWorkOrchestrator(
            plan,
            store=store,
            stage_worker=DeepAgentStageWorker(runtime, command_timeout_seconds=settings.command_timeout_seconds),
            landing_worker=DeepAgentLandingWorker(runtime, command_timeout_seconds=settings.command_timeout_seconds),
            workspaces=WorkspaceManager(
                repo_root=repo_root,
                worktree_root=settings.worktree_root_path,
                branch_prefix=settings.branch_prefix,
                main_branch=settings.main_branch,
                use_git=settings.use_git_worktrees,
            ),
            settings=settings,
        )
        try:
            report = orchestrator.run()
        except Exception as exc:  # noqa: BLE001
            logging.exception("Scheduled run %s failed: %s", run_id, exc)
            return 1

    print(f"run_id={run_id}")
    print(json.dumps(report.model_dump(mode="json"), indent=2))
    return 0 if report.success else 1


def cmd_status(args: argparse.Namespace, settings: RuntimeSettings, repo_root: Path) -> int:
    db_path = settings.output_db_path(repo_root)
    run_id = args.run_id or OutputStore.latest_run_id(db_path)
    if run_id is None:
        print(f"No runs recorded in {db_path}")
        return 1
    try:
        plan = _resolve_plan(args, settings, repo_root)
        layers = build_layers(plan)
    except (OSError, ValueError) as exc:
        logging.error("Invalid work plan: %s", exc)
        return 1

    with OutputStore(db_path, run_id=run_id) as store:
        view = derive_run_view(plan, layers, store)
        report = store.latest(REPORT_KIND, COMPLETION_REPORT_NODE)

    print(f"run_id={run_id} passes_completed={view.passes_completed}")
    for unit in plan.units:
        unit_view = view.units[unit.id]
        if unit_view.landed:
            state = "landed"
        elif unit_view.eviction is not None:
            state = f"evicted (pass {unit_view.eviction.pass_number}, {unit_view.eviction.reason})"
        elif unit_view.tier_complete:
            state = "tier-complete"
        elif not unit_view.deps_landed:
            state = f"blocked on {', '.join(unit_view.pending_deps)}"
        else:
            state = "in progress"
        print(f"  layer {unit_view.layer} {unit.id}: {state}")
    if report is not None:
        print(report.summary)
    return 0


_COMMANDS = {
    "layers": cmd_layers,
    "run": cmd_run,
    "status": cmd_status,
}


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        settings = RuntimeSettings.from_env()
    except ValueError as exc:
        logging.error("Invalid configuration: %s", exc)
        return 1
    repo_root = (args.repo_root or Path.cwd()).resolve()
    return _COMMANDS[args.command](args, settings, repo_root)


if __name__ == "__main__":
    raise SystemExit(main())
