from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
from fakes import ScriptedLandingWorker, ScriptedStageWorker

from dcode_scheduled_work.models import WorkPlan
from dcode_scheduled_work.orchestrator import ScheduledWorkOrchestrator
from dcode_scheduled_work.output_store import OutputStore
from dcode_scheduled_work.settings import RuntimeSettings
from dcode_scheduled_work.workspace import WorkspaceManager


@pytest.fixture
def settings(tmp_path: Path) -> RuntimeSettings:
    return RuntimeSettings(
        max_concurrency=2,
        max_passes=3,
        stage_retries=0,
        stage_timeout_seconds=30,
        use_git_worktrees=False,
        worktree_root=str(tmp_path / "worktrees"),
    ).normalized()


@pytest.fixture
def store(tmp_path: Path) -> Iterator[OutputStore]:
    output_store = OutputStore(tmp_path / ".dcode" / "workflow.db", run_id="run-0000test")
    output_store.begin_run("fingerprint")
    yield output_store
    output_store.close()


@pytest.fixture
def workspaces(tmp_path: Path) -> WorkspaceManager:
    return WorkspaceManager(repo_root=tmp_path, worktree_root=tmp_path / "worktrees", use_git=False)


@pytest.fixture
def make_orchestrator(store: OutputStore, settings: RuntimeSettings, workspaces: WorkspaceManager):
    def build(
        plan: WorkPlan,
        *,
        stage_worker: ScriptedStageWorker | None = None,
        landing_worker: ScriptedLandingWorker | None = None,
        settings_override: RuntimeSettings | None = None,
    ) -> ScheduledWorkOrchestrator:
        return ScheduledWorkOrchestrator(
            plan,
            store=store,
            stage_worker=stage_worker or ScriptedStageWorker(),
            landing_worker=landing_worker or ScriptedLandingWorker(),
            workspaces=workspaces,
            settings=settings_override or settings,
        )

    return build
