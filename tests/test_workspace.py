import shutil
import subprocess
from pathlib import Path

import pytest

from dcode_scheduled_work.workspace import WorkspaceError, WorkspaceManager

_GIT_IDENTITY = ["-c", "user.name=Scheduler Tests", "-c", "user.email=tests@example.com", "-c", "commit.gpgsign=false"]


def _git(repo: Path, *args: str) -> str:
    result = subprocess.run(["git", *_GIT_IDENTITY, *args], cwd=repo, capture_output=True, text=True, check=True)
    return result.stdout.strip()


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    if shutil.which("git") is None:
        pytest.skip("git is not installed")
    repo = tmp_path / "repo"
    repo.mkdir()
    _git(repo, "init", "-b", "main")
    (repo / "README.md").write_text("demo\n", encoding="utf-8")
    _git(repo, "add", "README.md")
    _git(repo, "commit", "-m", "initial")
    return repo


def test_plain_directories_without_git(tmp_path: Path) -> None:
    manager = WorkspaceManager(repo_root=tmp_path, worktree_root=tmp_path / "wt", use_git=False)
    path = manager.ensure("feature/login")
    assert path.is_dir()
    assert path == tmp_path / "wt" / "feature-login"
    assert manager.ensure("feature/login") == path
    assert manager.branch_for("feature/login") == "unit/feature/login"


def test_git_worktree_per_unit(git_repo: Path, tmp_path: Path) -> None:
    manager = WorkspaceManager(repo_root=git_repo, worktree_root=tmp_path / "wt")
    path = manager.ensure("api")

    assert (path / "README.md").read_text(encoding="utf-8") == "demo\n"
    assert _git(path, "rev-parse", "--abbrev-ref", "HEAD") == "unit/api"
    assert manager.ensure("api") == path


def test_git_worktree_reuses_existing_branch(git_repo: Path, tmp_path: Path) -> None:
    _git(git_repo, "branch", "unit/api")
    manager = WorkspaceManager(repo_root=git_repo, worktree_root=tmp_path / "wt")
    path = manager.ensure("api")
    assert _git(path, "rev-parse", "--abbrev-ref", "HEAD") == "unit/api"


def test_git_failure_raises_workspace_error(tmp_path: Path) -> None:
    if shutil.which("git") is None:
        pytest.skip("git is not installed")
    not_a_repo = tmp_path / "plain"
    not_a_repo.mkdir()
    manager = WorkspaceManager(repo_root=not_a_repo, worktree_root=tmp_path / "wt")
    with pytest.raises(WorkspaceError):
        manager.ensure("api")
