from __future__ import annotations

import logging
import re
import subprocess
import threading
from pathlib import Path

logger = logging.getLogger(__name__)

_UNSAFE_PATH_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class WorkspaceError(RuntimeError):
    """Raised when a unit's isolated workspace cannot be prepared."""


class WorkspaceManager:
    """Provides one isolated working copy per unit.

    With git enabled each unit gets a worktree on its own branch
    (``{branch_prefix}{unit_id}``) created from the main branch. Without git a
    plain directory is used, which is enough for dry runs and tests.
    """

    def __init__(
        self,
        *,
        repo_root: Path,
        worktree_root: Path,
        branch_prefix: str = "unit/",
        main_branch: str = "main",
        use_git: bool = True,
    ) -> None:
        self.repo_root = repo_root
        self.worktree_root = worktree_root
        self.branch_prefix = branch_prefix
        self.main_branch = main_branch
        self.use_git = use_git
        self._lock = threading.Lock()

    def branch_for(self, unit_id: str) -> str:
        return f"{self.branch_prefix}{unit_id}"

    def path_for(self, unit_id: str) -> Path:
        return self.worktree_root / _UNSAFE_PATH_CHARS.sub("-", unit_id)

    def ensure(self, unit_id: str) -> Path:
        """Return the unit's workspace, creating it on first use.

        Re-running for a unit reuses its existing branch so work from earlier
        passes is kept.

        Raises:
            WorkspaceError: If the worktree cannot be created.
        """
        path = self.path_for(unit_id)
        if not self.use_git:
            path.mkdir(parents=True, exist_ok=True)
            return path

        # git serializes worktree bookkeeping through a lock file of its own;
        # concurrent `worktree add` calls against one repo fail, so queue them.
        with self._lock:
            if (path / ".git").exists():
                return path
            branch = self.branch_for(unit_id)
            self.worktree_root.mkdir(parents=True, exist_ok=True)
            self._git("worktree", "prune")
            if self._branch_exists(branch):
                self._git("worktree", "add", str(path), branch)
            else:
                self._git("worktree", "add", "-b", branch, str(path), self.main_branch)
        logger.info("Created worktree for %s at %s on %s", unit_id, path, branch)
        return path

    def _branch_exists(self, branch: str) -> bool:
        result = subprocess.run(
            ["git", "rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"],
            cwd=self.repo_root,
            capture_output=True,
            text=True,
            check=False,
        )
        return result.returncode == 0

    def _git(self, *args: str) -> str:
        try:
            result = subprocess.run(
                ["git", *args],
                cwd=self.repo_root,
                capture_output=True,
                text=True,
                check=True,
            )
        except FileNotFoundError as exc:
            raise WorkspaceError("git executable not found on PATH") from exc
        except subprocess.CalledProcessError as exc:
            detail = (exc.stderr or exc.stdout or "").strip()
            raise WorkspaceError(f"git {' '.join(args)} failed: {detail}") from exc
        return result.stdout
