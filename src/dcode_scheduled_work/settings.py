from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    state_dir: str = ".dcode"
    plan_file: str = "work-plan.json"
    output_db: str = "workflow.db"
    max_concurrency: int = 4
    max_passes: int = 3
    max_iterations: int = 0
    stage_retries: int = 1
    stage_timeout_seconds: int = 3_600
    command_timeout_seconds: int = 900
    main_branch: str = "main"
    branch_prefix: str = "unit/"
    worktree_root: str = "/tmp/dcode-worktrees"
    use_git_worktrees: bool = True
    model_frontier: str = "gpt-4o"
    model_efficient: str = "gpt-4o-mini"
    model_economy: str = "gpt-4o-mini"

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            state_dir=os.getenv("SCHEDULER_STATE_DIR", ".dcode"),
            plan_file=os.getenv("SCHEDULER_PLAN_FILE", "work-plan.json"),
            output_db=os.getenv("SCHEDULER_OUTPUT_DB", "workflow.db"),
            max_concurrency=_get_env_int("SCHEDULER_MAX_CONCURRENCY", default=4, minimum=1, maximum=64),
            max_passes=_get_env_int("SCHEDULER_MAX_PASSES", default=3, minimum=1, maximum=100),
            max_iterations=_get_env_int("SCHEDULER_MAX_ITERATIONS", default=0, minimum=0),
            stage_retries=_get_env_int("SCHEDULER_STAGE_RETRIES", default=1, minimum=0, maximum=10),
            stage_timeout_seconds=_get_env_int("SCHEDULER_STAGE_TIMEOUT", default=3_600, minimum=1),
            command_timeout_seconds=_get_env_int("SCHEDULER_COMMAND_TIMEOUT", default=900, minimum=1),
            main_branch=os.getenv("SCHEDULER_MAIN_BRANCH", "main"),
            branch_prefix=os.getenv("SCHEDULER_BRANCH_PREFIX", "unit/"),
            worktree_root=os.getenv("SCHEDULER_WORKTREE_ROOT", "/tmp/dcode-worktrees"),
            use_git_worktrees=_get_env_bool("SCHEDULER_USE_GIT_WORKTREES", default=True),
            model_frontier=os.getenv("SCHEDULER_MODEL_FRONTIER", "gpt-4o"),
            model_efficient=os.getenv("SCHEDULER_MODEL_EFFICIENT", "gpt-4o-mini"),
            model_economy=os.getenv("SCHEDULER_MODEL_ECONOMY", "gpt-4o-mini"),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        # -- Model name validation --
        model_frontier = self.model_frontier.strip()
        if not model_frontier:
            raise ValueError("SCHEDULER_MODEL_FRONTIER must be non-empty")
        model_efficient = self.model_efficient.strip()
        if not model_efficient:
            raise ValueError("SCHEDULER_MODEL_EFFICIENT must be non-empty")
        model_economy = self.model_economy.strip()
        if not model_economy:
            raise ValueError("SCHEDULER_MODEL_ECONOMY must be non-empty")

        # -- Numeric bounds validation --
        if self.max_concurrency < 1:
            raise ValueError(f"SCHEDULER_MAX_CONCURRENCY must be >= 1, got: {self.max_concurrency}")
        if self.max_passes < 1:
            raise ValueError(f"SCHEDULER_MAX_PASSES must be >= 1, got: {self.max_passes}")
        if self.max_iterations < 0:
            raise ValueError(f"SCHEDULER_MAX_ITERATIONS must be >= 0, got: {self.max_iterations}")
        if self.stage_retries < 0:
            raise ValueError(f"SCHEDULER_STAGE_RETRIES must be >= 0, got: {self.stage_retries}")
        if self.stage_timeout_seconds < 1:
            raise ValueError(f"SCHEDULER_STAGE_TIMEOUT must be >= 1, got: {self.stage_timeout_seconds}")

        # -- String field validation --
        if not self.state_dir.strip():
            raise ValueError("SCHEDULER_STATE_DIR must be non-empty")
        if not self.plan_file.strip():
            raise ValueError("SCHEDULER_PLAN_FILE must be non-empty")
        if not self.output_db.strip():
            raise ValueError("SCHEDULER_OUTPUT_DB must be non-empty")
        main_branch = self.main_branch.strip()
        if not main_branch:
            raise ValueError("SCHEDULER_MAIN_BRANCH must be non-empty")
        branch_prefix = self.branch_prefix.strip()
        if not branch_prefix:
            raise ValueError("SCHEDULER_BRANCH_PREFIX must be non-empty")
        if not self.worktree_root.strip():
            raise ValueError("SCHEDULER_WORKTREE_ROOT must be non-empty")
        return RuntimeSettings(
            state_dir=self.state_dir,
            plan_file=self.plan_file,
            output_db=self.output_db,
            max_concurrency=self.max_concurrency,
            max_passes=self.max_passes,
            max_iterations=self.max_iterations,
            stage_retries=self.stage_retries,
            stage_timeout_seconds=self.stage_timeout_seconds,
            command_timeout_seconds=self.command_timeout_seconds,
            main_branch=main_branch,
            branch_prefix=branch_prefix,
            worktree_root=self.worktree_root,
            use_git_worktrees=self.use_git_worktrees,
            model_frontier=model_frontier,
            model_efficient=model_efficient,
            model_economy=model_economy,
        )

    def iteration_ceiling(self, unit_count: int) -> int:
        """Hard bound on orchestrator loop turns; ``max_iterations`` of 0 means derive one."""
        if self.max_iterations > 0:
            return self.max_iterations
        return self.max_passes * max(unit_count, 1) * 20

    def state_path(self, repo_root: Path) -> Path:
        path = Path(self.state_dir)
        return path if path.is_absolute() else repo_root / path

    def plan_path(self, repo_root: Path) -> Path:
        path = Path(self.plan_file)
        return path if path.is_absolute() else self.state_path(repo_root) / path

    def output_db_path(self, repo_root: Path) -> Path:
        path = Path(self.output_db)
        return path if path.is_absolute() else self.state_path(repo_root) / path

    @property
    def worktree_root_path(self) -> Path:
        return Path(self.worktree_root)


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound (default 10M, prevents absurd values).

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"{name} must be a boolean (true/false), got: {raw!r}")
