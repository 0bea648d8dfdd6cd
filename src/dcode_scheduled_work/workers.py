"""Worker seams for stage and landing agents.

The scheduler only talks to the two protocols below. Deep-agent workers are the
production implementation; tests supply scripted fakes.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, TypeVar

from pydantic import BaseModel

from .agent_runtime import RoleAgentRuntime
from .errors import StageFailure
from .llm import normalize_structured_output
from .models import LandingRecord, WorkUnit
from .prompts import LANDING_ROLE, ROLE_BY_STAGE, system_prompt_for
from .stages import Stage
from .tools import build_shell_tool

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


@dataclass(frozen=True)
class StageRequest:
    unit: WorkUnit
    stage: Stage
    pass_number: int
    workspace: Path
    prompt: str
    context: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class LandingCandidate:
    unit_id: str
    name: str
    tier: str
    priority: str
    branch: str
    worktree_path: str
    files_created: tuple[str, ...] = ()
    files_modified: tuple[str, ...] = ()

    def as_dict(self) -> dict[str, Any]:
        return {
            "unit_id": self.unit_id,
            "name": self.name,
            "tier": self.tier,
            "priority": self.priority,
            "branch": self.branch,
            "worktree_path": self.worktree_path,
            "files_created": list(self.files_created),
            "files_modified": list(self.files_modified),
        }


@dataclass(frozen=True)
class LandingRequest:
    layer_index: int
    pass_number: int
    main_branch: str
    repo_root: Path
    candidates: tuple[LandingCandidate, ...]
    post_land_checks: tuple[str, ...]
    prompt: str


class StageWorker(Protocol):
    def run(self, request: StageRequest) -> Any:  # noqa: ANN401 - validated by the invoker.
        ...


class LandingWorker(Protocol):
    def land(self, request: LandingRequest) -> Any:  # noqa: ANN401 - validated by the invoker.
        ...


class _WorkerCall:
    """One worker call running on its own daemon thread.

    Daemon threads are not joined at interpreter exit, so a hung agent can
    never keep the process alive after the scheduler has finished.
    """

    def __init__(self, fn: Callable[[Any], Any], request: Any, *, name: str) -> None:
        self.request = request
        self.output: Any = None
        self.error: Exception | None = None
        self._done = threading.Event()
        self._thread = threading.Thread(target=self._run, args=(fn, request), name=name, daemon=True)
        self._thread.start()

    def _run(self, fn: Callable[[Any], Any], request: Any) -> None:
        try:
            self.output = fn(request)
        except Exception as exc:  # noqa: BLE001 - surfaced to whoever waits on the call.
            self.error = exc
        finally:
            self._done.set()

    @property
    def finished(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: float) -> bool:
        return self._done.wait(timeout)


@dataclass(frozen=True)
class LateResult:
    """Outcome of a call that finished after its caller had given up on it."""

    node_id: str
    request: Any
    output: Any
    error: Exception | None


class WorkerInvoker:
    """Runs one worker call with a wall-clock timeout and bounded retries.

    Output is validated against the expected schema; a call that raises, times
    out, or returns output that does not validate counts as a failed attempt.
    When every attempt fails a :class:`StageFailure` is raised.

    A timed-out call cannot be stopped, so it is parked on its lane (the
    worktree or branch it mutates). The next call on that lane first waits up
    to ``timeout_seconds`` for it to exit and fails if it is still running,
    so two calls never touch the same lane at once.
    """

    def __init__(self, *, retries: int, timeout_seconds: float, collect_late: bool = False) -> None:
        if retries < 0:
            raise ValueError(f"retries must be >= 0 (got {retries})")
        if timeout_seconds <= 0:
            raise ValueError(f"timeout_seconds must be > 0 (got {timeout_seconds})")
        self.retries = retries
        self.timeout_seconds = timeout_seconds
        self._lock = threading.Lock()
        self.collect_late = collect_late
        self._abandoned: dict[str, list[tuple[str, _WorkerCall]]] = {}

    def call(
        self,
        fn: Callable[[Any], Any],
        request: Any,
        *,
        schema: type[ModelT],
        node_id: str,
        lane: str | None = None,
    ) -> ModelT:
        lane = lane or node_id
        attempts = self.retries + 1
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                raw_output = self._run_on_lane(fn, request, node_id=node_id, lane=lane)
                return normalize_structured_output(raw_output=raw_output, schema=schema)
            except Exception as exc:  # noqa: BLE001 - any worker error is a failed attempt.
                last_error = exc
                logger.warning("%s attempt %d/%d failed: %s", node_id, attempt, attempts, exc)
        raise StageFailure(node_id, f"failed after {attempts} attempt(s): {last_error}") from last_error

    def wait_for_lane(self, lane: str) -> bool:
        """Wait up to ``timeout_seconds`` for the calls parked on ``lane`` to exit.

        Returns:
            True when the lane is idle, False if a parked call is still running.
        """
        with self._lock:
            parked = list(self._abandoned.get(lane, ()))
        deadline = time.monotonic() + self.timeout_seconds
        for node_id, pending in parked:
            if pending.finished:
                continue
            logger.info("Waiting for timed-out call %s to exit before reusing lane %s", node_id, lane)
            if not pending.wait(max(deadline - time.monotonic(), 0)):
                return False
        if not self.collect_late:
            for late in self.late_results(lane):
                logger.info("Discarding late result of %s", late.node_id)
        return True

    def late_results(self, lane: str) -> list[LateResult]:
        """Pop the calls parked on ``lane`` that have exited since they timed out."""
        with self._lock:
            parked = self._abandoned.get(lane, [])
            finished = [entry for entry in parked if entry[1].finished]
            still_running = [entry for entry in parked if not entry[1].finished]
            if still_running:
                self._abandoned[lane] = still_running
            else:
                self._abandoned.pop(lane, None)
        return [
            LateResult(node_id=node_id, request=call.request, output=call.output, error=call.error)
            for node_id, call in finished
        ]

    def _run_on_lane(self, fn: Callable[[Any], Any], request: Any, *, node_id: str, lane: str) -> Any:
        if not self.wait_for_lane(lane):
            raise TimeoutError(f"a timed-out call on lane {lane} is still running")
        current = _WorkerCall(fn, request, name=f"worker-{node_id}")
        if not current.wait(self.timeout_seconds):
            with self._lock:
                self._abandoned.setdefault(lane, []).append((node_id, current))
            raise TimeoutError(f"worker call exceeded {self.timeout_seconds}s")
        if current.error is not None:
            raise current.error
        return current.output


class DeepAgentStageWorker:
    """Runs each stage as a deep agent rooted at the unit's workspace."""

    def __init__(self, runtime: RoleAgentRuntime, *, command_timeout_seconds: int) -> None:
        runtime.require_roles(list(ROLE_BY_STAGE.values()))
        self.runtime = runtime
        self.command_timeout_seconds = command_timeout_seconds

    def run(self, request: StageRequest) -> dict[str, Any]:
        role = ROLE_BY_STAGE[request.stage]
        binding = self.runtime.binding_for(role)
        return self.runtime.invoke_deepagent_json(
            role=role,
            system_prompt=system_prompt_for(role, binding.config.title, request.stage.schema),
            user_message=request.prompt,
            root_dir=request.workspace,
            tools=[build_shell_tool(request.workspace, timeout_seconds=self.command_timeout_seconds)],
            name=f"{role}-{request.unit.id}",
        )


class DeepAgentLandingWorker:
    """Runs the landing step as a deep agent rooted at the main repository."""

    def __init__(self, runtime: RoleAgentRuntime, *, command_timeout_seconds: int) -> None:
        runtime.require_roles([LANDING_ROLE])
        self.runtime = runtime
        self.command_timeout_seconds = command_timeout_seconds

    def land(self, request: LandingRequest) -> dict[str, Any]:
        binding = self.runtime.binding_for(LANDING_ROLE)
        return self.runtime.invoke_deepagent_json(
            role=LANDING_ROLE,
            system_prompt=system_prompt_for(LANDING_ROLE, binding.config.title, LandingRecord),
            user_message=request.prompt,
            root_dir=request.repo_root,
            tools=[build_shell_tool(request.repo_root, timeout_seconds=self.command_timeout_seconds)],
            name=f"{LANDING_ROLE}-layer-{request.layer_index}",
        )
