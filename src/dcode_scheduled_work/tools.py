from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Any

from langchain_core.tools import tool

logger = logging.getLogger(__name__)

_MAX_OUTPUT_CHARS = 12_000


def _truncate(text: str) -> str:
    if len(text) <= _MAX_OUTPUT_CHARS:
        return text
    head = _MAX_OUTPUT_CHARS // 4
    tail = _MAX_OUTPUT_CHARS - head
    return f"{text[:head]}\n... [{len(text) - _MAX_OUTPUT_CHARS} chars truncated] ...\n{text[-tail:]}"


def build_shell_tool(cwd: Path, *, timeout_seconds: int) -> Any:
    """Build a ``run_shell`` tool bound to one working directory.

    The agent's filesystem backend only reads and writes files; this tool is
    how stage agents run builds, tests and git inside their workspace.
    """

    @tool("run_shell")
    def run_shell(command: str) -> str:
        """Run a shell command in the workspace and return its exit code, stdout and stderr.

        Args:
            command: The shell command line to execute.

        Returns:
            Text starting with ``exit_code=<n>`` followed by captured output.
            Output longer than the limit is truncated in the middle.
        """
        logger.debug("run_shell in %s: %s", cwd, command)
        try:
            completed = subprocess.run(
                command,
                shell=True,
                cwd=cwd,
                capture_output=True,
                text=True,
                timeout=timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired:
            return f"exit_code=124\ncommand timed out after {timeout_seconds}s: {command}"
        output = "\n".join(part for part in (completed.stdout, completed.stderr) if part)
        return f"exit_code={completed.returncode}\n{_truncate(output)}"

    return run_shell
