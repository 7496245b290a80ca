"""Execution of approved commands as argv vectors."""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Mapping, Optional

from fastmcp.exceptions import ToolError
from loguru import logger

from .actions import CommandAction
from .config import Config


class CommandRunner:
    """Execute approved commands without a shell, with timeout enforcement.

    The argv reaches the process unchanged: no word splitting, globbing or
    substitution happens between approval and execution.
    """

    def __init__(
        self,
        *,
        timeout_seconds: int | None = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._timeout_seconds = timeout_seconds or Config.COMMAND_TIMEOUT
        self._env = dict(env) if env is not None else None

    def run(self, action: CommandAction, *, cwd: Path | None = None) -> subprocess.CompletedProcess[str]:
        if not isinstance(action, CommandAction):
            raise ToolError("Only approved command actions can be executed")
        if action.is_directory_change:
            raise ToolError("Directory changes are applied by the session, not executed")
        argv = list(action.argv)
        if not argv:
            raise ToolError("Command cannot be empty")

        workdir = cwd or action.cwd
        logger.info(f"Executing {argv[0]} with {len(argv) - 1} arguments in {workdir}")

        try:
            return subprocess.run(
                argv,
                shell=False,
                cwd=str(workdir) if workdir else None,
                env=self._env,
                capture_output=True,
                text=True,
                timeout=self._timeout_seconds,
                encoding="utf-8",
                errors="replace",
            )
        except subprocess.TimeoutExpired as exc:
            raise ToolError(
                f"Command timed out after {self._timeout_seconds} seconds: {argv[0]}"
            ) from exc
        except FileNotFoundError as exc:
            raise ToolError(f"Command not found: {argv[0]}") from exc
        except OSError as exc:
            raise ToolError(f"Failed to execute command: {exc}") from exc


def format_command_output(result: subprocess.CompletedProcess[str]) -> str:
    """Format command output for the agent transcript."""
    output_parts = []
    if result.stdout:
        output_parts.append(f"STDOUT:\n{result.stdout}")
    if result.stderr:
        output_parts.append(f"STDERR:\n{result.stderr}")
    output_parts.append(f"Exit code: {result.returncode}")
    return "\n\n".join(output_parts)
