"""Toolchain runner for executing compiler commands.

This module handles:
- Executing the build command inside a workspace with subprocess
- Capturing stdout/stderr to a per-pass log file
- Enforcing build timeouts
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from stagebuild.types import PassKind

logger = logging.getLogger(__name__)


class ToolchainExecutionError(Exception):
    """Raised when the toolchain cannot be run to completion."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        code: str = "toolchain_error",
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.code = code


@dataclass
class ToolchainResult:
    """Result of a single toolchain invocation.

    Attributes:
        success: Whether the toolchain exited with status 0.
        exit_code: Process exit code.
        log_path: Path to the captured log.
        started_at: Start time.
        finished_at: Finish time.
        command: The command that was executed.
        error_message: Error message if the run failed.
    """

    success: bool
    exit_code: int
    log_path: Path
    started_at: datetime
    finished_at: datetime
    command: str
    error_message: str | None = None

    @property
    def duration(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()


class Toolchain(Protocol):
    """Anything that can compile a prepared workspace."""

    def compile(
        self,
        workspace: Path,
        log_path: Path,
        pass_kind: PassKind,
        timeout: int | None = None,
    ) -> ToolchainResult:
        """Compile ``workspace``, writing output to ``log_path``."""
        ...


class CommandToolchain:
    """Toolchain backed by an external build command (e.g. ``cargo build``)."""

    def __init__(
        self,
        command: tuple[str, ...] | list[str],
        env_override: dict[str, str] | None = None,
    ) -> None:
        self.command = list(command)
        self.env_override = env_override

    def compile(
        self,
        workspace: Path,
        log_path: Path,
        pass_kind: PassKind,
        timeout: int | None = None,
    ) -> ToolchainResult:
        """Execute the build command in ``workspace``.

        Args:
            workspace: Prepared workspace root (used as CWD).
            log_path: File receiving combined stdout/stderr.
            pass_kind: Which compiler pass this is (written to the log).
            timeout: Timeout in seconds (None = no timeout).

        Returns:
            ToolchainResult with execution details.

        Raises:
            ToolchainExecutionError: If the command times out or cannot start.
        """
        log_path.parent.mkdir(parents=True, exist_ok=True)
        cmd_str = shlex.join(self.command)
        logger.info("Executing %s pass: %s", pass_kind.value, cmd_str)
        logger.debug("Working directory: %s", workspace)

        started_at = datetime.now(timezone.utc)
        error_message: str | None = None

        try:
            with log_path.open("w") as log_file:
                log_file.write(f"# Pass: {pass_kind.value}\n")
                log_file.write(f"# Command: {cmd_str}\n")
                log_file.write(f"# Started: {started_at.isoformat()}\n")
                log_file.write(f"# CWD: {workspace}\n")
                log_file.write("# " + "=" * 70 + "\n\n")
                log_file.flush()

                env: dict[str, str] | None = None
                if self.env_override:
                    env = dict(os.environ)
                    env.update(self.env_override)

                result = subprocess.run(
                    self.command,
                    cwd=workspace,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                    timeout=timeout,
                    env=env,
                    check=False,
                )

                exit_code = result.returncode
                success = exit_code == 0
                if not success:
                    error_message = f"Toolchain failed with exit code {exit_code}"
                    logger.error("%s. See log: %s", error_message, log_path)

        except subprocess.TimeoutExpired as e:
            error_message = f"{pass_kind.value} pass timed out after {timeout} seconds"
            logger.error("%s. See log: %s", error_message, log_path)
            with log_path.open("a") as log_file:
                log_file.write(f"\n# TIMEOUT after {timeout} seconds\n")
            raise ToolchainExecutionError(
                error_message, exit_code=-1, code="build_timeout"
            ) from e

        except OSError as e:
            error_message = f"Failed to execute toolchain: {e}"
            logger.error(error_message)
            raise ToolchainExecutionError(
                error_message, exit_code=None, code="execution_error"
            ) from e

        finished_at = datetime.now(timezone.utc)

        with log_path.open("a") as log_file:
            log_file.write(f"\n# Finished: {finished_at.isoformat()}\n")
            log_file.write(f"# Exit code: {exit_code}\n")
            duration = (finished_at - started_at).total_seconds()
            log_file.write(f"# Duration: {duration:.1f}s\n")

        return ToolchainResult(
            success=success,
            exit_code=exit_code,
            log_path=log_path,
            started_at=started_at,
            finished_at=finished_at,
            command=cmd_str,
            error_message=error_message,
        )


__all__ = [
    "CommandToolchain",
    "Toolchain",
    "ToolchainExecutionError",
    "ToolchainResult",
]
