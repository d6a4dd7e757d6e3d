"""Run project commands (tests, build, lint) with a timeout."""

from __future__ import annotations

import logging
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Sequence

LOGGER = logging.getLogger(__name__)

_OUTPUT_LIMIT = 20_000


class ProcessLaunchError(RuntimeError):
    """Raised when a command cannot be started at all."""


class ProcessTimeoutError(RuntimeError):
    """Raised when a command exceeds its time budget."""

    def __init__(self, message: str, *, output: str = "") -> None:
        super().__init__(message)
        self.output = output


@dataclass(slots=True)
class CommandResult:
    command: list[str]
    exit_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "command": list(self.command),
            "exitCode": self.exit_code,
            "passed": self.ok,
            "stdout": _clip(self.stdout),
            "stderr": _clip(self.stderr),
        }


def _clip(text: str) -> str:
    if len(text) <= _OUTPUT_LIMIT:
        return text
    # Keep the tail; failures are reported at the end of test output.
    return "... (truncated)\n" + text[-_OUTPUT_LIMIT:]


def _decode(data: bytes | str | None) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data


def run_command(command: Sequence[str], cwd: Path, *, timeout: float | None = None) -> CommandResult:
    """Run ``command`` in ``cwd`` and capture its output.

    A non-zero exit code is a normal result; only launch failures and
    timeouts raise.
    """

    if not command:
        raise ProcessLaunchError("No command configured.")
    args = [str(part) for part in command]
    if shutil.which(args[0]) is None:
        raise ProcessLaunchError(f"Executable not available: {args[0]}")
    LOGGER.debug("Running %s in %s", args, cwd)
    try:
        process = subprocess.run(  # noqa: S603 - command is sourced from project config
            args,
            cwd=cwd,
            capture_output=True,
            check=False,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as error:
        output = _decode(error.stdout) + _decode(error.stderr)
        raise ProcessTimeoutError(
            f"Command timed out after {timeout} seconds: {' '.join(args)}", output=output
        ) from error
    except OSError as error:
        raise ProcessLaunchError(f"Failed to start {' '.join(args)}: {error}") from error
    return CommandResult(
        command=args,
        exit_code=process.returncode,
        stdout=_decode(process.stdout),
        stderr=_decode(process.stderr),
    )


__all__ = ["CommandResult", "ProcessLaunchError", "ProcessTimeoutError", "run_command"]
