"""
tooling.py
----------
Invocation of external command line tools (packer, terraform, docker).

Every adapter builds ToolInvocation objects first. The same objects are
printed under dry-run and executed otherwise, so what dry-run shows is exactly
what would run.
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from common.errors import ToolError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolInvocation:
    """A fully resolved command: argv plus the directory it runs in."""

    argv: tuple[str, ...]
    cwd: Path | None = None
    description: str = field(default="", compare=False)
    # Extra environment for the child. Never rendered: it carries secrets.
    env: dict[str, str] = field(default_factory=dict, compare=False, repr=False)

    def render(self) -> str:
        cmd = shlex.join(self.argv)
        if self.cwd is not None:
            return f"cd {shlex.quote(str(self.cwd))} && {cmd}"
        return cmd


@dataclass(frozen=True)
class CommandOutput:
    returncode: int
    stdout: str = ""
    stderr: str = ""


class CommandRunner(Protocol):
    """Callable that executes an invocation and returns its output.

    Implementations must raise ToolError on a non-zero exit status.
    """

    def __call__(self, invocation: ToolInvocation, capture: bool = False) -> CommandOutput: ...


def run_command(invocation: ToolInvocation, capture: bool = False) -> CommandOutput:
    """Run an invocation synchronously, blocking until the child exits.

    With capture=False the child inherits the terminal so long running tools
    (packer, terraform apply) stream their progress.
    """
    logger.info(f"Executing: {invocation.render()}")
    try:
        proc = subprocess.run(
            list(invocation.argv),
            cwd=invocation.cwd,
            env={**os.environ, **invocation.env} if invocation.env else None,
            capture_output=capture,
            text=True,
        )
    except FileNotFoundError as e:
        raise ToolError(f"Executable not found: {invocation.argv[0]}", invocation=invocation, returncode=127) from e
    output = CommandOutput(proc.returncode, proc.stdout or "", proc.stderr or "")
    if proc.returncode != 0:
        detail = (output.stderr or output.stdout).strip().splitlines()
        tail = f": {detail[-1]}" if detail else ""
        raise ToolError(
            f"{invocation.argv[0]} exited with status {proc.returncode}{tail}",
            invocation=invocation,
            returncode=proc.returncode,
            output=output.stdout + output.stderr,
        )
    return output


__all__ = ["CommandOutput", "CommandRunner", "ToolInvocation", "run_command"]
