"""
packer.py
---------
Template builder adapter: renders a Packer variables file and runs
``packer build`` in the template directory.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

from connectors.tooling import CommandRunner, ToolInvocation, run_command

logger = logging.getLogger(__name__)

VARS_FILE = "build.pkrvars.json"
MANIFEST_FILE = "packer-manifest.json"


@dataclass(frozen=True)
class BuildResult:
    manifest_path: Path | None
    vars_file: Path


class PackerTemplateBuilder:
    """
    Build the base VM template.

    Args:
        packer_dir: directory holding the template and where packer runs.
        template: template file name, relative to packer_dir.
        variables: values rendered into build.pkrvars.json.
        secret_env: PKR_VAR_* variables handed to packer through its
            environment so secrets never land in a file or on screen.
        extra_var_file: optional user supplied variables file, passed after
            the rendered one so it wins on conflicts.
    """

    def __init__(
        self,
        packer_dir: Path,
        template: str,
        variables: Mapping[str, Any],
        extra_var_file: Path | None = None,
        secret_env: Mapping[str, str] | None = None,
        runner: CommandRunner = run_command,
    ):
        self.secret_env = dict(secret_env or {})
        self.packer_dir = Path(packer_dir)
        self.template = template
        self.variables = dict(variables)
        self.extra_var_file = extra_var_file
        self.runner = runner

    @property
    def vars_file(self) -> Path:
        return self.packer_dir / VARS_FILE

    @property
    def manifest_path(self) -> Path:
        return self.packer_dir / MANIFEST_FILE

    def invocations(self) -> list[ToolInvocation]:
        argv = ["packer", "build", f"-var-file={VARS_FILE}"]
        if self.extra_var_file is not None:
            argv.append(f"-var-file={Path(self.extra_var_file).absolute()}")
        argv.append(self.template)
        return [ToolInvocation(tuple(argv), cwd=self.packer_dir, description="Packer build", env=self.secret_env)]

    def render_vars(self) -> Path:
        logger.info(f"Creating Packer variables file {self.vars_file}")
        fd = os.open(self.vars_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as fh:
            json.dump(self.variables, fh, indent=2)
        return self.vars_file

    def build(self) -> BuildResult:
        if not (self.packer_dir / self.template).is_file():
            logger.warning(f"Packer template not found: {self.packer_dir / self.template}")
        vars_file = self.render_vars()
        for invocation in self.invocations():
            self.runner(invocation)
        manifest = self.manifest_path if self.manifest_path.is_file() else None
        return BuildResult(manifest_path=manifest, vars_file=vars_file)


__all__ = ["BuildResult", "PackerTemplateBuilder"]
