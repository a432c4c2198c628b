"""
Error taxonomy shared by the orchestrator, the connectors and the CLI.

Fatal errors derive from DeployError. Warnings derive from DeployWarning and are
collected into reports instead of being raised across a stage boundary.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:
    from connectors.tooling import ToolInvocation
    from orchestrator.models import StageResult

mylogger = logging.getLogger(__name__)


class DeployError(Exception):
    """Base class for all fatal deployment errors."""

    def __init__(self, message: str = "A deployment error occurred"):
        self.message = message
        super().__init__(self.message)


class ConfigError(DeployError):
    """Missing or invalid configuration. Raised before any stage runs."""


class DependencyError(DeployError):
    """Missing external executable or failed credential probe."""

    def __init__(self, message: str, missing: Sequence[str] = ()):
        self.missing = list(missing)
        super().__init__(message)


class RegistryError(DeployError):
    """The artifact registry could not be queried."""


class ToolError(DeployError):
    """An external tool exited with a non-zero status."""

    def __init__(self, message: str, invocation: ToolInvocation | None = None, returncode: int | None = None, output: str = ""):
        self.invocation = invocation
        self.returncode = returncode
        self.output = output
        super().__init__(message)


class StageFailure(DeployError):
    """A stage failed. Fatal to the run: no later stage is attempted."""

    def __init__(self, stage_name: str, message: str, returncode: int | None = None, result: StageResult | None = None):
        self.stage_name = stage_name
        self.returncode = returncode
        self.result = result
        super().__init__(f"Stage {stage_name} failed: {message}")
        self.underlying_message = message


class CleanupError(DeployError):
    """Best-effort teardown failed. Never changes the run's terminal status."""


class DeployWarning(Exception):
    """Non-fatal condition. Logged when created with log=True."""

    level = logging.WARNING

    def __init__(self, message: str = "A deployment warning occurred", log: bool = False):
        self.message = message
        super().__init__(self.message)
        if log:
            mylogger.log(self.level, message)


class AssetWarning(DeployWarning):
    """A requested asset type is missing from a release, or one download failed."""


class VerificationWarning(DeployWarning):
    """A post-download or post-provision check did not pass."""


__all__ = [
    "AssetWarning",
    "CleanupError",
    "ConfigError",
    "DependencyError",
    "DeployError",
    "DeployWarning",
    "RegistryError",
    "StageFailure",
    "ToolError",
    "VerificationWarning",
]
