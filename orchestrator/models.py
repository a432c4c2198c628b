"""Pydantic models that capture orchestrator domain concepts."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Callable

from pydantic import BaseModel, Field

from connectors.tooling import ToolInvocation

if TYPE_CHECKING:
    from orchestrator.config import Configuration


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StageName(StrEnum):
    """Closed set of pipeline stage identifiers."""

    TEMPLATE_BUILD = "TemplateBuild"
    ARTIFACT_FETCH = "ArtifactFetch"
    INFRA_PROVISION = "InfraProvision"
    OS_INSTALL = "OSInstall"
    CLEANUP = "Cleanup"


class Command(StrEnum):
    FULL_DEPLOY = "full-deploy"
    TEMPLATE_ONLY = "template-only"
    VM_ONLY = "vm-only"
    KAIROS_ONLY = "kairos-only"
    CLEANUP = "cleanup"
    STATUS = "status"


class StageStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    SKIPPED = "skipped"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (StageStatus.SKIPPED, StageStatus.SUCCEEDED, StageStatus.FAILED)


# Allowed forward moves. Terminal states have no successors.
_TRANSITIONS: dict[StageStatus, frozenset[StageStatus]] = {
    StageStatus.PENDING: frozenset({StageStatus.RUNNING, StageStatus.SKIPPED}),
    StageStatus.RUNNING: frozenset({StageStatus.SUCCEEDED, StageStatus.FAILED, StageStatus.SKIPPED}),
    StageStatus.SKIPPED: frozenset(),
    StageStatus.SUCCEEDED: frozenset(),
    StageStatus.FAILED: frozenset(),
}


class RunStatus(StrEnum):
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    DRY_RUN_ONLY = "DryRunOnly"


class AssetType(StrEnum):
    """Image formats published with a release, in deployment preference order."""

    ISO = "iso"
    RAW = "raw"
    QCOW2 = "qcow2"

    @property
    def suffix(self) -> str:
        return f".{self.value}"

    @classmethod
    def parse_list(cls, raw: str) -> list[AssetType]:
        """Parse a comma separated list such as ``iso,raw``."""
        return [cls(part.strip().lower()) for part in raw.split(",") if part.strip()]


class DeploymentMethod(StrEnum):
    ISO = "iso"
    NETWORK = "network"
    HYBRID = "hybrid"


class StageResult(BaseModel):
    """Outcome of one stage. Status only ever moves forward."""

    name: StageName
    status: StageStatus = StageStatus.PENDING
    message: str = ""
    started_at: datetime | None = None
    ended_at: datetime | None = None

    def transition(self, new_status: StageStatus, message: str | None = None) -> StageResult:
        if new_status not in _TRANSITIONS[self.status]:
            raise ValueError(f"Illegal stage transition for {self.name}: {self.status} -> {new_status}")
        now = utcnow()
        if new_status is StageStatus.RUNNING:
            self.started_at = now
        elif new_status.is_terminal:
            if self.started_at is None:
                self.started_at = now
            self.ended_at = now
        self.status = new_status
        if message is not None:
            self.message = message
        return self

    @property
    def elapsed(self) -> float | None:
        if self.started_at is None or self.ended_at is None:
            return None
        return (self.ended_at - self.started_at).total_seconds()


class PipelineRun(BaseModel):
    """Ordered stage outcomes of one CLI invocation.

    Stages skipped by configuration never run and are listed in ``skipped``
    instead of ``results``.
    """

    command: Command
    results: list[StageResult] = Field(default_factory=list)
    skipped: list[StageName] = Field(default_factory=list)
    status: RunStatus | None = None
    log_path: str | None = None
    cleanup_attempts: int = 0
    failure_message: str | None = None
    failure_returncode: int | None = None

    def append(self, result: StageResult) -> None:
        if self.results and not self.results[-1].status.is_terminal:
            raise ValueError(f"Stage {self.results[-1].name} has not finished")
        self.results.append(result)

    def result_for(self, name: StageName) -> StageResult | None:
        for result in self.results:
            if result.name == name:
                return result
        return None

    @property
    def failed_result(self) -> StageResult | None:
        for result in self.results:
            if result.status is StageStatus.FAILED:
                return result
        return None


class ReleaseAsset(BaseModel):
    """One downloadable image. ``local_path`` is ``<images_dir>/<version>/<name>``."""

    name: str
    version: str
    type: AssetType
    local_path: Path
    size: int = 0
    downloaded_at: datetime | None = None


class ReleaseVersion(BaseModel):
    tag: str
    name: str = ""
    published_at: datetime | None = None
    assets: list[ReleaseAsset] = Field(default_factory=list)
    is_latest: bool = False


@dataclass
class Stage:
    """A named pipeline unit: skip predicate, action and dry-run description."""

    name: StageName
    action: Callable[[], str | None]
    describe: Callable[[], list[ToolInvocation]] = field(default=lambda: [])
    should_skip: Callable[[Configuration], bool] = field(default=lambda config: False)


__all__ = [
    "AssetType",
    "Command",
    "DeploymentMethod",
    "PipelineRun",
    "ReleaseAsset",
    "ReleaseVersion",
    "RunStatus",
    "Stage",
    "StageName",
    "StageResult",
    "StageStatus",
    "utcnow",
]
