"""
Pre-pipeline checks: external executables and credentials.

Both checks run before any stage executes so a missing tool or a rejected
token never surfaces half way through a deployment.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from typing import Callable, Iterable, Protocol

from common.errors import DependencyError
from orchestrator.models import StageName

logger = logging.getLogger(__name__)

STAGE_TOOLS: dict[StageName, tuple[str, ...]] = {
    StageName.TEMPLATE_BUILD: ("packer",),
    StageName.ARTIFACT_FETCH: (),
    StageName.INFRA_PROVISION: ("terraform",),
    StageName.OS_INSTALL: ("docker",),
    StageName.CLEANUP: ("terraform",),
}

REGISTRY_STAGES = frozenset({StageName.ARTIFACT_FETCH})
PROXMOX_STAGES = frozenset({
    StageName.TEMPLATE_BUILD,
    StageName.INFRA_PROVISION,
    StageName.OS_INSTALL,
    StageName.CLEANUP,
})

INSTALL_HINTS = {
    "terraform": "https://developer.hashicorp.com/terraform/downloads",
    "packer": "https://developer.hashicorp.com/packer/downloads",
    "docker": "https://docs.docker.com/get-docker/",
}


class AuthProbe(Protocol):
    def check_auth(self) -> None: ...


@dataclass(frozen=True)
class DependencyReport:
    missing: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.missing


def required_tools(stages: Iterable[StageName]) -> list[str]:
    tools: list[str] = []
    for stage in stages:
        for tool in STAGE_TOOLS[stage]:
            if tool not in tools:
                tools.append(tool)
    return tools


class DependencyChecker:
    """
    Args:
        which: executable lookup, shutil.which by default.
        registry: factory for the artifact registry probe, called only when
            a registry stage is in the set.
        proxmox: factory for the Proxmox API probe, called only when a
            Proxmox stage is in the set.
    """

    def __init__(
        self,
        which: Callable[[str], str | None] = shutil.which,
        registry: Callable[[], AuthProbe] | None = None,
        proxmox: Callable[[], AuthProbe] | None = None,
    ):
        self.which = which
        self.registry = registry
        self.proxmox = proxmox

    def check(self, stages: Iterable[StageName]) -> DependencyReport:
        missing = [tool for tool in required_tools(stages) if self.which(tool) is None]
        return DependencyReport(missing)

    def ensure(self, stages: Iterable[StageName]) -> None:
        report = self.check(list(stages))
        if not report.ok:
            hints = "; ".join(f"{t}: {INSTALL_HINTS.get(t, 'install it and retry')}" for t in report.missing)
            raise DependencyError(f"Missing dependencies: {', '.join(report.missing)} ({hints})", missing=report.missing)

    def verify_credentials(self, stages: Iterable[StageName], dry_run: bool = False) -> None:
        stage_set = set(stages)
        probes: list[tuple[str, Callable[[], AuthProbe] | None]] = []
        if stage_set & REGISTRY_STAGES:
            probes.append(("artifact registry", self.registry))
        if stage_set & PROXMOX_STAGES:
            probes.append(("Proxmox API", self.proxmox))
        for label, factory in probes:
            if factory is None:
                continue
            if dry_run:
                logger.info(f"DRY RUN - skipping {label} credential check")
                continue
            logger.info(f"Validating {label} credentials...")
            factory().check_auth()


__all__ = ["DependencyChecker", "DependencyReport", "STAGE_TOOLS", "required_tools"]
