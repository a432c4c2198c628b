"""
Deployment status summary.

Built from state other tools left behind: terraform's exported outputs and the
release marker. Every missing piece renders as "not available"; building a
summary never raises.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field
from rich.console import Console
from rich.table import Table

from connectors.terraform import OUTPUT_FILE, STATE_FILE, extract_addresses, output_value
from orchestrator.artifacts import LATEST_POINTER, RELEASE_MARKER
from orchestrator.config import Configuration
from orchestrator.models import PipelineRun

logger = logging.getLogger(__name__)

NOT_AVAILABLE = "not available"

NAME_KEYS = ("vm_name", "name")
ID_KEYS = ("vm_id", "vmid", "id")
NODE_KEYS = ("target_node", "proxmox_node", "node")
CPU_KEYS = ("vm_cores", "cores", "cpu_cores", "cpu")
MEMORY_KEYS = ("vm_memory", "memory", "memory_mb")
TAG_KEYS = ("vm_tags", "tags")


class StatusSummary(BaseModel):
    vm_name: str = NOT_AVAILABLE
    vm_id: str = NOT_AVAILABLE
    node: str = NOT_AVAILABLE
    cpu: str = NOT_AVAILABLE
    memory: str = NOT_AVAILABLE
    addresses: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    release: str = NOT_AVAILABLE
    release_published: str = NOT_AVAILABLE
    terraform_state: bool = False
    run: PipelineRun | None = None

    @property
    def address_display(self) -> str:
        return ", ".join(self.addresses) if self.addresses else NOT_AVAILABLE

    @property
    def tags_display(self) -> str:
        return ", ".join(self.tags) if self.tags else NOT_AVAILABLE


def _display(value: Any) -> str:
    if value in (None, "", [], {}):
        return NOT_AVAILABLE
    if isinstance(value, (list, tuple)):
        return ", ".join(str(v) for v in value)
    return str(value)


def _tags(value: Any) -> list[str]:
    if value in (None, "", [], {}):
        return []
    if isinstance(value, str):
        # proxmox stores tags as "a;b" or "a,b"
        return [t for t in value.replace(";", ",").split(",") if t.strip()]
    if isinstance(value, (list, tuple)):
        return [str(t) for t in value]
    return [str(value)]


def _read_json(path: Path) -> dict[str, Any]:
    try:
        data = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError) as e:
        logger.info(f"Status source unavailable: {path} ({e.__class__.__name__})")
        return {}
    return data if isinstance(data, dict) else {}


class StatusReporter:
    def __init__(self, config: Configuration):
        self.config = config

    def collect(self, run: PipelineRun | None = None) -> StatusSummary:
        outputs = _read_json(self.config.terraform_dir / OUTPUT_FILE)
        marker = _read_json(self.config.images_dir / RELEASE_MARKER)

        release = marker.get("tagName")
        if not release:
            link = self.config.images_dir / LATEST_POINTER
            release = link.readlink().name if link.is_symlink() else None

        return StatusSummary(
            vm_name=_display(output_value(outputs, *NAME_KEYS)),
            vm_id=_display(output_value(outputs, *ID_KEYS)),
            node=_display(output_value(outputs, *NODE_KEYS)),
            cpu=_display(output_value(outputs, *CPU_KEYS)),
            memory=_display(output_value(outputs, *MEMORY_KEYS)),
            addresses=extract_addresses(outputs),
            tags=_tags(output_value(outputs, *TAG_KEYS)),
            release=_display(release),
            release_published=_display(marker.get("publishedAt")),
            terraform_state=(self.config.terraform_dir / STATE_FILE).is_file(),
            run=run,
        )

    def render(self, summary: StatusSummary, console: Console | None = None) -> None:
        console = console or Console()
        table = Table(title="Deployment status", show_header=False)
        table.add_column("Field", style="bold")
        table.add_column("Value")
        table.add_row("VM name", summary.vm_name)
        table.add_row("VM id", summary.vm_id)
        table.add_row("Node", summary.node)
        table.add_row("CPU cores", summary.cpu)
        table.add_row("Memory", summary.memory)
        table.add_row("Addresses", summary.address_display)
        table.add_row("Tags", summary.tags_display)
        table.add_row("Kairos release", summary.release)
        table.add_row("Published", summary.release_published)
        table.add_row("Terraform state", "found" if summary.terraform_state else "not found")
        console.print(table)

        if summary.run is not None and (summary.run.results or summary.run.skipped):
            stages = Table(title=f"{summary.run.command} ({summary.run.status})")
            stages.add_column("Stage")
            stages.add_column("Status")
            stages.add_column("Elapsed")
            stages.add_column("Message")
            for result in summary.run.results:
                elapsed = f"{result.elapsed:.1f}s" if result.elapsed is not None else "-"
                stages.add_row(str(result.name), str(result.status), elapsed, result.message)
            for name in summary.run.skipped:
                stages.add_row(str(name), "skipped", "-", "by configuration")
            console.print(stages)
        for line in summary_lines(summary):
            logger.info(line)


def summary_lines(summary: StatusSummary) -> list[str]:
    return [
        f"vm_name: {summary.vm_name}",
        f"vm_id: {summary.vm_id}",
        f"addresses: {summary.address_display}",
        f"tags: {summary.tags_display}",
        f"release: {summary.release}",
    ]


__all__ = ["NOT_AVAILABLE", "StatusReporter", "StatusSummary", "summary_lines"]
