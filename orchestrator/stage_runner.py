"""Execute a single stage: dry-run interception, timing and failure translation."""

from __future__ import annotations

import logging
from typing import Callable

from common.app_setup import print_and_log
from common.errors import DeployError, StageFailure, ToolError
from orchestrator.config import Configuration
from orchestrator.models import Stage, StageResult, StageStatus

logger = logging.getLogger(__name__)

DRY_RUN_MESSAGE = "dry_run"


class StageRunner:
    """Runs one Stage against a Configuration.

    Under dry-run the stage's resolved invocations are printed and its action
    is never called. Otherwise the action runs and any DeployError or OSError
    is raised again as StageFailure carrying the failed StageResult.
    """

    def __init__(self, config: Configuration, echo: Callable[[str], None] = print_and_log):
        self.config = config
        self.echo = echo

    def run(self, stage: Stage) -> StageResult:
        result = StageResult(name=stage.name)
        result.transition(StageStatus.RUNNING)
        logger.info(f"Stage {stage.name} started at {result.started_at.isoformat()}")

        if self.config.dry_run:
            for invocation in stage.describe():
                self.echo(f"DRY RUN - Would execute: {invocation.render()}")
            result.transition(StageStatus.SKIPPED, DRY_RUN_MESSAGE)
            self._log_end(result)
            return result

        try:
            message = stage.action()
        except (DeployError, OSError) as e:
            returncode = e.returncode if isinstance(e, ToolError) else None
            message = e.message if isinstance(e, DeployError) else str(e)
            result.transition(StageStatus.FAILED, message)
            self._log_end(result)
            raise StageFailure(stage.name, message, returncode=returncode, result=result) from e
        result.transition(StageStatus.SUCCEEDED, message or "")
        self._log_end(result)
        return result

    def _log_end(self, result: StageResult) -> None:
        logger.info(
            f"Stage {result.name} {result.status} at {result.ended_at.isoformat()} "
            f"(elapsed {result.elapsed:.2f}s)"
        )


__all__ = ["StageRunner"]
