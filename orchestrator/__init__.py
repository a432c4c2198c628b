"""Core orchestrator package exposing run configuration and domain models."""

from .config import Configuration, resolve_configuration
from .models import (
    Command,
    PipelineRun,
    ReleaseAsset,
    ReleaseVersion,
    RunStatus,
    StageName,
    StageResult,
    StageStatus,
)

__all__ = [
    "Command",
    "Configuration",
    "PipelineRun",
    "ReleaseAsset",
    "ReleaseVersion",
    "RunStatus",
    "StageName",
    "StageResult",
    "StageStatus",
    "resolve_configuration",
]
