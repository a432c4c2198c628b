"""
Versioned release assets on local disk.

Layout under the images directory::

    images/kairos/
        v1.2.0/kairos-v1.2.0.iso
        v1.3.0/kairos-v1.3.0.iso
        latest -> v1.3.0
        last-release.json

The ``latest`` symlink is the only pointer; ``last-release.json`` records the
metadata (tag, name, published_at) of the release it points to.
"""

from __future__ import annotations

import json
import logging
import os
import re
import shutil
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from pathlib import Path
from typing import Iterable

from common.errors import AssetWarning, DeployError, DeployWarning, RegistryError, VerificationWarning
from connectors.registry_interface import ArtifactRegistry, ReleaseInfo
from orchestrator.models import AssetType, ReleaseAsset, ReleaseVersion, utcnow

logger = logging.getLogger(__name__)

LATEST = "latest"
LATEST_POINTER = "latest"
RELEASE_MARKER = "last-release.json"
_VERSION_DIR = re.compile(r"^v?\d")


class DownloadOutcome(StrEnum):
    DOWNLOADED = "downloaded"
    SKIPPED_EXISTS = "skipped-exists"
    FAILED = "failed"


@dataclass
class FetchReport:
    release: ReleaseVersion
    outcomes: dict[str, DownloadOutcome] = field(default_factory=dict)
    warnings: list[DeployWarning] = field(default_factory=list)

    def count(self, outcome: DownloadOutcome) -> int:
        return sum(1 for o in self.outcomes.values() if o is outcome)

    @property
    def usable(self) -> int:
        return self.count(DownloadOutcome.DOWNLOADED) + self.count(DownloadOutcome.SKIPPED_EXISTS)


def version_key(name: str) -> tuple:
    """Natural ordering key, same order as ``sort -V``: v1.10.0 > v1.9.2."""
    parts = re.split(r"(\d+)", name.lstrip("vV"))
    return tuple((0, int(p)) if p.isdigit() else (1, p) for p in parts if p)


class ArtifactFetcher:
    """Resolve, list, download and prune release assets for one images directory."""

    def __init__(self, registry: ArtifactRegistry, images_dir: Path):
        self.registry = registry
        self.images_dir = Path(images_dir)
        self.warnings: list[DeployWarning] = []
        self._releases: dict[str, ReleaseInfo] = {}

    # ------------------------------------------------------------------
    # registry queries

    def resolve(self, selector: str) -> str:
        """Map "latest" to the most recently published tag. Anything else passes through."""
        if selector != LATEST:
            return selector
        release = self.registry.latest_release()
        self._releases[release.tag] = release
        logger.info(f"Version selector 'latest' resolves to {release.tag}")
        return release.tag

    def release(self, version: str) -> ReleaseVersion:
        return _to_version(self._release_info(version))

    def list_releases(self, limit: int = 20) -> list[ReleaseVersion]:
        return [_to_version(r) for r in self.registry.list_releases(limit=limit)]

    def list_assets(self, version: str, types: Iterable[AssetType]) -> list[ReleaseAsset]:
        """Assets of ``version`` whose filename ends with one of the requested suffixes."""
        info = self._release_info(version)
        wanted = list(types)
        assets = []
        for item in info.assets:
            for asset_type in wanted:
                if item.name.endswith(asset_type.suffix):
                    assets.append(self._asset(info.tag, item.name, asset_type, item.get("size", 0)))
                    break
        return assets

    # ------------------------------------------------------------------
    # local disk

    def version_dir(self, version: str) -> Path:
        return self.images_dir / version

    def download(self, asset: ReleaseAsset, force: bool = False) -> DownloadOutcome:
        target = Path(asset.local_path)
        if target.exists() and not force:
            logger.info(f"Asset already exists: {asset.name} (use --force to re-download)")
            return DownloadOutcome.SKIPPED_EXISTS

        target.parent.mkdir(parents=True, exist_ok=True)
        try:
            self.registry.download_asset(self._release_info(asset.version), asset.name, target.parent)
        except RegistryError as e:
            self.warnings.append(AssetWarning(f"Failed to download {asset.name}: {e}", log=True))
            return DownloadOutcome.FAILED

        if target.is_file():
            asset.size = target.stat().st_size
            asset.downloaded_at = utcnow()
            logger.info(f"Downloaded {asset.name} ({asset.size} bytes)")
        else:
            self.warnings.append(VerificationWarning(f"Downloaded file not found: {target}", log=True))
        return DownloadOutcome.DOWNLOADED

    def update_latest_pointer(self, release: ReleaseVersion) -> None:
        """Point ``latest`` at ``release.tag`` and rewrite the release marker. Idempotent."""
        self.images_dir.mkdir(parents=True, exist_ok=True)
        link = self.images_dir / LATEST_POINTER
        if link.exists() and not link.is_symlink():
            raise DeployError(f"{link} exists and is not a symlink")
        if not (link.is_symlink() and os.readlink(link) == release.tag):
            tmp = self.images_dir / f".{LATEST_POINTER}.tmp"
            tmp.unlink(missing_ok=True)
            tmp.symlink_to(release.tag, target_is_directory=True)
            os.replace(tmp, link)
            logger.info(f"Updated latest symlink: latest -> {release.tag}")

        marker = {
            "tagName": release.tag,
            "name": release.name,
            "publishedAt": release.published_at.isoformat() if release.published_at else None,
        }
        tmp_marker = self.images_dir / f".{RELEASE_MARKER}.tmp"
        tmp_marker.write_text(json.dumps(marker, indent=2))
        os.replace(tmp_marker, self.images_dir / RELEASE_MARKER)

    def local_latest(self) -> str | None:
        """Resolve the on-disk pointer without a registry call."""
        link = self.images_dir / LATEST_POINTER
        if link.is_symlink():
            return Path(os.readlink(link)).name
        marker = self.images_dir / RELEASE_MARKER
        if marker.is_file():
            try:
                return json.loads(marker.read_text()).get("tagName")
            except json.JSONDecodeError:
                logger.warning(f"Unreadable release marker: {marker}")
        return None

    def local_versions(self) -> list[str]:
        if not self.images_dir.is_dir():
            return []
        names = [
            p.name for p in self.images_dir.iterdir()
            if p.is_dir() and not p.is_symlink() and _VERSION_DIR.match(p.name)
        ]
        return sorted(names, key=version_key)

    def cleanup_plan(self, keep_n: int = 3) -> list[str]:
        """Version directories that cleanup(keep_n) would remove. Read-only."""
        if keep_n < 1:
            raise ValueError("keep_n must be at least 1")
        protected = self.local_latest()
        return [name for name in self.local_versions()[:-keep_n] if name != protected]

    def cleanup(self, keep_n: int = 3) -> list[str]:
        """Remove version directories beyond the ``keep_n`` highest. Never the latest target."""
        removed = []
        for name in self.cleanup_plan(keep_n):
            logger.info(f"Removing old release: {name}")
            shutil.rmtree(self.images_dir / name)
            removed.append(name)
        return removed

    # ------------------------------------------------------------------
    # composite

    def fetch(self, selector: str, types: Iterable[AssetType], force: bool = False) -> FetchReport:
        """Resolve ``selector``, download every matching asset and update the pointer.

        Raises RegistryError when the registry cannot be queried or when no
        asset of any requested type ends up on disk.
        """
        self.warnings = []
        version = self.resolve(selector)
        info = self._release_info(version)
        report = FetchReport(release=_to_version(info))

        for asset_type in types:
            assets = self.list_assets(version, [asset_type])
            if not assets:
                self.warnings.append(AssetWarning(f"No {asset_type.value} assets found for {version}", log=True))
                continue
            for asset in assets:
                report.outcomes[asset.name] = self.download(asset, force=force)
                report.release.assets.append(asset)

        report.warnings = list(self.warnings)
        if report.usable == 0:
            raise RegistryError(f"No usable assets for release {version}")
        if selector == LATEST:
            self.update_latest_pointer(report.release)
        return report

    # ------------------------------------------------------------------
    # helpers

    def _release_info(self, version: str) -> ReleaseInfo:
        if version not in self._releases:
            self._releases[version] = self.registry.get_release(version)
        return self._releases[version]

    def _asset(self, version: str, name: str, asset_type: AssetType, size: int = 0) -> ReleaseAsset:
        return ReleaseAsset(
            name=name,
            version=version,
            type=asset_type,
            local_path=self.version_dir(version) / name,
            size=size or 0,
        )


def _to_version(info: ReleaseInfo) -> ReleaseVersion:
    published = None
    if info.get("published_at"):
        published = datetime.fromisoformat(str(info.published_at).replace("Z", "+00:00"))
    return ReleaseVersion(
        tag=info.tag,
        name=info.get("name") or info.tag,
        published_at=published,
        is_latest=bool(info.get("is_latest")),
    )


__all__ = ["ArtifactFetcher", "DownloadOutcome", "FetchReport", "version_key"]
