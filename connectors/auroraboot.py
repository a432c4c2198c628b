"""
auroraboot.py
-------------
OS installer adapter: runs the AuroraBoot container against a Kairos image
and a cloud-config file.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import assert_never

import yaml

from common.errors import DeployError, ToolError
from connectors.tooling import CommandRunner, ToolInvocation, run_command
from orchestrator.models import AssetType, DeploymentMethod

logger = logging.getLogger(__name__)

AURORABOOT_IMAGE = "quay.io/kairos/auroraboot"
KERNEL_PATTERNS = ("*kernel*", "*vmlinuz*")
INITRD_PATTERNS = ("*initrd*", "*initramfs*")
CLOUD_CONFIG_HEADER = "#cloud-config"

# Fixed precedence for methods that accept more than one image format.
HYBRID_PRECEDENCE = (AssetType.ISO, AssetType.RAW, AssetType.QCOW2)


def _first(version_dir: Path, patterns: tuple[str, ...]) -> Path | None:
    for pattern in patterns:
        matches = sorted(p for p in version_dir.glob(pattern) if p.is_file())
        if matches:
            return matches[0]
    return None


def validate_cloud_config(path: Path) -> None:
    """Raise ToolError unless ``path`` is a readable cloud-config document.

    Files carrying Go template markup are rendered by AuroraBoot itself, so only
    the header is checked for them.
    """
    if not path.is_file():
        raise ToolError(f"Cloud-config file not found: {path}")
    text = path.read_text(encoding="utf-8")
    if not text.lstrip().startswith(CLOUD_CONFIG_HEADER):
        raise ToolError(f"Missing {CLOUD_CONFIG_HEADER} header in {path}")
    if "{{" in text:
        logger.info(f"{path.name} contains template markup, skipping YAML parse")
        return
    try:
        yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ToolError(f"Invalid YAML syntax in {path}: {e}") from e


def select_image(version_dir: Path, method: DeploymentMethod) -> list[Path]:
    """Pick the image file(s) for ``method``.

    iso: the ISO only. hybrid: ISO, else RAW, else QCOW2. network: kernel and
    initrd. Raises ToolError when nothing suitable exists.
    """
    if not version_dir.is_dir():
        raise ToolError(f"Version directory not found: {version_dir}")
    match method:
        case DeploymentMethod.ISO:
            image = _first(version_dir, (f"*{AssetType.ISO.suffix}",))
            if image:
                return [image]
        case DeploymentMethod.HYBRID:
            for asset_type in HYBRID_PRECEDENCE:
                image = _first(version_dir, (f"*{asset_type.suffix}",))
                if image:
                    if asset_type is not AssetType.ISO:
                        logger.warning(f"No ISO found, using {asset_type.value} image {image.name}")
                    return [image]
        case DeploymentMethod.NETWORK:
            kernel = _first(version_dir, KERNEL_PATTERNS)
            initrd = _first(version_dir, INITRD_PATTERNS)
            if kernel and initrd:
                return [kernel, initrd]
        case _:
            assert_never(method)
    raise ToolError(f"No suitable image found in {version_dir} for deployment method: {method.value}")


class AuroraBootInstaller:
    """
    Install Kairos with AuroraBoot.

    Args:
        version_dir: directory of the resolved release (may be the ``latest``
            symlink).
        cloud_config: installer configuration file.
    """

    def __init__(
        self,
        version_dir: Path,
        version: str,
        method: DeploymentMethod,
        cloud_config: Path,
        vm_name: str,
        auroraboot_version: str = "v0.8.1",
        runner: CommandRunner = run_command,
    ):
        self.version_dir = Path(version_dir)
        self.version = version
        self.method = method
        self.cloud_config = Path(cloud_config)
        self.vm_name = vm_name
        self.container = f"{AURORABOOT_IMAGE}:{auroraboot_version}"
        self.runner = runner

    def invocation(self, address: str | None = None, images: list[Path] | None = None) -> ToolInvocation:
        if images is None:
            images = select_image(self.version_dir, self.method)
        mount = images[0].parent.absolute() if images else self.version_dir.absolute()
        argv = [
            "docker", "run", "--rm",
            "--net", "host",
            "-v", f"{mount}:/images",
            "-v", f"{self.cloud_config.parent.absolute()}:/config",
            "-v", "/var/run/docker.sock:/var/run/docker.sock",
            self.container,
            "--cloud-config", f"/config/{self.cloud_config.name}",
        ]
        match self.method:
            case DeploymentMethod.ISO:
                argv += ["--set", f"container_image=/images/{images[0].name}"]
            case DeploymentMethod.HYBRID:
                argv += ["--set", f"container_image=/images/{images[0].name}", "--set", "deployment_method=hybrid"]
            case DeploymentMethod.NETWORK:
                argv += ["--set", f"artifact_version={self.version}"]
            case _:
                assert_never(self.method)
        if address:
            argv += ["--set", f"target_address={address}"]
        return ToolInvocation(tuple(argv), description=f"AuroraBoot install of {self.vm_name}")

    def describe(self, address: str | None = None) -> list[ToolInvocation]:
        """Invocation for dry-run display. Never fails, never touches anything."""
        try:
            return [self.invocation(address)]
        except DeployError:
            placeholder = [self.version_dir / f"<{self.method.value} image not yet fetched>"]
            return [self.invocation(address, images=placeholder)]

    def install(self, address: str | None = None) -> ToolInvocation:
        logger.info(f"Deploying Kairos {self.version} to {self.vm_name} (method: {self.method.value})")
        validate_cloud_config(self.cloud_config)
        invocation = self.invocation(address)
        self.runner(invocation)
        return invocation


__all__ = ["AuroraBootInstaller", "HYBRID_PRECEDENCE", "select_image", "validate_cloud_config"]
