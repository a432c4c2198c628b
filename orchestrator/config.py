"""
Run configuration.

Sources merge with precedence CLI > environment > key/value file (.env) >
built-in default. The resulting Configuration is frozen and passed explicitly
to every component; nothing reads the process environment after startup.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Annotated, Any, Mapping

from pydantic import Field, SecretStr, ValidationError, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict, SettingsError

from common.errors import ConfigError
from orchestrator.models import AssetType, Command, DeploymentMethod

TOKEN_SEPARATOR = "="
REQUIRED_CREDENTIALS = ("proxmox_api_url", "proxmox_api_token", "proxmox_node")


def _default_vm_name() -> str:
    return f"kairos-vm-{datetime.now().strftime('%Y%m%d-%H%M%S')}"


def mask_secret(value: str | None, separator: str = TOKEN_SEPARATOR) -> str:
    """Return only the non-secret prefix of a credential.

    ``user@pve!deploy=1234-abcd`` becomes ``user@pve!deploy=***``. A value with
    no separator has no displayable part.
    """
    if not value:
        return "not set"
    prefix, sep, _ = value.partition(separator)
    if not sep:
        return "***"
    return f"{prefix}{sep}***"


class Configuration(BaseSettings):
    """Immutable snapshot of everything a run needs."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
        case_sensitive=False,
    )

    # === Proxmox (environment/node and API credential) ===
    proxmox_api_url: str = ""
    proxmox_api_token: SecretStr | None = None
    proxmox_node: str = ""
    proxmox_verify_tls: bool = False

    # === Artifact registry ===
    github_repo: str = "your-org/beyond-devops-os-factory"
    github_token: SecretStr | None = None
    github_api_url: str = "https://api.github.com"
    kairos_version: str = "latest"
    asset_types: Annotated[list[AssetType], NoDecode] = Field(default_factory=lambda: list(AssetType))
    keep_releases: int = Field(default=3, ge=1)

    # === Target ===
    vm_name: str = Field(default_factory=_default_vm_name)
    deployment_method: DeploymentMethod = DeploymentMethod.ISO
    auroraboot_version: str = "v0.8.1"

    # === Paths to externally owned files ===
    terraform_dir: Path = Path("terraform/proxmox")
    packer_dir: Path = Path("packer/proxmox")
    packer_template: str = "kairos-base.pkr.hcl"
    images_dir: Path = Path("images/kairos")
    tf_vars: Path | None = None
    packer_vars: Path | None = None
    cloud_config: Path = Path("auroraboot/cloud-config.yaml")
    log_file: Path | None = None

    # === Behaviour ===
    dry_run: bool = False
    force: bool = False
    skip_template: bool = False
    skip_fetch: bool = False

    # === Settle wait between provisioning and installation ===
    settle_timeout: float = Field(default=300.0, ge=0)
    settle_initial_delay: float = Field(default=2.0, gt=0)
    settle_max_delay: float = Field(default=30.0, gt=0)
    ssh_port: int = 22

    @field_validator("asset_types", mode="before")
    @classmethod
    def _split_asset_types(cls, value: Any) -> Any:
        if isinstance(value, str):
            return AssetType.parse_list(value.strip("[] ").replace('"', ""))
        return value

    @property
    def token_display(self) -> str:
        token = self.proxmox_api_token.get_secret_value() if self.proxmox_api_token else None
        return mask_secret(token)

    @property
    def token_id(self) -> str:
        token = self.proxmox_api_token.get_secret_value() if self.proxmox_api_token else ""
        return token.partition(TOKEN_SEPARATOR)[0]

    @property
    def token_secret(self) -> str:
        token = self.proxmox_api_token.get_secret_value() if self.proxmox_api_token else ""
        return token.partition(TOKEN_SEPARATOR)[2]

    def summary(self) -> dict[str, str]:
        """Displayable view. Credentials appear only as their prefix."""
        return {
            "VM Name": self.vm_name,
            "Kairos Version": self.kairos_version,
            "GitHub Repository": self.github_repo,
            "Proxmox Node": self.proxmox_node or "not set",
            "Proxmox API": self.proxmox_api_url or "not set",
            "Proxmox Token": self.token_display,
            "Deployment Method": self.deployment_method.value,
            "Images directory": str(self.images_dir),
            "Dry run": str(self.dry_run).lower(),
        }


def resolve_configuration(
    command: Command | None,
    cli_overrides: Mapping[str, Any] | None = None,
    env_file: Path | str | None = ".env",
) -> Configuration:
    """Merge all sources into one Configuration.

    ``cli_overrides`` values that are None are dropped so unset flags never
    shadow the environment or the key/value file. Credentials are required
    for every pipeline command; ``status`` and informational calls
    (command None) tolerate their absence.
    """
    overrides = {k: v for k, v in (cli_overrides or {}).items() if v is not None}
    try:
        config = Configuration(_env_file=env_file, **overrides)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        raise ConfigError(f"Invalid configuration: {problems}") from None
    except SettingsError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from None

    if command is not None and command is not Command.STATUS:
        missing = [name.upper() for name in REQUIRED_CREDENTIALS if not _is_set(getattr(config, name))]
        if missing:
            raise ConfigError(f"Missing required configuration: {', '.join(missing)}")
    return config


def _is_set(value: Any) -> bool:
    if isinstance(value, SecretStr):
        return bool(value.get_secret_value())
    return bool(value)


__all__ = ["Configuration", "mask_secret", "resolve_configuration"]
