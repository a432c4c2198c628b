"""
This file is the entry point for the 'os-factory' command-line tool.
Run 'os-factory --help' in your shell to use the CLI.

Exit status: 0 success, 1 stage failure, 2 configuration error,
3 missing dependency or rejected credential.
"""
from pathlib import Path
from typing import Annotated, Any, Optional

import typer
from rich.console import Console
from rich.table import Table

from common.app_setup import print_and_log, print_error, print_success, setup_logging
from common.errors import ConfigError, DependencyError, RegistryError
from connectors.github_registry import GitHubReleaseRegistry, GitHubSession
from connectors.proxmox import ProxmoxSession
from orchestrator.artifacts import ArtifactFetcher
from orchestrator.config import Configuration, resolve_configuration
from orchestrator.dependencies import DependencyChecker
from orchestrator.models import Command, DeploymentMethod, PipelineRun, RunStatus
from orchestrator.pipeline import PipelineOrchestrator, active_stages
from orchestrator.status import StatusReporter

EXIT_STAGE_FAILURE = 1
EXIT_CONFIG_ERROR = 2
EXIT_DEPENDENCY_ERROR = 3

app = typer.Typer(help="Build, provision and install Kairos VMs on Proxmox.", no_args_is_help=True)

NameOpt = Annotated[Optional[str], typer.Option("--name", "-n", help="VM name (default: kairos-vm-<timestamp>)")]
RepoOpt = Annotated[Optional[str], typer.Option("--repo", "-r", help="GitHub repository with Kairos releases")]
VersionOpt = Annotated[Optional[str], typer.Option("--version", "-v", help="Kairos release tag or 'latest'")]
NodeOpt = Annotated[Optional[str], typer.Option("--proxmox-node", help="Proxmox node to deploy on")]
TfVarsOpt = Annotated[Optional[Path], typer.Option("--tf-vars", help="Terraform variables file")]
PackerVarsOpt = Annotated[Optional[Path], typer.Option("--packer-vars", help="Extra Packer variables file")]
CloudConfigOpt = Annotated[Optional[Path], typer.Option("--cloud-config", help="AuroraBoot cloud-config file")]
ImagesDirOpt = Annotated[Optional[Path], typer.Option("--images-dir", help="Local directory for release images")]
MethodOpt = Annotated[Optional[DeploymentMethod], typer.Option("--method", help="AuroraBoot deployment method")]
EnvFileOpt = Annotated[Path, typer.Option("--env-file", help="Key/value configuration file")]
DryRunOpt = Annotated[bool, typer.Option("--dry-run", help="Show what would be executed without doing it")]
ForceOpt = Annotated[bool, typer.Option("--force", help="Re-download assets that already exist")]
SkipTemplateOpt = Annotated[bool, typer.Option("--skip-template", help="Skip the Packer template build")]
SkipFetchOpt = Annotated[bool, typer.Option("--skip-fetch", help="Skip fetching release images")]


def _flag(value: bool) -> bool | None:
    # unset switches must not shadow the environment
    return True if value else None


def make_registry(config: Configuration) -> GitHubReleaseRegistry:
    token = config.github_token.get_secret_value() if config.github_token else None
    return GitHubReleaseRegistry(GitHubSession(config.github_api_url, token), config.github_repo)


def make_proxmox(config: Configuration) -> ProxmoxSession:
    token = config.proxmox_api_token.get_secret_value() if config.proxmox_api_token else ""
    return ProxmoxSession(config.proxmox_api_url, token, verify=config.proxmox_verify_tls)


def make_checker(config: Configuration) -> DependencyChecker:
    return DependencyChecker(registry=lambda: make_registry(config), proxmox=lambda: make_proxmox(config))


def make_orchestrator(config: Configuration) -> PipelineOrchestrator:
    return PipelineOrchestrator(config, registry_factory=lambda: make_registry(config))


def load_configuration(command: Command | None, overrides: dict[str, Any], env_file: Path) -> Configuration:
    """Resolve the configuration and start the run log. Exits with status 2 on failure."""
    try:
        config = resolve_configuration(command, overrides, env_file=env_file)
    except ConfigError as e:
        print_error(str(e))
        raise typer.Exit(EXIT_CONFIG_ERROR)
    setup_logging(logfile=str(config.log_file) if config.log_file else None)
    return config


def print_header(config: Configuration, command: Command) -> None:
    print_and_log(f"Kairos deployment: {command}")
    for key, value in config.summary().items():
        print_and_log(f"  {key}: {value}")


def report_failure(run: PipelineRun) -> None:
    failed = run.failed_result
    stage = failed.name if failed is not None else "unknown"
    print_error(f"Stage {stage} failed: {run.failure_message}")
    if run.failure_returncode is not None:
        print_error(f"Exit status: {run.failure_returncode}")
    print_error(f"Check the log for details: {run.log_path}")
    if run.cleanup_attempts:
        print_and_log("Cleanup attempted after failure")


def execute(command: Command, overrides: dict[str, Any], env_file: Path) -> PipelineRun:
    """Run one pipeline command end to end and exit with its status code."""
    config = load_configuration(command, overrides, env_file)
    print_header(config, command)

    stages = active_stages(command, config)
    checker = make_checker(config)
    try:
        checker.ensure(stages)
        checker.verify_credentials(stages, dry_run=config.dry_run)
    except DependencyError as e:
        print_error(str(e))
        raise typer.Exit(EXIT_DEPENDENCY_ERROR)

    run = make_orchestrator(config).run(command)
    if run.status is RunStatus.FAILED:
        report_failure(run)
        raise typer.Exit(EXIT_STAGE_FAILURE)

    if run.status is RunStatus.DRY_RUN_ONLY:
        print_success(f"Dry run of {command} completed, nothing was changed")
    else:
        print_success(f"{command} completed successfully")
        if command is Command.FULL_DEPLOY:
            reporter = StatusReporter(config)
            reporter.render(reporter.collect(run))
    return run


def _deploy_overrides(
    name, repo, version, node, tf_vars, packer_vars, cloud_config, images_dir, method, dry_run,
    force=False, skip_template=False, skip_fetch=False,
) -> dict[str, Any]:
    return {
        "vm_name": name,
        "github_repo": repo,
        "kairos_version": version,
        "proxmox_node": node,
        "tf_vars": tf_vars,
        "packer_vars": packer_vars,
        "cloud_config": cloud_config,
        "images_dir": images_dir,
        "deployment_method": method,
        "dry_run": _flag(dry_run),
        "force": _flag(force),
        "skip_template": _flag(skip_template),
        "skip_fetch": _flag(skip_fetch),
    }


@app.command("full-deploy")
def full_deploy(
    name: NameOpt = None,
    repo: RepoOpt = None,
    version: VersionOpt = None,
    proxmox_node: NodeOpt = None,
    tf_vars: TfVarsOpt = None,
    packer_vars: PackerVarsOpt = None,
    cloud_config: CloudConfigOpt = None,
    images_dir: ImagesDirOpt = None,
    method: MethodOpt = None,
    env_file: EnvFileOpt = Path(".env"),
    dry_run: DryRunOpt = False,
    force: ForceOpt = False,
    skip_template: SkipTemplateOpt = False,
    skip_fetch: SkipFetchOpt = False,
):
    """Template build, image fetch, VM provisioning and Kairos install."""
    overrides = _deploy_overrides(
        name, repo, version, proxmox_node, tf_vars, packer_vars, cloud_config, images_dir, method,
        dry_run, force, skip_template, skip_fetch,
    )
    execute(Command.FULL_DEPLOY, overrides, env_file)


@app.command("template-only")
def template_only(
    proxmox_node: NodeOpt = None,
    packer_vars: PackerVarsOpt = None,
    env_file: EnvFileOpt = Path(".env"),
    dry_run: DryRunOpt = False,
):
    """Build the Packer template only."""
    overrides = {"proxmox_node": proxmox_node, "packer_vars": packer_vars, "dry_run": _flag(dry_run)}
    execute(Command.TEMPLATE_ONLY, overrides, env_file)


@app.command("vm-only")
def vm_only(
    name: NameOpt = None,
    repo: RepoOpt = None,
    version: VersionOpt = None,
    proxmox_node: NodeOpt = None,
    tf_vars: TfVarsOpt = None,
    env_file: EnvFileOpt = Path(".env"),
    dry_run: DryRunOpt = False,
):
    """Provision the VM with Terraform only."""
    overrides = _deploy_overrides(name, repo, version, proxmox_node, tf_vars, None, None, None, None, dry_run)
    execute(Command.VM_ONLY, overrides, env_file)


@app.command("kairos-only")
def kairos_only(
    name: NameOpt = None,
    version: VersionOpt = None,
    proxmox_node: NodeOpt = None,
    cloud_config: CloudConfigOpt = None,
    images_dir: ImagesDirOpt = None,
    method: MethodOpt = None,
    env_file: EnvFileOpt = Path(".env"),
    dry_run: DryRunOpt = False,
):
    """Install Kairos with AuroraBoot on an existing VM."""
    overrides = _deploy_overrides(
        name, None, version, proxmox_node, None, None, cloud_config, images_dir, method, dry_run,
    )
    execute(Command.KAIROS_ONLY, overrides, env_file)


@app.command()
def cleanup(
    proxmox_node: NodeOpt = None,
    tf_vars: TfVarsOpt = None,
    images_dir: ImagesDirOpt = None,
    keep: Annotated[Optional[int], typer.Option("--keep", min=1, help="Number of releases to keep")] = None,
    env_file: EnvFileOpt = Path(".env"),
    dry_run: DryRunOpt = False,
):
    """Destroy the VM and prune old release images."""
    overrides = {
        "proxmox_node": proxmox_node,
        "tf_vars": tf_vars,
        "images_dir": images_dir,
        "keep_releases": keep,
        "dry_run": _flag(dry_run),
    }
    execute(Command.CLEANUP, overrides, env_file)


@app.command()
def status(
    images_dir: ImagesDirOpt = None,
    env_file: EnvFileOpt = Path(".env"),
):
    """Show the deployed VM and the current release. Needs no credentials."""
    config = load_configuration(Command.STATUS, {"images_dir": images_dir}, env_file)
    reporter = StatusReporter(config)
    reporter.render(reporter.collect())


@app.command()
def releases(
    repo: RepoOpt = None,
    limit: Annotated[int, typer.Option("--limit", min=1, help="Maximum number of releases")] = 20,
    env_file: EnvFileOpt = Path(".env"),
):
    """List releases published in the registry."""
    config = load_configuration(None, {"github_repo": repo}, env_file)

    fetcher = ArtifactFetcher(make_registry(config), config.images_dir)
    try:
        versions = fetcher.list_releases(limit=limit)
    except RegistryError as e:
        print_error(str(e))
        raise typer.Exit(EXIT_STAGE_FAILURE)

    if not versions:
        print_and_log(f"No releases found in {config.github_repo}")
        return
    table = Table(title=f"Releases of {config.github_repo}")
    table.add_column("Tag")
    table.add_column("Name")
    table.add_column("Published")
    table.add_column("Latest")
    for version in versions:
        published = version.published_at.strftime("%Y-%m-%d %H:%M") if version.published_at else "-"
        table.add_row(version.tag, version.name, published, "yes" if version.is_latest else "")
    Console().print(table)
    local = fetcher.local_latest()
    print_and_log(f"Local latest: {local or 'none'}")


if __name__ == "__main__":
    app()
