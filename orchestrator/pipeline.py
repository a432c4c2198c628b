"""
Pipeline orchestration.

State machine: Idle -> Running(stage i) -> {Succeeded, Failed(stage i), DryRunOnly}.
Stages run strictly in declared order. The first failed stage halts the run;
the best-effort cleanup callback then runs exactly once.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, assert_never

from common.app_setup import default_logfile, print_and_log, print_success, print_warning
from common.errors import CleanupError, DeployError, DeployWarning, StageFailure
from connectors.auroraboot import AuroraBootInstaller
from connectors.packer import VARS_FILE, PackerTemplateBuilder
from connectors.registry_interface import ArtifactRegistry
from connectors.terraform import PLAN_FILE, TerraformProvisioner, extract_addresses
from connectors.tooling import CommandRunner, ToolInvocation, run_command
from orchestrator.artifacts import LATEST, ArtifactFetcher, DownloadOutcome
from orchestrator.config import Configuration
from orchestrator.models import (
    Command,
    PipelineRun,
    RunStatus,
    Stage,
    StageName,
    StageResult,
    StageStatus,
)
from orchestrator.readiness import probe_tcp, wait_for_address
from orchestrator.stage_runner import StageRunner

logger = logging.getLogger(__name__)

COMMAND_STAGES: dict[Command, tuple[StageName, ...]] = {
    Command.FULL_DEPLOY: (
        StageName.TEMPLATE_BUILD,
        StageName.ARTIFACT_FETCH,
        StageName.INFRA_PROVISION,
        StageName.OS_INSTALL,
    ),
    Command.TEMPLATE_ONLY: (StageName.TEMPLATE_BUILD,),
    Command.VM_ONLY: (StageName.INFRA_PROVISION,),
    Command.KAIROS_ONLY: (StageName.OS_INSTALL,),
    Command.CLEANUP: (StageName.CLEANUP,),
    Command.STATUS: (),
}

TEMPLATE_NAME = "kairos-base-template"


@dataclass
class RunContext:
    """Values handed from one stage to the next within a single run."""

    version: str | None = None
    address: str | None = None
    address_confirmed: bool = False
    warnings: list[DeployWarning] = field(default_factory=list)


def stages_for(command: Command) -> tuple[StageName, ...]:
    return COMMAND_STAGES[command]


def active_stages(command: Command, config: Configuration) -> list[StageName]:
    """Stages of ``command`` that will not be skipped by configuration."""
    return [name for name in stages_for(command) if not skip_predicate(name)(config)]


def skip_predicate(name: StageName) -> Callable[[Configuration], bool]:
    match name:
        case StageName.TEMPLATE_BUILD:
            return lambda config: config.skip_template
        case StageName.ARTIFACT_FETCH:
            return lambda config: config.skip_fetch
        case StageName.INFRA_PROVISION | StageName.OS_INSTALL | StageName.CLEANUP:
            return lambda config: False
        case _:
            assert_never(name)


class PipelineOrchestrator:
    """
    Compose the adapters into the named commands.

    Args:
        config: the run's Configuration.
        registry_factory: builds the artifact registry client on first use.
        runner: executes external tools; run_command by default.
        probe: network readiness check used by the settle wait.
        sleep: sleep used between readiness polls.
        cleanup: best-effort callback invoked once after the first failure.
            Defaults to removing this run's temporary files.
    """

    def __init__(
        self,
        config: Configuration,
        registry_factory: Callable[[], ArtifactRegistry],
        runner: CommandRunner = run_command,
        probe: Callable[[str], bool] | None = None,
        sleep: Callable[[float], None] | None = None,
        cleanup: Callable[[PipelineRun], None] | None = None,
        echo: Callable[[str], None] = print_and_log,
    ):
        self.config = config
        self.registry_factory = registry_factory
        self.runner = runner
        self.probe = probe or (lambda address: probe_tcp(address, config.ssh_port))
        self.sleep = sleep
        self.cleanup_callback = cleanup or self.remove_temporary_files
        self.echo = echo
        self.stage_runner = StageRunner(config, echo=echo)
        self.context = RunContext()
        self._fetcher: ArtifactFetcher | None = None

    # ------------------------------------------------------------------
    # adapters

    @property
    def fetcher(self) -> ArtifactFetcher:
        if self._fetcher is None:
            self._fetcher = ArtifactFetcher(self.registry_factory(), self.config.images_dir)
        return self._fetcher

    def template_builder(self) -> PackerTemplateBuilder:
        c = self.config
        return PackerTemplateBuilder(
            c.packer_dir,
            c.packer_template,
            variables={
                "proxmox_api_url": c.proxmox_api_url,
                "proxmox_api_token_id": c.token_id,
                "proxmox_node": c.proxmox_node,
                "vm_name": TEMPLATE_NAME,
            },
            extra_var_file=c.packer_vars,
            secret_env={"PKR_VAR_proxmox_api_token_secret": c.token_secret},
            runner=self.runner,
        )

    def provisioner(self) -> TerraformProvisioner:
        c = self.config
        return TerraformProvisioner(
            c.terraform_dir,
            var_file=c.tf_vars,
            generated_vars={
                "vm_name": c.vm_name,
                "github_repo": c.github_repo,
                "kairos_version": c.kairos_version,
                "proxmox_node": c.proxmox_node,
                "proxmox_api_url": c.proxmox_api_url,
                "proxmox_api_token_id": c.token_id,
            },
            secret_env={"TF_VAR_proxmox_api_token_secret": c.token_secret},
            runner=self.runner,
            on_output=self.echo,
        )

    def installer(self) -> AuroraBootInstaller:
        c = self.config
        version = self.context.version or c.kairos_version
        # "latest" goes through the on-disk pointer, never the registry.
        version_dir = c.images_dir / (LATEST if version == LATEST else version)
        return AuroraBootInstaller(
            version_dir,
            version,
            c.deployment_method,
            c.cloud_config,
            c.vm_name,
            auroraboot_version=c.auroraboot_version,
            runner=self.runner,
        )

    # ------------------------------------------------------------------
    # stages

    def build_stages(self, command: Command) -> list[Stage]:
        return [self.build_stage(name) for name in stages_for(command)]

    def build_stage(self, name: StageName) -> Stage:
        match name:
            case StageName.TEMPLATE_BUILD:
                return Stage(name, self._template_build, lambda: self.template_builder().invocations(), skip_predicate(name))
            case StageName.ARTIFACT_FETCH:
                return Stage(name, self._artifact_fetch, self._describe_fetch, skip_predicate(name))
            case StageName.INFRA_PROVISION:
                return Stage(name, self._infra_provision, lambda: self.provisioner().invocations(), skip_predicate(name))
            case StageName.OS_INSTALL:
                return Stage(name, self._os_install, lambda: self.installer().describe(self.context.address), skip_predicate(name))
            case StageName.CLEANUP:
                return Stage(name, self._cleanup_resources, self._describe_cleanup, skip_predicate(name))
            case _:
                assert_never(name)

    def _template_build(self) -> str:
        print_and_log("Building Packer template for Kairos base...")
        result = self.template_builder().build()
        print_success("Packer template built successfully")
        return f"manifest: {result.manifest_path}" if result.manifest_path else "manifest: not available"

    def _artifact_fetch(self) -> str:
        c = self.config
        print_and_log(f"Fetching Kairos images for version {c.kairos_version}...")
        report = self.fetcher.fetch(c.kairos_version, c.asset_types, force=c.force)
        self.context.version = report.release.tag
        for warning in report.warnings:
            self.context.warnings.append(warning)
            print_warning(warning.message)
        downloaded = report.count(DownloadOutcome.DOWNLOADED)
        skipped = report.count(DownloadOutcome.SKIPPED_EXISTS)
        print_success(f"Kairos images for {report.release.tag}: {downloaded} downloaded, {skipped} skipped")
        return f"{report.release.tag}: {downloaded} downloaded, {skipped} skipped"

    def _describe_fetch(self) -> list[ToolInvocation]:
        c = self.config
        argv = ["fetch-release", "--repo", c.github_repo, "--version", c.kairos_version,
                "--types", ",".join(t.value for t in c.asset_types), "--dir", str(c.images_dir)]
        if c.force:
            argv.append("--force")
        return [ToolInvocation(tuple(argv), description="Artifact fetch")]

    def _infra_provision(self) -> str:
        print_and_log("Deploying VM with Terraform...")
        outputs = self.provisioner().provision()
        print_success("VM deployed successfully with Terraform")
        return f"{len(outputs)} outputs exported"

    def _os_install(self) -> str:
        print_and_log("Deploying Kairos with AuroraBoot...")
        self.installer().install(self.context.address)
        print_success("Kairos deployed successfully with AuroraBoot")
        return f"installed on {self.context.address or 'unknown address'}"

    def _cleanup_resources(self) -> str:
        print_and_log("Cleaning up resources...")
        destroyed = self.provisioner().destroy()
        removed = self.fetcher.cleanup(self.config.keep_releases)
        print_success("Cleanup completed")
        parts = ["terraform resources destroyed" if destroyed else "no terraform state"]
        parts.append(f"removed releases: {', '.join(removed)}" if removed else "no old releases")
        return "; ".join(parts)

    def _describe_cleanup(self) -> list[ToolInvocation]:
        provisioner = self.provisioner()
        invocations = provisioner.destroy_invocations() if provisioner.has_state() else []
        for name in self.fetcher.cleanup_plan(self.config.keep_releases):
            invocations.append(ToolInvocation(("rm", "-rf", str(self.config.images_dir / name)), description="Prune release"))
        return invocations

    # ------------------------------------------------------------------
    # settle wait

    def _prepare_address(self, run: PipelineRun) -> None:
        """Resolve the installer's target address before OSInstall starts."""
        provisioner = self.provisioner()
        provisioned = run.result_for(StageName.INFRA_PROVISION)
        if provisioned is None or provisioned.status is not StageStatus.SUCCEEDED:
            known = extract_addresses(provisioner.read_outputs())
            self.context.address = known[0] if known else None
            return

        print_and_log(f"Waiting for VM to be ready (up to {self.config.settle_timeout:.0f}s)...")
        kwargs = {"sleep": self.sleep} if self.sleep is not None else {}
        result = wait_for_address(
            provisioner.address_candidates,
            self.probe,
            timeout=self.config.settle_timeout,
            initial_delay=self.config.settle_initial_delay,
            max_delay=self.config.settle_max_delay,
            **kwargs,
        )
        self.context.address = result.address
        self.context.address_confirmed = result.confirmed
        if result.warning is not None:
            self.context.warnings.append(result.warning)
            print_warning(result.warning.message)

    # ------------------------------------------------------------------
    # run

    def run(self, command: Command) -> PipelineRun:
        run = PipelineRun(command=command, log_path=str(self.config.log_file or default_logfile()))
        self.context = RunContext()
        stages = self.build_stages(command)
        logger.info(f"Pipeline {command} starting with stages: {', '.join(s.name for s in stages)}")

        for stage in stages:
            if stage.should_skip(self.config):
                print_and_log(f"Skipping {stage.name}")
                run.skipped.append(stage.name)
                continue
            if stage.name is StageName.OS_INSTALL:
                self._prepare_address(run)
            try:
                result = self.stage_runner.run(stage)
            except StageFailure as failure:
                result = failure.result or (
                    StageResult(name=stage.name)
                    .transition(StageStatus.RUNNING)
                    .transition(StageStatus.FAILED, failure.underlying_message)
                )
                run.append(result)
                run.status = RunStatus.FAILED
                run.failure_message = failure.underlying_message
                run.failure_returncode = failure.returncode
                self._run_cleanup(run)
                return run
            run.append(result)

        run.status = RunStatus.DRY_RUN_ONLY if self.config.dry_run else RunStatus.SUCCEEDED
        return run

    def _run_cleanup(self, run: PipelineRun) -> None:
        run.cleanup_attempts += 1
        logger.info("Performing cleanup...")
        try:
            self.cleanup_callback(run)
        except (DeployError, OSError) as e:
            error = CleanupError(f"Cleanup failed: {e}")
            print_warning(error.message)

    def remove_temporary_files(self, run: PipelineRun) -> None:
        """Default cleanup: drop the plan file and the rendered packer variables."""
        paths = [self.config.terraform_dir / PLAN_FILE, self.config.packer_dir / VARS_FILE]
        for path in paths:
            if not path.exists():
                continue
            if self.config.dry_run:
                self.echo(f"DRY RUN - Would remove {path}")
                continue
            logger.info(f"Removing {path}")
            path.unlink(missing_ok=True)


__all__ = ["COMMAND_STAGES", "PipelineOrchestrator", "RunContext", "active_stages", "stages_for"]
