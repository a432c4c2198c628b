"""
terraform.py
------------
Infrastructure provisioner adapter: init -> plan -> apply with Terraform, then
export ``terraform output -json`` to vm_output.json for later stages and for
the status report.
"""

from __future__ import annotations

import ipaddress
import json
import logging
from pathlib import Path
from typing import Any, Callable, Mapping

from common.errors import ToolError
from connectors.tooling import CommandRunner, ToolInvocation, run_command

logger = logging.getLogger(__name__)

PLAN_FILE = "tfplan"
OUTPUT_FILE = "vm_output.json"
STATE_FILE = "terraform.tfstate"
GENERATED_VARS_FILE = "orchestrator.auto.tfvars.json"
TEMP_FILES = (PLAN_FILE, OUTPUT_FILE, "current_state.json")

# Output names that may carry the VM address, most specific first.
ADDRESS_KEYS = (
    "vm_ip",
    "vm_ip_address",
    "ip_address",
    "default_ipv4_address",
    "ipv4_address",
    "ipv4_addresses",
    "vm_ips",
)


class TerraformProvisioner:
    """
    Provision the VM from the template.

    Args:
        terraform_dir: Terraform working directory.
        var_file: user supplied variables file. When None, ``generated_vars``
            is rendered to orchestrator.auto.tfvars.json and used instead.
        secret_env: TF_VAR_* variables handed to terraform through its
            environment so secrets never land in a file or on screen.
        on_output: receives the plan text before apply runs.
    """

    def __init__(
        self,
        terraform_dir: Path,
        var_file: Path | None = None,
        generated_vars: Mapping[str, Any] | None = None,
        secret_env: Mapping[str, str] | None = None,
        runner: CommandRunner = run_command,
        on_output: Callable[[str], None] = logger.info,
    ):
        self.secret_env = dict(secret_env or {})
        self.terraform_dir = Path(terraform_dir)
        self.var_file = var_file
        self.generated_vars = dict(generated_vars or {})
        self.runner = runner
        self.on_output = on_output

    @property
    def var_file_path(self) -> Path:
        if self.var_file is not None:
            return Path(self.var_file).absolute()
        return self.terraform_dir.absolute() / GENERATED_VARS_FILE

    @property
    def output_path(self) -> Path:
        return self.terraform_dir / OUTPUT_FILE

    def _inv(self, *argv: str, description: str = "") -> ToolInvocation:
        return ToolInvocation(("terraform", *argv), cwd=self.terraform_dir, description=description, env=self.secret_env)

    def invocations(self) -> list[ToolInvocation]:
        return [
            self._inv("init", "-input=false", description="Terraform init"),
            self._inv("plan", "-input=false", f"-var-file={self.var_file_path}", f"-out={PLAN_FILE}", description="Terraform plan"),
            self._inv("apply", "-input=false", "-auto-approve", PLAN_FILE, description="Terraform apply"),
            self._inv("output", "-json", description="Terraform output"),
        ]

    def destroy_invocations(self) -> list[ToolInvocation]:
        # *.auto.tfvars.json is loaded by terraform itself; only a user file needs passing.
        argv = ["destroy", "-input=false", "-auto-approve"]
        if self.var_file is not None:
            argv.append(f"-var-file={self.var_file_path}")
        return [self._inv(*argv, description="Terraform destroy")]

    def render_vars(self) -> Path | None:
        if self.var_file is not None:
            if not Path(self.var_file).is_file():
                raise ToolError(f"Terraform variables file not found: {self.var_file}")
            return None
        logger.info(f"Creating Terraform variables file {self.var_file_path}")
        self.var_file_path.write_text(json.dumps(self.generated_vars, indent=2))
        return self.var_file_path

    def provision(self) -> dict[str, Any]:
        """Run init, plan and apply. Returns the exported outputs."""
        init, plan, apply, output = self.invocations()
        self.render_vars()
        self.runner(init)
        try:
            planned = self.runner(plan, capture=True)
        except ToolError as e:
            if e.output:
                self.on_output(e.output)
            raise
        if planned.stdout:
            self.on_output(planned.stdout)
        self.runner(apply)
        return self.export_outputs(output)

    def export_outputs(self, invocation: ToolInvocation | None = None) -> dict[str, Any]:
        """Run ``terraform output -json`` and persist it to vm_output.json."""
        invocation = invocation or self.invocations()[-1]
        result = self.runner(invocation, capture=True)
        try:
            outputs = json.loads(result.stdout or "{}")
        except json.JSONDecodeError as e:
            raise ToolError(f"terraform output returned invalid JSON: {e}", invocation=invocation) from e
        self.output_path.write_text(json.dumps(outputs, indent=2))
        logger.info(f"VM deployment details saved to: {self.output_path}")
        return outputs

    def read_outputs(self) -> dict[str, Any]:
        """Last exported outputs, or {} when none were exported."""
        try:
            return json.loads(self.output_path.read_text())
        except (OSError, json.JSONDecodeError):
            return {}

    def address_candidates(self) -> list[str]:
        """Refresh outputs and return the address candidates they hold."""
        return extract_addresses(self.export_outputs())

    def has_state(self) -> bool:
        return (self.terraform_dir / STATE_FILE).is_file()

    def destroy(self) -> bool:
        """Destroy provisioned resources if state exists and remove temp files.

        Returns True when a destroy was run.
        """
        ran = False
        if self.has_state():
            logger.info("Destroying Terraform resources...")
            for invocation in self.destroy_invocations():
                self.runner(invocation)
            ran = True
        for name in TEMP_FILES:
            (self.terraform_dir / name).unlink(missing_ok=True)
        return ran


def output_value(outputs: Mapping[str, Any], *keys: str) -> Any:
    """First non-empty, non-sensitive output value among ``keys``."""
    for key in keys:
        entry = outputs.get(key)
        if entry is None:
            continue
        if isinstance(entry, Mapping) and "value" in entry:
            if entry.get("sensitive"):
                continue
            value = entry["value"]
        else:
            value = entry
        if value not in (None, "", [], {}):
            return value
    return None


def extract_addresses(outputs: Mapping[str, Any]) -> list[str]:
    """Flatten every address-like output into a de-duplicated list, loopback removed."""
    found: list[str] = []
    for key in ADDRESS_KEYS:
        for address in _flatten(output_value(outputs, key)):
            if address and address not in found and not _is_local(address):
                found.append(address)
    return found


def _flatten(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value.strip()]
    if isinstance(value, Mapping):
        return [a for v in value.values() for a in _flatten(v)]
    if isinstance(value, (list, tuple)):
        return [a for v in value for a in _flatten(v)]
    return [str(value)]


def _is_local(address: str) -> bool:
    try:
        ip = ipaddress.ip_address(address.split("/")[0])
    except ValueError:
        return False
    return ip.is_loopback or ip.is_link_local


__all__ = ["TerraformProvisioner", "extract_addresses", "output_value"]
