import json
from pathlib import Path

import pytest

from common.errors import RegistryError, ToolError
from connectors.registry_interface import ReleaseInfo
from connectors.tooling import CommandOutput
from orchestrator.config import Configuration

TOKEN = "root@pam!deploy=5ecret-t0ken-value"


class FakeRegistry:
    """In-memory registry. Downloads write a few bytes into dest_dir."""

    def __init__(self, releases=None, latest="v1.3.0"):
        self.releases = releases if releases is not None else {
            "v1.2.0": ["kairos-v1.2.0.iso", "kairos-v1.2.0.raw"],
            "v1.3.0": ["kairos-v1.3.0.iso", "kairos-v1.3.0.raw", "kairos-v1.3.0.qcow2"],
        }
        self.latest = latest
        self.calls = []
        self.downloads = []
        self.fail_downloads = set()
        self.skip_write = set()
        self.unavailable = False

    def _info(self, tag):
        if self.unavailable:
            raise RegistryError("GitHub API /releases returned HTTP 503")
        if tag not in self.releases:
            raise RegistryError(f"GitHub API /releases/tags/{tag} returned HTTP 404")
        return ReleaseInfo(
            tag=tag,
            name=f"Kairos {tag}",
            published_at=f"2025-0{list(self.releases).index(tag) + 1}-01T10:00:00Z",
            is_latest=tag == self.latest,
            assets=[{"name": n, "size": 4, "url": f"https://example.test/{n}"} for n in self.releases[tag]],
        )

    def list_releases(self, limit=20):
        self.calls.append("list_releases")
        return [self._info(tag) for tag in list(self.releases)[:limit]]

    def latest_release(self):
        self.calls.append("latest_release")
        return self._info(self.latest)

    def get_release(self, tag):
        self.calls.append(f"get_release:{tag}")
        return self._info(tag)

    def download_asset(self, release, pattern, dest_dir):
        self.calls.append(f"download:{pattern}")
        if pattern in self.fail_downloads:
            raise RegistryError(f"Failed to download {pattern}: HTTP 500")
        target = Path(dest_dir) / pattern
        if pattern not in self.skip_write:
            target.write_bytes(b"data")
        self.downloads.append(pattern)
        return target

    def check_auth(self):
        self.calls.append("check_auth")


class FakeRunner:
    """Records invocations. Fails on the "<tool> <subcommand>" named in fail_on."""

    def __init__(self, outputs=None):
        self.invocations = []
        self.outputs = outputs if outputs is not None else {
            "vm_ip": {"value": "192.168.10.50", "sensitive": False, "type": "string"},
            "vm_name": {"value": "kairos-test", "sensitive": False, "type": "string"},
        }
        self.fail_on = None
        self.returncode = 1

    def __call__(self, invocation, capture=False):
        self.invocations.append(invocation)
        key = " ".join(invocation.argv[:2])
        if key == self.fail_on:
            raise ToolError(
                f"{invocation.argv[0]} exited with status {self.returncode}: boom",
                invocation=invocation,
                returncode=self.returncode,
                output="Error: boom",
            )
        if key == "terraform output":
            return CommandOutput(0, json.dumps(self.outputs))
        if key == "terraform plan":
            return CommandOutput(0, "Plan: 1 to add, 0 to change, 0 to destroy.")
        return CommandOutput(0)

    @property
    def commands(self):
        return [" ".join(i.argv[:2]) for i in self.invocations]


@pytest.fixture
def registry():
    return FakeRegistry()


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def workspace(tmp_path):
    (tmp_path / "terraform").mkdir()
    (tmp_path / "packer").mkdir()
    (tmp_path / "packer" / "kairos-base.pkr.hcl").write_text("source \"proxmox-iso\" \"kairos\" {}\n")
    (tmp_path / "auroraboot").mkdir()
    (tmp_path / "auroraboot" / "cloud-config.yaml").write_text("#cloud-config\nhostname: kairos-test\n")
    return tmp_path


@pytest.fixture
def make_config(workspace):
    def _make(**overrides):
        values = dict(
            proxmox_api_url="https://pve.example.test:8006/api2/json",
            proxmox_api_token=TOKEN,
            proxmox_node="pve1",
            vm_name="kairos-test",
            terraform_dir=workspace / "terraform",
            packer_dir=workspace / "packer",
            images_dir=workspace / "images",
            cloud_config=workspace / "auroraboot" / "cloud-config.yaml",
            log_file=workspace / "deploy.log",
            settle_timeout=5,
            settle_initial_delay=1,
            settle_max_delay=2,
        )
        values.update(overrides)
        return Configuration(_env_file=None, **values)

    return _make
