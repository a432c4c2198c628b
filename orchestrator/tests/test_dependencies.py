import pytest

from common.errors import DependencyError
from orchestrator.dependencies import DependencyChecker, required_tools
from orchestrator.models import StageName


class Probe:
    def __init__(self, ok=True):
        self.ok = ok
        self.calls = 0

    def check_auth(self):
        self.calls += 1
        if not self.ok:
            raise DependencyError("rejected")


def which_only(*available):
    return lambda tool: f"/usr/bin/{tool}" if tool in available else None


def test_required_tools_per_stage():
    assert required_tools([StageName.TEMPLATE_BUILD]) == ["packer"]
    assert required_tools([StageName.ARTIFACT_FETCH]) == []
    assert required_tools([StageName.INFRA_PROVISION, StageName.CLEANUP]) == ["terraform"]
    assert required_tools(
        [StageName.TEMPLATE_BUILD, StageName.ARTIFACT_FETCH, StageName.INFRA_PROVISION, StageName.OS_INSTALL]
    ) == ["packer", "terraform", "docker"]


def test_single_stage_checks_only_its_tool():
    checker = DependencyChecker(which=which_only("terraform"))
    assert checker.check([StageName.INFRA_PROVISION]).ok
    checker.ensure([StageName.INFRA_PROVISION])


def test_missing_tool_raises_with_list():
    checker = DependencyChecker(which=which_only("terraform"))
    with pytest.raises(DependencyError) as excinfo:
        checker.ensure([StageName.TEMPLATE_BUILD, StageName.INFRA_PROVISION, StageName.OS_INSTALL])
    assert excinfo.value.missing == ["packer", "docker"]
    assert "packer" in str(excinfo.value)


def test_credentials_probed_only_for_needed_stages():
    registry, proxmox = Probe(), Probe()
    checker = DependencyChecker(which=which_only(), registry=lambda: registry, proxmox=lambda: proxmox)
    checker.verify_credentials([StageName.ARTIFACT_FETCH])
    assert (registry.calls, proxmox.calls) == (1, 0)
    checker.verify_credentials([StageName.INFRA_PROVISION])
    assert (registry.calls, proxmox.calls) == (1, 1)


def test_rejected_credentials_raise():
    checker = DependencyChecker(registry=lambda: Probe(ok=False))
    with pytest.raises(DependencyError):
        checker.verify_credentials([StageName.ARTIFACT_FETCH])


def test_dry_run_skips_network_probes():
    registry, proxmox = Probe(ok=False), Probe(ok=False)
    checker = DependencyChecker(registry=lambda: registry, proxmox=lambda: proxmox)
    checker.verify_credentials([StageName.ARTIFACT_FETCH, StageName.INFRA_PROVISION], dry_run=True)
    assert registry.calls == proxmox.calls == 0
