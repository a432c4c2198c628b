import json

from rich.console import Console

from orchestrator.models import Command, PipelineRun, StageName, StageResult, StageStatus
from orchestrator.status import NOT_AVAILABLE, StatusReporter, summary_lines


def test_everything_missing_degrades_to_placeholder(make_config):
    summary = StatusReporter(make_config()).collect()
    assert summary.vm_name == NOT_AVAILABLE
    assert summary.vm_id == NOT_AVAILABLE
    assert summary.address_display == NOT_AVAILABLE
    assert summary.tags_display == NOT_AVAILABLE
    assert summary.release == NOT_AVAILABLE
    assert summary.terraform_state is False


def test_corrupt_output_file_degrades(make_config, workspace):
    (workspace / "terraform" / "vm_output.json").write_text("{not json")
    summary = StatusReporter(make_config()).collect()
    assert summary.vm_name == NOT_AVAILABLE


def test_summary_from_exported_outputs(make_config, workspace):
    outputs = {
        "vm_name": {"value": "kairos-test", "sensitive": False},
        "vm_id": {"value": 104, "sensitive": False},
        "vm_cores": {"value": 4, "sensitive": False},
        "vm_memory": {"value": 8192, "sensitive": False},
        "ipv4_addresses": {"value": [["127.0.0.1"], ["192.168.10.50", "fe80::1"]], "sensitive": False},
        "vm_tags": {"value": "kairos;terraform", "sensitive": False},
        "proxmox_api_token_secret": {"value": "hidden", "sensitive": True},
    }
    (workspace / "terraform" / "vm_output.json").write_text(json.dumps(outputs))
    (workspace / "terraform" / "terraform.tfstate").write_text("{}")

    summary = StatusReporter(make_config()).collect()
    assert summary.vm_name == "kairos-test"
    assert summary.vm_id == "104"
    assert summary.cpu == "4"
    assert summary.memory == "8192"
    assert summary.addresses == ["192.168.10.50"]
    assert summary.tags == ["kairos", "terraform"]
    assert summary.terraform_state is True


def test_release_from_marker(make_config, workspace):
    images = workspace / "images"
    images.mkdir()
    marker = {"tagName": "v1.3.0", "name": "Kairos v1.3.0", "publishedAt": "2025-02-01T10:00:00+00:00"}
    (images / "last-release.json").write_text(json.dumps(marker))
    summary = StatusReporter(make_config()).collect()
    assert summary.release == "v1.3.0"
    assert summary.release_published.startswith("2025-02-01")


def test_release_from_symlink_without_marker(make_config, workspace):
    images = workspace / "images"
    (images / "v1.2.0").mkdir(parents=True)
    (images / "latest").symlink_to("v1.2.0", target_is_directory=True)
    summary = StatusReporter(make_config()).collect()
    assert summary.release == "v1.2.0"
    assert summary.release_published == NOT_AVAILABLE


def test_render_with_run_table(make_config):
    run = PipelineRun(command=Command.FULL_DEPLOY, skipped=[StageName.TEMPLATE_BUILD])
    run.append(StageResult(name=StageName.ARTIFACT_FETCH).transition(StageStatus.RUNNING).transition(StageStatus.SUCCEEDED, "ok"))
    reporter = StatusReporter(make_config())
    console = Console(record=True, width=160)
    reporter.render(reporter.collect(run), console=console)
    text = console.export_text()
    assert "Deployment status" in text
    assert "ArtifactFetch" in text
    assert "TemplateBuild" in text
    assert NOT_AVAILABLE in text


def test_summary_lines(make_config):
    lines = summary_lines(StatusReporter(make_config()).collect())
    assert f"vm_name: {NOT_AVAILABLE}" in lines
