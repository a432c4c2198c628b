import pytest

from orchestrator.models import AssetType, Command, PipelineRun, StageName, StageResult, StageStatus


def test_stage_result_moves_forward():
    result = StageResult(name=StageName.TEMPLATE_BUILD)
    assert result.status is StageStatus.PENDING
    result.transition(StageStatus.RUNNING)
    assert result.started_at is not None
    result.transition(StageStatus.SUCCEEDED, "manifest: not available")
    assert result.status is StageStatus.SUCCEEDED
    assert result.ended_at >= result.started_at
    assert result.elapsed >= 0


def test_pending_can_be_skipped_directly():
    result = StageResult(name=StageName.ARTIFACT_FETCH).transition(StageStatus.SKIPPED, "skipped")
    assert result.status is StageStatus.SKIPPED
    assert result.elapsed == 0


@pytest.mark.parametrize("terminal", [StageStatus.SUCCEEDED, StageStatus.FAILED, StageStatus.SKIPPED])
def test_terminal_status_never_regresses(terminal):
    result = StageResult(name=StageName.OS_INSTALL).transition(StageStatus.RUNNING).transition(terminal)
    for target in StageStatus:
        with pytest.raises(ValueError):
            result.transition(target)


def test_pending_cannot_jump_to_succeeded():
    with pytest.raises(ValueError):
        StageResult(name=StageName.INFRA_PROVISION).transition(StageStatus.SUCCEEDED)


def test_run_refuses_result_while_previous_is_running():
    run = PipelineRun(command=Command.FULL_DEPLOY)
    run.append(StageResult(name=StageName.TEMPLATE_BUILD).transition(StageStatus.RUNNING))
    with pytest.raises(ValueError):
        run.append(StageResult(name=StageName.ARTIFACT_FETCH))


def test_failed_result_lookup():
    run = PipelineRun(command=Command.VM_ONLY)
    run.append(StageResult(name=StageName.INFRA_PROVISION).transition(StageStatus.RUNNING).transition(StageStatus.FAILED))
    assert run.failed_result.name is StageName.INFRA_PROVISION
    assert run.result_for(StageName.OS_INSTALL) is None


def test_asset_type_parsing():
    assert AssetType.parse_list("iso, RAW") == [AssetType.ISO, AssetType.RAW]
    assert AssetType.QCOW2.suffix == ".qcow2"
    with pytest.raises(ValueError):
        AssetType.parse_list("vhd")
