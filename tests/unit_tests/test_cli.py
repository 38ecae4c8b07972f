from unittest import mock

import pytest
from click.testing import CliRunner

from backend_ops.backup.manager import BackupManager
from backend_ops.cli import cli
from backend_ops.exceptions import ArtifactNotFound, ChannelUnreachable, LockHeld
from backend_ops.migration.orchestrator import MigrationJob, MigrationStatus
from backend_ops.release.manager import Deployment, DeploymentStatus, ReleaseResult, ReleaseState


@pytest.fixture
def runner():
    return CliRunner()


def _invoke(runner, settings, *args):
    return runner.invoke(cli, list(args), obj={"settings": settings})


def _release_result(status, final_state, error=None):
    deployment = Deployment(deployment_id="abc123", host="10.0.0.5", artifact_ref="backend-latest.tar.gz",
                            artifact_id="backend-latest-20240101", status=status)
    return ReleaseResult(deployment=deployment, final_state=final_state, error=error)


def test_show_config(runner, settings):
    result = _invoke(runner, settings, "show-config")

    assert result.exit_code == 0
    assert settings.live_path in result.output
    assert "keep 5" in result.output


@pytest.mark.parametrize("release_result, expected_exit", [
    (_release_result(DeploymentStatus.ACTIVE, ReleaseState.ACTIVE), 0),
    (_release_result(DeploymentStatus.ROLLED_BACK, ReleaseState.ROLLING_BACK), 1),
    (_release_result(DeploymentStatus.FAILED, ReleaseState.FETCHING, ArtifactNotFound("missing")), 2),
])
def test_release_deploy_exit_codes(runner, settings, release_result, expected_exit):
    with mock.patch("backend_ops.cli.ReleaseManager") as manager_cls:
        manager_cls.return_value.deploy.return_value = release_result
        result = _invoke(runner, settings, "release", "deploy", "10.0.0.5", "s3://bucket/backend.tar.gz")

    assert result.exit_code == expected_exit
    manager_cls.return_value.deploy.assert_called_once_with("s3://bucket/backend.tar.gz")


def test_release_deploy_lock_held(runner, settings):
    with mock.patch("backend_ops.cli.ReleaseManager") as manager_cls:
        manager_cls.return_value.deploy.side_effect = LockHeld("release__10.0.0.5", "pid 42 on ops-box")
        result = _invoke(runner, settings, "release", "deploy", "10.0.0.5")

    assert result.exit_code == 2
    assert "pid 42" in result.output


def test_release_deploy_lock_host_unreachable(runner, settings):
    with mock.patch("backend_ops.cli.ReleaseManager") as manager_cls:
        manager_cls.return_value.deploy.side_effect = ChannelUnreachable("Connection refused", host="10.0.0.5")
        result = _invoke(runner, settings, "release", "deploy", "10.0.0.5")

    assert result.exit_code == 2
    assert "Connection refused" in result.output
    assert not isinstance(result.exception, ChannelUnreachable)


def test_release_backups_lists_archives(runner, settings, channel, local_host):
    live = settings.live_path
    channel.exec(local_host, f"mkdir -p {live} && echo v1 > {live}/VERSION")
    backup = BackupManager(channel, local_host, settings).snapshot_directory("backend-api", live)

    result = _invoke(runner, settings, "release", "backups", "localhost")

    assert result.exit_code == 0
    assert backup.backup_id in result.output


def test_release_backup_and_restore_commands(runner, settings, channel, local_host):
    live = settings.live_path
    channel.exec(local_host, f"mkdir -p {live} && echo v1 > {live}/VERSION")

    with mock.patch("backend_ops.release.manager.HealthProber") as prober_cls:
        prober_cls.return_value.probe_with_policy.return_value.passed = True
        created = _invoke(runner, settings, "release", "backup", "localhost")
        assert created.exit_code == 0
        backup_id = created.output.strip().split()[-1]

        restored = _invoke(runner, settings, "release", "restore", "localhost", backup_id)

    assert restored.exit_code == 0
    assert "Restored" in restored.output

    missing = _invoke(runner, settings, "release", "restore", "localhost", "backend-api_20000101_000000_000000")
    assert missing.exit_code == 1


@pytest.mark.parametrize("status, expected_exit", [
    (MigrationStatus.COMPLETE, 0),
    (MigrationStatus.FAILED, 1),
])
def test_migrate_run_exit_codes(runner, settings, status, expected_exit):
    job = MigrationJob(job_id="j1", source="a", target="b", database="reviews", status=status)
    with mock.patch("backend_ops.cli.MigrationOrchestrator") as orchestrator_cls:
        orchestrator_cls.return_value.run.return_value = job
        result = _invoke(runner, settings, "migrate", "run", "a", "b", "reviews", "--strict-verify")

    assert result.exit_code == expected_exit
    orchestrator_cls.return_value.run.assert_called_once_with("a", "b", "reviews", strict_verify=True)
