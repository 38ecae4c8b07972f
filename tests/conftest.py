import pytest
from moto import mock_aws

from backend_ops.config.settings import Settings
from backend_ops.remote.channel import LocalChannel, RemoteHost
from tests.consts import TEST_ARTIFACT_BUCKET, TEST_REGION


@pytest.fixture
def aws_credentials(monkeypatch):
    """Mocked AWS Credentials for moto."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", TEST_REGION)


@pytest.fixture
def mocked_aws(aws_credentials):
    with mock_aws():
        yield


@pytest.fixture
def running_marker(tmp_path):
    """File the fake process manager writes the running VERSION into."""
    return tmp_path / "running"


@pytest.fixture
def settings(tmp_path, running_marker):
    """Settings pointing every host path into tmp_path; pm2 replaced by marker-file commands."""
    return Settings(
        _env_file=None,
        aws_region=TEST_REGION,
        artifact_bucket=TEST_ARTIFACT_BUCKET,
        app_root=str(tmp_path / "app"),
        backup_dir=str(tmp_path / "backups"),
        db_backup_dir=str(tmp_path / "backups" / "mongodb"),
        lock_dir=str(tmp_path / "locks"),
        migration_local_dir=str(tmp_path / "migration" / "local"),
        migration_source_dir=str(tmp_path / "migration" / "source"),
        migration_remote_dir=str(tmp_path / "migration" / "target"),
        build_commands=["echo built > BUILD_OK"],
        stop_command=f"rm -f {running_marker}",
        start_command=f"cat VERSION > {running_marker}",
        command_timeout=30,
        transfer_retry_delay=0,
        health_initial_delay=0,
    )


@pytest.fixture
def local_host():
    return RemoteHost("localhost")


@pytest.fixture
def channel(settings):
    return LocalChannel(settings)
