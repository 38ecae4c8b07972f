from datetime import datetime
from unittest import mock

import boto3
import pytest
from botocore.exceptions import ClientError

from backend_ops.exceptions import ArtifactNotFound
from backend_ops.release.artifacts import ArtifactStore, parse_s3_ref
from tests.consts import TEST_ARTIFACT_BUCKET, TEST_REGION
from tests.fixtures.ops_fixtures import make_artifact


@pytest.fixture
def artifact_bucket(mocked_aws, tmp_path):
    s3_client = boto3.client("s3", region_name=TEST_REGION)
    s3_client.create_bucket(Bucket=TEST_ARTIFACT_BUCKET)
    bundle = make_artifact(tmp_path / "bundle.tar.gz", "v7")
    s3_client.upload_file(bundle, TEST_ARTIFACT_BUCKET, "backend-latest.tar.gz")
    s3_client.upload_file(bundle, TEST_ARTIFACT_BUCKET, "releases/backend-v7.tar.gz")
    return s3_client


def test_fetch_default_key_from_bucket(settings, artifact_bucket, tmp_path):
    store = ArtifactStore(settings, s3_client=artifact_bucket)

    artifact = store.fetch(None, tmp_path / "download")

    assert artifact.ref == f"s3://{TEST_ARTIFACT_BUCKET}/backend-latest.tar.gz"
    assert artifact.local_path.exists()
    assert artifact.size == artifact.local_path.stat().st_size
    assert artifact.artifact_id.startswith("backend-latest-")


def test_fetch_explicit_s3_ref(settings, artifact_bucket, tmp_path):
    store = ArtifactStore(settings)

    artifact = store.fetch(f"s3://{TEST_ARTIFACT_BUCKET}/releases/backend-v7.tar.gz", tmp_path)

    assert artifact.local_path.name == "backend-v7.tar.gz"
    assert artifact.artifact_id.startswith("backend-v7-")


def test_missing_object_is_artifact_not_found(settings, artifact_bucket, tmp_path):
    store = ArtifactStore(settings, s3_client=artifact_bucket)
    with pytest.raises(ArtifactNotFound):
        store.fetch("releases/backend-v99.tar.gz", tmp_path)


def test_local_bundle(settings, tmp_path):
    bundle = make_artifact(tmp_path / "backend-local.tar.gz", "dev")
    store = ArtifactStore(settings)

    first = store.fetch(bundle, tmp_path / "a")
    second = store.fetch(bundle, tmp_path / "b")

    assert first.artifact_id == second.artifact_id
    assert first.artifact_id.startswith("backend-local-")
    assert first.local_path.read_bytes() == (tmp_path / "backend-local.tar.gz").read_bytes()


def test_bare_key_without_bucket(settings, tmp_path):
    settings.artifact_bucket = None
    with pytest.raises(ArtifactNotFound):
        ArtifactStore(settings).fetch("backend-latest.tar.gz", tmp_path)


def test_parse_s3_ref():
    assert parse_s3_ref("s3://bucket/path/to/key.tar.gz") == ("bucket", "path/to/key.tar.gz")
    with pytest.raises(ArtifactNotFound):
        parse_s3_ref("s3://bucket-only")


def test_failed_download_is_artifact_not_found(settings, tmp_path):
    s3_client = mock.Mock()
    s3_client.head_object.return_value = {"ETag": '"abc123"', "LastModified": datetime(2024, 1, 1)}
    s3_client.download_file.side_effect = ClientError(
        {"Error": {"Code": "403", "Message": "Forbidden"}}, "GetObject"
    )
    store = ArtifactStore(settings, s3_client=s3_client)

    with pytest.raises(ArtifactNotFound):
        store.fetch("backend-latest.tar.gz", tmp_path)
