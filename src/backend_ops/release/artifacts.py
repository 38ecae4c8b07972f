"""
Artifact store.

Resolves an artifact reference to a local file ready to be copied to the host.
References may be ``s3://bucket/key``, a bare key in the configured artifact
bucket, or a path to a local bundle.
"""

import hashlib
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional, Tuple

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ..config.settings import Settings, get_settings
from ..exceptions import ArtifactNotFound

try:
    from mypy_boto3_s3 import S3Client
except ImportError:
    ...

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Artifact:
    """An immutable deployable bundle fetched to a local path."""
    artifact_id: str
    ref: str
    local_path: Path
    size: int
    fetched_at: datetime


def parse_s3_ref(ref: str) -> Tuple[str, str]:
    """Split ``s3://bucket/key`` into (bucket, key)."""
    without_scheme = ref[len("s3://"):]
    bucket, _, key = without_scheme.partition("/")
    if not bucket or not key:
        raise ArtifactNotFound(f"Invalid S3 reference: {ref}")
    return bucket, key


def _stem(name: str) -> str:
    base = os.path.basename(name)
    for suffix in (".tar.gz", ".tgz", ".tar"):
        if base.endswith(suffix):
            return base[:-len(suffix)]
    return base


class ArtifactStore:
    """Fetch backend bundles from S3 or the local filesystem."""

    def __init__(self, settings: Optional[Settings] = None, s3_client: Optional["S3Client"] = None):
        self.settings = settings or get_settings()
        self._s3_client = s3_client

    @property
    def s3(self) -> "S3Client":
        if self._s3_client is None:
            client_kwargs = {"region_name": self.settings.aws_region}
            if self.settings.aws_endpoint_url:
                client_kwargs["endpoint_url"] = self.settings.aws_endpoint_url
            self._s3_client = boto3.client("s3", **client_kwargs)
        return self._s3_client

    def resolve(self, ref: Optional[str]) -> Tuple[Optional[str], str]:
        """Return (bucket, key) for S3 references or (None, path) for local files."""
        if ref is None:
            ref = self.settings.artifact_key
        if ref.startswith("s3://"):
            return parse_s3_ref(ref)
        if os.path.isfile(ref):
            return None, ref
        if not self.settings.artifact_bucket:
            raise ArtifactNotFound(
                f"Artifact '{ref}' is not a local file and no artifact bucket is configured"
            )
        return self.settings.artifact_bucket, ref.lstrip("/")

    def fetch(self, ref: Optional[str], dest_dir: Path) -> Artifact:
        """Fetch the artifact into ``dest_dir``; raises ArtifactNotFound."""
        bucket, key = self.resolve(ref)
        dest_dir = Path(dest_dir)
        dest_dir.mkdir(parents=True, exist_ok=True)
        if bucket is None:
            return self._fetch_local(key, dest_dir)
        return self._fetch_s3(bucket, key, dest_dir)

    def _fetch_local(self, path: str, dest_dir: Path) -> Artifact:
        source = Path(path)
        digest = hashlib.sha256()
        with open(source, "rb") as f:
            for chunk in iter(lambda: f.read(1024 * 1024), b""):
                digest.update(chunk)
        destination = dest_dir / source.name
        if source.resolve() != destination.resolve():
            destination.write_bytes(source.read_bytes())
        artifact_id = f"{_stem(source.name)}-{digest.hexdigest()[:12]}"
        logger.info(f"Using local artifact {source} ({artifact_id})")
        return Artifact(
            artifact_id=artifact_id,
            ref=str(source),
            local_path=destination,
            size=destination.stat().st_size,
            fetched_at=datetime.now(),
        )

    def _fetch_s3(self, bucket: str, key: str, dest_dir: Path) -> Artifact:
        ref = f"s3://{bucket}/{key}"
        logger.info(f"Downloading deployment artifact from {ref}...")
        try:
            head = self.s3.head_object(Bucket=bucket, Key=key)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in ("404", "NoSuchKey", "NotFound", "NoSuchBucket"):
                raise ArtifactNotFound(f"Artifact not found: {ref}") from e
            raise ArtifactNotFound(f"Cannot read artifact {ref}: {code}") from e
        except BotoCoreError as e:
            raise ArtifactNotFound(f"Cannot reach artifact store for {ref}: {e}") from e

        destination = dest_dir / os.path.basename(key)
        try:
            self.s3.download_file(bucket, key, str(destination))
        except (ClientError, BotoCoreError) as e:
            raise ArtifactNotFound(f"Download of {ref} failed: {e}") from e

        etag = head.get("ETag", "").strip('"')
        modified = head.get("LastModified")
        stamp = modified.strftime("%Y%m%d%H%M%S") if modified else datetime.now().strftime("%Y%m%d%H%M%S")
        artifact_id = f"{_stem(key)}-{stamp}-{etag[:8]}"
        logger.info(f"✅ Artifact downloaded: {artifact_id} ({head.get('ContentLength', 0)} bytes)")
        return Artifact(
            artifact_id=artifact_id,
            ref=ref,
            local_path=destination,
            size=destination.stat().st_size,
            fetched_at=datetime.now(),
        )
