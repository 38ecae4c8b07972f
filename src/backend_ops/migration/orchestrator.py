"""
Migration Orchestrator

Moves one MongoDB database from a source host to a target host:

    Preflight -> Export -> Transfer -> Import -> Verify -> Cleanup

Cleanup always runs. Import replaces same-named collections on the target
(mongorestore --drop); a failure after Import started leaves the target
partially imported and the job has to be re-run.
"""

import logging
import os
import posixpath
import shlex
import shutil
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from ..config.settings import Settings, get_settings
from ..database.mongo_tools import DocumentStore, MongoShellStore
from ..exceptions import (
    BackendOpsError,
    ChannelError,
    ChannelTimeout,
    ChannelUnreachable,
    DatabaseNotFound,
    MigrationError,
    SourceUnavailable,
    VerificationFailed,
)
from ..remote.channel import LocalChannel, RemoteChannel, RemoteHost, get_channel
from ..state.lock import HostLock, lock_key
from ..utils.backoff import BackoffPolicy
from ..utils.decorators import log_execution_time, retry

logger = logging.getLogger(__name__)

ChannelFactory = Callable[[RemoteHost, Settings], RemoteChannel]


class MigrationStatus(Enum):
    PENDING = "pending"
    EXPORTING = "exporting"
    TRANSFERRING = "transferring"
    IMPORTING = "importing"
    VERIFYING = "verifying"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass
class VerifyReport:
    """Per-collection comparison of exported and imported document counts."""
    database: str
    expected: Dict[str, int]
    actual: Dict[str, int]
    mismatches: Dict[str, Tuple[int, int]] = field(default_factory=dict)
    missing: List[str] = field(default_factory=list)
    unexpected: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.mismatches and not self.missing

    def warnings(self) -> List[str]:
        lines = [
            f"Collection '{name}' count mismatch: exported {expected}, imported {actual}"
            for name, (expected, actual) in sorted(self.mismatches.items())
        ]
        lines += [f"Collection '{name}' is missing on the target" for name in self.missing]
        lines += [f"Collection '{name}' exists on the target but was not exported" for name in self.unexpected]
        return lines

    def summary(self) -> str:
        status = "✓ counts match" if self.ok else "✗ counts differ"
        return f"{status} for {self.database}: " + ", ".join(
            f"{name}={self.actual.get(name, 'missing')}" for name in sorted(self.expected)
        )


def compare_counts(database: str, expected: Dict[str, int], actual: Dict[str, int]) -> VerifyReport:
    report = VerifyReport(database=database, expected=dict(expected), actual=dict(actual))
    for name, count in expected.items():
        if name not in actual:
            report.missing.append(name)
        elif actual[name] != count:
            report.mismatches[name] = (count, actual[name])
    report.unexpected = sorted(set(actual) - set(expected))
    report.missing.sort()
    return report


@dataclass
class MigrationJob:
    job_id: str
    source: str
    target: str
    database: str
    status: MigrationStatus = MigrationStatus.PENDING
    export_counts: Dict[str, int] = field(default_factory=dict)
    archive_path: Optional[Path] = None
    report: Optional[VerifyReport] = None
    warnings: List[str] = field(default_factory=list)
    error: Optional[BackendOpsError] = None
    started_at: float = field(default_factory=time.time)
    completed_at: Optional[float] = None

    @property
    def succeeded(self) -> bool:
        return self.status is MigrationStatus.COMPLETE

    @property
    def exit_code(self) -> int:
        return 0 if self.succeeded else 1


class _Workspace:
    """Temporary paths of one job, removed in Cleanup."""

    def __init__(self, stamp: str, settings: Settings):
        self.stamp = stamp
        self.archive_name = f"mongodb_export_{stamp}.tar.gz"
        self.dump_name = f"dump_{stamp}"
        self.source_dir = settings.migration_source_dir
        self.remote_dir = settings.migration_remote_dir
        self.local_dir = os.path.join(settings.migration_local_dir, stamp)
        self.created: List[Tuple[Optional[RemoteHost], str]] = []

    def track(self, host: Optional[RemoteHost], path: str) -> str:
        self.created.append((host, path))
        return path


class MigrationOrchestrator:
    """Runs database migrations between hosts."""

    def __init__(self, settings: Optional[Settings] = None, store: Optional[DocumentStore] = None,
                 channel_factory: Optional[ChannelFactory] = None,
                 clock: Callable[[], datetime] = datetime.now):
        self.settings = settings or get_settings()
        self.store = store or MongoShellStore(self.settings)
        self._channel_factory = channel_factory or get_channel
        self._clock = clock
        # Migration leases live on the operator's machine
        self._lock_host = RemoteHost("localhost")
        self._lock_channel = LocalChannel(self.settings)

    def channel(self, host: RemoteHost) -> RemoteChannel:
        return self._channel_factory(host, self.settings)

    def _host(self, address) -> RemoteHost:
        if isinstance(address, RemoteHost):
            return address
        return RemoteHost.from_settings(address, self.settings)

    def _lock(self, *parts: str) -> HostLock:
        return HostLock(self._lock_channel, self._lock_host, lock_key(*parts), self.settings)

    def _workspace(self, job: MigrationJob) -> _Workspace:
        # Jobs started in the same second must not share temporary paths
        return _Workspace(f"{self._clock().strftime('%Y%m%d_%H%M%S')}_{job.job_id}", self.settings)

    def _stage(self, job: MigrationJob, status: MigrationStatus) -> None:
        job.status = status
        logger.info(f"[{job.job_id}] ▶ {status.value}")

    def _retrying(self, func: Callable):
        return retry(BackoffPolicy.for_transfer(self.settings),
                     exceptions=(ChannelUnreachable, ChannelTimeout), logger_name=__name__)(func)

    # ------------------------------------------------------------------
    # public operations
    # ------------------------------------------------------------------

    @log_execution_time
    def run(self, source, target, database: str, strict_verify: Optional[bool] = None) -> MigrationJob:
        """Migrate ``database`` from ``source`` to ``target``.

        Raises LockHeld if the same migration is already running. Stage
        failures are reported on the returned job.
        """
        source_host, target_host = self._host(source), self._host(target)
        strict = self.settings.strict_verify if strict_verify is None else strict_verify
        job = MigrationJob(job_id=uuid.uuid4().hex[:8], source=source_host.address,
                           target=target_host.address, database=database)
        logger.info(f"🚀 Migrating '{database}' from {source_host} to {target_host} (job {job.job_id})")

        with self._lock("migrate", source_host.address, target_host.address, database):
            workspace = self._workspace(job)
            try:
                self._preflight(job, source_host)
                local_archive = self._export(job, source_host, workspace)
                remote_archive = self._transfer(job, target_host, local_archive, workspace)
                self._import(job, target_host, remote_archive, workspace)
                self._verify(job, target_host, strict)
                job.status = MigrationStatus.COMPLETE
            except KeyboardInterrupt:
                self._fail(job, MigrationError(job.status.value, "interrupted by operator"))
                logger.error(f"Migration {job.job_id} interrupted, cleaning up; retry required")
                raise
            except BackendOpsError as e:
                self._fail(job, e)
            finally:
                self._cleanup(job, workspace)
                job.completed_at = time.time()

        if job.succeeded:
            suffix = f" with {len(job.warnings)} warning(s)" if job.warnings else ""
            logger.info(f"✅ Migration {job.job_id} complete{suffix}")
        return job

    def export_only(self, source, database: str) -> MigrationJob:
        """Export ``database`` on ``source`` and keep the archive in the local migration dir."""
        source_host = self._host(source)
        job = MigrationJob(job_id=uuid.uuid4().hex[:8], source=source_host.address,
                           target="local", database=database)

        with self._lock("export", source_host.address, database):
            workspace = self._workspace(job)
            try:
                self._preflight(job, source_host)
                self._export(job, source_host, workspace, keep_local=True)
                job.status = MigrationStatus.COMPLETE
            except BackendOpsError as e:
                self._fail(job, e)
            finally:
                self._cleanup(job, workspace)
                job.completed_at = time.time()

        if job.succeeded:
            logger.info(f"✅ Export saved to {job.archive_path}")
        return job

    def verify(self, target, database: str, expected: Optional[Dict[str, int]] = None) -> VerifyReport:
        """Report collection counts on ``target``, compared with ``expected`` when given."""
        target_host = self._host(target)
        if not self.store.database_exists(target_host, database):
            raise DatabaseNotFound(f"Database '{database}' not found on {target_host}")
        actual = self.store.collection_counts(target_host, database)
        report = compare_counts(database, expected if expected is not None else actual, actual)
        for warning in report.warnings():
            logger.warning(f"⚠️  {warning}")
        logger.info(report.summary())
        return report

    # ------------------------------------------------------------------
    # stages
    # ------------------------------------------------------------------

    def _fail(self, job: MigrationJob, error: BackendOpsError) -> None:
        failed_stage = job.status.value
        job.status = MigrationStatus.FAILED
        job.error = error
        if failed_stage in (MigrationStatus.IMPORTING.value, MigrationStatus.VERIFYING.value):
            logger.error(f"❌ Migration {job.job_id} failed during {failed_stage}: {error}. "
                         f"Target '{job.database}' on {job.target} may be partially imported, retry required")
        else:
            logger.error(f"❌ Migration {job.job_id} failed during {failed_stage}: {error}")

    def _preflight(self, job: MigrationJob, source: RemoteHost) -> None:
        logger.info(f"[{job.job_id}] ▶ preflight")
        if not self.store.ping(source):
            raise SourceUnavailable(f"MongoDB on {source} is not reachable")
        if not self.store.database_exists(source, job.database):
            raise DatabaseNotFound(f"Database '{job.database}' not found on {source}")
        logger.info(f"[{job.job_id}] preflight: source {source} reachable, database '{job.database}' present")

    def _export(self, job: MigrationJob, source: RemoteHost, workspace: _Workspace,
                keep_local: bool = False) -> Path:
        self._stage(job, MigrationStatus.EXPORTING)
        job.export_counts = self.store.collection_counts(source, job.database)
        if not job.export_counts:
            logger.warning(f"Database '{job.database}' on {source} has no collections")
        for name, count in sorted(job.export_counts.items()):
            logger.info(f"  {name}: {count} documents")

        channel = self.channel(source)
        dump_path = posixpath.join(workspace.source_dir, workspace.dump_name)
        source_archive = posixpath.join(workspace.source_dir, workspace.archive_name)
        channel.exec(source, f"mkdir -p {shlex.quote(workspace.source_dir)}")
        workspace.track(source, dump_path)
        workspace.track(source, source_archive)

        self.store.dump(source, job.database, dump_path)
        logger.info("Compressing export...")
        channel.exec(
            source,
            f"tar -czf {shlex.quote(source_archive)} -C {shlex.quote(workspace.source_dir)} "
            f"{shlex.quote(workspace.dump_name)}",
            timeout=self.settings.transfer_timeout,
        )

        os.makedirs(workspace.local_dir, exist_ok=True)
        if not keep_local:
            workspace.track(None, workspace.local_dir)
        local_archive = Path(workspace.local_dir) / workspace.archive_name
        self._retrying(channel.fetch)(source, source_archive, local_archive)
        job.archive_path = local_archive
        logger.info(f"[{job.job_id}] export: {local_archive}")
        return local_archive

    def _transfer(self, job: MigrationJob, target: RemoteHost, local_archive: Path,
                  workspace: _Workspace) -> str:
        self._stage(job, MigrationStatus.TRANSFERRING)
        channel = self.channel(target)
        remote_archive = posixpath.join(workspace.remote_dir, workspace.archive_name)
        channel.exec(target, f"mkdir -p {shlex.quote(workspace.remote_dir)}")
        workspace.track(target, remote_archive)
        self._retrying(channel.copy)(local_archive, target, remote_archive)
        logger.info(f"[{job.job_id}] transfer: {target}:{remote_archive}")
        return remote_archive

    def _import(self, job: MigrationJob, target: RemoteHost, remote_archive: str,
                workspace: _Workspace) -> None:
        self._stage(job, MigrationStatus.IMPORTING)
        channel = self.channel(target)
        extract_dir = workspace.track(target, posixpath.join(workspace.remote_dir, f"import_{workspace.stamp}"))
        channel.exec(target, f"mkdir -p {shlex.quote(extract_dir)}")
        channel.exec(
            target,
            f"tar -xzf {shlex.quote(remote_archive)} -C {shlex.quote(extract_dir)}",
            timeout=self.settings.transfer_timeout,
        )
        logger.warning(f"⚠️  Importing '{job.database}' into {target} with --drop: "
                       "existing collections with the same names are replaced")
        self.store.restore(target, job.database,
                           posixpath.join(extract_dir, workspace.dump_name, job.database), drop=True)
        logger.info(f"[{job.job_id}] import: done")

    def _verify(self, job: MigrationJob, target: RemoteHost, strict: bool) -> None:
        self._stage(job, MigrationStatus.VERIFYING)
        actual = self.store.collection_counts(target, job.database)
        job.report = compare_counts(job.database, job.export_counts, actual)
        for warning in job.report.warnings():
            logger.warning(f"⚠️  {warning}")
            job.warnings.append(warning)
        logger.info(f"[{job.job_id}] verify: {job.report.summary()}")
        if strict and not job.report.ok:
            raise VerificationFailed(MigrationStatus.VERIFYING.value, "; ".join(job.report.warnings()))

    def _cleanup(self, job: MigrationJob, workspace: _Workspace) -> None:
        logger.info(f"[{job.job_id}] ▶ cleanup")
        for host, path in reversed(workspace.created):
            try:
                if host is None:
                    if os.path.isdir(path):
                        shutil.rmtree(path)
                    elif os.path.exists(path):
                        os.remove(path)
                else:
                    self.channel(host).remove(host, path)
            except (OSError, ChannelError) as e:
                logger.warning(f"⚠️  Cleanup of {path} failed: {e}")
        logger.info(f"[{job.job_id}] cleanup: removed {len(workspace.created)} temporary path(s)")
