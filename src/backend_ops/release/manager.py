"""
Release Manager

Replaces the running backend artifact on one host:

    Idle -> Backing-Up -> Fetching -> Building -> Stopping -> Swapping
         -> Starting -> Health-Gating -> Active | Rolling-Back -> Idle

Fetching and Building only touch the staging directory, so failures there
leave the running deployment untouched. From Stopping onwards every failure
(and an operator interrupt) restores the snapshot taken in Backing-Up.
The whole run holds a host-scoped lease.

Re-deploying the same artifact re-runs the full pipeline; releases are not
deduplicated by artifact id.
"""

import logging
import posixpath
import shlex
import tempfile
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from ..backup.manager import Backup, BackupKind, BackupManager
from ..config.settings import Settings, get_settings
from ..exceptions import (
    BackendOpsError,
    BackupVerificationFailed,
    ChannelError,
    ChannelTimeout,
    ChannelUnreachable,
    PreflightError,
    ReleaseError,
)
from ..health.prober import HealthCheckResult, HealthProber, HostHealthProber
from ..remote.channel import RemoteChannel, RemoteHost, get_channel
from ..state.lock import HostLock, lock_key
from ..utils.backoff import BackoffPolicy
from ..utils.decorators import log_execution_time, retry
from .artifacts import Artifact, ArtifactStore

logger = logging.getLogger(__name__)


class ReleaseState(Enum):
    """Release pipeline states in order."""
    IDLE = "idle"
    BACKING_UP = "backing-up"
    FETCHING = "fetching"
    BUILDING = "building"
    STOPPING = "stopping"
    SWAPPING = "swapping"
    STARTING = "starting"
    HEALTH_GATING = "health-gating"
    ACTIVE = "active"
    ROLLING_BACK = "rolling-back"


class DeploymentStatus(Enum):
    """Status of a deployment record."""
    PENDING = "pending"
    ACTIVE = "active"
    FAILED = "failed"
    ROLLED_BACK = "rolled-back"


@dataclass
class StageRecord:
    stage: str
    outcome: str
    at: float


@dataclass
class Deployment:
    """Which artifact is (meant to be) running on a host."""
    deployment_id: str
    host: str
    artifact_ref: Optional[str]
    artifact_id: Optional[str] = None
    status: DeploymentStatus = DeploymentStatus.PENDING
    started_at: float = field(default_factory=time.time)
    completed_at: Optional[float] = None
    error_message: Optional[str] = None
    stages: List[StageRecord] = field(default_factory=list)


@dataclass
class ReleaseResult:
    """Outcome of one release run."""
    deployment: Deployment
    final_state: ReleaseState
    backup: Optional[Backup] = None
    health: Optional[HealthCheckResult] = None
    rollback_health: Optional[HealthCheckResult] = None
    error: Optional[BackendOpsError] = None

    @property
    def succeeded(self) -> bool:
        return self.deployment.status is DeploymentStatus.ACTIVE

    @property
    def exit_code(self) -> int:
        if self.succeeded:
            return 0
        return 2 if isinstance(self.error, PreflightError) else 1


class ReleaseManager:
    """Orchestrates artifact replacement on one host."""

    def __init__(self, host: RemoteHost, settings: Optional[Settings] = None,
                 channel: Optional[RemoteChannel] = None,
                 prober: Optional[HealthProber] = None,
                 artifact_store: Optional[ArtifactStore] = None,
                 backup_manager: Optional[BackupManager] = None):
        self.host = host
        self.settings = settings or get_settings()
        self.channel = channel or get_channel(host, self.settings)
        self.prober = prober or self._default_prober()
        self.artifact_store = artifact_store or ArtifactStore(self.settings)
        self.backups = backup_manager or BackupManager(self.channel, host, self.settings)
        self.state = ReleaseState.IDLE
        self.active_deployment: Optional[Deployment] = None

        self.target = self.settings.app_name
        self.live_path = self.settings.live_path
        self.staging_path = self.settings.staging_path
        self.previous_path = f"{self.live_path}.previous"

    # ------------------------------------------------------------------
    # state bookkeeping
    # ------------------------------------------------------------------

    def _lock(self) -> HostLock:
        return HostLock(self.channel, self.host, lock_key("release", self.host.address), self.settings)

    def _enter(self, deployment: Deployment, state: ReleaseState) -> None:
        self.state = state
        deployment.stages.append(StageRecord(state.value, "started", time.time()))
        logger.info(f"[{deployment.deployment_id}] ▶ {state.value}")

    def _outcome(self, deployment: Deployment, outcome: str, level: int = logging.INFO) -> None:
        deployment.stages.append(StageRecord(self.state.value, outcome, time.time()))
        logger.log(level, f"[{deployment.deployment_id}] {self.state.value}: {outcome}")

    def _finish(self, deployment: Deployment, status: DeploymentStatus, error: Optional[str] = None) -> None:
        deployment.status = status
        deployment.completed_at = time.time()
        if error:
            deployment.error_message = error

    def _run(self, command: str, cwd: Optional[str] = None, check: bool = True):
        if cwd:
            command = f"cd {shlex.quote(cwd)} && {command}"
        return self.channel.exec(self.host, command, timeout=self.settings.command_timeout, check=check)

    def _health_policy(self) -> BackoffPolicy:
        return BackoffPolicy.for_health(self.settings)

    def _default_prober(self) -> HealthProber:
        if self.settings.health_check_from_host:
            return HostHealthProber(self.channel, self.host, request_timeout=self.settings.health_request_timeout)
        return HealthProber(request_timeout=self.settings.health_request_timeout)

    def health_url(self) -> str:
        address = "localhost" if self.settings.health_check_from_host else self.host.address
        return self.settings.health_url_for(address)

    def _probe(self) -> HealthCheckResult:
        return self.prober.probe_with_policy(self.health_url(), self._health_policy())

    def _transfer(self, local_path, remote_path: str):
        @retry(BackoffPolicy.for_transfer(self.settings), exceptions=(ChannelUnreachable, ChannelTimeout),
               logger_name=__name__)
        def copy():
            return self.channel.copy(local_path, self.host, remote_path)
        return copy()

    def _live_exists(self) -> bool:
        return self.channel.path_exists(self.host, self.live_path, kind="d")

    def _remote_archive_path(self, artifact: Artifact) -> str:
        return posixpath.join(self.settings.app_root, artifact.local_path.name)

    def _cleanup(self, *paths: str) -> None:
        try:
            self.channel.remove(self.host, *paths)
        except ChannelError as e:
            logger.warning(f"⚠️  Cleanup failed for {', '.join(paths)}: {e}")

    # ------------------------------------------------------------------
    # deploy
    # ------------------------------------------------------------------

    @log_execution_time
    def deploy(self, artifact_ref: Optional[str] = None) -> ReleaseResult:
        """Run the full release pipeline. Raises LockHeld if another release holds the host."""
        deployment = Deployment(
            deployment_id=uuid.uuid4().hex[:8],
            host=self.host.address,
            artifact_ref=artifact_ref or self.settings.artifact_key,
        )
        logger.info(f"🚀 Starting deployment {deployment.deployment_id} of {deployment.artifact_ref} to {self.host}")

        lock = self._lock()
        lock.acquire()
        try:
            result = self._run_pipeline(deployment)
        finally:
            lock.release()
            self.state = ReleaseState.IDLE

        if result.succeeded:
            logger.info(f"✅ Deployment {deployment.deployment_id} completed successfully!")
        else:
            logger.error(f"❌ Deployment {deployment.deployment_id} ended as {deployment.status.value}: "
                         f"{deployment.error_message}")
        return result

    def _run_pipeline(self, deployment: Deployment) -> ReleaseResult:
        result = ReleaseResult(deployment=deployment, final_state=ReleaseState.IDLE)
        remote_archive = None
        mutated = False

        try:
            # Backing-Up
            self._enter(deployment, ReleaseState.BACKING_UP)
            if self._live_exists():
                result.backup = self.backups.snapshot_directory(self.target, self.live_path, prune=False)
                self._outcome(deployment, f"snapshot {result.backup.backup_id}")
            else:
                self._outcome(deployment, "skipped, no current deployment (first deploy)")

            # Fetching
            self._enter(deployment, ReleaseState.FETCHING)
            with tempfile.TemporaryDirectory(prefix="backend-ops-") as work_dir:
                artifact = self.artifact_store.fetch(deployment.artifact_ref, work_dir)
                deployment.artifact_id = artifact.artifact_id
                remote_archive = self._remote_archive_path(artifact)
                self._run(f"rm -rf {shlex.quote(self.staging_path)} && mkdir -p {shlex.quote(self.staging_path)}")
                self._transfer(artifact.local_path, remote_archive)
            self._run(f"tar -xzf {shlex.quote(remote_archive)} -C {shlex.quote(self.staging_path)}")
            self._outcome(deployment, f"artifact {artifact.artifact_id} staged at {self.staging_path}")

            # Building
            self._enter(deployment, ReleaseState.BUILDING)
            for command in self.settings.build_commands:
                logger.info(f"Running build step: {command}")
                self._run(command, cwd=self.staging_path)
            self._outcome(deployment, "build succeeded")

        except KeyboardInterrupt:
            self._outcome(deployment, "interrupted before any live change", logging.WARNING)
            self._discard_staging(remote_archive)
            self._finish(deployment, DeploymentStatus.FAILED, "interrupted by operator")
            raise
        except BackendOpsError as e:
            self._outcome(deployment, f"failed: {e}", logging.ERROR)
            self._discard_staging(remote_archive)
            result.error = e
            self._finish(deployment, DeploymentStatus.FAILED, str(e))
            result.final_state = self.state
            return result

        try:
            # Stopping: first irreversible step
            self._enter(deployment, ReleaseState.STOPPING)
            self._require_backup(result.backup)
            mutated = True
            self._run(self.settings.stop_command, cwd=self.settings.app_root)
            self._outcome(deployment, "application stopped")

            # Swapping
            self._enter(deployment, ReleaseState.SWAPPING)
            self._swap()
            self._outcome(deployment, f"{self.staging_path} -> {self.live_path}")

            # Starting
            self._enter(deployment, ReleaseState.STARTING)
            self._run(self.settings.start_command, cwd=self.live_path)
            self._outcome(deployment, "application started")

            # Health-Gating
            self._enter(deployment, ReleaseState.HEALTH_GATING)
            result.health = self._probe()
            self._outcome(deployment, result.health.summary(),
                          logging.INFO if result.health.passed else logging.ERROR)
            if not result.health.passed:
                raise ReleaseError(ReleaseState.HEALTH_GATING.value, result.health.summary())

        except KeyboardInterrupt:
            if mutated:
                logger.warning("Interrupted during live changes, rolling back before exiting")
                self._rollback(deployment, result, "interrupted by operator")
                self._cleanup(self.staging_path, self.previous_path, remote_archive)
            else:
                self._discard_staging(remote_archive)
                self._finish(deployment, DeploymentStatus.FAILED, "interrupted by operator")
            raise
        except BackupVerificationFailed as e:
            self._outcome(deployment, f"refused: {e}", logging.ERROR)
            result.error = e
            self._discard_staging(remote_archive)
            self._finish(deployment, DeploymentStatus.FAILED, str(e))
            result.final_state = self.state
            return result
        except BackendOpsError as e:
            if self.state is not ReleaseState.HEALTH_GATING:
                self._outcome(deployment, f"failed: {e}", logging.ERROR)
            result.error = e
            self._rollback(deployment, result, str(e))
            self._cleanup(self.staging_path, self.previous_path, remote_archive)
            result.final_state = ReleaseState.ROLLING_BACK
            return result

        self._commit(deployment, result, remote_archive)
        return result

    def _require_backup(self, backup: Optional[Backup]) -> None:
        """A verified snapshot must exist before the running deployment is touched."""
        if backup is None:
            if self._live_exists():
                raise BackupVerificationFailed(f"No backup of {self.live_path}, refusing to stop the application")
            return
        self.backups.require_verified(backup)

    def _swap(self) -> None:
        staging = shlex.quote(self.staging_path)
        live = shlex.quote(self.live_path)
        previous = shlex.quote(self.previous_path)
        if self._live_exists():
            self._run(
                f"rm -rf {previous} && mv {live} {previous} && "
                f"{{ mv {staging} {live} || {{ mv {previous} {live}; exit 1; }}; }}"
            )
        else:
            self._run(f"mv {staging} {live}")

    def _discard_staging(self, remote_archive: Optional[str]) -> None:
        paths = [self.staging_path] + ([remote_archive] if remote_archive else [])
        self._cleanup(*paths)

    def _commit(self, deployment: Deployment, result: ReleaseResult, remote_archive: Optional[str]) -> None:
        if not (result.health and result.health.passed):
            raise ReleaseError(ReleaseState.ACTIVE.value, "refusing to activate without a passing health check")
        self._enter(deployment, ReleaseState.ACTIVE)
        logger.info("Cleaning up...")
        self._cleanup(self.staging_path, self.previous_path, remote_archive)
        logger.info("Cleaning old backups...")
        self.backups.prune(self.target, self.settings.app_retention_count)
        self._finish(deployment, DeploymentStatus.ACTIVE)
        self.active_deployment = deployment
        self._outcome(deployment, f"artifact {deployment.artifact_id} is live")
        result.final_state = ReleaseState.ACTIVE

    def _rollback(self, deployment: Deployment, result: ReleaseResult, reason: str) -> None:
        """Restore the pre-deploy snapshot and restart; the process is left running either way."""
        self._enter(deployment, ReleaseState.ROLLING_BACK)
        logger.warning(f"Rolling back deployment {deployment.deployment_id}: {reason}")
        try:
            self._run(self.settings.stop_command, cwd=self.settings.app_root, check=False)
            if result.backup is not None:
                self.backups.restore(result.backup, self.live_path)
                self._outcome(deployment, f"restored {result.backup.backup_id}")
            elif self.channel.path_exists(self.host, self.previous_path, kind="d"):
                self._run(f"rm -rf {shlex.quote(self.live_path)} && "
                          f"mv {shlex.quote(self.previous_path)} {shlex.quote(self.live_path)}")
                self._outcome(deployment, "restored previous directory")
            else:
                self._outcome(deployment, "nothing to restore (first deploy), restarting as is", logging.WARNING)

            self._run(self.settings.start_command, cwd=self.live_path)
            result.rollback_health = self._probe()
        except BackendOpsError as e:
            self._outcome(deployment, f"rollback failed: {e}", logging.CRITICAL)
            self._finish(deployment, DeploymentStatus.FAILED, f"{reason}; rollback failed: {e}")
            return

        if result.rollback_health.passed:
            self._outcome(deployment, "rollback healthy")
        else:
            # Left running: a stopped service is worse than an unhealthy restored one
            self._outcome(
                deployment,
                f"rollback completed but restored artifact is unhealthy ({result.rollback_health.summary()}), "
                "manual intervention required",
                logging.CRITICAL,
            )
        self._finish(deployment, DeploymentStatus.ROLLED_BACK, reason)

    # ------------------------------------------------------------------
    # manual operations
    # ------------------------------------------------------------------

    def backup(self) -> Backup:
        """Snapshot the live application directory."""
        with self._lock():
            return self.backups.snapshot_directory(self.target, self.live_path)

    def backup_database(self, db_name: str) -> Backup:
        with self._lock():
            return self.backups.snapshot_database(db_name)

    def list_backups(self) -> List[Backup]:
        return self.backups.list_backups()

    def restore(self, backup_id: str) -> Optional[HealthCheckResult]:
        """Restore a snapshot by id.

        Application snapshots are restored with a stop/restart and probed;
        database snapshots are re-imported with --drop.
        """
        with self._lock():
            backup = self.backups.find(backup_id)
            if backup.kind is BackupKind.DATABASE:
                self.backups.restore(backup)
                return None

            self._run(self.settings.stop_command, cwd=self.settings.app_root, check=False)
            try:
                self.backups.restore(backup, self.live_path)
            finally:
                # Restart whatever is now live
                self._run(self.settings.start_command, cwd=self.live_path)
            health = self._probe()
            if health.passed:
                logger.info(f"✅ Restored {backup.backup_id} and health check passed")
            else:
                logger.error(f"❌ Restored {backup.backup_id} but {health.summary()}")
            return health
