"""
Backup/Restore Manager

Snapshots the application directory or a database on a host before any mutating
operation and restores from those snapshots. Archives live on the host as
``<target>_<timestamp>.tar.gz``; retention is enforced by filename timestamp
ordering, there is no separate index.

Safety snapshots taken by a restore are filed under ``<target>-pre-restore`` so
they are pruned apart from the snapshots a release takes before deploying.
"""

import logging
import posixpath
import re
import shlex
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Iterable, List, Optional

from ..config.settings import Settings, get_settings
from ..database.mongo_tools import DocumentStore, MongoShellStore
from ..exceptions import BackupError, BackupNotFound, BackupVerificationFailed, ChannelError
from ..remote.channel import RemoteChannel, RemoteHost

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S_%f"
ARCHIVE_SUFFIX = ".tar.gz"
DATABASE_PREFIX = "mongodb_"
SAFETY_SUFFIX = "-pre-restore"

_ARCHIVE_RE = re.compile(r"^(?P<target>.+)_(?P<timestamp>\d{8}_\d{6}_\d{6})\.tar\.gz$")


class BackupKind(Enum):
    DIRECTORY = "directory"
    DATABASE = "database"


@dataclass
class Backup:
    """A timestamped snapshot of an application directory or a database."""
    target: str
    timestamp: datetime
    location: str
    kind: BackupKind
    retention_eligible: bool = True

    @property
    def filename(self) -> str:
        return posixpath.basename(self.location)

    @property
    def backup_id(self) -> str:
        return self.filename[:-len(ARCHIVE_SUFFIX)]

    @property
    def database_name(self) -> Optional[str]:
        if self.kind is not BackupKind.DATABASE:
            return None
        name = self.target[len(DATABASE_PREFIX):]
        if name.endswith(SAFETY_SUFFIX):
            name = name[:-len(SAFETY_SUFFIX)]
        return name


def archive_name(target: str, timestamp: datetime) -> str:
    return f"{target}_{timestamp.strftime(TIMESTAMP_FORMAT)}{ARCHIVE_SUFFIX}"


def safety_target(target: str) -> str:
    """Target a restore files its safety snapshot under."""
    return target if target.endswith(SAFETY_SUFFIX) else f"{target}{SAFETY_SUFFIX}"


def parse_archive_name(filename: str):
    """Return (target, timestamp) for a backup archive name, or None."""
    match = _ARCHIVE_RE.match(filename)
    if not match:
        return None
    return match.group("target"), datetime.strptime(match.group("timestamp"), TIMESTAMP_FORMAT)


class BackupManager:
    """Snapshot, restore and prune backups on one host."""

    def __init__(self, channel: RemoteChannel, host: RemoteHost, settings: Optional[Settings] = None,
                 store: Optional[DocumentStore] = None, clock: Callable[[], datetime] = datetime.now):
        self.channel = channel
        self.host = host
        self.settings = settings or get_settings()
        self.store = store or MongoShellStore(self.settings, channel)
        self._clock = clock
        self._last_timestamp: Optional[datetime] = None

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _now(self) -> datetime:
        now = self._clock()
        # Two snapshots of the same target must never share a filename
        if self._last_timestamp is not None and now <= self._last_timestamp:
            now = self._last_timestamp + timedelta(microseconds=1)
        self._last_timestamp = now
        return now

    def _run(self, command: str):
        return self.channel.exec(self.host, command)

    def directory_for(self, kind: BackupKind) -> str:
        if kind is BackupKind.DATABASE:
            return self.settings.db_backup_dir
        return self.settings.backup_dir

    def retention_for(self, kind: BackupKind) -> int:
        if kind is BackupKind.DATABASE:
            return self.settings.db_retention_count
        return self.settings.app_retention_count

    @staticmethod
    def database_target(db_name: str) -> str:
        return f"{DATABASE_PREFIX}{db_name}"

    # ------------------------------------------------------------------
    # snapshot
    # ------------------------------------------------------------------

    def snapshot_directory(self, target: str, path: str, prune: bool = True,
                           protect: Iterable[str] = ()) -> Backup:
        """Archive ``path`` on the host as ``<target>_<timestamp>.tar.gz``."""
        path = path.rstrip("/")
        if not self.channel.path_exists(self.host, path, kind="d"):
            raise BackupError(f"Cannot snapshot {path}: directory does not exist on {self.host}")

        timestamp = self._now()
        backup_dir = self.directory_for(BackupKind.DIRECTORY)
        location = posixpath.join(backup_dir, archive_name(target, timestamp))

        logger.info(f"Creating backup of {path} on {self.host}...")
        self._run(f"mkdir -p {shlex.quote(backup_dir)}")
        self._run(
            f"tar -czf {shlex.quote(location)} -C {shlex.quote(posixpath.dirname(path))} "
            f"{shlex.quote(posixpath.basename(path))}"
        )

        backup = Backup(target=target, timestamp=timestamp, location=location, kind=BackupKind.DIRECTORY)
        self.require_verified(backup)
        logger.info(f"✅ Backup created: {location}")

        if prune:
            self.prune(target, protect=protect)
        return backup

    def snapshot_database(self, db_name: str, prune: bool = True, protect: Iterable[str] = (),
                          target: Optional[str] = None) -> Backup:
        """Export ``db_name`` with mongodump and archive the dump directory."""
        timestamp = self._now()
        stamp = timestamp.strftime(TIMESTAMP_FORMAT)
        target = target or self.database_target(db_name)
        backup_dir = self.directory_for(BackupKind.DATABASE)
        dump_name = f"dump_{stamp}"
        dump_path = posixpath.join(backup_dir, dump_name)
        location = posixpath.join(backup_dir, archive_name(target, timestamp))

        logger.info(f"Creating backup of database: {db_name}")
        self._run(f"mkdir -p {shlex.quote(backup_dir)}")
        try:
            self.store.dump(self.host, db_name, dump_path)
            logger.info("Compressing backup...")
            self._run(f"tar -czf {shlex.quote(location)} -C {shlex.quote(backup_dir)} {shlex.quote(dump_name)}")
        finally:
            self._cleanup(dump_path)

        backup = Backup(target=target, timestamp=timestamp, location=location, kind=BackupKind.DATABASE)
        self.require_verified(backup)
        logger.info(f"✅ Database backup created: {location}")

        self.upload_offsite(backup)
        if prune:
            self.prune(target, protect=protect)
        return backup

    def upload_offsite(self, backup: Backup) -> bool:
        """Copy a database snapshot to S3 with the host's AWS CLI, when a bucket is configured."""
        bucket = self.settings.backup_bucket
        if not bucket:
            return False
        destination = f"s3://{bucket}/backups/{backup.filename}"
        logger.info(f"Uploading backup to {destination}...")
        try:
            self._run(f"aws s3 cp {shlex.quote(backup.location)} {shlex.quote(destination)}")
            return True
        except ChannelError as e:
            logger.warning(f"⚠️  Offsite copy failed, local backup kept: {e}")
            return False

    # ------------------------------------------------------------------
    # verify / list / find
    # ------------------------------------------------------------------

    def verify(self, backup: Backup) -> bool:
        """True when the archive is present on the host and non-empty."""
        return self.channel.path_exists(self.host, backup.location, kind="s")

    def require_verified(self, backup: Backup) -> None:
        if not self.verify(backup):
            raise BackupVerificationFailed(f"Backup {backup.location} is missing or empty on {self.host}")

    def list_backups(self, target: Optional[str] = None, kind: Optional[BackupKind] = None) -> List[Backup]:
        """Backups on the host, newest first."""
        kinds = [kind] if kind else [BackupKind.DIRECTORY, BackupKind.DATABASE]
        backups = []
        for backup_kind in kinds:
            directory = self.directory_for(backup_kind)
            result = self.channel.exec(self.host, f"ls -1 {shlex.quote(directory)}", check=False)
            if not result.ok:
                continue
            for filename in result.stdout.splitlines():
                parsed = parse_archive_name(filename.strip())
                if not parsed:
                    continue
                name, timestamp = parsed
                is_database = name.startswith(DATABASE_PREFIX)
                if is_database != (backup_kind is BackupKind.DATABASE):
                    continue
                if target and name != target:
                    continue
                backups.append(Backup(
                    target=name,
                    timestamp=timestamp,
                    location=posixpath.join(directory, filename.strip()),
                    kind=backup_kind,
                ))
        backups.sort(key=lambda b: b.timestamp, reverse=True)
        return backups

    def find(self, backup_id: str) -> Backup:
        name = backup_id if backup_id.endswith(ARCHIVE_SUFFIX) else backup_id + ARCHIVE_SUFFIX
        for backup in self.list_backups():
            if backup.filename == name:
                return backup
        raise BackupNotFound(f"Backup '{backup_id}' not found on {self.host}")

    # ------------------------------------------------------------------
    # prune
    # ------------------------------------------------------------------

    def prune(self, target: str, retention: Optional[int] = None, protect: Iterable[str] = ()) -> List[Backup]:
        """Delete all but the newest ``retention`` backups of ``target``.

        Archives listed in ``protect`` are never deleted. Deletion failures are
        logged and skipped.
        """
        protected = set(protect)
        backups = self.list_backups(target=target)
        if not backups:
            return []
        if retention is None:
            retention = self.retention_for(backups[0].kind)

        deleted = []
        for backup in backups[retention:]:
            if backup.location in protected or not backup.retention_eligible:
                continue
            try:
                self._run(f"rm -f {shlex.quote(backup.location)}")
                deleted.append(backup)
            except ChannelError as e:
                logger.warning(f"⚠️  Could not delete old backup {backup.location}: {e}")

        if deleted:
            logger.info(f"Cleaned old backups for {target}: removed {len(deleted)}, kept {retention}")
        return deleted

    # ------------------------------------------------------------------
    # restore
    # ------------------------------------------------------------------

    def restore(self, backup: Backup, path: Optional[str] = None) -> Optional[Backup]:
        """Restore ``backup``, snapshotting the current resource first.

        Returns the safety snapshot taken before overwriting, if any.
        """
        if not self.verify(backup):
            raise BackupNotFound(f"Backup {backup.location} not found on {self.host}")
        if backup.kind is BackupKind.DATABASE:
            return self._restore_database(backup)
        return self._restore_directory(backup, path or self.settings.live_path)

    def _restore_directory(self, backup: Backup, path: str) -> Optional[Backup]:
        path = path.rstrip("/")
        parent = posixpath.dirname(path)
        stamp = self._now().strftime(TIMESTAMP_FORMAT)
        restore_dir = posixpath.join(parent, f".restore_{stamp}")
        aside = f"{path}.replaced_{stamp}"

        safety = None
        if self.channel.path_exists(self.host, path, kind="d"):
            logger.info(f"Taking safety snapshot of {path} before restore")
            safety = self.snapshot_directory(safety_target(backup.target), path, protect=[backup.location])

        logger.info(f"Restoring {path} from {backup.location}")
        try:
            self._run(f"mkdir -p {shlex.quote(restore_dir)}")
            self._run(f"tar -xzf {shlex.quote(backup.location)} -C {shlex.quote(restore_dir)}")
            entries = self.channel.exec(self.host, f"ls -A {shlex.quote(restore_dir)}").stdout.split()
            if len(entries) != 1:
                raise BackupError(f"Backup {backup.location} does not hold a single directory: {entries}")
            extracted = posixpath.join(restore_dir, entries[0])

            # Rename-based swap; the live path is never partially written
            swap = f"mv {shlex.quote(extracted)} {shlex.quote(path)}"
            if safety is not None:
                swap = (
                    f"mv {shlex.quote(path)} {shlex.quote(aside)} && "
                    f"{{ {swap} || {{ mv {shlex.quote(aside)} {shlex.quote(path)}; exit 1; }}; }}"
                )
            self._run(swap)
        finally:
            self._cleanup(restore_dir, aside)

        logger.info(f"✅ Restored {path} from {backup.backup_id}")
        return safety

    def _restore_database(self, backup: Backup) -> Optional[Backup]:
        db_name = backup.database_name
        stamp = self._now().strftime(TIMESTAMP_FORMAT)
        restore_dir = posixpath.join(self.directory_for(BackupKind.DATABASE), f"restore_{stamp}")

        safety = None
        if self.store.database_exists(self.host, db_name):
            logger.info(f"Taking safety snapshot of database {db_name} before restore")
            safety = self.snapshot_database(db_name, protect=[backup.location],
                                            target=safety_target(backup.target))

        logger.warning(f"Restoring database {db_name} from {backup.location}: existing collections are dropped")
        try:
            self._run(f"mkdir -p {shlex.quote(restore_dir)}")
            self._run(f"tar -xzf {shlex.quote(backup.location)} -C {shlex.quote(restore_dir)}")
            entries = self.channel.exec(self.host, f"ls -A {shlex.quote(restore_dir)}").stdout.split()
            dumps = [e for e in entries if e.startswith("dump_")]
            if not dumps:
                raise BackupError(f"Dump directory not found in {backup.location}")
            self.store.restore(self.host, db_name, posixpath.join(restore_dir, dumps[0], db_name), drop=True)
        finally:
            self._cleanup(restore_dir)

        logger.info(f"✅ Database {db_name} restored from {backup.backup_id}")
        return safety

    def _cleanup(self, *paths: str) -> None:
        try:
            self.channel.remove(self.host, *paths)
        except ChannelError as e:
            logger.warning(f"⚠️  Cleanup failed for {', '.join(paths)}: {e}")
