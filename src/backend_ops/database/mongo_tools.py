"""
MongoDB tooling over the remote execution channel.

Wraps mongosh, mongodump and mongorestore as they are run on the backend host,
so the backup manager and the migration orchestrator never build shell strings
for the database themselves.
"""

import json
import logging
import posixpath
import shlex
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from ..config.settings import Settings, get_settings
from ..exceptions import ChannelError, RemoteCommandFailed
from ..remote.channel import RemoteChannel, RemoteHost, get_channel

logger = logging.getLogger(__name__)

COUNTS_SCRIPT = (
    "const counts = {}; "
    "db.getCollectionNames().forEach(function (name) { "
    "counts[name] = db.getCollection(name).countDocuments(); }); "
    "print(JSON.stringify(counts));"
)

DATABASES_SCRIPT = (
    "print(JSON.stringify(db.adminCommand({listDatabases: 1, nameOnly: true})"
    ".databases.map(function (d) { return d.name; })));"
)

PING_SCRIPT = "print(db.runCommand({ping: 1}).ok);"


class DocumentStore(ABC):
    """Operations the workflows need from the document database on a host."""

    @abstractmethod
    def ping(self, host: RemoteHost) -> bool:
        """True when the database server on the host answers."""

    @abstractmethod
    def list_databases(self, host: RemoteHost) -> List[str]:
        pass

    @abstractmethod
    def collection_counts(self, host: RemoteHost, db_name: str) -> Dict[str, int]:
        """Per-collection document counts."""

    @abstractmethod
    def dump(self, host: RemoteHost, db_name: str, out_dir: str) -> str:
        """Export ``db_name`` under ``out_dir``; returns the directory holding the collections."""

    @abstractmethod
    def restore(self, host: RemoteHost, db_name: str, dump_dir: str, drop: bool = True) -> None:
        """Import collections from ``dump_dir`` (as returned by ``dump``)."""

    def database_exists(self, host: RemoteHost, db_name: str) -> bool:
        return db_name in self.list_databases(host)


def _last_json_line(stdout: str):
    lines = [line.strip() for line in stdout.splitlines() if line.strip()]
    if not lines:
        raise ValueError("mongosh produced no output")
    return json.loads(lines[-1])


def _parse_output(result, host: RemoteHost, shape: type):
    """Decode the JSON mongosh printed last; anything else is a failed command."""
    try:
        parsed = _last_json_line(result.stdout)
    except ValueError as e:
        raise RemoteCommandFailed(result.command, result.exit_code,
                                  f"unexpected mongosh output: {e}", host=str(host)) from e
    if not isinstance(parsed, shape):
        raise RemoteCommandFailed(result.command, result.exit_code,
                                  f"unexpected mongosh output: {result.stdout.strip()[:200]}", host=str(host))
    return parsed


class MongoShellStore(DocumentStore):
    """DocumentStore backed by the MongoDB command line tools on each host."""

    def __init__(self, settings: Optional[Settings] = None, channel: Optional[RemoteChannel] = None):
        self.settings = settings or get_settings()
        self._channel = channel

    def channel_for(self, host: RemoteHost) -> RemoteChannel:
        return self._channel or get_channel(host, self.settings)

    def _mongosh(self, host: RemoteHost, script: str, db_name: Optional[str] = None, check: bool = True):
        parts = [self.settings.mongosh_bin]
        if db_name:
            parts.append(shlex.quote(db_name))
        parts += ["--quiet", "--eval", shlex.quote(script)]
        return self.channel_for(host).exec(host, " ".join(parts), check=check)

    def ping(self, host: RemoteHost) -> bool:
        try:
            result = self._mongosh(host, PING_SCRIPT, check=False)
        except ChannelError as e:
            logger.error(f"Cannot reach MongoDB on {host}: {e}")
            return False
        return result.ok and result.stdout.strip().endswith("1")

    def list_databases(self, host: RemoteHost) -> List[str]:
        result = self._mongosh(host, DATABASES_SCRIPT)
        return [str(name) for name in _parse_output(result, host, list)]

    def collection_counts(self, host: RemoteHost, db_name: str) -> Dict[str, int]:
        result = self._mongosh(host, COUNTS_SCRIPT, db_name=db_name)
        counts = _parse_output(result, host, dict)
        try:
            return {name: int(count) for name, count in counts.items()}
        except (TypeError, ValueError) as e:
            raise RemoteCommandFailed(result.command, result.exit_code,
                                      f"non-numeric collection count: {e}", host=str(host)) from e

    def dump(self, host: RemoteHost, db_name: str, out_dir: str) -> str:
        command = (
            f"{self.settings.mongodump_bin} --db {shlex.quote(db_name)} "
            f"--out {shlex.quote(out_dir)}"
        )
        logger.info(f"Exporting database '{db_name}' on {host} to {out_dir}")
        self.channel_for(host).exec(host, command)
        return posixpath.join(out_dir, db_name)

    def restore(self, host: RemoteHost, db_name: str, dump_dir: str, drop: bool = True) -> None:
        command = f"{self.settings.mongorestore_bin} --db {shlex.quote(db_name)}"
        if drop:
            command += " --drop"
        command += f" {shlex.quote(dump_dir.rstrip('/') + '/')}"
        logger.info(f"Restoring database '{db_name}' on {host} from {dump_dir} (drop={drop})")
        try:
            self.channel_for(host).exec(host, command)
        except RemoteCommandFailed:
            logger.error(f"mongorestore failed for '{db_name}' on {host}")
            raise
