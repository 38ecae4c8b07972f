"""
Host- and database-scoped lease lock.

A lease is a directory created with ``mkdir`` (atomic on POSIX) under the lock
directory of the lock host, holding an ``owner`` file with pid, hostname and
acquisition time. Leases older than the TTL are treated as stale and broken; a
lease whose owner file was never written ages by the directory mtime.
"""

import json
import logging
import os
import posixpath
import re
import shlex
import socket
import time
from typing import Callable, Optional

from ..config.settings import Settings, get_settings
from ..exceptions import ChannelError, LockHeld
from ..remote.channel import RemoteChannel, RemoteHost

logger = logging.getLogger(__name__)


def lock_key(*parts: str) -> str:
    """Build a filesystem-safe lock key from its parts."""
    return "__".join(re.sub(r"[^A-Za-z0-9._-]+", "_", part) for part in parts)


class HostLock:
    """Mutual exclusion lease keyed by host (release) or by source/target/db (migration)."""

    def __init__(self, channel: RemoteChannel, host: RemoteHost, key: str,
                 settings: Optional[Settings] = None, ttl_seconds: Optional[int] = None,
                 clock: Callable[[], float] = time.time):
        self.channel = channel
        self.host = host
        self.key = key
        self.settings = settings or get_settings()
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else self.settings.lock_ttl_seconds
        self._clock = clock
        self.path = posixpath.join(self.settings.lock_dir, f"{key}.lock")
        self.acquired = False

    def _owner_record(self) -> str:
        return json.dumps({
            "key": self.key,
            "pid": os.getpid(),
            "hostname": socket.gethostname(),
            "acquired_at": self._clock(),
        })

    def read_owner(self) -> Optional[dict]:
        result = self.channel.exec(
            self.host, f"cat {shlex.quote(posixpath.join(self.path, 'owner'))}", check=False
        )
        if not result.ok:
            return None
        try:
            return json.loads(result.stdout)
        except ValueError:
            return None

    def _lease_mtime(self) -> Optional[float]:
        quoted = shlex.quote(self.path)
        result = self.channel.exec(
            self.host, f"stat -c %Y {quoted} 2>/dev/null || stat -f %m {quoted}", check=False
        )
        try:
            return float(result.stdout.strip()) if result.ok else None
        except ValueError:
            return None

    def _is_stale(self, owner: Optional[dict]) -> bool:
        if owner and "acquired_at" in owner:
            acquired_at = float(owner["acquired_at"])
        else:
            # Holder died between mkdir and writing the owner file
            acquired_at = self._lease_mtime()
            if acquired_at is None:
                return False
        return self._clock() - acquired_at > self.ttl_seconds

    def _try_mkdir(self) -> bool:
        return self.channel.exec(self.host, f"mkdir {shlex.quote(self.path)}", check=False).ok

    def acquire(self) -> "HostLock":
        """Take the lease or raise LockHeld."""
        self.channel.exec(self.host, f"mkdir -p {shlex.quote(self.settings.lock_dir)}")

        if not self._try_mkdir():
            owner = self.read_owner()
            if self._is_stale(owner):
                logger.warning(f"⚠️  Breaking stale lock {self.key} held by {owner}")
                self.channel.remove(self.host, self.path)
                if not self._try_mkdir():
                    raise LockHeld(self.key, self._describe(self.read_owner()))
            else:
                raise LockHeld(self.key, self._describe(owner))

        owner_file = posixpath.join(self.path, "owner")
        try:
            self.channel.exec(
                self.host, f"printf '%s' {shlex.quote(self._owner_record())} > {shlex.quote(owner_file)}"
            )
        except ChannelError:
            logger.error(f"Could not record owner of lock {self.key}, removing {self.path}")
            self.channel.remove(self.host, self.path)
            raise
        self.acquired = True
        logger.info(f"🔒 Acquired lock {self.key} on {self.host}")
        return self

    def release(self) -> None:
        if not self.acquired:
            return
        try:
            self.channel.remove(self.host, self.path)
            logger.info(f"🔓 Released lock {self.key}")
        except ChannelError as e:
            logger.error(f"Failed to release lock {self.key} at {self.path}: {e}")
        finally:
            self.acquired = False

    @staticmethod
    def _describe(owner: Optional[dict]) -> Optional[str]:
        if not owner:
            return None
        return f"pid {owner.get('pid')} on {owner.get('hostname')}"

    def __enter__(self) -> "HostLock":
        return self.acquire()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
