"""
Remote Execution Channel

Copies files to a host and runs commands on it, returning exit code and output.
The SSH implementation shells out to ssh/scp with the deployment key; the local
implementation runs the same commands through bash on this machine.

The channel never retries; callers pick their own policy.
"""

import logging
import os
import re
import shlex
import shutil
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Union

from ..config.settings import Settings, get_settings
from ..exceptions import (
    ChannelAuthFailed,
    ChannelError,
    ChannelTimeout,
    ChannelUnreachable,
    RemoteCommandFailed,
)

logger = logging.getLogger(__name__)

LOCAL_ADDRESSES = ("localhost", "127.0.0.1", "local", "::1")

_AUTH_PATTERNS = re.compile(r"Permission denied|publickey|Authentication failed|Too many authentication failures")
_UNREACHABLE_PATTERNS = re.compile(
    r"Connection refused|Connection timed out|timed out|Could not resolve hostname|"
    r"No route to host|Network is unreachable|Connection closed|Connection reset"
)


@dataclass(frozen=True)
class RemoteHost:
    """Address plus credential reference for a host."""
    address: str
    user: str = "ec2-user"
    key_path: Optional[Path] = None
    port: int = 22

    @property
    def is_local(self) -> bool:
        return self.address in LOCAL_ADDRESSES

    @property
    def target(self) -> str:
        return f"{self.user}@{self.address}"

    def __str__(self) -> str:
        return self.address if self.is_local else self.target

    @classmethod
    def from_settings(cls, address: str, settings: Optional[Settings] = None) -> "RemoteHost":
        """Build a host from an address, taking user, key and port from settings.

        ``user@address`` overrides the configured user.
        """
        settings = settings or get_settings()
        user = settings.ssh_user
        if "@" in address:
            user, address = address.split("@", 1)
        return cls(
            address=address,
            user=user,
            key_path=settings.private_key_path,
            port=settings.ssh_port,
        )


@dataclass
class CommandResult:
    """Outcome of a command or copy."""
    command: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class RemoteChannel(ABC):
    """Copy files to a host and run commands on it."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    @abstractmethod
    def exec(self, host: RemoteHost, command: str, timeout: Optional[float] = None,
             check: bool = True) -> CommandResult:
        """Run a shell command on the host and capture its output.

        Raises RemoteCommandFailed on a non-zero exit when ``check`` is set.
        """

    @abstractmethod
    def copy(self, local_path: Union[str, Path], host: RemoteHost, remote_path: str,
             timeout: Optional[float] = None) -> CommandResult:
        """Copy a local file to ``remote_path`` on the host."""

    @abstractmethod
    def fetch(self, host: RemoteHost, remote_path: str, local_path: Union[str, Path],
              timeout: Optional[float] = None) -> CommandResult:
        """Copy ``remote_path`` from the host to a local file."""

    def path_exists(self, host: RemoteHost, path: str, kind: str = "e") -> bool:
        """Test a path on the host (``kind`` is a ``test`` flag: e, d, f, s)."""
        result = self.exec(host, f"test -{kind} {shlex.quote(path)}", check=False)
        return result.ok

    def remove(self, host: RemoteHost, *paths: str) -> CommandResult:
        quoted = " ".join(shlex.quote(p) for p in paths)
        return self.exec(host, f"rm -rf {quoted}")

    def _timeout(self, timeout: Optional[float]) -> float:
        return timeout if timeout is not None else self.settings.command_timeout

    @staticmethod
    def _check(result: CommandResult, host: RemoteHost, check: bool) -> CommandResult:
        if check and not result.ok:
            raise RemoteCommandFailed(result.command, result.exit_code, result.stderr, host=str(host))
        return result


class SSHChannel(RemoteChannel):
    """Channel over the ssh and scp binaries."""

    def _ssh_options(self, host: RemoteHost) -> List[str]:
        options = [
            "-o", "BatchMode=yes",
            "-o", "StrictHostKeyChecking=accept-new",
            "-o", f"ConnectTimeout={self.settings.ssh_connect_timeout}",
        ]
        if host.key_path:
            options = ["-i", str(host.key_path)] + options
        return options

    def _ensure_key(self, host: RemoteHost) -> None:
        if host.key_path and not Path(host.key_path).exists():
            raise ChannelAuthFailed(f"SSH key file not found: {host.key_path}", host=str(host))

    def _run(self, argv: List[str], host: RemoteHost, display: str, timeout: float) -> CommandResult:
        self._ensure_key(host)
        logger.debug(f"[{host}] $ {display}")
        try:
            completed = subprocess.run(argv, capture_output=True, text=True, timeout=timeout)
        except subprocess.TimeoutExpired as e:
            raise ChannelTimeout(f"Timed out after {timeout:.0f}s: {display}", host=str(host)) from e
        except FileNotFoundError as e:
            raise ChannelError(f"{argv[0]} is not installed: {e}", host=str(host)) from e

        stderr = completed.stderr or ""
        # ssh reserves 255 for its own errors; scp reports transport errors as 1
        if completed.returncode != 0 and (completed.returncode == 255 or argv[0] == "scp"):
            if _AUTH_PATTERNS.search(stderr):
                raise ChannelAuthFailed(f"Authentication failed for {host.target}: {stderr.strip()}", host=str(host))
            if _UNREACHABLE_PATTERNS.search(stderr) or completed.returncode == 255:
                raise ChannelUnreachable(f"Cannot reach {host.target}: {stderr.strip()}", host=str(host))

        return CommandResult(display, completed.returncode, completed.stdout or "", stderr)

    def exec(self, host: RemoteHost, command: str, timeout: Optional[float] = None,
             check: bool = True) -> CommandResult:
        argv = ["ssh", "-p", str(host.port)] + self._ssh_options(host) + [host.target, command]
        result = self._run(argv, host, command, self._timeout(timeout))
        return self._check(result, host, check)

    def copy(self, local_path: Union[str, Path], host: RemoteHost, remote_path: str,
             timeout: Optional[float] = None) -> CommandResult:
        argv = ["scp", "-P", str(host.port)] + self._ssh_options(host) + [
            str(local_path), f"{host.target}:{remote_path}"
        ]
        display = f"scp {local_path} {host.target}:{remote_path}"
        result = self._run(argv, host, display, timeout or self.settings.transfer_timeout)
        return self._check(result, host, True)

    def fetch(self, host: RemoteHost, remote_path: str, local_path: Union[str, Path],
              timeout: Optional[float] = None) -> CommandResult:
        argv = ["scp", "-P", str(host.port)] + self._ssh_options(host) + [
            f"{host.target}:{remote_path}", str(local_path)
        ]
        display = f"scp {host.target}:{remote_path} {local_path}"
        result = self._run(argv, host, display, timeout or self.settings.transfer_timeout)
        return self._check(result, host, True)


class LocalChannel(RemoteChannel):
    """Channel that runs commands on this machine through bash."""

    def exec(self, host: RemoteHost, command: str, timeout: Optional[float] = None,
             check: bool = True) -> CommandResult:
        timeout = self._timeout(timeout)
        logger.debug(f"[{host}] $ {command}")
        try:
            completed = subprocess.run(
                ["bash", "-c", command], capture_output=True, text=True, timeout=timeout
            )
        except subprocess.TimeoutExpired as e:
            raise ChannelTimeout(f"Timed out after {timeout:.0f}s: {command}", host=str(host)) from e
        result = CommandResult(command, completed.returncode, completed.stdout or "", completed.stderr or "")
        return self._check(result, host, check)

    def _copy_file(self, source: Union[str, Path], destination: Union[str, Path], host: RemoteHost) -> CommandResult:
        display = f"cp {source} {destination}"
        logger.debug(f"[{host}] $ {display}")
        try:
            if os.path.abspath(str(source)) != os.path.abspath(str(destination)):
                shutil.copy2(str(source), str(destination))
        except OSError as e:
            raise RemoteCommandFailed(display, 1, str(e), host=str(host)) from e
        return CommandResult(display, 0)

    def copy(self, local_path: Union[str, Path], host: RemoteHost, remote_path: str,
             timeout: Optional[float] = None) -> CommandResult:
        return self._copy_file(local_path, remote_path, host)

    def fetch(self, host: RemoteHost, remote_path: str, local_path: Union[str, Path],
              timeout: Optional[float] = None) -> CommandResult:
        return self._copy_file(remote_path, local_path, host)


def get_channel(host: RemoteHost, settings: Optional[Settings] = None) -> RemoteChannel:
    """Pick the channel implementation for a host."""
    if host.is_local:
        return LocalChannel(settings)
    return SSHChannel(settings)
