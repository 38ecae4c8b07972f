"""Error taxonomy shared by the release and migration workflows."""
from typing import Optional


class BackendOpsError(Exception):
    """Base class for all backend-ops errors."""


# Remote execution channel

class ChannelError(BackendOpsError):
    """Base class for remote execution channel failures."""

    def __init__(self, message: str, host: Optional[str] = None):
        super().__init__(message)
        self.host = host


class ChannelUnreachable(ChannelError):
    """Connection refused or timed out."""


class ChannelTimeout(ChannelUnreachable):
    """A command or copy did not finish within its timeout."""


class ChannelAuthFailed(ChannelError):
    """The host rejected our credentials."""


class RemoteCommandFailed(ChannelError):
    """A remote command exited with a non-zero status."""

    def __init__(self, command: str, exit_code: int, stderr: str = "", host: Optional[str] = None):
        detail = stderr.strip().splitlines()[-1] if stderr.strip() else "no stderr"
        super().__init__(f"Command failed with exit code {exit_code}: {command} ({detail})", host=host)
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr


# Preflight / availability

class PreflightError(BackendOpsError):
    """Raised before any mutation when a precondition does not hold."""


class SourceUnavailable(PreflightError):
    pass


class DatabaseNotFound(PreflightError):
    pass


class ArtifactNotFound(PreflightError):
    pass


# Backups

class BackupError(BackendOpsError):
    pass


class BackupNotFound(BackupError):
    pass


class BackupVerificationFailed(BackupError):
    """The snapshot a mutating step depends on is missing or empty."""


# Locking

class LockHeld(BackendOpsError):
    """Another invocation holds the lease for this host or database."""

    def __init__(self, key: str, owner: Optional[str] = None):
        message = f"Lock '{key}' is held"
        if owner:
            message += f" by {owner}"
        super().__init__(message)
        self.key = key
        self.owner = owner


# Workflows

class StageError(BackendOpsError):
    """A workflow stage failed; carries the stage name."""

    def __init__(self, stage: str, message: str):
        super().__init__(f"{stage}: {message}")
        self.stage = stage


class ReleaseError(StageError):
    pass


class MigrationError(StageError):
    pass


class VerificationFailed(MigrationError):
    """Count mismatch after import when strict verification is enabled."""
