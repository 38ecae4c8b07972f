"""Remote execution channel: copy files to a host and run commands on it."""
from .channel import (
    CommandResult,
    LocalChannel,
    RemoteChannel,
    RemoteHost,
    SSHChannel,
    get_channel,
)

__all__ = ["CommandResult", "LocalChannel", "RemoteChannel", "RemoteHost", "SSHChannel", "get_channel"]
