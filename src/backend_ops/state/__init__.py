"""Cross-invocation locking for release and migration runs."""
from .lock import HostLock, lock_key

__all__ = ["HostLock", "lock_key"]
