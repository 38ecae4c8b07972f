"""Snapshot and restore of application directories and databases."""
from .manager import Backup, BackupKind, BackupManager, archive_name, parse_archive_name

__all__ = ["Backup", "BackupKind", "BackupManager", "archive_name", "parse_archive_name"]
