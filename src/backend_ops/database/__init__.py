"""Document database access used by backups and migrations."""
from .mongo_tools import DocumentStore, MongoShellStore

__all__ = ["DocumentStore", "MongoShellStore"]
