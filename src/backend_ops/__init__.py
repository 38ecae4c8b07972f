"""
backend-ops: release and database migration orchestration for the backend host.

Two workflows are exposed:
- ReleaseManager: replace the running artifact on a host with backup and rollback
- MigrationOrchestrator: move a MongoDB database between two hosts with verification
"""

__version__ = "0.1.0"
