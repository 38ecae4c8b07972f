from .orchestrator import MigrationJob, MigrationOrchestrator, MigrationStatus, VerifyReport, compare_counts

__all__ = ["MigrationJob", "MigrationOrchestrator", "MigrationStatus", "VerifyReport", "compare_counts"]
