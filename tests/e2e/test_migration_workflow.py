"""
Migration runs between two "hosts" on this machine (localhost and 127.0.0.1)
with a scripted document store; tar, copy and cleanup run for real.
"""

import os
from datetime import datetime
from unittest import mock

import pytest

from backend_ops.database.mongo_tools import MongoShellStore
from backend_ops.exceptions import (
    DatabaseNotFound,
    LockHeld,
    RemoteCommandFailed,
    SourceUnavailable,
    VerificationFailed,
)
from backend_ops.migration.orchestrator import MigrationOrchestrator, MigrationStatus, compare_counts
from backend_ops.remote.channel import CommandResult
from backend_ops.state.lock import HostLock, lock_key
from tests.consts import TEST_DATABASE
from tests.fixtures.ops_fixtures import FakeDocumentStore

SOURCE = "localhost"
TARGET = "127.0.0.1"


class TestMigrationWorkflow:

    @pytest.fixture(autouse=True)
    def setup(self, settings):
        self.settings = settings
        self.store = FakeDocumentStore({
            SOURCE: {TEST_DATABASE: {"users": 10, "books": 3}},
            TARGET: {TEST_DATABASE: {"users": 2, "reviews": 4}},
        })
        self.orchestrator = MigrationOrchestrator(settings, store=self.store)

    def _assert_no_temp_files(self):
        for directory in (self.settings.migration_source_dir,
                          self.settings.migration_remote_dir,
                          self.settings.migration_local_dir):
            if os.path.exists(directory):
                assert os.listdir(directory) == [], directory

    def test_successful_migration(self):
        job = self.orchestrator.run(SOURCE, TARGET, TEST_DATABASE)

        assert job.status is MigrationStatus.COMPLETE
        assert job.exit_code == 0
        assert job.export_counts == {"users": 10, "books": 3}
        assert job.report.ok
        assert self.store.collection_counts(self.orchestrator._host(TARGET), TEST_DATABASE)["users"] == 10
        # Same-named collections replaced with --drop
        assert self.store.restores[0][3] is True
        self._assert_no_temp_files()

    def test_count_mismatch_is_a_warning(self, caplog):
        self.store.restore_adjust = {"users": 9}

        with caplog.at_level("WARNING"):
            job = self.orchestrator.run(SOURCE, TARGET, TEST_DATABASE)

        assert job.status is MigrationStatus.COMPLETE
        assert job.report.mismatches == {"users": (10, 9)}
        assert any("users" in warning for warning in job.warnings)
        assert "count mismatch" in caplog.text

    def test_count_mismatch_fails_when_strict(self):
        self.store.restore_adjust = {"users": 9}

        job = self.orchestrator.run(SOURCE, TARGET, TEST_DATABASE, strict_verify=True)

        assert job.status is MigrationStatus.FAILED
        assert isinstance(job.error, VerificationFailed)
        assert job.exit_code == 1
        self._assert_no_temp_files()

    def test_import_failure_still_cleans_up(self, caplog):
        self.store.fail_restore = True

        with caplog.at_level("ERROR"):
            job = self.orchestrator.run(SOURCE, TARGET, TEST_DATABASE)

        assert job.status is MigrationStatus.FAILED
        assert isinstance(job.error, RemoteCommandFailed)
        assert "retry required" in caplog.text
        self._assert_no_temp_files()

    def test_unreachable_source(self):
        self.store.reachable = False

        job = self.orchestrator.run(SOURCE, TARGET, TEST_DATABASE)

        assert isinstance(job.error, SourceUnavailable)
        assert self.store.restores == []

    def test_missing_database(self):
        job = self.orchestrator.run(SOURCE, TARGET, "no_such_db")

        assert job.status is MigrationStatus.FAILED
        assert isinstance(job.error, DatabaseNotFound)
        assert self.store.restores == []

    def test_empty_database_is_allowed(self):
        self.store.databases[SOURCE]["empty_db"] = {}

        job = self.orchestrator.run(SOURCE, TARGET, "empty_db")

        assert job.status is MigrationStatus.COMPLETE
        assert job.report.ok

    def test_same_migration_cannot_run_twice(self):
        key = lock_key("migrate", SOURCE, TARGET, TEST_DATABASE)
        with HostLock(self.orchestrator._lock_channel, self.orchestrator._lock_host, key, self.settings):
            with pytest.raises(LockHeld):
                self.orchestrator.run(SOURCE, TARGET, TEST_DATABASE)

    def test_export_only_keeps_local_archive(self):
        job = self.orchestrator.export_only(SOURCE, TEST_DATABASE)

        assert job.succeeded
        assert job.archive_path.exists()
        assert job.archive_path.name.startswith("mongodb_export_")
        assert os.listdir(self.settings.migration_source_dir) == []

    def test_standalone_verify(self):
        report = self.orchestrator.verify(TARGET, TEST_DATABASE, expected={"users": 2, "reviews": 5})

        assert report.mismatches == {"reviews": (5, 4)}
        with pytest.raises(DatabaseNotFound):
            self.orchestrator.verify(TARGET, "missing")

    def test_interrupt_during_import_cleans_up_and_reraises(self, caplog):
        self.store.restore_error = KeyboardInterrupt()

        with caplog.at_level("ERROR"):
            with pytest.raises(KeyboardInterrupt):
                self.orchestrator.run(SOURCE, TARGET, TEST_DATABASE)

        assert "retry required" in caplog.text
        self._assert_no_temp_files()

        # Lease released and nothing left behind, so the retry goes through
        self.store.restore_error = None
        job = self.orchestrator.run(SOURCE, TARGET, TEST_DATABASE)
        assert job.status is MigrationStatus.COMPLETE

    def test_jobs_started_in_the_same_second_use_separate_paths(self):
        frozen = datetime(2024, 5, 1, 12, 0, 0)
        orchestrator = MigrationOrchestrator(self.settings, store=self.store, clock=lambda: frozen)

        first = orchestrator.export_only(SOURCE, TEST_DATABASE)
        second = orchestrator.export_only(SOURCE, TEST_DATABASE)

        assert first.succeeded and second.succeeded
        assert first.archive_path != second.archive_path
        assert first.archive_path.exists() and second.archive_path.exists()

    def test_unparseable_count_output_fails_the_job(self):
        channel = mock.Mock()
        channel.exec.side_effect = [
            CommandResult("mongosh", 0, "1\n"),
            CommandResult("mongosh", 0, f'["admin", "{TEST_DATABASE}"]\n'),
            CommandResult("mongosh", 0, "MongoServerError: not authorized on review_platform\n"),
        ]
        orchestrator = MigrationOrchestrator(self.settings, store=MongoShellStore(self.settings, channel=channel))

        job = orchestrator.run(SOURCE, TARGET, TEST_DATABASE)

        assert job.status is MigrationStatus.FAILED
        assert isinstance(job.error, RemoteCommandFailed)
        assert job.exit_code == 1
        self._assert_no_temp_files()


def test_compare_counts_reports_missing_and_unexpected():
    report = compare_counts("reviews", {"users": 10, "books": 3}, {"users": 10, "audit": 1})

    assert not report.ok
    assert report.missing == ["books"]
    assert report.unexpected == ["audit"]
    assert len(report.warnings()) == 2
