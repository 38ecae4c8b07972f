# cli.py
import logging
import sys

import click

from backend_ops.config.settings import get_settings_with_env_file
from backend_ops.exceptions import BackendOpsError, LockHeld
from backend_ops.logging_setup import configure_logging
from backend_ops.migration.orchestrator import MigrationOrchestrator
from backend_ops.release.manager import ReleaseManager
from backend_ops.remote.channel import RemoteHost

logger = logging.getLogger(__name__)

EXIT_FAILED = 1
EXIT_REFUSED = 2


@click.group()
@click.option("--env-file", type=click.Path(dir_okay=False), default=None,
              help="Read settings from this .env file")
@click.option("--log-level", default=None, help="Override the configured log level")
@click.pass_context
def cli(ctx, env_file, log_level):
    """Backend release and database migration tooling"""
    ctx.ensure_object(dict)
    if "settings" not in ctx.obj:
        ctx.obj["settings"] = get_settings_with_env_file(env_file)
    settings = ctx.obj["settings"]
    configure_logging(log_level or settings.log_level)


def _release_manager(ctx, host) -> ReleaseManager:
    settings = ctx.obj["settings"]
    return ReleaseManager(RemoteHost.from_settings(host, settings), settings)


@cli.command()
@click.pass_context
def show_config(ctx):
    """Show current configuration"""
    settings = ctx.obj["settings"]

    print("Current Configuration:")
    print(f"  App name: {settings.app_name}")
    print(f"  AWS Region: {settings.aws_region}")
    print(f"  AWS Endpoint: {settings.aws_endpoint_url}")
    print(f"  Artifact: s3://{settings.artifact_bucket}/{settings.artifact_key}")
    print(f"  Live directory: {settings.live_path}")
    print(f"  Staging directory: {settings.staging_path}")
    print(f"  Backup directory: {settings.backup_dir} (keep {settings.app_retention_count})")
    print(f"  Database backup directory: {settings.db_backup_dir} (keep {settings.db_retention_count})")
    print(f"  SSH: {settings.ssh_user} with key {settings.private_key_path}")
    print(f"  Health URL: {settings.health_url} "
          f"({settings.health_max_attempts} attempts, {settings.health_initial_delay}s "
          f"x{settings.health_backoff_multiplier})"
          f"{', run on the host' if settings.health_check_from_host else ''}")
    print(f"  Strict migration verify: {settings.strict_verify}")


# ----------------------------------------------------------------------
# release
# ----------------------------------------------------------------------

@cli.group()
def release():
    """Deploy, back up and restore the backend on a host"""
    pass


@release.command()
@click.argument("host")
@click.argument("artifact_ref", required=False)
@click.pass_context
def deploy(ctx, host, artifact_ref):
    """Deploy ARTIFACT_REF (default: the configured artifact key) to HOST"""
    manager = _release_manager(ctx, host)
    try:
        result = manager.deploy(artifact_ref)
    except LockHeld as e:
        print(f"❌ {e}")
        sys.exit(EXIT_REFUSED)
    except BackendOpsError as e:
        # Raised before the pipeline starts, so nothing on the host was changed
        print(f"❌ Deployment refused: {e}")
        sys.exit(EXIT_REFUSED)

    deployment = result.deployment
    if result.succeeded:
        print(f"✅ Deployed {deployment.artifact_id} to {host}")
    else:
        print(f"❌ Deployment {deployment.status.value}: {deployment.error_message}")
        if result.rollback_health is not None:
            print(f"   Rollback {result.rollback_health.summary()}")
    sys.exit(result.exit_code)


@release.command()
@click.argument("host")
@click.option("--database", default=None, help="Back up this database instead of the application directory")
@click.pass_context
def backup(ctx, host, database):
    """Snapshot the application directory (or a database) on HOST"""
    manager = _release_manager(ctx, host)
    try:
        snapshot = manager.backup_database(database) if database else manager.backup()
    except LockHeld as e:
        print(f"❌ {e}")
        sys.exit(EXIT_REFUSED)
    except BackendOpsError as e:
        print(f"❌ Backup failed: {e}")
        sys.exit(EXIT_FAILED)
    print(f"✅ Backup created: {snapshot.backup_id}")


@release.command()
@click.argument("host")
@click.argument("backup_id")
@click.pass_context
def restore(ctx, host, backup_id):
    """Restore BACKUP_ID on HOST"""
    manager = _release_manager(ctx, host)
    try:
        health = manager.restore(backup_id)
    except LockHeld as e:
        print(f"❌ {e}")
        sys.exit(EXIT_REFUSED)
    except BackendOpsError as e:
        print(f"❌ Restore failed: {e}")
        sys.exit(EXIT_FAILED)

    if health is not None and not health.passed:
        print(f"❌ Restored {backup_id} but {health.summary()}")
        sys.exit(EXIT_FAILED)
    print(f"✅ Restored {backup_id}")


@release.command()
@click.argument("host")
@click.pass_context
def backups(ctx, host):
    """List backups on HOST, newest first"""
    manager = _release_manager(ctx, host)
    try:
        found = manager.list_backups()
    except BackendOpsError as e:
        print(f"❌ {e}")
        sys.exit(EXIT_FAILED)
    if not found:
        print("No backups found")
        return
    for item in found:
        print(f"{item.backup_id}\t{item.kind.value}\t{item.timestamp.isoformat()}")


# ----------------------------------------------------------------------
# migrate
# ----------------------------------------------------------------------

@cli.group()
def migrate():
    """Move a MongoDB database between hosts"""
    pass


@migrate.command()
@click.argument("source")
@click.argument("target")
@click.argument("database")
@click.option("--strict-verify/--no-strict-verify", default=None,
              help="Fail when imported counts differ from the export")
@click.pass_context
def run(ctx, source, target, database, strict_verify):
    """Migrate DATABASE from SOURCE to TARGET"""
    orchestrator = MigrationOrchestrator(ctx.obj["settings"])
    try:
        job = orchestrator.run(source, target, database, strict_verify=strict_verify)
    except LockHeld as e:
        print(f"❌ {e}")
        sys.exit(EXIT_FAILED)
    except BackendOpsError as e:
        print(f"❌ Migration refused: {e}")
        sys.exit(EXIT_FAILED)

    if job.succeeded:
        print(f"✅ Migration {job.job_id} complete")
        if job.report is not None:
            print(f"   {job.report.summary()}")
        for warning in job.warnings:
            print(f"⚠️  {warning}")
    else:
        print(f"❌ Migration failed: {job.error}")
    sys.exit(job.exit_code)


@migrate.command()
@click.argument("target")
@click.argument("database")
@click.pass_context
def verify(ctx, target, database):
    """Print collection counts of DATABASE on TARGET"""
    orchestrator = MigrationOrchestrator(ctx.obj["settings"])
    try:
        report = orchestrator.verify(target, database)
    except BackendOpsError as e:
        print(f"❌ {e}")
        sys.exit(EXIT_FAILED)
    print(f"Collections in {database}:")
    for name, count in sorted(report.actual.items()):
        print(f"  {name}: {count}")


@migrate.command()
@click.argument("source")
@click.argument("database")
@click.pass_context
def export(ctx, source, database):
    """Export DATABASE on SOURCE to the local migration directory"""
    orchestrator = MigrationOrchestrator(ctx.obj["settings"])
    try:
        job = orchestrator.export_only(source, database)
    except LockHeld as e:
        print(f"❌ {e}")
        sys.exit(EXIT_FAILED)
    except BackendOpsError as e:
        print(f"❌ Export refused: {e}")
        sys.exit(EXIT_FAILED)
    if not job.succeeded:
        print(f"❌ Export failed: {job.error}")
        sys.exit(job.exit_code)
    print(f"✅ Export saved to {job.archive_path}")


if __name__ == "__main__":
    cli()
