# src/backend_ops/config/settings.py
import posixpath
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Single source of truth for all release and migration settings.

    Configuration precedence:
    1. Environment variables (highest priority, prefixed with BACKEND_OPS_)
    2. .env file (if exists)
    3. Default values in this class (lowest priority)

    Usage:
        from backend_ops.config.settings import get_settings
        settings = get_settings()
        live_dir = settings.live_path
    """

    # Application Settings
    app_name: str = Field(
        default="backend-api",
        description="Application name (also the pm2 process name)"
    )

    # AWS Core Settings
    aws_region: str = Field(
        default="us-east-1",
        validation_alias=AliasChoices("BACKEND_OPS_AWS_REGION", "AWS_DEFAULT_REGION", "aws_region"),
    )

    aws_endpoint_url: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("BACKEND_OPS_AWS_ENDPOINT_URL", "AWS_ENDPOINT_URL", "aws_endpoint_url"),
    )

    # Artifact Store
    artifact_bucket: Optional[str] = Field(
        default=None,
        description="S3 bucket holding deployable backend bundles"
    )

    artifact_key: str = Field(
        default="backend-latest.tar.gz",
        description="Object key deployed when no artifact reference is given"
    )

    # Host Layout
    app_root: str = Field(
        default="/opt/backend-app",
        description="Application root on the backend host"
    )

    live_dir_name: str = Field(default="current")
    staging_dir_name: str = Field(default="new_deployment")

    backup_dir: str = Field(
        default="/opt/backend-app/backups",
        description="Directory holding application snapshots on the host"
    )

    db_backup_dir: str = Field(
        default="/opt/backend-app/backups/mongodb",
        description="Directory holding database snapshots on the host"
    )

    # Retention
    app_retention_count: int = Field(default=5, description="Application snapshots to keep")
    db_retention_count: int = Field(default=3, description="Database snapshots to keep")

    backup_bucket: Optional[str] = Field(
        default=None,
        description="Optional S3 bucket receiving offsite copies of database snapshots"
    )

    # SSH Channel
    ssh_user: str = Field(default="ec2-user")
    ssh_key_path: Optional[str] = Field(
        default=None,
        description="Private key used for ssh/scp (defaults to ~/.ssh/review-platform-backend)"
    )
    ssh_port: int = Field(default=22)
    ssh_connect_timeout: int = Field(default=10, description="Seconds before a connection attempt is abandoned")

    command_timeout: float = Field(default=600.0, description="Upper bound for any single remote command")
    transfer_timeout: float = Field(default=900.0, description="Upper bound for a single file copy")
    transfer_attempts: int = Field(default=3, description="Copy attempts on transient transport errors")
    transfer_retry_delay: float = Field(default=5.0)

    # Process Management
    build_commands: List[str] = Field(
        default_factory=lambda: ["npm ci --production", "npm run build"],
        description="Commands run inside the staging directory"
    )
    stop_command: str = Field(default="pm2 stop backend-api || true")
    start_command: str = Field(default="pm2 start ecosystem.config.js")

    # Health Gate
    health_url: str = Field(
        default="http://{host}:5000/health",
        description=(
            "Liveness URL template, {host} is replaced with the host address. "
            "Set BACKEND_OPS_HEALTH_URL to a fixed URL (e.g. an ssh tunnel on localhost) "
            "when port 5000 is closed to the operator"
        )
    )
    health_check_from_host: bool = Field(
        default=False,
        description="Run the liveness GET with curl on the host, against {host}=localhost"
    )
    health_max_attempts: int = Field(default=5)
    health_initial_delay: float = Field(default=2.0)
    health_backoff_multiplier: float = Field(default=2.0)
    health_max_delay: float = Field(default=30.0)
    health_request_timeout: float = Field(default=5.0)

    # Migration
    migration_local_dir: str = Field(
        default="/tmp/mongodb_migration",
        description="Local staging directory for exported archives"
    )
    migration_source_dir: str = Field(
        default="/tmp/mongodb_export",
        description="Working directory on the source host"
    )
    migration_remote_dir: str = Field(
        default="/tmp/mongodb_import",
        description="Working directory on the target host"
    )
    strict_verify: bool = Field(
        default=False,
        description="Fail the migration when target counts differ from the export"
    )

    # Locking
    lock_dir: str = Field(default="/tmp/backend-ops-locks")
    lock_ttl_seconds: int = Field(default=3600, description="Leases older than this are treated as stale")

    # MongoDB tooling
    mongosh_bin: str = Field(default="mongosh")
    mongodump_bin: str = Field(default="mongodump")
    mongorestore_bin: str = Field(default="mongorestore")

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level"
    )

    @field_validator("app_retention_count", "db_retention_count", "health_max_attempts", "transfer_attempts")
    @classmethod
    def validate_positive(cls, v, info):
        """Retention counts and attempt counts must allow at least one item."""
        if v < 1:
            raise ValueError(f"{info.field_name} must be >= 1, got {v}")
        return v

    @field_validator("health_backoff_multiplier")
    @classmethod
    def validate_multiplier(cls, v):
        if v < 1:
            raise ValueError(f"health_backoff_multiplier must be >= 1, got {v}")
        return v

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, v):
        return v.upper()

    @property
    def live_path(self) -> str:
        """Path of the running artifact on the host."""
        return posixpath.join(self.app_root, self.live_dir_name)

    @property
    def staging_path(self) -> str:
        return posixpath.join(self.app_root, self.staging_dir_name)

    @property
    def private_key_path(self) -> Path:
        if self.ssh_key_path:
            return Path(self.ssh_key_path).expanduser()
        return Path.home() / ".ssh" / "review-platform-backend"

    def health_url_for(self, host: str) -> str:
        return self.health_url.format(host=host)

    model_config = SettingsConfigDict(
        env_prefix="BACKEND_OPS_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    This ensures we only create one Settings instance per process.
    """
    return Settings()


def get_settings_with_env_file(env_file: Optional[str] = None) -> Settings:
    """Build settings from a specific .env file instead of the default one."""
    if env_file:
        return Settings(_env_file=env_file)
    return get_settings()
