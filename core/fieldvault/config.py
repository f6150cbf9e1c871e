"""
Configuration management for FieldVault.

All configuration is done via environment variables - no config files on device.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Secrets are never logged or exposed in error messages
    - Intervals are expressed in seconds, sizes in bytes

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Deprecate settings by logging warnings but continuing to support them
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)

HOUR = 60 * 60
DAY = 24 * HOUR


class StorageBackend(Enum):
    """Supported key-value persistence backends."""

    SQLITE = "sqlite"
    MEMORY = "memory"


class TransportBackend(Enum):
    """Supported network transports."""

    MEMORY = "memory"
    S3 = "s3"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass(frozen=True)
class StorageConfig:
    """Local persistence configuration.

    Attributes:
        backend: Key-value backend for persisted component state
        data_dir: Directory for SQLite databases
        db_filename: SQLite file holding the persisted keys
        data_filename: SQLite file holding application collections
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
    """

    backend: StorageBackend = StorageBackend.SQLITE
    data_dir: str = "./fieldvault-data"
    db_filename: str = "fieldvault.db"
    data_filename: str = "appdata.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        backend_str = os.getenv("FIELDVAULT_STORAGE", "sqlite").lower()
        try:
            backend = StorageBackend(backend_str)
        except ValueError:
            raise ValueError(
                f"Invalid FIELDVAULT_STORAGE '{backend_str}'. Must be one of: sqlite, memory"
            )
        return cls(
            backend=backend,
            data_dir=os.getenv("FIELDVAULT_DATA_DIR", "./fieldvault-data"),
            db_filename=os.getenv("FIELDVAULT_DB_FILE", "fieldvault.db"),
            data_filename=os.getenv("FIELDVAULT_APPDATA_FILE", "appdata.db"),
            wal_mode=_env_bool("SQLITE_WAL_MODE", "true"),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
        )


@dataclass(frozen=True)
class SnapshotConfig:
    """Snapshot store configuration.

    Attributes:
        history_cap: Maximum retained backup history entries
        schema_version: Schema version stamped on new snapshots
    """

    history_cap: int = 7
    schema_version: str = "1.0.0"

    @classmethod
    def from_env(cls) -> SnapshotConfig:
        """Load configuration from environment variables."""
        return cls(
            history_cap=int(os.getenv("BACKUP_HISTORY_CAP", "7")),
            schema_version=os.getenv("BACKUP_SCHEMA_VERSION", "1.0.0"),
        )


@dataclass(frozen=True)
class ValidationConfig:
    """Integrity validator thresholds.

    Attributes:
        size_warning_bytes: Encoded size above which a warning is raised
        collection_warning_count: Item count above which a collection is flagged
    """

    size_warning_bytes: int = 1_000_000
    collection_warning_count: int = 100

    @classmethod
    def from_env(cls) -> ValidationConfig:
        """Load configuration from environment variables."""
        return cls(
            size_warning_bytes=int(os.getenv("VALIDATION_SIZE_WARNING_BYTES", "1000000")),
            collection_warning_count=int(os.getenv("VALIDATION_COLLECTION_WARNING", "100")),
        )


@dataclass(frozen=True)
class VersionConfig:
    """Version ledger configuration.

    Attributes:
        max_versions: Maximum retained version records
    """

    max_versions: int = 10

    @classmethod
    def from_env(cls) -> VersionConfig:
        """Load configuration from environment variables."""
        return cls(max_versions=int(os.getenv("VERSION_MAX_RECORDS", "10")))


@dataclass(frozen=True)
class S3Config:
    """S3 configuration for the remote snapshot store.

    Attributes:
        bucket: S3 bucket name
        region: AWS region
        endpoint_url: Custom endpoint URL (for MinIO)
        prefix: Key prefix for snapshots and manifests
        device_id: Device namespace inside the prefix
        access_key_id: AWS access key ID (optional, uses AWS credential chain)
        secret_access_key: AWS secret access key (optional)
    """

    bucket: str = "fieldvault-sync"
    region: str = "us-east-1"
    endpoint_url: str | None = None
    prefix: str = "devices"
    device_id: str = "default"
    access_key_id: str | None = None
    secret_access_key: str | None = None

    @classmethod
    def from_env(cls) -> S3Config:
        """Load configuration from environment variables."""
        return cls(
            bucket=os.getenv("S3_BUCKET", "fieldvault-sync"),
            region=os.getenv("S3_REGION", os.getenv("AWS_REGION", "us-east-1")),
            endpoint_url=os.getenv("S3_ENDPOINT"),
            prefix=os.getenv("S3_PREFIX", "devices"),
            device_id=os.getenv("FIELDVAULT_DEVICE_ID", "default"),
            access_key_id=os.getenv("AWS_ACCESS_KEY_ID"),
            secret_access_key=os.getenv("AWS_SECRET_ACCESS_KEY"),
        )


@dataclass(frozen=True)
class SyncConfig:
    """Sync coordinator configuration.

    Attributes:
        transport: Which transport pushes snapshots to the remote
        timeout_seconds: Upper bound on each transport call
        interval_seconds: Interval between scheduled syncs
    """

    transport: TransportBackend = TransportBackend.MEMORY
    timeout_seconds: float = 30.0
    interval_seconds: int = 4 * HOUR

    @classmethod
    def from_env(cls) -> SyncConfig:
        """Load configuration from environment variables."""
        transport_str = os.getenv("SYNC_TRANSPORT", "memory").lower()
        try:
            transport = TransportBackend(transport_str)
        except ValueError:
            raise ValueError(f"Invalid SYNC_TRANSPORT '{transport_str}'. Must be one of: memory, s3")
        return cls(
            transport=transport,
            timeout_seconds=float(os.getenv("SYNC_TIMEOUT_SECONDS", "30")),
            interval_seconds=int(os.getenv("SYNC_INTERVAL_SECONDS", str(4 * HOUR))),
        )


@dataclass(frozen=True)
class OfflineConfig:
    """Offline queue configuration.

    Attributes:
        max_retries: Failed attempts before an operation becomes terminal
        retry_delay_seconds: Base delay before retrying a failed operation
        retry_backoff_max_seconds: Upper bound on the exponential retry delay
        drain_interval_seconds: Interval between scheduled drains
    """

    max_retries: int = 3
    retry_delay_seconds: float = 10.0
    retry_backoff_max_seconds: float = 300.0
    drain_interval_seconds: int = 5 * 60

    @classmethod
    def from_env(cls) -> OfflineConfig:
        """Load configuration from environment variables."""
        return cls(
            max_retries=int(os.getenv("OFFLINE_MAX_RETRIES", "3")),
            retry_delay_seconds=float(os.getenv("OFFLINE_RETRY_DELAY_SECONDS", "10")),
            retry_backoff_max_seconds=float(os.getenv("OFFLINE_RETRY_BACKOFF_MAX", "300")),
            drain_interval_seconds=int(os.getenv("OFFLINE_DRAIN_INTERVAL_SECONDS", "300")),
        )


@dataclass(frozen=True)
class SchedulerConfig:
    """Scheduler configuration.

    Attributes:
        enabled: Whether the background scheduler loop runs
        tick_seconds: Interval between trigger evaluations
        backup_check_seconds: Interval between backup due-checks
        validation_interval_seconds: Interval between scheduled validations
        connectivity_probe_seconds: Interval between connectivity probes
        daily: Default for the daily backup cadence
        weekly: Default for the weekly backup cadence
        monthly: Default for the monthly backup cadence
    """

    enabled: bool = True
    tick_seconds: float = 60.0
    backup_check_seconds: int = HOUR
    validation_interval_seconds: int = DAY
    connectivity_probe_seconds: int = 60
    daily: bool = True
    weekly: bool = True
    monthly: bool = True

    @classmethod
    def from_env(cls) -> SchedulerConfig:
        """Load configuration from environment variables."""
        return cls(
            enabled=_env_bool("SCHEDULER_ENABLED", "true"),
            tick_seconds=float(os.getenv("SCHEDULER_TICK_SECONDS", "60")),
            backup_check_seconds=int(os.getenv("BACKUP_CHECK_SECONDS", str(HOUR))),
            validation_interval_seconds=int(os.getenv("VALIDATION_INTERVAL_SECONDS", str(DAY))),
            connectivity_probe_seconds=int(os.getenv("CONNECTIVITY_PROBE_SECONDS", "60")),
            daily=_env_bool("BACKUP_DAILY", "true"),
            weekly=_env_bool("BACKUP_WEEKLY", "true"),
            monthly=_env_bool("BACKUP_MONTHLY", "true"),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class FieldVaultConfig:
    """Complete FieldVault configuration.

    This aggregates all configuration sections and provides validation.

    Attributes:
        storage: Local persistence configuration
        snapshot: Snapshot store configuration
        validation: Integrity validator thresholds
        version: Version ledger configuration
        sync: Sync coordinator configuration
        s3: S3 configuration (if sync.transport is S3)
        offline: Offline queue configuration
        scheduler: Scheduler configuration
        observability: Logging configuration
    """

    storage: StorageConfig = field(default_factory=StorageConfig)
    snapshot: SnapshotConfig = field(default_factory=SnapshotConfig)
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    version: VersionConfig = field(default_factory=VersionConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    s3: S3Config = field(default_factory=S3Config)
    offline: OfflineConfig = field(default_factory=OfflineConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> FieldVaultConfig:
        """Load complete configuration from environment variables.

        Returns:
            FieldVaultConfig with all sections populated from environment.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        config = cls(
            storage=StorageConfig.from_env(),
            snapshot=SnapshotConfig.from_env(),
            validation=ValidationConfig.from_env(),
            version=VersionConfig.from_env(),
            sync=SyncConfig.from_env(),
            s3=S3Config.from_env(),
            offline=OfflineConfig.from_env(),
            scheduler=SchedulerConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.snapshot.history_cap < 1:
            raise ValueError("BACKUP_HISTORY_CAP must be at least 1")
        if self.version.max_versions < 1:
            raise ValueError("VERSION_MAX_RECORDS must be at least 1")
        if self.offline.max_retries < 1:
            raise ValueError("OFFLINE_MAX_RETRIES must be at least 1")
        if self.sync.timeout_seconds <= 0:
            raise ValueError("SYNC_TIMEOUT_SECONDS must be positive")
        if self.scheduler.tick_seconds <= 0:
            raise ValueError("SCHEDULER_TICK_SECONDS must be positive")

        if self.sync.transport == TransportBackend.S3 and not self.s3.bucket:
            raise ValueError("S3_BUCKET is required when SYNC_TRANSPORT=s3")

        if self.storage.backend == StorageBackend.SQLITE and not os.path.exists(
            self.storage.data_dir
        ):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on first write."
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "FieldVault configuration loaded",
            extra={
                "storage_backend": self.storage.backend.value,
                "data_dir": self.storage.data_dir,
                "history_cap": self.snapshot.history_cap,
                "max_versions": self.version.max_versions,
                "sync_transport": self.sync.transport.value,
                "sync_interval_seconds": self.sync.interval_seconds,
                "s3_bucket": self.s3.bucket
                if self.sync.transport == TransportBackend.S3
                else None,
                "offline_max_retries": self.offline.max_retries,
                "scheduler_enabled": self.scheduler.enabled,
                "log_level": self.observability.log_level,
            },
        )
