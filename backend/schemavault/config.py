"""
Configuration management for schemavault.

All configuration comes from environment variables. This module provides
typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Secrets are never logged or exposed in error messages
    - Validation errors name the environment variable to fix

How to change safely:
    - Add new settings with defaults that keep existing projects working
    - Changing SCHEMAVAULT_CANONICAL_HASH on an existing project changes
      every computed hash; treat it as a storage migration
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

from .audit.log import AuditConfig, AuditStorageKind, TrackRule

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass(frozen=True)
class StorageConfig:
    """Project storage layout.

    Attributes:
        state_dir: Directory below the project root holding all state
    """

    state_dir: str = ".yama"

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(state_dir=os.getenv("SCHEMAVAULT_STATE_DIR", ".yama"))


@dataclass(frozen=True)
class HashingConfig:
    """Schema hashing configuration.

    Attributes:
        canonical: Sort object keys before hashing (False keeps insertion
            order, matching hashes computed before canonicalization)
    """

    canonical: bool = True

    @classmethod
    def from_env(cls) -> HashingConfig:
        """Load configuration from environment variables."""
        return cls(canonical=_env_bool("SCHEMAVAULT_CANONICAL_HASH", "true"))


@dataclass(frozen=True)
class S3Config:
    """S3 configuration for audit storage.

    Attributes:
        bucket: S3 bucket name
        region: AWS region
        endpoint_url: Custom endpoint URL (for MinIO)
        audit_prefix: Prefix for audit entry objects
        access_key_id: AWS access key ID (optional, uses AWS credential chain)
        secret_access_key: AWS secret access key (optional)
    """

    bucket: str | None = None
    region: str = "us-east-1"
    endpoint_url: str | None = None
    audit_prefix: str = "audit"
    access_key_id: str | None = None
    secret_access_key: str | None = None

    @classmethod
    def from_env(cls) -> S3Config:
        """Load configuration from environment variables."""
        return cls(
            bucket=os.getenv("S3_BUCKET"),
            region=os.getenv("S3_REGION", os.getenv("AWS_REGION", "us-east-1")),
            endpoint_url=os.getenv("S3_ENDPOINT"),
            audit_prefix=os.getenv("S3_AUDIT_PREFIX", "audit"),
            access_key_id=os.getenv("AWS_ACCESS_KEY_ID"),
            secret_access_key=os.getenv("AWS_SECRET_ACCESS_KEY"),
        )


@dataclass(frozen=True)
class AuditSettings:
    """Audit policy and storage location.

    Attributes:
        enabled: Whether auditing is on
        storage: Backend kind (database, s3, file)
        retention: Retention policy string, e.g. "90d"
        track: Comma-separated "Entity:op|op" rules; empty tracks everything
        db_path: SQLite file for database storage (relative to state dir)
        file_path: JSON-lines file for file storage (relative to state dir)
    """

    enabled: bool = False
    storage: str = "database"
    retention: str | None = None
    track: str = ""
    db_path: str | None = None
    file_path: str = "audit/audit.jsonl"

    @classmethod
    def from_env(cls) -> AuditSettings:
        """Load configuration from environment variables."""
        return cls(
            enabled=_env_bool("AUDIT_ENABLED", "false"),
            storage=os.getenv("AUDIT_STORAGE", "database").lower(),
            retention=os.getenv("AUDIT_RETENTION"),
            track=os.getenv("AUDIT_TRACK", ""),
            db_path=os.getenv("AUDIT_DB_PATH"),
            file_path=os.getenv("AUDIT_FILE_PATH", "audit/audit.jsonl"),
        )

    def to_audit_config(self) -> AuditConfig:
        """Build the AuditConfig policy object.

        AUDIT_TRACK format: "User:create|update,Post:all".
        """
        rules = []
        for item in filter(None, (part.strip() for part in self.track.split(","))):
            entity, _, ops = item.partition(":")
            operations = tuple(op.strip() for op in ops.split("|") if op.strip()) or ("all",)
            rules.append(TrackRule(entity=entity.strip(), operations=operations))
        return AuditConfig(
            enabled=self.enabled,
            track=tuple(rules) if rules else None,
            retention=self.retention,
            storage=AuditStorageKind(self.storage),
        )


@dataclass(frozen=True)
class BackupConfig:
    """Backup bookkeeping configuration.

    Attributes:
        retention_policy: Default retention for new backups
        compression: Compression algorithm for stored artifacts (gzip, none)
        compression_level: gzip level 1-9
        extension: File extension of backup artifacts
    """

    retention_policy: str = "30d"
    compression: str = "gzip"
    compression_level: int = 6
    extension: str = "dump"

    @classmethod
    def from_env(cls) -> BackupConfig:
        """Load configuration from environment variables."""
        return cls(
            retention_policy=os.getenv("BACKUP_RETENTION", "30d"),
            compression=os.getenv("BACKUP_COMPRESSION", "gzip"),
            compression_level=int(os.getenv("BACKUP_COMPRESSION_LEVEL", "6")),
            extension=os.getenv("BACKUP_EXTENSION", "dump"),
        )


@dataclass(frozen=True)
class TrashConfig:
    """Trash configuration.

    Attributes:
        retention_days: Days a trashed item stays restorable
    """

    retention_days: int = 30

    @classmethod
    def from_env(cls) -> TrashConfig:
        """Load configuration from environment variables."""
        return cls(retention_days=int(os.getenv("TRASH_RETENTION_DAYS", "30")))


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "text"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "text"),
        )


@dataclass
class VaultConfig:
    """Complete schemavault configuration.

    Attributes:
        storage: Project storage layout
        hashing: Schema hashing mode
        audit: Audit policy and storage
        s3: S3 configuration
        backup: Backup configuration
        trash: Trash configuration
        observability: Logging configuration
    """

    storage: StorageConfig = field(default_factory=StorageConfig)
    hashing: HashingConfig = field(default_factory=HashingConfig)
    audit: AuditSettings = field(default_factory=AuditSettings)
    s3: S3Config = field(default_factory=S3Config)
    backup: BackupConfig = field(default_factory=BackupConfig)
    trash: TrashConfig = field(default_factory=TrashConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> VaultConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        config = cls(
            storage=StorageConfig.from_env(),
            hashing=HashingConfig.from_env(),
            audit=AuditSettings.from_env(),
            s3=S3Config.from_env(),
            backup=BackupConfig.from_env(),
            trash=TrashConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        storage_kinds = {kind.value for kind in AuditStorageKind}
        if self.audit.storage not in storage_kinds:
            raise ValueError(
                f"Invalid AUDIT_STORAGE '{self.audit.storage}'. "
                f"Must be one of: {', '.join(sorted(storage_kinds))}"
            )

        if self.audit.enabled:
            if self.audit.storage == AuditStorageKind.DATABASE.value and not self.audit.db_path:
                raise ValueError("AUDIT_DB_PATH is required when AUDIT_STORAGE=database")
            if self.audit.storage == AuditStorageKind.S3.value and not self.s3.bucket:
                raise ValueError("S3_BUCKET is required when AUDIT_STORAGE=s3")

        if self.trash.retention_days < 0:
            raise ValueError("TRASH_RETENTION_DAYS must not be negative")

        if self.backup.compression not in ("gzip", "none"):
            raise ValueError(
                f"Invalid BACKUP_COMPRESSION '{self.backup.compression}'. Must be one of: gzip, none"
            )

        if not 1 <= self.backup.compression_level <= 9:
            raise ValueError("BACKUP_COMPRESSION_LEVEL must be between 1 and 9")

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Schemavault configuration loaded",
            extra={
                "state_dir": self.storage.state_dir,
                "canonical_hash": self.hashing.canonical,
                "audit_enabled": self.audit.enabled,
                "audit_storage": self.audit.storage,
                "audit_retention": self.audit.retention,
                "s3_bucket": self.s3.bucket,
                "backup_retention": self.backup.retention_policy,
                "backup_compression": self.backup.compression,
                "trash_retention_days": self.trash.retention_days,
                "log_level": self.observability.log_level,
            },
        )
