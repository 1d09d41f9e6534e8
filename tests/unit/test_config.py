"""
Unit tests for configuration loading and validation.
"""

import logging

import pytest

from backend.schemavault.audit import AuditStorageKind, TrackRule
from backend.schemavault.config import (
    AuditSettings,
    BackupConfig,
    ObservabilityConfig,
    S3Config,
    VaultConfig,
)
from backend.schemavault.logging_setup import setup_logging


class TestVaultConfig:
    """Tests for VaultConfig."""

    def test_defaults(self, monkeypatch):
        """Defaults work without any environment."""
        for name in ("SCHEMAVAULT_STATE_DIR", "AUDIT_ENABLED", "AUDIT_STORAGE", "LOG_LEVEL"):
            monkeypatch.delenv(name, raising=False)

        config = VaultConfig.from_env()

        assert config.storage.state_dir == ".yama"
        assert config.hashing.canonical is True
        assert config.audit.enabled is False
        assert config.trash.retention_days == 30
        assert config.backup.retention_policy == "30d"

    def test_from_env(self, monkeypatch):
        """Environment variables are picked up."""
        monkeypatch.setenv("SCHEMAVAULT_STATE_DIR", ".vault")
        monkeypatch.setenv("SCHEMAVAULT_CANONICAL_HASH", "false")
        monkeypatch.setenv("AUDIT_ENABLED", "true")
        monkeypatch.setenv("AUDIT_STORAGE", "file")
        monkeypatch.setenv("AUDIT_RETENTION", "1y")
        monkeypatch.setenv("TRASH_RETENTION_DAYS", "7")
        monkeypatch.setenv("BACKUP_COMPRESSION", "none")

        config = VaultConfig.from_env()

        assert config.storage.state_dir == ".vault"
        assert config.hashing.canonical is False
        assert config.audit.enabled is True
        assert config.audit.to_audit_config().retention_days == 365
        assert config.trash.retention_days == 7
        assert config.backup.compression == "none"

    def test_database_audit_requires_db_path(self):
        """Enabled database auditing needs AUDIT_DB_PATH."""
        config = VaultConfig(audit=AuditSettings(enabled=True, storage="database"))

        with pytest.raises(ValueError, match="AUDIT_DB_PATH"):
            config.validate()

    def test_s3_audit_requires_bucket(self):
        """Enabled S3 auditing needs S3_BUCKET."""
        config = VaultConfig(audit=AuditSettings(enabled=True, storage="s3"))

        with pytest.raises(ValueError, match="S3_BUCKET"):
            config.validate()

        VaultConfig(
            audit=AuditSettings(enabled=True, storage="s3"), s3=S3Config(bucket="audit")
        ).validate()

    def test_invalid_values(self):
        """Unknown storage kinds and bad compression are rejected."""
        with pytest.raises(ValueError, match="AUDIT_STORAGE"):
            VaultConfig(audit=AuditSettings(storage="mongo")).validate()
        with pytest.raises(ValueError, match="BACKUP_COMPRESSION"):
            VaultConfig(backup=BackupConfig(compression="zstd")).validate()
        with pytest.raises(ValueError, match="BACKUP_COMPRESSION_LEVEL"):
            VaultConfig(backup=BackupConfig(compression_level=0)).validate()

    def test_track_parsing(self):
        """AUDIT_TRACK parses into track rules."""
        settings = AuditSettings(enabled=True, storage="file", track="User:create|update, Post:all,Tag")

        audit = settings.to_audit_config()

        assert audit.storage == AuditStorageKind.FILE
        assert audit.track == (
            TrackRule("User", ("create", "update")),
            TrackRule("Post", ("all",)),
            TrackRule("Tag", ("all",)),
        )
        assert AuditSettings().to_audit_config().track is None

    def test_log_config_does_not_log_secrets(self, caplog):
        """Secrets stay out of the configuration log line."""
        config = VaultConfig(s3=S3Config(bucket="b", secret_access_key="s3cr3t"))

        with caplog.at_level(logging.INFO):
            config.log_config()

        assert "Schemavault configuration loaded" in caplog.text
        assert all("s3cr3t" not in str(record.__dict__) for record in caplog.records)


class TestSetupLogging:
    """Tests for setup_logging."""

    def test_json_format(self):
        """JSON format installs the JSON formatter."""
        import json_log_formatter

        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        try:
            setup_logging(
                VaultConfig(observability=ObservabilityConfig(log_level="DEBUG", log_format="json"))
            )

            assert root.level == logging.DEBUG
            assert isinstance(root.handlers[0].formatter, json_log_formatter.JSONFormatter)
            assert logging.getLogger("botocore").level == logging.WARNING
        finally:
            root.handlers = saved_handlers
            root.setLevel(saved_level)
