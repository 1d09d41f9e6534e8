"""
Backup module for schemavault.

Bookkeeping of full and incremental backups:
- BackupManager: register, list, chain, verify and expire backups
"""

from .manager import (
    BackupChain,
    BackupEntry,
    BackupManager,
    BackupMetadata,
    BackupTrigger,
    BackupType,
    CompressionInfo,
    DatabaseInfo,
    IncrementalBackup,
    calculate_checksum,
    format_bytes,
    generate_backup_filename,
    is_backup_expired,
)

__all__ = [
    "BackupChain",
    "BackupEntry",
    "BackupManager",
    "BackupMetadata",
    "BackupTrigger",
    "BackupType",
    "CompressionInfo",
    "DatabaseInfo",
    "IncrementalBackup",
    "calculate_checksum",
    "format_bytes",
    "generate_backup_filename",
    "is_backup_expired",
]
