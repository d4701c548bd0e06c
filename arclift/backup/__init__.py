"""
Backup module for Arclift.

This module handles the core backup functionality including:
- Storage key naming
- Compression
- GPG encryption
- Storage (S3 and local)
- Orchestration and retention
"""

from .executor import BackupManager, BackupRunSummary, BackupError, NoProcessableFilesError, BackupCancelledError
from .compression import archive_directory, ArchiveResult, CompressionError
from .encryption import GPGEncryptor, EncryptionError
from .storage import Storage, S3Storage, LocalStorage, UploadResult, StorageError, create_storage
from .retention import split_retention

__all__ = [
    'BackupManager',
    'BackupRunSummary',
    'BackupError',
    'NoProcessableFilesError',
    'BackupCancelledError',
    'archive_directory',
    'ArchiveResult',
    'CompressionError',
    'GPGEncryptor',
    'EncryptionError',
    'Storage',
    'S3Storage',
    'LocalStorage',
    'UploadResult',
    'StorageError',
    'create_storage',
    'split_retention'
]
