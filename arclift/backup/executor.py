"""
Backup manager - orchestrates backups, listing and retention.

Workflow per configured directory:
1. Archive the directory (if archive-dirs is enabled)
2. Encrypt the archive (if encryption is enabled)
3. Upload the archive, or the raw directory when not archiving
4. Cleanup temporary files
5. Send a success or failure notification

A failing directory never stops the remaining ones.
"""

import os
import shutil
import logging
import tempfile
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from .compression import archive_directory, get_archive_size
from .encryption import GPGEncryptor
from .keys import sort_timestamps
from .retention import split_retention
from .storage import Storage, UploadResult

logger = logging.getLogger(__name__)


class BackupError(Exception):
    """Raised when a directory cannot be backed up."""
    pass


class NoProcessableFilesError(BackupError):
    """Raised when archiving a directory produced no files."""
    pass


class BackupCancelledError(Exception):
    """Raised by a cancellation check to abort the running backup."""
    pass


@dataclass
class BackupRunSummary:
    """Per-directory outcome of one backup run."""
    succeeded: Dict[str, str] = field(default_factory=dict)
    failed: Dict[str, Exception] = field(default_factory=dict)

    @property
    def all_failed(self) -> bool:
        return bool(self.failed) and not self.succeeded


class BackupManager:
    """
    Runs backups and retention for the configured directories.
    """

    def __init__(self, config, store: Storage, notifier, encryptor: Optional[GPGEncryptor] = None):
        """
        Initialize backup manager.

        Args:
            config: Loaded Config
            store: Storage backend (shared by all operations)
            notifier: NotifierStore (or any object with the same notify_* methods)
            encryptor: Encryptor used when encryption is enabled
        """
        self.config = config
        self.store = store
        self.notifier = notifier
        self.encryptor = encryptor or GPGEncryptor()

    def backup(self, cancellation_check: Optional[Callable] = None) -> BackupRunSummary:
        """
        Back up every configured directory.

        Args:
            cancellation_check: Optional function called between steps; raises
                BackupCancelledError to abort the run

        Returns:
            BackupRunSummary with the key or error of every directory

        Raises:
            StorageError: If the storage session cannot be established
            BackupCancelledError: If the run was cancelled
        """
        if not self.store.is_initialized:
            self.store.init()

        summary = BackupRunSummary()

        try:
            for directory in self.config.backup.dirs:
                if cancellation_check:
                    cancellation_check()

                logger.info(f"Processing path: {directory}")
                result = UploadResult()

                try:
                    if self.config.backup.archive_dirs:
                        result = self._archived_backup(directory, result, cancellation_check)
                    else:
                        result = self._unarchived_backup(directory, cancellation_check)

                except BackupCancelledError:
                    logger.warning(f"Backup cancelled while processing {directory}")
                    raise

                except Exception as e:
                    logger.error(f"Error backing up dir {directory}: {e}")
                    summary.failed[directory] = e
                    self.notifier.notify_backup_failure(directory, result.total_dirs, result.total_files, e)
                    continue

                logger.info(
                    f"Backed up dir {directory} -> {result.base_key} "
                    f"({result.success_files}/{result.total_files} files, {result.total_dirs} dirs)"
                )
                summary.succeeded[directory] = result.base_key
                self.notifier.notify_backup_success(
                    directory, result.total_dirs, result.total_files, result.success_files, result.base_key
                )
        finally:
            self.encryptor.close()

        return summary

    def _unarchived_backup(self, directory: str, cancellation_check: Optional[Callable] = None) -> UploadResult:
        logger.info(f"Uploading directory {directory} to {self.store.name}")
        return self.store.upload_dir(directory, cancellation_check)

    def _archived_backup(self, directory: str, result: UploadResult,
                         cancellation_check: Optional[Callable] = None) -> UploadResult:
        """
        Archive, optionally encrypt, and upload one directory.

        Args:
            directory: Directory to back up
            result: UploadResult filled in as steps complete, so counts are
                available to the caller if a later step fails
            cancellation_check: Optional cancellation callable

        Returns:
            The completed UploadResult

        Raises:
            NoProcessableFilesError: If the archive contains no files
            CompressionError, EncryptionError, StorageError: If a step fails
        """
        temp_dir = tempfile.mkdtemp(prefix='arclift_', dir=self.config.backup.temp_dir or None)

        try:
            logger.info(f"Archiving dir {directory}")
            archive = archive_directory(directory, temp_dir, self.config.backup.archive_format)

            result.total_files = archive.total_files
            result.total_dirs = archive.total_dirs
            result.success_files = archive.success_files
            result.failed_files = archive.failed_files

            if archive.success_files <= 0:
                raise NoProcessableFilesError(f"No processable files in {directory}")

            file_size = get_archive_size(archive.archive_path)
            logger.info(
                f"Archived dir {directory}: {os.path.basename(archive.archive_path)} "
                f"({file_size / 1024 / 1024:.2f} MB)"
            )
            upload_path = archive.archive_path

            if cancellation_check:
                cancellation_check()

            if self.config.backup.encryption.enabled:
                gpg_config = self.config.backup.encryption.gpg
                logger.info(f"Fetching GPG key {gpg_config.key_id}")
                self.encryptor.fetch_public_key(gpg_config.key_id, gpg_config.key_server)

                logger.info("Encrypting archive")
                upload_path = self.encryptor.encrypt_file(archive.archive_path)
                logger.info(f"Encrypted archive: {upload_path}")

                self._remove_file(archive.archive_path)

                if cancellation_check:
                    cancellation_check()

            logger.info(f"Uploading file {upload_path} to {self.store.name}")
            result.base_key = self.store.upload_file(upload_path, cancellation_check)
            logger.info(f"Uploaded file {upload_path}")

            self._remove_file(upload_path)
            return result

        finally:
            self._cleanup(temp_dir)

    def list_backups(self) -> List[str]:
        """
        List backups of this host, newest first.

        Returns:
            Timestamp segments in descending order (empty if none)

        Raises:
            StorageError: If listing fails
        """
        if not self.store.is_initialized:
            self.store.init()

        keys = self.store.list_keys()
        if not keys:
            logger.info("No backups found")
            return []

        timestamps = sort_timestamps(self.store.strip_prefix(keys), self.config.backup.date_time_layout)
        logger.debug(f"Found backups: {timestamps}")
        return timestamps

    def purge_old_backups(self) -> Dict[str, List[str]]:
        """
        Delete backups beyond the retention count.

        Returns:
            Dict with 'deleted' and 'failed' timestamp lists

        Raises:
            StorageError: If the backups cannot be listed
        """
        retention_count = self.config.backup.retention_count
        summary = {
            'deleted': [],
            'failed': []
        }

        keys = self.list_backups()
        _, to_delete = split_retention(keys, retention_count)

        if not to_delete:
            logger.info("No backups to purge")
            return summary

        logger.info(f"Found {len(to_delete)} backups to delete (retention: {retention_count}): {to_delete}")

        for key in to_delete:
            logger.info(f"Deleting backup {key}")
            try:
                self.store.delete(key)
                summary['deleted'].append(key)
            except Exception as e:
                logger.error(f"Error deleting backup {key}: {e}")
                summary['failed'].append(key)
                self.notifier.notify_backup_delete_failure(key, e)

        logger.info(
            f"Purge complete. Deleted: {len(summary['deleted'])}, "
            f"Errors: {len(summary['failed'])}"
        )
        return summary

    def _remove_file(self, path: str):
        try:
            os.remove(path)
        except OSError as e:
            logger.warning(f"Failed to remove {path}: {e}")

    def _cleanup(self, temp_dir: str):
        """Remove temporary directory and files."""
        if temp_dir and os.path.exists(temp_dir):
            try:
                shutil.rmtree(temp_dir)
            except OSError as e:
                logger.warning(f"Failed to cleanup temp directory {temp_dir}: {e}")
