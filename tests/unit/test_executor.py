"""
Unit tests for the backup manager (arclift/backup/executor.py).

Tests backup orchestration, listing and retention purge.
"""

import os
from unittest.mock import MagicMock, patch

import pytest
from freezegun import freeze_time

from arclift.backup.compression import ArchiveResult, CompressionError
from arclift.backup.encryption import EncryptionError
from arclift.backup.executor import (
    BackupManager,
    BackupCancelledError,
    NoProcessableFilesError
)
from arclift.backup.storage import LocalStorage, StorageError, UploadResult


def _fake_archive(success_files=3, total_files=3, total_dirs=2):
    """archive_directory replacement writing a real file into output_dir."""
    created = []

    def archive_directory(directory, output_dir, compression_format='zip'):
        path = os.path.join(output_dir, f"{os.path.basename(directory)}.zip")
        with open(path, 'wb') as f:
            f.write(b'archive')
        created.append(path)
        return ArchiveResult(
            archive_path=path,
            total_files=total_files,
            total_dirs=total_dirs,
            success_files=success_files
        )

    return archive_directory, created


class TestBackupUnarchived:
    """Test backups with archiving disabled."""

    def test_uploads_each_directory(self, config, mock_store, mock_notifier):
        manager = BackupManager(config, mock_store, mock_notifier, encryptor=MagicMock())

        summary = manager.backup()

        assert [c.args[0] for c in mock_store.upload_dir.call_args_list] == ['/a', '/b']
        assert set(summary.succeeded) == {'/a', '/b'}
        assert mock_notifier.notify_backup_success.call_count == 2
        mock_store.upload_file.assert_not_called()

    def test_failure_does_not_stop_remaining_directories(self, config, mock_store, mock_notifier):
        transport_error = StorageError("S3 upload failed: connection reset")
        mock_store.upload_dir.side_effect = [
            UploadResult(base_key='p/h/20240101000000', total_files=1, total_dirs=1, success_files=1),
            transport_error,
        ]
        manager = BackupManager(config, mock_store, mock_notifier, encryptor=MagicMock())

        summary = manager.backup()

        mock_notifier.notify_backup_success.assert_called_once_with('/a', 1, 1, 1, 'p/h/20240101000000')
        mock_notifier.notify_backup_failure.assert_called_once_with('/b', 0, 0, transport_error)
        assert summary.succeeded == {'/a': 'p/h/20240101000000'}
        assert summary.failed == {'/b': transport_error}
        assert not summary.all_failed

    def test_all_failed(self, config, mock_store, mock_notifier):
        mock_store.upload_dir.side_effect = StorageError("down")
        manager = BackupManager(config, mock_store, mock_notifier, encryptor=MagicMock())

        summary = manager.backup()

        assert summary.all_failed
        assert mock_notifier.notify_backup_failure.call_count == 2
        mock_notifier.notify_backup_success.assert_not_called()

    def test_encryption_never_used_without_archiving(self, config, mock_store, mock_notifier):
        config.backup.encryption.enabled = True
        encryptor = MagicMock()
        manager = BackupManager(config, mock_store, mock_notifier, encryptor=encryptor)

        manager.backup()

        encryptor.fetch_public_key.assert_not_called()
        encryptor.encrypt_file.assert_not_called()

    def test_initializes_storage_session(self, config, mock_store, mock_notifier):
        mock_store.is_initialized = False
        manager = BackupManager(config, mock_store, mock_notifier, encryptor=MagicMock())

        manager.backup()

        mock_store.init.assert_called_once()

    def test_storage_setup_failure_propagates(self, config, mock_store, mock_notifier):
        mock_store.is_initialized = False
        mock_store.init.side_effect = StorageError("Access denied to bucket: test-bucket")
        manager = BackupManager(config, mock_store, mock_notifier, encryptor=MagicMock())

        with pytest.raises(StorageError):
            manager.backup()

        mock_store.upload_dir.assert_not_called()
        mock_notifier.notify_backup_failure.assert_not_called()


class TestBackupArchived:
    """Test backups with archiving (and encryption) enabled."""

    def test_archive_and_upload(self, archive_config, mock_store, mock_notifier):
        fake_archive, created = _fake_archive()
        encryptor = MagicMock()
        manager = BackupManager(archive_config, mock_store, mock_notifier, encryptor=encryptor)

        with patch('arclift.backup.executor.archive_directory', side_effect=fake_archive):
            summary = manager.backup()

        uploaded = [c.args[0] for c in mock_store.upload_file.call_args_list]
        assert uploaded == created
        assert len(summary.succeeded) == 2
        mock_notifier.notify_backup_success.assert_any_call(
            '/a', 2, 3, 3, 'backups/test-host/20240101000000'
        )
        encryptor.encrypt_file.assert_not_called()
        mock_store.upload_dir.assert_not_called()

    def test_temporary_files_removed_after_success(self, archive_config, mock_store, mock_notifier, tmp_path):
        fake_archive, created = _fake_archive()
        manager = BackupManager(archive_config, mock_store, mock_notifier, encryptor=MagicMock())

        with patch('arclift.backup.executor.archive_directory', side_effect=fake_archive):
            manager.backup()

        assert created
        assert not any(os.path.exists(path) for path in created)
        assert list(tmp_path.iterdir()) == []

    def test_no_processable_files(self, encrypted_config, mock_store, mock_notifier, mock_encryptor):
        fake_archive, _ = _fake_archive(success_files=0, total_files=2, total_dirs=1)
        manager = BackupManager(encrypted_config, mock_store, mock_notifier, encryptor=mock_encryptor)

        with patch('arclift.backup.executor.archive_directory', side_effect=fake_archive):
            summary = manager.backup()

        assert all(isinstance(e, NoProcessableFilesError) for e in summary.failed.values())
        mock_encryptor.fetch_public_key.assert_not_called()
        mock_encryptor.encrypt_file.assert_not_called()
        mock_store.upload_file.assert_not_called()

        directory, total_dirs, total_files, error = mock_notifier.notify_backup_failure.call_args_list[0].args
        assert (directory, total_dirs, total_files) == ('/a', 1, 2)
        assert isinstance(error, NoProcessableFilesError)

    def test_encrypted_upload(self, encrypted_config, mock_store, mock_notifier, mock_encryptor):
        fake_archive, created = _fake_archive()
        manager = BackupManager(encrypted_config, mock_store, mock_notifier, encryptor=mock_encryptor)

        with patch('arclift.backup.executor.archive_directory', side_effect=fake_archive):
            manager.backup()

        mock_encryptor.fetch_public_key.assert_called_with('ABCDEF0123456789', 'keyserver.ubuntu.com')
        uploaded = [c.args[0] for c in mock_store.upload_file.call_args_list]
        assert uploaded == [f"{path}.gpg" for path in created]
        assert mock_notifier.notify_backup_success.call_count == 2

    def test_plaintext_removed_before_upload(self, encrypted_config, mock_store, mock_notifier, mock_encryptor):
        fake_archive, created = _fake_archive()
        seen = []

        def upload_file(path, cancellation_check=None):
            seen.append((os.path.exists(path), os.path.exists(path[:-len('.gpg')])))
            raise StorageError("upload failed")

        mock_store.upload_file.side_effect = upload_file
        manager = BackupManager(encrypted_config, mock_store, mock_notifier, encryptor=mock_encryptor)

        with patch('arclift.backup.executor.archive_directory', side_effect=fake_archive):
            summary = manager.backup()

        # encrypted file present, plaintext already gone at upload time
        assert seen == [(True, False), (True, False)]
        assert len(summary.failed) == 2
        assert not any(os.path.exists(f"{path}.gpg") for path in created)

    def test_key_fetch_failure(self, encrypted_config, mock_store, mock_notifier, mock_encryptor):
        fake_archive, created = _fake_archive()
        mock_encryptor.fetch_public_key.side_effect = EncryptionError("key not found")
        manager = BackupManager(encrypted_config, mock_store, mock_notifier, encryptor=mock_encryptor)

        with patch('arclift.backup.executor.archive_directory', side_effect=fake_archive):
            summary = manager.backup()

        assert len(summary.failed) == 2
        mock_store.upload_file.assert_not_called()
        assert mock_notifier.notify_backup_failure.call_count == 2
        # counts from the archive step are still reported
        assert mock_notifier.notify_backup_failure.call_args_list[0].args[1:3] == (2, 3)
        assert not any(os.path.exists(path) for path in created)

    def test_archive_failure(self, archive_config, mock_store, mock_notifier):
        manager = BackupManager(archive_config, mock_store, mock_notifier, encryptor=MagicMock())

        with patch('arclift.backup.executor.archive_directory',
                   side_effect=CompressionError("Directory does not exist: /a")):
            summary = manager.backup()

        assert set(summary.failed) == {'/a', '/b'}
        mock_store.upload_file.assert_not_called()

    def test_real_archive_end_to_end(self, archive_config, mock_store, mock_notifier, temp_files):
        archive_config.backup.dirs = [str(temp_files)]
        manager = BackupManager(archive_config, mock_store, mock_notifier, encryptor=MagicMock())

        summary = manager.backup()

        assert list(summary.succeeded) == [str(temp_files)]
        mock_notifier.notify_backup_success.assert_called_once_with(
            str(temp_files), 2, 3, 3, 'backups/test-host/20240101000000'
        )


class TestSameBasenameTargets:
    """Test directories sharing a basename backed up within the same second."""

    def _targets(self, tmp_path):
        targets = []
        for parent in ('x', 'y'):
            target = tmp_path / parent / 'data'
            target.mkdir(parents=True)
            (target / 'file.txt').write_text(parent)
            targets.append(str(target))
        return targets

    def _store(self, tmp_path):
        store = LocalStorage(str(tmp_path / 'store'), prefix='backups', hostname='test-host')
        store.init()
        return store

    @freeze_time("2024-01-01 00:00:00")
    def test_archived_backups_are_both_kept(self, archive_config, mock_notifier, tmp_path):
        archive_config.backup.dirs = self._targets(tmp_path)
        manager = BackupManager(archive_config, self._store(tmp_path), mock_notifier, encryptor=MagicMock())

        summary = manager.backup()

        stored = sorted(p.name for p in (tmp_path / 'store').rglob('*.zip'))
        assert len(summary.succeeded) == 2
        assert len(stored) == 2
        assert all(name.startswith('data-') for name in stored)
        assert mock_notifier.notify_backup_success.call_count == 2

    @freeze_time("2024-01-01 00:00:00")
    def test_unarchived_collision_is_reported(self, config, mock_notifier, tmp_path):
        first, second = self._targets(tmp_path)
        config.backup.dirs = [first, second]
        manager = BackupManager(config, self._store(tmp_path), mock_notifier, encryptor=MagicMock())

        summary = manager.backup()

        assert list(summary.succeeded) == [first]
        assert isinstance(summary.failed[second], StorageError)
        mock_notifier.notify_backup_failure.assert_called_once()
        stored = tmp_path / 'store' / 'backups' / 'test-host' / '20240101000000' / 'data' / 'file.txt'
        assert stored.read_text() == 'x'


class TestEncryptorLifecycle:
    """Test the encryptor is released after every run."""

    def test_closed_after_run(self, encrypted_config, mock_store, mock_notifier, mock_encryptor):
        fake_archive, _ = _fake_archive()
        manager = BackupManager(encrypted_config, mock_store, mock_notifier, encryptor=mock_encryptor)

        with patch('arclift.backup.executor.archive_directory', side_effect=fake_archive):
            manager.backup()

        mock_encryptor.close.assert_called_once()

    def test_closed_after_cancellation(self, config, mock_store, mock_notifier):
        encryptor = MagicMock()
        manager = BackupManager(config, mock_store, mock_notifier, encryptor=encryptor)

        with pytest.raises(BackupCancelledError):
            manager.backup(cancellation_check=MagicMock(side_effect=BackupCancelledError()))

        encryptor.close.assert_called_once()


class TestBackupCancellation:
    """Test cancellation handling."""

    def test_cancel_before_first_directory(self, config, mock_store, mock_notifier):
        manager = BackupManager(config, mock_store, mock_notifier, encryptor=MagicMock())
        check = MagicMock(side_effect=BackupCancelledError())

        with pytest.raises(BackupCancelledError):
            manager.backup(cancellation_check=check)

        mock_store.upload_dir.assert_not_called()

    def test_cancel_mid_run_skips_remaining_without_notification(self, archive_config, mock_store, mock_notifier):
        fake_archive, created = _fake_archive()
        mock_store.upload_file.side_effect = BackupCancelledError()
        manager = BackupManager(archive_config, mock_store, mock_notifier, encryptor=MagicMock())

        with patch('arclift.backup.executor.archive_directory', side_effect=fake_archive):
            with pytest.raises(BackupCancelledError):
                manager.backup(cancellation_check=MagicMock())

        assert len(created) == 1
        assert not os.path.exists(created[0])
        mock_notifier.notify_backup_failure.assert_not_called()
        mock_notifier.notify_backup_success.assert_not_called()


class TestListBackups:
    """Test listing backups."""

    def test_empty(self, config, mock_store, mock_notifier):
        manager = BackupManager(config, mock_store, mock_notifier)

        assert manager.list_backups() == []

    def test_sorted_newest_first(self, config, mock_store, mock_notifier):
        mock_store.list_keys.return_value = [
            'backups/test-host/20240102000000',
            'backups/test-host/20240103000000',
            'backups/test-host/20240101000000',
        ]
        manager = BackupManager(config, mock_store, mock_notifier)

        first = manager.list_backups()
        second = manager.list_backups()

        assert first == ['20240103000000', '20240102000000', '20240101000000']
        assert first == second

    def test_listing_error_propagates(self, config, mock_store, mock_notifier):
        mock_store.list_keys.side_effect = StorageError("S3 list failed (AccessDenied)")
        manager = BackupManager(config, mock_store, mock_notifier)

        with pytest.raises(StorageError):
            manager.list_backups()


class TestPurgeOldBackups:
    """Test retention purge."""

    def _keys(self, *timestamps):
        return [f"backups/test-host/{ts}" for ts in timestamps]

    def test_deletes_only_oldest(self, config, mock_store, mock_notifier):
        mock_store.list_keys.return_value = self._keys('20240103000000', '20240102000000', '20240101000000')
        manager = BackupManager(config, mock_store, mock_notifier)

        summary = manager.purge_old_backups()

        mock_store.delete.assert_called_once_with('20240101000000')
        assert summary == {'deleted': ['20240101000000'], 'failed': []}

    @pytest.mark.parametrize("count", [0, 1, 2])
    def test_nothing_to_purge(self, config, mock_store, mock_notifier, count):
        mock_store.list_keys.return_value = self._keys(*[f"2024010{i}000000" for i in range(1, count + 1)])
        manager = BackupManager(config, mock_store, mock_notifier)

        summary = manager.purge_old_backups()

        mock_store.delete.assert_not_called()
        assert summary['deleted'] == []

    def test_deletes_n_minus_r_oldest(self, config, mock_store, mock_notifier):
        timestamps = [f"2024010{i}000000" for i in range(1, 8)]
        mock_store.list_keys.return_value = self._keys(*timestamps)
        config.backup.retention_count = 3
        manager = BackupManager(config, mock_store, mock_notifier)

        summary = manager.purge_old_backups()

        assert sorted(summary['deleted']) == timestamps[:4]

    def test_delete_failure_does_not_block_others(self, config, mock_store, mock_notifier):
        mock_store.list_keys.return_value = self._keys(
            '20240105000000', '20240104000000', '20240103000000', '20240102000000', '20240101000000'
        )
        error = StorageError("S3 delete failed (AccessDenied)")
        mock_store.delete.side_effect = [None, error, None]
        manager = BackupManager(config, mock_store, mock_notifier)

        summary = manager.purge_old_backups()

        assert mock_store.delete.call_count == 3
        assert summary == {
            'deleted': ['20240103000000', '20240101000000'],
            'failed': ['20240102000000']
        }
        mock_notifier.notify_backup_delete_failure.assert_called_once_with('20240102000000', error)

    def test_listing_failure_propagates(self, config, mock_store, mock_notifier):
        mock_store.list_keys.side_effect = StorageError("S3 list failed")
        manager = BackupManager(config, mock_store, mock_notifier)

        with pytest.raises(StorageError):
            manager.purge_old_backups()

        mock_store.delete.assert_not_called()
