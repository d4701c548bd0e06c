"""
Shared pytest fixtures for Arclift tests.

This module provides fixtures for:
- Configuration objects
- Mock fixtures for external services (S3, notifiers, GPG)
- Temporary file fixtures
"""

from unittest.mock import MagicMock

import pytest
import boto3
from moto import mock_aws

from arclift.config import Config
from arclift.backup.storage import S3Storage, UploadResult


@pytest.fixture
def config(tmp_path):
    """
    Validated config with two backup directories and archiving disabled.
    """
    cfg = Config.from_dict({
        's3': {
            'bucket': 'test-bucket',
            'region': 'us-east-1',
            'prefix': 'backups',
        },
        'backup': {
            'dirs': ['/a', '/b'],
            'hostname': 'test-host',
            'retention-count': 2,
            'temp-dir': str(tmp_path),
        },
    })
    cfg.validate()
    return cfg


@pytest.fixture
def archive_config(config):
    """Config with archiving enabled."""
    config.backup.archive_dirs = True
    return config


@pytest.fixture
def encrypted_config(archive_config):
    """Config with archiving and GPG encryption enabled."""
    archive_config.backup.encryption.enabled = True
    archive_config.backup.encryption.gpg.key_id = 'ABCDEF0123456789'
    archive_config.backup.encryption.gpg.key_server = 'keyserver.ubuntu.com'
    return archive_config


@pytest.fixture
def mock_store():
    """
    Storage double with an established session.
    """
    store = MagicMock()
    store.name = 'mock'
    store.is_initialized = True
    store.upload_file.return_value = 'backups/test-host/20240101000000'
    store.upload_dir.return_value = UploadResult(
        base_key='backups/test-host/20240101000000',
        total_files=3,
        total_dirs=2,
        success_files=3
    )
    store.list_keys.return_value = []
    store.strip_prefix.side_effect = lambda keys: [key.rsplit('/', 1)[-1] for key in keys]
    return store


@pytest.fixture
def mock_notifier():
    """NotifierStore double recording every notification."""
    return MagicMock()


@pytest.fixture
def mock_encryptor(tmp_path):
    """
    GPGEncryptor double that 'encrypts' by copying the file to {path}.gpg.
    """
    encryptor = MagicMock()

    def encrypt_file(path):
        output = f"{path}.gpg"
        with open(path, 'rb') as src, open(output, 'wb') as dst:
            dst.write(src.read())
        return output

    encryptor.encrypt_file.side_effect = encrypt_file
    return encryptor


@pytest.fixture
def aws_credentials(monkeypatch):
    """Fake AWS credentials so boto3 never touches a real account."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


@pytest.fixture
def mock_s3(aws_credentials):
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def s3_storage(mock_s3):
    """Initialized S3Storage against the moto bucket."""
    storage = S3Storage(
        access_key='test_access_key',
        secret_key='test_secret_key',
        bucket_name='test-bucket',
        region='us-east-1',
        prefix='backups',
        hostname='test-host'
    )
    storage.init()
    return storage


@pytest.fixture
def temp_files(tmp_path):
    """
    Create a directory tree to back up.

    Creates:
    - data/test_file1.txt
    - data/test_file2.log
    - data/nested/test_file3.txt
    """
    data_dir = tmp_path / 'data'
    data_dir.mkdir()
    (data_dir / 'test_file1.txt').write_text('Test content 1')
    (data_dir / 'test_file2.log').write_text('Test log content')

    nested_dir = data_dir / 'nested'
    nested_dir.mkdir()
    (nested_dir / 'test_file3.txt').write_text('Nested test content')

    return data_dir
