"""
Storage backends for backups.

Supports:
- S3Storage: Upload to AWS S3 or any S3-compatible service
- LocalStorage: Store in a local directory

Both lay backups out the same way:
{prefix}/{hostname}/{timestamp}/{files...}
"""

import os
import shutil
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

import boto3
from botocore.exceptions import ClientError, BotoCoreError

from .keys import DEFAULT_DATE_TIME_LAYOUT, build_key, root_key, strip_prefix, timestamped_key

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised when storage operation fails."""
    pass


@dataclass
class UploadResult:
    """Outcome of uploading one backup target."""
    base_key: str = ''
    total_files: int = 0
    total_dirs: int = 0
    success_files: int = 0
    failed_files: Dict[str, Exception] = field(default_factory=dict)


class Storage(ABC):
    """
    Storage backend used to upload and manage backups.

    Keys handed out and accepted are scoped to {prefix}/{hostname}.
    """

    def __init__(self, prefix: str, hostname: str, date_time_layout: str = DEFAULT_DATE_TIME_LAYOUT):
        self.prefix = prefix
        self.hostname = hostname
        self.date_time_layout = date_time_layout

    @property
    def root_key(self) -> str:
        return root_key(self.prefix, self.hostname)

    def new_backup_key(self) -> str:
        return timestamped_key(self.prefix, self.hostname, self.date_time_layout)

    def strip_prefix(self, keys: List[str]) -> List[str]:
        """Trim the host root key from keys, leaving timestamps only."""
        return strip_prefix(keys, self.root_key)

    @property
    @abstractmethod
    def name(self) -> str:
        """Human readable backend name."""

    @property
    @abstractmethod
    def is_initialized(self) -> bool:
        """Whether init() has completed."""

    @abstractmethod
    def init(self):
        """Prepare the backend (e.g. establish a session)."""

    @abstractmethod
    def upload_file(self, local_path: str, cancellation_check: Optional[Callable] = None) -> str:
        """Upload a single file and return its backup key."""

    @abstractmethod
    def upload_dir(self, local_path: str, cancellation_check: Optional[Callable] = None) -> UploadResult:
        """Upload every file of a directory under a new backup key."""

    @abstractmethod
    def list_keys(self) -> List[str]:
        """List backup keys under the host root key."""

    @abstractmethod
    def delete(self, timestamp: str):
        """Delete the backup identified by its timestamp segment."""


class S3Storage(Storage):
    """
    Handler for uploading backups to S3.

    Uploads archives with a structured key format:
    {prefix}/{hostname}/{timestamp}/{filename}
    """

    MULTIPART_THRESHOLD = 100 * 1024 * 1024  # 100MB
    CHUNK_SIZE = 10 * 1024 * 1024  # 10MB
    DELETE_BATCH_SIZE = 1000

    def __init__(self, access_key: str, secret_key: str, bucket_name: str, region: str = 'us-east-1',
                 endpoint: str = '', prefix: str = '', hostname: str = '',
                 date_time_layout: str = DEFAULT_DATE_TIME_LAYOUT):
        """
        Initialize S3 storage handler.

        Args:
            access_key: AWS access key ID (empty to use the default credential chain)
            secret_key: AWS secret access key
            bucket_name: S3 bucket name
            region: AWS region (default: us-east-1)
            endpoint: Custom endpoint URL for S3-compatible services
            prefix: Key prefix for all backups
            hostname: Host identifier
            date_time_layout: strftime layout of the timestamp segment
        """
        super().__init__(prefix, hostname, date_time_layout)
        self.access_key = access_key
        self.secret_key = secret_key
        self.bucket_name = bucket_name
        self.region = region
        self.endpoint = endpoint
        self.s3_client = None

    @classmethod
    def from_config(cls, config) -> 'S3Storage':
        return cls(
            access_key=config.s3.access_key,
            secret_key=config.s3.secret_key,
            bucket_name=config.s3.bucket,
            region=config.s3.region or 'us-east-1',
            endpoint=config.s3.endpoint,
            prefix=config.s3.prefix,
            hostname=config.backup.hostname,
            date_time_layout=config.backup.date_time_layout
        )

    @property
    def name(self) -> str:
        return f"s3 ({self.bucket_name})"

    @property
    def is_initialized(self) -> bool:
        return self.s3_client is not None

    def init(self):
        """
        Create the S3 client and verify bucket access.

        Raises:
            StorageError: If the client cannot be created or the bucket is unreachable
        """
        try:
            client = boto3.client(
                's3',
                aws_access_key_id=self.access_key or None,
                aws_secret_access_key=self.secret_key or None,
                region_name=self.region,
                endpoint_url=self.endpoint or None
            )
        except Exception as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

        try:
            client.head_bucket(Bucket=self.bucket_name)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code == '404':
                raise StorageError(f"Bucket does not exist: {self.bucket_name}")
            elif error_code == '403':
                raise StorageError(f"Access denied to bucket: {self.bucket_name}")
            else:
                raise StorageError(f"S3 connection test failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to connect to S3: {e}")

        self.s3_client = client

    def _client(self):
        if self.s3_client is None:
            raise StorageError("S3 storage not initialized. Call init() first.")
        return self.s3_client

    def _object_exists(self, s3_key: str) -> bool:
        try:
            self._client().head_object(Bucket=self.bucket_name, Key=s3_key)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code in ('404', 'NoSuchKey', 'NotFound'):
                return False
            raise StorageError(f"S3 head object failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to check S3 object: {e}")
        return True

    def _prefix_exists(self, prefix: str) -> bool:
        try:
            response = self._client().list_objects_v2(Bucket=self.bucket_name, Prefix=prefix, MaxKeys=1)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 list failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to list S3 objects: {e}")
        return response.get('KeyCount', 0) > 0

    def upload_file(self, local_path: str, cancellation_check: Optional[Callable] = None) -> str:
        """
        Upload a file to S3.

        Args:
            local_path: Path to local file
            cancellation_check: Optional function called between chunks; raises to cancel

        Returns:
            Backup key (without the file name)

        Raises:
            StorageError: If upload fails or an object already exists at the key
        """
        if not os.path.exists(local_path):
            raise StorageError(f"Local file not found: {local_path}")

        base_key = self.new_backup_key()
        s3_key = build_key(base_key, os.path.basename(local_path))
        if self._object_exists(s3_key):
            raise StorageError(f"Backup object already exists: {s3_key}")
        logger.debug(f"Uploading {local_path} to s3://{self.bucket_name}/{s3_key}")

        self._upload(local_path, s3_key, cancellation_check)
        return base_key

    def upload_dir(self, local_path: str, cancellation_check: Optional[Callable] = None) -> UploadResult:
        """
        Upload a directory file by file.

        Individual file failures are recorded in the result and do not stop
        the remaining uploads.

        Args:
            local_path: Directory to upload
            cancellation_check: Optional function called before each file; raises to cancel

        Returns:
            UploadResult with the base key and counts

        Raises:
            StorageError: If the directory doesn't exist or a backup of it
                already exists under the new key
        """
        if not os.path.isdir(local_path):
            raise StorageError(f"Local directory not found: {local_path}")

        result = UploadResult(base_key=self.new_backup_key())
        dir_name = os.path.basename(os.path.normpath(local_path))
        dir_key = build_key(result.base_key, dir_name)
        if self._prefix_exists(dir_key + '/'):
            raise StorageError(f"Backup already exists: {dir_key}")

        for root, dirs, files in os.walk(local_path):
            result.total_dirs += 1
            for name in files:
                if cancellation_check:
                    cancellation_check()

                path = os.path.join(root, name)
                if not os.path.isfile(path):
                    continue
                result.total_files += 1

                relative = os.path.relpath(path, local_path).replace(os.sep, '/')
                s3_key = build_key(dir_key, relative)
                try:
                    self._upload(path, s3_key, cancellation_check)
                    result.success_files += 1
                except StorageError as e:
                    logger.warning(f"Failed to upload {path}: {e}")
                    result.failed_files[path] = e

        return result

    def _upload(self, local_path: str, s3_key: str, cancellation_check: Optional[Callable] = None):
        try:
            file_size = os.path.getsize(local_path)

            if file_size > self.MULTIPART_THRESHOLD:
                self._multipart_upload(local_path, s3_key, cancellation_check)
            else:
                if cancellation_check:
                    cancellation_check()
                self._simple_upload(local_path, s3_key)

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 upload failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 upload failed: {e}")
        except OSError as e:
            raise StorageError(f"Failed to read {local_path}: {e}")

    def _simple_upload(self, local_path: str, s3_key: str):
        """
        Upload file using simple put_object.

        Args:
            local_path: Path to local file
            s3_key: S3 object key
        """
        with open(local_path, 'rb') as f:
            self._client().put_object(
                Bucket=self.bucket_name,
                Key=s3_key,
                Body=f
            )

    def _multipart_upload(self, local_path: str, s3_key: str, cancellation_check: Optional[Callable] = None):
        """
        Upload large file using multipart upload with cancellation support.

        Args:
            local_path: Path to local file
            s3_key: S3 object key
            cancellation_check: Optional function to call between chunks to check for cancellation
        """
        client = self._client()
        response = client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=s3_key
        )
        upload_id = response['UploadId']

        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1

                while True:
                    # Check for cancellation before each chunk
                    if cancellation_check:
                        cancellation_check()

                    data = f.read(self.CHUNK_SIZE)
                    if not data:
                        break

                    response = client.upload_part(
                        Bucket=self.bucket_name,
                        Key=s3_key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )

                    parts.append({
                        'PartNumber': part_number,
                        'ETag': response['ETag']
                    })

                    part_number += 1

            client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=s3_key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except Exception:
            # Abort multipart upload on error or cancellation
            try:
                client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=s3_key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Failed to abort multipart upload {upload_id}: {abort_error}")
            raise

    def list_keys(self) -> List[str]:
        """
        List backup keys for this host.

        Each backup is a "folder" directly below the root key, so only the
        common prefixes one level down are returned.

        Returns:
            Keys like '{prefix}/{hostname}/{timestamp}'

        Raises:
            StorageError: If listing fails
        """
        prefix = self.root_key + '/' if self.root_key else ''

        try:
            keys = []
            paginator = self._client().get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix, Delimiter='/'):
                for common_prefix in page.get('CommonPrefixes', []):
                    keys.append(common_prefix['Prefix'].rstrip('/'))

            return keys

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 list failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to list S3 objects: {e}")

    def delete(self, timestamp: str):
        """
        Delete every object of one backup.

        Args:
            timestamp: Timestamp segment identifying the backup

        Raises:
            StorageError: If deletion fails
        """
        prefix = build_key(self.root_key, timestamp) + '/'
        client = self._client()

        try:
            keys = []
            paginator = client.get_paginator('list_objects_v2')
            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix):
                for obj in page.get('Contents', []):
                    keys.append(obj['Key'])

            if not keys:
                logger.warning(f"No objects found under {prefix}")
                return

            for start in range(0, len(keys), self.DELETE_BATCH_SIZE):
                batch = keys[start:start + self.DELETE_BATCH_SIZE]
                response = client.delete_objects(
                    Bucket=self.bucket_name,
                    Delete={'Objects': [{'Key': key} for key in batch], 'Quiet': True}
                )
                errors = response.get('Errors', [])
                if errors:
                    first = errors[0]
                    raise StorageError(
                        f"S3 delete failed for {len(errors)} objects "
                        f"({first.get('Code', 'Unknown')}: {first.get('Key')})"
                    )

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 delete failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to delete from S3: {e}")


class LocalStorage(Storage):
    """
    Handler for storing backups in local filesystem.

    Stores backups with the same structure as S3:
    {base_path}/{prefix}/{hostname}/{timestamp}/{filename}
    """

    def __init__(self, base_path: str, prefix: str = '', hostname: str = '',
                 date_time_layout: str = DEFAULT_DATE_TIME_LAYOUT):
        super().__init__(prefix, hostname, date_time_layout)
        self.base_path = Path(base_path)
        self._initialized = False

    @classmethod
    def from_config(cls, config) -> 'LocalStorage':
        return cls(
            base_path=config.storage.local_path,
            prefix=config.s3.prefix,
            hostname=config.backup.hostname,
            date_time_layout=config.backup.date_time_layout
        )

    @property
    def name(self) -> str:
        return f"local ({self.base_path})"

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def init(self):
        """Create the base directory if it doesn't exist."""
        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create local storage directory: {e}")
        self._initialized = True

    def upload_file(self, local_path: str, cancellation_check: Optional[Callable] = None) -> str:
        """
        Copy a file into local storage.

        Returns:
            Backup key (relative to base_path, without the file name)
        """
        if not os.path.exists(local_path):
            raise StorageError(f"Source file not found: {local_path}")

        if cancellation_check:
            cancellation_check()

        base_key = self.new_backup_key()
        dest_path = self.base_path / base_key / os.path.basename(local_path)

        if dest_path.exists():
            raise StorageError(f"Backup file already exists: {dest_path}")

        try:
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(local_path, dest_path)
        except PermissionError as e:
            raise StorageError(f"Permission denied writing to {dest_path}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to store locally: {e}")

        return base_key

    def upload_dir(self, local_path: str, cancellation_check: Optional[Callable] = None) -> UploadResult:
        """Copy a directory file by file into local storage."""
        if not os.path.isdir(local_path):
            raise StorageError(f"Local directory not found: {local_path}")

        result = UploadResult(base_key=self.new_backup_key())
        dest_root = self.base_path / result.base_key / os.path.basename(os.path.normpath(local_path))
        if dest_root.exists():
            raise StorageError(f"Backup already exists: {dest_root}")

        for root, dirs, files in os.walk(local_path):
            result.total_dirs += 1
            for name in files:
                if cancellation_check:
                    cancellation_check()

                path = os.path.join(root, name)
                if not os.path.isfile(path):
                    continue
                result.total_files += 1

                dest_path = dest_root / os.path.relpath(path, local_path)
                try:
                    dest_path.parent.mkdir(parents=True, exist_ok=True)
                    shutil.copy2(path, dest_path)
                    result.success_files += 1
                except OSError as e:
                    logger.warning(f"Failed to copy {path}: {e}")
                    result.failed_files[path] = e

        return result

    def list_keys(self) -> List[str]:
        """List backup keys (one directory per backup) for this host."""
        host_path = self.base_path / self.root_key

        if not host_path.exists():
            return []

        try:
            return [
                build_key(self.root_key, entry.name)
                for entry in host_path.iterdir()
                if entry.is_dir()
            ]
        except OSError as e:
            raise StorageError(f"Failed to list local files: {e}")

    def delete(self, timestamp: str):
        """Remove one backup directory."""
        full_path = self.base_path / self.root_key / timestamp

        try:
            if full_path.exists():
                shutil.rmtree(full_path)
        except PermissionError as e:
            raise StorageError(f"Permission denied deleting {full_path}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to delete local backup: {e}")


def create_storage(config) -> Storage:
    """
    Create the storage backend selected in the configuration.

    Args:
        config: Loaded Config

    Returns:
        Uninitialized Storage instance

    Raises:
        StorageError: If the backend is unknown
    """
    backend = config.storage.backend
    if backend == 's3':
        return S3Storage.from_config(config)
    if backend == 'local':
        return LocalStorage.from_config(config)
    raise StorageError(f"Unsupported storage backend: {backend}")
