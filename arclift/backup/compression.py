"""
Archive creation for backup directories.

Supports multiple formats:
- zip: Standard zip compression
- tar.gz: Gzip compressed tar
- tar.bz2: Bzip2 compressed tar
- tar.xz: LZMA compressed tar
- none: No compression (tar only)

Files are added one at a time so a single unreadable file is recorded as a
failure instead of aborting the whole archive.
"""

import os
import hashlib
import logging
import tarfile
import zipfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict

logger = logging.getLogger(__name__)

FORMAT_EXTENSIONS = {
    'zip': 'zip',
    'tar.gz': 'tar.gz',
    'tar.bz2': 'tar.bz2',
    'tar.xz': 'tar.xz',
    'none': 'tar'
}

_TAR_MODES = {
    'tar.gz': 'w:gz',
    'tar.bz2': 'w:bz2',
    'tar.xz': 'w:xz',
    'none': 'w'
}


class CompressionError(Exception):
    """Raised when archive creation fails."""
    pass


@dataclass
class ArchiveResult:
    """Outcome of archiving one directory."""
    archive_path: str
    total_files: int = 0
    total_dirs: int = 0
    success_files: int = 0
    failed_files: Dict[str, Exception] = field(default_factory=dict)


def archive_directory(
    directory: str,
    output_dir: str,
    compression_format: str = 'zip'
) -> ArchiveResult:
    """
    Archive a directory into output_dir.

    Args:
        directory: Directory to archive
        output_dir: Directory where the archive file is written
        compression_format: Format to use ('zip', 'tar.gz', 'tar.bz2', 'tar.xz', 'none')

    Returns:
        ArchiveResult with the archive path and per-file counts

    Raises:
        CompressionError: If the directory is missing or the archive cannot be written
        ValueError: If compression_format is invalid
    """
    if compression_format not in FORMAT_EXTENSIONS:
        raise ValueError(
            f"Invalid compression format: {compression_format}. "
            f"Valid options: {list(FORMAT_EXTENSIONS.keys())}"
        )

    if not os.path.isdir(directory):
        raise CompressionError(f"Directory does not exist: {directory}")

    filename = generate_archive_filename(directory, compression_format)
    archive_path = os.path.join(output_dir, filename)
    result = ArchiveResult(archive_path=archive_path)

    try:
        if compression_format == 'zip':
            with zipfile.ZipFile(archive_path, 'w', zipfile.ZIP_DEFLATED) as zipf:
                _walk(directory, result, zipf.write)
        else:
            with tarfile.open(archive_path, _TAR_MODES[compression_format]) as tar:
                _walk(directory, result, lambda path, arcname: tar.add(path, arcname=arcname, recursive=False))
    except Exception as e:
        # Clean up partial archive on failure
        if os.path.exists(archive_path):
            try:
                os.remove(archive_path)
            except OSError:
                pass
        raise CompressionError(f"Failed to create archive: {e}")

    logger.debug(
        f"Archived {directory}: {result.success_files}/{result.total_files} files, "
        f"{result.total_dirs} dirs"
    )
    return result


def _walk(directory: str, result: ArchiveResult, add):
    """
    Add every regular file under directory via add(path, arcname).

    Args:
        directory: Root directory being archived
        result: ArchiveResult updated in place
        add: Callable writing one file into the archive
    """
    parent = os.path.dirname(os.path.normpath(directory))

    def on_error(error: OSError):
        result.failed_files[error.filename or directory] = error

    for root, dirs, files in os.walk(directory, onerror=on_error):
        result.total_dirs += 1
        for name in files:
            path = os.path.join(root, name)
            if not os.path.isfile(path):
                continue
            result.total_files += 1
            arcname = os.path.relpath(path, parent or os.curdir)
            try:
                with open(path, 'rb'):
                    pass
                add(path, arcname)
                result.success_files += 1
            except OSError as e:
                logger.warning(f"Skipping unreadable file {path}: {e}")
                result.failed_files[path] = e


def generate_archive_filename(directory: str, compression_format: str) -> str:
    """
    Generate a standardized archive filename.

    Format: {dir_name}-{path_hash}-{YYYYMMDD_HHMMSS}.{ext}

    path_hash is derived from the absolute directory path, so directories
    sharing a basename get distinct names within the same second.

    Args:
        directory: Directory being archived
        compression_format: Compression format

    Returns:
        Filename (without path)
    """
    timestamp = datetime.now(timezone.utc).strftime('%Y%m%d_%H%M%S')
    extension = FORMAT_EXTENSIONS.get(compression_format, 'zip')

    dir_name = os.path.basename(os.path.normpath(directory)) or 'root'
    # Sanitize (replace spaces and special chars with underscores)
    safe_name = "".join(
        c if c.isalnum() or c in ('-', '_') else '_'
        for c in dir_name
    )
    path_hash = hashlib.sha1(os.path.abspath(directory).encode('utf-8')).hexdigest()[:8]

    return f"{safe_name}-{path_hash}-{timestamp}.{extension}"


def get_archive_size(archive_path: str) -> int:
    """
    Get the size of an archive file in bytes.

    Raises:
        CompressionError: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(archive_path)
    except FileNotFoundError:
        raise CompressionError(f"Archive not found: {archive_path}")
    except OSError as e:
        raise CompressionError(f"Failed to get archive size: {e}")
