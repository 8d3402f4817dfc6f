"""
Archive creation for exported datasets.

The staging directory's export folder is packed into a single gzip
compressed tarball. OS housekeeping files are left out; everything else keeps
its relative path under the export folder's name.
"""

import os
import fnmatch
import tarfile
from datetime import datetime, timezone
from typing import Optional

from sanity_backup.errors import BackupError, EmptyResultError


ARCHIVE_EXTENSION = '.tar.gz'

EXCLUDE_PATTERNS = ('.DS_Store', 'Thumbs.db', 'desktop.ini', '._*')


class CompressionError(BackupError):
    """Raised when archive creation fails."""
    pass


class EmptyArchiveError(CompressionError, EmptyResultError):
    """Raised when the archive was written but is zero bytes."""
    pass


def _is_excluded(name: str) -> bool:
    basename = os.path.basename(name)
    return any(fnmatch.fnmatchcase(basename, pattern) for pattern in EXCLUDE_PATTERNS)


def _exclude_filter(tarinfo: tarfile.TarInfo) -> Optional[tarfile.TarInfo]:
    if _is_excluded(tarinfo.name):
        return None
    return tarinfo


def create_archive(staging_root: str, subdir: str, archive_path: str) -> str:
    """
    Create a tar.gz archive of staging_root/subdir.

    Args:
        staging_root: Directory that contains the folder to archive
        subdir: Name of the folder to archive (becomes the top-level entry)
        archive_path: Where to write the archive

    Returns:
        Path to the created archive file

    Raises:
        CompressionError: If the folder is missing or the archive cannot be written
        EmptyArchiveError: If the written archive has zero bytes
    """
    source = os.path.join(staging_root, subdir)
    if not os.path.isdir(source):
        raise CompressionError(f"Path does not exist: {source}")

    try:
        with tarfile.open(archive_path, 'w:gz') as tar:
            tar.add(source, arcname=subdir, recursive=True, filter=_exclude_filter)
    except Exception as e:
        # Clean up partial archive on failure
        if os.path.exists(archive_path):
            try:
                os.remove(archive_path)
            except OSError:
                pass
        raise CompressionError(f"Failed to create archive {os.path.basename(archive_path)}: {e}")

    if get_archive_size(archive_path) == 0:
        raise EmptyArchiveError(f"Archive is empty: {archive_path}")

    return archive_path


def generate_timestamp(now: Optional[datetime] = None) -> str:
    """
    Generate the run timestamp token.

    ISO 8601 in UTC with millisecond precision, with ':' and '.' replaced by
    '-' so it is safe in filenames and object keys:
    2024-01-15T12-00-00-000Z
    """
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    iso = now.strftime('%Y-%m-%dT%H:%M:%S') + f".{now.microsecond // 1000:03d}Z"
    return iso.replace(':', '-').replace('.', '-')


def generate_archive_filename(project_id: str, dataset: str, timestamp: str) -> str:
    """
    Generate the archive filename.

    Format: {project_id}-{dataset}-{timestamp}.tar.gz
    """
    return f"{project_id}-{dataset}-{timestamp}{ARCHIVE_EXTENSION}"


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
