"""
Integrity check of a backup already in storage.
"""

import os
import logging

from sanity_backup.errors import VerificationError
from sanity_backup.models import ChecksumRecord
from sanity_backup.utils.checksum import (
    SIDECAR_SUFFIX,
    generate_checksum,
    parse_checksum_file,
    verify_checksum,
)

logger = logging.getLogger(__name__)


class ChecksumMismatchError(VerificationError):
    """The downloaded archive does not match its sidecar."""
    pass


def verify_remote_backup(storage, key: str, work_dir: str) -> ChecksumRecord:
    """
    Download an archive and its sidecar and compare digests.

    Args:
        storage: S3Storage instance
        key: Archive object key
        work_dir: Existing directory for the downloaded files

    Returns:
        ChecksumRecord of the verified archive

    Raises:
        ChecksumMismatchError: If the sidecar has no entry for the archive or
            the digests differ
        StorageError: If either download fails
    """
    filename = os.path.basename(key)
    archive_path = os.path.join(work_dir, filename)
    sidecar_path = archive_path + SIDECAR_SUFFIX

    storage.download(key, archive_path)
    storage.download(key + SIDECAR_SUFFIX, sidecar_path)

    with open(sidecar_path, 'r', encoding='utf-8') as f:
        expected = parse_checksum_file(f.read()).get(filename)

    if expected is None:
        raise ChecksumMismatchError(f"Sidecar for {key} has no entry for {filename}")

    actual = generate_checksum(archive_path)
    if not verify_checksum(actual, expected):
        raise ChecksumMismatchError(
            f"Checksum mismatch for {key}: expected {expected}, got {actual}"
        )

    logger.info(f"Verified {key} (sha256 {actual})")
    return ChecksumRecord(digest=actual, algorithm='sha256', filename=filename, path=archive_path)
