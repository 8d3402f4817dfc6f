"""
Checksum generation, verification and sidecar file handling.

Sidecar files use the format understood by ``sha256sum -c``:
``<hex digest>  <filename>`` (two spaces), one entry per line.
"""

import os
import re
import hashlib
import logging
from typing import BinaryIO, Dict

from sanity_backup.models import ChecksumRecord
from sanity_backup.errors import BackupError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024
SIDECAR_SUFFIX = '.sha256'

_SIDECAR_LINE = re.compile(r'^([a-f0-9]+)\s+(.+)$', re.IGNORECASE)


class ChecksumIOError(BackupError):
    """Raised when a file cannot be read for hashing."""
    pass


def generate_checksum(file_path: str, algorithm: str = 'sha256') -> str:
    """
    Compute the hex digest of a file without loading it into memory.

    Args:
        file_path: File to hash
        algorithm: Any hashlib algorithm name (default: sha256)

    Returns:
        Lowercase hex digest

    Raises:
        ChecksumIOError: If the file cannot be read
    """
    try:
        with open(file_path, 'rb') as f:
            checksum = generate_checksum_stream(f, algorithm)
    except OSError as e:
        logger.error(f"Failed to read file for checksum: {file_path}")
        raise ChecksumIOError(f"Failed to generate checksum for {file_path}: {e}")

    logger.info(f"Generated {algorithm} checksum for {os.path.basename(file_path)}: {checksum}")
    return checksum


def generate_checksum_stream(stream: BinaryIO, algorithm: str = 'sha256') -> str:
    """Hash a binary stream chunk by chunk."""
    digest = hashlib.new(algorithm)
    for chunk in iter(lambda: stream.read(CHUNK_SIZE), b''):
        digest.update(chunk)
    return digest.hexdigest()


def verify_checksum(actual: str, expected: str) -> bool:
    """
    Compare two hex digests case-insensitively.

    A mismatch is logged but not raised; the caller decides what it means.
    """
    is_valid = actual.lower() == expected.lower()
    if not is_valid:
        logger.warning(f"Checksum mismatch (expected {expected}, actual {actual})")
    return is_valid


def parse_checksum_file(content: str) -> Dict[str, str]:
    """
    Parse sidecar content into a mapping of filename -> lowercase digest.

    One or more whitespace characters may separate digest and filename;
    filenames may contain spaces. Blank and malformed lines are skipped.
    """
    checksums = {}

    for line in content.splitlines():
        line = line.strip()
        if not line:
            continue

        match = _SIDECAR_LINE.match(line)
        if match:
            digest, filename = match.groups()
            checksums[filename.strip()] = digest.lower()

    return checksums


def format_checksum_line(digest: str, filename: str) -> str:
    return f"{digest}  {filename}\n"


def write_checksum_file(archive_path: str, digest: str, algorithm: str = 'sha256') -> ChecksumRecord:
    """
    Write the sidecar next to the archive.

    Args:
        archive_path: Archive the digest belongs to
        digest: Hex digest of the archive
        algorithm: Algorithm used to produce the digest

    Returns:
        ChecksumRecord describing the written sidecar

    Raises:
        ChecksumIOError: If the sidecar cannot be written
    """
    filename = os.path.basename(archive_path)
    sidecar_path = archive_path + SIDECAR_SUFFIX

    try:
        with open(sidecar_path, 'w', encoding='utf-8') as f:
            f.write(format_checksum_line(digest, filename))
    except OSError as e:
        raise ChecksumIOError(f"Failed to write checksum file {sidecar_path}: {e}")

    return ChecksumRecord(
        digest=digest,
        algorithm=algorithm,
        filename=filename,
        path=sidecar_path
    )
