"""
Object storage for backup archives (Cloudflare R2 through the S3 API).

Uploads are verified by reading the object's metadata back and comparing
its content length with the local file size.
"""

import os
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Iterable, List

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError, BotoCoreError

from sanity_backup.config import StorageSettings
from sanity_backup.errors import (
    BackupError,
    ConfigError,
    TransportError,
    VerificationError,
    PartialFailureError,
    EmptyResultError,
    MissingInputError,
)
from sanity_backup.models import RemoteBackupEntry
from sanity_backup.backup.compression import ARCHIVE_EXTENSION

logger = logging.getLogger(__name__)

MiB = 1024 * 1024


class StorageError(BackupError):
    """Raised when storage operation fails."""
    pass


class StorageConfigError(StorageError, ConfigError):
    """Bucket or credentials are not configured."""
    pass


class StorageTransferError(StorageError, TransportError):
    """A request to the storage endpoint failed."""
    pass


class UploadVerificationError(StorageError, VerificationError):
    """The uploaded object's size differs from the local file."""
    pass


class PartialDeleteError(StorageError, PartialFailureError):
    """Some keys of a batch delete could not be deleted."""

    def __init__(self, message: str, failed_keys: List[str]):
        super().__init__(message)
        self.failed_keys = failed_keys


class LocalFileNotFoundError(StorageError, MissingInputError):
    """The file to upload does not exist."""
    pass


class EmptyBodyError(StorageError, EmptyResultError):
    """A download returned no body."""
    pass


def format_size(size_bytes: int) -> str:
    """Human readable size, e.g. '12.34 MB'."""
    if size_bytes < 1024:
        return f"{size_bytes} B"
    if size_bytes < MiB:
        return f"{size_bytes / 1024:.2f} KB"
    if size_bytes < 1024 * MiB:
        return f"{size_bytes / MiB:.2f} MB"
    return f"{size_bytes / 1024 / MiB:.2f} GB"


def get_content_type(filename: str) -> str:
    if filename.endswith('.tar.gz'):
        return 'application/gzip'
    if filename.endswith('.sha256'):
        return 'text/plain'
    return 'application/octet-stream'


def create_s3_client(settings: StorageSettings):
    """
    Create the boto3 S3 client for the R2 endpoint.

    Creating the client makes no network calls.
    """
    return boto3.client(
        's3',
        endpoint_url=settings.endpoint,
        aws_access_key_id=settings.access_key_id,
        aws_secret_access_key=settings.secret_access_key,
        region_name=settings.region,
        config=BotoConfig(retries={'max_attempts': 3, 'mode': 'standard'})
    )


class UploadProgress:
    """Logs multipart upload progress; parts may complete on any thread."""

    def __init__(self, filename: str, total_bytes: int):
        self.filename = filename
        self.total_bytes = total_bytes
        self.uploaded_bytes = 0
        self._lock = threading.Lock()

    def __call__(self, part_bytes: int):
        with self._lock:
            self.uploaded_bytes += part_bytes
            percent = self.uploaded_bytes * 100 // self.total_bytes if self.total_bytes else 100
        logger.info(
            f"Uploading {self.filename}: {percent}% "
            f"({format_size(self.uploaded_bytes)} / {format_size(self.total_bytes)})"
        )


class S3Storage:
    """
    Handler for backup archives in an S3-compatible bucket.

    Keys are supplied by the caller; see BackupExecutor for the layout.
    """

    MULTIPART_THRESHOLD = 100 * MiB
    PART_SIZE = 10 * MiB
    MAX_CONCURRENT_PARTS = 4
    DELETE_BATCH_LIMIT = 1000

    def __init__(self, settings: StorageSettings, client=None):
        """
        Initialize storage handler.

        Args:
            settings: Bucket and credentials
            client: boto3 S3 client; built from settings when omitted
        """
        self.settings = settings
        self.bucket_name = settings.bucket
        self._client = client

    @property
    def s3_client(self):
        if self._client is None:
            self._client = create_s3_client(self.settings)
        return self._client

    def check_config(self):
        """
        Fail fast when bucket or credentials are missing.

        Raises:
            StorageConfigError: If anything required is not set
        """
        missing = self.settings.missing()
        if missing:
            raise StorageConfigError(f"Storage not configured: missing {', '.join(missing)}")

    def upload(self, local_path: str, key: str) -> int:
        """
        Upload a file and verify its size remotely.

        Args:
            local_path: Path to local file
            key: Object key to write

        Returns:
            Size in bytes of the verified object

        Raises:
            StorageConfigError: If bucket or credentials are missing (before any request)
            LocalFileNotFoundError: If the local file does not exist
            StorageTransferError: If the upload request fails
            UploadVerificationError: If the remote size differs from the local size
        """
        self.check_config()

        if not os.path.exists(local_path):
            raise LocalFileNotFoundError(f"Local file not found: {local_path}")

        filename = os.path.basename(local_path)
        file_size = os.path.getsize(local_path)

        logger.info(f"Uploading {filename} ({format_size(file_size)}) to {self.bucket_name}/{key}")

        try:
            if file_size >= self.MULTIPART_THRESHOLD:
                self._multipart_upload(local_path, key, file_size)
            else:
                self._simple_upload(local_path, key)
        except (ClientError, BotoCoreError, OSError) as e:
            raise StorageTransferError(
                f"Failed to upload {filename} ({format_size(file_size)}) "
                f"to bucket {self.bucket_name} as {key}: {_describe(e)}"
            )

        remote_size = self._remote_size(key)
        if remote_size != file_size:
            raise UploadVerificationError(
                f"Upload verification failed for {self.bucket_name}/{key}: "
                f"size mismatch (expected {file_size}, got {remote_size})"
            )

        logger.info(f"Uploaded {filename} to {self.bucket_name}/{key} ({remote_size} bytes verified)")
        return remote_size

    def _metadata(self, filename: str) -> dict:
        return {
            'original-filename': filename,
            'upload-timestamp': datetime.now(timezone.utc).isoformat(),
        }

    def _simple_upload(self, local_path: str, key: str):
        """
        Upload file using a single put_object.
        """
        filename = os.path.basename(local_path)
        with open(local_path, 'rb') as f:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=key,
                Body=f,
                ContentLength=os.path.getsize(local_path),
                ContentType=get_content_type(filename),
                Metadata=self._metadata(filename)
            )

    def _multipart_upload(self, local_path: str, key: str, file_size: int):
        """
        Upload a large file in fixed-size parts, several at a time.

        Parts are read and sent in windows of MAX_CONCURRENT_PARTS, which
        bounds both open connections and buffered memory. The upload is
        aborted when any part fails.
        """
        filename = os.path.basename(local_path)
        progress = UploadProgress(filename, file_size)

        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=key,
            ContentType=get_content_type(filename),
            Metadata=self._metadata(filename)
        )
        upload_id = response['UploadId']

        parts = []

        try:
            with open(local_path, 'rb') as f, ThreadPoolExecutor(max_workers=self.MAX_CONCURRENT_PARTS) as pool:
                part_number = 1

                while True:
                    window = []
                    for _ in range(self.MAX_CONCURRENT_PARTS):
                        data = f.read(self.PART_SIZE)
                        if not data:
                            break
                        window.append(pool.submit(self._upload_part, key, upload_id, part_number, data, progress))
                        part_number += 1

                    if not window:
                        break

                    parts.extend(future.result() for future in window)

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except Exception:
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Failed to abort multipart upload for {key}: {abort_error}")
            raise

    def _upload_part(self, key: str, upload_id: str, part_number: int, data: bytes, progress: UploadProgress) -> dict:
        response = self.s3_client.upload_part(
            Bucket=self.bucket_name,
            Key=key,
            PartNumber=part_number,
            UploadId=upload_id,
            Body=data
        )
        progress(len(data))
        return {
            'PartNumber': part_number,
            'ETag': response['ETag']
        }

    def _remote_size(self, key: str) -> int:
        try:
            response = self.s3_client.head_object(Bucket=self.bucket_name, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise UploadVerificationError(
                f"Upload verification failed for {self.bucket_name}/{key}: {_describe(e)}"
            )
        return response.get('ContentLength')

    def list_backups(self, prefix: str) -> List[RemoteBackupEntry]:
        """
        List backup archives under a prefix, newest first.

        Only archives are returned; sidecars and other objects are ignored.
        A prefix with no objects yields an empty list.

        Raises:
            StorageConfigError: If bucket or credentials are missing
            StorageTransferError: If listing fails
        """
        self.check_config()

        try:
            entries = []
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix):
                for obj in page.get('Contents', []):
                    if obj['Key'].endswith(ARCHIVE_EXTENSION):
                        entries.append(RemoteBackupEntry(
                            key=obj['Key'],
                            size=obj.get('Size', 0),
                            last_modified=obj['LastModified']
                        ))

        except (ClientError, BotoCoreError) as e:
            raise StorageTransferError(f"Failed to list {self.bucket_name}/{prefix}: {_describe(e)}")

        entries.sort(key=lambda entry: entry.last_modified, reverse=True)
        return entries

    def delete_batch(self, keys: Iterable[str]) -> List[str]:
        """
        Delete objects with batch requests.

        Missing keys are not an error. Per-key failures are collected across
        the whole batch and reported together.

        Returns:
            Keys reported as deleted

        Raises:
            StorageConfigError: If bucket or credentials are missing
            StorageTransferError: If a delete request fails outright
            PartialDeleteError: If any individual key failed
        """
        self.check_config()

        keys = list(keys)
        if not keys:
            return []

        deleted = []
        failed = []

        for start in range(0, len(keys), self.DELETE_BATCH_LIMIT):
            chunk = keys[start:start + self.DELETE_BATCH_LIMIT]
            try:
                response = self.s3_client.delete_objects(
                    Bucket=self.bucket_name,
                    Delete={
                        'Objects': [{'Key': key} for key in chunk],
                        'Quiet': False
                    }
                )
            except (ClientError, BotoCoreError) as e:
                raise StorageTransferError(f"Batch delete in {self.bucket_name} failed: {_describe(e)}")

            deleted.extend(item['Key'] for item in response.get('Deleted', []))
            for error in response.get('Errors', []):
                failed.append(error.get('Key'))
                logger.error(
                    f"Failed to delete {error.get('Key')}: {error.get('Code')} {error.get('Message')}"
                )

        if failed:
            raise PartialDeleteError(
                f"Failed to delete {len(failed)} of {len(keys)} objects from {self.bucket_name}",
                failed_keys=failed
            )

        logger.info(f"Deleted {len(deleted)} objects from {self.bucket_name}")
        return deleted

    def download(self, key: str, dest_path: str) -> int:
        """
        Download an object to a local file.

        Returns:
            Number of bytes written

        Raises:
            StorageConfigError: If bucket or credentials are missing
            StorageTransferError: If the request fails
            EmptyBodyError: If the response carries no body
        """
        self.check_config()

        logger.info(f"Downloading {self.bucket_name}/{key} to {dest_path}")

        try:
            response = self.s3_client.get_object(Bucket=self.bucket_name, Key=key)
            body = response.get('Body')
            if body is None:
                raise EmptyBodyError(f"No data received for {self.bucket_name}/{key}")

            written = 0
            with open(dest_path, 'wb') as f:
                for chunk in body.iter_chunks(chunk_size=MiB):
                    f.write(chunk)
                    written += len(chunk)

        except (ClientError, BotoCoreError, OSError) as e:
            raise StorageTransferError(f"Failed to download {self.bucket_name}/{key}: {_describe(e)}")

        logger.info(f"Downloaded {self.bucket_name}/{key} ({format_size(written)})")
        return written


def _describe(error: Exception) -> str:
    if isinstance(error, ClientError):
        code = error.response.get('Error', {}).get('Code', 'Unknown')
        return f"({code}) {error}"
    return str(error)
