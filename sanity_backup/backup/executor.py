"""
Backup executor - orchestrates the complete backup workflow.

Workflow:
1. Validate configuration
2. Export the dataset (documents and assets) into a temporary directory
3. Create compressed archive
4. Generate checksum and sidecar file
5. Upload archive and sidecar
6. Enforce retention under the dataset's prefix
7. Send notification (success or failure)
8. Cleanup temporary files
"""

import os
import time
import shutil
import logging
import tempfile
from datetime import datetime, timezone
from typing import Callable, Optional, TypeVar

from sanity_backup.config import Settings
from sanity_backup.errors import is_retryable
from sanity_backup.models import BackupRun, Notification
from sanity_backup.utils.checksum import SIDECAR_SUFFIX, generate_checksum, write_checksum_file
from sanity_backup.utils.redaction import sanitize
from sanity_backup.utils.retry import with_exponential_backoff
from .compression import create_archive, generate_archive_filename, generate_timestamp, get_archive_size
from .exporter import SanityExporter, create_exporter
from .notifications import SlackNotifier, format_backup_size
from .retention import RetentionManager
from .storage import S3Storage, UploadVerificationError, format_size

logger = logging.getLogger(__name__)

T = TypeVar('T')

EXPORT_DIRNAME = 'export'


def build_object_key(prefix: str, project_id: str, dataset: str, filename: str) -> str:
    """
    Build the storage key of an archive.

    Format: {prefix}/{project_id}/{dataset}/{filename}, without the prefix
    segment when the prefix is empty.
    """
    parts = [prefix.strip('/')] if prefix and prefix.strip('/') else []
    parts.extend([project_id, dataset, filename])
    return '/'.join(parts)


def build_dataset_prefix(prefix: str, project_id: str, dataset: str) -> str:
    """Listing prefix holding every backup of one dataset (trailing slash included)."""
    return build_object_key(prefix, project_id, dataset, '')


class BackupExecutor:
    """
    Orchestrates the complete backup workflow for one project/dataset.
    """

    EXPORT_RETRY_DELAY = 1.0
    UPLOAD_RETRY_DELAY = 2.0
    RETENTION_RETRY_DELAY = 1.0
    MAX_RETRIES = 3

    def __init__(
        self,
        settings: Settings,
        storage: Optional[S3Storage] = None,
        exporter: Optional[SanityExporter] = None,
        notifier: Optional[SlackNotifier] = None
    ):
        """
        Initialize backup executor.

        Args:
            settings: Settings built once at process entry
            storage: Storage client (built from settings when omitted)
            exporter: Dataset exporter (built from settings when omitted)
            notifier: Notifier (built from settings when omitted)
        """
        self.settings = settings
        self.storage = storage or S3Storage(settings.storage)
        self.exporter = exporter or create_exporter(settings)
        self.notifier = notifier or SlackNotifier(settings.webhook_url)
        self.run = None
        self.temp_dir = None
        self._stage = None

    def execute(self) -> BackupRun:
        """
        Execute the backup.

        Returns:
            BackupRun with status 'success', object key, size and checksum

        Raises:
            BackupError: The error of the failed stage, unchanged, after the
                failure notification has been attempted
        """
        config = self.settings.backup
        started = time.monotonic()

        self.run = BackupRun(
            project_id=config.project_id,
            dataset=config.dataset,
            timestamp=generate_timestamp()
        )

        self._log(f"Starting backup of {config.project_id}/{config.dataset} ({self.run.timestamp})")

        try:
            self._execute_workflow()

            self.run.status = 'success'
            self.run.duration_seconds = round(time.monotonic() - started)
            self._log(
                f"Backup completed successfully: {self.run.object_key} "
                f"({format_size(self.run.size_bytes)}, {self.run.duration_seconds}s)"
            )

            self._stage = 'notify'
            self._notify(Notification(
                status='success',
                project_id=config.project_id,
                dataset=config.dataset,
                backup_size=format_backup_size(self.run.size_bytes),
                object_key=self.run.object_key,
                duration=self.run.duration_seconds
            ))

        except Exception as e:
            message = self._clean(str(e)) or e.__class__.__name__
            self.run.status = 'failure'
            self.run.error_message = message
            self.run.failed_stage = self._stage
            self.run.duration_seconds = round(time.monotonic() - started)
            self._log(f"Backup failed during {self._stage}: {message}", logging.ERROR)
            e.stage = self._stage

            self._notify(Notification(
                status='failure',
                project_id=config.project_id,
                dataset=config.dataset,
                duration=self.run.duration_seconds,
                error=message
            ))
            raise

        finally:
            self._cleanup()

        return self.run

    def _execute_workflow(self):
        """Execute the main backup workflow steps."""
        config = self.settings.backup

        # Step 1: Validate configuration before any network call
        self._stage = 'config'
        self.settings.validate()
        self._log(f"Configuration: {self.settings.as_log_dict()}")

        # Step 2: Create temporary directory and export
        self._stage = 'export'
        self.temp_dir = tempfile.mkdtemp(prefix='sanity-backup-')
        self.run.work_dir = self.temp_dir
        export_dir = os.path.join(self.temp_dir, EXPORT_DIRNAME)
        self._log(f"Temporary directory: {self.temp_dir}")

        result = self._retry(
            lambda: self.exporter.export(
                export_dir,
                include_drafts=config.include_drafts,
                include_assets=config.include_assets,
                asset_concurrency=config.asset_concurrency
            ),
            self.EXPORT_RETRY_DELAY
        )
        self.run.assets = result.assets
        self._log(f"Exported {result.document_count} documents")
        if config.include_assets:
            self._log(
                f"Assets: {result.assets.succeeded} downloaded, {result.assets.failed} failed "
                f"of {result.assets.total}",
                logging.WARNING if result.assets.failed else logging.INFO
            )

        # Step 3: Create archive
        self._stage = 'archive'
        filename = generate_archive_filename(config.project_id, config.dataset, self.run.timestamp)
        self.run.archive_path = create_archive(
            self.temp_dir,
            EXPORT_DIRNAME,
            os.path.join(self.temp_dir, filename)
        )
        self.run.size_bytes = get_archive_size(self.run.archive_path)
        self._log(f"Archive created: {filename} ({format_size(self.run.size_bytes)})")

        # Step 4: Checksum and sidecar
        self._stage = 'checksum'
        self.run.checksum = generate_checksum(self.run.archive_path)
        sidecar = write_checksum_file(self.run.archive_path, self.run.checksum)
        self._log(f"SHA-256: {self.run.checksum}")

        # Step 5: Upload archive, then sidecar
        self._stage = 'upload'
        object_key = build_object_key(config.storage_prefix, config.project_id, config.dataset, filename)
        uploaded_size = self._retry(
            lambda: self.storage.upload(self.run.archive_path, object_key),
            self.UPLOAD_RETRY_DELAY
        )
        if uploaded_size != self.run.size_bytes:
            raise UploadVerificationError(
                f"Uploaded size of {object_key} is {uploaded_size}, expected {self.run.size_bytes}"
            )
        self.run.object_key = object_key
        self._log(f"Uploaded archive: {object_key}")

        self._stage = 'upload-checksum'
        self._retry(
            lambda: self.storage.upload(sidecar.path, object_key + SIDECAR_SUFFIX),
            self.UPLOAD_RETRY_DELAY
        )
        self._log(f"Uploaded sidecar: {object_key}{SIDECAR_SUFFIX}")

        # Step 6: Retention, only reached after both uploads succeeded
        self._stage = 'retention'
        prefix = build_dataset_prefix(config.storage_prefix, config.project_id, config.dataset)
        manager = RetentionManager(self.storage)
        decision = self._retry(
            lambda: manager.enforce(prefix, config.retain_count, max_age=config.retain_max_age),
            self.RETENTION_RETRY_DELAY
        )
        self.run.deleted_keys = list(decision.delete_keys)
        self._log(f"Retention: kept {len(decision.keep)}, deleted {len(decision.delete)} old backups")

    def _retry(self, fn: Callable[[], T], initial_delay: float) -> T:
        stage = self._stage

        def on_retry(attempt, error, delay):
            self._log(
                f"{stage} attempt {attempt} failed, retrying in {delay:g}s: {self._clean(str(error))}",
                logging.WARNING
            )

        return with_exponential_backoff(
            fn,
            max_retries=self.MAX_RETRIES,
            initial_delay=initial_delay,
            should_retry=is_retryable,
            on_retry=on_retry
        )

    def _notify(self, notification: Notification):
        """Send the run result; delivery problems never reach the caller."""
        try:
            self.notifier.send(notification)
        except Exception as e:
            self._log(f"Notification failed: {self._clean(str(e))}", logging.WARNING)

    def _cleanup(self):
        """Remove temporary directory and files."""
        if self.temp_dir and os.path.exists(self.temp_dir):
            try:
                shutil.rmtree(self.temp_dir)
                self._log("Cleaned up temporary directory")
            except OSError as e:
                self._log(f"Warning: Failed to cleanup temp directory: {e}", logging.WARNING)

    def _clean(self, text: str) -> str:
        return sanitize(text, self.settings.secrets())

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp to the run and the process log.

        Args:
            message: Log message
            level: logging level for the process log
        """
        message = self._clean(message)
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        if self.run is not None:
            self.run.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)


def execute_backup(settings: Settings) -> BackupRun:
    """
    Run one backup with components built from settings.

    Args:
        settings: Settings instance

    Returns:
        BackupRun with execution results

    Raises:
        BackupError: If any stage fails
    """
    executor = BackupExecutor(settings)
    return executor.execute()
