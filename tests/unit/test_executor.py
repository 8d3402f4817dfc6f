"""
Unit tests for backup executor (sanity_backup/backup/executor.py).

Tests BackupExecutor for orchestrating complete backup workflows. The
exporter, storage and notifier are MagicMocks; archive and checksum run for real.
"""

import os
import re
import shutil
import hashlib
import tarfile
import io
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest
import requests

from sanity_backup.backup.executor import (
    BackupExecutor,
    build_dataset_prefix,
    build_object_key,
    execute_backup,
)
from sanity_backup.backup.exporter import EmptyExportError, ExportTransportError
from sanity_backup.backup.notifications import SlackNotifier
from sanity_backup.backup.storage import LocalFileNotFoundError, UploadVerificationError
from sanity_backup.config import Settings
from sanity_backup.errors import ConfigError
from sanity_backup.models import AssetSummary, AssetDownloadResult, ExportResult, RemoteBackupEntry


KEY_PATTERN = re.compile(
    r'^sanity/proj123/production/proj123-production-\d{4}-\d{2}-\d{2}T\d{2}-\d{2}-\d{2}-\d{3}Z\.tar\.gz$'
)


@pytest.fixture(autouse=True)
def no_sleep():
    with patch('sanity_backup.utils.retry.time.sleep') as mock_sleep:
        yield mock_sleep


def fake_export(assets=None):
    """Exporter side effect writing two documents and one asset."""
    def export(output_dir, include_drafts=True, include_assets=True, asset_concurrency=6):
        assets_dir = os.path.join(output_dir, 'assets')
        os.makedirs(assets_dir, exist_ok=True)
        documents_path = os.path.join(output_dir, 'data.ndjson')
        with open(documents_path, 'w') as f:
            f.write('{"_id":"movie-1"}\n{"_id":"person-1"}\n')
        with open(os.path.join(assets_dir, 'abc123-800x600.jpg'), 'wb') as f:
            f.write(b'jpeg')
        return ExportResult(
            documents_path=documents_path,
            document_count=2,
            size_bytes=os.path.getsize(documents_path),
            assets_dir=assets_dir,
            assets=assets or AssetSummary(total=1, succeeded=1)
        )
    return export


def existing_backups(count):
    now = datetime.now(timezone.utc)
    return [
        RemoteBackupEntry(
            key=f'sanity/proj123/production/old-{day:02d}.tar.gz',
            size=100,
            last_modified=now - timedelta(days=day)
        )
        for day in range(1, count + 1)
    ]


@pytest.fixture
def components():
    """Exporter, storage and notifier doubles; uploads are captured by key."""
    uploads = {}

    def upload(local_path, key):
        with open(local_path, 'rb') as f:
            uploads[key] = f.read()
        return os.path.getsize(local_path)

    exporter = MagicMock()
    exporter.export.side_effect = fake_export()
    storage = MagicMock()
    storage.upload.side_effect = upload
    storage.list_backups.return_value = existing_backups(3)
    notifier = MagicMock()
    return exporter, storage, notifier, uploads


def make_executor(settings, components):
    exporter, storage, notifier, _ = components
    return BackupExecutor(settings, storage=storage, exporter=exporter, notifier=notifier)


class TestBackupExecutor:
    """Test BackupExecutor class."""

    def test_executor_initialization(self, settings, components):
        executor = make_executor(settings, components)

        assert executor.settings is settings
        assert executor.run is None
        assert executor.temp_dir is None

    def test_executor_successful_backup(self, settings, components):
        """Happy path: export, archive, checksum, both uploads, no retention deletes, notify."""
        exporter, storage, notifier, uploads = components
        executor = make_executor(settings, components)

        run = executor.execute()

        assert run.status == 'success'
        assert run.succeeded
        assert KEY_PATTERN.match(run.object_key)
        assert run.object_key.endswith(f'{run.timestamp}.tar.gz')
        assert re.fullmatch(r'[0-9a-f]{64}', run.checksum)
        assert run.size_bytes == len(uploads[run.object_key])
        assert run.error_message is None

        # Archive content and checksum
        archive = uploads[run.object_key]
        assert hashlib.sha256(archive).hexdigest() == run.checksum
        with tarfile.open(fileobj=io.BytesIO(archive), mode='r:gz') as tar:
            assert sorted(tar.getnames()) == [
                'export', 'export/assets', 'export/assets/abc123-800x600.jpg', 'export/data.ndjson'
            ]

        # Sidecar
        filename = os.path.basename(run.object_key)
        assert uploads[run.object_key + '.sha256'] == f'{run.checksum}  {filename}\n'.encode('utf-8')
        assert [c.args[1] for c in storage.upload.call_args_list] == [run.object_key, run.object_key + '.sha256']

        # Retention: 3 existing with retain 7 deletes nothing
        storage.list_backups.assert_called_once_with('sanity/proj123/production/')
        storage.delete_batch.assert_not_called()

        # Notification
        notifier.send.assert_called_once()
        notification = notifier.send.call_args.args[0]
        assert notification.status == 'success'
        assert notification.object_key == run.object_key
        assert notification.duration == run.duration_seconds
        assert notification.backup_size == f'{run.size_bytes / 1024 / 1024:.2f}'

        # Cleanup
        assert not os.path.exists(executor.temp_dir)

    def test_export_options_passed(self, test_env, components):
        test_env.update({'INCLUDE_DRAFTS': 'false', 'ASSET_CONCURRENCY': '3'})
        exporter = components[0]

        make_executor(Settings.from_env(test_env), components).execute()

        kwargs = exporter.export.call_args.kwargs
        assert kwargs['include_drafts'] is False
        assert kwargs['include_assets'] is True
        assert kwargs['asset_concurrency'] == 3
        assert os.path.basename(exporter.export.call_args.args[0]) == 'export'

    def test_retention_trim(self, settings, components):
        """10 existing backups with retain 7: the 3 oldest and their sidecars are deleted."""
        storage = components[1]
        storage.list_backups.return_value = existing_backups(10)

        run = make_executor(settings, components).execute()

        deleted = storage.delete_batch.call_args.args[0]
        assert deleted == [
            'sanity/proj123/production/old-08.tar.gz', 'sanity/proj123/production/old-08.tar.gz.sha256',
            'sanity/proj123/production/old-09.tar.gz', 'sanity/proj123/production/old-09.tar.gz.sha256',
            'sanity/proj123/production/old-10.tar.gz', 'sanity/proj123/production/old-10.tar.gz.sha256',
        ]
        assert run.deleted_keys == deleted

    def test_partial_asset_failure_is_not_fatal(self, settings, components):
        exporter, storage, notifier, _ = components
        summary = AssetSummary()
        for i in range(5):
            error = 'HTTP 404' if i in (1, 3) else None
            summary.add(AssetDownloadResult(url=f'https://cdn.sanity.io/files/p/d/a{i}.bin', error=error))
        exporter.export.side_effect = fake_export(assets=summary)

        run = make_executor(settings, components).execute()

        assert run.status == 'success'
        assert run.assets.failed == 2
        assert any('2 failed' in line for line in run.logs)
        assert storage.upload.call_count == 2
        assert notifier.send.call_args.args[0].status == 'success'

    def test_notifier_outage_does_not_fail_backup(self, settings, components):
        notifier = components[2]
        notifier.send.side_effect = RuntimeError('slack down')

        run = make_executor(settings, components).execute()

        assert run.status == 'success'

    def test_real_notifier_with_failing_webhook(self, settings, components):
        exporter, storage, _, _ = components
        session = MagicMock()
        session.post.side_effect = requests.ConnectionError('no route')
        notifier = SlackNotifier(settings.webhook_url, session=session)

        run = BackupExecutor(settings, storage=storage, exporter=exporter, notifier=notifier).execute()

        assert run.status == 'success'
        session.post.assert_called_once()

    def test_transient_export_failure_is_retried(self, settings, components, no_sleep):
        exporter = components[0]
        attempts = []
        good = fake_export()

        def flaky(output_dir, **kwargs):
            attempts.append(output_dir)
            if len(attempts) == 1:
                raise ExportTransportError('HTTP 502')
            return good(output_dir, **kwargs)
        exporter.export.side_effect = flaky

        run = make_executor(settings, components).execute()

        assert run.status == 'success'
        assert len(attempts) == 2
        no_sleep.assert_called_once_with(1.0)


class TestBackupExecutorFailures:

    def test_empty_export_is_fatal_and_not_retried(self, settings, components):
        exporter, storage, notifier, _ = components
        error = EmptyExportError('Export of proj123/production produced an empty data.ndjson')
        exporter.export.side_effect = error
        executor = make_executor(settings, components)

        with pytest.raises(EmptyExportError) as exc_info:
            executor.execute()

        assert exc_info.value is error
        assert exporter.export.call_count == 1
        storage.upload.assert_not_called()
        storage.delete_batch.assert_not_called()
        notification = notifier.send.call_args.args[0]
        assert notification.status == 'failure'
        assert 'empty data.ndjson' in notification.error
        assert executor.run.status == 'failure'
        assert executor.run.failed_stage == 'export'
        assert error.stage == 'export'
        assert not os.path.exists(executor.temp_dir)

    def test_size_mismatch_fails_after_retries_without_retention(self, settings, components):
        _, storage, notifier, _ = components
        storage.upload.side_effect = UploadVerificationError('size mismatch (expected 100, got 99)')
        executor = make_executor(settings, components)

        with pytest.raises(UploadVerificationError) as exc_info:
            executor.execute()

        assert storage.upload.call_count == 4
        assert exc_info.value.stage == 'upload'
        storage.list_backups.assert_not_called()
        storage.delete_batch.assert_not_called()
        assert notifier.send.call_args.args[0].status == 'failure'
        assert executor.run.failed_stage == 'upload'
        assert not os.path.exists(executor.temp_dir)

    def test_missing_upload_file_is_not_retried(self, settings, components, no_sleep):
        _, storage, _, _ = components
        storage.upload.side_effect = LocalFileNotFoundError('Local file not found: /tmp/gone.tar.gz')
        executor = make_executor(settings, components)

        with pytest.raises(LocalFileNotFoundError):
            executor.execute()

        assert storage.upload.call_count == 1
        no_sleep.assert_not_called()
        assert executor.run.failed_stage == 'upload'

    def test_upload_returning_wrong_size_fails(self, settings, components):
        storage = components[1]
        storage.upload.side_effect = None
        storage.upload.return_value = 1

        with pytest.raises(UploadVerificationError):
            make_executor(settings, components).execute()

        storage.list_backups.assert_not_called()

    def test_missing_config_fails_before_network(self, test_env, components):
        exporter, storage, notifier, _ = components
        del test_env['SOURCE_TOKEN']
        executor = make_executor(Settings.from_env(test_env), components)

        with pytest.raises(ConfigError, match='SOURCE_TOKEN'):
            executor.execute()

        exporter.export.assert_not_called()
        storage.upload.assert_not_called()
        assert notifier.send.call_args.args[0].status == 'failure'
        assert executor.run.failed_stage == 'config'
        assert executor.temp_dir is None

    def test_failure_notification_is_sanitized(self, settings, components):
        exporter, _, notifier, _ = components
        error = ExportTransportError(f'request with {settings.source_token} rejected')
        exporter.export.side_effect = error

        with pytest.raises(ExportTransportError) as exc_info:
            make_executor(settings, components).execute()

        assert str(exc_info.value) == str(error)
        notification = notifier.send.call_args.args[0]
        assert settings.source_token not in notification.error
        assert '***' in notification.error

    def test_notifier_outage_keeps_original_error(self, settings, components):
        exporter, _, notifier, _ = components
        exporter.export.side_effect = EmptyExportError('empty')
        notifier.send.side_effect = RuntimeError('slack down')

        with pytest.raises(EmptyExportError):
            make_executor(settings, components).execute()

    def test_retention_failure_fails_run(self, settings, components):
        _, storage, notifier, _ = components
        storage.list_backups.return_value = existing_backups(10)
        storage.delete_batch.side_effect = RuntimeError('delete failed')
        executor = make_executor(settings, components)

        with pytest.raises(RuntimeError):
            executor.execute()

        assert storage.delete_batch.call_count == 4
        assert executor.run.failed_stage == 'retention'
        assert notifier.send.call_args.args[0].status == 'failure'

    def test_cleanup_failure_is_logged_not_raised(self, settings, components):
        executor = make_executor(settings, components)

        with patch('sanity_backup.backup.executor.shutil.rmtree', side_effect=OSError('busy')):
            run = executor.execute()

        assert run.status == 'success'
        assert any('Failed to cleanup temp directory' in line for line in run.logs)
        shutil.rmtree(executor.temp_dir, ignore_errors=True)


class TestObjectKeys:

    def test_build_object_key(self):
        assert build_object_key('sanity', 'p', 'd', 'f.tar.gz') == 'sanity/p/d/f.tar.gz'

    def test_build_object_key_without_prefix(self):
        assert build_object_key('', 'p', 'd', 'f.tar.gz') == 'p/d/f.tar.gz'

    def test_build_object_key_strips_slashes(self):
        assert build_object_key('/backups/', 'p', 'd', 'f.tar.gz') == 'backups/p/d/f.tar.gz'

    def test_build_dataset_prefix(self):
        assert build_dataset_prefix('sanity', 'p', 'd') == 'sanity/p/d/'
        assert build_dataset_prefix('', 'p', 'd') == 'p/d/'

    def test_empty_prefix_run(self, test_env, components):
        test_env['R2_PREFIX'] = ''
        storage = components[1]

        run = make_executor(Settings.from_env(test_env), components).execute()

        assert run.object_key.startswith('proj123/production/proj123-production-')
        storage.list_backups.assert_called_once_with('proj123/production/')


def test_execute_backup_builds_components(settings):
    with patch('sanity_backup.backup.executor.BackupExecutor') as mock_executor:
        result = execute_backup(settings)

    mock_executor.assert_called_once_with(settings)
    assert result is mock_executor.return_value.execute.return_value
