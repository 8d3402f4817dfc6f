"""
Command line entry point.

Without a sub-command one backup is run and three machine readable lines are
printed for the calling pipeline:

    objectKey: <key>
    objectSize: <bytes>
    backupTimestamp: <token>
"""

import sys
import logging
import argparse
import tempfile
from typing import List, Optional

from sanity_backup import __version__, configure_logging
from sanity_backup.config import Settings
from sanity_backup.errors import BackupError
from sanity_backup.backup.executor import BackupExecutor, build_dataset_prefix
from sanity_backup.backup.exporter import create_exporter
from sanity_backup.backup.notifications import SlackNotifier
from sanity_backup.backup.storage import S3Storage, format_size
from sanity_backup.backup.verification import verify_remote_backup
from sanity_backup.utils.redaction import sanitize

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='sanity-backup',
        description='Back up a Sanity dataset to Cloudflare R2. Configuration is read from the environment.'
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

    sub = parser.add_subparsers(dest='command')
    sub.add_parser('run', help='Run one backup (default)')
    sub.add_parser('list', help='List stored backups of the configured dataset, newest first')
    verify = sub.add_parser('verify', help='Download a backup and check it against its sidecar')
    verify.add_argument('key', help='Object key of the archive')
    sub.add_parser('check', help='Check that the source token can read the dataset')
    sub.add_parser('test-notification', help='Send a test message to the notification webhook')
    return parser


def cmd_run(settings: Settings) -> int:
    run = BackupExecutor(settings).execute()
    print(f"objectKey: {run.object_key}")
    print(f"objectSize: {run.size_bytes}")
    print(f"backupTimestamp: {run.timestamp}")
    return 0


def cmd_list(settings: Settings) -> int:
    settings.validate(require_source=False)
    config = settings.backup
    prefix = build_dataset_prefix(config.storage_prefix, config.project_id, config.dataset)
    entries = S3Storage(settings.storage).list_backups(prefix)

    if not entries:
        print(f"No backups under {prefix}")
        return 0

    for entry in entries:
        print(f"{entry.last_modified.isoformat()}  {format_size(entry.size):>10}  {entry.key}")
    return 0


def cmd_verify(settings: Settings, key: str) -> int:
    settings.validate(require_source=False)
    storage = S3Storage(settings.storage)
    with tempfile.TemporaryDirectory(prefix='sanity-verify-') as work_dir:
        record = verify_remote_backup(storage, key, work_dir)
    print(f"OK  {record.digest}  {record.filename}")
    return 0


def cmd_check(settings: Settings) -> int:
    settings.validate(require_storage=False)
    if create_exporter(settings).validate_credentials():
        print("Source credentials OK")
        return 0
    print("Source credentials check failed", file=sys.stderr)
    return 1


def cmd_test_notification(settings: Settings) -> int:
    SlackNotifier(settings.webhook_url).send_test()
    print("Test notification sent")
    return 0


def _failure_prefix(command: str, error: BaseException) -> str:
    stage = getattr(error, 'stage', None)
    if stage:
        return f"{command} failed during {stage}"
    return f"{command} failed"


def main(argv: Optional[List[str]] = None) -> int:
    """
    Parse arguments, configure logging and dispatch.

    Returns:
        Process exit code (0 on success, 1 on failure)
    """
    args = build_parser().parse_args(argv)

    settings = Settings.from_env()
    configure_logging(settings.log_level, settings.log_dir, settings.secrets())

    command = args.command or 'run'

    try:
        if command == 'run':
            return cmd_run(settings)
        if command == 'list':
            return cmd_list(settings)
        if command == 'verify':
            return cmd_verify(settings, args.key)
        if command == 'check':
            return cmd_check(settings)
        if command == 'test-notification':
            return cmd_test_notification(settings)
    except BackupError as e:
        logger.error(f"{_failure_prefix(command, e)}: {sanitize(str(e), settings.secrets())}")
        return 1
    except Exception as e:
        logger.exception(
            f"{_failure_prefix(command, e)} with an unexpected error: {sanitize(str(e), settings.secrets())}"
        )
        return 1

    return 1


if __name__ == '__main__':
    sys.exit(main())
