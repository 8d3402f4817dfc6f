"""
Backup module for Sanity R2 Backup.

This module handles the core backup functionality including:
- Dataset export (documents and assets)
- Compression
- Storage (Cloudflare R2 over the S3 API)
- Retention policy enforcement
- Notifications
- Execution orchestration
"""

from .executor import BackupExecutor, execute_backup
from .exporter import SanityExporter
from .compression import create_archive
from .storage import S3Storage
from .retention import RetentionManager, plan_retention
from .notifications import SlackNotifier
from .verification import verify_remote_backup

__all__ = [
    'BackupExecutor',
    'execute_backup',
    'SanityExporter',
    'create_archive',
    'S3Storage',
    'RetentionManager',
    'plan_retention',
    'SlackNotifier',
    'verify_remote_backup'
]
