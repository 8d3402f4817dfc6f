"""
Retention policy enforcement for backups.

Decides which remote archives fall outside the retention window and removes
them together with their checksum sidecars. The decision itself is a pure
function over a listing; RetentionManager does the storage I/O around it.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from sanity_backup.models import RemoteBackupEntry, RetentionDecision
from sanity_backup.utils.checksum import SIDECAR_SUFFIX

logger = logging.getLogger(__name__)


def plan_retention(
    entries: List[RemoteBackupEntry],
    retain_count: int,
    max_age: Optional[timedelta] = None,
    now: Optional[datetime] = None
) -> RetentionDecision:
    """
    Partition a listing into backups to keep and backups to delete.

    By default the retain_count newest entries are kept. When max_age is
    given, entries older than it are deleted instead, except that the newest
    entry is always kept so a stale schedule cannot empty the prefix.

    Args:
        entries: Backup listing (any order)
        retain_count: Number of newest backups to keep
        max_age: Optional age cutoff replacing the count rule
        now: Reference time for the age cutoff (defaults to current UTC time)

    Returns:
        RetentionDecision whose delete_keys holds every archive key to delete,
        each followed by its sidecar key
    """
    ordered = sorted(entries, key=lambda entry: entry.last_modified, reverse=True)

    if max_age is not None:
        now = now or datetime.now(timezone.utc)
        cutoff = now - max_age
        keep = ordered[:1] + [e for e in ordered[1:] if _aware(e.last_modified) >= cutoff]
        delete = [e for e in ordered[1:] if _aware(e.last_modified) < cutoff]
    else:
        keep = ordered[:retain_count]
        delete = ordered[retain_count:]

    delete_keys = []
    for entry in delete:
        delete_keys.append(entry.key)
        delete_keys.append(entry.key + SIDECAR_SUFFIX)

    return RetentionDecision(keep=keep, delete=delete, delete_keys=delete_keys)


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class RetentionManager:
    """
    Applies the retention policy to one storage prefix.
    """

    def __init__(self, storage):
        """
        Initialize retention manager.

        Args:
            storage: S3Storage instance (anything with list_backups/delete_batch)
        """
        self.storage = storage

    def enforce(self, prefix: str, retain_count: int, max_age: Optional[timedelta] = None) -> RetentionDecision:
        """
        Delete backups under prefix that fall outside the retention window.

        No delete request is sent when nothing needs deleting.

        Returns:
            The applied RetentionDecision

        Raises:
            StorageError: If listing or deleting fails
        """
        entries = self.storage.list_backups(prefix)
        decision = plan_retention(entries, retain_count, max_age=max_age)

        if max_age is not None:
            policy = f"max age {max_age.days} days"
        else:
            policy = f"keep newest {retain_count}"

        if not decision.delete:
            logger.info(f"Retention ({policy}): {len(entries)} backups under {prefix}, nothing to delete")
            return decision

        for entry in decision.delete:
            logger.info(f"Deleting old backup: {entry.key}")

        self.storage.delete_batch(decision.delete_keys)
        logger.info(
            f"Retention ({policy}): kept {len(decision.keep)}, "
            f"deleted {len(decision.delete)} backups under {prefix}"
        )
        return decision
