"""
Retention policy enforcement for backups.

Deletes remote archives older than the retention window. Enforcement is
best-effort: failures are logged as warnings and never fail the run.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, Optional

from gitea_backup.errors import RetentionWarning, RunCancelled


logger = logging.getLogger(__name__)


class RetentionManager:
    """
    Enforces the age-based retention policy under one storage prefix.
    """

    def __init__(self, storage, prefix: str, retention_days: int):
        """
        Initialize retention manager.

        Args:
            storage: Object with list_objects(prefix) and delete(key) (S3Storage)
            prefix: Key prefix holding the backups
            retention_days: Objects strictly older than this many days are deleted
        """
        self.storage = storage
        self.prefix = prefix
        self.retention_days = retention_days
        self.warnings = []

    def cutoff(self, now: Optional[datetime] = None) -> datetime:
        """Oldest last-modified time that is still retained."""
        if now is None:
            now = datetime.now(timezone.utc)
        return now - timedelta(days=self.retention_days)

    def enforce(self, keep_keys: Iterable[str] = (), now: Optional[datetime] = None,
                cancellation_check: Optional[Callable[[], None]] = None) -> Dict[str, Any]:
        """
        Delete objects older than the retention window.

        Objects exactly at the cutoff are kept. A failed delete is logged
        and the remaining objects are still processed. Cancellation is
        not a failure: RunCancelled always propagates.

        Args:
            keep_keys: Keys never deleted (the archive uploaded by this run)
            now: Reference time (default: current UTC time)
            cancellation_check: Optional function raising when the run is cancelled

        Returns:
            Dict with summary of cleanup operations:
            {
                'examined': int,
                'deleted': List[str],
                'kept': int,
                'errors': List[str]
            }
        """
        cutoff = self.cutoff(now)
        keep_keys = set(keep_keys)

        summary = {
            'examined': 0,
            'deleted': [],
            'kept': 0,
            'errors': []
        }

        logger.info(f"Applying retention policy ({self.retention_days} days, cutoff {cutoff.isoformat()})")

        try:
            objects = self.storage.list_objects(self.prefix)
        except RunCancelled:
            raise
        except Exception as e:
            self._warn(summary, RetentionWarning(f"Failed to list backups under '{self.prefix}': {e}"))
            return summary

        for obj in objects:
            summary['examined'] += 1

            if obj.key in keep_keys or not _is_older(obj.last_modified, cutoff):
                summary['kept'] += 1
                continue

            if cancellation_check:
                cancellation_check()

            try:
                self.storage.delete(obj.key)
                summary['deleted'].append(obj.key)
                logger.info(f"Deleted old backup: {obj.key}")
            except RunCancelled:
                raise
            except Exception as e:
                summary['kept'] += 1
                self._warn(summary, RetentionWarning(f"Failed to delete {obj.key}: {e}", detail=obj.key))

        logger.info(
            f"Retention enforcement complete. "
            f"Examined: {summary['examined']}, "
            f"Deleted: {len(summary['deleted'])}, "
            f"Errors: {len(summary['errors'])}"
        )

        return summary

    def _warn(self, summary: Dict[str, Any], warning: RetentionWarning):
        self.warnings.append(warning)
        summary['errors'].append(str(warning))
        logger.warning(str(warning))


def _is_older(last_modified: datetime, cutoff: datetime) -> bool:
    # Naive timestamps from storage are UTC
    if last_modified.tzinfo is None:
        last_modified = last_modified.replace(tzinfo=timezone.utc)
    return last_modified < cutoff
