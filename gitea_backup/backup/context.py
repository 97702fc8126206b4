"""
Per-run execution context.

A RunContext owns the run identifier, the scratch directory and the log
file of one backup run. Used as a context manager it guarantees that the
scratch directory is removed and the log file closed on every exit path.
"""

import logging
import os
import shutil
import tempfile
import time
from datetime import datetime
from typing import Optional

from gitea_backup import PRODUCT_NAME, add_log_file, remove_log_file
from gitea_backup.errors import PathError, RunCancelled


logger = logging.getLogger(__name__)

STAGING_DIRNAME = 'staging'


class RunContext:
    """
    One execution of the backup pipeline.
    """

    def __init__(
        self,
        log_dir: str,
        scratch_root: Optional[str] = None,
        product: str = PRODUCT_NAME,
        started_at: Optional[datetime] = None
    ):
        """
        Initialize run context.

        Args:
            log_dir: Directory receiving the run's log file
            scratch_root: Parent of the scratch directory (default: system temp)
            product: Product name used in file names
            started_at: Start time (default: now, local time)
        """
        self.product = product
        self.started_at = started_at or datetime.now()
        self.run_id = self.started_at.strftime('%Y%m%d_%H%M%S')
        self.log_path = os.path.join(log_dir, f"{product}_backup_{self.run_id}.log")
        self.scratch_root = scratch_root
        self.scratch_dir = None
        self.staging_dir = None

        self._file_handler = None
        self._started_monotonic = time.monotonic()
        self._cancel_reason = None
        self._closing = False

    def __enter__(self) -> 'RunContext':
        try:
            self._file_handler = add_log_file(self.log_path)
        except OSError as e:
            raise PathError(f"Cannot open log file {self.log_path}: {e}", code='LogFileUnwritable')

        try:
            self.scratch_dir = tempfile.mkdtemp(prefix=f'{self.product}_backup_', dir=self.scratch_root)
            self.staging_dir = os.path.join(self.scratch_dir, STAGING_DIRNAME)
            os.mkdir(self.staging_dir)
        except OSError as e:
            self._close()
            raise PathError(f"Cannot create scratch directory: {e}", code='ScratchUnavailable')

        logger.info(f"Run {self.run_id} started, scratch directory: {self.scratch_dir}")
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self._close()
        return False

    @property
    def elapsed(self) -> float:
        """Seconds since the context was created."""
        return time.monotonic() - self._started_monotonic

    @property
    def cancelled(self) -> bool:
        return self._cancel_reason is not None

    def request_cancel(self, reason: str):
        """
        Ask the run to stop at its next cancellation check.

        A second request while one is pending raises RunCancelled
        immediately, except while the context is closing: scratch removal
        always runs to completion.
        """
        if self._cancel_reason is None:
            self._cancel_reason = reason
        elif not self._closing:
            raise RunCancelled(f"Run aborted: {reason}")

    def raise_if_cancelled(self):
        """Cancellation check passed to long-running operations."""
        if self._cancel_reason is not None:
            raise RunCancelled(f"Run cancelled: {self._cancel_reason}")

    def cleanup(self):
        """Remove the scratch directory."""
        if self.scratch_dir and os.path.exists(self.scratch_dir):
            try:
                shutil.rmtree(self.scratch_dir)
                logger.info("Cleaned up scratch directory")
            except OSError as e:
                logger.warning(f"Failed to clean up scratch directory {self.scratch_dir}: {e}")

    def _close(self):
        self._closing = True
        self.cleanup()
        if self._file_handler is not None:
            remove_log_file(self._file_handler)
            self._file_handler = None
