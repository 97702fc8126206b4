"""
Run outcome records and the end-of-run summary.
"""

import json
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, TextIO

from gitea_backup.errors import EXIT_SUCCESS, BackupError


logger = logging.getLogger(__name__)

STATUS_SUCCESS = 'success'
STATUS_FAILED = 'failed'


@dataclass
class StageResult:
    """Outcome of one pipeline stage."""
    stage: str
    status: str
    elapsed: float = 0.0
    code: Optional[str] = None
    message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == STATUS_SUCCESS


@dataclass
class RunReport:
    """Summary of one backup run."""
    run_id: str
    status: str = STATUS_FAILED
    exit_code: int = EXIT_SUCCESS
    failure_code: Optional[str] = None
    failure_stage: Optional[str] = None
    cause: Optional[str] = None
    artifact_name: Optional[str] = None
    remote_location: Optional[str] = None
    size_bytes: Optional[int] = None
    elapsed: float = 0.0
    log_path: Optional[str] = None
    stages: List[StageResult] = field(default_factory=list)
    retention: Optional[Dict[str, Any]] = None

    @property
    def succeeded(self) -> bool:
        return self.status == STATUS_SUCCESS

    def record_failure(self, error: BackupError, stage: Optional[str] = None):
        self.status = STATUS_FAILED
        self.exit_code = error.exit_code
        self.failure_code = error.code
        self.failure_stage = stage
        # Single line cause for the operator log
        self.cause = ' '.join(str(error).split())

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def format_size(size_bytes: Optional[int]) -> str:
    if size_bytes is None:
        return 'n/a'
    return f"{size_bytes / 1024 / 1024:.2f} MB"


class RunReporter:
    """
    Emits the end-of-run summary to the log and, optionally, as JSON.
    """

    def __init__(self, json_stream: Optional[TextIO] = None):
        """
        Args:
            json_stream: Stream receiving the report as one JSON object
                (default: no JSON output)
        """
        self.json_stream = json_stream

    def emit(self, report: RunReport):
        if report.succeeded:
            logger.info("Backup completed successfully!")
            logger.info(f"  S3 Location: {report.remote_location}")
            logger.info(f"  Size: {format_size(report.size_bytes)}")
        else:
            stage = f" during {report.failure_stage}" if report.failure_stage else ''
            logger.error(f"Backup failed{stage} [{report.failure_code}, exit {report.exit_code}]: {report.cause}")

        if report.retention and report.retention.get('errors'):
            logger.warning(f"Retention finished with {len(report.retention['errors'])} warning(s)")

        logger.info(f"  Elapsed: {report.elapsed:.1f}s")
        if report.log_path:
            logger.info(f"  Log: {report.log_path}")

        if self.json_stream is not None:
            self.json_stream.write(json.dumps(report.to_dict(), default=str) + '\n')
            self.json_stream.flush()
