"""
Backup module for gitea-backup.

This module handles the backup pipeline:
- Pre-flight checks
- Database export and repository mirroring
- Compression and integrity verification
- Upload to S3
- Retention policy enforcement
- Run reporting
"""

from .executor import BackupExecutor, BackupArtifact
from .context import RunContext
from .preflight import PreflightChecker
from .sources import MySQLSource, RsyncMirror, LocalMirror, create_mirror
from .compression import create_archive, verify_archive
from .storage import S3Storage, RemoteObject
from .retention import RetentionManager
from .report import RunReport, RunReporter, StageResult

__all__ = [
    'BackupExecutor',
    'BackupArtifact',
    'RunContext',
    'PreflightChecker',
    'MySQLSource',
    'RsyncMirror',
    'LocalMirror',
    'create_mirror',
    'create_archive',
    'verify_archive',
    'S3Storage',
    'RemoteObject',
    'RetentionManager',
    'RunReport',
    'RunReporter',
    'StageResult'
]
