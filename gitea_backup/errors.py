"""
Error taxonomy for the backup run.

Every fatal failure is a BackupError subclass carrying a failure code and
the process exit status it maps to. The exit statuses are part of the
command's interface and must not be renumbered.
"""

from typing import Optional


EXIT_SUCCESS = 0
EXIT_INTERNAL_ERROR = 70
EXIT_CANCELLED = 130


class BackupError(Exception):
    """Base class for all backup failures."""

    code = 'InternalError'
    exit_code = EXIT_INTERNAL_ERROR

    def __init__(self, message: str, code: Optional[str] = None, detail: Optional[str] = None):
        super().__init__(message)
        if code is not None:
            self.code = code
        self.detail = detail

    @property
    def message(self) -> str:
        return str(self)


class ConfigError(BackupError):
    """Raised when configuration is missing or invalid."""
    code = 'MissingField'
    exit_code = 1


class ConnectivityError(BackupError):
    """Raised when the database cannot be reached."""
    code = 'DataSourceUnreachable'
    exit_code = 2


class DependencyError(BackupError):
    """Raised when a required external tool is not installed."""
    code = 'ToolMissing'
    exit_code = 3


class AuthError(BackupError):
    """Raised when object storage rejects the credentials or the bucket."""
    code = 'StorageCredentialsInvalid'

    EXIT_CODES = {
        'StorageCredentialsInvalid': 4,
        'StorageBucketUnreachable': 5,
    }

    @property
    def exit_code(self) -> int:
        return self.EXIT_CODES.get(self.code, 4)


class ExportError(BackupError):
    """Raised when the database export fails."""
    code = 'ExportFailed'
    exit_code = 6


class MirrorError(BackupError):
    """Raised when mirroring the repository tree fails."""
    code = 'MirrorFailed'
    exit_code = 7


class PackagingError(BackupError):
    """Raised when archive creation fails."""
    code = 'PackagingFailed'
    exit_code = 8


class CorruptArtifactError(BackupError):
    """Raised when the archive fails its integrity test."""
    code = 'CorruptArtifact'
    exit_code = 9


class UploadError(BackupError):
    """Raised when uploading the archive to object storage fails."""
    code = 'UploadFailed'
    exit_code = 10


class PathError(BackupError):
    """Raised when a required local path is missing or unusable."""
    code = 'RepoRootMissing'
    exit_code = 11


class RunCancelled(BackupError):
    """Raised when the run was cancelled by a signal or timeout."""
    code = 'Cancelled'
    exit_code = EXIT_CANCELLED


class RetentionWarning(BackupError):
    """Non-fatal retention failure. Logged, never propagated out of the retention stage."""
    code = 'RetentionFailed'
