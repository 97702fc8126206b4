"""
Configuration loading and validation.

The configuration file uses the shell-style KEY="value" format of
credential_config.sh. Keys missing from the file are taken from the
process environment.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional

from dotenv import dotenv_values

from gitea_backup.errors import ConfigError


DEFAULT_CONFIG_FILE = './credential_config.sh'

REQUIRED_KEYS = (
    'DB_USER',
    'DB_PASS',
    'AWS_ACCESS_KEY_ID',
    'AWS_SECRET_ACCESS_KEY',
    'S3_BUCKET',
)

DEFAULTS = {
    'DB_HOST': 'localhost',
    'DB_PORT': '3306',
    'GITEA_DATA_DIR': '/var/lib/gitea',
    'AWS_DEFAULT_REGION': 'us-east-1',
    'S3_PATH': 'gitea-backups',
    'RETENTION_DAYS': '7',
    'S3_ENDPOINT_URL': None,
    'ARCHIVE_FORMAT': 'zip',
    'MIRROR_METHOD': 'rsync',
    'LOG_DIR': '/var/log',
    'SCRATCH_DIR': None,
}

ARCHIVE_FORMATS = ('zip', 'tar.gz', 'tar.bz2', 'tar.xz')
MIRROR_METHODS = ('rsync', 'copy')

# Gitea keeps bare repositories below its data directory
REPOSITORIES_SUBDIR = 'data/gitea-repositories'


@dataclass(frozen=True)
class BackupConfig:
    """Validated, immutable configuration for one backup run."""

    db_user: str
    db_pass: str = field(repr=False)
    aws_access_key_id: str = field(repr=False)
    aws_secret_access_key: str = field(repr=False)
    s3_bucket: str
    db_host: str = 'localhost'
    db_port: int = 3306
    gitea_data_dir: str = '/var/lib/gitea'
    aws_region: str = 'us-east-1'
    s3_path: str = 'gitea-backups'
    retention_days: int = 7
    s3_endpoint_url: Optional[str] = None
    archive_format: str = 'zip'
    mirror_method: str = 'rsync'
    log_dir: str = '/var/log'
    scratch_dir: Optional[str] = None

    @property
    def repo_dir(self) -> str:
        return str(Path(self.gitea_data_dir) / REPOSITORIES_SUBDIR)

    def remote_key(self, artifact_name: str) -> str:
        """Object key for an artifact: <s3_path>/<artifact_name>."""
        if not self.s3_path:
            return artifact_name
        return f"{self.s3_path}/{artifact_name}"

    def remote_url(self, key: str) -> str:
        return f"s3://{self.s3_bucket}/{key}"


def load_config_file(path: str, environ: Optional[Mapping[str, str]] = None) -> Dict[str, Optional[str]]:
    """
    Read raw key/value configuration from a file.

    Args:
        path: Path to a KEY="value" configuration file
        environ: Environment used to fill keys absent from the file
            (default: os.environ)

    Returns:
        Dict of raw configuration values

    Raises:
        ConfigError: If the file does not exist
    """
    config_path = Path(path).expanduser()
    if not config_path.is_file():
        raise ConfigError(
            f"Configuration file '{path}' not found",
            code='ConfigFileMissing',
            detail=str(path)
        )

    raw = dict(dotenv_values(config_path))

    if environ is None:
        environ = os.environ

    for key in REQUIRED_KEYS + tuple(DEFAULTS):
        if raw.get(key) in (None, '') and environ.get(key):
            raw[key] = environ[key]

    return raw


def validate_config(raw: Mapping[str, Optional[str]]) -> BackupConfig:
    """
    Validate raw configuration and fill in defaults.

    Args:
        raw: Raw key/value configuration

    Returns:
        Immutable BackupConfig

    Raises:
        ConfigError: MissingField for an absent or empty mandatory key,
            InvalidValue for an optional key that cannot be used
    """
    for key in REQUIRED_KEYS:
        value = raw.get(key)
        if value is None or not str(value).strip():
            raise ConfigError(f"{key} is not set in configuration", code='MissingField', detail=key)

    values = {}
    for key, default in DEFAULTS.items():
        value = raw.get(key)
        if value is None or not str(value).strip():
            value = default
        values[key] = value.strip() if isinstance(value, str) else value

    retention_days = _parse_int('RETENTION_DAYS', values['RETENTION_DAYS'], minimum=0)
    db_port = _parse_int('DB_PORT', values['DB_PORT'], minimum=1)

    if values['ARCHIVE_FORMAT'] not in ARCHIVE_FORMATS:
        raise ConfigError(
            f"ARCHIVE_FORMAT must be one of {list(ARCHIVE_FORMATS)}, got '{values['ARCHIVE_FORMAT']}'",
            code='InvalidValue',
            detail='ARCHIVE_FORMAT'
        )
    if values['MIRROR_METHOD'] not in MIRROR_METHODS:
        raise ConfigError(
            f"MIRROR_METHOD must be one of {list(MIRROR_METHODS)}, got '{values['MIRROR_METHOD']}'",
            code='InvalidValue',
            detail='MIRROR_METHOD'
        )

    return BackupConfig(
        db_user=str(raw['DB_USER']).strip(),
        db_pass=str(raw['DB_PASS']),
        aws_access_key_id=str(raw['AWS_ACCESS_KEY_ID']).strip(),
        aws_secret_access_key=str(raw['AWS_SECRET_ACCESS_KEY']).strip(),
        s3_bucket=str(raw['S3_BUCKET']).strip(),
        db_host=values['DB_HOST'],
        db_port=db_port,
        gitea_data_dir=values['GITEA_DATA_DIR'],
        aws_region=values['AWS_DEFAULT_REGION'],
        s3_path=values['S3_PATH'].strip('/'),
        retention_days=retention_days,
        s3_endpoint_url=values['S3_ENDPOINT_URL'],
        archive_format=values['ARCHIVE_FORMAT'],
        mirror_method=values['MIRROR_METHOD'],
        log_dir=values['LOG_DIR'],
        scratch_dir=values['SCRATCH_DIR'],
    )


def _parse_int(key: str, value: str, minimum: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{key} must be an integer, got '{value}'", code='InvalidValue', detail=key)

    if number < minimum:
        raise ConfigError(f"{key} must be >= {minimum}, got {number}", code='InvalidValue', detail=key)

    return number
