"""
Unit tests for configuration loading and validation (gitea_backup/config.py).
"""

import dataclasses

import pytest

from gitea_backup.config import (
    BackupConfig,
    DEFAULTS,
    REQUIRED_KEYS,
    load_config_file,
    validate_config
)
from gitea_backup.errors import ConfigError


MINIMAL = {
    'DB_USER': 'gitea',
    'DB_PASS': 'pw',
    'AWS_ACCESS_KEY_ID': 'AKIA',
    'AWS_SECRET_ACCESS_KEY': 'secret',
    'S3_BUCKET': 'bucket',
}


class TestValidateConfig:
    """Test validate_config function."""

    @pytest.mark.parametrize("missing_key", REQUIRED_KEYS)
    def test_missing_required_key(self, missing_key):
        """Test that each absent mandatory key is reported by name."""
        raw = dict(MINIMAL)
        del raw[missing_key]

        with pytest.raises(ConfigError) as exc_info:
            validate_config(raw)

        assert exc_info.value.code == 'MissingField'
        assert exc_info.value.detail == missing_key
        assert exc_info.value.exit_code == 1

    @pytest.mark.parametrize("missing_key", REQUIRED_KEYS)
    @pytest.mark.parametrize("empty_value", ['', '   ', None])
    def test_empty_required_key(self, missing_key, empty_value):
        """Test that empty or blank mandatory keys count as missing."""
        raw = dict(MINIMAL, **{missing_key: empty_value})

        with pytest.raises(ConfigError) as exc_info:
            validate_config(raw)

        assert exc_info.value.detail == missing_key

    def test_defaults_applied(self):
        """Test documented defaults when optional keys are omitted."""
        config = validate_config(MINIMAL)

        assert config.db_host == 'localhost'
        assert config.db_port == 3306
        assert config.gitea_data_dir == '/var/lib/gitea'
        assert config.repo_dir == '/var/lib/gitea/data/gitea-repositories'
        assert config.aws_region == 'us-east-1'
        assert config.s3_path == 'gitea-backups'
        assert config.retention_days == 7
        assert config.s3_endpoint_url is None
        assert config.archive_format == 'zip'
        assert config.mirror_method == 'rsync'
        assert config.log_dir == '/var/log'
        assert config.scratch_dir is None

    def test_defaults_table_matches(self):
        """Test the defaults table itself."""
        assert DEFAULTS['DB_HOST'] == 'localhost'
        assert DEFAULTS['GITEA_DATA_DIR'] == '/var/lib/gitea'
        assert DEFAULTS['AWS_DEFAULT_REGION'] == 'us-east-1'
        assert DEFAULTS['S3_PATH'] == 'gitea-backups'
        assert DEFAULTS['RETENTION_DAYS'] == '7'

    def test_empty_optional_key_uses_default(self):
        """Test that an empty optional key falls back to its default."""
        config = validate_config(dict(MINIMAL, DB_HOST='', RETENTION_DAYS=''))

        assert config.db_host == 'localhost'
        assert config.retention_days == 7

    def test_explicit_values(self):
        """Test that explicit optional values override defaults."""
        config = validate_config(dict(
            MINIMAL,
            DB_HOST='mysql.local',
            DB_PORT='3307',
            GITEA_DATA_DIR='/srv/gitea',
            AWS_DEFAULT_REGION='eu-west-1',
            S3_PATH='/nightly/gitea/',
            RETENTION_DAYS='30',
            S3_ENDPOINT_URL='https://minio.local:9000',
            ARCHIVE_FORMAT='tar.xz',
            MIRROR_METHOD='copy',
        ))

        assert config.db_host == 'mysql.local'
        assert config.db_port == 3307
        assert config.repo_dir == '/srv/gitea/data/gitea-repositories'
        assert config.aws_region == 'eu-west-1'
        assert config.s3_path == 'nightly/gitea'
        assert config.retention_days == 30
        assert config.s3_endpoint_url == 'https://minio.local:9000'
        assert config.archive_format == 'tar.xz'
        assert config.mirror_method == 'copy'

    def test_retention_zero_allowed(self):
        """Test that a zero-day retention window is valid."""
        assert validate_config(dict(MINIMAL, RETENTION_DAYS='0')).retention_days == 0

    @pytest.mark.parametrize("key,value", [
        ('RETENTION_DAYS', 'seven'),
        ('RETENTION_DAYS', '-1'),
        ('DB_PORT', '0'),
        ('DB_PORT', 'abc'),
        ('ARCHIVE_FORMAT', 'rar'),
        ('MIRROR_METHOD', 'scp'),
    ])
    def test_invalid_values(self, key, value):
        """Test that unusable optional values are rejected."""
        with pytest.raises(ConfigError) as exc_info:
            validate_config(dict(MINIMAL, **{key: value}))

        assert exc_info.value.code == 'InvalidValue'
        assert exc_info.value.detail == key

    def test_config_is_immutable(self):
        """Test that BackupConfig cannot be modified."""
        config = validate_config(MINIMAL)

        with pytest.raises(dataclasses.FrozenInstanceError):
            config.s3_bucket = 'other'

    def test_secrets_not_in_repr(self):
        """Test that passwords and keys are hidden from repr."""
        text = repr(validate_config(MINIMAL))

        assert 'gitea' in text
        assert 'secret' not in text
        assert "'pw'" not in text
        assert 'AKIA' not in text


class TestBackupConfig:
    """Test BackupConfig key helpers."""

    def test_remote_key_with_prefix(self):
        config = validate_config(MINIMAL)
        assert config.remote_key('gitea_backup_20240115_020000.zip') == 'gitea-backups/gitea_backup_20240115_020000.zip'

    def test_remote_key_without_prefix(self):
        config = validate_config(dict(MINIMAL, S3_PATH='/'))
        assert config.remote_key('a.zip') == 'a.zip'

    def test_remote_url(self):
        config = validate_config(MINIMAL)
        assert config.remote_url('gitea-backups/a.zip') == 's3://bucket/gitea-backups/a.zip'


class TestLoadConfigFile:
    """Test load_config_file function."""

    def test_load_shell_style_file(self, tmp_path):
        """Test reading KEY="value" lines with comments."""
        path = tmp_path / 'credential_config.sh'
        path.write_text(
            '# Database Configuration\n'
            'DB_USER="gitea"\n'
            'DB_PASS="p@ss word"\n'
            'S3_BUCKET=my-bucket\n'
            'RETENTION_DAYS=14\n'
        )

        raw = load_config_file(str(path), environ={})

        assert raw['DB_USER'] == 'gitea'
        assert raw['DB_PASS'] == 'p@ss word'
        assert raw['S3_BUCKET'] == 'my-bucket'
        assert raw['RETENTION_DAYS'] == '14'

    def test_environment_fills_missing_keys(self, tmp_path):
        """Test that keys absent from the file come from the environment."""
        path = tmp_path / 'config.sh'
        path.write_text('DB_USER="gitea"\nS3_BUCKET="file-bucket"\n')

        raw = load_config_file(str(path), environ={
            'DB_PASS': 'from-env',
            'S3_BUCKET': 'env-bucket',
            'UNRELATED': 'x',
        })

        assert raw['DB_PASS'] == 'from-env'
        # File values win over the environment
        assert raw['S3_BUCKET'] == 'file-bucket'
        assert 'UNRELATED' not in raw

    def test_missing_file(self, tmp_path):
        """Test that a missing file raises ConfigError."""
        with pytest.raises(ConfigError) as exc_info:
            load_config_file(str(tmp_path / 'nope.sh'), environ={})

        assert exc_info.value.code == 'ConfigFileMissing'
        assert exc_info.value.exit_code == 1

    def test_loaded_file_validates(self, config_file):
        """Test that the fixture file produces a valid configuration."""
        config = validate_config(load_config_file(str(config_file), environ={}))

        assert isinstance(config, BackupConfig)
        assert config.s3_bucket == 'test-bucket'
        assert config.mirror_method == 'copy'
