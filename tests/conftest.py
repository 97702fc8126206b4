"""
Shared pytest fixtures for gitea-backup tests.

This module provides fixtures for:
- Raw and validated configuration
- A fixture Gitea data directory with repositories
- Fake database source (no MySQL server needed)
- Mocked AWS services (S3, STS) using moto
- Temporary file fixtures
"""

import os
from pathlib import Path

import freezegun
import pytest
import boto3
from moto import mock_aws

from gitea_backup.config import validate_config
from gitea_backup.errors import ConnectivityError, ExportError


# freezegun skips modules whose name starts with an ignored prefix; its
# default 'gi' (PyGObject) prefix also matches gitea_backup.
freezegun.configure(default_ignore_list=[
    'nose.plugins',
    'six.moves',
    'django.utils.six.moves',
    'google.gax',
    'threading',
    'multiprocessing',
    'queue',
    'selenium',
    '_pytest.terminal.',
    '_pytest.runner.',
    'prompt_toolkit',
])


class FakeDatabase:
    """
    Stand-in for MySQLSource.

    Writes a small SQL dump instead of running mysqldump.
    """

    required_tools = ()

    DUMP_CONTENT = "-- MySQL dump\nCREATE DATABASE gitea;\nINSERT INTO repository VALUES (1,'demo');\n"

    def __init__(self, reachable=True, export_fails=False):
        self.reachable = reachable
        self.export_fails = export_fails
        self.probed = 0
        self.exported = 0

    def test_connection(self):
        self.probed += 1
        if not self.reachable:
            raise ConnectivityError("Database connection failed: connection refused")
        return True

    def export(self, dest_dir, cancellation_check=None):
        self.exported += 1
        if self.export_fails:
            raise ExportError("mysqldump exited with status 2: Access denied")
        dump_path = os.path.join(dest_dir, 'all_databases.sql')
        with open(dump_path, 'w') as f:
            f.write(self.DUMP_CONTENT)
        return dump_path


@pytest.fixture
def aws_credentials(monkeypatch):
    """Fake AWS credentials so nothing can reach a real account."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_SECURITY_TOKEN', 'testing')
    monkeypatch.setenv('AWS_SESSION_TOKEN', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


@pytest.fixture
def mock_s3(aws_credentials):
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def gitea_data_dir(tmp_path):
    """
    Create a Gitea data directory with two bare repositories.

    Creates:
    - data/gitea-repositories/alice/demo.git/HEAD
    - data/gitea-repositories/alice/demo.git/refs/heads/main
    - data/gitea-repositories/alice/demo.git/refs/tags/ (empty)
    - data/gitea-repositories/alice/demo.git/objects/ab/cdef0123
    - data/gitea-repositories/bob/notes.git/HEAD
    """
    data_dir = tmp_path / 'gitea'
    repo = data_dir / 'data' / 'gitea-repositories' / 'alice' / 'demo.git'
    (repo / 'refs' / 'heads').mkdir(parents=True)
    (repo / 'refs' / 'tags').mkdir(parents=True)
    (repo / 'objects' / 'ab').mkdir(parents=True)
    (repo / 'HEAD').write_text('ref: refs/heads/main\n')
    (repo / 'refs' / 'heads' / 'main').write_text('abcdef0123456789abcdef0123456789abcdef01\n')
    (repo / 'objects' / 'ab' / 'cdef0123').write_bytes(os.urandom(2048))

    other = data_dir / 'data' / 'gitea-repositories' / 'bob' / 'notes.git'
    other.mkdir(parents=True)
    (other / 'HEAD').write_text('ref: refs/heads/master\n')

    return data_dir


@pytest.fixture
def raw_config(tmp_path, gitea_data_dir):
    """Raw configuration pointing at the fixture data directory."""
    return {
        'DB_USER': 'gitea',
        'DB_PASS': 's3cret-password',
        'DB_HOST': 'db.internal',
        'GITEA_DATA_DIR': str(gitea_data_dir),
        'AWS_ACCESS_KEY_ID': 'test_access_key_123',
        'AWS_SECRET_ACCESS_KEY': 'test_secret_key_456',
        'AWS_DEFAULT_REGION': 'us-east-1',
        'S3_BUCKET': 'test-bucket',
        'S3_PATH': 'gitea-backups',
        'RETENTION_DAYS': '7',
        'MIRROR_METHOD': 'copy',
        'LOG_DIR': str(tmp_path / 'logs'),
        'SCRATCH_DIR': str(tmp_path / 'scratch'),
    }


@pytest.fixture
def backup_config(raw_config, tmp_path):
    """Validated configuration for executor tests."""
    (tmp_path / 'scratch').mkdir(exist_ok=True)
    return validate_config(raw_config)


@pytest.fixture
def fake_database():
    return FakeDatabase()


@pytest.fixture
def config_file(tmp_path, raw_config):
    """Write raw_config as a credential_config.sh style file."""
    path = tmp_path / 'credential_config.sh'
    lines = ['# Gitea backup configuration']
    lines += [f'{key}="{value}"' for key, value in raw_config.items()]
    path.write_text('\n'.join(lines) + '\n')
    return path


@pytest.fixture
def staging_dir(tmp_path):
    """
    Create a staging directory like the one the executor archives.

    Creates:
    - all_databases.sql
    - repositories/alice/demo.git/HEAD
    - repositories/alice/demo.git/objects/pack/pack-1.pack
    - repositories/alice/demo.git/refs/tags/ (empty)
    """
    staging = tmp_path / 'staging'
    repo = staging / 'repositories' / 'alice' / 'demo.git'
    (repo / 'objects' / 'pack').mkdir(parents=True)
    (repo / 'refs' / 'tags').mkdir(parents=True)
    (staging / 'all_databases.sql').write_text('-- dump\n' * 200)
    (repo / 'HEAD').write_text('ref: refs/heads/main\n')
    (repo / 'objects' / 'pack' / 'pack-1.pack').write_bytes(os.urandom(4096))
    return staging


def tree_snapshot(root):
    """Map of relative path -> file bytes (None for directories)."""
    root = Path(root)
    snapshot = {}
    for path in sorted(root.rglob('*')):
        relative = path.relative_to(root).as_posix()
        snapshot[relative] = None if path.is_dir() else path.read_bytes()
    return snapshot


@pytest.fixture
def snapshot():
    return tree_snapshot
