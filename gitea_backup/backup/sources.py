"""
Source handlers for backup operations.

Supports:
- MySQLSource: Reachability probe and full consistent dump of the database server
- RsyncMirror: Mirror the repository tree with rsync
- LocalMirror: Mirror the repository tree in-process
"""

import logging
import os
import shutil
from pathlib import Path
from typing import Callable, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import URL
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import NullPool

from gitea_backup.errors import ConnectivityError, ExportError, MirrorError
from gitea_backup.utils.process import run_command


logger = logging.getLogger(__name__)


class MySQLSource:
    """
    Handler for the MySQL/MariaDB server holding Gitea's database.

    The probe uses a SQLAlchemy connection; the export runs mysqldump over
    all databases in a single transaction so InnoDB tables are consistent
    without locking them.
    """

    required_tools = ('mysqldump',)

    DUMP_FILENAME = 'all_databases.sql'

    # Consistent, non-blocking dump tuned for fast reload
    DUMP_OPTIONS = [
        '--single-transaction',
        '--routines',
        '--triggers',
        '--add-drop-table',
        '--disable-keys',
        '--extended-insert',
    ]

    def __init__(self, user: str, password: str, host: str = 'localhost', port: int = 3306,
                 connect_timeout: int = 10):
        """
        Initialize MySQL source handler.

        Args:
            user: Database user
            password: Database password
            host: Database host (default: localhost)
            port: Database port (default: 3306)
            connect_timeout: Seconds to wait for the probe connection
        """
        self.user = user
        self.password = password
        self.host = host
        self.port = port
        self.connect_timeout = connect_timeout

    def _create_engine(self):
        url = URL.create(
            'mysql+pymysql',
            username=self.user,
            password=self.password,
            host=self.host,
            port=self.port
        )
        return create_engine(
            url,
            poolclass=NullPool,
            connect_args={'connect_timeout': self.connect_timeout}
        )

    def test_connection(self) -> bool:
        """
        Check that the server accepts the credentials.

        Runs SHOW DATABASES, which needs no data transfer.

        Returns:
            True if the server is reachable

        Raises:
            ConnectivityError: If connecting or querying fails
        """
        engine = self._create_engine()
        try:
            with engine.connect() as connection:
                databases = connection.execute(text('SHOW DATABASES')).fetchall()
            logger.debug(f"Database server lists {len(databases)} databases")
            return True
        except SQLAlchemyError as e:
            cause = getattr(e, 'orig', None) or e
            raise ConnectivityError(
                f"Database connection to {self.user}@{self.host}:{self.port} failed: {cause}"
            )
        finally:
            engine.dispose()

    def export(self, dest_dir: str, cancellation_check: Optional[Callable[[], None]] = None) -> str:
        """
        Dump all databases into dest_dir.

        Args:
            dest_dir: Directory receiving the dump file
            cancellation_check: Optional function raising when the run is cancelled

        Returns:
            Path to the dump file

        Raises:
            ExportError: If mysqldump cannot be started or exits non-zero
        """
        dump_path = os.path.join(dest_dir, self.DUMP_FILENAME)

        command = ['mysqldump'] + self.DUMP_OPTIONS + [
            '-u', self.user,
            '-h', self.host,
            '-P', str(self.port),
            '--all-databases',
        ]

        # Password goes through the environment, never the command line
        env = dict(os.environ, MYSQL_PWD=self.password)

        try:
            with open(dump_path, 'wb') as dump_file:
                result = run_command(command, cancellation_check=cancellation_check, stdout=dump_file, env=env)
        except OSError as e:
            _remove_path(dump_path)
            raise ExportError(f"Failed to run mysqldump: {e}")
        except BaseException:
            _remove_path(dump_path)
            raise

        if not result.ok:
            _remove_path(dump_path)
            message = f"mysqldump exited with status {result.returncode}"
            if result.stderr_tail():
                message = f"{message}: {result.stderr_tail()}"
            raise ExportError(message)

        return dump_path


class RsyncMirror:
    """
    Mirror a directory with rsync -a --delete.
    """

    required_tools = ('rsync',)

    def mirror(self, source_dir: str, dest_dir: str,
               cancellation_check: Optional[Callable[[], None]] = None) -> str:
        """
        Make dest_dir an exact copy of source_dir.

        Args:
            source_dir: Directory to mirror
            dest_dir: Destination directory
            cancellation_check: Optional function raising when the run is cancelled

        Returns:
            Path to the mirrored directory

        Raises:
            MirrorError: If rsync cannot be started or exits non-zero
        """
        command = [
            'rsync', '-a', '--delete',
            f"{source_dir.rstrip('/')}/",
            f"{dest_dir.rstrip('/')}/",
        ]

        try:
            result = run_command(command, cancellation_check=cancellation_check)
        except OSError as e:
            raise MirrorError(f"Failed to run rsync: {e}")

        if not result.ok:
            message = f"rsync exited with status {result.returncode}"
            if result.stderr_tail():
                message = f"{message}: {result.stderr_tail()}"
            raise MirrorError(message)

        return dest_dir


class LocalMirror:
    """
    Mirror a directory without external tools.

    Same semantics as rsync -a --delete: new and changed entries are
    copied (size and mtime decide), destination-only entries are removed,
    symlinks are copied as symlinks and empty directories are kept.
    Special files (sockets, FIFOs, devices) are skipped.
    """

    required_tools = ()

    def mirror(self, source_dir: str, dest_dir: str,
               cancellation_check: Optional[Callable[[], None]] = None) -> str:
        """
        Make dest_dir an exact copy of source_dir.

        Raises:
            MirrorError: If the source is not a directory or copying fails
        """
        source = Path(source_dir)
        if not source.is_dir():
            raise MirrorError(f"Source directory does not exist: {source_dir}")

        try:
            self._sync_directory(source, Path(dest_dir), cancellation_check)
        except PermissionError as e:
            raise MirrorError(f"Permission denied mirroring {source_dir}: {e}")
        except OSError as e:
            raise MirrorError(f"Failed to mirror {source_dir}: {e}")

        return dest_dir

    def _sync_directory(self, source: Path, dest: Path, cancellation_check):
        if cancellation_check:
            cancellation_check()

        if dest.is_symlink() or (dest.exists() and not dest.is_dir()):
            _remove_path(str(dest))
        dest.mkdir(exist_ok=True)

        source_names = set()

        with os.scandir(source) as entries:
            for entry in entries:
                source_names.add(entry.name)
                target = dest / entry.name

                if entry.is_symlink():
                    link = os.readlink(entry.path)
                    if target.is_symlink() and os.readlink(target) == link:
                        continue
                    _remove_path(str(target))
                    os.symlink(link, target)
                elif entry.is_dir(follow_symlinks=False):
                    self._sync_directory(Path(entry.path), target, cancellation_check)
                elif entry.is_file(follow_symlinks=False):
                    if self._is_current(entry, target):
                        continue
                    _remove_path(str(target))
                    shutil.copy2(entry.path, target, follow_symlinks=False)

        for name in os.listdir(dest):
            if name not in source_names:
                _remove_path(str(dest / name))

        shutil.copystat(source, dest, follow_symlinks=False)

    @staticmethod
    def _is_current(entry: os.DirEntry, target: Path) -> bool:
        """rsync's quick check: same size and modification time."""
        if target.is_symlink() or not target.is_file():
            return False
        source_stat = entry.stat(follow_symlinks=False)
        target_stat = target.stat()
        return (source_stat.st_size == target_stat.st_size
                and int(source_stat.st_mtime) == int(target_stat.st_mtime))


def create_mirror(method: str):
    """
    Factory function to create the repository mirror handler.

    Args:
        method: 'rsync' or 'copy'

    Returns:
        RsyncMirror or LocalMirror instance

    Raises:
        ValueError: If method is invalid
    """
    if method == 'rsync':
        return RsyncMirror()
    elif method == 'copy':
        return LocalMirror()
    else:
        raise ValueError(f"Invalid mirror method: {method}")


def _remove_path(path: str):
    """Remove a file, symlink or directory tree if present."""
    if os.path.islink(path) or os.path.isfile(path):
        os.unlink(path)
    elif os.path.isdir(path):
        shutil.rmtree(path)
