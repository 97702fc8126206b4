"""
Pre-flight checks.

Read-only probes of every dependency of the backup run, executed before
any costly or state-changing work. The first failing check stops the run.
"""

import logging
import os
import shutil
from typing import Callable, Iterable, List, Optional, Tuple

from gitea_backup.errors import DependencyError, PathError


logger = logging.getLogger(__name__)


class PreflightChecker:
    """
    Runs the ordered pre-flight checks for a backup run.
    """

    def __init__(self, repo_dir: str, database, storage, required_tools: Iterable[str] = (),
                 which: Optional[Callable[[str], Optional[str]]] = None):
        """
        Initialize the checker.

        Args:
            repo_dir: Repository root that will be mirrored
            database: Object with test_connection() (MySQLSource)
            storage: Object with verify_credentials() and test_connection() (S3Storage)
            required_tools: Executables that must be on PATH
            which: Executable lookup (default: shutil.which)
        """
        self.repo_dir = repo_dir
        self.database = database
        self.storage = storage
        self.required_tools = list(dict.fromkeys(required_tools))
        self.which = which or shutil.which

    @property
    def checks(self) -> List[Tuple[str, Callable[[], None]]]:
        """Checks in execution order."""
        return [
            ('repository directory', self.check_repo_dir),
            ('database connectivity', self.check_database),
            ('required tools', self.check_tools),
            ('storage credentials', self.check_storage_credentials),
            ('storage bucket', self.check_bucket),
        ]

    def run(self) -> List[str]:
        """
        Run every check in order, stopping at the first failure.

        Returns:
            Names of the checks that passed

        Raises:
            BackupError: The failing check's error
        """
        passed = []
        for name, check in self.checks:
            check()
            logger.info(f"Pre-flight check passed: {name}")
            passed.append(name)
        return passed

    def check_repo_dir(self):
        if not os.path.isdir(self.repo_dir):
            raise PathError(f"Repository directory not found: {self.repo_dir}", code='RepoRootMissing')

    def check_database(self):
        self.database.test_connection()

    def check_tools(self):
        for tool in self.required_tools:
            if not self.which(tool):
                raise DependencyError(f"Required tool is not installed: {tool}", code='ToolMissing', detail=tool)

    def check_storage_credentials(self):
        identity = self.storage.verify_credentials()
        logger.debug(f"Storage identity: {identity}")

    def check_bucket(self):
        self.storage.test_connection()
