"""
Backup executor - orchestrates the complete backup workflow.

Workflow:
1. Create RunContext (scratch directory, log file)
2. Pre-flight checks (repository directory, database, tools, storage)
3. Export all databases
4. Mirror the repository tree
5. Create compressed archive
6. Verify archive integrity
7. Upload to S3
8. Apply retention policy (best-effort)
9. Report and cleanup scratch directory

Stages run strictly in order; the first failing stage ends the run.
"""

import logging
import os
import time
from dataclasses import dataclass
from typing import Callable, Optional

from gitea_backup import PRODUCT_NAME
from gitea_backup.config import BackupConfig
from gitea_backup.errors import EXIT_SUCCESS, BackupError, CorruptArtifactError, RunCancelled
from .compression import (
    create_archive,
    generate_archive_filename,
    get_archive_size,
    strip_archive_extension,
    verify_archive,
)
from .context import RunContext
from .preflight import PreflightChecker
from .report import STATUS_FAILED, STATUS_SUCCESS, RunReport, RunReporter, StageResult, format_size
from .retention import RetentionManager
from .sources import MySQLSource, create_mirror
from .storage import S3Storage


logger = logging.getLogger(__name__)

REPOSITORIES_DIRNAME = 'repositories'


@dataclass
class BackupArtifact:
    """The packaged output of one run."""
    path: str
    name: str
    compression_format: str
    size_bytes: int = 0
    verified: bool = False


class BackupExecutor:
    """
    Orchestrates the complete backup workflow for one configuration.

    Collaborators default to the real implementations built from the
    configuration; tests pass fakes.
    """

    def __init__(
        self,
        config: BackupConfig,
        database=None,
        mirror=None,
        storage=None,
        reporter: Optional[RunReporter] = None,
        which: Optional[Callable[[str], Optional[str]]] = None,
        product: str = PRODUCT_NAME
    ):
        """
        Initialize backup executor.

        Args:
            config: Validated configuration
            database: Database source (default: MySQLSource)
            mirror: Repository mirror (default: from config.mirror_method)
            storage: Object storage (default: S3Storage, created during pre-flight)
            reporter: End-of-run reporter (default: log only)
            which: Executable lookup for the tools check (default: shutil.which)
            product: Product name used in file names
        """
        self.config = config
        self.database = database or MySQLSource(
            user=config.db_user,
            password=config.db_pass,
            host=config.db_host,
            port=config.db_port
        )
        self.mirror = mirror or create_mirror(config.mirror_method)
        self.storage = storage
        self.reporter = reporter or RunReporter()
        self.which = which
        self.product = product

        self.context = RunContext(config.log_dir, scratch_root=config.scratch_dir, product=product)
        self.report = RunReport(run_id=self.context.run_id, log_path=self.context.log_path)
        self.artifact = None
        self._current_stage = None

    def execute(self, preflight_only: bool = False) -> RunReport:
        """
        Execute the backup run.

        Args:
            preflight_only: Stop after the pre-flight checks

        Returns:
            RunReport with the outcome; never raises BackupError
        """
        try:
            with self.context:
                self._run_and_report(preflight_only)
        except BackupError as e:
            if self.context.scratch_dir is None:
                # RunContext could not be set up: no log file, no scratch directory
                self.report.log_path = None
            self.report.record_failure(e, self._current_stage or 'setup')
            self.reporter.emit(self.report)

        return self.report

    def _run_and_report(self, preflight_only: bool):
        self._log_configuration()

        try:
            self._execute_workflow(preflight_only)
            self.report.status = STATUS_SUCCESS
            self.report.exit_code = EXIT_SUCCESS
        except BackupError as e:
            self.report.record_failure(e, self._current_stage)
        except Exception as e:
            logger.debug("Unexpected error during backup", exc_info=True)
            self.report.record_failure(BackupError(f"Unexpected error: {e}"), self._current_stage)
        finally:
            self.report.elapsed = self.context.elapsed
            self.reporter.emit(self.report)

    def _execute_workflow(self, preflight_only: bool):
        """Execute the backup stages in order."""
        self._run_stage('preflight', self._preflight)

        if preflight_only:
            logger.info("Pre-flight checks passed, stopping as requested")
            return

        self._run_stage('export', self._export)
        self._run_stage('mirror', self._mirror)
        self._run_stage('package', self._package)
        self._run_stage('verify', self._verify)
        self._run_stage('upload', self._upload)

        self._enforce_retention()

    def _run_stage(self, name: str, stage: Callable[[], None]):
        """
        Run one stage and record its StageResult.

        Raises:
            BackupError: The stage's failure, after recording it
        """
        self._current_stage = name
        self.context.raise_if_cancelled()
        started = time.monotonic()

        try:
            stage()
        except Exception as e:
            self.report.stages.append(StageResult(
                stage=name,
                status=STATUS_FAILED,
                elapsed=time.monotonic() - started,
                code=getattr(e, 'code', 'InternalError'),
                message=str(e)
            ))
            raise

        self.report.stages.append(StageResult(
            stage=name,
            status=STATUS_SUCCESS,
            elapsed=time.monotonic() - started
        ))

    def _preflight(self):
        logger.info("Running pre-flight checks...")

        if self.storage is None:
            self.storage = S3Storage(
                access_key=self.config.aws_access_key_id,
                secret_key=self.config.aws_secret_access_key,
                bucket_name=self.config.s3_bucket,
                region=self.config.aws_region,
                endpoint_url=self.config.s3_endpoint_url
            )

        required_tools = tuple(getattr(self.database, 'required_tools', ())) + \
            tuple(getattr(self.mirror, 'required_tools', ()))

        checker = PreflightChecker(
            repo_dir=self.config.repo_dir,
            database=self.database,
            storage=self.storage,
            required_tools=required_tools,
            which=self.which
        )
        checker.run()

    def _export(self):
        logger.info("Backing up ALL databases...")
        dump_path = self.database.export(
            self.context.staging_dir,
            cancellation_check=self.context.raise_if_cancelled
        )
        logger.info(f"Database dump written: {os.path.basename(dump_path)} "
                    f"({format_size(os.path.getsize(dump_path))})")

    def _mirror(self):
        logger.info("Backing up repositories...")
        self.mirror.mirror(
            self.config.repo_dir,
            os.path.join(self.context.staging_dir, REPOSITORIES_DIRNAME),
            cancellation_check=self.context.raise_if_cancelled
        )
        logger.info(f"Repositories mirrored from {self.config.repo_dir}")

    def _package(self):
        compression_format = self.config.archive_format
        logger.info(f"Creating backup archive (format: {compression_format})...")

        filename = generate_archive_filename(self.product, self.context.run_id, compression_format)
        archive_base = os.path.join(self.context.scratch_dir, strip_archive_extension(filename))
        archive_path = create_archive(self.context.staging_dir, archive_base, compression_format)

        self.artifact = BackupArtifact(
            path=archive_path,
            name=os.path.basename(archive_path),
            compression_format=compression_format,
            size_bytes=get_archive_size(archive_path)
        )
        self.report.artifact_name = self.artifact.name
        self.report.size_bytes = self.artifact.size_bytes
        logger.info(f"Archive created: {self.artifact.name} ({format_size(self.artifact.size_bytes)})")

    def _verify(self):
        logger.info("Verifying backup integrity...")
        member_count = verify_archive(self.artifact.path, self.artifact.compression_format)
        self.artifact.verified = True
        logger.info(f"Archive verified ({member_count} entries)")

    def _upload(self):
        if self.artifact is None or not self.artifact.verified:
            raise CorruptArtifactError("Refusing to upload an unverified archive")

        s3_key = self.config.remote_key(self.artifact.name)
        logger.info(f"Uploading backup to {self.config.remote_url(s3_key)}...")

        self.storage.upload(self.artifact.path, s3_key, cancellation_check=self.context.raise_if_cancelled)
        self.report.remote_location = self.config.remote_url(s3_key)
        logger.info("Upload complete")

    def _enforce_retention(self):
        """
        Apply the retention policy.

        Best-effort: failures never change the run's status. Only
        RunCancelled propagates.
        """
        if self.context.cancelled:
            logger.warning("Run cancelled, skipping retention policy")
            return

        self._current_stage = 'retention'
        started = time.monotonic()
        manager = RetentionManager(self.storage, self.config.s3_path, self.config.retention_days)
        keep_keys = [self.config.remote_key(self.artifact.name)] if self.artifact else []

        try:
            summary = manager.enforce(keep_keys=keep_keys, cancellation_check=self.context.raise_if_cancelled)
        except RunCancelled:
            raise
        except Exception as e:
            logger.warning(f"Retention policy could not be applied: {e}")
            self.report.retention = {'examined': 0, 'deleted': [], 'kept': 0, 'errors': [str(e)]}
            self.report.stages.append(StageResult(
                stage='retention',
                status=STATUS_FAILED,
                elapsed=time.monotonic() - started,
                code='RetentionFailed',
                message=str(e)
            ))
            return

        self.report.retention = summary
        self.report.stages.append(StageResult(
            stage='retention',
            status=STATUS_SUCCESS,
            elapsed=time.monotonic() - started,
            message=f"{len(summary['errors'])} warning(s)" if summary['errors'] else None
        ))

    def _log_configuration(self):
        config = self.config
        logger.info(f"Starting {self.product.capitalize()} Backup Process")
        logger.info("Configuration:")
        logger.info(f"  - Database User: {config.db_user}")
        logger.info(f"  - Database Host: {config.db_host}:{config.db_port}")
        logger.info(f"  - Repository Directory: {config.repo_dir}")
        logger.info(f"  - S3 Bucket: {config.s3_bucket}")
        logger.info(f"  - S3 Path: {config.s3_path}")
        logger.info(f"  - AWS Region: {config.aws_region}")
        if config.s3_endpoint_url:
            logger.info(f"  - S3 Endpoint: {config.s3_endpoint_url}")
        logger.info(f"  - Retention Policy: {config.retention_days} days")
