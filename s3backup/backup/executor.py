"""
Backup executor - orchestrates the complete backup workflow.

Workflow:
1. Dump configured databases into the local directory (optional)
2. Enforce retention so rotated files are never re-uploaded (optional)
3. Upload the local directory to the bucket (optional)

Entry points used by the command line:
- run_upload(): sync a directory to the bucket
- run_retention(): apply a retention policy to local and remote backups
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Union

from .dump import dump_all
from .orchestrator import AggregateResult, CancellationToken, ConcurrencyOrchestrator, RunCounters
from .retention import (
    Grouping,
    KeepAgePolicy,
    KeepCountPolicy,
    RetentionManager,
    RetentionReport,
    collect_candidates,
)
from .scanner import PathMapper, scan_directory
from .storage import LocalStorage
from .transfer import (
    DEFAULT_PART_CONCURRENCY,
    DEFAULT_PART_SIZE,
    OutcomeStatus,
    TransferEngine,
    TransferTask,
)


logger = logging.getLogger(__name__)


class UploadError(Exception):
    """
    Raised when an upload run fails.

    Carries the counters accumulated before the failure.
    """

    def __init__(self, error: BaseException, counters: RunCounters):
        super().__init__(f"Upload failed: {error}")
        self.error = error
        self.counters = counters


@dataclass
class UploadResult:
    """Outcome of UploadPipeline.run()."""
    counters: RunCounters
    aggregate: AggregateResult

    @property
    def error(self) -> Optional[BaseException]:
        return self.aggregate.first_error

    @property
    def ok(self) -> bool:
        return self.aggregate.first_error is None


class UploadPipeline:
    """
    Syncs a local directory to the bucket.

    Every regular file under root is uploaded to {remote_prefix}/{relative path}
    unless it is empty or the key already exists.

    Args:
        storage: Object store
        root: Local directory to upload
        remote_prefix: Normalized remote directory
        max_concurrency: Files uploaded concurrently
        part_size: Multipart threshold and part size in bytes
        part_concurrency: Concurrent part uploads per file
    """

    def __init__(
        self,
        storage,
        root: str,
        remote_prefix: str,
        max_concurrency: int = 5,
        part_size: int = DEFAULT_PART_SIZE,
        part_concurrency: int = DEFAULT_PART_CONCURRENCY
    ):
        self.root = root
        self.max_concurrency = max(1, max_concurrency)
        self.path_mapper = PathMapper(root, remote_prefix)
        self.engine = TransferEngine(storage, part_size=part_size, part_concurrency=part_concurrency)

    def run(self, token: Optional[CancellationToken] = None, counters: Optional[RunCounters] = None) -> UploadResult:
        """
        Scan once and upload every file.

        Raises:
            ScanError: If the directory cannot be scanned
        """
        token = token if token is not None else CancellationToken()
        counters = counters if counters is not None else RunCounters()

        files = scan_directory(self.root)
        logger.info(f"Found {len(files)} files in {self.root}")

        def upload(file_info):
            # PathError here fails this file only
            task = TransferTask(file=file_info, key=self.path_mapper.to_key(file_info.absolute_path))
            outcome = self.engine.transfer(task, token)
            if outcome.status == OutcomeStatus.FAILED:
                raise outcome.error
            return outcome

        def record(file_info, outcome):
            if outcome.status == OutcomeStatus.UPLOADED:
                counters.increment('uploaded')
            else:
                counters.increment('skipped')

        orchestrator = ConcurrencyOrchestrator(
            max_workers=self.max_concurrency,
            name='Upload',
            token=token,
        )
        aggregate = orchestrator.run(files, upload, on_result=record)

        logger.info(f"uploaded: {counters.uploaded} | skipped: {counters.skipped}")
        if aggregate.first_error is not None:
            logger.error(f"Upload failed: {aggregate.first_error}")

        return UploadResult(counters=counters, aggregate=aggregate)


def run_upload(
    storage,
    root: str,
    remote_prefix: str,
    max_concurrency: int = 5,
    part_size: int = DEFAULT_PART_SIZE,
    part_concurrency: int = DEFAULT_PART_CONCURRENCY,
    token: Optional[CancellationToken] = None,
    counters: Optional[RunCounters] = None
) -> RunCounters:
    """
    Upload a directory to the bucket.

    Returns:
        RunCounters of the run

    Raises:
        ScanError: If the directory cannot be scanned
        UploadError: If any file failed; carries the counters
    """
    pipeline = UploadPipeline(
        storage,
        root,
        remote_prefix,
        max_concurrency=max_concurrency,
        part_size=part_size,
        part_concurrency=part_concurrency,
    )
    result = pipeline.run(token=token, counters=counters)
    if not result.ok:
        raise UploadError(result.error, result.counters)
    return result.counters


def run_retention(
    storage,
    root: str,
    remote_prefix: str,
    policy: Union[KeepCountPolicy, KeepAgePolicy],
    grouping: Grouping = Grouping.NONE,
    pattern: str = '*.sql.gz',
    counters: Optional[RunCounters] = None,
    token: Optional[CancellationToken] = None
) -> RetentionReport:
    """
    Apply a retention policy to the backups under root and in the bucket.

    Raises:
        ScanError: If the directory cannot be scanned
        OperationCancelled: If the token is cancelled during rotation
    """
    candidates = collect_candidates(root, pattern)
    manager = RetentionManager(
        LocalStorage(root),
        storage,
        PathMapper(root, remote_prefix),
        counters=counters,
    )
    return manager.rotate(candidates, policy, grouping, token=token)


@dataclass
class BackupRunSummary:
    """Result of BackupExecutor.execute()."""
    status: str = 'running'
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    dumped: List[str] = field(default_factory=list)
    counters: RunCounters = field(default_factory=RunCounters)
    retention: Optional[RetentionReport] = None
    error_message: Optional[str] = None
    logs: List[str] = field(default_factory=list)


class BackupExecutor:
    """
    Orchestrates the complete backup workflow for one run.

    Args:
        settings: BackupSettings
        storage: Object store
        token: Run-wide cancellation token (signals, deadline)
    """

    def __init__(self, settings, storage, token: Optional[CancellationToken] = None):
        self.settings = settings
        self.storage = storage
        self.token = token if token is not None else CancellationToken()
        self.summary = None
        self.logs = []

    def execute(
        self,
        dump: bool = True,
        policy: Optional[Union[KeepCountPolicy, KeepAgePolicy]] = None,
        grouping: Grouping = Grouping.NONE,
        upload: bool = True
    ) -> BackupRunSummary:
        """
        Execute the backup run.

        Returns:
            BackupRunSummary; status is 'success' or 'failed'
        """
        self.summary = BackupRunSummary(started_at=datetime.now(timezone.utc))
        self._log("Starting backup run")

        try:
            # Execute backup workflow
            self._execute_workflow(dump, policy, grouping, upload)

            self.summary.status = 'success'
            self._log("Backup completed successfully")

        except Exception as e:
            self.summary.status = 'failed'
            self.summary.error_message = str(e)
            self._log(f"Backup failed: {e}", level=logging.ERROR)

        finally:
            self.summary.completed_at = datetime.now(timezone.utc)
            self.summary.logs = list(self.logs)

        return self.summary

    def _execute_workflow(self, dump, policy, grouping, upload):
        """Execute the main backup workflow steps."""
        # Step 1: Dump databases
        if dump and self.settings.databases:
            self._log(f"Dumping {len(self.settings.databases)} databases")
            self.summary.dumped = dump_all(self.settings.databases, self.settings.local_dir, self.token)
        elif dump:
            self._log("No databases configured, skipping dump")

        # Step 2: Enforce retention before upload
        if policy is not None:
            self.token.raise_if_cancelled()
            self._log("Enforcing retention policy")
            report = run_retention(
                self.storage,
                self.settings.local_dir,
                self.settings.remote_prefix,
                policy,
                grouping=grouping,
                pattern=self.settings.backup_pattern,
                counters=self.summary.counters,
                token=self.token,
            )
            self.summary.retention = report
            self.logs.extend(report.logs)
            if not report.ok:
                raise report.errors[0]
        else:
            self._log("Retention not configured, skipping")

        # Step 3: Upload
        if upload:
            self._log("Uploading to S3")
            run_upload(
                self.storage,
                self.settings.local_dir,
                self.settings.remote_prefix,
                max_concurrency=self.settings.file_concurrency,
                part_size=self.settings.part_size,
                part_concurrency=self.settings.part_concurrency,
                token=self.token,
                counters=self.summary.counters,
            )
            self._log(
                f"uploaded: {self.summary.counters.uploaded} | "
                f"skipped: {self.summary.counters.skipped}"
            )
        else:
            self._log("Upload disabled, skipping")

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
            level: Level for the module logger
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        log_entry = f"[{timestamp}] {message}"
        self.logs.append(log_entry)
        logger.log(level, message)
