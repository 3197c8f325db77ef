"""
Retention policy enforcement for backups.

Removes old backup files from both the local backup directory and the
bucket. Two policies are supported, one per run:

- KeepCountPolicy: keep the newest N files (per database when grouped)
- KeepAgePolicy: delete files modified before a cutoff
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Iterable, List, Optional, Union

from .orchestrator import CancellationToken, RunCounters
from .scanner import FileDescriptor, PathError, PathMapper, filter_pattern, scan_directory
from .storage import LocalIOError, StorageError


logger = logging.getLogger(__name__)

# Timestamp appended by the database dump: <dbname>_2024-01-15_02-00-00.sql.gz
_DUMP_TIMESTAMP = re.compile(r'_\d{4}-\d{2}-\d{2}_\d{2}-\d{2}-\d{2}$')

ALL_FILES = '*'


class RetentionDeleteError(Exception):
    """Raised when a backup file selected for deletion cannot be removed."""
    pass


@dataclass(frozen=True)
class KeepCountPolicy:
    """Keep the newest `count` files of each group."""
    count: int


@dataclass(frozen=True)
class KeepAgePolicy:
    """Delete files modified strictly before `cutoff`."""
    cutoff: datetime

    @classmethod
    def older_than_days(cls, days: int, now: Optional[datetime] = None) -> 'KeepAgePolicy':
        now = now or datetime.now()
        return cls(cutoff=now - timedelta(days=days))


class Grouping(Enum):
    NONE = 'none'
    BY_DERIVED_NAME = 'by-name'


@dataclass
class GroupSummary:
    total: int = 0
    deleted: int = 0


@dataclass
class RetentionReport:
    """Result of RetentionManager.rotate()."""
    scanned: int = 0
    deleted_local: int = 0
    deleted_remote: int = 0
    errors: List[Exception] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    groups: Dict[str, GroupSummary] = field(default_factory=dict)
    logs: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def derive_group_name(filename: str) -> str:
    """
    Derive the logical backup name of a file.

    The extension (everything from the first dot) is dropped, then the
    dump timestamp suffix _YYYY-MM-DD_HH-MM-SS. Names without that
    timestamp lose everything after their last underscore. A name without
    underscores is its own group.

        shop_db_2024-01-15_02-00-00.sql.gz -> shop_db
        shop_db_20240115.sql.gz            -> shop_db
        notes.txt                          -> notes
    """
    stem = filename.split('.', 1)[0] or filename

    match = _DUMP_TIMESTAMP.search(stem)
    if match and match.start() > 0:
        return stem[:match.start()]

    if '_' in stem:
        name = stem.rsplit('_', 1)[0]
        if name:
            return name
    return stem


def collect_candidates(root: str, pattern: str = '*.sql.gz') -> List[FileDescriptor]:
    """
    List backup files under root whose name matches pattern.

    Raises:
        ScanError: If the directory cannot be scanned
    """
    return filter_pattern(scan_directory(root), pattern)


def select_deletions(
    candidates: Iterable[FileDescriptor],
    policy: Union[KeepCountPolicy, KeepAgePolicy],
    grouping: Grouping = Grouping.NONE
) -> Dict[str, List[FileDescriptor]]:
    """
    Compute the files to delete, per group.

    Returns:
        Mapping of group name to files selected for deletion. Every group
        is present, with an empty list when nothing is deleted from it.
    """
    candidates = list(candidates)

    if isinstance(policy, KeepAgePolicy):
        # Age policy is always a single ungrouped pass
        return {ALL_FILES: [f for f in candidates if f.modified_at < policy.cutoff]}

    if not isinstance(policy, KeepCountPolicy):
        raise TypeError(f"Unsupported retention policy: {policy!r}")

    groups: Dict[str, List[FileDescriptor]] = {}
    for f in candidates:
        key = derive_group_name(f.name) if grouping == Grouping.BY_DERIVED_NAME else ALL_FILES
        groups.setdefault(key, []).append(f)

    if not groups:
        groups[ALL_FILES] = []

    deletions = {}
    for name, files in groups.items():
        if policy.count <= 0:
            deletions[name] = []
            continue
        # Stable sort: equal timestamps keep scan order
        newest_first = sorted(files, key=lambda f: f.modified_at, reverse=True)
        deletions[name] = newest_first[policy.count:]
    return deletions


def _group_sizes(candidates: List[FileDescriptor], policy, grouping: Grouping) -> Dict[str, int]:
    if isinstance(policy, KeepAgePolicy) or grouping == Grouping.NONE:
        return {ALL_FILES: len(candidates)}
    sizes: Dict[str, int] = {}
    for f in candidates:
        name = derive_group_name(f.name)
        sizes[name] = sizes.get(name, 0) + 1
    return sizes


class RetentionManager:
    """
    Deletes backup files selected by a retention policy.

    Each file is deleted locally first. Only when the local copy is gone is
    the object removed from the bucket, so a backup never disappears
    remotely while its local deletion is unconfirmed.

    Args:
        local_storage: LocalStorage for the backup directory
        storage: Object store holding the uploaded backups
        path_mapper: PathMapper used for uploads, gives the object key of a file
        counters: Optional RunCounters; `deleted` is incremented per local deletion
    """

    def __init__(self, local_storage, storage, path_mapper: PathMapper, counters: Optional[RunCounters] = None):
        self.local_storage = local_storage
        self.storage = storage
        self.path_mapper = path_mapper
        self.counters = counters
        self.logs = []

    def rotate(
        self,
        candidates: Iterable[FileDescriptor],
        policy: Union[KeepCountPolicy, KeepAgePolicy],
        grouping: Grouping = Grouping.NONE,
        token: Optional[CancellationToken] = None
    ) -> RetentionReport:
        """
        Apply a retention policy to candidate files.

        A failed local deletion is recorded in `errors` and leaves the
        remote object alone. A failed remote deletion is recorded in
        `warnings`. Neither stops the rotation of the remaining files.

        Args:
            candidates: Backup files considered for deletion
            policy: KeepCountPolicy or KeepAgePolicy
            grouping: Apply a count policy per derived backup name
            token: Checked before each deletion

        Returns:
            RetentionReport

        Raises:
            OperationCancelled: If the token is cancelled; files already
                deleted stay deleted
        """
        token = token if token is not None else CancellationToken()
        candidates = list(candidates)
        report = RetentionReport(scanned=len(candidates))
        self.logs = []

        self._log(f"Enforcing retention policy: {self._describe(policy, grouping)}")

        deletions = select_deletions(candidates, policy, grouping)
        sizes = _group_sizes(candidates, policy, grouping)

        for name in sorted(deletions):
            summary = GroupSummary(total=sizes.get(name, 0))
            report.groups[name] = summary

            for file_info in deletions[name]:
                token.raise_if_cancelled()
                if self._delete_candidate(file_info, report):
                    summary.deleted += 1

            label = 'all files' if name == ALL_FILES else name
            self._log(f"{label}: total files: {summary.total} | deleted: {summary.deleted}")

        self._log(
            f"Retention complete. "
            f"Local deleted: {report.deleted_local}, "
            f"Remote deleted: {report.deleted_remote}, "
            f"Errors: {len(report.errors)}, "
            f"Warnings: {len(report.warnings)}"
        )

        report.logs = list(self.logs)
        return report

    def _delete_candidate(self, file_info: FileDescriptor, report: RetentionReport) -> bool:
        """Delete one file locally, then remotely. Returns True once the local copy is gone."""
        self._log(f"Deleting file: {file_info.absolute_path}")

        try:
            self.local_storage.delete(file_info.absolute_path)
        except LocalIOError as e:
            error = RetentionDeleteError(f"Failed to delete {file_info.absolute_path} from local: {e}")
            report.errors.append(error)
            self._log(str(error), level=logging.ERROR)
            return False

        report.deleted_local += 1
        if self.counters is not None:
            self.counters.increment('deleted')

        try:
            key = self.path_mapper.to_key(file_info.absolute_path)
            self.storage.delete(key)
        except (StorageError, PathError) as e:
            warning = f"File {file_info.absolute_path} deleted locally but not from bucket: {e}"
            report.warnings.append(warning)
            self._log(warning, level=logging.WARNING)
            return True

        report.deleted_remote += 1
        self._log(f"Deleted object: {key}")
        return True

    @staticmethod
    def _describe(policy, grouping: Grouping) -> str:
        if isinstance(policy, KeepAgePolicy):
            return f"delete files older than {policy.cutoff:%Y-%m-%d %H:%M:%S}"
        return f"keep last {policy.count} ({grouping.value})"

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
