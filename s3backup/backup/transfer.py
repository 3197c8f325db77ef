"""
Transfer of one local file to one object key.

Small files go up with a single put_object call. Files larger than the
part size are split into parts that are uploaded concurrently within a
multipart session; the session is always either completed or aborted.
"""

import logging
import os
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple

from .orchestrator import CancellationToken, ConcurrencyOrchestrator, OperationCancelled
from .scanner import FileDescriptor
from .storage import LocalIOError, StorageError


logger = logging.getLogger(__name__)

DEFAULT_PART_SIZE = 5 * 1024 * 1024  # 5MB
DEFAULT_PART_CONCURRENCY = 5


class TransferError(Exception):
    """Raised when the object store rejects a transfer step."""
    pass


class OutcomeStatus(Enum):
    UPLOADED = 'uploaded'
    SKIPPED = 'skipped'
    FAILED = 'failed'


class SkipReason(Enum):
    ALREADY_EXISTS = 'already exists'
    EMPTY_FILE = 'empty file'


@dataclass(frozen=True)
class Outcome:
    """Result of TransferEngine.transfer()."""
    status: OutcomeStatus
    reason: Optional[SkipReason] = None
    error: Optional[BaseException] = None

    @classmethod
    def uploaded(cls) -> 'Outcome':
        return cls(OutcomeStatus.UPLOADED)

    @classmethod
    def skipped(cls, reason: SkipReason) -> 'Outcome':
        return cls(OutcomeStatus.SKIPPED, reason=reason)

    @classmethod
    def failed(cls, error: BaseException) -> 'Outcome':
        return cls(OutcomeStatus.FAILED, error=error)


@dataclass(frozen=True)
class TransferTask:
    file: FileDescriptor
    key: str


@dataclass(frozen=True)
class PartPlan:
    part_number: int
    offset: int
    length: int


def plan_parts(file_size: int, part_size: int) -> List[PartPlan]:
    """
    Split [0, file_size) into consecutive parts of part_size bytes.

    The last part may be shorter. A file of at most part_size bytes is one
    part.

    Raises:
        ValueError: If part_size is not positive or file_size is negative
    """
    if part_size <= 0:
        raise ValueError(f"Part size must be positive, got {part_size}")
    if file_size < 0:
        raise ValueError(f"File size must not be negative, got {file_size}")

    total_parts = max(1, -(-file_size // part_size))
    plans = []
    for index in range(total_parts):
        offset = index * part_size
        plans.append(PartPlan(
            part_number=index + 1,
            offset=offset,
            length=min(part_size, file_size - offset),
        ))
    return plans


class MultipartSession:
    """
    Completed parts of one multipart upload.

    Parts may be recorded from several threads in any order.
    """

    def __init__(self, key: str, upload_id: str):
        self.key = key
        self.upload_id = upload_id
        self._parts: Dict[int, str] = {}
        self._lock = threading.Lock()

    def record(self, part_number: int, etag: str):
        with self._lock:
            self._parts[part_number] = etag

    def is_complete(self, total_parts: int) -> bool:
        with self._lock:
            return len(self._parts) == total_parts and set(self._parts) == set(range(1, total_parts + 1))

    def ordered_parts(self) -> List[Tuple[int, str]]:
        """(part_number, etag) pairs in ascending part number order."""
        with self._lock:
            return sorted(self._parts.items())


class TransferEngine:
    """
    Uploads files to the object store.

    Args:
        storage: Object store (see s3backup.backup.storage)
        part_size: Files larger than this use multipart upload
        part_concurrency: Concurrent part uploads per file
    """

    def __init__(self, storage, part_size: int = DEFAULT_PART_SIZE, part_concurrency: int = DEFAULT_PART_CONCURRENCY):
        if part_size <= 0:
            raise ValueError(f"Part size must be positive, got {part_size}")
        self.storage = storage
        self.part_size = part_size
        self.part_concurrency = max(1, part_concurrency)

    def transfer(self, task: TransferTask, token: Optional[CancellationToken] = None) -> Outcome:
        """
        Upload one file unless it is empty or already present.

        Never raises for transfer failures and never retries; errors are
        returned as a FAILED outcome.
        """
        token = token if token is not None else CancellationToken()
        path = task.file.absolute_path

        try:
            token.raise_if_cancelled()

            try:
                file_size = os.stat(path).st_size
            except OSError as e:
                raise LocalIOError(f"Failed to stat {path}: {e}")

            if file_size == 0:
                logger.info(f"File is empty (skipped): {path}")
                return Outcome.skipped(SkipReason.EMPTY_FILE)

            if self._exists(task.key):
                logger.debug(f"Already uploaded (skipped): {task.key}")
                return Outcome.skipped(SkipReason.ALREADY_EXISTS)

            token.raise_if_cancelled()
            logger.info(f"Uploading file: {path}")

            if file_size <= self.part_size:
                self._single_upload(path, task.key)
            else:
                self._multipart_upload(path, task.key, file_size, token)

        except (LocalIOError, TransferError, OperationCancelled) as e:
            return Outcome.failed(e)

        logger.info(f"File uploaded: {task.key}")
        return Outcome.uploaded()

    def _exists(self, key: str) -> bool:
        try:
            return self.storage.exists(key)
        except StorageError as e:
            raise TransferError(f"Failed to check if {key} exists: {e}") from e

    def _single_upload(self, path: str, key: str):
        try:
            f = open(path, 'rb')
        except OSError as e:
            raise LocalIOError(f"Failed to open {path}: {e}")

        with f:
            try:
                self.storage.put_object(key, f)
            except StorageError as e:
                raise TransferError(f"Failed to upload {path}: {e}") from e

    @contextmanager
    def multipart_session(self, key: str):
        """
        Open a multipart session that is aborted unless the body completes it.

        An abort failure is logged and never replaces the error that caused
        the abort.
        """
        try:
            upload_id = self.storage.initiate_multipart(key)
        except StorageError as e:
            raise TransferError(f"Failed to initiate multipart upload: {e}") from e

        session = MultipartSession(key, upload_id)
        try:
            yield session
        except BaseException:
            self._abort(session)
            raise

    def _abort(self, session: MultipartSession):
        try:
            self.storage.abort_multipart(session.key, session.upload_id)
            logger.info(f"Aborted multipart upload for {session.key}")
        except Exception as e:
            logger.warning(f"Failed to abort multipart upload for {session.key}: {e}")

    def _multipart_upload(self, path: str, key: str, file_size: int, token: CancellationToken):
        plans = plan_parts(file_size, self.part_size)

        with self.multipart_session(key) as session:
            orchestrator = ConcurrencyOrchestrator(
                max_workers=self.part_concurrency,
                name=f'Parts-{os.path.basename(path)}',
                token=token.child(),
            )

            def upload(plan: PartPlan):
                self._upload_part(path, session, plan, orchestrator.token)

            result = orchestrator.run(plans, upload)
            if result.first_error is not None:
                error = result.first_error
                if isinstance(error, (LocalIOError, TransferError, OperationCancelled)):
                    raise error
                raise TransferError(f"Multipart upload failed: {error}") from error

            if not session.is_complete(len(plans)):
                raise TransferError(
                    f"Multipart upload of {key} is missing parts: "
                    f"{len(session.ordered_parts())}/{len(plans)} uploaded"
                )

            try:
                self.storage.complete_multipart(key, session.upload_id, session.ordered_parts())
            except StorageError as e:
                raise TransferError(f"Failed to complete multipart upload: {e}") from e

    def _upload_part(self, path: str, session: MultipartSession, plan: PartPlan, token: CancellationToken):
        try:
            with open(path, 'rb') as f:
                f.seek(plan.offset)
                data = f.read(plan.length)
        except OSError as e:
            raise LocalIOError(f"Failed to read part {plan.part_number} of {path}: {e}")

        if len(data) != plan.length:
            raise LocalIOError(
                f"Short read on part {plan.part_number} of {path}: "
                f"expected {plan.length} bytes, got {len(data)}"
            )

        token.raise_if_cancelled()

        try:
            etag = self.storage.upload_part(session.key, session.upload_id, plan.part_number, data)
        except StorageError as e:
            raise TransferError(f"Failed to upload part {plan.part_number}: {e}") from e

        session.record(plan.part_number, etag)
