"""
Bounded fan-out over independent units of work.

ConcurrencyOrchestrator runs a worker over a sequence of tasks on a fixed
number of threads. The first failure cancels the shared CancellationToken:
tasks not yet started are skipped and running workers stop at their next
cancellation check. run() returns only after every started worker has
finished.

Used for the files of an upload run and for the parts of one large file.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, FIRST_COMPLETED, wait
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional


logger = logging.getLogger(__name__)


class OperationCancelled(Exception):
    """Raised when work is abandoned because its token was cancelled."""
    pass


class CancellationToken:
    """
    Thread-safe cancellation signal.

    A token is cancelled when cancel() was called on it, when its parent is
    cancelled, or when its deadline (time.monotonic() value) has passed.
    """

    def __init__(self, parent: Optional['CancellationToken'] = None, deadline: Optional[float] = None):
        self._event = threading.Event()
        self._parent = parent
        self._deadline = deadline
        self._reason = None

    @classmethod
    def with_timeout(cls, seconds: float, parent: Optional['CancellationToken'] = None) -> 'CancellationToken':
        return cls(parent=parent, deadline=time.monotonic() + seconds)

    def child(self) -> 'CancellationToken':
        """New token cancelled together with this one, but not the other way round."""
        return CancellationToken(parent=self)

    def cancel(self, reason: str = 'cancelled'):
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    def is_cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self.cancel('deadline exceeded')
            return True
        if self._parent is not None and self._parent.is_cancelled():
            self.cancel(self._parent.reason)
            return True
        return False

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def raise_if_cancelled(self):
        if self.is_cancelled():
            raise OperationCancelled(f"Operation cancelled: {self._reason}")


class RunCounters:
    """
    Uploaded/skipped/deleted counters shared by concurrent workers.
    """

    FIELDS = ('uploaded', 'skipped', 'deleted')

    def __init__(self):
        self._counters: Dict[str, int] = {name: 0 for name in self.FIELDS}
        self._lock = threading.Lock()

    def increment(self, name: str, value: int = 1):
        """Atomically increment a counter."""
        if name not in self._counters:
            raise KeyError(f"Unknown counter: {name}")
        with self._lock:
            self._counters[name] += value

    def get(self, name: str) -> int:
        with self._lock:
            return self._counters[name]

    @property
    def uploaded(self) -> int:
        return self.get('uploaded')

    @property
    def skipped(self) -> int:
        return self.get('skipped')

    @property
    def deleted(self) -> int:
        return self.get('deleted')

    def as_dict(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._counters)

    def __repr__(self):
        return 'RunCounters(' + ', '.join(f'{k}={v}' for k, v in self.as_dict().items()) + ')'


@dataclass
class AggregateResult:
    """Outcome of ConcurrencyOrchestrator.run()."""
    succeeded: int = 0
    failed: int = 0
    cancelled: int = 0  # submitted but stopped by cancellation
    abandoned: int = 0  # never submitted
    first_error: Optional[BaseException] = None
    first_failed_item: Any = None

    @property
    def ok(self) -> bool:
        return self.first_error is None


class ConcurrencyOrchestrator:
    """
    Fixed-width worker pool with fail-fast cancellation.

    Args:
        max_workers: Number of concurrent workers (at least 1)
        name: Name for logging and thread names
        token: Cancellation token shared by all workers; a fresh one is
            created when omitted
        progress_interval: Log progress every N completed tasks
    """

    def __init__(
        self,
        max_workers: int,
        name: str = 'Worker',
        token: Optional[CancellationToken] = None,
        progress_interval: int = 25
    ):
        self.max_workers = max(1, int(max_workers))
        self.name = name
        self.token = token if token is not None else CancellationToken()
        self.progress_interval = max(1, progress_interval)

    def run(
        self,
        tasks: Iterable[Any],
        worker: Callable[[Any], Any],
        on_result: Optional[Callable[[Any, Any], None]] = None
    ) -> AggregateResult:
        """
        Run worker over tasks.

        A task fails when the worker raises. The first failure is recorded
        and cancels the token.

        Args:
            tasks: Units of work, consumed once
            worker: Callable invoked with one task
            on_result: Called with (task, result) for every successful task

        Returns:
            AggregateResult with per-outcome counts and the first error
        """
        result = AggregateResult()
        iterator = iter(tasks)
        in_flight = {}
        exhausted = False
        completed = 0

        logger.debug(f"Starting {self.name} with {self.max_workers} workers")

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix=self.name) as pool:
            try:
                while True:
                    # Keep at most max_workers tasks in flight
                    while not exhausted and len(in_flight) < self.max_workers and not self.token.is_cancelled():
                        try:
                            item = next(iterator)
                        except StopIteration:
                            exhausted = True
                            break
                        in_flight[pool.submit(self._run_one, worker, item)] = item

                    if not in_flight:
                        break

                    done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                    for future in done:
                        item = in_flight.pop(future)
                        self._collect(future, item, result, on_result)
                        completed += 1
                        if completed % self.progress_interval == 0:
                            logger.info(f"[{self.name} Progress] {completed} tasks completed")

            except KeyboardInterrupt:
                logger.warning(f"{self.name} received KeyboardInterrupt")
                self.token.cancel('interrupted')
                raise

        if not exhausted:
            result.abandoned = sum(1 for _ in iterator)

        if result.first_error is None and self.token.is_cancelled() and (result.cancelled or result.abandoned):
            result.first_error = OperationCancelled(f"{self.name} cancelled: {self.token.reason}")

        logger.debug(
            f"{self.name} finished: succeeded={result.succeeded} failed={result.failed} "
            f"cancelled={result.cancelled} abandoned={result.abandoned}"
        )
        return result

    def _run_one(self, worker: Callable[[Any], Any], item: Any) -> Any:
        # Queued tasks start after a sibling failed: skip them
        self.token.raise_if_cancelled()
        return worker(item)

    def _collect(self, future, item, result: AggregateResult, on_result):
        try:
            value = future.result()
        except OperationCancelled:
            result.cancelled += 1
            return
        except Exception as e:
            result.failed += 1
            if result.first_error is None:
                result.first_error = e
                result.first_failed_item = item
                logger.error(f"{self.name} task failed for {item}: {e}")
            self.token.cancel(f'{self.name} task failed')
            return

        result.succeeded += 1
        if on_result is not None:
            on_result(item, value)
