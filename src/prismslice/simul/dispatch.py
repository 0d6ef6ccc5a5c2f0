"""
Module: simul.dispatch
----------------------
Work distribution for the parallel stages.

A `WorkDispatcher` hands out strictly increasing, non-overlapping ranges of
slice or beam indices to a fixed pool of worker threads. Workers write
their results into disjoint parts of shared arrays, so the dispatcher lock
is the only synchronisation a stage needs apart from the transform-plan
lock of `simul.propagate`.

Classes
-------
- `DispatcherState`:
    Idle, dispensing or exhausted
- `WorkDispatcher`:
    Thread-safe allocator of half-open index ranges
- `ProgressTracker`:
    Thread-safe completed-count notifier

Functions
---------
- `run_workers`:
    Runs a worker function on a thread pool and re-raises the first failure
"""

import enum
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, wait

from beartype.typing import Callable, List, Optional, Tuple

from prismslice.types import WorkerError, WorkRange

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


class DispatcherState(enum.Enum):
    IDLE = "idle"
    DISPENSING = "dispensing"
    EXHAUSTED = "exhausted"


class WorkDispatcher:
    """
    Description
    -----------
    Hands out the range [start, stop) in consecutive pieces. The state
    moves from IDLE to DISPENSING on the first request and to EXHAUSTED
    once every index has been handed out or the dispatcher is aborted.
    There is no way back from EXHAUSTED.

    Parameters
    ----------
    - `start` (int):
        First index of the range
    - `stop` (int):
        One past the last index of the range
    """

    def __init__(self, start: int, stop: int):
        if stop < start:
            raise ValueError(f"Invalid work range [{start}, {stop})")
        self._lock = threading.Lock()
        self._next: int = start
        self._stop: int = stop
        self._state: DispatcherState = DispatcherState.IDLE

    @property
    def state(self) -> DispatcherState:
        with self._lock:
            return self._state

    def get_work(self, batch_size: int = 1) -> Optional[WorkRange]:
        """
        Description
        -----------
        Reserves the next `batch_size` indices, fewer at the end of the
        range.

        Parameters
        ----------
        - `batch_size` (int):
            Number of indices requested

        Returns
        -------
        - `work` (Optional[WorkRange]):
            The reserved range, or None once the dispatcher is exhausted
        """
        if batch_size < 1:
            raise ValueError(f"batch_size must be at least 1, got {batch_size}")
        with self._lock:
            if self._state is DispatcherState.EXHAUSTED or self._next >= self._stop:
                self._state = DispatcherState.EXHAUSTED
                return None
            start = self._next
            self._next = min(self._next + batch_size, self._stop)
            self._state = (
                DispatcherState.EXHAUSTED
                if self._next == self._stop
                else DispatcherState.DISPENSING
            )
            return WorkRange(start, self._next)

    def abort(self) -> None:
        """Stops handing out work, used when a worker of the stage fails."""
        with self._lock:
            self._state = DispatcherState.EXHAUSTED


class ProgressTracker:
    """
    Counts completed slices or beams across workers and forwards
    (completed, total) to an optional callback. The callback runs under the
    re-entrant tracker lock, so it sees counts in order and may read
    `completed`.
    """

    def __init__(self, callback: Optional[ProgressCallback], total: int):
        self._callback = callback
        self._total = total
        self._completed = 0
        self._lock = threading.RLock()

    @property
    def completed(self) -> int:
        with self._lock:
            return self._completed

    def advance(self, count: int = 1) -> None:
        with self._lock:
            self._completed += count
            completed = self._completed
            if self._callback is not None:
                self._callback(completed, self._total)


def run_workers(
    num_workers: int,
    worker: Callable[[int], None],
    dispatcher: WorkDispatcher,
) -> None:
    """
    Description
    -----------
    Runs `worker(worker_id)` on `num_workers` threads and waits for all of
    them. Each worker is expected to loop on `dispatcher.get_work` until it
    returns None.

    Parameters
    ----------
    - `num_workers` (int):
        Size of the thread pool
    - `worker` (Callable[[int], None]):
        Worker body, called once per thread with its id
    - `dispatcher` (WorkDispatcher):
        Dispatcher shared by the workers

    Raises
    ------
    - WorkerError:
        If any worker raised. The dispatcher is aborted so the remaining
        workers stop after their current range, and the first failure is
        chained as the cause.

    Flow
    ----
    - Submit one guarded task per worker
    - A failing worker records its error in failure order and aborts the
      dispatcher, so the others drain after their current range
    - Wait for all workers
    - Re-raise the earliest recorded failure
    """
    failures: List[Tuple[int, BaseException]] = []
    failure_lock = threading.Lock()

    def guarded(worker_id: int) -> None:
        try:
            worker(worker_id)
        except Exception as error:
            with failure_lock:
                failures.append((worker_id, error))
            dispatcher.abort()
            raise

    logger.debug("Launching %d worker threads", num_workers)
    with ThreadPoolExecutor(
        max_workers=num_workers, thread_name_prefix="prismslice-worker"
    ) as executor:
        futures = [executor.submit(guarded, worker_id) for worker_id in range(num_workers)]
        wait(futures)
    if failures:
        worker_id, error = failures[0]
        logger.error("Worker %d failed: %s", worker_id, error)
        raise WorkerError(f"Worker {worker_id} failed: {error}") from error
    logger.debug("All %d worker threads finished", num_workers)
