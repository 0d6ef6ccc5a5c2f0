"""Tests for the work dispatcher, the worker pool and progress counting."""

import threading
import time

import pytest

from prismslice.simul.dispatch import (DispatcherState, ProgressTracker,
                                       WorkDispatcher, run_workers)
from prismslice.types import WorkerError, WorkRange


class TestWorkDispatcher:
    def test_state_transitions(self):
        dispatcher = WorkDispatcher(0, 5)
        assert dispatcher.state is DispatcherState.IDLE
        assert dispatcher.get_work(2) == WorkRange(0, 2)
        assert dispatcher.state is DispatcherState.DISPENSING
        assert dispatcher.get_work(2) == WorkRange(2, 4)
        assert dispatcher.get_work(2) == WorkRange(4, 5)
        assert dispatcher.state is DispatcherState.EXHAUSTED
        assert dispatcher.get_work(2) is None
        assert dispatcher.state is DispatcherState.EXHAUSTED

    def test_offset_range(self):
        dispatcher = WorkDispatcher(10, 13)
        assert dispatcher.get_work() == WorkRange(10, 11)
        assert dispatcher.get_work(5) == WorkRange(11, 13)
        assert dispatcher.get_work() is None

    def test_empty_range(self):
        dispatcher = WorkDispatcher(3, 3)
        assert dispatcher.get_work() is None
        assert dispatcher.state is DispatcherState.EXHAUSTED

    def test_abort(self):
        dispatcher = WorkDispatcher(0, 100)
        dispatcher.get_work(10)
        dispatcher.abort()
        assert dispatcher.state is DispatcherState.EXHAUSTED
        assert dispatcher.get_work(10) is None

    def test_invalid_arguments(self):
        with pytest.raises(ValueError):
            WorkDispatcher(5, 4)
        with pytest.raises(ValueError):
            WorkDispatcher(0, 4).get_work(0)

    def test_concurrent_ranges_are_disjoint_and_complete(self):
        dispatcher = WorkDispatcher(0, 1000)
        ranges = []
        lock = threading.Lock()

        def worker(worker_id):
            while True:
                work = dispatcher.get_work(7)
                if work is None:
                    break
                with lock:
                    ranges.append(work)

        run_workers(8, worker, dispatcher)
        covered = sorted(index for work in ranges for index in range(*work))
        assert covered == list(range(1000))
        assert all(len(work) <= 7 for work in ranges)
        assert dispatcher.state is DispatcherState.EXHAUSTED


class TestRunWorkers:
    def test_worker_ids(self):
        seen = []
        lock = threading.Lock()

        def worker(worker_id):
            with lock:
                seen.append(worker_id)

        run_workers(4, worker, WorkDispatcher(0, 0))
        assert sorted(seen) == [0, 1, 2, 3]

    def test_failure_is_reraised_with_cause(self):
        dispatcher = WorkDispatcher(0, 10_000)

        def worker(worker_id):
            while True:
                work = dispatcher.get_work(1)
                if work is None:
                    break
                if work.start == 5:
                    raise KeyError("bad beam")

        with pytest.raises(WorkerError) as excinfo:
            run_workers(3, worker, dispatcher)
        assert isinstance(excinfo.value.__cause__, KeyError)
        assert dispatcher.state is DispatcherState.EXHAUSTED

    def test_earliest_failure_wins_over_lower_worker_id(self):
        dispatcher = WorkDispatcher(0, 10_000)

        def worker(worker_id):
            if worker_id == 2:
                raise ValueError("first failure")
            if worker_id == 0:
                deadline = time.monotonic() + 30.0
                while dispatcher.state is not DispatcherState.EXHAUSTED:
                    assert time.monotonic() < deadline
                    time.sleep(0.01)
                raise RuntimeError("later failure")

        with pytest.raises(WorkerError, match="Worker 2") as excinfo:
            run_workers(3, worker, dispatcher)
        assert isinstance(excinfo.value.__cause__, ValueError)


class TestProgressTracker:
    def test_counts_across_threads(self):
        calls = []
        tracker = ProgressTracker(lambda done, total: calls.append((done, total)), 40)
        dispatcher = WorkDispatcher(0, 40)

        def worker(worker_id):
            while True:
                work = dispatcher.get_work(3)
                if work is None:
                    break
                tracker.advance(len(work))

        run_workers(4, worker, dispatcher)
        assert tracker.completed == 40
        assert calls[-1] == (40, 40)
        assert [done for done, _ in calls] == sorted(done for done, _ in calls)

    def test_without_callback(self):
        tracker = ProgressTracker(None, 2)
        tracker.advance()
        tracker.advance()
        assert tracker.completed == 2

    def test_callback_reads_completed_consistently(self):
        seen = []
        tracker = ProgressTracker(
            lambda done, total: seen.append((done, tracker.completed)), 30
        )
        dispatcher = WorkDispatcher(0, 30)

        def worker(worker_id):
            while True:
                work = dispatcher.get_work(2)
                if work is None:
                    break
                tracker.advance(len(work))

        run_workers(3, worker, dispatcher)
        assert all(done == completed for done, completed in seen)
        assert tracker.completed == 30
