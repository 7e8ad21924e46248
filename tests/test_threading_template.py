#!/usr/bin/env python3

"""Test the thread-parallel processing framework."""

import threading

import numpy as np
import pytest

from ngsld.threading_template import ParallelProcessor, SerialManager, WorkerManager

NUM_TASKS = 500
NUM_THREADS = 4


class SquareProcessor(ParallelProcessor):
    """Processor squaring the entries of an input vector, one entry per task."""

    @classmethod
    def prepare_tasks(cls, values=None, **kwargs):
        return range(len(values))

    @classmethod
    def create_shared_data(cls, tasks, values=None, **kwargs):
        return {'input': np.asarray(values, dtype=float), 'output': np.full(len(tasks), np.nan)}

    @classmethod
    def process_task(cls, task, shared_data, abort, worker_params=None):
        offset = worker_params or 0.0
        shared_data['output'][task] = shared_data['input'][task] ** 2 + offset


class FailingProcessor(SquareProcessor):
    """Processor whose task 7 raises."""

    @classmethod
    def process_task(cls, task, shared_data, abort, worker_params=None):
        if task == 7:
            raise ValueError("bad task 7")
        super().process_task(task, shared_data, abort, worker_params)


def test_parallel_matches_serial():
    """Threaded and serial runs fill every slot with the same values."""
    values = np.random.default_rng(42).normal(size=NUM_TASKS)

    serial = SquareProcessor.run(num_threads=1, values=values)
    parallel = SquareProcessor.run(num_threads=NUM_THREADS, values=values)

    assert np.allclose(serial['output'], values ** 2, rtol=1e-12, atol=0)
    # Each slot is computed by the same expression, so the runs agree exactly
    assert np.array_equal(parallel['output'], serial['output'])


def test_worker_params_are_shared():
    values = np.arange(10)
    result = SquareProcessor.run(num_threads=2, worker_params=1.0, values=values)
    assert np.array_equal(result['output'], values ** 2 + 1.0)


@pytest.mark.parametrize("num_threads", [1, NUM_THREADS])
def test_task_error_is_raised(num_threads):
    with pytest.raises(RuntimeError, match="bad task 7"):
        FailingProcessor.run(num_threads=num_threads, values=np.arange(100))


def test_error_sets_abort():
    abort = threading.Event()
    with pytest.raises(RuntimeError):
        FailingProcessor.run(num_threads=1, abort=abort, values=np.arange(100))
    assert abort.is_set()


def test_serial_manager_skips_after_abort():
    seen = []
    manager = SerialManager()
    manager.start_workers(seen.append)
    manager.submit(1)
    manager.abort.set()
    manager.submit(2)
    assert seen == [1]


def test_worker_manager_shutdown():
    seen = []
    lock = threading.Lock()

    def record(task):
        with lock:
            seen.append(task)

    manager = WorkerManager(3)
    manager.start_workers(record)
    for task in range(50):
        manager.submit(task)
    manager.await_workers()
    manager.shutdown()

    assert sorted(seen) == list(range(50))
    assert manager.threads == []


def test_worker_manager_requires_threads():
    with pytest.raises(ValueError, match="less than 1"):
        WorkerManager(0)
