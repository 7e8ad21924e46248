"""Base class for thread-parallel processing of independent jobs."""

import logging
import queue
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Iterable, List, Optional, Tuple, Union

# Tasks buffered per worker thread before the producer blocks
QUEUE_DEPTH = 1024

_SHUTDOWN = object()


class SerialManager:
    """Manager for debugging by running jobs inline in the calling thread.

    Attributes:
        abort: Shared cancellation flag
        errors: Exceptions raised by jobs
    """

    def __init__(self, abort: Optional[threading.Event] = None):
        self.abort = abort or threading.Event()
        self.errors: List[BaseException] = []
        self._target: Optional[Callable] = None
        self._args: Tuple = ()

    def start_workers(self, target: Callable, args: Tuple = ()) -> None:
        """Register the job function; nothing runs until tasks are submitted.

        Args:
            target: Function called as target(task, *args)
            args: Extra arguments passed to every call
        """
        self._target = target
        self._args = args

    def submit(self, task: Any) -> None:
        if self.abort.is_set():
            return
        try:
            self._target(task, *self._args)
        except Exception as e:
            logging.error(f"Error in job {task}: {e}")
            self.errors.append(e)
            self.abort.set()

    def await_workers(self) -> None:
        pass

    def raise_errors(self) -> None:
        if self.errors:
            raise RuntimeError(f"{len(self.errors)} job(s) failed: {self.errors[0]}") from self.errors[0]

    def shutdown(self) -> None:
        pass


class WorkerManager(SerialManager):
    """Fixed-size pool of worker threads draining a shared task queue.

    Attributes:
        num_threads: Number of worker threads
        tasks: Queue of pending tasks
        threads: Worker threads
    """

    def __init__(self, num_threads: int, abort: Optional[threading.Event] = None):
        """Initialize worker manager.

        Args:
            num_threads: Number of worker threads to start
            abort: Optional shared cancellation flag
        """
        if num_threads < 1:
            raise ValueError(f"Number of threads cannot be less than 1, got {num_threads}")
        super().__init__(abort)
        self.num_threads = num_threads
        self.tasks: queue.Queue = queue.Queue(maxsize=QUEUE_DEPTH * num_threads)
        self.threads: List[threading.Thread] = []
        self._errors_lock = threading.Lock()

    def start_workers(self, target: Callable, args: Tuple = ()) -> None:
        """Start the worker threads.

        Args:
            target: Function called as target(task, *args) for each task
            args: Extra arguments passed to every call
        """
        try:
            for k in range(self.num_threads):
                thread = threading.Thread(
                    target=self._worker,
                    args=(target, args),
                    name=f"ngsld-worker-{k}",
                    daemon=True,
                )
                thread.start()
                self.threads.append(thread)
        except RuntimeError as e:
            self.abort.set()
            self.shutdown()
            raise RuntimeError(f"Could not start {self.num_threads} worker threads: {e}") from e

    def _worker(self, target: Callable, args: Tuple) -> None:
        while True:
            task = self.tasks.get()
            try:
                if task is _SHUTDOWN:
                    return
                # Cancelled runs drain the queue without doing the work
                if self.abort.is_set():
                    continue
                target(task, *args)
            except Exception as e:
                logging.error(f"Error in worker {threading.current_thread().name}: {e}")
                with self._errors_lock:
                    self.errors.append(e)
                self.abort.set()
            finally:
                self.tasks.task_done()

    def submit(self, task: Any) -> None:
        """Queue a task, blocking while the queue is full."""
        self.tasks.put(task)

    def await_workers(self) -> None:
        """Wait until every queued task has been taken and finished."""
        self.tasks.join()

    def shutdown(self) -> None:
        """Stop and join all worker threads."""
        for _ in self.threads:
            self.tasks.put(_SHUTDOWN)
        for thread in self.threads:
            thread.join()
        self.threads = []


class ParallelProcessor(ABC):
    """Abstract base class for thread-parallel processing applications.

    Subclasses must implement the following methods:
        - prepare_tasks: Build the sequence of independent tasks
        - create_shared_data: Allocate the structure workers write results to
        - process_task: Compute one task and store its result
    and may override supervise to post-process results.
    """

    @classmethod
    @abstractmethod
    def prepare_tasks(cls, **kwargs) -> Iterable[Any]:
        """Build the tasks to run.

        Args:
            **kwargs: Additional arguments passed from run()

        Returns:
            Iterable of tasks, each handed to process_task once
        """
        pass

    @classmethod
    @abstractmethod
    def create_shared_data(cls, tasks: Iterable[Any], **kwargs) -> Any:
        """Allocate storage for results, sized before any task runs.

        Args:
            tasks: Tasks returned by prepare_tasks
            **kwargs: Additional arguments passed from run()

        Returns:
            Object passed to every process_task call
        """
        pass

    @classmethod
    @abstractmethod
    def process_task(cls,
                     task: Any,
                     shared_data: Any,
                     abort: threading.Event,
                     worker_params: Any = None) -> None:
        """Process a single task.

        Must write into a slot of shared_data owned by this task only.

        Args:
            task: Task to process
            shared_data: Result storage from create_shared_data
            abort: Shared cancellation flag
            worker_params: Optional parameters shared by every task
        """
        pass

    @classmethod
    def supervise(cls,
                  manager: Union[WorkerManager, SerialManager],
                  shared_data: Any,
                  tasks: Iterable[Any],
                  **kwargs) -> Any:
        """Submit all tasks, wait for them, and return the shared data.

        A KeyboardInterrupt sets the abort flag; tasks not yet started are
        skipped and results already stored are kept.

        Raises:
            RuntimeError: If any task raised
        """
        try:
            for task in tasks:
                if manager.abort.is_set():
                    break
                manager.submit(task)
            manager.await_workers()
        except KeyboardInterrupt:
            logging.warning("Interrupted; skipping remaining jobs")
            manager.abort.set()
            manager.await_workers()

        manager.raise_errors()
        return shared_data

    @classmethod
    def run(cls,
            num_threads: int = 1,
            worker_params: Any = None,
            abort: Optional[threading.Event] = None,
            **kwargs) -> Any:
        """Run parallel computation.

        Args:
            num_threads: Number of worker threads; 1 runs in the calling thread
            worker_params: Optional parameters passed to each process_task call
            abort: Optional cancellation flag, created if None
            **kwargs: Additional arguments for prepare_tasks, create_shared_data
                and supervise

        Returns:
            Results of the parallel computation
        """
        tasks = cls.prepare_tasks(**kwargs)
        shared_data = cls.create_shared_data(tasks, **kwargs)

        if num_threads == 1:
            manager = SerialManager(abort)
        else:
            manager = WorkerManager(num_threads, abort)
        manager.start_workers(cls.process_task, (shared_data, manager.abort, worker_params))

        try:
            results = cls.supervise(manager, shared_data, tasks, **kwargs)
        finally:
            manager.shutdown()

        return results
