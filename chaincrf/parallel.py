"""In-memory map-reduce over a thread pool.

Each worker folds a contiguous chunk of the data into a private accumulator;
accumulators are then merged sequentially in chunk order, so results depend only
on the number of chunks and never on worker completion order.
"""
import itertools
import logging
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Generic, Sequence, TypeVar

from chaincrf.errors import ConfigurationError, MapReduceTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")
D = TypeVar("D")

_executor_ids = itertools.count()


class MapReduceDriver(ABC, Generic[T, D]):
    """Accumulation logic for ``MapReduceExecutor.map_reduce``."""

    @abstractmethod
    def new_data(self) -> D:
        """Fresh, empty accumulator."""

    @abstractmethod
    def update(self, data: D, elem: T) -> None:
        """Fold one element into an accumulator in place."""

    @abstractmethod
    def merge(self, a: D, b: D) -> None:
        """Fold accumulator ``b`` into ``a`` in place."""


def partition(elems: Sequence[T], num_parts: int) -> list[Sequence[T]]:
    """Split ``elems`` into ``num_parts`` contiguous chunks whose sizes differ by at most one."""
    if num_parts < 1:
        raise ConfigurationError(f"num_parts must be at least 1, got {num_parts}")
    base, extra = divmod(len(elems), num_parts)
    parts = []
    start = 0
    for i in range(num_parts):
        end = start + base + (1 if i < extra else 0)
        parts.append(elems[start:end])
        start = end
    return parts


def _run_chunk(driver: MapReduceDriver, chunk: Sequence) -> object:
    data = driver.new_data()
    for elem in chunk:
        driver.update(data, elem)
    return data


class MapReduceExecutor:
    """Owns a fixed-size worker pool used for repeated map-reduce calls.

    Worker threads are named ``mr-<name>-<id>_<n>``. The owner must call
    ``shutdown`` (or use the executor as a context manager) once done.

    Parameters
    ----------
    num_threads : int
        Number of workers, which is also the number of chunks per call
    name : str
        Label used in worker thread names
    """

    def __init__(self, num_threads: int = 1, name: str = "map-reduce"):
        if num_threads < 1:
            raise ConfigurationError(f"num_threads must be at least 1, got {num_threads}")
        self.num_threads = num_threads
        self.thread_name_prefix = f"mr-{name}-{next(_executor_ids)}"
        self._executor = ThreadPoolExecutor(max_workers=num_threads, thread_name_prefix=self.thread_name_prefix)

    def map_reduce(self, data: Sequence[T], driver: MapReduceDriver[T, D], timeout: float | None = None) -> D:
        """Accumulate ``data`` with ``driver`` across the worker pool.

        Parameters
        ----------
        data : Sequence[T]
            Elements to fold
        driver : MapReduceDriver[T, D]
            Accumulation logic
        timeout : float | None
            Seconds to wait for all workers; None waits indefinitely

        Returns
        -------
        D
            A fresh accumulator with every chunk merged into it in chunk order

        Raises
        ------
        MapReduceTimeoutError
            If the workers do not finish within ``timeout``
        """
        chunks = partition(data, self.num_threads)
        futures = [self._executor.submit(_run_chunk, driver, chunk) for chunk in chunks]
        _, not_done = wait(futures, timeout=timeout)
        if not_done:
            for future in not_done:
                future.cancel()
            raise MapReduceTimeoutError(
                f"{len(not_done)} of {len(futures)} map-reduce workers didn't finish within {timeout} seconds"
            )
        final_data = driver.new_data()
        for future in futures:
            driver.merge(final_data, future.result())
        return final_data

    def _live_threads(self) -> list[threading.Thread]:
        prefix = self.thread_name_prefix + "_"
        return [t for t in threading.enumerate() if t.name.startswith(prefix)]

    def shutdown(self, timeout: float = 1.0, max_retries: int = 5) -> bool:
        """Stop accepting work and join the worker threads.

        Joins are retried with exponentially growing waits starting at ``timeout``
        seconds. A pool that fails to stop is logged, not raised, since any result
        computed with it is still valid.

        Returns
        -------
        bool
            True if every worker thread exited
        """
        self._executor.shutdown(wait=False)
        wait_secs = timeout
        for attempt in range(max_retries):
            live = self._live_threads()
            if not live:
                return True
            deadline = time.monotonic() + wait_secs
            for t in live:
                t.join(max(deadline - time.monotonic(), 0.0))
            if self._live_threads():
                logger.warning(
                    f"{self.thread_name_prefix}: {len(self._live_threads())} workers still alive "
                    f"after {wait_secs:.2f}s (attempt {attempt + 1}/{max_retries})"
                )
                wait_secs *= 2
        if not self._live_threads():
            return True
        logger.warning(f"{self.thread_name_prefix}: giving up on joining worker threads")
        return False

    def __enter__(self) -> "MapReduceExecutor":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()


def map_reduce(
    data: Sequence[T], driver: MapReduceDriver[T, D], num_threads: int = 1, name: str = "map-reduce"
) -> D:
    """One-off map-reduce on a temporary executor that is shut down before returning."""
    with MapReduceExecutor(num_threads, name) as executor:
        return executor.map_reduce(data, driver)
