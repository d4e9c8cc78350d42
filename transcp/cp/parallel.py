"""
Fork/Join Scheduling for Batch Predictions

`ParallelizedAction` splits an index range [first, last) by recursive
bisection until every leaf is at most `threshold` long, runs the leaves on
a bounded thread pool and blocks until all of them are done. Each leaf
gets its own action instance (via `create_subtask`), so per-leaf state set
up in `initialize` is private to the worker running that leaf.

"""

import math
import os
import threading
from abc import ABC, abstractmethod
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from typing import List, Optional, Tuple


_default_executor: Optional[ThreadPoolExecutor] = None
_default_executor_lock = threading.Lock()


def get_default_executor() -> ThreadPoolExecutor:
    """
    Process-wide worker pool shared by all batch predictions.

    Created on first use with one worker per CPU.
    """
    global _default_executor
    with _default_executor_lock:
        if _default_executor is None:
            _default_executor = ThreadPoolExecutor(
                max_workers=os.cpu_count() or 1,
                thread_name_prefix='transcp-worker'
            )
        return _default_executor


def default_threshold(n: int, n_workers: int) -> int:
    """Leaf size giving roughly four leaves per worker."""
    return max(1, math.ceil(n / (4 * max(1, n_workers))))


def split_range(first: int, last: int, threshold: int) -> List[Tuple[int, int]]:
    """
    Recursively bisect [first, last) into leaves of at most `threshold`.

    Examples
    --------
    >>> split_range(0, 10, 3)
    [(0, 2), (2, 5), (5, 7), (7, 10)]
    """
    if last - first <= threshold:
        return [(first, last)] if last > first else []
    middle = first + (last - first) // 2
    return split_range(first, middle, threshold) + split_range(middle, last, threshold)


class ParallelizedAction(ABC):
    """
    An action over the index range [first, last).

    Subclasses implement `compute(i)` for a single index and
    `create_subtask(first, last)` to build an equivalent action over a
    sub-range. `initialize` and `finalize` run once per leaf, on the
    worker thread, before and after the leaf's indices are computed.

    Parameters
    ----------
    first : int
        First index (inclusive).
    last : int
        End index (exclusive).
    executor : concurrent.futures.Executor, optional
        Worker pool. Defaults to `get_default_executor()`.
    threshold : int, optional
        Maximum leaf size. Defaults to `default_threshold` with one worker per CPU.
    """

    def __init__(
        self,
        first: int,
        last: int,
        executor=None,
        threshold: Optional[int] = None
    ):
        if last < first:
            raise ValueError(f"Invalid range [{first}, {last})")
        self.first = first
        self.last = last
        self.executor = executor
        self.threshold = threshold

    def initialize(self, first: int, last: int):
        """Per-leaf setup, run on the worker before any `compute`."""

    def finalize(self, first: int, last: int):
        """Per-leaf teardown, run on the worker after the last `compute`."""

    @abstractmethod
    def compute(self, i: int):
        """Process index `i`."""

    @abstractmethod
    def create_subtask(self, first: int, last: int) -> 'ParallelizedAction':
        """An action of the same kind over [first, last)."""

    def run_leaf(self):
        """Process this action's whole range on the calling thread."""
        self.initialize(self.first, self.last)
        try:
            for i in range(self.first, self.last):
                self.compute(i)
        finally:
            self.finalize(self.first, self.last)

    def run_sequential(self):
        """Process the range as a single leaf, without the worker pool."""
        self.run_leaf()

    def run(self):
        """
        Process the range on the worker pool and wait for completion.

        Raises
        ------
        Exception
            The first exception raised by any leaf. Leaves that have not
            started yet are cancelled; running leaves are waited for
            before the exception is re-raised.
        """
        if self.last == self.first:
            return

        executor = self.executor if self.executor is not None else get_default_executor()
        threshold = self.threshold or default_threshold(
            self.last - self.first, os.cpu_count() or 1
        )

        leaves = split_range(self.first, self.last, threshold)
        futures = [
            executor.submit(self.create_subtask(first, last).run_leaf)
            for first, last in leaves
        ]

        done, pending = wait(futures, return_when=FIRST_EXCEPTION)
        failed = [f for f in futures if f in done and f.exception() is not None]
        if failed:
            for future in pending:
                future.cancel()
            wait(pending)
            raise failed[0].exception()
