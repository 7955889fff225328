"""
Data-parallel range scheduler.

Runs a unit of work once for every index of an integer range on a fixed set
of OS threads. The heavy numerical kernels (SVD, median filtering) release
the GIL, so frames processed on different threads overlap in time.
"""

import concurrent.futures
import logging
import math
import os
from typing import Callable, Optional


logger = logging.getLogger(__name__)


class Scheduler:
    """
    Map a function over ``[first, last)`` with threads.

    Parameters
    ----------
    num_workers : int, optional
        Number of execution units. Defaults to ``os.cpu_count()``.
    threshold : int
        Ranges of at most this many indices run sequentially.
    """

    def __init__(self, num_workers: Optional[int] = None, threshold: int = 1):
        if num_workers is None:
            num_workers = os.cpu_count() or 1
        self.num_workers = max(int(num_workers), 1)
        self.threshold = int(threshold)

    def map_range(self, func: Callable[[int], None], first: int, last: int):
        """
        Call ``func(i)`` exactly once for every ``first <= i < last``.

        No ordering is guaranteed between indices. Returns after all work
        has finished; the first exception raised by any unit is re-raised
        once every launched unit has been joined.
        """
        n = last - first
        if n <= 0:
            return

        P = self.num_workers
        if P <= 1 or n <= self.threshold:
            for index in range(first, last):
                func(index)
            return

        if n <= P:
            with concurrent.futures.ThreadPoolExecutor(max_workers=n) as pool:
                futures = [pool.submit(func, index) for index in range(first, last)]
            self._collect(futures)
            return

        chunk = math.ceil(n / P)

        def job_slice(a, b):
            for index in range(a, b):
                func(index)

        futures = []
        with concurrent.futures.ThreadPoolExecutor(max_workers=P - 1) as pool:
            for worker in range(P - 1):
                a = min(first + worker * chunk, last)
                b = min(a + chunk, last)
                if a < b:
                    futures.append(pool.submit(job_slice, a, b))

            # Remaining block runs on the calling thread
            local_error = None
            try:
                job_slice(min(first + (P - 1) * chunk, last), last)
            except Exception as e:
                local_error = e
        self._collect(futures)
        if local_error is not None:
            raise local_error

    @staticmethod
    def _collect(futures):
        errors = [e for e in (f.exception() for f in futures) if e is not None]
        if errors:
            if len(errors) > 1:
                logger.error("%d work units failed; re-raising the first", len(errors))
            raise errors[0]


def parallel_for(func: Callable[[int], None], first: int, last: int,
                 num_workers: Optional[int] = None, threshold: int = 1):
    """Convenience wrapper around :meth:`Scheduler.map_range`."""
    Scheduler(num_workers, threshold).map_range(func, first, last)
