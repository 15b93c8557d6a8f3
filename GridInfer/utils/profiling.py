"""
Performance Profiling Utilities.
"""

import time
from contextlib import contextmanager
from typing import Callable, Optional


class Timer:
    """Wall-clock interval filled in by `profile_time`."""

    def __init__(self):
        self.start: Optional[float] = None
        self.end: Optional[float] = None

    @property
    def elapsed_ms(self) -> float:
        if self.start is None or self.end is None:
            raise RuntimeError("Timer has not finished")
        return (self.end - self.start) * 1000.0


@contextmanager
def profile_time(before: Optional[Callable[[], None]] = None,
                 after: Optional[Callable[[], None]] = None):
    """
    Time a block with `time.perf_counter`.

    `before` runs ahead of the first timestamp and `after` ahead of the
    second, so synchronization waits sit outside and inside the interval
    respectively.

    Example:
        with profile_time(before=barrier, after=barrier) as timer:
            executor.forward(outputs, inputs)
        print(timer.elapsed_ms)
    """
    timer = Timer()
    if before is not None:
        before()
    timer.start = time.perf_counter()
    yield timer
    if after is not None:
        after()
    timer.end = time.perf_counter()
