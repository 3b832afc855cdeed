"""
Bounded parallel execution of per-image work.

Model inference is blocking, so each task runs on a worker thread of a
:class:`concurrent.futures.ThreadPoolExecutor` sized to the concurrency
limit; tasks beyond the limit wait in the executor queue.  The event loop
awaits all of them together and gets back one :class:`Outcome` per task, in
submission order.  A failing task never cancels its siblings.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import math
import threading
from dataclasses import dataclass
from typing import Any, Callable, Generic, List, Optional, Sequence, TypeVar

from .errors import BatchCancelled

T = TypeVar("T")


@dataclass
class Outcome(Generic[T]):
    """Result or error of the task at position ``index``."""
    index: int
    value: Optional[T] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def adaptive_concurrency(batch_size: int, low: int = 3, high: int = 8, per_worker: int = 4) -> int:
    """Pick a worker count for ``batch_size`` images.

    Roughly one worker per ``per_worker`` images, clamped to ``[low, high]``
    and never more workers than images.
    """
    if batch_size <= 0:
        return 1
    wanted = max(low, math.ceil(batch_size / per_worker))
    return max(1, min(batch_size, high, wanted))


async def run_bounded(tasks: Sequence[Callable[[], T]], max_concurrency: int,
                      cancel_event: Optional[threading.Event] = None) -> List[Outcome[T]]:
    """Run ``tasks`` with at most ``max_concurrency`` executing at once.

    Parameters
    ----------
    tasks: sequence of zero-argument callables
        The per-task bodies.  Callers bind any identity they need (image id,
        index) into the callable before submission.
    max_concurrency: int
        Number of worker threads.
    cancel_event: threading.Event, optional
        Checked by each task just before it starts.  Once set, tasks that have
        not started yet finish immediately with :class:`BatchCancelled`;
        tasks already running are left to complete.

    Returns
    -------
    list of Outcome
        One entry per task, aligned with ``tasks``.
    """
    if not tasks:
        return []
    if max_concurrency < 1:
        raise ValueError("max_concurrency must be at least 1")
    loop = asyncio.get_running_loop()

    def guarded(task: Callable[[], Any]) -> Any:
        if cancel_event is not None and cancel_event.is_set():
            raise BatchCancelled("batch cancelled before the task started")
        return task()

    executor = concurrent.futures.ThreadPoolExecutor(
        max_workers=max_concurrency, thread_name_prefix="collection-worker")
    try:
        futures = [loop.run_in_executor(executor, guarded, task) for task in tasks]
        results = await asyncio.gather(*futures, return_exceptions=True)
    finally:
        executor.shutdown(wait=False, cancel_futures=True)

    outcomes: List[Outcome[T]] = []
    for i, result in enumerate(results):
        if isinstance(result, BaseException):
            outcomes.append(Outcome(index=i, error=result))
        else:
            outcomes.append(Outcome(index=i, value=result))
    return outcomes
