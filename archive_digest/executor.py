"""
Bounded-concurrency execution of per-item pipeline work.

Two policies, picked per stage:

- `run_first_error`: the first failure sets a shared cancel event, queued
  items never start, running items notice the event at their next check,
  and the first error is re-raised once every worker has returned.
- `run_collect_errors`: every item runs; failures are collected and
  returned next to the successes after all workers have returned.

Work functions are called as `fn(item, cancel_event)` on a
ThreadPoolExecutor with at most N workers.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Generic, Iterator, List, Optional, Sequence, Tuple, TypeVar

from archive_digest.errors import Cancelled, ItemError

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

WorkFn = Callable[[T, threading.Event], R]


def normalize_concurrency(n: Optional[int]) -> int:
    """Concurrency below 1 means 1."""
    if not n or n < 1:
        return 1
    return n


def iter_batches(items: Sequence[T], batch_size: int) -> Iterator[List[T]]:
    """Consecutive batches of `batch_size`; a size of 0 or less means one batch."""
    if not items:
        return
    if batch_size <= 0:
        yield list(items)
        return
    for start in range(0, len(items), batch_size):
        yield list(items[start : start + batch_size])


@dataclass
class BatchOutcome(Generic[T, R]):
    """Results of a collect-errors run, in input order."""

    results: List[Tuple[T, R]] = field(default_factory=list)
    errors: List[ItemError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


class _Progress:
    def __init__(self, label: str, total: int) -> None:
        self.label = label
        self.total = total
        self.done = 0
        self.started = time.monotonic()

    def step(self) -> None:
        self.done += 1
        if self.label:
            logger.info(
                "progress %s: %d/%d (%.1fs)",
                self.label,
                self.done,
                self.total,
                time.monotonic() - self.started,
            )


def _call(fn: WorkFn, item: Any, cancel: threading.Event) -> Any:
    if cancel.is_set():
        raise Cancelled(f"cancelled before start: {item}")
    return fn(item, cancel)


def run_first_error(
    items: Sequence[T],
    fn: WorkFn,
    concurrency: int,
    cancel: Optional[threading.Event] = None,
    label: str = "",
) -> List[R]:
    """Run `fn` over items, stopping everything at the first failure.

    Returns results in input order. Raises the first error observed after
    all in-flight workers have finished.
    """
    cancel = cancel or threading.Event()
    results: List[Any] = [None] * len(items)
    first_error: Optional[BaseException] = None
    progress = _Progress(label, len(items))

    with ThreadPoolExecutor(max_workers=normalize_concurrency(concurrency)) as ex:
        futures: Dict[Future, int] = {
            ex.submit(_call, fn, item, cancel): idx for idx, item in enumerate(items)
        }
        for fut in as_completed(futures):
            try:
                results[futures[fut]] = fut.result()
            except CancelledError:
                continue
            except Exception as e:
                if first_error is None:
                    first_error = e
                    cancel.set()
                    for pending in futures:
                        pending.cancel()
                elif not isinstance(e, Cancelled):
                    logger.warning("Additional failure after cancel: %s", e)
                continue
            progress.step()

    if first_error is not None:
        raise first_error
    return results


def run_collect_errors(
    items: Sequence[T],
    fn: WorkFn,
    concurrency: int,
    cancel: Optional[threading.Event] = None,
    label: str = "",
) -> BatchOutcome:
    """Run `fn` over every item and gather successes and failures."""
    cancel = cancel or threading.Event()
    slots: List[Any] = [None] * len(items)
    failed: Dict[int, ItemError] = {}
    progress = _Progress(label, len(items))

    with ThreadPoolExecutor(max_workers=normalize_concurrency(concurrency)) as ex:
        futures: Dict[Future, int] = {
            ex.submit(_call, fn, item, cancel): idx for idx, item in enumerate(items)
        }
        for fut in as_completed(futures):
            idx = futures[fut]
            try:
                slots[idx] = fut.result()
            except Exception as e:
                failed[idx] = ItemError(items[idx], e)
            progress.step()

    outcome: BatchOutcome = BatchOutcome()
    for idx, item in enumerate(items):
        if idx in failed:
            outcome.errors.append(failed[idx])
        else:
            outcome.results.append((item, slots[idx]))
    return outcome


__all__ = [
    "normalize_concurrency",
    "iter_batches",
    "BatchOutcome",
    "run_first_error",
    "run_collect_errors",
]
