"""
Hierarchical rollup for threads with too many chunk summaries.

Long threads can produce more chunk summaries than fit comfortably in one
rollup prompt. We cut the list into windows, roll each window up to a
partial thread summary, then merge the partials with a second call.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, List, Optional, Sequence, TypeVar

from archive_digest.errors import Cancelled
from archive_digest.models import ThreadRolluper

logger = logging.getLogger(__name__)

T = TypeVar("T")

# (window_index, window_count) -> previously saved partial or None
LoadPart = Callable[[int, int], Optional[Any]]
# (window_index, window_count, partial) -> None
SavePart = Callable[[int, int, Any], None]


def chunk_windows(items: Sequence[T], max_size: int) -> List[List[T]]:
    """Split items into consecutive windows of at most `max_size`.

    A non-positive max, or a list that already fits, gives one window.
    """
    if max_size <= 0 or len(items) <= max_size:
        return [list(items)]
    return [list(items[i : i + max_size]) for i in range(0, len(items), max_size)]


def min_thread_start(items: Sequence[Any]) -> Optional[float]:
    """Earliest non-null `thread_start_time` among items, or None."""
    starts = [
        item.thread_start_time
        for item in items
        if getattr(item, "thread_start_time", None) is not None
    ]
    return min(starts) if starts else None


def _check_cancel(cancel: Optional[threading.Event], conversation_id: str) -> None:
    if cancel is not None and cancel.is_set():
        raise Cancelled(f"rollup cancelled for {conversation_id}")


def rollup_in_windows(
    conversation_id: str,
    items: Sequence[Any],
    rolluper: ThreadRolluper,
    *,
    max_per_window: int,
    glossary_excerpt: str = "",
    load_part: Optional[LoadPart] = None,
    save_part: Optional[SavePart] = None,
    cancel: Optional[threading.Event] = None,
) -> Any:
    """Roll chunk summaries up to one thread summary, windowing if needed.

    Windows are processed in order within the caller's thread. With more
    than one window, each partial is offered to `load_part` first (resume)
    and handed to `save_part` once computed. The result's
    `thread_start_time` is always the earliest start among `items` when any
    item carries one.
    """
    windows = chunk_windows(items, max_per_window)
    earliest = min_thread_start(items)

    if len(windows) == 1:
        _check_cancel(cancel, conversation_id)
        result = rolluper.rollup(conversation_id, windows[0], glossary_excerpt, cancel)
    else:
        total = len(windows)
        logger.info("Rolling up %s in %d windows", conversation_id, total)
        parts = []
        for i, window in enumerate(windows, start=1):
            _check_cancel(cancel, conversation_id)
            part = load_part(i, total) if load_part is not None else None
            if part is None:
                part = rolluper.rollup(conversation_id, window, glossary_excerpt, cancel)
                window_start = min_thread_start(window)
                if window_start is not None:
                    part.thread_start_time = window_start
                if save_part is not None:
                    save_part(i, total, part)
            parts.append(part)

        _check_cancel(cancel, conversation_id)
        result = rolluper.merge(conversation_id, parts, glossary_excerpt, cancel)

    if earliest is not None:
        result.thread_start_time = earliest
    return result


__all__ = ["chunk_windows", "min_thread_start", "rollup_in_windows"]
