"""
Cut a thread into chunks along turn boundaries.

A breakpoint is a turn index that starts a new chunk. Breakpoints usually
come from a model (see `archive_digest.llm.LLMBreakpointDecider`); when none
are offered we cut every `target_turns_per_chunk` turns.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from archive_digest.errors import ArchiveDigestError, Cancelled, ChunkingError
from archive_digest.fileio import DEFAULT_FILE_MODE, read_json, write_json_atomic
from archive_digest.models import BreakpointDecider, Chunk, SimplifiedConversation, Turn
from archive_digest.turns import build_turns

logger = logging.getLogger(__name__)


@dataclass
class ChunkOptions:
    output_dir: Path
    overwrite: bool = False
    pretty: bool = False
    file_mode: int = DEFAULT_FILE_MODE


# ---------------------------------------------------------------------------
# Breakpoint math
# ---------------------------------------------------------------------------


def normalize_breakpoints(breakpoints: Iterable[int], total_turns: int) -> List[int]:
    """Sort, dedupe and drop breakpoints outside (0, total_turns).

    Out-of-range values are not an error; they simply cannot start a chunk.
    """
    if total_turns <= 1:
        return []
    raw = list(breakpoints)
    normalized = sorted({bp for bp in raw if 0 < bp < total_turns})
    dropped = [bp for bp in raw if not 0 < bp < total_turns]
    if dropped:
        logger.debug("Dropped out-of-range breakpoints %s (total_turns=%d)", dropped, total_turns)
    return normalized


def fallback_breakpoints(total_turns: int, target_turns_per_chunk: int) -> List[int]:
    """Every multiple of the target below total_turns."""
    if target_turns_per_chunk <= 0 or total_turns <= target_turns_per_chunk:
        return []
    return list(range(target_turns_per_chunk, total_turns, target_turns_per_chunk))


class FallbackDecider:
    """Deterministic decider: fixed-size chunks of the target turn count."""

    def decide(
        self,
        thread: SimplifiedConversation,
        turns: Sequence[Turn],
        target_turns_per_chunk: int,
    ) -> List[int]:
        return fallback_breakpoints(len(turns), target_turns_per_chunk)


def thread_start_time(thread: SimplifiedConversation) -> Optional[float]:
    """The thread's create_time, else the first message's create_time."""
    if thread.create_time is not None:
        return thread.create_time
    if thread.messages:
        return thread.messages[0].create_time
    return None


def format_unix_seconds(ts: Optional[float]) -> str:
    """Whole seconds as a string, or "" for missing/non-positive times."""
    if ts is None or ts <= 0:
        return ""
    return str(int(math.floor(ts)))


def apply_turn_breakpoints(
    thread: SimplifiedConversation,
    turns: Sequence[Turn],
    breakpoints: Iterable[int],
) -> List[Chunk]:
    """Slice `thread` into chunks at the given turn indices.

    Chunk turn ranges are half-open, contiguous and together cover every
    turn exactly once. Each chunk owns a copy of its messages.
    """
    if not turns:
        raise ChunkingError(f"thread {thread.conversation_id} has no turns")

    total = len(turns)
    boundaries = [0] + normalize_breakpoints(breakpoints, total) + [total]
    start_time = thread_start_time(thread)

    chunks: List[Chunk] = []
    for ts, te in zip(boundaries, boundaries[1:]):
        if ts >= te:
            continue
        start_msg = turns[ts].start_message_index
        end_msg = turns[te - 1].end_message_index
        if start_msg < 0 or end_msg < start_msg or end_msg >= len(thread.messages):
            raise ChunkingError(
                f"invalid chunk range for turns [{ts},{te}): "
                f"messages [{start_msg},{end_msg}] of {len(thread.messages)}"
            )
        chunks.append(
            Chunk(
                conversation_id=thread.conversation_id,
                title=thread.title,
                thread_start_time=start_time,
                chunk_number=len(chunks) + 1,
                turn_start=ts,
                turn_end=te,
                messages=[m.copy() for m in thread.messages[start_msg : end_msg + 1]],
            )
        )

    if not chunks:
        raise ChunkingError(f"no chunks produced for thread {thread.conversation_id}")
    return chunks


# ---------------------------------------------------------------------------
# Thread files
# ---------------------------------------------------------------------------


def load_thread(path: Path) -> SimplifiedConversation:
    data = read_json(path)
    if not isinstance(data, dict):
        raise ChunkingError("thread file is not a JSON object", path)
    return SimplifiedConversation.from_dict(data)


def chunk_thread(
    thread_path: Path,
    decider: Optional[BreakpointDecider],
    target_turns_per_chunk: int,
    options: ChunkOptions,
    cancel: Optional[threading.Event] = None,
) -> List[Path]:
    """Chunk one thread file and write `<stamp>_<n>.json` files.

    `<stamp>` is the whole-second thread start time, or "thread" when the
    thread has none. Returns the written paths in chunk order.
    """
    if target_turns_per_chunk <= 0:
        raise ValueError("target_turns_per_chunk must be > 0")

    thread = load_thread(thread_path)
    turns = build_turns(thread.messages)
    if not turns:
        raise ChunkingError("thread has no messages/turns", thread_path)

    if cancel is not None and cancel.is_set():
        raise Cancelled(f"chunking cancelled before {thread_path}")

    breakpoints: List[int] = []
    if decider is not None:
        breakpoints = list(decider.decide(thread, turns, target_turns_per_chunk))
    if not breakpoints:
        breakpoints = fallback_breakpoints(len(turns), target_turns_per_chunk)

    try:
        chunks = apply_turn_breakpoints(thread, turns, breakpoints)
    except ChunkingError as e:
        raise ChunkingError(str(e), thread_path) from e

    stamp = format_unix_seconds(thread_start_time(thread)) or "thread"
    written: List[Path] = []
    for chunk in chunks:
        out_path = options.output_dir / f"{stamp}_{chunk.chunk_number}.json"
        try:
            write_json_atomic(
                out_path,
                chunk.to_dict(),
                pretty=options.pretty,
                overwrite=options.overwrite,
                mode=options.file_mode,
            )
        except ArchiveDigestError:
            raise
        except OSError as e:
            raise ChunkingError(f"write {out_path}: {e}", thread_path) from e
        written.append(out_path)

    logger.debug("Chunked %s into %d chunk(s)", thread_path.name, len(written))
    return written


__all__ = [
    "ChunkOptions",
    "FallbackDecider",
    "normalize_breakpoints",
    "fallback_breakpoints",
    "thread_start_time",
    "format_unix_seconds",
    "apply_turn_breakpoints",
    "load_thread",
    "chunk_thread",
]
