"""
Split a conversation export into one JSON file per thread.

Exports can be hundreds of megabytes, so the archive is read as a stream of
parser events (ijson) rather than loaded whole: only one conversation element
is materialized at a time, and when the top level is an object every field
other than the conversation array is skipped without being built.

Usage:
    result = split_conversation_archive(
        Path("conversations.json"), Path("out/threads"),
        SplitOptions(pretty=True),
    )
    print(result.threads_written, result.bytes_written)
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple

import ijson
from ijson.common import ObjectBuilder

from archive_digest.errors import ArchiveFormatError, Cancelled, ConversationError
from archive_digest.fileio import DEFAULT_FILE_MODE, write_json_atomic
from archive_digest.linearize import simplify_conversation

logger = logging.getLogger(__name__)

Event = Tuple[str, str, Any]

_START_EVENTS = ("start_map", "start_array")
_END_EVENTS = ("end_map", "end_array")


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------


@dataclass
class SplitOptions:
    """Knobs for a split run."""

    array_field: Optional[str] = None  # None: first array-valued field of a top-level object
    overwrite: bool = False
    pretty: bool = False
    fail_fast: bool = True  # False: log and collect per-conversation errors instead
    file_mode: int = DEFAULT_FILE_MODE


@dataclass
class SplitFailure:
    index: int
    conversation_id: Optional[str]
    error: str


@dataclass
class SplitResult:
    """Statistics from a split run."""

    threads_written: int = 0
    bytes_written: int = 0
    failures: List[SplitFailure] = field(default_factory=list)
    paths: List[Path] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Filenames
# ---------------------------------------------------------------------------


def sanitize_filename_component(value: str) -> str:
    """Reduce an id to a safe filename stem.

    Letters, digits and `-_.` survive; everything else becomes `_`. Leading
    and trailing `._-` are trimmed so the result can never be `.`/`..` or a
    hidden file. An empty result becomes "thread".
    """
    value = value.strip()
    cleaned = "".join(
        ch if (ch.isalpha() or ch.isdigit() or ch in "-_.") else "_" for ch in value
    )
    cleaned = cleaned.strip("._-")
    return cleaned or "thread"


class FilenameAllocator:
    """Hands out `<base>.json`, then `<base>-2.json`, `<base>-3.json`, ...

    Every name handed out is remembered, so an id that literally looks like
    a generated name (`dup-2`) never lands on a file already allocated.
    """

    def __init__(self) -> None:
        self._seen: Dict[str, int] = {}
        self._used: Set[str] = set()

    def allocate(self, conversation_id: str) -> str:
        base = sanitize_filename_component(conversation_id)
        n = self._seen.get(base, 0) + 1
        name = f"{base}.json" if n == 1 else f"{base}-{n}.json"
        while name in self._used:
            n += 1
            name = f"{base}-{n}.json"
        self._seen[base] = n
        self._used.add(name)
        return name


# ---------------------------------------------------------------------------
# Event stream helpers
# ---------------------------------------------------------------------------


def _next_event(events: Iterator[Event]) -> Event:
    try:
        return next(events)
    except StopIteration:
        raise ArchiveFormatError("unexpected end of input") from None


def _skip_value(events: Iterator[Event], first_event: str) -> None:
    """Consume the rest of a value whose first event was already read."""
    if first_event not in _START_EVENTS:
        return
    depth = 1
    while depth:
        _, event, _ = _next_event(events)
        if event in _START_EVENTS:
            depth += 1
        elif event in _END_EVENTS:
            depth -= 1


def _build_value(events: Iterator[Event], first_event: str, first_value: Any) -> Any:
    """Materialize one value whose first event was already read."""
    builder = ObjectBuilder()
    builder.event(first_event, first_value)
    depth = 1 if first_event in _START_EVENTS else 0
    while depth:
        _, event, value = _next_event(events)
        builder.event(event, value)
        if event in _START_EVENTS:
            depth += 1
        elif event in _END_EVENTS:
            depth -= 1
    return builder.value


def iter_conversation_elements(fh: Any, array_field: Optional[str] = None) -> Iterator[Any]:
    """Yield the elements of the conversation array, one at a time.

    The top level may be the array itself or an object containing it. With
    an object, `array_field` names the field; otherwise the first field whose
    value is an array is used. All other fields are skipped structurally.
    """
    events: Iterator[Event] = iter(ijson.parse(fh, use_float=True))
    try:
        _, event, value = next(events)
    except StopIteration:
        raise ArchiveFormatError("empty input") from None

    if event == "start_array":
        yield from _iter_array(events)
        return

    if event != "start_map":
        raise ArchiveFormatError(f"expected a JSON array or object at top level, got {event}")

    while True:
        _, event, key = _next_event(events)
        if event == "end_map":
            break
        _, event, value = _next_event(events)
        wanted = key == array_field if array_field else event == "start_array"
        if not wanted:
            _skip_value(events, event)
            continue
        if event != "start_array":
            raise ArchiveFormatError(f"field {key!r} is not an array")
        logger.debug("Reading conversations from top-level field %r", key)
        yield from _iter_array(events)
        return

    if array_field:
        raise ArchiveFormatError(f"top-level object has no field {array_field!r}")
    raise ArchiveFormatError("top-level object has no array field")


def _iter_array(events: Iterator[Event]) -> Iterator[Any]:
    while True:
        _, event, value = _next_event(events)
        if event == "end_array":
            return
        yield _build_value(events, event, value)


# ---------------------------------------------------------------------------
# Splitting
# ---------------------------------------------------------------------------


def split_conversation_archive(
    input_path: Path,
    output_dir: Path,
    options: Optional[SplitOptions] = None,
    cancel: Optional[threading.Event] = None,
) -> SplitResult:
    """Write one linearized thread file per conversation in the archive.

    Raises ArchiveFormatError for a malformed archive. Per-conversation
    errors (missing id, cycles, dangling parents, existing outputs) abort
    the run unless `options.fail_fast` is False, in which case they are
    logged and recorded in `SplitResult.failures`.
    """
    options = options or SplitOptions()
    output_dir.mkdir(parents=True, exist_ok=True)

    result = SplitResult()
    names = FilenameAllocator()

    with open(input_path, "rb") as fh:
        try:
            for index, element in enumerate(iter_conversation_elements(fh, options.array_field)):
                if cancel is not None and cancel.is_set():
                    raise Cancelled("split cancelled")
                try:
                    path, written = _write_thread(element, index, output_dir, names, options)
                except (ConversationError, FileExistsError) as e:
                    if options.fail_fast:
                        raise
                    conv_id = getattr(e, "conversation_id", None)
                    logger.warning("Skipping conversation #%d: %s", index, e)
                    result.failures.append(SplitFailure(index, conv_id, str(e)))
                    continue
                result.threads_written += 1
                result.bytes_written += written
                result.paths.append(path)
        except (ijson.JSONError, UnicodeDecodeError) as e:
            raise ArchiveFormatError(f"{input_path}: invalid JSON: {e}") from e

    logger.info(
        "Split %s: %d threads, %d bytes, %d failures",
        input_path,
        result.threads_written,
        result.bytes_written,
        len(result.failures),
    )
    return result


def _write_thread(
    element: Any,
    index: int,
    output_dir: Path,
    names: FilenameAllocator,
    options: SplitOptions,
) -> Tuple[Path, int]:
    if not isinstance(element, dict):
        raise ConversationError(f"element #{index} is not an object")
    thread = simplify_conversation(element)
    path = output_dir / names.allocate(thread.conversation_id)
    written = write_json_atomic(
        path,
        thread.to_dict(),
        pretty=options.pretty,
        overwrite=options.overwrite,
        mode=options.file_mode,
    )
    return path, written


__all__ = [
    "SplitOptions",
    "SplitResult",
    "SplitFailure",
    "FilenameAllocator",
    "sanitize_filename_component",
    "iter_conversation_elements",
    "split_conversation_archive",
]
