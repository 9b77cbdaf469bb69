"""
Memory packs: thread summaries laid out as size-capped markdown shards.

Each thread becomes one markdown section with a stable anchor. Sections are
appended to `memories_NNNN.md` until the next one would push the shard past
`max_bytes` (UTF-8), then a new shard starts. A JSONL index maps every
conversation to its shard file and anchor so a reader can jump straight to
it. Sentiment summaries get the same treatment under their own file names.
"""

from __future__ import annotations

import logging
import re
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple

from archive_digest.errors import ArchiveDigestError
from archive_digest.fileio import atomic_writer, read_json, write_jsonl_atomic
from archive_digest.index import IndexLimits, dedupe_strings, limit_list, truncate
from archive_digest.models import ThreadSentimentSummary, ThreadSummary

logger = logging.getLogger(__name__)

DEFAULT_MAX_SHARD_BYTES = 100 * 1024

MEMORY_INDEX_NAME = "memory_index.jsonl"
SENTIMENT_MEMORY_INDEX_NAME = "sentiment_memory_index.jsonl"


@dataclass
class PackOptions:
    out_dir: Path
    max_bytes: int = DEFAULT_MAX_SHARD_BYTES
    overwrite: bool = False
    include_key_points: bool = True
    include_tags: bool = True
    index_limits: IndexLimits = field(default_factory=IndexLimits)


@dataclass
class _ShardKind:
    file_prefix: str
    heading: str

    def filename(self, number: int) -> str:
        return f"{self.file_prefix}_{number:04d}.md"

    def header(self, number: int) -> str:
        return f"# {self.heading} {number:04d}\n\n"


SEMANTIC_SHARDS = _ShardKind("memories", "Memory Shard")
SENTIMENT_SHARDS = _ShardKind("sentiment_memories", "Sentiment Memory Shard")


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def sanitize_anchor(text: str) -> str:
    """Lowercase `[a-z0-9_-]` slug of a conversation id; "thread" if nothing is left."""
    text = re.sub(r"[^a-z0-9_-]", "-", text.strip().lower())
    return text.strip("-") or "thread"


def thread_start_iso(thread_start: Optional[float]) -> Optional[str]:
    """UTC RFC 3339 form of a unix timestamp; None for missing or non-positive values."""
    if thread_start is None or thread_start <= 0:
        return None
    return datetime.fromtimestamp(thread_start, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _inline(text: str) -> str:
    return text.replace("\r", " ").replace("\n", " ").strip()


def _section_head(
    conversation_id: str, title: Optional[str], thread_start: Optional[float]
) -> Tuple[str, List[str]]:
    anchor = "thread-" + sanitize_anchor(conversation_id)
    lines = [
        f'<a id="{anchor}"></a>',
        f"## {_inline(title or '') or conversation_id}",
        "",
        f"- conversation_id: `{conversation_id}`",
    ]
    if thread_start is not None:
        iso = thread_start_iso(thread_start)
        stamp = f"- thread_start_time: `{thread_start:.3f}`"
        lines.append(f"{stamp} (`{iso}`)" if iso else stamp)
    lines.append("")
    return anchor, lines


def render_thread_markdown(summary: ThreadSummary, options: PackOptions) -> Tuple[str, str]:
    """Markdown section for one thread summary, plus its anchor id."""
    anchor, lines = _section_head(summary.conversation_id, summary.title, summary.thread_start_time)
    text = summary.summary.strip()
    if text:
        lines.extend([text, ""])

    if options.include_key_points and summary.key_points:
        lines.append("### Key points")
        lines.extend(f"- {_inline(point)}" for point in summary.key_points if point.strip())
        lines.append("")

    if options.include_tags:
        for label, values in (("tags", summary.tags), ("terms", summary.terms)):
            values = dedupe_strings(values)
            if values:
                lines.extend([f"**{label}**: {_inline(', '.join(values))}", ""])

    lines.extend(["", "---", "", ""])
    return "\n".join(lines), anchor


_SENTIMENT_LISTS = (
    "dominant_emotions",
    "remembered_emotions",
    "present_emotions",
    "emotional_tensions",
    "themes",
)


def render_sentiment_markdown(summary: ThreadSentimentSummary, options: PackOptions) -> Tuple[str, str]:
    """Markdown section for one thread sentiment summary, plus its anchor id."""
    anchor, lines = _section_head(summary.conversation_id, summary.title, summary.thread_start_time)
    text = summary.emotional_summary.strip()
    if text:
        lines.extend([text, ""])

    for label in _SENTIMENT_LISTS:
        values = dedupe_strings(getattr(summary, label))
        if values:
            lines.extend([f"**{label}**: {_inline(', '.join(values))}", ""])
    for label in ("relational_shift", "emotional_arc"):
        value = _inline(getattr(summary, label))
        if value:
            lines.extend([f"**{label}**: {value}", ""])

    lines.extend(["", "---", "", ""])
    return "\n".join(lines), anchor


# ---------------------------------------------------------------------------
# Index rows
# ---------------------------------------------------------------------------


def _row_head(summary: Any, shard_file: str, anchor: str) -> Dict[str, Any]:
    row: Dict[str, Any] = {"conversation_id": summary.conversation_id}
    if summary.thread_start_time is not None:
        row["thread_start_time"] = summary.thread_start_time
        iso = thread_start_iso(summary.thread_start_time)
        if iso:
            row["thread_start_time_iso8601"] = iso
    if summary.title:
        row["title"] = summary.title
    row["shard_file"] = shard_file
    row["anchor"] = anchor
    return row


def _memory_row(summary: ThreadSummary, shard_file: str, anchor: str, limits: IndexLimits) -> Dict[str, Any]:
    row = _row_head(summary, shard_file, anchor)
    row["summary"] = truncate(summary.summary, limits.summary_max_chars)
    tags = limit_list(dedupe_strings(summary.tags), limits.tags_max)
    terms = limit_list(dedupe_strings(summary.terms), limits.terms_max)
    if tags:
        row["tags"] = tags
    if terms:
        row["terms"] = terms
    return row


def _sentiment_row(
    summary: ThreadSentimentSummary, shard_file: str, anchor: str, limits: IndexLimits
) -> Dict[str, Any]:
    row = _row_head(summary, shard_file, anchor)
    row["emotional_summary"] = truncate(summary.emotional_summary, limits.summary_max_chars)
    for label in _SENTIMENT_LISTS:
        cap = limits.tags_max if label == "themes" else limits.terms_max
        values = limit_list(dedupe_strings(getattr(summary, label)), cap)
        if values:
            row[label] = values
    for label in ("relational_shift", "emotional_arc"):
        value = getattr(summary, label).strip()
        if value:
            row[label] = value
    return row


# ---------------------------------------------------------------------------
# Shard writing
# ---------------------------------------------------------------------------


def _pack_order(summary: Any) -> Tuple[float, str]:
    return (summary.thread_start_time or 0.0, summary.conversation_id)


def _write_shards(
    summaries: Sequence[Any],
    options: PackOptions,
    kind: _ShardKind,
    render: Callable[[Any, PackOptions], Tuple[str, str]],
    make_row: Callable[[Any, str, str, IndexLimits], Dict[str, Any]],
) -> List[Dict[str, Any]]:
    if options.max_bytes <= 0:
        raise ValueError(f"max_bytes must be > 0 (got {options.max_bytes})")
    options.out_dir.mkdir(parents=True, exist_ok=True)

    rows: List[Dict[str, Any]] = []
    written: List[str] = []
    parts: List[str] = []
    size = 0

    def flush() -> None:
        nonlocal parts, size
        if not parts:
            return
        name = kind.filename(len(written) + 1)
        with atomic_writer(options.out_dir / name, overwrite=options.overwrite) as fh:
            fh.write("".join(parts))
        written.append(name)
        parts, size = [], 0

    for summary in sorted(summaries, key=_pack_order):
        if not summary.conversation_id:
            continue
        section, anchor = render(summary, options)
        section_size = len(section.encode("utf-8"))
        if parts and size + section_size > options.max_bytes:
            flush()
        if not parts:
            header = kind.header(len(written) + 1)
            parts.append(header)
            size += len(header.encode("utf-8"))
        parts.append(section)
        size += section_size
        rows.append(make_row(summary, kind.filename(len(written) + 1), anchor, options.index_limits))
    flush()

    if options.overwrite:
        _remove_stale_shards(options.out_dir, kind, set(written))
    logger.info("Packed %d thread(s) into %d shard(s) in %s", len(rows), len(written), options.out_dir)
    return rows


def _remove_stale_shards(out_dir: Path, kind: _ShardKind, keep: Set[str]) -> None:
    for path in sorted(out_dir.glob(f"{kind.file_prefix}_[0-9][0-9][0-9][0-9].md")):
        if path.name not in keep:
            logger.info("Removing stale shard %s", path)
            path.unlink()


def write_memory_shards(summaries: Sequence[ThreadSummary], options: PackOptions) -> List[Dict[str, Any]]:
    """Write `memories_NNNN.md` shards; returns one index row per packed thread.

    Threads are ordered by start time (missing counts as 0), then id; a
    summary without a conversation id is skipped. A shard only exceeds
    `max_bytes` when a single section is larger than the cap on its own.
    """
    return _write_shards(summaries, options, SEMANTIC_SHARDS, render_thread_markdown, _memory_row)


def write_sentiment_memory_shards(
    summaries: Sequence[ThreadSentimentSummary], options: PackOptions
) -> List[Dict[str, Any]]:
    return _write_shards(summaries, options, SENTIMENT_SHARDS, render_sentiment_markdown, _sentiment_row)


def write_memory_index(path: Path, rows: Sequence[Dict[str, Any]], overwrite: bool = False) -> int:
    return write_jsonl_atomic(path, rows, overwrite=overwrite)


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------


def list_summary_files(thread_dir: Path, suffix: str) -> List[Path]:
    """Every `*<suffix>` file under `thread_dir` (recursive), sorted."""
    if not thread_dir.is_dir():
        return []
    return sorted(p for p in thread_dir.rglob(f"*{suffix}") if p.is_file())


def load_thread_summaries(paths: Sequence[Path], cls: Any) -> List[Any]:
    """Parse summary files into `cls`, dropping any without a conversation id."""
    summaries = []
    for path in paths:
        try:
            data = read_json(path)
        except ValueError as e:
            raise ArchiveDigestError(f"{path}: invalid JSON: {e}") from e
        if not isinstance(data, dict):
            raise ArchiveDigestError(f"{path}: not a JSON object")
        summary = cls.from_dict(data)
        if summary.conversation_id:
            summaries.append(summary)
    return summaries


def copy_glossary(src: Path, dst: Path, overwrite: bool = False) -> bool:
    """Copy the glossary next to a pack. False when `src` is missing or `dst` is kept."""
    if not src.is_file():
        return False
    if dst.exists() and not overwrite:
        return False
    with atomic_writer(dst) as fh, open(src, "r", encoding="utf-8") as source:
        shutil.copyfileobj(source, fh)
    return True


__all__ = [
    "DEFAULT_MAX_SHARD_BYTES",
    "MEMORY_INDEX_NAME",
    "SENTIMENT_MEMORY_INDEX_NAME",
    "PackOptions",
    "sanitize_anchor",
    "thread_start_iso",
    "render_thread_markdown",
    "render_sentiment_markdown",
    "write_memory_shards",
    "write_sentiment_memory_shards",
    "write_memory_index",
    "list_summary_files",
    "load_thread_summaries",
    "copy_glossary",
]
