"""
JSONL indices over summary outputs.

Indices are derived data: they are always rebuilt from the summary files on
disk (sorted by path), so a resumed or partially failed run still ends with
an index that matches what exists.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional

from archive_digest.fileio import read_json, write_jsonl_atomic
from archive_digest.models import (
    Chunk,
    ChunkSentimentSummary,
    ChunkSummary,
    ThreadSentimentSummary,
    ThreadSummary,
)

logger = logging.getLogger(__name__)

SUMMARY_SUFFIX = ".summary.json"
SENTIMENT_SUFFIX = ".sentiment.summary.json"
THREAD_SUFFIX = ".thread.summary.json"
THREAD_SENTIMENT_SUFFIX = ".thread.sentiment.summary.json"


@dataclass
class IndexLimits:
    """Caps applied to index rows; 0 disables a cap."""

    summary_max_chars: int = 600
    tags_max: int = 5
    terms_max: int = 15


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def truncate(text: str, max_chars: int) -> str:
    text = text.strip()
    if max_chars <= 0 or len(text) <= max_chars:
        return text
    return text[:max_chars] + "…"


def dedupe_strings(values: Iterable[str]) -> List[str]:
    """Trimmed, non-empty, first occurrence wins (case-insensitive)."""
    seen = set()
    out: List[str] = []
    for value in values:
        value = value.strip()
        key = value.lower()
        if not value or key in seen:
            continue
        seen.add(key)
        out.append(value)
    return out


def limit_list(values: List[str], max_items: int) -> List[str]:
    if max_items <= 0:
        return values
    return values[:max_items]


def _put_optional(row: Dict[str, Any], key: str, value: Any) -> None:
    if value not in (None, "", []):
        row[key] = value


# ---------------------------------------------------------------------------
# Row builders
# ---------------------------------------------------------------------------


def build_index_record(
    chunk: Chunk,
    chunk_path: Path,
    summary: ChunkSummary,
    summary_path: Path,
    limits: Optional[IndexLimits] = None,
) -> Dict[str, Any]:
    limits = limits or IndexLimits()
    row: Dict[str, Any] = {"conversation_id": chunk.conversation_id}
    _put_optional(row, "thread_start_time", chunk.thread_start_time)
    row.update(
        chunk_number=chunk.chunk_number,
        turn_start=chunk.turn_start,
        turn_end=chunk.turn_end,
        chunk_path=str(chunk_path),
        summary_path=str(summary_path),
        summary=truncate(summary.summary, limits.summary_max_chars),
    )
    _put_optional(row, "tags", limit_list(dedupe_strings(summary.tags), limits.tags_max))
    _put_optional(row, "terms", limit_list(dedupe_strings(summary.terms), limits.terms_max))
    return row


def build_sentiment_index_record(
    chunk: Chunk,
    chunk_path: Path,
    summary: ChunkSentimentSummary,
    summary_path: Path,
    limits: Optional[IndexLimits] = None,
) -> Dict[str, Any]:
    limits = limits or IndexLimits()
    row: Dict[str, Any] = {"conversation_id": chunk.conversation_id}
    _put_optional(row, "thread_start_time", chunk.thread_start_time)
    row.update(
        chunk_number=chunk.chunk_number,
        turn_start=chunk.turn_start,
        turn_end=chunk.turn_end,
        chunk_path=str(chunk_path),
        sentiment_summary_path=str(summary_path),
        emotional_summary=truncate(summary.emotional_summary, limits.summary_max_chars),
    )
    _put_optional(
        row, "dominant_emotions", limit_list(dedupe_strings(summary.dominant_emotions), limits.tags_max)
    )
    _put_optional(row, "themes", limit_list(dedupe_strings(summary.themes), limits.tags_max))
    return row


def build_thread_index_record(
    summary: ThreadSummary,
    summary_path: Path,
    limits: Optional[IndexLimits] = None,
) -> Dict[str, Any]:
    limits = limits or IndexLimits()
    row: Dict[str, Any] = {"conversation_id": summary.conversation_id}
    _put_optional(row, "thread_start_time", summary.thread_start_time)
    _put_optional(row, "title", summary.title)
    row["thread_summary_path"] = str(summary_path)
    row["summary"] = truncate(summary.summary, limits.summary_max_chars)
    _put_optional(row, "tags", limit_list(dedupe_strings(summary.tags), limits.tags_max))
    _put_optional(row, "terms", limit_list(dedupe_strings(summary.terms), limits.terms_max))
    return row


def build_thread_sentiment_index_record(
    summary: ThreadSentimentSummary,
    summary_path: Path,
    limits: Optional[IndexLimits] = None,
) -> Dict[str, Any]:
    limits = limits or IndexLimits()
    row: Dict[str, Any] = {"conversation_id": summary.conversation_id}
    _put_optional(row, "thread_start_time", summary.thread_start_time)
    _put_optional(row, "title", summary.title)
    row["thread_sentiment_summary_path"] = str(summary_path)
    row["emotional_summary"] = truncate(summary.emotional_summary, limits.summary_max_chars)
    for key in ("dominant_emotions", "remembered_emotions", "present_emotions", "emotional_tensions"):
        _put_optional(row, key, limit_list(dedupe_strings(getattr(summary, key)), limits.terms_max))
    _put_optional(row, "relational_shift", summary.relational_shift.strip())
    _put_optional(row, "emotional_arc", summary.emotional_arc.strip())
    _put_optional(row, "themes", limit_list(dedupe_strings(summary.themes), limits.tags_max))
    return row


# ---------------------------------------------------------------------------
# Rebuilds
# ---------------------------------------------------------------------------


def _iter_files(root: Path, suffix: str, exclude_suffix: str = "") -> Iterator[Path]:
    for path in sorted(root.rglob(f"*{suffix}")):
        if not path.is_file():
            continue
        if exclude_suffix and path.name.endswith(exclude_suffix):
            continue
        yield path


def _load(path: Path) -> Optional[Dict[str, Any]]:
    try:
        data = read_json(path)
    except (OSError, ValueError) as e:
        logger.warning("Skipping unreadable file in index rebuild: %s (%s)", path, e)
        return None
    if not isinstance(data, dict):
        logger.warning("Skipping non-object file in index rebuild: %s", path)
        return None
    return data


def rebuild_chunk_indices(
    summaries_dir: Path,
    chunks_dir: Path,
    index_path: Path,
    sentiment_index_path: Optional[Path] = None,
    limits: Optional[IndexLimits] = None,
) -> int:
    """Rewrite index.jsonl (and sentiment_index.jsonl) from summary files.

    Each summary maps back to its chunk by relative path:
    `<rel>.summary.json` in `summaries_dir` <-> `<rel>.json` in `chunks_dir`.
    Returns the number of semantic rows written.
    """
    rows: List[Dict[str, Any]] = []
    for sum_path in _iter_files(summaries_dir, SUMMARY_SUFFIX, exclude_suffix=SENTIMENT_SUFFIX):
        rel = sum_path.relative_to(summaries_dir).as_posix()
        chunk_path = chunks_dir / (rel[: -len(SUMMARY_SUFFIX)] + ".json")
        chunk_data = _load(chunk_path)
        summary_data = _load(sum_path)
        if chunk_data is None or summary_data is None:
            continue
        rows.append(
            build_index_record(
                Chunk.from_dict(chunk_data),
                chunk_path,
                ChunkSummary.from_dict(summary_data),
                sum_path,
                limits,
            )
        )
    written = write_jsonl_atomic(index_path, rows)

    if sentiment_index_path is not None:
        sentiment_rows: List[Dict[str, Any]] = []
        for sum_path in _iter_files(summaries_dir, SENTIMENT_SUFFIX):
            rel = sum_path.relative_to(summaries_dir).as_posix()
            chunk_path = chunks_dir / (rel[: -len(SENTIMENT_SUFFIX)] + ".json")
            chunk_data = _load(chunk_path)
            summary_data = _load(sum_path)
            if chunk_data is None or summary_data is None:
                continue
            sentiment_rows.append(
                build_sentiment_index_record(
                    Chunk.from_dict(chunk_data),
                    chunk_path,
                    ChunkSentimentSummary.from_dict(summary_data),
                    sum_path,
                    limits,
                )
            )
        write_jsonl_atomic(sentiment_index_path, sentiment_rows)

    logger.info("Rebuilt %s (%d rows)", index_path, written)
    return written


def rebuild_thread_index(
    thread_dir: Path,
    index_path: Path,
    limits: Optional[IndexLimits] = None,
) -> int:
    rows = []
    for path in _iter_files(thread_dir, THREAD_SUFFIX):
        data = _load(path)
        if data is not None:
            rows.append(build_thread_index_record(ThreadSummary.from_dict(data), path, limits))
    written = write_jsonl_atomic(index_path, rows)
    logger.info("Rebuilt %s (%d rows)", index_path, written)
    return written


def rebuild_thread_sentiment_index(
    thread_dir: Path,
    index_path: Path,
    limits: Optional[IndexLimits] = None,
) -> int:
    rows = []
    for path in _iter_files(thread_dir, THREAD_SENTIMENT_SUFFIX):
        data = _load(path)
        if data is not None:
            rows.append(
                build_thread_sentiment_index_record(ThreadSentimentSummary.from_dict(data), path, limits)
            )
    written = write_jsonl_atomic(index_path, rows)
    logger.info("Rebuilt %s (%d rows)", index_path, written)
    return written


__all__ = [
    "IndexLimits",
    "SUMMARY_SUFFIX",
    "SENTIMENT_SUFFIX",
    "THREAD_SUFFIX",
    "THREAD_SENTIMENT_SUFFIX",
    "truncate",
    "dedupe_strings",
    "limit_list",
    "build_index_record",
    "build_sentiment_index_record",
    "build_thread_index_record",
    "build_thread_sentiment_index_record",
    "rebuild_chunk_indices",
    "rebuild_thread_index",
    "rebuild_thread_sentiment_index",
]
