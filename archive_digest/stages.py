"""
Stage drivers: split -> chunk -> summarize -> rollup -> pack.

Each stage reads the previous stage's files from disk, so any stage can be
rerun on its own. Resumability is per item: an item whose outputs already
exist is skipped before any model call is made.

Failure policy per stage:
- chunk, summarize: every item runs; failures are reported together once
  the batch is done (summarize saves the glossary first).
- rollup: the first failing thread cancels the rest.
- pack: derived from thread summaries; rebuilt whenever any of them is
  newer than the pack index.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Type

from archive_digest.chunker import ChunkOptions, chunk_thread
from archive_digest.config_types import (
    ChunkSettings,
    PackSettings,
    PipelineConfig,
    RollupSettings,
    SummarizeSettings,
)
from archive_digest.errors import (
    ArchiveDigestError,
    LLMError,
    ModelOutputError,
    OutputExistsError,
    StageError,
)
from archive_digest.executor import iter_batches, run_collect_errors, run_first_error
from archive_digest.fileio import read_json, write_json_atomic, write_text_atomic
from archive_digest.glossary import (
    Glossary,
    cull_glossary,
    glossary_excerpt,
    load_glossary,
    merge_glossary,
    save_glossary,
)
from archive_digest.index import (
    SENTIMENT_SUFFIX,
    SUMMARY_SUFFIX,
    THREAD_SENTIMENT_SUFFIX,
    THREAD_SUFFIX,
    rebuild_chunk_indices,
    rebuild_thread_index,
    rebuild_thread_sentiment_index,
)
from archive_digest.models import (
    BreakpointDecider,
    Chunk,
    ChunkSentimentSummarizer,
    ChunkSentimentSummary,
    ChunkSummarizer,
    ChunkSummary,
    GlossaryAddition,
    Record,
    ThreadRolluper,
    ThreadSentimentSummary,
    ThreadSummary,
    TranscriptOptions,
)
from archive_digest.pack import (
    MEMORY_INDEX_NAME,
    SENTIMENT_MEMORY_INDEX_NAME,
    PackOptions,
    copy_glossary,
    list_summary_files,
    load_thread_summaries,
    write_memory_index,
    write_memory_shards,
    write_sentiment_memory_shards,
)
from archive_digest.splitter import SplitOptions, sanitize_filename_component, split_conversation_archive
from archive_digest.windows import rollup_in_windows

logger = logging.getLogger(__name__)

# Summaries are attempted with the full transcript first, then with a
# smaller one that reduces tool output to references.
TRANSCRIPT_ATTEMPTS = (
    TranscriptOptions(max_chars=80_000, include_tools=True),
    TranscriptOptions(max_chars=40_000, include_tools=False),
)

_NON_CHUNK_DIRS = {"summaries", "summary", "index"}

# Written into a thread's chunk directory after its last chunk file.
CHUNK_DONE_MARKER = ".chunked"


@dataclass
class StageReport:
    """What one stage did, for the end-of-run table."""

    stage: str
    processed: int = 0
    skipped: int = 0
    elapsed: float = 0.0
    outputs: List[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# File discovery
# ---------------------------------------------------------------------------


def list_thread_files(threads_dir: Path) -> List[Path]:
    """Top-level `*.json` thread files, sorted."""
    return sorted(p for p in threads_dir.glob("*.json") if p.is_file())


def list_chunk_files(chunks_dir: Path) -> List[Path]:
    """Chunk files under `chunks_dir` (recursive), skipping summaries and indices."""
    files = []
    for path in chunks_dir.rglob("*.json"):
        if not path.is_file() or path.name.endswith(SUMMARY_SUFFIX):
            continue
        rel_parts = path.relative_to(chunks_dir).parts[:-1]
        if any(part in _NON_CHUNK_DIRS for part in rel_parts):
            continue
        files.append(path)
    return sorted(files)


def _summary_paths(chunks_dir: Path, summaries_dir: Path, chunk_path: Path) -> tuple[Path, Path]:
    rel = chunk_path.relative_to(chunks_dir)
    stem = rel.name[: -len(".json")]
    base = summaries_dir / rel.parent
    return base / f"{stem}{SUMMARY_SUFFIX}", base / f"{stem}{SENTIMENT_SUFFIX}"


# ---------------------------------------------------------------------------
# split
# ---------------------------------------------------------------------------


def run_split_stage(
    archive_path: Path,
    threads_dir: Path,
    options: SplitOptions,
    cancel: Optional[threading.Event] = None,
) -> StageReport:
    started = time.monotonic()
    if not options.overwrite and list_thread_files(threads_dir):
        logger.info("Threads already present in %s; skipping split", threads_dir)
        return StageReport("split", skipped=1, outputs=[str(threads_dir)])

    result = split_conversation_archive(archive_path, threads_dir, options, cancel)
    return StageReport(
        "split",
        processed=result.threads_written,
        skipped=len(result.failures),
        elapsed=time.monotonic() - started,
        outputs=[str(threads_dir)],
    )


# ---------------------------------------------------------------------------
# chunk
# ---------------------------------------------------------------------------


def run_chunk_stage(
    threads_dir: Path,
    chunks_dir: Path,
    decider: Optional[BreakpointDecider],
    settings: ChunkSettings,
    cancel: Optional[threading.Event] = None,
) -> StageReport:
    """Chunk every thread file into `<chunks_dir>/<thread stem>/`."""
    started = time.monotonic()
    thread_files = list_thread_files(threads_dir)
    logger.info("Chunking %d thread(s) from %s", len(thread_files), threads_dir)

    def work(path: Path, cancel_event: threading.Event) -> Optional[int]:
        out_dir = chunks_dir / path.stem
        marker = out_dir / CHUNK_DONE_MARKER
        if not settings.overwrite and marker.is_file():
            return None

        # Start clean so no chunk from an interrupted or older run survives.
        leftovers = sorted(out_dir.glob("*.json")) if out_dir.is_dir() else []
        if leftovers:
            logger.info("Rechunking %s (%d leftover chunk file(s))", path.name, len(leftovers))
        for old in leftovers:
            old.unlink()
        if marker.exists():
            marker.unlink()

        options = ChunkOptions(output_dir=out_dir, overwrite=settings.overwrite, pretty=settings.pretty)
        written = chunk_thread(path, decider, settings.target_turns, options, cancel_event)
        write_text_atomic(marker, str(len(written)))
        return len(written)

    outcome = run_collect_errors(thread_files, work, settings.concurrency, cancel, label="chunk")
    report = StageReport("chunk", outputs=[str(chunks_dir)])
    for _, written in outcome.results:
        if written is None:
            report.skipped += 1
        else:
            report.processed += 1
    report.elapsed = time.monotonic() - started

    if outcome.errors:
        raise StageError("chunk", outcome.errors)
    return report


# ---------------------------------------------------------------------------
# summarize
# ---------------------------------------------------------------------------


@dataclass
class _ChunkResult:
    additions: List[GlossaryAddition]
    seen_at: Optional[float]


def _with_transcript_fallback(fn: Any, chunk: Chunk, excerpt: str, cancel: threading.Event) -> Any:
    last = len(TRANSCRIPT_ATTEMPTS) - 1
    for attempt, options in enumerate(TRANSCRIPT_ATTEMPTS):
        try:
            return fn(chunk, excerpt, options, cancel)
        except (ModelOutputError, LLMError) as e:
            if attempt == last:
                raise
            logger.warning(
                "Summary attempt failed for %s chunk %d (max_chars=%d): %s",
                chunk.conversation_id,
                chunk.chunk_number,
                options.max_chars,
                e,
            )
    raise ArchiveDigestError("no transcript options configured")


def run_summarize_stage(
    chunks_dir: Path,
    summaries_dir: Path,
    summarizer: ChunkSummarizer,
    settings: SummarizeSettings,
    sentiment_summarizer: Optional[ChunkSentimentSummarizer] = None,
    cancel: Optional[threading.Event] = None,
) -> StageReport:
    """Summarize chunk files in batches, growing the glossary between batches."""
    started = time.monotonic()
    cancel = cancel or threading.Event()
    do_sentiment = settings.sentiment and sentiment_summarizer is not None

    chunk_files = list_chunk_files(chunks_dir)
    if settings.max_chunks > 0:
        chunk_files = chunk_files[: settings.max_chunks]

    glossary_path = settings.glossary_path or summaries_dir / "glossary.json"
    glossary = load_glossary(glossary_path)
    report = StageReport("summarize", outputs=[str(summaries_dir), str(glossary_path)])
    logger.info("Summarizing %d chunk(s) from %s", len(chunk_files), chunks_dir)

    def summarize_one(path: Path, excerpt: str, cancel_event: threading.Event) -> Optional[_ChunkResult]:
        sem_path, sent_path = _summary_paths(chunks_dir, summaries_dir, path)
        need_sem = settings.overwrite or not sem_path.exists()
        need_sent = do_sentiment and (settings.overwrite or not sent_path.exists())
        if not need_sem and not need_sent:
            if settings.resume:
                return None
            raise OutputExistsError(sem_path)

        chunk = Chunk.from_dict(read_json(path))
        additions: List[GlossaryAddition] = []
        if need_sem:
            result = _with_transcript_fallback(summarizer.summarize, chunk, excerpt, cancel_event)
            write_json_atomic(sem_path, result.summary.to_dict(), pretty=settings.pretty)
            additions.extend(result.glossary_additions)
            additions.extend(GlossaryAddition(term=t) for t in result.summary.terms)
        if need_sent and sentiment_summarizer is not None:
            sentiment = _with_transcript_fallback(sentiment_summarizer.summarize, chunk, excerpt, cancel_event)
            write_json_atomic(sent_path, sentiment.to_dict(), pretty=settings.pretty)
        return _ChunkResult(additions=additions, seen_at=chunk.thread_start_time)

    batches = list(iter_batches(chunk_files, settings.batch_size))
    for batch_no, batch in enumerate(batches, start=1):
        excerpt = glossary_excerpt(glossary, settings.glossary_max_terms)

        def work(path: Path, cancel_event: threading.Event) -> Optional[_ChunkResult]:
            return summarize_one(path, excerpt, cancel_event)

        outcome = run_collect_errors(
            batch,
            work,
            settings.concurrency,
            cancel,
            label=f"summarize batch {batch_no}/{len(batches)}",
        )

        # Merge strictly after the batch has joined, on this thread.
        for _, result in outcome.results:
            if result is None:
                report.skipped += 1
                continue
            report.processed += 1
            if result.additions:
                merge_glossary(glossary, result.additions, result.seen_at)
        save_glossary(glossary_path, glossary)

        if outcome.errors:
            report.elapsed = time.monotonic() - started
            raise StageError("summarize", outcome.errors)

    cull_glossary(glossary, settings.glossary_min_count)
    save_glossary(glossary_path, glossary)

    if settings.reindex:
        rebuild_chunk_indices(
            summaries_dir,
            chunks_dir,
            summaries_dir / "index.jsonl",
            summaries_dir / "sentiment_index.jsonl" if do_sentiment else None,
            settings.index_limits,
        )

    report.elapsed = time.monotonic() - started
    return report


# ---------------------------------------------------------------------------
# rollup
# ---------------------------------------------------------------------------


def _group_summaries(
    summaries_dir: Path,
    suffix: str,
    cls: Type[Record],
    exclude_suffix: str = "",
) -> Dict[str, List[Any]]:
    groups: Dict[str, List[Any]] = {}
    for path in sorted(summaries_dir.rglob(f"*{suffix}")):
        if not path.is_file() or (exclude_suffix and path.name.endswith(exclude_suffix)):
            continue
        try:
            data = read_json(path)
        except ValueError as e:
            raise ArchiveDigestError(f"{path}: invalid JSON: {e}") from e
        if not isinstance(data, dict):
            raise ArchiveDigestError(f"{path}: not a JSON object")
        summary = cls.from_dict(data)
        if not summary.conversation_id:
            logger.warning("Skipping summary without conversation_id: %s", path)
            continue
        groups.setdefault(summary.conversation_id, []).append(summary)
    for items in groups.values():
        items.sort(key=lambda s: (s.chunk_number, s.turn_start))
    return groups


def load_chunk_summaries(summaries_dir: Path) -> Dict[str, List[ChunkSummary]]:
    """Chunk summaries grouped by conversation, ordered by chunk number."""
    return _group_summaries(summaries_dir, SUMMARY_SUFFIX, ChunkSummary, exclude_suffix=SENTIMENT_SUFFIX)


def load_chunk_sentiment_summaries(summaries_dir: Path) -> Dict[str, List[ChunkSentimentSummary]]:
    return _group_summaries(summaries_dir, SENTIMENT_SUFFIX, ChunkSentimentSummary)


def part_path(out_dir: Path, stem: str, suffix: str, index: int, total: int) -> Path:
    """`<stem>.thread.summary.partNNofMM.json` next to the final output."""
    base = suffix[: -len(".json")]
    return out_dir / f"{stem}{base}.part{index:02d}of{total:02d}.json"


def _rollup_thread(
    thread_id: str,
    items: Sequence[Any],
    rolluper: ThreadRolluper,
    cls: Type[Record],
    out_dir: Path,
    suffix: str,
    excerpt: str,
    settings: RollupSettings,
    cancel: threading.Event,
) -> bool:
    stem = sanitize_filename_component(thread_id)
    final_path = out_dir / f"{stem}{suffix}"
    if final_path.exists() and not settings.overwrite:
        if settings.resume:
            return False
        raise OutputExistsError(final_path)

    def load_part(index: int, total: int) -> Optional[Any]:
        path = part_path(out_dir, stem, suffix, index, total)
        if settings.overwrite or not path.exists():
            return None
        if not settings.resume:
            raise OutputExistsError(path)
        logger.debug("Reusing rollup part %s", path.name)
        return cls.from_dict(read_json(path))

    def save_part(index: int, total: int, part: Any) -> None:
        write_json_atomic(
            part_path(out_dir, stem, suffix, index, total), part.to_dict(), pretty=settings.pretty
        )

    result = rollup_in_windows(
        thread_id,
        items,
        rolluper,
        max_per_window=settings.max_chunks_per_window,
        glossary_excerpt=excerpt,
        load_part=load_part,
        save_part=save_part,
        cancel=cancel,
    )
    write_json_atomic(final_path, result.to_dict(), pretty=settings.pretty)
    return True


def _load_glossary_excerpt(path: Path, max_terms: int) -> str:
    try:
        glossary = load_glossary(path)
    except (OSError, ValueError) as e:
        logger.warning("Glossary unavailable for rollup (%s): %s", path, e)
        glossary = Glossary()
    return glossary_excerpt(glossary, max_terms)


def run_rollup_stage(
    summaries_dir: Path,
    out_dir: Path,
    rolluper: ThreadRolluper,
    settings: RollupSettings,
    sentiment_rolluper: Optional[ThreadRolluper] = None,
    cancel: Optional[threading.Event] = None,
) -> StageReport:
    """Roll chunk summaries up to one summary per thread.

    The first failing thread cancels the others.
    """
    started = time.monotonic()
    do_sentiment = settings.sentiment and sentiment_rolluper is not None
    sentiment_dir = settings.sentiment_out_dir or out_dir.parent / "thread_sentiment_summaries"

    groups = load_chunk_summaries(summaries_dir)
    sentiment_groups = load_chunk_sentiment_summaries(summaries_dir) if do_sentiment else {}
    excerpt = _load_glossary_excerpt(
        settings.glossary_path or summaries_dir / "glossary.json", settings.glossary_max_terms
    )

    thread_ids = sorted(set(groups) | set(sentiment_groups))
    logger.info("Rolling up %d thread(s) from %s", len(thread_ids), summaries_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    def work(thread_id: str, cancel_event: threading.Event) -> bool:
        wrote = False
        items = groups.get(thread_id)
        if items:
            wrote |= _rollup_thread(
                thread_id, items, rolluper, ThreadSummary, out_dir, THREAD_SUFFIX,
                excerpt, settings, cancel_event,
            )
        sentiment_items = sentiment_groups.get(thread_id)
        if sentiment_items and sentiment_rolluper is not None:
            wrote |= _rollup_thread(
                thread_id, sentiment_items, sentiment_rolluper, ThreadSentimentSummary,
                sentiment_dir, THREAD_SENTIMENT_SUFFIX, excerpt, settings, cancel_event,
            )
        return wrote

    results = run_first_error(thread_ids, work, settings.concurrency, cancel, label="rollup")

    report = StageReport("rollup", outputs=[str(out_dir)])
    report.processed = sum(1 for wrote in results if wrote)
    report.skipped = len(results) - report.processed

    if settings.reindex:
        rebuild_thread_index(out_dir, out_dir / "thread_index.jsonl", settings.index_limits)
        if do_sentiment:
            rebuild_thread_sentiment_index(
                sentiment_dir, sentiment_dir / "sentiment_thread_index.jsonl", settings.index_limits
            )
            report.outputs.append(str(sentiment_dir))

    report.elapsed = time.monotonic() - started
    return report


# ---------------------------------------------------------------------------
# pack
# ---------------------------------------------------------------------------


def _pack_is_current(index_path: Path, sources: Sequence[Path]) -> bool:
    if not index_path.is_file():
        return False
    built = index_path.stat().st_mtime
    return all(path.stat().st_mtime <= built for path in sources)


def _pack_one(
    sources: Sequence[Path],
    cls: Type[Record],
    writer: Any,
    out_dir: Path,
    index_name: str,
    settings: PackSettings,
) -> Optional[int]:
    """Rebuild one pack; None when it is already newer than all of its sources."""
    index_path = out_dir / index_name
    if not settings.overwrite and _pack_is_current(index_path, sources):
        logger.info("Memory pack in %s is up to date", out_dir)
        return None

    # A stale pack is derived data, so it is replaced without --overwrite.
    options = PackOptions(
        out_dir=out_dir,
        max_bytes=settings.max_bytes,
        overwrite=True,
        include_key_points=settings.include_key_points,
        include_tags=settings.include_tags,
        index_limits=settings.index_limits,
    )
    rows = writer(load_thread_summaries(sources, cls), options)
    write_memory_index(index_path, rows, overwrite=True)
    return len(rows)


def run_pack_stage(
    thread_dir: Path,
    out_dir: Path,
    settings: PackSettings,
    sentiment_dir: Optional[Path] = None,
    sentiment_out_dir: Optional[Path] = None,
    glossary_path: Optional[Path] = None,
) -> StageReport:
    """Pack thread summaries (and sentiment summaries, if any) into markdown shards.

    The glossary, when present, is copied next to each pack.
    """
    started = time.monotonic()
    sources = list_summary_files(thread_dir, THREAD_SUFFIX)
    if not sources:
        raise ArchiveDigestError(f"no *{THREAD_SUFFIX} files found in {thread_dir}")

    report = StageReport("pack", outputs=[str(out_dir)])
    packed = _pack_one(sources, ThreadSummary, write_memory_shards, out_dir, MEMORY_INDEX_NAME, settings)
    packs = [(out_dir, packed)]

    if sentiment_dir is not None:
        sentiment_sources = list_summary_files(sentiment_dir, THREAD_SENTIMENT_SUFFIX)
        if sentiment_sources:
            target = sentiment_out_dir or out_dir.parent / "memory_shards_sentiment"
            packed = _pack_one(
                sentiment_sources,
                ThreadSentimentSummary,
                write_sentiment_memory_shards,
                target,
                SENTIMENT_MEMORY_INDEX_NAME,
                settings,
            )
            packs.append((target, packed))
            report.outputs.append(str(target))
        else:
            logger.debug("No thread sentiment summaries in %s; skipping sentiment pack", sentiment_dir)

    for target, packed in packs:
        if packed is None:
            report.skipped += 1
            continue
        report.processed += packed
        if glossary_path is not None and copy_glossary(glossary_path, target / "glossary.json", overwrite=True):
            logger.info("Copied glossary to %s", target / "glossary.json")

    report.elapsed = time.monotonic() - started
    return report


# ---------------------------------------------------------------------------
# pipeline
# ---------------------------------------------------------------------------


@dataclass
class Collaborators:
    """The model-backed pieces a pipeline run uses; swappable for tests."""

    decider: Optional[BreakpointDecider]
    summarizer: ChunkSummarizer
    rolluper: ThreadRolluper
    sentiment_summarizer: Optional[ChunkSentimentSummarizer] = None
    sentiment_rolluper: Optional[ThreadRolluper] = None


def default_collaborators(config: PipelineConfig, cancel: Optional[threading.Event] = None) -> Collaborators:
    from archive_digest.llm import (
        LLMBreakpointDecider,
        LLMChunkSentimentSummarizer,
        LLMChunkSummarizer,
        LLMThreadRolluper,
        LLMThreadSentimentRolluper,
    )

    sentiment_model = config.summarize.sentiment_model
    return Collaborators(
        decider=LLMBreakpointDecider(config.llm, cancel) if config.chunk.use_model else None,
        summarizer=LLMChunkSummarizer(config.llm),
        rolluper=LLMThreadRolluper(config.llm),
        sentiment_summarizer=LLMChunkSentimentSummarizer(config.llm, sentiment_model),
        sentiment_rolluper=LLMThreadSentimentRolluper(config.llm, sentiment_model),
    )


def run_pipeline(
    config: PipelineConfig,
    collaborators: Optional[Collaborators] = None,
    cancel: Optional[threading.Event] = None,
) -> List[StageReport]:
    """Run the selected stages in order, stopping at the first failing stage."""
    cancel = cancel or threading.Event()
    collaborators = collaborators or default_collaborators(config, cancel)
    reports: List[StageReport] = []

    for stage in config.stages_to_run():
        logger.info("Stage %s", stage)
        if stage == "split":
            if config.archive_path is None:
                raise ArchiveDigestError("split stage needs an archive path")
            options = SplitOptions(
                array_field=config.array_field,
                overwrite=config.overwrite,
                pretty=config.pretty,
                fail_fast=config.fail_fast,
            )
            reports.append(run_split_stage(config.archive_path, config.threads_dir, options, cancel))
        elif stage == "chunk":
            reports.append(
                run_chunk_stage(
                    config.threads_dir, config.chunks_dir, collaborators.decider, config.chunk, cancel
                )
            )
        elif stage == "summarize":
            reports.append(
                run_summarize_stage(
                    config.chunks_dir,
                    config.summaries_dir,
                    collaborators.summarizer,
                    config.summarize,
                    collaborators.sentiment_summarizer,
                    cancel,
                )
            )
        elif stage == "rollup":
            rollup_settings = config.rollup
            if rollup_settings.sentiment_out_dir is None:
                rollup_settings.sentiment_out_dir = config.thread_sentiment_dir
            reports.append(
                run_rollup_stage(
                    config.summaries_dir,
                    config.thread_summaries_dir,
                    collaborators.rolluper,
                    rollup_settings,
                    collaborators.sentiment_rolluper,
                    cancel,
                )
            )
        elif stage == "pack":
            reports.append(
                run_pack_stage(
                    config.thread_summaries_dir,
                    config.memory_shards_dir,
                    config.pack,
                    config.thread_sentiment_dir,
                    config.sentiment_shards_dir,
                    config.pack.glossary_path or config.summaries_dir / "glossary.json",
                )
            )
    return reports


__all__ = [
    "StageReport",
    "Collaborators",
    "TRANSCRIPT_ATTEMPTS",
    "CHUNK_DONE_MARKER",
    "list_thread_files",
    "list_chunk_files",
    "load_chunk_summaries",
    "load_chunk_sentiment_summaries",
    "part_path",
    "run_split_stage",
    "run_chunk_stage",
    "run_summarize_stage",
    "run_rollup_stage",
    "run_pack_stage",
    "default_collaborators",
    "run_pipeline",
]
