"""
Command-line interface for archive-digest.

Subcommands map one-to-one onto the pipeline stages, plus `pipeline` to run
them in sequence under one base directory:

    <base>/threads/*.json                         split
    <base>/threads/chunks/<thread>/*.json         chunk
    <base>/threads/summaries/...                  summarize
    <base>/threads/thread_summaries/...           rollup
    <base>/threads/memory_shards/memories_NNNN.md    pack

Defaults for any long option can come from a JSON config file (see
`archive_digest.config_types.load_config_file`).
"""

from __future__ import annotations

import argparse
import logging
import signal
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from rich import box
from rich.console import Console
from rich.table import Table

from archive_digest.config_types import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_CONCURRENCY,
    DEFAULT_GLOSSARY_MAX_TERMS,
    DEFAULT_GLOSSARY_MIN_COUNT,
    DEFAULT_MAX_CHUNKS_PER_WINDOW,
    DEFAULT_TARGET_TURNS,
    STAGES,
    ChunkSettings,
    LLMSettings,
    PipelineConfig,
    PackSettings,
    RollupSettings,
    SummarizeSettings,
    load_config_file,
)
from archive_digest.errors import ArchiveDigestError
from archive_digest.index import IndexLimits
from archive_digest.llm import (
    LLMBreakpointDecider,
    LLMChunkSentimentSummarizer,
    LLMChunkSummarizer,
    LLMThreadRolluper,
    LLMThreadSentimentRolluper,
)
from archive_digest.llm_backends import list_backends
from archive_digest.pack import DEFAULT_MAX_SHARD_BYTES
from archive_digest.splitter import SplitOptions
from archive_digest.stages import (
    StageReport,
    run_chunk_stage,
    run_pack_stage,
    run_pipeline,
    run_rollup_stage,
    run_split_stage,
    run_summarize_stage,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Argument groups
# ---------------------------------------------------------------------------


def _add_common_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("-q", "--quiet", action="store_true", help="Only log warnings and errors")
    parser.add_argument(
        "--overwrite",
        action="store_true",
        help="Replace existing outputs instead of skipping or refusing",
    )
    parser.add_argument(
        "--concurrency",
        type=int,
        default=DEFAULT_CONCURRENCY,
        help=f"Parallel workers (default: {DEFAULT_CONCURRENCY})",
    )


def _add_split_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--array-field",
        default=None,
        help="Top-level object field holding the conversation array (default: first array)",
    )
    parser.add_argument(
        "--keep-going",
        action="store_true",
        help="Log and skip malformed conversations instead of stopping",
    )


def _add_chunk_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--target-turns",
        type=int,
        default=DEFAULT_TARGET_TURNS,
        help=f"Target turns per chunk (default: {DEFAULT_TARGET_TURNS})",
    )
    parser.add_argument(
        "--fallback-breakpoints",
        action="store_true",
        help="Skip the model and cut every --target-turns turns",
    )


def _add_glossary_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--glossary",
        type=Path,
        default=None,
        help="Glossary file (default: <summaries>/glossary.json)",
    )
    parser.add_argument(
        "--glossary-max-terms",
        type=int,
        default=DEFAULT_GLOSSARY_MAX_TERMS,
        help=f"Glossary terms shown to the model (default: {DEFAULT_GLOSSARY_MAX_TERMS})",
    )


def _add_summary_output_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--sentiment", action="store_true", help="Also write sentiment summaries")
    parser.add_argument("--sentiment-model", default=None, help="Model override for sentiment calls")
    parser.add_argument(
        "--no-reindex",
        dest="reindex",
        action="store_false",
        help="Do not rebuild the JSONL indices afterwards",
    )
    parser.add_argument(
        "--compact-summaries",
        dest="summary_pretty",
        action="store_false",
        help="Write summary files without indentation",
    )
    _add_index_limit_args(parser)


def _add_index_limit_args(parser: argparse.ArgumentParser) -> None:
    defaults = IndexLimits()
    parser.add_argument("--index-summary-max-chars", type=int, default=defaults.summary_max_chars)
    parser.add_argument("--index-tags-max", type=int, default=defaults.tags_max)
    parser.add_argument("--index-terms-max", type=int, default=defaults.terms_max)


def _add_resume_arg(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--no-resume",
        dest="resume",
        action="store_false",
        help="Fail on existing outputs instead of skipping them",
    )


def _add_summarize_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--batch-size",
        type=int,
        default=DEFAULT_BATCH_SIZE,
        help=f"Chunks per glossary update (default: {DEFAULT_BATCH_SIZE})",
    )
    parser.add_argument(
        "--glossary-min-count",
        type=int,
        default=DEFAULT_GLOSSARY_MIN_COUNT,
        help=f"Drop glossary terms seen fewer times (default: {DEFAULT_GLOSSARY_MIN_COUNT})",
    )
    parser.add_argument(
        "--max-chunks",
        type=int,
        default=0,
        help="Only summarize the first N chunks (0 = all)",
    )


def _add_rollup_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--max-chunks-per-window",
        type=int,
        default=DEFAULT_MAX_CHUNKS_PER_WINDOW,
        help=f"Roll up long threads in windows of this many chunks (default: {DEFAULT_MAX_CHUNKS_PER_WINDOW})",
    )
    parser.add_argument(
        "--sentiment-out",
        type=Path,
        default=None,
        help="Thread sentiment output directory (default: next to --out-dir)",
    )


def _add_pack_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--max-shard-bytes",
        type=int,
        default=DEFAULT_MAX_SHARD_BYTES,
        help=f"Max UTF-8 bytes per markdown shard (default: {DEFAULT_MAX_SHARD_BYTES})",
    )
    parser.add_argument(
        "--no-key-points",
        dest="include_key_points",
        action="store_false",
        help="Leave the key points list out of each thread section",
    )
    parser.add_argument(
        "--no-tags",
        dest="include_tags",
        action="store_false",
        help="Leave the tags and terms lines out of each thread section",
    )


def _add_llm_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--llm-backend",
        choices=list_backends(),
        default="codex",
        help="CLI backend used for model calls (default: codex)",
    )
    parser.add_argument("--llm-model", default=None, help="Model name passed to the backend")
    parser.add_argument("--reasoning-effort", default=None, help="Reasoning effort (codex only)")
    parser.add_argument(
        "--llm-extra-arg",
        action="append",
        default=None,
        help=(
            "Extra backend CLI arguments (repeatable, shell-split). "
            "Use the = form for values starting with a dash: --llm-extra-arg=--verbose"
        ),
    )
    parser.add_argument("--llm-timeout-ms", type=int, default=600000, help="Per-call timeout")
    parser.add_argument(
        "--llm-max-attempts",
        type=int,
        default=3,
        help="Attempts per call for rate-limit and server errors (default: 3)",
    )
    parser.add_argument(
        "--artifacts-dir",
        type=Path,
        default=None,
        help="Keep prompts and raw responses here for debugging",
    )


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser(defaults: Optional[Dict[str, Any]] = None) -> argparse.ArgumentParser:
    """Build the CLI parser; `defaults` (from the config file) override built-in defaults."""
    parser = argparse.ArgumentParser(
        prog="archive-digest",
        description="Split, chunk, summarize and roll up a chat conversation archive.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  archive-digest pipeline ~/Downloads/conversations.json --base-dir ~/digest
  archive-digest pipeline --base-dir ~/digest --from-stage summarize --sentiment
  archive-digest split conversations.json --out-dir threads --keep-going
  archive-digest chunk threads --fallback-breakpoints --target-turns 15
  archive-digest summarize threads/chunks --llm-backend claude-code
  archive-digest rollup threads/summaries --max-chunks-per-window 30
  archive-digest pack threads/thread_summaries --max-shard-bytes 50000
        """,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("split", help="Split an archive into one file per conversation")
    p.add_argument("archive", type=Path, help="Path to conversations.json")
    p.add_argument("--out-dir", type=Path, default=Path("threads"), help="Thread directory")
    p.add_argument("--pretty", action="store_true", help="Indent thread files")
    _add_common_args(p)
    _add_split_args(p)

    p = sub.add_parser("chunk", help="Cut thread files into topic chunks")
    p.add_argument("threads_dir", type=Path, help="Directory of thread files")
    p.add_argument("--out-dir", type=Path, default=None, help="Chunk directory (default: <threads>/chunks)")
    p.add_argument("--pretty", action="store_true", help="Indent chunk files")
    _add_common_args(p)
    _add_chunk_args(p)
    _add_llm_args(p)

    p = sub.add_parser("summarize", help="Summarize chunk files and grow the glossary")
    p.add_argument("chunks_dir", type=Path, help="Directory of chunk files")
    p.add_argument(
        "--out-dir", type=Path, default=None, help="Summary directory (default: next to chunks, 'summaries')"
    )
    _add_common_args(p)
    _add_glossary_args(p)
    _add_resume_arg(p)
    _add_summary_output_args(p)
    _add_summarize_args(p)
    _add_llm_args(p)

    p = sub.add_parser("rollup", help="Roll chunk summaries up to thread summaries")
    p.add_argument("summaries_dir", type=Path, help="Directory of chunk summaries")
    p.add_argument(
        "--out-dir",
        type=Path,
        default=None,
        help="Thread summary directory (default: next to summaries, 'thread_summaries')",
    )
    _add_common_args(p)
    _add_glossary_args(p)
    _add_resume_arg(p)
    _add_summary_output_args(p)
    _add_rollup_args(p)
    _add_llm_args(p)

    p = sub.add_parser("pack", help="Pack thread summaries into markdown memory shards")
    p.add_argument("thread_summaries_dir", type=Path, help="Directory of thread summaries")
    p.add_argument(
        "--out-dir",
        type=Path,
        default=None,
        help="Shard directory (default: next to thread summaries, 'memory_shards')",
    )
    p.add_argument(
        "--sentiment-in",
        type=Path,
        default=None,
        help="Thread sentiment summaries to pack as well (default: next to thread summaries)",
    )
    p.add_argument(
        "--sentiment-shards-dir",
        type=Path,
        default=None,
        help="Sentiment shard directory (default: next to --out-dir, 'memory_shards_sentiment')",
    )
    _add_common_args(p)
    p.add_argument(
        "--glossary",
        type=Path,
        default=None,
        help="Glossary copied next to the shards (default: <base>/summaries/glossary.json)",
    )
    _add_index_limit_args(p)
    _add_pack_args(p)

    p = sub.add_parser("pipeline", help="Run the stages in order under one base directory")
    p.add_argument("archive", type=Path, nargs="?", default=None, help="Path to conversations.json")
    p.add_argument("--base-dir", type=Path, default=Path("."), help="Base output directory")
    p.add_argument("--from-stage", choices=STAGES, default=STAGES[0], help="First stage to run")
    p.add_argument("--only-stage", choices=STAGES, default=None, help="Run just this stage")
    p.add_argument("--pretty", action="store_true", help="Indent thread and chunk files")
    _add_common_args(p)
    _add_split_args(p)
    _add_chunk_args(p)
    _add_glossary_args(p)
    _add_summary_output_args(p)
    _add_summarize_args(p)
    _add_rollup_args(p)
    _add_pack_args(p)
    _add_llm_args(p)

    if defaults:
        values = {k: v for k, v in defaults.items() if k != "command"}
        for subparser in sub.choices.values():
            subparser.set_defaults(**values)

    return parser


def _configure_logging(args: argparse.Namespace) -> None:
    level = logging.INFO
    if args.verbose:
        level = logging.DEBUG
    elif args.quiet:
        level = logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _install_sigint(cancel: threading.Event) -> None:
    """First Ctrl-C cancels in-flight work; a second one interrupts."""

    def handler(signum: int, frame: Any) -> None:
        if cancel.is_set():
            raise KeyboardInterrupt
        logger.warning("Cancelling; press Ctrl-C again to abort immediately")
        cancel.set()

    if threading.current_thread() is threading.main_thread():
        signal.signal(signal.SIGINT, handler)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def _cmd_split(args: argparse.Namespace, cancel: threading.Event) -> List[StageReport]:
    options = SplitOptions(
        array_field=args.array_field,
        overwrite=args.overwrite,
        pretty=args.pretty,
        fail_fast=not args.keep_going,
    )
    return [run_split_stage(args.archive.expanduser(), args.out_dir.expanduser(), options, cancel)]


def _cmd_chunk(args: argparse.Namespace, cancel: threading.Event) -> List[StageReport]:
    settings = ChunkSettings.from_namespace(args)
    threads_dir = args.threads_dir.expanduser()
    out_dir = args.out_dir.expanduser() if args.out_dir else threads_dir / "chunks"
    decider = None
    if settings.use_model:
        decider = LLMBreakpointDecider(LLMSettings.from_namespace(args), cancel)
    return [run_chunk_stage(threads_dir, out_dir, decider, settings, cancel)]


def _cmd_summarize(args: argparse.Namespace, cancel: threading.Event) -> List[StageReport]:
    settings = SummarizeSettings.from_namespace(args)
    llm = LLMSettings.from_namespace(args)
    chunks_dir = args.chunks_dir.expanduser()
    out_dir = args.out_dir.expanduser() if args.out_dir else chunks_dir.parent / "summaries"
    sentiment = LLMChunkSentimentSummarizer(llm, settings.sentiment_model) if settings.sentiment else None
    return [
        run_summarize_stage(chunks_dir, out_dir, LLMChunkSummarizer(llm), settings, sentiment, cancel)
    ]


def _cmd_rollup(args: argparse.Namespace, cancel: threading.Event) -> List[StageReport]:
    settings = RollupSettings.from_namespace(args)
    llm = LLMSettings.from_namespace(args)
    summaries_dir = args.summaries_dir.expanduser()
    out_dir = args.out_dir.expanduser() if args.out_dir else summaries_dir.parent / "thread_summaries"
    sentiment = LLMThreadSentimentRolluper(llm, settings.sentiment_model) if settings.sentiment else None
    return [
        run_rollup_stage(summaries_dir, out_dir, LLMThreadRolluper(llm), settings, sentiment, cancel)
    ]


def _cmd_pack(args: argparse.Namespace, cancel: threading.Event) -> List[StageReport]:
    settings = PackSettings.from_namespace(args)
    thread_dir = args.thread_summaries_dir.expanduser()
    out_dir = args.out_dir.expanduser() if args.out_dir else thread_dir.parent / "memory_shards"
    sentiment_in = args.sentiment_in or thread_dir.parent / "thread_sentiment_summaries"
    sentiment_out = args.sentiment_shards_dir or out_dir.parent / "memory_shards_sentiment"
    glossary = settings.glossary_path or thread_dir.parent / "summaries" / "glossary.json"
    return [
        run_pack_stage(
            thread_dir,
            out_dir,
            settings,
            sentiment_in.expanduser(),
            sentiment_out.expanduser(),
            glossary.expanduser(),
        )
    ]


def _cmd_pipeline(args: argparse.Namespace, cancel: threading.Event) -> List[StageReport]:
    config = PipelineConfig.from_namespace(args)
    return run_pipeline(config, cancel=cancel)


COMMANDS: Dict[str, Callable[[argparse.Namespace, threading.Event], List[StageReport]]] = {
    "split": _cmd_split,
    "chunk": _cmd_chunk,
    "summarize": _cmd_summarize,
    "rollup": _cmd_rollup,
    "pack": _cmd_pack,
    "pipeline": _cmd_pipeline,
}


def render_reports(reports: List[StageReport], console: Console) -> None:
    table = Table(box=box.SIMPLE, show_header=True, header_style="bold")
    table.add_column("Stage", style="cyan")
    table.add_column("Done", justify="right", style="green")
    table.add_column("Skipped", justify="right")
    table.add_column("Time", justify="right")
    table.add_column("Output")
    for report in reports:
        table.add_row(
            report.stage,
            str(report.processed),
            str(report.skipped) if report.skipped else "-",
            f"{report.elapsed:.1f}s",
            "\n".join(report.outputs),
        )
    console.print(table)


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entrypoint for archive-digest."""
    config, config_path = load_config_file()
    parser = build_parser(config)
    args = parser.parse_args(argv)
    _configure_logging(args)
    if config_path:
        logger.debug("Loaded defaults from %s", config_path)

    console = Console()
    err_console = Console(stderr=True)
    cancel = threading.Event()
    _install_sigint(cancel)

    try:
        reports = COMMANDS[args.command](args, cancel)
    except ArchiveDigestError as e:
        err_console.print(f"[red]Error:[/red] {e}")
        return 1
    except ValueError as e:
        err_console.print(f"[red]Error:[/red] {e}")
        return 2
    except OSError as e:
        err_console.print(f"[red]Error:[/red] {e}")
        return 1
    except KeyboardInterrupt:
        err_console.print("[yellow]Interrupted[/yellow]")
        return 130

    render_reports(reports, console)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
