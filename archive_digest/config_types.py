"""Typed configuration objects for the pipeline stages, plus config-file loading."""

from __future__ import annotations

import argparse
import json
import logging
import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from archive_digest.index import IndexLimits
from archive_digest.llm_backends import LLMConfig
from archive_digest.pack import DEFAULT_MAX_SHARD_BYTES

logger = logging.getLogger(__name__)

STAGES = ("split", "chunk", "summarize", "rollup", "pack")

CONFIG_ENV_VAR = "ARCHIVE_DIGEST_CONFIG"
CONFIG_FILENAME = "archive_digest_config.json"

DEFAULT_TARGET_TURNS = 20
DEFAULT_CONCURRENCY = 6
DEFAULT_BATCH_SIZE = 25
DEFAULT_GLOSSARY_MAX_TERMS = 60
DEFAULT_GLOSSARY_MIN_COUNT = 2
DEFAULT_MAX_CHUNKS_PER_WINDOW = 40


def load_config_file() -> Tuple[Dict[str, Any], Optional[Path]]:
    """
    Load optional defaults from a JSON config file.

    Search order:
    1. Path from ARCHIVE_DIGEST_CONFIG (if set)
    2. ./archive_digest_config.json in current working directory
    3. ~/.archive_digest_config.json in the user home directory

    Keys match the long CLI option names with dashes replaced by
    underscores (e.g. "target_turns", "llm_backend"). Returns
    (config_dict, config_path) or ({}, None) if not found.
    """
    candidates: List[Path] = []
    env_path = os.getenv(CONFIG_ENV_VAR)
    if env_path:
        candidates.append(Path(env_path).expanduser())
    candidates.append(Path.cwd() / CONFIG_FILENAME)
    candidates.append(Path.home() / f".{CONFIG_FILENAME}")

    for path in candidates:
        if not path.is_file():
            continue
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("Ignoring invalid config file (JSON parse error): %s", path)
            break
        if not isinstance(data, dict):
            logger.warning("Ignoring config file that is not a JSON object: %s", path)
            break
        return data, path

    return {}, None


def _path(value: Any) -> Optional[Path]:
    if value in (None, ""):
        return None
    return Path(value).expanduser()


@dataclass
class LLMSettings:
    """Which backend to call and how."""

    backend: str = "codex"
    model: Optional[str] = None
    reasoning_effort: Optional[str] = None
    extra_args: List[str] = field(default_factory=list)
    timeout_ms: int = 600000
    artifacts_dir: Optional[Path] = None
    max_attempts: int = 3

    def to_llm_config(self, model_override: Optional[str] = None) -> LLMConfig:
        return LLMConfig(
            model=model_override or self.model,
            reasoning_effort=self.reasoning_effort,
            extra_args=list(self.extra_args),
            timeout_ms=self.timeout_ms,
        )

    @classmethod
    def from_namespace(cls, args: argparse.Namespace) -> "LLMSettings":
        extra_args: List[str] = []
        for extra in getattr(args, "llm_extra_arg", None) or []:
            if extra:
                extra_args.extend(shlex.split(extra))
        return cls(
            backend=getattr(args, "llm_backend", None) or "codex",
            model=getattr(args, "llm_model", None),
            reasoning_effort=getattr(args, "reasoning_effort", None),
            extra_args=extra_args,
            timeout_ms=getattr(args, "llm_timeout_ms", None) or 600000,
            artifacts_dir=_path(getattr(args, "artifacts_dir", None)),
            max_attempts=getattr(args, "llm_max_attempts", None) or 3,
        )


@dataclass
class ChunkSettings:
    target_turns: int = DEFAULT_TARGET_TURNS
    concurrency: int = DEFAULT_CONCURRENCY
    overwrite: bool = False
    pretty: bool = False
    use_model: bool = True

    @classmethod
    def from_namespace(cls, args: argparse.Namespace) -> "ChunkSettings":
        return cls(
            target_turns=getattr(args, "target_turns", DEFAULT_TARGET_TURNS),
            concurrency=getattr(args, "concurrency", DEFAULT_CONCURRENCY),
            overwrite=getattr(args, "overwrite", False),
            pretty=getattr(args, "pretty", False),
            use_model=not getattr(args, "fallback_breakpoints", False),
        )


@dataclass
class SummarizeSettings:
    concurrency: int = DEFAULT_CONCURRENCY
    batch_size: int = DEFAULT_BATCH_SIZE
    glossary_path: Optional[Path] = None  # default: <summaries>/glossary.json
    glossary_max_terms: int = DEFAULT_GLOSSARY_MAX_TERMS
    glossary_min_count: int = DEFAULT_GLOSSARY_MIN_COUNT
    max_chunks: int = 0
    resume: bool = True
    overwrite: bool = False
    sentiment: bool = False
    sentiment_model: Optional[str] = None
    reindex: bool = True
    pretty: bool = True
    index_limits: IndexLimits = field(default_factory=IndexLimits)

    @classmethod
    def from_namespace(cls, args: argparse.Namespace) -> "SummarizeSettings":
        return cls(
            concurrency=getattr(args, "concurrency", DEFAULT_CONCURRENCY),
            batch_size=getattr(args, "batch_size", DEFAULT_BATCH_SIZE),
            glossary_path=_path(getattr(args, "glossary", None)),
            glossary_max_terms=getattr(args, "glossary_max_terms", DEFAULT_GLOSSARY_MAX_TERMS),
            glossary_min_count=getattr(args, "glossary_min_count", DEFAULT_GLOSSARY_MIN_COUNT),
            max_chunks=getattr(args, "max_chunks", 0),
            resume=getattr(args, "resume", True),
            overwrite=getattr(args, "overwrite", False),
            sentiment=getattr(args, "sentiment", False),
            sentiment_model=getattr(args, "sentiment_model", None),
            reindex=getattr(args, "reindex", True),
            pretty=getattr(args, "summary_pretty", True),
            index_limits=_index_limits(args),
        )


@dataclass
class RollupSettings:
    concurrency: int = DEFAULT_CONCURRENCY
    max_chunks_per_window: int = DEFAULT_MAX_CHUNKS_PER_WINDOW
    glossary_path: Optional[Path] = None  # default: <summaries>/glossary.json
    glossary_max_terms: int = DEFAULT_GLOSSARY_MAX_TERMS
    resume: bool = True
    overwrite: bool = False
    sentiment: bool = False
    sentiment_model: Optional[str] = None
    sentiment_out_dir: Optional[Path] = None
    reindex: bool = True
    pretty: bool = True
    index_limits: IndexLimits = field(default_factory=IndexLimits)

    @classmethod
    def from_namespace(cls, args: argparse.Namespace) -> "RollupSettings":
        return cls(
            concurrency=getattr(args, "concurrency", DEFAULT_CONCURRENCY),
            max_chunks_per_window=getattr(args, "max_chunks_per_window", DEFAULT_MAX_CHUNKS_PER_WINDOW),
            glossary_path=_path(getattr(args, "glossary", None)),
            glossary_max_terms=getattr(args, "glossary_max_terms", DEFAULT_GLOSSARY_MAX_TERMS),
            resume=getattr(args, "resume", True),
            overwrite=getattr(args, "overwrite", False),
            sentiment=getattr(args, "sentiment", False),
            sentiment_model=getattr(args, "sentiment_model", None),
            sentiment_out_dir=_path(getattr(args, "sentiment_out", None)),
            reindex=getattr(args, "reindex", True),
            pretty=getattr(args, "summary_pretty", True),
            index_limits=_index_limits(args),
        )


@dataclass
class PackSettings:
    max_bytes: int = DEFAULT_MAX_SHARD_BYTES
    overwrite: bool = False
    include_key_points: bool = True
    include_tags: bool = True
    glossary_path: Optional[Path] = None  # default: <summaries>/glossary.json
    index_limits: IndexLimits = field(default_factory=IndexLimits)

    @classmethod
    def from_namespace(cls, args: argparse.Namespace) -> "PackSettings":
        return cls(
            max_bytes=getattr(args, "max_shard_bytes", DEFAULT_MAX_SHARD_BYTES),
            overwrite=getattr(args, "overwrite", False),
            include_key_points=getattr(args, "include_key_points", True),
            include_tags=getattr(args, "include_tags", True),
            glossary_path=_path(getattr(args, "glossary", None)),
            index_limits=_index_limits(args),
        )


def _index_limits(args: argparse.Namespace) -> IndexLimits:
    defaults = IndexLimits()
    return IndexLimits(
        summary_max_chars=getattr(args, "index_summary_max_chars", defaults.summary_max_chars),
        tags_max=getattr(args, "index_tags_max", defaults.tags_max),
        terms_max=getattr(args, "index_terms_max", defaults.terms_max),
    )


@dataclass
class PipelineConfig:
    """Everything `archive-digest pipeline` needs, resolved from CLI + config file."""

    archive_path: Optional[Path]
    base_dir: Path
    llm: LLMSettings
    chunk: ChunkSettings
    summarize: SummarizeSettings
    rollup: RollupSettings
    pack: PackSettings = field(default_factory=PackSettings)
    array_field: Optional[str] = None
    overwrite: bool = False
    pretty: bool = False
    fail_fast: bool = True
    from_stage: str = STAGES[0]
    only_stage: Optional[str] = None

    @property
    def threads_dir(self) -> Path:
        return self.base_dir / "threads"

    @property
    def chunks_dir(self) -> Path:
        return self.threads_dir / "chunks"

    @property
    def summaries_dir(self) -> Path:
        return self.threads_dir / "summaries"

    @property
    def thread_summaries_dir(self) -> Path:
        return self.threads_dir / "thread_summaries"

    @property
    def thread_sentiment_dir(self) -> Path:
        return self.threads_dir / "thread_sentiment_summaries"

    @property
    def memory_shards_dir(self) -> Path:
        return self.threads_dir / "memory_shards"

    @property
    def sentiment_shards_dir(self) -> Path:
        return self.threads_dir / "memory_shards_sentiment"

    def stages_to_run(self) -> List[str]:
        if self.only_stage:
            return [self.only_stage]
        return list(STAGES[STAGES.index(self.from_stage) :])

    @classmethod
    def from_namespace(cls, args: argparse.Namespace) -> "PipelineConfig":
        """Create a typed config from argparse.Namespace."""
        summarize = SummarizeSettings.from_namespace(args)
        summarize.resume = True
        rollup = RollupSettings.from_namespace(args)
        rollup.resume = True
        return cls(
            archive_path=_path(getattr(args, "archive", None)),
            base_dir=Path(getattr(args, "base_dir", None) or ".").expanduser(),
            llm=LLMSettings.from_namespace(args),
            chunk=ChunkSettings.from_namespace(args),
            summarize=summarize,
            rollup=rollup,
            pack=PackSettings.from_namespace(args),
            array_field=getattr(args, "array_field", None),
            fail_fast=not getattr(args, "keep_going", False),
            overwrite=getattr(args, "overwrite", False),
            pretty=getattr(args, "pretty", False),
            from_stage=getattr(args, "from_stage", None) or STAGES[0],
            only_stage=getattr(args, "only_stage", None),
        )


__all__ = [
    "STAGES",
    "CONFIG_ENV_VAR",
    "load_config_file",
    "LLMSettings",
    "ChunkSettings",
    "SummarizeSettings",
    "RollupSettings",
    "PackSettings",
    "PipelineConfig",
]
