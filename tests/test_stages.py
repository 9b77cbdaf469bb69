"""Tests for the stage drivers in archive_digest/stages.py, using fake model collaborators."""

import json

import pytest

from archive_digest.chunker import FallbackDecider
from archive_digest.config_types import (
    ChunkSettings,
    LLMSettings,
    PipelineConfig,
    RollupSettings,
    SummarizeSettings,
)
from archive_digest.errors import ModelOutputError, OutputExistsError, StageError
from archive_digest.models import ChunkSummary, GlossaryAddition
from archive_digest.stages import (
    CHUNK_DONE_MARKER,
    TRANSCRIPT_ATTEMPTS,
    Collaborators,
    list_chunk_files,
    load_chunk_summaries,
    part_path,
    run_chunk_stage,
    run_pipeline,
    run_rollup_stage,
    run_summarize_stage,
)
from conftest import FakeRolluper, FakeSentimentSummarizer, FakeSummarizer, make_conversation, make_thread


def _read_jsonl(path):
    return [json.loads(line) for line in path.read_text().splitlines()]


@pytest.fixture
def threads_dir(tmp_path, write_thread):
    """Two threads: 5 turns and 2 turns."""
    write_thread(make_thread("alpha", n_turns=5, start=1700000000.0))
    write_thread(make_thread("beta", n_turns=2, start=1700001000.0))
    return tmp_path / "threads"


@pytest.fixture
def chunks_dir(threads_dir):
    out = threads_dir / "chunks"
    run_chunk_stage(threads_dir, out, FallbackDecider(), ChunkSettings(target_turns=2, concurrency=2))
    return out


# ---------------------------------------------------------------------------
# chunk
# ---------------------------------------------------------------------------


class TestChunkStage:
    """Tests for run_chunk_stage."""

    def test_one_directory_per_thread(self, chunks_dir):
        assert sorted(p.name for p in chunks_dir.iterdir()) == ["alpha", "beta"]
        assert len(list((chunks_dir / "alpha").glob("*.json"))) == 3
        assert len(list((chunks_dir / "beta").glob("*.json"))) == 1

    def test_resume_skips_chunked_threads(self, threads_dir, chunks_dir):
        report = run_chunk_stage(threads_dir, chunks_dir, None, ChunkSettings(target_turns=2))
        assert (report.processed, report.skipped) == (0, 2)

    def test_partial_thread_is_rechunked(self, threads_dir, chunks_dir):
        """A chunk directory without its completion marker is redone from scratch."""
        alpha = chunks_dir / "alpha"
        (alpha / CHUNK_DONE_MARKER).unlink()
        sorted(alpha.glob("*.json"))[-1].unlink()
        (alpha / "1600000000_9.json").write_text("{}")

        report = run_chunk_stage(threads_dir, chunks_dir, None, ChunkSettings(target_turns=2))
        assert (report.processed, report.skipped) == (1, 1)
        assert sorted(p.name for p in alpha.glob("*.json")) == [
            "1700000000_1.json",
            "1700000000_2.json",
            "1700000000_3.json",
        ]
        assert (alpha / CHUNK_DONE_MARKER).read_text().strip() == "3"

    def test_overwrite_rechunks(self, threads_dir, chunks_dir):
        report = run_chunk_stage(threads_dir, chunks_dir, None, ChunkSettings(target_turns=2, overwrite=True))
        assert (report.processed, report.skipped) == (2, 0)

    def test_failures_collected(self, threads_dir, tmp_path):
        """A bad thread file is reported after the good ones are chunked."""
        (threads_dir / "broken.json").write_text("[1, 2]")
        out = tmp_path / "chunks"
        with pytest.raises(StageError) as exc_info:
            run_chunk_stage(threads_dir, out, None, ChunkSettings(target_turns=2))
        assert len(exc_info.value.errors) == 1
        assert "broken.json" in str(exc_info.value)
        assert (out / "alpha").is_dir()
        assert (out / "beta").is_dir()

    def test_chunk_files_listing_skips_summaries(self, chunks_dir):
        (chunks_dir / "alpha" / "x.summary.json").write_text("{}")
        (chunks_dir / "summaries").mkdir()
        (chunks_dir / "summaries" / "y.json").write_text("{}")
        files = list_chunk_files(chunks_dir)
        assert len(files) == 4
        assert all(not f.name.endswith(".summary.json") for f in files)


# ---------------------------------------------------------------------------
# summarize
# ---------------------------------------------------------------------------


class TestSummarizeStage:
    """Tests for run_summarize_stage."""

    def test_writes_summaries_glossary_and_index(self, chunks_dir, tmp_path):
        out = tmp_path / "summaries"
        summarizer = FakeSummarizer()
        report = run_summarize_stage(chunks_dir, out, summarizer, SummarizeSettings(batch_size=2))
        assert report.processed == 4
        summaries = sorted(p.relative_to(out).as_posix() for p in out.rglob("*.summary.json"))
        assert summaries == [
            "alpha/1700000000_1.summary.json",
            "alpha/1700000000_2.summary.json",
            "alpha/1700000000_3.summary.json",
            "beta/1700001000_1.summary.json",
        ]
        glossary = json.loads((out / "glossary.json").read_text())
        assert glossary["entries"][0]["term"] == "Widget"
        assert glossary["entries"][0]["count"] == 4
        rows = _read_jsonl(out / "index.jsonl")
        assert len(rows) == 4
        assert rows[0]["conversation_id"] == "alpha"
        assert rows[0]["chunk_path"].endswith("alpha/1700000000_1.json")

    def test_resume_skips_existing(self, chunks_dir, tmp_path):
        out = tmp_path / "summaries"
        run_summarize_stage(chunks_dir, out, FakeSummarizer(), SummarizeSettings())
        second = FakeSummarizer()
        report = run_summarize_stage(chunks_dir, out, second, SummarizeSettings())
        assert second.calls == []
        assert report.skipped == 4

    def test_no_resume_refuses_existing(self, chunks_dir, tmp_path):
        out = tmp_path / "summaries"
        run_summarize_stage(chunks_dir, out, FakeSummarizer(), SummarizeSettings())
        with pytest.raises(StageError) as exc_info:
            run_summarize_stage(chunks_dir, out, FakeSummarizer(), SummarizeSettings(resume=False))
        assert all(isinstance(e.error, OutputExistsError) for e in exc_info.value.errors)

    def test_glossary_excerpt_grows_between_batches(self, chunks_dir, tmp_path):
        """Later batches see definitions merged from earlier ones."""

        class DefiningSummarizer(FakeSummarizer):
            def summarize(self, chunk, glossary_excerpt, options, cancel=None):
                result = super().summarize(chunk, glossary_excerpt, options, cancel)
                result.glossary_additions = [GlossaryAddition("Widget", "a spinning part")]
                return result

        summarizer = DefiningSummarizer()
        run_summarize_stage(
            chunks_dir, tmp_path / "summaries", summarizer, SummarizeSettings(batch_size=1, concurrency=1)
        )
        excerpts = [call[2] for call in summarizer.calls]
        assert excerpts[0] == ""
        assert excerpts[-1] == "- Widget: a spinning part"

    def test_smaller_transcript_retry(self, chunks_dir, tmp_path):
        """A model output failure retries with the reduced transcript."""

        class FlakySummarizer(FakeSummarizer):
            def summarize(self, chunk, glossary_excerpt, options, cancel=None):
                if options.include_tools:
                    self.calls.append(("failed", chunk.chunk_number, glossary_excerpt, options))
                    raise ModelOutputError("bad json")
                return super().summarize(chunk, glossary_excerpt, options, cancel)

        summarizer = FlakySummarizer()
        report = run_summarize_stage(
            chunks_dir, tmp_path / "summaries", summarizer, SummarizeSettings(max_chunks=1)
        )
        assert report.processed == 1
        assert [call[3] for call in summarizer.calls] == list(TRANSCRIPT_ATTEMPTS)

    def test_last_transcript_failure_is_reported(self, chunks_dir, tmp_path):
        """When every transcript size fails, the last model error surfaces."""
        attempts = []

        class BrokenSummarizer(FakeSummarizer):
            def summarize(self, chunk, glossary_excerpt, options, cancel=None):
                attempts.append(options)
                raise ModelOutputError(f"bad json at {options.max_chars}")

        with pytest.raises(StageError, match="bad json at 40000"):
            run_summarize_stage(
                chunks_dir, tmp_path / "summaries", BrokenSummarizer(), SummarizeSettings(max_chunks=1)
            )
        assert attempts == list(TRANSCRIPT_ATTEMPTS)

    def test_failure_keeps_glossary_from_successes(self, chunks_dir, tmp_path):
        out = tmp_path / "summaries"
        summarizer = FakeSummarizer(fail_on=[("beta", 1)])
        with pytest.raises(StageError, match="1 item"):
            run_summarize_stage(chunks_dir, out, summarizer, SummarizeSettings(glossary_min_count=1))
        assert len(list(out.rglob("*.summary.json"))) == 3
        glossary = json.loads((out / "glossary.json").read_text())
        assert glossary["entries"][0]["count"] == 3

    def test_sentiment_outputs(self, chunks_dir, tmp_path):
        out = tmp_path / "summaries"
        sentiment = FakeSentimentSummarizer()
        run_summarize_stage(
            chunks_dir, out, FakeSummarizer(), SummarizeSettings(sentiment=True), sentiment
        )
        assert sentiment.calls == 4
        assert len(list(out.rglob("*.sentiment.summary.json"))) == 4
        rows = _read_jsonl(out / "sentiment_index.jsonl")
        assert rows[0]["dominant_emotions"] == ["curiosity"]
        assert len(_read_jsonl(out / "index.jsonl")) == 4


# ---------------------------------------------------------------------------
# rollup
# ---------------------------------------------------------------------------


@pytest.fixture
def summaries_dir(chunks_dir, tmp_path):
    out = tmp_path / "summaries"
    run_summarize_stage(chunks_dir, out, FakeSummarizer(), SummarizeSettings())
    return out


class TestRollupStage:
    """Tests for run_rollup_stage."""

    def test_groups_by_conversation(self, summaries_dir):
        groups = load_chunk_summaries(summaries_dir)
        assert sorted(groups) == ["alpha", "beta"]
        assert [s.chunk_number for s in groups["alpha"]] == [1, 2, 3]
        assert all(isinstance(s, ChunkSummary) for s in groups["alpha"])

    def test_thread_summaries_and_index(self, summaries_dir, tmp_path):
        out = tmp_path / "thread_summaries"
        rolluper = FakeRolluper()
        report = run_rollup_stage(summaries_dir, out, rolluper, RollupSettings())
        assert report.processed == 2
        alpha = json.loads((out / "alpha.thread.summary.json").read_text())
        assert alpha["summary"] == "rollup of 3"
        assert alpha["thread_start_time"] == 1700000000.0
        rows = _read_jsonl(out / "thread_index.jsonl")
        assert [r["conversation_id"] for r in rows] == ["alpha", "beta"]

    def test_windowed_parts_written(self, summaries_dir, tmp_path):
        out = tmp_path / "thread_summaries"
        rolluper = FakeRolluper()
        run_rollup_stage(summaries_dir, out, rolluper, RollupSettings(max_chunks_per_window=2))
        assert part_path(out, "alpha", ".thread.summary.json", 1, 2).name == "alpha.thread.summary.part01of02.json"
        assert part_path(out, "alpha", ".thread.summary.json", 1, 2).exists()
        assert part_path(out, "alpha", ".thread.summary.json", 2, 2).exists()
        assert ("alpha", 2) in rolluper.merges

    def test_resume_skips_and_strict_refuses(self, summaries_dir, tmp_path):
        out = tmp_path / "thread_summaries"
        run_rollup_stage(summaries_dir, out, FakeRolluper(), RollupSettings())
        again = FakeRolluper()
        report = run_rollup_stage(summaries_dir, out, again, RollupSettings())
        assert again.rollups == []
        assert report.skipped == 2
        with pytest.raises(OutputExistsError):
            run_rollup_stage(summaries_dir, out, FakeRolluper(), RollupSettings(resume=False))

    def test_first_error_stops_rollup(self, summaries_dir, tmp_path):
        class FailingRolluper(FakeRolluper):
            def rollup(self, conversation_id, items, glossary_excerpt, cancel=None):
                raise RuntimeError(f"rollup failed for {conversation_id}")

        with pytest.raises(RuntimeError, match="rollup failed"):
            run_rollup_stage(summaries_dir, tmp_path / "out", FailingRolluper(), RollupSettings(concurrency=1))

    def test_sentiment_rollup(self, chunks_dir, tmp_path):
        summaries = tmp_path / "summaries"
        run_summarize_stage(
            chunks_dir, summaries, FakeSummarizer(), SummarizeSettings(sentiment=True), FakeSentimentSummarizer()
        )
        out = tmp_path / "thread_summaries"
        sentiment_out = tmp_path / "thread_sentiment"
        run_rollup_stage(
            summaries,
            out,
            FakeRolluper(),
            RollupSettings(sentiment=True, sentiment_out_dir=sentiment_out),
            FakeRolluper(sentiment=True),
        )
        data = json.loads((sentiment_out / "beta.thread.sentiment.summary.json").read_text())
        assert data["emotional_summary"] == "rollup of 1"
        assert len(_read_jsonl(sentiment_out / "sentiment_thread_index.jsonl")) == 2


# ---------------------------------------------------------------------------
# pipeline
# ---------------------------------------------------------------------------


def test_pipeline_end_to_end(tmp_path, write_archive):
    """Archive in, thread summaries out, with every intermediate on disk."""
    archive = write_archive([make_conversation("c1", n_turns=3), make_conversation("c2", n_turns=1)])
    config = PipelineConfig(
        archive_path=archive,
        base_dir=tmp_path / "digest",
        llm=LLMSettings(),
        chunk=ChunkSettings(target_turns=2),
        summarize=SummarizeSettings(),
        rollup=RollupSettings(),
    )
    collaborators = Collaborators(
        decider=FallbackDecider(), summarizer=FakeSummarizer(), rolluper=FakeRolluper()
    )
    reports = run_pipeline(config, collaborators)
    assert [r.stage for r in reports] == ["split", "chunk", "summarize", "rollup", "pack"]
    assert sorted(p.name for p in config.threads_dir.glob("*.json")) == ["c1.json", "c2.json"]
    assert len(list_chunk_files(config.chunks_dir)) == 3
    assert (config.thread_summaries_dir / "c1.thread.summary.json").exists()
    assert (config.thread_summaries_dir / "c2.thread.summary.json").exists()
    assert reports[-1].processed == 2
    assert (config.memory_shards_dir / "memories_0001.md").exists()
    assert (config.memory_shards_dir / "glossary.json").exists()
    assert len(_read_jsonl(config.memory_shards_dir / "memory_index.jsonl")) == 2

    # A second run reuses everything on disk.
    rerun = run_pipeline(config, collaborators)
    assert rerun[0].skipped == 1
    assert [r.processed for r in rerun[1:]] == [0, 0, 0, 0]
    assert rerun[-1].skipped == 1


def test_pipeline_only_stage(tmp_path):
    config = PipelineConfig(
        archive_path=None,
        base_dir=tmp_path,
        llm=LLMSettings(),
        chunk=ChunkSettings(),
        summarize=SummarizeSettings(),
        rollup=RollupSettings(),
        only_stage="split",
    )
    with pytest.raises(Exception, match="archive path"):
        run_pipeline(config, Collaborators(None, FakeSummarizer(), FakeRolluper()))


def test_pipeline_keep_going_skips_bad_conversation(tmp_path, write_archive):
    archive = write_archive([make_conversation(""), make_conversation("ok")])
    config = PipelineConfig(
        archive_path=archive,
        base_dir=tmp_path / "digest",
        llm=LLMSettings(),
        chunk=ChunkSettings(),
        summarize=SummarizeSettings(),
        rollup=RollupSettings(),
        only_stage="split",
        fail_fast=False,
    )
    reports = run_pipeline(config, Collaborators(None, FakeSummarizer(), FakeRolluper()))
    assert (reports[0].processed, reports[0].skipped) == (1, 1)
    assert [p.name for p in config.threads_dir.glob("*.json")] == ["ok.json"]
