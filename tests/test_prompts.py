"""Tests for prompt building in archive_digest/prompts.py."""

import json

from archive_digest.models import ChunkSummary, SimplifiedMessage, TranscriptOptions
from archive_digest.prompts import (
    BREAKPOINT_MAX_TURNS_WITH_TEXT,
    CHUNK_SUMMARY_CONTRACT,
    build_breakpoint_payload,
    build_breakpoint_prompt,
    build_chunk_summary_prompt,
    build_thread_rollup_prompt,
    render_transcript,
    truncate_text,
)
from archive_digest.turns import build_turns


class TestTruncateText:
    def test_short_text_unchanged(self):
        assert truncate_text("  hi  ", 10) == "hi"

    def test_long_text_cut(self):
        assert truncate_text("abcdef", 3) == "abc…"

    def test_zero_disables(self):
        assert truncate_text("abcdef", 0) == "abcdef"


class TestRenderTranscript:
    """Tests for render_transcript."""

    def test_one_line_per_message(self, sample_chunk):
        lines = render_transcript(sample_chunk).splitlines()
        assert lines[0] == "- user: How do widgets work?"
        assert lines[1] == "- assistant: Widgets spin."
        assert lines[2] == "- tool:browser: long tool output"

    def test_tools_reduced_to_reference(self, sample_chunk):
        text = render_transcript(sample_chunk, TranscriptOptions(include_tools=False))
        assert "long tool output" not in text
        assert "[tool browser tether_quote Widget docs https://example.com/w]" in text

    def test_newlines_escaped(self, sample_chunk):
        sample_chunk.messages = [SimplifiedMessage(role="user", text="line one\nline two")]
        assert render_transcript(sample_chunk) == "- user: line one\\nline two\n"

    def test_truncated_at_budget(self, sample_chunk):
        sample_chunk.messages = [SimplifiedMessage(role="user", text="x" * 50) for _ in range(10)]
        text = render_transcript(sample_chunk, TranscriptOptions(max_chars=200))
        assert text.endswith("... [transcript truncated]\n")
        assert len(text.splitlines()) == 4


class TestBreakpointPrompt:
    """Tests for breakpoint payloads and prompts."""

    def test_payload_shape(self, thread_factory):
        thread = thread_factory(n_turns=3)
        payload = build_breakpoint_payload(thread, build_turns(thread.messages), 2)
        assert payload["total_turns"] == 3
        assert payload["target_turns_per_chunk"] == 2
        assert payload["turns"][1] == {
            "turn": 1,
            "start_time": thread.messages[2].create_time,
            "user": "question 1",
            "assistant": "answer 1",
        }

    def test_target_in_instructions(self, thread_factory):
        thread = thread_factory(n_turns=3)
        prompt = build_breakpoint_prompt(thread, build_turns(thread.messages), 7)
        assert "about 7 turns" in prompt
        payload = json.loads(prompt[prompt.index("\n{") + 1 :])
        assert payload["conversation_id"] == thread.conversation_id

    def test_large_thread_drops_text(self, thread_factory):
        thread = thread_factory(n_turns=BREAKPOINT_MAX_TURNS_WITH_TEXT + 1)
        prompt = build_breakpoint_prompt(thread, build_turns(thread.messages), 20)
        payload = json.loads(prompt[prompt.index("\n{") + 1 :])
        assert "user" not in payload["turns"][0]


class TestSummaryPrompts:
    """Tests for chunk and thread summary prompts."""

    def test_chunk_prompt_sections(self, sample_chunk):
        prompt = build_chunk_summary_prompt(sample_chunk, "- Widget: a part")
        assert "conversation_id=conv-1" in prompt
        assert "turn_range=0..2" in prompt
        assert "glossary:\n- Widget: a part" in prompt
        contract = json.loads(prompt.split("output_contract:\n", 1)[1])
        assert contract == CHUNK_SUMMARY_CONTRACT

    def test_chunk_prompt_without_glossary(self, sample_chunk):
        assert "glossary:" not in build_chunk_summary_prompt(sample_chunk, "")

    def test_thread_rollup_prompt(self):
        items = [
            ChunkSummary(conversation_id="c1", chunk_number=1, turn_start=0, turn_end=4, summary="first", thread_start_time=50.0),
            ChunkSummary(conversation_id="c1", chunk_number=2, turn_start=4, turn_end=9, summary="second", tags=["a", "b"], thread_start_time=10.0),
        ]
        prompt = build_thread_rollup_prompt("c1", items)
        assert "chunks=2" in prompt
        assert "thread_start_time=10.0" in prompt
        assert "- chunk=2 turn_range=4..9" in prompt
        assert "tags=a, b" in prompt
