"""
Prompt loading and building for the model-backed pipeline steps.

This module handles:
- Loading prompt templates from `archive_digest/templates/*.md`
- Rendering turns, chunk transcripts and summary lists as prompt input
- Attaching the JSON output contract each step expects back
"""

from __future__ import annotations

import json
from pathlib import Path
from string import Template
from typing import Any, Dict, List, Optional, Sequence

from archive_digest.models import (
    Chunk,
    ChunkSentimentSummary,
    ChunkSummary,
    SimplifiedConversation,
    ThreadSentimentSummary,
    ThreadSummary,
    TranscriptOptions,
    Turn,
)

_TEMPLATES_DIR = Path(__file__).parent / "templates"

# Breakpoint requests carry short text snippets per turn unless the thread is
# so large that the request itself would crowd the context window.
BREAKPOINT_USER_CHARS = 400
BREAKPOINT_ASSISTANT_CHARS = 600
BREAKPOINT_MAX_REQUEST_BYTES = 250_000
BREAKPOINT_MAX_TURNS_WITH_TEXT = 250

TRANSCRIPT_LINE_CHARS = 2000
ROLLUP_INPUT_MAX_CHARS = 80_000


def truncate_text(text: str, max_chars: int) -> str:
    """Trim whitespace and cut to `max_chars`, marking the cut with an ellipsis."""
    text = text.strip()
    if max_chars <= 0 or len(text) <= max_chars:
        return text
    return text[:max_chars] + "…"


def _load_template(name: str) -> Template:
    """Load a prompt template from the templates directory.

    Args:
        name: Template name without extension (e.g., "chunk_summary")

    Returns:
        Template object ready for substitution
    """
    path = _TEMPLATES_DIR / f"{name}.md"
    return Template(path.read_text(encoding="utf-8"))


def _with_contract(instructions: str, body: str, contract: Dict[str, Any]) -> str:
    return (
        instructions.rstrip()
        + "\n\n"
        + body.rstrip()
        + "\n\noutput_contract:\n"
        + json.dumps(contract, indent=2, ensure_ascii=False)
    )


# ---------------------------------------------------------------------------
# Breakpoints
# ---------------------------------------------------------------------------


def build_breakpoint_payload(
    thread: SimplifiedConversation,
    turns: Sequence[Turn],
    target_turns_per_chunk: int,
    include_text: bool = True,
) -> Dict[str, Any]:
    payload_turns: List[Dict[str, Any]] = []
    for turn in turns:
        row: Dict[str, Any] = {"turn": turn.index}
        if turn.start_time is not None:
            row["start_time"] = turn.start_time
        if include_text:
            user = truncate_text(turn.user_text, BREAKPOINT_USER_CHARS)
            assistant = truncate_text(turn.assistant_text, BREAKPOINT_ASSISTANT_CHARS)
            if user:
                row["user"] = user
            if assistant:
                row["assistant"] = assistant
        payload_turns.append(row)

    payload: Dict[str, Any] = {"conversation_id": thread.conversation_id}
    if thread.title:
        payload["title"] = thread.title
    payload["target_turns_per_chunk"] = target_turns_per_chunk
    payload["total_turns"] = len(turns)
    payload["turns"] = payload_turns
    return payload


def build_breakpoint_prompt(
    thread: SimplifiedConversation,
    turns: Sequence[Turn],
    target_turns_per_chunk: int,
) -> str:
    """Build the segmentation prompt, dropping turn text for very large threads."""
    payload = json.dumps(
        build_breakpoint_payload(thread, turns, target_turns_per_chunk, include_text=True),
        ensure_ascii=False,
    )
    if (
        len(payload.encode("utf-8")) > BREAKPOINT_MAX_REQUEST_BYTES
        or len(turns) > BREAKPOINT_MAX_TURNS_WITH_TEXT
    ):
        payload = json.dumps(
            build_breakpoint_payload(thread, turns, target_turns_per_chunk, include_text=False),
            ensure_ascii=False,
        )

    instructions = _load_template("breakpoints").safe_substitute(
        target_turns=target_turns_per_chunk
    )
    return instructions.rstrip() + "\n\n" + payload


# ---------------------------------------------------------------------------
# Chunk summaries
# ---------------------------------------------------------------------------

CHUNK_SUMMARY_CONTRACT = {
    "summary": "string",
    "key_points": ["string"],
    "tags": ["string"],
    "terms": ["string"],
    "glossary_additions": [{"term": "string", "definition": "string"}],
}

CHUNK_SENTIMENT_CONTRACT = {
    "emotional_summary": "string",
    "dominant_emotions": ["string"],
    "remembered_emotions": ["string"],
    "present_emotions": ["string"],
    "emotional_tensions": ["string"],
    "relational_shift": "string",
    "emotional_arc": "string",
    "themes": ["string"],
    "symbols_or_metaphors": ["string"],
    "resonance_notes": "string (optional)",
    "tone_markers": ["string (optional)"],
}


def _one_line(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n").replace("\n", "\\n")


def render_transcript(chunk: Chunk, options: Optional[TranscriptOptions] = None) -> str:
    """One `- role[:name]: text` line per message, capped at `options.max_chars`.

    With `include_tools` off, tool output is reduced to a short reference
    (content type, title, url) instead of its text.
    """
    options = options or TranscriptOptions()
    max_chars = options.max_chars if options.max_chars > 0 else TranscriptOptions().max_chars

    lines: List[str] = []
    total = 0
    for m in chunk.messages:
        role = m.role or "unknown"
        name = f":{m.name}" if m.name else ""
        text = (m.text or "").strip()
        if role == "tool" and not options.include_tools:
            desc = (m.content_type or "").strip() or "tool"
            line = " ".join(p for p in ("[tool", m.name, desc, m.title, m.url) if p) + "]"
        elif text:
            line = m.text or ""
        elif m.url or m.title:
            line = " ".join(p for p in (m.title, m.url) if p)
        else:
            line = f"[{(m.content_type or '').strip()}]"

        row = f"- {role}{name}: {_one_line(truncate_text(line, TRANSCRIPT_LINE_CHARS))}\n"
        if total + len(row) > max_chars:
            lines.append("... [transcript truncated]\n")
            break
        lines.append(row)
        total += len(row)
    return "".join(lines)


def _chunk_input(chunk: Chunk, glossary_excerpt: str, options: Optional[TranscriptOptions]) -> str:
    parts = [
        "chunk_metadata:",
        f"conversation_id={chunk.conversation_id}",
        f"chunk_number={chunk.chunk_number}",
        f"turn_range={chunk.turn_start}..{chunk.turn_end}",
        "",
    ]
    if glossary_excerpt:
        parts.extend(["glossary:", glossary_excerpt, ""])
    parts.append("transcript:")
    return "\n".join(parts) + "\n" + render_transcript(chunk, options)


def build_chunk_summary_prompt(
    chunk: Chunk,
    glossary_excerpt: str = "",
    options: Optional[TranscriptOptions] = None,
) -> str:
    return _with_contract(
        _load_template("chunk_summary").safe_substitute(),
        _chunk_input(chunk, glossary_excerpt, options),
        CHUNK_SUMMARY_CONTRACT,
    )


def build_chunk_sentiment_prompt(
    chunk: Chunk,
    glossary_excerpt: str = "",
    options: Optional[TranscriptOptions] = None,
) -> str:
    return _with_contract(
        _load_template("chunk_sentiment").safe_substitute(),
        _chunk_input(chunk, glossary_excerpt, options),
        CHUNK_SENTIMENT_CONTRACT,
    )


# ---------------------------------------------------------------------------
# Thread rollups
# ---------------------------------------------------------------------------

THREAD_SUMMARY_CONTRACT = {
    "title": "string",
    "thread_start_time": "number or null",
    "summary": "string",
    "key_points": ["string"],
    "tags": ["string"],
    "terms": ["string"],
}

THREAD_SENTIMENT_CONTRACT = {
    "title": "string",
    "thread_start_time": "number or null",
    "emotional_summary": "string",
    "dominant_emotions": ["string"],
    "remembered_emotions": ["string"],
    "present_emotions": ["string"],
    "emotional_tensions": ["string"],
    "relational_shift": "string",
    "emotional_arc": "string",
    "themes": ["string"],
    "symbols_or_metaphors": ["string"],
}


def _bounded_rows(header: str, rows: Sequence[str], label: str) -> str:
    out = [header]
    total = 0
    for row in rows:
        if total + len(row) > ROLLUP_INPUT_MAX_CHARS:
            out.append(f"... [{label} truncated]\n")
            break
        out.append(row)
        total += len(row)
    return "".join(out)


def _rollup_header(conversation_id: str, count_label: str, count: int, glossary_excerpt: str) -> str:
    header = f"conversation_id={conversation_id}\n{count_label}={count}\n\n"
    if glossary_excerpt:
        header += f"glossary:\n{glossary_excerpt}\n"
    return header


def _join(values: Sequence[str], sep: str) -> str:
    return sep.join(values)


def _semantic_row(prefix: str, item: Any) -> str:
    return (
        f"- {prefix}\n"
        f"  summary={truncate_text(item.summary, 1200)}\n"
        f"  key_points={truncate_text(_join(item.key_points, '; '), 1800)}\n"
        f"  tags={truncate_text(_join(item.tags, ', '), 600)}\n"
        f"  terms={truncate_text(_join(item.terms, ', '), 600)}\n"
    )


def _sentiment_row(prefix: str, item: Any) -> str:
    return (
        f"- {prefix}\n"
        f"  emotional_summary={truncate_text(item.emotional_summary, 1200)}\n"
        f"  dominant_emotions={truncate_text(_join(item.dominant_emotions, ', '), 400)}\n"
        f"  remembered_emotions={truncate_text(_join(item.remembered_emotions, ', '), 400)}\n"
        f"  present_emotions={truncate_text(_join(item.present_emotions, ', '), 400)}\n"
        f"  emotional_tensions={truncate_text(_join(item.emotional_tensions, '; '), 600)}\n"
        f"  relational_shift={truncate_text(item.relational_shift, 400)}\n"
        f"  emotional_arc={truncate_text(item.emotional_arc, 600)}\n"
        f"  themes={truncate_text(_join(item.themes, ', '), 600)}\n"
    )


def _start_hint(items: Sequence[Any]) -> str:
    starts = [i.thread_start_time for i in items if i.thread_start_time is not None]
    return f"thread_start_time={min(starts)}\n" if starts else ""


def build_thread_rollup_prompt(
    conversation_id: str,
    summaries: Sequence[ChunkSummary],
    glossary_excerpt: str = "",
) -> str:
    header = _rollup_header(conversation_id, "chunks", len(summaries), glossary_excerpt)
    header += _start_hint(summaries) + "chunk_summaries:\n"
    rows = [
        _semantic_row(f"chunk={s.chunk_number} turn_range={s.turn_start}..{s.turn_end}", s)
        for s in summaries
    ]
    return _with_contract(
        _load_template("thread_rollup").safe_substitute(),
        _bounded_rows(header, rows, "chunk_summaries"),
        THREAD_SUMMARY_CONTRACT,
    )


def build_thread_merge_prompt(
    conversation_id: str,
    parts: Sequence[ThreadSummary],
    glossary_excerpt: str = "",
) -> str:
    header = _rollup_header(conversation_id, "parts", len(parts), glossary_excerpt)
    header += _start_hint(parts) + "partial_rollups:\n"
    rows = [_semantic_row(f"part={i} title={p.title or ''}", p) for i, p in enumerate(parts, start=1)]
    return _with_contract(
        _load_template("thread_merge").safe_substitute(),
        _bounded_rows(header, rows, "partial_rollups"),
        THREAD_SUMMARY_CONTRACT,
    )


def build_thread_sentiment_rollup_prompt(
    conversation_id: str,
    summaries: Sequence[ChunkSentimentSummary],
    glossary_excerpt: str = "",
) -> str:
    header = _rollup_header(conversation_id, "chunks", len(summaries), glossary_excerpt)
    header += _start_hint(summaries) + "chunk_sentiment_summaries:\n"
    rows = [
        _sentiment_row(f"chunk={s.chunk_number} turn_range={s.turn_start}..{s.turn_end}", s)
        for s in summaries
    ]
    return _with_contract(
        _load_template("thread_sentiment_rollup").safe_substitute(),
        _bounded_rows(header, rows, "chunk_sentiment_summaries"),
        THREAD_SENTIMENT_CONTRACT,
    )


def build_thread_sentiment_merge_prompt(
    conversation_id: str,
    parts: Sequence[ThreadSentimentSummary],
    glossary_excerpt: str = "",
) -> str:
    header = _rollup_header(conversation_id, "parts", len(parts), glossary_excerpt)
    header += _start_hint(parts) + "partial_sentiment_rollups:\n"
    rows = [
        _sentiment_row(f"part={i} title={p.title or ''}", p) for i, p in enumerate(parts, start=1)
    ]
    return _with_contract(
        _load_template("thread_sentiment_merge").safe_substitute(),
        _bounded_rows(header, rows, "partial_sentiment_rollups"),
        THREAD_SENTIMENT_CONTRACT,
    )


__all__ = [
    "truncate_text",
    "build_breakpoint_payload",
    "build_breakpoint_prompt",
    "render_transcript",
    "build_chunk_summary_prompt",
    "build_chunk_sentiment_prompt",
    "build_thread_rollup_prompt",
    "build_thread_merge_prompt",
    "build_thread_sentiment_rollup_prompt",
    "build_thread_sentiment_merge_prompt",
    "CHUNK_SUMMARY_CONTRACT",
    "CHUNK_SENTIMENT_CONTRACT",
    "THREAD_SUMMARY_CONTRACT",
    "THREAD_SENTIMENT_CONTRACT",
]
