"""
Data model for threads, turns, chunks and summaries.

Records are plain dataclasses. `to_dict()` produces the on-disk JSON shape,
dropping optional fields that are empty; `from_dict()` accepts what
`to_dict()` produces (and tolerates missing optional keys).

This module also declares the narrow collaborator protocols the core
depends on (breakpoint decision, chunk summarization, thread rollup).
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field, fields, replace
from typing import Any, ClassVar, Dict, List, Optional, Protocol, Sequence, Tuple, TypeVar

T = TypeVar("T", bound="Record")


def _opt_float(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _str_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value if v is not None]


def _coerce(type_name: str, value: Any) -> Any:
    if type_name == "Optional[float]":
        return _opt_float(value)
    if type_name == "List[str]":
        return _str_list(value)
    if type_name == "int":
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return 0
        return int(value)
    if type_name == "Optional[str]":
        return value if isinstance(value, str) else None
    if type_name == "str":
        return value if isinstance(value, str) else ""
    return value


class Record:
    """Mixin giving dataclasses a JSON shape with omit-if-empty fields."""

    _OMIT_EMPTY: ClassVar[Tuple[str, ...]] = ()

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for f in fields(self):  # type: ignore[arg-type]
            value = getattr(self, f.name)
            if f.name in self._OMIT_EMPTY and value in (None, "", [], {}):
                continue
            if isinstance(value, list):
                value = [v.to_dict() if isinstance(v, Record) else v for v in value]
            out[f.name] = value
        return out

    @classmethod
    def from_dict(cls: type[T], data: Dict[str, Any]) -> T:
        kwargs = {}
        for f in fields(cls):  # type: ignore[arg-type]
            if f.name in data:
                kwargs[f.name] = _coerce(str(f.type), data[f.name])
        return cls(**kwargs)  # type: ignore[call-arg]


# ---------------------------------------------------------------------------
# Threads and chunks
# ---------------------------------------------------------------------------


@dataclass
class SimplifiedMessage(Record):
    """One message on the linear path of a conversation."""

    _OMIT_EMPTY: ClassVar[Tuple[str, ...]] = (
        "name",
        "create_time",
        "content_type",
        "text",
        "domain",
        "title",
        "url",
    )

    role: str
    name: Optional[str] = None
    create_time: Optional[float] = None
    content_type: Optional[str] = None
    text: Optional[str] = None
    domain: Optional[str] = None
    title: Optional[str] = None
    url: Optional[str] = None

    def copy(self) -> "SimplifiedMessage":
        return replace(self)


def _messages_from(value: Any) -> List[SimplifiedMessage]:
    if not isinstance(value, list):
        return []
    return [SimplifiedMessage.from_dict(m) for m in value if isinstance(m, dict)]


@dataclass
class SimplifiedConversation(Record):
    """A linearized thread, as written by the splitter."""

    _OMIT_EMPTY: ClassVar[Tuple[str, ...]] = ("title", "create_time", "update_time")

    conversation_id: str
    title: Optional[str] = None
    create_time: Optional[float] = None
    update_time: Optional[float] = None
    messages: List[SimplifiedMessage] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SimplifiedConversation":
        return cls(
            conversation_id=_coerce("str", data.get("conversation_id")),
            title=_coerce("Optional[str]", data.get("title")),
            create_time=_opt_float(data.get("create_time")),
            update_time=_opt_float(data.get("update_time")),
            messages=_messages_from(data.get("messages")),
        )


@dataclass
class Turn:
    """A user message plus every following non-user message up to the next user message."""

    index: int
    start_message_index: int
    end_message_index: int  # inclusive
    start_time: Optional[float] = None
    user_text: str = ""
    assistant_text: str = ""


@dataclass
class Chunk(Record):
    """A contiguous turn range of a thread, with its own copy of the messages."""

    _OMIT_EMPTY: ClassVar[Tuple[str, ...]] = ("title", "thread_start_time")

    conversation_id: str
    chunk_number: int
    turn_start: int
    turn_end: int  # exclusive
    title: Optional[str] = None
    thread_start_time: Optional[float] = None
    messages: List[SimplifiedMessage] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"conversation_id": self.conversation_id}
        if self.title:
            out["title"] = self.title
        if self.thread_start_time is not None:
            out["thread_start_time"] = self.thread_start_time
        out["chunk_number"] = self.chunk_number
        out["turn_start"] = self.turn_start
        out["turn_end"] = self.turn_end
        out["messages"] = [m.to_dict() for m in self.messages]
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Chunk":
        return cls(
            conversation_id=_coerce("str", data.get("conversation_id")),
            chunk_number=_coerce("int", data.get("chunk_number")),
            turn_start=_coerce("int", data.get("turn_start")),
            turn_end=_coerce("int", data.get("turn_end")),
            title=_coerce("Optional[str]", data.get("title")),
            thread_start_time=_opt_float(data.get("thread_start_time")),
            messages=_messages_from(data.get("messages")),
        )


# ---------------------------------------------------------------------------
# Summaries
# ---------------------------------------------------------------------------


@dataclass
class ChunkSummary(Record):
    _OMIT_EMPTY: ClassVar[Tuple[str, ...]] = ("thread_start_time", "key_points", "tags", "terms")

    conversation_id: str = ""
    thread_start_time: Optional[float] = None
    chunk_number: int = 0
    turn_start: int = 0
    turn_end: int = 0
    summary: str = ""
    key_points: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    terms: List[str] = field(default_factory=list)


@dataclass
class ThreadSummary(Record):
    _OMIT_EMPTY: ClassVar[Tuple[str, ...]] = (
        "title",
        "thread_start_time",
        "key_points",
        "tags",
        "terms",
    )

    conversation_id: str = ""
    title: Optional[str] = None
    thread_start_time: Optional[float] = None
    summary: str = ""
    key_points: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    terms: List[str] = field(default_factory=list)


@dataclass
class ChunkSentimentSummary(Record):
    _OMIT_EMPTY: ClassVar[Tuple[str, ...]] = ("thread_start_time", "resonance_notes", "tone_markers")

    conversation_id: str = ""
    thread_start_time: Optional[float] = None
    chunk_number: int = 0
    turn_start: int = 0
    turn_end: int = 0
    emotional_summary: str = ""
    dominant_emotions: List[str] = field(default_factory=list)
    remembered_emotions: List[str] = field(default_factory=list)
    present_emotions: List[str] = field(default_factory=list)
    emotional_tensions: List[str] = field(default_factory=list)
    relational_shift: str = ""
    emotional_arc: str = ""
    themes: List[str] = field(default_factory=list)
    symbols_or_metaphors: List[str] = field(default_factory=list)
    resonance_notes: Optional[str] = None
    tone_markers: List[str] = field(default_factory=list)


@dataclass
class ThreadSentimentSummary(Record):
    _OMIT_EMPTY: ClassVar[Tuple[str, ...]] = (
        "title",
        "thread_start_time",
        "resonance_notes",
        "tone_markers",
    )

    conversation_id: str = ""
    title: Optional[str] = None
    thread_start_time: Optional[float] = None
    emotional_summary: str = ""
    dominant_emotions: List[str] = field(default_factory=list)
    remembered_emotions: List[str] = field(default_factory=list)
    present_emotions: List[str] = field(default_factory=list)
    emotional_tensions: List[str] = field(default_factory=list)
    relational_shift: str = ""
    emotional_arc: str = ""
    themes: List[str] = field(default_factory=list)
    symbols_or_metaphors: List[str] = field(default_factory=list)
    resonance_notes: Optional[str] = None
    tone_markers: List[str] = field(default_factory=list)


@dataclass
class GlossaryAddition:
    term: str
    definition: str = ""


@dataclass
class SemanticChunkResult:
    """What a chunk summarizer returns: the summary plus glossary suggestions."""

    summary: ChunkSummary
    glossary_additions: List[GlossaryAddition] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Collaborator protocols
# ---------------------------------------------------------------------------


@dataclass
class TranscriptOptions:
    """How much of a chunk to show a summarizer."""

    max_chars: int = 80_000
    include_tools: bool = True


class BreakpointDecider(Protocol):
    def decide(
        self,
        thread: SimplifiedConversation,
        turns: Sequence[Turn],
        target_turns_per_chunk: int,
    ) -> List[int]:
        """Return turn indices that start new chunks; empty means use the fallback."""
        ...


class ChunkSummarizer(Protocol):
    def summarize(
        self,
        chunk: Chunk,
        glossary_excerpt: str,
        options: TranscriptOptions,
        cancel: Optional[threading.Event] = None,
    ) -> SemanticChunkResult:
        ...


class ChunkSentimentSummarizer(Protocol):
    def summarize(
        self,
        chunk: Chunk,
        glossary_excerpt: str,
        options: TranscriptOptions,
        cancel: Optional[threading.Event] = None,
    ) -> ChunkSentimentSummary:
        ...


class ThreadRolluper(Protocol):
    """Rolls chunk-level summaries up to one thread-level summary.

    `rollup` sees chunk summaries (or one window of them); `merge` sees the
    partial thread summaries produced for each window.
    """

    def rollup(
        self,
        conversation_id: str,
        items: Sequence[Any],
        glossary_excerpt: str,
        cancel: Optional[threading.Event] = None,
    ) -> Any:
        ...

    def merge(
        self,
        conversation_id: str,
        parts: Sequence[Any],
        glossary_excerpt: str,
        cancel: Optional[threading.Event] = None,
    ) -> Any:
        ...


__all__ = [
    "Record",
    "SimplifiedMessage",
    "SimplifiedConversation",
    "Turn",
    "Chunk",
    "ChunkSummary",
    "ThreadSummary",
    "ChunkSentimentSummary",
    "ThreadSentimentSummary",
    "GlossaryAddition",
    "SemanticChunkResult",
    "TranscriptOptions",
    "BreakpointDecider",
    "ChunkSummarizer",
    "ChunkSentimentSummarizer",
    "ThreadRolluper",
]
