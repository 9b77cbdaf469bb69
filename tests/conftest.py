"""Shared pytest fixtures for archive-digest tests."""

import json

import pytest

from archive_digest.models import (
    Chunk,
    ChunkSentimentSummary,
    ChunkSummary,
    SemanticChunkResult,
    SimplifiedConversation,
    SimplifiedMessage,
    ThreadSentimentSummary,
    ThreadSummary,
)


def make_node(node_id, parent, children, role=None, text=None, create_time=None, **content):
    """One raw export mapping node; role=None means no message."""
    message = None
    if role is not None:
        body = {"content_type": content.pop("content_type", "text")}
        if text is not None:
            body["parts"] = [text]
        body.update(content)
        message = {"author": {"role": role}, "content": body}
        if create_time is not None:
            message["create_time"] = create_time
    return {"id": node_id, "message": message, "parent": parent, "children": list(children)}


def make_conversation(conv_id, n_turns=2, start=1700000000.0, title="Sample"):
    """A raw export element with a linear root -> user/assistant chain."""
    mapping = {"root": make_node("root", None, ["m0"])}
    ids = [f"m{i}" for i in range(n_turns * 2)]
    for i, node_id in enumerate(ids):
        parent = "root" if i == 0 else ids[i - 1]
        children = [ids[i + 1]] if i + 1 < len(ids) else []
        role = "user" if i % 2 == 0 else "assistant"
        mapping[node_id] = make_node(
            node_id, parent, children, role=role, text=f"{role} {i // 2}", create_time=start + i
        )
    return {
        "conversation_id": conv_id,
        "title": title,
        "create_time": start,
        "update_time": start + len(ids),
        "current_node": ids[-1] if ids else "root",
        "mapping": mapping,
    }


def make_thread(conv_id="conv-1", n_turns=3, start=1700000000.0, title="Sample"):
    messages = []
    for i in range(n_turns):
        messages.append(SimplifiedMessage(role="user", text=f"question {i}", create_time=start + 2 * i))
        messages.append(
            SimplifiedMessage(role="assistant", text=f"answer {i}", create_time=start + 2 * i + 1)
        )
    return SimplifiedConversation(
        conversation_id=conv_id, title=title, create_time=start, messages=messages
    )


@pytest.fixture
def write_archive(tmp_path):
    """Write a JSON archive to disk and return its path."""

    def _write(data, name="conversations.json"):
        path = tmp_path / name
        path.write_text(json.dumps(data), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def thread_factory():
    return make_thread


@pytest.fixture
def write_thread(tmp_path):
    """Write a SimplifiedConversation to <tmp>/threads/<id>.json."""

    def _write(thread, threads_dir=None):
        threads_dir = threads_dir or tmp_path / "threads"
        threads_dir.mkdir(parents=True, exist_ok=True)
        path = threads_dir / f"{thread.conversation_id}.json"
        path.write_text(json.dumps(thread.to_dict()), encoding="utf-8")
        return path

    return _write


class FakeSummarizer:
    """ChunkSummarizer that answers from the chunk itself and records calls."""

    def __init__(self, fail_on=None):
        self.calls = []
        self.fail_on = set(fail_on or [])

    def summarize(self, chunk, glossary_excerpt, options, cancel=None):
        self.calls.append((chunk.conversation_id, chunk.chunk_number, glossary_excerpt, options))
        if (chunk.conversation_id, chunk.chunk_number) in self.fail_on:
            raise ValueError(f"boom {chunk.conversation_id}")
        summary = ChunkSummary(
            conversation_id=chunk.conversation_id,
            thread_start_time=chunk.thread_start_time,
            chunk_number=chunk.chunk_number,
            turn_start=chunk.turn_start,
            turn_end=chunk.turn_end,
            summary=f"summary of {chunk.conversation_id} #{chunk.chunk_number}",
            tags=["tag"],
            terms=["Widget"],
        )
        return SemanticChunkResult(summary=summary)


class FakeSentimentSummarizer:
    def __init__(self):
        self.calls = 0

    def summarize(self, chunk, glossary_excerpt, options, cancel=None):
        self.calls += 1
        return ChunkSentimentSummary(
            conversation_id=chunk.conversation_id,
            thread_start_time=chunk.thread_start_time,
            chunk_number=chunk.chunk_number,
            turn_start=chunk.turn_start,
            turn_end=chunk.turn_end,
            emotional_summary="calm",
            dominant_emotions=["curiosity"],
        )


class FakeRolluper:
    """ThreadRolluper that concatenates summaries and records each call."""

    def __init__(self, sentiment=False):
        self.sentiment = sentiment
        self.rollups = []
        self.merges = []

    def _make(self, conversation_id, text):
        if self.sentiment:
            return ThreadSentimentSummary(conversation_id=conversation_id, emotional_summary=text)
        return ThreadSummary(conversation_id=conversation_id, summary=text)

    def rollup(self, conversation_id, items, glossary_excerpt, cancel=None):
        self.rollups.append((conversation_id, len(items)))
        return self._make(conversation_id, f"rollup of {len(items)}")

    def merge(self, conversation_id, parts, glossary_excerpt, cancel=None):
        self.merges.append((conversation_id, len(parts)))
        return self._make(conversation_id, f"merge of {len(parts)}")


@pytest.fixture
def fake_summarizer():
    return FakeSummarizer()


@pytest.fixture
def fake_rolluper():
    return FakeRolluper()


@pytest.fixture
def sample_chunk():
    return Chunk(
        conversation_id="conv-1",
        chunk_number=1,
        turn_start=0,
        turn_end=2,
        title="Sample",
        thread_start_time=1700000000.0,
        messages=[
            SimplifiedMessage(role="user", text="How do widgets work?"),
            SimplifiedMessage(role="assistant", text="Widgets spin."),
            SimplifiedMessage(role="tool", name="browser", content_type="tether_quote", title="Widget docs", url="https://example.com/w", text="long tool output"),
        ],
    )
