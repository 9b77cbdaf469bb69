"""Group a linear message list into user-initiated turns."""

from __future__ import annotations

from typing import List, Sequence

from archive_digest.models import SimplifiedMessage, Turn


def _assistant_line(message: SimplifiedMessage) -> str:
    text = (message.text or "").strip()
    if text:
        return text
    if message.url or message.title:
        return f"{message.title or ''} {message.url or ''}".strip()
    return ""


def _turn_from_range(index: int, start: int, end: int, messages: Sequence[SimplifiedMessage]) -> Turn:
    user_parts: List[str] = []
    assistant_parts: List[str] = []
    for message in messages[start : end + 1]:
        if message.role == "user":
            text = (message.text or "").strip()
            if text:
                user_parts.append(text)
        else:
            line = _assistant_line(message)
            if line:
                assistant_parts.append(line)

    return Turn(
        index=index,
        start_message_index=start,
        end_message_index=end,
        start_time=messages[start].create_time,
        user_text="\n".join(user_parts),
        assistant_text="\n".join(assistant_parts),
    )


def build_turns(messages: Sequence[SimplifiedMessage]) -> List[Turn]:
    """Split messages into turns, each starting at a user message.

    A thread without user messages is a single turn. Non-user messages
    before the first user message belong to the first turn, so the turns
    always cover every message exactly once.
    """
    if not messages:
        return []

    user_indexes = [i for i, m in enumerate(messages) if m.role == "user"]
    if not user_indexes:
        return [_turn_from_range(0, 0, len(messages) - 1, messages)]

    starts = [0] + user_indexes[1:]
    turns: List[Turn] = []
    for ti, start in enumerate(starts):
        end = starts[ti + 1] - 1 if ti + 1 < len(starts) else len(messages) - 1
        turns.append(_turn_from_range(ti, start, end, messages))
    return turns


__all__ = ["build_turns"]
