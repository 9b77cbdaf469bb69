"""
Recover the linear message path of a tree-shaped conversation.

Exports store each conversation as a `mapping` of node id -> node, where a
node is `{id, message, parent, children}`. Regenerated answers and edits
create branches; the path the user actually saw is the one ending at
`current_node`. We walk parent pointers from there back to the root and
reverse, dropping nodes that carry no visible content.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from archive_digest.errors import (
    ConversationError,
    CycleError,
    LinearizationError,
    MissingNodeError,
)
from archive_digest.models import SimplifiedConversation, SimplifiedMessage

# Extra parent-walk steps allowed beyond the node count before giving up.
STEP_SLACK = 5


def _str(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _create_time(message: Any) -> float:
    if not isinstance(message, dict):
        return 0.0
    ct = message.get("create_time")
    if isinstance(ct, bool) or not isinstance(ct, (int, float)):
        return 0.0
    return float(ct)


def pick_best_leaf(mapping: Dict[str, Any]) -> Optional[str]:
    """Return the childless node with a message and the latest create_time.

    Nodes without a create_time count as 0. On ties the first node in
    mapping order wins. Returns None when no leaf carries a message.
    """
    best_id: Optional[str] = None
    best_time = 0.0
    for node_id, node in mapping.items():
        if not isinstance(node, dict):
            continue
        if node.get("children"):
            continue
        message = node.get("message")
        if message is None:
            continue
        ct = _create_time(message)
        if best_id is None or ct > best_time:
            best_id = node_id
            best_time = ct
    return best_id


def extract_content(content: Any) -> Dict[str, str]:
    """Pull text plus tool metadata out of a message `content` object.

    Text comes from a `parts` array (string parts only, newline-joined)
    or, failing that, a literal `text` field.
    """
    if not isinstance(content, dict):
        return {"content_type": "", "text": "", "domain": "", "title": "", "url": ""}

    parts = content.get("parts")
    text = ""
    string_parts = [p for p in parts if isinstance(p, str)] if isinstance(parts, list) else []
    if string_parts:
        text = "\n".join(string_parts)
    elif _str(content.get("text")):
        text = content["text"]

    return {
        "content_type": _str(content.get("content_type")).strip(),
        "text": text,
        "domain": _str(content.get("domain")).strip(),
        "title": _str(content.get("title")).strip(),
        "url": _str(content.get("url")).strip(),
    }


def simplify_message(message: Dict[str, Any]) -> Optional[SimplifiedMessage]:
    """Reduce a raw export message to a SimplifiedMessage, or None to drop it."""
    author = message.get("author")
    author = author if isinstance(author, dict) else {}

    role = _str(author.get("role")).strip() or "unknown"
    name = author.get("name")
    name = name.strip() if isinstance(name, str) else None

    content = extract_content(message.get("content"))
    text = content["text"]
    has_text = bool(text.strip())

    metadata = message.get("metadata")
    metadata = metadata if isinstance(metadata, dict) else {}

    # Hidden scaffolding system prompts
    if role == "system" and not has_text and metadata.get("is_visually_hidden_from_conversation") is True:
        return None

    # Image-only tool output
    if (
        role == "tool"
        and not has_text
        and not content["title"]
        and not content["url"]
        and "image" in content["content_type"].lower()
    ):
        return None

    if not has_text and not content["content_type"] and not content["url"] and not content["title"]:
        return None

    ct = message.get("create_time")
    create_time = None if isinstance(ct, bool) or not isinstance(ct, (int, float)) else float(ct)

    return SimplifiedMessage(
        role=role,
        name=name or None,
        create_time=create_time,
        content_type=content["content_type"] or None,
        text=text or None,
        domain=content["domain"] or None,
        title=content["title"] or None,
        url=content["url"] or None,
    )


def linearize_messages(
    mapping: Dict[str, Any],
    current_node: Optional[str] = None,
    *,
    conversation_id: Optional[str] = None,
) -> List[SimplifiedMessage]:
    """Walk from `current_node` (or the best leaf) back to the root.

    Returns the surviving messages in chronological order. Raises
    CycleError when a node repeats, MissingNodeError when a parent pointer
    leads outside the mapping and LinearizationError when no start node
    exists or the step ceiling is hit.
    """
    if not mapping:
        return []

    start = (current_node or "").strip() or pick_best_leaf(mapping)
    if not start:
        raise LinearizationError("no current_node and no leaf node found", conversation_id)

    collected: List[SimplifiedMessage] = []
    visited = set()
    node_id: Optional[str] = start
    max_steps = len(mapping) + STEP_SLACK

    for _ in range(max_steps):
        if node_id in visited:
            raise CycleError(node_id, conversation_id)
        visited.add(node_id)

        node = mapping.get(node_id)
        if not isinstance(node, dict):
            raise MissingNodeError(node_id, conversation_id)

        message = node.get("message")
        if isinstance(message, dict):
            simplified = simplify_message(message)
            if simplified is not None:
                collected.append(simplified)

        parent = node.get("parent")
        if not isinstance(parent, str) or not parent:
            break
        node_id = parent
    else:
        raise LinearizationError(f"parent walk exceeded {max_steps} steps", conversation_id)

    collected.reverse()
    return collected


def simplify_conversation(raw: Dict[str, Any]) -> SimplifiedConversation:
    """Turn one raw export element into a SimplifiedConversation.

    The conversation id is `conversation_id`, falling back to `id`; an
    element with neither is rejected.
    """
    conv_id = _str(raw.get("conversation_id")).strip() or _str(raw.get("id")).strip()
    if not conv_id:
        raise ConversationError("missing conversation_id/id")

    mapping = raw.get("mapping")
    if mapping is None:
        mapping = {}
    if not isinstance(mapping, dict):
        raise ConversationError("mapping is not an object", conv_id)

    current = raw.get("current_node")
    messages = linearize_messages(
        mapping,
        current if isinstance(current, str) else None,
        conversation_id=conv_id,
    )

    ct = raw.get("create_time")
    ut = raw.get("update_time")
    title = _str(raw.get("title")).strip()
    return SimplifiedConversation(
        conversation_id=conv_id,
        title=title or None,
        create_time=None if isinstance(ct, bool) or not isinstance(ct, (int, float)) else float(ct),
        update_time=None if isinstance(ut, bool) or not isinstance(ut, (int, float)) else float(ut),
        messages=messages,
    )


__all__ = [
    "pick_best_leaf",
    "extract_content",
    "simplify_message",
    "linearize_messages",
    "simplify_conversation",
]
