"""
Exception types raised by archive-digest.

Every error carries enough context (conversation id, path, turn range) for
the CLI to print a useful one-line message without a traceback.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, List, Optional, Union


class ArchiveDigestError(Exception):
    """Base class for all archive-digest errors."""


class ArchiveFormatError(ArchiveDigestError):
    """The archive's top-level shape is not something we can split."""


class ConversationError(ArchiveDigestError):
    """A single conversation element is structurally invalid."""

    def __init__(self, message: str, conversation_id: Optional[str] = None) -> None:
        self.conversation_id = conversation_id
        if conversation_id:
            message = f"conversation {conversation_id}: {message}"
        super().__init__(message)


class LinearizationError(ConversationError):
    """The parent chain of a conversation could not be walked."""


class CycleError(LinearizationError):
    """The parent chain revisits a node."""

    def __init__(self, node_id: str, conversation_id: Optional[str] = None) -> None:
        self.node_id = node_id
        super().__init__(f"cycle detected at node {node_id}", conversation_id)


class MissingNodeError(LinearizationError):
    """The parent chain references a node id absent from the mapping."""

    def __init__(self, node_id: str, conversation_id: Optional[str] = None) -> None:
        self.node_id = node_id
        super().__init__(f"node not found in mapping: {node_id}", conversation_id)


class ChunkingError(ArchiveDigestError):
    """A thread could not be cut into chunks."""

    def __init__(self, message: str, thread_path: Union[str, Path, None] = None) -> None:
        self.thread_path = thread_path
        if thread_path:
            message = f"{thread_path}: {message}"
        super().__init__(message)


class OutputExistsError(ArchiveDigestError, FileExistsError):
    """Refused to replace an existing output file."""

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)
        super().__init__(f"output exists (use --overwrite): {self.path}")


class ModelOutputError(ArchiveDigestError):
    """Model output could not be decoded into the expected JSON object."""


class LLMError(ArchiveDigestError):
    """The LLM backend call failed."""


class TransientLLMError(LLMError):
    """A backend failure worth retrying (rate limit or server error)."""

    def __init__(self, message: str, kind: str) -> None:
        self.kind = kind
        super().__init__(message)


class Cancelled(ArchiveDigestError):
    """Work stopped because a sibling task failed or the run was interrupted."""


class ItemError:
    """One failed work item inside a stage."""

    def __init__(self, item: Any, error: BaseException) -> None:
        self.item = item
        self.error = error

    def __repr__(self) -> str:
        return f"ItemError({self.item!r}, {self.error!r})"

    def __str__(self) -> str:
        return f"{self.item}: {self.error}"


class StageError(ArchiveDigestError):
    """One or more items of a stage failed."""

    def __init__(self, stage: str, errors: List[ItemError]) -> None:
        self.stage = stage
        self.errors = list(errors)
        lines = [f"{stage}: {len(self.errors)} item(s) failed"]
        lines.extend(f"  - {err}" for err in self.errors[:20])
        if len(self.errors) > 20:
            lines.append(f"  ... and {len(self.errors) - 20} more")
        super().__init__("\n".join(lines))


__all__ = [
    "ArchiveDigestError",
    "ArchiveFormatError",
    "ConversationError",
    "LinearizationError",
    "CycleError",
    "MissingNodeError",
    "ChunkingError",
    "OutputExistsError",
    "ModelOutputError",
    "LLMError",
    "TransientLLMError",
    "Cancelled",
    "ItemError",
    "StageError",
]
