"""
Run-wide glossary of recurring terms.

Chunk summarizers suggest terms (with short definitions) as they go; the
summarize stage merges those suggestions after each batch and feeds the
most frequent entries back into later prompts so terminology stays
consistent across a long archive.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from archive_digest.fileio import read_json, write_json_atomic
from archive_digest.models import GlossaryAddition

logger = logging.getLogger(__name__)

GLOSSARY_VERSION = 1


@dataclass
class GlossaryEntry:
    term: str
    definition: str = ""
    count: int = 0
    first_seen_at: Optional[float] = None
    last_seen_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"term": self.term}
        if self.definition:
            out["definition"] = self.definition
        out["count"] = self.count
        if self.first_seen_at is not None:
            out["first_seen_at"] = self.first_seen_at
        if self.last_seen_at is not None:
            out["last_seen_at"] = self.last_seen_at
        return out


@dataclass
class Glossary:
    version: int = GLOSSARY_VERSION
    entries: List[GlossaryEntry] = field(default_factory=list)
    meta: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "version": self.version,
            "entries": [e.to_dict() for e in self.entries],
        }
        if self.meta:
            out["meta"] = self.meta
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Glossary":
        entries = []
        for raw in data.get("entries") or []:
            if not isinstance(raw, dict) or not isinstance(raw.get("term"), str):
                continue
            entries.append(
                GlossaryEntry(
                    term=raw["term"],
                    definition=raw.get("definition") or "",
                    count=int(raw.get("count") or 0),
                    first_seen_at=raw.get("first_seen_at"),
                    last_seen_at=raw.get("last_seen_at"),
                )
            )
        meta = data.get("meta")
        return cls(
            version=int(data.get("version") or GLOSSARY_VERSION),
            entries=entries,
            meta=meta if isinstance(meta, dict) else {},
        )


def _key(term: str) -> str:
    return term.strip().lower()


def load_glossary(path: Path) -> Glossary:
    """Load a glossary file; a missing file is an empty glossary."""
    if not path.exists():
        return Glossary()
    data = read_json(path)
    if not isinstance(data, dict):
        raise ValueError(f"glossary is not a JSON object: {path}")
    return Glossary.from_dict(data)


def save_glossary(path: Path, glossary: Glossary) -> None:
    write_json_atomic(path, glossary.to_dict(), pretty=True)


def sort_glossary(glossary: Glossary) -> None:
    """Most frequent first, then alphabetical (case-insensitive)."""
    glossary.entries.sort(key=lambda e: (-e.count, e.term.lower()))


def merge_glossary(
    glossary: Glossary,
    additions: Iterable[GlossaryAddition],
    seen_at: Optional[float] = None,
) -> List[str]:
    """Fold additions into the glossary in place.

    Terms match case-insensitively and count at most once per call. An
    existing entry gains a count, gets its first-seen time filled if
    missing, its last-seen time refreshed, and keeps the longer of the two
    definitions. Returns the touched keys, sorted.
    """
    index = {_key(e.term): e for e in glossary.entries}
    touched: Dict[str, bool] = {}

    for add in additions:
        term = add.term.strip()
        key = _key(term)
        if not key or key in touched:
            continue
        touched[key] = True
        definition = (add.definition or "").strip()

        entry = index.get(key)
        if entry is None:
            entry = GlossaryEntry(
                term=term,
                definition=definition,
                count=1,
                first_seen_at=seen_at,
                last_seen_at=seen_at,
            )
            glossary.entries.append(entry)
            index[key] = entry
            continue

        entry.count += 1
        if entry.first_seen_at is None:
            entry.first_seen_at = seen_at
        if seen_at is not None:
            entry.last_seen_at = seen_at
        if len(definition) > len(entry.definition):
            entry.definition = definition

    sort_glossary(glossary)
    return sorted(touched)


def cull_glossary(glossary: Glossary, min_count: int) -> int:
    """Drop entries seen fewer than `min_count` times; returns how many."""
    if min_count <= 1:
        return 0
    before = len(glossary.entries)
    glossary.entries = [e for e in glossary.entries if e.count >= min_count]
    removed = before - len(glossary.entries)
    if removed:
        logger.info("Culled %d glossary entries below count %d", removed, min_count)
    return removed


def glossary_excerpt(glossary: Glossary, max_terms: int) -> str:
    """`- term: definition` lines for the top entries that have a definition."""
    if max_terms <= 0:
        return ""
    lines: List[str] = []
    for entry in glossary.entries:
        if len(lines) >= max_terms:
            break
        definition = entry.definition.strip()
        if not definition:
            continue
        lines.append(f"- {entry.term}: {definition}")
    return "\n".join(lines)


__all__ = [
    "GlossaryEntry",
    "Glossary",
    "load_glossary",
    "save_glossary",
    "sort_glossary",
    "merge_glossary",
    "cull_glossary",
    "glossary_excerpt",
]
