"""Tests for the run-wide glossary in archive_digest/glossary.py."""

import json

import pytest

from archive_digest.glossary import (
    Glossary,
    GlossaryEntry,
    cull_glossary,
    glossary_excerpt,
    load_glossary,
    merge_glossary,
    save_glossary,
)
from archive_digest.models import GlossaryAddition


class TestMergeGlossary:
    """Tests for merge_glossary."""

    def test_new_terms(self):
        glossary = Glossary()
        touched = merge_glossary(
            glossary, [GlossaryAddition("Widget", "a part"), GlossaryAddition("Gear")], seen_at=10.0
        )
        assert touched == ["gear", "widget"]
        widget = next(e for e in glossary.entries if e.term == "Widget")
        assert (widget.count, widget.first_seen_at, widget.last_seen_at) == (1, 10.0, 10.0)

    def test_case_insensitive_once_per_call(self):
        """The same term twice in one call counts once."""
        glossary = Glossary()
        merge_glossary(glossary, [GlossaryAddition("widget"), GlossaryAddition("WIDGET ")])
        assert len(glossary.entries) == 1
        assert glossary.entries[0].count == 1

    def test_existing_entry_updated(self):
        glossary = Glossary(entries=[GlossaryEntry("Widget", "short", 2, None, 5.0)])
        merge_glossary(glossary, [GlossaryAddition("widget", "a much longer definition")], seen_at=20.0)
        entry = glossary.entries[0]
        assert entry.term == "Widget"
        assert entry.count == 3
        assert entry.definition == "a much longer definition"
        assert entry.first_seen_at == 20.0
        assert entry.last_seen_at == 20.0

    def test_shorter_definition_ignored(self):
        glossary = Glossary(entries=[GlossaryEntry("Widget", "a long definition", 1)])
        merge_glossary(glossary, [GlossaryAddition("Widget", "short")])
        assert glossary.entries[0].definition == "a long definition"

    def test_blank_terms_skipped(self):
        glossary = Glossary()
        assert merge_glossary(glossary, [GlossaryAddition("  ")]) == []
        assert glossary.entries == []

    def test_sorted_by_count_then_term(self):
        glossary = Glossary(entries=[GlossaryEntry("beta", count=1), GlossaryEntry("Alpha", count=1)])
        merge_glossary(glossary, [GlossaryAddition("gamma"), GlossaryAddition("beta")])
        assert [e.term for e in glossary.entries] == ["beta", "Alpha", "gamma"]


class TestCullAndExcerpt:
    """Tests for cull_glossary and glossary_excerpt."""

    def test_cull(self):
        glossary = Glossary(entries=[GlossaryEntry("a", count=3), GlossaryEntry("b", count=1)])
        assert cull_glossary(glossary, 2) == 1
        assert [e.term for e in glossary.entries] == ["a"]

    def test_cull_disabled(self):
        glossary = Glossary(entries=[GlossaryEntry("b", count=1)])
        assert cull_glossary(glossary, 1) == 0
        assert len(glossary.entries) == 1

    def test_excerpt_skips_undefined(self):
        glossary = Glossary(
            entries=[
                GlossaryEntry("a", "alpha", 5),
                GlossaryEntry("b", "", 4),
                GlossaryEntry("c", "gamma", 3),
                GlossaryEntry("d", "delta", 2),
            ]
        )
        assert glossary_excerpt(glossary, 2) == "- a: alpha\n- c: gamma"
        assert glossary_excerpt(glossary, 0) == ""


class TestPersistence:
    """Tests for load_glossary and save_glossary."""

    def test_missing_file_is_empty(self, tmp_path):
        glossary = load_glossary(tmp_path / "none.json")
        assert glossary.entries == []
        assert glossary.version == 1

    def test_round_trip_shape(self, tmp_path):
        path = tmp_path / "glossary.json"
        glossary = Glossary(entries=[GlossaryEntry("Widget", "", 2, 1.0, None)])
        save_glossary(path, glossary)
        data = json.loads(path.read_text())
        assert data == {"version": 1, "entries": [{"term": "Widget", "count": 2, "first_seen_at": 1.0}]}
        assert load_glossary(path).entries[0].count == 2

    def test_not_an_object(self, tmp_path):
        path = tmp_path / "glossary.json"
        path.write_text("[]")
        with pytest.raises(ValueError):
            load_glossary(path)
