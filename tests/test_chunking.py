"""Tests for boilerplate stripping and chunking."""

from __future__ import annotations

import pytest

from anchor.chunking import (
    BoilerplateFilter,
    chunk_document,
    chunk_text,
    never_boilerplate,
    reconstruct,
    strip_boilerplate,
)
from anchor.errors import ConfigError
from anchor.models import Document

LONG_TEXT = " ".join(
    f"Sentence number {i} talks about topic {i % 7} in some detail." for i in range(60)
)


class TestBoilerplateFilter:
    """Tests for the default line policy."""

    def test_detects_page_numbers(self) -> None:
        """Page footers are boilerplate."""
        policy = BoilerplateFilter()
        assert policy("Page 3 of 10")
        assert policy("- 12 -")

    def test_detects_copyright_and_navigation(self) -> None:
        """Copyright lines and nav bars are boilerplate."""
        policy = BoilerplateFilter()
        assert policy("Copyright 2020 Acme Corp")
        assert policy("Home | About | Contact")
        assert policy("Skip to main content")

    def test_keeps_content_lines(self) -> None:
        """Ordinary prose and blank lines are kept."""
        policy = BoilerplateFilter()
        assert not policy("Acme Corporation was founded in 1990.")
        assert not policy("")

    def test_extra_patterns(self) -> None:
        """Extra patterns extend the defaults."""
        policy = BoilerplateFilter(extra=[r"^confidential$"])
        assert policy("CONFIDENTIAL")
        assert policy("Page 1")


class TestStripBoilerplate:
    """Tests for strip_boilerplate."""

    def test_removes_only_matching_lines(self) -> None:
        """Other characters survive verbatim."""
        text = "Page 3 of 10\nReal content here.\nCopyright 2020 Acme\nMore  content.\n"
        cleaned = strip_boilerplate(text, BoilerplateFilter())
        assert cleaned == "Real content here.\nMore  content.\n"

    def test_custom_policy(self) -> None:
        """Any callable works as a policy."""
        cleaned = strip_boilerplate("# heading\nbody\n", lambda line: line.startswith("#"))
        assert cleaned == "body\n"


class TestChunkDocument:
    """Tests for chunk_document."""

    def test_chunks_are_slices_of_clean_text(self) -> None:
        """Each chunk's text equals the stripped text between its offsets."""
        doc = Document(text=LONG_TEXT, title="Long")
        chunks = chunk_document(doc, 200, 40)
        clean = chunks.clean_text
        assert len(list(chunks)) > 1
        for chunk in chunks:
            assert chunk.text == clean[chunk.start:chunk.end]
            assert len(chunk.text) <= 200
            assert chunk.doc_id == doc.doc_id

    def test_reconstruct_round_trips(self) -> None:
        """Dropping overlaps gives back the stripped text."""
        doc = Document(text=LONG_TEXT)
        chunks = list(chunk_document(doc, 150, 30))
        assert reconstruct(chunks) == LONG_TEXT

    def test_overlap_bounded_and_no_gaps(self) -> None:
        """Consecutive chunks touch or overlap by at most the configured amount."""
        doc = Document(text=LONG_TEXT)
        chunks = list(chunk_document(doc, 180, 40))
        for prev, nxt in zip(chunks, chunks[1:]):
            assert nxt.start <= prev.end
            assert prev.end - nxt.start <= 40
            assert nxt.start > prev.start

    def test_ordinals_are_sequential(self) -> None:
        """Ordinals count from zero in document order."""
        chunks = list(chunk_document(Document(text=LONG_TEXT), 200, 0))
        assert [c.ordinal for c in chunks] == list(range(len(chunks)))

    def test_deterministic(self) -> None:
        """Re-iterating and re-chunking yield identical chunks."""
        doc = Document(text=LONG_TEXT)
        seq = chunk_document(doc, 200, 40)
        assert list(seq) == list(seq)
        assert list(seq) == list(chunk_document(doc, 200, 40))

    def test_overlap_must_be_smaller_than_size(self) -> None:
        """overlap >= chunk_size is a configuration error."""
        with pytest.raises(ConfigError):
            chunk_document(Document(text="x"), 100, 100)
        with pytest.raises(ConfigError):
            chunk_document(Document(text="x"), 0, 0)
        with pytest.raises(ConfigError):
            chunk_document(Document(text="x"), 100, -1)

    def test_boilerplate_only_document_has_no_chunks(self) -> None:
        """A document that is all boilerplate produces nothing."""
        doc = Document(text="Page 1 of 2\nCopyright 2024 Acme\n")
        assert list(chunk_document(doc, 100, 10)) == []

    def test_offsets_refer_to_stripped_text(self) -> None:
        """Offsets skip the removed boilerplate lines."""
        doc = Document(text="Page 1 of 2\nAcme sells anvils.\n")
        chunks = list(chunk_document(doc, 100, 10))
        assert len(chunks) == 1
        assert chunks[0].start == 0
        assert chunks[0].text.startswith("Acme sells anvils.")

    def test_long_word_is_hard_cut(self) -> None:
        """A unit longer than chunk_size is split at the size limit."""
        doc = Document(text="x" * 250)
        chunks = list(chunk_document(doc, 100, 0, is_boilerplate=never_boilerplate))
        assert [len(c.text) for c in chunks] == [100, 100, 50]
        assert reconstruct(chunks) == "x" * 250

    def test_chunk_ids_are_unique(self) -> None:
        """Chunk ids differ across chunks of one document."""
        chunks = list(chunk_document(Document(text=LONG_TEXT), 120, 20))
        assert len({c.chunk_id for c in chunks}) == len(chunks)


class TestChunkText:
    """Tests for the chunk_text convenience wrapper."""

    def test_short_text_single_chunk(self) -> None:
        """Short text comes back unchanged."""
        assert chunk_text("Hello world.", max_chars=100, overlap_chars=10) == ["Hello world."]

    def test_empty_text(self) -> None:
        """Blank text yields no chunks."""
        assert chunk_text("   ", max_chars=100, overlap_chars=10) == []
