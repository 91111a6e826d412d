"""Tests for SQLite snapshot persistence."""

from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest

from anchor.errors import ConfigError
from anchor.index import make_entry
from anchor.models import Chunk, Document
from anchor.storage import MetadataStore


def _sample():
    doc = Document(
        text="Acme Corporation was founded in 1990.",
        title="Acme History",
        source="acme.md",
        metadata={"author": "archivist"},
    )
    chunk = Chunk(
        chunk_id=Chunk.make_id(doc.doc_id, 0, len(doc.text), doc.text),
        doc_id=doc.doc_id,
        text=doc.text,
        start=0,
        end=len(doc.text),
        ordinal=0,
    )
    return doc, make_entry(chunk, [0.25, -0.5, 0.75])


class TestMetadataStore:
    """Tests for MetadataStore."""

    def test_creates_parent_directory(self, tmp_path: Path) -> None:
        """The database directory is created on demand."""
        db_path = tmp_path / "nested" / "anchor.db"
        store = MetadataStore(str(db_path))
        assert db_path.parent.exists()
        store.close()

    def test_empty_database(self, tmp_path: Path) -> None:
        """A new database loads as version 0 with nothing in it."""
        store = MetadataStore(str(tmp_path / "anchor.db"))
        assert store.load() == (0, [], [])
        assert store.model_id is None
        store.close()

    def test_save_and_load_round_trip(self, tmp_path: Path) -> None:
        """Documents, chunks, vectors and terms survive a reopen."""
        db_path = str(tmp_path / "anchor.db")
        doc, entry = _sample()
        store = MetadataStore(db_path)
        store.save_snapshot(3, "hashing:feature-hash-3", [entry], [doc])
        store.close()

        reopened = MetadataStore(db_path)
        version, entries, documents = reopened.load(expected_model_id="hashing:feature-hash-3")
        assert version == 3
        assert documents == [doc]
        assert documents[0].metadata == {"author": "archivist"}
        assert entries[0].chunk == entry.chunk
        assert entries[0].terms == entry.terms
        np.testing.assert_array_equal(entries[0].vector, entry.vector)
        reopened.close()

    def test_save_replaces_previous_snapshot(self, tmp_path: Path) -> None:
        """Only the latest snapshot is kept."""
        store = MetadataStore(str(tmp_path / "anchor.db"))
        doc, entry = _sample()
        store.save_snapshot(1, "m", [entry], [doc])
        store.save_snapshot(2, "m", [], [])
        assert store.stats()["documents"] == 0
        assert store.stats()["chunks"] == 0
        assert store.index_version == 2
        store.close()

    def test_model_mismatch(self, tmp_path: Path) -> None:
        """Loading with another embedder is refused."""
        store = MetadataStore(str(tmp_path / "anchor.db"))
        doc, entry = _sample()
        store.save_snapshot(1, "openai:text-embedding-3-small", [entry], [doc])
        with pytest.raises(ConfigError):
            store.load(expected_model_id="hashing:feature-hash-384")
        store.close()
