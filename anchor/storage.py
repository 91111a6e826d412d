"""SQLite persistence for documents, chunks and their embeddings."""

import json
import logging
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from .errors import ConfigError
from .models import Chunk, Document, IndexEntry

logger = logging.getLogger(__name__)


class MetadataStore:
    """Manages SQLite storage of the current index snapshot.

    The database mirrors one snapshot at a time: ``save_snapshot`` replaces
    the stored rows in a single transaction, so a crash leaves either the
    previous version or the new one on disk.
    """

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        if self.db_path.parent and not self.db_path.parent.exists():
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self) -> None:
        """Initialize database schema."""
        cursor = self.conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS documents (
                doc_id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                source TEXT,
                text TEXT NOT NULL,
                ingested_at TEXT NOT NULL,
                metadata_json TEXT
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS chunks (
                chunk_id TEXT PRIMARY KEY,
                doc_id TEXT NOT NULL REFERENCES documents(doc_id) ON DELETE CASCADE,
                ordinal INTEGER NOT NULL,
                start_offset INTEGER NOT NULL,
                end_offset INTEGER NOT NULL,
                content TEXT NOT NULL,
                terms_json TEXT NOT NULL,
                embedding BLOB NOT NULL,
                dim INTEGER NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS meta (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_chunks_doc_id ON chunks(doc_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_documents_source ON documents(source)")

        self.conn.commit()

    def get_meta(self, key: str) -> Optional[str]:
        row = self.conn.execute("SELECT value FROM meta WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    @property
    def index_version(self) -> int:
        value = self.get_meta("index_version")
        return int(value) if value is not None else 0

    @property
    def model_id(self) -> Optional[str]:
        return self.get_meta("model_id")

    def save_snapshot(
        self,
        version: int,
        model_id: Optional[str],
        entries: List[IndexEntry],
        documents: List[Document],
    ) -> None:
        """Replace the stored snapshot with the given one in one transaction."""
        with self._lock:
            try:
                with self.conn:
                    self.conn.execute("DELETE FROM chunks")
                    self.conn.execute("DELETE FROM documents")
                    self.conn.executemany(
                        """
                        INSERT INTO documents (doc_id, title, source, text, ingested_at, metadata_json)
                        VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        [
                            (
                                d.doc_id,
                                d.title,
                                d.source,
                                d.text,
                                d.ingested_at.isoformat(),
                                json.dumps(d.metadata, default=str),
                            )
                            for d in documents
                        ],
                    )
                    self.conn.executemany(
                        """
                        INSERT INTO chunks (
                            chunk_id, doc_id, ordinal, start_offset, end_offset,
                            content, terms_json, embedding, dim
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        [_chunk_row(e) for e in entries],
                    )
                    self._set_meta("index_version", str(version))
                    if model_id is not None:
                        self._set_meta("model_id", model_id)
            except sqlite3.Error:
                logger.exception("Failed to persist index version %d", version)
                raise
        logger.debug("Persisted index version %d to %s", version, self.db_path)

    def _set_meta(self, key: str, value: str) -> None:
        self.conn.execute(
            "INSERT INTO meta (key, value) VALUES (?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
            (key, value),
        )

    def load(
        self, expected_model_id: Optional[str] = None
    ) -> Tuple[int, List[IndexEntry], List[Document]]:
        """
        Load the stored snapshot.

        Args:
            expected_model_id: Model the caller will query with

        Returns:
            (index_version, entries, documents)

        Raises:
            ConfigError: If the stored vectors came from a different model
        """
        stored_model = self.model_id
        if (
            expected_model_id is not None
            and stored_model is not None
            and stored_model != expected_model_id
        ):
            raise ConfigError(
                f"Index at {self.db_path} was built with {stored_model}, "
                f"but the configured embedder is {expected_model_id}. Reindex to switch models."
            )

        documents = [_row_to_document(row) for row in self.conn.execute("SELECT * FROM documents")]
        entries = [
            _row_to_entry(row)
            for row in self.conn.execute("SELECT * FROM chunks ORDER BY doc_id, ordinal")
        ]
        return self.index_version, entries, documents

    def stats(self) -> Dict[str, Any]:
        cursor = self.conn.cursor()
        docs = cursor.execute("SELECT COUNT(*) FROM documents").fetchone()[0]
        chunks = cursor.execute("SELECT COUNT(*) FROM chunks").fetchone()[0]
        return {
            "db_path": str(self.db_path),
            "documents": docs,
            "chunks": chunks,
            "index_version": self.index_version,
            "model_id": self.model_id,
        }

    def close(self) -> None:
        """Close database connection."""
        self.conn.close()


def _chunk_row(entry: IndexEntry) -> tuple:
    chunk = entry.chunk
    vector = np.asarray(entry.vector, dtype=np.float32)
    return (
        chunk.chunk_id,
        chunk.doc_id,
        chunk.ordinal,
        chunk.start,
        chunk.end,
        chunk.text,
        json.dumps(entry.terms, sort_keys=True),
        vector.tobytes(),
        int(vector.shape[0]),
    )


def _row_to_entry(row: sqlite3.Row) -> IndexEntry:
    vector = np.frombuffer(row["embedding"], dtype=np.float32)
    if vector.shape[0] != row["dim"]:
        raise ConfigError(f"Corrupt embedding for chunk {row['chunk_id']}")
    chunk = Chunk(
        chunk_id=row["chunk_id"],
        doc_id=row["doc_id"],
        text=row["content"],
        start=row["start_offset"],
        end=row["end_offset"],
        ordinal=row["ordinal"],
    )
    return IndexEntry(chunk=chunk, vector=vector.copy(), terms=json.loads(row["terms_json"]))


def _row_to_document(row: sqlite3.Row) -> Document:
    return Document(
        text=row["text"],
        title=row["title"],
        source=row["source"] or "",
        doc_id=row["doc_id"],
        ingested_at=datetime.fromisoformat(row["ingested_at"]),
        metadata=json.loads(row["metadata_json"]) if row["metadata_json"] else {},
    )
