from __future__ import annotations

from array import array
from collections.abc import Mapping
import hashlib
import math
from pathlib import Path
import sqlite3
from typing import Protocol

import structlog

from pdfchat.services.rag.errors import VectorIndexError
from pdfchat.services.rag.types import ChunkRecord, IndexHit

logger = structlog.get_logger(__name__)

FILTERABLE_KEYS = {"document_id": "c.document_id", "source": "c.source"}


class VectorIndex(Protocol):
    def upsert(self, chunks: list[ChunkRecord], vectors: list[list[float]]) -> int: ...

    def query(
        self,
        vector: list[float],
        k: int,
        filter: Mapping[str, str],
    ) -> list[IndexHit]: ...

    def count(self, document_id: str) -> int: ...

    def delete_document(self, document_id: str) -> int: ...


def _encode_embedding(values: list[float]) -> bytes:
    vector = array("f", values)
    return vector.tobytes()


def _decode_embedding(blob: bytes) -> list[float]:
    vector = array("f")
    vector.frombytes(blob)
    return vector.tolist()


def _content_hash(chunks: list[ChunkRecord]) -> str:
    digest = hashlib.sha256()
    for chunk in chunks:
        digest.update(chunk.text.encode("utf-8"))
    return digest.hexdigest()


def _cosine(a: list[float], b: list[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def _ensure_schema(connection: sqlite3.Connection) -> None:
    connection.executescript(
        """
        PRAGMA foreign_keys = ON;

        CREATE TABLE IF NOT EXISTS documents (
            id TEXT PRIMARY KEY,
            content_hash TEXT NOT NULL,
            chunk_count INTEGER NOT NULL,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS chunks (
            id TEXT PRIMARY KEY,
            document_id TEXT NOT NULL,
            chunk_index INTEGER NOT NULL,
            source TEXT NOT NULL,
            text TEXT NOT NULL,
            embedding BLOB NOT NULL,
            embedding_dim INTEGER NOT NULL,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (document_id) REFERENCES documents(id) ON DELETE CASCADE,
            UNIQUE (document_id, chunk_index)
        );

        CREATE INDEX IF NOT EXISTS idx_chunks_document_id ON chunks(document_id);
        CREATE INDEX IF NOT EXISTS idx_chunks_source ON chunks(source);
        """
    )


class SqliteVectorIndex:
    """Single-file vector index shared by all documents.

    Every row carries its ``document_id``; queries filter on it before scoring.
    Upserts replace a document's whole chunk set inside one transaction, so a
    reader sees either the previous ingestion run or the new one. Connections
    are opened per call, which keeps the index safe to share between threads.
    """

    def __init__(self, db_path: Path, *, timeout_seconds: float = 30.0) -> None:
        self._db_path = db_path
        self._timeout_seconds = timeout_seconds
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        connection = self._connect()
        try:
            _ensure_schema(connection)
        except sqlite3.Error as exc:
            raise VectorIndexError(f"unable to create vector index schema: {exc}") from exc
        finally:
            connection.close()

    def _connect(self) -> sqlite3.Connection:
        try:
            connection = sqlite3.connect(self._db_path, timeout=self._timeout_seconds)
        except sqlite3.Error as exc:
            raise VectorIndexError(f"unable to open vector index {self._db_path}: {exc}") from exc
        connection.execute("PRAGMA foreign_keys = ON")
        return connection

    def upsert(self, chunks: list[ChunkRecord], vectors: list[list[float]]) -> int:
        if len(chunks) != len(vectors):
            raise ValueError("chunks and vectors must have the same length")
        if not chunks:
            return 0
        for chunk in chunks:
            if not chunk.document_id:
                raise ValueError(f"chunk {chunk.chunk_index} is missing its document_id")

        by_document: dict[str, list[tuple[ChunkRecord, list[float]]]] = {}
        for chunk, vector in zip(chunks, vectors):
            if not vector:
                raise ValueError(f"chunk {chunk.chunk_id} has an empty vector")
            by_document.setdefault(chunk.document_id, []).append((chunk, vector))

        connection = self._connect()
        try:
            with connection:
                for document_id, rows in by_document.items():
                    connection.execute("DELETE FROM documents WHERE id = ?", (document_id,))
                    connection.execute(
                        "INSERT INTO documents (id, content_hash, chunk_count) VALUES (?, ?, ?)",
                        (document_id, _content_hash([chunk for chunk, _ in rows]), len(rows)),
                    )
                    connection.executemany(
                        """
                        INSERT INTO chunks
                            (id, document_id, chunk_index, source, text, embedding, embedding_dim)
                        VALUES (?, ?, ?, ?, ?, ?, ?)
                        """,
                        [
                            (
                                chunk.chunk_id,
                                chunk.document_id,
                                chunk.chunk_index,
                                chunk.source,
                                chunk.text,
                                sqlite3.Binary(_encode_embedding(vector)),
                                len(vector),
                            )
                            for chunk, vector in rows
                        ],
                    )
        except sqlite3.Error as exc:
            raise VectorIndexError(f"upsert of {len(chunks)} chunks failed: {exc}") from exc
        finally:
            connection.close()

        logger.info(
            "vector_index_upserted",
            documents=sorted(by_document),
            chunks=len(chunks),
        )
        return len(chunks)

    def query(
        self,
        vector: list[float],
        k: int,
        filter: Mapping[str, str],
    ) -> list[IndexHit]:
        if k <= 0:
            return []
        unknown = set(filter) - set(FILTERABLE_KEYS)
        if unknown:
            raise ValueError(f"unsupported filter keys: {sorted(unknown)}")

        clauses = [f"{FILTERABLE_KEYS[key]} = ?" for key in sorted(filter)]
        params = [filter[key] for key in sorted(filter)]
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        connection = self._connect()
        try:
            rows = connection.execute(
                f"""
                SELECT c.document_id, c.chunk_index, c.source, c.text, c.embedding, c.embedding_dim
                FROM chunks c
                {where}
                ORDER BY c.chunk_index
                """,
                params,
            ).fetchall()
        except sqlite3.Error as exc:
            raise VectorIndexError(f"vector query failed: {exc}") from exc
        finally:
            connection.close()

        hits: list[IndexHit] = []
        for document_id, chunk_index, source, text, embedding_blob, embedding_dim in rows:
            embedding = _decode_embedding(embedding_blob)
            if len(embedding) != embedding_dim:
                continue
            hits.append(
                IndexHit(
                    chunk=ChunkRecord(
                        document_id=document_id,
                        chunk_index=chunk_index,
                        source=source,
                        text=text,
                    ),
                    similarity=_cosine(vector, embedding),
                )
            )

        hits.sort(key=lambda hit: (-hit.similarity, hit.chunk.chunk_index))
        return hits[:k]

    def count(self, document_id: str) -> int:
        connection = self._connect()
        try:
            row = connection.execute(
                "SELECT COUNT(*) FROM chunks WHERE document_id = ?", (document_id,)
            ).fetchone()
        except sqlite3.Error as exc:
            raise VectorIndexError(f"chunk count failed: {exc}") from exc
        finally:
            connection.close()
        return int(row[0])

    def delete_document(self, document_id: str) -> int:
        connection = self._connect()
        try:
            with connection:
                deleted = connection.execute(
                    "DELETE FROM chunks WHERE document_id = ?", (document_id,)
                ).rowcount
                connection.execute("DELETE FROM documents WHERE id = ?", (document_id,))
        except sqlite3.Error as exc:
            raise VectorIndexError(f"delete of document {document_id} failed: {exc}") from exc
        finally:
            connection.close()
        return int(deleted)
