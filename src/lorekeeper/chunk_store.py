# src/lorekeeper/chunk_store.py
import json
import logging
import threading
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional

from .database import SqliteDatabase
from .models import KnowledgeChunk

logger = logging.getLogger(__name__)


class ChunkStore(ABC):
    """Key-value store of knowledge chunks."""

    @abstractmethod
    def set(self, chunk: KnowledgeChunk) -> None:
        """Insert or replace a chunk by id."""
        pass

    def set_many(self, chunks: Iterable[KnowledgeChunk]) -> None:
        for chunk in chunks:
            self.set(chunk)

    @abstractmethod
    def remove(self, ids: Iterable[str]) -> None:
        pass

    @abstractmethod
    def get(self, chunk_id: str) -> Optional[KnowledgeChunk]:
        pass

    @abstractmethod
    def values(self) -> List[KnowledgeChunk]:
        """Full scan of stored chunks."""
        pass


class InMemoryChunkStore(ChunkStore):
    def __init__(self):
        self._chunks: Dict[str, KnowledgeChunk] = {}
        self._lock = threading.RLock()

    def set(self, chunk: KnowledgeChunk) -> None:
        with self._lock:
            self._chunks[chunk.id] = chunk

    def remove(self, ids: Iterable[str]) -> None:
        with self._lock:
            for chunk_id in ids:
                self._chunks.pop(chunk_id, None)

    def get(self, chunk_id: str) -> Optional[KnowledgeChunk]:
        return self._chunks.get(chunk_id)

    def values(self) -> List[KnowledgeChunk]:
        with self._lock:
            return list(self._chunks.values())

    def __len__(self) -> int:
        return len(self._chunks)


class SqliteChunkStore(ChunkStore):
    def __init__(self, db: SqliteDatabase):
        self.db = db

    def set(self, chunk: KnowledgeChunk) -> None:
        self.set_many([chunk])

    def set_many(self, chunks: Iterable[KnowledgeChunk]) -> None:
        rows = [
            (
                chunk.id,
                chunk.type,
                chunk.node_id,
                chunk.visibility,
                chunk.title,
                chunk.text,
                json.dumps(chunk.tags),
                chunk.source_module,
                chunk.source_ref,
                json.dumps(chunk.anchors),
                chunk.updated_at,
            )
            for chunk in chunks
        ]
        if not rows:
            return
        self.db.executemany(
            """
            INSERT OR REPLACE INTO rag_chunks
            (id, type, node_id, visibility, title, text, tags, source_module,
             source_ref, anchors, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            rows,
        )

    def remove(self, ids: Iterable[str]) -> None:
        rows = [(chunk_id,) for chunk_id in ids]
        if rows:
            self.db.executemany("DELETE FROM rag_chunks WHERE id = ?", rows)

    def get(self, chunk_id: str) -> Optional[KnowledgeChunk]:
        row = self.db.fetchone("SELECT * FROM rag_chunks WHERE id = ?", (chunk_id,))
        return self._row_to_chunk(row) if row else None

    def values(self) -> List[KnowledgeChunk]:
        rows = self.db.fetchall("SELECT * FROM rag_chunks ORDER BY id")
        return [self._row_to_chunk(row) for row in rows]

    @staticmethod
    def _row_to_chunk(row) -> KnowledgeChunk:
        return KnowledgeChunk(
            id=row["id"],
            type=row["type"],
            node_id=row["node_id"],
            visibility=row["visibility"],
            title=row["title"] or "",
            text=row["text"] or "",
            tags=json.loads(row["tags"] or "[]"),
            source_module=row["source_module"] or "",
            source_ref=row["source_ref"],
            anchors=json.loads(row["anchors"] or "{}"),
            updated_at=row["updated_at"] or 0,
        )
