# src/lorekeeper/vector_store.py
import json
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .database import SqliteDatabase
from .models import VectorHit, now_ms
from .text_utils import cosine_similarity, matches_filter

logger = logging.getLogger(__name__)


class VectorStore(ABC):
    """
    Nearest-neighbor index over embeddings.

    Scoring is brute-force cosine similarity, which suits a session-scoped
    corpus of hundreds to low thousands of vectors. The payload filter is
    applied before scoring.
    """

    @abstractmethod
    def upsert(self, vectors: List[Dict[str, Any]]) -> None:
        """
        Insert or replace vectors.

        Args:
            vectors: Dicts with "id", "embedding" and optional "payload"
        """
        pass

    @abstractmethod
    def delete(self, ids: Iterable[str]) -> None:
        pass

    @abstractmethod
    def _records(self) -> List[Tuple[str, List[float], Dict[str, Any]]]:
        """All stored (id, embedding, payload) triples."""
        pass

    @abstractmethod
    def _record(self, vector_id: str) -> Optional[Tuple[List[float], Dict[str, Any]]]:
        pass

    def search(
        self,
        query_embedding: List[float],
        top_k: int,
        filter: Optional[Dict[str, Any]] = None,
    ) -> List[VectorHit]:
        """
        Rank stored vectors by cosine similarity to a query embedding.

        Args:
            query_embedding: Query vector
            top_k: Maximum number of hits
            filter: Exact-match payload predicate

        Returns:
            Hits sorted by descending similarity
        """
        hits = [
            VectorHit(
                id=vector_id,
                score=cosine_similarity(query_embedding, embedding),
                payload=payload,
            )
            for vector_id, embedding, payload in self._records()
            if matches_filter(payload, filter)
        ]
        hits.sort(key=lambda hit: hit.score, reverse=True)
        return hits[:top_k]

    def knn_by_id(
        self,
        vector_id: str,
        top_k: int,
        filter: Optional[Dict[str, Any]] = None,
    ) -> List[VectorHit]:
        """Nearest neighbors of a stored vector, excluding itself."""
        source = self._record(vector_id)
        if source is None:
            return []
        source_embedding, _ = source
        hits = [
            VectorHit(
                id=other_id,
                score=cosine_similarity(source_embedding, embedding),
                payload=payload,
            )
            for other_id, embedding, payload in self._records()
            if other_id != vector_id and matches_filter(payload, filter)
        ]
        hits.sort(key=lambda hit: hit.score, reverse=True)
        return hits[:top_k]

    def count(self, filter: Optional[Dict[str, Any]] = None) -> int:
        return sum(
            1 for _, _, payload in self._records() if matches_filter(payload, filter)
        )


class InMemoryVectorStore(VectorStore):
    def __init__(self):
        self._vectors: Dict[str, Tuple[List[float], Dict[str, Any]]] = {}
        self._lock = threading.RLock()

    def upsert(self, vectors: List[Dict[str, Any]]) -> None:
        with self._lock:
            for vector in vectors:
                self._vectors[vector["id"]] = (
                    list(vector["embedding"]),
                    dict(vector.get("payload") or {}),
                )

    def delete(self, ids: Iterable[str]) -> None:
        with self._lock:
            for vector_id in ids:
                self._vectors.pop(vector_id, None)

    def _records(self) -> List[Tuple[str, List[float], Dict[str, Any]]]:
        with self._lock:
            return [
                (vector_id, emb, payload)
                for vector_id, (emb, payload) in self._vectors.items()
            ]

    def _record(self, vector_id: str) -> Optional[Tuple[List[float], Dict[str, Any]]]:
        return self._vectors.get(vector_id)


class SqliteVectorStore(VectorStore):
    def __init__(self, db: SqliteDatabase):
        self.db = db

    def upsert(self, vectors: List[Dict[str, Any]]) -> None:
        timestamp = now_ms()
        rows = [
            (
                vector["id"],
                json.dumps(list(vector["embedding"])),
                json.dumps(vector.get("payload") or {}),
                timestamp,
            )
            for vector in vectors
        ]
        if rows:
            self.db.executemany(
                "INSERT OR REPLACE INTO rag_vectors (id, embedding, payload, updated_at) "
                "VALUES (?, ?, ?, ?)",
                rows,
            )

    def delete(self, ids: Iterable[str]) -> None:
        rows = [(vector_id,) for vector_id in ids]
        if rows:
            self.db.executemany("DELETE FROM rag_vectors WHERE id = ?", rows)

    def _records(self) -> List[Tuple[str, List[float], Dict[str, Any]]]:
        rows = self.db.fetchall("SELECT id, embedding, payload FROM rag_vectors")
        return [
            (
                row["id"],
                json.loads(row["embedding"]),
                json.loads(row["payload"] or "{}"),
            )
            for row in rows
        ]

    def _record(self, vector_id: str) -> Optional[Tuple[List[float], Dict[str, Any]]]:
        row = self.db.fetchone(
            "SELECT embedding, payload FROM rag_vectors WHERE id = ?", (vector_id,)
        )
        if row is None:
            return None
        return json.loads(row["embedding"]), json.loads(row["payload"] or "{}")
