# src/lorekeeper/lexical_store.py
import json
import math
import logging
import threading
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from .database import SqliteDatabase
from .models import LexicalHit, now_ms
from .text_utils import matches_filter, tokenize

logger = logging.getLogger(__name__)

BM25_K1 = 1.5
BM25_B = 0.75


@dataclass
class LexicalDocument:
    """Indexed form of a document: term frequencies and token length."""

    id: str
    text: str
    tags: List[str] = field(default_factory=list)
    payload: Dict[str, Any] = field(default_factory=dict)
    term_freqs: Dict[str, int] = field(default_factory=dict)
    length: int = 1

    @classmethod
    def from_input(cls, doc: Dict[str, Any]) -> "LexicalDocument":
        tags = list(doc.get("tags") or [])
        tokens = tokenize(" ".join([doc["text"], *tags]))
        return cls(
            id=doc["id"],
            text=doc["text"],
            tags=tags,
            payload=dict(doc.get("payload") or {}),
            term_freqs=dict(Counter(tokens)),
            length=len(tokens) or 1,
        )


def bm25_rank(
    terms: List[str],
    documents: List[LexicalDocument],
    top_k: int,
    k1: float = BM25_K1,
    b: float = BM25_B,
) -> List[LexicalHit]:
    """
    Score documents against query terms with Okapi BM25.

    Document frequency and average length are computed over ``documents``
    only, so callers pass the already filtered candidate set. Documents that
    contain no query term are not scored.

    Args:
        terms: Query tokens; repeated terms count repeatedly
        documents: Candidate documents
        top_k: Maximum number of hits
        k1: Term frequency saturation
        b: Length normalization

    Returns:
        Hits with a positive score, best first
    """
    if not terms or not documents:
        return []

    n_docs = len(documents)
    avgdl = sum(doc.length for doc in documents) / n_docs
    doc_freq = {
        term: sum(1 for doc in documents if term in doc.term_freqs)
        for term in set(terms)
    }

    hits = []
    for doc in documents:
        score = 0.0
        for term in terms:
            tf = doc.term_freqs.get(term, 0)
            if tf == 0:
                continue
            df = doc_freq[term]
            idf = math.log((n_docs - df + 0.5) / (df + 0.5) + 1)
            denominator = tf + k1 * (1 - b + b * doc.length / avgdl)
            score += idf * (tf * (k1 + 1)) / denominator
        if score > 0:
            hits.append(LexicalHit(id=doc.id, score=score, payload=doc.payload))

    hits.sort(key=lambda hit: hit.score, reverse=True)
    return hits[:top_k]


class LexicalStore(ABC):
    """Sparse text index scored with BM25 (k1=1.5, b=0.75)."""

    k1 = BM25_K1
    b = BM25_B

    @abstractmethod
    def upsert(self, docs: List[Dict[str, Any]]) -> None:
        """
        Insert or replace documents.

        Args:
            docs: Dicts with "id", "text" and optional "tags" and "payload"
        """
        pass

    @abstractmethod
    def delete(self, ids: Iterable[str]) -> None:
        pass

    @abstractmethod
    def _documents(self) -> List[LexicalDocument]:
        pass

    def search(
        self, query: str, top_k: int, filter: Optional[Dict[str, Any]] = None
    ) -> List[LexicalHit]:
        terms = tokenize(query)
        if not terms:
            return []
        documents = [
            doc for doc in self._documents() if matches_filter(doc.payload, filter)
        ]
        return bm25_rank(terms, documents, top_k, self.k1, self.b)


class InMemoryLexicalStore(LexicalStore):
    def __init__(self):
        self._docs: Dict[str, LexicalDocument] = {}
        self._lock = threading.RLock()

    def upsert(self, docs: List[Dict[str, Any]]) -> None:
        with self._lock:
            for doc in docs:
                indexed = LexicalDocument.from_input(doc)
                self._docs[indexed.id] = indexed

    def delete(self, ids: Iterable[str]) -> None:
        with self._lock:
            for doc_id in ids:
                self._docs.pop(doc_id, None)

    def _documents(self) -> List[LexicalDocument]:
        with self._lock:
            return list(self._docs.values())


class SqliteLexicalStore(LexicalStore):
    def __init__(self, db: SqliteDatabase):
        self.db = db

    def upsert(self, docs: List[Dict[str, Any]]) -> None:
        timestamp = now_ms()
        rows = []
        for doc in docs:
            indexed = LexicalDocument.from_input(doc)
            rows.append(
                (
                    indexed.id,
                    indexed.text,
                    json.dumps(indexed.tags),
                    json.dumps(indexed.payload),
                    json.dumps(indexed.term_freqs),
                    indexed.length,
                    timestamp,
                )
            )
        if rows:
            self.db.executemany(
                """
                INSERT OR REPLACE INTO rag_lexical
                (id, text, tags, payload, tokens, length, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )

    def delete(self, ids: Iterable[str]) -> None:
        rows = [(doc_id,) for doc_id in ids]
        if rows:
            self.db.executemany("DELETE FROM rag_lexical WHERE id = ?", rows)

    def _documents(self) -> List[LexicalDocument]:
        rows = self.db.fetchall(
            "SELECT id, text, tags, payload, tokens, length FROM rag_lexical"
        )
        return [
            LexicalDocument(
                id=row["id"],
                text=row["text"],
                tags=json.loads(row["tags"] or "[]"),
                payload=json.loads(row["payload"] or "{}"),
                term_freqs=json.loads(row["tokens"] or "{}"),
                length=row["length"] or 1,
            )
            for row in rows
        ]
