# src/lorekeeper/candidate_retriever.py
import time
import logging
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .chunk_store import ChunkStore
from .config import RetrievalOptions
from .embedding import EmbeddingProvider
from .entity_index import EntityIndex
from .knowledge_graph import GraphStore
from .lexical_store import LexicalStore
from .models import Candidate, LexicalHit, RagQuery, VectorHit, Visibility
from .text_utils import tokenize, uniq
from .vector_store import VectorStore

logger = logging.getLogger(__name__)

# Graph score by distance from the nearest seed
DEPTH_SCORES = {0: 1.0, 1: 0.7}
FAR_DEPTH_SCORE = 0.4


def depth_score(depth: int) -> float:
    return DEPTH_SCORES.get(depth, FAR_DEPTH_SCORE)


def visibility_filter(mode: str) -> Optional[str]:
    """Player mode sees player content only; keeper mode sees everything."""
    return Visibility.PLAYER.value if mode == Visibility.PLAYER.value else None


def chunk_filter(mode: str) -> Dict[str, Any]:
    return {"kind": "chunk", "visibility": visibility_filter(mode)}


@dataclass
class SignalHits:
    """Raw output of the three retrieval signals for one query."""

    seeds: List[str] = field(default_factory=list)
    semantic: List[VectorHit] = field(default_factory=list)
    lexical: List[LexicalHit] = field(default_factory=list)
    graph: List[Candidate] = field(default_factory=list)


class CandidateRetriever:
    """
    Gathers candidate chunks from semantic, lexical and graph signals.

    The signals have no data dependency on each other and may run in
    parallel. Their hits are merged by chunk id: a later signal only fills
    fields still unset, except matched keywords, which are unioned.
    """

    def __init__(
        self,
        chunk_store: ChunkStore,
        vector_store: VectorStore,
        lexical_store: LexicalStore,
        graph_store: GraphStore,
        embedder: EmbeddingProvider,
        entity_index: EntityIndex,
        parallel: bool = False,
        latency_tracker=None,
    ):
        """
        Initialize the candidate retriever.

        Args:
            chunk_store: Chunk records
            vector_store: Dense chunk index
            lexical_store: BM25 chunk index
            graph_store: Knowledge graph
            embedder: Query embedding provider
            entity_index: Name lookup used to resolve graph seeds
            parallel: Run the three signals on a thread pool
            latency_tracker: Optional RetrievalLatencyTracker
        """
        self.chunk_store = chunk_store
        self.vector_store = vector_store
        self.lexical_store = lexical_store
        self.graph_store = graph_store
        self.embedder = embedder
        self.entity_index = entity_index
        self.parallel = parallel
        self.latency_tracker = latency_tracker

    def retrieve(
        self,
        query: RagQuery,
        options: Optional[RetrievalOptions] = None,
        query_embedding: Optional[List[float]] = None,
    ) -> Tuple[List[Candidate], Dict[str, Any]]:
        """
        Retrieve and merge candidates for a query.

        Args:
            query: Structured retrieval query
            options: Per-signal limits and hop count
            query_embedding: Precomputed query embedding; computed here if unset

        Returns:
            Tuple of (merged candidates, debug dictionary with seeds, raw hits
            per signal and query terms)
        """
        options = options or RetrievalOptions()
        text = query.query_text or query.intent
        if query_embedding is None:
            query_embedding = self.embed_query(query)

        if self.parallel:
            with ThreadPoolExecutor(max_workers=3) as executor:
                semantic_future = executor.submit(
                    self.semantic_search, query, options, query_embedding
                )
                lexical_future = executor.submit(self.lexical_search, query, options)
                graph_future = executor.submit(self.graph_search, query, options)
                seeds, graph_hits = graph_future.result()
                hits = SignalHits(
                    seeds=seeds,
                    semantic=semantic_future.result(),
                    lexical=lexical_future.result(),
                    graph=graph_hits,
                )
        else:
            semantic_hits = self.semantic_search(query, options, query_embedding)
            lexical_hits = self.lexical_search(query, options)
            seeds, graph_hits = self.graph_search(query, options)
            hits = SignalHits(
                seeds=seeds,
                semantic=semantic_hits,
                lexical=lexical_hits,
                graph=graph_hits,
            )

        query_terms = tokenize(text)
        candidates = self.merge(hits, query_terms)

        logger.debug(
            f"Retrieved {len(candidates)} candidates (semantic: {len(hits.semantic)}, "
            f"lexical: {len(hits.lexical)}, graph: {len(hits.graph)}, "
            f"seeds: {len(hits.seeds)})"
        )
        debug = {
            "seeds": hits.seeds,
            "semantic_hits": hits.semantic,
            "lexical_hits": hits.lexical,
            "graph_hits": hits.graph,
            "query_terms": query_terms,
        }
        return candidates, debug

    def _record(self, component: str, start_time: float) -> None:
        if self.latency_tracker is not None:
            self.latency_tracker.record(component, (time.time() - start_time) * 1000)

    def embed_query(self, query: RagQuery) -> List[float]:
        start_time = time.time()
        embedding = self.embedder.embed(query.query_text or query.intent)
        self._record("embed", start_time)
        return embedding

    def semantic_search(
        self,
        query: RagQuery,
        options: RetrievalOptions,
        embedding: Optional[List[float]] = None,
    ) -> List[VectorHit]:
        if embedding is None:
            embedding = self.embed_query(query)
        if not embedding:
            return []

        start_time = time.time()
        hits = self.vector_store.search(
            embedding, options.top_k_semantic, chunk_filter(query.mode)
        )
        self._record("semantic", start_time)
        return hits

    def lexical_search(
        self, query: RagQuery, options: RetrievalOptions
    ) -> List[LexicalHit]:
        start_time = time.time()
        hits = self.lexical_store.search(
            query.query_text or query.intent,
            options.top_k_lexical,
            chunk_filter(query.mode),
        )
        self._record("lexical", start_time)
        return hits

    def graph_search(
        self, query: RagQuery, options: RetrievalOptions
    ) -> Tuple[List[str], List[Candidate]]:
        start_time = time.time()
        seeds = self.seed_nodes(query)
        candidates = self.expand_graph(seeds, options, query.mode)
        self._record("graph", start_time)
        return seeds, candidates

    def seed_nodes(self, query: RagQuery) -> List[str]:
        """
        Resolve graph seeds from the query entities.

        Seeds are, in order: the current scenario (by id, then by name), the
        target as an NPC or a clue, NPCs in the scene and discovered clues.
        """
        entities = query.entities
        index = self.entity_index
        seeds = [
            index.resolve_scenario(entities.current_scenario_id)
            or index.resolve_scenario(entities.current_scenario_name),
            index.resolve_npc(entities.target_name)
            or index.resolve_clue(entities.target_name),
        ]
        seeds.extend(index.resolve_npc(name) for name in entities.npcs_in_scene)
        seeds.extend(
            index.resolve_clue(clue_id) for clue_id in entities.discovered_clues
        )
        return uniq(seeds)

    def expand_graph(
        self, seeds: List[str], options: RetrievalOptions, mode: str
    ) -> List[Candidate]:
        """
        Breadth-first expansion from the seeds, up to ``graph_hops`` edges away.

        Each node is visited once, at its smallest depth. A visited node's
        visible chunks become candidates scored by depth and carry the node
        path from their seed.

        Args:
            seeds: Seed node ids
            options: Retrieval options
            mode: Visibility mode

        Returns:
            Up to ``top_k_graph`` candidates, best score first
        """
        visibility = visibility_filter(mode)
        queue = deque((seed, 0, [seed]) for seed in seeds)
        visited = set()
        candidates = []

        while queue:
            node_id, depth, path = queue.popleft()
            if node_id in visited or depth > options.graph_hops:
                continue
            visited.add(node_id)

            node = self.graph_store.get_node(node_id)
            if node is None:
                continue

            for chunk_id in node.chunk_ids:
                chunk = self.chunk_store.get(chunk_id)
                if chunk is None:
                    continue
                if visibility is not None and chunk.visibility != visibility:
                    continue
                candidates.append(
                    Candidate(
                        chunk_id=chunk_id,
                        node_id=node_id,
                        graph_score=depth_score(depth),
                        graph_path=list(path),
                    )
                )

            if depth == options.graph_hops:
                continue
            for edge in self.graph_store.neighbors(node_id, visibility=visibility):
                if edge.to_id not in visited:
                    queue.append((edge.to_id, depth + 1, [*path, edge.to_id]))

        candidates.sort(key=lambda c: c.graph_score, reverse=True)
        return candidates[: options.top_k_graph]

    def merge(self, hits: SignalHits, query_terms: List[str]) -> List[Candidate]:
        """Merge signal hits by chunk id, in semantic, lexical, graph order."""
        merged: Dict[str, Candidate] = {}

        def upsert(hit: Candidate) -> None:
            existing = merged.get(hit.chunk_id)
            if existing is None:
                merged[hit.chunk_id] = hit
                return
            for name in (
                "node_id",
                "semantic_score",
                "lexical_score",
                "graph_score",
                "graph_path",
            ):
                if getattr(existing, name) is None:
                    setattr(existing, name, getattr(hit, name))
            if hit.matched_keywords:
                existing.matched_keywords = uniq(
                    [*(existing.matched_keywords or []), *hit.matched_keywords]
                )

        for hit in hits.semantic:
            upsert(
                Candidate(
                    chunk_id=hit.id,
                    node_id=hit.payload.get("node_id"),
                    semantic_score=hit.score,
                )
            )

        for hit in hits.lexical:
            chunk = self.chunk_store.get(hit.id)
            if chunk is None:
                continue
            chunk_tokens = set(tokenize(" ".join([chunk.text, *chunk.tags])))
            matched = uniq(term for term in query_terms if term in chunk_tokens)
            upsert(
                Candidate(
                    chunk_id=hit.id,
                    node_id=chunk.node_id,
                    lexical_score=hit.score,
                    matched_keywords=matched or None,
                )
            )

        for candidate in hits.graph:
            upsert(candidate)

        return list(merged.values())
