# src/lorekeeper/hybrid_retriever.py
import logging
import time
import threading
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Union

from .candidate_retriever import CandidateRetriever
from .chunk_store import ChunkStore, InMemoryChunkStore, SqliteChunkStore
from .config import EngineConfig, RetrievalOptions
from .database import SqliteDatabase
from .delta_updater import DeltaUpdater
from .embedding import EmbeddingProvider, create_embedding_provider
from .entity_index import EntityIndex
from .evidence_assembler import EvidenceAssembler
from .knowledge_builder import BuildBatch, BuildOptions, KnowledgeBaseBuilder
from .knowledge_graph import GraphStore, InMemoryGraphStore, SqliteGraphStore
from .latency_tracker import RetrievalLatencyTracker
from .lexical_store import InMemoryLexicalStore, LexicalStore, SqliteLexicalStore
from .models import (
    Candidate,
    Evidence,
    KnowledgeDelta,
    ModuleData,
    RagQuery,
    RankedCandidate,
    Visibility,
    now_ms,
)
from .query_builder import QueryBuilder
from .query_logger import RagQueryLogEntry, RagQueryLogger
from .ranker import Ranker
from .vector_store import InMemoryVectorStore, SqliteVectorStore, VectorStore

logger = logging.getLogger(__name__)


@dataclass
class RetrievalResult:
    """Evidence for one turn plus the debug bundle used for tuning."""

    evidence: List[Evidence] = field(default_factory=list)
    debug: Dict[str, Any] = field(default_factory=dict)


class HybridRetriever:
    """
    Hybrid retrieval engine for a game session.

    Combines dense vector search, BM25 keyword search and knowledge graph
    expansion over one shared chunk corpus, then ranks the merged candidates
    with action-dependent weights. It owns:

    - The chunk, vector, lexical and graph stores (in memory, or SQLite when a
      database path is configured)
    - Ingestion of module data and single-entity deltas
    - Per-turn query building, retrieval, ranking and evidence assembly
    - Latency tracking and the optional structured query log
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        chunk_store: Optional[ChunkStore] = None,
        vector_store: Optional[VectorStore] = None,
        lexical_store: Optional[LexicalStore] = None,
        graph_store: Optional[GraphStore] = None,
        embedder: Optional[EmbeddingProvider] = None,
        latency_tracker: Optional[RetrievalLatencyTracker] = None,
        query_builder: Optional[QueryBuilder] = None,
        database: Optional[SqliteDatabase] = None,
    ):
        """
        Initialize the engine.

        Stores not supplied are created from the configuration. Over an
        existing SQLite file the entity index is rebuilt from the stored
        graph, so a reopened session retrieves without re-ingesting.

        Args:
            config: Engine configuration
            chunk_store: Chunk store
            vector_store: Vector store
            lexical_store: Lexical store
            graph_store: Graph store
            embedder: Embedding provider
            latency_tracker: Latency tracker
            query_builder: Query builder
            database: Shared SQLite database; opened from config.db_path if unset

        Raises:
            StoreUnavailableError: If the configured database cannot be opened
        """
        self.config = config or EngineConfig()

        self.database = database
        if self.database is None and self.config.db_path:
            self.database = SqliteDatabase(self.config.db_path)

        if self.database is not None:
            self.chunk_store = chunk_store or SqliteChunkStore(self.database)
            self.vector_store = vector_store or SqliteVectorStore(self.database)
            self.lexical_store = lexical_store or SqliteLexicalStore(self.database)
            self.graph_store = graph_store or SqliteGraphStore(self.database)
        else:
            self.chunk_store = chunk_store or InMemoryChunkStore()
            self.vector_store = vector_store or InMemoryVectorStore()
            self.lexical_store = lexical_store or InMemoryLexicalStore()
            self.graph_store = graph_store or InMemoryGraphStore()

        self.embedder = embedder or create_embedding_provider(
            backend=self.config.embedding_backend,
            model=self.config.embedding_model,
            endpoint=self.config.embedding_endpoint,
            api_key_env=self.config.embedding_api_key_env,
            max_retries=self.config.embedding_max_retries,
        )
        self.latency_tracker = latency_tracker or RetrievalLatencyTracker(
            default_budget_ms=self.config.latency_budget_ms
        )
        self.query_builder = query_builder or QueryBuilder()

        # Builds and deltas run one at a time. Readers only wait on the
        # store writes of a commit, never on embedding.
        self._ingest_lock = threading.Lock()
        self._write_lock = threading.RLock()

        self.entity_index = EntityIndex()
        self.builder = KnowledgeBaseBuilder(
            self.chunk_store,
            self.vector_store,
            self.lexical_store,
            self.graph_store,
            self.embedder,
            self.entity_index,
            database=self.database,
            write_lock=self._write_lock,
        )
        self.delta_updater = DeltaUpdater(self.builder)
        self.candidate_retriever = CandidateRetriever(
            self.chunk_store,
            self.vector_store,
            self.lexical_store,
            self.graph_store,
            self.embedder,
            self.entity_index,
            parallel=self.config.parallel_signals,
            latency_tracker=self.latency_tracker,
        )
        self.ranker = Ranker(self.chunk_store)
        self.evidence_assembler = EvidenceAssembler(self.chunk_store)
        self.query_logger = RagQueryLogger(
            self.database, enabled=self.config.enable_query_logging
        )

        graph = self.graph_store.get_graph()
        if graph.nodes:
            self.entity_index.rebuild(graph)

        logger.info(
            f"Initialized hybrid retriever (backing="
            f"{'sqlite' if self.database is not None else 'memory'}, "
            f"embedder={getattr(self.embedder, 'name', type(self.embedder).__name__)}, "
            f"nodes={len(graph.nodes)}, query_logging={self.query_logger.enabled})"
        )

    def build_options(self) -> BuildOptions:
        return BuildOptions(
            module_name=self.config.module_name,
            enable_similarity_edges=self.config.enable_similarity_edges,
            similarity_top_k=self.config.similarity_top_k,
            similarity_threshold=self.config.similarity_threshold,
        )

    def build_knowledge_base(
        self,
        module_data: Union[ModuleData, Dict[str, Any]],
        options: Optional[BuildOptions] = None,
    ) -> BuildBatch:
        """
        Ingest a full module payload.

        Args:
            module_data: ModuleData or its dictionary form
            options: Build options; defaults to the engine configuration

        Returns:
            The committed batch
        """
        if isinstance(module_data, dict):
            module_data = ModuleData.from_dict(module_data)
        with self._ingest_lock:
            return self.builder.build(module_data, options or self.build_options())

    def apply_delta(
        self, delta: KnowledgeDelta, options: Optional[BuildOptions] = None
    ) -> List[str]:
        """
        Apply a single-entity update.

        Returns:
            Ids of the nodes written

        Raises:
            DeltaError: If the delta kind is unknown
        """
        with self._ingest_lock:
            return self.delta_updater.apply(delta, options or self.build_options())

    def run_for_turn(
        self,
        state: Dict[str, Any],
        mode: str = Visibility.PLAYER.value,
        weights: Optional[Dict[str, float]] = None,
        retrieval: Optional[Union[RetrievalOptions, Dict[str, Any]]] = None,
        top_n: Optional[int] = None,
        use_dynamic_weights: Optional[bool] = None,
        skip_writeback: bool = False,
    ) -> RetrievalResult:
        """
        Retrieve ranked, explainable evidence for the current turn.

        Unless ``skip_writeback`` is set, the evidence is also stored as dicts
        under ``state["temporary_info"]["rag_results"]``.

        Args:
            state: Game state dictionary
            mode: "player" or "keeper"
            weights: Partial weight overrides
            retrieval: Retrieval options, or a dict overriding the configured ones
            top_n: Maximum number of evidence records
            use_dynamic_weights: Select weights by action type
            skip_writeback: Leave the game state untouched

        Returns:
            Evidence list and debug bundle
        """
        start_time = time.time()
        options = self._retrieval_options(retrieval, top_n, use_dynamic_weights)

        query = self.query_builder.build_rag_query(state, mode)
        weights_used = self.ranker.resolve_weights(
            query.action_type, weights, options.use_dynamic_weights
        )
        logger.debug(
            f"Retrieval query: {query.query_text or query.intent!r} "
            f"(action_type={query.action_type}, mode={mode})"
        )

        query_embedding = self.candidate_retriever.embed_query(query)
        with self._write_lock:
            candidates, debug = self.candidate_retriever.retrieve(
                query, options, query_embedding
            )

            rank_start = time.time()
            ranked = self.ranker.rank(candidates, query, weights_used, options.top_n)
            self.latency_tracker.record("rank", (time.time() - rank_start) * 1000)

            assemble_start = time.time()
            evidence = self.evidence_assembler.assemble(ranked)
            self.latency_tracker.record(
                "assemble", (time.time() - assemble_start) * 1000
            )

        if not skip_writeback:
            temporary_info = state.setdefault("temporary_info", {})
            temporary_info["rag_results"] = [item.to_dict() for item in evidence]

        execution_time_ms = (time.time() - start_time) * 1000
        self.latency_tracker.record("total", execution_time_ms)

        if self.query_logger.enabled:
            self._log_query(
                state,
                mode,
                query,
                weights_used,
                debug,
                candidates,
                ranked,
                evidence,
                execution_time_ms,
            )

        logger.debug(
            f"Retrieved {len(evidence)} evidence records from {len(candidates)} "
            f"candidates in {execution_time_ms:.2f}ms"
        )

        debug.update(
            {
                "query": query,
                "weights": weights_used,
                "used_dynamic_weights": options.use_dynamic_weights,
                "action_type": query.action_type,
                "execution_time_ms": execution_time_ms,
            }
        )
        return RetrievalResult(evidence=evidence, debug=debug)

    def _retrieval_options(
        self,
        retrieval: Optional[Union[RetrievalOptions, Dict[str, Any]]],
        top_n: Optional[int],
        use_dynamic_weights: Optional[bool],
    ) -> RetrievalOptions:
        if isinstance(retrieval, RetrievalOptions):
            options = retrieval
        else:
            options = RetrievalOptions.from_dict(
                {**self.config.retrieval.to_dict(), **(retrieval or {})}
            )
        if top_n is not None:
            options = replace(options, top_n=top_n)
        if use_dynamic_weights is not None:
            options = replace(options, use_dynamic_weights=use_dynamic_weights)
        return options

    def _log_query(
        self,
        state: Dict[str, Any],
        mode: str,
        query: RagQuery,
        weights: Dict[str, float],
        debug: Dict[str, Any],
        candidates: List[Candidate],
        ranked: List[RankedCandidate],
        evidence: List[Evidence],
        execution_time_ms: float,
    ) -> None:
        """Record one retrieval in the query log; failures are only logged."""
        try:
            entry = RagQueryLogEntry(
                session_id=state.get("session_id"),
                turn_number=state.get("turn_number"),
                timestamp=now_ms(),
                mode=mode,
                action_type=query.action_type,
                query_text=query.query_text or query.intent,
                seeds=debug["seeds"],
                weights=weights,
                semantic_hits_count=len(debug["semantic_hits"]),
                lexical_hits_count=len(debug["lexical_hits"]),
                graph_hits_count=len(debug["graph_hits"]),
                total_candidates=len(candidates),
                final_results_count=len(evidence),
                top_results=[
                    {
                        "chunk_id": item.chunk_id,
                        "score": item.final_score,
                        "type": self._chunk_type(item.chunk_id),
                    }
                    for item in ranked[:5]
                ],
                execution_time_ms=int(execution_time_ms),
            )
            self.query_logger.log(entry)
        except Exception as e:
            logger.warning(f"Failed to record retrieval log: {str(e)}")

    def _chunk_type(self, chunk_id: str) -> Optional[str]:
        chunk = self.chunk_store.get(chunk_id)
        return chunk.type if chunk else None

    def format_context(self, evidence: List[Evidence]) -> str:
        return self.evidence_assembler.format_context(evidence)

    def get_query_logger(self) -> RagQueryLogger:
        return self.query_logger

    def get_stats(self) -> Dict[str, Any]:
        """
        Get statistics about the knowledge base and retrieval performance.

        Returns:
            Dictionary with graph, chunk, build and latency statistics
        """
        return {
            "graph": self.graph_store.get_stats(),
            "chunk_count": len(self.chunk_store.values()),
            "builder": dict(self.builder.stats),
            "deltas": dict(self.delta_updater.stats),
            "latency": self.latency_tracker.get_statistics(),
        }

    def close(self) -> None:
        if self.database is not None:
            self.database.close()

    def __enter__(self) -> "HybridRetriever":
        return self

    def __exit__(self, *args) -> None:
        self.close()
