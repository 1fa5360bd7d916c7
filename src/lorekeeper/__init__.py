# src/lorekeeper/__init__.py
"""
Hybrid retrieval engine for tabletop game sessions.

This package indexes a game module (scenarios, NPCs, clues, rules and
inventory items) as text chunks owned by the nodes of a typed knowledge
graph, and retrieves explainable evidence for each player turn. Candidates
come from dense vector search, BM25 keyword search and graph expansion,
and are ranked with weights chosen by the action type of the turn. Keeper
secrets never reach player-mode results.

Key components:
- HybridRetriever: Engine facade for ingestion, deltas and per-turn retrieval
- KnowledgeBaseBuilder: One-shot ingestion of module data
- DeltaUpdater: Single-entity updates without a full rebuild
- QueryBuilder: Structured queries from the game state
- CandidateRetriever: Semantic, lexical and graph candidate generation
- Ranker: Weighted fusion, state fitness and per-node diversity
- EvidenceAssembler: Evidence records with confidence and explanations
- RagQueryLogger: Structured retrieval log for offline analysis
- RetrievalLatencyTracker: Per-stage latency budgets and statistics
"""

from .candidate_retriever import CandidateRetriever
from .config import EngineConfig, RetrievalOptions, get_weight_profiles, load_config
from .delta_updater import DeltaUpdater
from .embedding import (
    CompositeEmbeddingProvider,
    EmbeddingProvider,
    HashEmbeddingProvider,
    HttpEmbeddingProvider,
    SentenceTransformerEmbeddingProvider,
    create_embedding_provider,
)
from .evidence_assembler import EvidenceAssembler
from .exceptions import (
    DeltaError,
    EmbeddingError,
    LorekeeperError,
    StoreUnavailableError,
)
from .hybrid_retriever import HybridRetriever, RetrievalResult
from .knowledge_builder import BuildOptions, KnowledgeBaseBuilder
from .latency_tracker import RetrievalLatencyTracker
from .models import (
    Evidence,
    KnowledgeChunk,
    KnowledgeDelta,
    ModuleData,
    RagQuery,
)
from .query_builder import QueryBuilder, build_rag_query
from .query_logger import RagQueryLogEntry, RagQueryLogger
from .ranker import Ranker

__all__ = [
    "HybridRetriever",
    "RetrievalResult",
    "EngineConfig",
    "RetrievalOptions",
    "load_config",
    "get_weight_profiles",
    "KnowledgeBaseBuilder",
    "BuildOptions",
    "DeltaUpdater",
    "QueryBuilder",
    "build_rag_query",
    "CandidateRetriever",
    "Ranker",
    "EvidenceAssembler",
    "RagQueryLogger",
    "RagQueryLogEntry",
    "RetrievalLatencyTracker",
    "EmbeddingProvider",
    "HashEmbeddingProvider",
    "HttpEmbeddingProvider",
    "SentenceTransformerEmbeddingProvider",
    "CompositeEmbeddingProvider",
    "create_embedding_provider",
    "ModuleData",
    "KnowledgeChunk",
    "KnowledgeDelta",
    "RagQuery",
    "Evidence",
    "LorekeeperError",
    "StoreUnavailableError",
    "EmbeddingError",
    "DeltaError",
]
