# tests/lorekeeper/test_candidate_retriever.py

import sys
import pytest
from pathlib import Path
from unittest.mock import MagicMock

# Add src directory to Python path
sys.path.append(str(Path(__file__).parent.parent.parent))

from src.lorekeeper.candidate_retriever import (
    CandidateRetriever,
    SignalHits,
    chunk_filter,
    depth_score,
    visibility_filter,
)
from src.lorekeeper.config import RetrievalOptions
from src.lorekeeper.models import (
    Candidate,
    LexicalHit,
    QueryEntities,
    RagQuery,
    VectorHit,
)


def make_query(mode="player", **entities):
    return RagQuery(
        mode=mode,
        intent="ask about the basement",
        action_type="social",
        entities=QueryEntities(**entities),
        query_text="Henry Armitage basement Necronomicon portrait",
    )


class TestVisibilityHelpers:
    """Test cases for the mode to filter mapping."""

    def test_visibility_filter(self):
        assert visibility_filter("player") == "player"
        assert visibility_filter("keeper") is None

    def test_chunk_filter(self):
        assert chunk_filter("player") == {"kind": "chunk", "visibility": "player"}
        assert chunk_filter("keeper") == {"kind": "chunk", "visibility": None}

    def test_depth_score(self):
        assert depth_score(0) == 1.0
        assert depth_score(1) == 0.7
        assert depth_score(2) == 0.4


class TestCandidateRetriever:
    """Test cases for the CandidateRetriever class."""

    @pytest.fixture
    def latency_tracker(self):
        return MagicMock()

    @pytest.fixture
    def retriever(self, built_builder, latency_tracker):
        """Create a retriever over the built sample module."""
        return CandidateRetriever(
            built_builder.chunk_store,
            built_builder.vector_store,
            built_builder.lexical_store,
            built_builder.graph_store,
            built_builder.embedder,
            built_builder.entity_index,
            latency_tracker=latency_tracker,
        )

    def test_seed_nodes(self, retriever):
        """Test resolving seeds from the query entities."""
        query = make_query(
            current_scenario_name="Old Library",
            target_name="Henry Armitage",
            npcs_in_scene=["Henry Armitage", "Wilbur Whateley", "Nobody"],
            discovered_clues=["c_map", "c_unknown"],
        )

        assert retriever.seed_nodes(query) == [
            "scenario:s1",
            "npc:n1",
            "npc:n2",
            "clue:c_map",
        ]

    def test_seed_target_as_clue(self, retriever):
        query = make_query(current_scenario_id="s2", target_name="c_map")

        assert retriever.seed_nodes(query) == ["scenario:s2", "clue:c_map"]

    def test_player_mode_excludes_keeper_chunks(self, retriever, built_builder):
        """Test that no signal returns keeper content in player mode."""
        query = make_query(
            current_scenario_id="s1",
            target_name="Henry Armitage",
            npcs_in_scene=["Henry Armitage"],
        )

        candidates, debug = retriever.retrieve(query, RetrievalOptions(graph_hops=2))

        assert candidates
        for candidate in candidates:
            chunk = built_builder.chunk_store.get(candidate.chunk_id)
            assert chunk.visibility == "player"
        for hit in debug["semantic_hits"] + debug["lexical_hits"]:
            assert hit.payload["visibility"] == "player"

    def test_keeper_mode_sees_secrets(self, retriever):
        query = make_query(mode="keeper", target_name="Henry Armitage")

        candidates, _ = retriever.retrieve(query)

        assert "chunk:npc:n1:keeper" in {c.chunk_id for c in candidates}

    def test_graph_hop_bound(self, retriever):
        """Test that expansion never goes beyond the configured hop count."""
        one_hop = retriever.expand_graph(
            ["scenario:s2"], RetrievalOptions(graph_hops=1), "keeper"
        )
        two_hops = retriever.expand_graph(
            ["scenario:s2"], RetrievalOptions(graph_hops=2), "keeper"
        )

        one_hop_ids = {c.chunk_id for c in one_hop}
        assert one_hop_ids == {
            "chunk:scenario:s2:overview",
            "chunk:scenario:s1:overview",
            "chunk:scenario:s1:keeper",
        }
        diary = next(c for c in two_hops if c.chunk_id == "chunk:clue:c_diary:main")
        assert diary.graph_score == 0.4
        assert diary.graph_path == ["scenario:s2", "scenario:s1", "clue:c_diary"]

    def test_graph_scores_and_paths(self, retriever):
        candidates = retriever.expand_graph(
            ["scenario:s2"], RetrievalOptions(graph_hops=1), "player"
        )

        by_id = {c.chunk_id: c for c in candidates}
        assert set(by_id) == {
            "chunk:scenario:s2:overview",
            "chunk:scenario:s1:overview",
        }
        assert by_id["chunk:scenario:s2:overview"].graph_score == 1.0
        assert by_id["chunk:scenario:s2:overview"].graph_path == ["scenario:s2"]
        assert by_id["chunk:scenario:s1:overview"].graph_score == 0.7
        assert candidates[0].chunk_id == "chunk:scenario:s2:overview"

    def test_player_mode_skips_keeper_edges(self, retriever):
        """Test that keeper edges are not traversed in player mode."""
        candidates = retriever.expand_graph(
            ["npc:n1"], RetrievalOptions(graph_hops=1), "player"
        )

        node_ids = {c.node_id for c in candidates}
        assert "clue:c_key" not in node_ids
        assert "item:n1:brass key" not in node_ids
        assert "npc:n2" in node_ids

    def test_top_k_graph(self, retriever):
        candidates = retriever.expand_graph(
            ["rule:sanity"], RetrievalOptions(graph_hops=1, top_k_graph=2), "keeper"
        )

        assert len(candidates) == 2
        assert candidates[0].graph_score == 1.0

    def test_merge(self, retriever):
        """Test merging the same chunk from all three signals."""
        chunk_id = "chunk:scenario:s2:overview"
        hits = SignalHits(
            seeds=["scenario:s2"],
            semantic=[
                VectorHit(id=chunk_id, score=0.6, payload={"node_id": "scenario:s2"})
            ],
            lexical=[LexicalHit(id=chunk_id, score=2.5)],
            graph=[
                Candidate(
                    chunk_id=chunk_id,
                    node_id="scenario:s2",
                    graph_score=0.7,
                    graph_path=["scenario:s1", "scenario:s2"],
                )
            ],
        )

        merged = retriever.merge(hits, ["reading", "tables", "zeppelin"])

        assert len(merged) == 1
        candidate = merged[0]
        assert candidate.node_id == "scenario:s2"
        assert candidate.semantic_score == 0.6
        assert candidate.lexical_score == 2.5
        assert candidate.graph_score == 0.7
        assert candidate.graph_path == ["scenario:s1", "scenario:s2"]
        assert candidate.matched_keywords == ["reading", "tables"]

    def test_merge_keeps_first_value(self, retriever):
        chunk_id = "chunk:scenario:s2:overview"
        hits = SignalHits(
            graph=[
                Candidate(chunk_id=chunk_id, graph_score=1.0, graph_path=["a"]),
                Candidate(chunk_id=chunk_id, graph_score=0.4, graph_path=["b", "c"]),
            ]
        )

        merged = retriever.merge(hits, [])

        assert merged[0].graph_score == 1.0
        assert merged[0].graph_path == ["a"]

    def test_parallel_matches_sequential(self, built_builder, retriever):
        """Test that running the signals on a thread pool gives the same set."""
        parallel = CandidateRetriever(
            built_builder.chunk_store,
            built_builder.vector_store,
            built_builder.lexical_store,
            built_builder.graph_store,
            built_builder.embedder,
            built_builder.entity_index,
            parallel=True,
        )
        query = make_query(current_scenario_id="s1", target_name="Henry Armitage")

        sequential_ids = {c.chunk_id for c in retriever.retrieve(query)[0]}
        parallel_ids = {c.chunk_id for c in parallel.retrieve(query)[0]}

        assert parallel_ids == sequential_ids

    def test_latency_recorded(self, retriever, latency_tracker):
        retriever.retrieve(make_query())

        stages = {call.args[0] for call in latency_tracker.record.call_args_list}
        assert stages == {"embed", "semantic", "lexical", "graph"}

    def test_empty_query_embedding(self, retriever):
        """Test that an empty embedding skips semantic search."""
        retriever.embedder = MagicMock()
        retriever.embedder.embed.return_value = []

        candidates, debug = retriever.retrieve(make_query())

        assert debug["semantic_hits"] == []
        assert candidates
