# tests/lorekeeper/test_knowledge_builder.py

import sys
import pytest
from pathlib import Path
from unittest.mock import MagicMock

# Add src directory to Python path
sys.path.append(str(Path(__file__).parent.parent.parent))

from src.lorekeeper.chunk_store import SqliteChunkStore
from src.lorekeeper.database import SqliteDatabase
from src.lorekeeper.embedding import HashEmbeddingProvider
from src.lorekeeper.knowledge_builder import (
    BuildBatch,
    BuildOptions,
    KnowledgeBaseBuilder,
    similarity_allowed,
)
from src.lorekeeper.knowledge_graph import SqliteGraphStore
from src.lorekeeper.lexical_store import SqliteLexicalStore
from src.lorekeeper.models import EdgeType, ModuleData
from src.lorekeeper.vector_store import SqliteVectorStore

BRASS_KEY = "item:n1:brass key"


def edge_keys(builder):
    return {edge.key for edge in builder.graph_store.get_graph().edges()}


class TestKnowledgeBaseBuilder:
    """Test cases for the KnowledgeBaseBuilder class."""

    def test_build_nodes_and_chunks(self, built_builder):
        """Test the node and chunk inventory of a build."""
        graph = built_builder.graph_store.get_graph()

        assert set(graph.nodes) == {
            "scenario:s1",
            "scenario:s2",
            "npc:n1",
            "npc:n2",
            BRASS_KEY,
            "clue:c_map",
            "clue:c_diary",
            "clue:c_key",
            "rule:sanity",
            "item:player:lantern",
        }
        chunk_ids = {chunk.id for chunk in built_builder.chunk_store.values()}
        assert "chunk:scenario:s1:overview" in chunk_ids
        assert "chunk:scenario:s1:keeper" in chunk_ids
        assert "chunk:scenario:s2:keeper" not in chunk_ids
        assert "chunk:npc:n1:keeper" in chunk_ids
        assert "chunk:npc:n2:keeper" not in chunk_ids
        assert len(chunk_ids) == 12

        # Every chunk is owned by its node
        for node in graph.nodes.values():
            for chunk_id in node.chunk_ids:
                assert built_builder.chunk_store.get(chunk_id).node_id == node.id

    def test_structural_edges(self, built_builder):
        """Test edges derived from exits, characters, clues and relationships."""
        keys = edge_keys(built_builder)

        assert ("scenario:s1", "scenario:s2", "CONNECTED_TO") in keys
        assert ("scenario:s2", "scenario:s1", "CONNECTED_TO") in keys
        assert ("npc:n1", "scenario:s1", "APPEARS_IN") in keys
        assert ("scenario:s1", "clue:c_diary", "HAS_CLUE") in keys
        assert ("npc:n1", "clue:c_key", "KNOWS") in keys
        assert ("npc:n1", "npc:n2", "RELATED_TO") in keys
        assert ("npc:n2", "npc:n1", "RELATED_TO") in keys
        assert ("npc:n1", BRASS_KEY, "OWNS") in keys
        for target in ("scenario:s1", "scenario:s2", "npc:n1", "npc:n2"):
            assert ("rule:sanity", target, "APPLIES_TO") in keys
        assert len(keys) == 12

    def test_edge_metadata(self, built_builder):
        edges = built_builder.graph_store.neighbors("scenario:s1", ["CONNECTED_TO"])

        assert edges[0].meta == {"direction": "north"}
        related = built_builder.graph_store.neighbors("npc:n1", ["RELATED_TO"])[0]
        assert related.meta == {"relationship_type": "enemy", "attitude": "hostile"}

    def test_keeper_content_partitioned(self, built_builder):
        """Test that secrets and unrevealed clues are keeper-only."""
        store = built_builder.chunk_store

        assert store.get("chunk:npc:n1:keeper").visibility == "keeper"
        assert "portrait" in store.get("chunk:npc:n1:keeper").text
        assert "portrait" not in store.get("chunk:npc:n1:public").text
        assert store.get("chunk:npc:n1:public").visibility == "player"
        assert store.get("chunk:scenario:s1:keeper").visibility == "keeper"
        assert "basement" not in store.get("chunk:scenario:s1:overview").text
        assert store.get("chunk:clue:c_diary:main").visibility == "keeper"
        assert store.get("chunk:clue:c_key:main").visibility == "keeper"
        assert store.get("chunk:clue:c_map:main").visibility == "player"

        knows = built_builder.graph_store.neighbors("npc:n1", ["KNOWS"])[0]
        assert knows.visibility == "keeper"

    def test_npc_inventory_is_keeper_only(self, built_builder):
        node = built_builder.graph_store.get_node(BRASS_KEY)
        chunk = built_builder.chunk_store.get(f"chunk:{BRASS_KEY}:item")

        assert node.visibility == "keeper"
        assert chunk.visibility == "keeper"
        assert chunk.text == 'Brass Key | {"opens": "basement"}'
        assert chunk.anchors["owner_name"] == "Henry Armitage"
        owns = built_builder.graph_store.neighbors("npc:n1", ["OWNS"])[0]
        assert owns.visibility == "keeper"

    def test_embedded_clue_node(self, built_builder):
        """Test clue nodes created from clues embedded in a scenario."""
        node = built_builder.graph_store.get_node("clue:c_diary")
        chunk = built_builder.chunk_store.get("chunk:clue:c_diary:main")

        assert node.title == "A torn diary page mentions the ritual"
        assert node.meta["category"] == "document"
        assert chunk.anchors["scenario_id"] == "s1"
        assert chunk.anchors["clue_id"] == "c_diary"
        assert "Old Library" in chunk.tags
        assert built_builder.entity_index.resolve_clue("c_diary") == "clue:c_diary"

    def test_discovered_clue_is_player_visible(self, builder, module_dict):
        module_dict["scenarios"][0]["clues"][0]["discovered"] = True
        builder.build(ModuleData.from_dict(module_dict))

        assert builder.graph_store.get_node("clue:c_diary").visibility == "player"

    def test_shared_clue_registered_once(self, builder, module_dict):
        """Test that a clue listed by a scenario and an NPC yields one node."""
        module_dict["npcs"][0]["clues"].append(
            {"id": "c_diary", "clue_text": "Armitage read the diary", "revealed": True}
        )
        builder.build(ModuleData.from_dict(module_dict))

        node = builder.graph_store.get_node("clue:c_diary")
        assert node.title == "A torn diary page mentions the ritual"
        assert ("npc:n1", "clue:c_diary", "KNOWS") in edge_keys(builder)

    def test_player_inventory_owner(self, builder, module_dict):
        """Test that player items link to the player's node when it exists."""
        module_dict["npcs"].append({"id": "investigator", "name": "Ada"})
        module_dict["player_id"] = "investigator"
        module_dict["player_name"] = "Ada"
        builder.build(ModuleData.from_dict(module_dict))

        graph = builder.graph_store.get_graph()
        assert "item:investigator:lantern" in graph.nodes
        owns = builder.graph_store.neighbors("npc:investigator", ["OWNS"])
        assert [edge.to_id for edge in owns] == ["item:investigator:lantern"]
        assert owns[0].visibility == "player"

    def test_player_inventory_without_owner(self, built_builder):
        """Test that player items without an owner node stay unlinked."""
        assert built_builder.graph_store.get_node("item:player:lantern") is not None
        graph = built_builder.graph_store.get_graph()
        assert all(edge.to_id != "item:player:lantern" for edge in graph.edges())

    def test_index_payloads(self, built_builder):
        """Test the payloads written to the vector and lexical indexes."""
        hits = built_builder.vector_store.search(
            HashEmbeddingProvider().embed("portrait"), 20, {"visibility": "keeper"}
        )
        payload = next(hit.payload for hit in hits if hit.id == "chunk:npc:n1:keeper")
        assert payload["kind"] == "chunk"
        assert payload["node_id"] == "npc:n1"
        assert payload["type"] == "npc"

        lexical = built_builder.lexical_store.search("portrait", 5)
        assert [hit.id for hit in lexical] == ["chunk:npc:n1:keeper"]
        assert lexical[0].payload["visibility"] == "keeper"

    def test_rebuild_is_idempotent(self, built_builder, module_data):
        """Test that re-ingesting identical input keeps the same identities."""
        nodes_before = set(built_builder.graph_store.get_graph().nodes)
        edges_before = edge_keys(built_builder)
        chunks_before = {chunk.id for chunk in built_builder.chunk_store.values()}

        built_builder.build(module_data)

        assert set(built_builder.graph_store.get_graph().nodes) == nodes_before
        assert edge_keys(built_builder) == edges_before
        chunks_after = {chunk.id for chunk in built_builder.chunk_store.values()}
        assert chunks_after == chunks_before
        assert built_builder.vector_store.count() == len(chunks_before)
        assert built_builder.stats["builds"] == 2

    def test_build_stats(self, built_builder):
        assert built_builder.stats["builds"] == 1
        assert built_builder.stats["last_node_count"] == 10
        assert built_builder.stats["last_edge_count"] == 12
        assert built_builder.stats["last_chunk_count"] == 12

    def test_embedder_failure_propagates(self, builder, module_data):
        """Test that nothing is written when embedding fails."""
        builder.embedder = MagicMock()
        builder.embedder.embed.side_effect = RuntimeError("embedder down")

        with pytest.raises(RuntimeError):
            builder.build(module_data)

        assert builder.chunk_store.values() == []
        assert builder.graph_store.get_graph().nodes == {}


class TestSqliteBuild:
    """Test cases for builds over the persistent stores."""

    @pytest.fixture
    def sqlite_builder(self):
        db = SqliteDatabase(":memory:")
        builder = KnowledgeBaseBuilder(
            SqliteChunkStore(db),
            SqliteVectorStore(db),
            SqliteLexicalStore(db),
            SqliteGraphStore(db),
            HashEmbeddingProvider(),
            database=db,
        )
        yield builder
        db.close()

    def test_build_persists(self, sqlite_builder, module_data):
        sqlite_builder.build(module_data)

        stats = sqlite_builder.graph_store.get_stats()
        assert stats["node_count"] == 10
        assert stats["edge_count"] == 12
        assert len(sqlite_builder.chunk_store.values()) == 12
        assert sqlite_builder.vector_store.count({"kind": "chunk"}) == 12

    def test_failed_commit_rolls_back(self, sqlite_builder, module_data):
        """Test that a failure mid-commit leaves the database unchanged."""
        sqlite_builder.lexical_store.upsert = MagicMock(
            side_effect=RuntimeError("disk full")
        )

        with pytest.raises(RuntimeError):
            sqlite_builder.build(module_data)

        assert sqlite_builder.graph_store.get_stats()["node_count"] == 0
        assert sqlite_builder.chunk_store.values() == []


class TestSimilarityEdges:
    """Test cases for SIMILAR_TO edge derivation."""

    @pytest.fixture
    def options(self):
        return BuildOptions(
            enable_similarity_edges=True, similarity_top_k=2, similarity_threshold=0.0
        )

    def test_similarity_allowed(self):
        assert similarity_allowed("npc", "clue")
        assert similarity_allowed("npc", "npc")
        assert not similarity_allowed("npc", "scenario")
        assert similarity_allowed("scenario", "scenario")
        assert not similarity_allowed("scenario", "rule")
        assert similarity_allowed("rule", "item")

    def test_node_vectors_written(self, builder, module_data, options):
        builder.build(module_data, options)

        graph = builder.graph_store.get_graph()
        assert builder.vector_store.count({"kind": "node"}) == len(graph.nodes)
        assert graph.nodes["npc:n1"].embedding_key == "node:npc:n1"

    def test_similarity_edges_respect_constraints(self, builder, module_data, options):
        """Test type restrictions, top-k, threshold and visibility of edges."""
        builder.build(module_data, options)

        graph = builder.graph_store.get_graph()
        similar = [e for e in graph.edges() if e.type == EdgeType.SIMILAR_TO.value]
        assert similar

        per_source = {}
        for edge in similar:
            source = graph.nodes[edge.from_id]
            target = graph.nodes[edge.to_id]
            assert edge.from_id != edge.to_id
            assert similarity_allowed(source.type, target.type)
            assert edge.weight >= options.similarity_threshold
            keeper = "keeper" in (source.visibility, target.visibility)
            assert edge.visibility == ("keeper" if keeper else "player")
            per_source[edge.from_id] = per_source.get(edge.from_id, 0) + 1
        assert max(per_source.values()) <= options.similarity_top_k

    def test_disabled_by_default(self, built_builder):
        graph = built_builder.graph_store.get_graph()

        assert all(edge.type != "SIMILAR_TO" for edge in graph.edges())
        assert built_builder.vector_store.count({"kind": "node"}) == 0
        assert graph.nodes["npc:n1"].embedding_key is None

    def test_high_threshold_yields_no_edges(self, builder, module_data):
        options = BuildOptions(enable_similarity_edges=True, similarity_threshold=1.01)
        builder.build(module_data, options)

        graph = builder.graph_store.get_graph()
        assert all(edge.type != "SIMILAR_TO" for edge in graph.edges())


class TestBuildBatch:
    """Test cases for batch bookkeeping."""

    def test_first_edge_registration_wins(self):
        batch = BuildBatch(module_name="test")
        batch.add_edge("a", "b", EdgeType.KNOWS, "keeper", meta={"difficulty": "hard"})
        batch.add_edge("a", "b", EdgeType.KNOWS, "player")

        assert len(batch.edges) == 1
        edge = batch.edges[("a", "b", "KNOWS")]
        assert edge.visibility == "keeper"
        assert edge.meta == {"difficulty": "hard"}

    def test_none_meta_values_dropped(self):
        batch = BuildBatch(module_name="test")
        batch.add_edge("a", "b", EdgeType.OWNS, "player", meta={"location": None})

        assert batch.edges[("a", "b", "OWNS")].meta == {}
