# tests/lorekeeper/test_delta_updater.py

import sys
import pytest
from pathlib import Path

# Add src directory to Python path
sys.path.append(str(Path(__file__).parent.parent.parent))

from src.lorekeeper.delta_updater import DeltaUpdater
from src.lorekeeper.exceptions import DeltaError
from src.lorekeeper.knowledge_builder import BuildOptions
from src.lorekeeper.models import KnowledgeDelta, ModuleData


def edge_keys(graph_store):
    return {edge.key for edge in graph_store.get_graph().edges()}


class TestDeltaUpdater:
    """Test cases for the DeltaUpdater class."""

    @pytest.fixture
    def updater(self, built_builder):
        """Create a DeltaUpdater over a built knowledge base."""
        return DeltaUpdater(built_builder)

    def test_add_clue(self, updater, built_builder):
        """Test adding a clue node with its chunk."""
        delta = KnowledgeDelta.add_clue(
            {
                "id": "c_new",
                "text": "Footprints lead up the hill",
                "visibility": "player",
            }
        )

        touched = updater.apply(delta)

        assert touched == ["clue:c_new"]
        chunk = built_builder.chunk_store.get("chunk:clue:c_new:main")
        assert chunk.text == "Footprints lead up the hill"
        assert chunk.visibility == "player"
        assert built_builder.entity_index.resolve_clue("c_new") == "clue:c_new"
        hits = built_builder.lexical_store.search("footprints", 5)
        assert [hit.id for hit in hits] == ["chunk:clue:c_new:main"]
        assert updater.stats["applied"] == 1

    def test_add_clue_defaults_to_keeper(self, updater, built_builder):
        updater.apply(KnowledgeDelta.add_clue({"id": "c_hidden", "text": "A trapdoor"}))

        node = built_builder.graph_store.get_node("clue:c_hidden")
        assert node.visibility == "keeper"

    def test_add_clue_replaces_existing(self, updater, built_builder):
        nodes_before = len(built_builder.graph_store.get_graph().nodes)

        updater.apply(
            KnowledgeDelta.add_clue(
                {
                    "id": "c_map",
                    "text": "A map marked with a cross",
                    "visibility": "player",
                }
            )
        )

        assert len(built_builder.graph_store.get_graph().nodes) == nodes_before
        chunk = built_builder.chunk_store.get("chunk:clue:c_map:main")
        assert chunk.text == "A map marked with a cross"

    def test_add_clue_requires_id(self, updater):
        with pytest.raises(DeltaError):
            updater.apply(KnowledgeDelta.add_clue({"text": "No id"}))
        with pytest.raises(DeltaError):
            updater.apply(KnowledgeDelta(kind="ADD_CLUE"))

    def test_unknown_kind(self, updater):
        """Test that an unknown delta kind is rejected."""
        with pytest.raises(DeltaError):
            updater.apply(KnowledgeDelta(kind="REMOVE_NPC", npc_id="n1"))

        # DeltaError is also a ValueError
        with pytest.raises(ValueError):
            updater.apply(KnowledgeDelta(kind="RENAME"))

    def test_update_npc_is_local(self, updater, built_builder):
        """Test that an NPC update only rewrites that NPC and what it owns."""
        graph_before = built_builder.graph_store.get_graph()
        scenario_before = graph_before.nodes["scenario:s1"]
        overview_before = built_builder.chunk_store.get("chunk:scenario:s1:overview")
        edges_before = edge_keys(built_builder.graph_store)

        touched = updater.apply(
            KnowledgeDelta.update_npc("n1", {"secrets": ["He burned the diary"]})
        )

        assert touched == ["npc:n1", "item:n1:brass key"]
        keeper_chunk = built_builder.chunk_store.get("chunk:npc:n1:keeper")
        assert "burned the diary" in keeper_chunk.text
        assert "portrait" not in keeper_chunk.text
        assert built_builder.lexical_store.search("portrait", 5) == []

        graph_after = built_builder.graph_store.get_graph()
        assert graph_after.nodes["scenario:s1"] == scenario_before
        assert (
            built_builder.chunk_store.get("chunk:scenario:s1:overview")
            == overview_before
        )
        assert edge_keys(built_builder.graph_store) == edges_before
        assert graph_after.nodes["npc:n1"].meta["profile"]["secrets"] == [
            "He burned the diary"
        ]

    def test_update_npc_location(self, updater, built_builder):
        updater.apply(
            KnowledgeDelta.update_npc("n1", {"current_location": "Reading Room"})
        )

        node = built_builder.graph_store.get_node("npc:n1")
        assert node.meta["current_location"] == "Reading Room"
        public = built_builder.chunk_store.get("chunk:npc:n1:public")
        assert "location:Reading Room" in public.text

    def test_update_npc_by_name(self, updater, built_builder):
        """Test resolving the target NPC by name and registering a new name."""
        touched = updater.apply(
            KnowledgeDelta.update_npc("Henry Armitage", {"name": "Dr. Henry Armitage"})
        )

        assert touched[0] == "npc:n1"
        node = built_builder.graph_store.get_node("npc:n1")
        assert node.title == "Dr. Henry Armitage"
        assert built_builder.entity_index.resolve_npc("Dr. Henry Armitage") == "npc:n1"

    def test_update_npc_drops_removed_secrets_chunk(self, updater, built_builder):
        """Test that a chunk the new profile no longer produces is removed."""
        updater.apply(
            KnowledgeDelta.update_npc(
                "n1", {"secrets": [], "clues": [], "relationships": []}
            )
        )

        assert built_builder.chunk_store.get("chunk:npc:n1:keeper") is None
        assert built_builder.graph_store.get_node("npc:n1").chunk_ids == [
            "chunk:npc:n1:public"
        ]
        keys = edge_keys(built_builder.graph_store)
        assert ("npc:n1", "clue:c_key", "KNOWS") not in keys
        assert ("npc:n1", "npc:n2", "RELATED_TO") not in keys
        assert ("npc:n2", "npc:n1", "RELATED_TO") not in keys
        assert ("npc:n1", "item:n1:brass key", "OWNS") in keys

    def test_update_unknown_npc(self, updater, built_builder):
        """Test that an unknown target is skipped without changes."""
        edges_before = edge_keys(built_builder.graph_store)

        touched = updater.apply(KnowledgeDelta.update_npc("ghost", {"name": "Ghost"}))

        assert touched == []

        assert edge_keys(built_builder.graph_store) == edges_before
        assert updater.stats["skipped"] == 1
        assert updater.stats["applied"] == 0

    def test_update_scenario(self, updater, built_builder):
        """Test rewriting a scenario and re-deriving its edges."""
        edges_before = edge_keys(built_builder.graph_store)

        touched = updater.apply(
            KnowledgeDelta.update_scenario(
                "s2", {"description": "Flooded reading tables"}
            )
        )

        assert touched == ["scenario:s2"]
        overview = built_builder.chunk_store.get("chunk:scenario:s2:overview")
        assert "Flooded reading tables" in overview.text
        assert edge_keys(built_builder.graph_store) == edges_before
        node = built_builder.graph_store.get_node("scenario:s2")
        assert node.meta["snapshot"]["description"] == "Flooded reading tables"

    def test_update_scenario_new_clue(self, updater, built_builder):
        """Test that a scenario update creates clues seen for the first time."""
        touched = updater.apply(
            KnowledgeDelta.update_scenario(
                "s1",
                {
                    "clues": [
                        {
                            "id": "c_blood",
                            "clue_text": "Blood on the floorboards",
                            "discovered": True,
                        }
                    ]
                },
            )
        )

        assert touched == ["scenario:s1", "clue:c_blood"]
        assert built_builder.graph_store.get_node("clue:c_blood").visibility == "player"
        keys = edge_keys(built_builder.graph_store)
        assert ("scenario:s1", "clue:c_blood", "HAS_CLUE") in keys
        assert ("scenario:s1", "clue:c_diary", "HAS_CLUE") not in keys
        assert ("npc:n1", "scenario:s1", "APPEARS_IN") in keys
        assert ("rule:sanity", "scenario:s1", "APPLIES_TO") in keys

    def test_update_keeps_relationship_declared_by_other_npc(
        self, updater, built_builder
    ):
        """Test that updating n2 keeps the relationship only n1 declares."""
        updater.apply(KnowledgeDelta.update_npc("n2", {"occupation": "Sorcerer"}))

        keys = edge_keys(built_builder.graph_store)
        assert ("npc:n1", "npc:n2", "RELATED_TO") in keys
        assert ("npc:n2", "npc:n1", "RELATED_TO") in keys
        edge = next(
            edge
            for edge in built_builder.graph_store.get_graph().edges()
            if edge.key == ("npc:n2", "npc:n1", "RELATED_TO")
        )
        assert edge.meta["relationship_type"] == "enemy"

    def test_update_keeps_exit_declared_by_other_scenario(
        self, builder, module_dict
    ):
        """Test that a scenario without exits keeps the exit leading into it."""
        module_dict["scenarios"][1]["exits"] = []
        builder.build(ModuleData.from_dict(module_dict))
        updater = DeltaUpdater(builder)

        updater.apply(
            KnowledgeDelta.update_scenario("s2", {"description": "Flooded tables"})
        )

        keys = edge_keys(builder.graph_store)
        assert ("scenario:s1", "scenario:s2", "CONNECTED_TO") in keys
        assert ("scenario:s2", "scenario:s1", "CONNECTED_TO") in keys

    def test_discovered_clue_moves_to_player(self, updater, built_builder):
        """Test that a scenario update revealing a known clue rewrites it."""
        touched = updater.apply(
            KnowledgeDelta.update_scenario(
                "s1",
                {
                    "clues": [
                        {
                            "id": "c_diary",
                            "clue_text": "A torn diary page mentions the ritual",
                            "discovered": True,
                        }
                    ]
                },
            )
        )

        assert touched == ["scenario:s1", "clue:c_diary"]
        node = built_builder.graph_store.get_node("clue:c_diary")
        assert node.visibility == "player"
        assert node.title == "A torn diary page mentions the ritual"
        chunk = built_builder.chunk_store.get("chunk:clue:c_diary:main")
        assert chunk.visibility == "player"
        hits = built_builder.lexical_store.search("diary", 5, {"visibility": "player"})
        assert "chunk:clue:c_diary:main" in [hit.id for hit in hits]

    def test_revealed_clue_never_returns_to_keeper(self, updater, built_builder):
        updater.apply(
            KnowledgeDelta.update_npc(
                "n1",
                {"clues": [{"id": "c_key", "revealed": True}]},
            )
        )
        touched = updater.apply(
            KnowledgeDelta.update_npc(
                "n1",
                {"clues": [{"id": "c_key", "revealed": False}]},
            )
        )

        assert "clue:c_key" not in touched
        assert built_builder.graph_store.get_node("clue:c_key").visibility == "player"
        chunk = built_builder.chunk_store.get("chunk:clue:c_key:main")
        assert chunk.visibility == "player"

    def test_update_unknown_scenario(self, updater):
        assert updater.apply(KnowledgeDelta.update_scenario("s9", {})) == []


class TestDeltaSimilarity:
    """Test cases for similarity edges maintained by deltas."""

    @pytest.fixture
    def options(self):
        return BuildOptions(
            enable_similarity_edges=True, similarity_top_k=3, similarity_threshold=0.0
        )

    def test_add_clue_gets_similarity_edges(self, builder, module_data, options):
        """Test that only the touched node's similarity edges are recomputed."""
        builder.build(module_data, options)
        updater = DeltaUpdater(builder)

        def similar_from(node_id):
            return {
                edge.key
                for edge in builder.graph_store.neighbors(node_id, ["SIMILAR_TO"])
            }

        scenario_edges = similar_from("scenario:s1")

        updater.apply(
            KnowledgeDelta.add_clue(
                {
                    "id": "c_new",
                    "text": "Dusty stacks hide a letter",
                    "visibility": "player",
                }
            ),
            options,
        )

        node = builder.graph_store.get_node("clue:c_new")
        assert node.embedding_key == "node:clue:c_new"
        assert 0 < len(similar_from("clue:c_new")) <= options.similarity_top_k
        assert similar_from("scenario:s1") == scenario_edges
