# tests/lorekeeper/conftest.py
"""Pytest fixtures shared by the lorekeeper tests."""

import copy
import sys
from pathlib import Path

import pytest

# Add src directory to Python path
sys.path.append(str(Path(__file__).parent.parent.parent))

from src.lorekeeper.chunk_store import InMemoryChunkStore
from src.lorekeeper.embedding import HashEmbeddingProvider
from src.lorekeeper.entity_index import EntityIndex
from src.lorekeeper.knowledge_builder import KnowledgeBaseBuilder
from src.lorekeeper.knowledge_graph import InMemoryGraphStore
from src.lorekeeper.lexical_store import InMemoryLexicalStore
from src.lorekeeper.models import ModuleData
from src.lorekeeper.vector_store import InMemoryVectorStore

SAMPLE_MODULE = {
    "scenarios": [
        {
            "id": "s1",
            "name": "Old Library",
            "location": "Arkham",
            "description": "Dusty stacks of forbidden books",
            "conditions": [{"type": "lighting", "description": "dim"}],
            "events": ["the librarian vanished"],
            "exits": [{"direction": "north", "destination": "Reading Room"}],
            "characters": [{"id": "n1", "name": "Henry Armitage", "role": "librarian"}],
            "clues": [
                {
                    "id": "c_diary",
                    "clue_text": "A torn diary page mentions the ritual",
                    "discovered": False,
                    "category": "document",
                }
            ],
            "keeper_notes": "The cult meets in the basement at midnight",
        },
        {
            "id": "s2",
            "name": "Reading Room",
            "location": "Arkham",
            "description": "Quiet reading tables",
            "exits": [{"direction": "south", "destination": "Old Library"}],
        },
    ],
    "npcs": [
        {
            "id": "n1",
            "name": "Henry Armitage",
            "occupation": "Librarian",
            "personality": "scholarly and cautious",
            "background": "Head librarian of Miskatonic University",
            "goals": ["protect the Necronomicon"],
            "current_location": "Old Library",
            "secrets": ["He hid the Necronomicon behind the portrait"],
            "clues": [
                {
                    "id": "c_key",
                    "clue_text": "Armitage carries the basement key",
                    "revealed": False,
                }
            ],
            "relationships": [
                {
                    "target_id": "n2",
                    "target_name": "Wilbur Whateley",
                    "relationship_type": "enemy",
                    "attitude": "hostile",
                }
            ],
            "inventory": [{"name": "Brass Key", "properties": {"opens": "basement"}}],
        },
        {
            "id": "n2",
            "name": "Wilbur Whateley",
            "occupation": "Farmer",
            "current_location": "Dunwich",
        },
    ],
    "clues": [
        {
            "id": "c_map",
            "text": "A map of Dunwich with the hill circled",
            "visibility": "player",
        }
    ],
    "rules": [
        {
            "id": "sanity",
            "text": "Witnessing the unnatural costs sanity points",
            "visibility": "player",
        }
    ],
    "player_inventory": [{"name": "Lantern"}],
}


@pytest.fixture
def module_dict():
    """Raw module payload as delivered by the ingestion pipeline."""
    return copy.deepcopy(SAMPLE_MODULE)


@pytest.fixture
def module_data(module_dict):
    return ModuleData.from_dict(module_dict)


@pytest.fixture
def builder():
    """Builder over empty in-memory stores with the hash embedder."""
    return KnowledgeBaseBuilder(
        InMemoryChunkStore(),
        InMemoryVectorStore(),
        InMemoryLexicalStore(),
        InMemoryGraphStore(),
        HashEmbeddingProvider(),
        EntityIndex(),
    )


@pytest.fixture
def built_builder(builder, module_data):
    """Builder whose stores hold the sample module."""
    builder.build(module_data)
    return builder
