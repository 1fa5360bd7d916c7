# src/lorekeeper/entity_index.py
import logging
import threading
from typing import Dict, Optional

from .models import KnowledgeGraph, NodeType
from .text_utils import normalize_text

logger = logging.getLogger(__name__)


def build_node_id(node_type: str, key: str) -> str:
    return f"{node_type}:{key}"


class EntityIndex:
    """
    Name and id lookup for scenario, NPC and clue nodes.

    Scenarios and NPCs are keyed by normalized name and normalized raw id;
    clues by raw clue id. The index is session state: it is filled while
    ingesting and can be rebuilt from a stored graph when a persisted
    session is reopened.
    """

    def __init__(self):
        self.scenarios: Dict[str, str] = {}
        self.npcs: Dict[str, str] = {}
        self.clues: Dict[str, str] = {}
        self._lock = threading.RLock()

    def register_scenario(
        self, node_id: str, name: Optional[str], raw_id: Optional[str] = None
    ) -> None:
        with self._lock:
            for key in (name, raw_id):
                if key:
                    self.scenarios[normalize_text(key)] = node_id

    def register_npc(
        self, node_id: str, name: Optional[str], raw_id: Optional[str] = None
    ) -> None:
        with self._lock:
            for key in (name, raw_id):
                if key:
                    self.npcs[normalize_text(key)] = node_id

    def register_clue(self, node_id: str, clue_id: str) -> None:
        with self._lock:
            self.clues[clue_id] = node_id

    def resolve_scenario(self, name_or_id: Optional[str]) -> Optional[str]:
        if not name_or_id:
            return None
        found = self.scenarios.get(normalize_text(name_or_id))
        if found:
            return found
        return name_or_id if name_or_id.startswith("scenario:") else None

    def resolve_npc(self, name_or_id: Optional[str]) -> Optional[str]:
        if not name_or_id:
            return None
        found = self.npcs.get(normalize_text(name_or_id))
        if found:
            return found
        return name_or_id if name_or_id.startswith("npc:") else None

    def resolve_clue(self, clue_id: Optional[str]) -> Optional[str]:
        if not clue_id:
            return None
        found = self.clues.get(clue_id)
        if found:
            return found
        return clue_id if clue_id.startswith("clue:") else None

    def has_clue(self, clue_id: str) -> bool:
        return clue_id in self.clues

    def rebuild(self, graph: KnowledgeGraph) -> None:
        """Re-derive every mapping from the nodes of a stored graph."""
        with self._lock:
            self.scenarios.clear()
            self.npcs.clear()
            self.clues.clear()
            for node in graph.nodes.values():
                if node.type == NodeType.SCENARIO.value:
                    snapshot = node.meta.get("snapshot") or {}
                    self.register_scenario(
                        node.id,
                        snapshot.get("name") or node.title,
                        node.meta.get("scenario_id"),
                    )
                elif node.type == NodeType.NPC.value:
                    profile = node.meta.get("profile") or {}
                    self.register_npc(
                        node.id,
                        profile.get("name") or node.title,
                        node.meta.get("npc_id"),
                    )
                elif node.type == NodeType.CLUE.value and node.meta.get("clue_id"):
                    self.register_clue(node.id, node.meta["clue_id"])
        logger.info(
            f"Entity index rebuilt: {len(self.scenarios)} scenario keys, "
            f"{len(self.npcs)} npc keys, {len(self.clues)} clues"
        )
