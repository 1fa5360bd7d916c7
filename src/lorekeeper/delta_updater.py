# src/lorekeeper/delta_updater.py
import copy
import logging
import time
from typing import Any, Dict, List, Optional

from .chunk_factory import create_npc_chunks, create_scenario_chunks
from .entity_index import EntityIndex, build_node_id
from .exceptions import DeltaError
from .knowledge_builder import BuildBatch, BuildOptions, KnowledgeBaseBuilder
from .knowledge_graph import GraphStore
from .models import DELTA_KINDS, EdgeType, GraphNode, KnowledgeDelta, NodeType

logger = logging.getLogger(__name__)


class DeltaUpdater:
    """
    Applies single-entity updates to an already built knowledge base.

    Only the targeted node, its own chunks and the edges it owns are
    rewritten; edges toward it that other nodes declare are derived again
    from their stored records. The rest of the graph is left untouched.
    Every change of one delta is committed through the builder in a single
    batch.
    """

    def __init__(
        self,
        builder: KnowledgeBaseBuilder,
        graph_store: Optional[GraphStore] = None,
        entity_index: Optional[EntityIndex] = None,
    ):
        self.builder = builder
        self.graph_store = graph_store or builder.graph_store
        self.entity_index = entity_index or builder.entity_index

        self.stats = {"applied": 0, "skipped": 0, "last_apply_time_ms": 0.0}

    def apply(
        self, delta: KnowledgeDelta, options: Optional[BuildOptions] = None
    ) -> List[str]:
        """
        Apply one delta.

        Args:
            delta: ADD_CLUE, UPDATE_SCENARIO or UPDATE_NPC update
            options: Build options for chunk metadata and similarity edges

        Returns:
            Ids of the nodes written, empty when the target node is unknown

        Raises:
            DeltaError: If the delta kind is unknown or its payload is incomplete
        """
        options = options or BuildOptions()
        if delta.kind not in DELTA_KINDS:
            raise DeltaError(f"Unknown delta kind: {delta.kind}")

        start_time = time.time()
        if delta.kind == "ADD_CLUE":
            touched = self._add_clue(delta, options)
        elif delta.kind == "UPDATE_SCENARIO":
            touched = self._update_scenario(delta, options)
        else:
            touched = self._update_npc(delta, options)

        apply_time_ms = (time.time() - start_time) * 1000
        if touched:
            self.stats["applied"] += 1
            self.stats["last_apply_time_ms"] = apply_time_ms
            logger.info(
                f"Applied {delta.kind} in {apply_time_ms:.2f}ms "
                f"({len(touched)} nodes written)"
            )
        else:
            self.stats["skipped"] += 1
        return touched

    def _add_clue(self, delta: KnowledgeDelta, options: BuildOptions) -> List[str]:
        clue = delta.clue
        if not clue or not clue.get("id"):
            raise DeltaError("ADD_CLUE delta requires a clue with an id")

        batch = BuildBatch(module_name=options.module_name)
        node_id = self.builder.add_clue(batch, clue)
        self.builder.commit(batch, options, similarity_node_ids=[node_id])
        return [node_id]

    def _update_scenario(
        self, delta: KnowledgeDelta, options: BuildOptions
    ) -> List[str]:
        node = self._resolve_node(
            NodeType.SCENARIO, delta.scenario_id, self.entity_index.resolve_scenario
        )
        if node is None:
            logger.warning(
                f"UPDATE_SCENARIO skipped, unknown scenario: {delta.scenario_id}"
            )
            return []

        merged = self._merge(node, "snapshot", delta.patch)
        node.meta["location"] = merged.get("location")
        batch = self._start_batch(node, options)
        self.entity_index.register_scenario(node.id, merged.get("name"))

        chunks = create_scenario_chunks(
            merged, node.id, batch.module_name, batch.timestamp
        )
        batch.add_node(node, chunks)
        batch.edge_removals.extend(
            [
                {"from_id": node.id, "type": EdgeType.CONNECTED_TO.value},
                {"to_id": node.id, "type": EdgeType.CONNECTED_TO.value},
                {"from_id": node.id, "type": EdgeType.HAS_CLUE.value},
                {"to_id": node.id, "type": EdgeType.APPEARS_IN.value},
            ]
        )
        new_node_ids = self.builder.link_scenario(batch, node.id, merged)
        self._relink_incoming(batch, node, "snapshot", self.builder.link_exits)

        touched = [node.id, *new_node_ids]
        self.builder.commit(batch, options, similarity_node_ids=touched)
        return touched

    def _update_npc(self, delta: KnowledgeDelta, options: BuildOptions) -> List[str]:
        node = self._resolve_node(
            NodeType.NPC, delta.npc_id, self.entity_index.resolve_npc
        )
        if node is None:
            logger.warning(f"UPDATE_NPC skipped, unknown NPC: {delta.npc_id}")
            return []

        merged = self._merge(node, "profile", delta.patch)
        node.meta["current_location"] = merged.get("current_location")
        batch = self._start_batch(node, options)
        self.entity_index.register_npc(node.id, merged.get("name"))

        chunks = create_npc_chunks(
            merged, node.id, batch.module_name, batch.timestamp
        )
        batch.add_node(node, chunks)
        batch.edge_removals.extend(
            [
                {"from_id": node.id, "type": EdgeType.KNOWS.value},
                {"from_id": node.id, "type": EdgeType.RELATED_TO.value},
                {"to_id": node.id, "type": EdgeType.RELATED_TO.value},
                {"from_id": node.id, "type": EdgeType.OWNS.value},
            ]
        )
        new_node_ids = self.builder.link_npc(batch, node.id, merged)
        self._relink_incoming(batch, node, "profile", self.builder.link_relationships)
        new_node_ids += self.builder.add_npc_inventory(batch, node.id, merged)

        touched = [node.id, *new_node_ids]
        self.builder.commit(batch, options, similarity_node_ids=touched)
        return touched

    def _resolve_node(
        self, node_type: NodeType, raw_id: Optional[str], resolve
    ) -> Optional[GraphNode]:
        """Look a node up by its raw record id, then by name through the index."""
        if not raw_id:
            return None
        node = self.graph_store.get_node(build_node_id(node_type.value, raw_id))
        if node is None:
            resolved = resolve(raw_id)
            node = self.graph_store.get_node(resolved) if resolved else None
        return copy.deepcopy(node) if node is not None else None

    def _relink_incoming(
        self, batch: BuildBatch, node: GraphNode, key: str, link
    ) -> None:
        """
        Restore edges toward a node that other nodes of its type declare.

        The update drops every edge of the type touching the node, so edges
        derived from the records of its neighbors are derived again here.
        """
        for other in self.graph_store.get_graph().nodes.values():
            if other.type != node.type or other.id == node.id:
                continue
            link(batch, other.id, other.meta.get(key) or {}, only_target=node.id)

    @staticmethod
    def _merge(node: GraphNode, key: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        """Shallow-merge a patch into the record kept in node metadata."""
        merged = {**(node.meta.get(key) or {}), **(patch or {})}
        node.meta[key] = merged
        node.title = merged.get("name") or node.title
        return merged

    @staticmethod
    def _start_batch(node: GraphNode, options: BuildOptions) -> BuildBatch:
        batch = BuildBatch(module_name=options.module_name)
        node.updated_at = batch.timestamp
        batch.removed_chunk_ids.extend(node.chunk_ids)
        return batch
