# src/lorekeeper/knowledge_builder.py
import copy
import logging
import time
from contextlib import nullcontext
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple

from .chunk_factory import (
    build_item_node_id,
    create_clue_chunk,
    create_item_chunk,
    create_npc_chunks,
    create_rule_chunk,
    create_scenario_chunks,
)
from .chunk_store import ChunkStore
from .database import SqliteDatabase
from .embedding import EmbeddingProvider
from .entity_index import EntityIndex, build_node_id
from .knowledge_graph import GraphStore
from .lexical_store import LexicalStore
from .models import (
    EdgeType,
    GraphEdge,
    GraphNode,
    KnowledgeChunk,
    ModuleData,
    NodeType,
    Visibility,
    now_ms,
)
from .text_utils import normalize_text
from .vector_store import VectorStore

logger = logging.getLogger(__name__)

PLAYER = Visibility.PLAYER.value
KEEPER = Visibility.KEEPER.value

# Node types a similarity edge may point to, by source type
SIMILARITY_TARGETS = {
    NodeType.NPC.value: {NodeType.NPC.value, NodeType.CLUE.value},
    NodeType.SCENARIO.value: {NodeType.SCENARIO.value, NodeType.CLUE.value},
}


def node_vector_id(node_id: str) -> str:
    return f"node:{node_id}"


def similarity_allowed(from_type: str, to_type: str) -> bool:
    allowed = SIMILARITY_TARGETS.get(from_type)
    return allowed is None or to_type in allowed


@dataclass
class BuildOptions:
    """Options for a build or delta run."""

    module_name: str = "default"
    enable_similarity_edges: bool = False
    similarity_top_k: int = 15
    similarity_threshold: float = 0.75


@dataclass
class BuildBatch:
    """
    Nodes, edges and chunks collected by one ingestion run.

    Nothing reaches the stores until the batch is committed. Edges are
    deduplicated on (from_id, to_id, type); the first registration wins.
    """

    module_name: str
    timestamp: int = field(default_factory=now_ms)
    nodes: Dict[str, GraphNode] = field(default_factory=dict)
    edges: Dict[Tuple[str, str, str], GraphEdge] = field(default_factory=dict)
    chunks: Dict[str, KnowledgeChunk] = field(default_factory=dict)
    # Applied before the batch is written (delta runs)
    removed_chunk_ids: List[str] = field(default_factory=list)
    edge_removals: List[Dict[str, str]] = field(default_factory=list)

    def add_node(self, node: GraphNode, chunks: List[KnowledgeChunk]) -> None:
        node.chunk_ids = [chunk.id for chunk in chunks]
        self.nodes[node.id] = node
        for chunk in chunks:
            self.chunks[chunk.id] = chunk

    def add_edge(
        self,
        from_id: str,
        to_id: str,
        edge_type: EdgeType,
        visibility: str,
        meta: Optional[Dict[str, Any]] = None,
        weight: Optional[float] = None,
    ) -> None:
        edge = GraphEdge(
            from_id=from_id,
            to_id=to_id,
            type=edge_type.value,
            visibility=visibility,
            weight=weight,
            meta={k: v for k, v in (meta or {}).items() if v is not None},
            updated_at=self.timestamp,
        )
        self.edges.setdefault(edge.key, edge)

    def nodes_of_type(self, node_type: NodeType) -> List[GraphNode]:
        return [node for node in self.nodes.values() if node.type == node_type.value]


class KnowledgeBaseBuilder:
    """
    One-shot ingestion of module data into the graph and the three chunk indexes.

    Ingestion fills a ``BuildBatch``; ``commit`` then embeds every chunk
    outside of any store lock and writes the whole batch inside a single
    transaction when the stores share a SQLite database.
    """

    def __init__(
        self,
        chunk_store: ChunkStore,
        vector_store: VectorStore,
        lexical_store: LexicalStore,
        graph_store: GraphStore,
        embedder: EmbeddingProvider,
        entity_index: Optional[EntityIndex] = None,
        database: Optional[SqliteDatabase] = None,
        write_lock=None,
    ):
        """
        Initialize the builder.

        Args:
            chunk_store: Store for chunk records
            vector_store: Dense index for chunk and node embeddings
            lexical_store: BM25 index for chunk text
            graph_store: Knowledge graph store
            embedder: Embedding provider for chunks and nodes
            entity_index: Name lookup shared with the retriever
            database: Shared SQLite database, for transactional commits
            write_lock: Lock held while a batch is written, shared with readers
        """
        self.chunk_store = chunk_store
        self.vector_store = vector_store
        self.lexical_store = lexical_store
        self.graph_store = graph_store
        self.embedder = embedder
        self.entity_index = entity_index or EntityIndex()
        self.database = database
        self.write_lock = write_lock

        self.stats = {
            "builds": 0,
            "last_build_time_ms": 0.0,
            "last_node_count": 0,
            "last_edge_count": 0,
            "last_chunk_count": 0,
        }

    def build(
        self, module_data: ModuleData, options: Optional[BuildOptions] = None
    ) -> BuildBatch:
        """
        Ingest a full module payload.

        Re-running a build on identical input leaves the stores with the same
        node, edge and chunk identities.

        Args:
            module_data: Scenarios, NPCs, clues, rules and player inventory
            options: Build options

        Returns:
            The committed batch
        """
        options = options or BuildOptions()
        start_time = time.time()
        batch = BuildBatch(module_name=options.module_name)

        logger.info(
            f"Building knowledge base: {len(module_data.scenarios)} scenarios, "
            f"{len(module_data.npcs)} NPCs"
        )

        scenario_nodes = [
            (self.add_scenario(batch, scenario), scenario)
            for scenario in module_data.scenarios
        ]
        npc_nodes = [(self.add_npc(batch, npc), npc) for npc in module_data.npcs]
        for clue in module_data.clues:
            self.add_clue(batch, clue)
        for rule in module_data.rules:
            self.add_rule(batch, rule)
        self.add_player_inventory(batch, module_data)

        # Structural edges, once every node is registered
        for node_id, scenario in scenario_nodes:
            self.link_scenario(batch, node_id, scenario)
        for node_id, npc in npc_nodes:
            self.link_npc(batch, node_id, npc)
        self.link_rules(batch)

        self.commit(batch, options)

        build_time_ms = (time.time() - start_time) * 1000
        self.stats["builds"] += 1
        self.stats["last_build_time_ms"] = build_time_ms
        self.stats["last_node_count"] = len(batch.nodes)
        self.stats["last_edge_count"] = len(batch.edges)
        self.stats["last_chunk_count"] = len(batch.chunks)
        logger.info(
            f"Knowledge base built in {build_time_ms:.2f}ms: {len(batch.nodes)} nodes, "
            f"{len(batch.edges)} edges, {len(batch.chunks)} chunks"
        )
        return batch

    # Node registration

    def add_scenario(self, batch: BuildBatch, scenario: Dict[str, Any]) -> str:
        node_id = build_node_id(
            NodeType.SCENARIO.value,
            scenario.get("id") or normalize_text(scenario.get("name")),
        )
        self.entity_index.register_scenario(
            node_id, scenario.get("name"), scenario.get("id")
        )
        chunks = create_scenario_chunks(
            scenario, node_id, batch.module_name, batch.timestamp
        )
        node = GraphNode(
            id=node_id,
            type=NodeType.SCENARIO.value,
            title=scenario.get("name", ""),
            visibility=PLAYER,
            meta={
                "scenario_id": scenario.get("id"),
                "location": scenario.get("location"),
                "snapshot": scenario,
            },
            updated_at=batch.timestamp,
        )
        batch.add_node(node, chunks)
        return node_id

    def add_npc(self, batch: BuildBatch, npc: Dict[str, Any]) -> str:
        node_id = build_node_id(
            NodeType.NPC.value, npc.get("id") or normalize_text(npc.get("name"))
        )
        self.entity_index.register_npc(node_id, npc.get("name"), npc.get("id"))
        chunks = create_npc_chunks(npc, node_id, batch.module_name, batch.timestamp)
        node = GraphNode(
            id=node_id,
            type=NodeType.NPC.value,
            title=npc.get("name", ""),
            visibility=PLAYER,
            meta={
                "npc_id": npc.get("id"),
                "current_location": npc.get("current_location"),
                "profile": npc,
            },
            updated_at=batch.timestamp,
        )
        batch.add_node(node, chunks)
        self.add_npc_inventory(batch, node_id, npc)
        return node_id

    def add_npc_inventory(
        self, batch: BuildBatch, npc_node_id: str, npc: Dict[str, Any]
    ) -> List[str]:
        """NPC possessions are keeper-only until discovered."""
        owner_id = npc.get("id") or normalize_text(npc.get("name"))
        anchors = {
            "owner_id": owner_id,
            "owner_name": npc.get("name"),
            "location": npc.get("current_location"),
        }
        item_ids = []
        for item in npc.get("inventory") or []:
            item_id = self._add_item(batch, item, owner_id, anchors, KEEPER)
            batch.add_edge(
                npc_node_id,
                item_id,
                EdgeType.OWNS,
                KEEPER,
                meta={"location": npc.get("current_location")},
            )
            item_ids.append(item_id)
        return item_ids

    def add_player_inventory(self, batch: BuildBatch, module_data: ModuleData) -> None:
        owner_id = module_data.player_id or "player"
        anchors = {
            "owner_id": owner_id,
            "owner_name": module_data.player_name or "Player",
        }
        owner_node_id = build_node_id(NodeType.NPC.value, owner_id)
        has_owner = owner_node_id in batch.nodes or self.graph_store.has_node(
            owner_node_id
        )
        for item in module_data.player_inventory:
            item_id = self._add_item(batch, item, owner_id, anchors, PLAYER)
            if has_owner:
                batch.add_edge(owner_node_id, item_id, EdgeType.OWNS, PLAYER)

    def _add_item(
        self,
        batch: BuildBatch,
        item: Dict[str, Any],
        owner_id: str,
        anchors: Dict[str, Any],
        visibility: str,
    ) -> str:
        item_id = build_item_node_id(owner_id, item.get("name", ""))
        chunk = create_item_chunk(
            item, item_id, batch.module_name, batch.timestamp, anchors, visibility
        )
        node = GraphNode(
            id=item_id,
            type=NodeType.ITEM.value,
            title=item.get("name", ""),
            visibility=visibility,
            meta={k: v for k, v in anchors.items() if v is not None},
            updated_at=batch.timestamp,
        )
        batch.add_node(node, [chunk])
        return item_id

    def add_clue(
        self,
        batch: BuildBatch,
        clue: Dict[str, Any],
        anchors: Optional[Dict[str, Any]] = None,
        title: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Register a clue node and its chunk.

        Args:
            batch: Batch being filled
            clue: Dict with "id", "text", "visibility" and optional "links"
            anchors: Context of the scenario or NPC the clue belongs to
            title: Node title; defaults to "Clue <id>"
            meta: Extra node metadata

        Returns:
            The clue node id
        """
        node_id = build_node_id(NodeType.CLUE.value, clue["id"])
        self.entity_index.register_clue(node_id, clue["id"])
        chunk = create_clue_chunk(
            clue, node_id, batch.module_name, batch.timestamp, anchors
        )
        node_meta = {"clue_id": clue["id"]}
        if clue.get("links") is not None:
            node_meta["links"] = clue["links"]
        node_meta.update(meta or {})
        node = GraphNode(
            id=node_id,
            type=NodeType.CLUE.value,
            title=title or f"Clue {clue['id']}",
            visibility=clue.get("visibility", KEEPER),
            meta=node_meta,
            updated_at=batch.timestamp,
        )
        batch.add_node(node, [chunk])
        return node_id

    def add_rule(self, batch: BuildBatch, rule: Dict[str, Any]) -> str:
        node_id = build_node_id(NodeType.RULE.value, rule["id"])
        chunk = create_rule_chunk(rule, node_id, batch.module_name, batch.timestamp)
        node = GraphNode(
            id=node_id,
            type=NodeType.RULE.value,
            title=f"Rule {rule['id']}",
            visibility=rule.get("visibility", PLAYER),
            meta={"rule_id": rule["id"]},
            updated_at=batch.timestamp,
        )
        batch.add_node(node, [chunk])
        return node_id

    def _ensure_embedded_clue(
        self,
        batch: BuildBatch,
        clue: Dict[str, Any],
        visibility: str,
        anchors: Dict[str, Any],
    ) -> Tuple[str, bool]:
        """
        Resolve a clue embedded in a scenario or NPC record; create it if unseen.

        A known keeper clue that is now discovered or revealed is rewritten
        as a player clue. The change is one-way.

        Returns:
            The clue node id and whether the clue node was written
        """
        clue_id = clue.get("id") or normalize_text(clue.get("clue_text"))
        node_id = build_node_id(NodeType.CLUE.value, clue_id)
        if node_id in batch.nodes or self.entity_index.has_clue(clue_id):
            node_id = self.entity_index.resolve_clue(clue_id) or node_id
            if visibility == PLAYER:
                return node_id, self._reveal_clue(batch, node_id)
            return node_id, False

        text = clue.get("clue_text", "")
        self.add_clue(
            batch,
            {"id": clue_id, "text": text, "visibility": visibility},
            anchors=anchors,
            title=text[:80],
            meta={"category": clue.get("category")},
        )
        return node_id, True

    def _reveal_clue(self, batch: BuildBatch, node_id: str) -> bool:
        """Move a keeper clue node and its chunks to the player partition."""
        node = batch.nodes.get(node_id) or self.graph_store.get_node(node_id)
        if node is None or node.visibility == PLAYER:
            return False

        node = copy.deepcopy(node)
        node.visibility = PLAYER
        node.updated_at = batch.timestamp
        chunks = []
        for chunk_id in node.chunk_ids:
            chunk = batch.chunks.get(chunk_id) or self.chunk_store.get(chunk_id)
            if chunk is not None:
                chunks.append(
                    replace(chunk, visibility=PLAYER, updated_at=batch.timestamp)
                )
        batch.add_node(node, chunks)
        logger.debug(f"Clue revealed to players: {node_id}")
        return True

    # Structural edges

    def link_scenario(
        self, batch: BuildBatch, node_id: str, scenario: Dict[str, Any]
    ) -> List[str]:
        """
        Derive the structural edges of one scenario.

        Returns:
            Ids of clue nodes created for clues seen here for the first time
        """
        new_node_ids = []
        self.link_exits(batch, node_id, scenario)

        for character in scenario.get("characters") or []:
            npc_id = self.entity_index.npcs.get(
                normalize_text(character.get("id"))
            ) or self.entity_index.npcs.get(normalize_text(character.get("name")))
            if not npc_id:
                continue
            batch.add_edge(
                npc_id,
                node_id,
                EdgeType.APPEARS_IN,
                PLAYER,
                meta={"role": character.get("role"), "status": character.get("status")},
            )

        anchors = {
            "scenario_id": scenario.get("id"),
            "scenario_name": scenario.get("name"),
            "location": scenario.get("location"),
        }
        for clue in scenario.get("clues") or []:
            visibility = PLAYER if clue.get("discovered") else KEEPER
            clue_node_id, created = self._ensure_embedded_clue(
                batch, clue, visibility, anchors
            )
            if created:
                new_node_ids.append(clue_node_id)
            batch.add_edge(
                node_id,
                clue_node_id,
                EdgeType.HAS_CLUE,
                PLAYER,
                meta={
                    "location": clue.get("location"),
                    "difficulty": clue.get("difficulty"),
                },
            )
        return new_node_ids

    def link_npc(
        self, batch: BuildBatch, node_id: str, npc: Dict[str, Any]
    ) -> List[str]:
        """
        Derive the KNOWS and RELATED_TO edges of one NPC.

        Returns:
            Ids of clue nodes created for clues seen here for the first time
        """
        new_node_ids = []
        anchors = {
            "npc_id": npc.get("id"),
            "npc_name": npc.get("name"),
            "location": npc.get("current_location"),
        }
        for clue in npc.get("clues") or []:
            visibility = PLAYER if clue.get("revealed") else KEEPER
            clue_node_id, created = self._ensure_embedded_clue(
                batch, clue, visibility, anchors
            )
            if created:
                new_node_ids.append(clue_node_id)
            batch.add_edge(
                node_id,
                clue_node_id,
                EdgeType.KNOWS,
                visibility,
                meta={"difficulty": clue.get("difficulty")},
            )

        self.link_relationships(batch, node_id, npc)
        return new_node_ids

    def link_exits(
        self,
        batch: BuildBatch,
        node_id: str,
        scenario: Dict[str, Any],
        only_target: Optional[str] = None,
    ) -> None:
        """
        Add CONNECTED_TO edges in both directions for each resolvable exit.

        Args:
            batch: Batch being filled
            node_id: Scenario node declaring the exits
            scenario: Scenario record
            only_target: Keep only exits leading to this node
        """
        for exit in scenario.get("exits") or []:
            target_id = self.entity_index.scenarios.get(
                normalize_text(exit.get("destination"))
            )
            if not target_id or (only_target and target_id != only_target):
                continue
            meta = {
                "direction": exit.get("direction"),
                "description": exit.get("description"),
                "condition": exit.get("condition"),
            }
            batch.add_edge(node_id, target_id, EdgeType.CONNECTED_TO, PLAYER, meta=meta)
            batch.add_edge(target_id, node_id, EdgeType.CONNECTED_TO, PLAYER, meta=meta)

    def link_relationships(
        self,
        batch: BuildBatch,
        node_id: str,
        npc: Dict[str, Any],
        only_target: Optional[str] = None,
    ) -> None:
        """Add RELATED_TO edges in both directions; see ``link_exits``."""
        for relation in npc.get("relationships") or []:
            target_id = self.entity_index.npcs.get(
                normalize_text(relation.get("target_id"))
            ) or self.entity_index.npcs.get(normalize_text(relation.get("target_name")))
            if not target_id or (only_target and target_id != only_target):
                continue
            meta = {
                "relationship_type": relation.get("relationship_type"),
                "attitude": relation.get("attitude"),
            }
            batch.add_edge(node_id, target_id, EdgeType.RELATED_TO, PLAYER, meta=meta)
            batch.add_edge(target_id, node_id, EdgeType.RELATED_TO, PLAYER, meta=meta)

    def link_rules(self, batch: BuildBatch) -> None:
        """Rules apply to every scenario and NPC in the batch."""
        targets = batch.nodes_of_type(NodeType.SCENARIO) + batch.nodes_of_type(
            NodeType.NPC
        )
        for rule_node in batch.nodes_of_type(NodeType.RULE):
            for target in targets:
                batch.add_edge(
                    rule_node.id, target.id, EdgeType.APPLIES_TO, rule_node.visibility
                )

    # Writing

    def transaction(self):
        """Single transaction over every store write, when the backing supports it."""
        return self.database.transaction() if self.database else nullcontext()

    def _locked(self):
        return self.write_lock if self.write_lock is not None else nullcontext()

    def commit(
        self,
        batch: BuildBatch,
        options: BuildOptions,
        similarity_node_ids: Optional[List[str]] = None,
    ) -> None:
        """
        Write a batch to the stores.

        Embeddings are computed first, without holding the write lock or
        any store lock.

        Args:
            batch: Filled batch
            options: Build options
            similarity_node_ids: Nodes whose similarity edges are recomputed,
                including edges pointing to them. Defaults to every batch
                node, with only their outgoing similarity edges replaced.
        """
        chunks = list(batch.chunks.values())
        vectors = [
            {
                "id": chunk.id,
                "embedding": self.embedder.embed(chunk.text),
                "payload": chunk_payload(chunk),
            }
            for chunk in chunks
        ]
        if options.enable_similarity_edges:
            vectors.extend(self._node_vectors(batch))
        lexical_docs = [
            {
                "id": chunk.id,
                "text": chunk.text,
                "tags": chunk.tags,
                "payload": lexical_payload(chunk),
            }
            for chunk in chunks
        ]

        with self._locked(), self.transaction():
            if batch.removed_chunk_ids:
                self.remove_chunks(batch.removed_chunk_ids)
            for scope in batch.edge_removals:
                self.graph_store.remove_edges(**scope)

            self.graph_store.upsert_nodes(batch.nodes.values())
            self.graph_store.upsert_edges(batch.edges.values())
            self.chunk_store.set_many(chunks)
            self.vector_store.upsert(vectors)
            self.lexical_store.upsert(lexical_docs)

            if options.enable_similarity_edges:
                if similarity_node_ids is None:
                    targets = list(batch.nodes)
                    self._drop_similarity_edges(targets, incoming=False)
                else:
                    targets = list(similarity_node_ids)
                    self._drop_similarity_edges(targets, incoming=True)
                self.graph_store.upsert_edges(
                    self.similarity_edges(targets, options, batch.timestamp)
                )

    def _node_vectors(self, batch: BuildBatch) -> List[Dict[str, Any]]:
        """Embed each batch node from the concatenated text of its chunks."""
        vectors = []
        for node in batch.nodes.values():
            text = " ".join(
                batch.chunks[chunk_id].text
                for chunk_id in node.chunk_ids
                if chunk_id in batch.chunks
            )
            embedding = self.embedder.embed(text)
            if not embedding:
                continue
            node.embedding_key = node_vector_id(node.id)
            vectors.append(
                {
                    "id": node.embedding_key,
                    "embedding": embedding,
                    "payload": {
                        "kind": "node",
                        "node_id": node.id,
                        "node_type": node.type,
                        "visibility": node.visibility,
                    },
                }
            )
        return vectors

    def _drop_similarity_edges(self, node_ids: List[str], incoming: bool) -> None:
        similar = EdgeType.SIMILAR_TO.value
        for node_id in node_ids:
            self.graph_store.remove_edges(from_id=node_id, type=similar)
            if incoming:
                self.graph_store.remove_edges(to_id=node_id, type=similar)

    def remove_chunks(self, chunk_ids: List[str]) -> None:
        self.vector_store.delete(chunk_ids)
        self.lexical_store.delete(chunk_ids)
        self.chunk_store.remove(chunk_ids)

    def similarity_edges(
        self,
        node_ids: List[str],
        options: BuildOptions,
        timestamp: Optional[int] = None,
    ) -> List[GraphEdge]:
        """
        Compute outgoing SIMILAR_TO edges for the given nodes.

        Candidates are every stored node vector of an allowed target type whose
        cosine similarity reaches the threshold; the best ``similarity_top_k``
        are kept. An edge is keeper-only if either endpoint is.
        """
        nodes = self.graph_store.get_graph().nodes
        corpus_size = max(len(nodes), 1)
        edges = []
        for node_id in node_ids:
            source = nodes.get(node_id)
            if source is None or not source.embedding_key:
                continue
            hits = self.vector_store.knn_by_id(
                source.embedding_key, corpus_size, {"kind": "node"}
            )
            kept = 0
            for hit in hits:
                if kept >= options.similarity_top_k:
                    break
                if hit.score < options.similarity_threshold:
                    break
                target = nodes.get(hit.payload.get("node_id"))
                if target is None or target.id == node_id:
                    continue
                if not similarity_allowed(source.type, target.type):
                    continue
                endpoints = (source.visibility, target.visibility)
                edges.append(
                    GraphEdge(
                        from_id=node_id,
                        to_id=target.id,
                        type=EdgeType.SIMILAR_TO.value,
                        visibility=KEEPER if KEEPER in endpoints else PLAYER,
                        weight=hit.score,
                        updated_at=timestamp or now_ms(),
                    )
                )
                kept += 1
        logger.debug(
            f"Computed {len(edges)} similarity edges for {len(node_ids)} nodes"
        )
        return edges


def chunk_payload(chunk: KnowledgeChunk) -> Dict[str, Any]:
    return {
        "kind": "chunk",
        "node_id": chunk.node_id,
        "visibility": chunk.visibility,
        "type": chunk.type,
        "tags": list(chunk.tags),
    }


def lexical_payload(chunk: KnowledgeChunk) -> Dict[str, Any]:
    return {
        "kind": "chunk",
        "node_id": chunk.node_id,
        "visibility": chunk.visibility,
        "type": chunk.type,
    }
