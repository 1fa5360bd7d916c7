# src/lorekeeper/knowledge_graph.py
import json
import logging
import threading
from abc import ABC, abstractmethod
from collections import Counter
from datetime import datetime, UTC
from typing import Any, Dict, Iterable, List, Optional

from .database import SqliteDatabase
from .models import GraphEdge, GraphNode, KnowledgeGraph

logger = logging.getLogger(__name__)


class GraphStore(ABC):
    """
    Typed knowledge graph of world entities.

    Nodes are scenarios, NPCs, clues, items and rules. Edges are directed and
    typed, and an edge is identified by (from_id, to_id, type): upserting an
    edge with an existing triple replaces it.
    """

    @abstractmethod
    def get_graph(self) -> KnowledgeGraph:
        """Snapshot of all nodes and outgoing edges."""
        pass

    def get_node(self, node_id: str) -> Optional[GraphNode]:
        return self.get_graph().nodes.get(node_id)

    def has_node(self, node_id: str) -> bool:
        return self.get_node(node_id) is not None

    @abstractmethod
    def upsert_nodes(self, nodes: Iterable[GraphNode]) -> None:
        pass

    @abstractmethod
    def upsert_edges(self, edges: Iterable[GraphEdge]) -> None:
        pass

    @abstractmethod
    def remove_nodes(self, ids: Iterable[str]) -> None:
        """Remove nodes and every edge touching them."""
        pass

    @abstractmethod
    def remove_edges(
        self,
        from_id: Optional[str] = None,
        to_id: Optional[str] = None,
        type: Optional[str] = None,
        visibility: Optional[str] = None,
    ) -> int:
        """
        Remove edges matching all supplied fields.

        Calling with no field set removes nothing.

        Returns:
            Number of edges removed
        """
        pass

    @abstractmethod
    def neighbors(
        self,
        node_id: str,
        types: Optional[Iterable[str]] = None,
        visibility: Optional[str] = None,
    ) -> List[GraphEdge]:
        """
        Outgoing edges of a node.

        Args:
            node_id: Source node id
            types: Optional edge types to keep
            visibility: Optional visibility to keep; None keeps all

        Returns:
            Matching outgoing edges
        """
        pass

    def get_stats(self) -> Dict[str, Any]:
        """
        Get statistics about the knowledge graph.

        Returns:
            Dictionary with node and edge counts by type
        """
        graph = self.get_graph()
        node_counts = Counter(node.type for node in graph.nodes.values())
        edge_counts = Counter(edge.type for edge in graph.edges())
        return {
            "node_count": len(graph.nodes),
            "edge_count": sum(edge_counts.values()),
            "node_counts": dict(node_counts),
            "edge_counts": dict(edge_counts),
        }


def _edge_matches(
    edge: GraphEdge,
    from_id: Optional[str],
    to_id: Optional[str],
    type: Optional[str],
    visibility: Optional[str],
) -> bool:
    return (
        (from_id is None or edge.from_id == from_id)
        and (to_id is None or edge.to_id == to_id)
        and (type is None or edge.type == type)
        and (visibility is None or edge.visibility == visibility)
    )


class InMemoryGraphStore(GraphStore):
    """Dictionary-backed graph store for a single session."""

    def __init__(self):
        """Initialize an empty knowledge graph."""
        self._nodes: Dict[str, GraphNode] = {}
        self._adjacency: Dict[str, List[GraphEdge]] = {}
        self._lock = threading.RLock()

        # Version tracking for snapshot export
        self.schema_version = "1.0.0"
        self.last_updated = datetime.now(UTC)

    def get_graph(self) -> KnowledgeGraph:
        with self._lock:
            return KnowledgeGraph(
                nodes=dict(self._nodes),
                adjacency={
                    node_id: list(edges) for node_id, edges in self._adjacency.items()
                },
            )

    def get_node(self, node_id: str) -> Optional[GraphNode]:
        return self._nodes.get(node_id)

    def upsert_nodes(self, nodes: Iterable[GraphNode]) -> None:
        with self._lock:
            for node in nodes:
                self._nodes[node.id] = node
                self._adjacency.setdefault(node.id, [])
            self.last_updated = datetime.now(UTC)

    def upsert_edges(self, edges: Iterable[GraphEdge]) -> None:
        with self._lock:
            for edge in edges:
                edge_list = self._adjacency.setdefault(edge.from_id, [])
                for index, existing in enumerate(edge_list):
                    if existing.key == edge.key:
                        edge_list[index] = edge
                        break
                else:
                    edge_list.append(edge)
            self.last_updated = datetime.now(UTC)

    def remove_nodes(self, ids: Iterable[str]) -> None:
        removed = set(ids)
        with self._lock:
            for node_id in removed:
                self._nodes.pop(node_id, None)
                self._adjacency.pop(node_id, None)
            for source_id, edge_list in self._adjacency.items():
                self._adjacency[source_id] = [
                    edge for edge in edge_list if edge.to_id not in removed
                ]
            self.last_updated = datetime.now(UTC)

    def remove_edges(
        self,
        from_id: Optional[str] = None,
        to_id: Optional[str] = None,
        type: Optional[str] = None,
        visibility: Optional[str] = None,
    ) -> int:
        if from_id is None and to_id is None and type is None and visibility is None:
            return 0

        removed = 0
        with self._lock:
            sources = [from_id] if from_id is not None else list(self._adjacency)
            for source_id in sources:
                edge_list = self._adjacency.get(source_id)
                if not edge_list:
                    continue
                kept = [
                    edge
                    for edge in edge_list
                    if not _edge_matches(edge, from_id, to_id, type, visibility)
                ]
                removed += len(edge_list) - len(kept)
                self._adjacency[source_id] = kept
        return removed

    def neighbors(
        self,
        node_id: str,
        types: Optional[Iterable[str]] = None,
        visibility: Optional[str] = None,
    ) -> List[GraphEdge]:
        type_set = set(types) if types else None
        with self._lock:
            return [
                edge
                for edge in self._adjacency.get(node_id, [])
                if (type_set is None or edge.type in type_set)
                and (visibility is None or edge.visibility == visibility)
            ]

    def save_to_file(self, filepath: str) -> None:
        """
        Save the knowledge graph to a JSON file.

        Args:
            filepath: Path to save the file to
        """
        graph = self.get_graph()
        data = {
            "nodes": [node.to_dict() for node in graph.nodes.values()],
            "edges": [edge.to_dict() for edge in graph.edges()],
            "schema_version": self.schema_version,
            "last_updated": self.last_updated.isoformat(),
            "stats": self.get_stats(),
        }

        with open(filepath, "w") as f:
            json.dump(data, f)

        logger.info(f"Knowledge graph saved to {filepath}")

    def load_from_file(self, filepath: str) -> None:
        """
        Replace the graph contents with a snapshot written by ``save_to_file``.

        Args:
            filepath: Path to load the file from
        """
        with open(filepath, "r") as f:
            data = json.load(f)

        with self._lock:
            self._nodes = {}
            self._adjacency = {}
            self.upsert_nodes(GraphNode.from_dict(node) for node in data["nodes"])
            self.upsert_edges(GraphEdge.from_dict(edge) for edge in data["edges"])
            self.schema_version = data.get("schema_version", self.schema_version)
            self.last_updated = datetime.fromisoformat(data["last_updated"])

        stats = self.get_stats()
        logger.info(f"Knowledge graph loaded from {filepath}")
        logger.info(f"Nodes: {stats['node_count']}, Edges: {stats['edge_count']}")


class SqliteGraphStore(GraphStore):
    """Graph store persisted in the rag_nodes and rag_edges tables."""

    def __init__(self, db: SqliteDatabase):
        self.db = db

    def get_graph(self) -> KnowledgeGraph:
        graph = KnowledgeGraph()
        for row in self.db.fetchall("SELECT * FROM rag_nodes"):
            node = self._row_to_node(row)
            graph.nodes[node.id] = node
            graph.adjacency.setdefault(node.id, [])
        for row in self.db.fetchall("SELECT * FROM rag_edges"):
            edge = self._row_to_edge(row)
            graph.adjacency.setdefault(edge.from_id, []).append(edge)
        return graph

    def get_node(self, node_id: str) -> Optional[GraphNode]:
        row = self.db.fetchone("SELECT * FROM rag_nodes WHERE id = ?", (node_id,))
        return self._row_to_node(row) if row else None

    def upsert_nodes(self, nodes: Iterable[GraphNode]) -> None:
        rows = [
            (
                node.id,
                node.type,
                node.title,
                node.visibility,
                json.dumps(node.meta),
                json.dumps(node.chunk_ids),
                node.embedding_key,
                node.updated_at,
            )
            for node in nodes
        ]
        if rows:
            self.db.executemany(
                """
                INSERT OR REPLACE INTO rag_nodes
                (id, type, title, visibility, meta, chunk_ids, embedding_key, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )

    def upsert_edges(self, edges: Iterable[GraphEdge]) -> None:
        rows = [
            (
                edge.from_id,
                edge.to_id,
                edge.type,
                edge.weight,
                edge.visibility,
                json.dumps(edge.meta),
                edge.updated_at,
            )
            for edge in edges
        ]
        if rows:
            self.db.executemany(
                """
                INSERT OR REPLACE INTO rag_edges
                (from_id, to_id, type, weight, visibility, meta, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )

    def remove_nodes(self, ids: Iterable[str]) -> None:
        node_ids = list(ids)
        if not node_ids:
            return
        with self.db.transaction() as conn:
            for node_id in node_ids:
                conn.execute("DELETE FROM rag_nodes WHERE id = ?", (node_id,))
                conn.execute(
                    "DELETE FROM rag_edges WHERE from_id = ? OR to_id = ?",
                    (node_id, node_id),
                )

    def remove_edges(
        self,
        from_id: Optional[str] = None,
        to_id: Optional[str] = None,
        type: Optional[str] = None,
        visibility: Optional[str] = None,
    ) -> int:
        conditions = []
        params = []
        for column, value in (
            ("from_id", from_id),
            ("to_id", to_id),
            ("type", type),
            ("visibility", visibility),
        ):
            if value is not None:
                conditions.append(f"{column} = ?")
                params.append(value)
        if not conditions:
            return 0

        with self.db.transaction() as conn:
            cursor = conn.execute(
                f"DELETE FROM rag_edges WHERE {' AND '.join(conditions)}", params
            )
            return cursor.rowcount

    def neighbors(
        self,
        node_id: str,
        types: Optional[Iterable[str]] = None,
        visibility: Optional[str] = None,
    ) -> List[GraphEdge]:
        type_set = set(types) if types else None
        rows = self.db.fetchall(
            "SELECT * FROM rag_edges WHERE from_id = ? ORDER BY rowid", (node_id,)
        )
        edges = [self._row_to_edge(row) for row in rows]
        return [
            edge
            for edge in edges
            if (type_set is None or edge.type in type_set)
            and (visibility is None or edge.visibility == visibility)
        ]

    @staticmethod
    def _row_to_node(row) -> GraphNode:
        return GraphNode(
            id=row["id"],
            type=row["type"],
            title=row["title"] or "",
            visibility=row["visibility"],
            meta=json.loads(row["meta"] or "{}"),
            chunk_ids=json.loads(row["chunk_ids"] or "[]"),
            embedding_key=row["embedding_key"],
            updated_at=row["updated_at"] or 0,
        )

    @staticmethod
    def _row_to_edge(row) -> GraphEdge:
        return GraphEdge(
            from_id=row["from_id"],
            to_id=row["to_id"],
            type=row["type"],
            weight=row["weight"],
            visibility=row["visibility"],
            meta=json.loads(row["meta"] or "{}"),
            updated_at=row["updated_at"] or 0,
        )
