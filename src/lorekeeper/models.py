# src/lorekeeper/models.py
"""
Data model for the lorekeeper retrieval engine.

Domain records (scenario snapshots, NPC profiles, clues, rules, inventory
items) arrive from the ingestion pipeline as plain dictionaries and are kept
that way inside node metadata. Engine-side records are dataclasses.
"""

import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple


class Visibility(str, Enum):
    """Secrecy partition for chunks, nodes and edges."""

    PLAYER = "player"
    KEEPER = "keeper"


class NodeType(str, Enum):
    """Kinds of world entity held in the knowledge graph."""

    SCENARIO = "scenario"
    NPC = "npc"
    CLUE = "clue"
    ITEM = "item"
    RULE = "rule"


class EdgeType(str, Enum):
    """Typed relations between graph nodes."""

    CONNECTED_TO = "CONNECTED_TO"
    APPEARS_IN = "APPEARS_IN"
    HAS_CLUE = "HAS_CLUE"
    KNOWS = "KNOWS"
    OWNS = "OWNS"
    RELATED_TO = "RELATED_TO"
    APPLIES_TO = "APPLIES_TO"
    SIMILAR_TO = "SIMILAR_TO"


class ActionType(str, Enum):
    """Action categories used to select ranking weight profiles."""

    SOCIAL = "social"
    EXPLORATION = "exploration"
    COMBAT = "combat"
    CHASE = "chase"
    STEALTH = "stealth"
    MENTAL = "mental"
    ENVIRONMENTAL = "environmental"
    NARRATIVE = "narrative"


ACTION_TYPES = [action.value for action in ActionType]


def now_ms() -> int:
    """Current wall-clock time in milliseconds."""
    return int(time.time() * 1000)


@dataclass
class KnowledgeChunk:
    """A retrievable unit of text owned by a graph node."""

    id: str
    type: str  # NodeType value
    node_id: str
    visibility: str
    title: str
    text: str
    tags: List[str] = field(default_factory=list)
    source_module: str = ""
    source_ref: Optional[str] = None
    anchors: Dict[str, Any] = field(default_factory=dict)
    updated_at: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "KnowledgeChunk":
        return cls(
            id=data["id"],
            type=data["type"],
            node_id=data["node_id"],
            visibility=data["visibility"],
            title=data.get("title", ""),
            text=data.get("text", ""),
            tags=list(data.get("tags") or []),
            source_module=data.get("source_module", ""),
            source_ref=data.get("source_ref"),
            anchors=dict(data.get("anchors") or {}),
            updated_at=data.get("updated_at", 0),
        )


@dataclass
class GraphNode:
    """One world entity in the knowledge graph."""

    id: str  # "type:key"
    type: str
    title: str
    visibility: str
    meta: Dict[str, Any] = field(default_factory=dict)
    chunk_ids: List[str] = field(default_factory=list)
    embedding_key: Optional[str] = None
    updated_at: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GraphNode":
        return cls(
            id=data["id"],
            type=data["type"],
            title=data.get("title", ""),
            visibility=data.get("visibility", Visibility.PLAYER.value),
            meta=dict(data.get("meta") or {}),
            chunk_ids=list(data.get("chunk_ids") or []),
            embedding_key=data.get("embedding_key"),
            updated_at=data.get("updated_at", 0),
        )


@dataclass
class GraphEdge:
    """A directed, typed relation. Identity is (from_id, to_id, type)."""

    from_id: str
    to_id: str
    type: str
    visibility: str = Visibility.PLAYER.value
    weight: Optional[float] = None
    meta: Dict[str, Any] = field(default_factory=dict)
    updated_at: int = 0

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.from_id, self.to_id, self.type)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GraphEdge":
        return cls(
            from_id=data["from_id"],
            to_id=data["to_id"],
            type=data["type"],
            visibility=data.get("visibility", Visibility.PLAYER.value),
            weight=data.get("weight"),
            meta=dict(data.get("meta") or {}),
            updated_at=data.get("updated_at", 0),
        )


@dataclass
class KnowledgeGraph:
    """Snapshot of the graph: nodes by id and outgoing edges by source id."""

    nodes: Dict[str, GraphNode] = field(default_factory=dict)
    adjacency: Dict[str, List[GraphEdge]] = field(default_factory=dict)

    def edges(self) -> Iterator[GraphEdge]:
        for edge_list in self.adjacency.values():
            yield from edge_list


@dataclass
class VectorHit:
    id: str
    score: float
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class LexicalHit:
    id: str
    score: float
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class QueryEntities:
    """Entity references extracted from the current game state."""

    target_name: Optional[str] = None
    current_scenario_id: Optional[str] = None
    current_scenario_name: Optional[str] = None
    location: Optional[str] = None
    npcs_in_scene: List[str] = field(default_factory=list)
    discovered_clues: List[str] = field(default_factory=list)
    recent_scenes: List[str] = field(default_factory=list)


@dataclass
class QueryConstraints:
    time_of_day: str = ""
    game_day: int = 0
    tension: float = 0.0
    phase: str = ""


@dataclass
class RagQuery:
    """Structured retrieval query derived from game state."""

    mode: str
    intent: str
    action_type: str
    entities: QueryEntities = field(default_factory=QueryEntities)
    constraints: QueryConstraints = field(default_factory=QueryConstraints)
    query_text: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Candidate:
    """A chunk gathered by one or more retrieval signals."""

    chunk_id: str
    node_id: Optional[str] = None
    semantic_score: Optional[float] = None
    lexical_score: Optional[float] = None
    graph_score: Optional[float] = None
    graph_path: Optional[List[str]] = None
    matched_keywords: Optional[List[str]] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RankedCandidate(Candidate):
    """Candidate with its fused score and explanation."""

    state_score: float = 0.0
    final_score: float = 0.0
    why_this: List[str] = field(default_factory=list)


@dataclass
class Evidence:
    """Externally visible, explainable retrieval result."""

    chunk_id: str
    node_id: str
    type: str
    title: str
    snippet: str
    anchors: Dict[str, Any]
    confidence: float
    why_this: str
    visibility: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ModuleData:
    """Full ingestion payload for one game module."""

    scenarios: List[Dict[str, Any]] = field(default_factory=list)
    npcs: List[Dict[str, Any]] = field(default_factory=list)
    clues: List[Dict[str, Any]] = field(default_factory=list)  # {id, text, visibility, links}
    rules: List[Dict[str, Any]] = field(default_factory=list)  # {id, text, visibility}
    player_inventory: List[Dict[str, Any]] = field(default_factory=list)
    player_id: Optional[str] = None
    player_name: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ModuleData":
        return cls(
            scenarios=list(data.get("scenarios") or []),
            npcs=list(data.get("npcs") or []),
            clues=list(data.get("clues") or []),
            rules=list(data.get("rules") or []),
            player_inventory=list(data.get("player_inventory") or []),
            player_id=data.get("player_id"),
            player_name=data.get("player_name"),
        )


DELTA_KINDS = ("ADD_CLUE", "UPDATE_SCENARIO", "UPDATE_NPC")


@dataclass
class KnowledgeDelta:
    """Single-entity update to an already built knowledge base."""

    kind: str
    clue: Optional[Dict[str, Any]] = None
    scenario_id: Optional[str] = None
    npc_id: Optional[str] = None
    patch: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def add_clue(cls, clue: Dict[str, Any]) -> "KnowledgeDelta":
        return cls(kind="ADD_CLUE", clue=clue)

    @classmethod
    def update_scenario(
        cls, scenario_id: str, patch: Dict[str, Any]
    ) -> "KnowledgeDelta":
        return cls(kind="UPDATE_SCENARIO", scenario_id=scenario_id, patch=patch)

    @classmethod
    def update_npc(cls, npc_id: str, patch: Dict[str, Any]) -> "KnowledgeDelta":
        return cls(kind="UPDATE_NPC", npc_id=npc_id, patch=patch)
