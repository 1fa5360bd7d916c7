# src/lorekeeper/chunk_factory.py
"""
Chunk synthesis for module records.

Each function turns one domain record (a scenario snapshot, NPC profile,
clue, rule or inventory item dictionary) into the chunks its graph node owns.
Player-safe facts and keeper-only facts never share a chunk.
"""

import json
from typing import Any, Dict, List, Optional

from .models import KnowledgeChunk, NodeType, Visibility
from .text_utils import normalize_text, simple_hash, uniq

PLAYER = Visibility.PLAYER.value
KEEPER = Visibility.KEEPER.value


def build_chunk_id(node_id: str, variant: str) -> str:
    return f"chunk:{node_id}:{variant}"


def build_item_node_id(owner_id: str, item_name: str) -> str:
    normalized = normalize_text(item_name) or str(simple_hash(item_name or ""))
    return f"{NodeType.ITEM.value}:{owner_id}:{normalized}"


def _join(parts: List[Any], separator: str = " | ") -> str:
    return separator.join(str(part) for part in parts if part)


def _strings(values: List[Any]) -> List[str]:
    return [str(value) for value in uniq(values)]


def create_scenario_chunks(
    scenario: Dict[str, Any], node_id: str, module_name: str, timestamp: int
) -> List[KnowledgeChunk]:
    """
    Build the overview chunk and, when keeper content exists, the keeper chunk.

    Args:
        scenario: Scenario snapshot dictionary
        node_id: Owning scenario node id
        module_name: Source module recorded on each chunk
        timestamp: Update time in milliseconds

    Returns:
        One or two chunks, overview first
    """
    name = scenario.get("name", "")
    location = scenario.get("location", "")
    anchors = {
        "scenario_id": scenario.get("id"),
        "scenario_name": name,
        "location": location,
    }
    conditions = scenario.get("conditions") or []
    events = scenario.get("events") or []
    exits = scenario.get("exits") or []

    overview_text = _join(
        [
            name,
            location,
            scenario.get("description"),
            "; ".join(
                f"{condition.get('type', '')}:{condition.get('description', '')}"
                for condition in conditions
            ),
            "; ".join(str(event) for event in events),
            "; ".join(
                f"{exit.get('direction', '')}->{exit.get('destination', '')}"
                for exit in exits
            ),
        ]
    )
    chunks = [
        KnowledgeChunk(
            id=build_chunk_id(node_id, "overview"),
            type=NodeType.SCENARIO.value,
            node_id=node_id,
            visibility=PLAYER,
            title=f"{name} overview",
            text=overview_text,
            tags=_strings(
                [name, location, *events, *(exit.get("destination") for exit in exits)]
            ),
            source_module=module_name,
            anchors=anchors,
            updated_at=timestamp,
        )
    ]

    permanent_changes = scenario.get("permanent_changes") or []
    keeper_parts = [
        scenario.get("keeper_notes"),
        (
            f"permanent changes: {'; '.join(str(c) for c in permanent_changes)}"
            if permanent_changes
            else None
        ),
    ]
    if any(keeper_parts):
        chunks.append(
            KnowledgeChunk(
                id=build_chunk_id(node_id, "keeper"),
                type=NodeType.SCENARIO.value,
                node_id=node_id,
                visibility=KEEPER,
                title=f"{name} keeper",
                text=_join(keeper_parts),
                tags=_strings([name, location]),
                source_module=module_name,
                anchors=dict(anchors),
                updated_at=timestamp,
            )
        )
    return chunks


def create_npc_chunks(
    npc: Dict[str, Any], node_id: str, module_name: str, timestamp: int
) -> List[KnowledgeChunk]:
    """
    Build the public profile chunk and, when secret content exists, the keeper chunk.

    Secrets, unrevealed clues and relationship details go to the keeper chunk only.
    """
    name = npc.get("name", "")
    location = npc.get("current_location")
    anchors = {"npc_id": npc.get("id"), "npc_name": name, "location": location}
    goals = npc.get("goals") or []
    relationships = npc.get("relationships") or []
    secrets = npc.get("secrets") or []
    clues = npc.get("clues") or []

    public_text = _join(
        [
            name,
            npc.get("occupation"),
            npc.get("personality"),
            npc.get("background"),
            "; ".join(str(goal) for goal in goals),
            f"location:{location}" if location else None,
            npc.get("notes"),
        ]
    )
    chunks = [
        KnowledgeChunk(
            id=build_chunk_id(node_id, "public"),
            type=NodeType.NPC.value,
            node_id=node_id,
            visibility=PLAYER,
            title=f"{name} profile",
            text=public_text,
            tags=_strings(
                [
                    name,
                    npc.get("occupation"),
                    location,
                    *goals,
                    *(rel.get("target_name") for rel in relationships),
                ]
            ),
            source_module=module_name,
            anchors=anchors,
            updated_at=timestamp,
        )
    ]

    secret_parts = [
        "; ".join(str(secret) for secret in secrets),
        "; ".join(
            clue.get("clue_text", "") for clue in clues if not clue.get("revealed")
        ),
        (
            "relationships:"
            + ", ".join(
                f"{rel.get('relationship_type', '')}:{rel.get('target_name', '')}"
                for rel in relationships
            )
            if relationships
            else None
        ),
    ]
    if any(secret_parts):
        chunks.append(
            KnowledgeChunk(
                id=build_chunk_id(node_id, "keeper"),
                type=NodeType.NPC.value,
                node_id=node_id,
                visibility=KEEPER,
                title=f"{name} keeper",
                text=_join(secret_parts),
                tags=_strings([name, *secrets]),
                source_module=module_name,
                anchors=dict(anchors),
                updated_at=timestamp,
            )
        )
    return chunks


def create_clue_chunk(
    clue: Dict[str, Any],
    node_id: str,
    module_name: str,
    timestamp: int,
    anchors: Optional[Dict[str, Any]] = None,
) -> KnowledgeChunk:
    """
    Build the single chunk of a clue node.

    Args:
        clue: Dict with "id", "text", "visibility" and optional "links"
        node_id: Owning clue node id
        module_name: Source module
        timestamp: Update time in milliseconds
        anchors: Context of the scenario or NPC the clue was found under
    """
    anchors = dict(anchors or {})
    links = clue.get("links")
    return KnowledgeChunk(
        id=build_chunk_id(node_id, "main"),
        type=NodeType.CLUE.value,
        node_id=node_id,
        visibility=clue.get("visibility", KEEPER),
        title=f"Clue {clue['id']}",
        text=clue.get("text", ""),
        tags=_strings(
            [
                anchors.get("scenario_name"),
                anchors.get("location"),
                *(links if isinstance(links, list) else []),
            ]
        ),
        source_module=module_name,
        anchors={**anchors, "clue_id": clue["id"]},
        updated_at=timestamp,
    )


def create_rule_chunk(
    rule: Dict[str, Any], node_id: str, module_name: str, timestamp: int
) -> KnowledgeChunk:
    return KnowledgeChunk(
        id=build_chunk_id(node_id, "rule"),
        type=NodeType.RULE.value,
        node_id=node_id,
        visibility=rule.get("visibility", PLAYER),
        title=f"Rule {rule['id']}",
        text=rule.get("text", ""),
        tags=["rule"],
        source_module=module_name,
        anchors={"rule_id": rule["id"]},
        updated_at=timestamp,
    )


def create_item_chunk(
    item: Dict[str, Any],
    node_id: str,
    module_name: str,
    timestamp: int,
    anchors: Dict[str, Any],
    visibility: str,
) -> KnowledgeChunk:
    name = item.get("name", "")
    properties = item.get("properties")
    text = f"{name} | {json.dumps(properties)}" if properties else name
    return KnowledgeChunk(
        id=build_chunk_id(node_id, "item"),
        type=NodeType.ITEM.value,
        node_id=node_id,
        visibility=visibility,
        title=f"Item: {name}",
        text=text,
        tags=_strings([name, anchors.get("owner_name"), anchors.get("location")]),
        source_module=module_name,
        anchors=dict(anchors),
        updated_at=timestamp,
    )
