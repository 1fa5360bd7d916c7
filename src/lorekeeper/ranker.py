# src/lorekeeper/ranker.py
"""
Weighted fusion of retrieval signals.

Each candidate's final score is a weighted sum of its semantic, lexical and
graph scores and a state fitness term that rewards chunks tied to the
current scene. The weights depend on the action type of the turn.
"""

import logging
from typing import Dict, List, Optional

from .chunk_store import ChunkStore
from .config import DEFAULT_WEIGHT_PROFILES, get_weight_profiles
from .models import (
    ActionType,
    Candidate,
    KnowledgeChunk,
    NodeType,
    RagQuery,
    RankedCandidate,
    Visibility,
)

logger = logging.getLogger(__name__)

# Chunks allowed per owning node in a ranked list
MAX_CHUNKS_PER_NODE = 2

HIGH_TENSION = 7
PURSUIT_ACTIONS = {ActionType.COMBAT.value, ActionType.CHASE.value}


def get_weights_by_action_type(
    action_type: str,
    overrides: Optional[Dict[str, float]] = None,
    profiles: Optional[Dict[str, Dict[str, float]]] = None,
) -> Dict[str, float]:
    """
    Select the weight profile for an action type.

    Args:
        action_type: Action type of the turn; unknown types use "default"
        overrides: Partial weights merged on top of the profile
        profiles: Weight table; defaults to the built-in profiles

    Returns:
        Weights for semantic, lexical, graph and state
    """
    profiles = profiles or DEFAULT_WEIGHT_PROFILES
    weights = dict(profiles.get(action_type) or profiles["default"])
    if overrides:
        weights.update(overrides)
    return weights


def _in_tags(value: Optional[str], chunk: KnowledgeChunk) -> bool:
    return bool(value) and value in chunk.tags


def compute_state_fitness(chunk: KnowledgeChunk, query: RagQuery) -> float:
    """
    Score how well a chunk fits the current game state, capped at 1.0.

    Args:
        chunk: Candidate chunk
        query: Current query

    Returns:
        State fitness between 0 and 1
    """
    entities = query.entities
    score = 0.0

    scenario_id = chunk.anchors.get("scenario_id")
    if scenario_id and scenario_id == entities.current_scenario_id:
        score += 0.15
    elif _in_tags(entities.current_scenario_name, chunk) or (
        entities.location and chunk.anchors.get("location") == entities.location
    ):
        score += 0.10

    if any(clue in chunk.tags for clue in entities.discovered_clues):
        score += 0.10

    if entities.recent_scenes and entities.recent_scenes[-1] in chunk.tags:
        score += 0.05

    if (
        query.constraints.tension >= HIGH_TENSION
        and query.action_type in PURSUIT_ACTIONS
    ):
        score += 0.05

    return min(score, 1.0)


def format_graph_path(path: List[str]) -> str:
    """Render a node path as "type:name" steps, names cut to 12 characters."""
    steps = []
    for node_id in path:
        parts = node_id.split(":")
        if len(parts) >= 2:
            steps.append(f"{parts[0]}:{parts[1][:12]}")
        else:
            steps.append(node_id[:15])
    return " → ".join(steps)


def generate_why_this(
    candidate: Candidate,
    chunk: KnowledgeChunk,
    query: RagQuery,
    weights: Dict[str, float],
) -> List[str]:
    """
    Explain why a candidate was selected.

    Args:
        candidate: Scored candidate
        chunk: The candidate's chunk
        query: Current query
        weights: Weights used for the final score

    Returns:
        Non-empty list of human-readable reasons
    """
    entities = query.entities
    reasons = []

    if candidate.semantic_score:
        contribution = candidate.semantic_score * weights.get("semantic", 0) * 100
        reasons.append(f"semantic match ({contribution:.0f}% contribution)")

    if candidate.lexical_score:
        keywords = candidate.matched_keywords or []
        if keywords:
            more = "..." if len(keywords) > 3 else ""
            reasons.append(f"keyword hits: {', '.join(keywords[:3])}{more}")
        else:
            reasons.append("keyword match")

    if candidate.graph_score:
        if candidate.graph_path and len(candidate.graph_path) > 1:
            reasons.append(f"graph path: {format_graph_path(candidate.graph_path)}")
        else:
            reasons.append("graph neighborhood")

    if _in_tags(entities.current_scenario_name, chunk):
        reasons.append(f"current scene: {entities.current_scenario_name}")

    if entities.target_name and entities.target_name in chunk.tags:
        reasons.append(f"involves target: {entities.target_name}")

    text = chunk.text.lower()
    npcs = [
        npc
        for npc in entities.npcs_in_scene
        if npc in chunk.tags or npc.lower() in text
    ]
    if npcs:
        reasons.append(f"related NPCs: {', '.join(npcs[:2])}")

    if any(
        clue in chunk.tags or chunk.anchors.get("clue_id") == clue
        for clue in entities.discovered_clues
    ):
        reasons.append("related to a known clue")

    if chunk.type == NodeType.CLUE.value:
        reasons.append("clue information")
    elif (
        chunk.type == NodeType.NPC.value
        and chunk.visibility == Visibility.KEEPER.value
    ):
        reasons.append("NPC secret")

    return reasons or ["relevant context"]


class Ranker:
    """
    Scores, sorts and diversifies retrieval candidates.

    At most ``max_per_node`` chunks of the same owning node survive, taken in
    score order, and the list is cut to ``top_n``.
    """

    def __init__(
        self,
        chunk_store: ChunkStore,
        weight_profiles: Optional[Dict[str, Dict[str, float]]] = None,
        max_per_node: int = MAX_CHUNKS_PER_NODE,
    ):
        """
        Initialize the ranker.

        Args:
            chunk_store: Chunk records for the candidates
            weight_profiles: Weight table per action type; defaults to the
                configured profiles
            max_per_node: Chunks allowed per owning node
        """
        self.chunk_store = chunk_store
        self.weight_profiles = weight_profiles or get_weight_profiles()
        self.max_per_node = max_per_node

    def resolve_weights(
        self,
        action_type: str,
        overrides: Optional[Dict[str, float]] = None,
        use_dynamic_weights: bool = True,
    ) -> Dict[str, float]:
        """Weights for a turn; without dynamic weights the default profile is used."""
        if not use_dynamic_weights:
            action_type = "default"
        return get_weights_by_action_type(action_type, overrides, self.weight_profiles)

    def rank(
        self,
        candidates: List[Candidate],
        query: RagQuery,
        weights: Dict[str, float],
        top_n: int = 10,
    ) -> List[RankedCandidate]:
        """
        Rank candidates for a query.

        Candidates whose chunk is no longer stored are skipped.

        Args:
            candidates: Merged candidates from the retriever
            query: Current query
            weights: Signal weights
            top_n: Maximum number of results

        Returns:
            Ranked candidates, best first
        """
        scored = []
        for candidate in candidates:
            chunk = self.chunk_store.get(candidate.chunk_id)
            if chunk is None:
                logger.debug(f"Skipping missing chunk: {candidate.chunk_id}")
                continue

            state_score = compute_state_fitness(chunk, query)
            final_score = (
                (candidate.semantic_score or 0.0) * weights.get("semantic", 0.0)
                + (candidate.lexical_score or 0.0) * weights.get("lexical", 0.0)
                + (candidate.graph_score or 0.0) * weights.get("graph", 0.0)
                + state_score * weights.get("state", 0.0)
            )
            ranked = RankedCandidate(
                chunk_id=candidate.chunk_id,
                node_id=candidate.node_id or chunk.node_id,
                semantic_score=candidate.semantic_score,
                lexical_score=candidate.lexical_score,
                graph_score=candidate.graph_score,
                graph_path=candidate.graph_path,
                matched_keywords=candidate.matched_keywords,
                state_score=state_score,
                final_score=final_score,
                why_this=generate_why_this(candidate, chunk, query, weights),
            )
            scored.append(ranked)

        scored.sort(key=lambda c: c.final_score, reverse=True)

        results = []
        per_node: Dict[str, int] = {}
        for candidate in scored:
            count = per_node.get(candidate.node_id, 0)
            if count >= self.max_per_node:
                continue
            per_node[candidate.node_id] = count + 1
            results.append(candidate)
            if len(results) >= top_n:
                break
        return results
