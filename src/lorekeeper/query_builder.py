# src/lorekeeper/query_builder.py
import re
import logging
from typing import Any, Dict, List, Optional

from .models import (
    ACTION_TYPES,
    ActionType,
    QueryConstraints,
    QueryEntities,
    RagQuery,
    Visibility,
)

logger = logging.getLogger(__name__)

DEFAULT_INTENT = "investigate surroundings"


def _names(items: Optional[List[Any]]) -> List[str]:
    """Names of dict entries, or the entries themselves when they are strings."""
    names = []
    for item in items or []:
        name = item.get("name") if isinstance(item, dict) else item
        if name:
            names.append(str(name))
    return names


class QueryBuilder:
    """
    Builds structured retrieval queries from the current game state.

    The game state is the plain dictionary kept by the turn loop. The fields
    read here are ``current_scenario``, ``temporary_info.current_action_analysis``,
    ``discovered_clues``, ``visited_scenarios`` and the time and tension
    constraints.
    """

    def __init__(self, infer_action_type: bool = False):
        """
        Initialize the query builder.

        Args:
            infer_action_type: Classify the intent with regex patterns when the
                action analysis carries no action type
        """
        self.infer_action_type = infer_action_type

        # Patterns for action type inference, checked in order
        self.patterns = {
            ActionType.COMBAT.value: [
                r"\b(?:attack|fight|shoot|stab|strike|punch|kill)(?:s|ed|ing)?\b",
                r"\b(?:gun|knife|weapon)\b",
            ],
            ActionType.CHASE.value: [
                r"\b(?:chase|pursue|flee|escape|run)(?:s|d|ed|ing)?\b",
                r"\brun(?:ning)?\s+(?:after|away)\b",
            ],
            ActionType.STEALTH.value: [
                r"\b(?:sneak|hide|creep|eavesdrop)(?:s|ed|ing)?\b",
                r"\b(?:quietly|silently|unseen)\b",
            ],
            ActionType.SOCIAL.value: [
                r"\b(?:talk|ask|speak|persuade|convince|question|interrogate|"
                r"charm|threaten|bribe)(?:s|ed|ing)?\b",
                r"\b(?:talk|speak)\s+(?:to|with)\b",
            ],
            ActionType.MENTAL.value: [
                r"\b(?:remember|recall|think|analy[sz]e|deduce|decipher|translate)"
                r"(?:s|d|ed|ing)?\b",
                r"\b(?:occult|library|research)\b",
            ],
            ActionType.ENVIRONMENTAL.value: [
                r"\b(?:climb|swim|jump|cross|survive|endure)(?:s|ed|ing)?\b",
                r"\b(?:weather|storm|cold|fire|flood)\b",
            ],
            ActionType.EXPLORATION.value: [
                r"\b(?:search|look|examine|inspect|explore|investigate|open|read)"
                r"(?:s|ed|ing)?\b",
                r"\bwhat\s+do\s+i\s+see\b",
            ],
        }

    def build_rag_query(
        self, state: Dict[str, Any], mode: str = Visibility.PLAYER.value
    ) -> RagQuery:
        """
        Build a retrieval query for the current turn.

        Args:
            state: Game state dictionary
            mode: Visibility mode, "player" or "keeper"

        Returns:
            Structured query with a flattened query text
        """
        temporary_info = state.get("temporary_info") or {}
        action = temporary_info.get("current_action_analysis") or {}
        target = action.get("target") or {}
        scenario = state.get("current_scenario") or {}

        intent = target.get("intent") or action.get("action") or DEFAULT_INTENT
        action_type = action.get("action_type")
        if not action_type and self.infer_action_type:
            action_type = self.classify_action(intent)
        if not action_type:
            action_type = ActionType.NARRATIVE.value
        elif action_type not in ACTION_TYPES:
            # Ranked with the default weight profile
            logger.debug(f"Unrecognized action type: {action_type}")

        discovered_clues = [str(clue) for clue in state.get("discovered_clues") or []]
        query_parts = [
            scenario.get("name"),
            scenario.get("location"),
            target.get("name"),
            intent,
            " ".join(discovered_clues),
        ]

        entities = QueryEntities(
            target_name=target.get("name"),
            current_scenario_id=scenario.get("id"),
            current_scenario_name=scenario.get("name"),
            location=scenario.get("location"),
            npcs_in_scene=_names(scenario.get("characters")),
            discovered_clues=discovered_clues,
            recent_scenes=_names(state.get("visited_scenarios")),
        )
        constraints = QueryConstraints(
            time_of_day=state.get("time_of_day") or "",
            game_day=state.get("game_day") or 0,
            tension=state.get("tension") or 0.0,
            phase=state.get("phase") or "",
        )

        return RagQuery(
            mode=mode,
            intent=intent,
            action_type=action_type,
            entities=entities,
            constraints=constraints,
            query_text=" ".join(part for part in query_parts if part),
        )

    def classify_action(self, text: str) -> str:
        """
        Classify free text into an action type.

        Args:
            text: Intent or action description

        Returns:
            The first action type with a matching pattern, else narrative
        """
        for action_type, pattern_list in self.patterns.items():
            for pattern in pattern_list:
                if re.search(pattern, text or "", re.IGNORECASE):
                    return action_type
        return ActionType.NARRATIVE.value


def build_rag_query(
    state: Dict[str, Any], mode: str = Visibility.PLAYER.value
) -> RagQuery:
    """Build a query with the default builder (no action type inference)."""
    return QueryBuilder().build_rag_query(state, mode)
