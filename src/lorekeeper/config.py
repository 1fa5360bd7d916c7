# src/lorekeeper/config.py
"""
Centralized configuration for the retrieval engine.

Engine settings and the per-action ranking weight table live here. Both can
be overridden from a JSON file; the path defaults to the LOREKEEPER_CONFIG
environment variable.
"""

import copy
import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

# Base ranking weights per action type
DEFAULT_WEIGHT_PROFILES: Dict[str, Dict[str, float]] = {
    "social": {"semantic": 0.50, "lexical": 0.25, "graph": 0.15, "state": 0.10},
    "exploration": {"semantic": 0.35, "lexical": 0.35, "graph": 0.20, "state": 0.10},
    "combat": {"semantic": 0.30, "lexical": 0.20, "graph": 0.35, "state": 0.15},
    "chase": {"semantic": 0.25, "lexical": 0.25, "graph": 0.35, "state": 0.15},
    "stealth": {"semantic": 0.35, "lexical": 0.30, "graph": 0.20, "state": 0.15},
    "mental": {"semantic": 0.50, "lexical": 0.20, "graph": 0.15, "state": 0.15},
    "environmental": {"semantic": 0.35, "lexical": 0.35, "graph": 0.15, "state": 0.15},
    "narrative": {"semantic": 0.40, "lexical": 0.25, "graph": 0.25, "state": 0.10},
    "default": {"semantic": 0.45, "lexical": 0.25, "graph": 0.20, "state": 0.10},
}

WEIGHT_KEYS = ("semantic", "lexical", "graph", "state")

# External configuration path (can be overridden by environment variable)
CONFIG_PATH = os.environ.get("LOREKEEPER_CONFIG", "config/lorekeeper.json")


def _read_config_file(path: Optional[str] = None) -> Dict[str, Any]:
    """
    Read the JSON configuration file.

    Returns:
        Parsed configuration, or an empty dict if the file is missing or invalid
    """
    path = path or CONFIG_PATH
    if not os.path.exists(path):
        return {}
    try:
        with open(path, "r") as f:
            config = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning(f"Error loading configuration from {path}: {str(e)}, using defaults")
        return {}
    if not isinstance(config, dict):
        logger.warning(f"Invalid configuration in {path}, using defaults")
        return {}
    return config


def get_weight_profiles(path: Optional[str] = None) -> Dict[str, Dict[str, float]]:
    """
    Get the ranking weight table, with any "weight_profiles" overrides applied.

    Overrides are merged per action type, so a file may change a single
    weight of a single profile.

    Args:
        path: Optional configuration file path

    Returns:
        Mapping of action type to {semantic, lexical, graph, state} weights
    """
    profiles = copy.deepcopy(DEFAULT_WEIGHT_PROFILES)
    overrides = _read_config_file(path).get("weight_profiles")
    if overrides is None:
        return profiles
    if not isinstance(overrides, dict):
        logger.warning("Invalid weight_profiles configuration, using defaults")
        return profiles

    for action_type, weights in overrides.items():
        if not isinstance(weights, dict):
            logger.warning(f"Ignoring weight profile for {action_type}: not a mapping")
            continue
        profile = profiles.setdefault(action_type, dict(profiles["default"]))
        for key, value in weights.items():
            if key in WEIGHT_KEYS and isinstance(value, (int, float)):
                profile[key] = float(value)
    return profiles


@dataclass
class RetrievalOptions:
    """Per-query retrieval settings."""

    top_k_semantic: int = 20
    top_k_lexical: int = 20
    top_k_graph: int = 20
    graph_hops: int = 1  # 1 or 2
    top_n: int = 10  # results kept after ranking
    use_dynamic_weights: bool = True  # False always uses the default profile

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RetrievalOptions":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class EngineConfig:
    """Settings for one retrieval engine instance."""

    # Storage: None keeps every store in memory
    db_path: Optional[str] = None
    module_name: str = "default"

    # Embeddings
    embedding_backend: str = "hash"  # hash, http or local
    embedding_model: Optional[str] = None
    embedding_endpoint: Optional[str] = None
    embedding_api_key_env: str = "OPENAI_API_KEY"
    embedding_max_retries: int = 2

    # Similarity edges
    enable_similarity_edges: bool = False
    similarity_top_k: int = 15
    similarity_threshold: float = 0.75

    # Retrieval
    enable_query_logging: bool = True
    parallel_signals: bool = False
    latency_budget_ms: float = 200.0
    retrieval: RetrievalOptions = field(default_factory=RetrievalOptions)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EngineConfig":
        """
        Build a config from a dictionary, ignoring unknown keys.

        Args:
            data: Configuration values; "retrieval" may be a nested dict

        Returns:
            EngineConfig instance
        """
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        retrieval = values.get("retrieval")
        if isinstance(retrieval, dict):
            values["retrieval"] = RetrievalOptions.from_dict(retrieval)
        return cls(**values)


def load_config(path: Optional[str] = None) -> EngineConfig:
    """
    Load the engine configuration from a JSON file.

    The "engine" section holds EngineConfig fields. A missing or malformed
    file yields the defaults.

    Args:
        path: Configuration file path; defaults to CONFIG_PATH

    Returns:
        EngineConfig instance
    """
    config = _read_config_file(path)
    engine = config.get("engine", {})
    if not isinstance(engine, dict):
        logger.warning("Invalid engine configuration, using defaults")
        engine = {}
    try:
        return EngineConfig.from_dict(engine)
    except TypeError as e:
        logger.warning(f"Error building engine configuration: {str(e)}, using defaults")
        return EngineConfig()
