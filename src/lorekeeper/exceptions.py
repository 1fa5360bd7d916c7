# src/lorekeeper/exceptions.py
"""
Exception hierarchy for the lorekeeper retrieval engine.
"""


class LorekeeperError(Exception):
    """Base error for the retrieval engine."""

    pass


class StoreUnavailableError(LorekeeperError):
    """A persistent backing store could not be opened or initialized."""

    pass


class EmbeddingError(LorekeeperError):
    """An external embedding provider failed to produce a vector."""

    pass


class DeltaError(LorekeeperError, ValueError):
    """A knowledge delta could not be interpreted."""

    pass
