# src/lorekeeper/text_utils.py
import re
import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence

import numpy as np

logger = logging.getLogger(__name__)

EMBEDDING_DIM = 96
EMBEDDING_SEED = 17
HASH_MODULUS = 4294967291  # largest prime below 2**32

_WHITESPACE_RE = re.compile(r"\s+")
_TOKEN_SPLIT_RE = re.compile(r"[^a-z0-9]+", re.IGNORECASE)

# Markup stripped before text is sent to an external embedding model
_PREPROCESS_PATTERNS = [
    (re.compile(r"```[\s\S]*?```"), ""),  # fenced code
    (re.compile(r"`.*?`"), ""),  # inline code
    (re.compile(r"#{1,6}\s*(.*)"), r"\1"),  # markdown headers
    (re.compile(r"!\[(.*?)\]\(.*?\)"), r"\1"),  # images, keep alt text
    (re.compile(r"\[(.*?)\]\(.*?\)"), r"\1"),  # links, keep text
    (re.compile(r"(https?://)?(www\.)?([^\s]+\.[^\s]+)"), r"\3"),
    (re.compile(r"<@[!&]?\d+>"), ""),  # mentions
    (re.compile(r"<[^>]*>"), ""),  # html tags
    (re.compile(r"/\*[\s\S]*?\*/"), ""),
    (re.compile(r"//.*"), ""),
]


def normalize_text(text: Optional[str]) -> str:
    """Collapse whitespace, trim and lowercase."""
    if not text:
        return ""
    return _WHITESPACE_RE.sub(" ", str(text)).strip().lower()


def tokenize(text: Optional[str]) -> List[str]:
    """Split normalized text into alphanumeric tokens."""
    return [token for token in _TOKEN_SPLIT_RE.split(normalize_text(text)) if token]


def simple_hash(value: str) -> int:
    """Deterministic polynomial string hash, stable across processes."""
    hash_value = EMBEDDING_SEED
    for char in value:
        hash_value = (hash_value * 31 + ord(char)) % HASH_MODULUS
    return hash_value


def hash_embedding(text: Optional[str], dim: int = EMBEDDING_DIM) -> List[float]:
    """
    Embed text as an L2-normalized bucketed term-frequency vector.

    Args:
        text: Text to embed
        dim: Number of hash buckets

    Returns:
        Vector of length ``dim``; all zeros when the text has no tokens
    """
    vector = np.zeros(dim, dtype=np.float64)
    for token in tokenize(text):
        vector[simple_hash(token) % dim] += 1.0

    norm = np.sqrt(np.dot(vector, vector))
    if norm == 0:
        return vector.tolist()
    return (vector / norm).tolist()


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine similarity of two vectors.

    Returns 0.0 when the dimensions differ, a vector is empty or either norm is zero.
    """
    if len(a) == 0 or len(a) != len(b):
        return 0.0
    vec_a = np.asarray(a, dtype=np.float64)
    vec_b = np.asarray(b, dtype=np.float64)
    norm_product = np.dot(vec_a, vec_a) * np.dot(vec_b, vec_b)
    if norm_product == 0:
        return 0.0
    return float(np.dot(vec_a, vec_b) / np.sqrt(norm_product))


def matches_filter(
    payload: Optional[Dict[str, Any]], filter: Optional[Dict[str, Any]]
) -> bool:
    """
    Exact-match predicate over payload fields.

    A ``None`` filter value always matches. A list-valued payload field
    matches a scalar filter value by membership.
    """
    if not filter:
        return True
    for key, expected in filter.items():
        if expected is None:
            continue
        if not payload:
            return False
        actual = payload.get(key)
        if isinstance(actual, (list, tuple, set)) and not isinstance(
            expected, (list, tuple, set)
        ):
            if expected not in actual:
                return False
        elif actual != expected:
            return False
    return True


def truncate(text: Optional[str], max_chars: int = 320) -> str:
    """Cut text to ``max_chars`` characters, appending an ellipsis marker."""
    text = text or ""
    if len(text) <= max_chars:
        return text
    return f"{text[:max_chars]}..."


def uniq(values: Iterable[Any]) -> List[Any]:
    """Drop empty values and duplicates, keeping first-seen order."""
    seen = set()
    result = []
    for value in values:
        if not value or value in seen:
            continue
        seen.add(value)
        result.append(value)
    return result


def preprocess_text(content: Optional[str]) -> str:
    """Strip markup and normalize text before external embedding."""
    if not content or not isinstance(content, str):
        return ""
    for pattern, replacement in _PREPROCESS_PATTERNS:
        content = pattern.sub(replacement, content)
    return normalize_text(content)


def split_text(content: str, chunk_size: int = 200, bleed: int = 20) -> List[str]:
    """
    Split text into overlapping windows.

    Sizes are in approximate tokens, converted at four characters per token.

    Args:
        content: Text to split
        chunk_size: Window size in tokens
        bleed: Overlap between consecutive windows in tokens

    Returns:
        List of windows, a single window when the text already fits
    """
    if not content:
        return []

    chunk_chars = chunk_size * 4
    bleed_chars = bleed * 4
    if len(content) <= chunk_chars:
        return [content]

    windows = []
    start = 0
    while start < len(content):
        end = min(start + chunk_chars, len(content))
        windows.append(content[start:end])
        next_start = start + (chunk_chars - bleed_chars)
        if next_start <= start:
            break
        start = next_start
    return windows
