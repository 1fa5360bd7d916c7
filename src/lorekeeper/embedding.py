# src/lorekeeper/embedding.py
import os
import time
import logging
import threading
from abc import ABC, abstractmethod
from typing import List, Optional

import numpy as np
import requests

from .exceptions import EmbeddingError
from .text_utils import EMBEDDING_DIM, hash_embedding, preprocess_text, split_text

logger = logging.getLogger(__name__)

DEFAULT_LOCAL_MODEL = "BAAI/bge-small-en-v1.5"
DEFAULT_HTTP_MODEL = "text-embedding-3-small"
DEFAULT_HTTP_ENDPOINT = "https://api.openai.com/v1"


class EmbeddingProvider(ABC):
    """Capability interface: turn text into a dense vector."""

    name = "base"

    @abstractmethod
    def embed(self, text: str) -> List[float]:
        """
        Embed a single text.

        Args:
            text: Text to embed

        Returns:
            Embedding vector; may be empty when the text has no content
        """
        pass


class HashEmbeddingProvider(EmbeddingProvider):
    """Deterministic bucketed term-frequency embedder with no external dependency."""

    name = "hash"

    def __init__(self, dim: int = EMBEDDING_DIM):
        self.dim = dim

    def embed(self, text: str) -> List[float]:
        return hash_embedding(text, self.dim)


class SentenceTransformerEmbeddingProvider(EmbeddingProvider):
    """
    Local model embedder backed by sentence-transformers.

    The model is loaded on first use so that constructing the provider is
    cheap and load failures surface through ``embed``, where a composite
    provider can fall back.
    """

    name = "local"

    def __init__(
        self,
        model_name: str = DEFAULT_LOCAL_MODEL,
        window_tokens: int = 512,
        window_bleed: int = 20,
    ):
        """
        Initialize the local embedder.

        Args:
            model_name: sentence-transformers model identifier
            window_tokens: Approximate token size of a single encoding window
            window_bleed: Overlap between consecutive windows in tokens
        """
        self.model_name = model_name
        self.window_tokens = window_tokens
        self.window_bleed = window_bleed
        self._model = None
        self._load_lock = threading.Lock()

    def _ensure_model(self):
        with self._load_lock:
            if self._model is None:
                try:
                    from sentence_transformers import SentenceTransformer

                    self._model = SentenceTransformer(self.model_name)
                    logger.info(f"Loaded embedding model {self.model_name}")
                except Exception as e:
                    raise EmbeddingError(
                        f"Could not load embedding model {self.model_name}: {str(e)}"
                    ) from e
        return self._model

    def embed(self, text: str) -> List[float]:
        normalized = preprocess_text(text)
        if not normalized:
            return []

        model = self._ensure_model()
        windows = split_text(normalized, self.window_tokens, self.window_bleed)
        embeddings = model.encode(
            windows,
            convert_to_tensor=False,
            normalize_embeddings=True,
            show_progress_bar=False,
        )
        embeddings_np = np.asarray(embeddings, dtype=np.float64)
        if embeddings_np.ndim == 1:
            return embeddings_np.tolist()

        # Mean-pool long inputs, then renormalize
        pooled = embeddings_np.mean(axis=0)
        norm = np.linalg.norm(pooled)
        if norm > 0:
            pooled = pooled / norm
        return pooled.tolist()


class HttpEmbeddingProvider(EmbeddingProvider):
    """
    Remote embedder for OpenAI-compatible ``/embeddings`` endpoints.

    Transient failures are retried a bounded number of times with
    exponential backoff. Anything left over is raised as ``EmbeddingError``.
    """

    name = "http"

    def __init__(
        self,
        model: str = DEFAULT_HTTP_MODEL,
        endpoint: str = DEFAULT_HTTP_ENDPOINT,
        api_key: Optional[str] = None,
        api_key_env: str = "OPENAI_API_KEY",
        max_retries: int = 2,
        retry_delay_s: float = 0.25,
        timeout_s: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize the remote embedder.

        Args:
            model: Remote model name
            endpoint: Base URL of the embeddings API
            api_key: API key; read from ``api_key_env`` when omitted
            api_key_env: Environment variable holding the API key
            max_retries: Retries after the first failed attempt
            retry_delay_s: Base delay for exponential backoff
            timeout_s: Per-request timeout passed to requests
            session: Optional requests session, mainly for tests
        """
        self.model = model
        self.endpoint = endpoint.rstrip("/")
        self.api_key = api_key or os.environ.get(api_key_env)
        self.max_retries = max_retries
        self.retry_delay_s = retry_delay_s
        self.timeout_s = timeout_s
        self.session = session or requests.Session()

    def embed(self, text: str) -> List[float]:
        normalized = (text or "").strip()
        if not normalized:
            return []
        if not self.api_key:
            raise EmbeddingError("No API key configured for remote embeddings")

        last_error: Optional[Exception] = None
        for attempt in range(self.max_retries + 1):
            try:
                response = self.session.post(
                    f"{self.endpoint}/embeddings",
                    json={"model": self.model, "input": normalized},
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    timeout=self.timeout_s,
                )
                response.raise_for_status()
                data = response.json()
                return list(data["data"][0]["embedding"])
            except (requests.RequestException, KeyError, IndexError, ValueError) as e:
                last_error = e
                if attempt < self.max_retries:
                    delay = self.retry_delay_s * (2**attempt)
                    logger.warning(
                        f"Remote embedding failed, retrying in {delay:.2f}s "
                        f"(attempt {attempt + 1}): {str(e)}"
                    )
                    time.sleep(delay)

        raise EmbeddingError(f"Remote embedding failed: {str(last_error)}")


class CompositeEmbeddingProvider(EmbeddingProvider):
    """
    Tries a primary provider and falls back to a secondary one.

    Falls back on any exception or an empty result. Never raises.
    """

    name = "composite"

    def __init__(self, primary: EmbeddingProvider, fallback: EmbeddingProvider):
        self.primary = primary
        self.fallback = fallback
        self.fallback_count = 0

    def embed(self, text: str) -> List[float]:
        try:
            result = self.primary.embed(text)
            if result:
                return result
        except Exception as e:
            logger.warning(
                f"Primary embedder {self.primary.name} failed, using {self.fallback.name}: {str(e)}"
            )
        self.fallback_count += 1

        try:
            return self.fallback.embed(text)
        except Exception as e:
            logger.error(f"Fallback embedder {self.fallback.name} failed: {str(e)}")
            return []


def create_embedding_provider(
    backend: str = "hash",
    model: Optional[str] = None,
    endpoint: Optional[str] = None,
    api_key_env: str = "OPENAI_API_KEY",
    max_retries: int = 2,
) -> EmbeddingProvider:
    """
    Build the embedding provider for a backend name.

    Args:
        backend: "hash", "http" or "local"
        model: Model name for the external backends
        endpoint: Base URL for the http backend
        api_key_env: Environment variable holding the http API key
        max_retries: Retry bound for the http backend

    Returns:
        The hash provider, or a composite of the external provider over it
    """
    hash_provider = HashEmbeddingProvider()
    if backend == "hash":
        return hash_provider
    if backend == "http":
        primary = HttpEmbeddingProvider(
            model=model or DEFAULT_HTTP_MODEL,
            endpoint=endpoint or DEFAULT_HTTP_ENDPOINT,
            api_key_env=api_key_env,
            max_retries=max_retries,
        )
        return CompositeEmbeddingProvider(primary, hash_provider)
    if backend == "local":
        primary = SentenceTransformerEmbeddingProvider(model or DEFAULT_LOCAL_MODEL)
        return CompositeEmbeddingProvider(primary, hash_provider)
    raise ValueError(f"Unknown embedding backend: {backend}")
