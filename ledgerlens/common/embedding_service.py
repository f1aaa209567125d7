"""
Embedding Service

Generates embedding vectors for canonical query strings and row
semantic strings. Backends:
- google: Gemini embedding API (768 dimensions, default)
- femb: fastembed, on-device

Empty or whitespace-only text embeds to a zero vector instead of failing,
so batch callers can pass row strings through unchanged.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional

import numpy as np

logger = logging.getLogger("ledgerlens.common.embedding_service")


class EmbeddingService:
    """
    Embedding generation wrapper.

    Constructed explicitly and shared by reference; holds no per-request
    state, so concurrent callers are safe.
    """

    def __init__(
        self,
        mode: str = "google",
        model: str = "models/embedding-001",
        dimension: int = 768,
        api_key: Optional[str] = None,
    ):
        self._mode = (mode or "google").lower()
        self._model = model
        self._dimension = dimension
        self._backend = None
        self._init_backend(api_key)

    def _init_backend(self, api_key: Optional[str]) -> None:
        """Initialize the underlying embedding backend"""
        if self._mode == "google":
            if not api_key:
                logger.info("Google API key not provided, embedding service unavailable")
                return
            try:
                import google.generativeai as genai

                genai.configure(api_key=api_key)
                self._backend = genai
                logger.info("Initialized embedding service with mode=%s, model=%s", self._mode, self._model)
            except ImportError:
                logger.warning("google-generativeai package not installed")
            return

        if self._mode == "femb":
            try:
                from fastembed import TextEmbedding

                self._backend = TextEmbedding(model_name=self._model)
                logger.info("Initialized embedding service with mode=%s, model=%s", self._mode, self._model)
            except ImportError:
                logger.warning("fastembed package not installed")
            except Exception as e:
                logger.warning("Failed to initialize fastembed model %s: %s", self._model, e)
            return

        logger.warning("Unsupported embedding mode: %s", self._mode)

    @property
    def is_available(self) -> bool:
        """Check if embedding service is available"""
        return self._backend is not None

    @property
    def dimension(self) -> int:
        return self._dimension

    def zero_vector(self) -> List[float]:
        """Vector returned for empty input"""
        return [0.0] * self._dimension

    def embed(self, texts: List[str]) -> List[List[float]]:
        """
        Generate embeddings for a list of texts.

        Args:
            texts: List of strings to embed

        Returns:
            List of embedding vectors, one per input, in order
        """
        if not texts:
            return []

        if not self._backend:
            raise RuntimeError("Embedding backend not initialized")

        vectors: List[Optional[List[float]]] = [None] * len(texts)
        pending = [(i, t) for i, t in enumerate(texts) if t and t.strip()]
        for i, t in enumerate(texts):
            if not t or not t.strip():
                vectors[i] = self.zero_vector()

        if pending:
            if self._mode == "google":
                for i, text in pending:
                    result = self._backend.embed_content(model=self._model, content=text)
                    vectors[i] = list(result["embedding"])
            else:
                embedded = list(self._backend.embed([t for _, t in pending]))
                for (i, _), vec in zip(pending, embedded):
                    vectors[i] = np.asarray(vec, dtype=np.float32).tolist()

        return vectors

    def embed_single(self, text: str) -> List[float]:
        """
        Generate embedding for a single text.

        Args:
            text: String to embed

        Returns:
            Embedding vector (zero vector for empty text)
        """
        if not text or not text.strip():
            return self.zero_vector()
        return self.embed([text])[0]

    def embed_with_retry(
        self,
        text: str,
        max_retries: int = 5,
        base_delay: float = 2.0,
    ) -> List[float]:
        """Embed one text, retrying with exponential backoff.

        The delay doubles after every failed attempt. The last error is
        re-raised once attempts are exhausted.
        """
        for attempt in range(1, max_retries + 1):
            try:
                return self.embed_single(text)
            except Exception as e:
                if attempt == max_retries:
                    raise
                delay = base_delay * (2 ** (attempt - 1))
                logger.info("Embedding retry %d/%d in %.1fs: %s", attempt, max_retries, delay, e)
                time.sleep(delay)
        raise RuntimeError("max_retries must be at least 1")

    def embed_batch(
        self,
        texts: List[str],
        batch_size: int = 20,
        concurrency: int = 15,
        max_retries: int = 5,
        base_delay: float = 2.0,
        batch_delay: float = 1.5,
    ) -> List[List[float]]:
        """
        Embed many texts with bounded concurrency.

        Texts are processed in batches; within a batch at most
        ``concurrency`` calls run at once. Each call retries with
        exponential backoff, and a text that still fails embeds to the
        zero vector. Batches are separated by ``batch_delay`` seconds to
        stay under provider rate limits.

        Returns:
            Vectors in input order
        """
        if not texts:
            return []

        vectors: List[List[float]] = []
        total_batches = (len(texts) + batch_size - 1) // batch_size

        def _embed_one(text: str) -> List[float]:
            try:
                return self.embed_with_retry(text, max_retries=max_retries, base_delay=base_delay)
            except Exception as e:
                logger.error("Failed to embed %r, using zero vector: %s", text[:80], e)
                return self.zero_vector()

        with ThreadPoolExecutor(max_workers=max(1, concurrency)) as pool:
            for batch_index in range(total_batches):
                batch = texts[batch_index * batch_size:(batch_index + 1) * batch_size]
                logger.debug("Embedding batch %d/%d (%d items)", batch_index + 1, total_batches, len(batch))
                vectors.extend(pool.map(_embed_one, batch))

                if batch_index < total_batches - 1 and batch_delay > 0:
                    time.sleep(batch_delay)

        return vectors

    def cosine_similarity(self, vec1: List[float], vec2: List[float]) -> float:
        """
        Compute cosine similarity between two vectors.

        Returns 0.0 when either vector has zero norm.
        """
        v1 = np.asarray(vec1, dtype=np.float32)
        v2 = np.asarray(vec2, dtype=np.float32)

        if v1.shape != v2.shape:
            raise ValueError(f"Vector dimension mismatch: {v1.shape} vs {v2.shape}")

        norm = float(np.linalg.norm(v1) * np.linalg.norm(v2))
        if norm == 0.0:
            return 0.0
        return float(np.dot(v1, v2) / norm)
