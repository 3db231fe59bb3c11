"""
Embedder  —  Batch Embeddings with Retry & Back-off
══════════════════════════════════════════════════════

Design goals:
  • Order preserving: one vector per input text, same order
  • Batch isolation: batches run sequentially so the caller can report
    progress after each one and abort on the first failure
  • Retry logic: exponential back-off on rate limits and transient errors
  • All-or-nothing batches: a batch that cannot be embedded raises
    EmbeddingError; partial batches are never returned

Providers (EMBEDDING_PROVIDER):
  openai  → text-embedding-3-small, requested with dimensions=1024
  cohere  → embed-english-v3.0 (1024 dims natively)

Retry policy:
  Rate limit / 5xx / timeout / connection error → retry after
      RETRY_BASE_DELAY × 2^(retry-1), capped at RETRY_MAX_DELAY
  Authentication / bad request / other 4xx      → fail immediately
  Malformed response (count or dimension)       → fail immediately
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional, Sequence

import httpx
import openai

from docpipe.core.errors import EmbeddingError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

EMBEDDING_BATCH_SIZE = 5       # texts per remote call
MAX_ATTEMPTS         = 3       # per-batch attempt limit
RETRY_BASE_DELAY     = 1.0     # seconds: doubles each retry
RETRY_MAX_DELAY      = 30.0    # cap
REQUEST_TIMEOUT      = 30.0    # seconds per remote call

_TRANSIENT_STATUS_CODES = frozenset({408, 409, 429})

BatchCallback = Callable[[int, int], Awaitable[None]]


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------

def is_transient_error(exc: BaseException) -> bool:
    """True when retrying the same request may succeed."""
    if isinstance(exc, (openai.APIConnectionError, openai.RateLimitError, openai.InternalServerError)):
        return True
    if isinstance(exc, (asyncio.TimeoutError, httpx.TransportError, ConnectionError)):
        return True

    status_code = getattr(exc, "status_code", None)
    if isinstance(status_code, int):
        return status_code in _TRANSIENT_STATUS_CODES or status_code >= 500

    return False


# ---------------------------------------------------------------------------
# Provider clients
# ---------------------------------------------------------------------------

class EmbeddingClient(ABC):
    """One remote call: texts in, vectors out (same order)."""

    name: str = "base"

    @abstractmethod
    async def embed(self, texts: list[str], *, is_query: bool = False) -> list[list[float]]:
        ...


class OpenAIEmbeddingClient(EmbeddingClient):
    """
    Uses openai.AsyncOpenAI for async I/O — does not block the event loop.
    The SDK's own retries are disabled; Embedder owns the retry policy.
    """

    name = "openai"

    def __init__(self, api_key: str, model: str, dimensions: int) -> None:
        self._api_key    = api_key
        self._model      = model
        self._dimensions = dimensions
        self._client: Optional[openai.AsyncOpenAI] = None

    def _get_client(self) -> openai.AsyncOpenAI:
        if self._client is None:
            self._client = openai.AsyncOpenAI(api_key=self._api_key, max_retries=0)
        return self._client

    async def embed(self, texts: list[str], *, is_query: bool = False) -> list[list[float]]:
        response = await self._get_client().embeddings.create(
            model=self._model,
            input=texts,
            dimensions=self._dimensions,   # text-embedding-3-* only
        )
        return [item.embedding for item in sorted(response.data, key=lambda d: d.index)]


class CohereEmbeddingClient(EmbeddingClient):
    """Cohere embed v3; input_type distinguishes documents from queries."""

    name = "cohere"

    def __init__(self, api_key: str, model: str) -> None:
        self._api_key = api_key
        self._model   = model
        self._client = None

    def _get_client(self):
        if self._client is None:
            import cohere
            self._client = cohere.AsyncClient(api_key=self._api_key)
        return self._client

    async def embed(self, texts: list[str], *, is_query: bool = False) -> list[list[float]]:
        response = await self._get_client().embed(
            texts=texts,
            model=self._model,
            input_type="search_query" if is_query else "search_document",
        )
        embeddings = response.embeddings
        # embed-by-type responses wrap the float vectors
        if hasattr(embeddings, "float_"):
            embeddings = embeddings.float_
        return [list(vector) for vector in embeddings]


def create_embedding_client(settings) -> EmbeddingClient:
    """Build the provider client selected by settings.embedding_provider."""
    provider = settings.embedding_provider.lower()

    if provider == "openai":
        return OpenAIEmbeddingClient(
            api_key=settings.openai_api_key,
            model=settings.embedding_model,
            dimensions=settings.embedding_dimensions,
        )
    if provider == "cohere":
        return CohereEmbeddingClient(
            api_key=settings.cohere_api_key,
            model=settings.cohere_embedding_model,
        )

    raise ValueError(
        f"Unknown embedding_provider '{settings.embedding_provider}'. "
        "Valid options: 'openai', 'cohere'"
    )


# ---------------------------------------------------------------------------
# Core embedder
# ---------------------------------------------------------------------------

class Embedder:
    """
    Batching + retry wrapper around an EmbeddingClient.

    One instance per application; it holds no per-document state.

    Usage:
        embedder = Embedder(create_embedding_client(settings), dimensions=1024)
        vectors  = await embedder.embed_texts([c.text for c in chunks], on_batch=report)
    """

    def __init__(
        self,
        client:           EmbeddingClient,
        *,
        dimensions:       int   = 1024,
        batch_size:       int   = EMBEDDING_BATCH_SIZE,
        max_attempts:     int   = MAX_ATTEMPTS,
        retry_base_delay: float = RETRY_BASE_DELAY,
        retry_max_delay:  float = RETRY_MAX_DELAY,
        request_timeout:  Optional[float] = REQUEST_TIMEOUT,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        if max_attempts <= 0:
            raise ValueError("max_attempts must be positive")

        self._client           = client
        self._dimensions       = dimensions
        self._batch_size       = batch_size
        self._max_attempts     = max_attempts
        self._retry_base_delay = retry_base_delay
        self._retry_max_delay  = retry_max_delay
        self._request_timeout  = request_timeout

    @classmethod
    def from_settings(cls, settings, client: Optional[EmbeddingClient] = None) -> "Embedder":
        return cls(
            client or create_embedding_client(settings),
            dimensions=settings.embedding_dimensions,
            batch_size=settings.embedding_batch_size,
            max_attempts=settings.embedding_max_retries,
            retry_base_delay=settings.embedding_retry_base_delay,
            retry_max_delay=settings.embedding_retry_max_delay,
            request_timeout=settings.embedding_request_timeout,
        )

    @property
    def batch_size(self) -> int:
        return self._batch_size

    def batches(self, texts: Sequence[str]) -> list[list[str]]:
        return [
            list(texts[i : i + self._batch_size])
            for i in range(0, len(texts), self._batch_size)
        ]

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    async def embed_texts(
        self,
        texts:    Sequence[str],
        on_batch: Optional[BatchCallback] = None,
    ) -> list[list[float]]:
        """
        Embed all texts, one batch at a time.

        on_batch(batches_done, batches_total) is awaited after every
        successful batch. The first batch that fails raises EmbeddingError
        and no further batches are attempted.
        """
        batches = self.batches(texts)
        vectors: list[list[float]] = []

        t0 = time.monotonic()
        logger.info(
            "Embedder | provider=%s texts=%d batches=%d",
            self._client.name, len(texts), len(batches),
        )

        for batch_idx, batch in enumerate(batches):
            vectors.extend(await self.embed_batch(batch, batch_idx))
            if on_batch is not None:
                await on_batch(batch_idx + 1, len(batches))

        logger.info(
            "Embedder done | provider=%s vectors=%d elapsed_ms=%.0f",
            self._client.name, len(vectors), (time.monotonic() - t0) * 1000,
        )
        return vectors

    async def embed_batch(self, texts: list[str], batch_idx: int = 0) -> list[list[float]]:
        """
        Embed a single batch with exponential back-off retry.

        Raises:
            EmbeddingError once attempts are exhausted or on a permanent failure.
        """
        last_error: Exception | None = None

        for attempt in range(1, self._max_attempts + 1):
            if attempt > 1:
                delay = min(self._retry_base_delay * (2 ** (attempt - 2)), self._retry_max_delay)
                logger.warning(
                    "Embedding retry | batch=%d attempt=%d delay=%.1fs error=%s",
                    batch_idx, attempt, delay, last_error,
                )
                await asyncio.sleep(delay)

            try:
                vectors = await self._call(texts, is_query=False)
            except EmbeddingError:
                raise
            except Exception as exc:
                last_error = exc
                if not is_transient_error(exc):
                    logger.error(
                        "Non-retryable embedding error batch=%d: %s %s",
                        batch_idx, type(exc).__name__, exc,
                    )
                    raise EmbeddingError(
                        f"Embedding failed: {exc}", retry_count=attempt - 1,
                    ) from exc

                logger.warning(
                    "Retryable embedding error batch=%d attempt=%d: %s %s",
                    batch_idx, attempt, type(exc).__name__, exc,
                )
                continue

            self._validate(vectors, expected=len(texts))
            return vectors

        raise EmbeddingError(
            f"Embedding batch {batch_idx} failed after {self._max_attempts} attempts: {last_error}",
            retry_count=self._max_attempts,
            recoverable=True,
        ) from last_error

    async def embed_query(self, text: str) -> list[float]:
        """
        Embed a single query string for similarity search.
        Uses the same model as document ingestion; no retries.
        """
        try:
            vectors = await self._call([text], is_query=True)
        except Exception as exc:
            raise EmbeddingError(f"Query embedding failed: {exc}") from exc
        self._validate(vectors, expected=1)
        return vectors[0]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _call(self, texts: list[str], *, is_query: bool) -> list[list[float]]:
        t_api = time.monotonic()
        call = self._client.embed(texts, is_query=is_query)
        if self._request_timeout:
            vectors = await asyncio.wait_for(call, timeout=self._request_timeout)
        else:
            vectors = await call

        logger.debug(
            "Embedding call | provider=%s size=%d api_ms=%.0f",
            self._client.name, len(texts), (time.monotonic() - t_api) * 1000,
        )
        return vectors

    def _validate(self, vectors: list[list[float]], expected: int) -> None:
        if len(vectors) != expected:
            raise EmbeddingError(
                f"Embedding service returned {len(vectors)} vectors for {expected} inputs"
            )
        for i, vector in enumerate(vectors):
            if len(vector) != self._dimensions:
                raise EmbeddingError(
                    f"Embedding {i} has {len(vector)} dimensions; expected {self._dimensions}"
                )
