"""
Unit Tests — Embedder
══════════════════════
All calls go to FakeEmbeddingClient; no network.

Coverage targets:
  ✅ One vector per text, input order preserved across batches
  ✅ on_batch(done, total) after every batch
  ✅ Transient failure → retried, then succeeds
  ✅ Back-off delays double and are capped
  ✅ Attempts exhausted → EmbeddingError(recoverable, retry_count)
  ✅ Permanent failure → no retry
  ✅ Wrong vector count / dimensions → EmbeddingError, no retry
  ✅ Per-call timeout counts as transient
  ✅ Query embedding flags is_query
"""

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from docpipe.core.errors import EmbeddingError
from docpipe.processing.embeddings import (
    CohereEmbeddingClient,
    Embedder,
    OpenAIEmbeddingClient,
    create_embedding_client,
    is_transient_error,
)
from tests.conftest import TEST_DIMENSIONS, FakeEmbeddingClient


class _StatusError(Exception):
    def __init__(self, status_code: int) -> None:
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code


def _embedder(client: FakeEmbeddingClient, **overrides) -> Embedder:
    options = dict(
        dimensions=TEST_DIMENSIONS,
        batch_size=5,
        max_attempts=3,
        retry_base_delay=0.0,
        request_timeout=None,
    )
    options.update(overrides)
    return Embedder(client, **options)


# ─────────────────────────────────────────────────────────────────────────────
# Batching and ordering
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestBatching:

    async def test_vectors_follow_input_order(self):
        client = FakeEmbeddingClient()
        texts = ["x" * n for n in range(1, 13)]

        vectors = await _embedder(client).embed_texts(texts)

        assert len(vectors) == 12
        assert [v[0] for v in vectors] == [float(n) for n in range(1, 13)]
        assert [len(batch) for batch in client.calls] == [5, 5, 2]

    async def test_on_batch_reports_each_batch(self):
        seen = []

        async def on_batch(done, total):
            seen.append((done, total))

        await _embedder(FakeEmbeddingClient()).embed_texts(["a"] * 11, on_batch=on_batch)

        assert seen == [(1, 3), (2, 3), (3, 3)]

    async def test_empty_input_makes_no_calls(self):
        client = FakeEmbeddingClient()
        assert await _embedder(client).embed_texts([]) == []
        assert client.calls == []

    def test_invalid_batch_size_rejected(self):
        with pytest.raises(ValueError):
            _embedder(FakeEmbeddingClient(), batch_size=0)

    async def test_first_failed_batch_stops_the_run(self):
        client = FakeEmbeddingClient(failures=[None, ValueError("bad input")])

        with pytest.raises(EmbeddingError):
            await _embedder(client).embed_texts(["a"] * 15)

        assert len(client.calls) == 2


# ─────────────────────────────────────────────────────────────────────────────
# Retry policy
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestRetry:

    async def test_transient_errors_retried_until_success(self):
        client = FakeEmbeddingClient(failures=[ConnectionError("reset"), _StatusError(503)])

        vectors = await _embedder(client).embed_batch(["hello"])

        assert len(client.calls) == 3
        assert vectors[0][0] == 5.0

    async def test_backoff_doubles_and_is_capped(self):
        client = FakeEmbeddingClient(failures=[_StatusError(429)] * 4)
        embedder = _embedder(client, max_attempts=5, retry_base_delay=1.0, retry_max_delay=3.0)

        with patch("docpipe.processing.embeddings.asyncio.sleep", new=AsyncMock()) as sleep:
            await embedder.embed_batch(["hello"])

        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0, 3.0, 3.0]

    async def test_exhausted_attempts_raise_recoverable_error(self):
        client = FakeEmbeddingClient(failures=[ConnectionError("down")] * 3)

        with pytest.raises(EmbeddingError) as exc_info:
            await _embedder(client).embed_batch(["hello"])

        assert len(client.calls) == 3
        assert exc_info.value.retry_count == 3
        assert exc_info.value.recoverable is True
        assert exc_info.value.stage == "embedding"

    async def test_permanent_error_not_retried(self):
        client = FakeEmbeddingClient(failures=[_StatusError(401)])

        with pytest.raises(EmbeddingError) as exc_info:
            await _embedder(client).embed_batch(["hello"])

        assert len(client.calls) == 1
        assert exc_info.value.retry_count == 0
        assert exc_info.value.recoverable is False

    async def test_timeout_is_retried(self):
        client = FakeEmbeddingClient(delay=0.5)
        embedder = _embedder(client, max_attempts=2, request_timeout=0.01)

        with pytest.raises(EmbeddingError):
            await embedder.embed_batch(["slow"])

        assert len(client.calls) == 2

    @pytest.mark.parametrize("exc,expected", [
        (ConnectionError("x"),  True),
        (asyncio.TimeoutError(), True),
        (_StatusError(429),     True),
        (_StatusError(408),     True),
        (_StatusError(500),     True),
        (_StatusError(400),     False),
        (_StatusError(401),     False),
        (ValueError("x"),       False),
    ])
    def test_transient_classification(self, exc, expected):
        assert is_transient_error(exc) is expected


# ─────────────────────────────────────────────────────────────────────────────
# Response validation
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestValidation:

    async def test_wrong_dimensions_rejected_without_retry(self):
        client = FakeEmbeddingClient(dimensions=8)

        with pytest.raises(EmbeddingError, match="dimensions"):
            await _embedder(client).embed_batch(["hello"])

        assert len(client.calls) == 1

    async def test_wrong_vector_count_rejected(self):
        client = FakeEmbeddingClient()
        client.embed = AsyncMock(return_value=[[0.0] * TEST_DIMENSIONS])

        with pytest.raises(EmbeddingError, match="1 vectors for 2 inputs"):
            await _embedder(client).embed_batch(["a", "b"])


# ─────────────────────────────────────────────────────────────────────────────
# Query embedding and construction
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestQueryAndFactory:

    async def test_embed_query_marks_query(self):
        client = FakeEmbeddingClient()
        vector = await _embedder(client).embed_query("find me")

        assert len(vector) == TEST_DIMENSIONS
        assert client.query_flags == [True]

    async def test_embed_query_failure_wrapped(self):
        client = FakeEmbeddingClient(failures=[ConnectionError("down")])
        with pytest.raises(EmbeddingError, match="Query embedding failed"):
            await _embedder(client).embed_query("find me")

    def test_factory_selects_provider(self):
        base = dict(
            openai_api_key="sk", embedding_model="text-embedding-3-small",
            embedding_dimensions=1024, cohere_api_key="co",
            cohere_embedding_model="embed-english-v3.0",
        )
        assert isinstance(
            create_embedding_client(SimpleNamespace(embedding_provider="openai", **base)),
            OpenAIEmbeddingClient,
        )
        assert isinstance(
            create_embedding_client(SimpleNamespace(embedding_provider="Cohere", **base)),
            CohereEmbeddingClient,
        )
        with pytest.raises(ValueError, match="Unknown embedding_provider"):
            create_embedding_client(SimpleNamespace(embedding_provider="local", **base))

    def test_from_settings_copies_retry_policy(self):
        cfg = SimpleNamespace(
            embedding_dimensions=1024, embedding_batch_size=7, embedding_max_retries=4,
            embedding_retry_base_delay=0.5, embedding_retry_max_delay=8.0,
            embedding_request_timeout=12.0,
        )
        embedder = Embedder.from_settings(cfg, client=FakeEmbeddingClient())

        assert embedder.batch_size == 7
        assert len(embedder.batches(["t"] * 15)) == 3
