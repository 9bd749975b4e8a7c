"""
Shared fixtures for the snippet_kb tests.

No test talks to a real embedding service: ``FakeEmbedder`` returns
scripted vectors and can be told to fail on its next calls.
"""

from __future__ import annotations

import hashlib
import os

import pytest

from snippet_kb.embedding.base import EmbeddingBackend, EmbeddingClient
from snippet_kb.eviction import EvictionPolicy
from snippet_kb.service import KnowledgeService
from snippet_kb.similarity import SimilarityEngine
from snippet_kb.store.kv_store import KeyValueStore
from snippet_kb.store.record_store import RecordStore
from snippet_kb.vault import KeyVault

TEST_IDENTITY = "test-device"
TEST_ITERATIONS = 1_000
TEST_KEY = "sk-test-0123456789"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float = 1.0) -> float:
        self.now += seconds
        return self.now


class FakeEmbedder(EmbeddingClient):
    """Embedding client with scripted vectors and injectable failures.

    Texts found in *vectors* get that vector; any other text gets a
    deterministic vector derived from its hash.
    """

    backend = EmbeddingBackend.OPENAI

    def __init__(self, vectors=None, dim: int = 4, requires_credential: bool = True):
        super().__init__("http://embedder.invalid", "fake-model")
        self.vectors = dict(vectors or {})
        self.dim = dim
        self.requires_credential = requires_credential
        self.failures: list[Exception] = []
        self.calls: list[list[str]] = []

    def fail_next(self, *errors: Exception) -> None:
        self.failures.extend(errors)

    def _hash_vector(self, text: str) -> list[float]:
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        return [(b - 127.5) / 127.5 for b in digest[: self.dim]]

    def _embed(self, texts):
        self.calls.append(list(texts))
        if self.failures:
            raise self.failures.pop(0)
        return [list(self.vectors.get(t, self._hash_vector(t))) for t in texts]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def db_path(tmp_path):
    return os.path.join(str(tmp_path), "kb", "knowledge.db")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(db_path, clock):
    s = RecordStore(db_path, clock=clock)
    yield s
    s.close()


@pytest.fixture
def vault(db_path):
    return KeyVault(KeyValueStore(db_path), identity=TEST_IDENTITY,
                    iterations=TEST_ITERATIONS)


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def engine():
    e = SimilarityEngine(worker_count=2)
    yield e
    e.close()


@pytest.fixture
def make_service(store, vault, embedder, engine):
    """Factory: build a KnowledgeService with overridable policy/settings."""
    sleeps: list[float] = []

    def _make(policy=None, with_key=True, **kwargs):
        if with_key:
            vault.store_secret(TEST_KEY)
        svc = KnowledgeService(
            store, embedder, vault, policy or EvictionPolicy(), engine,
            sleep=sleeps.append, **kwargs,
        )
        svc.sleeps = sleeps
        return svc

    return _make
