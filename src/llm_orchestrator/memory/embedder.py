"""Embedding abstractions and deterministic baseline implementation."""

from __future__ import annotations

from abc import ABC, abstractmethod
from hashlib import blake2b
from math import sqrt

from langchain_core.embeddings import Embeddings

from llm_orchestrator.obs.tracing import word_tokens

# Weight of an adjacent word pair relative to a single word.
_BIGRAM_WEIGHT = 0.5


class Embedder(ABC):
    """Turns conversation text into fixed-length vectors."""

    dimension: int

    @abstractmethod
    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        """Embed many turns."""

    @abstractmethod
    def embed_query(self, text: str) -> list[float]:
        """Embed one query message."""


class HashingEmbedder(Embedder):
    """Signed feature hashing over words and word pairs; no external model calls.

    Used for tests and local setups. Production deployments wrap a real
    embedding model with ``LangChainEmbedder``.
    """

    def __init__(self, dimension: int = 256) -> None:
        self.dimension = dimension

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        return [self._embed(text) for text in texts]

    def embed_query(self, text: str) -> list[float]:
        return self._embed(text)

    def _embed(self, text: str) -> list[float]:
        vector = [0.0] * self.dimension
        words = word_tokens(text)
        features = [(word, 1.0) for word in words]
        features += [(f"{a} {b}", _BIGRAM_WEIGHT) for a, b in zip(words, words[1:])]
        for feature, weight in features:
            slot, sign = self._bucket(feature)
            vector[slot] += sign * weight

        norm = sqrt(sum(value * value for value in vector))
        if norm == 0:
            return vector
        return [value / norm for value in vector]

    def _bucket(self, feature: str) -> tuple[int, float]:
        digest = blake2b(feature.encode("utf-8"), digest_size=8, person=b"llm-orch").digest()
        slot = int.from_bytes(digest[:4], "little") % self.dimension
        return slot, (-1.0 if digest[4] & 1 else 1.0)


class LangChainEmbedder(Embedder):
    """Adapts any ``langchain_core`` embeddings model to the ``Embedder`` interface."""

    def __init__(self, embeddings: Embeddings, dimension: int) -> None:
        self._embeddings = embeddings
        self.dimension = dimension

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        return [self._checked(vector) for vector in self._embeddings.embed_documents(texts)]

    def embed_query(self, text: str) -> list[float]:
        return self._checked(self._embeddings.embed_query(text))

    def _checked(self, vector: list[float]) -> list[float]:
        if len(vector) != self.dimension:
            raise ValueError(f"Embedding model returned {len(vector)} dims, expected {self.dimension}")
        return [float(value) for value in vector]
