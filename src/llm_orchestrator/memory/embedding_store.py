"""Semantic memory of past conversation turns, isolated per user."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from math import sqrt
from typing import Protocol, Sequence

from llm_orchestrator.errors import InputValidationError
from llm_orchestrator.types import ContextChunk


@dataclass(slots=True)
class ChunkFilter:
    """Optional restrictions applied before scoring."""

    concept_id: str | None = None
    conversation_id: str | None = None
    since: datetime | None = None
    until: datetime | None = None
    exclude_turn_ids: frozenset[str] = field(default_factory=frozenset)

    def matches(self, chunk: ContextChunk) -> bool:
        if self.concept_id is not None and chunk.concept_id != self.concept_id:
            return False
        if self.conversation_id is not None and chunk.conversation_id != self.conversation_id:
            return False
        if self.since is not None and chunk.timestamp < self.since:
            return False
        if self.until is not None and chunk.timestamp > self.until:
            return False
        return chunk.turn_id not in self.exclude_turn_ids


class ContextEmbeddingStore(Protocol):
    """Minimal semantic memory contract used by the context manager."""

    def store(self, chunk: ContextChunk) -> None:
        """Insert or replace a chunk by id."""

    def query(
        self,
        user_id: str,
        embedding: Sequence[float],
        filters: ChunkFilter | None = None,
        limit: int = 10,
        min_score: float = 0.0,
    ) -> list[ContextChunk]:
        """Return the user's chunks scored against ``embedding``, best first."""


class InMemoryContextEmbeddingStore:
    """Deterministic store used for tests and single-process deployments.

    Chunks are bucketed by user, so a query can only ever scan the caller's own
    chunks. Writers replace the bucket under a lock; readers take the current
    bucket reference and never observe a partially written chunk.
    """

    def __init__(self, dimension: int | None = None) -> None:
        self.dimension = dimension
        self._by_user: dict[str, dict[str, ContextChunk]] = {}
        self._lock = threading.Lock()

    def store(self, chunk: ContextChunk) -> None:
        if not chunk.user_id:
            raise InputValidationError("Context chunk requires a user id")
        with self._lock:
            self._check_dimension(len(chunk.embedding))
            bucket = dict(self._by_user.get(chunk.user_id, {}))
            bucket[chunk.chunk_id] = replace(chunk, relevance_score=None)
            self._by_user[chunk.user_id] = bucket

    def query(
        self,
        user_id: str,
        embedding: Sequence[float],
        filters: ChunkFilter | None = None,
        limit: int = 10,
        min_score: float = 0.0,
    ) -> list[ContextChunk]:
        if self.dimension is not None and len(embedding) != self.dimension:
            raise InputValidationError(
                f"Query embedding has {len(embedding)} dims, store expects {self.dimension}"
            )
        if limit <= 0:
            return []
        bucket = self._by_user.get(user_id, {})
        scored: list[ContextChunk] = []
        for chunk in bucket.values():
            if chunk.user_id != user_id:
                continue
            if filters is not None and not filters.matches(chunk):
                continue
            score = relevance(embedding, chunk.embedding)
            if score < min_score:
                continue
            scored.append(replace(chunk, relevance_score=score))

        scored.sort(key=lambda item: (-(item.relevance_score or 0.0), -item.timestamp.timestamp()))
        return scored[:limit]

    def count(self, user_id: str) -> int:
        return len(self._by_user.get(user_id, {}))

    def _check_dimension(self, size: int) -> None:
        if self.dimension is None:
            self.dimension = size
        elif size != self.dimension:
            raise InputValidationError(f"Chunk embedding has {size} dims, store expects {self.dimension}")


def relevance(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity mapped from [-1, 1] onto [0, 1]."""
    return (_cosine_similarity(a, b) + 1.0) / 2.0


def _cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    numerator = sum(x * y for x, y in zip(a, b, strict=True))
    norm_a = sqrt(sum(x * x for x in a))
    norm_b = sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return max(-1.0, min(1.0, numerator / (norm_a * norm_b)))
