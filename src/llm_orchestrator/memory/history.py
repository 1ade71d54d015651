"""Conversation history and user profile collaborators."""

from __future__ import annotations

import threading
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Protocol

from llm_orchestrator.errors import NotFoundError
from llm_orchestrator.types import Conversation, ConversationTurn, UserProfile


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ConversationHistoryStore(Protocol):
    def create_conversation(
        self,
        user_id: str,
        *,
        conversation_id: str | None = None,
        concept_id: str | None = None,
    ) -> Conversation:
        """Open a new conversation for ``user_id``."""

    def get_conversation(self, conversation_id: str) -> Conversation:
        """Raises NotFoundError for an unknown conversation."""

    def append(
        self,
        conversation_id: str,
        role: str,
        content: str,
        concept_id: str | None = None,
    ) -> ConversationTurn:
        """Append one turn and return it."""

    def recent(self, conversation_id: str, limit: int) -> list[ConversationTurn]:
        """Most recent ``limit`` turns, oldest first."""

    def all_turns(self, conversation_id: str) -> list[ConversationTurn]:
        """Every turn, oldest first."""


class UserProfileStore(Protocol):
    def get(self, user_id: str) -> UserProfile:
        """Raises NotFoundError for an unknown user."""

    def upsert(self, profile: UserProfile) -> None:
        """Insert or replace a profile."""


class InMemoryConversationHistory:
    """Append-only per-conversation turn lists."""

    def __init__(self, clock: Callable[[], datetime] = _utc_now) -> None:
        self._conversations: dict[str, Conversation] = {}
        self._turns: dict[str, list[ConversationTurn]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def create_conversation(
        self,
        user_id: str,
        *,
        conversation_id: str | None = None,
        concept_id: str | None = None,
    ) -> Conversation:
        conversation = Conversation(
            conversation_id=conversation_id or f"conv_{uuid.uuid4().hex[:12]}",
            user_id=user_id,
            created_at=self._clock(),
            concept_id=concept_id,
        )
        with self._lock:
            self._conversations[conversation.conversation_id] = conversation
            self._turns.setdefault(conversation.conversation_id, [])
        return conversation

    def get_conversation(self, conversation_id: str) -> Conversation:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise NotFoundError(f"Conversation not found: {conversation_id}")
        return conversation

    def append(
        self,
        conversation_id: str,
        role: str,
        content: str,
        concept_id: str | None = None,
        *,
        created_at: datetime | None = None,
    ) -> ConversationTurn:
        self.get_conversation(conversation_id)
        turn = ConversationTurn(
            turn_id=f"turn_{uuid.uuid4().hex[:12]}",
            conversation_id=conversation_id,
            role=role,
            content=content,
            created_at=created_at or self._clock(),
            concept_id=concept_id,
        )
        with self._lock:
            self._turns[conversation_id].append(turn)
        return turn

    def recent(self, conversation_id: str, limit: int) -> list[ConversationTurn]:
        if limit <= 0:
            return []
        with self._lock:
            return list(self._turns.get(conversation_id, [])[-limit:])

    def all_turns(self, conversation_id: str) -> list[ConversationTurn]:
        with self._lock:
            return list(self._turns.get(conversation_id, []))


class InMemoryUserProfiles:
    def __init__(self, profiles: list[UserProfile] | None = None) -> None:
        self._profiles = {profile.user_id: profile for profile in profiles or []}

    def get(self, user_id: str) -> UserProfile:
        profile = self._profiles.get(user_id)
        if profile is None:
            raise NotFoundError(f"User profile not found: {user_id}")
        return profile

    def upsert(self, profile: UserProfile) -> None:
        self._profiles[profile.user_id] = profile
