"""Assembles bounded per-request context from profile, history and semantic memory."""

from __future__ import annotations

import logging
import re
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime, timedelta

from llm_orchestrator.config import ContextConfig
from llm_orchestrator.errors import InputValidationError, NotFoundError
from llm_orchestrator.ledger.ledger import utc_now
from llm_orchestrator.memory.embedder import Embedder
from llm_orchestrator.memory.embedding_store import ChunkFilter, ContextEmbeddingStore
from llm_orchestrator.memory.history import ConversationHistoryStore, UserProfileStore
from llm_orchestrator.obs.tracing import estimate_token_count
from llm_orchestrator.types import AssembledContext, ContextChunk, ConversationTurn, UserProfile

logger = logging.getLogger(__name__)

_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")
_WORD = re.compile(r"[A-Za-z][A-Za-z'-]+")
_KEY_MARKERS = ("important", "key", "remember", "note that")
_STOPWORDS = frozenset(
    {
        "about", "after", "again", "being", "could", "doing", "every", "first", "going",
        "their", "there", "these", "thing", "things", "think", "those", "where", "which",
        "while", "would", "should", "really", "still", "other", "because", "might",
        "please", "thanks", "right", "maybe", "something",
    }
)
_SNIPPET_WORDS = 12
# Turns carried into semantic memory when the learner switches concept.
_SWITCH_CARRY_TURNS = 5
# Below this many tokens a truncated summary carries no useful information.
_MIN_SUMMARY_TOKENS = 8


@dataclass(slots=True)
class ContextBuildOptions:
    conversation_id: str | None = None
    concept_id: str | None = None
    current_message: str | None = None
    history_limit: int | None = None
    max_tokens: int | None = None
    include_retrieval: bool = True
    relevance_threshold: float | None = None
    retrieval_limit: int | None = None
    include_recap: bool = True


def render_profile(profile: UserProfile) -> str:
    """Plain-text profile block shared by token estimation and prompt assembly."""
    lines = [f"Learner: {profile.name}", f"Experience level: {profile.experience_level}"]
    if profile.learning_style:
        lines.append(f"Learning style: {profile.learning_style}")
    for key in sorted(profile.preferences):
        lines.append(f"Preference {key}: {profile.preferences[key]}")
    return "\n".join(lines)


class ContextManager:
    """Builds and compresses ``AssembledContext`` values.

    Compression order when a context exceeds its budget:

    1. drop retrieved chunks, lowest relevance first;
    2. fold turns older than the last ``preserve_recent_turns`` into one
       summary entry;
    3. drop the recap;
    4. shrink the verbatim window to the latest turn, then truncate or drop
       the summary entry.

    Chunks dropped in step 1 come back, highest relevance first, while they
    fit in the room the later steps freed.

    The profile and the latest turn are never removed, so any budget at least
    that large is always met.
    """

    def __init__(
        self,
        history: ConversationHistoryStore,
        profiles: UserProfileStore,
        store: ContextEmbeddingStore,
        embedder: Embedder,
        config: ContextConfig | None = None,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._history = history
        self._profiles = profiles
        self._store = store
        self._embedder = embedder
        self.config = config or ContextConfig()
        self._clock = clock

    def build_context(self, user_id: str, options: ContextBuildOptions | None = None) -> AssembledContext:
        options = options or ContextBuildOptions()
        profile = self._profiles.get(user_id)

        turns: list[ConversationTurn] = []
        if options.conversation_id:
            conversation = self._history.get_conversation(options.conversation_id)
            if conversation.user_id != user_id:
                raise InputValidationError(
                    f"Conversation {options.conversation_id} does not belong to user {user_id}"
                )
            limit = options.history_limit or self.config.history_limit
            turns = self._history.recent(options.conversation_id, limit)

        chunks: list[ContextChunk] = []
        if options.include_retrieval and turns and options.current_message:
            chunks = self._retrieve(user_id, turns, options)

        recap = None
        if options.include_recap and turns:
            idle = self._clock() - turns[-1].created_at
            if idle > timedelta(minutes=self.config.recap_after_minutes):
                recap = self.generate_summary(options.conversation_id or "") or None

        context = AssembledContext(
            user_profile=profile,
            turns=tuple(turns),
            chunks=tuple(chunks),
            recap=recap,
            total_tokens=0,
        )
        context = replace(context, total_tokens=self.estimate_tokens(context))

        max_tokens = options.max_tokens if options.max_tokens is not None else self.config.max_tokens
        if context.total_tokens > max_tokens:
            logger.debug(
                "Context for %s is %d tokens, compressing to %d",
                options.conversation_id,
                context.total_tokens,
                max_tokens,
            )
            context = self.compress_context(context, max_tokens)
        return context

    def compress_context(self, context: AssembledContext, target_tokens: int) -> AssembledContext:
        if context.total_tokens <= target_tokens:
            return context

        level = context.compression_level
        chunks = sorted(context.chunks, key=lambda c: c.relevance_score or 0.0, reverse=True)
        summary = next((t for t in context.turns if t.is_summary), None)
        verbatim = [t for t in context.turns if not t.is_summary]
        recap = context.recap

        def total() -> int:
            turns = ([summary] if summary else []) + verbatim
            return self._count(context.user_profile, turns, chunks, recap)

        dropped: list[ContextChunk] = []
        while chunks and total() > target_tokens:
            dropped.append(chunks.pop())
            level = max(level, 1)

        if total() > target_tokens and len(verbatim) > self.config.preserve_recent_turns:
            keep = self.config.preserve_recent_turns
            summary = self._fold(summary, verbatim[:-keep])
            verbatim = verbatim[-keep:]
            level = max(level, 2)

        if recap is not None and total() > target_tokens:
            recap = None
            level = max(level, 3)

        if total() > target_tokens:
            while len(verbatim) > 1 and total() > target_tokens:
                summary = self._fold(summary, verbatim[:1])
                verbatim = verbatim[1:]
                level = max(level, 4)
            if summary is not None and total() > target_tokens:
                without = self._count(context.user_profile, verbatim, chunks, recap)
                summary = self._truncate(summary, target_tokens - without)
                level = max(level, 4)

        for chunk in reversed(dropped):
            chunks.append(chunk)
            if total() > target_tokens:
                chunks.pop()
                break

        turns = tuple(([summary] if summary else []) + verbatim)
        compressed = AssembledContext(
            user_profile=context.user_profile,
            turns=turns,
            chunks=tuple(chunks),
            recap=recap,
            total_tokens=self._count(context.user_profile, turns, chunks, recap),
            compression_level=level,
        )
        if compressed.total_tokens > target_tokens:
            logger.warning(
                "Context still %d tokens after compression; target %d is below the profile plus latest turn",
                compressed.total_tokens,
                target_tokens,
            )
        return compressed

    def generate_summary(self, conversation_id: str) -> str:
        """Short recap of a conversation for a returning user; empty when there is nothing to say."""
        try:
            turns = [t for t in self._history.all_turns(conversation_id) if not t.is_summary]
        except NotFoundError:
            return ""
        if not turns:
            return ""

        try:
            return self._summarize(turns)
        except Exception:
            logger.exception("Summary generation failed for conversation %s", conversation_id)
            return ""

    def index_turn(self, turn: ConversationTurn, user_id: str) -> ContextChunk:
        """Embed a turn and store it as semantic memory for later recall."""
        embedding = self._embedder.embed_documents([turn.content])[0]
        chunk = ContextChunk(
            chunk_id=f"chunk_{turn.turn_id}",
            turn_id=turn.turn_id,
            conversation_id=turn.conversation_id,
            user_id=user_id,
            content=turn.content,
            embedding=tuple(embedding),
            timestamp=turn.created_at,
            concept_id=turn.concept_id,
        )
        self._store.store(chunk)
        return chunk

    def switch_concept(
        self,
        user_id: str,
        conversation_id: str,
        to_concept_id: str,
        *,
        from_concept_id: str | None = None,
        current_message: str | None = None,
    ) -> AssembledContext:
        """Move a conversation onto a new concept.

        The latest turns are indexed under the concept being left, so they can
        be recalled when the learner returns to it, and a fresh context is
        built with retrieval scoped to ``to_concept_id``.
        """
        conversation = self._history.get_conversation(conversation_id)
        if conversation.user_id != user_id:
            raise InputValidationError(f"Conversation {conversation_id} does not belong to user {user_id}")
        leaving = from_concept_id or conversation.concept_id
        for turn in self._history.recent(conversation_id, _SWITCH_CARRY_TURNS):
            if turn.is_summary:
                continue
            self.index_turn(replace(turn, concept_id=leaving or turn.concept_id), user_id)
        logger.info(
            "Conversation %s switched concept %s -> %s", conversation_id, leaving, to_concept_id
        )
        return self.build_context(
            user_id,
            ContextBuildOptions(
                conversation_id=conversation_id,
                concept_id=to_concept_id,
                current_message=current_message,
            ),
        )

    def estimate_tokens(self, context: AssembledContext) -> int:
        return self._count(context.user_profile, context.turns, context.chunks, context.recap)

    def _retrieve(
        self,
        user_id: str,
        turns: list[ConversationTurn],
        options: ContextBuildOptions,
    ) -> list[ContextChunk]:
        limit = options.retrieval_limit if options.retrieval_limit is not None else self.config.retrieval_limit
        if limit <= 0:
            return []
        threshold = (
            options.relevance_threshold
            if options.relevance_threshold is not None
            else self.config.relevance_threshold
        )
        embedding = self._embedder.embed_query(options.current_message or "")
        filters = ChunkFilter(
            concept_id=options.concept_id,
            exclude_turn_ids=frozenset(turn.turn_id for turn in turns),
        )
        return self._store.query(user_id, embedding, filters, limit=limit, min_score=threshold)

    def _count(
        self,
        profile: UserProfile,
        turns: tuple[ConversationTurn, ...] | list[ConversationTurn],
        chunks: tuple[ContextChunk, ...] | list[ContextChunk],
        recap: str | None,
    ) -> int:
        tokens = estimate_token_count(render_profile(profile))
        tokens += sum(estimate_token_count(turn.content) for turn in turns)
        tokens += sum(estimate_token_count(chunk.content) for chunk in chunks)
        if recap:
            tokens += estimate_token_count(recap)
        return tokens

    def _fold(self, summary: ConversationTurn | None, turns: list[ConversationTurn]) -> ConversationTurn:
        snippets = [f"{turn.role}: {_snippet(turn.content)}" for turn in turns]
        if summary is not None:
            content = f"{summary.content}; " + "; ".join(snippets)
        else:
            content = "Earlier in this conversation: " + "; ".join(snippets)
        anchor = summary or turns[0]
        return ConversationTurn(
            turn_id=f"summary_{anchor.conversation_id}",
            conversation_id=anchor.conversation_id,
            role="system",
            content=content,
            created_at=turns[-1].created_at,
            concept_id=anchor.concept_id,
            is_summary=True,
        )

    def _truncate(self, summary: ConversationTurn, budget: int) -> ConversationTurn | None:
        if budget < _MIN_SUMMARY_TOKENS:
            return None
        words = summary.content.split()
        low, high = 0, len(words)
        while low < high:
            mid = (low + high + 1) // 2
            if estimate_token_count(" ".join(words[:mid]) + " ...") <= budget:
                low = mid
            else:
                high = mid - 1
        if low == 0:
            return None
        return replace(summary, content=" ".join(words[:low]) + " ...")

    def _summarize(self, turns: list[ConversationTurn]) -> str:
        user_turns = [t for t in turns if t.role == "user"]
        assistant_turns = [t for t in turns if t.role == "assistant"]
        lines = [
            f"Conversation so far: {len(turns)} messages "
            f"({len(user_turns)} from you, {len(assistant_turns)} from the assistant)."
        ]

        words = Counter(
            word.lower()
            for turn in user_turns
            for word in _WORD.findall(turn.content)
            if len(word) > 4 and word.lower() not in _STOPWORDS
        )
        topics = [word for word, _ in words.most_common(3)]
        if topics:
            lines.append(f"Topics: {', '.join(topics)}.")

        key_points: list[str] = []
        for turn in assistant_turns:
            for sentence in _SENTENCE_SPLIT.split(turn.content):
                if any(marker in sentence.lower() for marker in _KEY_MARKERS):
                    key_points.append(sentence.strip()[:120])
        if key_points:
            lines.append("Key points: " + " ".join(key_points[-3:]))

        if assistant_turns:
            checkpoint = _SENTENCE_SPLIT.split(assistant_turns[-1].content.strip())[0]
            if checkpoint:
                lines.append(f"Last checkpoint: {checkpoint[:160]}")
        return "\n".join(lines)


def _snippet(text: str) -> str:
    words = text.split()
    if len(words) <= _SNIPPET_WORDS:
        return " ".join(words)
    return " ".join(words[:_SNIPPET_WORDS]) + " ..."
