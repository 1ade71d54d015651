"""Composition root: the two operations the surrounding application calls."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import httpx
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_core.prompts import ChatPromptTemplate, MessagesPlaceholder

from llm_orchestrator.config import OrchestratorSettings, ProviderConfig
from llm_orchestrator.errors import AllProvidersExhausted, InputValidationError, NotFoundError
from llm_orchestrator.health.monitor import HealthMonitor, HealthStore
from llm_orchestrator.ledger.ledger import CostAlert, CostRateLedger, utc_now
from llm_orchestrator.ledger.pricing import PricingTable
from llm_orchestrator.ledger.usage_log import JsonlUsageLog, UsageSink
from llm_orchestrator.memory.context_manager import ContextBuildOptions, ContextManager, render_profile
from llm_orchestrator.memory.embedder import Embedder, HashingEmbedder
from llm_orchestrator.memory.embedding_store import InMemoryContextEmbeddingStore
from llm_orchestrator.memory.history import (
    ConversationHistoryStore,
    InMemoryConversationHistory,
    InMemoryUserProfiles,
    UserProfileStore,
)
from llm_orchestrator.providers.factory import AdapterPool
from llm_orchestrator.registry.credentials import CredentialStore, EnvCredentialStore
from llm_orchestrator.registry.provider_registry import ProviderRegistry, default_provider_configs
from llm_orchestrator.routing.router import ProviderRouter
from llm_orchestrator.types import AssembledContext, CompletionRequest, Conversation, HealthState

logger = logging.getLogger(__name__)

_SYSTEM_PROMPT = """
You are a patient programming tutor.

Rules:
1) Adapt explanations to the learner's experience level and learning style.
2) Build on what was already covered in this conversation; do not repeat it verbatim.
3) If you are unsure, say so instead of guessing.
""".strip()

_ROLE_BY_MESSAGE_TYPE = {"human": "user", "ai": "assistant", "system": "system"}


@dataclass(slots=True)
class GenerateOptions:
    concept_id: str | None = None
    preferred_provider_type: str | None = None
    max_tokens: int | None = None
    temperature: float | None = None


@dataclass(slots=True)
class ContextInfo:
    tokens_used: int
    relevant_chunks: int
    compression_level: int
    recap_included: bool


@dataclass(slots=True)
class GenerateResult:
    reply: str
    provider_used: str
    model_used: str
    tokens: int
    cost: float
    context_info: ContextInfo
    fallbacks_used: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ProviderStatusReport:
    provider_id: str
    name: str
    enabled: bool
    health_status: str
    last_checked: datetime | None
    requests_today: int
    cost_today: float
    error_message: str | None = None
    recent_errors: dict[str, int] = field(default_factory=dict)
    unstable: bool = False


class Orchestrator:
    """Routes chat turns through providers and reports provider status."""

    def __init__(
        self,
        *,
        registry: ProviderRegistry,
        health: HealthStore,
        monitor: HealthMonitor,
        ledger: CostRateLedger,
        router: ProviderRouter,
        context_manager: ContextManager,
        history: ConversationHistoryStore,
        profiles: UserProfileStore,
        settings: OrchestratorSettings | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.registry = registry
        self.health = health
        self.monitor = monitor
        self.ledger = ledger
        self.router = router
        self.context_manager = context_manager
        self.history = history
        self.profiles = profiles
        self.settings = settings or OrchestratorSettings()
        self._clock = clock
        self._prompt = ChatPromptTemplate.from_messages(
            [
                ("system", "{system}"),
                MessagesPlaceholder(variable_name="history", optional=True),
                ("human", "{input}"),
            ]
        )

    async def generate_response(
        self,
        conversation_id: str,
        user_message: str,
        options: GenerateOptions | None = None,
    ) -> GenerateResult:
        """Answer one user message in a conversation.

        Raises:
            InputValidationError: Missing or unknown conversation, or empty message.
            AllProvidersExhausted: No provider could serve the request.
        """
        options = options or GenerateOptions()
        if not conversation_id or not conversation_id.strip():
            raise InputValidationError("conversation_id is required")
        if not user_message or not user_message.strip():
            raise InputValidationError("user_message must not be empty")
        try:
            conversation = self.history.get_conversation(conversation_id)
        except NotFoundError as exc:
            raise InputValidationError(str(exc)) from exc

        concept_id = options.concept_id or conversation.concept_id
        context = await asyncio.to_thread(
            self.context_manager.build_context,
            conversation.user_id,
            ContextBuildOptions(
                conversation_id=conversation_id,
                concept_id=concept_id,
                current_message=user_message,
            ),
        )

        request = CompletionRequest(
            messages=self.assemble_messages(context, user_message),
            user_id=conversation.user_id,
            conversation_id=conversation_id,
            concept_id=concept_id,
            max_tokens=options.max_tokens or self.settings.completion_max_tokens,
            temperature=(
                options.temperature if options.temperature is not None else self.settings.default_temperature
            ),
            preferred_provider_type=options.preferred_provider_type,
        )
        deadline = asyncio.get_running_loop().time() + self.settings.request_deadline_seconds
        try:
            result = await self.router.route(request, deadline=deadline)
        except AllProvidersExhausted as exc:
            logger.error("Conversation %s: %s", conversation_id, exc)
            raise

        user_turn = self.history.append(conversation_id, "user", user_message, concept_id)
        assistant_turn = self.history.append(
            conversation_id, "assistant", result.response.content, concept_id
        )
        for turn in (user_turn, assistant_turn):
            try:
                await asyncio.to_thread(self.context_manager.index_turn, turn, conversation.user_id)
            except Exception:
                logger.exception("Failed to index turn %s into semantic memory", turn.turn_id)

        return GenerateResult(
            reply=result.response.content,
            provider_used=result.provider.id,
            model_used=result.response.model,
            tokens=result.response.usage.total,
            cost=result.response.cost,
            context_info=ContextInfo(
                tokens_used=context.total_tokens,
                relevant_chunks=len(context.chunks),
                compression_level=context.compression_level,
                recap_included=context.recap is not None,
            ),
            fallbacks_used=list(result.fallbacks_used),
        )

    def start_conversation(self, user_id: str, concept_id: str | None = None) -> Conversation:
        self.profiles.get(user_id)
        conversation = self.history.create_conversation(user_id, concept_id=concept_id)
        logger.info("Conversation %s opened for user %s", conversation.conversation_id, user_id)
        return conversation

    def get_status(self, provider_id: str | None = None) -> ProviderStatusReport | list[ProviderStatusReport]:
        if provider_id is not None:
            return self._status_for(self.registry.get(provider_id))
        return [self._status_for(config) for config in self.registry.list_all()]

    async def check_provider_health(self, provider_id: str) -> ProviderStatusReport:
        config = self.registry.get(provider_id)
        await self.monitor.check_provider(config)
        return self._status_for(config)

    def usage_summary(self) -> dict[str, Any]:
        return self.ledger.summary()

    def cost_alerts(self) -> list[CostAlert]:
        return self.ledger.cost_alerts()

    async def start(self) -> None:
        await self.monitor.start()

    async def stop(self) -> None:
        await self.monitor.stop()

    def assemble_messages(self, context: AssembledContext, user_message: str) -> list[dict[str, str]]:
        system_parts = [_SYSTEM_PROMPT, render_profile(context.user_profile)]
        if context.recap:
            system_parts.append(f"Recap of earlier progress:\n{context.recap}")
        if context.chunks:
            memory = "\n".join(f"- {chunk.content}" for chunk in context.chunks)
            system_parts.append(f"Relevant earlier discussion:\n{memory}")

        history: list[BaseMessage] = []
        for turn in context.turns:
            if turn.is_summary or turn.role == "system":
                history.append(SystemMessage(content=turn.content))
            elif turn.role == "assistant":
                history.append(AIMessage(content=turn.content))
            else:
                history.append(HumanMessage(content=turn.content))

        messages = self._prompt.format_messages(
            system="\n\n".join(system_parts),
            history=history,
            input=user_message,
        )
        return [
            {"role": _ROLE_BY_MESSAGE_TYPE.get(message.type, "user"), "content": str(message.content)}
            for message in messages
        ]

    def _status_for(self, config: ProviderConfig) -> ProviderStatusReport:
        status = self.health.get(config.id)
        state = self.health.effective_state(config.id, self._clock())
        return ProviderStatusReport(
            provider_id=config.id,
            name=config.name,
            enabled=config.enabled,
            health_status=state.value if config.enabled else HealthState.UNKNOWN.value,
            last_checked=status.last_checked if status else None,
            requests_today=self.ledger.requests_today(config.id),
            cost_today=self.ledger.cost_today(config.id),
            error_message=status.error_message if status else None,
            recent_errors=self.ledger.error_stats(config.id),
            unstable=self.ledger.is_unstable(config.id),
        )


def build_orchestrator(
    *,
    settings: OrchestratorSettings | None = None,
    providers: list[ProviderConfig] | None = None,
    credentials: CredentialStore | None = None,
    embedder: Embedder | None = None,
    history: ConversationHistoryStore | None = None,
    profiles: UserProfileStore | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    sinks: list[UsageSink] | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> Orchestrator:
    """Wire every component with in-memory collaborators unless given explicitly."""
    settings = settings or OrchestratorSettings()
    registry = ProviderRegistry(providers if providers is not None else default_provider_configs())
    health = HealthStore(timedelta(seconds=settings.health.freshness_window_seconds))
    adapters = AdapterPool(credentials or EnvCredentialStore(), pricing=PricingTable(), transport=transport)

    usage_sinks = list(sinks or [])
    if settings.ledger.usage_log_path:
        usage_sinks.append(JsonlUsageLog(Path(settings.ledger.usage_log_path)))
    ledger = CostRateLedger(registry, settings.ledger, sinks=usage_sinks, clock=clock)

    monitor = HealthMonitor(registry, health, adapters, settings.health, clock=clock)
    router = ProviderRouter(registry, health, ledger, adapters, settings.router, clock=clock)

    history = history or InMemoryConversationHistory(clock=clock)
    profiles = profiles or InMemoryUserProfiles()
    embedder = embedder or HashingEmbedder(settings.context.embedding_dimension)
    context_manager = ContextManager(
        history,
        profiles,
        InMemoryContextEmbeddingStore(dimension=embedder.dimension),
        embedder,
        settings.context,
        clock=clock,
    )
    return Orchestrator(
        registry=registry,
        health=health,
        monitor=monitor,
        ledger=ledger,
        router=router,
        context_manager=context_manager,
        history=history,
        profiles=profiles,
        settings=settings,
        clock=clock,
    )
