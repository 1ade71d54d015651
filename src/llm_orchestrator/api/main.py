"""FastAPI entrypoint for chat, provider status and usage endpoints."""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from llm_orchestrator.config import OrchestratorSettings, load_provider_configs, load_settings
from llm_orchestrator.errors import AllProvidersExhausted, ErrorClass, InputValidationError, NotFoundError
from llm_orchestrator.obs.tracing import configure_logging
from llm_orchestrator.orchestrator import GenerateOptions, Orchestrator, build_orchestrator
from llm_orchestrator.types import UserProfile

logger = logging.getLogger(__name__)


def _create_orchestrator() -> Orchestrator:
    settings_path = os.getenv("LLM_ORCHESTRATOR_CONFIG")
    providers_path = os.getenv("LLM_ORCHESTRATOR_PROVIDERS")
    settings = load_settings(settings_path) if settings_path else OrchestratorSettings()
    providers = load_provider_configs(providers_path) if providers_path else None
    return build_orchestrator(settings=settings, providers=providers)


class RespondRequest(BaseModel):
    message: str = Field(min_length=1)
    concept_id: str | None = None
    preferred_provider_type: str | None = None
    max_tokens: int | None = Field(default=None, ge=1)
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)


class ConversationRequest(BaseModel):
    user_id: str = Field(min_length=1)
    concept_id: str | None = None


class ProfileRequest(BaseModel):
    name: str = Field(min_length=1)
    experience_level: str = "beginner"
    learning_style: str | None = None
    preferences: dict[str, Any] = Field(default_factory=dict)


def create_app(orchestrator: Orchestrator | None = None, *, start_monitor: bool = True) -> FastAPI:
    """Build the HTTP app around ``orchestrator`` (a default one when omitted)."""
    configure_logging(os.getenv("LOG_LEVEL", "INFO"))
    engine = orchestrator or _create_orchestrator()

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        if start_monitor:
            await engine.start()
        try:
            yield
        finally:
            if start_monitor:
                await engine.stop()

    app = FastAPI(title="LLM Orchestrator", version="0.1.0", lifespan=lifespan)
    app.state.orchestrator = engine

    @app.get("/health")
    def health() -> dict[str, Any]:
        enabled = engine.registry.list_enabled()
        return {
            "status": "ok",
            "providers_enabled": len(enabled),
            "monitor_running": engine.monitor.running,
        }

    @app.put("/users/{user_id}/profile")
    def put_profile(user_id: str, request: ProfileRequest) -> dict[str, Any]:
        profile = UserProfile(user_id=user_id, **request.model_dump())
        engine.profiles.upsert(profile)
        return asdict(profile)

    @app.post("/conversations")
    def open_conversation(request: ConversationRequest) -> dict[str, Any]:
        try:
            conversation = engine.start_conversation(request.user_id, request.concept_id)
        except NotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return asdict(conversation)

    @app.post("/conversations/{conversation_id}/respond")
    async def respond(conversation_id: str, request: RespondRequest) -> dict[str, Any]:
        options = GenerateOptions(
            concept_id=request.concept_id,
            preferred_provider_type=request.preferred_provider_type,
            max_tokens=request.max_tokens,
            temperature=request.temperature,
        )
        try:
            result = await engine.generate_response(conversation_id, request.message, options)
        except InputValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except NotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except AllProvidersExhausted as exc:
            raise HTTPException(
                status_code=502,
                detail={
                    "error": "AI service unavailable",
                    "message": str(exc),
                    "fallbacks_used": exc.fallbacks_used,
                    "attempts": exc.attempts,
                },
            ) from exc
        return asdict(result)

    @app.get("/providers/status")
    def providers_status() -> dict[str, Any]:
        reports = engine.get_status()
        return {"items": [asdict(report) for report in reports]}

    @app.get("/providers/{provider_id}/status")
    def provider_status(provider_id: str) -> dict[str, Any]:
        try:
            return asdict(engine.get_status(provider_id))
        except NotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    @app.post("/providers/{provider_id}/health-check")
    async def provider_health_check(provider_id: str) -> dict[str, Any]:
        try:
            report = await engine.check_provider_health(provider_id)
        except NotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        status = engine.health.get(provider_id)
        payload = asdict(report)
        payload["error_class"] = (
            status.error_class.value if status and isinstance(status.error_class, ErrorClass) else None
        )
        return payload

    @app.get("/usage/summary")
    def usage_summary() -> dict[str, Any]:
        return engine.usage_summary()

    @app.get("/usage/alerts")
    def usage_alerts() -> dict[str, Any]:
        return {"items": [asdict(alert) for alert in engine.cost_alerts()]}

    return app


app = create_app()
