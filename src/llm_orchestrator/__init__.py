"""LLM request orchestration package."""

from .config import OrchestratorSettings, ProviderConfig, ProviderType

__all__ = ["OrchestratorSettings", "ProviderConfig", "ProviderType"]
