"""Credential resolution for provider API keys.

Provider configs only carry an opaque ``credential_ref``. The store turns that
reference into the actual secret at dispatch time; secrets are never cached on
configs, logged, or returned to callers.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from typing import Protocol


class CredentialStore(Protocol):
    """Resolves opaque credential references to API keys."""

    def resolve(self, reference: str | None) -> str | None:
        """Return the secret for ``reference`` or ``None`` when unavailable."""


class EnvCredentialStore:
    """Resolves ``env:NAME`` (or bare ``NAME``) references from the environment."""

    def __init__(self, environ: Mapping[str, str] | None = None) -> None:
        self._environ = environ if environ is not None else os.environ

    def resolve(self, reference: str | None) -> str | None:
        if not reference:
            return None
        name = reference.removeprefix("env:").strip()
        value = self._environ.get(name, "").strip()
        return value or None


class StaticCredentialStore:
    """In-memory store keyed by reference, used by tests and local setups."""

    def __init__(self, secrets: Mapping[str, str] | None = None) -> None:
        self._secrets = dict(secrets or {})

    def set(self, reference: str, secret: str) -> None:
        self._secrets[reference] = secret

    def resolve(self, reference: str | None) -> str | None:
        if not reference:
            return None
        return self._secrets.get(reference) or None

