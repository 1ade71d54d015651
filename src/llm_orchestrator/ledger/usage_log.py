"""Append-only request-log stream for usage records."""

from __future__ import annotations

import json
import threading
from dataclasses import asdict
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

from llm_orchestrator.types import UsageRecord


class UsageSink(Protocol):
    """Receives every usage record after it is accounted."""

    def write(self, record: UsageRecord) -> None:
        """Persist one record. May raise; the ledger logs and continues."""


class JsonlUsageLog:
    """Writes one JSON object per line; never rewrites earlier lines."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def write(self, record: UsageRecord) -> None:
        line = json.dumps(_serialize(record), sort_keys=True)
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")

    def read_all(self) -> list[dict[str, Any]]:
        if not self.path.exists():
            return []
        with self.path.open(encoding="utf-8") as handle:
            return [json.loads(line) for line in handle if line.strip()]


def _serialize(record: UsageRecord) -> dict[str, Any]:
    payload = asdict(record)
    for key, value in payload.items():
        if isinstance(value, datetime):
            payload[key] = value.isoformat()
        elif isinstance(value, Enum):
            payload[key] = value.value
    payload["cost"] = round(record.cost, 6)
    return payload
