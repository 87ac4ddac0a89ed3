from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass(slots=True)
class SpawnResult:
    session_id: str | None = None
    output: str | None = None

    def __post_init__(self) -> None:
        if not self.session_id and self.output is None:
            raise ValueError("SpawnResult needs a session_id or an output")


@dataclass(slots=True)
class SessionInfo:
    id: str
    updated_at: float | None = None
    status: str | None = None
    messages: list[dict[str, Any]] | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> SessionInfo:
        messages = data.get("messages")
        return cls(
            id=str(data.get("id") or data.get("sessionId") or ""),
            updated_at=parse_timestamp(data.get("updatedAt", data.get("updated_at"))),
            status=data.get("status"),
            messages=list(messages) if isinstance(messages, list) else None,
            raw=dict(data),
        )


def parse_timestamp(value: Any) -> float | None:
    """Epoch seconds from an ISO string, epoch seconds, or epoch milliseconds."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return float(value) / 1000.0 if value > 1e11 else float(value)
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp()
        except ValueError:
            return None
    return None


class AgentSpawner(ABC):
    name = "spawner"

    @abstractmethod
    async def spawn(self, task: str, agent_id: str | None, timeout_seconds: float) -> SpawnResult:
        """Start an agent task and return its output or a session handle."""

    def prefer_fallback(self) -> bool:
        """Switch to a fallback spawner when one exists; return whether it did."""
        return False


class SessionMonitor(ABC):
    @abstractmethod
    async def list_sessions(self) -> list[SessionInfo]:
        """Return every session known to the agent runtime."""
