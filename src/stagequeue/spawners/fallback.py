from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

from stagequeue.spawners.base import AgentSpawner, SpawnResult

SpawnerEventHook = Callable[[dict[str, Any]], None]
SpawnCallback = Callable[[str, str | None, float], Awaitable[Any]]


class FallbackSpawner(AgentSpawner):
    """Primary spawner that switches to a fallback once recovery asks for it."""

    def __init__(
        self,
        primary: AgentSpawner,
        fallback: AgentSpawner | None = None,
        *,
        event_hook: SpawnerEventHook | None = None,
    ) -> None:
        self.primary = primary
        self.fallback = fallback
        self.event_hook = event_hook
        self.using_fallback = False

    @property
    def name(self) -> str:  # type: ignore[override]
        return self.active.name

    @property
    def active(self) -> AgentSpawner:
        if self.using_fallback and self.fallback is not None:
            return self.fallback
        return self.primary

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def prefer_fallback(self) -> bool:
        if self.fallback is None or self.fallback is self.primary:
            self._emit({"event": "spawner_fallback_unavailable", "status": "warning"})
            return False
        if not self.using_fallback:
            self.using_fallback = True
            self._emit(
                {
                    "event": "spawner_fallback",
                    "status": "warning",
                    "primary": self.primary.name,
                    "fallback": self.fallback.name,
                }
            )
        return True

    async def spawn(self, task: str, agent_id: str | None, timeout_seconds: float) -> SpawnResult:
        return await self.active.spawn(task, agent_id, timeout_seconds)


class CallbackSpawner(AgentSpawner):
    """Adapts an embedder callback returning ``{"sessionId"|"output"}`` or a SpawnResult."""

    name = "callback"

    def __init__(self, callback: SpawnCallback) -> None:
        self.callback = callback

    async def spawn(self, task: str, agent_id: str | None, timeout_seconds: float) -> SpawnResult:
        result = await self.callback(task, agent_id, timeout_seconds)
        if isinstance(result, SpawnResult):
            return result
        if isinstance(result, str):
            return SpawnResult(output=result)
        if isinstance(result, dict):
            return SpawnResult(
                session_id=result.get("sessionId") or result.get("session_id"),
                output=result.get("output"),
            )
        raise TypeError(f"Unsupported spawner callback result: {type(result).__name__}")
