from __future__ import annotations

import asyncio
from typing import Any

import openai
from openai import OpenAI

from stagequeue.errors import AgentSpawnError, NetworkError, StageTimeoutError
from stagequeue.spawners.base import AgentSpawner, SpawnResult


class OpenAISpawner(AgentSpawner):
    """Runs a stage as a single Responses API call and returns its text synchronously."""

    name = "openai"

    def __init__(self, *, model: str = "gpt-5", client: Any | None = None) -> None:
        self.model = model
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            try:
                self._client = OpenAI()
            except openai.OpenAIError as exc:
                raise AgentSpawnError(
                    f"OpenAI client unavailable: {exc}", spawner="openai"
                ) from exc
        return self._client

    @staticmethod
    def _extract_text(payload: Any) -> str:
        if payload is None:
            return ""
        output_text = getattr(payload, "output_text", None)
        if isinstance(output_text, str):
            return output_text
        if isinstance(payload, dict):
            value = payload.get("output_text")
            if isinstance(value, str):
                return value
        return str(output_text or "")

    async def spawn(self, task: str, agent_id: str | None, timeout_seconds: float) -> SpawnResult:
        client = self._get_client()
        request: dict[str, Any] = {"model": self.model, "input": task, "timeout": timeout_seconds}
        if agent_id:
            request["metadata"] = {"agent_id": agent_id}

        def _request() -> Any:
            return client.responses.create(**request)

        try:
            payload = await asyncio.to_thread(_request)
        except openai.APITimeoutError as exc:
            raise StageTimeoutError(f"OpenAI request timeout exceeded: {exc}") from exc
        except openai.APIConnectionError as exc:
            raise NetworkError(f"OpenAI connection failed: {exc}") from exc
        except openai.OpenAIError as exc:
            raise AgentSpawnError(f"OpenAI agent spawn failed: {exc}", spawner="openai") from exc

        content = self._extract_text(payload).strip()
        if not content:
            raise AgentSpawnError("OpenAI agent returned an empty response", spawner="openai")
        return SpawnResult(output=content)
