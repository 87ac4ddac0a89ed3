from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

from stagequeue.errors import AgentSpawnError, StageTimeoutError
from stagequeue.spawners.base import AgentSpawner, SessionInfo, SessionMonitor, SpawnResult

SpawnerEventHook = Callable[[dict[str, Any]], None]


async def _run_cli(
    command: list[str],
    *,
    working_directory: Path | None,
    timeout_seconds: float | None,
    binary: str,
) -> tuple[int, str, str]:
    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            cwd=str(working_directory) if working_directory else None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        raise AgentSpawnError(f"openclaw binary not found: {binary}", spawner="openclaw") from exc

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout_seconds)
    except TimeoutError as exc:
        process.kill()
        await process.wait()
        raise StageTimeoutError(f"Agent timeout exceeded ({timeout_seconds:g}s)") from exc

    return (
        process.returncode if process.returncode is not None else -1,
        stdout.decode("utf-8", errors="replace").strip(),
        stderr.decode("utf-8", errors="replace").strip(),
    )


class OpenClawSpawner(AgentSpawner):
    name = "openclaw"

    def __init__(
        self,
        binary: str = "openclaw",
        *,
        local: bool = True,
        working_directory: Path | None = None,
        grace_seconds: float = 10.0,
        event_hook: SpawnerEventHook | None = None,
    ) -> None:
        self.binary = binary
        self.local = local
        self.working_directory = working_directory
        self.grace_seconds = grace_seconds
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def build_command(self, task: str, agent_id: str | None, timeout_seconds: float) -> list[str]:
        command = [self.binary, "agent"]
        if self.local:
            command.append("--local")
        command.extend(["--message", task])
        if agent_id:
            command.extend(["--agent", agent_id])
        command.extend(["--timeout", str(int(timeout_seconds)), "--json"])
        return command

    @staticmethod
    def parse_response(raw: str) -> SpawnResult:
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise AgentSpawnError(
                f"Unexpected agent response (not JSON): {raw[:200]}", spawner="openclaw"
            ) from exc
        if not isinstance(payload, dict):
            raise AgentSpawnError("Unexpected agent response shape", spawner="openclaw")

        session_id = payload.get("sessionId") or payload.get("session_id")
        output = payload.get("reply")
        if output is None:
            output = payload.get("output")
        if output is not None and not isinstance(output, str):
            output = json.dumps(output, ensure_ascii=False)
        if not session_id and output is None:
            raise AgentSpawnError(
                "Agent response carried neither a sessionId nor a reply", spawner="openclaw"
            )
        return SpawnResult(session_id=str(session_id) if session_id else None, output=output)

    async def spawn(self, task: str, agent_id: str | None, timeout_seconds: float) -> SpawnResult:
        command = self.build_command(task, agent_id, timeout_seconds)
        self._emit(
            {
                "event": "openclaw_spawn_start",
                "status": "active",
                "agent_id": agent_id,
                "timeout_seconds": timeout_seconds,
            }
        )
        return_code, stdout, stderr = await _run_cli(
            command,
            working_directory=self.working_directory,
            timeout_seconds=timeout_seconds + self.grace_seconds,
            binary=self.binary,
        )
        self._emit({"event": "openclaw_spawn_exit", "status": "info", "exit_code": return_code})
        if return_code != 0:
            raise AgentSpawnError(
                f"Agent spawn failed with exit code {return_code}: {stderr or stdout}",
                spawner="openclaw",
                exit_code=return_code,
            )
        return self.parse_response(stdout)


class OpenClawSessionMonitor(SessionMonitor):
    def __init__(
        self,
        binary: str = "openclaw",
        *,
        working_directory: Path | None = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        self.binary = binary
        self.working_directory = working_directory
        self.timeout_seconds = timeout_seconds

    def build_command(self) -> list[str]:
        return [self.binary, "sessions", "--json"]

    async def list_sessions(self) -> list[SessionInfo]:
        return_code, stdout, stderr = await _run_cli(
            self.build_command(),
            working_directory=self.working_directory,
            timeout_seconds=self.timeout_seconds,
            binary=self.binary,
        )
        if return_code != 0:
            raise AgentSpawnError(
                f"Session query failed with exit code {return_code}: {stderr}",
                spawner="openclaw",
                exit_code=return_code,
            )
        payload = json.loads(stdout or "[]")
        if isinstance(payload, dict):
            payload = payload.get("sessions", [])
        if not isinstance(payload, list):
            raise AgentSpawnError("Unexpected session list format", spawner="openclaw")
        return [SessionInfo.from_dict(item) for item in payload if isinstance(item, dict)]
