from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from stagequeue.errors import QueueError, SessionTimeoutError
from stagequeue.spawners.base import SessionInfo, SessionMonitor

SessionEventHook = Callable[[dict[str, Any]], None]

TERMINAL_STATUSES = {"complete", "completed", "error"}


@dataclass(slots=True)
class SessionCompletion:
    completed: bool
    session: SessionInfo | None
    transcript: list[dict[str, Any]] | None
    reason: str


def format_transcript(messages: list[dict[str, Any]]) -> str:
    return "\n\n".join(
        f"[{message.get('role') or 'assistant'}] {message.get('content') or ''}"
        for message in messages
    )


def snapshot_outputs(directory: Path) -> dict[str, int]:
    """Map each file under ``directory`` to its modification time in nanoseconds."""
    if not directory.is_dir():
        return {}
    return {
        str(path): path.stat().st_mtime_ns for path in directory.rglob("*") if path.is_file()
    }


def _has_new_files(directory: Path, baseline: Mapping[str, int] | None) -> bool:
    current = snapshot_outputs(directory)
    if baseline is None:
        return bool(current)
    return any(baseline.get(path) != stamp for path, stamp in current.items())


class SessionWaiter:
    """Polls the session monitor until a spawned session is done."""

    def __init__(
        self,
        monitor: SessionMonitor,
        *,
        poll_interval_seconds: float = 5.0,
        inactive_seconds: float = 300.0,
        abandon_seconds: float = 600.0,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        event_hook: SessionEventHook | None = None,
    ) -> None:
        self.monitor = monitor
        self.poll_interval_seconds = poll_interval_seconds
        self.inactive_seconds = inactive_seconds
        self.abandon_seconds = abandon_seconds
        self.clock = clock
        self.sleep = sleep
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def inactive_for(self, session: SessionInfo) -> float:
        if session.updated_at is None:
            return float("inf")
        return self.clock() - session.updated_at

    def completion_reason(self, session: SessionInfo) -> str | None:
        if self.inactive_for(session) > self.inactive_seconds:
            return "inactive"
        if (session.status or "").lower() in TERMINAL_STATUSES:
            return "terminal_status"
        return None

    async def _find(self, session_id: str) -> SessionInfo | None:
        sessions = await self.monitor.list_sessions()
        for session in sessions:
            if session.id == session_id:
                return session
        return None

    async def wait_for_completion(
        self, session_id: str, timeout_seconds: float
    ) -> SessionCompletion:
        start = self.clock()
        self._emit(
            {
                "event": "session_wait_started",
                "status": "active",
                "session_id": session_id,
                "timeout_seconds": timeout_seconds,
            }
        )
        while True:
            if self.clock() - start > timeout_seconds:
                raise SessionTimeoutError(session_id, timeout_seconds)

            try:
                session = await self._find(session_id)
            except (QueueError, OSError, ValueError) as exc:
                self._emit(
                    {
                        "event": "session_check_failed",
                        "status": "warning",
                        "session_id": session_id,
                        "error": str(exc),
                    }
                )
                return SessionCompletion(True, None, None, "monitor_unavailable")

            if session is None:
                self._emit(
                    {"event": "session_not_found", "status": "info", "session_id": session_id}
                )
                return SessionCompletion(True, None, None, "not_found")

            reason = self.completion_reason(session)
            if reason is not None:
                self._emit(
                    {
                        "event": "session_complete",
                        "status": "complete",
                        "session_id": session_id,
                        "reason": reason,
                        "elapsed_seconds": self.clock() - start,
                    }
                )
                return SessionCompletion(True, session, session.messages or None, reason)

            await self.sleep(self.poll_interval_seconds)

    async def detect_abandoned(
        self,
        session_id: str,
        output_directory: Path,
        baseline: Mapping[str, int] | None = None,
    ) -> bool:
        """A session is abandoned when it went quiet and left no output files behind.

        With a ``baseline`` from ``snapshot_outputs``, only files created or
        modified since the snapshot count as this session's output.
        """
        try:
            session = await self._find(session_id)
        except (QueueError, OSError, ValueError) as exc:
            self._emit(
                {
                    "event": "abandon_check_failed",
                    "status": "warning",
                    "session_id": session_id,
                    "error": str(exc),
                }
            )
            return False
        if session is None:
            return False

        inactive = self.inactive_for(session)
        if inactive <= self.abandon_seconds:
            return False
        if _has_new_files(output_directory, baseline):
            return False
        self._emit(
            {
                "event": "stage_abandoned",
                "status": "error",
                "session_id": session_id,
                "inactive_seconds": inactive,
            }
        )
        return True
