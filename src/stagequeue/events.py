from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

EventHook = Callable[[dict[str, Any]], None]


class EventLog:
    """Appends every event it receives to a JSON lines file."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def __call__(self, event: dict[str, Any]) -> None:
        payload = dict(event)
        payload.setdefault("at", datetime.now(UTC).replace(microsecond=0).isoformat())
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, ensure_ascii=False, default=str) + "\n")

    def read(self) -> Iterator[dict[str, Any]]:
        if not self.path.exists():
            return
        for line in self.path.read_text(encoding="utf-8").splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                yield json.loads(line)
            except json.JSONDecodeError:
                continue


def fanout(*hooks: EventHook | None) -> EventHook:
    active = [hook for hook in hooks if hook is not None]

    def _hook(event: dict[str, Any]) -> None:
        for hook in active:
            hook(event)

    return _hook


def format_event(event: dict[str, Any]) -> str:
    label = event.get("event", "event")
    status = event.get("status", "info")
    details = " ".join(
        f"{key}={value}"
        for key, value in event.items()
        if key not in {"event", "status", "at"}
        and value is not None
        and not isinstance(value, (dict, list))
    )
    return f"[{label}] {status}" + (f" {details}" if details else "")
