from pathlib import Path
from typing import Any

from stagequeue.events import EventLog, fanout, format_event


def test_event_log_appends_json_lines(tmp_path: Path) -> None:
    log = EventLog(tmp_path / "state" / "events.jsonl")

    log({"event": "stage_started", "status": "active", "stage": "build"})
    log({"event": "stage_complete", "status": "complete", "stage": "build"})

    events = list(log.read())
    assert [event["event"] for event in events] == ["stage_started", "stage_complete"]
    assert all("at" in event for event in events)


def test_fanout_skips_missing_hooks() -> None:
    first: list[dict[str, Any]] = []
    second: list[dict[str, Any]] = []

    hook = fanout(first.append, None, second.append)
    hook({"event": "x"})

    assert first == second == [{"event": "x"}]


def test_format_event_renders_scalars_only() -> None:
    line = format_event(
        {
            "event": "stage_failed",
            "status": "error",
            "stage": "build",
            "attempt": 2,
            "errors": ["a"],
            "session_id": None,
        }
    )

    assert line == "[stage_failed] error stage=build attempt=2"
