import asyncio
import json
import time
from pathlib import Path
from typing import Any

import pytest

from stagequeue.errors import (
    AgentSpawnError,
    NetworkError,
    ResourceExhaustedError,
    StageFailedError,
    StageTimeoutError,
)
from stagequeue.executor import StageExecutor, sanitize_stage_name
from stagequeue.models import StageDefinition, StageResult, WorkflowDefinition
from stagequeue.recovery import RecoveryAdvisor
from stagequeue.sessions import SessionWaiter
from stagequeue.spawners.base import AgentSpawner, SessionInfo, SessionMonitor, SpawnResult
from stagequeue.spawners.fallback import FallbackSpawner

TEST_LOG = "tests/test_build.py ..... PASS\npassed: 5 failed: 0\n"


class ScriptedSpawner(AgentSpawner):
    name = "scripted"

    def __init__(self, outcomes: list[Any]) -> None:
        self.outcomes = list(outcomes)
        self.tasks: list[str] = []
        self.timeouts: list[float] = []

    async def spawn(self, task: str, agent_id: str | None, timeout_seconds: float) -> SpawnResult:
        self.tasks.append(task)
        self.timeouts.append(timeout_seconds)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class StaticMonitor(SessionMonitor):
    def __init__(self, sessions: list[SessionInfo]) -> None:
        self.sessions = sessions

    async def list_sessions(self) -> list[SessionInfo]:
        return list(self.sessions)


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def _evidence_output(root: Path) -> str:
    log = root / "logs" / "pytest.log"
    log.parent.mkdir(parents=True, exist_ok=True)
    log.write_text(TEST_LOG, encoding="utf-8")
    payload = {"evidenceType": "test-output", "filePath": "logs/pytest.log", "testResults": "pass"}
    return "Implemented the change.\n" + json.dumps({"completionEvidence": payload})


def _workflow(root: Path, **overrides: Any) -> WorkflowDefinition:
    stage = overrides.pop("stage", StageDefinition(name="build", task="Build {topic}"))
    return WorkflowDefinition(name="wf", stages=(stage,), working_directory=root, **overrides)


def _executor(
    spawner: AgentSpawner, sleep: SleepRecorder | None = None, **kwargs: Any
) -> StageExecutor:
    sleep = sleep or SleepRecorder()
    kwargs.setdefault("advisor", RecoveryAdvisor(sleep=sleep))
    return StageExecutor(spawner, clock=lambda: time.time() + 10, sleep=sleep, **kwargs)


def _execute(executor: StageExecutor, workflow: WorkflowDefinition, **context: Any) -> StageResult:
    return asyncio.run(executor.execute(workflow.stages[0], workflow, {}, context))


def test_successful_stage_saves_output_and_evidence(tmp_path: Path) -> None:
    output = _evidence_output(tmp_path)
    spawner = ScriptedSpawner([SpawnResult(output=output)])
    events: list[dict[str, Any]] = []
    workflow = _workflow(tmp_path)

    result = _execute(_executor(spawner, event_hook=events.append), workflow, topic="docs")

    output_file = tmp_path / "wf" / "outputs" / "build-output.txt"
    assert result.status == "complete"
    assert result.attempts == 1
    assert result.file == str(output_file)
    assert output_file.read_text(encoding="utf-8") == output
    assert result.evidence["filePath"] == "logs/pytest.log"
    assert spawner.tasks[0].startswith("Build docs\n\nMANDATORY GOVERNANCE:")
    assert spawner.timeouts == [900.0]
    states = [event["state"] for event in events if event["event"] == "stage_state"]
    assert states == ["pending", "spawning", "validating", "committing", "complete"]
    assert events[-1]["event"] == "stage_complete"


def test_stage_names_are_sanitized_for_output_files() -> None:
    assert sanitize_stage_name("api/v2 build") == "api_v2_build"


def test_missing_evidence_is_not_retried(tmp_path: Path) -> None:
    spawner = ScriptedSpawner([SpawnResult(output="done, trust me")])
    workflow = _workflow(tmp_path, retry_on_failure=3)

    with pytest.raises(StageFailedError) as caught:
        _execute(_executor(spawner), workflow)

    report = caught.value.report
    assert report["attempts"] == 1
    assert report["error_type"] == "validation_failed"
    assert "No completionEvidence object found" in report["last_error"]
    assert len(spawner.tasks) == 1


def test_network_errors_retry_with_exponential_backoff_only(tmp_path: Path) -> None:
    output = _evidence_output(tmp_path)
    spawner = ScriptedSpawner([NetworkError("connection reset"), SpawnResult(output=output)])
    sleep = SleepRecorder()

    result = _execute(_executor(spawner, sleep), _workflow(tmp_path, retry_on_failure=2))

    assert result.status == "complete"
    assert result.attempts == 2
    assert sleep.delays == [1.0]


def test_timeouts_extend_the_budget_and_wait_linearly(tmp_path: Path) -> None:
    output = _evidence_output(tmp_path)
    spawner = ScriptedSpawner(
        [
            StageTimeoutError("agent time limit exceeded"),
            StageTimeoutError("agent time limit exceeded"),
            SpawnResult(output=output),
        ]
    )
    sleep = SleepRecorder()
    workflow = _workflow(tmp_path, retry_on_failure=2, stage_timeout_minutes=2)

    result = _execute(_executor(spawner, sleep, retry_delay_seconds=5.0), workflow)

    assert result.attempts == 3
    assert spawner.timeouts == [120.0, 180.0, 270.0]
    assert sleep.delays == [5.0, 10.0]


def test_retries_are_bounded(tmp_path: Path) -> None:
    spawner = ScriptedSpawner([NetworkError("connection refused")])

    with pytest.raises(StageFailedError) as caught:
        _execute(_executor(spawner), _workflow(tmp_path, retry_on_failure=2))

    assert caught.value.report["attempts"] == 3
    assert caught.value.report["halt_reason"] == "Maximum retry attempts exhausted"
    assert len(spawner.tasks) == 3


def test_stage_retries_override_workflow_default(tmp_path: Path) -> None:
    stage = StageDefinition(name="build", task="Build", retries=0)
    spawner = ScriptedSpawner([NetworkError("connection refused")])

    with pytest.raises(StageFailedError) as caught:
        _execute(_executor(spawner), _workflow(tmp_path, stage=stage, retry_on_failure=4))

    assert caught.value.report["attempts"] == 1


def test_context_failure_never_spawns(tmp_path: Path) -> None:
    def _broken(prior: dict[str, StageResult]) -> dict[str, Any]:
        raise KeyError("plan")

    stage = StageDefinition(name="build", task="Build", context_from=_broken)
    spawner = ScriptedSpawner([SpawnResult(output="unused")])

    with pytest.raises(StageFailedError) as caught:
        _execute(_executor(spawner), _workflow(tmp_path, stage=stage, retry_on_failure=2))

    assert caught.value.report["attempts"] == 0
    assert caught.value.report["error_type"] == "invalid_input"
    assert spawner.tasks == []


def test_session_handle_uses_transcript_as_output(tmp_path: Path) -> None:
    output = _evidence_output(tmp_path)
    messages = [{"role": "assistant", "content": output}]
    monitor = StaticMonitor(
        [SessionInfo(id="sess-1", updated_at=time.time(), status="complete", messages=messages)]
    )
    spawner = ScriptedSpawner([SpawnResult(session_id="sess-1")])
    executor = _executor(spawner, session_waiter=SessionWaiter(monitor))

    result = _execute(executor, _workflow(tmp_path))

    assert result.status == "complete"
    assert result.session_id == "sess-1"
    assert result.session_transcript == messages
    assert result.output == f"[assistant] {output}"


def test_session_handle_without_monitor_is_invalid_input(tmp_path: Path) -> None:
    spawner = ScriptedSpawner([SpawnResult(session_id="sess-1")])

    with pytest.raises(StageFailedError) as caught:
        _execute(_executor(spawner), _workflow(tmp_path, retry_on_failure=2))

    assert caught.value.report["error_type"] == "invalid_input"
    assert caught.value.report["attempts"] == 1
    assert caught.value.report["session_id"] == "sess-1"


def test_quiet_session_without_outputs_is_abandoned(tmp_path: Path) -> None:
    monitor = StaticMonitor(
        [SessionInfo(id="sess-9", updated_at=time.time() - 1000, status="running")]
    )
    spawner = ScriptedSpawner([SpawnResult(session_id="sess-9")])
    executor = _executor(spawner, session_waiter=SessionWaiter(monitor))

    with pytest.raises(StageFailedError) as caught:
        _execute(executor, _workflow(tmp_path, retry_on_failure=2))

    assert caught.value.report["error_type"] == "abandoned_stage"
    assert caught.value.report["attempts"] == 1


def test_outputs_from_earlier_stages_do_not_hide_abandonment(tmp_path: Path) -> None:
    earlier = tmp_path / "wf" / "outputs" / "plan-output.txt"
    earlier.parent.mkdir(parents=True)
    earlier.write_text("plan done", encoding="utf-8")
    monitor = StaticMonitor(
        [SessionInfo(id="sess-9", updated_at=time.time() - 1000, status="running")]
    )
    spawner = ScriptedSpawner([SpawnResult(session_id="sess-9")])
    executor = _executor(spawner, session_waiter=SessionWaiter(monitor))

    with pytest.raises(StageFailedError) as caught:
        _execute(executor, _workflow(tmp_path, retry_on_failure=2))

    assert caught.value.report["error_type"] == "abandoned_stage"


def test_failed_stage_keeps_the_final_attempt_output(tmp_path: Path) -> None:
    spawner = ScriptedSpawner([SpawnResult(output="no evidence here")])

    with pytest.raises(StageFailedError) as caught:
        _execute(_executor(spawner), _workflow(tmp_path))

    failed = caught.value.result
    assert failed is not None
    assert failed.status == "failed"
    assert failed.output == "no evidence here"
    assert failed.file == str(tmp_path / "wf" / "outputs" / "build-output.txt")
    assert failed.started_at is not None
    assert failed.attempts == 1
    assert failed.error == caught.value.report


def test_spawn_failure_switches_to_fallback(tmp_path: Path) -> None:
    output = _evidence_output(tmp_path)
    primary = ScriptedSpawner([AgentSpawnError("gateway refused the spawn", spawner="primary")])
    fallback = ScriptedSpawner([SpawnResult(output=output)])
    spawner = FallbackSpawner(primary, fallback)

    result = _execute(
        _executor(spawner, retry_delay_seconds=0.0), _workflow(tmp_path, retry_on_failure=1)
    )

    assert result.status == "complete"
    assert result.attempts == 2
    assert spawner.using_fallback is True
    assert len(primary.tasks) == 1
    assert len(fallback.tasks) == 1


def test_resource_exhaustion_runs_cleanup_before_retry(tmp_path: Path) -> None:
    output = _evidence_output(tmp_path)
    spawner = ScriptedSpawner([ResourceExhaustedError("disk full"), SpawnResult(output=output)])
    cleanups: list[str] = []

    result = _execute(
        _executor(spawner, retry_delay_seconds=0.0, cleanup=lambda: cleanups.append("run")),
        _workflow(tmp_path, retry_on_failure=1),
    )

    assert result.attempts == 2
    assert cleanups == ["run"]
