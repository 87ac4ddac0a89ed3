import asyncio
import json
from pathlib import Path
from typing import Any

from stagequeue.iteration import IterationController, detect_critical_gaps
from stagequeue.models import StageDefinition, StageResult, WorkflowDefinition, WorkflowResult
from stagequeue.state import WorkflowStateStore

GAPPY_OUTPUT = "\n".join(
    [
        "Review summary",
        "HIGH priority gap: token refresh is not covered",
        "HIGH priority gap: no rate limiting on login",
        "Gap (CRITICAL): secrets are logged",
    ]
)


def _workflow(tmp_path: Path, **overrides: Any) -> WorkflowDefinition:
    return WorkflowDefinition(
        name="wf",
        stages=(StageDefinition(name="review", task="review"),),
        working_directory=tmp_path,
        **overrides,
    )


def _result(
    output: str = "", evidence: dict[str, Any] | None = None, success: bool = True
) -> WorkflowResult:
    stage = StageResult(
        status="complete" if success else "failed", output=output, evidence=evidence
    )
    return WorkflowResult(
        success=success,
        workflow="wf",
        stages={"review": stage},
        execution_order=["review"],
        total_duration=0.0,
        failed_stage=None if success else "review",
    )


def test_evidence_gap_file_is_authoritative(tmp_path: Path) -> None:
    (tmp_path / "gaps.json").write_text(
        json.dumps(
            {
                "gaps": [
                    {"priority": "HIGH", "status": "open", "description": "auth"},
                    {"priority": "high", "status": "resolved", "description": "cache"},
                    {"priority": "LOW", "status": "open", "description": "typo"},
                ]
            }
        ),
        encoding="utf-8",
    )

    report = detect_critical_gaps(
        _result(GAPPY_OUTPUT, evidence={"filePath": "gaps.json"}), tmp_path
    )

    assert report.critical is True
    assert report.source == "evidence"
    assert [gap["description"] for gap in report.gaps] == ["auth"]


def test_settled_evidence_gaps_override_transcript_noise(tmp_path: Path) -> None:
    (tmp_path / "gaps.json").write_text(
        json.dumps({"gaps": [{"priority": "HIGH", "status": "deferred"}]}), encoding="utf-8"
    )

    report = detect_critical_gaps(
        _result(GAPPY_OUTPUT, evidence={"filePath": "gaps.json"}), tmp_path
    )

    assert report.critical is False
    assert report.source == "evidence"


def test_transcript_needs_more_than_two_gap_mentions(tmp_path: Path) -> None:
    many = detect_critical_gaps(_result(GAPPY_OUTPUT), tmp_path)
    few = detect_critical_gaps(
        _result("HIGH priority gap: one\nanother HIGH gap\nhigh level overview"), tmp_path
    )

    assert many.critical is True
    assert many.source == "transcript"
    assert len(many.gaps) == 3
    assert few.critical is False
    assert len(few.gaps) == 2


def test_evaluate_outcomes(tmp_path: Path) -> None:
    controller = IterationController()
    gappy = _result(GAPPY_OUTPUT)

    disabled, _ = controller.evaluate(_workflow(tmp_path, iteration_enabled=False), gappy, 0)
    clean, _ = controller.evaluate(_workflow(tmp_path), _result("all good"), 0)
    restart, report = controller.evaluate(_workflow(tmp_path, max_iterations=3), gappy, 0)
    capped, _ = controller.evaluate(_workflow(tmp_path, max_iterations=3), gappy, 2)

    assert disabled.status == "not-enabled"
    assert clean.status == "no-gaps"
    assert restart.status == "restart-detected"
    assert restart.gaps == report.gaps
    assert capped.status == "reached-max"
    assert capped.current == 2


def test_restart_carries_history_into_the_next_pass(tmp_path: Path) -> None:
    store = WorkflowStateStore(tmp_path / "states")
    workflow_id = store.create("wf", execution_order=["review"]).workflow_id
    outputs = [GAPPY_OUTPUT, "clean"]
    contexts: list[dict[str, Any]] = []
    events: list[dict[str, Any]] = []

    async def run_pass(context: dict[str, Any], iteration: int) -> WorkflowResult:
        contexts.append(context)
        return _result(outputs[iteration])

    controller = IterationController(state_store=store, event_hook=events.append)
    result = asyncio.run(
        controller.run(_workflow(tmp_path), {"topic": "auth"}, run_pass, workflow_id=workflow_id)
    )

    assert result.iteration.status == "no-gaps"
    assert result.iteration.current == 1
    assert [record.iteration for record in result.iteration.history] == [0]
    assert contexts[0] == {"topic": "auth"}
    assert contexts[1]["topic"] == "auth"
    assert contexts[1]["iteration"] == 1
    assert len(contexts[1]["previous_gaps"]) == 3
    assert contexts[1]["iteration_history"][0]["stage_outputs"]["review"]["output"] == GAPPY_OUTPUT
    assert [event["event"] for event in events] == ["iteration_restart", "iteration_finished"]
    assert store.load(workflow_id).iteration == 1


def test_iteration_stops_at_max(tmp_path: Path) -> None:
    calls: list[int] = []

    async def run_pass(context: dict[str, Any], iteration: int) -> WorkflowResult:
        calls.append(iteration)
        return _result(GAPPY_OUTPUT)

    result = asyncio.run(
        IterationController().run(_workflow(tmp_path, max_iterations=2), None, run_pass)
    )

    assert calls == [0, 1]
    assert result.iteration.status == "reached-max"
    assert result.iteration.current == 1
    assert len(result.iteration.history) == 1


def test_failed_restart_is_reported_as_aborted(tmp_path: Path) -> None:
    async def run_pass(context: dict[str, Any], iteration: int) -> WorkflowResult:
        return _result(GAPPY_OUTPUT, success=iteration == 0)

    result = asyncio.run(IterationController().run(_workflow(tmp_path), None, run_pass))

    assert result.success is False
    assert result.iteration.status == "aborted"
    assert result.iteration.current == 1


def test_failed_first_pass_has_no_iteration_outcome(tmp_path: Path) -> None:
    async def run_pass(context: dict[str, Any], iteration: int) -> WorkflowResult:
        return _result(success=False)

    result = asyncio.run(IterationController().run(_workflow(tmp_path), None, run_pass))

    assert result.success is False
    assert result.iteration is None
