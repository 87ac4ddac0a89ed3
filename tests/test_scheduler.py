import asyncio
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import pytest

from stagequeue.errors import StageFailedError, WorkflowValidationError
from stagequeue.models import StageDefinition, StageResult, WorkflowDefinition
from stagequeue.scheduler import WorkflowScheduler
from stagequeue.state import WorkflowStateStore


class FakeExecutor:
    def __init__(self, failing: set[str] | None = None) -> None:
        self.failing = failing or set()
        self.calls: list[str] = []
        self.seen_prior: dict[str, list[str]] = {}
        self.on_execute: Any = None

    async def execute(
        self,
        stage: StageDefinition,
        workflow: WorkflowDefinition,
        prior_results: Mapping[str, StageResult],
        context: Mapping[str, Any] | None = None,
    ) -> StageResult:
        self.calls.append(stage.name)
        self.seen_prior[stage.name] = sorted(prior_results)
        if self.on_execute is not None:
            self.on_execute(stage.name)
        if stage.name in self.failing:
            raise StageFailedError(
                {
                    "stage": stage.name,
                    "attempts": 2,
                    "last_error": "agent crashed",
                    "error_type": "agent_spawn_failed",
                    "session_id": "sess-x",
                    "session_transcript": None,
                }
            )
        return StageResult(status="complete", output=f"{stage.name} output", attempts=1)


def _workflow(
    tmp_path: Path, *stages: tuple[str, tuple[str, ...]], **overrides: Any
) -> WorkflowDefinition:
    return WorkflowDefinition(
        name="wf",
        stages=tuple(
            StageDefinition(name=name, task=name, dependencies=deps) for name, deps in stages
        ),
        working_directory=tmp_path,
        **overrides,
    )


ABC = (("C", ("B",)), ("A", ()), ("B", ("A",)))


def test_runs_stages_in_dependency_order(tmp_path: Path) -> None:
    executor = FakeExecutor()
    events: list[dict[str, Any]] = []

    result = asyncio.run(
        WorkflowScheduler(executor, event_hook=events.append).run(_workflow(tmp_path, *ABC))
    )

    assert result.success is True
    assert result.execution_order == ["A", "B", "C"]
    assert executor.calls == ["A", "B", "C"]
    assert executor.seen_prior == {"A": [], "B": ["A"], "C": ["A", "B"]}
    assert all(stage.status == "complete" for stage in result.stages.values())
    assert events[0]["event"] == "workflow_started"
    assert events[-1]["event"] == "workflow_complete"


def test_cycles_are_rejected_before_any_spawn(tmp_path: Path) -> None:
    executor = FakeExecutor()
    workflow = _workflow(tmp_path, ("A", ("B",)), ("B", ("A",)))

    with pytest.raises(WorkflowValidationError, match="Circular dependency"):
        asyncio.run(WorkflowScheduler(executor).run(workflow))

    assert executor.calls == []


def test_stop_on_error_halts_after_failure(tmp_path: Path) -> None:
    executor = FakeExecutor(failing={"B"})

    result = asyncio.run(WorkflowScheduler(executor).run(_workflow(tmp_path, *ABC)))

    assert result.success is False
    assert result.failed_stage == "B"
    assert executor.calls == ["A", "B"]
    assert "C" not in result.stages
    failed = result.stages["B"]
    assert failed.status == "failed"
    assert failed.attempts == 2
    assert failed.session_id == "sess-x"
    assert failed.error["last_error"] == "agent crashed"


def test_dependents_of_failed_stage_are_skipped_when_continuing(tmp_path: Path) -> None:
    executor = FakeExecutor(failing={"A"})
    workflow = _workflow(tmp_path, ("A", ()), ("B", ("A",)), ("D", ()), stop_on_error=False)

    result = asyncio.run(WorkflowScheduler(executor).run(workflow))

    assert result.success is False
    assert executor.calls == ["A", "D"]
    assert result.stages["B"].status == "skipped"
    assert result.stages["B"].unmet_dependencies == ["A"]
    assert result.stages["B"].reason == "Unmet dependencies"
    assert result.stages["D"].status == "complete"


def test_progress_is_persisted_per_stage(tmp_path: Path) -> None:
    store = WorkflowStateStore(tmp_path / "states")
    workflow_id = store.create("wf", execution_order=["A", "B", "C"]).workflow_id
    executor = FakeExecutor(failing={"C"})

    asyncio.run(
        WorkflowScheduler(executor, state_store=store).run(
            _workflow(tmp_path, *ABC), workflow_id=workflow_id
        )
    )

    state = store.load(workflow_id)
    assert state.completed_stages == ["A", "B"]
    assert state.failed_stage == "C"
    assert state.status == "running"
    assert state.stage_outputs["B"]["output"] == "B output"


def test_cancel_is_observed_at_the_next_stage_boundary(tmp_path: Path) -> None:
    store = WorkflowStateStore(tmp_path / "states")
    workflow_id = store.create("wf", execution_order=["A", "B", "C"]).workflow_id
    executor = FakeExecutor()
    executor.on_execute = lambda name: store.cancel(workflow_id) if name == "A" else None
    events: list[dict[str, Any]] = []

    result = asyncio.run(
        WorkflowScheduler(executor, state_store=store, event_hook=events.append).run(
            _workflow(tmp_path, *ABC), workflow_id=workflow_id
        )
    )

    assert executor.calls == ["A"]
    assert result.success is False
    assert result.halted == "cancelled"
    assert result.failed_stage is None
    assert any(event["event"] == "workflow_halted" for event in events)
    assert store.load(workflow_id).status == "cancelled"


def test_completed_prior_results_are_reused(tmp_path: Path) -> None:
    executor = FakeExecutor()
    prior = {
        "A": StageResult(status="complete", output="kept"),
        "B": StageResult(status="failed"),
    }

    result = asyncio.run(
        WorkflowScheduler(executor).run(_workflow(tmp_path, *ABC), prior_results=prior)
    )

    assert executor.calls == ["B", "C"]
    assert result.stages["A"].output == "kept"
    assert result.success is True


def test_continuing_run_stays_running_until_marked(tmp_path: Path) -> None:
    store = WorkflowStateStore(tmp_path / "states")
    workflow_id = store.create("wf", execution_order=["A", "D"]).workflow_id
    executor = FakeExecutor(failing={"A"})
    seen: dict[str, str] = {}
    executor.on_execute = lambda name: seen.setdefault(name, store.load(workflow_id).status)
    workflow = _workflow(tmp_path, ("A", ()), ("D", ()), stop_on_error=False)

    scheduler = WorkflowScheduler(executor, state_store=store)
    asyncio.run(scheduler.run(workflow, workflow_id=workflow_id))

    assert seen == {"A": "running", "D": "running"}
    state = store.load(workflow_id)
    assert state.failed_stage == "A"
    assert state.completed_stages == ["D"]


def test_failed_stage_keeps_the_final_attempt_output(tmp_path: Path) -> None:
    store = WorkflowStateStore(tmp_path / "states")
    workflow_id = store.create("wf", execution_order=["A"]).workflow_id
    partial = StageResult(
        status="failed",
        output="no evidence here",
        file=str(tmp_path / "wf" / "outputs" / "A-output.txt"),
        started_at="2026-01-01T00:00:00+00:00",
        attempts=3,
    )

    class PartialExecutor(FakeExecutor):
        async def execute(self, stage, workflow, prior_results, context=None):
            self.calls.append(stage.name)
            report = {"stage": stage.name, "attempts": 3, "last_error": "bad"}
            raise StageFailedError(report, partial)

    result = asyncio.run(
        WorkflowScheduler(PartialExecutor(), state_store=store).run(
            _workflow(tmp_path, ("A", ())), workflow_id=workflow_id
        )
    )

    failed = result.stages["A"]
    assert failed.status == "failed"
    assert failed.output == "no evidence here"
    assert failed.file.endswith("A-output.txt")
    assert failed.attempts == 3
    assert failed.error["last_error"] == "bad"
    persisted = store.load(workflow_id).stage_outputs["A"]
    assert persisted["output"] == "no evidence here"
    assert persisted["started_at"] == "2026-01-01T00:00:00+00:00"
