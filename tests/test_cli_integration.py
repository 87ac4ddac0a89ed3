import json
import os
import subprocess
import time
from pathlib import Path

from click.testing import CliRunner

from stagequeue.cli import cli
from stagequeue.config import load_config, save_config
from stagequeue.spawners.base import AgentSpawner, SpawnResult

TEST_LOG = "tests/test_app.py .... PASS\npassed: 4 failed: 0\n"

WORKFLOW = {
    "name": "feature",
    "stages": [
        {"name": "plan", "task": "Plan the {topic} feature", "dependencies": []},
        {
            "name": "build",
            "task": "Build it following {plan}",
            "dependencies": ["plan"],
            "contextFrom": {"plan": "plan.file"},
        },
    ],
    "stopOnError": True,
    "retryOnFailure": 0,
    "iterationEnabled": False,
}


class FakeSpawner(AgentSpawner):
    name = "fake"

    def __init__(self, root: Path) -> None:
        self.root = root
        self.tasks: list[str] = []
        self.broken_stage: str | None = None

    async def spawn(self, task: str, agent_id: str | None, timeout_seconds: float) -> SpawnResult:
        _ = agent_id, timeout_seconds
        self.tasks.append(task)
        if self.broken_stage and f"stage: {self.broken_stage}" in task:
            return SpawnResult(output="Finished, it looks good.")
        log = self.root / "logs" / f"run-{len(self.tasks)}.log"
        log.parent.mkdir(parents=True, exist_ok=True)
        log.write_text(TEST_LOG, encoding="utf-8")
        past = time.time() - 5
        os.utime(log, (past, past))
        evidence = {
            "evidenceType": "test-output",
            "filePath": str(log.relative_to(self.root)),
            "testResults": "pass",
        }
        return SpawnResult(output="Done.\n" + json.dumps({"completionEvidence": evidence}))


def _init_git_repo(repo_path: Path) -> None:
    subprocess.run(["git", "init"], cwd=repo_path, check=True, text=True, capture_output=True)
    subprocess.run(
        ["git", "config", "user.email", "test@example.com"],
        cwd=repo_path,
        check=True,
        text=True,
        capture_output=True,
    )
    subprocess.run(
        ["git", "config", "user.name", "Test User"],
        cwd=repo_path,
        check=True,
        text=True,
        capture_output=True,
    )


def _relax_resource_limits(config_path: Path) -> None:
    config = load_config(config_path)
    config.resources.disk_warning_percent = 101.0
    config.resources.disk_critical_percent = 101.0
    save_config(config_path, config)


def _setup(tmp_path: Path, monkeypatch) -> tuple[Path, FakeSpawner, CliRunner]:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    (repo / "workflow.json").write_text(json.dumps(WORKFLOW), encoding="utf-8")

    spawner = FakeSpawner(repo)
    monkeypatch.chdir(repo)
    monkeypatch.setattr("stagequeue.cli._build_spawner", lambda config, root, hook: spawner)
    monkeypatch.setattr("stagequeue.cli._build_monitor", lambda config, root: None)

    runner = CliRunner()
    init_result = runner.invoke(cli, ["init"])
    assert init_result.exit_code == 0
    assert "Initialized stagequeue in" in init_result.output
    _relax_resource_limits(repo / "stagequeue.toml")
    return repo, spawner, runner


def _workflow_id(output: str) -> str:
    for line in output.splitlines():
        if line.startswith("Workflow ID:"):
            return line.split(":", 1)[1].strip()
    raise AssertionError("No workflow id in run output")


def test_cli_run_and_inspect_workflow(tmp_path: Path, monkeypatch) -> None:
    repo, spawner, runner = _setup(tmp_path, monkeypatch)

    validate_result = runner.invoke(cli, ["validate", "workflow.json"])
    assert validate_result.exit_code == 0
    assert "Workflow is valid" in validate_result.output
    assert "Execution order: plan -> build" in validate_result.output

    run_result = runner.invoke(cli, ["run", "workflow.json", "--context", "topic=billing"])
    assert run_result.exit_code == 0, run_result.output
    assert "Stages: 2/2 complete" in run_result.output
    workflow_id = _workflow_id(run_result.output)
    assert spawner.tasks[0].startswith("Plan the billing feature")
    assert str(repo.resolve() / "feature" / "outputs" / "plan-output.txt") in spawner.tasks[1]

    list_result = runner.invoke(cli, ["list"])
    assert list_result.exit_code == 0
    assert workflow_id in list_result.output
    assert "completed" in list_result.output

    status_result = runner.invoke(cli, ["status", "feature"])
    assert status_result.exit_code == 0
    status = json.loads(status_result.output)
    assert status["workflow_id"] == workflow_id
    assert status["status"] == "completed"
    assert status["progress"]["completed_stages"] == ["plan", "build"]

    cancel_result = runner.invoke(cli, ["cancel", workflow_id])
    assert cancel_result.exit_code != 0
    assert "cannot be cancelled" in cancel_result.output

    events = repo / ".stagequeue" / "states" / "events.jsonl"
    assert "stage_complete" in events.read_text(encoding="utf-8")

    cleanup_result = runner.invoke(cli, ["cleanup", "30"])
    assert cleanup_result.exit_code == 0
    assert "Deleted 0/1 workflow states" in cleanup_result.output


def test_cli_failed_run_can_be_paused_and_resumed(tmp_path: Path, monkeypatch) -> None:
    _, spawner, runner = _setup(tmp_path, monkeypatch)
    spawner.broken_stage = "build"

    run_result = runner.invoke(cli, ["run", "workflow.json", "--context", "topic=search"])
    assert run_result.exit_code != 0
    assert "Workflow failed at stage build" in run_result.output
    workflow_id = _workflow_id(run_result.output)

    pause_result = runner.invoke(cli, ["pause", workflow_id])
    assert pause_result.exit_code == 0
    assert f"Paused {workflow_id}" in pause_result.output

    spawner.broken_stage = None
    planned = len(spawner.tasks)
    resume_result = runner.invoke(cli, ["resume", workflow_id])
    assert resume_result.exit_code == 0, resume_result.output
    assert "Stages: 2/2 complete" in resume_result.output
    assert len(spawner.tasks) == planned + 1

    status_result = runner.invoke(cli, ["status", workflow_id])
    assert json.loads(status_result.output)["status"] == "completed"


def test_cli_rejects_bad_input(tmp_path: Path, monkeypatch) -> None:
    repo, _, runner = _setup(tmp_path, monkeypatch)
    (repo / "broken.json").write_text(json.dumps({"name": "x", "stages": "nope"}), "utf-8")

    invalid = runner.invoke(cli, ["validate", "broken.json"])
    assert invalid.exit_code != 0
    assert "Invalid workflow: workflow.stages is required and must be an array" in invalid.output

    missing = runner.invoke(cli, ["status", "nothing-here"])
    assert missing.exit_code != 0
    assert "No workflow state found for: nothing-here" in missing.output

    empty = runner.invoke(cli, ["list"])
    assert "No workflow states found." in empty.output


def test_cli_example_print_outputs_workflow_json(tmp_path: Path, monkeypatch) -> None:
    _, _, runner = _setup(tmp_path, monkeypatch)

    result = runner.invoke(cli, ["example", "--print"])

    assert result.exit_code == 0
    example = json.loads(result.output)
    assert example["name"] == "example-workflow"
    assert [stage["name"] for stage in example["stages"]] == ["phase1", "phase2", "phase3"]
