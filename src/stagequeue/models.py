from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

from stagequeue.config import ExecutionConfig

StageKind = Literal["code", "documentation"]
StageStatus = Literal["pending", "complete", "failed", "skipped"]
IterationStatus = Literal["not-enabled", "no-gaps", "restart-detected", "reached-max", "aborted"]

ContextFrom = Callable[[dict[str, "StageResult"]], dict[str, Any]]

STAGE_KINDS = ("code", "documentation")


def utcnow_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds")


@dataclass(slots=True, frozen=True)
class StageDefinition:
    name: str
    task: str
    dependencies: tuple[str, ...] = ()
    agent_id: str | None = None
    timeout_minutes: float | None = None
    retries: int | None = None
    context_from: ContextFrom | None = None
    kind: StageKind = "code"

    @property
    def is_documentation(self) -> bool:
        return self.kind == "documentation"

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> StageDefinition:
        context_from = data.get("contextFrom")
        if isinstance(context_from, Mapping):
            context_from = context_from_mapping(context_from)
        return cls(
            name=data["name"],
            task=data["task"],
            dependencies=tuple(data.get("dependencies") or ()),
            agent_id=data.get("agentId"),
            timeout_minutes=data.get("timeoutMinutes"),
            retries=data.get("retries"),
            context_from=context_from if callable(context_from) else None,
            kind=data.get("kind", "code"),
        )


@dataclass(slots=True, frozen=True)
class WorkflowDefinition:
    name: str
    stages: tuple[StageDefinition, ...]
    stop_on_error: bool = True
    retry_on_failure: int = 0
    stage_timeout_minutes: float = 15
    working_directory: Path = field(default_factory=Path.cwd)
    iteration_enabled: bool = True
    max_iterations: int = 3
    agent_id: str | None = None

    def stage(self, name: str) -> StageDefinition:
        for stage in self.stages:
            if stage.name == name:
                return stage
        raise KeyError(name)

    @property
    def output_directory(self) -> Path:
        return self.working_directory / self.name / "outputs"

    @classmethod
    def from_dict(
        cls,
        data: Mapping[str, Any],
        *,
        defaults: ExecutionConfig | None = None,
        base_directory: Path | None = None,
    ) -> WorkflowDefinition:
        """Build a definition from the JSON workflow format.

        Values present in ``data`` win over ``defaults``.
        A relative ``workingDirectory`` resolves against ``base_directory``.
        """

        def _pick(key: str, attribute: str, fallback: Any) -> Any:
            if key in data:
                return data[key]
            if defaults is not None:
                return getattr(defaults, attribute)
            return fallback

        base = base_directory or Path.cwd()
        working_directory = Path(data.get("workingDirectory") or base)
        if not working_directory.is_absolute():
            working_directory = base / working_directory

        return cls(
            name=data["name"],
            stages=tuple(StageDefinition.from_dict(stage) for stage in data.get("stages", [])),
            stop_on_error=_pick("stopOnError", "stop_on_error", True),
            retry_on_failure=_pick("retryOnFailure", "retry_on_failure", 0),
            stage_timeout_minutes=_pick("stageTimeoutMinutes", "stage_timeout_minutes", 15),
            working_directory=working_directory,
            iteration_enabled=_pick("iterationEnabled", "iteration_enabled", True),
            max_iterations=_pick("maxIterations", "max_iterations", 3),
            agent_id=data.get("agentId"),
        )


def context_from_mapping(mapping: Mapping[str, str]) -> ContextFrom:
    """Turn ``{"key": "stage.field"}`` into a pure context function.

    Missing stages or fields resolve to an empty string.
    """

    pairs = dict(mapping)

    def _context_from(prior: dict[str, StageResult]) -> dict[str, Any]:
        context: dict[str, Any] = {}
        for key, reference in pairs.items():
            stage_name, _, attribute = reference.partition(".")
            result = prior.get(stage_name)
            if result is None:
                context[key] = ""
                continue
            value = result.to_dict().get(attribute or "output")
            context[key] = "" if value is None else value
        return context

    return _context_from


@dataclass(slots=True)
class StageResult:
    status: StageStatus = "pending"
    output: str = ""
    file: str | None = None
    started_at: str | None = None
    ended_at: str | None = None
    duration: float = 0.0
    attempts: int = 0
    session_id: str | None = None
    evidence: dict[str, Any] | None = None
    git_commit: dict[str, Any] | None = None
    session_transcript: list[dict[str, Any]] | None = None
    error: dict[str, Any] | None = None
    reason: str | None = None
    unmet_dependencies: list[str] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in {"complete", "failed", "skipped"}

    @classmethod
    def skipped(cls, unmet: list[str]) -> StageResult:
        now = utcnow_iso()
        return cls(
            status="skipped",
            started_at=now,
            ended_at=now,
            reason="Unmet dependencies",
            unmet_dependencies=list(unmet),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "output": self.output,
            "file": self.file,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "duration": self.duration,
            "attempts": self.attempts,
            "session_id": self.session_id,
            "evidence": self.evidence,
            "git_commit": self.git_commit,
            "session_transcript": self.session_transcript,
            "error": self.error,
            "reason": self.reason,
            "unmet_dependencies": list(self.unmet_dependencies),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> StageResult:
        return cls(
            status=data.get("status", "pending"),
            output=data.get("output") or "",
            file=data.get("file"),
            started_at=data.get("started_at"),
            ended_at=data.get("ended_at"),
            duration=float(data.get("duration") or 0.0),
            attempts=int(data.get("attempts") or 0),
            session_id=data.get("session_id"),
            evidence=data.get("evidence"),
            git_commit=data.get("git_commit"),
            session_transcript=data.get("session_transcript"),
            error=data.get("error"),
            reason=data.get("reason"),
            unmet_dependencies=list(data.get("unmet_dependencies") or []),
        )


@dataclass(slots=True, frozen=True)
class IterationRecord:
    iteration: int
    stage_outputs: dict[str, dict[str, Any]]
    gaps: tuple[dict[str, Any], ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "iteration": self.iteration,
            "stage_outputs": self.stage_outputs,
            "gaps": [dict(gap) for gap in self.gaps],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> IterationRecord:
        return cls(
            iteration=int(data.get("iteration") or 0),
            stage_outputs=dict(data.get("stage_outputs") or {}),
            gaps=tuple(dict(gap) for gap in data.get("gaps") or ()),
        )


@dataclass(slots=True)
class IterationOutcome:
    status: IterationStatus
    current: int = 0
    max: int = 0
    history: list[IterationRecord] = field(default_factory=list)
    gaps: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "current": self.current,
            "max": self.max,
            "history": [record.to_dict() for record in self.history],
            "gaps": list(self.gaps),
        }


@dataclass(slots=True)
class WorkflowResult:
    success: bool
    workflow: str
    stages: dict[str, StageResult]
    execution_order: list[str]
    total_duration: float
    failed_stage: str | None = None
    halted: str | None = None
    iteration: IterationOutcome | None = None
    workflow_id: str | None = None

    @property
    def last_stage(self) -> StageResult | None:
        if not self.execution_order:
            return None
        return self.stages.get(self.execution_order[-1])

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "workflow": self.workflow,
            "workflow_id": self.workflow_id,
            "stages": {name: result.to_dict() for name, result in self.stages.items()},
            "execution_order": list(self.execution_order),
            "total_duration": self.total_duration,
            "failed_stage": self.failed_stage,
            "halted": self.halted,
            "iteration": self.iteration.to_dict() if self.iteration else None,
        }
