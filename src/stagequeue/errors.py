from __future__ import annotations

from typing import TYPE_CHECKING, Any, Literal

if TYPE_CHECKING:
    from stagequeue.models import StageResult

ErrorType = Literal[
    "timeout",
    "resource_exhausted",
    "invalid_input",
    "network_error",
    "agent_spawn_failed",
    "validation_failed",
    "abandoned_stage",
    "circular_dependency",
    "unknown_dependency",
    "unknown",
]

RETRYABILITY: dict[str, bool] = {
    "timeout": True,
    "resource_exhausted": True,
    "network_error": True,
    "agent_spawn_failed": True,
    "invalid_input": False,
    "validation_failed": False,
    "abandoned_stage": False,
    "circular_dependency": False,
    "unknown_dependency": False,
    "unknown": False,
}


class QueueError(RuntimeError):
    """Base class for failures raised by the queue core."""

    error_type: str = "unknown"

    @property
    def retriable(self) -> bool:
        return RETRYABILITY.get(self.error_type, False)


class StageTimeoutError(QueueError):
    error_type = "timeout"


class SessionTimeoutError(StageTimeoutError):
    def __init__(self, session_id: str, timeout_seconds: float) -> None:
        super().__init__(
            f"Session {session_id} timeout exceeded: "
            f"did not complete within {timeout_seconds:g} seconds"
        )
        self.session_id = session_id
        self.timeout_seconds = timeout_seconds


class ResourceExhaustedError(QueueError):
    error_type = "resource_exhausted"


class InvalidInputError(QueueError):
    error_type = "invalid_input"


class NetworkError(QueueError):
    error_type = "network_error"


class AgentSpawnError(QueueError):
    error_type = "agent_spawn_failed"

    def __init__(
        self, message: str, *, spawner: str | None = None, exit_code: int | None = None
    ) -> None:
        super().__init__(message)
        self.spawner = spawner
        self.exit_code = exit_code


class EvidenceValidationError(QueueError):
    error_type = "validation_failed"

    def __init__(self, stage_name: str, errors: list[str]) -> None:
        super().__init__(f'Stage "{stage_name}" failed evidence validation: {"; ".join(errors)}')
        self.stage_name = stage_name
        self.errors = list(errors)


class AbandonedStageError(QueueError):
    error_type = "abandoned_stage"

    def __init__(self, stage_name: str, session_id: str) -> None:
        super().__init__(
            f'Stage "{stage_name}" was abandoned: session {session_id} inactive '
            "but no output generated"
        )
        self.stage_name = stage_name
        self.session_id = session_id


class ContextBuildError(InvalidInputError):
    def __init__(self, stage_name: str, cause: BaseException) -> None:
        super().__init__(f'contextFrom callback failed for stage "{stage_name}": {cause}')
        self.stage_name = stage_name


class CircularDependencyError(QueueError):
    error_type = "circular_dependency"

    def __init__(self, stages: list[str]) -> None:
        super().__init__(f"Circular dependency detected among stages: {', '.join(stages)}")
        self.stages = list(stages)


class UnknownDependencyError(QueueError):
    error_type = "unknown_dependency"

    def __init__(self, stage: str, dependency: str) -> None:
        super().__init__(f'Stage "{stage}" depends on unknown stage: "{dependency}"')
        self.stages = [stage, dependency]
        self.stage = stage
        self.dependency = dependency


class WorkflowValidationError(InvalidInputError):
    def __init__(self, errors: list[str]) -> None:
        super().__init__(f"Invalid workflow: {'; '.join(errors)}")
        self.errors = list(errors)


class StageFailedError(QueueError):
    """Raised by the executor once a stage has no attempts left."""

    def __init__(self, report: dict[str, Any], result: StageResult | None = None) -> None:
        super().__init__(
            f"Stage \"{report.get('stage')}\" failed after {report.get('attempts')} attempt(s): "
            f"{report.get('last_error')}"
        )
        self.report = report
        self.result = result
        self.error_type = str(report.get("error_type") or "unknown")


class WorkflowStateError(QueueError):
    """Raised when persisted workflow state cannot be read or written."""
