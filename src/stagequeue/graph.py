from __future__ import annotations

from collections import deque
from collections.abc import Mapping, Sequence
from typing import Any

from stagequeue.errors import CircularDependencyError, UnknownDependencyError
from stagequeue.models import STAGE_KINDS, StageDefinition, WorkflowDefinition


def topological_sort(stages: Sequence[StageDefinition]) -> list[str]:
    """Order stages so each one follows all of its dependencies.

    Ready stages leave the queue in definition order, so the result is stable
    for a fixed input.
    """
    names = [stage.name for stage in stages]
    known = set(names)
    indegree: dict[str, int] = {name: 0 for name in names}
    dependents: dict[str, list[str]] = {name: [] for name in names}

    for stage in stages:
        for dependency in stage.dependencies:
            if dependency not in known:
                raise UnknownDependencyError(stage.name, dependency)
            indegree[stage.name] += 1
            dependents[dependency].append(stage.name)

    queue: deque[str] = deque(name for name in names if indegree[name] == 0)
    order: list[str] = []
    while queue:
        current = queue.popleft()
        order.append(current)
        for dependent in dependents[current]:
            indegree[dependent] -= 1
            if indegree[dependent] == 0:
                queue.append(dependent)

    if len(order) != len(names):
        unresolved = [name for name in names if indegree[name] > 0]
        raise CircularDependencyError(unresolved)
    return order


def validate_workflow(workflow: WorkflowDefinition) -> list[str]:
    errors: list[str] = []
    if not workflow.name or not isinstance(workflow.name, str):
        errors.append("workflow.name is required and must be a string")
    if not workflow.stages:
        errors.append("workflow.stages must have at least one stage")
    if workflow.retry_on_failure < 0:
        errors.append("workflow.retryOnFailure must be >= 0")
    if workflow.stage_timeout_minutes <= 0:
        errors.append("workflow.stageTimeoutMinutes must be > 0")
    if workflow.max_iterations < 1:
        errors.append("workflow.maxIterations must be >= 1")

    graph_ok = True
    seen: set[str] = set()
    names = {stage.name for stage in workflow.stages}
    for index, stage in enumerate(workflow.stages):
        if not stage.name:
            errors.append(f"Stage {index}: stage.name is required and must be a string")
            graph_ok = False
        elif stage.name in seen:
            errors.append(f"Duplicate stage name: {stage.name}")
            graph_ok = False
        seen.add(stage.name)
        if not stage.task:
            errors.append(f"Stage {index}: stage.task is required and must be a string")
        if stage.kind not in STAGE_KINDS:
            errors.append(f'Stage "{stage.name}": kind must be one of {", ".join(STAGE_KINDS)}')
        if stage.retries is not None and stage.retries < 0:
            errors.append(f'Stage "{stage.name}": retries must be >= 0')
        if stage.timeout_minutes is not None and stage.timeout_minutes <= 0:
            errors.append(f'Stage "{stage.name}": timeoutMinutes must be > 0')
        for dependency in stage.dependencies:
            if dependency not in names:
                errors.append(f'Stage "{stage.name}" depends on unknown stage: "{dependency}"')
                graph_ok = False

    if graph_ok:
        try:
            topological_sort(workflow.stages)
        except CircularDependencyError as exc:
            errors.append(str(exc))
    return errors


def validate_workflow_data(data: Any) -> list[str]:
    """Check the JSON workflow format before it is turned into a definition."""
    if not isinstance(data, Mapping):
        return ["workflow must be a JSON object"]

    errors: list[str] = []
    if not isinstance(data.get("name"), str) or not data.get("name"):
        errors.append("workflow.name is required and must be a string")

    stages = data.get("stages")
    if not isinstance(stages, list):
        errors.append("workflow.stages is required and must be an array")
    else:
        for index, stage in enumerate(stages):
            if not isinstance(stage, Mapping):
                errors.append(f"Stage {index}: must be an object")
                continue
            if not isinstance(stage.get("name"), str) or not stage.get("name"):
                errors.append(f"Stage {index}: stage.name is required and must be a string")
            if not isinstance(stage.get("task"), str) or not stage.get("task"):
                errors.append(f"Stage {index}: stage.task is required and must be a string")
            if not isinstance(stage.get("dependencies"), list):
                errors.append(
                    f"Stage {index}: stage.dependencies is required and must be an array"
                )
            context_from = stage.get("contextFrom")
            if context_from is not None and not isinstance(context_from, Mapping):
                errors.append(f"Stage {index}: stage.contextFrom must be an object")

    for key, expected, label in (
        ("stopOnError", bool, "a boolean"),
        ("iterationEnabled", bool, "a boolean"),
        ("retryOnFailure", int, "a number"),
        ("maxIterations", int, "a number"),
        ("stageTimeoutMinutes", (int, float), "a number"),
    ):
        value = data.get(key)
        if value is None:
            continue
        if isinstance(value, bool) and expected is not bool:
            errors.append(f"workflow.{key} must be {label}")
        elif not isinstance(value, expected):
            errors.append(f"workflow.{key} must be {label}")
    return errors
