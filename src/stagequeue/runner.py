from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any

from stagequeue.config import ResourceConfig
from stagequeue.errors import (
    InvalidInputError,
    QueueError,
    ResourceExhaustedError,
    WorkflowStateError,
    WorkflowValidationError,
)
from stagequeue.graph import topological_sort, validate_workflow
from stagequeue.iteration import IterationController
from stagequeue.models import StageResult, WorkflowDefinition, WorkflowResult
from stagequeue.resources import (
    check_disk_space,
    check_memory,
    cleanup_workflow_outputs,
    validate_workflow_resources,
)
from stagequeue.scheduler import WorkflowScheduler
from stagequeue.state.store import WorkflowStateStore

RunnerEventHook = Callable[[dict[str, Any]], None]


class WorkflowRunner:
    """Top-level entry point: preflight, persisted state, iteration and final marking."""

    def __init__(
        self,
        scheduler: WorkflowScheduler,
        *,
        state_store: WorkflowStateStore | None = None,
        limits: ResourceConfig | None = None,
        check_resources: bool = True,
        cleanup_outputs: bool = True,
        event_hook: RunnerEventHook | None = None,
    ) -> None:
        self.scheduler = scheduler
        self.state_store = state_store if state_store is not None else scheduler.state_store
        self.limits = limits or ResourceConfig()
        self.check_resources = check_resources
        self.cleanup_outputs = cleanup_outputs
        self.event_hook = event_hook
        self.iteration = IterationController(state_store=self.state_store, event_hook=event_hook)

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def preflight(self, workflow: WorkflowDefinition) -> list[str]:
        errors = validate_workflow(workflow)
        if errors:
            raise WorkflowValidationError(errors)
        execution_order = topological_sort(workflow.stages)
        if self.check_resources:
            self._check_resources(workflow)
        if self.cleanup_outputs:
            self._cleanup_outputs(workflow, self.limits.output_retention_days, "pre_run")
        return execution_order

    def _check_resources(self, workflow: WorkflowDefinition) -> None:
        validation = validate_workflow_resources(workflow, self.limits)
        for warning in validation.warnings:
            self._emit(
                {
                    "event": "resource_warning",
                    "status": "warning",
                    "workflow": workflow.name,
                    "message": warning,
                }
            )
        if not validation.valid:
            raise InvalidInputError("; ".join(validation.errors))

        disk = check_disk_space(workflow.working_directory, self.limits)
        if disk.status == "critical":
            raise ResourceExhaustedError(f"Insufficient disk space: {disk.message}")
        if disk.status == "warning":
            self._emit(
                {
                    "event": "disk_space_warning",
                    "status": "warning",
                    "path": disk.path,
                    "percent": disk.percent,
                }
            )

    def _cleanup_outputs(
        self, workflow: WorkflowDefinition, retention_days: float, reason: str
    ) -> None:
        stats = cleanup_workflow_outputs(workflow.working_directory, retention_days)
        self._emit(
            {
                "event": "output_cleanup",
                "status": "warning" if stats.errors else "info",
                "workflow": workflow.name,
                "reason": reason,
                "retention_days": retention_days,
                **stats.to_dict(),
            }
        )

    def _after_run(self, workflow: WorkflowDefinition) -> None:
        memory = check_memory(self.limits)
        if memory.status != "ok":
            self._emit(
                {
                    "event": "memory_warning",
                    "status": "warning",
                    "current_mb": memory.current_mb,
                    "threshold_mb": memory.threshold_mb,
                    "recommendations": memory.recommendations,
                }
            )
        if memory.status == "critical" and self.cleanup_outputs:
            self._cleanup_outputs(
                workflow, self.limits.output_retention_days / 2, "memory_critical"
            )

    async def _drive(
        self,
        workflow: WorkflowDefinition,
        context: Mapping[str, Any] | None,
        *,
        workflow_id: str | None,
        start_iteration: int = 0,
        prior_results: Mapping[str, StageResult] | None = None,
    ) -> WorkflowResult:
        async def run_pass(pass_context: dict[str, Any], iteration: int) -> WorkflowResult:
            reused = prior_results if iteration == start_iteration else None
            return await self.scheduler.run(
                workflow, pass_context, workflow_id=workflow_id, prior_results=reused
            )

        try:
            result = await self.iteration.run(
                workflow,
                context,
                run_pass,
                workflow_id=workflow_id,
                start_iteration=start_iteration,
            )
        except QueueError as exc:
            if self.state_store is not None and workflow_id is not None:
                self.state_store.mark_failed(workflow_id, str(exc))
            raise

        if self.state_store is not None and workflow_id is not None:
            if result.success:
                self.state_store.mark_completed(workflow_id)
            elif result.halted is None:
                failed = result.stages.get(result.failed_stage or "")
                message = (failed.error or {}).get("last_error") if failed else None
                self.state_store.mark_failed(
                    workflow_id, str(message or f"Stage {result.failed_stage} failed")
                )
        if self.check_resources:
            self._after_run(workflow)
        return result

    async def run(
        self,
        workflow: WorkflowDefinition,
        context: Mapping[str, Any] | None = None,
        *,
        metadata: Mapping[str, Any] | None = None,
    ) -> WorkflowResult:
        execution_order = self.preflight(workflow)
        workflow_id: str | None = None
        if self.state_store is not None:
            state = self.state_store.create(
                workflow.name,
                execution_order=execution_order,
                context=dict(context or {}),
                max_iterations=workflow.max_iterations,
                metadata=dict(metadata or {}),
            )
            workflow_id = state.workflow_id
        return await self._drive(workflow, context, workflow_id=workflow_id)

    async def resume(self, workflow_id: str, workflow: WorkflowDefinition) -> WorkflowResult:
        if self.state_store is None:
            raise WorkflowStateError("Resuming requires a state store.")
        self.preflight(workflow)
        point = self.state_store.resume(workflow_id, workflow.name)
        self._emit(
            {
                "event": "workflow_resumed",
                "status": "active",
                "workflow": workflow.name,
                "workflow_id": workflow_id,
                "resume_from": point.resume_from_stage,
                "iteration": point.state.iteration,
            }
        )
        return await self._drive(
            workflow,
            point.context,
            workflow_id=workflow_id,
            start_iteration=point.state.iteration,
            prior_results=point.stage_outputs,
        )
