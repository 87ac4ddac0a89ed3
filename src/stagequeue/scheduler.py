from __future__ import annotations

import time
from collections.abc import Callable, Mapping
from typing import Any

from stagequeue.errors import StageFailedError, WorkflowValidationError
from stagequeue.executor import StageExecutor
from stagequeue.graph import topological_sort, validate_workflow
from stagequeue.models import StageResult, WorkflowDefinition, WorkflowResult, utcnow_iso
from stagequeue.state.store import WorkflowStateStore

SchedulerEventHook = Callable[[dict[str, Any]], None]


class WorkflowScheduler:
    """Runs the stages of a workflow one at a time in dependency order."""

    def __init__(
        self,
        executor: StageExecutor,
        *,
        state_store: WorkflowStateStore | None = None,
        event_hook: SchedulerEventHook | None = None,
    ) -> None:
        self.executor = executor
        self.state_store = state_store
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _halt_reason(self, workflow_id: str | None) -> str | None:
        if workflow_id is None or self.state_store is None:
            return None
        return self.state_store.halt_reason(workflow_id)

    async def run(
        self,
        workflow: WorkflowDefinition,
        context: Mapping[str, Any] | None = None,
        *,
        workflow_id: str | None = None,
        prior_results: Mapping[str, StageResult] | None = None,
    ) -> WorkflowResult:
        errors = validate_workflow(workflow)
        if errors:
            raise WorkflowValidationError(errors)
        execution_order = topological_sort(workflow.stages)

        started = time.monotonic()
        results: dict[str, StageResult] = {}
        failed_stage: str | None = None
        halted: str | None = None
        store = self.state_store if workflow_id is not None else None

        self._emit(
            {
                "event": "workflow_started",
                "status": "active",
                "workflow": workflow.name,
                "workflow_id": workflow_id,
                "stage_count": len(workflow.stages),
                "execution_order": execution_order,
            }
        )

        for stage_name in execution_order:
            stage = workflow.stage(stage_name)

            halted = self._halt_reason(workflow_id)
            if halted is not None:
                self._emit(
                    {
                        "event": "workflow_halted",
                        "status": "warning",
                        "workflow": workflow.name,
                        "reason": halted,
                        "next_stage": stage_name,
                    }
                )
                break

            reused = (prior_results or {}).get(stage_name)
            if reused is not None and reused.status == "complete":
                results[stage_name] = reused
                self._emit({"event": "stage_reused", "status": "info", "stage": stage_name})
                continue

            unmet = [
                dependency
                for dependency in stage.dependencies
                if dependency not in results or results[dependency].status != "complete"
            ]
            if unmet:
                results[stage_name] = StageResult.skipped(unmet)
                self._emit(
                    {
                        "event": "stage_skipped",
                        "status": "warning",
                        "stage": stage_name,
                        "unmet_dependencies": unmet,
                    }
                )
                if store is not None:
                    store.update_stage_skipped(workflow_id, stage_name, results[stage_name])
                continue

            stage_started_at = utcnow_iso()
            stage_started = time.monotonic()
            try:
                result = await self.executor.execute(stage, workflow, results, context)
            except StageFailedError as exc:
                report = exc.report
                if exc.result is not None:
                    result = exc.result
                    result.status = "failed"
                    result.error = report
                else:
                    result = StageResult(
                        status="failed",
                        started_at=stage_started_at,
                        ended_at=utcnow_iso(),
                        duration=time.monotonic() - stage_started,
                        attempts=int(report.get("attempts") or 0),
                        session_id=report.get("session_id"),
                        session_transcript=report.get("session_transcript"),
                        error=report,
                    )
                results[stage_name] = result
                failed_stage = failed_stage or stage_name
                if store is not None:
                    store.update_stage_failure(workflow_id, stage_name, str(exc), result)
                if workflow.stop_on_error:
                    self._emit(
                        {
                            "event": "workflow_stopped",
                            "status": "error",
                            "workflow": workflow.name,
                            "failed_stage": stage_name,
                        }
                    )
                    break
                self._emit(
                    {
                        "event": "workflow_continuing",
                        "status": "warning",
                        "workflow": workflow.name,
                        "failed_stage": stage_name,
                    }
                )
                continue

            results[stage_name] = result
            if store is not None:
                store.update_stage_completion(workflow_id, stage_name, result)

        total_duration = time.monotonic() - started
        success = halted is None and not any(
            result.status == "failed" for result in results.values()
        )
        self._emit(
            {
                "event": "workflow_complete" if success else "workflow_failed",
                "status": "complete" if success else "error",
                "workflow": workflow.name,
                "workflow_id": workflow_id,
                "success": success,
                "failed_stage": failed_stage,
                "total_duration": total_duration,
                "stages_completed": sum(1 for r in results.values() if r.status == "complete"),
                "stages_failed": sum(1 for r in results.values() if r.status == "failed"),
            }
        )
        return WorkflowResult(
            success=success,
            workflow=workflow.name,
            stages=results,
            execution_order=execution_order,
            total_duration=total_duration,
            failed_stage=failed_stage,
            halted=halted,
            workflow_id=workflow_id,
        )
