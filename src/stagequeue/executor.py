from __future__ import annotations

import asyncio
import inspect
import re
import time
import traceback
from collections.abc import Awaitable, Callable, Mapping
from pathlib import Path
from typing import Any, Literal

from stagequeue.config import EvidenceConfig
from stagequeue.context import build_task
from stagequeue.errors import (
    AbandonedStageError,
    ContextBuildError,
    EvidenceValidationError,
    InvalidInputError,
    StageFailedError,
)
from stagequeue.evidence import EvidenceValidator
from stagequeue.models import StageDefinition, StageResult, WorkflowDefinition, utcnow_iso
from stagequeue.recovery import ErrorHandling, RecoveryAdvisor, classify_error
from stagequeue.sessions import SessionWaiter, format_transcript, snapshot_outputs
from stagequeue.spawners.base import AgentSpawner
from stagequeue.state.commits import GitCommitter

StageState = Literal[
    "pending",
    "spawning",
    "awaiting_completion",
    "validating",
    "committing",
    "complete",
    "failed",
]

ExecutorEventHook = Callable[[dict[str, Any]], None]


def sanitize_stage_name(stage_name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9\-_]", "_", stage_name)


def save_stage_output(workflow: WorkflowDefinition, stage_name: str, output: str) -> Path:
    output_directory = workflow.output_directory
    output_directory.mkdir(parents=True, exist_ok=True)
    path = output_directory / f"{sanitize_stage_name(stage_name)}-output.txt"
    path.write_text(output, encoding="utf-8")
    return path


class StageExecutor:
    """Drives one stage through spawn, wait, validate and commit with bounded retries."""

    def __init__(
        self,
        spawner: AgentSpawner,
        *,
        session_waiter: SessionWaiter | None = None,
        committer: GitCommitter | None = None,
        advisor: RecoveryAdvisor | None = None,
        evidence: EvidenceConfig | None = None,
        retry_delay_seconds: float = 5.0,
        cleanup: Callable[[], Any] | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        event_hook: ExecutorEventHook | None = None,
    ) -> None:
        self.spawner = spawner
        self.session_waiter = session_waiter
        self.committer = committer
        self.advisor = advisor or RecoveryAdvisor(event_hook=event_hook)
        self.evidence = evidence or EvidenceConfig()
        self.retry_delay_seconds = retry_delay_seconds
        self.cleanup = cleanup
        self.clock = clock
        self.sleep = sleep
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _transition(self, stage_name: str, state: StageState, **payload: Any) -> None:
        status = {"complete": "complete", "failed": "error"}.get(state, "active")
        self._emit(
            {
                "event": "stage_state",
                "status": status,
                "stage": stage_name,
                "state": state,
                **payload,
            }
        )

    def _validator(self, workflow: WorkflowDefinition) -> EvidenceValidator:
        return EvidenceValidator(
            workflow.working_directory,
            min_age_ms=self.evidence.min_age_ms,
            fabrication_max_length=self.evidence.fabrication_max_length,
            default_fix_log=self.evidence.default_fix_log,
            clock=self.clock,
        )

    async def _run_cleanup(self, stage_name: str) -> None:
        if self.cleanup is None:
            return
        try:
            outcome = self.cleanup()
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as exc:
            self._emit(
                {
                    "event": "resource_cleanup_failed",
                    "status": "warning",
                    "stage": stage_name,
                    "error": str(exc),
                }
            )

    async def _attempt(
        self,
        stage: StageDefinition,
        workflow: WorkflowDefinition,
        task: str,
        agent_id: str | None,
        timeout_seconds: float,
        result: StageResult,
    ) -> None:
        result.output = ""
        result.file = None
        result.evidence = None
        result.git_commit = None
        baseline = snapshot_outputs(workflow.output_directory)
        self._transition(stage.name, "spawning", attempt=result.attempts)
        spawned = await self.spawner.spawn(task, agent_id, timeout_seconds)
        output = spawned.output if spawned.output is not None else "(No output)"
        result.session_id = spawned.session_id
        result.session_transcript = None

        if spawned.session_id:
            if self.session_waiter is None:
                raise InvalidInputError(
                    f"Spawner returned session {spawned.session_id} "
                    "but no session monitor is configured"
                )
            self._transition(stage.name, "awaiting_completion", session_id=spawned.session_id)
            completion = await self.session_waiter.wait_for_completion(
                spawned.session_id, timeout_seconds
            )
            if completion.transcript:
                result.session_transcript = list(completion.transcript)
                output = format_transcript(completion.transcript)
            if await self.session_waiter.detect_abandoned(
                spawned.session_id, workflow.output_directory, baseline
            ):
                raise AbandonedStageError(stage.name, spawned.session_id)

        result.output = output
        result.file = str(save_stage_output(workflow, stage.name, output))

        self._transition(stage.name, "validating")
        validation = self._validator(workflow).validate(output, stage.name, stage.kind)
        if not validation.valid:
            self._emit(
                {
                    "event": "stage_evidence_failed",
                    "status": "error",
                    "workflow": workflow.name,
                    "stage": stage.name,
                    "errors": validation.errors,
                }
            )
            raise EvidenceValidationError(stage.name, validation.errors)
        result.evidence = validation.evidence

        self._transition(stage.name, "committing")
        if self.committer is not None:
            result.git_commit = self.committer.commit_changes(stage.name).to_dict()

    async def execute(
        self,
        stage: StageDefinition,
        workflow: WorkflowDefinition,
        prior_results: Mapping[str, StageResult],
        context: Mapping[str, Any] | None = None,
    ) -> StageResult:
        max_retries = stage.retries if stage.retries is not None else workflow.retry_on_failure
        timeout_seconds = float(stage.timeout_minutes or workflow.stage_timeout_minutes) * 60
        agent_id = stage.agent_id or workflow.agent_id
        stage_started = time.monotonic()
        result = StageResult(status="pending", started_at=utcnow_iso())
        self._transition(stage.name, "pending")

        try:
            task = build_task(stage, prior_results, context)
        except ContextBuildError as exc:
            classification = classify_error(exc)
            self._transition(stage.name, "failed", error=str(exc))
            raise StageFailedError(
                {
                    "stage": stage.name,
                    "attempts": 0,
                    "last_error": str(exc),
                    "error_type": classification.type,
                    "stack": traceback.format_exc(),
                    "session_id": None,
                    "session_transcript": None,
                    "suggestion": classification.suggestion,
                    "error_log_path": None,
                    "halt_reason": "context could not be built",
                }
            ) from exc

        last_error: Exception | None = None
        last_stack: str | None = None
        handling: ErrorHandling | None = None
        for attempt in range(1, max_retries + 2):
            result.attempts = attempt
            self._emit(
                {
                    "event": "stage_started",
                    "status": "active",
                    "workflow": workflow.name,
                    "stage": stage.name,
                    "attempt": attempt,
                    "max_attempts": max_retries + 1,
                }
            )
            try:
                await self._attempt(stage, workflow, task, agent_id, timeout_seconds, result)
            except Exception as exc:
                last_error = exc
                last_stack = traceback.format_exc()
                self._transition(stage.name, "failed", attempt=attempt, error=str(exc))
                self._emit(
                    {
                        "event": "stage_failed",
                        "status": "error",
                        "workflow": workflow.name,
                        "stage": stage.name,
                        "attempt": attempt,
                        "error": str(exc),
                        "session_id": result.session_id,
                    }
                )
                handling = await self.advisor.handle(
                    exc,
                    workflow=workflow.name,
                    stage=stage.name,
                    attempt=attempt,
                    max_retries=max_retries,
                    current_timeout=timeout_seconds,
                    session_id=result.session_id,
                    stack=last_stack,
                )
                if not handling.should_retry:
                    break

                delay = self.retry_delay_seconds * attempt
                recovery = handling.recovery
                if recovery is not None and recovery.success:
                    if recovery.extend_timeout is not None:
                        timeout_seconds = recovery.extend_timeout
                    if recovery.cleanup:
                        await self._run_cleanup(stage.name)
                    if recovery.use_fallback:
                        self.spawner.prefer_fallback()
                    if recovery.backoff_seconds is not None:
                        delay = 0.0
                self._emit(
                    {
                        "event": "stage_retry",
                        "status": "warning",
                        "stage": stage.name,
                        "next_attempt": attempt + 1,
                        "delay_seconds": delay,
                        "timeout_seconds": timeout_seconds,
                    }
                )
                if delay > 0:
                    await self.sleep(delay)
                continue

            result.status = "complete"
            result.ended_at = utcnow_iso()
            result.duration = time.monotonic() - stage_started
            self._transition(stage.name, "complete", attempts=attempt)
            self._emit(
                {
                    "event": "stage_complete",
                    "status": "complete",
                    "workflow": workflow.name,
                    "stage": stage.name,
                    "output_file": result.file,
                    "duration": result.duration,
                    "attempts": attempt,
                    "session_id": result.session_id,
                    "git_committed": bool(result.git_commit and result.git_commit["committed"]),
                }
            )
            return result

        assert handling is not None and last_error is not None
        result.status = "failed"
        result.ended_at = utcnow_iso()
        result.duration = time.monotonic() - stage_started
        result.error = {
            "stage": stage.name,
            "attempts": result.attempts,
            "last_error": str(last_error),
            "error_type": handling.classification.type,
            "stack": last_stack,
            "session_id": result.session_id,
            "session_transcript": result.session_transcript,
            "suggestion": handling.decision.suggestion,
            "error_log_path": handling.error_log_path,
            "halt_reason": handling.halt_reason,
        }
        raise StageFailedError(result.error, result) from last_error
