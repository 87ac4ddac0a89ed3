from __future__ import annotations

import json
import os
import re
import secrets
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

from stagequeue.errors import WorkflowStateError
from stagequeue.models import StageResult

WorkflowStatus = Literal["running", "paused", "completed", "failed", "cancelled"]
TERMINAL_STATUSES = {"completed", "cancelled"}

StateEventHook = Callable[[dict[str, Any]], None]

_WORKFLOW_ID_PATTERN = re.compile(r"^[A-Za-z0-9._-]+$")


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds")


def generate_workflow_id() -> str:
    return f"wf-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


@dataclass(slots=True)
class WorkflowState:
    workflow_id: str
    workflow_name: str
    started_at: str = field(default_factory=_utcnow_iso)
    last_updated: str = field(default_factory=_utcnow_iso)
    status: WorkflowStatus = "running"
    iteration: int = 0
    max_iterations: int = 3
    completed_stages: list[str] = field(default_factory=list)
    failed_stage: str | None = None
    paused_stage: str | None = None
    stage_outputs: dict[str, dict[str, Any]] = field(default_factory=dict)
    context: dict[str, Any] = field(default_factory=dict)
    execution_order: list[str] = field(default_factory=list)
    error_message: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def progress(self) -> dict[str, Any]:
        total = len(self.execution_order)
        done = len(self.completed_stages)
        return {
            "completed_stages": done,
            "total_stages": total,
            "percent": round(done / total * 100) if total else 0,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "workflow_id": self.workflow_id,
            "workflow_name": self.workflow_name,
            "started_at": self.started_at,
            "last_updated": self.last_updated,
            "status": self.status,
            "iteration": self.iteration,
            "max_iterations": self.max_iterations,
            "completed_stages": list(self.completed_stages),
            "failed_stage": self.failed_stage,
            "paused_stage": self.paused_stage,
            "stage_outputs": dict(self.stage_outputs),
            "context": dict(self.context),
            "execution_order": list(self.execution_order),
            "error_message": self.error_message,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkflowState:
        return cls(
            workflow_id=data["workflow_id"],
            workflow_name=data.get("workflow_name", ""),
            started_at=data.get("started_at") or _utcnow_iso(),
            last_updated=data.get("last_updated") or _utcnow_iso(),
            status=data.get("status", "running"),
            iteration=int(data.get("iteration") or 0),
            max_iterations=int(data.get("max_iterations") or 3),
            completed_stages=list(data.get("completed_stages") or []),
            failed_stage=data.get("failed_stage"),
            paused_stage=data.get("paused_stage"),
            stage_outputs=dict(data.get("stage_outputs") or {}),
            context=dict(data.get("context") or {}),
            execution_order=list(data.get("execution_order") or []),
            error_message=data.get("error_message"),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass(slots=True)
class ResumePoint:
    state: WorkflowState
    context: dict[str, Any]
    resume_from_stage: str | None
    stage_outputs: dict[str, StageResult]


@dataclass(slots=True)
class CleanupStats:
    total_states: int = 0
    deleted_states: int = 0
    bytes_freed: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "total_states": self.total_states,
            "deleted_states": self.deleted_states,
            "bytes_freed": self.bytes_freed,
        }


class WorkflowStateStore:
    """File-backed workflow snapshots, one JSON envelope per workflow id."""

    SCHEMA_VERSION = 1

    def __init__(self, directory: Path, *, event_hook: StateEventHook | None = None) -> None:
        self.directory = directory
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _path(self, workflow_id: str) -> Path:
        if not _WORKFLOW_ID_PATTERN.match(workflow_id):
            raise WorkflowStateError(f"Invalid workflow id: {workflow_id!r}")
        return self.directory / f"{workflow_id}.json"

    @contextmanager
    def _state_lock(self, workflow_id: str, timeout_seconds: float = 3.0) -> Iterator[None]:
        self.directory.mkdir(parents=True, exist_ok=True)
        lock_file = self.directory / f".{workflow_id}.lock"
        start = time.monotonic()
        while True:
            try:
                fd = os.open(lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > timeout_seconds:
                    raise WorkflowStateError(
                        f"Timed out waiting for state lock of {workflow_id}."
                    ) from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_envelope(self, workflow_id: str) -> dict[str, Any] | None:
        path = self._path(workflow_id)
        if not path.exists():
            return None
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise WorkflowStateError(f"Corrupt workflow state {workflow_id}: {exc}") from exc
        if isinstance(raw, dict) and "schema_version" in raw and "data" in raw:
            return {
                "schema_version": int(raw.get("schema_version") or self.SCHEMA_VERSION),
                "revision": int(raw.get("revision") or 1),
                "updated_at": raw.get("updated_at") or _utcnow_iso(),
                "data": raw["data"],
            }
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 1,
            "updated_at": _utcnow_iso(),
            "data": raw,
        }

    def _write_envelope(self, workflow_id: str, envelope: dict[str, Any]) -> None:
        path = self._path(workflow_id)
        temp_path = path.with_name(f".{path.name}.tmp")
        temp_path.write_text(json.dumps(envelope, ensure_ascii=False, indent=2), encoding="utf-8")
        os.replace(temp_path, path)

    def revision(self, workflow_id: str) -> int | None:
        envelope = self._read_envelope(workflow_id)
        return None if envelope is None else int(envelope["revision"])

    def save(self, state: WorkflowState, expected_revision: int | None = None) -> int:
        with self._state_lock(state.workflow_id):
            current = self._read_envelope(state.workflow_id)
            current_revision = 0 if current is None else int(current["revision"])
            if expected_revision is not None and expected_revision != current_revision:
                raise WorkflowStateError(
                    f"Concurrent state update detected for workflow '{state.workflow_id}'."
                )
            state.last_updated = _utcnow_iso()
            revision = current_revision + 1
            self._write_envelope(
                state.workflow_id,
                {
                    "schema_version": self.SCHEMA_VERSION,
                    "revision": revision,
                    "updated_at": state.last_updated,
                    "data": state.to_dict(),
                },
            )
        return revision

    def load(self, workflow_id: str) -> WorkflowState | None:
        envelope = self._read_envelope(workflow_id)
        if envelope is None:
            return None
        return WorkflowState.from_dict(envelope["data"])

    def update(
        self, workflow_id: str, updater: Callable[[WorkflowState], bool]
    ) -> WorkflowState | None:
        """Apply ``updater`` with revision checks; it returns False to skip the write."""
        last_error: WorkflowStateError | None = None
        for _ in range(4):
            envelope = self._read_envelope(workflow_id)
            if envelope is None:
                self._emit(
                    {"event": "state_missing", "status": "warning", "workflow_id": workflow_id}
                )
                return None
            state = WorkflowState.from_dict(envelope["data"])
            if not updater(state):
                return state
            try:
                self.save(state, expected_revision=int(envelope["revision"]))
                return state
            except WorkflowStateError as exc:
                last_error = exc
                if "Concurrent state update detected" not in str(exc):
                    raise
                time.sleep(0.01)
        raise WorkflowStateError(str(last_error) if last_error else "State update failed.")

    def create(
        self,
        workflow_name: str,
        *,
        execution_order: list[str],
        context: dict[str, Any] | None = None,
        max_iterations: int = 3,
        metadata: dict[str, Any] | None = None,
    ) -> WorkflowState:
        state = WorkflowState(
            workflow_id=generate_workflow_id(),
            workflow_name=workflow_name,
            max_iterations=max_iterations,
            execution_order=list(execution_order),
            context=dict(context or {}),
            metadata=dict(metadata or {}),
        )
        self.save(state, expected_revision=0)
        self._emit(
            {
                "event": "state_created",
                "status": "active",
                "workflow_id": state.workflow_id,
                "workflow": workflow_name,
            }
        )
        return state

    def delete(self, workflow_id: str) -> bool:
        try:
            self._path(workflow_id).unlink()
        except FileNotFoundError:
            return False
        return True

    def _state_files(self) -> list[Path]:
        if not self.directory.is_dir():
            return []
        return sorted(
            path
            for path in self.directory.glob("*.json")
            if path.is_file() and not path.name.startswith(".")
        )

    def _all_states(self) -> list[WorkflowState]:
        states: list[WorkflowState] = []
        for path in self._state_files():
            try:
                state = self.load(path.stem)
            except (WorkflowStateError, KeyError, TypeError, ValueError) as exc:
                self._emit(
                    {
                        "event": "state_unreadable",
                        "status": "warning",
                        "file": str(path),
                        "error": str(exc),
                    }
                )
                continue
            if state is not None:
                states.append(state)
        return states

    def list_states(self) -> list[dict[str, Any]]:
        states = sorted(self._all_states(), key=lambda item: item.last_updated, reverse=True)
        return [
            {
                "workflow_id": state.workflow_id,
                "workflow_name": state.workflow_name,
                "status": state.status,
                "started_at": state.started_at,
                "last_updated": state.last_updated,
                "progress": state.progress(),
            }
            for state in states
        ]

    def status(self, workflow_id: str) -> dict[str, Any] | None:
        state = self.load(workflow_id)
        if state is None:
            return None
        progress = state.progress()
        progress["completed_stages"] = list(state.completed_stages)
        return {
            "workflow_id": state.workflow_id,
            "workflow_name": state.workflow_name,
            "status": state.status,
            "started_at": state.started_at,
            "last_updated": state.last_updated,
            "iteration": state.iteration,
            "progress": progress,
            "failed_stage": state.failed_stage,
            "paused_stage": state.paused_stage,
            "error_message": state.error_message,
        }

    def find_latest(self, workflow_name: str) -> WorkflowState | None:
        matches = [state for state in self._all_states() if state.workflow_name == workflow_name]
        if not matches:
            return None
        return max(matches, key=lambda item: item.last_updated)

    def resolve(self, name_or_id: str) -> WorkflowState | None:
        if _WORKFLOW_ID_PATTERN.match(name_or_id):
            state = self.load(name_or_id)
            if state is not None:
                return state
        return self.find_latest(name_or_id)

    def resume(self, workflow_id: str, workflow_name: str | None = None) -> ResumePoint:
        state = self.load(workflow_id)
        if state is None:
            raise WorkflowStateError(f"Workflow state not found: {workflow_id}")
        if state.status == "completed":
            raise WorkflowStateError(f"Workflow is already completed: {workflow_id}")
        if state.status == "cancelled":
            raise WorkflowStateError(f"Workflow was cancelled: {workflow_id}")
        if workflow_name is not None and workflow_name != state.workflow_name:
            self._emit(
                {
                    "event": "state_name_mismatch",
                    "status": "warning",
                    "workflow_id": workflow_id,
                    "state_name": state.workflow_name,
                    "provided_name": workflow_name,
                }
            )

        resume_from: str | None = None
        if state.paused_stage:
            resume_from = state.paused_stage
        elif state.failed_stage:
            resume_from = state.failed_stage
        elif state.completed_stages:
            last_completed = state.completed_stages[-1]
            if last_completed in state.execution_order:
                index = state.execution_order.index(last_completed)
                if index < len(state.execution_order) - 1:
                    resume_from = state.execution_order[index + 1]
        elif state.execution_order:
            resume_from = state.execution_order[0]

        def _reopen(current: WorkflowState) -> bool:
            current.status = "running"
            current.paused_stage = None
            current.failed_stage = None
            current.error_message = None
            return True

        reopened = self.update(workflow_id, _reopen) or state
        outputs = {
            name: StageResult.from_dict(payload)
            for name, payload in reopened.stage_outputs.items()
            if isinstance(payload, dict)
        }
        return ResumePoint(
            state=reopened,
            context=dict(reopened.context),
            resume_from_stage=resume_from,
            stage_outputs=outputs,
        )

    def cancel(self, workflow_id: str) -> bool:
        result = {"cancelled": False}

        def _cancel(state: WorkflowState) -> bool:
            if state.status == "completed":
                return False
            result["cancelled"] = True
            if state.status == "cancelled":
                return False
            state.status = "cancelled"
            return True

        self.update(workflow_id, _cancel)
        return result["cancelled"]

    def pause(self, workflow_id: str, stage_name: str | None = None) -> bool:
        def _pause(state: WorkflowState) -> bool:
            if state.is_terminal:
                return False
            state.status = "paused"
            state.paused_stage = stage_name
            return True

        state = self.update(workflow_id, _pause)
        return state is not None and state.status == "paused"

    def halt_reason(self, workflow_id: str) -> str | None:
        """Return ``cancelled`` or ``paused`` when the run should stop at the next boundary."""
        state = self.load(workflow_id)
        if state is None:
            return None
        if state.status in {"cancelled", "paused"}:
            return state.status
        return None

    def update_stage_completion(
        self, workflow_id: str, stage_name: str, result: StageResult
    ) -> bool:
        def _complete(state: WorkflowState) -> bool:
            if state.is_terminal:
                return False
            if stage_name not in state.completed_stages:
                state.completed_stages.append(stage_name)
            if state.failed_stage == stage_name:
                state.failed_stage = None
            if state.paused_stage == stage_name:
                state.paused_stage = None
            state.stage_outputs[stage_name] = result.to_dict()
            state.error_message = None
            return True

        state = self.update(workflow_id, _complete)
        return state is not None and stage_name in state.completed_stages

    def update_stage_failure(
        self,
        workflow_id: str,
        stage_name: str,
        message: str,
        result: StageResult | None = None,
    ) -> bool:
        def _fail(state: WorkflowState) -> bool:
            if state.is_terminal:
                return False
            state.failed_stage = stage_name
            state.error_message = message
            if result is not None:
                state.stage_outputs[stage_name] = result.to_dict()
            return True

        state = self.update(workflow_id, _fail)
        return state is not None and state.failed_stage == stage_name

    def update_stage_skipped(self, workflow_id: str, stage_name: str, result: StageResult) -> bool:
        def _skip(state: WorkflowState) -> bool:
            if state.is_terminal:
                return False
            state.stage_outputs[stage_name] = result.to_dict()
            return True

        return self.update(workflow_id, _skip) is not None

    def start_iteration(
        self, workflow_id: str, iteration: int, context: dict[str, Any]
    ) -> WorkflowState | None:
        """Reset per-pass progress for a restarted pass."""

        def _restart(state: WorkflowState) -> bool:
            if state.is_terminal:
                return False
            state.iteration = iteration
            state.status = "running"
            state.completed_stages = []
            state.stage_outputs = {}
            state.failed_stage = None
            state.error_message = None
            state.context = dict(context)
            return True

        return self.update(workflow_id, _restart)

    def mark_completed(self, workflow_id: str) -> bool:
        def _done(state: WorkflowState) -> bool:
            if state.is_terminal:
                return False
            state.status = "completed"
            state.failed_stage = None
            state.paused_stage = None
            state.error_message = None
            return True

        state = self.update(workflow_id, _done)
        return state is not None and state.status == "completed"

    def mark_failed(self, workflow_id: str, message: str) -> bool:
        def _failed(state: WorkflowState) -> bool:
            if state.is_terminal:
                return False
            state.status = "failed"
            state.error_message = message
            return True

        state = self.update(workflow_id, _failed)
        return state is not None and state.status == "failed"

    def cleanup(self, retention_days: float = 7) -> CleanupStats:
        stats = CleanupStats()
        cutoff = time.time() - retention_days * 86400
        for path in self._state_files():
            stats.total_states += 1
            try:
                info = path.stat()
                if info.st_mtime >= cutoff:
                    continue
                path.unlink()
            except FileNotFoundError:
                continue
            stats.deleted_states += 1
            stats.bytes_freed += info.st_size
        self._emit({"event": "state_cleanup", "status": "complete", **stats.to_dict()})
        return stats
