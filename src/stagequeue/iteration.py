from __future__ import annotations

import json
import re
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from stagequeue.models import (
    IterationOutcome,
    IterationRecord,
    WorkflowDefinition,
    WorkflowResult,
)
from stagequeue.sessions import format_transcript
from stagequeue.state.store import WorkflowStateStore

IterationEventHook = Callable[[dict[str, Any]], None]
RunPass = Callable[[dict[str, Any], int], Awaitable[WorkflowResult]]

GapSource = Literal["evidence", "transcript", "none"]

SETTLED_GAP_STATUSES = {"resolved", "deferred", "mitigated", "accepted-risk"}

# Severity stays case-sensitive so ordinary prose ("high level") does not count.
HIGH_GAP_PATTERN = re.compile(
    r"\b(?:HIGH|CRITICAL)\b[^\n]*?(?i:\bgaps?\b)|(?i:\bgaps?\b)[^\n]*?\b(?:HIGH|CRITICAL)\b"
)
TRANSCRIPT_MATCH_THRESHOLD = 2


@dataclass(slots=True)
class GapReport:
    critical: bool
    gaps: list[dict[str, Any]] = field(default_factory=list)
    source: GapSource = "none"


def _is_open_high_gap(gap: Any) -> bool:
    if not isinstance(gap, Mapping):
        return False
    if str(gap.get("priority", "")).upper() != "HIGH":
        return False
    return str(gap.get("status", "")).lower() not in SETTLED_GAP_STATUSES


def _load_evidence_document(evidence: Mapping[str, Any] | None, working_directory: Path) -> Any:
    if not evidence:
        return None
    file_path = evidence.get("filePath")
    if not file_path:
        return None
    path = Path(file_path)
    if not path.is_absolute():
        path = working_directory / path
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError):
        return None


def detect_critical_gaps(result: WorkflowResult, working_directory: Path) -> GapReport:
    """Look for unresolved HIGH priority gaps reported by the last stage.

    A JSON evidence file is authoritative when it can be read. Only when it is
    missing does the transcript (or raw output) get scanned for gap phrasing.
    """
    last = result.last_stage
    if last is None:
        return GapReport(critical=False)

    document = _load_evidence_document(last.evidence, working_directory)
    if isinstance(document, Mapping):
        raw_gaps = document.get("gaps")
        if not isinstance(raw_gaps, list):
            raw_gaps = []
        gaps = [dict(gap) for gap in raw_gaps if _is_open_high_gap(gap)]
        return GapReport(critical=bool(gaps), gaps=gaps, source="evidence")

    text = format_transcript(last.session_transcript) if last.session_transcript else last.output
    matches = [match.group(0).strip() for match in HIGH_GAP_PATTERN.finditer(text or "")]
    if not matches:
        return GapReport(critical=False)
    gaps = [{"priority": "HIGH", "status": "open", "description": line} for line in matches]
    return GapReport(
        critical=len(matches) > TRANSCRIPT_MATCH_THRESHOLD, gaps=gaps, source="transcript"
    )


class IterationController:
    """Re-runs a whole workflow while its last stage keeps reporting critical gaps."""

    def __init__(
        self,
        *,
        state_store: WorkflowStateStore | None = None,
        event_hook: IterationEventHook | None = None,
    ) -> None:
        self.state_store = state_store
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def evaluate(
        self,
        workflow: WorkflowDefinition,
        result: WorkflowResult,
        current: int,
        history: list[IterationRecord] | None = None,
    ) -> tuple[IterationOutcome, GapReport]:
        """Decide what follows a successful pass, without running anything."""
        history = list(history or [])
        if not workflow.iteration_enabled:
            return (
                IterationOutcome("not-enabled", current, workflow.max_iterations, history),
                GapReport(critical=False),
            )

        report = detect_critical_gaps(result, workflow.working_directory)
        if not report.critical:
            return (
                IterationOutcome("no-gaps", current, workflow.max_iterations, history),
                report,
            )
        if current + 1 >= workflow.max_iterations:
            return (
                IterationOutcome(
                    "reached-max", current, workflow.max_iterations, history, list(report.gaps)
                ),
                report,
            )
        return (
            IterationOutcome(
                "restart-detected", current, workflow.max_iterations, history, list(report.gaps)
            ),
            report,
        )

    async def run(
        self,
        workflow: WorkflowDefinition,
        context: Mapping[str, Any] | None,
        run_pass: RunPass,
        *,
        workflow_id: str | None = None,
        start_iteration: int = 0,
    ) -> WorkflowResult:
        base_context = {
            key: value
            for key, value in dict(context or {}).items()
            if key not in {"iteration", "iteration_history", "previous_gaps"}
        }
        history = [
            IterationRecord.from_dict(record)
            for record in (context or {}).get("iteration_history") or []
            if isinstance(record, Mapping)
        ]
        current = start_iteration
        pass_context = dict(context or {})

        while True:
            result = await run_pass(pass_context, current)

            if not result.success:
                if current > 0 and result.halted is None:
                    result.iteration = IterationOutcome(
                        "aborted", current, workflow.max_iterations, history
                    )
                    self._emit(
                        {
                            "event": "iteration_aborted",
                            "status": "error",
                            "workflow": workflow.name,
                            "iteration": current,
                            "failed_stage": result.failed_stage,
                        }
                    )
                return result

            outcome, report = self.evaluate(workflow, result, current, history)
            if outcome.status != "restart-detected":
                result.iteration = outcome
                self._emit(
                    {
                        "event": "iteration_finished",
                        "status": "warning" if outcome.status == "reached-max" else "complete",
                        "workflow": workflow.name,
                        "iteration": current,
                        "outcome": outcome.status,
                        "gap_count": len(outcome.gaps),
                    }
                )
                return result

            history.append(
                IterationRecord(
                    iteration=current,
                    stage_outputs={
                        name: stage.to_dict() for name, stage in result.stages.items()
                    },
                    gaps=tuple(report.gaps),
                )
            )
            current += 1
            pass_context = {
                **base_context,
                "iteration": current,
                "iteration_history": [record.to_dict() for record in history],
                "previous_gaps": list(report.gaps),
            }
            self._emit(
                {
                    "event": "iteration_restart",
                    "status": "warning",
                    "workflow": workflow.name,
                    "iteration": current,
                    "max_iterations": workflow.max_iterations,
                    "gap_count": len(report.gaps),
                    "gap_source": report.source,
                }
            )
            if self.state_store is not None and workflow_id is not None:
                self.state_store.start_iteration(workflow_id, current, pass_context)
