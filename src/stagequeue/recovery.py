from __future__ import annotations

import asyncio
import json
import re
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from stagequeue.errors import RETRYABILITY, QueueError

RecoveryEventHook = Callable[[dict[str, Any]], None]

_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("timeout", re.compile(r"timeout|exceeded|time limit", re.IGNORECASE)),
    ("resource_exhausted", re.compile(r"memory|disk|space|resource|exhausted|heap", re.IGNORECASE)),
    ("invalid_input", re.compile(r"invalid|validation|format|schema|parse|syntax", re.IGNORECASE)),
    (
        "network_error",
        re.compile(
            r"network|connection|fetch|request|ECONNREFUSED|ETIMEDOUT|ENOTFOUND", re.IGNORECASE
        ),
    ),
    ("agent_spawn_failed", re.compile(r"spawn|agent|session", re.IGNORECASE)),
    ("validation_failed", re.compile(r"evidence|validation|proof|verify", re.IGNORECASE)),
    ("abandoned_stage", re.compile(r"abandoned", re.IGNORECASE)),
)

SUGGESTIONS: dict[str, str] = {
    "timeout": "Consider increasing stageTimeoutMinutes in workflow configuration",
    "resource_exhausted": "Check system resources and consider reducing workflow complexity",
    "invalid_input": "Review workflow configuration and stage definitions for errors",
    "network_error": "Check network connectivity and retry",
    "agent_spawn_failed": "Check the agent gateway status and try the fallback spawner",
    "validation_failed": "Review agent output for proper evidence and verification",
    "abandoned_stage": "Agent stopped without producing output; manual review required",
    "circular_dependency": "Remove the dependency cycle from the workflow definition",
    "unknown_dependency": "Fix the stage dependency names in the workflow definition",
    "unknown": "Review error details and logs for more information",
}

STRATEGIES: dict[str, str] = {
    "timeout": "extend_timeout",
    "resource_exhausted": "cleanup_and_retry",
    "network_error": "exponential_backoff",
    "agent_spawn_failed": "fallback_spawn",
}


@dataclass(slots=True)
class ErrorClassification:
    type: str
    retryable: bool
    suggestion: str
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class RecoveryDecision:
    action: str
    reason: str
    suggestion: str

    @property
    def should_retry(self) -> bool:
        return self.action == "retry"


@dataclass(slots=True)
class RecoveryResult:
    success: bool
    strategy: str
    extend_timeout: float | None = None
    backoff_seconds: float | None = None
    cleanup: bool = False
    use_fallback: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class ErrorHandling:
    classification: ErrorClassification
    decision: RecoveryDecision
    recovery: RecoveryResult | None = None
    error_log_path: str | None = None

    @property
    def should_retry(self) -> bool:
        return self.decision.should_retry

    @property
    def halt_reason(self) -> str | None:
        return None if self.decision.should_retry else self.decision.reason


def classify_error(exc: BaseException) -> ErrorClassification:
    message = str(exc)
    error_type = "unknown"
    if isinstance(exc, QueueError) and exc.error_type != "unknown":
        error_type = exc.error_type
    elif isinstance(exc, TimeoutError):
        error_type = "timeout"
    elif isinstance(exc, MemoryError):
        error_type = "resource_exhausted"
    elif isinstance(exc, ConnectionError):
        error_type = "network_error"
    else:
        for candidate, pattern in _PATTERNS:
            if pattern.search(message):
                error_type = candidate
                break
    return ErrorClassification(
        type=error_type,
        retryable=RETRYABILITY.get(error_type, False),
        suggestion=SUGGESTIONS[error_type],
        message=message,
    )


def decide(classification: ErrorClassification, attempt: int, max_retries: int) -> RecoveryDecision:
    if not classification.retryable:
        return RecoveryDecision(
            action="halt",
            reason=f"{classification.type} is not retryable",
            suggestion=classification.suggestion,
        )
    if attempt >= max_retries + 1:
        return RecoveryDecision(
            action="halt",
            reason="Maximum retry attempts exhausted",
            suggestion=(
                "Review error logs and consider increasing retryOnFailure "
                "in workflow configuration"
            ),
        )
    return RecoveryDecision(
        action="retry",
        reason=f"{classification.type} is retryable, attempting recovery",
        suggestion=classification.suggestion,
    )


def format_error(exc: BaseException, classification: ErrorClassification) -> dict[str, Any]:
    return {
        "message": str(exc),
        "type": classification.type,
        "retryable": classification.retryable,
        "suggestion": classification.suggestion,
        "timestamp": datetime.now(UTC).isoformat(timespec="milliseconds"),
    }


def _log_slug(value: str) -> str:
    return re.sub(r"[^a-zA-Z0-9._-]+", "_", value).strip("_") or "unnamed"


class RecoveryAdvisor:
    """Turns a classified failure into a retry decision and a recovery action."""

    def __init__(
        self,
        *,
        timeout_multiplier: float = 1.5,
        backoff_base_seconds: float = 1.0,
        backoff_cap_seconds: float = 30.0,
        error_log_directory: Path | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        event_hook: RecoveryEventHook | None = None,
    ) -> None:
        self.timeout_multiplier = timeout_multiplier
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_cap_seconds = backoff_cap_seconds
        self.error_log_directory = error_log_directory
        self.sleep = sleep
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def backoff_seconds(self, attempt: int) -> float:
        delay = self.backoff_base_seconds * (2 ** max(attempt - 1, 0))
        return min(delay, self.backoff_cap_seconds)

    async def recover(
        self,
        classification: ErrorClassification,
        *,
        attempt: int,
        current_timeout: float,
    ) -> RecoveryResult | None:
        strategy = STRATEGIES.get(classification.type)
        if strategy is None:
            self._emit(
                {
                    "event": "recovery_skipped",
                    "status": "info",
                    "error_type": classification.type,
                    "reason": "no strategy",
                }
            )
            return None

        self._emit(
            {
                "event": "recovery_started",
                "status": "active",
                "strategy": strategy,
                "attempt": attempt,
            }
        )
        try:
            if strategy == "extend_timeout":
                result = RecoveryResult(
                    success=True,
                    strategy=strategy,
                    extend_timeout=current_timeout * self.timeout_multiplier,
                )
            elif strategy == "exponential_backoff":
                delay = self.backoff_seconds(attempt)
                self._emit(
                    {
                        "event": "recovery_backoff",
                        "status": "active",
                        "attempt": attempt,
                        "delay_seconds": delay,
                    }
                )
                await self.sleep(delay)
                result = RecoveryResult(success=True, strategy=strategy, backoff_seconds=delay)
            elif strategy == "cleanup_and_retry":
                result = RecoveryResult(success=True, strategy=strategy, cleanup=True)
            else:
                result = RecoveryResult(success=True, strategy=strategy, use_fallback=True)
        except Exception as exc:
            self._emit(
                {
                    "event": "recovery_failed",
                    "status": "error",
                    "strategy": strategy,
                    "error": str(exc),
                }
            )
            return RecoveryResult(success=False, strategy=strategy, error=str(exc))

        self._emit({"event": "recovery_complete", "status": "complete", **result.to_dict()})
        return result

    def write_error_log(self, payload: dict[str, Any]) -> str | None:
        if self.error_log_directory is None:
            return None
        timestamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%S%fZ")
        filename = (
            f"error-{_log_slug(str(payload.get('workflow')))}-"
            f"{_log_slug(str(payload.get('stage')))}-{timestamp}.json"
        )
        try:
            self.error_log_directory.mkdir(parents=True, exist_ok=True)
            path = self.error_log_directory / filename
            path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
        except OSError as exc:
            self._emit({"event": "error_log_failed", "status": "warning", "error": str(exc)})
            return None
        return str(path)

    async def handle(
        self,
        exc: BaseException,
        *,
        workflow: str,
        stage: str,
        attempt: int,
        max_retries: int,
        current_timeout: float,
        session_id: str | None = None,
        stack: str | None = None,
    ) -> ErrorHandling:
        classification = classify_error(exc)
        decision = decide(classification, attempt, max_retries)
        self._emit(
            {
                "event": "error_classified",
                "status": "error",
                "workflow": workflow,
                "stage": stage,
                "attempt": attempt,
                "error_type": classification.type,
                "retryable": classification.retryable,
                "action": decision.action,
                "reason": decision.reason,
            }
        )

        recovery: RecoveryResult | None = None
        if decision.should_retry:
            recovery = await self.recover(
                classification, attempt=attempt, current_timeout=current_timeout
            )

        log_path = self.write_error_log(
            {
                "timestamp": datetime.now(UTC).isoformat(timespec="milliseconds"),
                "workflow": workflow,
                "stage": stage,
                "attempt": attempt,
                "classification": classification.to_dict(),
                "recovery_attempted": recovery is not None,
                "recovery_result": recovery.to_dict() if recovery else None,
                "final_decision": {"action": decision.action, "reason": decision.reason},
                "stack_trace": stack,
                "additional_context": {
                    "current_timeout": current_timeout,
                    "session_id": session_id,
                },
            }
        )
        return ErrorHandling(
            classification=classification,
            decision=decision,
            recovery=recovery,
            error_log_path=log_path,
        )
