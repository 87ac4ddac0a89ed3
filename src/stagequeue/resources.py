from __future__ import annotations

import math
import os
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

import psutil

from stagequeue.config import ResourceConfig
from stagequeue.models import WorkflowDefinition

HealthStatus = Literal["ok", "warning", "critical"]

MAX_RECOMMENDED_TIMEOUT_MINUTES = 120
MAX_RECOMMENDED_RETRIES = 5


@dataclass(slots=True)
class ResourceValidation:
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"valid": self.valid, "errors": list(self.errors), "warnings": list(self.warnings)}


@dataclass(slots=True)
class DiskSpace:
    path: str
    total: int
    used: int
    free: int
    percent: float
    status: HealthStatus
    writable: bool
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "total": format_bytes(self.total),
            "used": format_bytes(self.used),
            "free": format_bytes(self.free),
            "percent": self.percent,
            "status": self.status,
            "writable": self.writable,
            "message": self.message,
        }


@dataclass(slots=True)
class OutputCleanupStats:
    files_scanned: int = 0
    files_deleted: int = 0
    bytes_freed: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)

    def merge(self, other: OutputCleanupStats) -> None:
        self.files_scanned += other.files_scanned
        self.files_deleted += other.files_deleted
        self.bytes_freed += other.bytes_freed
        self.errors.extend(other.errors)

    def to_dict(self) -> dict[str, Any]:
        return {
            "files_scanned": self.files_scanned,
            "files_deleted": self.files_deleted,
            "bytes_freed": self.bytes_freed,
            "errors": list(self.errors),
        }


@dataclass(slots=True)
class MemoryStatus:
    current_mb: float
    threshold_mb: float
    usage_percent: int
    status: HealthStatus
    recommendations: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "current_mb": self.current_mb,
            "threshold_mb": self.threshold_mb,
            "usage_percent": self.usage_percent,
            "status": self.status,
            "recommendations": list(self.recommendations),
        }


def validate_workflow_resources(
    workflow: WorkflowDefinition, limits: ResourceConfig | None = None
) -> ResourceValidation:
    limits = limits or ResourceConfig()
    errors: list[str] = []
    warnings: list[str] = []

    if len(workflow.stages) > limits.max_stages_per_workflow:
        warnings.append(
            f"Workflow has {len(workflow.stages)} stages "
            f"(max recommended: {limits.max_stages_per_workflow})"
        )
    if workflow.stage_timeout_minutes > MAX_RECOMMENDED_TIMEOUT_MINUTES:
        warnings.append(
            f"Stage timeout is {workflow.stage_timeout_minutes} minutes "
            f"(max recommended: {MAX_RECOMMENDED_TIMEOUT_MINUTES})"
        )
    if workflow.retry_on_failure > MAX_RECOMMENDED_RETRIES:
        warnings.append(
            f"Retry count is {workflow.retry_on_failure} "
            f"(max recommended: {MAX_RECOMMENDED_RETRIES})"
        )
    if not os.access(workflow.working_directory, os.W_OK):
        errors.append(f"Working directory is not writable: {workflow.working_directory}")

    return ResourceValidation(valid=not errors, errors=errors, warnings=warnings)


def check_disk_space(path: Path, limits: ResourceConfig | None = None) -> DiskSpace:
    limits = limits or ResourceConfig()
    usage = psutil.disk_usage(str(path))
    if usage.percent >= limits.disk_critical_percent:
        status: HealthStatus = "critical"
        message = f"Disk is {usage.percent}% full"
    elif usage.percent >= limits.disk_warning_percent:
        status = "warning"
        message = f"Disk is {usage.percent}% full"
    else:
        status = "ok"
        message = f"{format_bytes(usage.free)} free"
    writable = os.access(path, os.W_OK)
    if not writable:
        message = f"Path is not writable: {path}"
    return DiskSpace(
        path=str(path),
        total=usage.total,
        used=usage.used,
        free=usage.free,
        percent=usage.percent,
        status=status,
        writable=writable,
        message=message,
    )


def cleanup_old_outputs(
    directory: Path, retention_days: float = 30, *, now: float | None = None
) -> OutputCleanupStats:
    """Delete files under ``directory`` whose age in whole days exceeds ``retention_days``."""
    stats = OutputCleanupStats()
    if not directory.is_dir():
        return stats
    now = time.time() if now is None else now
    for path in sorted(directory.rglob("*")):
        if not path.is_file():
            continue
        stats.files_scanned += 1
        try:
            info = path.stat()
            age_days = math.floor((now - info.st_mtime) / 86400)
            if age_days <= retention_days:
                continue
            path.unlink()
        except OSError as exc:
            stats.errors.append({"file": str(path), "error": str(exc)})
            continue
        stats.files_deleted += 1
        stats.bytes_freed += info.st_size
    return stats


def cleanup_workflow_outputs(
    working_directory: Path, retention_days: float = 30, *, now: float | None = None
) -> OutputCleanupStats:
    """Apply ``cleanup_old_outputs`` to every ``<workflow>/outputs`` directory."""
    stats = OutputCleanupStats()
    if not working_directory.is_dir():
        return stats
    for outputs in sorted(working_directory.glob("*/outputs")):
        stats.merge(cleanup_old_outputs(outputs, retention_days, now=now))
    return stats


def memory_usage_mb() -> float:
    return round(psutil.Process().memory_info().rss / 1024 / 1024, 1)


def check_memory(
    limits: ResourceConfig | None = None, current_mb: float | None = None
) -> MemoryStatus:
    limits = limits or ResourceConfig()
    current = memory_usage_mb() if current_mb is None else current_mb
    percent = round(current / limits.max_memory_mb * 100)
    status: HealthStatus = "ok"
    recommendations: list[str] = []
    if percent > 90:
        status = "critical"
        recommendations = [
            "Memory usage is critical (>90%)",
            "Trigger cleanup of old outputs",
            "Consider splitting workflow into smaller parts",
        ]
    elif percent > 80:
        status = "warning"
        recommendations = ["Memory usage is high (>80%)"]
    return MemoryStatus(
        current_mb=current,
        threshold_mb=limits.max_memory_mb,
        usage_percent=percent,
        status=status,
        recommendations=recommendations,
    )


def resource_report(working_directory: Path | None = None) -> dict[str, Any]:
    process = psutil.Process()
    memory = process.memory_info()
    system = psutil.virtual_memory()
    uptime = max(0.0, time.time() - process.create_time())
    report: dict[str, Any] = {
        "timestamp": datetime.now(UTC).isoformat(timespec="milliseconds"),
        "memory": {
            "rss": format_bytes(memory.rss),
            "vms": format_bytes(memory.vms),
            "percent_of_system": round(process.memory_percent(), 1),
        },
        "system": {
            "total": format_bytes(system.total),
            "available": format_bytes(system.available),
            "percent_used": system.percent,
            "cpu_count": psutil.cpu_count(),
        },
        "duration": {
            "uptime_seconds": int(uptime),
            "uptime_formatted": format_uptime(uptime),
        },
    }
    if working_directory is not None:
        report["disk"] = check_disk_space(working_directory).to_dict()
    return report


def format_bytes(size: float) -> str:
    if size <= 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB", "TB"]
    index = 0
    while size >= 1024 and index < len(units) - 1:
        size /= 1024
        index += 1
    return f"{round(size, 2):g} {units[index]}"


def format_uptime(seconds: float) -> str:
    hours = int(seconds // 3600)
    minutes = int(seconds % 3600 // 60)
    secs = int(seconds % 60)
    if hours:
        return f"{hours}h {minutes}m {secs}s"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"
