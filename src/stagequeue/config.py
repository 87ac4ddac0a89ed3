from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

SpawnerName = Literal["openclaw", "openai"]


@dataclass(slots=True)
class ExecutionConfig:
    stage_timeout_minutes: float = 15
    retry_on_failure: int = 0
    retry_delay_seconds: float = 5.0
    poll_interval_seconds: float = 5.0
    session_inactive_seconds: float = 300.0
    abandon_inactive_seconds: float = 600.0
    stop_on_error: bool = True
    iteration_enabled: bool = True
    max_iterations: int = 3


@dataclass(slots=True)
class EvidenceConfig:
    min_age_ms: float = 100.0
    fabrication_max_length: int = 200
    default_fix_log: str = "fix-log.md"


@dataclass(slots=True)
class RecoveryConfig:
    timeout_multiplier: float = 1.5
    backoff_base_seconds: float = 1.0
    backoff_cap_seconds: float = 30.0
    error_log_directory: str = "error-logs"


@dataclass(slots=True)
class SpawnerConfig:
    primary: SpawnerName = "openclaw"
    fallback: SpawnerName = "openai"
    binary: str = "openclaw"
    local: bool = True
    model: str = "gpt-5"


@dataclass(slots=True)
class GitConfig:
    enabled: bool = True
    author_name: str = "stagequeue [stage: {stage}]"
    author_email: str = "stagequeue@localhost"
    fix_log_reference: str = "fix-log.md"


@dataclass(slots=True)
class StateConfig:
    directory: str = ".stagequeue/states"
    retention_days: int = 7


@dataclass(slots=True)
class ResourceConfig:
    output_retention_days: int = 30
    auto_cleanup_outputs: bool = True
    max_stages_per_workflow: int = 50
    max_memory_mb: int = 1024
    disk_warning_percent: float = 80.0
    disk_critical_percent: float = 90.0


@dataclass(slots=True)
class QueueConfig:
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    evidence: EvidenceConfig = field(default_factory=EvidenceConfig)
    recovery: RecoveryConfig = field(default_factory=RecoveryConfig)
    spawner: SpawnerConfig = field(default_factory=SpawnerConfig)
    git: GitConfig = field(default_factory=GitConfig)
    state: StateConfig = field(default_factory=StateConfig)
    resources: ResourceConfig = field(default_factory=ResourceConfig)

    @classmethod
    def default(cls) -> QueueConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> QueueConfig:
        return cls(
            execution=ExecutionConfig(**data.get("execution", {})),
            evidence=EvidenceConfig(**data.get("evidence", {})),
            recovery=RecoveryConfig(**data.get("recovery", {})),
            spawner=SpawnerConfig(**data.get("spawner", {})),
            git=GitConfig(**data.get("git", {})),
            state=StateConfig(**data.get("state", {})),
            resources=ResourceConfig(**data.get("resources", {})),
        )

    def to_dict(self) -> dict:
        return {
            "execution": {
                "stage_timeout_minutes": self.execution.stage_timeout_minutes,
                "retry_on_failure": self.execution.retry_on_failure,
                "retry_delay_seconds": self.execution.retry_delay_seconds,
                "poll_interval_seconds": self.execution.poll_interval_seconds,
                "session_inactive_seconds": self.execution.session_inactive_seconds,
                "abandon_inactive_seconds": self.execution.abandon_inactive_seconds,
                "stop_on_error": self.execution.stop_on_error,
                "iteration_enabled": self.execution.iteration_enabled,
                "max_iterations": self.execution.max_iterations,
            },
            "evidence": {
                "min_age_ms": self.evidence.min_age_ms,
                "fabrication_max_length": self.evidence.fabrication_max_length,
                "default_fix_log": self.evidence.default_fix_log,
            },
            "recovery": {
                "timeout_multiplier": self.recovery.timeout_multiplier,
                "backoff_base_seconds": self.recovery.backoff_base_seconds,
                "backoff_cap_seconds": self.recovery.backoff_cap_seconds,
                "error_log_directory": self.recovery.error_log_directory,
            },
            "spawner": {
                "primary": self.spawner.primary,
                "fallback": self.spawner.fallback,
                "binary": self.spawner.binary,
                "local": self.spawner.local,
                "model": self.spawner.model,
            },
            "git": {
                "enabled": self.git.enabled,
                "author_name": self.git.author_name,
                "author_email": self.git.author_email,
                "fix_log_reference": self.git.fix_log_reference,
            },
            "state": {
                "directory": self.state.directory,
                "retention_days": self.state.retention_days,
            },
            "resources": {
                "output_retention_days": self.resources.output_retention_days,
                "auto_cleanup_outputs": self.resources.auto_cleanup_outputs,
                "max_stages_per_workflow": self.resources.max_stages_per_workflow,
                "max_memory_mb": self.resources.max_memory_mb,
                "disk_warning_percent": self.resources.disk_warning_percent,
                "disk_critical_percent": self.resources.disk_critical_percent,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        return rendered + "0" if rendered.endswith(".") else rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: QueueConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["execution", "evidence", "recovery", "spawner", "git", "state", "resources"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> QueueConfig:
    if not path.exists():
        return QueueConfig.default()
    return QueueConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: QueueConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
