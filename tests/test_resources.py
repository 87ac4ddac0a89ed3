import os
import time
from pathlib import Path

from stagequeue.config import ResourceConfig
from stagequeue.models import StageDefinition, WorkflowDefinition
from stagequeue.resources import (
    check_disk_space,
    check_memory,
    cleanup_old_outputs,
    cleanup_workflow_outputs,
    format_bytes,
    format_uptime,
    resource_report,
    validate_workflow_resources,
)


def _write(path: Path, content: str, age_days: float) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    stamp = time.time() - age_days * 86400
    os.utime(path, (stamp, stamp))
    return path


def test_workflow_limits_produce_warnings(tmp_path: Path) -> None:
    stages = tuple(StageDefinition(name=f"s{index}", task="t") for index in range(4))
    workflow = WorkflowDefinition(name="wf", stages=stages, working_directory=tmp_path)

    result = validate_workflow_resources(workflow, ResourceConfig(max_stages_per_workflow=3))

    assert result.valid is True
    assert result.warnings == ["Workflow has 4 stages (max recommended: 3)"]


def test_cleanup_deletes_files_past_retention(tmp_path: Path) -> None:
    old = _write(tmp_path / "outputs" / "old.txt", "x" * 10, age_days=31.5)
    recent = _write(tmp_path / "outputs" / "nested" / "recent.txt", "y", age_days=2)
    edge = _write(tmp_path / "outputs" / "edge.txt", "z", age_days=30.5)

    stats = cleanup_old_outputs(tmp_path / "outputs", retention_days=30)

    assert stats.files_scanned == 3
    assert stats.files_deleted == 1
    assert stats.bytes_freed == 10
    assert not old.exists()
    assert recent.exists()
    assert edge.exists()


def test_cleanup_of_missing_directory_is_a_noop(tmp_path: Path) -> None:
    stats = cleanup_old_outputs(tmp_path / "absent")

    assert stats.to_dict() == {
        "files_scanned": 0,
        "files_deleted": 0,
        "bytes_freed": 0,
        "errors": [],
    }


def test_workflow_output_cleanup_spans_every_workflow(tmp_path: Path) -> None:
    _write(tmp_path / "alpha" / "outputs" / "a.txt", "aa", age_days=40)
    _write(tmp_path / "beta" / "outputs" / "b.txt", "bbb", age_days=40)
    kept = _write(tmp_path / "beta" / "notes.txt", "keep", age_days=40)

    stats = cleanup_workflow_outputs(tmp_path, retention_days=7)

    assert stats.files_deleted == 2
    assert stats.bytes_freed == 5
    assert kept.exists()


def test_memory_thresholds() -> None:
    limits = ResourceConfig(max_memory_mb=100)

    assert check_memory(limits, current_mb=50).status == "ok"
    assert check_memory(limits, current_mb=85).status == "warning"
    critical = check_memory(limits, current_mb=95)
    assert critical.status == "critical"
    assert critical.usage_percent == 95
    assert "Trigger cleanup of old outputs" in critical.recommendations


def test_disk_space_of_a_writable_directory(tmp_path: Path) -> None:
    disk = check_disk_space(tmp_path)

    assert disk.writable is True
    assert disk.total >= disk.free
    assert disk.status in {"ok", "warning", "critical"}


def test_resource_report_shape(tmp_path: Path) -> None:
    report = resource_report(tmp_path)

    assert set(report) == {"timestamp", "memory", "system", "duration", "disk"}
    assert report["system"]["cpu_count"] >= 1
    assert report["disk"]["path"] == str(tmp_path)


def test_format_helpers() -> None:
    assert format_bytes(0) == "0 Bytes"
    assert format_bytes(512) == "512 Bytes"
    assert format_bytes(1536) == "1.5 KB"
    assert format_bytes(5 * 1024 * 1024) == "5 MB"
    assert format_uptime(3723) == "1h 2m 3s"
    assert format_uptime(123) == "2m 3s"
    assert format_uptime(3) == "3s"
