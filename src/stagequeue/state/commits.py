from __future__ import annotations

import subprocess
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from stagequeue.errors import WorkflowStateError

DOC_EXTENSIONS = (".md", ".rst", ".adoc")

CommitEventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class CommitOutcome:
    committed: bool
    reason: str | None = None
    changes: list[str] = field(default_factory=list)
    commit_hash: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "committed": self.committed,
            "reason": self.reason,
            "changes": list(self.changes),
            "commit_hash": self.commit_hash,
        }


def _changed_path(status_line: str) -> str:
    path = status_line[3:].strip()
    if " -> " in path:
        path = path.split(" -> ", 1)[1]
    return path.strip('"')


class GitCommitter:
    """Stages stage side effects and commits documentation changes."""

    def __init__(
        self,
        working_directory: Path,
        *,
        author_name: str = "stagequeue [stage: {stage}]",
        author_email: str = "stagequeue@localhost",
        fix_log_reference: str = "fix-log.md",
        event_hook: CommitEventHook | None = None,
    ) -> None:
        self.working_directory = working_directory
        self.author_name = author_name
        self.author_email = author_email
        self.fix_log_reference = fix_log_reference
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _run_git(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess[str]:
        try:
            proc = subprocess.run(
                ["git", "--no-pager", *args],
                cwd=self.working_directory,
                text=True,
                capture_output=True,
            )
        except OSError as exc:
            raise WorkflowStateError(f"git unavailable: {exc}") from exc
        if check and proc.returncode != 0:
            raise WorkflowStateError(proc.stderr.strip() or proc.stdout.strip())
        return proc

    def commit_message(self, stage_name: str) -> str:
        return (
            f"[{stage_name}] Complete stage {stage_name}\n\n"
            "Stage completed by stagequeue\n\n"
            f"References: {self.fix_log_reference}"
        )

    def author(self, stage_name: str) -> str:
        return f"{self.author_name.format(stage=stage_name)} <{self.author_email}>"

    def commit_changes(self, stage_name: str) -> CommitOutcome:
        try:
            status = self._run_git(["status", "--porcelain", "--untracked-files=all"])
            changes = [line for line in status.stdout.splitlines() if line.strip()]
            if not changes:
                return CommitOutcome(committed=False, reason="No changes")

            paths = [_changed_path(line) for line in changes]
            self._run_git(["add", "-A"])
            if not any(path.lower().endswith(DOC_EXTENSIONS) for path in paths):
                self._emit(
                    {
                        "event": "git_changes_staged",
                        "status": "info",
                        "stage": stage_name,
                        "changes": paths,
                    }
                )
                return CommitOutcome(
                    committed=False, reason="Non-documentation changes staged", changes=paths
                )

            self._run_git(
                [
                    "commit",
                    "-m",
                    self.commit_message(stage_name),
                    f"--author={self.author(stage_name)}",
                ]
            )
            commit_hash = self._run_git(["rev-parse", "HEAD"]).stdout.strip()
        except WorkflowStateError as exc:
            self._emit(
                {
                    "event": "git_commit_failed",
                    "status": "warning",
                    "stage": stage_name,
                    "error": str(exc),
                }
            )
            return CommitOutcome(committed=False, reason=f"Git error: {exc}")

        self._emit(
            {
                "event": "git_committed",
                "status": "complete",
                "stage": stage_name,
                "commit_hash": commit_hash,
            }
        )
        return CommitOutcome(committed=True, changes=paths, commit_hash=commit_hash)
