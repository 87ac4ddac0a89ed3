from stagequeue.state.commits import CommitOutcome, GitCommitter
from stagequeue.state.store import (
    CleanupStats,
    ResumePoint,
    WorkflowState,
    WorkflowStateStore,
    generate_workflow_id,
)

__all__ = [
    "CleanupStats",
    "CommitOutcome",
    "GitCommitter",
    "ResumePoint",
    "WorkflowState",
    "WorkflowStateStore",
    "generate_workflow_id",
]
