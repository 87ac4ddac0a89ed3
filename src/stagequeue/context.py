from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

from stagequeue.errors import ContextBuildError
from stagequeue.models import StageDefinition, StageResult

GOVERNANCE_TEMPLATE = """MANDATORY GOVERNANCE:
- Create a fix log before making changes
- Record progress as you go

COMPLETION EVIDENCE REQUIREMENTS:
When you complete this task, you MUST provide completionEvidence in your final response:

{{
  "evidenceType": "test-output|screenshot|fix-log|verification-log",
  "filePath": "path/to/evidence/file",
  "testResults": "pass|fail|partial",
  "fixLog": "path/to/fix-log.md" (if applicable),
  "verifiedBy": "stage: {stage_name}",
  "timestamp": "ISO-8601 timestamp"
}}

CRITICAL: Return completionEvidence in your final response text as JSON.
- Evidence files must exist on disk
- Empty evidence or "I verified mentally" is INVALID
- Actual test output/logs required (not self-assertions)
- Fix log must exist for code/documentation changes

VERIFICATION REQUIRED:
Complete with VERIFICATION_REQUIRED phrase + valid completionEvidence.
Without evidence = task FAILED."""


def build_context(
    stage: StageDefinition,
    prior_results: Mapping[str, StageResult],
    global_context: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    derived: dict[str, Any] = {}
    if stage.context_from is not None:
        try:
            produced = stage.context_from(dict(prior_results))
        except Exception as exc:
            raise ContextBuildError(stage.name, exc) from exc
        if produced is not None and not isinstance(produced, Mapping):
            raise ContextBuildError(
                stage.name, TypeError(f"expected a mapping, got {type(produced).__name__}")
            )
        derived.update(produced or {})
    derived.update(global_context or {})
    return derived


def inject_placeholders(template: str, context: Mapping[str, Any]) -> str:
    """Replace ``{key}`` markers; unknown keys are left as written."""
    if not context:
        return template
    keys = sorted((str(key) for key in context), key=len, reverse=True)
    pattern = re.compile("|".join(re.escape("{" + key + "}") for key in keys))
    values = {str(key): value for key, value in context.items()}
    return pattern.sub(lambda match: str(values[match.group(0)[1:-1]]), template)


def append_governance(task: str, stage_name: str) -> str:
    return f"{task}\n\n{GOVERNANCE_TEMPLATE.format(stage_name=stage_name)}"


def build_task(
    stage: StageDefinition,
    prior_results: Mapping[str, StageResult],
    global_context: Mapping[str, Any] | None = None,
) -> str:
    context = build_context(stage, prior_results, global_context)
    return append_governance(inject_placeholders(stage.task, context), stage.name)
