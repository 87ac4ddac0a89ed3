from __future__ import annotations

import json
import re
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from stagequeue.models import StageKind

FABRICATION_MARKERS = (
    re.compile(r"i checked", re.IGNORECASE),
    re.compile(r"looks good", re.IGNORECASE),
    re.compile(r"seems fine", re.IGNORECASE),
    re.compile(r"probably fine", re.IGNORECASE),
    re.compile(r"should work", re.IGNORECASE),
    re.compile(r"verified mentally", re.IGNORECASE),
)

TEST_RESULT_MARKERS = (
    re.compile(r"passed:\s*\d+", re.IGNORECASE),
    re.compile(r"failed:\s*\d+", re.IGNORECASE),
    re.compile(r"✓|✔|pass|fail", re.IGNORECASE),
    re.compile(r"tests?\s+rung?:\s*\d+", re.IGNORECASE),
    re.compile(r"PASS|FAIL"),
)


@dataclass(slots=True)
class EvidenceValidation:
    valid: bool
    evidence: dict[str, Any] | None
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"valid": self.valid, "evidence": self.evidence, "errors": list(self.errors)}


def extract_evidence(text: str) -> dict[str, Any] | None:
    """Return the first JSON object in ``text`` that carries ``evidenceType``.

    An object nested under ``completionEvidence`` is accepted as well.
    """
    decoder = json.JSONDecoder()
    index = text.find("{")
    while index != -1:
        try:
            candidate, _ = decoder.raw_decode(text, index)
        except json.JSONDecodeError:
            candidate = None
        if isinstance(candidate, dict):
            if "evidenceType" in candidate:
                return candidate
            nested = candidate.get("completionEvidence")
            if isinstance(nested, dict) and "evidenceType" in nested:
                return nested
        index = text.find("{", index + 1)
    return None


class EvidenceValidator:
    def __init__(
        self,
        working_directory: Path,
        *,
        min_age_ms: float = 100.0,
        fabrication_max_length: int = 200,
        default_fix_log: str = "fix-log.md",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.working_directory = working_directory
        self.min_age_ms = min_age_ms
        self.fabrication_max_length = fabrication_max_length
        self.default_fix_log = default_fix_log
        self.clock = clock

    def _resolve(self, raw_path: str) -> Path:
        path = Path(raw_path).expanduser()
        if path.is_absolute():
            return path
        return self.working_directory / path

    def validate(
        self, raw_output: str, stage_name: str, kind: StageKind = "code"
    ) -> EvidenceValidation:
        _ = stage_name
        is_documentation = kind == "documentation"
        evidence = extract_evidence(raw_output or "")
        if evidence is None:
            if '"evidenceType"' in (raw_output or ""):
                return EvidenceValidation(
                    valid=False,
                    evidence=None,
                    errors=["Failed to parse evidence JSON: no well-formed object found"],
                )
            return EvidenceValidation(
                valid=False,
                evidence=None,
                errors=["No completionEvidence object found in agent output"],
            )

        errors: list[str] = []
        file_path = evidence.get("filePath")
        fix_log = evidence.get("fixLog")

        if not is_documentation and not file_path and not fix_log:
            errors.append("Evidence missing required fields: filePath or fixLog")

        if file_path:
            errors.extend(self._check_evidence_file(str(file_path), is_documentation))

        if fix_log or is_documentation:
            fix_log_path = str(fix_log or self.default_fix_log)
            if not self._resolve(fix_log_path).exists():
                errors.append(f"Fix log does not exist: {fix_log_path}")

        return EvidenceValidation(valid=not errors, evidence=evidence, errors=errors)

    def _check_evidence_file(self, raw_path: str, is_documentation: bool) -> list[str]:
        errors: list[str] = []
        path = self._resolve(raw_path)
        try:
            stats = path.stat()
        except FileNotFoundError:
            return [f"Evidence file does not exist: {raw_path}"]
        except OSError as exc:
            return [f"Error checking evidence file: {exc}"]

        age_ms = (self.clock() - stats.st_mtime) * 1000
        if age_ms < self.min_age_ms:
            errors.append(
                f"Evidence file created too recently ({age_ms:.0f}ms), appears fake: {raw_path}"
            )
        if stats.st_size == 0:
            errors.append(f"Evidence file is empty: {raw_path}")
            return errors

        try:
            content = path.read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            errors.append(f"Error checking evidence file: {exc}")
            return errors

        if len(content) < self.fabrication_max_length:
            for marker in FABRICATION_MARKERS:
                if marker.search(content):
                    errors.append(
                        f'Evidence contains fake verification marker "{marker.pattern}" '
                        f"in {raw_path}"
                    )
                    break

        if not is_documentation and not any(m.search(content) for m in TEST_RESULT_MARKERS):
            errors.append(f"Evidence file lacks actual test output: {raw_path}")
        return errors
