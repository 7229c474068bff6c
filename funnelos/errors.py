from __future__ import annotations

from typing import Any, Iterable, Optional


class FunnelOSError(Exception):
    """Base class for errors the regeneration engine reports with a stable code."""

    code = "FUNNELOS_ERROR"

    def to_payload(self) -> dict[str, Any]:
        return {"error": str(self), "code": self.code}


class DependencyGraphError(FunnelOSError):
    code = "DEPENDENCY_GRAPH_INVALID"


class ChunkPlanError(FunnelOSError):
    code = "CHUNK_PLAN_INVALID"


class UnknownSectionError(FunnelOSError):
    code = "UNKNOWN_SECTION"

    def __init__(self, section_id: str) -> None:
        super().__init__(f"Unknown section: {section_id}")
        self.section_id = section_id


class FunnelNotFoundError(FunnelOSError):
    code = "FUNNEL_NOT_FOUND"

    def __init__(self, funnel_id: str) -> None:
        super().__init__(f"Funnel not found: {funnel_id}")
        self.funnel_id = funnel_id


class SectionNotFoundError(FunnelOSError):
    code = "SECTION_NOT_FOUND"

    def __init__(self, funnel_id: str, section_id: str) -> None:
        super().__init__(f"No current document for section {section_id}")
        self.funnel_id = funnel_id
        self.section_id = section_id


class JobNotFoundError(FunnelOSError):
    code = "JOB_NOT_FOUND"

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Generation job not found: {job_id}")
        self.job_id = job_id


class MissingDependencyError(FunnelOSError):
    code = "MISSING_DEPENDENCY"

    def __init__(self, section_id: str, missing: Iterable[str]) -> None:
        self.section_id = section_id
        self.missing = sorted(set(missing))
        super().__init__(
            f"Section {section_id} requires approved upstream sections: {', '.join(self.missing)}"
        )

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        payload["missing"] = list(self.missing)
        return payload


class GenerationError(FunnelOSError):
    code = "GENERATION_FAILED"

    def __init__(self, section_id: str, stage: str, message: str, *, attempts: int = 0) -> None:
        super().__init__(f"[{stage}] {message}")
        self.section_id = section_id
        self.stage = stage
        self.attempts = attempts


class MergeValidationError(GenerationError):
    code = "MERGE_VALIDATION_FAILED"

    def __init__(self, section_id: str, message: str, *, chunk_errors: Optional[dict[str, str]] = None) -> None:
        super().__init__(section_id, "validating", message)
        self.chunk_errors = dict(chunk_errors or {})


class LockConflictError(FunnelOSError):
    code = "LOCK_CONFLICT"

    def __init__(self, funnel_id: str, section_id: str) -> None:
        super().__init__(f"Section {section_id} is already being regenerated; retry later")
        self.funnel_id = funnel_id
        self.section_id = section_id


class VersionConflictError(FunnelOSError):
    code = "VERSION_CONFLICT"

    def __init__(self, funnel_id: str, section_id: str) -> None:
        super().__init__(f"Concurrent version write detected for section {section_id}")
        self.funnel_id = funnel_id
        self.section_id = section_id


class JobStartError(FunnelOSError):
    code = "JOB_START_FAILED"
