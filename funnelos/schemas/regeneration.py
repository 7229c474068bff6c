from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class RegenerateRequest(BaseModel):
    funnelId: str
    changedAnswers: Optional[dict[str, Any]] = None
    changedSections: list[str] = Field(default_factory=list)
    sourceField: Optional[str] = None
    sectionKey: Optional[str] = None
    feedback: Optional[str] = None
    regenerateAll: bool = False
    background: bool = False

    @field_validator("funnelId")
    @classmethod
    def _validate_funnel_id(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("funnelId must be a non-empty string.")
        return cleaned

    @field_validator("sectionKey", "sourceField", "feedback")
    @classmethod
    def _blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        cleaned = value.strip()
        return cleaned or None

    @model_validator(mode="after")
    def _source_field_needs_one_section(self) -> "RegenerateRequest":
        if self.sourceField is not None and len(self.changedSections) != 1:
            raise ValueError("sourceField requires exactly one entry in changedSections.")
        return self


class FailedSectionResponse(BaseModel):
    section: str
    error: str
    code: str
    stage: Optional[str] = None
    missing: list[str] = Field(default_factory=list)


class SkippedSectionResponse(BaseModel):
    section: str
    reason: str


class RegenerationReportResponse(BaseModel):
    funnelId: str
    noop: bool
    targetSections: list[str]
    changedAnswerKeys: list[str]
    changedSections: list[str] = Field(default_factory=list)
    succeededSections: list[str]
    failedSections: list[FailedSectionResponse]
    skipped: list[SkippedSectionResponse]
    versions: dict[str, int]
    warnings: dict[str, list[str]]


class GenerationJobResponse(BaseModel):
    id: str
    funnelId: str
    status: str
    sectionsRequested: list[str]
    sectionsCompleted: list[str]
    sectionsFailed: list[str]
    progressPercentage: int
    currentSection: Optional[str] = None
    errorMessage: Optional[str] = None
    result: Optional[dict[str, Any]] = None
    createdAt: datetime
    startedAt: Optional[datetime] = None
    finishedAt: Optional[datetime] = None


class SectionInfo(BaseModel):
    id: str
    name: str
    requires: list[str]
    uses: list[str]
    answerKeys: list[str]
    chunked: bool
    chunkIds: list[str] = Field(default_factory=list)


class RegenerationInfoResponse(BaseModel):
    sections: list[SectionInfo]
    answerKeys: list[str]
    topologicalOrder: list[str]


class FieldImpactResponse(BaseModel):
    sectionId: str
    fieldPath: Optional[str] = None
    affectedSections: list[str]
