from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


class FunnelCreateRequest(BaseModel):
    name: Optional[str] = None
    answers: dict[str, Any] = Field(default_factory=dict)


class FunnelResponse(BaseModel):
    id: str
    name: Optional[str] = None
    answers: dict[str, Any]
    createdAt: datetime
    updatedAt: datetime


class SectionDocumentResponse(BaseModel):
    id: str
    funnelId: str
    sectionId: str
    content: dict[str, Any]
    status: str
    version: int
    isCurrent: bool
    contentHash: Optional[str] = None
    warnings: list[str] = Field(default_factory=list)
    generationJobId: Optional[str] = None
    createdAt: datetime
    updatedAt: datetime
