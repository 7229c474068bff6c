from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

import sqlalchemy as sa
from sqlalchemy import JSON, Boolean, DateTime, Enum, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from funnelos.db.base import Base
from funnelos.db.enums import GenerationJobStatusEnum, SectionStatusEnum

JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _uuid_str() -> str:
    return str(uuid4())


class Funnel(Base):
    __tablename__ = "funnels"

    id: Mapped[str] = mapped_column(String(length=36), primary_key=True, default=_uuid_str)
    user_id: Mapped[str] = mapped_column(String(length=255), nullable=False, index=True)
    name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    answers: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class SectionDocument(Base):
    __tablename__ = "section_documents"
    __table_args__ = (
        UniqueConstraint("funnel_id", "section_id", "version", name="uq_section_documents_version"),
        sa.Index(
            "uq_section_documents_current",
            "funnel_id",
            "section_id",
            unique=True,
            postgresql_where=sa.text("is_current"),
            sqlite_where=sa.text("is_current = 1"),
        ),
    )

    id: Mapped[str] = mapped_column(String(length=36), primary_key=True, default=_uuid_str)
    funnel_id: Mapped[str] = mapped_column(
        ForeignKey("funnels.id", ondelete="CASCADE"), nullable=False, index=True
    )
    section_id: Mapped[str] = mapped_column(String(length=64), nullable=False)
    content: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    content_hash: Mapped[Optional[str]] = mapped_column(String(length=64), nullable=True)
    status: Mapped[SectionStatusEnum] = mapped_column(
        Enum(SectionStatusEnum, name="section_status"),
        nullable=False,
        default=SectionStatusEnum.generated,
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    is_current: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    prompt_used: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    warnings: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    generation_job_id: Mapped[Optional[str]] = mapped_column(String(length=36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class SectionLock(Base):
    __tablename__ = "section_locks"

    funnel_id: Mapped[str] = mapped_column(
        ForeignKey("funnels.id", ondelete="CASCADE"), primary_key=True
    )
    section_id: Mapped[str] = mapped_column(String(length=64), primary_key=True)
    lock_token: Mapped[Optional[str]] = mapped_column(String(length=36), nullable=True)
    locked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class GenerationJob(Base):
    __tablename__ = "generation_jobs"
    __table_args__ = (sa.Index("idx_generation_jobs_funnel_status", "funnel_id", "status"),)

    id: Mapped[str] = mapped_column(String(length=36), primary_key=True, default=_uuid_str)
    funnel_id: Mapped[str] = mapped_column(
        ForeignKey("funnels.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[Optional[str]] = mapped_column(String(length=255), nullable=True)
    status: Mapped[GenerationJobStatusEnum] = mapped_column(
        Enum(GenerationJobStatusEnum, name="generation_job_status"),
        nullable=False,
        default=GenerationJobStatusEnum.queued,
    )
    request: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    sections_requested: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    sections_completed: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    sections_failed: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    progress_percentage: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    current_section: Mapped[Optional[str]] = mapped_column(String(length=64), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    result: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
