from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select, update

from funnelos.db.enums import GenerationJobStatusEnum
from funnelos.db.models import GenerationJob
from funnelos.db.repositories.base import Repository


class GenerationJobsRepository(Repository):
    def get(self, job_id: str) -> Optional[GenerationJob]:
        stmt = select(GenerationJob).where(GenerationJob.id == job_id)
        return self.session.scalars(stmt).first()

    def create(
        self,
        *,
        funnel_id: str,
        user_id: Optional[str],
        request: dict[str, Any],
        sections_requested: Optional[list[str]] = None,
    ) -> GenerationJob:
        job = GenerationJob(
            funnel_id=funnel_id,
            user_id=user_id,
            request=request,
            sections_requested=list(sections_requested or []),
            status=GenerationJobStatusEnum.queued,
            progress_percentage=0,
        )
        return self.save(job)

    def _update(self, job_id: str, values: dict[str, Any]) -> Optional[GenerationJob]:
        values["updated_at"] = datetime.now(timezone.utc)
        stmt = update(GenerationJob).where(GenerationJob.id == job_id).values(**values).returning(GenerationJob)
        job = self.session.execute(stmt).scalar_one_or_none()
        if job:
            self.session.commit()
        return job

    def mark_processing(self, job_id: str, *, sections_requested: list[str]) -> Optional[GenerationJob]:
        return self._update(
            job_id,
            {
                "status": GenerationJobStatusEnum.processing,
                "sections_requested": list(sections_requested),
                "started_at": datetime.now(timezone.utc),
            },
        )

    def record_progress(
        self,
        job_id: str,
        *,
        progress_percentage: int,
        current_section: Optional[str] = None,
        completed_section: Optional[str] = None,
        failed_section: Optional[str] = None,
    ) -> Optional[GenerationJob]:
        """Advance progress; the stored percentage never moves backwards."""
        job = self.get(job_id)
        if not job:
            return None
        values: dict[str, Any] = {
            "progress_percentage": max(job.progress_percentage or 0, min(100, int(progress_percentage))),
        }
        if current_section is not None:
            values["current_section"] = current_section
        if completed_section is not None:
            values["sections_completed"] = [*(job.sections_completed or []), completed_section]
        if failed_section is not None:
            values["sections_failed"] = [*(job.sections_failed or []), failed_section]
        return self._update(job_id, values)

    def mark_completed(self, job_id: str, *, result: dict[str, Any]) -> Optional[GenerationJob]:
        now = datetime.now(timezone.utc)
        return self._update(
            job_id,
            {
                "status": GenerationJobStatusEnum.completed,
                "progress_percentage": 100,
                "current_section": None,
                "result": result,
                "finished_at": now,
            },
        )

    def mark_failed(self, job_id: str, *, error: str, result: Optional[dict[str, Any]] = None) -> Optional[GenerationJob]:
        values: dict[str, Any] = {
            "status": GenerationJobStatusEnum.failed,
            "error_message": error,
            "finished_at": datetime.now(timezone.utc),
        }
        if result is not None:
            values["result"] = result
        return self._update(job_id, values)
