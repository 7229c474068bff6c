from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional, Sequence

from funnelos.db.base import session_scope
from funnelos.db.models import GenerationJob
from funnelos.db.repositories.funnels import FunnelsRepository
from funnelos.db.repositories.generation_jobs import GenerationJobsRepository
from funnelos.errors import FunnelNotFoundError, JobNotFoundError, JobStartError, UnknownSectionError
from funnelos.llm.client import GenerationProvider
from funnelos.services.context_resolver import check_dependencies
from funnelos.services.dependency_graph import GRAPH
from funnelos.services.regeneration import RegenerationOrchestrator, RegenerationProgress

logger = logging.getLogger(__name__)

# Strong references so detached jobs are not garbage collected mid-run.
_background_tasks: set[asyncio.Task] = set()


class _JobProgress(RegenerationProgress):
    def __init__(self, job_id: str) -> None:
        self.job_id = job_id

    def targets_resolved(self, sections: list[str]) -> None:
        with session_scope() as session:
            GenerationJobsRepository(session).mark_processing(self.job_id, sections_requested=sections)

    def section_started(self, section_id: str) -> None:
        with session_scope() as session:
            GenerationJobsRepository(session).record_progress(
                self.job_id, progress_percentage=0, current_section=section_id
            )

    def section_finished(self, section_id: str, *, succeeded: bool, finished: int, total: int) -> None:
        percentage = int(finished * 100 / total) if total else 100
        with session_scope() as session:
            GenerationJobsRepository(session).record_progress(
                self.job_id,
                progress_percentage=percentage,
                completed_section=section_id if succeeded else None,
                failed_section=None if succeeded else section_id,
            )


def _validate_request(
    funnel_id: str, *, user_id: Optional[str], section_key: Optional[str], changed_sections: Sequence[str]
) -> None:
    named = [section_key, *changed_sections] if section_key is not None else list(changed_sections)
    for section_id in named:
        if not GRAPH.has_section(section_id):
            raise UnknownSectionError(section_id)
    with session_scope() as session:
        if not FunnelsRepository(session).get(funnel_id, user_id=user_id):
            raise FunnelNotFoundError(funnel_id)
    if section_key is not None:
        check_dependencies(funnel_id, section_key)


async def _run_regeneration_job(
    job_id: str,
    orchestrator: RegenerationOrchestrator,
    *,
    funnel_id: str,
    user_id: Optional[str],
    changed_answers: Optional[dict[str, Any]],
    changed_sections: Sequence[str],
    source_field: Optional[str],
    section_key: Optional[str],
    feedback: Optional[str],
    regenerate_all: bool,
) -> None:
    try:
        report = await orchestrator.regenerate(
            funnel_id,
            user_id=user_id,
            changed_answers=changed_answers,
            changed_sections=changed_sections,
            source_field=source_field,
            section_key=section_key,
            feedback=feedback,
            regenerate_all=regenerate_all,
            job_id=job_id,
            progress=_JobProgress(job_id),
        )
    except Exception as exc:
        logger.exception("Regeneration job failed", extra={"job_id": job_id, "funnel_id": funnel_id})
        with session_scope() as session:
            GenerationJobsRepository(session).mark_failed(job_id, error=str(exc))
        return

    with session_scope() as session:
        GenerationJobsRepository(session).mark_completed(job_id, result=report.to_dict())
    logger.info(
        "Regeneration job completed",
        extra={
            "job_id": job_id,
            "funnel_id": funnel_id,
            "succeeded": len(report.succeeded_sections),
            "failed": len(report.failed_sections),
        },
    )


def start_regeneration_job(
    provider: GenerationProvider,
    *,
    funnel_id: str,
    user_id: Optional[str],
    changed_answers: Optional[dict[str, Any]] = None,
    changed_sections: Optional[Sequence[str]] = None,
    source_field: Optional[str] = None,
    section_key: Optional[str] = None,
    feedback: Optional[str] = None,
    regenerate_all: bool = False,
    orchestrator: Optional[RegenerationOrchestrator] = None,
) -> GenerationJob:
    """
    Validate the request, persist a queued job and run the regeneration as a
    detached task on the current event loop. Poll with `get_job`.
    """
    changed_sections = list(changed_sections or [])
    _validate_request(funnel_id, user_id=user_id, section_key=section_key, changed_sections=changed_sections)

    request = {
        "changedAnswers": changed_answers,
        "changedSections": changed_sections,
        "sourceField": source_field,
        "sectionKey": section_key,
        "feedback": feedback,
        "regenerateAll": regenerate_all,
    }
    with session_scope() as session:
        job = GenerationJobsRepository(session).create(
            funnel_id=funnel_id, user_id=user_id, request=request
        )

    try:
        loop = asyncio.get_running_loop()
    except RuntimeError as exc:
        with session_scope() as session:
            GenerationJobsRepository(session).mark_failed(job.id, error="No running event loop")
        raise JobStartError("No running event loop available to start regeneration job.") from exc

    task = loop.create_task(
        _run_regeneration_job(
            job.id,
            orchestrator or RegenerationOrchestrator(provider),
            funnel_id=funnel_id,
            user_id=user_id,
            changed_answers=changed_answers,
            changed_sections=changed_sections,
            source_field=source_field,
            section_key=section_key,
            feedback=feedback,
            regenerate_all=regenerate_all,
        )
    )
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    logger.info("Regeneration job queued", extra={"job_id": job.id, "funnel_id": funnel_id})
    return job


def get_job(job_id: str, *, user_id: Optional[str] = None) -> GenerationJob:
    with session_scope() as session:
        job = GenerationJobsRepository(session).get(job_id)
        if not job or (user_id is not None and job.user_id != user_id):
            raise JobNotFoundError(job_id)
        session.expunge(job)
    return job
