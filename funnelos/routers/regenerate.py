from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import ORJSONResponse

from funnelos.auth.dependencies import AuthContext, get_current_user
from funnelos.db.models import GenerationJob
from funnelos.llm.client import GenerationProvider
from funnelos.llm.deps import get_generation_provider
from funnelos.schemas.regeneration import (
    FieldImpactResponse,
    GenerationJobResponse,
    RegenerateRequest,
    RegenerationInfoResponse,
    RegenerationReportResponse,
    SectionInfo,
)
from funnelos.services import generation_jobs
from funnelos.services.chunk_plans import get_chunk_plan
from funnelos.services.dependency_graph import GRAPH
from funnelos.services.regeneration import RegenerationOrchestrator

router = APIRouter(prefix="/regenerate", tags=["regenerate"])


def _serialize_job(job: GenerationJob) -> GenerationJobResponse:
    return GenerationJobResponse(
        id=job.id,
        funnelId=job.funnel_id,
        status=job.status.value,
        sectionsRequested=list(job.sections_requested or []),
        sectionsCompleted=list(job.sections_completed or []),
        sectionsFailed=list(job.sections_failed or []),
        progressPercentage=job.progress_percentage or 0,
        currentSection=job.current_section,
        errorMessage=job.error_message,
        result=job.result,
        createdAt=job.created_at,
        startedAt=job.started_at,
        finishedAt=job.finished_at,
    )


@router.post("", response_model=RegenerationReportResponse)
async def regenerate(
    body: RegenerateRequest,
    auth: AuthContext = Depends(get_current_user),
    provider: GenerationProvider = Depends(get_generation_provider),
):
    if body.background:
        job = generation_jobs.start_regeneration_job(
            provider,
            funnel_id=body.funnelId,
            user_id=auth.user_id,
            changed_answers=body.changedAnswers,
            changed_sections=body.changedSections,
            source_field=body.sourceField,
            section_key=body.sectionKey,
            feedback=body.feedback,
            regenerate_all=body.regenerateAll,
        )
        return ORJSONResponse(
            status_code=status.HTTP_202_ACCEPTED,
            content=_serialize_job(job).model_dump(mode="json"),
        )

    report = await RegenerationOrchestrator(provider).regenerate(
        body.funnelId,
        user_id=auth.user_id,
        changed_answers=body.changedAnswers,
        changed_sections=body.changedSections,
        source_field=body.sourceField,
        section_key=body.sectionKey,
        feedback=body.feedback,
        regenerate_all=body.regenerateAll,
    )
    return RegenerationReportResponse.model_validate(report.to_dict())


@router.get("/info", response_model=RegenerationInfoResponse)
async def regeneration_info():
    sections = []
    for section_id in GRAPH.section_ids:
        definition = GRAPH.get(section_id)
        plan = get_chunk_plan(section_id) or ()
        sections.append(
            SectionInfo(
                id=definition.id,
                name=definition.name,
                requires=list(definition.requires),
                uses=list(definition.uses),
                answerKeys=list(definition.answer_keys),
                chunked=bool(plan),
                chunkIds=[chunk.chunk_id for chunk in plan],
            )
        )
    return RegenerationInfoResponse(
        sections=sections,
        answerKeys=GRAPH.answer_keys,
        topologicalOrder=list(GRAPH.topological_order),
    )


@router.get("/impact", response_model=FieldImpactResponse)
async def field_impact(
    section_id: str = Query(..., alias="sectionId"),
    field_path: Optional[str] = Query(None, alias="fieldPath"),
):
    return FieldImpactResponse(
        sectionId=section_id,
        fieldPath=field_path,
        affectedSections=GRAPH.get_field_impact(section_id, field_path),
    )


@router.get("/jobs/{job_id}", response_model=GenerationJobResponse)
async def get_regeneration_job(
    job_id: str,
    auth: AuthContext = Depends(get_current_user),
):
    return _serialize_job(generation_jobs.get_job(job_id, user_id=auth.user_id))
