from __future__ import annotations

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from funnelos.auth.dependencies import AuthContext, get_current_user
from funnelos.db.deps import get_session
from funnelos.db.enums import SectionStatusEnum
from funnelos.db.models import Funnel, SectionDocument
from funnelos.db.repositories.funnels import FunnelsRepository
from funnelos.db.repositories.section_documents import SectionDocumentsRepository
from funnelos.errors import FunnelNotFoundError, SectionNotFoundError
from funnelos.schemas.funnels import FunnelCreateRequest, FunnelResponse, SectionDocumentResponse
from funnelos.services.dependency_graph import GRAPH

router = APIRouter(prefix="/funnels", tags=["funnels"])


def _serialize_funnel(funnel: Funnel) -> FunnelResponse:
    return FunnelResponse(
        id=funnel.id,
        name=funnel.name,
        answers=dict(funnel.answers or {}),
        createdAt=funnel.created_at,
        updatedAt=funnel.updated_at,
    )


def _serialize_document(document: SectionDocument) -> SectionDocumentResponse:
    return SectionDocumentResponse(
        id=document.id,
        funnelId=document.funnel_id,
        sectionId=document.section_id,
        content=dict(document.content or {}),
        status=document.status.value,
        version=document.version,
        isCurrent=document.is_current,
        contentHash=document.content_hash,
        warnings=list(document.warnings or []),
        generationJobId=document.generation_job_id,
        createdAt=document.created_at,
        updatedAt=document.updated_at,
    )


def _require_funnel(session: Session, funnel_id: str, user_id: str) -> Funnel:
    funnel = FunnelsRepository(session).get(funnel_id, user_id=user_id)
    if not funnel:
        raise FunnelNotFoundError(funnel_id)
    return funnel


@router.post("", response_model=FunnelResponse, status_code=status.HTTP_201_CREATED)
def create_funnel(
    body: FunnelCreateRequest,
    auth: AuthContext = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    funnel = FunnelsRepository(session).create(user_id=auth.user_id, name=body.name, answers=body.answers)
    return _serialize_funnel(funnel)


@router.get("/{funnel_id}", response_model=FunnelResponse)
def get_funnel(
    funnel_id: str,
    auth: AuthContext = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    return _serialize_funnel(_require_funnel(session, funnel_id, auth.user_id))


@router.get("/{funnel_id}/sections/{section_id}", response_model=SectionDocumentResponse)
def get_section(
    funnel_id: str,
    section_id: str,
    auth: AuthContext = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    GRAPH.get(section_id)
    _require_funnel(session, funnel_id, auth.user_id)
    document = SectionDocumentsRepository(session).get_current(funnel_id, section_id)
    if not document:
        raise SectionNotFoundError(funnel_id, section_id)
    return _serialize_document(document)


@router.get("/{funnel_id}/sections/{section_id}/versions", response_model=list[SectionDocumentResponse])
def list_section_versions(
    funnel_id: str,
    section_id: str,
    auth: AuthContext = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    GRAPH.get(section_id)
    _require_funnel(session, funnel_id, auth.user_id)
    return [
        _serialize_document(document)
        for document in SectionDocumentsRepository(session).list_versions(funnel_id, section_id)
    ]


def _set_status(
    session: Session, funnel_id: str, section_id: str, user_id: str, new_status: SectionStatusEnum
) -> SectionDocumentResponse:
    GRAPH.get(section_id)
    _require_funnel(session, funnel_id, user_id)
    document = SectionDocumentsRepository(session).set_current_status(funnel_id, section_id, new_status)
    if not document:
        raise SectionNotFoundError(funnel_id, section_id)
    return _serialize_document(document)


@router.post("/{funnel_id}/sections/{section_id}/approve", response_model=SectionDocumentResponse)
def approve_section(
    funnel_id: str,
    section_id: str,
    auth: AuthContext = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    return _set_status(session, funnel_id, section_id, auth.user_id, SectionStatusEnum.approved)


@router.post("/{funnel_id}/sections/{section_id}/lock", response_model=SectionDocumentResponse)
def lock_section(
    funnel_id: str,
    section_id: str,
    auth: AuthContext = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    return _set_status(session, funnel_id, section_id, auth.user_id, SectionStatusEnum.locked)
