from __future__ import annotations

from typing import Any, Iterable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from funnelos.db.enums import SectionStatusEnum
from funnelos.db.models import SectionDocument
from funnelos.db.repositories.base import Repository
from funnelos.errors import VersionConflictError

APPROVED_STATUSES = (SectionStatusEnum.approved, SectionStatusEnum.locked)


class SectionDocumentsRepository(Repository):
    def get_current(self, funnel_id: str, section_id: str) -> Optional[SectionDocument]:
        stmt = select(SectionDocument).where(
            SectionDocument.funnel_id == funnel_id,
            SectionDocument.section_id == section_id,
            SectionDocument.is_current.is_(True),
        )
        return self.session.scalars(stmt).first()

    def list_current(self, funnel_id: str, section_ids: Iterable[str]) -> dict[str, SectionDocument]:
        ids = list(section_ids)
        if not ids:
            return {}
        stmt = select(SectionDocument).where(
            SectionDocument.funnel_id == funnel_id,
            SectionDocument.section_id.in_(ids),
            SectionDocument.is_current.is_(True),
        )
        return {doc.section_id: doc for doc in self.session.scalars(stmt).all()}

    def list_current_approved(self, funnel_id: str, section_ids: Iterable[str]) -> dict[str, SectionDocument]:
        """Current documents that a human approved or locked. Drafts and history rows are never returned."""
        return {
            section_id: doc
            for section_id, doc in self.list_current(funnel_id, section_ids).items()
            if doc.status in APPROVED_STATUSES
        }

    def list_versions(self, funnel_id: str, section_id: str) -> list[SectionDocument]:
        stmt = (
            select(SectionDocument)
            .where(SectionDocument.funnel_id == funnel_id, SectionDocument.section_id == section_id)
            .order_by(SectionDocument.version.desc())
        )
        return list(self.session.scalars(stmt).all())

    def create_version(
        self,
        *,
        funnel_id: str,
        section_id: str,
        content: dict[str, Any],
        content_hash: Optional[str] = None,
        prompt_used: Optional[str] = None,
        warnings: Optional[list[str]] = None,
        status: SectionStatusEnum = SectionStatusEnum.generated,
        generation_job_id: Optional[str] = None,
    ) -> SectionDocument:
        """
        Append a new version and make it the only current row.

        The max-version read, the flip of the previous current row and the insert
        share one transaction; the unique constraints reject a concurrent writer.
        """
        max_version = self.session.scalar(
            select(func.max(SectionDocument.version)).where(
                SectionDocument.funnel_id == funnel_id,
                SectionDocument.section_id == section_id,
            )
        )
        self.session.execute(
            update(SectionDocument)
            .where(
                SectionDocument.funnel_id == funnel_id,
                SectionDocument.section_id == section_id,
                SectionDocument.is_current.is_(True),
            )
            .values(is_current=False)
        )
        document = SectionDocument(
            funnel_id=funnel_id,
            section_id=section_id,
            content=content,
            content_hash=content_hash,
            prompt_used=prompt_used,
            warnings=list(warnings or []),
            status=status,
            version=(max_version or 0) + 1,
            is_current=True,
            generation_job_id=generation_job_id,
        )
        self.session.add(document)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise VersionConflictError(funnel_id, section_id) from exc
        self.session.refresh(document)
        return document

    def set_current_status(
        self, funnel_id: str, section_id: str, status: SectionStatusEnum
    ) -> Optional[SectionDocument]:
        document = self.get_current(funnel_id, section_id)
        if not document:
            return None
        document.status = status
        return self.save(document)
